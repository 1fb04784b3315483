"""
dngwriter.py
Writes a DNG from a DngTagSet plus rows of 16-bit CFA samples.

tifffile writes IFD0 and the image strips. It has no way to write an EXIF sub-IFD, and it filters
an ExifIFD tag passed in extratags, so once the file is written we append the EXIF IFD ourselves,
followed by a copy of IFD0 with an ExifIFD entry added, and point the TIFF header at the new IFD0.
Values tifffile stored outside of IFD0 stay where they are.
"""

from   fractions import Fraction
import os
import struct
from   typing import Dict, List, NamedTuple, Sequence, Tuple, Union

import numpy as np
import tifffile

from   dngtags import DngTag, DngTagSet, TagDirectory, TagType
from   rawerrors import AllocationError, WriterError


#
# types
#
IfdEntry = NamedTuple('IfdEntry', [('code', int), ('tagType', int), ('count', int), ('valueField', bytes)])


#
# module data
#
TagExifIfd = 34665
ByteOrder = '<'
# tags tifffile generates itself from the array and write() arguments; never passed as extratags
StructuralTags = (254, 256, 257, 258, 259, 262, 277, 278, 284, 305, 306)
RationalDenominatorLimit = 1000000
StructFormats = {
    TagType.BYTE: 'B', TagType.UNDEFINED: 'B', TagType.SHORT: 'H', TagType.LONG: 'I',
    TagType.RATIONAL: 'I', TagType.SRATIONAL: 'i',
}


def floatToRational(value: float, signed: bool) -> Tuple[int, int]:

    """
    Converts a float to the closest (numerator, denominator) pair that fits a TIFF RATIONAL/SRATIONAL

    :param value: Value to convert
    :param signed: True for SRATIONAL (32-bit signed parts), False for RATIONAL (unsigned)
    :return: (numerator, denominator)
    """

    if not signed and value < 0:
        raise WriterError(f"Negative value {value} can't be stored as an unsigned RATIONAL")
    maxNumerator = (1 << 31) - 1 if signed else (1 << 32) - 1
    limit = max(1, min(RationalDenominatorLimit, int(maxNumerator // max(1.0, abs(value)))))
    fraction = Fraction(value).limit_denominator(limit)
    if abs(fraction.numerator) > maxNumerator:
        raise WriterError(f"Value {value} is too large for a RATIONAL")
    return (fraction.numerator, fraction.denominator)


def tagValues(tag: DngTag) -> Tuple[int, Union[bytes, Tuple[int, ...]]]:

    """
    Flattens a tag's value into what's stored in the file

    :param tag: Tag to convert
    :return: (count, values) - values is bytes for ASCII/BYTE/UNDEFINED data, otherwise a tuple of ints
    (numerator/denominator pairs for rationals). count is in units of the TIFF type
    """

    value = tag.value
    match tag.tagType:
        case TagType.ASCII:
            data = value.encode("ascii", errors="replace") + b"\x00"
            return (len(data), data)
        case TagType.BYTE | TagType.UNDEFINED:
            data = bytes(value)
            return (len(data), data)
        case TagType.SHORT | TagType.LONG:
            values = tuple(int(x) for x in value) if isinstance(value, (tuple, list)) else (int(value),)
            return (len(values), values)
        case TagType.RATIONAL | TagType.SRATIONAL:
            floats = tuple(value) if isinstance(value, (tuple, list)) else (value,)
            pairs = [floatToRational(x, tag.tagType == TagType.SRATIONAL) for x in floats]
            return (len(pairs), tuple(part for pair in pairs for part in pair))
        case _:
            assert False, f"Unknown {tag.tagType=}"


def encodeIfd(tags: Sequence[DngTag], ifdOffset: int) -> bytes:

    """
    Encodes a complete TIFF IFD (entry count, entries, next-IFD offset, then out-of-line values)

    :param tags: Tags in the IFD
    :param ifdOffset: File offset the IFD will be written at; must be word-aligned
    :return: Encoded IFD
    """

    sortedTags = sorted(tags, key=lambda t: t.code)
    dataOffset = ifdOffset + 2 + 12 * len(sortedTags) + 4
    entries = bytearray(struct.pack(f"{ByteOrder}H", len(sortedTags)))
    data = bytearray()

    for tag in sortedTags:
        count, values = tagValues(tag)
        if isinstance(values, bytes):
            payload = values
        else:
            payload = struct.pack(f"{ByteOrder}{len(values)}{StructFormats[tag.tagType]}", *values)
        entries += struct.pack(f"{ByteOrder}HHI", tag.code, tag.tagType.value, count)
        if len(payload) <= 4:
            entries += payload.ljust(4, b"\x00")
        else:
            entries += struct.pack(f"{ByteOrder}I", dataOffset + len(data))
            data += payload
            if len(data) % 2:
                data += b"\x00"  # values must start on a word boundary

    entries += struct.pack(f"{ByteOrder}I", 0)  # no next IFD
    return bytes(entries + data)


def readIfd0(f) -> Tuple[int, List[IfdEntry], int]:

    """
    Reads the entries of IFD0 of a little-endian classic TIFF. Out-of-line values aren't resolved,
    each entry keeps its raw 4-byte value field

    :param f: TIFF file, opened in binary mode
    :return: (IFD0 offset, entries, next IFD offset)
    """

    f.seek(0)
    byteOrderMark, magic, ifd0Offset = struct.unpack(f"{ByteOrder}2sHI", f.read(8))
    if byteOrderMark != b"II" or magic != 42:
        raise WriterError(f"Unexpected TIFF header {byteOrderMark!r}/{magic} in written file")
    f.seek(ifd0Offset)
    countEntries, = struct.unpack(f"{ByteOrder}H", f.read(2))
    data = f.read(12 * countEntries + 4)
    entries = [IfdEntry(*struct.unpack_from(f"{ByteOrder}HHI4s", data, i * 12)) for i in range(countEntries)]
    nextIfdOffset, = struct.unpack_from(f"{ByteOrder}I", data, 12 * countEntries)
    return (ifd0Offset, entries, nextIfdOffset)


def encodeRawIfd(entries: Sequence[IfdEntry], nextIfdOffset: int) -> bytes:
    data = bytearray(struct.pack(f"{ByteOrder}H", len(entries)))
    for entry in sorted(entries, key=lambda e: e.code):
        data += struct.pack(f"{ByteOrder}HHI4s", *entry)
    data += struct.pack(f"{ByteOrder}I", nextIfdOffset)
    return bytes(data)


def seekToAlignedEnd(f) -> int:
    offset = f.seek(0, os.SEEK_END)
    if offset % 2:
        f.write(b"\x00")
        offset += 1
    return offset


class DngWriter:

    """
    Collects tags and image rows for one DNG and writes the file on close(). Used as a context
    manager - leaving the block on an exception writes nothing and removes any partially-written
    output
    """

    def __init__(self, filename: str):
        self.filename = filename
        self.tags: Dict[int, DngTag] = {}
        self.image: np.ndarray = None
        self.rowsWritten: List[bool] = []
        self.fileCreated = False
        self.closed = False

    def __enter__(self) -> "DngWriter":
        return self

    def __exit__(self, excType, excValue, traceback) -> bool:
        if excType is None:
            self.close()
        else:
            self.discard()
        return False

    def setTag(self, tag: DngTag) -> None:
        if tag.code in self.tags:
            raise WriterError(f"Tag {tag.name} (0x{tag.code:04x}) set twice")
        self.tags[tag.code] = tag

    def setTags(self, tagSet: DngTagSet) -> None:
        for tag in tagSet:
            self.setTag(tag)

    def tagValue(self, code: int, name: str):
        if code not in self.tags:
            raise WriterError(f"Required tag {name} not set")
        return self.tags[code].value

    def beginImage(self) -> None:

        """
        Allocates the image buffer from the ImageWidth/ImageLength tags, which must already be set
        """

        width = self.tagValue(256, "ImageWidth")
        height = self.tagValue(257, "ImageLength")
        bitsPerSample = self.tagValue(258, "BitsPerSample")
        if bitsPerSample != 16:
            raise WriterError(f"Only 16-bit samples are supported, BitsPerSample is {bitsPerSample}")
        try:
            self.image = np.zeros((height, width), dtype=np.uint16)
        except MemoryError as e:
            raise AllocationError(f"Cannot allocate memory for {width}x{height} image data") from e
        self.rowsWritten = [False] * height

    def writeRow(self, rowIndex: int, samples: np.ndarray) -> None:
        if self.image is None:
            raise WriterError("writeRow() called before beginImage()")
        if not 0 <= rowIndex < self.image.shape[0]:
            raise WriterError(f"Row {rowIndex} is outside of image with {self.image.shape[0]} rows")
        if len(samples) != self.image.shape[1]:
            raise WriterError(f"Row {rowIndex} has {len(samples)} samples, expected {self.image.shape[1]}")
        self.image[rowIndex] = samples
        self.rowsWritten[rowIndex] = True

    def close(self) -> None:

        """
        Writes IFD0 and the image strips, then appends and links the EXIF IFD
        """

        if self.closed:
            return
        self.closed = True

        if self.image is None:
            raise WriterError("No image data written")
        if not all(self.rowsWritten):
            self.discard()
            raise WriterError(f"Only {sum(self.rowsWritten)} of {len(self.rowsWritten)} rows were written")

        ifd0Tags = [tag for code, tag in self.tags.items() if tag.directory == TagDirectory.IFD0 and code not in StructuralTags]
        exifTags = [tag for tag in self.tags.values() if tag.directory == TagDirectory.EXIF]

        try:
            extratags = []
            for tag in sorted(ifd0Tags, key=lambda t: t.code):
                count, values = tagValues(tag)
                extratags.append((tag.code, tag.tagType.value, count, values, True))

            self.fileCreated = True
            with tifffile.TiffWriter(self.filename, byteorder=ByteOrder) as tif:
                tif.write(self.image,
                    photometric=self.tagValue(262, "PhotometricInterpretation"),
                    planarconfig=self.tagValue(284, "PlanarConfiguration"),
                    rowsperstrip=self.tagValue(278, "RowsPerStrip"),
                    compression=None,
                    subfiletype=self.tagValue(254, "NewSubfileType"),
                    software=self.tags[305].value if 305 in self.tags else None,
                    datetime=self.tags[306].value if 306 in self.tags else None,
                    metadata=None,
                    extratags=extratags)

            if exifTags:
                self.appendExifIfd(exifTags)
        except WriterError:
            self.discard()
            raise
        except (OSError, ValueError, TypeError, struct.error) as e:
            self.discard()
            raise WriterError(f"Error writing \"{self.filename}\": {e}") from e

    def appendExifIfd(self, exifTags: Sequence[DngTag]) -> None:

        """
        Appends the EXIF IFD and a rewritten IFD0 that references it, then repoints the TIFF header
        to the new IFD0. The original IFD0 is left in place, unreferenced
        """

        with open(self.filename, "r+b") as f:
            _, entries, nextIfdOffset = readIfd0(f)

            exifIfdOffset = seekToAlignedEnd(f)
            f.write(encodeIfd(exifTags, exifIfdOffset))

            entries = [entry for entry in entries if entry.code != TagExifIfd]
            entries.append(IfdEntry(TagExifIfd, TagType.LONG.value, 1, struct.pack(f"{ByteOrder}I", exifIfdOffset)))
            newIfd0Offset = seekToAlignedEnd(f)
            f.write(encodeRawIfd(entries, nextIfdOffset))

            f.seek(4)
            f.write(struct.pack(f"{ByteOrder}I", newIfd0Offset))

    def discard(self) -> None:
        self.closed = True
        self.image = None
        if self.fileCreated and os.path.exists(self.filename):
            os.remove(self.filename)
