"""
rawdata.py
Locates, validates and unpacks the sensor data that raspistill --raw appends to its JPEGs.

Layout of the trailer, from the end of the JPEG stream:

    FF D9                       JPEG end-of-image marker
    @BRCM + 4-byte id           signature; the raw block starts at the 'B'
    header (32768 bytes)        opaque
    rows (rowStride bytes each) 10-bit pixels packed 4 per 5 bytes, plus padding

The raw block has a fixed length per sensor but the JPEG in front of it doesn't, so the
only way to find the block is to count back from the end of the file and then verify the
signature is where we expect it.
"""

from   enum import Enum
from   typing import BinaryIO, Iterator, NamedTuple, Sequence, Tuple
import os

import numpy as np

from   rawerrors import FileTooShortError, MarkerNotFoundError, TruncatedPixelDataError
from   sensorformats import CfaColor, RawBitDepth, RawHeaderLength, SensorFormat


#
# types
#
class FlipTransform(Enum): NONE=0; HORIZONTAL=1; VERTICAL=2; BOTH=3   # bit 0 = horizontal, bit 1 = vertical

RawLocation = NamedTuple('RawLocation', [('pixelOffset', int), ('sensorFormat', SensorFormat)])


#
# module data
#
JpegEoiMarker = b"\xff\xd9"
RawSignature = b"@BRCM"
CfaFlipPermutations = {
    FlipTransform.NONE:       (0, 1, 2, 3),
    FlipTransform.HORIZONTAL: (1, 0, 3, 2),     # swap columns
    FlipTransform.VERTICAL:   (2, 3, 0, 1),     # swap rows
    FlipTransform.BOTH:       (3, 2, 1, 0),
}


def flipTransformFromFlags(horizontal: bool, vertical: bool) -> FlipTransform:
    return FlipTransform((1 if horizontal else 0) | (2 if vertical else 0))


def locateRawData(f: BinaryIO, sensorFormat: SensorFormat) -> RawLocation:

    """
    Finds where the pixel rows of the raw block start, after verifying the JPEG EOI marker and
    raw signature are at the position implied by the sensor's raw block length

    :param f: Input file, opened in binary mode and seekable
    :param sensorFormat: Sensor format of the file (from its EXIF model)
    :return: RawLocation of the first pixel row
    """

    fileLength = f.seek(0, os.SEEK_END)
    if fileLength < sensorFormat.rawBlockLength + len(JpegEoiMarker) + 1:
        raise FileTooShortError(f"File is {fileLength:,} bytes, too short to contain expected {sensorFormat.rawBlockLength:,}-byte RAW data")

    rawBlockOffset = fileLength - sensorFormat.rawBlockLength

    # the '@' of the signature is the last byte before the raw block, EOI marker precedes it
    markerOffset = rawBlockOffset - len(JpegEoiMarker) - 1
    f.seek(markerOffset)
    window = f.read(len(JpegEoiMarker) + len(RawSignature))

    eoi = window[:len(JpegEoiMarker)]
    if eoi != JpegEoiMarker:
        raise MarkerNotFoundError(f"JPEG EOI not found (want 0x{JpegEoiMarker.hex()}, got 0x{eoi.hex()}, offset {markerOffset:,})")
    signature = window[len(JpegEoiMarker):]
    if signature != RawSignature:
        raise MarkerNotFoundError(f"RAW marker not found (want {RawSignature!r}, got {signature!r}, offset {markerOffset + len(JpegEoiMarker):,})")

    return RawLocation(pixelOffset=rawBlockOffset + RawHeaderLength, sensorFormat=sensorFormat)


def unpackRow(packedRow: bytes, width: int) -> np.ndarray:

    """
    Unpacks one row of 10-bit pixels into 16-bit samples, left-justified (value << 6). Every 5 bytes
    hold 4 pixels - bytes 0..3 are the upper 8 bits of each pixel, byte 4 holds the low 2 bits of
    all four, pixel 0 in bits 7..6 through pixel 3 in bits 1..0

    :param packedRow: Packed row data. Any bytes past the last pixel group (row padding) are ignored
    :param width: Number of pixels in the row
    :return: uint16 numpy array of width samples
    """

    assert RawBitDepth == 10, "unpackRow only handles 10-bit packing"

    countGroups = (width + 3) // 4
    bytesNeeded = countGroups * 5
    if len(packedRow) < bytesNeeded:
        raise TruncatedPixelDataError(f"Packed row has {len(packedRow)} bytes but {width} pixels need {bytesNeeded}")

    groups = np.frombuffer(packedRow, dtype=np.uint8, count=bytesNeeded).reshape(countGroups, 5).astype(np.uint16)
    lowBits = groups[:, 4]

    pixels = np.empty((countGroups, 4), dtype=np.uint16)
    pixels[:, 0] = (groups[:, 0] << 8) | (lowBits & 0b11000000)
    pixels[:, 1] = (groups[:, 1] << 8) | ((lowBits & 0b00110000) << 2)
    pixels[:, 2] = (groups[:, 2] << 8) | ((lowBits & 0b00001100) << 4)
    pixels[:, 3] = (groups[:, 3] << 8) | ((lowBits & 0b00000011) << 6)

    return pixels.reshape(-1)[:width]


def iterUnpackedRows(f: BinaryIO, rawLocation: RawLocation) -> Iterator[Tuple[int, np.ndarray]]:

    """
    Reads and unpacks every pixel row of the raw block, in order

    :param f: Input file, opened in binary mode and seekable
    :param rawLocation: Location of the pixel rows, from locateRawData()
    :return: Iterator of (row index, uint16 samples) tuples
    """

    sensorFormat = rawLocation.sensorFormat
    f.seek(rawLocation.pixelOffset)
    for row in range(sensorFormat.height):
        packedRow = f.read(sensorFormat.rowStride)
        if len(packedRow) != sensorFormat.rowStride:
            rowOffset = rawLocation.pixelOffset + row * sensorFormat.rowStride
            raise TruncatedPixelDataError(f"Short read at row {row} (offset {rowOffset:,}): wanted {sensorFormat.rowStride} bytes, got {len(packedRow)}")
        yield (row, unpackRow(packedRow, sensorFormat.width))


def resolveCfaPattern(basePattern: Sequence[CfaColor], flip: FlipTransform) -> Tuple[CfaColor, CfaColor, CfaColor, CfaColor]:

    """
    Applies a flip to a 2x2 CFA tile (row-major: top-left, top-right, bottom-left, bottom-right)

    :param basePattern: Unflipped tile of the sensor
    :param flip: Flip the image was captured with
    :return: Tile as it appears in the flipped image
    """

    return tuple(basePattern[i] for i in CfaFlipPermutations[flip])
