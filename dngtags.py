"""
dngtags.py
Builds the complete set of TIFF/DNG tags for the output file: image structure, CFA layout,
color calibration, DNG identification, and the subset of the JPEG's EXIF we carry over.
No file I/O happens here - the tag set is handed to dngwriter as-is.
"""

import datetime
from   enum import Enum
import numbers
import os
from   typing import Any, Dict, Iterator, List, NamedTuple, Optional, Sequence

from   calibration import CalibrationProfile
from   exifsource import ExifDirectory, ExifSource
from   rawerrors import DivisionByZeroError, ExifValueError
from   sensorformats import CfaColor, RawBitDepth, SensorFormat


#
# types
#
class TagType(Enum): BYTE=1; ASCII=2; SHORT=3; LONG=4; RATIONAL=5; UNDEFINED=7; SRATIONAL=10   # values are the TIFF field type codes
class TagDirectory(Enum): IFD0=0; EXIF=1

DngTag = NamedTuple('DngTag', [('code', int), ('name', str), ('tagType', TagType), ('value', Any), ('directory', TagDirectory)])
ExifPassthrough = NamedTuple('ExifPassthrough', [('sourceDirectory', ExifDirectory), ('sourceCode', int), ('code', int), ('name', str), ('tagType', TagType), ('directory', TagDirectory)])


#
# module data
#
SoftwareName = "rpiraw2dng"
AppVersion = "1.00"
SoftwareId = f"{SoftwareName} v{AppVersion}"
DngVersion = (1, 1, 0, 0)
DngBackwardVersion = (1, 0, 0, 0)
PhotometricCfa = 32803
IlluminantD65 = 21
BitsPerSample = 16

# tags copied from the source EXIF. Anything not listed here (JPEG-only tags like ColorSpace,
# PixelXDimension, ComponentsConfiguration, the interop IFD, thumbnails) is dropped
ExifPassthroughTags = (
    ExifPassthrough(ExifDirectory.IFD0, 0x010F, 0x010F, "Make",              TagType.ASCII,     TagDirectory.IFD0),
    ExifPassthrough(ExifDirectory.IFD0, 0x0110, 0x0110, "Model",             TagType.ASCII,     TagDirectory.IFD0),
    ExifPassthrough(ExifDirectory.EXIF, 0x829A, 0x829A, "ExposureTime",      TagType.RATIONAL,  TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x829D, 0x829D, "FNumber",           TagType.RATIONAL,  TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x8822, 0x8822, "ExposureProgram",   TagType.SHORT,     TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x8827, 0x8827, "ISOSpeedRatings",   TagType.SHORT,     TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x9003, 0x9003, "DateTimeOriginal",  TagType.ASCII,     TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x9004, 0x9004, "DateTimeDigitized", TagType.ASCII,     TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x9201, 0x9201, "ShutterSpeedValue", TagType.SRATIONAL, TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x9202, 0x9202, "ApertureValue",     TagType.RATIONAL,  TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x9203, 0x9203, "BrightnessValue",   TagType.SRATIONAL, TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x9205, 0x9205, "MaxApertureValue",  TagType.RATIONAL,  TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x9207, 0x9207, "MeteringMode",      TagType.SHORT,     TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x9209, 0x9209, "Flash",             TagType.SHORT,     TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x920A, 0x920A, "FocalLength",       TagType.RATIONAL,  TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0x927C, 0x927C, "MakerNote",         TagType.UNDEFINED, TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0xA402, 0xA402, "ExposureMode",      TagType.SHORT,     TagDirectory.EXIF),
    ExifPassthrough(ExifDirectory.EXIF, 0xA403, 0xA403, "WhiteBalance",      TagType.SHORT,     TagDirectory.EXIF),
)


class DngTagSet:

    """
    Ordered collection of DNG tags keyed by tag code. A tag can only be set once
    """

    def __init__(self):
        self.tags: Dict[int, DngTag] = {}

    def set(self, code: int, name: str, tagType: TagType, value: Any, directory: TagDirectory = TagDirectory.IFD0) -> None:
        if code in self.tags:
            raise ValueError(f"Tag {name} (0x{code:04x}) already set to {self.tags[code].value!r}")
        self.tags[code] = DngTag(code=code, name=name, tagType=tagType, value=value, directory=directory)

    def get(self, code: int) -> Optional[DngTag]:
        return self.tags.get(code)

    def value(self, code: int) -> Any:
        return self.tags[code].value

    def inDirectory(self, directory: TagDirectory) -> List[DngTag]:
        return [tag for tag in self.tags.values() if tag.directory == directory]

    def __contains__(self, code: int) -> bool:
        return code in self.tags

    def __iter__(self) -> Iterator[DngTag]:
        return iter(self.tags.values())

    def __len__(self) -> int:
        return len(self.tags)


def rationalToFloat(numerator: int, denominator: int) -> float:
    if denominator == 0:
        raise DivisionByZeroError(f"EXIF rational {numerator}/{denominator} has a zero denominator")
    return numerator / denominator


def convertExifValue(value: Any, tagType: TagType, name: str) -> Any:

    """
    Converts a value as decoded by the EXIF reader into the form the DNG tag set stores

    :param value: EXIF value (Pillow IFDRational, int, str, bytes or a tuple of those)
    :param tagType: TIFF type the value will be written as
    :param name: Tag name, for error messages
    :return: float for rationals, int for shorts, str for ASCII, bytes for UNDEFINED
    """

    def wrongType(expected: str) -> ExifValueError:
        return ExifValueError(f"EXIF {name} should be {expected} but is {type(value).__name__} {value!r}")

    if tagType in (TagType.RATIONAL, TagType.SRATIONAL):
        if isinstance(value, tuple) and len(value) == 2 and all(isinstance(x, int) for x in value):
            # raw (numerator, denominator) pair
            numerator, denominator = value
        else:
            rational = value[0] if isinstance(value, (tuple, list)) and value else value
            if not isinstance(rational, numbers.Rational):
                raise wrongType("a rational")
            numerator, denominator = rational.numerator, rational.denominator
        try:
            return rationalToFloat(numerator, denominator)
        except DivisionByZeroError as e:
            raise DivisionByZeroError(f"{name}: {e}") from e
    if tagType == TagType.SHORT:
        # ISOSpeedRatings may hold several values, only the first one is used
        short = value[0] if isinstance(value, (tuple, list)) and value else value
        if not isinstance(short, int) or not 0 <= short <= 0xFFFF:
            raise wrongType("a 16-bit integer")
        return short
    if tagType == TagType.ASCII:
        if isinstance(value, bytes):
            value = value.decode("ascii", errors="replace")
        if not isinstance(value, str):
            raise wrongType("a string")
        return value.rstrip("\x00")
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, (tuple, list)) and all(isinstance(x, int) and 0 <= x <= 0xFF for x in value):
        return bytes(value)
    raise wrongType("bytes")


def scaleLevelToSampleDomain(level: float) -> float:
    # samples are left-justified in 16 bits, so levels measured in sensor units scale with them
    return level * (1 << (BitsPerSample - RawBitDepth))


def formatDngDateTime(when: datetime.datetime) -> str:
    return when.strftime("%Y:%m:%d %H:%M:%S")


def synthesizeDngTags(sensorFormat: SensorFormat, cfaPattern: Sequence[CfaColor], calibration: CalibrationProfile, exif: ExifSource,
        originalFilename: Optional[str] = None, creationTime: Optional[datetime.datetime] = None) -> DngTagSet:

    """
    Composes the DNG tag set for one file

    :param sensorFormat: Sensor format, source of the image geometry
    :param cfaPattern: Resolved (flipped) 2x2 CFA tile
    :param calibration: Color calibration for the file
    :param exif: EXIF of the source JPEG
    :param originalFilename: Input filename, recorded as OriginalRawFileName if specified
    :param creationTime: DateTime of the DNG. Default is now (local time)
    :return: DngTagSet
    """

    tagSet = DngTagSet()

    #
    # image structure
    #
    tagSet.set(254,   "NewSubfileType",            TagType.LONG,      0)        # full resolution, not a mask or page
    tagSet.set(256,   "ImageWidth",                TagType.LONG,      sensorFormat.width)
    tagSet.set(257,   "ImageLength",               TagType.LONG,      sensorFormat.height)
    tagSet.set(258,   "BitsPerSample",             TagType.SHORT,     BitsPerSample)
    tagSet.set(259,   "Compression",               TagType.SHORT,     1)        # none
    tagSet.set(262,   "PhotometricInterpretation", TagType.SHORT,     PhotometricCfa)
    tagSet.set(274,   "Orientation",               TagType.SHORT,     1)        # top-left
    tagSet.set(277,   "SamplesPerPixel",           TagType.SHORT,     1)
    tagSet.set(278,   "RowsPerStrip",              TagType.LONG,      1)
    tagSet.set(284,   "PlanarConfiguration",       TagType.SHORT,     1)        # contiguous

    #
    # CFA layout
    #
    tagSet.set(33421, "CFARepeatPatternDim",       TagType.SHORT,     (2, 2))
    tagSet.set(33422, "CFAPattern",                TagType.BYTE,      tuple(color.value for color in cfaPattern))
    tagSet.set(50710, "CFAPlaneColor",             TagType.BYTE,      (CfaColor.RED.value, CfaColor.GREEN.value, CfaColor.BLUE.value))

    #
    # DNG identification
    #
    tagSet.set(305,   "Software",                  TagType.ASCII,     SoftwareId)
    tagSet.set(306,   "DateTime",                  TagType.ASCII,     formatDngDateTime(creationTime or datetime.datetime.now()))
    tagSet.set(50706, "DNGVersion",                TagType.BYTE,      DngVersion)
    tagSet.set(50707, "DNGBackwardVersion",        TagType.BYTE,      DngBackwardVersion)
    tagSet.set(50708, "UniqueCameraModel",         TagType.ASCII,     sensorFormat.modelId)
    tagSet.set(50741, "MakerNoteSafety",           TagType.SHORT,     1)        # safe to copy MakerNote
    if originalFilename:
        tagSet.set(50827, "OriginalRawFileName",   TagType.BYTE,      os.path.basename(originalFilename).encode("utf-8") + b"\x00")

    #
    # color calibration
    #
    tagSet.set(50713, "BlackLevelRepeatDim",       TagType.SHORT,     (2, 2))
    tagSet.set(50714, "BlackLevel",                TagType.RATIONAL,  tuple(scaleLevelToSampleDomain(x) for x in calibration.blackLevel))
    tagSet.set(50717, "WhiteLevel",                TagType.LONG,      int(scaleLevelToSampleDomain(calibration.whiteLevel)))
    tagSet.set(50721, "ColorMatrix1",              TagType.SRATIONAL, tuple(calibration.colorMatrix))
    tagSet.set(50728, "AsShotNeutral",             TagType.RATIONAL,  tuple(calibration.neutral))
    tagSet.set(50778, "CalibrationIlluminant1",    TagType.SHORT,     IlluminantD65)

    #
    # EXIF passthrough
    #
    for passthrough in ExifPassthroughTags:
        value = exif.get(passthrough.sourceDirectory, passthrough.sourceCode)
        if value is None:
            continue
        tagSet.set(passthrough.code, passthrough.name, passthrough.tagType,
            convertExifValue(value, passthrough.tagType, passthrough.name), passthrough.directory)

    return tagSet
