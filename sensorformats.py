"""
sensorformats.py
Registry of the Raspberry Pi camera sensors whose raw JPEGs we can convert, along with the
logic to pick the registry entry matching a JPEG's EXIF camera model.

The raw block appended to the JPEG has no self-describing geometry - its size and layout are
fixed per sensor, so everything we need to find and unpack the pixels comes from here.
"""

from   enum import Enum
from   typing import NamedTuple, Optional, Sequence, Tuple

from   rawerrors import MissingModelTagError, UnsupportedModelError


#
# types
#
class CfaColor(Enum): RED=0; GREEN=1; BLUE=2; CYAN=3; MAGENTA=4; YELLOW=5; WHITE=6   # values are the TIFF/EP CFAPattern codes

SensorFormat = NamedTuple('SensorFormat', [('width', int), ('height', int), ('rowStride', int), ('rawBlockLength', int),
    ('cfaPattern', Tuple[CfaColor, CfaColor, CfaColor, CfaColor]), ('blackLevel', Tuple[float, float, float, float]), ('modelId', str)])


#
# module data
#
MaxModelLength = 9          # EXIF writers pad/truncate the model string, so we never compare more than this
RawHeaderLength = 32768     # opaque header at the start of the raw block, pixel rows follow it
RawBitDepth = 10            # all supported sensors store 10-bit samples, packed 4 pixels per 5 bytes

CfaPatternNew = (CfaColor.GREEN, CfaColor.BLUE, CfaColor.RED, CfaColor.GREEN)
CfaPatternOld = (CfaColor.BLUE, CfaColor.GREEN, CfaColor.GREEN, CfaColor.RED)   # pre-2014 firmware read rows in the opposite direction

FormatOv5647Old = SensorFormat(width=2592, height=1944, rowStride=3264, rawBlockLength=6404096,
    cfaPattern=CfaPatternOld, blackLevel=(12.0, 12.0, 12.0, 12.0), modelId="ov5647")
FormatOv5647 = SensorFormat(width=2592, height=1944, rowStride=3264, rawBlockLength=6404096,
    cfaPattern=CfaPatternNew, blackLevel=(12.0, 12.0, 12.0, 12.0), modelId="RP_ov5647")
FormatOv5647Upper = SensorFormat(width=2592, height=1944, rowStride=3264, rawBlockLength=6404096,
    cfaPattern=CfaPatternNew, blackLevel=(12.0, 12.0, 12.0, 12.0), modelId="RP_OV5647")
FormatImx219 = SensorFormat(width=3280, height=2464, rowStride=4128, rawBlockLength=10270208,
    cfaPattern=CfaPatternNew, blackLevel=(60.0, 60.0, 60.0, 60.0), modelId="RP_imx219")

# searched in order, first match wins
SupportedFormats: Tuple[SensorFormat, ...] = (
    FormatOv5647Old,
    FormatOv5647,
    FormatOv5647Upper,
    FormatImx219,
)


def validateSensorFormat(sensorFormat: SensorFormat) -> None:

    """
    Verifies the internal consistency of a sensor format entry

    :param sensorFormat: Entry to verify
    :return: None. Raises ValueError if the entry is inconsistent
    """

    if len(sensorFormat.cfaPattern) != 4 or not all(isinstance(c, CfaColor) for c in sensorFormat.cfaPattern):
        raise ValueError(f"{sensorFormat.modelId}: CFA pattern must be 4 CfaColor entries, got {sensorFormat.cfaPattern}")
    if len(sensorFormat.blackLevel) != 4:
        raise ValueError(f"{sensorFormat.modelId}: expected 4 black levels, got {len(sensorFormat.blackLevel)}")
    if len(sensorFormat.modelId) > MaxModelLength:
        raise ValueError(f"{sensorFormat.modelId}: model id longer than {MaxModelLength} characters")
    bytesPerRowNeeded = (sensorFormat.width + 3) // 4 * 5
    if sensorFormat.rowStride < bytesPerRowNeeded:
        raise ValueError(f"{sensorFormat.modelId}: row stride {sensorFormat.rowStride} can't hold {sensorFormat.width} packed pixels ({bytesPerRowNeeded} bytes)")
    if RawHeaderLength + sensorFormat.rowStride * sensorFormat.height > sensorFormat.rawBlockLength:
        raise ValueError(f"{sensorFormat.modelId}: {sensorFormat.height} rows of {sensorFormat.rowStride} bytes don't fit in a {sensorFormat.rawBlockLength}-byte raw block")


def detectSensorFormat(exifModel: Optional[str], formats: Sequence[SensorFormat] = SupportedFormats) -> SensorFormat:

    """
    Finds the sensor format for a camera model string from EXIF. A format matches when its model id
    is a case-sensitive prefix of the EXIF model, looking at no more than MaxModelLength characters

    :param exifModel: EXIF IFD0 Model value, or None if the tag is absent
    :param formats: Formats to search, in priority order
    :return: Matching SensorFormat
    """

    if exifModel is None:
        raise MissingModelTagError("EXIF IFD0 does not contain MODEL tag")

    comparedModel = exifModel[:min(len(exifModel), MaxModelLength)].rstrip("\x00")
    for sensorFormat in formats:
        if comparedModel.startswith(sensorFormat.modelId):
            return sensorFormat

    raise UnsupportedModelError(f"Camera model \"{exifModel.rstrip(chr(0))}\" is not supported. Supported models: {', '.join(f.modelId for f in formats)}")
