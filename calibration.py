"""
calibration.py
Derives the color calibration written to the DNG - camera color matrix, as-shot white balance
neutral, and black/white levels.

The matrix and white balance come from (in priority order) a user-supplied matrix, the
key=value pairs the Raspberry Pi firmware leaves in the EXIF MakerNote, or a default matrix.
"""

from   enum import Enum
import re
from   typing import List, NamedTuple, Optional, Sequence, Tuple, Union

from   rawerrors import CalibrationParseError
from   sensorformats import RawBitDepth, SensorFormat


#
# types
#
class CalibrationSource(Enum): OVERRIDE=0; MAKERNOTE=1; DEFAULT=2

CalibrationProfile = NamedTuple('CalibrationProfile', [('colorMatrix', Tuple[float, ...]), ('neutral', Tuple[float, float, float]),
    ('blackLevel', Tuple[float, ...]), ('whiteLevel', int), ('source', CalibrationSource)])


#
# module data
#

# default color matrix (XYZ -> camera) from dcraw
DefaultColorMatrix = (
    #  R        G        B
     1.2782, -0.4059, -0.0379,  # R
    -0.0478,  0.9066,  0.1413,  # G
     0.1340,  0.1513,  0.5176,  # B
)
DefaultNeutral = (1.0, 1.0, 1.0)
FloatPattern = r'[-+]?(?:\d+\.?\d*|\.\d+)(?:[eE][-+]?\d+)?'


def normalizeMatrix(matrix: Sequence[float]) -> Tuple[float, ...]:

    """
    Scales a matrix down to unity if it isn't already normalized - accepts both normalized matrices and
    fixed-point ones such as the firmware's (ex: 6022,-2314,394,...)

    :param matrix: Matrix elements
    :return: Elements divided by the largest magnitude if it exceeds 1.0, otherwise unchanged
    """

    maxMagnitude = max(abs(x) for x in matrix)
    if maxMagnitude > 1.0:
        return tuple(x / maxMagnitude for x in matrix)
    return tuple(matrix)


def parseMatrix(string: str) -> Tuple[float, ...]:

    """
    Parses a 3x3 matrix from 9 comma-separated floats. Values past the 9th are ignored (the
    firmware's ccm carries 3 offsets after the matrix)

    :param string: Comma-separated values
    :return: 9 normalized matrix elements
    """

    m = re.match(rf'\s*({FloatPattern}(?:\s*,\s*{FloatPattern}){{8}})', string)
    if m is None:
        raise CalibrationParseError(f"Expected 9 comma-separated numbers for color matrix but got \"{string.strip()}\"")
    return normalizeMatrix([float(item) for item in m.group(1).split(',')])


def neutralFromGains(gainRed: float, gainGreen: float, gainBlue: float) -> Tuple[float, float, float]:

    """
    Converts white balance gains into an as-shot neutral, normalized so components sum to 1

    :return: (red, green, blue) neutral
    """

    inverses = (1 / gainRed, 1 / gainGreen, 1 / gainBlue)
    total = sum(inverses)
    return tuple(x / total for x in inverses)


def parseMakerNote(makerNote: Union[bytes, str]) -> Tuple[Tuple[float, ...], Tuple[float, float, float]]:

    """
    Extracts the color matrix and white balance from the MakerNote written by the Raspberry Pi
    firmware. Sample content (abridged):

        ev=-1 mlux=-1 exp=9969 ag=256 focus=255 gain_r=1.414 gain_b=1.699 greenness=0 ccm=6022,-2314,394,-936,4728,310,300,-4324,8126,0,0,0

    Green gain isn't reported by the firmware and is taken as 1.0

    :param makerNote: MakerNote content
    :return: (color matrix, neutral)
    """

    if isinstance(makerNote, bytes):
        makerNote = makerNote.decode("ascii", errors="replace")
    makerNote = makerNote.rstrip("\x00")

    m = re.search(r'ccm=', makerNote)
    if m is None:
        raise CalibrationParseError("MakerNote doesn't contain ccm=")
    colorMatrix = parseMatrix(makerNote[m.end():])

    gains: List[float] = []
    for fieldName in ("gain_r", "gain_b"):
        m = re.search(rf'{fieldName}=\s*({FloatPattern})', makerNote)
        if m is None:
            raise CalibrationParseError(f"MakerNote doesn't contain {fieldName}=")
        gain = float(m.group(1))
        if gain == 0:
            raise CalibrationParseError(f"MakerNote {fieldName} is zero")
        gains.append(gain)

    return (colorMatrix, neutralFromGains(gains[0], 1.0, gains[1]))


def defaultCalibration(sensorFormat: SensorFormat) -> CalibrationProfile:
    return CalibrationProfile(colorMatrix=DefaultColorMatrix, neutral=DefaultNeutral,
        blackLevel=tuple(sensorFormat.blackLevel), whiteLevel=(1 << RawBitDepth) - 1, source=CalibrationSource.DEFAULT)


def resolveCalibration(sensorFormat: SensorFormat, makerNote: Optional[Union[bytes, str]] = None, overrideMatrix: Optional[str] = None) -> CalibrationProfile:

    """
    Builds the calibration profile for one file

    :param sensorFormat: Sensor format of the file, source of the black level
    :param makerNote: EXIF MakerNote content, or None if the file has none
    :param overrideMatrix: User-specified matrix as 9 comma-separated floats, or None
    :return: CalibrationProfile. Raises CalibrationParseError if the selected source can't be parsed;
    callers fall back to defaultCalibration() in that case
    """

    profile = defaultCalibration(sensorFormat)

    if overrideMatrix is not None:
        return profile._replace(colorMatrix=parseMatrix(overrideMatrix), source=CalibrationSource.OVERRIDE)

    if makerNote:
        colorMatrix, neutral = parseMakerNote(makerNote)
        return profile._replace(colorMatrix=colorMatrix, neutral=neutral, source=CalibrationSource.MAKERNOTE)

    return profile
