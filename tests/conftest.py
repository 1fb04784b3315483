"""
Builders for synthetic Raspberry Pi raw JPEGs. Real captures are 6-10MB, so the tests use a
tiny sensor format with the same container layout: JPEG (with EXIF) + '@' + raw block
("BRCM" header, then packed rows)
"""

import io
from   typing import Dict, Optional, Sequence

import numpy as np
import pytest
from   PIL import Image, TiffImagePlugin

from   sensorformats import CfaPatternNew, RawHeaderLength, SensorFormat


TinyModelId = "TEST_cam"
TinyFormat = SensorFormat(width=8, height=4, rowStride=12, rawBlockLength=RawHeaderLength + 12 * 4 + 16,
    cfaPattern=CfaPatternNew, blackLevel=(16.0, 16.0, 16.0, 16.0), modelId=TinyModelId)
TinyFormats = (TinyFormat,)

SampleMakerNote = b"ev=-1 mlux=-1 exp=9969 ag=256 focus=255 gain_r=2.0 gain_b=0.5 greenness=0 ccm=6022,-2314,394,-936,4728,310,300,-4324,8126,0,0,0\x00"


def packPixels(values: Sequence[int], rowStride: int) -> bytes:

    """
    Packs 10-bit values 4 per 5 bytes, the inverse of rawdata.unpackRow(), padding the row to rowStride
    """

    values = list(values) + [0] * (-len(values) % 4)
    packed = bytearray()
    for i in range(0, len(values), 4):
        group = values[i:i+4]
        packed += bytes(v >> 2 for v in group)
        packed.append(sum((v & 0b11) << (6 - 2 * j) for j, v in enumerate(group)))
    return bytes(packed.ljust(rowStride, b"\x00"))


def makePixels(sensorFormat: SensorFormat = TinyFormat) -> np.ndarray:
    # distinct 10-bit values that exercise every bit position, including the extremes
    count = sensorFormat.width * sensorFormat.height
    pixels = (np.arange(count, dtype=np.uint32) * 37) % 1024
    pixels[0] = 0
    pixels[-1] = 1023
    return pixels.reshape(sensorFormat.height, sensorFormat.width).astype(np.uint16)


def makeRawBlock(pixels: np.ndarray, sensorFormat: SensorFormat = TinyFormat, countRows: Optional[int] = None) -> bytes:

    """
    Builds the raw block: header starting with "BRCM", then packed rows, zero-padded to the
    format's raw block length

    :param countRows: Number of rows to include, for truncated containers. Default is all of them
    """

    header = (b"BRCMo5647" + b"\x00" * RawHeaderLength)[:RawHeaderLength]
    rows = b"".join(packPixels(row.tolist(), sensorFormat.rowStride) for row in pixels[:countRows])
    block = header + rows
    if countRows is None:
        block = block.ljust(sensorFormat.rawBlockLength, b"\x00")
    return block


def makeJpeg(model: Optional[str] = TinyModelId, make: str = "RaspberryPi", makerNote: Optional[bytes] = SampleMakerNote,
        exifTags: Optional[Dict[int, object]] = None) -> bytes:

    """
    Creates a small JPEG carrying IFD0 Make/Model and an Exif IFD
    """

    exif = Image.Exif()
    exif[0x010F] = make
    if model is not None:
        exif[0x0110] = model
    exifIfd = {
        0x829A: TiffImagePlugin.IFDRational(1, 100),   # ExposureTime
        0x829D: TiffImagePlugin.IFDRational(29, 10),   # FNumber
        0x8827: 100,                                   # ISOSpeedRatings
        0x9003: "2014:05:01 12:00:00",                 # DateTimeOriginal
    }
    if makerNote is not None:
        exifIfd[0x927C] = makerNote
    if exifTags:
        exifIfd.update(exifTags)
    exif[0x8769] = exifIfd

    buffer = io.BytesIO()
    Image.new("RGB", (16, 16), (128, 64, 32)).save(buffer, "JPEG", exif=exif)
    return buffer.getvalue()


def makeContainer(pixels: Optional[np.ndarray] = None, sensorFormat: SensorFormat = TinyFormat, countRows: Optional[int] = None, **jpegArgs) -> bytes:
    if pixels is None:
        pixels = makePixels(sensorFormat)
    return makeJpeg(**jpegArgs) + b"@" + makeRawBlock(pixels, sensorFormat, countRows)


@pytest.fixture
def rawJpegFile(tmp_path):
    path = tmp_path / "image.jpg"
    path.write_bytes(makeContainer())
    return path
