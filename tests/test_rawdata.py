import io

import numpy as np
import pytest

from   conftest import TinyFormat, makePixels, makeRawBlock, packPixels
from   rawdata import (FlipTransform, RawLocation, flipTransformFromFlags, iterUnpackedRows, locateRawData, resolveCfaPattern,
    unpackRow)
from   rawerrors import FileTooShortError, MarkerNotFoundError, TruncatedPixelDataError
from   sensorformats import CfaColor, CfaPatternNew, RawHeaderLength


G, B, R = CfaColor.GREEN, CfaColor.BLUE, CfaColor.RED


def makeStream(jpegLength: int, pixels=None) -> io.BytesIO:
    # filler standing in for the JPEG, ending with the EOI marker
    jpeg = b"\x00" * (jpegLength - 2) + b"\xff\xd9"
    if pixels is None:
        pixels = makePixels()
    return io.BytesIO(jpeg + b"@" + makeRawBlock(pixels))


class TestLocator:
    @pytest.mark.parametrize("jpegLength", [2, 10, 1000])
    def test_finds_pixels(self, jpegLength):
        f = makeStream(jpegLength)
        location = locateRawData(f, TinyFormat)
        assert location == RawLocation(pixelOffset=jpegLength + 1 + RawHeaderLength, sensorFormat=TinyFormat)

    def test_minimum_length(self):
        # EOI + '@' + raw block is the smallest container that can hold the raw block
        f = makeStream(2)
        assert len(f.getvalue()) == TinyFormat.rawBlockLength + 3
        locateRawData(f, TinyFormat)

    def test_file_too_short(self):
        data = makeStream(2).getvalue()[1:]
        with pytest.raises(FileTooShortError):
            locateRawData(io.BytesIO(data), TinyFormat)

    def test_empty_file(self):
        with pytest.raises(FileTooShortError):
            locateRawData(io.BytesIO(b""), TinyFormat)

    @pytest.mark.parametrize("index", [0, 1])
    def test_corrupt_eoi(self, index):
        data = bytearray(makeStream(10).getvalue())
        data[8 + index] ^= 0xff
        with pytest.raises(MarkerNotFoundError) as excInfo:
            locateRawData(io.BytesIO(bytes(data)), TinyFormat)
        assert "EOI" in str(excInfo.value)

    @pytest.mark.parametrize("index", range(5))
    def test_corrupt_signature(self, index):
        data = bytearray(makeStream(10).getvalue())
        data[10 + index] ^= 0x20
        with pytest.raises(MarkerNotFoundError) as excInfo:
            locateRawData(io.BytesIO(bytes(data)), TinyFormat)
        assert "@BRCM" in str(excInfo.value)

    def test_extra_trailing_byte(self):
        f = io.BytesIO(makeStream(10).getvalue() + b"\x00")
        with pytest.raises(MarkerNotFoundError):
            locateRawData(f, TinyFormat)


class TestUnpacking:
    def test_left_justified(self):
        samples = unpackRow(packPixels([1, 512, 1023, 0], 5), 4)
        assert samples.dtype == np.uint16
        assert samples.tolist() == [64, 32768, 65472, 0]

    def test_all_pixels_of_group(self):
        # upper bits in bytes 0..3, low bits of pixel 0 in bits 7..6 of byte 4
        assert unpackRow(bytes([0x01, 0x02, 0x03, 0x04, 0b11100100]), 4).tolist() == [
            (0x01 << 8) | (0b11 << 6), (0x02 << 8) | (0b10 << 6), (0x03 << 8) | (0b01 << 6), 0x04 << 8]

    def test_padding_ignored(self):
        row = packPixels([1023] * 8, 12)
        assert unpackRow(row, 8).tolist() == [65472] * 8
        assert unpackRow(row[:10] + b"\xff\xff", 8).tolist() == [65472] * 8

    def test_width_not_multiple_of_four(self):
        assert unpackRow(packPixels([5, 6, 7, 8, 9, 10], 10), 6).tolist() == [v << 6 for v in (5, 6, 7, 8, 9, 10)]

    def test_short_row(self):
        with pytest.raises(TruncatedPixelDataError):
            unpackRow(b"\x00" * 9, 8)

    def test_rows_round_trip(self):
        pixels = makePixels()
        f = makeStream(10, pixels)
        rows = list(iterUnpackedRows(f, locateRawData(f, TinyFormat)))
        assert [row for row, _ in rows] == list(range(TinyFormat.height))
        assert np.array_equal(np.stack([samples for _, samples in rows]), pixels.astype(np.uint16) << 6)

    def test_truncated_rows(self):
        pixels = makePixels()
        data = b"\xff\xd9@" + makeRawBlock(pixels, countRows=2)
        location = RawLocation(pixelOffset=3 + RawHeaderLength, sensorFormat=TinyFormat)
        rows = iterUnpackedRows(io.BytesIO(data), location)
        assert next(rows)[0] == 0
        assert next(rows)[0] == 1
        with pytest.raises(TruncatedPixelDataError) as excInfo:
            next(rows)
        assert "row 2" in str(excInfo.value)


class TestCfaResolver:
    @pytest.mark.parametrize("horizontal, vertical, expected", [
        (False, False, (G, B, R, G)),
        (True,  False, (B, G, G, R)),
        (False, True,  (R, G, G, B)),
        (True,  True,  (G, R, B, G)),
    ])
    def test_flips(self, horizontal, vertical, expected):
        assert resolveCfaPattern(CfaPatternNew, flipTransformFromFlags(horizontal, vertical)) == expected

    def test_flip_flags(self):
        assert flipTransformFromFlags(False, False) == FlipTransform.NONE
        assert flipTransformFromFlags(True, False) == FlipTransform.HORIZONTAL
        assert flipTransformFromFlags(False, True) == FlipTransform.VERTICAL
        assert flipTransformFromFlags(True, True) == FlipTransform.BOTH

    @pytest.mark.parametrize("flip", list(FlipTransform))
    def test_flip_is_involution(self, flip):
        assert resolveCfaPattern(resolveCfaPattern(CfaPatternNew, flip), flip) == CfaPatternNew
