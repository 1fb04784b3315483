import pytest

from   rawerrors import MissingModelTagError, UnsupportedModelError
from   sensorformats import (CfaColor, CfaPatternNew, CfaPatternOld, FormatImx219, FormatOv5647, FormatOv5647Old, FormatOv5647Upper,
    SupportedFormats, detectSensorFormat, validateSensorFormat)


class TestRegistry:
    def test_entries_are_consistent(self):
        for sensorFormat in SupportedFormats:
            validateSensorFormat(sensorFormat)

    def test_geometry(self):
        assert (FormatOv5647.width, FormatOv5647.height, FormatOv5647.rowStride, FormatOv5647.rawBlockLength) == (2592, 1944, 3264, 6404096)
        assert (FormatImx219.width, FormatImx219.height, FormatImx219.rowStride, FormatImx219.rawBlockLength) == (3280, 2464, 4128, 10270208)
        assert FormatImx219.blackLevel == (60.0,) * 4
        assert FormatOv5647Old.blackLevel == (12.0,) * 4

    def test_cfa_patterns(self):
        assert FormatOv5647Old.cfaPattern == (CfaColor.BLUE, CfaColor.GREEN, CfaColor.GREEN, CfaColor.RED)
        for sensorFormat in (FormatOv5647, FormatOv5647Upper, FormatImx219):
            assert sensorFormat.cfaPattern == (CfaColor.GREEN, CfaColor.BLUE, CfaColor.RED, CfaColor.GREEN)
        assert CfaPatternNew != CfaPatternOld

    def test_validate_rejects_inconsistent_entry(self):
        with pytest.raises(ValueError):
            validateSensorFormat(FormatOv5647._replace(rawBlockLength=1000))
        with pytest.raises(ValueError):
            validateSensorFormat(FormatOv5647._replace(rowStride=100))
        with pytest.raises(ValueError):
            validateSensorFormat(FormatOv5647._replace(cfaPattern=(CfaColor.RED, CfaColor.GREEN, CfaColor.BLUE)))


class TestDetector:
    @pytest.mark.parametrize("model, expected", [
        ("RP_ov5647", FormatOv5647),
        ("RP_OV5647", FormatOv5647Upper),
        ("RP_imx219", FormatImx219),
        ("ov5647", FormatOv5647Old),
        ("RP_imx219\x00\x00", FormatImx219),
        ("RP_imx219_extra_suffix", FormatImx219),   # only the first 9 characters are compared
    ])
    def test_known_models(self, model, expected):
        assert detectSensorFormat(model) is expected

    def test_match_is_case_sensitive(self):
        with pytest.raises(UnsupportedModelError):
            detectSensorFormat("RP_IMX219")

    def test_unknown_model(self):
        with pytest.raises(UnsupportedModelError) as excInfo:
            detectSensorFormat("Canon EOS")
        assert "RP_imx219" in str(excInfo.value)

    def test_model_shorter_than_any_id(self):
        with pytest.raises(UnsupportedModelError):
            detectSensorFormat("RP_")

    def test_missing_model(self):
        with pytest.raises(MissingModelTagError):
            detectSensorFormat(None)

    def test_first_match_wins(self):
        formats = (FormatOv5647._replace(modelId="RP_"), FormatImx219)
        assert detectSensorFormat("RP_imx219", formats) is formats[0]

    def test_custom_registry(self):
        formats = (FormatImx219._replace(modelId="TEST_cam"),)
        assert detectSensorFormat("TEST_cam", formats).modelId == "TEST_cam"
        with pytest.raises(UnsupportedModelError):
            detectSensorFormat("RP_imx219", formats)
