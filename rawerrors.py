"""
rawerrors.py
Exceptions raised while converting a Raspberry Pi raw JPEG into a DNG. Every failure that
stops the conversion of a single file derives from ConversionError, so the batch loop can
report it and move on to the next file.
"""


class ConversionError(Exception):
    """Base class for all per-file conversion failures"""


class ExifReadError(ConversionError):
    """Input has no readable EXIF data, hence no raw data"""


class MissingModelTagError(ConversionError):
    """EXIF IFD0 doesn't contain a Model tag"""


class UnsupportedModelError(ConversionError):
    """EXIF Model doesn't match any entry in the sensor format registry"""


class FileTooShortError(ConversionError):
    """File is too short to contain the raw block expected for its sensor"""


class MarkerNotFoundError(ConversionError):
    """JPEG EOI marker and/or the @BRCM raw signature aren't where they're expected"""


class CalibrationParseError(ConversionError):
    """Color matrix or white balance gains couldn't be parsed"""


class TruncatedPixelDataError(ConversionError):
    """Fewer packed pixel bytes are available than the sensor format requires"""


class DivisionByZeroError(ConversionError, ZeroDivisionError):
    """EXIF rational value with a zero denominator"""


class AllocationError(ConversionError):
    """Unable to allocate the image buffer"""


class WriterError(ConversionError):
    """The DNG writer rejected a tag or failed writing the output file"""


class ExifValueError(ConversionError):
    """EXIF tag carried over to the DNG holds a value of the wrong type"""
