"""
exifsource.py
Read-only access to the EXIF tags of the input JPEG, backed by Pillow's EXIF parser
"""

from   enum import Enum
from   typing import Any, Optional

from   PIL import ExifTags, Image, UnidentifiedImageError

from   rawerrors import ExifReadError


#
# types
#
class ExifDirectory(Enum): IFD0=0; EXIF=1


#
# module data
#
TagModel = 0x0110
TagMakerNote = 0x927C


class ExifSource:

    """
    Tag lookup over IFD0 and the Exif IFD of an image. Values are returned as Pillow decodes
    them - str for ASCII, int for SHORT/LONG, IFDRational for RATIONAL/SRATIONAL, bytes for UNDEFINED
    """

    def __init__(self, exif: Image.Exif):
        self.ifd0 = exif
        self.exifIfd = exif.get_ifd(ExifTags.IFD.Exif)

    @classmethod
    def fromFile(cls, filename: str) -> "ExifSource":
        try:
            with Image.open(filename) as image:
                exif = image.getexif()
        except (OSError, UnidentifiedImageError) as e:
            raise ExifReadError(f"Unable to read EXIF data: {e}") from e
        if not exif:
            raise ExifReadError("No EXIF data found, hence no RAW data")
        return cls(exif)

    def getIfd0(self, tag: int) -> Optional[Any]:
        return self.ifd0.get(tag)

    def getExif(self, tag: int) -> Optional[Any]:
        return self.exifIfd.get(tag)

    def get(self, directory: ExifDirectory, tag: int) -> Optional[Any]:
        if directory == ExifDirectory.IFD0:
            return self.getIfd0(tag)
        return self.getExif(tag)

    def entryCount(self, directory: ExifDirectory) -> int:
        if directory == ExifDirectory.IFD0:
            # Pillow lists the Exif IFD pointer as an IFD0 entry, same as it's stored in the file
            return len(self.ifd0)
        return len(self.exifIfd)

    @property
    def model(self) -> Optional[str]:
        model = self.getIfd0(TagModel)
        if isinstance(model, bytes):
            model = model.decode("ascii", errors="replace")
        return model

    @property
    def makerNote(self) -> Optional[bytes]:
        return self.getExif(TagMakerNote)
