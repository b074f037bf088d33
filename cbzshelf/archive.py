"""CBZ page extraction.

Opens a zip buffer, keeps the image entries, orders them the way a reader
expects (``page2.jpg`` before ``page10.jpg``) and decodes them to blobs.
Used by the client reader session and by the server's cover endpoint.
"""

import io
import logging
import re
import zipfile
import zlib
from dataclasses import dataclass

from cbzshelf.errors import FileSystemError, MalformedArchive, NoImagesFound

log = logging.getLogger("cbzshelf")

IMAGE_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
}

# AppleDouble resource forks carry image extensions but no image data
_SKIP_PREFIXES = ("__MACOSX/",)

_DIGITS = re.compile(r"(\d+)")


@dataclass
class ImageBlob:
    name: str
    data: bytes
    content_type: str

    def __len__(self):
        return len(self.data)


def natural_key(name):
    """Sort key treating digit runs as numbers: page2 < page10."""
    parts = _DIGITS.split(name.casefold())
    # int/str alternate at fixed positions, so keys never compare int to str
    return [int(p) if i % 2 else p for i, p in enumerate(parts)], name


def _extension(name):
    # splitext treats ".jpg" as a bare dotfile, so match suffixes directly
    lower = name.lower()
    return next((ext for ext in IMAGE_TYPES if lower.endswith(ext)), None)


def is_image_name(name):
    return _extension(name) is not None


def _content_type(name):
    return IMAGE_TYPES.get(_extension(name), "application/octet-stream")


def _open_zip(archive_bytes):
    try:
        return zipfile.ZipFile(io.BytesIO(archive_bytes))
    except (zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as e:
        raise MalformedArchive(str(e) or "not a zip archive") from e


def _image_entries(zf):
    """Image members of an open archive, in natural order."""
    entries = []
    for info in zf.infolist():
        if info.is_dir():
            continue
        if info.filename.startswith(_SKIP_PREFIXES):
            continue
        if is_image_name(info.filename):
            entries.append(info)
    entries.sort(key=lambda info: natural_key(info.filename))
    return entries


def _decode(zf, info):
    try:
        data = zf.read(info)
    except (zipfile.BadZipFile, zlib.error, NotImplementedError, EOFError) as e:
        raise MalformedArchive(f"{info.filename}: {e}") from e
    return ImageBlob(info.filename, data, _content_type(info.filename))


def list_pages(archive_bytes):
    """Names of the page images, in reading order, without decoding them."""
    with _open_zip(archive_bytes) as zf:
        return [info.filename for info in _image_entries(zf)]


def extract_pages(archive_bytes):
    """Decode every page image of a CBZ buffer, in reading order.

    Returns an empty list when the archive has no images; raises
    MalformedArchive when the buffer is not a valid zip.
    """
    with _open_zip(archive_bytes) as zf:
        return [_decode(zf, info) for info in _image_entries(zf)]


def extract_cover(archive_bytes):
    """Decode only the first page image. Raises NoImagesFound if there is none."""
    with _open_zip(archive_bytes) as zf:
        entries = _image_entries(zf)
        if not entries:
            raise NoImagesFound("No cover image found in comic")
        return _decode(zf, entries[0])


def read_archive(path):
    """Read a local archive into memory."""
    try:
        with open(path, "rb") as f:
            return f.read()
    except OSError as e:
        log.warning("Could not read %s: %s", path, e)
        raise FileSystemError(f"{path}: {e.strerror or e}") from e
