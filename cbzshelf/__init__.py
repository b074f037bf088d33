"""cbzshelf -- CBZ comic library: page extraction, folder index, catalog client and server."""

from cbzshelf.archive import ImageBlob, extract_cover, extract_pages, natural_key
from cbzshelf.catalog import CatalogClient, ReaderSession
from cbzshelf.errors import (
    AuthError,
    AuthFailed,
    ComicError,
    FileSystemError,
    MalformedArchive,
    NoImagesFound,
    PasswordRequired,
    Unreachable,
)
from cbzshelf.library import (
    ComicRecord,
    FolderNode,
    Library,
    LocalSource,
    RemoteSource,
    build_tree,
    filter_tree,
)
from cbzshelf.store import CredentialState, CredentialStore, JsonCredentialStore, MemoryCredentialStore

__version__ = "1.0.0"
