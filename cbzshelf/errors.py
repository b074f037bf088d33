"""Error types shared by the archive reader, catalog client and server."""


class ComicError(Exception):
    """Base class for every cbzshelf failure."""


class MalformedArchive(ComicError):
    """The buffer is not a readable zip archive."""


class NoImagesFound(ComicError):
    """The archive holds no page images."""


class FileSystemError(ComicError):
    """An archive on disk is missing or unreadable."""


class AuthError(ComicError):
    """Raised when a server needs a (different) password."""

    def __init__(self, server_url, message=""):
        super().__init__(message or server_url)
        self.server_url = server_url


class PasswordRequired(AuthError):
    pass


class AuthFailed(AuthError):
    pass


class Unreachable(ComicError):
    """Network failure or non-success response from a catalog server."""

    def __init__(self, server_url, message):
        super().__init__(f"Could not connect to server: {message}")
        self.server_url = server_url
        self.reason = message
