"""Client for remote cbzshelf catalog servers.

Handles the password probe, Basic-Auth catalog listing, cover fetching
(retried, in small concurrent batches) and archive download, and keeps the
shared Library and CredentialStore in step with what the servers report.
"""

import base64
import http.client
import json
import logging
import ssl
import time
import urllib.error
import urllib.request
from concurrent.futures import ThreadPoolExecutor
from urllib.parse import quote

import certifi

from cbzshelf.archive import extract_pages, read_archive
from cbzshelf.errors import AuthFailed, ComicError, PasswordRequired, Unreachable
from cbzshelf.library import REMOTE, ComicRecord, Library, RemoteSource
from cbzshelf.store import MemoryCredentialStore

log = logging.getLogger("cbzshelf")

# SSL context using certifi CA bundle (frozen builds lack system certs)
SSL_CTX = ssl.create_default_context(cafile=certifi.where())

USER_AGENT = "cbzshelf/1.0"
REQUEST_TIMEOUT = 15
ARCHIVE_TIMEOUT = 120
COVER_RETRIES = 3
COVER_BATCH_SIZE = 5
RETRY_BASE_DELAY = 1.0  # seconds; doubles per attempt


def http_get(url, headers=None, timeout=REQUEST_TIMEOUT):
    """GET a URL. Returns (status, body); network failures raise OSError."""
    req = urllib.request.Request(url, headers={"User-Agent": USER_AGENT, **(headers or {})})
    try:
        with urllib.request.urlopen(req, timeout=timeout, context=SSL_CTX) as resp:
            return resp.status, resp.read()
    except urllib.error.HTTPError as e:
        body = e.read() or b""
        e.close()
        return e.code, body


def normalize_url(server_url):
    return server_url.strip().rstrip("/")


def basic_auth(password):
    token = base64.b64encode(f":{password}".encode()).decode()
    return {"Authorization": f"Basic {token}"}


def comic_url(server_url, rel_path, kind="comics"):
    return f"{server_url}/{kind}/{quote(rel_path)}"


def record_from_server(server_url, item):
    """Map one /comics entry onto a remote ComicRecord."""
    file_name = item["file_name"]
    folder_path = [str(s) for s in (item.get("folder_path") or [])]
    rel_path = "/".join(folder_path + [file_name])
    name = item.get("name") or file_name.rsplit(".", 1)[0]
    return ComicRecord(
        id=f"{server_url}/comics/{rel_path}",
        name=name,
        kind=REMOTE,
        source=RemoteSource(server_url, rel_path),
        folder_path=folder_path,
        series=item.get("series"),
        cover=None,
        progress=0,
    )


class CatalogClient:

    def __init__(self, store=None, library=None, http_get=http_get, sleep=time.sleep):
        self.store = store if store is not None else MemoryCredentialStore()
        self.library = library if library is not None else Library()
        self._http_get = http_get
        self._sleep = sleep

    def _password(self, server_url, password=None):
        return password or self.store.load().password_for(server_url)

    def _get(self, server_url, url, password=None, accept=None, timeout=REQUEST_TIMEOUT):
        headers = basic_auth(password) if password else {}
        if accept:
            headers["Accept"] = accept
        try:
            status, body = self._http_get(url, headers=headers, timeout=timeout)
        except (OSError, ValueError, http.client.HTTPException) as e:
            reason = getattr(e, "reason", None) or e
            raise Unreachable(server_url, str(reason)) from e
        if status == 401:
            raise AuthFailed(server_url, "Invalid password")
        if not 200 <= status < 300:
            raise Unreachable(server_url, f"HTTP {status}")
        return body

    def requires_password(self, server_url):
        body = self._get(server_url, f"{server_url}/auth/check")
        try:
            return bool(json.loads(body).get("requires_password"))
        except (ValueError, AttributeError) as e:
            raise Unreachable(server_url, "invalid auth check response") from e

    def list_catalog(self, server_url, password=None):
        """Fetch a server's catalog as ComicRecords.

        Raises PasswordRequired when the server is gated and no password is
        supplied or stored (without requesting /comics), AuthFailed on 401,
        and Unreachable for any other failure.
        """
        server_url = normalize_url(server_url)
        password = self._password(server_url, password)
        if self.requires_password(server_url) and not password:
            raise PasswordRequired(server_url, "Password required")
        body = self._get(server_url, f"{server_url}/comics", password)
        try:
            items = json.loads(body)
            comics = [record_from_server(server_url, item) for item in items]
        except (ValueError, KeyError, TypeError) as e:
            raise Unreachable(server_url, "invalid catalog response") from e
        log.info("Listed %d comics from %s", len(comics), server_url)
        return comics

    # ── Server bookkeeping ──

    def add_server(self, server_url, password=None):
        """List a server, then remember it and merge its comics into the library."""
        server_url = normalize_url(server_url)
        comics = self.list_catalog(server_url, password)
        self.library.replace_server(server_url, comics)
        self.store.save(self.store.load().with_server(server_url, password))
        return comics

    def refresh_server(self, server_url):
        return self.add_server(server_url)

    def remove_server(self, server_url):
        server_url = normalize_url(server_url)
        self.library.remove_server(server_url)
        self.store.save(self.store.load().without_server(server_url))

    def load_saved_servers(self):
        """Load every saved server independently. Returns {url: error} for failures."""
        failures = {}
        for server_url in self.store.load().servers:
            try:
                comics = self.list_catalog(server_url)
            except ComicError as e:
                log.warning("Skipping %s: %s", server_url, e)
                failures[server_url] = e
                continue
            self.library.replace_server(server_url, comics)
        return failures

    # ── Covers ──

    def fetch_cover(self, comic):
        src = comic.source
        url = comic_url(src.server_url, src.rel_path, "covers")
        return self._get(src.server_url, url, self._password(src.server_url))

    def fetch_cover_with_retry(self, comic, retries=COVER_RETRIES, base_delay=RETRY_BASE_DELAY):
        """Fetch a cover with exponential backoff. Returns None once retries run out."""
        for attempt in range(retries):
            try:
                return self.fetch_cover(comic)
            except ComicError as e:
                log.warning("Attempt %d failed to load cover for %s: %s", attempt + 1, comic.name, e)
                if attempt < retries - 1:
                    self._sleep(base_delay * 2 ** attempt)
        log.error("Failed to load cover for %s after %d attempts", comic.name, retries)
        return None

    def refresh_covers(self, comics=None, batch_size=COVER_BATCH_SIZE):
        """Fetch missing remote covers, at most batch_size at a time.

        Each batch finishes (success or exhausted retries) before the next
        starts. Returns the number of covers stored.
        """
        if comics is None:
            comics = self.library.comics
        pending = [c for c in comics if c.kind == REMOTE and c.cover is None]
        stored = 0
        if not pending:
            return stored
        with ThreadPoolExecutor(max_workers=batch_size) as pool:
            for i in range(0, len(pending), batch_size):
                batch = pending[i:i + batch_size]
                for comic, cover in zip(batch, pool.map(self.fetch_cover_with_retry, batch)):
                    if cover is not None and self.library.set_cover(comic.id, cover):
                        stored += 1
        log.info("Covers loaded: %d/%d", stored, len(pending))
        return stored

    # ── Archives ──

    def fetch_archive(self, comic):
        src = comic.source
        url = comic_url(src.server_url, src.rel_path)
        return self._get(src.server_url, url, self._password(src.server_url),
                         accept="application/zip", timeout=ARCHIVE_TIMEOUT)

    def fetch_bytes(self, comic):
        """Archive bytes for any comic, local or remote."""
        if comic.kind == REMOTE:
            return self.fetch_archive(comic)
        return read_archive(comic.source.path)


class ReaderSession:
    """The one open comic and its decoded pages."""

    def __init__(self, client=None):
        self.client = client or CatalogClient()
        self.current = None
        self.pages = []

    def open(self, comic):
        data = self.client.fetch_bytes(comic)
        pages = extract_pages(data)
        self.close()
        self.current = comic
        self.pages = pages
        if not pages:
            log.info("No pages to display in %s", comic.name)
        return pages

    def close(self):
        self.pages.clear()
        self.pages = []
        self.current = None

    def __len__(self):
        return len(self.pages)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        self.close()
        return False
