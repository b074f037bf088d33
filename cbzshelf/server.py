"""
cbzshelf -- CBZ catalog server

Lists and streams the .cbz archives found under a directory, optionally
behind a shared password (HTTP Basic, empty user name).

Configuration:
  COMICS_DIR        Directory scanned for *.cbz files (default: /comics)
  SERVER_PASSWORD   When set, catalog endpoints require Basic auth
  CBZSHELF_RESCAN   Seconds between directory rescans (default: 30)

Endpoints:
  GET /auth/check            {"requires_password": bool}
  GET /comics?search=...     Comic list (optionally filtered)
  GET /folders?search=...    Folder tree of the directory (pruned by search)
  GET /covers/<path>         First page image of an archive
  GET /comics/<path>         Raw archive download (Range supported)
  GET /health                Health check
  HEAD <any GET path>        Same status and headers, no body
"""

import base64
import binascii
import gzip
import hmac
import json
import logging
import os
import threading
import time
import traceback
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from urllib.parse import parse_qs, quote, unquote, urlparse

from cbzshelf.archive import extract_cover, read_archive
from cbzshelf.errors import FileSystemError, MalformedArchive, NoImagesFound
from cbzshelf.library import (
    LOCAL, ComicRecord, FolderNode, LocalSource, build_tree, comic_matches, filter_tree,
)

CBZSHELF_VERSION = "1.0.0"

log = logging.getLogger("cbzshelf")
logging.basicConfig(format="%(asctime)s %(message)s", datefmt="%H:%M:%S", level=logging.INFO)

COMICS_DIR = os.environ.get("COMICS_DIR", "/comics")
SERVER_PASSWORD = os.environ.get("SERVER_PASSWORD", "")
try:
    RESCAN_INTERVAL = float(os.environ.get("CBZSHELF_RESCAN", "30"))
except ValueError:
    RESCAN_INTERVAL = 30.0

STREAM_CHUNK = 64 * 1024
COVER_CACHE_MAX = 500
COMPRESSIBLE_TYPES = ("application/json", "text/")


# ── Auth ──

def _check_auth(handler):
    """Check Basic credentials against SERVER_PASSWORD. Returns True if unauthorized."""
    if not SERVER_PASSWORD:
        return None  # no password set, allow access
    auth = handler.headers.get("Authorization", "")
    if not auth.startswith("Basic "):
        return True
    try:
        decoded = base64.b64decode(auth[6:].strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return True
    _, sep, password = decoded.partition(":")
    if sep and hmac.compare_digest(password.encode(), SERVER_PASSWORD.encode()):
        return None
    return True


# ── Directory index ──

_comics_cache = None   # {rel_path: comic dict}
_scan_time = 0.0
_index_lock = threading.Lock()

_cover_cache = {}      # {rel_path: (mtime, ImageBlob)}
_cover_lock = threading.Lock()


def _comic_entry(rel_path):
    """Build the /comics JSON record for an archive path relative to COMICS_DIR."""
    parts = rel_path.split("/")
    file_name = parts[-1]
    folder_path = parts[:-1]
    return {
        "id": rel_path,
        "name": os.path.splitext(file_name)[0],
        "file_name": file_name,
        "path": "/comics/" + quote(rel_path),
        "folder_path": folder_path,
        "series": folder_path[-1] if folder_path else None,
    }


def scan_comics(comics_dir=None):
    """Walk the comics directory. Returns {rel_path: comic dict} in walk order."""
    base = comics_dir or COMICS_DIR
    found = {}
    if not os.path.isdir(base):
        log.warning("Comics directory %s does not exist", base)
        return found
    for dirpath, dirnames, filenames in os.walk(base):
        dirnames[:] = sorted(d for d in dirnames if not d.startswith("."))
        rel_dir = os.path.relpath(dirpath, base)
        for filename in sorted(filenames):
            if filename.startswith(".") or not filename.lower().endswith(".cbz"):
                continue
            rel = filename if rel_dir == "." else os.path.join(rel_dir, filename)
            rel = rel.replace(os.sep, "/")
            found[rel] = _comic_entry(rel)
    return found


def load_library(force=False):
    """Return the comic index, rescanning when stale."""
    global _comics_cache, _scan_time
    with _index_lock:
        now = time.time()
        if force or _comics_cache is None or now - _scan_time >= RESCAN_INTERVAL:
            t0 = time.time()
            _comics_cache = scan_comics()
            _scan_time = now
            log.info("Scanned %d comics in %.2fs", len(_comics_cache), time.time() - t0)
        return _comics_cache


def list_comics(search=None):
    comics = list(load_library().values())
    if search:
        comics = [c for c in comics if comic_matches(_as_record(c), search)]
    return comics


def _as_record(comic):
    return ComicRecord(
        id=comic["id"],
        name=comic["name"],
        kind=LOCAL,
        source=LocalSource(comic["id"]),
        folder_path=comic["folder_path"],
        series=comic["series"],
    )


def folder_tree_json(search=None):
    """Folder tree of the directory, comics rendered as full JSON records.

    With a search, folders without matches are pruned; no match at all
    yields an empty root.
    """
    index = load_library()
    tree = filter_tree(build_tree(_as_record(c) for c in index.values()), search)
    if tree is None:
        tree = FolderNode("", ())

    def render(node):
        return {
            "name": node.name or "root",
            "path": list(node.path),
            "comics": [index[c.id] for c in node.comics],
            "subfolders": [render(sub) for sub in node.subfolders.values()],
        }
    return render(tree)


def content_disposition(file_name):
    """attachment header value: ASCII fallback name plus the RFC 5987 UTF-8 form."""
    fallback = "".join(ch if " " <= ch < "\x7f" and ch not in '"\\' else "_" for ch in file_name)
    value = f'attachment; filename="{fallback}"'
    if fallback != file_name:
        value += f"; filename*=UTF-8''{quote(file_name, safe='')}"
    return value


def resolve_comic(rel_path):
    """Map a request path onto an archive file. Returns (rel_path, abs_path) or (None, None).

    Accepts the folder-qualified relative path, or a bare file name when it
    is unique in the index.
    """
    if not rel_path or ".." in rel_path.split("/") or rel_path.startswith("/"):
        return None, None
    index = load_library()
    if rel_path not in index and "/" not in rel_path:
        matches = [k for k, c in index.items() if c["file_name"] == rel_path]
        if len(matches) == 1:
            rel_path = matches[0]
    if rel_path not in index:
        return None, None
    base = os.path.normpath(COMICS_DIR)
    file_path = os.path.normpath(os.path.join(base, *rel_path.split("/")))
    # Ensure resolved path is still inside the comics dir
    if not file_path.startswith(base + os.sep):
        return None, None
    return rel_path, file_path


def get_cover(rel_path, file_path):
    """First page image of an archive, cached by file mtime."""
    try:
        mtime = os.path.getmtime(file_path)
    except OSError as e:
        raise FileSystemError(f"{rel_path}: {e.strerror or e}") from e
    with _cover_lock:
        cached = _cover_cache.get(rel_path)
        if cached and cached[0] == mtime:
            return cached[1]
    cover = extract_cover(read_archive(file_path))
    with _cover_lock:
        if len(_cover_cache) >= COVER_CACHE_MAX:
            _cover_cache.pop(next(iter(_cover_cache)))
        _cover_cache[rel_path] = (mtime, cover)
    return cover


def _reset_caches():
    global _comics_cache, _scan_time
    with _index_lock:
        _comics_cache = None
        _scan_time = 0.0
    with _cover_lock:
        _cover_cache.clear()


# ── HTTP API ──

class ComicHandler(BaseHTTPRequestHandler):
    protocol_version = "HTTP/1.1"
    timeout = 30  # seconds

    head_only = False

    def do_HEAD(self):
        # Same routing and auth as GET, headers only
        self.head_only = True
        try:
            self.do_GET()
        finally:
            self.head_only = False

    def do_OPTIONS(self):
        self.send_response(204)
        self._cors_headers()
        self.send_header("Access-Control-Allow-Methods", "GET, HEAD, OPTIONS")
        self.send_header("Access-Control-Allow-Headers", "Authorization, Accept, Range, Content-Type")
        self.send_header("Content-Length", "0")
        self.end_headers()

    def do_GET(self):
        parsed = urlparse(self.path)
        params = parse_qs(parsed.query)

        def param(key, default=None):
            return params.get(key, [default])[0]

        try:
            if parsed.path == "/auth/check":
                return self._json(200, {"requires_password": bool(SERVER_PASSWORD)})

            elif parsed.path == "/health":
                return self._json(200, {
                    "status": "ok",
                    "version": CBZSHELF_VERSION,
                    "comics": len(load_library()),
                })

            if _check_auth(self):
                return self._json(401, {"error": "unauthorized", "needs_password": True})

            if parsed.path == "/comics":
                return self._json(200, list_comics(param("search")))

            elif parsed.path == "/folders":
                return self._json(200, folder_tree_json(param("search")))

            elif parsed.path.startswith("/covers/"):
                return self._serve_cover(unquote(parsed.path[len("/covers/"):]))

            elif parsed.path.startswith("/comics/"):
                return self._serve_archive(unquote(parsed.path[len("/comics/"):]))

            else:
                return self._json(404, {"error": "not found", "endpoints": ["/auth/check", "/comics", "/folders", "/covers/", "/health"]})

        except FileSystemError as e:
            log.warning("File error: %s", e)
            return self._json(404, {"error": str(e)})
        except Exception as e:
            traceback.print_exc()
            return self._json(500, {"error": str(e)})

    def _serve_cover(self, rel_path):
        rel_path, file_path = resolve_comic(rel_path)
        if rel_path is None:
            return self._json(404, {"error": "Comic file not found"})
        try:
            cover = get_cover(rel_path, file_path)
        except (NoImagesFound, MalformedArchive) as e:
            log.warning("No cover for %s: %s", rel_path, e)
            return self._json(404, {"error": "No cover image found in comic"})
        self.send_response(200)
        self.send_header("Content-Type", "image/jpeg")
        self._cors_headers()
        self.send_header("Cache-Control", "public, max-age=86400")
        self.send_header("Content-Length", str(len(cover.data)))
        self.end_headers()
        if not self.head_only:
            self.wfile.write(cover.data)

    def _serve_archive(self, rel_path):
        """Stream an archive in chunks. Honors a single byte Range."""
        rel_path, file_path = resolve_comic(rel_path)
        if rel_path is None:
            return self._json(404, {"error": "Comic file not found"})
        try:
            f = open(file_path, "rb")
        except OSError as e:
            raise FileSystemError(f"{rel_path}: {e.strerror or e}") from e
        with f:
            total_size = os.fstat(f.fileno()).st_size
            range_start, range_end = self._parse_range(self.headers.get("Range"), total_size)
            if range_start is not None:
                self.send_response(206)
                self.send_header("Content-Range", f"bytes {range_start}-{range_end}/{total_size}")
                f.seek(range_start)
                remaining = range_end - range_start + 1
            else:
                self.send_response(200)
                remaining = total_size
            self.send_header("Content-Type", "application/zip")
            self.send_header("Content-Disposition", content_disposition(os.path.basename(file_path)))
            self.send_header("Accept-Ranges", "bytes")
            self._cors_headers()
            self.send_header("Content-Length", str(remaining))
            self.end_headers()
            if self.head_only:
                return
            while remaining > 0:
                chunk = f.read(min(STREAM_CHUNK, remaining))
                if not chunk:
                    break
                self.wfile.write(chunk)
                remaining -= len(chunk)

    @staticmethod
    def _parse_range(header, total_size):
        """Parse HTTP Range header. Returns (start, end) or (None, None)."""
        if not header or not header.startswith("bytes=") or total_size == 0:
            return None, None
        range_spec = header[6:].strip()
        if "," in range_spec:
            return None, None  # multi-range not supported
        try:
            if range_spec.startswith("-"):
                # Suffix range: last N bytes
                suffix = int(range_spec[1:])
                start = max(0, total_size - suffix)
                return start, total_size - 1
            parts = range_spec.split("-", 1)
            start = int(parts[0])
            end = int(parts[1]) if parts[1] else total_size - 1
        except ValueError:
            return None, None
        end = min(end, total_size - 1)
        if start > end or start >= total_size:
            return None, None
        return start, end

    def _accepts_gzip(self):
        return "gzip" in self.headers.get("Accept-Encoding", "")

    def _cors_headers(self):
        self.send_header("Access-Control-Allow-Origin", "*")
        self.send_header("Access-Control-Expose-Headers", "Content-Length, Content-Type, Content-Disposition")

    def _send(self, code, body_bytes, content_type):
        self.send_response(code)
        self.send_header("Content-Type", content_type)
        self._cors_headers()
        compressible = any(content_type.startswith(t) for t in COMPRESSIBLE_TYPES)
        if compressible and self._accepts_gzip() and len(body_bytes) > 256:
            body_bytes = gzip.compress(body_bytes, compresslevel=4)
            self.send_header("Content-Encoding", "gzip")
        self.send_header("Content-Length", str(len(body_bytes)))
        self.end_headers()
        if not self.head_only:
            self.wfile.write(body_bytes)

    def _json(self, code, data):
        self._send(code, json.dumps(data, ensure_ascii=False, separators=(",", ":")).encode(), "application/json")

    def log_message(self, format, *args):
        # Light logging: errors only. Suppress success noise.
        if len(args) >= 2 and str(args[1]) in ("200", "204", "206", "304"):
            return
        log.info(format, *args)


def make_server(host="0.0.0.0", port=3000):
    return ThreadingHTTPServer((host, port), ComicHandler)


def serve(host="0.0.0.0", port=3000):
    load_library(force=True)
    server = make_server(host, port)
    log.info("Server running on http://%s:%d", host, server.server_address[1])
    log.info("Comics directory: %s (password %s)", COMICS_DIR, "set" if SERVER_PASSWORD else "not set")
    try:
        server.serve_forever()
    except KeyboardInterrupt:
        pass
    finally:
        server.server_close()
