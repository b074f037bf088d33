"""Comic records, the folder tree built from them, and search pruning.

The tree is rebuilt from the flat record list whenever it is needed; it is
plain frozen data, so presentation code keeps its own expand/collapse state.
"""

import logging
import os
import threading
import unicodedata
import uuid
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

from cbzshelf.archive import extract_cover, read_archive
from cbzshelf.errors import NoImagesFound

log = logging.getLogger("cbzshelf")

LOCAL = "local"
REMOTE = "remote"


@dataclass(frozen=True)
class LocalSource:
    path: str


@dataclass(frozen=True)
class RemoteSource:
    server_url: str
    rel_path: str  # folder segments + file name, "/"-joined, not URL-encoded


@dataclass
class ComicRecord:
    id: str
    name: str
    kind: str
    source: object
    folder_path: Tuple[str, ...] = ()
    series: Optional[str] = None
    cover: Optional[bytes] = None
    progress: int = 0

    def __post_init__(self):
        self.folder_path = tuple(self.folder_path or ())
        if self.series is None and self.folder_path:
            self.series = self.folder_path[-1]
        self.progress = max(0, min(int(self.progress), 100))

    @property
    def server_url(self):
        return self.source.server_url if self.kind == REMOTE else None


@dataclass(frozen=True)
class FolderNode:
    name: str
    path: Tuple[str, ...]
    comics: Tuple[ComicRecord, ...] = ()
    subfolders: Dict[str, "FolderNode"] = field(default_factory=dict)

    def is_empty(self):
        return not self.comics and not self.subfolders

    def find(self, path):
        """Descend by path segments; None when any segment is missing."""
        node = self
        for segment in path:
            node = node.subfolders.get(segment)
            if node is None:
                return None
        return node

    def to_dict(self):
        return {
            "name": self.name,
            "path": list(self.path),
            "comics": [c.id for c in self.comics],
            "subfolders": [sub.to_dict() for sub in self.subfolders.values()],
        }


# ── Tree building ──

def _collate(text):
    """Case- and accent-insensitive collation key, like a locale compare."""
    decomposed = unicodedata.normalize("NFKD", text)
    base = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return base.casefold(), text.casefold(), text


def _comic_order(comic):
    return _collate(comic.name), comic.id


class _NodeBuilder:
    __slots__ = ("name", "path", "comics", "children")

    def __init__(self, name, path):
        self.name = name
        self.path = path
        self.comics = []
        self.children = {}

    def child(self, segment):
        node = self.children.get(segment)
        if node is None:
            node = _NodeBuilder(segment, self.path + (segment,))
            self.children[segment] = node
        return node

    def freeze(self):
        subfolders = {}
        for name in sorted(self.children, key=_collate):
            subfolders[name] = self.children[name].freeze()
        return FolderNode(
            name=self.name,
            path=self.path,
            comics=tuple(sorted(self.comics, key=_comic_order)),
            subfolders=subfolders,
        )


def build_tree(comics):
    """Build the folder tree for a flat list of ComicRecords.

    Comics without a folder path sit on the root. Every node's comics are
    sorted by name and subfolders by folder name, so the result does not
    depend on input order. Duplicate ids are kept.
    """
    root = _NodeBuilder("", ())
    for comic in comics:
        node = root
        for segment in comic.folder_path:
            node = node.child(segment)
        node.comics.append(comic)
    return root.freeze()


def iter_folders(node):
    """Yield every node of a tree, parents before children."""
    yield node
    for sub in node.subfolders.values():
        yield from iter_folders(sub)


def iter_comics(node):
    for folder in iter_folders(node):
        yield from folder.comics


# ── Search ──

def comic_matches(comic, query):
    """Case-insensitive substring match on name, series or any folder segment."""
    q = query.casefold()
    if q in comic.name.casefold():
        return True
    if comic.series and q in comic.series.casefold():
        return True
    return any(q in segment.casefold() for segment in comic.folder_path)


def _prune(node, query):
    comics = tuple(c for c in node.comics if comic_matches(c, query))
    subfolders = {}
    for name, sub in node.subfolders.items():
        kept = _prune(sub, query)
        if kept is not None:
            subfolders[name] = kept
    if not comics and not subfolders:
        return None
    return replace(node, comics=comics, subfolders=subfolders)


def filter_tree(root, query):
    """Return a pruned copy of the tree holding only matching comics.

    Matching is evaluated independently at every level; a folder survives
    when anything beneath it matches. Returns the tree itself for an empty
    query and None when nothing matches.
    """
    if not query:
        return root
    return _prune(root, query)


# ── Aggregate library ──

def local_record(path, folder_path=()):
    """Create a ComicRecord for a local .cbz file, reading its cover."""
    data = read_archive(path)
    try:
        cover = extract_cover(data).data
    except NoImagesFound:
        cover = None
    filename = os.path.basename(path)
    name = filename[:-4] if filename.lower().endswith(".cbz") else filename
    return ComicRecord(
        id=f"local-{uuid.uuid4().hex}-{filename}",
        name=name,
        kind=LOCAL,
        source=LocalSource(os.path.abspath(path)),
        folder_path=folder_path,
        cover=cover,
    )


class Library:
    """All known comics: local uploads plus every connected server's catalog.

    Mutations swap in a new list under a lock; readers always see a
    consistent snapshot.
    """

    def __init__(self, comics=()):
        self._comics = list(comics)
        self._lock = threading.Lock()

    @property
    def comics(self):
        return list(self._comics)

    def __len__(self):
        return len(self._comics)

    def get(self, comic_id):
        for comic in self._comics:
            if comic.id == comic_id:
                return comic
        return None

    def tree(self, query=""):
        return filter_tree(build_tree(self._comics), query)

    def add(self, comic):
        with self._lock:
            self._comics = self._comics + [comic]

    def add_local(self, path, folder_path=()):
        if not path.lower().endswith(".cbz"):
            log.info("Skipping non-CBZ file %s", path)
            return None
        comic = local_record(path, folder_path)
        self.add(comic)
        return comic

    def replace_server(self, server_url, comics):
        """Swap one server's records; other servers and local comics are untouched."""
        with self._lock:
            kept = [c for c in self._comics if c.server_url != server_url]
            self._comics = kept + list(comics)

    def remove_server(self, server_url):
        self.replace_server(server_url, [])

    def set_cover(self, comic_id, cover):
        """Store a fetched cover. No-op if the comic has since been removed."""
        with self._lock:
            for i, comic in enumerate(self._comics):
                if comic.id == comic_id:
                    updated = list(self._comics)
                    updated[i] = replace(comic, cover=cover)
                    self._comics = updated
                    return True
        log.debug("Dropping late cover for %s", comic_id)
        return False

    def set_progress(self, comic_id, progress):
        with self._lock:
            self._comics = [
                replace(c, progress=progress) if c.id == comic_id else c
                for c in self._comics
            ]

    def clear(self):
        with self._lock:
            self._comics = []
