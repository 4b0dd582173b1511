"""
Collection Store — Community Command Collections

PURPOSE:
    Filesystem repository for approved collections. The store is a
    directory tree partitioned by author:

        <base>/index.json                         global index (rebuilt)
        <base>/<username>/profile.json            author profile
        <base>/<username>/collections/<stem>.json full collection record
        <base>/<username>/collections/<stem>-import.json
        <base>/<username>/commands/<stem>/<command>.js  one file per command

    <stem> is the collection name slug, or "<slug>-<id>" when another
    collection of the same author already owns the slug.

    Stage 6 decides WHAT to write; this module decides HOW: directory
    creation, atomic writes (temp file in the target directory, then
    os.replace) and the locks that serialize writers.

LOCKING:
    author_lock(username) serializes writers of one author namespace.
    index_lock() serializes rebuilds of the global index. Locks live in a
    process-wide registry keyed by (store root, username), so two
    CollectionStore objects over the same directory share them. Different
    authors can be materialized in parallel.
"""

import json
import logging
import os
import tempfile
import threading
from contextlib import contextmanager
from typing import Iterator, Optional

from . import config
from .errors import FilesystemConflict, MalformedInput

logger = logging.getLogger(__name__)

PROFILE_FILE = "profile.json"
INDEX_FILE = "index.json"
COLLECTIONS_SUBDIR = "collections"
COMMANDS_SUBDIR = "commands"

_registry_lock = threading.Lock()
_author_locks = {}
_index_locks = {}


class CollectionStore:
    def __init__(self, base_dir: str = config.COLLECTIONS_DIR):
        self.base_dir = base_dir
        self._root_key = os.path.abspath(base_dir)

    # -------------------------------------------------------------------
    # Paths
    # -------------------------------------------------------------------

    def user_dir(self, username: str) -> str:
        return os.path.join(self.base_dir, username)

    def collections_dir(self, username: str) -> str:
        return os.path.join(self.user_dir(username), COLLECTIONS_SUBDIR)

    def commands_dir(self, username: str, collection: Optional[str] = None) -> str:
        path = os.path.join(self.user_dir(username), COMMANDS_SUBDIR)
        return os.path.join(path, collection) if collection else path

    def profile_path(self, username: str) -> str:
        return os.path.join(self.user_dir(username), PROFILE_FILE)

    @property
    def index_path(self) -> str:
        return os.path.join(self.base_dir, INDEX_FILE)

    # -------------------------------------------------------------------
    # Namespaces and locks
    # -------------------------------------------------------------------

    def namespace(self, username: str) -> str:
        """Create <base>/<username>/{collections,commands}. No-op when present."""
        for path in (self.user_dir(username), self.collections_dir(username), self.commands_dir(username)):
            if os.path.exists(path) and not os.path.isdir(path):
                raise FilesystemConflict(f"{path} exists and is not a directory")
            os.makedirs(path, exist_ok=True)
        return self.user_dir(username)

    @contextmanager
    def author_lock(self, username: str) -> Iterator[None]:
        key = (self._root_key, username)
        with _registry_lock:
            lock = _author_locks.setdefault(key, threading.Lock())
        with lock:
            yield

    @contextmanager
    def index_lock(self) -> Iterator[None]:
        with _registry_lock:
            lock = _index_locks.setdefault(self._root_key, threading.Lock())
        with lock:
            yield

    # -------------------------------------------------------------------
    # Reads and writes
    # -------------------------------------------------------------------

    def write_text(self, path: str, text: str) -> None:
        """Write via a temp file in the same directory, then os.replace."""
        directory = os.path.dirname(path) or "."
        os.makedirs(directory, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=directory, prefix=".tmp-", suffix=os.path.splitext(path)[1])
        try:
            with os.fdopen(fd, "w", encoding="utf-8", newline="\n") as f:
                f.write(text)
            os.replace(tmp, path)
        except BaseException:
            try:
                os.unlink(tmp)
            except OSError:
                pass
            raise

    def write_json(self, path: str, data) -> None:
        self.write_text(path, json.dumps(data, indent=2, ensure_ascii=False) + "\n")

    def read_json(self, path: str):
        try:
            with open(path, "r", encoding="utf-8") as f:
                return json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            raise MalformedInput(f"Could not read {path}: {e}") from e

    def load_profile(self, username: str) -> Optional[dict]:
        path = self.profile_path(username)
        if not os.path.isfile(path):
            return None
        return self.read_json(path)

    def save_profile(self, profile: dict) -> None:
        self.write_json(self.profile_path(profile["username"]), profile)

    def iter_profiles(self) -> Iterator[dict]:
        """
        Yield every author profile under the store root, in directory-name
        order. Unreadable profiles are logged and skipped so one corrupt
        namespace does not block the index rebuild.
        """
        if not os.path.isdir(self.base_dir):
            return
        for name in sorted(os.listdir(self.base_dir)):
            if name.startswith(".") or not os.path.isdir(os.path.join(self.base_dir, name)):
                continue
            try:
                profile = self.load_profile(name)
            except MalformedInput as e:
                logger.warning("Failed to process profile for user %s: %s", name, e)
                continue
            if profile is not None:
                yield profile
