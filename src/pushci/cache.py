"""Dependency cache: fingerprints, entry storage, and the cache writer.

A cache entry is a gzip tar archive of the cache paths of a working
directory, stored under the fingerprint of the project's dependency
manifests. The cache only ever speeds runs up: every failure to read or
write it is logged and treated as a miss.
"""

from __future__ import annotations

import hashlib
import logging
import os
import shutil
import tarfile
import tempfile
import zlib
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from .config import CacheConfig

if TYPE_CHECKING:
    from .environment import PreparedContext

logger = logging.getLogger(__name__)

_ENTRY_SUFFIX = ".tar.gz"

# Anything that can go wrong reading a damaged or truncated archive
_READ_ERRORS = (OSError, EOFError, tarfile.TarError, zlib.error)


def fingerprint(root: Path, cache: CacheConfig) -> str:
    """
    Fingerprint the dependency manifests of a project.

    The digest covers the key prefix, every manifest (a missing manifest
    hashes as a marker so the key stays stable) and every lock file that
    exists. Line endings are normalised so a checkout on any platform
    produces the same key.
    """
    digest = hashlib.sha256()
    digest.update(cache.key_prefix.encode())

    def add(rel: str, content: bytes) -> None:
        digest.update(b"\0" + rel.encode() + b"\0")
        digest.update(content.replace(b"\r\n", b"\n"))

    for rel in cache.manifests:
        path = root / rel
        if path.is_file():
            add(rel, path.read_bytes())
        else:
            logger.debug("Manifest %s not found in %s", rel, root)
            add(rel, b"<missing>")

    for rel in cache.lock_files:
        path = root / rel
        if path.is_file():
            add(rel, path.read_bytes())

    return digest.hexdigest()


class CacheStore(Protocol):
    """Keyed get/put of cache entries."""

    def restore(self, key: str, dest: Path) -> bool:
        """Restore the entry for `key` into `dest`. Returns False on a miss."""
        ...

    def save(self, key: str, source: Path, paths: Sequence[str]) -> bool:
        """Store `paths` of `source` under `key`. Returns False if there was nothing to store."""
        ...


@dataclass
class CacheEntry:
    """An entry on disk."""

    key: str
    path: Path
    size: int
    modified: float


class DirectoryCache:
    """
    A cache store backed by a local directory, one archive per key.

    Entries are written to a temporary file and moved into place, so
    concurrent writers of the same key never leave a half-written entry:
    the last one to finish wins.
    """

    def __init__(self, root: Path | str):
        self.root = Path(root)

    def entry_path(self, key: str) -> Path:
        return self.root / f"{key}{_ENTRY_SUFFIX}"

    def has(self, key: str) -> bool:
        return self.entry_path(key).is_file()

    def restore(self, key: str, dest: Path) -> bool:
        entry = self.entry_path(key)
        if not entry.is_file():
            logger.info("Cache miss for %s", key[:16])
            return False

        # Extract into a staging directory first so a corrupt archive leaves no partial state behind
        staging = Path(tempfile.mkdtemp(prefix=".pushci-restore-", dir=dest))
        placed: list[str] = []
        try:
            with tarfile.open(entry, "r:gz") as tar:
                tar.extractall(staging, filter="data")
            for item in sorted(staging.iterdir()):
                target = dest / item.name
                if not target.exists() and not target.is_symlink():
                    item.rename(target)
                elif item.is_dir() and target.is_dir() and not target.is_symlink():
                    # Cache paths may be nested inside source directories: merge, never replace
                    shutil.copytree(item, target, symlinks=True, dirs_exist_ok=True)
                else:
                    target.unlink()
                    item.rename(target)
                placed.append(item.name)
        except _READ_ERRORS as e:
            if placed:
                logger.warning(
                    "Cache entry %s only partially restored (%s), treating as a miss: %s",
                    entry,
                    ", ".join(placed),
                    e,
                )
            else:
                logger.warning("Ignoring unreadable cache entry %s: %s", entry, e)
            return False
        finally:
            shutil.rmtree(staging, ignore_errors=True)

        logger.info("Cache hit for %s", key[:16])
        return True

    def save(self, key: str, source: Path, paths: Sequence[str]) -> bool:
        present = [rel for rel in paths if (source / rel).exists()]
        if not present:
            logger.info("No cache paths present in %s, nothing to save", source)
            return False

        self.root.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{key[:16]}-", suffix=".tmp", dir=self.root)
        os.close(fd)
        tmp = Path(tmp_name)
        try:
            with tarfile.open(tmp, "w:gz") as tar:
                for rel in present:
                    tar.add(source / rel, arcname=rel)
            os.replace(tmp, self.entry_path(key))
        finally:
            if tmp.exists():
                tmp.unlink()

        logger.info("Saved cache entry %s (%s)", key[:16], ", ".join(present))
        return True

    def entries(self) -> list[CacheEntry]:
        """All entries, newest first."""
        if not self.root.is_dir():
            return []
        found = []
        for path in self.root.glob(f"*{_ENTRY_SUFFIX}"):
            stat = path.stat()
            found.append(
                CacheEntry(
                    key=path.name[: -len(_ENTRY_SUFFIX)],
                    path=path,
                    size=stat.st_size,
                    modified=stat.st_mtime,
                )
            )
        return sorted(found, key=lambda e: e.modified, reverse=True)

    def prune(self, keep: int) -> list[CacheEntry]:
        """Delete all but the `keep` newest entries. Returns the deleted entries."""
        if keep < 0:
            raise ValueError("keep must be >= 0")
        removed = self.entries()[keep:]
        for entry in removed:
            entry.path.unlink(missing_ok=True)
        return removed


class CacheWriter:
    """Persists the cache paths of a prepared working directory after the steps ran."""

    def __init__(self, store: CacheStore, config: CacheConfig):
        self.store = store
        self.config = config

    def save(self, context: PreparedContext, fingerprint: str) -> bool:
        """
        Save the cache entry for `fingerprint`, overwriting any previous one.

        Returns True if an entry was written. Errors are logged, never raised.
        """
        if not self.config.enabled:
            return False
        try:
            return self.store.save(fingerprint, context.workdir, self.config.paths)
        except Exception as e:
            logger.warning("Failed to save cache entry %s: %s", fingerprint[:16], e)
            return False
