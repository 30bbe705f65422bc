"""Local file storage for finished graph exports."""
from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..errors import NotFoundError, PersistenceError


LOGGER = logging.getLogger(__name__)

META_SUFFIX = ".meta.json"


def graph_blob_path(owner_id: str, root_id: str) -> str:
    return f"graphs/{owner_id}/{root_id}"


def content_disposition_for(name: str) -> str:
    """Download header value naming the file after the root's display name."""
    return f"Attachment; filename={name}.gml"


@dataclass(frozen=True)
class StoredBlob:
    path: str
    data: bytes
    content_disposition: Optional[str] = None


class LocalBlobStore:
    """Blob store keyed by slash-separated paths below ``root``."""

    def __init__(self, root: Path) -> None:
        self._root = Path(root).resolve()
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _resolve(self, path: str) -> Path:
        target = (self._root / path).resolve()
        if self._root not in target.parents:
            raise PersistenceError(f"blob path escapes store root: {path}")
        return target

    def write(self, path: str, data: bytes, *, content_disposition: Optional[str] = None) -> None:
        """Write ``data`` atomically; a reader sees either the old or new blob."""
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_name(target.name + ".tmp")
            tmp.write_bytes(data)
            os.replace(tmp, target)
            meta = target.with_name(target.name + META_SUFFIX)
            meta.write_text(json.dumps({"content_disposition": content_disposition}))
        except OSError as exc:
            raise PersistenceError(f"failed to write blob {path}: {exc}") from exc
        LOGGER.debug("Wrote blob %s (%s bytes)", path, len(data))

    def read(self, path: str) -> StoredBlob:
        target = self._resolve(path)
        if not target.exists():
            raise NotFoundError(f"no blob at {path}")
        disposition = None
        meta = target.with_name(target.name + META_SUFFIX)
        if meta.exists():
            try:
                disposition = json.loads(meta.read_text()).get("content_disposition")
            except json.JSONDecodeError:
                LOGGER.warning("Ignoring unreadable blob metadata for %s", path)
        return StoredBlob(path=path, data=target.read_bytes(), content_disposition=disposition)

    def delete(self, path: str) -> bool:
        """Remove a blob and its metadata; returns False if it was absent."""
        target = self._resolve(path)
        removed = False
        for candidate in (target, target.with_name(target.name + META_SUFFIX)):
            try:
                candidate.unlink()
                removed = removed or candidate == target
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise PersistenceError(f"failed to delete blob {path}: {exc}") from exc
        return removed
