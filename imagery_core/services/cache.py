from __future__ import annotations

import json
import logging
from pathlib import Path, PurePath
from typing import Any, Dict, List

from .errors import CachePathError

logger = logging.getLogger(__name__)

PROVIDER_GOOGLE_EARTH = "google_earth"
PROVIDER_ESRI_WAYBACK = "esri_wayback"

TILE_EXTENSION = ".jpg"


def cache_key(provider: str, zoom: int, column: int, row: int, date: str) -> str:
    return f"{provider}:{zoom}:{column}:{row}:{date}"


def validate_cache_path(root: Path, candidate: Path) -> Path:
    """Return ``candidate`` resolved, or raise if it does not sit strictly inside ``root``."""

    resolved_root = root.resolve()
    resolved = candidate.resolve()
    try:
        relative = resolved.relative_to(resolved_root)
    except ValueError as exc:
        raise CachePathError(f"Cache path {candidate} escapes cache root {root}") from exc
    if not relative.parts:
        raise CachePathError(f"Cache path {candidate} must not be the cache root itself")
    return resolved


class TileCache:
    """On-disk tile store laid out as ``provider/zoom/column/row_date.jpg``."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.root.mkdir(parents=True, exist_ok=True)

    def get(self, key: str) -> bytes | None:
        cache_path = self.path_for(key)
        if not cache_path.exists():
            return None
        logger.debug("Cache hit for %s", key)
        return cache_path.read_bytes()

    def metadata(self, key: str) -> Dict[str, Any]:
        return self._read_metadata(self.path_for(key))

    def put(self, key: str, content: bytes, metadata: Dict[str, Any] | None = None) -> Path:
        """Persist ``content`` under ``key``; the path is validated before anything is written."""

        cache_path = self.path_for(key)
        cache_path.parent.mkdir(parents=True, exist_ok=True)
        staging = cache_path.with_name(f"{cache_path.name}.part")
        staging.write_bytes(content)
        staging.replace(cache_path)
        self._write_metadata(cache_path, {"key": key, "size": len(content), **(metadata or {})})
        return cache_path

    def path_for(self, key: str) -> Path:
        provider, zoom, column, row, date = self._split_key(key)
        filename = f"{row}_{date}{TILE_EXTENSION}" if date else f"{row}{TILE_EXTENSION}"
        return validate_cache_path(self.root, self.root / provider / zoom / column / filename)

    @staticmethod
    def _split_key(key: str) -> List[str]:
        parts = key.split(":", 4)
        if len(parts) != 5:
            raise CachePathError(f"Malformed cache key: {key!r}")
        for index, part in enumerate(parts):
            if not part and index < 4:
                raise CachePathError(f"Cache key {key!r} has an empty component")
            if "/" in part or "\\" in part or part in {".", ".."}:
                raise CachePathError(f"Cache key component {part!r} is not a plain name")
            if part and PurePath(part).is_absolute():
                raise CachePathError(f"Cache key component {part!r} is absolute")
        return parts

    def _metadata_path(self, cache_path: Path) -> Path:
        return cache_path.parent / f"{cache_path.name}.json"

    def _read_metadata(self, cache_path: Path) -> Dict[str, Any]:
        metadata_path = self._metadata_path(cache_path)
        if not metadata_path.exists():
            return {}
        try:
            return json.loads(metadata_path.read_text())
        except json.JSONDecodeError:
            return {}

    def _write_metadata(self, cache_path: Path, metadata: Dict[str, Any]) -> None:
        metadata_path = self._metadata_path(cache_path)
        metadata_path.write_text(json.dumps(metadata, sort_keys=True))
