from __future__ import annotations

import asyncio
import hashlib
import logging
import os
from dataclasses import dataclass, field
from datetime import date as dt_date
from pathlib import Path
from typing import Awaitable, Callable, List, Optional, Sequence, Union

import httpx

from ..database import DATA_DIR
from .blank import is_blank_tile
from .cache import PROVIDER_ESRI_WAYBACK, PROVIDER_GOOGLE_EARTH, TileCache, cache_key
from .errors import (
    ImageryCancellationError,
    ImageryError,
    JobFailedError,
    ProtocolDecodeError,
    TileFetchError,
)
from .georeference import SCHEME_QUADTREE, SCHEME_XYZ, Mosaic, TileGrid, write_geotiff, write_png_copy
from .googleearth import (
    DATABASE_DEFAULT,
    DATABASE_TIMEMACHINE,
    GOOGLE_EARTH_MAX_ZOOM,
    GoogleEarthClient,
    establish_session,
)
from .tiles import (
    MAX_ZOOM,
    BoundingBox,
    QuadtreeTile,
    XYZTile,
    geotiff_filename,
    quadtree_tiles_in_bounds,
    quadtree_to_xyz,
    tiles_dirname,
    validate_zoom,
    xyz_tile_for_coordinate,
    xyz_tiles_in_bounds,
)
from .usage import record_api_usage
from .wayback import WaybackClient, WaybackLayer

logger = logging.getLogger(__name__)

IMAGERY_CACHE_DIR_ENV = "IMAGERY_CACHE_DIR"
IMAGERY_DOWNLOAD_DIR_ENV = "IMAGERY_DOWNLOAD_DIR"
IMAGERY_DOWNLOAD_FORMAT_ENV = "IMAGERY_DOWNLOAD_FORMAT"
IMAGERY_WORKERS_ENV = "IMAGERY_WORKERS"
IMAGERY_REQUEST_TIMEOUT_ENV = "IMAGERY_REQUEST_TIMEOUT"

FORMAT_TILES = "tiles"
FORMAT_GEOTIFF = "geotiff"
FORMAT_BOTH = "both"
OUTPUT_FORMATS = (FORMAT_TILES, FORMAT_GEOTIFF, FORMAT_BOTH)

DEFAULT_OUTPUT_FORMAT = FORMAT_GEOTIFF
DEFAULT_WORKERS = 10
MAX_WORKERS = 64
DEFAULT_REQUEST_TIMEOUT = 30.0

LOW_SUCCESS_RATIO = 0.3

_tile_cache: TileCache | None = None


@dataclass(frozen=True)
class GoogleEarthHistorical:
    """A dated capture from the historical quadtree database."""

    date: dt_date
    hex_date: str
    epoch: int

    provider = PROVIDER_GOOGLE_EARTH

    @property
    def label(self) -> str:
        return self.date.isoformat()

    @property
    def cache_token(self) -> str:
        return self.hex_date


@dataclass(frozen=True)
class GoogleEarthLatest:
    """Whatever the current quadtree database serves."""

    provider = PROVIDER_GOOGLE_EARTH
    label = "latest"
    cache_token = "latest"


@dataclass(frozen=True)
class WaybackRelease:
    layer: WaybackLayer
    capture_date: dt_date | None = None

    provider = PROVIDER_ESRI_WAYBACK

    @property
    def label(self) -> str:
        return (self.capture_date or self.layer.date).isoformat()

    @property
    def cache_token(self) -> str:
        return str(self.layer.release_id)


DateSelector = Union[GoogleEarthHistorical, GoogleEarthLatest, WaybackRelease]
AnyTile = Union[XYZTile, QuadtreeTile]


@dataclass
class DownloadProgress:
    downloaded: int
    total: int
    percent: int
    status: str
    current_date: int = 0
    total_dates: int = 0


@dataclass
class AcquisitionResult:
    """Files produced for one date and how many of its tiles made it."""

    label: str
    output_path: Path | None
    tiles_dir: Path | None
    png_path: Path | None
    total: int
    succeeded: int
    failures: List[str] = field(default_factory=list)


@dataclass
class _TileOutcome:
    tile: AnyTile
    payload: bytes | None
    error: str | None = None


TileFetcher = Callable[[AnyTile, DateSelector], Awaitable[bytes]]
ProgressCallback = Callable[[DownloadProgress], Awaitable[None]]
LogCallback = Callable[[str], Awaitable[None]]


def _determine_cache_dir() -> Path:
    override = os.getenv(IMAGERY_CACHE_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return DATA_DIR / "tile_cache"


def _determine_download_dir() -> Path:
    override = os.getenv(IMAGERY_DOWNLOAD_DIR_ENV, "").strip()
    if override:
        return Path(override).expanduser()
    return DATA_DIR / "downloads"


def _default_output_format() -> str:
    value = os.getenv(IMAGERY_DOWNLOAD_FORMAT_ENV, "").strip().lower()
    return value if value in OUTPUT_FORMATS else DEFAULT_OUTPUT_FORMAT


def _worker_count() -> int:
    raw_value = os.getenv(IMAGERY_WORKERS_ENV, "").strip()
    if not raw_value:
        return DEFAULT_WORKERS
    try:
        workers = int(raw_value)
    except ValueError:
        return DEFAULT_WORKERS
    return max(1, min(workers, MAX_WORKERS))


def _request_timeout() -> httpx.Timeout:
    raw_value = os.getenv(IMAGERY_REQUEST_TIMEOUT_ENV, "").strip()
    seconds = DEFAULT_REQUEST_TIMEOUT
    if raw_value:
        try:
            seconds = float(raw_value)
        except ValueError:
            seconds = DEFAULT_REQUEST_TIMEOUT
    if seconds <= 0:
        seconds = DEFAULT_REQUEST_TIMEOUT
    return httpx.Timeout(seconds)


def _get_tile_cache() -> TileCache:
    global _tile_cache
    cache_dir = _determine_cache_dir()
    if _tile_cache is None or _tile_cache.root != cache_dir:
        _tile_cache = TileCache(cache_dir)
    return _tile_cache


def _short_error_detail(detail: str) -> str:
    detail = detail.strip()
    if len(detail) > 160:
        return f"{detail[:157]}..."
    return detail or "(no detail)"


def _validate_request(bbox: BoundingBox, zoom: int, selector: DateSelector, output_format: str) -> None:
    if output_format not in OUTPUT_FORMATS:
        raise ValueError(
            f"Unsupported output format: {output_format}. Choose one of {', '.join(OUTPUT_FORMATS)}."
        )
    bbox.validate()
    maximum = GOOGLE_EARTH_MAX_ZOOM if selector.provider == PROVIDER_GOOGLE_EARTH else MAX_ZOOM
    validate_zoom(zoom, maximum=maximum)


def _tiles_for(bbox: BoundingBox, zoom: int, selector: DateSelector) -> List[AnyTile]:
    if selector.provider == PROVIDER_GOOGLE_EARTH:
        return list(quadtree_tiles_in_bounds(bbox, zoom))
    return list(xyz_tiles_in_bounds(bbox, zoom))


async def _emit_log(callback: LogCallback | None, message: str, level: int = logging.INFO) -> None:
    logger.log(level, message)
    if callback is not None:
        await callback(message)


async def _emit_progress(callback: ProgressCallback | None, progress: DownloadProgress) -> None:
    if callback is not None:
        await callback(progress)


class _NetworkFetcher:
    """Routes tile requests to the provider client a selector needs, connecting lazily."""

    def __init__(self, http: httpx.AsyncClient) -> None:
        self.http = http
        self._google: GoogleEarthClient | None = None
        self._wayback: WaybackClient | None = None

    async def prepare(self, selector: DateSelector) -> None:
        if isinstance(selector, WaybackRelease):
            if self._wayback is None:
                self._wayback = WaybackClient(self.http, [selector.layer])
            return
        if self._google is None:
            self._google = GoogleEarthClient(self.http)
        if isinstance(selector, GoogleEarthLatest) and self._google.current is None:
            self._google.current = await establish_session(self.http, DATABASE_DEFAULT)
        if isinstance(selector, GoogleEarthHistorical) and self._google.historical is None:
            self._google.historical = await establish_session(self.http, DATABASE_TIMEMACHINE)

    async def __call__(self, tile: AnyTile, selector: DateSelector) -> bytes:
        if isinstance(selector, WaybackRelease):
            if self._wayback is None:
                raise ImageryError("Wayback client used before prepare()")
            if not isinstance(tile, XYZTile):
                raise TypeError(f"Wayback releases are fetched on the XYZ grid, got {tile!r}")
            return await self._wayback.fetch_tile(selector.layer, tile)
        if self._google is None:
            raise ImageryError("Google Earth client used before prepare()")
        if not isinstance(tile, QuadtreeTile):
            raise TypeError(f"Google Earth imagery is fetched on the quadtree grid, got {tile!r}")
        if isinstance(selector, GoogleEarthLatest):
            return await self._google.fetch_current_tile(tile)
        return await self._google.fetch_with_zoom_fallback(tile, selector.hex_date, selector.epoch)


async def _process_tile(
    tile: AnyTile, selector: DateSelector, fetch: TileFetcher, cache: TileCache
) -> _TileOutcome:
    key = cache_key(selector.provider, tile.zoom, tile.column, tile.row, selector.cache_token)
    payload = cache.get(key)
    if payload is None:
        try:
            payload = await fetch(tile, selector)
        except (TileFetchError, ProtocolDecodeError) as exc:
            return _TileOutcome(tile=tile, payload=None, error=str(exc))
        record_api_usage(selector.provider)
        cache.put(key, payload, {"provider": selector.provider, "date": selector.label})

    if is_blank_tile(payload):
        return _TileOutcome(tile=tile, payload=None, error="blank placeholder tile")
    return _TileOutcome(tile=tile, payload=payload)


def _save_tile(tiles_dir: Path, tile: AnyTile, payload: bytes) -> None:
    xyz = quadtree_to_xyz(tile) if isinstance(tile, QuadtreeTile) else tile
    tile_path = tiles_dir / str(xyz.zoom) / str(xyz.column) / f"{xyz.row}.jpg"
    tile_path.parent.mkdir(parents=True, exist_ok=True)
    tile_path.write_bytes(payload)


async def _run_job(
    bbox: BoundingBox,
    zoom: int,
    selector: DateSelector,
    output_format: str,
    *,
    output_dir: Path,
    fetch: TileFetcher,
    progress_callback: ProgressCallback | None,
    log_callback: LogCallback | None,
    cancel_event: asyncio.Event | None,
    workers: int,
    current_date: int = 0,
    total_dates: int = 0,
) -> AcquisitionResult:
    tiles = _tiles_for(bbox, zoom, selector)
    total = len(tiles)
    produce_raster = output_format in {FORMAT_GEOTIFF, FORMAT_BOTH}
    keep_tiles = output_format in {FORMAT_TILES, FORMAT_BOTH}
    label = selector.label

    scheme = SCHEME_QUADTREE if selector.provider == PROVIDER_GOOGLE_EARTH else SCHEME_XYZ
    grid = TileGrid.covering(scheme, zoom, ((tile.column, tile.row) for tile in tiles))
    mosaic = Mosaic(grid) if produce_raster else None
    output_dir.mkdir(parents=True, exist_ok=True)
    tiles_dir = output_dir / tiles_dirname(selector.provider, label, zoom) if keep_tiles else None
    cache = _get_tile_cache()

    pool_size = max(1, min(workers, total))
    await _emit_log(
        log_callback,
        f"Downloading {total} {selector.provider} tiles for {label} at zoom {zoom} with {pool_size} workers",
    )

    work: asyncio.Queue = asyncio.Queue()
    for tile in tiles:
        work.put_nowait(tile)
    completed: asyncio.Queue = asyncio.Queue()

    async def worker() -> None:
        try:
            while cancel_event is None or not cancel_event.is_set():
                try:
                    tile = work.get_nowait()
                except asyncio.QueueEmpty:
                    return
                await completed.put(await _process_tile(tile, selector, fetch, cache))
        finally:
            await completed.put(None)

    tasks = [asyncio.create_task(worker()) for _ in range(pool_size)]

    counter_lock = asyncio.Lock()
    processed = 0
    succeeded = 0
    failures: List[str] = []
    finished_workers = 0
    while finished_workers < pool_size:
        outcome = await completed.get()
        if outcome is None:
            finished_workers += 1
            continue

        async with counter_lock:
            processed += 1
            if outcome.payload is not None:
                succeeded += 1
                if mosaic is not None:
                    mosaic.paste(outcome.tile, outcome.payload)
                if tiles_dir is not None:
                    _save_tile(tiles_dir, outcome.tile, outcome.payload)
            else:
                detail = _short_error_detail(
                    f"{selector.provider} tile z{outcome.tile.zoom}/{outcome.tile.column}/"
                    f"{outcome.tile.row} ({label}): {outcome.error}"
                )
                failures.append(detail)
                logger.warning("%s", detail)

            verb = "Downloading and merging tile" if produce_raster else "Downloading tile"
            progress = DownloadProgress(
                downloaded=succeeded,
                total=total,
                percent=processed * 100 // total,
                status=f"{verb} {processed}/{total}",
                current_date=current_date,
                total_dates=total_dates,
            )
        await _emit_progress(progress_callback, progress)

    await asyncio.gather(*tasks)

    if cancel_event is not None and cancel_event.is_set() and processed < total:
        await _emit_log(log_callback, f"Cancelled after {processed}/{total} tiles", logging.WARNING)
        raise ImageryCancellationError(f"Download of {label} cancelled after {processed}/{total} tiles.")

    await _emit_log(log_callback, f"Processed {succeeded}/{total} tiles for {label}")
    if succeeded == 0:
        first = failures[0] if failures else "(no detail)"
        raise JobFailedError(f"No tiles downloaded for {label} (0/{total}); first failure: {first}")
    if succeeded / total < LOW_SUCCESS_RATIO:
        await _emit_log(
            log_callback,
            f"Warning: only {succeeded}/{total} tiles downloaded for {label}; the raster will have gaps",
            logging.WARNING,
        )

    output_path: Path | None = None
    png_path: Path | None = None
    if mosaic is not None:
        output_path = output_dir / geotiff_filename(selector.provider, label, bbox, zoom)
        description = (
            f"{selector.provider} imagery {label} zoom {zoom} "
            f"bbox {bbox.south:.6f},{bbox.west:.6f},{bbox.north:.6f},{bbox.east:.6f}"
        )
        write_geotiff(mosaic.image, output_path, grid.geotransform(), description=description)
        png_path = write_png_copy(mosaic.image, output_path)

    return AcquisitionResult(
        label=label,
        output_path=output_path,
        tiles_dir=tiles_dir,
        png_path=png_path,
        total=total,
        succeeded=succeeded,
        failures=failures,
    )


async def acquire(
    bbox: BoundingBox,
    zoom: int,
    selector: DateSelector,
    output_format: str | None = None,
    *,
    output_dir: Path | None = None,
    progress_callback: ProgressCallback | None = None,
    log_callback: LogCallback | None = None,
    cancel_event: asyncio.Event | None = None,
    workers: int | None = None,
    fetcher: TileFetcher | None = None,
) -> AcquisitionResult:
    """Download every tile of ``bbox`` for one date and stitch or store them.

    Validation happens before any network activity. ``fetcher`` replaces the provider
    clients and receives ``(tile, selector)``.
    """

    output_format = (output_format or _default_output_format()).lower()
    _validate_request(bbox, zoom, selector, output_format)
    output_dir = output_dir or _determine_download_dir()
    pool = workers or _worker_count()

    async with httpx.AsyncClient(timeout=_request_timeout()) as http:
        fetch = fetcher or _NetworkFetcher(http)
        if isinstance(fetch, _NetworkFetcher):
            await fetch.prepare(selector)
        return await _run_job(
            bbox,
            zoom,
            selector,
            output_format,
            output_dir=output_dir,
            fetch=fetch,
            progress_callback=progress_callback,
            log_callback=log_callback,
            cancel_event=cancel_event,
            workers=pool,
        )


async def _center_digest(
    bbox: BoundingBox, zoom: int, selector: DateSelector, fetch: TileFetcher
) -> Optional[str]:
    lat, lon = bbox.center
    tile = xyz_tile_for_coordinate(lat, lon, zoom)
    outcome = await _process_tile(tile, selector, fetch, _get_tile_cache())
    if outcome.payload is None:
        return None
    return hashlib.sha256(outcome.payload).hexdigest()


async def acquire_range(
    bbox: BoundingBox,
    zoom: int,
    selectors: Sequence[DateSelector],
    output_format: str | None = None,
    *,
    output_dir: Path | None = None,
    progress_callback: ProgressCallback | None = None,
    log_callback: LogCallback | None = None,
    cancel_event: asyncio.Event | None = None,
    workers: int | None = None,
    fetcher: TileFetcher | None = None,
) -> List[AcquisitionResult]:
    """Run :func:`acquire` for several dates in order, tolerating a minority of failed dates."""

    if not selectors:
        raise ValueError("At least one date must be selected.")
    output_format = (output_format or _default_output_format()).lower()
    for selector in selectors:
        _validate_request(bbox, zoom, selector, output_format)
    output_dir = output_dir or _determine_download_dir()
    pool = workers or _worker_count()
    total_dates = len(selectors)

    results: List[AcquisitionResult] = []
    failed = 0
    seen_digests: set = set()

    async with httpx.AsyncClient(timeout=_request_timeout()) as http:
        fetch = fetcher or _NetworkFetcher(http)
        for index, selector in enumerate(selectors, start=1):
            if cancel_event is not None and cancel_event.is_set():
                raise ImageryCancellationError(f"Range download cancelled before date {index}/{total_dates}.")

            await _emit_log(log_callback, f"Date {index}/{total_dates}: {selector.label}")
            try:
                if isinstance(fetch, _NetworkFetcher):
                    await fetch.prepare(selector)
                if isinstance(selector, WaybackRelease):
                    digest = await _center_digest(bbox, zoom, selector, fetch)
                    if digest is not None and digest in seen_digests:
                        await _emit_log(
                            log_callback, f"Skipping {selector.label}: imagery identical to an earlier date"
                        )
                        continue
                    if digest is not None:
                        seen_digests.add(digest)

                result = await _run_job(
                    bbox,
                    zoom,
                    selector,
                    output_format,
                    output_dir=output_dir,
                    fetch=fetch,
                    progress_callback=progress_callback,
                    log_callback=log_callback,
                    cancel_event=cancel_event,
                    workers=pool,
                    current_date=index,
                    total_dates=total_dates,
                )
            except (JobFailedError, TileFetchError, ProtocolDecodeError) as exc:
                failed += 1
                await _emit_log(
                    log_callback,
                    f"Date {selector.label} failed: {_short_error_detail(str(exc))}",
                    logging.WARNING,
                )
                continue
            results.append(result)

    if failed == total_dates or failed * 2 > total_dates:
        raise JobFailedError(f"{failed}/{total_dates} dates failed to download.")

    await _emit_progress(
        progress_callback,
        DownloadProgress(
            downloaded=len(results),
            total=total_dates,
            percent=100,
            status=f"Downloaded {len(results)}/{total_dates} dates",
            current_date=total_dates,
            total_dates=total_dates,
        ),
    )
    return results
