from __future__ import annotations

import asyncio
import io
import logging
import math
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import httpx
from PIL import Image

from . import keyhole
from .blank import is_blank_tile
from .errors import ImageryError, ProtocolDecodeError, TileFetchError
from .keyhole import HistoricalDate
from .tiles import (
    TILE_SIZE,
    BoundingBox,
    QuadtreeTile,
    XYZTile,
    latlon_to_quadtree_pixel,
    pixel_to_latlon,
    quadtree_tile_for_coordinate,
    quadtree_tiles_for_xyz,
    subindex,
    traversal_paths,
)

logger = logging.getLogger(__name__)

DATABASE_DEFAULT = "default"
DATABASE_TIMEMACHINE = "timemachine"

DATABASE_URLS: Dict[str, str] = {
    DATABASE_DEFAULT: "https://khmdb.google.com/dbRoot.v5?&hl=en&gl=us&output=proto",
    DATABASE_TIMEMACHINE: "https://khmdb.google.com/dbRoot.v5?db=tm&hl=en&gl=us&output=proto",
}
QUADTREE_PACKET_URL = "https://kh.google.com/flatfile?q2-{path}-q.{epoch}"
CURRENT_TILE_URL = "https://kh.google.com/flatfile?f1-{path}-i.{epoch}"
TIMEMACHINE_PACKET_URL = "https://khmdb.google.com/flatfile?db=tm&qp-{path}-q.{epoch}"
TIMEMACHINE_TILE_URL = "https://khmdb.google.com/flatfile?db=tm&f1-{path}-i.{epoch}-{hex_date}"

USER_AGENT = (
    "GoogleEarth/7.3.6.10441(Macintosh;Mac OS X (26.2.0);en;kml:2.2;client:Pro;type:default)"
)
REQUEST_HEADERS = {
    "User-Agent": USER_AGENT,
    "Accept": "application/vnd.google-earth.kml+xml, application/vnd.google-earth.kmz, image/*, */*",
    "Accept-Language": "en-US,*",
}

GOOGLE_EARTH_MAX_ZOOM = 21

# Epochs observed to serve pixels even when the metadata for a tile does not list them.
KNOWN_GOOD_EPOCHS: Tuple[int, ...] = (365, 361, 360, 358, 357, 356, 354, 352, 321, 296, 273)

DATE_SAMPLE_ZOOM = 16
DATE_SAMPLE_MIN_RATIO = 0.6

MIN_FALLBACK_ZOOM = 10
FALLBACK_LEVELS = 3
FALLBACK_LEVELS_LOW_ZOOM = 6
LOW_ZOOM_THRESHOLD = 17
FALLBACK_JPEG_QUALITY = 90

PACKET_MEMO_LIMIT = 4096


@dataclass(frozen=True)
class GoogleEarthSession:
    """Decryption key and quadtree version for one database of the quadtree service."""

    database: str
    key: bytes
    quadtree_version: int

    def decrypt(self, payload: bytes) -> bytes:
        return keyhole.decrypt(payload, self.key)


async def _fetch_bytes(http: httpx.AsyncClient, url: str, *, what: str) -> bytes:
    try:
        response = await http.get(url, headers=REQUEST_HEADERS)
    except httpx.RequestError as exc:
        raise TileFetchError(f"{what}: request failed ({exc})") from exc
    if response.status_code != 200:
        raise TileFetchError(f"{what}: request failed with status {response.status_code}")
    return response.content


async def establish_session(http: httpx.AsyncClient, database: str) -> GoogleEarthSession:
    """Fetch and decode the database root that carries a session's key and version."""

    try:
        url = DATABASE_URLS[database]
    except KeyError as exc:
        raise ValueError(f"Unknown quadtree database: {database}") from exc

    payload = await _fetch_bytes(http, url, what=f"{database} database root")
    root = keyhole.parse_dbroot(payload)
    logger.info(
        "Established %s session (key %d bytes, quadtree version %d)",
        database,
        len(root.key),
        root.quadtree_version,
    )
    return GoogleEarthSession(database=database, key=root.key, quadtree_version=root.quadtree_version)


# Epoch resolution strategies. Each maps (hex date, tile metadata, caller epoch) to an
# ordered list of epochs; ``candidate_epochs`` composes them and drops repeats.

EpochStrategy = Callable[[str, Sequence[HistoricalDate], Optional[int]], List[int]]


def _nearest_date(hex_date: str, tile_dates: Sequence[HistoricalDate]) -> HistoricalDate | None:
    for entry in tile_dates:
        if entry.hex_date == hex_date:
            return entry
    try:
        target = int(hex_date, 16)
    except ValueError:
        return None
    return min(tile_dates, key=lambda entry: abs(int(entry.hex_date, 16) - target), default=None)


def resolve_date(hex_date: str, tile_dates: Sequence[HistoricalDate]) -> str:
    """Date token to request: the tile's own nearest listed date, else ``hex_date``."""

    entry = _nearest_date(hex_date, tile_dates)
    return entry.hex_date if entry is not None else hex_date


def reported_epoch(
    hex_date: str, tile_dates: Sequence[HistoricalDate], fallback_epoch: int | None
) -> List[int]:
    entry = _nearest_date(hex_date, tile_dates)
    if entry is not None:
        return [entry.epoch]
    return [fallback_epoch] if fallback_epoch is not None else []


def epochs_by_date_count(
    hex_date: str, tile_dates: Sequence[HistoricalDate], fallback_epoch: int | None
) -> List[int]:
    dates_per_epoch: Dict[int, set] = {}
    for entry in tile_dates:
        dates_per_epoch.setdefault(entry.epoch, set()).add(entry.hex_date)
    return sorted(dates_per_epoch, key=lambda epoch: (-len(dates_per_epoch[epoch]), -epoch))


def known_good_epochs(
    hex_date: str, tile_dates: Sequence[HistoricalDate], fallback_epoch: int | None
) -> List[int]:
    return list(KNOWN_GOOD_EPOCHS)


EPOCH_STRATEGIES: Tuple[Tuple[str, EpochStrategy], ...] = (
    ("reported", reported_epoch),
    ("by-date-count", epochs_by_date_count),
    ("known-good", known_good_epochs),
)


def candidate_epochs(
    hex_date: str,
    tile_dates: Sequence[HistoricalDate],
    fallback_epoch: int | None = None,
    strategies: Sequence[Tuple[str, EpochStrategy]] = EPOCH_STRATEGIES,
) -> List[Tuple[int, str]]:
    """Return ``(epoch, strategy name)`` pairs in attempt order, each epoch at most once."""

    tried: set = set()
    candidates: List[Tuple[int, str]] = []
    for name, strategy in strategies:
        for epoch in strategy(hex_date, tile_dates, fallback_epoch):
            if epoch in tried:
                continue
            tried.add(epoch)
            candidates.append((epoch, name))
    return candidates


def extract_quadrant(payload: bytes, tile: QuadtreeTile, coarse: QuadtreeTile) -> bytes:
    """Crop the part of a coarser tile covering ``tile`` and upscale it to a full tile."""

    scale = 1 << (tile.zoom - coarse.zoom)
    relative_row = tile.row - coarse.row * scale
    relative_column = tile.column - coarse.column * scale
    if not (0 <= relative_row < scale and 0 <= relative_column < scale):
        raise ValueError(f"Tile {tile.path} is not inside {coarse.path}")

    try:
        with Image.open(io.BytesIO(payload)) as image:
            rgb = image.convert("RGB")
    except OSError as exc:
        raise ProtocolDecodeError(f"unable to decode fallback tile {coarse.path}: {exc}") from exc

    cell_width = rgb.width / scale
    cell_height = rgb.height / scale
    # Quadtree rows grow northward, image rows grow downward.
    image_row = scale - 1 - relative_row
    box = (
        int(relative_column * cell_width),
        int(image_row * cell_height),
        int((relative_column + 1) * cell_width),
        int((image_row + 1) * cell_height),
    )
    quadrant = rgb.crop(box).resize((TILE_SIZE, TILE_SIZE), Image.NEAREST)
    buffer = io.BytesIO()
    quadrant.save(buffer, format="JPEG", quality=FALLBACK_JPEG_QUALITY)
    return buffer.getvalue()


class GoogleEarthClient:
    """Quadtree imagery client bound to explicitly established sessions."""

    def __init__(
        self,
        http: httpx.AsyncClient,
        *,
        current: GoogleEarthSession | None = None,
        historical: GoogleEarthSession | None = None,
    ) -> None:
        self.http = http
        self.current = current
        self.historical = historical
        self._packets: Dict[Tuple[str, str, int], asyncio.Future] = {}

    @classmethod
    async def connect(
        cls, http: httpx.AsyncClient, *, current: bool = True, historical: bool = True
    ) -> "GoogleEarthClient":
        current_session = await establish_session(http, DATABASE_DEFAULT) if current else None
        historical_session = (
            await establish_session(http, DATABASE_TIMEMACHINE) if historical else None
        )
        return cls(http, current=current_session, historical=historical_session)

    @staticmethod
    def _require(session: GoogleEarthSession | None, name: str) -> GoogleEarthSession:
        if session is None:
            raise ImageryError(f"The {name} imagery session has not been established.")
        return session

    async def _packet(self, session: GoogleEarthSession, path: str, epoch: int) -> keyhole.Packet:
        memo_key = (session.database, path, epoch)
        pending = self._packets.get(memo_key)
        if pending is None:
            if len(self._packets) >= PACKET_MEMO_LIMIT:
                self._packets.clear()
            pending = asyncio.ensure_future(self._download_packet(session, path, epoch))
            self._packets[memo_key] = pending
        try:
            return await asyncio.shield(pending)
        except ImageryError:
            if self._packets.get(memo_key) is pending:
                del self._packets[memo_key]
            raise

    async def _download_packet(
        self, session: GoogleEarthSession, path: str, epoch: int
    ) -> keyhole.Packet:
        if session.database == DATABASE_TIMEMACHINE:
            url = TIMEMACHINE_PACKET_URL.format(path=path, epoch=epoch)
        else:
            url = QUADTREE_PACKET_URL.format(path=path, epoch=epoch)
        payload = await _fetch_bytes(self.http, url, what=f"metadata packet {path}@{epoch}")
        inflated = keyhole.decompress(session.decrypt(payload))
        if session.database == DATABASE_TIMEMACHINE:
            return keyhole.parse_timemachine_packet(inflated)
        return keyhole.parse_quadtree_packet(inflated, is_root=path == "0")

    async def _node_for(self, session: GoogleEarthSession, tile: QuadtreeTile) -> keyhole.PacketNode:
        path = tile.path
        packet = await self._packet(session, "0", max(session.quadtree_version, 1))
        for step in traversal_paths(path):
            node = packet.node(subindex(step))
            if node is None:
                raise TileFetchError(f"tile {path}: metadata traversal failed at {step}")
            if node.cache_node_epoch:
                packet = await self._packet(session, step, node.cache_node_epoch)
        node = packet.node(subindex(path))
        if node is None:
            raise TileFetchError(f"tile {path}: no metadata node in packet")
        return node

    async def fetch_current_tile(self, tile: QuadtreeTile) -> bytes:
        session = self._require(self.current, "current")
        node = await self._node_for(session, tile)
        epoch = node.imagery_epoch()
        url = CURRENT_TILE_URL.format(path=tile.path, epoch=epoch)
        payload = await _fetch_bytes(self.http, url, what=f"tile {tile.path}@{epoch}")
        return session.decrypt(payload)

    async def available_dates(self, tile: QuadtreeTile) -> List[HistoricalDate]:
        session = self._require(self.historical, "historical")
        node = await self._node_for(session, tile)
        if node.history_layer() is None:
            raise TileFetchError(f"tile {tile.path}: no historical imagery layer")
        return keyhole.history_dates(node)

    async def fetch_historical_tile(self, tile: QuadtreeTile, hex_date: str, epoch: int) -> bytes:
        session = self._require(self.historical, "historical")
        url = TIMEMACHINE_TILE_URL.format(path=tile.path, epoch=epoch, hex_date=hex_date)
        payload = await _fetch_bytes(
            self.http, url, what=f"historical tile {tile.path} date {hex_date} epoch {epoch}"
        )
        return session.decrypt(payload)

    async def fetch_with_epoch_fallback(
        self, tile: QuadtreeTile, hex_date: str, fallback_epoch: int | None = None
    ) -> Tuple[bytes, int]:
        try:
            tile_dates = await self.available_dates(tile)
        except TileFetchError as exc:
            logger.warning("No date metadata for %s, using fallback epochs: %s", tile.path, exc)
            tile_dates = []

        candidates = candidate_epochs(hex_date, tile_dates, fallback_epoch)
        effective_date = resolve_date(hex_date, tile_dates)
        if effective_date != hex_date:
            logger.debug("Tile %s lacks date %s, requesting nearest %s", tile.path, hex_date, effective_date)
        last_error: Exception | None = None
        for epoch, strategy in candidates:
            try:
                payload = await self.fetch_historical_tile(tile, effective_date, epoch)
            except TileFetchError as exc:
                last_error = exc
                logger.debug("Epoch %s (%s) failed for %s: %s", epoch, strategy, tile.path, exc)
                continue
            if is_blank_tile(payload):
                last_error = TileFetchError(f"blank placeholder at epoch {epoch}")
                logger.debug("Epoch %s (%s) returned a blank tile for %s", epoch, strategy, tile.path)
                continue
            if strategy != "reported":
                logger.info(
                    "Tile %s date %s served by epoch %s from the %s layer",
                    tile.path,
                    hex_date,
                    epoch,
                    strategy,
                )
            return payload, epoch

        raise TileFetchError(
            f"tile {tile.path} (row {tile.row}, col {tile.column}, z{tile.zoom}) date {hex_date}: "
            f"all {len(candidates)} epochs failed across reported, by-date-count and known-good "
            f"layers; last error: {last_error}"
        )

    async def fetch_with_zoom_fallback(
        self, tile: QuadtreeTile, hex_date: str, fallback_epoch: int | None = None
    ) -> bytes:
        try:
            payload, _ = await self.fetch_with_epoch_fallback(tile, hex_date, fallback_epoch)
            return payload
        except TileFetchError as exc:
            first_error = exc

        levels = FALLBACK_LEVELS_LOW_ZOOM if tile.zoom < LOW_ZOOM_THRESHOLD else FALLBACK_LEVELS
        lat, lon = tile.center()
        attempted = 0
        for step in range(1, levels + 1):
            zoom = tile.zoom - step
            if zoom < MIN_FALLBACK_ZOOM:
                break
            attempted += 1
            coarse = quadtree_tile_for_coordinate(lat, lon, zoom)
            try:
                payload, _ = await self.fetch_with_epoch_fallback(coarse, hex_date, fallback_epoch)
            except TileFetchError as exc:
                logger.debug("Zoom fallback to z%s failed for %s: %s", zoom, tile.path, exc)
                continue
            logger.info("Tile %s date %s filled from zoom %s", tile.path, hex_date, zoom)
            return extract_quadrant(payload, tile, coarse)

        raise TileFetchError(
            f"{first_error} (zoom fallback tried {attempted} coarser level(s))"
        )

    async def render_xyz_tile(self, tile: XYZTile, hex_date: str | None = None) -> Image.Image:
        """Reproject quadtree imagery onto one Web-Mercator tile; ``None`` means current imagery."""

        sources: Dict[Tuple[int, int], Image.Image] = {}
        for source in quadtree_tiles_for_xyz(tile):
            try:
                if hex_date is None:
                    payload = await self.fetch_current_tile(source)
                else:
                    payload = await self.fetch_with_zoom_fallback(source, hex_date)
            except TileFetchError as exc:
                logger.debug("Source tile %s unavailable: %s", source.path, exc)
                continue
            try:
                with Image.open(io.BytesIO(payload)) as image:
                    sources[(source.row, source.column)] = image.convert("RGB")
            except OSError as exc:
                raise ProtocolDecodeError(f"unable to decode tile {source.path}: {exc}") from exc

        output = Image.new("RGBA", (TILE_SIZE, TILE_SIZE), (0, 0, 0, 0))
        if not sources:
            return output

        # Latitude depends only on the pixel row and longitude only on the pixel column.
        rows = [latlon_to_quadtree_pixel(pixel_to_latlon(tile, 0, py)[0], 0.0, tile.zoom) for py in range(TILE_SIZE)]
        columns = [latlon_to_quadtree_pixel(0.0, pixel_to_latlon(tile, px, 0)[1], tile.zoom) for px in range(TILE_SIZE)]
        pixels = output.load()
        for py, (source_row, _, _, source_py) in enumerate(rows):
            for px, (_, source_column, source_px, _) in enumerate(columns):
                image = sources.get((source_row, source_column))
                if image is None:
                    continue
                r, g, b = image.getpixel((source_px, source_py))
                pixels[px, py] = (r, g, b, 255)
        return output


async def discover_dates(
    client: GoogleEarthClient, bbox: BoundingBox, zoom: int
) -> List[HistoricalDate]:
    """List the capture dates available across a viewport, newest first."""

    sample_zoom = min(zoom, DATE_SAMPLE_ZOOM)
    sample_tiles: List[QuadtreeTile] = []
    for lat, lon in bbox.sample_points():
        tile = quadtree_tile_for_coordinate(lat, lon, sample_zoom)
        if tile not in sample_tiles:
            sample_tiles.append(tile)

    results = await asyncio.gather(
        *(client.available_dates(tile) for tile in sample_tiles), return_exceptions=True
    )

    by_date: Dict[str, Dict[str, HistoricalDate]] = {}
    sampled = 0
    for tile, result in zip(sample_tiles, results):
        if isinstance(result, TileFetchError):
            logger.warning("Date sampling failed for tile %s: %s", tile.path, result)
            continue
        if isinstance(result, BaseException):
            raise result
        sampled += 1
        for entry in result:
            by_date.setdefault(entry.hex_date, {})[tile.path] = entry

    if sampled == 0:
        raise ImageryError("Failed to sample any tiles in the area.")

    minimum = max(1, math.ceil(sampled * DATE_SAMPLE_MIN_RATIO))
    selected = {token: tiles for token, tiles in by_date.items() if len(tiles) >= minimum}
    if not selected:
        logger.info("No dates common to %d sampled tiles; using every sampled date", sampled)
        selected = by_date

    dates: Dict[str, HistoricalDate] = {}
    for token, per_tile in selected.items():
        entries = list(per_tile.values())
        counts = Counter(entry.epoch for entry in entries)
        epoch = max(counts, key=lambda value: (counts[value], value))
        label = entries[0].date.isoformat()
        if label in dates:
            continue
        dates[label] = HistoricalDate(
            date=entries[0].date, epoch=epoch, hex_date=token, provider=entries[0].provider
        )

    logger.info(
        "Found %d dates across viewport (sampled %d tiles at zoom %d)",
        len(dates),
        sampled,
        sample_zoom,
    )
    return sorted(dates.values(), key=lambda entry: entry.date, reverse=True)
