from __future__ import annotations

import asyncio
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from datetime import date as dt_date, datetime, timezone
from typing import Dict, List, Sequence, Tuple
from urllib.parse import urlsplit, urlunsplit

import httpx

from .errors import ImageryError, TileFetchError
from .tiles import BoundingBox, XYZTile, xyz_tile_center_mercator, xyz_tile_for_coordinate

logger = logging.getLogger(__name__)

CAPABILITIES_URL = (
    "https://wayback.maptiles.arcgis.com/arcgis/rest/services/world_imagery/mapserver/wmts/1.0.0/"
    "wmtscapabilities.xml"
)
USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"
REQUEST_HEADERS = {"User-Agent": USER_AGENT}

WAYBACK_MAX_ZOOM = 23
METADATA_MAX_LAYER = 13
METADATA_LEVEL_BASE = 23

_NAMESPACES = {
    "wmts": "http://www.opengis.net/wmts/1.0",
    "ows": "http://www.opengis.net/ows/1.1",
}
_TITLE_DATE = re.compile(r"Wayback (\d{4}-\d{2}-\d{2})")
_TILE_PATH_MARKER = "/MapServer/tile/"
_SERVICE_MARKER = "/World_Imagery"


@dataclass(frozen=True)
class WaybackLayer:
    """One archived release of the World Imagery basemap."""

    identifier: str
    title: str
    format: str
    resource_url: str
    tile_matrix_sets: Tuple[str, ...]
    date: dt_date
    release_id: int

    def tile_url(self, tile: XYZTile) -> str:
        matrix_set = self.tile_matrix_sets[0] if self.tile_matrix_sets else "default028mm"
        return (
            self.resource_url.replace("{TileMatrixSet}", matrix_set)
            .replace("{TileMatrix}", str(tile.zoom))
            .replace("{TileRow}", str(tile.row))
            .replace("{TileCol}", str(tile.column))
        )

    def tilemap_url(self, tile: XYZTile) -> str:
        index = self.resource_url.find(_SERVICE_MARKER)
        if index < 0:
            raise ImageryError(f"Layer {self.identifier} has an unexpected resource URL.")
        base = self.resource_url[: index + len(_SERVICE_MARKER)]
        return f"{base}/MapServer/tilemap/{self.release_id}/{tile.zoom}/{tile.row}/{tile.column}"

    def metadata_query_url(self, tile: XYZTile) -> str:
        parts = urlsplit(self.resource_url)
        labels = parts.netloc.split(".")
        labels[0] = "metadata"
        host = ".".join(labels)
        index = parts.path.find(_SERVICE_MARKER)
        path = parts.path[: index + len(_SERVICE_MARKER)] if index >= 0 else parts.path
        base = urlunsplit((parts.scheme, host, path, "", ""))
        suffix = self.identifier.replace("WB", "", 1).lower()
        layer = min(METADATA_MAX_LAYER, METADATA_LEVEL_BASE - tile.zoom)
        x, y = xyz_tile_center_mercator(tile)
        geometry = (
            "%7B%22spatialReference%22%3A%7B%22wkid%22%3A3857%7D%2C"
            f"%22x%22%3A{x:f}%2C%22y%22%3A{y:f}%7D"
        )
        return (
            f"{base}_Metadata{suffix}/MapServer/{layer}/query?f=json&where=1%3D1"
            "&outFields=SRC_DATE2&returnGeometry=false&geometryType=esriGeometryPoint"
            f"&spatialRel=esriSpatialRelIntersects&geometry={geometry}"
        )


@dataclass(frozen=True)
class WaybackDate:
    """A release whose pixels actually changed at a tile, with its capture date."""

    layer: WaybackLayer
    capture_date: dt_date


def _parse_layer(element: ET.Element) -> WaybackLayer | None:
    title = (element.findtext("ows:Title", default="", namespaces=_NAMESPACES) or "").strip()
    identifier = (element.findtext("ows:Identifier", default="", namespaces=_NAMESPACES) or "").strip()
    image_format = (element.findtext("wmts:Format", default="", namespaces=_NAMESPACES) or "").strip()
    resource = element.find("wmts:ResourceURL", _NAMESPACES)
    template = resource.attrib.get("template", "") if resource is not None else ""
    matrix_sets = tuple(
        (node.text or "").strip()
        for node in element.findall("wmts:TileMatrixSetLink/wmts:TileMatrixSet", _NAMESPACES)
        if (node.text or "").strip()
    )

    match = _TITLE_DATE.search(title)
    if not match or not identifier or not template:
        return None
    try:
        release_date = datetime.strptime(match.group(1), "%Y-%m-%d").date()
    except ValueError:
        return None

    marker = template.find(_TILE_PATH_MARKER)
    if marker < 0:
        return None
    tail = template[marker + len(_TILE_PATH_MARKER):]
    try:
        release_id = int(tail.split("/", 1)[0])
    except ValueError:
        return None

    return WaybackLayer(
        identifier=identifier,
        title=title,
        format=image_format,
        resource_url=template,
        tile_matrix_sets=matrix_sets,
        date=release_date,
        release_id=release_id,
    )


def parse_capabilities(document: str | bytes) -> List[WaybackLayer]:
    """Parse the WMTS capabilities document into releases, newest first."""

    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise ImageryError(f"Failed to parse Wayback capabilities XML: {exc}") from exc

    layers: List[WaybackLayer] = []
    for element in root.findall("wmts:Contents/wmts:Layer", _NAMESPACES):
        layer = _parse_layer(element)
        if layer is None:
            logger.debug("Skipping unparseable Wayback layer")
            continue
        layers.append(layer)
    layers.sort(key=lambda layer: layer.date, reverse=True)
    return layers


class WaybackClient:
    def __init__(self, http: httpx.AsyncClient, layers: Sequence[WaybackLayer] | None = None) -> None:
        self.http = http
        self.layers: List[WaybackLayer] = list(layers or [])

    async def load_layers(self) -> List[WaybackLayer]:
        try:
            response = await self.http.get(CAPABILITIES_URL, headers=REQUEST_HEADERS)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ImageryError(f"Failed to fetch Wayback capabilities: {exc}") from exc
        self.layers = parse_capabilities(response.content)
        logger.info("Loaded %d Wayback releases", len(self.layers))
        return self.layers

    def layer_by_id(self, identifier: str) -> WaybackLayer:
        for layer in self.layers:
            if layer.identifier == identifier or str(layer.release_id) == identifier:
                return layer
        raise ImageryError(f"Unknown Wayback release: {identifier}")

    async def fetch_tile(self, layer: WaybackLayer, tile: XYZTile) -> bytes:
        url = layer.tile_url(tile)
        try:
            response = await self.http.get(url, headers=REQUEST_HEADERS)
        except httpx.RequestError as exc:
            raise TileFetchError(f"Wayback tile {tile.zoom}/{tile.column}/{tile.row}: {exc}") from exc
        if response.status_code != 200:
            raise TileFetchError(
                f"Wayback tile {tile.zoom}/{tile.column}/{tile.row} returned status {response.status_code}"
            )
        return response.content

    async def probe_tilemap(self, layer: WaybackLayer, tile: XYZTile) -> Tuple[bool, int]:
        """Return whether ``layer`` has data at ``tile`` and the release that last changed it."""

        try:
            response = await self.http.get(layer.tilemap_url(tile), headers=REQUEST_HEADERS)
            response.raise_for_status()
            payload = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            raise TileFetchError(f"Wayback tilemap probe for {layer.identifier} failed: {exc}") from exc

        if not isinstance(payload, dict):
            raise TileFetchError(f"Wayback tilemap probe for {layer.identifier} returned unexpected JSON")
        data = payload.get("data") or []
        select = payload.get("select") or []
        available = bool(data) and data[0] == 1
        selected = select[0] if select else 0
        try:
            return available, int(selected or 0)
        except (TypeError, ValueError) as exc:
            raise TileFetchError(
                f"Wayback tilemap probe for {layer.identifier} returned release {selected!r}"
            ) from exc

    async def local_changes(self, tile: XYZTile) -> List[WaybackLayer]:
        """Walk the release list keeping only releases that changed pixels at ``tile``."""

        changes: List[WaybackLayer] = []
        index = 0
        while index < len(self.layers):
            current = self.layers[index]
            try:
                available, selected = await self.probe_tilemap(current, tile)
            except TileFetchError as exc:
                logger.warning("Stopping Wayback change walk: %s", exc)
                break
            if not available:
                break

            changed = current
            if selected > 0:
                changed = next((layer for layer in self.layers if layer.release_id == selected), current)
            if changed not in changes:
                changes.append(changed)

            next_index = self.layers.index(changed) + 1
            index = max(next_index, index + 1)
        return changes

    async def capture_date(self, layer: WaybackLayer, tile: XYZTile) -> dt_date:
        try:
            response = await self.http.get(layer.metadata_query_url(tile), headers=REQUEST_HEADERS)
        except httpx.RequestError as exc:
            logger.debug("Capture date query failed for %s: %s", layer.identifier, exc)
            return layer.date
        if response.status_code != 200:
            return layer.date
        try:
            payload = response.json()
            value = payload["features"][0]["attributes"]["SRC_DATE2"]
        except (ValueError, KeyError, IndexError, TypeError):
            return layer.date
        try:
            millis = int(value)
        except (TypeError, ValueError):
            logger.debug("Unreadable capture date %r for %s", value, layer.identifier)
            return layer.date
        return datetime.fromtimestamp(millis / 1000, tz=timezone.utc).date()

    async def available_dates(self, tile: XYZTile) -> List[WaybackDate]:
        """Distinct capture dates at ``tile``, one release each, newest release first."""

        if not self.layers:
            await self.load_layers()
        changes = await self.local_changes(tile)
        captured = await asyncio.gather(*(self.capture_date(layer, tile) for layer in changes))

        seen: Dict[dt_date, WaybackDate] = {}
        for layer, capture in zip(changes, captured):
            if capture in seen:
                continue
            seen[capture] = WaybackDate(layer=layer, capture_date=capture)
        return sorted(seen.values(), key=lambda entry: entry.layer.date, reverse=True)


async def discover_dates(client: WaybackClient, bbox: BoundingBox, zoom: int) -> List[WaybackDate]:
    """List the capture dates that changed pixels at the centre of ``bbox``."""

    lat, lon = bbox.center
    tile = xyz_tile_for_coordinate(lat, lon, zoom)
    dates = await client.available_dates(tile)
    logger.info(
        "Found %d Wayback dates at tile %d/%d/%d",
        len(dates),
        tile.zoom,
        tile.column,
        tile.row,
    )
    return dates
