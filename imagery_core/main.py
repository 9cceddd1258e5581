from __future__ import annotations

import asyncio
import io
import json
import logging
from dataclasses import asdict
from datetime import date as dt_date
from enum import Enum
from typing import AsyncIterator, Dict, List

import httpx
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import Response, StreamingResponse
from pydantic import BaseModel
from sqlmodel import Session, select

from .database import get_session, init_db
from .models import ApiUsageStat, ExportRecord
from .services import imagery
from .services.cache import PROVIDER_ESRI_WAYBACK, PROVIDER_GOOGLE_EARTH, cache_key
from .services.errors import ImageryCancellationError, ImageryError, TileFetchError
from .services.googleearth import (
    DATABASE_DEFAULT,
    DATABASE_TIMEMACHINE,
    GOOGLE_EARTH_MAX_ZOOM,
    GoogleEarthClient,
    discover_dates as discover_google_earth_dates,
    establish_session,
)
from .services.imagery import (
    AcquisitionResult,
    DownloadProgress,
    GoogleEarthHistorical,
    GoogleEarthLatest,
    WaybackRelease,
    acquire,
    acquire_range,
)
from .services.keyhole import hex_to_date
from .services.tiles import BoundingBox, XYZTile, validate_zoom
from .services.usage import record_api_usage, usage_stats
from .services.wayback import WaybackClient, discover_dates as discover_wayback_dates

app = FastAPI(title="Imagery Acquisition Core", version="0.1.0")

logger = logging.getLogger(__name__)

DEFAULT_BOUNDS = {
    "south": 48.1938,
    "west": 16.3588,
    "north": 48.2238,
    "east": 16.3888,
}
DEFAULT_ZOOM = 17


class ProviderKey(str, Enum):
    GOOGLE_EARTH = PROVIDER_GOOGLE_EARTH
    ESRI_WAYBACK = PROVIDER_ESRI_WAYBACK


PROVIDER_LABELS: Dict[str, str] = {
    PROVIDER_GOOGLE_EARTH: "Google Earth (historical quadtree imagery)",
    PROVIDER_ESRI_WAYBACK: "Esri World Imagery Wayback",
}


class StopJobRequest(BaseModel):
    job_id: str


class JobController:
    def __init__(self) -> None:
        self.cancel_event = asyncio.Event()

    def cancel(self) -> None:
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()


_active_jobs: Dict[str, JobController] = {}
_job_lock = asyncio.Lock()


async def _register_job(job_id: str) -> JobController:
    async with _job_lock:
        if job_id in _active_jobs:
            raise HTTPException(status_code=409, detail="Job already in progress")
        controller = JobController()
        _active_jobs[job_id] = controller
        return controller


async def _lookup_job(job_id: str) -> JobController | None:
    async with _job_lock:
        return _active_jobs.get(job_id)


async def _unregister_job(job_id: str) -> None:
    async with _job_lock:
        _active_jobs.pop(job_id, None)


class TileProxy:
    """Long-lived provider clients behind the tile proxy endpoints."""

    def __init__(self) -> None:
        self.http: httpx.AsyncClient | None = None
        self.google: GoogleEarthClient | None = None
        self.wayback: WaybackClient | None = None
        self.lock = asyncio.Lock()

    def _http(self) -> httpx.AsyncClient:
        if self.http is None:
            self.http = httpx.AsyncClient(timeout=imagery._request_timeout())
        return self.http

    async def google_earth(self, *, historical: bool) -> GoogleEarthClient:
        async with self.lock:
            http = self._http()
            if self.google is None:
                self.google = GoogleEarthClient(http)
            if historical and self.google.historical is None:
                self.google.historical = await establish_session(http, DATABASE_TIMEMACHINE)
            if not historical and self.google.current is None:
                self.google.current = await establish_session(http, DATABASE_DEFAULT)
            return self.google

    async def esri(self) -> WaybackClient:
        async with self.lock:
            if self.wayback is None:
                self.wayback = WaybackClient(self._http())
            if not self.wayback.layers:
                await self.wayback.load_layers()
            return self.wayback

    async def close(self) -> None:
        if self.http is not None:
            await self.http.aclose()
        self.http = None
        self.google = None
        self.wayback = None


_tile_proxy = TileProxy()


@app.on_event("startup")
def on_startup() -> None:
    init_db()


@app.on_event("shutdown")
async def on_shutdown() -> None:
    await _tile_proxy.close()


def _bbox_from_query(south: float, west: float, north: float, east: float) -> BoundingBox:
    bbox = BoundingBox(south=south, west=west, north=north, east=east)
    try:
        bbox.validate()
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return bbox


@app.get("/health")
def health() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/dates/google-earth")
async def google_earth_dates(
    south: float = Query(DEFAULT_BOUNDS["south"]),
    west: float = Query(DEFAULT_BOUNDS["west"]),
    north: float = Query(DEFAULT_BOUNDS["north"]),
    east: float = Query(DEFAULT_BOUNDS["east"]),
    zoom: int = Query(DEFAULT_ZOOM),
) -> List[Dict[str, object]]:
    bbox = _bbox_from_query(south, west, north, east)
    try:
        validate_zoom(zoom, maximum=GOOGLE_EARTH_MAX_ZOOM)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        async with httpx.AsyncClient(timeout=imagery._request_timeout()) as http:
            client = await GoogleEarthClient.connect(http, current=False)
            dates = await discover_google_earth_dates(client, bbox, zoom)
    except ImageryError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return [
        {"date": entry.date.isoformat(), "hex_date": entry.hex_date, "epoch": entry.epoch}
        for entry in dates
    ]


@app.get("/dates/esri")
async def esri_dates(
    south: float = Query(DEFAULT_BOUNDS["south"]),
    west: float = Query(DEFAULT_BOUNDS["west"]),
    north: float = Query(DEFAULT_BOUNDS["north"]),
    east: float = Query(DEFAULT_BOUNDS["east"]),
    zoom: int = Query(DEFAULT_ZOOM),
) -> List[Dict[str, object]]:
    bbox = _bbox_from_query(south, west, north, east)
    try:
        validate_zoom(zoom)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    try:
        async with httpx.AsyncClient(timeout=imagery._request_timeout()) as http:
            client = WaybackClient(http)
            await client.load_layers()
            dates = await discover_wayback_dates(client, bbox, zoom)
    except ImageryError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc

    return [
        {
            "date": entry.capture_date.isoformat(),
            "layer_id": entry.layer.identifier,
            "release_id": entry.layer.release_id,
            "release_date": entry.layer.date.isoformat(),
        }
        for entry in dates
    ]


def _google_earth_selectors(hex_dates: List[str], epochs: List[int]) -> List[object]:
    if not hex_dates:
        return [GoogleEarthLatest()]
    if epochs and len(epochs) != len(hex_dates):
        raise HTTPException(status_code=400, detail="Provide one epoch per hex_date")
    selectors: List[object] = []
    for index, token in enumerate(hex_dates):
        try:
            capture = hex_to_date(token)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        epoch = epochs[index] if epochs else 0
        selectors.append(GoogleEarthHistorical(date=capture, hex_date=token, epoch=epoch))
    return selectors


async def _wayback_selectors(
    http: httpx.AsyncClient, layer_ids: List[str], capture_dates: List[str]
) -> List[object]:
    client = WaybackClient(http)
    await client.load_layers()
    if not layer_ids:
        return [WaybackRelease(layer=client.layers[0])] if client.layers else []
    selectors: List[object] = []
    for index, layer_id in enumerate(layer_ids):
        layer = client.layer_by_id(layer_id)
        capture = None
        if index < len(capture_dates) and capture_dates[index]:
            capture = dt_date.fromisoformat(capture_dates[index])
        selectors.append(WaybackRelease(layer=layer, capture_date=capture))
    return selectors


def _export_record(
    provider: str, bbox: BoundingBox, zoom: int, result: AcquisitionResult
) -> ExportRecord:
    output = result.output_path or result.tiles_dir
    return ExportRecord(
        provider=provider,
        date=result.label,
        zoom=zoom,
        south=bbox.south,
        west=bbox.west,
        north=bbox.north,
        east=bbox.east,
        output_path=str(output) if output is not None else "",
        tiles_total=result.total,
        tiles_failed=result.total - result.succeeded,
    )


@app.get("/acquire/stream")
async def stream_acquisition(
    request: Request,
    job_id: str = Query(..., description="Unique client-generated identifier for the job"),
    provider: ProviderKey = Query(ProviderKey.GOOGLE_EARTH),
    south: float = Query(DEFAULT_BOUNDS["south"]),
    west: float = Query(DEFAULT_BOUNDS["west"]),
    north: float = Query(DEFAULT_BOUNDS["north"]),
    east: float = Query(DEFAULT_BOUNDS["east"]),
    zoom: int = Query(DEFAULT_ZOOM),
    output_format: str | None = Query(None, alias="format"),
    hex_date: List[str] = Query([]),
    epoch: List[int] = Query([]),
    layer_id: List[str] = Query([]),
    capture_date: List[str] = Query([]),
    session: Session = Depends(get_session),
):
    job_id = job_id.strip()
    if not job_id:
        raise HTTPException(status_code=400, detail="job_id query parameter is required")

    bbox = BoundingBox(south=south, west=west, north=north, east=east)
    google_selectors = (
        _google_earth_selectors(hex_date, epoch) if provider == ProviderKey.GOOGLE_EARTH else []
    )
    controller = await _register_job(job_id)
    provider_label = PROVIDER_LABELS[provider.value]

    events: asyncio.Queue[tuple[str, Dict[str, object]]] = asyncio.Queue()

    async def enqueue(event: str, data: Dict[str, object]) -> None:
        await events.put((event, data))

    async def on_progress(progress: DownloadProgress) -> None:
        await enqueue("progress", asdict(progress))

    async def on_log(message: str) -> None:
        await enqueue("log", {"message": message})

    async def producer() -> None:
        try:
            await enqueue("log", {"message": f"Starting download using {provider_label}."})
            if google_selectors:
                selectors = google_selectors
            else:
                async with httpx.AsyncClient(timeout=imagery._request_timeout()) as http:
                    selectors = await _wayback_selectors(http, layer_id, capture_date)
                if not selectors:
                    raise ImageryError("No Wayback releases are available.")

            options = dict(
                output_format=output_format,
                progress_callback=on_progress,
                log_callback=on_log,
                cancel_event=controller.cancel_event,
            )
            if len(selectors) == 1:
                results = [await acquire(bbox, zoom, selectors[0], **options)]
            else:
                results = await acquire_range(bbox, zoom, selectors, **options)
        except ImageryCancellationError:
            await enqueue("cancelled", {"message": "Download cancelled."})
        except ValueError as exc:
            await enqueue("error", {"message": str(exc)})
        except ImageryError as exc:
            await enqueue("error", {"message": str(exc)})
        except Exception as exc:  # pragma: no cover - logged at the web boundary
            logger.exception("Acquisition job %s failed: %s", job_id, exc)
            await enqueue("error", {"message": "Unexpected error while downloading imagery."})
        else:
            for result in results:
                session.add(_export_record(provider.value, bbox, zoom, result))
            session.commit()
            await enqueue(
                "complete",
                {
                    "message": f"Downloaded {len(results)} date(s) using {provider_label}.",
                    "outputs": [
                        {
                            "date": result.label,
                            "output_path": result.output_path,
                            "png_path": result.png_path,
                            "tiles_dir": result.tiles_dir,
                            "total": result.total,
                            "succeeded": result.succeeded,
                            "failures": result.failures,
                        }
                        for result in results
                    ],
                },
            )
        finally:
            await enqueue("_end", {})

    async def event_stream() -> AsyncIterator[bytes]:
        producer_task = asyncio.create_task(producer())
        try:
            while True:
                if await request.is_disconnected():
                    controller.cancel()
                try:
                    event_type, payload = await asyncio.wait_for(events.get(), timeout=1.0)
                except asyncio.TimeoutError:
                    continue
                if event_type == "_end":
                    break
                yield _sse_event(event_type, payload)
        finally:
            controller.cancel()
            await producer_task
            await _unregister_job(job_id)

    return StreamingResponse(event_stream(), media_type="text/event-stream")


@app.post("/acquire/stop")
async def stop_acquisition(request: StopJobRequest) -> Dict[str, object]:
    job_id = request.job_id.strip()
    if not job_id:
        raise HTTPException(status_code=400, detail="job_id is required")

    controller = await _lookup_job(job_id)
    if controller is None:
        return {"status": "not_found"}

    controller.cancel()
    return {"status": "stopping"}


@app.get("/exports")
def list_exports(session: Session = Depends(get_session)) -> List[Dict[str, object]]:
    return _build_exports(session)


@app.get("/usage")
def list_usage(session: Session = Depends(get_session)) -> List[Dict[str, object]]:
    return _build_api_usage(session)


@app.get("/tiles/esri/{layer_id}/{z}/{x}/{y}")
async def esri_tile(layer_id: str, z: int, x: int, y: int) -> Response:
    tile = _xyz_tile_or_400(z, x, y, maximum=imagery.MAX_ZOOM)
    try:
        client = await _tile_proxy.esri()
        layer = client.layer_by_id(layer_id)
    except ImageryError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc

    cache = imagery._get_tile_cache()
    key = cache_key(PROVIDER_ESRI_WAYBACK, z, x, y, str(layer.release_id))
    payload = cache.get(key)
    if payload is None:
        try:
            payload = await client.fetch_tile(layer, tile)
        except TileFetchError as exc:
            raise HTTPException(status_code=502, detail=str(exc)) from exc
        record_api_usage(PROVIDER_ESRI_WAYBACK)
        cache.put(key, payload, {"provider": PROVIDER_ESRI_WAYBACK, "date": layer.date.isoformat()})
    return Response(content=payload, media_type="image/jpeg")


@app.get("/tiles/google-earth/latest/{z}/{x}/{y}")
async def google_earth_latest_tile(z: int, x: int, y: int) -> Response:
    tile = _xyz_tile_or_400(z, x, y, maximum=GOOGLE_EARTH_MAX_ZOOM)
    return await _render_google_earth_tile(tile, None)


@app.get("/tiles/google-earth/{hex_date}/{z}/{x}/{y}")
async def google_earth_tile(hex_date: str, z: int, x: int, y: int) -> Response:
    tile = _xyz_tile_or_400(z, x, y, maximum=GOOGLE_EARTH_MAX_ZOOM)
    try:
        hex_to_date(hex_date)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return await _render_google_earth_tile(tile, hex_date)


async def _render_google_earth_tile(tile: XYZTile, hex_date: str | None) -> Response:
    try:
        client = await _tile_proxy.google_earth(historical=hex_date is not None)
        image = await client.render_xyz_tile(tile, hex_date)
    except ImageryError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc
    record_api_usage(PROVIDER_GOOGLE_EARTH)
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return Response(content=buffer.getvalue(), media_type="image/png")


def _xyz_tile_or_400(z: int, x: int, y: int, *, maximum: int) -> XYZTile:
    try:
        validate_zoom(z, maximum=maximum)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    limit = 1 << z
    if not (0 <= x < limit and 0 <= y < limit):
        raise HTTPException(status_code=400, detail=f"Tile {x}/{y} is outside zoom level {z}.")
    return XYZTile(column=x, row=y, zoom=z)


def _sse_event(event: str, data: Dict[str, object]) -> bytes:
    payload = json.dumps(data, default=str)
    return f"event: {event}\ndata: {payload}\n\n".encode("utf-8")


def _build_exports(session: Session) -> List[Dict[str, object]]:
    statement = select(ExportRecord).order_by(ExportRecord.created_at.desc(), ExportRecord.id.desc())
    records: List[ExportRecord] = session.exec(statement).all()
    return [
        {
            "id": record.id,
            "provider": record.provider,
            "provider_label": PROVIDER_LABELS.get(record.provider, record.provider),
            "date": record.date,
            "zoom": record.zoom,
            "bounds": {
                "south": record.south,
                "west": record.west,
                "north": record.north,
                "east": record.east,
            },
            "output_path": record.output_path,
            "tiles_total": record.tiles_total,
            "tiles_failed": record.tiles_failed,
            "created_at": record.created_at,
        }
        for record in records
    ]


def _build_api_usage(session: Session) -> List[Dict[str, object]]:
    stats: List[ApiUsageStat] = usage_stats(session)
    return [
        {
            "provider": stat.provider,
            "provider_label": PROVIDER_LABELS.get(stat.provider, stat.provider),
            "request_count": stat.request_count,
            "last_used_at": stat.last_used_at,
        }
        for stat in stats
    ]
