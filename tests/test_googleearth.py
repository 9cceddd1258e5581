import asyncio
import io
import struct
from datetime import date

import httpx
import pytest
from PIL import Image

from imagery_core.services import googleearth, keyhole
from imagery_core.services.errors import ImageryError, TileFetchError
from imagery_core.services.googleearth import (
    KNOWN_GOOD_EPOCHS,
    GoogleEarthClient,
    GoogleEarthSession,
    candidate_epochs,
    discover_dates,
    epochs_by_date_count,
    extract_quadrant,
    reported_epoch,
    resolve_date,
)
from imagery_core.services.keyhole import HistoricalDate
from imagery_core.services.tiles import BoundingBox, QuadtreeTile, XYZTile


def _jpeg(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=95)
    return buffer.getvalue()


def _textured() -> bytes:
    image = Image.new("RGB", (256, 256))
    image.putdata([(x, y, (x * y) % 256) for y in range(256) for x in range(256)])
    return _jpeg(image)


def _white() -> bytes:
    return _jpeg(Image.new("RGB", (256, 256), (255, 255, 255)))


def _entry(year: int, month: int, day: int, epoch: int) -> HistoricalDate:
    capture = date(year, month, day)
    return HistoricalDate(date=capture, epoch=epoch, hex_date=keyhole.date_to_hex(capture))


class DummyResponse:
    def __init__(self, url: str, content: bytes, status_code: int = 200):
        self.url = url
        self.content = content
        self.status_code = status_code
        self.headers = {}


class RoutingHttp:
    """Answers GET requests by matching URL substrings."""

    def __init__(self, routes):
        self.routes = routes
        self.requested = []

    async def get(self, url, headers=None, params=None):
        self.requested.append(url)
        for fragment, content in self.routes.items():
            if fragment in url:
                return DummyResponse(url, content)
        return DummyResponse(url, b"", status_code=404)


class StubClient(GoogleEarthClient):
    def __init__(self, dates=None, served=None):
        super().__init__(http=None)
        self.dates = dates or []
        self.served = served or {}
        self.attempts = []
        self.requested_dates = []

    async def available_dates(self, tile):
        return list(self.dates)

    async def fetch_historical_tile(self, tile, hex_date, epoch):
        self.attempts.append(epoch)
        self.requested_dates.append(hex_date)
        if epoch in self.served:
            return self.served[epoch]
        raise TileFetchError(f"status 404 at epoch {epoch}")


def test_reported_epoch_prefers_exact_then_nearest_then_caller_epoch():
    dates = [_entry(2025, 3, 30, 360), _entry(2016, 1, 1, 300)]
    assert reported_epoch("fd27e", dates, 1) == [360]
    assert reported_epoch(keyhole.date_to_hex(date(2016, 1, 2)), dates, 1) == [300]
    assert reported_epoch("fd27e", [], 250) == [250]
    assert reported_epoch("fd27e", [], None) == []


def test_epochs_by_date_count_breaks_ties_with_larger_epoch():
    dates = [_entry(2016, 1, 1, 300), _entry(2016, 1, 2, 300), _entry(2016, 1, 3, 310), _entry(2016, 1, 4, 320)]
    assert epochs_by_date_count("fc021", dates, None) == [300, 320, 310]


def test_candidate_epochs_are_deterministic_and_unique():
    dates = [_entry(2025, 3, 30, 361), _entry(2025, 3, 31, 300), _entry(2025, 4, 1, 300)]
    first = candidate_epochs("fd27e", dates)
    second = candidate_epochs("fd27e", list(dates))
    assert first == second
    epochs = [epoch for epoch, _ in first]
    assert epochs[:2] == [361, 300]
    assert len(epochs) == len(set(epochs))
    assert set(KNOWN_GOOD_EPOCHS) <= set(epochs)
    assert dict(first)[361] == "reported"
    assert dict(first)[365] == "known-good"


def test_epoch_fallback_skips_blank_placeholders():
    tile = QuadtreeTile(column=10, row=20, zoom=12)
    client = StubClient(
        dates=[_entry(2025, 3, 30, 300), _entry(2024, 1, 1, 250), _entry(2024, 1, 2, 250)],
        served={300: _white(), 250: _textured()},
    )

    payload, epoch = asyncio.run(client.fetch_with_epoch_fallback(tile, "fd27e"))

    assert epoch == 250
    assert client.attempts == [300, 250]
    assert payload


def test_epoch_fallback_reaches_known_good_layer_and_reports_attempts():
    tile = QuadtreeTile(column=10, row=20, zoom=12)
    client = StubClient(dates=[], served={KNOWN_GOOD_EPOCHS[3]: _textured()})

    _, epoch = asyncio.run(client.fetch_with_epoch_fallback(tile, "fd27e", fallback_epoch=111))
    assert epoch == KNOWN_GOOD_EPOCHS[3]
    assert client.attempts[0] == 111

    failing = StubClient(dates=[], served={})
    with pytest.raises(TileFetchError, match=r"all 12 epochs failed"):
        asyncio.run(failing.fetch_with_epoch_fallback(tile, "fd27e", fallback_epoch=111))


def test_resolve_date_switches_to_the_nearest_listed_date():
    dates = [_entry(2025, 3, 29, 360), _entry(2016, 1, 1, 300)]
    assert resolve_date("fd27e", dates) == "fd27d"
    assert resolve_date("fd27d", dates) == "fd27d"
    assert resolve_date("fd27e", []) == "fd27e"


def test_epoch_fallback_requests_the_nearest_date_token_for_every_layer():
    tile = QuadtreeTile(column=10, row=20, zoom=16)
    client = StubClient(dates=[_entry(2025, 3, 29, 360)], served={KNOWN_GOOD_EPOCHS[1]: _textured()})

    _, epoch = asyncio.run(client.fetch_with_epoch_fallback(tile, "fd27e"))

    assert epoch == KNOWN_GOOD_EPOCHS[1]
    assert client.attempts[0] == 360
    assert set(client.requested_dates) == {"fd27d"}


def test_extract_quadrant_maps_southern_rows_to_image_bottom():
    image = Image.new("RGB", (256, 256))
    colours = {
        (0, 0): (250, 0, 0),
        (1, 0): (0, 250, 0),
        (0, 1): (0, 0, 250),
        (1, 1): (250, 250, 0),
    }
    for (cx, cy), colour in colours.items():
        image.paste(colour, (cx * 128, cy * 128, cx * 128 + 128, cy * 128 + 128))
    coarse = QuadtreeTile(column=100, row=200, zoom=15)

    south_west = QuadtreeTile(column=200, row=400, zoom=16)
    north_east = QuadtreeTile(column=201, row=401, zoom=16)

    sw = Image.open(io.BytesIO(extract_quadrant(_jpeg(image), south_west, coarse))).convert("RGB")
    ne = Image.open(io.BytesIO(extract_quadrant(_jpeg(image), north_east, coarse))).convert("RGB")

    assert sw.size == (256, 256)
    r, g, b = sw.getpixel((128, 128))
    assert b > 200 and r < 50
    r, g, b = ne.getpixel((128, 128))
    assert g > 200 and b < 50 and r < 50


def test_zoom_fallback_uses_coarser_tile(monkeypatch):
    tile = QuadtreeTile(column=400, row=800, zoom=18)
    attempts = []

    async def fake_epoch_fallback(self, target, hex_date, fallback_epoch=None):
        attempts.append(target.zoom)
        if target.zoom == 16:
            return _textured(), 300
        raise TileFetchError(f"missing at z{target.zoom}")

    monkeypatch.setattr(GoogleEarthClient, "fetch_with_epoch_fallback", fake_epoch_fallback)
    payload = asyncio.run(GoogleEarthClient(http=None).fetch_with_zoom_fallback(tile, "fd27e"))

    assert attempts == [18, 17, 16]
    assert Image.open(io.BytesIO(payload)).size == (256, 256)


def test_zoom_fallback_never_goes_below_level_ten(monkeypatch):
    tile = QuadtreeTile(column=3, row=5, zoom=11)
    attempts = []

    async def always_fail(self, target, hex_date, fallback_epoch=None):
        attempts.append(target.zoom)
        raise TileFetchError("missing")

    monkeypatch.setattr(GoogleEarthClient, "fetch_with_epoch_fallback", always_fail)
    with pytest.raises(TileFetchError, match="1 coarser level"):
        asyncio.run(GoogleEarthClient(http=None).fetch_with_zoom_fallback(tile, "fd27e"))
    assert attempts == [11, 10]


def _root_packet(tile_epoch: int) -> bytes:
    quantum = keyhole.PACKET_QUANTUM
    header = keyhole.PACKET_HEADER
    buffer = struct.pack("<hh", keyhole.CHANNEL_TYPE_IMAGERY, tile_epoch)
    quanta = [
        quantum.pack(0x02, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0, 0),
        quantum.pack(0, 0, 0, 0, 1, 0, 0, 2, 0, 0, 0, 0),
    ]
    offset = header.size + quantum.size * len(quanta)
    return header.pack(keyhole.PACKET_MAGIC, 1, 1, len(quanta), quantum.size, offset, len(buffer), 0) + b"".join(quanta) + buffer


def test_current_tile_walks_root_packet_and_memoizes_it():
    tile = QuadtreeTile.from_path("01")
    tile_bytes = _textured()
    http = RoutingHttp({"q2-0-q.5": _root_packet(77), "f1-01-i.77": tile_bytes})
    session = GoogleEarthSession(database=googleearth.DATABASE_DEFAULT, key=b"", quadtree_version=5)
    client = GoogleEarthClient(http, current=session)

    async def run():
        first = await client.fetch_current_tile(tile)
        second = await client.fetch_current_tile(tile)
        return first, second

    first, second = asyncio.run(run())
    assert first == tile_bytes == second
    assert sum("q2-0-q.5" in url for url in http.requested) == 1


def test_missing_node_is_a_tile_fetch_error():
    http = RoutingHttp({"q2-0-q.1": _root_packet(77)})
    session = GoogleEarthSession(database=googleearth.DATABASE_DEFAULT, key=b"", quadtree_version=0)
    client = GoogleEarthClient(http, current=session)
    with pytest.raises(TileFetchError, match="no metadata node"):
        asyncio.run(client.fetch_current_tile(QuadtreeTile.from_path("03")))


def test_sessions_must_be_established_first():
    client = GoogleEarthClient(http=None)
    with pytest.raises(ImageryError, match="historical"):
        asyncio.run(client.available_dates(QuadtreeTile.from_path("0")))


def test_establish_session_reads_key_from_database_root():
    key = bytes(range(64))
    dbroot = bytes([0x12, len(key)]) + key
    http = RoutingHttp({"db=tm": dbroot})

    session = asyncio.run(googleearth.establish_session(http, googleearth.DATABASE_TIMEMACHINE))
    assert session.key == key
    assert session.quadtree_version == 1
    assert http.requested == [googleearth.DATABASE_URLS[googleearth.DATABASE_TIMEMACHINE]]


def test_discover_dates_keeps_dates_common_to_most_samples():
    class SamplingClient(GoogleEarthClient):
        def __init__(self):
            super().__init__(http=None)
            self.zooms = set()

        async def available_dates(self, tile):
            self.zooms.add(tile.zoom)
            common = [_entry(2016, 1, 1, 300), _entry(2025, 3, 30, 360)]
            if tile.column % 2:
                return common + [_entry(2014, 6, 1, 280)]
            return common

    bbox = BoundingBox(south=0.0, west=0.0, north=0.2, east=0.2)
    client = SamplingClient()
    dates = asyncio.run(discover_dates(client, bbox, 19))

    assert client.zooms == {16}
    assert [entry.hex_date for entry in dates][:2] == ["fd27e", "fc021"]
    assert dates[0].date == date(2025, 3, 30)
    assert dates[0].epoch == 360


def test_discover_dates_fails_when_no_sample_succeeds():
    class FailingClient(GoogleEarthClient):
        async def available_dates(self, tile):
            raise TileFetchError("offline")

    with pytest.raises(ImageryError, match="Failed to sample"):
        asyncio.run(discover_dates(FailingClient(http=None), BoundingBox(0.0, 0.0, 0.1, 0.1), 14))


def test_fetch_errors_wrap_transport_failures():
    class BrokenHttp:
        async def get(self, url, headers=None):
            raise httpx.ConnectError("refused")

    session = GoogleEarthSession(database=googleearth.DATABASE_TIMEMACHINE, key=b"", quadtree_version=1)
    client = GoogleEarthClient(BrokenHttp(), historical=session)
    with pytest.raises(TileFetchError, match="request failed"):
        asyncio.run(client.fetch_historical_tile(QuadtreeTile.from_path("0"), "fd27e", 300))


def test_render_xyz_tile_reprojects_current_imagery():
    class CurrentClient(GoogleEarthClient):
        def __init__(self):
            super().__init__(http=None)
            self.sources = []

        async def fetch_current_tile(self, tile):
            self.sources.append(tile)
            return _jpeg(Image.new("RGB", (256, 256), (220, 20, 20)))

    client = CurrentClient()
    image = asyncio.run(client.render_xyz_tile(XYZTile(column=1, row=1, zoom=2)))

    assert image.size == (256, 256)
    assert client.sources and all(source.zoom == 2 for source in client.sources)
    r, g, b, a = image.getpixel((128, 128))
    assert a == 255 and r > 180 and g < 60


def test_discover_dates_falls_back_to_union_when_nothing_is_common():
    class DisjointClient(GoogleEarthClient):
        def __init__(self):
            super().__init__(http=None)
            self.calls = 0

        async def available_dates(self, tile):
            self.calls += 1
            return [_entry(2020, 1, self.calls, 300)]

    client = DisjointClient()
    bbox = BoundingBox(south=0.0, west=0.0, north=0.2, east=0.2)
    dates = asyncio.run(discover_dates(client, bbox, 16))

    assert client.calls > 1
    assert len(dates) == client.calls
    assert dates[0].date == date(2020, 1, client.calls)
