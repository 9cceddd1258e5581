import io
import json

import pytest
from PIL import Image

from imagery_core.services.blank import is_blank_tile
from imagery_core.services.cache import (
    PROVIDER_ESRI_WAYBACK,
    PROVIDER_GOOGLE_EARTH,
    TileCache,
    cache_key,
    validate_cache_path,
)
from imagery_core.services.errors import CachePathError


def _jpeg(image: Image.Image) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format="JPEG", quality=90)
    return buffer.getvalue()


def _textured(size: int = 256) -> bytes:
    image = Image.new("RGB", (size, size))
    image.putdata([(x, y, (x * y) % 256) for y in range(size) for x in range(size)])
    return _jpeg(image)


def test_uniform_placeholders_are_blank():
    assert is_blank_tile(_jpeg(Image.new("RGB", (256, 256), (255, 255, 255))))
    assert is_blank_tile(_jpeg(Image.new("RGB", (256, 256), (0, 0, 0))))
    assert is_blank_tile(_jpeg(Image.new("RGB", (256, 256), (120, 130, 140))))


def test_real_imagery_is_not_blank():
    assert not is_blank_tile(_textured())


def test_tiny_payloads_and_images_are_blank():
    assert is_blank_tile(b"\xff\xd8")
    small = io.BytesIO()
    Image.new("RGB", (5, 5), (10, 200, 30)).save(small, format="PNG")
    assert is_blank_tile(small.getvalue())


def test_undecodable_payload_is_not_blank():
    assert not is_blank_tile(b"not an image" * 20)


def test_cache_roundtrip_and_layout(tmp_path):
    cache = TileCache(tmp_path / "cache")
    key = cache_key(PROVIDER_GOOGLE_EARTH, 17, 1234, 567, "fd27e")
    assert cache.get(key) is None

    path = cache.put(key, b"payload", {"date": "2025-03-30"})
    assert path == (tmp_path / "cache" / "google_earth" / "17" / "1234" / "567_fd27e.jpg").resolve()
    assert cache.get(key) == b"payload"

    metadata = cache.metadata(key)
    assert metadata["size"] == 7
    assert metadata["date"] == "2025-03-30"
    assert json.loads(path.with_name(path.name + ".json").read_text())["key"] == key


def test_cache_keys_are_isolated_by_provider_and_date(tmp_path):
    cache = TileCache(tmp_path)
    cache.put(cache_key(PROVIDER_GOOGLE_EARTH, 3, 1, 1, "a"), b"one")
    cache.put(cache_key(PROVIDER_ESRI_WAYBACK, 3, 1, 1, "a"), b"two")
    cache.put(cache_key(PROVIDER_GOOGLE_EARTH, 3, 1, 1, "b"), b"three")
    assert cache.get(cache_key(PROVIDER_GOOGLE_EARTH, 3, 1, 1, "a")) == b"one"
    assert cache.get(cache_key(PROVIDER_ESRI_WAYBACK, 3, 1, 1, "a")) == b"two"
    assert cache.get(cache_key(PROVIDER_GOOGLE_EARTH, 3, 1, 1, "b")) == b"three"


@pytest.mark.parametrize(
    "key",
    [
        "google_earth:17:../../etc:1:date",
        "google_earth:17:..:1:date",
        "/etc:17:1:1:date",
        "google_earth:17:1:1:../escape",
        "google_earth::1:1:date",
        "google_earth:17:1",
    ],
)
def test_cache_rejects_traversal_keys_before_writing(tmp_path, key):
    root = tmp_path / "cache"
    cache = TileCache(root)
    with pytest.raises(CachePathError):
        cache.put(key, b"payload")
    assert list(root.rglob("*")) == []
    assert not (tmp_path / "escape.jpg").exists()


def test_validate_cache_path(tmp_path):
    root = tmp_path / "cache"
    root.mkdir()
    assert validate_cache_path(root, root / "a" / "b.jpg") == (root / "a" / "b.jpg").resolve()
    with pytest.raises(CachePathError):
        validate_cache_path(root, root / ".." / "outside.jpg")
    with pytest.raises(CachePathError):
        validate_cache_path(root, root)
