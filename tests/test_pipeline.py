"""Tests for the fetch / transform / store pipeline."""
import io
import stat
import httpx
import pytest
from PIL import Image
from app.core.errors import SourceFetchError, TransformFailure
from app.core.workflow import ClaimedItem
from app.pipeline.sources import HttpSourceStore, LocalSourceStore
from app.pipeline.transform import transform_image
from tests.conftest import make_jpeg


def _item(ref="photo-1", item_id="item-1"):
    return ClaimedItem(id=item_id, source_ref=ref, file_name=f"{ref}.jpg")


def test_transform_downscales_and_encodes_webp():
    result = transform_image(make_jpeg(3200, 1600), max_width=1600, quality=70)

    assert (result.width, result.height) == (1600, 800)
    assert (result.original_width, result.original_height) == (3200, 1600)
    with Image.open(io.BytesIO(result.data)) as img:
        assert img.format == "WEBP"
        assert img.size == (1600, 800)


def test_transform_never_upscales():
    result = transform_image(make_jpeg(200, 100), max_width=1600, quality=70)

    assert (result.width, result.height) == (200, 100)


def test_transform_keeps_alpha_for_transparent_png():
    buf = io.BytesIO()
    Image.new("RGBA", (40, 20), (0, 0, 0, 0)).save(buf, format="PNG")

    result = transform_image(buf.getvalue(), max_width=20, quality=80)

    with Image.open(io.BytesIO(result.data)) as img:
        assert img.mode == "RGBA"
        assert img.size == (20, 10)


def test_transform_rejects_corrupt_bytes():
    with pytest.raises(TransformFailure) as exc:
        transform_image(b"definitely not an image", max_width=100, quality=70)

    assert not exc.value.transient
    assert exc.value.classified().startswith("permanent:")


def test_process_success_stores_at_deterministic_key(pipeline, source, target_store, config):
    source.assets["photo-1"] = make_jpeg(64, 48)

    outcome = pipeline.process(_item(), config)

    assert outcome.ok
    assert outcome.target_ref == "photos/hd/item-1.webp"
    assert target_store.path_for(outcome.target_ref).exists()
    assert outcome.processed_width == 32 and outcome.processed_height == 24
    assert outcome.original_size == len(source.assets["photo-1"])
    assert outcome.processing_time_ms is not None


def test_stored_files_are_world_readable(pipeline, source, target_store, config):
    source.assets["photo-1"] = make_jpeg(64, 48)

    outcome = pipeline.process(_item(), config)

    mode = stat.S_IMODE(target_store.path_for(outcome.target_ref).stat().st_mode)
    assert mode == 0o644


def test_process_twice_is_idempotent(pipeline, source, target_store, config):
    """A re-run (reclaimed lease) overwrites the same object; no duplicate appears."""
    source.assets["photo-1"] = make_jpeg(64, 48)

    first = pipeline.process(_item(), config)
    first_bytes = target_store.path_for(first.target_ref).read_bytes()
    second = pipeline.process(_item(), config)

    assert first.target_ref == second.target_ref
    stored = [p for p in target_store.root.rglob("*") if p.is_file()]
    assert len(stored) == 1
    assert stored[0].read_bytes() == first_bytes


def test_process_isolates_failures(pipeline, source, config):
    source.failures["photo-1"] = SourceFetchError("rate limited fetching photo-1", transient=True)

    outcome = pipeline.process(_item(), config)

    assert not outcome.ok
    assert outcome.error_message == "transient: rate limited fetching photo-1"
    assert outcome.target_ref is None


def test_process_classifies_unexpected_errors(pipeline, source, config):
    source.failures["photo-1"] = RuntimeError("kaboom")

    outcome = pipeline.process(_item(), config)

    assert not outcome.ok
    assert outcome.error_message.startswith("permanent: unexpected RuntimeError")


def _http_store(handler):
    client = httpx.Client(transport=httpx.MockTransport(handler))
    return HttpSourceStore("https://drive.example/files/{ref}?alt=media", token="tok", client=client)


def test_http_source_fetches_with_bearer_token():
    seen = {}

    def handler(request):
        seen["url"] = str(request.url)
        seen["auth"] = request.headers.get("Authorization")
        return httpx.Response(200, content=b"bytes")

    assert _http_store(handler).fetch("abc/123") == b"bytes"
    assert seen["url"] == "https://drive.example/files/abc%2F123?alt=media"
    assert seen["auth"] == "Bearer tok"


def test_http_source_passes_absolute_urls_through():
    store = _http_store(lambda request: httpx.Response(200, content=b"x"))

    assert store.url_for("https://cdn.example/a.jpg") == "https://cdn.example/a.jpg"


@pytest.mark.parametrize("status, transient, fragment", [
    (429, True, "rate limited"),
    (503, True, "HTTP 503"),
    (404, False, "HTTP 404"),
    (403, False, "HTTP 403"),
])
def test_http_source_classifies_status_errors(status, transient, fragment):
    store = _http_store(lambda request: httpx.Response(status))

    with pytest.raises(SourceFetchError) as exc:
        store.fetch("abc")

    assert exc.value.transient is transient
    assert fragment in exc.value.reason


def test_http_source_timeout_is_transient():
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    with pytest.raises(SourceFetchError) as exc:
        _http_store(handler).fetch("abc")

    assert exc.value.classified().startswith("transient: timeout")


def test_local_source_refuses_paths_outside_root(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "secret.jpg").write_bytes(b"x")
    store = LocalSourceStore(tmp_path / "src")

    with pytest.raises(SourceFetchError) as exc:
        store.fetch("../secret.jpg")

    assert not exc.value.transient


def test_local_source_missing_file_is_permanent(tmp_path):
    with pytest.raises(SourceFetchError) as exc:
        LocalSourceStore(tmp_path).fetch("missing.jpg")

    assert exc.value.classified() == "permanent: source asset not found: missing.jpg"
