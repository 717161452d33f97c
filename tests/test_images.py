"""Tests for image acquisition."""

import httpx
import pytest

from nursery_import.ingest import images
from nursery_import.ingest.images import (
    ImageDownloadService,
    blob_path,
    candidate_urls,
    full_size_url,
    generate_filename,
)
from nursery_import.ingest.rate_limiter import UpstreamGate

JPEG = b"\xff\xd8\xff\xe0fake-jpeg-bytes"


def make_service(tmp_path, handler, retries=2):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ImageDownloadService(
        output_dir=tmp_path,
        public_prefix="/products/",
        retries=retries,
        retry_base_delay=0,
        timeout_retry_base_delay=0,
        client=client,
        gate=UpstreamGate(min_interval=0),
    )


def test_full_size_url():
    assert full_size_url("https://cdn.test/images/thumbs/0012345_acer_400.jpg") == (
        "https://cdn.test/images/thumbs/0012345_acer.jpg"
    )
    assert full_size_url("https://cdn.test/images/acer.jpg") is None


def test_candidate_order():
    url = "https://cdn.test/img/plant_400.jpeg?v=2"
    assert candidate_urls(url) == ["https://cdn.test/img/plant.jpeg?v=2", url]
    assert candidate_urls("https://cdn.test/img/plant.png") == ["https://cdn.test/img/plant.png"]


def test_generate_filename_is_deterministic():
    url = "https://cdn.test/img/Acer_Palmatum.webp"
    first = generate_filename(url, "Acer palmatum 'Bloodgood'")
    assert first == generate_filename(url, "Acer palmatum 'Bloodgood'")
    assert first.startswith("acer-palmatum-bloodgood-")
    assert first.endswith(".webp")
    assert generate_filename("https://cdn.test/img/photo", None).endswith(".jpg")
    assert generate_filename("https://cdn.test/a.jpg") != generate_filename("https://cdn.test/b.jpg")


def test_blob_path():
    assert blob_path("product", "x.jpg") == "images/product/x.jpg"
    assert blob_path("category", "y.png") == "images/category/y.png"
    with pytest.raises(ValueError):
        blob_path("banner", "z.jpg")


@pytest.mark.asyncio
async def test_full_size_first_then_original(tmp_path):
    """A missing full-size asset falls back to the thumbnail URL."""
    requested = []

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if str(request.url).endswith("acer.jpg"):
            return httpx.Response(404)
        return httpx.Response(200, content=JPEG, headers={"content-type": "image/jpeg"})

    service = make_service(tmp_path, handler)
    url = "https://cdn.test/img/acer_400.jpg"
    result = await service.download_image(url, "acer")

    assert result.success
    assert requested == ["https://cdn.test/img/acer.jpg", url]
    assert result.local_path == "/products/" + generate_filename("https://cdn.test/img/acer.jpg", "acer")
    assert (tmp_path / result.local_path.removeprefix("/products/")).read_bytes() == JPEG
    await service.close()


@pytest.mark.asyncio
async def test_existing_file_skips_network(tmp_path):
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request.url)
        return httpx.Response(200, content=JPEG, headers={"content-type": "image/jpeg"})

    service = make_service(tmp_path, handler)
    first = await service.download_image("https://cdn.test/img/fern.png", "fern")
    second = await service.download_image("https://cdn.test/img/fern.png", "fern")

    assert first.success and second.success
    assert first.local_path == second.local_path
    assert len(calls) == 1
    assert len(list(tmp_path.iterdir())) == 1


@pytest.mark.asyncio
async def test_invalid_url(tmp_path):
    service = make_service(tmp_path, lambda request: httpx.Response(500))
    result = await service.download_image("ftp://cdn.test/a.jpg")
    assert not result.success
    assert result.error == "Invalid image URL"


@pytest.mark.asyncio
async def test_non_image_response_leaves_no_files(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"<html>login</html>", headers={"content-type": "text/html"})

    service = make_service(tmp_path, handler)
    result = await service.download_image("https://cdn.test/img/rose.jpg")

    assert not result.success
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_empty_body_is_a_failure(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, content=b"", headers={"content-type": "image/jpeg"})

    service = make_service(tmp_path, handler, retries=1)
    result = await service.download_image("https://cdn.test/img/rose.jpg")

    assert not result.success
    assert "Empty response body" in result.error
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_server_errors_are_retried(tmp_path):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url)
        if len(attempts) < 2:
            return httpx.Response(503)
        return httpx.Response(200, content=JPEG, headers={"content-type": "image/jpeg"})

    service = make_service(tmp_path, handler, retries=2)
    result = await service.download_image("https://cdn.test/img/gum.jpg")

    assert result.success
    assert len(attempts) == 2


@pytest.mark.asyncio
async def test_permanent_errors_are_not_retried(tmp_path):
    attempts = []

    def handler(request: httpx.Request) -> httpx.Response:
        attempts.append(request.url)
        return httpx.Response(403)

    service = make_service(tmp_path, handler, retries=3)
    result = await service.download_image("https://cdn.test/img/gum.jpg")

    assert not result.success
    assert len(attempts) == 1


@pytest.mark.asyncio
async def test_batch_partitions_results(tmp_path):
    def handler(request: httpx.Request) -> httpx.Response:
        if "missing" in str(request.url):
            return httpx.Response(404)
        return httpx.Response(200, content=JPEG, headers={"content-type": "image/jpeg"})

    service = make_service(tmp_path, handler)
    urls = ["https://cdn.test/a.jpg", "https://cdn.test/missing.jpg", "not-a-url"]
    result = await service.download_images(urls, "plant")

    assert len(result.downloaded) == 1
    assert [f.url for f in result.failed] == ["https://cdn.test/missing.jpg", "not-a-url"]
    assert len(result.downloaded) + len(result.failed) == len(urls)


@pytest.mark.asyncio
@pytest.mark.parametrize("failure", ["status", "connect"])
async def test_full_size_candidate_uses_all_retries_before_original(tmp_path, failure):
    requested = []
    full = "https://cdn.test/img/acer.jpg"
    original = "https://cdn.test/img/acer_400.jpg"

    def handler(request: httpx.Request) -> httpx.Response:
        requested.append(str(request.url))
        if str(request.url) == full:
            if failure == "connect":
                raise httpx.ConnectError("connection reset", request=request)
            return httpx.Response(503)
        return httpx.Response(200, content=JPEG, headers={"content-type": "image/jpeg"})

    service = make_service(tmp_path, handler, retries=3)
    result = await service.download_image(original, "acer")

    assert result.success
    assert requested == [full] * 3 + [original]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "error, expected_delays",
    [
        (httpx.ReadTimeout, [5.0, 10.0]),
        (httpx.ConnectError, [1.0, 2.0]),
    ],
)
async def test_timeouts_back_off_with_their_own_delay(tmp_path, monkeypatch, error, expected_delays):
    delays = []

    async def fake_sleep(seconds):
        delays.append(seconds)

    monkeypatch.setattr(images.asyncio, "sleep", fake_sleep)

    def handler(request: httpx.Request) -> httpx.Response:
        raise error("upstream stalled", request=request)

    service = ImageDownloadService(
        output_dir=tmp_path,
        retries=3,
        retry_base_delay=1.0,
        timeout_retry_base_delay=5.0,
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
        gate=UpstreamGate(min_interval=0),
    )
    result = await service.download_image("https://cdn.test/img/gum.jpg")

    assert not result.success
    assert delays == expected_delays
