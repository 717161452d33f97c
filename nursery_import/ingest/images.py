"""Product image acquisition with full-size preference, retry and idempotent storage."""

import asyncio
import hashlib
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Optional
from urllib.parse import urlsplit, urlunsplit

import httpx

from nursery_import import metrics
from nursery_import.config import settings
from nursery_import.ingest.errors import classify_network_error
from nursery_import.ingest.rate_limiter import UpstreamGate, upstream_gate

logger = logging.getLogger(__name__)

# Trailing "_<digits>" before the extension marks a resized thumbnail
THUMBNAIL_SUFFIX = re.compile(r"_\d+(\.(?:jpe?g|png|webp|gif))$", re.IGNORECASE)
ALLOWED_EXTENSIONS = {".jpg", ".jpeg", ".png", ".webp", ".gif"}
BLOB_KINDS = {"product", "category"}

# Client errors that will not change on retry
_PERMANENT_STATUS = {400, 401, 403, 404, 410}


@dataclass
class ImageDownloadResult:
    success: bool
    local_path: Optional[str] = None
    error: Optional[str] = None


@dataclass
class FailedImage:
    url: str
    error: str


@dataclass
class BatchDownloadResult:
    downloaded: list[str] = field(default_factory=list)
    failed: list[FailedImage] = field(default_factory=list)


def full_size_url(url: str) -> Optional[str]:
    """Return the URL with its thumbnail suffix removed, or None if it has none."""
    parts = urlsplit(url)
    stripped = THUMBNAIL_SUFFIX.sub(r"\1", parts.path)
    if stripped == parts.path:
        return None
    return urlunsplit(parts._replace(path=stripped))


def candidate_urls(url: str) -> list[str]:
    """Full-size variant first (when derivable), then the original URL."""
    full = full_size_url(url)
    return [full, url] if full else [url]


def _sanitize(name: str) -> str:
    return re.sub(r"[^a-z0-9]+", "-", name.lower()).strip("-")[:50].strip("-")


def generate_filename(url: str, hint_name: Optional[str] = None) -> str:
    """
    Deterministic filename: <hint-or-origin-stem>-<md5(url)[:8]><ext>.

    The same URL and hint always map to the same name.
    """
    digest = hashlib.md5(url.encode("utf-8")).hexdigest()[:8]
    path = PurePosixPath(urlsplit(url).path)
    ext = path.suffix.lower()
    if ext not in ALLOWED_EXTENSIONS:
        ext = ".jpg"

    base = _sanitize(hint_name or "") or _sanitize(path.stem) or "image"
    return f"{base}-{digest}{ext}"


def blob_path(kind: str, filename: str) -> str:
    """Content-addressed blob key for an uploaded image."""
    if kind not in BLOB_KINDS:
        raise ValueError(f"Unknown image kind: {kind}")
    return f"images/{kind}/{filename}"


def image_headers() -> dict[str, str]:
    return {
        "User-Agent": "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36",
        "Accept": "image/webp,image/apng,image/*,*/*;q=0.8",
        "Referer": settings.source_base_url.rstrip("/") + "/",
    }


class ImageDownloadService:
    """Downloads remote images into a local directory, one at a time."""

    def __init__(
        self,
        output_dir: Optional[str | Path] = None,
        public_prefix: Optional[str] = None,
        timeout: Optional[float] = None,
        retries: Optional[int] = None,
        retry_base_delay: Optional[float] = None,
        timeout_retry_base_delay: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
        gate: Optional[UpstreamGate] = None,
    ):
        self.output_dir = Path(output_dir or settings.image_output_dir)
        self.public_prefix = public_prefix if public_prefix is not None else settings.image_public_prefix
        self.timeout = timeout or settings.image_download_timeout_seconds
        self.retries = max(1, retries if retries is not None else settings.image_download_retries)
        self.retry_base_delay = (
            settings.image_retry_base_delay_seconds if retry_base_delay is None else retry_base_delay
        )
        self.timeout_retry_base_delay = (
            settings.image_timeout_retry_base_delay_seconds
            if timeout_retry_base_delay is None
            else timeout_retry_base_delay
        )
        self.gate = gate or upstream_gate
        self._client = client
        self._owns_client = client is None

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout),
                follow_redirects=True,
                headers=image_headers(),
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None

    def _public_path(self, filename: str) -> str:
        return f"{self.public_prefix}{filename}"

    async def _fetch_to_file(self, url: str, dest: Path) -> None:
        """Stream one URL to dest through a temp file. Raises on any failure."""
        tmp = dest.with_name(dest.name + ".part")
        client = self._get_client()
        try:
            async with self.gate.slot("image"):
                async with client.stream("GET", url, timeout=self.timeout) as response:
                    response.raise_for_status()
                    content_type = response.headers.get("content-type", "")
                    if content_type and not content_type.startswith("image/"):
                        raise ValueError(f"Unexpected content type {content_type}")
                    written = 0
                    with open(tmp, "wb") as f:
                        async for chunk in response.aiter_bytes():
                            f.write(chunk)
                            written += len(chunk)
            if written == 0:
                raise ValueError("Empty response body")
            tmp.replace(dest)
        except BaseException:
            tmp.unlink(missing_ok=True)
            dest.unlink(missing_ok=True)
            raise

    async def _try_candidate(self, url: str, dest: Path) -> Optional[str]:
        """Attempt one candidate with its own retries. Returns an error or None."""
        last_error = "unknown error"
        for attempt in range(1, self.retries + 1):
            try:
                await self._fetch_to_file(url, dest)
                return None
            except (httpx.HTTPError, OSError, ValueError) as e:
                kind = classify_network_error(e)
                last_error = f"{kind}: {e}"
                logger.debug(f"Image attempt {attempt}/{self.retries} failed for {url}: {last_error}")

                if isinstance(e, httpx.HTTPStatusError) and e.response.status_code in _PERMANENT_STATUS:
                    break
                if attempt < self.retries:
                    base = self.timeout_retry_base_delay if kind == "timeout" else self.retry_base_delay
                    await asyncio.sleep(base * attempt)
        return last_error

    async def download_image(self, url: str, hint_name: Optional[str] = None) -> ImageDownloadResult:
        """
        Download one image.

        Thumbnail URLs are first tried at full size, then as given. Each
        candidate gets its own retries. The filename is derived from the
        preferred candidate, so an existing file short-circuits the download.
        """
        if not url or not url.lower().startswith(("http://", "https://")):
            return ImageDownloadResult(success=False, error="Invalid image URL")

        candidates = candidate_urls(url)
        filename = generate_filename(candidates[0], hint_name)
        dest = self.output_dir / filename

        if dest.exists():
            metrics.record_image_download("skipped")
            return ImageDownloadResult(success=True, local_path=self._public_path(filename))

        self.output_dir.mkdir(parents=True, exist_ok=True)

        errors = []
        for candidate in candidates:
            error = await self._try_candidate(candidate, dest)
            if error is None:
                if candidate != candidates[0]:
                    logger.info(f"Downloaded fallback image {candidate}")
                metrics.record_image_download("downloaded")
                return ImageDownloadResult(success=True, local_path=self._public_path(filename))
            errors.append(error)

        message = errors[-1] if errors else "download failed"
        logger.warning(f"Image download failed for {url}: {message}")
        metrics.record_image_download("failed")
        return ImageDownloadResult(success=False, error=message)

    async def download_images(self, urls: list[str], hint_name: Optional[str] = None) -> BatchDownloadResult:
        """Download images sequentially; failures are collected, never raised."""
        result = BatchDownloadResult()
        for url in urls:
            outcome = await self.download_image(url, hint_name)
            if outcome.success and outcome.local_path:
                result.downloaded.append(outcome.local_path)
            else:
                result.failed.append(FailedImage(url=url, error=outcome.error or "download failed"))
        return result
