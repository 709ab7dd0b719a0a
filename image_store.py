from __future__ import annotations

from concurrent.futures import CancelledError as FutureCancelledError
from concurrent.futures import Future, ThreadPoolExecutor
from io import BytesIO
import logging
import os
import threading
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Tuple
from urllib.parse import urlparse

import numpy as np
import requests
from PIL import Image

from colorbar import PixelColor

MAX_IMAGE_HEIGHT = int(os.getenv("MAX_IMAGE_HEIGHT", "10000"))
IMAGE_FETCH_TIMEOUT_SECONDS = float(os.getenv("IMAGE_FETCH_TIMEOUT_SECONDS", "20"))
BACKGROUND_FETCH_WORKERS = int(os.getenv("BACKGROUND_FETCH_WORKERS", "2"))
INTERACTIVE_FETCH_WORKERS = int(os.getenv("INTERACTIVE_FETCH_WORKERS", "2"))
LOGGER = logging.getLogger("raster_series.image_store")


class ImageLoadError(RuntimeError):
    """Raised when an image cannot be fetched or decoded."""


class CancelledError(RuntimeError):
    """Raised when the active domain changed while work was outstanding."""


class ImageHandle:
    """Decoded RGBA pixels of one raster or legend image."""

    def __init__(self, pixels: np.ndarray, url: str = "") -> None:
        pixels = np.asarray(pixels, dtype=np.uint8)
        if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
            raise ValueError(f"Expected HxWx3 or HxWx4 pixels, got shape {pixels.shape}")
        if pixels.shape[2] == 3:
            alpha = np.full(pixels.shape[:2] + (1,), 255, dtype=np.uint8)
            pixels = np.concatenate([pixels, alpha], axis=2)
        self._pixels = pixels
        self.url = url

    @classmethod
    def from_pil(cls, image: Image.Image, url: str = "", max_height: int = MAX_IMAGE_HEIGHT) -> "ImageHandle":
        rgba = image.convert("RGBA")
        if max_height > 0 and rgba.height > max_height:
            factor = max_height / float(rgba.height)
            size = (max(1, int(rgba.width * factor)), max_height)
            LOGGER.debug("Downscaling image url=%s from %sx%s to %sx%s", url, rgba.width, rgba.height, *size)
            rgba = rgba.resize(size, Image.NEAREST)
        return cls(np.asarray(rgba), url=url)

    @property
    def width(self) -> int:
        return int(self._pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self._pixels.shape[0])

    @property
    def pixels(self) -> np.ndarray:
        return self._pixels

    def get_pixel(self, x: int, y: int) -> PixelColor:
        r, g, b, a = self._pixels[int(y), int(x)]
        return PixelColor(int(r), int(g), int(b), int(a))


def fetch_image(url: str) -> ImageHandle:
    """Load an image from an http(s) URL, a file:// URL or a local path."""
    parsed = urlparse(url)
    try:
        if parsed.scheme in ("http", "https"):
            response = requests.get(url, timeout=IMAGE_FETCH_TIMEOUT_SECONDS)
            response.raise_for_status()
            payload = response.content
        else:
            path = Path(parsed.path if parsed.scheme == "file" else url)
            payload = path.read_bytes()
    except (requests.RequestException, OSError) as exc:
        raise ImageLoadError(f"Failed to fetch image {url}: {exc}") from exc

    try:
        with Image.open(BytesIO(payload)) as image:
            return ImageHandle.from_pil(image, url=url)
    except (OSError, ValueError) as exc:
        raise ImageLoadError(f"Failed to decode image {url}: {exc}") from exc


class ImageCache:
    """URL to image handle map for the active domain.

    Entries are never evicted one by one; ``clear`` drops everything at once.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._entries: Dict[str, ImageHandle] = {}

    def get(self, url: str) -> ImageHandle | None:
        with self._guard:
            return self._entries.get(url)

    def put(self, url: str, handle: ImageHandle) -> ImageHandle:
        with self._guard:
            existing = self._entries.get(url)
            if existing is not None:
                return existing
            self._entries[url] = handle
            return handle

    def clear(self) -> int:
        with self._guard:
            dropped = len(self._entries)
            self._entries = {}
        return dropped

    def urls(self) -> List[str]:
        with self._guard:
            return list(self._entries.keys())

    def __contains__(self, url: object) -> bool:
        with self._guard:
            return url in self._entries

    def __len__(self) -> int:
        with self._guard:
            return len(self._entries)


class PrefetchScheduler:
    """Background image loading for one active domain at a time."""

    def __init__(
        self,
        fetcher: Callable[[str], ImageHandle] = fetch_image,
        cache: ImageCache | None = None,
        background_workers: int = BACKGROUND_FETCH_WORKERS,
        interactive_workers: int = INTERACTIVE_FETCH_WORKERS,
    ) -> None:
        self._fetcher = fetcher
        self.cache = cache if cache is not None else ImageCache()
        self._background_workers = max(1, int(background_workers))
        self._guard = threading.Lock()
        self._domain: str | None = None
        self._generation = 0
        self._pending: Dict[str, Future] = {}
        self._background: ThreadPoolExecutor | None = None
        self._background_futures: List[Future] = []
        self._interactive = ThreadPoolExecutor(
            max_workers=max(1, int(interactive_workers)),
            thread_name_prefix="image-require",
        )

    @property
    def domain(self) -> str | None:
        return self._domain

    @property
    def generation(self) -> int:
        return self._generation

    def switch_domain(self, domain: str | None) -> int:
        with self._guard:
            self._generation += 1
            self._domain = domain
            self._cancel_background_locked()
            for future in self._pending.values():
                future.cancel()
            self._pending.clear()
            dropped = self.cache.clear()
            generation = self._generation
        LOGGER.info("Switched domain=%s generation=%d dropped=%d", domain, generation, dropped)
        return generation

    def prefetch(self, entries: Iterable[Tuple[str, str]], window: Tuple[str, str] | None = None) -> List[str]:
        """Queue uncached ``(timestamp, url)`` entries, visible window first.

        Replaces any earlier prefetch generation. Returns URLs in submission order.
        """
        in_window: List[str] = []
        out_of_window: List[str] = []
        for timestamp, url in sorted(entries, key=lambda item: item[0]):
            if window is not None and window[0] <= timestamp <= window[1]:
                in_window.append(url)
            else:
                out_of_window.append(url)
        # A URL shared by several timestamps keeps its earliest in-window slot.
        ordered: List[str] = []
        seen: set[str] = set()
        for url in in_window + out_of_window:
            if url not in seen:
                seen.add(url)
                ordered.append(url)

        submission: List[str] = []
        with self._guard:
            self._cancel_background_locked()
            generation = self._generation
            executor = ThreadPoolExecutor(
                max_workers=self._background_workers,
                thread_name_prefix=f"image-prefetch-{generation}",
            )
            self._background = executor
            for url in ordered:
                # Cached, or already loading on the interactive pool or a running prefetch.
                if url in self.cache or self._joinable_locked(self._pending.get(url)):
                    continue
                future = executor.submit(self._prefetch_job, url, generation)
                self._background_futures.append(future)
                self._pending[url] = future
                submission.append(url)
        LOGGER.debug(
            "Queued prefetch generation=%d urls=%d window=%s",
            generation,
            len(submission),
            window,
        )
        return submission

    def request(self, url: str) -> Future:
        cached = self.cache.get(url)
        if cached is not None:
            done: Future = Future()
            done.set_result(cached)
            return done
        with self._guard:
            future = self._pending.get(url)
            if self._joinable_locked(future):
                return future
            generation = self._generation
            future = self._interactive.submit(self._load, url, generation)
            self._pending[url] = future
        LOGGER.debug("Cache miss url=%s; loading", url)
        return future

    def require(self, url: str) -> ImageHandle:
        future = self.request(url)
        try:
            return future.result()
        except FutureCancelledError as exc:
            raise CancelledError(f"Load of {url} cancelled by domain switch") from exc

    def shutdown(self) -> None:
        with self._guard:
            self._cancel_background_locked()
        self._interactive.shutdown(wait=False, cancel_futures=True)
        LOGGER.info("Stopped image workers")

    def _joinable_locked(self, future: Future | None) -> bool:
        if future is None or future.cancelled():
            return False
        if future in self._background_futures and future.cancel():
            # Queued prefetch; the caller loads it on the interactive pool instead.
            return False
        if future.done():
            return future.exception() is None
        return True

    def _cancel_background_locked(self) -> None:
        for future in self._background_futures:
            future.cancel()
        self._background_futures = []
        for url in [url for url, future in self._pending.items() if future.cancelled()]:
            del self._pending[url]
        if self._background is not None:
            self._background.shutdown(wait=False, cancel_futures=True)
            self._background = None

    def _prefetch_job(self, url: str, generation: int) -> ImageHandle:
        if generation != self._generation:
            raise CancelledError(f"Domain switched before prefetching {url}")
        try:
            return self._load(url, generation)
        except CancelledError:
            LOGGER.debug("Dropped prefetched image after domain switch url=%s", url)
            raise
        except ImageLoadError as exc:
            LOGGER.warning("Background image load failed: %s", exc)
            raise
        except Exception:
            LOGGER.exception("Background image load failed url=%s", url)
            raise

    def _load(self, url: str, generation: int) -> ImageHandle:
        try:
            handle = self._fetcher(url)
        except Exception as exc:
            with self._guard:
                if generation == self._generation:
                    self._pending.pop(url, None)
            if isinstance(exc, ImageLoadError):
                raise
            raise ImageLoadError(f"Failed to load image {url}: {exc}") from exc
        with self._guard:
            if generation != self._generation:
                raise CancelledError(f"Domain switched while loading {url}")
            stored = self.cache.put(url, handle)
            self._pending.pop(url, None)
        LOGGER.debug("Loaded image url=%s size=%dx%d", url, stored.width, stored.height)
        return stored
