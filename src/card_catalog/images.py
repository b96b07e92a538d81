import hashlib
from pathlib import Path
from typing import Callable, Iterator, Optional, Union

import requests

from .logger import get_logger
from .models import ImageRef


logger = get_logger(__name__)

CHUNK_SIZE = 64 * 1024


class ImageStoreError(RuntimeError):
    pass


def _content_key(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def _report(callback: Optional[Callable[[int], None]], sent: int, total: int) -> None:
    if callback is None:
        return
    percent = 100 if total == 0 else int(sent * 100 / total)
    callback(percent)


class ImageStore:
    """Binary object store for card images."""

    def store(self, image: ImageRef) -> ImageRef:
        raise NotImplementedError

    def fetch(self, image: ImageRef) -> bytes:
        raise NotImplementedError

    def ensure_stored(self, image: ImageRef) -> ImageRef:
        if image.is_stored:
            return image
        return self.store(image)


class HttpImageStore(ImageStore):
    def __init__(self, base_url: str, timeout_s: float = 30, session: Optional[requests.Session] = None) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s
        self.session = session or requests.Session()

    def _chunks(self, data: bytes, callback: Optional[Callable[[int], None]]) -> Iterator[bytes]:
        total = len(data)
        sent = 0
        _report(callback, 0, total)
        while sent < total:
            chunk = data[sent:sent + CHUNK_SIZE]
            sent += len(chunk)
            yield chunk
            _report(callback, sent, total)

    def store(self, image: ImageRef) -> ImageRef:
        if image.data is None:
            raise ImageStoreError("Nothing to upload: image has no data")
        key = _content_key(image.data)
        url = f"{self.base_url}/images/{key}"
        try:
            resp = self.session.put(
                url,
                data=self._chunks(image.data, image.on_progress),
                headers={"Content-Type": "application/octet-stream", "Content-Length": str(len(image.data))},
                timeout=self.timeout_s,
            )
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ImageStoreError(f"Image upload failed: {e}") from e
        location = resp.headers.get("Location") or url
        logger.debug(f"Uploaded image {key} ({len(image.data)} bytes)")
        return ImageRef(url=location, data=image.data)

    def fetch(self, image: ImageRef) -> bytes:
        if image.data is not None:
            return image.data
        try:
            resp = self.session.get(image.direct_url(), timeout=self.timeout_s)
            resp.raise_for_status()
        except requests.RequestException as e:
            raise ImageStoreError(f"Image download failed: {e}") from e
        return resp.content


class LocalImageStore(ImageStore):
    """Stores images as files, for mock mode and tests."""

    def __init__(self, root: Union[Path, str]) -> None:
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def store(self, image: ImageRef) -> ImageRef:
        if image.data is None:
            raise ImageStoreError("Nothing to store: image has no data")
        path = self.root / f"{_content_key(image.data)}.img"
        total = len(image.data)
        _report(image.on_progress, 0, total)
        with path.open("wb") as f:
            for start in range(0, total, CHUNK_SIZE):
                f.write(image.data[start:start + CHUNK_SIZE])
                _report(image.on_progress, min(start + CHUNK_SIZE, total), total)
        return ImageRef(url=path.resolve().as_uri(), data=image.data)

    def fetch(self, image: ImageRef) -> bytes:
        if image.data is not None:
            return image.data
        url = image.direct_url()
        if not url.startswith("file://"):
            raise ImageStoreError(f"Not a local image: {url}")
        path = self.root / Path(url).name
        if not path.exists():
            raise ImageStoreError(f"Image not found: {url}")
        return path.read_bytes()
