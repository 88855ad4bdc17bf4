from __future__ import annotations

import itertools
import logging
import threading
from contextlib import contextmanager
from io import BytesIO
from typing import Iterator

from PIL import Image

from imgpress.core.errors import PreviewReleasedError

log = logging.getLogger(__name__)


class PreviewHandle:
    __slots__ = ("key", "_data", "_registry", "_released")

    def __init__(self, key: str, data: bytes, registry: PreviewRegistry) -> None:
        self.key = key
        self._data = data
        self._registry = registry
        self._released = False

    def __repr__(self) -> str:
        state = "released" if self._released else "live"
        return f"PreviewHandle({self.key!r}, {state})"

    @property
    def released(self) -> bool:
        return self._released

    @property
    def data(self) -> bytes:
        if self._released:
            raise PreviewReleasedError(f"{self.key} has been released")
        return self._data

    def open(self) -> Image.Image:
        image = Image.open(BytesIO(self.data))
        image.load()
        return image

    def release(self) -> None:
        if self._released:
            raise PreviewReleasedError(f"{self.key} was already released")
        self._released = True
        self._data = b""
        self._registry._forget(self)


class PreviewRegistry:
    def __init__(self) -> None:
        self._live: dict[str, PreviewHandle] = {}
        self._keys = itertools.count(1)
        self._lock = threading.Lock()
        self.release_count = 0

    @property
    def live_count(self) -> int:
        return len(self._live)

    def is_live(self, handle: PreviewHandle) -> bool:
        return self._live.get(handle.key) is handle

    def acquire(self, data: bytes) -> PreviewHandle:
        with self._lock:
            handle = PreviewHandle(f"preview:{next(self._keys)}", data, self)
            self._live[handle.key] = handle
        return handle

    @contextmanager
    def scoped(self, data: bytes) -> Iterator[PreviewHandle]:
        handle = self.acquire(data)
        try:
            yield handle
        finally:
            if not handle.released:
                handle.release()

    def release_all(self) -> int:
        with self._lock:
            handles = list(self._live.values())
        for handle in handles:
            handle.release()
        if handles:
            log.debug("Released %d preview handle(s)", len(handles))
        return len(handles)

    def _forget(self, handle: PreviewHandle) -> None:
        with self._lock:
            self._live.pop(handle.key, None)
            self.release_count += 1
