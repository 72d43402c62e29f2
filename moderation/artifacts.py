"""
Artifact cache for the lite model.

Files are keyed by filename. A hit is served from the cache directory (or
from memory when no directory is configured); a miss goes to the fetcher and
is stored atomically. Concurrent misses on the same key share one fetch.
"""
import logging
import os
import tempfile
import threading
from concurrent.futures import Future
from typing import Callable, Dict, Iterable, Optional
from urllib.parse import quote

import requests
from prometheus_client import Counter

from .errors import ArtifactFetchError, ModerationError

log = logging.getLogger(__name__)

ARTIFACT_LOOKUPS = Counter("artifact_cache_total", "artifact cache lookups", ["result"])

ProgressFn = Callable[[str, int], None]


class HttpArtifactFetcher:
    """Downloads artifacts over HTTP.

    URLs come from an explicit {file: url} map (the worker `init` message)
    or from `<base_url>/moderation/model?file=<name>`.
    """

    def __init__(self, base_url: Optional[str] = None, urls: Optional[Dict[str, str]] = None,
                 timeout: float = 30.0, session: Optional[requests.Session] = None,
                 chunk_size: int = 1 << 16):
        self.base_url = base_url.rstrip("/") if base_url else None
        self.urls = dict(urls or {})
        self.timeout = timeout
        self.session = session or requests.Session()
        self.chunk_size = chunk_size
        self._lock = threading.Lock()

    def register(self, files: Iterable[dict] = (), base_url: Optional[str] = None) -> None:
        with self._lock:
            for item in files or ():
                if item.get("file") and item.get("url"):
                    self.urls[item["file"]] = item["url"]
            if base_url:
                self.base_url = base_url.rstrip("/")

    def url_for(self, file: str) -> str:
        with self._lock:
            url = self.urls.get(file)
            base = self.base_url
        if url:
            return url
        if not base:
            raise ArtifactFetchError(f"no URL known for {file}")
        return f"{base}/moderation/model?file={quote(file)}"

    def fetch(self, file: str, on_progress: Optional[ProgressFn] = None, deadline=None) -> bytes:
        """Stream one artifact; `deadline` (a warmup Deadline) is checked after every chunk."""
        url = self.url_for(file)
        try:
            resp = self.session.get(url, timeout=self.timeout, stream=True)
        except requests.RequestException as e:
            raise ArtifactFetchError(f"{file} fetch failed: {e}") from e
        with resp:
            if not resp.ok:
                raise ArtifactFetchError(f"{file} fetch failed: {resp.status_code} {resp.reason}")
            total = int(resp.headers.get("Content-Length") or 0)
            buf = bytearray()
            try:
                for chunk in resp.iter_content(self.chunk_size):
                    buf.extend(chunk)
                    if deadline is not None:
                        deadline.check(f"{file} download")
                    if on_progress and total:
                        on_progress(file, min(99, len(buf) * 100 // total))
            except requests.RequestException as e:
                raise ArtifactFetchError(f"{file} download interrupted: {e}") from e
        return bytes(buf)


class ArtifactCache:
    def __init__(self, fetcher, cache_dir: Optional[str] = None):
        self.fetcher = fetcher
        self.cache_dir = cache_dir
        self._memory: Dict[str, bytes] = {}
        self._inflight: Dict[str, Future] = {}
        self._lock = threading.Lock()
        if cache_dir:
            os.makedirs(cache_dir, exist_ok=True)

    @staticmethod
    def _check_key(file: str) -> None:
        if not file or os.path.basename(file) != file or file in (".", ".."):
            raise ArtifactFetchError(f"invalid artifact name: {file!r}")

    def _path(self, file: str) -> str:
        return os.path.join(self.cache_dir, file)

    def _read(self, file: str) -> Optional[bytes]:
        if not self.cache_dir:
            return self._memory.get(file)
        path = self._path(file)
        if not os.path.exists(path):
            return None
        with open(path, "rb") as f:
            return f.read()

    def _write(self, file: str, data: bytes) -> None:
        if not self.cache_dir:
            self._memory[file] = data
            return
        fd, tmp = tempfile.mkstemp(dir=self.cache_dir, prefix=f".{file}.")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp, self._path(file))
        except OSError:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def contains(self, file: str) -> bool:
        self._check_key(file)
        if not self.cache_dir:
            return file in self._memory
        return os.path.exists(self._path(file))

    def get(self, file: str, on_progress: Optional[ProgressFn] = None, deadline=None) -> bytes:
        self._check_key(file)
        with self._lock:
            pending = self._inflight.get(file)
            owner = pending is None
            if owner:
                pending = self._inflight[file] = Future()
        if not owner:
            return pending.result()

        try:
            data = self._read(file)
            if data is not None:
                ARTIFACT_LOOKUPS.labels(result="hit").inc()
                log.debug("using cached %s", file)
            else:
                ARTIFACT_LOOKUPS.labels(result="miss").inc()
                log.info("downloading %s", file)
                data = self.fetcher.fetch(file, on_progress, deadline)
                self._write(file, data)
        except ModerationError as e:
            pending.set_exception(e)
            raise
        except Exception as e:
            err = ArtifactFetchError(f"{file} unavailable: {e}")
            pending.set_exception(err)
            raise err from e
        else:
            pending.set_result(data)
            return data
        finally:
            with self._lock:
                self._inflight.pop(file, None)

    def clear(self) -> None:
        with self._lock:
            self._memory.clear()
            if self.cache_dir and os.path.isdir(self.cache_dir):
                for name in os.listdir(self.cache_dir):
                    os.unlink(self._path(name))
