"""
Artifact store for call audio.

Files live under a local directory and are published below
``<public_base_url>/audio/``. Fetching accepts either one of our own URLs,
a path relative to the store, or any other http(s) URL.
"""

from __future__ import annotations

import asyncio
from pathlib import Path, PurePosixPath
from typing import Optional

import httpx
import structlog

from loancall.errors import ArtifactUnavailable

log = structlog.get_logger(__name__)

PUBLIC_PREFIX = "/audio/"


class ArtifactStore:
    """Local-directory audio store with HTTP fallback for foreign URLs."""

    def __init__(self, root: Path, public_base_url: str, fetch_timeout: float = 30.0):
        self.root = root
        self.public_base_url = public_base_url.rstrip("/")
        self.fetch_timeout = fetch_timeout
        self._http: Optional[httpx.AsyncClient] = None

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(timeout=self.fetch_timeout, follow_redirects=True)
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    def _resolve(self, path: str) -> Path:
        rel = PurePosixPath(path.lstrip("/"))
        if not rel.parts or ".." in rel.parts:
            raise ArtifactUnavailable(f"Invalid artifact path: {path!r}")
        return self.root.joinpath(*rel.parts)

    def url_for(self, path: str) -> str:
        return f"{self.public_base_url}{PUBLIC_PREFIX}{path.lstrip('/')}"

    async def put(self, path: str, data: bytes) -> str:
        """Persist ``data`` at ``path`` and return its public URL."""
        target = self._resolve(path)
        await asyncio.to_thread(self._write, target, data)
        log.info("artifact_stored", path=path, size=len(data))
        return self.url_for(path)

    @staticmethod
    def _write(target: Path, data: bytes) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)

    async def fetch(self, reference: str) -> bytes:
        """Return the bytes behind an artifact URL or store path."""
        local_prefix = f"{self.public_base_url}{PUBLIC_PREFIX}"
        if reference.startswith(local_prefix):
            return await self._read_local(reference[len(local_prefix):])
        if reference.startswith(("http://", "https://")):
            return await self._download(reference)
        return await self._read_local(reference)

    async def _read_local(self, path: str) -> bytes:
        target = self._resolve(path)
        try:
            return await asyncio.to_thread(target.read_bytes)
        except OSError as e:
            raise ArtifactUnavailable(f"Could not read audio {path!r}: {e}") from e

    async def _download(self, url: str) -> bytes:
        client = await self._client()
        try:
            resp = await client.get(url)
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise ArtifactUnavailable(f"Timed out downloading audio from {url}") from e
        except httpx.HTTPStatusError as e:
            raise ArtifactUnavailable(
                f"Audio download failed with HTTP {e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            raise ArtifactUnavailable(f"Audio download failed: {e}") from e
        return resp.content
