"""
Model Downloader

Streams GGUF weight files from the remote catalog to the models directory.
One download per filename at a time, throttled progress reporting, explicit
cancellation and cleanup of partial files.
"""

import asyncio
import inspect
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Awaitable, Callable, Dict, Optional, Union

import aiofiles
import httpx
from loguru import logger

from .errors import (
    DownloadCancelledError,
    DownloadForbiddenError,
    DownloadHTTPError,
    DownloadInProgressError,
    DownloadUnauthorizedError,
    ModelAlreadyExistsError,
)
from .types import DownloadProgress, RemoteModelInfo

USER_AGENT = "local-llm-runtime/1.0.0"
CHUNK_SIZE = 256 * 1024

ProgressCallback = Callable[[int, str], Union[None, Awaitable[None]]]


def format_speed(bytes_per_second: float) -> str:
    for unit in ("B/s", "KB/s", "MB/s"):
        if bytes_per_second < 1024:
            return f"{bytes_per_second:.1f} {unit}"
        bytes_per_second /= 1024
    return f"{bytes_per_second:.1f} GB/s"


def default_client_factory() -> httpx.AsyncClient:
    return httpx.AsyncClient(follow_redirects=True, timeout=None)


@dataclass
class DownloadTicket:
    """In-flight state for one filename."""
    filename: str
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    progress: DownloadProgress = field(default_factory=DownloadProgress)


class ModelDownloader:
    """Downloads weight files into ``models_dir``."""

    def __init__(
        self,
        models_dir: Path,
        credentials=None,
        client_factory: Callable[[], httpx.AsyncClient] = default_client_factory,
        progress_interval: float = 1.0,
    ):
        self.models_dir = Path(models_dir)
        self.credentials = credentials
        self.client_factory = client_factory
        self.progress_interval = progress_interval
        self._tickets: Dict[str, DownloadTicket] = {}

    def is_downloading(self, filename: str) -> bool:
        return filename in self._tickets

    def get_download_progress(self, filename: str) -> Dict[str, object]:
        ticket = self._tickets.get(filename)
        if ticket is None:
            return {"is_downloading": False, "progress": 0, "speed": "0 B/s"}
        return {
            "is_downloading": True,
            "progress": ticket.progress.progress,
            "speed": ticket.progress.speed,
        }

    def cancel_download(self, filename: str) -> bool:
        ticket = self._tickets.get(filename)
        if ticket is None:
            return False
        ticket.cancel_event.set()
        logger.info(f"Cancelling download of {filename}")
        return True

    async def download_model(
        self,
        remote: RemoteModelInfo,
        on_progress: Optional[ProgressCallback] = None,
    ) -> str:
        """Download ``remote`` and return the local path."""
        target = self.models_dir / remote.filename
        if remote.filename in self._tickets:
            raise DownloadInProgressError(remote.filename)
        if target.exists():
            raise ModelAlreadyExistsError(remote.filename)

        ticket = DownloadTicket(filename=remote.filename)
        self._tickets[remote.filename] = ticket
        logger.info(f"Downloading {remote.filename} from {remote.url}")

        try:
            await self._stream_to_file(remote, target, ticket, on_progress)
            await self._report(ticket, on_progress, 100, "0 B/s")
        except (Exception, asyncio.CancelledError) as e:
            if target.exists():
                target.unlink()
                logger.debug(f"Removed partial file {target}")
            logger.error(f"Download of {remote.filename} failed: {e!r}")
            raise
        finally:
            self._tickets.pop(remote.filename, None)

        logger.info(f"Downloaded {remote.filename} to {target}")
        return str(target)

    def _headers(self) -> Dict[str, str]:
        headers = {"User-Agent": USER_AGENT}
        token = self.credentials.get_credential() if self.credentials else None
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    async def _stream_to_file(
        self,
        remote: RemoteModelInfo,
        target: Path,
        ticket: DownloadTicket,
        on_progress: Optional[ProgressCallback],
    ):
        self.models_dir.mkdir(parents=True, exist_ok=True)
        async with self.client_factory() as client:
            async with client.stream("GET", remote.url, headers=self._headers()) as response:
                if response.status_code == 401:
                    raise DownloadUnauthorizedError()
                if response.status_code == 403:
                    raise DownloadForbiddenError()
                if response.status_code >= 400:
                    raise DownloadHTTPError(response.status_code, response.reason_phrase)

                total = int(response.headers.get("content-length") or 0) or remote.size
                downloaded = 0
                last_time = time.monotonic()
                last_bytes = 0

                async with aiofiles.open(target, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=CHUNK_SIZE):
                        if ticket.cancel_event.is_set():
                            raise DownloadCancelledError(remote.filename)
                        await f.write(chunk)
                        downloaded += len(chunk)

                        now = time.monotonic()
                        elapsed = now - last_time
                        if elapsed >= self.progress_interval and elapsed > 0:
                            progress = round(downloaded / total * 100) if total else 0
                            speed = format_speed((downloaded - last_bytes) / elapsed)
                            await self._report(ticket, on_progress, progress, speed)
                            last_time, last_bytes = now, downloaded

                if ticket.cancel_event.is_set():
                    raise DownloadCancelledError(remote.filename)

    async def _report(
        self,
        ticket: DownloadTicket,
        on_progress: Optional[ProgressCallback],
        progress: int,
        speed: str,
    ):
        ticket.progress = DownloadProgress(progress=progress, speed=speed)
        if on_progress is None:
            return
        result = on_progress(progress, speed)
        if inspect.isawaitable(result):
            await result
