# orchestrator/tailer.py
from __future__ import annotations
import asyncio
import json
import logging
import os
from typing import Any, AsyncIterator, Callable, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 0.9
DEFAULT_MAX_READ = 1024 * 1024

PathResolver = Callable[[], Optional[str]]


class LogTailer:
    """
    Follows one growing log file for one subscriber.

    The path is resolved again on every tick, because it may not exist yet
    or may move to a new file when the job is restarted. Only complete lines
    are emitted; the cursor never moves past a line that has no newline yet.
    """

    def __init__(
        self,
        resolve_path: PathResolver,
        *,
        interval: float = DEFAULT_INTERVAL,
        max_read_bytes: int = DEFAULT_MAX_READ,
        replay: bool = True,
    ):
        self.resolve_path = resolve_path
        self.interval = interval
        self.max_read_bytes = max_read_bytes
        self.replay = replay
        self.cursor = 0
        self._path: Optional[str] = None
        self._started = False

    def _size(self, path: Optional[str]) -> Optional[int]:
        if not path:
            return None
        try:
            return os.stat(path).st_size
        except OSError:
            return None

    def establish_start(self) -> None:
        """Pin the starting cursor: byte 0 when replaying, else the current end of file."""
        if self._started:
            return
        self._started = True
        if self.replay:
            return
        path = self.resolve_path()
        size = self._size(path)
        if size is not None:
            self._path = path
            self.cursor = size

    def poll(self) -> List[str]:
        if not self._started:
            self.establish_start()

        path = self.resolve_path()
        size = self._size(path)
        if size is None:
            return []
        if path != self._path:
            self._path = path
            self.cursor = 0
        if size < self.cursor:
            # truncated, or a restart reused the path
            self.cursor = 0
        if size == self.cursor:
            return []

        length = min(size - self.cursor, self.max_read_bytes)
        try:
            with open(path, "rb") as fh:
                fh.seek(self.cursor)
                data = fh.read(length)
        except OSError as e:
            logger.debug("tail read of %s failed: %s", path, e)
            return []

        end = data.rfind(b"\n")
        if end < 0:
            if len(data) < self.max_read_bytes:
                return []
            consumed = len(data)
        else:
            consumed = end + 1
        self.cursor += consumed

        text = data[:consumed].decode("utf-8", errors="replace")
        return [line.rstrip("\r") for line in text.split("\n") if line.rstrip("\r")]

    async def lines(self) -> AsyncIterator[str]:
        # path resolution may hit the job store; keep it off the event loop
        if not self._started:
            await asyncio.to_thread(self.establish_start)
        try:
            while True:
                for line in await asyncio.to_thread(self.poll):
                    yield line
                await asyncio.sleep(self.interval)
        finally:
            logger.debug("tail of %s stopped at byte %s", self._path, self.cursor)


def log_event(line: str, worker: Optional[str] = None) -> Dict[str, Any]:
    return {"type": "log", "worker": worker, "line": line}


def sse_event(payload: Dict[str, Any]) -> str:
    return f"data: {json.dumps(payload)}\n\n"
