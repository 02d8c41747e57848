from __future__ import annotations

import contextlib
import queue
import threading
import time
from pathlib import Path
from typing import Any

import orjson

_NDJSON_WRITER_STOP = object()
_ORJSON_NDJSON_OPTIONS = orjson.OPT_APPEND_NEWLINE
if hasattr(orjson, "OPT_ESCAPE_NON_ASCII"):
    _ORJSON_NDJSON_OPTIONS |= orjson.OPT_ESCAPE_NON_ASCII


def dumps_ndjson_line(record: dict[str, Any]) -> bytes:
    return orjson.dumps(record, option=_ORJSON_NDJSON_OPTIONS)


class NdjsonWriter:
    """Append-only NDJSON sink drained by a daemon thread.

    Producers never block on disk. `close` is the only flush point and is
    bounded by its timeout, so a stuck disk cannot hang shutdown.
    """

    def __init__(
        self,
        path: Path,
        *,
        max_queue: int = 10000,
        flush_interval_seconds: float = 0.5,
        batch_size: int = 200,
        thread_name: str = "runlog-writer",
    ) -> None:
        self._path = Path(path)
        self._queue: queue.Queue[object] = queue.Queue(maxsize=max_queue)
        self._flush_interval_seconds = flush_interval_seconds
        self._batch_size = batch_size
        self._dropped = 0
        self._closed = False
        self._error: Exception | None = None
        self._error_count = 0
        self._thread = threading.Thread(
            target=self._run,
            name=thread_name,
            daemon=True,
        )
        self._thread.start()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def closed(self) -> bool:
        return self._closed

    def enqueue_nowait(self, record: dict[str, Any]) -> bool:
        if self._error is not None or self._closed:
            return False
        try:
            self._queue.put_nowait(record)
        except queue.Full:
            self._dropped += 1
            return False
        return True

    def close(self, timeout_seconds: float = 2.0) -> bool:
        """Stop the writer; returns False when the flush did not finish in time."""
        if not self._closed:
            self._closed = True
            with contextlib.suppress(queue.Full):
                self._queue.put_nowait(_NDJSON_WRITER_STOP)
        self._thread.join(timeout=max(0.0, timeout_seconds))
        return not self._thread.is_alive()

    def stats(self) -> dict[str, int]:
        return {
            "queue_size": self._queue.qsize(),
            "dropped": self._dropped,
            "errors": self._error_count,
        }

    def error(self) -> Exception | None:
        return self._error

    def _record_error(self, exc: Exception) -> None:
        if self._error is None:
            self._error = exc
        self._error_count += 1

    def _run(self) -> None:
        handle = None
        pending: list[bytes] = []
        last_flush = time.monotonic()
        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            handle = self._path.open("ab")
            while True:
                try:
                    item = self._queue.get(timeout=self._flush_interval_seconds)
                except queue.Empty:
                    item = None
                if item is _NDJSON_WRITER_STOP:
                    break
                if item is not None:
                    pending.append(dumps_ndjson_line(item))
                now = time.monotonic()
                if (
                    len(pending) >= self._batch_size
                    or now - last_flush >= self._flush_interval_seconds
                ):
                    self._flush_pending(pending, handle)
                    last_flush = now
            # Drain whatever was queued ahead of the stop marker.
            while True:
                try:
                    item = self._queue.get_nowait()
                except queue.Empty:
                    break
                if item is not _NDJSON_WRITER_STOP:
                    pending.append(dumps_ndjson_line(item))
        except Exception as exc:
            self._record_error(exc)
        finally:
            if handle is not None:
                with contextlib.suppress(Exception):
                    self._flush_pending(pending, handle)
                with contextlib.suppress(Exception):
                    handle.close()

    def _flush_pending(self, pending: list[bytes], handle: Any) -> None:
        if not pending:
            return
        try:
            handle.write(b"".join(pending))
            handle.flush()
        except Exception as exc:
            self._record_error(exc)
        pending.clear()
