import asyncio
import dataclasses
import json

import pytest

from baccarat_feed.config import Config
from baccarat_feed.worker import build_worker_state

REMOTE_CLOSE = object()


class FakeWebSocket:
    def __init__(self, frames=(), *, close_raises=None, send_raises=None):
        self._incoming = asyncio.Queue()
        self._closed = asyncio.Event()
        self._close_raises = close_raises
        self._send_raises = send_raises
        self.sent = []
        self.close_calls = 0
        self.close_code = None
        self.close_reason = None
        for frame in frames:
            self.feed(frame)

    def feed(self, frame):
        self._incoming.put_nowait(frame)

    def remote_close(self, code=1000, reason=""):
        self._incoming.put_nowait((REMOTE_CLOSE, code, reason))

    async def send(self, message):
        if self._send_raises is not None:
            raise self._send_raises
        self.sent.append(message)

    async def close(self, code=1000, reason=""):
        self.close_calls += 1
        if self._close_raises is not None:
            raise self._close_raises
        if self.close_code is None:
            self.close_code = code
            self.close_reason = reason
        self._closed.set()

    def __aiter__(self):
        return self

    async def __anext__(self):
        getter = asyncio.ensure_future(self._incoming.get())
        closer = asyncio.ensure_future(self._closed.wait())
        done, pending = await asyncio.wait(
            {getter, closer}, return_when=asyncio.FIRST_COMPLETED
        )
        for task in pending:
            task.cancel()
        if getter not in done:
            raise StopAsyncIteration
        item = getter.result()
        if isinstance(item, tuple) and item and item[0] is REMOTE_CLOSE:
            self.close_code = item[1]
            self.close_reason = item[2]
            self._closed.set()
            raise StopAsyncIteration
        if isinstance(item, BaseException):
            raise item
        return item


class MemoryStore:
    def __init__(self, delays=None):
        self.games = []
        self._delays = dict(delays or {})

    async def create(self, game):
        delay = self._delays.get(game.external_id)
        if delay:
            await asyncio.sleep(delay)
        stored = dataclasses.replace(game, created_at="2026-01-01T00:00:00.000Z")
        self.games.append(stored)
        return stored


class StuckRunlogWriter:
    """Runlog sink whose flush never completes."""

    def __init__(self):
        self.records = []
        self.close_timeouts = []

    def enqueue_nowait(self, record):
        self.records.append(record)
        return True

    def error(self):
        return None

    def close(self, timeout_seconds=2.0):
        self.close_timeouts.append(timeout_seconds)
        return False


def result_frame(external_id, result="banker", score="8", table="tbl1"):
    return json.dumps(
        {
            "gameresult": {
                "id": external_id,
                "table": table,
                "result": result,
                "score": score,
            }
        }
    )


SHUFFLE_FRAME = '{"startshuffling":{"table":"tbl1","time":1730000000000}}'


def read_runlog(path):
    if not path.exists():
        return []
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines() if line]


@pytest.fixture
def make_config(tmp_path):
    def _make(**overrides):
        values = {
            "vendor_host_segment": "gs19",
            "session_id": "sess-123",
            "table_id": "tbl1",
            "data_dir": str(tmp_path / "data"),
            "keepalive_interval_seconds": 10.0,
        }
        values.update(overrides)
        return Config(**values)

    return _make


@pytest.fixture
def make_state(make_config):
    states = []

    def _make(store=None, run_id="run", **overrides):
        state = build_worker_state(make_config(**overrides), run_id, store=store)
        states.append(state)
        return state

    yield _make
    for state in states:
        writer = state.runlog_writer
        if writer is not None and hasattr(writer, "close"):
            writer.close(timeout_seconds=1.0)
