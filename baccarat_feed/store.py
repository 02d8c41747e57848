from __future__ import annotations

import asyncio
import dataclasses
import os
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import orjson

from .errors import PersistenceError
from .results import GameResult
from .writers_ndjson import dumps_ndjson_line


def _utc_now_iso() -> str:
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


class GameStore:
    """Durable append-only store of game results, one NDJSON line per game.

    Writes happen on a worker thread; `create` resolves only once the line
    is flushed, and any I/O failure surfaces as PersistenceError.
    """

    def __init__(self, path: Path, *, fsync: bool = False) -> None:
        self._path = Path(path)
        self._fsync = fsync
        self._lock = threading.Lock()
        self.writes = 0

    @property
    def path(self) -> Path:
        return self._path

    async def create(self, game: GameResult) -> GameResult:
        stored = dataclasses.replace(game, created_at=_utc_now_iso())
        line = dumps_ndjson_line(stored.to_record())
        try:
            await asyncio.to_thread(self._append, line)
        except OSError as exc:
            raise PersistenceError(
                f"failed to persist game {game.external_id}: {exc}"
            ) from exc
        self.writes += 1
        return stored

    def _append(self, line: bytes) -> None:
        with self._lock:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            with self._path.open("ab") as handle:
                handle.write(line)
                handle.flush()
                if self._fsync:
                    os.fsync(handle.fileno())

    def iter_games(self) -> Iterator[GameResult]:
        if not self._path.exists():
            return
        with self._path.open("rb") as handle:
            for line in handle:
                if not line.strip():
                    continue
                try:
                    record = orjson.loads(line)
                except orjson.JSONDecodeError:
                    # torn last line from a killed process
                    continue
                yield GameResult.from_record(record)
