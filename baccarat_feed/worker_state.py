from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass, field
from typing import Any

from .config import Config
from .groups import SessionGroupTracker
from .run import RunBootstrap


class ConnectionState(str, enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSING = "closing"
    CLOSED = "closed"
    ERRORED = "errored"


@dataclass(slots=True)
class WorkerStats:
    frames_received: int = 0
    frames_ignored: int = 0
    games_written: int = 0
    rotations: int = 0
    keepalives_sent: int = 0
    frames_abandoned: int = 0


@dataclass
class WorkerState:
    """Everything one worker process owns.

    Only ws_runner touches `ws`, only the frame consumer rotates `tracker`,
    and only fatal_policy sets `exit_code`.
    """

    run: RunBootstrap
    config: Config
    tracker: SessionGroupTracker
    store: Any
    runlog_writer: Any | None = None
    runlog_failed: bool = False
    ws: Any | None = None
    connection_state: ConnectionState = ConnectionState.CONNECTING
    keepalive_task: asyncio.Task | None = None
    inflight_write: asyncio.Future | None = None
    frames: asyncio.Queue = field(default_factory=asyncio.Queue)
    stats: WorkerStats = field(default_factory=WorkerStats)
    close_code: int | None = None
    close_reason: str | None = None
    shutdown_event: asyncio.Event = field(default_factory=asyncio.Event)
    shutdown_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    shutdown_reason: str | None = None
    exit_code: int | None = None

    @property
    def table_id(self) -> str:
        return str(self.config.table_id)

    def is_open(self) -> bool:
        return self.connection_state is ConnectionState.OPEN

    def cancel_keepalive(self) -> None:
        task = self.keepalive_task
        self.keepalive_task = None
        if task is not None and not task.done():
            task.cancel()
