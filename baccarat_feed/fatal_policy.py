from __future__ import annotations

import asyncio
import sys
import time
from dataclasses import asdict, is_dataclass
from pathlib import Path
from typing import Any

from .errors import ProtocolParseError, TransportClosed
from .run import monotonic_ns
from .worker_state import ConnectionState, WorkerState
from .writers_ndjson import dumps_ndjson_line

EXIT_OK = 0
EXIT_FAILURE = 1

STOP_SIGNAL = "SIGNAL"
STOP_REMOTE_CLOSE = "REMOTE_CLOSE"
STOP_SESSION_END = "SESSION_END"
FATAL_TRANSPORT = "TRANSPORT_ERROR"
FATAL_PROTOCOL = "PROTOCOL_PARSE"
FATAL_PERSISTENCE = "PERSISTENCE_ERROR"
FATAL_INTERNAL = "INTERNAL_ERROR"

NORMAL_STOP_REASONS = frozenset({STOP_SIGNAL, STOP_REMOTE_CLOSE, STOP_SESSION_END})


def _normalize_orjson(value: Any) -> Any:
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, bytes):
        return value.hex()
    if is_dataclass(value) and not isinstance(value, type):
        return _normalize_orjson(asdict(value))
    if isinstance(value, dict):
        return {str(key): _normalize_orjson(item) for key, item in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_normalize_orjson(item) for item in value]
    return str(value)


def _mark_runlog_failed(state: WorkerState, error: Exception | None) -> None:
    if state.runlog_failed:
        return
    state.runlog_failed = True
    detail = "enqueue rejected"
    if error is not None:
        detail = f"{type(error).__name__}: {error}"
    print(f"runlog failure: {detail}", file=sys.stderr)


def _write_runlog(state: WorkerState, record: dict[str, Any]) -> None:
    if state.runlog_failed:
        return
    record.setdefault("run_id", state.run.run_id)
    record.setdefault("ts_wall_ns_utc", time.time_ns())
    normalized = _normalize_orjson(record)
    writer = state.runlog_writer
    if writer is None:
        try:
            path = state.run.runlog_path
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("ab") as handle:
                handle.write(dumps_ndjson_line(normalized))
        except OSError as exc:
            _mark_runlog_failed(state, exc)
        return
    if getattr(writer, "closed", False):
        return
    error = writer.error()
    if error is not None:
        _mark_runlog_failed(state, error)
        return
    if not writer.enqueue_nowait(normalized):
        _mark_runlog_failed(state, None)


def report_exception(state: WorkerState, error: BaseException, *, event: str) -> None:
    print(f"[{event}] {type(error).__name__}: {error}", file=sys.stderr)
    record: dict[str, Any] = {
        "record_type": "exception",
        "event": event,
        "table": state.table_id,
        "error_type": type(error).__name__,
        "error_message": str(error),
    }
    if isinstance(error, ProtocolParseError):
        record["frame_kind"] = error.kind
        record["frame_sample"] = error.sample
    if isinstance(error, TransportClosed):
        record["close_code"] = error.code
        record["close_reason"] = error.reason
    _write_runlog(state, record)


async def _close_transport(state: WorkerState) -> None:
    state.cancel_keepalive()
    ws = state.ws
    if ws is None or state.connection_state is not ConnectionState.OPEN:
        return
    state.connection_state = ConnectionState.CLOSING
    await asyncio.wait_for(ws.close(), timeout=state.config.ws_close_timeout_seconds)
    state.connection_state = ConnectionState.CLOSED


async def _drain_inflight_write(state: WorkerState) -> None:
    pending = state.inflight_write
    write_abandoned = False
    if pending is not None and not pending.done():
        timeout = max(0.0, state.config.write_drain_timeout_seconds)
        done, _pending = await asyncio.wait({pending}, timeout=timeout)
        write_abandoned = not done
        if done and not pending.cancelled() and pending.exception() is not None:
            report_exception(state, pending.exception(), event="persistence")
    abandoned_frames = state.frames.qsize()
    state.stats.frames_abandoned += abandoned_frames
    if abandoned_frames or write_abandoned:
        _write_runlog(
            state,
            {
                "record_type": "frames_abandoned",
                "queued_frames": abandoned_frames,
                "inflight_write_abandoned": write_abandoned,
            },
        )


def _flush_runlog(state: WorkerState) -> bool:
    writer = state.runlog_writer
    if writer is None:
        return True
    flushed = writer.close(timeout_seconds=state.config.flush_timeout_seconds)
    if not flushed:
        print(
            f"runlog flush exceeded {state.config.flush_timeout_seconds}s",
            file=sys.stderr,
        )
    return flushed


async def request_shutdown(
    state: WorkerState,
    reason: str,
    message: str,
    *,
    error: BaseException | None = None,
    event: str | None = None,
) -> None:
    """Tear the worker down once; later calls are no-ops.

    Closes the transport, waits briefly for the in-flight write, flushes the
    runlog within its timeout, then publishes the exit code.
    """
    if state.shutdown_reason is not None:
        return
    async with state.shutdown_lock:
        if state.shutdown_reason is not None:
            return
        state.shutdown_reason = reason
        exit_code = EXIT_OK if reason in NORMAL_STOP_REASONS else EXIT_FAILURE
        print(f"shutting down worker: {reason} {message}", file=sys.stderr)
        if error is not None:
            report_exception(state, error, event=event or reason)
        _write_runlog(
            state,
            {
                "record_type": "fatal" if exit_code else "stop_requested",
                "reason": reason,
                "message": message,
                "connection_state": state.connection_state.value,
            },
        )
        try:
            await _close_transport(state)
            await _drain_inflight_write(state)
        except Exception as exc:
            exit_code = EXIT_FAILURE
            report_exception(state, exc, event="teardown")
        finally:
            state.cancel_keepalive()
        _write_runlog(
            state,
            {
                "record_type": "worker_stop",
                "reason": reason,
                "exit_code": exit_code,
                "close_code": state.close_code,
                "close_reason": state.close_reason,
                "group": state.tracker.current(),
                "ts_mono_ns": monotonic_ns(),
                **asdict(state.stats),
            },
        )
        _flush_runlog(state)
        state.exit_code = exit_code
        state.shutdown_event.set()
