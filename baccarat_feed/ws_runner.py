from __future__ import annotations

import asyncio
import contextlib
import inspect
import sys
from typing import Any

import websockets

from .errors import PersistenceError, ProtocolParseError, TransportError
from .fatal_policy import (
    FATAL_INTERNAL,
    FATAL_PERSISTENCE,
    FATAL_PROTOCOL,
    FATAL_TRANSPORT,
    STOP_REMOTE_CLOSE,
    STOP_SESSION_END,
    _write_runlog,
    request_shutdown,
)
from .results import to_game_result
from .run import monotonic_ns
from .vendor_ws import build_connect_headers, build_ping_frame, build_ws_url
from .worker_state import ConnectionState, WorkerState
from .ws_decode import (
    GameResultMessage,
    SessionEndMessage,
    StartShufflingMessage,
    classify_frame,
)

_CONNECT_PARAMS = inspect.signature(websockets.connect).parameters
CONNECT_SUPPORTS_CLOSE_TIMEOUT = "close_timeout" in _CONNECT_PARAMS
CONNECT_SUPPORTS_OPEN_TIMEOUT = "open_timeout" in _CONNECT_PARAMS
CONNECT_SUPPORTS_USER_AGENT = "user_agent_header" in _CONNECT_PARAMS
CONNECT_HEADERS_PARAM: str | None
if "extra_headers" in _CONNECT_PARAMS:
    CONNECT_HEADERS_PARAM = "extra_headers"
elif "additional_headers" in _CONNECT_PARAMS:
    CONNECT_HEADERS_PARAM = "additional_headers"
else:
    CONNECT_HEADERS_PARAM = None

# websockets writes these itself during the opening handshake.
_LIBRARY_HANDSHAKE_HEADERS = frozenset({"host", "connection", "upgrade"})


def _connect_kwargs(state: WorkerState) -> dict[str, Any]:
    config = state.config
    skip = set(_LIBRARY_HANDSHAKE_HEADERS)
    # The vendor keepalive replaces protocol-level pings.
    connect_kwargs: dict[str, Any] = {"ping_interval": None}
    if CONNECT_SUPPORTS_OPEN_TIMEOUT:
        connect_kwargs["open_timeout"] = config.ws_open_timeout_seconds
    if CONNECT_SUPPORTS_CLOSE_TIMEOUT:
        connect_kwargs["close_timeout"] = config.ws_close_timeout_seconds
    if CONNECT_SUPPORTS_USER_AGENT:
        connect_kwargs["user_agent_header"] = config.ws_user_agent
        skip.add("user-agent")
    if CONNECT_HEADERS_PARAM is not None:
        connect_kwargs[CONNECT_HEADERS_PARAM] = [
            (name, value)
            for name, value in build_connect_headers(config)
            if name.lower() not in skip
        ]
    return connect_kwargs


async def _open_connection(state: WorkerState) -> Any:
    return await websockets.connect(build_ws_url(state.config), **_connect_kwargs(state))


def _close_details(ws: Any) -> tuple[int | None, str | None]:
    code = getattr(ws, "close_code", None)
    reason = getattr(ws, "close_reason", None)
    return code, reason or None


def _leave_open(state: WorkerState, new_state: ConnectionState) -> None:
    state.cancel_keepalive()
    if state.connection_state in (ConnectionState.OPEN, ConnectionState.CONNECTING):
        state.connection_state = new_state


def _transport_error(message: str, cause: BaseException | None = None) -> TransportError:
    error = TransportError(message)
    error.__cause__ = cause
    return error


async def _drain_received_frames(state: WorkerState) -> None:
    # Frames that arrived before the close are still processed, within bounds.
    if state.shutdown_reason is not None:
        return
    timeout = max(0.0, state.config.write_drain_timeout_seconds)
    with contextlib.suppress(asyncio.TimeoutError):
        await asyncio.wait_for(state.frames.join(), timeout=timeout)


async def _keepalive_loop(state: WorkerState, ws: Any) -> None:
    interval = state.config.keepalive_interval_seconds
    if interval <= 0:
        return
    while state.is_open():
        await asyncio.sleep(interval)
        if not state.is_open():
            return
        try:
            await ws.send(build_ping_frame(state.table_id))
        except websockets.exceptions.ConnectionClosed:
            # the receive loop owns close handling
            return
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            # teardown must not cancel the task it runs in
            if state.keepalive_task is asyncio.current_task():
                state.keepalive_task = None
            await request_shutdown(
                state,
                FATAL_TRANSPORT,
                f"keepalive send failed: {type(exc).__name__}",
                error=_transport_error(str(exc) or type(exc).__name__, exc),
                event="keepalive",
            )
            return
        state.stats.keepalives_sent += 1


async def _receive_frames(state: WorkerState, ws: Any) -> None:
    try:
        async for raw in ws:
            state.stats.frames_received += 1
            state.frames.put_nowait(raw)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        _leave_open(state, ConnectionState.ERRORED)
        state.close_code, state.close_reason = _close_details(ws)
        await _drain_received_frames(state)
        await request_shutdown(
            state,
            FATAL_TRANSPORT,
            f"websocket error: {type(exc).__name__}",
            error=_transport_error(str(exc) or type(exc).__name__, exc),
            event="transport_error",
        )
        return

    _leave_open(state, ConnectionState.CLOSED)
    state.close_code, state.close_reason = _close_details(ws)
    print(
        "disconnected from the game table. "
        f"code: {state.close_code}, reason: {state.close_reason or 'N/A'}",
        file=sys.stderr,
    )
    _write_runlog(
        state,
        {
            "record_type": "ws_close",
            "close_code": state.close_code,
            "close_reason": state.close_reason,
            "ts_mono_ns": monotonic_ns(),
        },
    )
    await _drain_received_frames(state)
    await request_shutdown(state, STOP_REMOTE_CLOSE, "websocket closed")


async def process_frame(state: WorkerState, raw: Any) -> bool:
    """Classify and dispatch one frame; returns False once the worker must stop."""
    message = classify_frame(raw)
    if isinstance(message, GameResultMessage):
        # group is fixed here, before the write is awaited
        game = to_game_result(message.payload, state.tracker.current())
        write = asyncio.ensure_future(state.store.create(game))
        state.inflight_write = write
        stored = await asyncio.shield(write)
        state.inflight_write = None
        state.stats.games_written += 1
        _write_runlog(
            state,
            {
                "record_type": "game_result",
                "external_id": stored.external_id,
                "result": stored.result,
                "score": stored.score,
                "group": stored.group,
            },
        )
        return True
    if isinstance(message, StartShufflingMessage):
        previous = state.tracker.current()
        current = state.tracker.rotate()
        state.stats.rotations += 1
        _write_runlog(
            state,
            {"record_type": "group_rotate", "previous_group": previous, "group": current},
        )
        return True
    if isinstance(message, SessionEndMessage):
        print(message.body, file=sys.stderr)
        _write_runlog(state, {"record_type": "session_end", "body": message.body})
        await request_shutdown(state, STOP_SESSION_END, "session end notice")
        return False
    state.stats.frames_ignored += 1
    return True


async def consume_frames(state: WorkerState) -> None:
    """Single consumer: frame N is fully handled before frame N+1 is taken."""
    while state.shutdown_reason is None:
        raw = await state.frames.get()
        if state.shutdown_reason is not None:
            # teardown owns the rest of the queue
            state.stats.frames_abandoned += 1
            state.frames.task_done()
            return
        try:
            keep_going = await process_frame(state, raw)
        except ProtocolParseError as exc:
            await request_shutdown(
                state, FATAL_PROTOCOL, str(exc), error=exc, event="protocol_parse"
            )
            return
        except PersistenceError as exc:
            await request_shutdown(
                state, FATAL_PERSISTENCE, str(exc), error=exc, event="persistence"
            )
            return
        except Exception as exc:
            await request_shutdown(
                state,
                FATAL_INTERNAL,
                f"frame processing failed: {type(exc).__name__}",
                error=exc,
                event="frame_processing",
            )
            return
        finally:
            state.frames.task_done()
        if not keep_going:
            return


async def run_connection(state: WorkerState) -> None:
    state.connection_state = ConnectionState.CONNECTING
    try:
        ws = await _open_connection(state)
    except asyncio.CancelledError:
        raise
    except Exception as exc:
        state.connection_state = ConnectionState.ERRORED
        await request_shutdown(
            state,
            FATAL_TRANSPORT,
            "websocket connect failed",
            error=_transport_error(f"connect failed: {exc}", exc),
            event="transport_error",
        )
        return
    state.ws = ws
    if state.shutdown_reason is not None:
        state.connection_state = ConnectionState.CLOSING
        with contextlib.suppress(Exception):
            await asyncio.wait_for(ws.close(), timeout=state.config.ws_close_timeout_seconds)
        state.connection_state = ConnectionState.CLOSED
        return
    state.connection_state = ConnectionState.OPEN
    print("connected to the game table", file=sys.stderr)
    _write_runlog(
        state,
        {
            "record_type": "ws_connect",
            "vendor_host": state.config.vendor_host,
            "table": state.table_id,
            "keepalive_interval_seconds": state.config.keepalive_interval_seconds,
            "ts_mono_ns": monotonic_ns(),
        },
    )
    state.keepalive_task = asyncio.create_task(_keepalive_loop(state, ws))
    await _receive_frames(state, ws)
