from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from typing import Any

from .config import Config
from .fatal_policy import (
    EXIT_FAILURE,
    FATAL_INTERNAL,
    STOP_SIGNAL,
    _write_runlog,
    request_shutdown,
)
from .groups import SessionGroupTracker
from .run import bootstrap_run, monotonic_ns
from .store import GameStore
from .worker_state import ConnectionState, WorkerState
from .writers_ndjson import NdjsonWriter
from .ws_runner import consume_frames, run_connection


def _install_signal_handlers(state: WorkerState) -> None:
    loop = asyncio.get_running_loop()
    shutdown_tasks: set[asyncio.Task] = set()

    def _spawn_shutdown(sig: signal.Signals) -> None:
        task = loop.create_task(
            request_shutdown(state, STOP_SIGNAL, f"received {sig.name}")
        )
        shutdown_tasks.add(task)
        task.add_done_callback(shutdown_tasks.discard)

    def _request_stop(sig: signal.Signals) -> None:
        if state.shutdown_reason is not None:
            return
        loop.call_soon_threadsafe(_spawn_shutdown, sig)

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, _request_stop, sig)
        except (NotImplementedError, RuntimeError):
            try:
                signal.signal(sig, lambda *_args, _sig=sig: _request_stop(_sig))
            except (ValueError, AttributeError):
                continue


def build_worker_state(
    config: Config,
    run_id: str | None = None,
    *,
    store: Any | None = None,
) -> WorkerState:
    run = bootstrap_run(config, run_id)
    if store is None:
        store = GameStore(config.games_path, fsync=config.store_fsync)
    return WorkerState(
        run=run,
        config=config,
        tracker=SessionGroupTracker(),
        store=store,
        runlog_writer=NdjsonWriter(run.runlog_path),
    )


async def _run_worker_async(
    config: Config,
    run_id: str | None = None,
    *,
    store: Any | None = None,
    install_signals: bool = True,
) -> int:
    config.validate()
    state = build_worker_state(config, run_id, store=store)
    _write_runlog(
        state,
        {
            "record_type": "worker_start",
            "table": state.table_id,
            "vendor_host": config.vendor_host,
            "group": state.tracker.current(),
            "games_path": str(config.games_path),
            "ts_mono_ns": monotonic_ns(),
        },
    )
    if install_signals:
        _install_signal_handlers(state)

    consumer_task = asyncio.create_task(consume_frames(state))
    connection_task = asyncio.create_task(run_connection(state))
    stop_task = asyncio.create_task(state.shutdown_event.wait())
    tasks = [consumer_task, connection_task, stop_task]

    done, _pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    if not state.shutdown_event.is_set():
        for task in done:
            if task.cancelled():
                continue
            exc = task.exception()
            if exc is not None:
                await request_shutdown(
                    state,
                    FATAL_INTERNAL,
                    f"task failed: {type(exc).__name__}",
                    error=exc,
                    event="internal",
                )
                break
    await state.shutdown_event.wait()

    for task in tasks:
        if not task.done():
            task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
    state.cancel_keepalive()
    if state.ws is not None and state.connection_state is ConnectionState.OPEN:
        # connect raced the shutdown; never leave the socket behind
        with contextlib.suppress(Exception):
            await asyncio.wait_for(
                state.ws.close(), timeout=config.ws_close_timeout_seconds
            )
        state.connection_state = ConnectionState.CLOSED

    if state.exit_code is None:
        return EXIT_FAILURE
    return state.exit_code


def run_worker(config: Config, run_id: str | None = None) -> int:
    try:
        return asyncio.run(_run_worker_async(config, run_id=run_id))
    except KeyboardInterrupt:
        print("interrupted", file=sys.stderr)
        return 0
