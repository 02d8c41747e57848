import asyncio
import re

import pytest

import baccarat_feed.ws_runner as ws_runner
from baccarat_feed.store import GameStore
from baccarat_feed.worker import _run_worker_async
from baccarat_feed.worker_state import ConnectionState
from baccarat_feed.ws_runner import (
    _connect_kwargs,
    consume_frames,
    process_frame,
    run_connection,
)

from conftest import SHUFFLE_FRAME, FakeWebSocket, MemoryStore, read_runlog, result_frame


def _patch_connection(monkeypatch, ws):
    async def _fake_open(_state):
        return ws

    monkeypatch.setattr(ws_runner, "_open_connection", _fake_open)


async def _run_with_frames(monkeypatch, make_config, frames, **overrides):
    ws = FakeWebSocket(frames)
    ws.remote_close(1000, "bye")
    _patch_connection(monkeypatch, ws)
    config = make_config(**overrides)
    exit_code = await asyncio.wait_for(
        _run_worker_async(config, run_id="run", install_signals=False), timeout=5.0
    )
    games = list(GameStore(config.games_path).iter_games())
    runlog = read_runlog(config.games_path.parent / "runs" / "run" / "runlog.ndjson")
    return exit_code, games, runlog, ws


@pytest.mark.asyncio
async def test_results_before_any_shuffle_share_initial_group(monkeypatch, make_config):
    frames = [result_frame(str(idx)) for idx in range(1, 4)]
    exit_code, games, runlog, _ws = await _run_with_frames(monkeypatch, make_config, frames)
    assert exit_code == 0
    assert [game.external_id for game in games] == ["1", "2", "3"]
    start = next(record for record in runlog if record["record_type"] == "worker_start")
    assert {game.group for game in games} == {start["group"]}


@pytest.mark.asyncio
async def test_shuffle_splits_groups(monkeypatch, make_config):
    frames = [
        result_frame("1"),
        result_frame("2"),
        SHUFFLE_FRAME,
        result_frame("3"),
        result_frame("4"),
        result_frame("5"),
    ]
    exit_code, games, runlog, _ws = await _run_with_frames(monkeypatch, make_config, frames)
    assert exit_code == 0
    groups = [game.group for game in games]
    group_a, group_b = groups[0], groups[2]
    assert group_a != group_b
    assert groups == [group_a, group_a, group_b, group_b, group_b]
    rotate = next(record for record in runlog if record["record_type"] == "group_rotate")
    assert rotate["previous_group"] == group_a
    assert rotate["group"] == group_b


@pytest.mark.asyncio
async def test_remote_close_logs_code_and_exits_clean(monkeypatch, make_config):
    exit_code, games, runlog, ws = await _run_with_frames(monkeypatch, make_config, [])
    assert exit_code == 0
    assert games == []
    close = next(record for record in runlog if record["record_type"] == "ws_close")
    assert close["close_code"] == 1000
    assert close["close_reason"] == "bye"
    stop = next(record for record in runlog if record["record_type"] == "worker_stop")
    assert stop["reason"] == "REMOTE_CLOSE"
    assert ws.close_calls == 0


@pytest.mark.asyncio
async def test_invalid_score_stops_with_failure(monkeypatch, make_config):
    frames = [result_frame("1", score="8"), result_frame("2", score="abc"), result_frame("3")]
    exit_code, games, runlog, _ws = await _run_with_frames(monkeypatch, make_config, frames)
    assert exit_code == 1
    assert [(game.external_id, game.score) for game in games] == [("1", 8)]
    error = next(record for record in runlog if record["record_type"] == "exception")
    assert error["error_type"] == "ScoreParseError"
    assert error["event"] == "protocol_parse"
    assert error["table"] == "tbl1"


@pytest.mark.asyncio
async def test_session_end_stops_clean(monkeypatch, make_config):
    frames = [result_frame("1"), "<session>closed by server</session>", result_frame("2")]
    exit_code, games, runlog, _ws = await _run_with_frames(monkeypatch, make_config, frames)
    assert exit_code == 0
    assert [game.external_id for game in games] == ["1"]
    notice = next(record for record in runlog if record["record_type"] == "session_end")
    assert notice["body"] == "<session>closed by server</session>"


@pytest.mark.asyncio
async def test_transport_error_stops_with_failure(monkeypatch, make_config):
    ws = FakeWebSocket([result_frame("1"), ConnectionResetError("reset by peer")])
    _patch_connection(monkeypatch, ws)
    config = make_config()
    exit_code = await asyncio.wait_for(
        _run_worker_async(config, run_id="run", install_signals=False), timeout=5.0
    )
    assert exit_code == 1
    runlog = read_runlog(config.games_path.parent / "runs" / "run" / "runlog.ndjson")
    error = next(record for record in runlog if record["record_type"] == "exception")
    assert error["event"] == "transport_error"
    assert error["table"] == "tbl1"
    assert error["error_type"] == "TransportError"


@pytest.mark.asyncio
async def test_connect_failure_stops_with_failure(monkeypatch, make_config):
    async def _refuse(_state):
        raise OSError("connection refused")

    monkeypatch.setattr(ws_runner, "_open_connection", _refuse)
    config = make_config()
    exit_code = await asyncio.wait_for(
        _run_worker_async(config, run_id="run", install_signals=False), timeout=5.0
    )
    assert exit_code == 1
    assert list(GameStore(config.games_path).iter_games()) == []


@pytest.mark.asyncio
async def test_group_is_fixed_when_frame_is_dispatched(make_state):
    store = MemoryStore(delays={"1": 0.05})
    state = make_state(store=store)
    initial = state.tracker.current()
    observed = []

    base_create = store.create

    async def _create(game):
        stored = await base_create(game)
        observed.append((game.external_id, state.tracker.current()))
        return stored

    store.create = _create
    for frame in (result_frame("1"), SHUFFLE_FRAME, result_frame("2")):
        state.frames.put_nowait(frame)

    consumer = asyncio.create_task(consume_frames(state))
    await asyncio.wait_for(state.frames.join(), timeout=2.0)
    consumer.cancel()
    with pytest.raises(asyncio.CancelledError):
        await consumer

    assert [game.group for game in store.games] == [initial, state.tracker.current()]
    assert store.games[0].group != store.games[1].group
    # the rotation was not dispatched while frame 1's write was in flight
    assert observed[0] == ("1", initial)


@pytest.mark.asyncio
async def test_ignored_frames_are_counted(make_state):
    state = make_state(store=MemoryStore())
    assert await process_frame(state, '<pong channel="table-tbl1"/>') is True
    assert await process_frame(state, '{"tablestatus":{"open":true}}') is True
    assert state.stats.frames_ignored == 2
    assert state.store.games == []


@pytest.mark.asyncio
async def test_keepalive_runs_only_while_open(monkeypatch, make_state):
    state = make_state(store=MemoryStore(), keepalive_interval_seconds=0.02)
    ws = FakeWebSocket()
    _patch_connection(monkeypatch, ws)

    connection = asyncio.create_task(run_connection(state))
    await asyncio.sleep(0.15)
    assert state.connection_state is ConnectionState.OPEN
    assert len(ws.sent) >= 2
    for frame in ws.sent:
        assert re.fullmatch(r'<ping channel="table-tbl1" time="\d+"/>', frame)

    ws.remote_close(1000, "")
    await asyncio.wait_for(connection, timeout=2.0)
    assert state.connection_state is ConnectionState.CLOSED
    assert state.keepalive_task is None
    sent_at_close = len(ws.sent)
    await asyncio.sleep(0.1)
    assert len(ws.sent) == sent_at_close
    assert state.exit_code == 0


def test_connect_kwargs_leave_handshake_headers_to_library(make_state):
    state = make_state(store=MemoryStore())
    kwargs = _connect_kwargs(state)
    assert kwargs["ping_interval"] is None
    if ws_runner.CONNECT_HEADERS_PARAM is None:
        return
    names = [name.lower() for name, _value in kwargs[ws_runner.CONNECT_HEADERS_PARAM]]
    assert "host" not in names
    assert "upgrade" not in names
    assert "connection" not in names
    assert "origin" in names
    assert "accept-language" in names
    assert "pragma" in names
    assert "cache-control" in names
