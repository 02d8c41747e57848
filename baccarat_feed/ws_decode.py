from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Union

import orjson

from .errors import ProtocolParseError
from .results import RESULT_VALUES, GameResultPayload

KIND_GAME_RESULT = "gameresult"
KIND_START_SHUFFLING = "startshuffling"
KIND_SESSION_END = "session"

SESSION_TAG = "<session>"
_ENVELOPE_KEY_RE = re.compile(r'^\{"(\w+)"')
_SAMPLE_CHARS = 200


@dataclass(frozen=True, slots=True)
class GameResultMessage:
    payload: GameResultPayload
    kind: str = KIND_GAME_RESULT


@dataclass(frozen=True, slots=True)
class StartShufflingMessage:
    kind: str = KIND_START_SHUFFLING


@dataclass(frozen=True, slots=True)
class SessionEndMessage:
    body: str
    kind: str = KIND_SESSION_END


@dataclass(frozen=True, slots=True)
class IgnoredMessage:
    kind: str = "ignored"


WsMessage = Union[GameResultMessage, StartShufflingMessage, SessionEndMessage, IgnoredMessage]


def _frame_text(raw: Any) -> tuple[str, UnicodeDecodeError | None]:
    if isinstance(raw, (bytes, bytearray, memoryview)):
        data = bytes(raw)
        try:
            return data.decode("utf-8"), None
        except UnicodeDecodeError as exc:
            # lossy text is only used to sniff the envelope key
            return data.decode("utf-8", errors="replace"), exc
    return str(raw), None


def _load_envelope(text: str, kind: str) -> dict[str, Any]:
    try:
        envelope = orjson.loads(text)
    except orjson.JSONDecodeError as exc:
        raise ProtocolParseError(
            f"{kind} frame is not valid json: {exc}",
            kind=kind,
            sample=text[:_SAMPLE_CHARS],
        ) from exc
    if not isinstance(envelope, dict):
        raise ProtocolParseError(
            f"{kind} frame is not a json object", kind=kind, sample=text[:_SAMPLE_CHARS]
        )
    return envelope


def _required_text(payload: dict[str, Any], name: str, text: str) -> str:
    value = payload.get(name)
    if value is None or isinstance(value, (dict, list, bool)):
        raise ProtocolParseError(
            f"gameresult missing field: {name}",
            kind=KIND_GAME_RESULT,
            sample=text[:_SAMPLE_CHARS],
        )
    value_text = str(value).strip()
    if not value_text:
        raise ProtocolParseError(
            f"gameresult empty field: {name}",
            kind=KIND_GAME_RESULT,
            sample=text[:_SAMPLE_CHARS],
        )
    return value_text


def _decode_game_result(text: str) -> GameResultMessage:
    envelope = _load_envelope(text, KIND_GAME_RESULT)
    payload = envelope.get(KIND_GAME_RESULT)
    if not isinstance(payload, dict):
        raise ProtocolParseError(
            "gameresult payload missing", kind=KIND_GAME_RESULT, sample=text[:_SAMPLE_CHARS]
        )
    external_id = _required_text(payload, "id", text)
    table = _required_text(payload, "table", text)
    result = _required_text(payload, "result", text)
    if result not in RESULT_VALUES:
        raise ProtocolParseError(
            f"gameresult unknown result: {result}",
            kind=KIND_GAME_RESULT,
            sample=text[:_SAMPLE_CHARS],
        )
    if "score" not in payload or payload["score"] is None:
        raise ProtocolParseError(
            "gameresult missing field: score",
            kind=KIND_GAME_RESULT,
            sample=text[:_SAMPLE_CHARS],
        )
    return GameResultMessage(
        payload=GameResultPayload(
            external_id=external_id,
            table=table,
            result=result,
            score=payload["score"],
        )
    )


def classify_frame(raw: Any) -> WsMessage:
    """Classify one inbound frame.

    Unknown traffic is ignored; a frame that looks like a known message but
    does not decode raises ProtocolParseError.
    """
    text, decode_error = _frame_text(raw)
    text = text.lstrip()
    match = _ENVELOPE_KEY_RE.match(text)
    if match is not None:
        key = match.group(1)
        if decode_error is not None and key in (KIND_GAME_RESULT, KIND_START_SHUFFLING):
            raise ProtocolParseError(
                f"{key} frame is not valid utf-8: {decode_error}",
                kind=key,
                sample=text[:_SAMPLE_CHARS],
            ) from decode_error
        if key == KIND_GAME_RESULT:
            return _decode_game_result(text)
        if key == KIND_START_SHUFFLING:
            _load_envelope(text, KIND_START_SHUFFLING)
            return StartShufflingMessage()
        return IgnoredMessage()
    if text.startswith(SESSION_TAG):
        return SessionEndMessage(body=text)
    return IgnoredMessage()
