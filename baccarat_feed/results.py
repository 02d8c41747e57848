from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any

from .errors import ScoreParseError

RESULT_VALUES = ("player", "tie", "banker")

_SCORE_RE = re.compile(r"[0-9]+")


@dataclass(frozen=True, slots=True)
class GameResultPayload:
    external_id: str
    table: str
    result: str
    score: Any


@dataclass(frozen=True, slots=True)
class GameResult:
    external_id: str
    table: str
    result: str
    score: int
    group: str
    created_at: str | None = None

    def to_record(self) -> dict[str, Any]:
        return {
            "externalId": self.external_id,
            "table": self.table,
            "result": self.result,
            "score": self.score,
            "group": self.group,
            "createdAt": self.created_at,
        }

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "GameResult":
        return cls(
            external_id=str(record["externalId"]),
            table=str(record["table"]),
            result=str(record["result"]),
            score=int(record["score"]),
            group=str(record["group"]),
            created_at=record.get("createdAt"),
        )


def parse_score(raw: Any) -> int:
    # bool is an int subclass; never accept it as a score
    if isinstance(raw, bool):
        raise ScoreParseError(f"invalid score: {raw!r}", kind="gameresult")
    if isinstance(raw, int):
        if raw < 0:
            raise ScoreParseError(f"invalid score: {raw!r}", kind="gameresult")
        return raw
    if not isinstance(raw, str):
        raise ScoreParseError(f"invalid score: {raw!r}", kind="gameresult")
    text = raw.strip()
    if not _SCORE_RE.fullmatch(text):
        raise ScoreParseError(f"invalid score: {raw!r}", kind="gameresult")
    return int(text)


def to_game_result(payload: GameResultPayload, group: str) -> GameResult:
    return GameResult(
        external_id=payload.external_id,
        table=payload.table,
        result=payload.result,
        score=parse_score(payload.score),
        group=group,
    )
