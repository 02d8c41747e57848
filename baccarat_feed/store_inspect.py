from __future__ import annotations

from typing import Any, Iterable

from .results import GameResult


def _external_id_key(external_id: str) -> tuple[int, int, str]:
    if external_id.isdigit():
        return (0, int(external_id), "")
    return (1, 0, external_id)


def _created_key(game: GameResult) -> str:
    return game.created_at or ""


def summarize_groups(games: Iterable[GameResult], limit: int = 10) -> list[dict[str, Any]]:
    """Latest shuffle groups first, each with its games in write order.

    Groups are ranked by their highest external id, matching how the
    dashboard pages through them.
    """
    by_group: dict[str, list[GameResult]] = {}
    for game in games:
        by_group.setdefault(game.group, []).append(game)
    ranked = sorted(
        by_group.items(),
        key=lambda item: max(_external_id_key(game.external_id) for game in item[1]),
        reverse=True,
    )
    summaries: list[dict[str, Any]] = []
    for group, group_games in ranked[: max(0, limit)]:
        ordered = sorted(group_games, key=_created_key)
        summaries.append(
            {
                "group": group,
                "games": [
                    {"id": game.external_id, "result": game.result, "score": game.score}
                    for game in ordered
                ],
                "stats": {
                    "playerCount": sum(1 for game in ordered if game.result == "player"),
                    "tieCount": sum(1 for game in ordered if game.result == "tie"),
                    "bankerCount": sum(1 for game in ordered if game.result == "banker"),
                    "firstGameDate": ordered[0].created_at if ordered else None,
                    "lastGameDate": ordered[-1].created_at if ordered else None,
                },
            }
        )
    return summaries
