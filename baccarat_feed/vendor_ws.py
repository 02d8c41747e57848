from __future__ import annotations

import time
from urllib.parse import urlencode

from .config import Config


def build_ws_url(config: Config) -> str:
    query = urlencode(
        {
            "JSESSIONID": config.session_id,
            "tableId": config.table_id,
            "type": config.payload_type,
        }
    )
    return f"wss://{config.vendor_host}/game?{query}"


def build_connect_headers(config: Config) -> list[tuple[str, str]]:
    # The vendor rejects the handshake unless these match its web client.
    return [
        ("Host", config.vendor_host),
        ("Connection", "Upgrade"),
        ("Pragma", "no-cache"),
        ("Cache-Control", "no-cache"),
        ("User-Agent", config.ws_user_agent),
        ("Upgrade", "websocket"),
        ("Origin", config.ws_origin),
        ("Accept-Encoding", config.ws_accept_encoding),
        ("Accept-Language", config.ws_accept_language),
    ]


def keepalive_channel(table_id: str) -> str:
    return f"table-{table_id}"


def build_ping_frame(table_id: str, now_ms: int | None = None) -> str:
    if now_ms is None:
        now_ms = time.time_ns() // 1_000_000
    return f'<ping channel="{keepalive_channel(table_id)}" time="{now_ms}"/>'
