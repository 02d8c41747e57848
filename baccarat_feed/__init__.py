"""Live baccarat table feed: websocket ingestion into shuffle-session groups."""

__all__ = [
    "cli",
    "config",
    "errors",
    "fatal_policy",
    "groups",
    "results",
    "run",
    "store",
    "store_inspect",
    "vendor_ws",
    "worker",
    "worker_state",
    "writers_ndjson",
    "ws_decode",
    "ws_runner",
]
