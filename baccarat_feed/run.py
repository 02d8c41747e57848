from __future__ import annotations

import json
import platform
import socket
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path

from .config import Config

MANIFEST_VERSION = 1


def monotonic_ns() -> int:
    return time.perf_counter_ns()


class RunBootstrap:
    def __init__(self, run_id: str, run_dir: Path, t0_wall_ns_utc: int, t0_mono_ns: int):
        self.run_id = run_id
        self.run_dir = run_dir
        self.t0_wall_ns_utc = t0_wall_ns_utc
        self.t0_mono_ns = t0_mono_ns

    @property
    def runlog_path(self) -> Path:
        return self.run_dir / "runlog.ndjson"


def _default_run_id() -> str:
    stamp = datetime.now(timezone.utc).strftime("%Y%m%dT%H%M%SZ")
    suffix = uuid.uuid4().hex[:8]
    return f"{stamp}-{suffix}"


def _write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    data = json.dumps(payload, ensure_ascii=True, separators=(",", ":"))
    path.write_text(data + "\n", encoding="utf-8")


def _environment_metadata() -> dict[str, str]:
    return {
        "python": platform.python_version(),
        "platform": platform.platform(),
        "hostname": socket.gethostname(),
    }


def bootstrap_run(config: Config, run_id: str | None = None) -> RunBootstrap:
    run_id = run_id or _default_run_id()
    run_dir = Path(config.data_dir) / "runs" / run_id
    run_dir.mkdir(parents=True, exist_ok=False)

    t0_wall_ns_utc = time.time_ns()
    t0_mono_ns = monotonic_ns()
    # session_id is a vendor credential and stays out of the manifest
    manifest = {
        "manifest_version": MANIFEST_VERSION,
        "run_id": run_id,
        "t0_wall_ns_utc": t0_wall_ns_utc,
        "t0_mono_ns": t0_mono_ns,
        "vendor_host": config.vendor_host,
        "table_id": config.table_id,
        "games_path": str(config.games_path),
        "environment": _environment_metadata(),
    }
    _write_json(run_dir / "manifest.json", manifest)
    return RunBootstrap(run_id, run_dir, t0_wall_ns_utc, t0_mono_ns)
