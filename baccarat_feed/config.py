from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
import types
import typing
from typing import Any, Mapping, get_args, get_origin

from dotenv import dotenv_values

from .errors import ConfigurationError

ENV_PREFIX = "GAME_"
ENV_FILES = (".env.local", ".env")
REQUIRED_FIELDS = ("vendor_host_segment", "session_id", "table_id")


def _parse_bool(value: str) -> bool:
    val = str(value).strip().lower()
    if val in {"1", "true", "yes", "y", "on"}:
        return True
    if val in {"0", "false", "no", "n", "off"}:
        return False
    raise ValueError(f"invalid bool: {value}")


def _parse_number(value: str, target_type: type) -> Any:
    if target_type is int:
        return int(value)
    if target_type is float:
        return float(value)
    return value


def _unwrap_optional(field_type: Any) -> tuple[Any, bool]:
    if isinstance(field_type, str):
        text = field_type.replace(" ", "")
        if text.endswith("|None"):
            return text[: -len("|None")], True
        return field_type, False
    origin = get_origin(field_type)
    union_type = getattr(types, "UnionType", None)
    if origin not in (typing.Union, union_type):
        return field_type, False
    args = get_args(field_type)
    if args and type(None) in args and len(args) == 2:
        base = args[0] if args[1] is type(None) else args[1]
        return base, True
    return field_type, False


def _is_field_type(field_type: Any, expected: type, expected_name: str) -> bool:
    base_type, _is_optional = _unwrap_optional(field_type)
    if base_type is expected:
        return True
    if isinstance(base_type, str) and base_type == expected_name:
        return True
    return False


def _parse_optional(raw: str, field_type: Any) -> Any:
    text = str(raw).strip()
    if text == "":
        return None
    lower = text.lower()
    if lower in {"none", "null"}:
        return None
    if _is_field_type(field_type, bool, "bool"):
        return _parse_bool(text)
    if _is_field_type(field_type, int, "int"):
        return _parse_number(text, int)
    if _is_field_type(field_type, float, "float"):
        return _parse_number(text, float)
    return text


def load_env(
    environ: Mapping[str, str],
    *,
    base_dir: Path | None = None,
) -> dict[str, str]:
    """Merge `.env.local` and `.env` under the process environment.

    The process environment always wins, then `.env.local`, then `.env`.
    """
    root = base_dir or Path.cwd()
    merged: dict[str, str] = {}
    for name in reversed(ENV_FILES):
        path = root / name
        if not path.is_file():
            continue
        for key, value in dotenv_values(path).items():
            if value is not None:
                merged[key] = value
    merged.update(environ)
    return merged


@dataclass
class Config:
    vendor_host_segment: str | None = None
    session_id: str | None = None
    table_id: str | None = None
    vendor_domain: str = "pragmaticplaylive.net"
    payload_type: str = "json"
    ws_origin: str = "https://client.pragmaticplaylive.net"
    ws_user_agent: str = (
        "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
        "(KHTML, like Gecko) Chrome/142.0.0.0 Safari/537.36"
    )
    ws_accept_encoding: str = "gzip, deflate, br, zstd"
    ws_accept_language: str = "pt-BR,pt;q=0.9,en-US;q=0.8,en;q=0.7"
    ws_open_timeout_seconds: float = 10.0
    ws_close_timeout_seconds: float = 5.0
    keepalive_interval_seconds: float = 10.0
    flush_timeout_seconds: float = 2.0
    write_drain_timeout_seconds: float = 2.0
    data_dir: str = "./data"
    store_path: str | None = None
    store_fsync: bool = False

    @property
    def vendor_host(self) -> str:
        return f"{self.vendor_host_segment}.{self.vendor_domain}"

    @property
    def games_path(self) -> Path:
        if self.store_path:
            return Path(self.store_path)
        return Path(self.data_dir) / "games.ndjson"

    def missing_required(self) -> list[str]:
        missing: list[str] = []
        for name in REQUIRED_FIELDS:
            value = getattr(self, name)
            if value is None or not str(value).strip():
                missing.append(ENV_PREFIX + name.upper())
        return missing

    def validate(self) -> "Config":
        missing = self.missing_required()
        if missing:
            raise ConfigurationError(missing)
        return self

    def apply_overrides(self, overrides: dict[str, Any]) -> "Config":
        for field in fields(self):
            name = field.name
            if name in overrides:
                value = overrides[name]
                if value is None:
                    _base_type, is_optional = _unwrap_optional(field.type)
                    if is_optional:
                        setattr(self, name, None)
                    continue
                setattr(self, name, value)
        return self

    @classmethod
    def from_env_and_cli(
        cls, cli_overrides: dict[str, Any], env: Mapping[str, str]
    ) -> "Config":
        cfg = cls()
        for field in fields(cfg):
            env_key = ENV_PREFIX + field.name.upper()
            if env_key not in env:
                continue
            raw = env[env_key]
            _base_type, is_optional = _unwrap_optional(field.type)
            if is_optional:
                value = _parse_optional(raw, field.type)
            elif _is_field_type(field.type, bool, "bool"):
                value = _parse_bool(raw)
            elif _is_field_type(field.type, int, "int"):
                value = _parse_number(raw, int)
            elif _is_field_type(field.type, float, "float"):
                value = _parse_number(raw, float)
            else:
                value = raw
            setattr(cfg, field.name, value)
        # CLI flags take precedence over the environment.
        return cfg.apply_overrides(cli_overrides)
