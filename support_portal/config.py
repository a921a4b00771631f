"""Application configuration handling."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Optional

from dotenv import load_dotenv

from .services.conversation_graph import DEFAULT_FLOWS_PATH

ENV_PATH = Path(__file__).resolve().parent / ".env"
load_dotenv(ENV_PATH, encoding="utf-8-sig")


def _env(key: str, default: str | None = None) -> str:
    value = os.getenv(key, default)
    if value is None:
        raise RuntimeError(f"Missing required environment variable: {key}")
    return value


def _env_number(key: str, default: int | float | None, parse: Callable[[str], Any], kind: str) -> Any:
    value = _env(key, str(default) if default is not None else None)
    try:
        return parse(value)
    except (TypeError, ValueError):
        raise RuntimeError(f"Environment variable {key} must be {kind}") from None


def _env_int(key: str, default: int | None = None) -> int:
    return _env_number(key, default, int, "an integer")


def _env_float(key: str, default: float | None = None) -> float:
    return _env_number(key, default, float, "a number")


@dataclass(frozen=True)
class Settings:
    case_store_api_url: Optional[str]
    intake_flow: str
    flows_path: Path
    case_store_timeout_seconds: int
    subscribe_poll_seconds: float
    log_level: str
    default_company: str
    session_capacity: int = 1000

    @classmethod
    def from_env(cls) -> "Settings":
        api_url = os.getenv("CASE_STORE_API_URL", "").strip() or None
        flows_value = os.getenv("FLOWS_PATH", "").strip()
        flows_path = Path(flows_value).expanduser() if flows_value else DEFAULT_FLOWS_PATH
        return cls(
            case_store_api_url=api_url,
            intake_flow=_env("INTAKE_FLOW", "tour_check"),
            flows_path=flows_path,
            case_store_timeout_seconds=_env_int("CASE_STORE_TIMEOUT_SECONDS", 10),
            subscribe_poll_seconds=_env_float("SUBSCRIBE_POLL_SECONDS", 2.0),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
            default_company=_env("DEFAULT_COMPANY", ""),
            session_capacity=_env_int("SESSION_CAPACITY", 1000),
        )
