"""基础配置与环境变量加载器，支持 .env 文件与系统环境并存."""
from __future__ import annotations

import os
from pathlib import Path

_ENV_PATH = Path(__file__).resolve().parent.parent / ".env"


def _load_env_file(path: Path = _ENV_PATH) -> None:
    """读取 .env 文件到 os.environ，不覆盖已存在的环境变量."""
    if not path.exists():
        return
    for raw in path.read_text(encoding="utf-8").splitlines():
        line = raw.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


def _get_positive_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


def _get_positive_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        value = float(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be a number") from exc
    if value <= 0:
        raise ValueError(f"{name} must be > 0")
    return value


GENERATOR_API_KEY: str | None = os.getenv("GENERATOR_API_KEY")
GENERATOR_BASE_URL: str = os.getenv("GENERATOR_BASE_URL", "https://api.toponeapi.top")
GENERATOR_MODEL: str = os.getenv("GENERATOR_MODEL", "gemini-2.5-flash")
GENERATOR_TIMEOUT_SECONDS: float = _get_positive_float("GENERATOR_TIMEOUT_SECONDS", 30.0)

ANALYSIS_TIMEOUT_SECONDS: float = _get_positive_float(
    "LIVING_STORY_ANALYSIS_TIMEOUT_SECONDS", 45.0
)
LOCK_TIMEOUT_SECONDS: float = _get_positive_float("LIVING_STORY_LOCK_TIMEOUT_SECONDS", 5.0)

RISK_HIGH_FIELD_COUNT: int = _get_positive_int("LIVING_STORY_RISK_HIGH_FIELD_COUNT", 3)
RISK_MEDIUM_FIELD_COUNT: int = _get_positive_int("LIVING_STORY_RISK_MEDIUM_FIELD_COUNT", 2)
if RISK_MEDIUM_FIELD_COUNT > RISK_HIGH_FIELD_COUNT:
    raise ValueError(
        "LIVING_STORY_RISK_MEDIUM_FIELD_COUNT must be <= LIVING_STORY_RISK_HIGH_FIELD_COUNT"
    )

HISTORY_LIMIT: int = _get_positive_int("LIVING_STORY_HISTORY_LIMIT", 100)
POLL_INTERVAL_SECONDS: float = _get_positive_float("LIVING_STORY_POLL_INTERVAL_SECONDS", 10.0)
SUMMARY_PREVIEW_LIMIT: int = _get_positive_int("LIVING_STORY_SUMMARY_PREVIEW_LIMIT", 3)

ALLOWED_STORAGE_MODES = {"memory", "memgraph"}
ALLOWED_GENERATOR_MODES = {"local", "remote"}


def _require_env(name: str) -> str:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        raise RuntimeError(f"{name} 未配置：必须显式设置。")
    return raw.strip()


def _require_mode(name: str, default: str, allowed: set[str]) -> str:
    raw = os.getenv(name, default)
    mode = raw.strip().lower()
    if mode not in allowed:
        options = "/".join(sorted(allowed))
        raise RuntimeError(f"{name}={raw!r} 非法：必须为 {options}。")
    return mode


def require_storage_mode() -> str:
    return _require_mode("LIVING_STORY_STORAGE", "memory", ALLOWED_STORAGE_MODES)


def require_generator_mode() -> str:
    return _require_mode("LIVING_STORY_GENERATOR", "local", ALLOWED_GENERATOR_MODES)


def require_memgraph_host() -> str:
    return _require_env("MEMGRAPH_HOST")


def require_memgraph_port() -> int:
    raw = _require_env("MEMGRAPH_PORT")
    try:
        port = int(raw)
    except ValueError as exc:
        raise ValueError("MEMGRAPH_PORT must be an integer") from exc
    if port <= 0:
        raise ValueError("MEMGRAPH_PORT must be > 0")
    return port
