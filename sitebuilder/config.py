from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from dotenv import load_dotenv


# ------------------------------
# Env helpers
# ------------------------------


def _get_int_env(var_names: List[str], default: int) -> int:
    for name in var_names:
        raw = os.getenv(name)
        if raw is None:
            continue
        try:
            value = int(raw)
            if value > 0:
                return value
        except ValueError:
            pass
    return default


def _get_float_env(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _get_bool_env(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _get_list_env(name: str, default: Tuple[str, ...]) -> Tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return tuple(x.strip() for x in raw.split(",") if x.strip())


@dataclass(frozen=True)
class Settings:
    host: str = "127.0.0.1"
    port: int = 8010
    registry_url: Optional[str] = None
    heartbeat_interval: int = 60

    openrouter_api_key: str = ""
    openrouter_base_url: str = "https://openrouter.ai/api/v1"
    openrouter_model: str = "google/gemini-2.5-flash"
    openrouter_fallback_model: Optional[str] = None
    openrouter_temperature: float = 0.9
    openrouter_max_tokens: int = 8000
    openrouter_site_url: str = ""
    openrouter_app_name: str = "sitebuilder"
    openrouter_timeout: float = 120.0

    retry_attempts: int = 3
    retry_base_delay_ms: int = 1000
    max_corrections: int = 5
    chat_history_limit: int = 20

    workspace_root: str = field(default_factory=lambda: str(Path.cwd() / "workspace"))
    prompts_path: Optional[str] = None

    vercel_token: Optional[str] = None
    vercel_api_url: str = "https://api.vercel.com"

    shell_enabled: bool = False
    shell_allowed_executables: Tuple[str, ...] = ("ls", "cat", "echo", "pwd", "mkdir", "touch")
    shell_timeout: int = 30

    log_level: str = "INFO"

    @classmethod
    def from_env(cls, *, dotenv: bool = True) -> "Settings":
        if dotenv:
            load_dotenv()
        defaults = cls()
        return cls(
            host=os.getenv("BUILDER_HOST", defaults.host).strip(),
            port=_get_int_env(["BUILDER_PORT", "PORT"], defaults.port),
            registry_url=(os.getenv("REGISTRY_URL") or "").strip().rstrip("/") or None,
            heartbeat_interval=_get_int_env(["HEARTBEAT_INTERVAL"], defaults.heartbeat_interval),
            openrouter_api_key=os.getenv("OPENROUTER_API_KEY", "").strip(),
            openrouter_base_url=os.getenv("OPENROUTER_BASE_URL", defaults.openrouter_base_url).rstrip("/"),
            openrouter_model=os.getenv("OPENROUTER_MODEL", defaults.openrouter_model),
            openrouter_fallback_model=os.getenv("OPENROUTER_FALLBACK_MODEL") or None,
            openrouter_temperature=_get_float_env("OPENROUTER_TEMPERATURE", defaults.openrouter_temperature),
            openrouter_max_tokens=_get_int_env(["OPENROUTER_MAX_TOKENS"], defaults.openrouter_max_tokens),
            openrouter_site_url=os.getenv("OPENROUTER_SITE_URL", ""),
            openrouter_app_name=os.getenv("OPENROUTER_APP_NAME", defaults.openrouter_app_name),
            openrouter_timeout=_get_float_env("OPENROUTER_TIMEOUT", defaults.openrouter_timeout),
            retry_attempts=_get_int_env(["AGENT_RETRY_ATTEMPTS"], defaults.retry_attempts),
            retry_base_delay_ms=_get_int_env(["AGENT_RETRY_BASE_DELAY_MS"], defaults.retry_base_delay_ms),
            max_corrections=_get_int_env(["AGENT_MAX_CORRECTIONS"], defaults.max_corrections),
            chat_history_limit=_get_int_env(["CHAT_HISTORY_LIMIT"], defaults.chat_history_limit),
            workspace_root=os.getenv("WORKSPACE_ROOT", defaults.workspace_root),
            prompts_path=os.getenv("PROMPTS_PATH") or None,
            vercel_token=os.getenv("VERCEL_TOKEN") or None,
            vercel_api_url=os.getenv("VERCEL_API_URL", defaults.vercel_api_url),
            shell_enabled=_get_bool_env("SHELL_TOOL_ENABLED"),
            shell_allowed_executables=_get_list_env(
                "SHELL_ALLOWED_EXECUTABLES", defaults.shell_allowed_executables
            ),
            shell_timeout=_get_int_env(["SHELL_TIMEOUT"], defaults.shell_timeout),
            log_level=os.getenv("LOG_LEVEL", defaults.log_level).upper(),
        )


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s %(message)s",
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
