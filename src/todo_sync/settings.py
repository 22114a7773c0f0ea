from __future__ import annotations

import os
from dataclasses import dataclass
from typing import List, Optional


@dataclass(frozen=True)
class Settings:
    """
    Application settings loaded from environment variables.

    Env vars:
    - TODO_BACKEND: 'memory' (default) or 'supabase'
    - SUPABASE_URL: project URL, e.g. 'https://abc.supabase.co' (required for 'supabase')
    - SUPABASE_ANON_KEY: public anon key (required for 'supabase')
    - SUBSCRIPTION_RETRY_SECONDS: delay before re-establishing a failed change feed (default: 5)
    - REQUEST_TIMEOUT_SECONDS: timeout for outbound HTTP calls (default: 10)
    - CORS_ALLOW_ORIGINS: comma-separated list of allowed origins; '*' by default
    - LOG_LEVEL: DEBUG/INFO/WARNING/ERROR (default: INFO)
    - LOG_FORMAT: 'console' (default) or 'json'
    - CLIENT_COOKIE_NAME: cookie identifying a browser client context (default: 'todo_client')
    - CLIENT_IDLE_SECONDS: idle time after which a client context is closed (default: 1800)
    - HOST / PORT: bind address used by `python -m todo_sync` (default: 127.0.0.1:8000)
    """

    backend: str
    supabase_url: Optional[str]
    supabase_anon_key: Optional[str]
    subscription_retry_seconds: float
    request_timeout_seconds: float
    cors_allow_origins: List[str]
    log_level: str
    log_format: str
    client_cookie_name: str
    host: str = "127.0.0.1"
    port: int = 8000
    client_idle_seconds: float = 1800.0


def _get_env(name: str, default: str) -> str:
    value = os.getenv(name, default)
    if value is None or value == "":
        return default
    return value


def _parse_float(value: str, default: float) -> float:
    try:
        parsed = float(value.strip())
    except ValueError:
        return default
    return parsed if parsed >= 0 else default


def _parse_port(value: str, default: int) -> int:
    try:
        port = int(value.strip())
    except ValueError:
        return default
    return port if 0 < port < 65536 else default


def _parse_origins(origins_value: str) -> List[str]:
    """
    Parse CORS origins from env. Supports:
    - '*' to allow all origins
    - Comma-separated list of origins
    """
    value = origins_value.strip()
    if value == "*":
        return ["*"]
    return [o.strip() for o in value.split(",") if o.strip()]


# PUBLIC_INTERFACE
def get_settings() -> Settings:
    """Return application settings loaded from environment variables."""
    backend = _get_env("TODO_BACKEND", "memory").strip().lower()
    if backend not in {"memory", "supabase"}:
        backend = "memory"

    log_level = _get_env("LOG_LEVEL", "INFO").strip().upper()
    if log_level not in {"DEBUG", "INFO", "WARNING", "ERROR"}:
        log_level = "INFO"

    log_format = _get_env("LOG_FORMAT", "console").strip().lower()
    if log_format not in {"console", "json"}:
        log_format = "console"

    supabase_url = os.getenv("SUPABASE_URL") or None
    if supabase_url:
        supabase_url = supabase_url.strip().rstrip("/")

    return Settings(
        backend=backend,
        supabase_url=supabase_url,
        supabase_anon_key=os.getenv("SUPABASE_ANON_KEY") or None,
        subscription_retry_seconds=_parse_float(_get_env("SUBSCRIPTION_RETRY_SECONDS", "5"), 5.0),
        request_timeout_seconds=_parse_float(_get_env("REQUEST_TIMEOUT_SECONDS", "10"), 10.0),
        cors_allow_origins=_parse_origins(_get_env("CORS_ALLOW_ORIGINS", "*")),
        log_level=log_level,
        log_format=log_format,
        client_cookie_name=_get_env("CLIENT_COOKIE_NAME", "todo_client").strip(),
        host=_get_env("HOST", "127.0.0.1").strip(),
        port=_parse_port(_get_env("PORT", "8000"), 8000),
        client_idle_seconds=_parse_float(_get_env("CLIENT_IDLE_SECONDS", "1800"), 1800.0),
    )
