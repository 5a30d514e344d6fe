from __future__ import annotations

import os
from dataclasses import dataclass, replace


ENVIRONMENTS = {"development", "production"}


@dataclass(frozen=True)
class AgoraConfig:
    db_path: str | None = None
    host: str = "127.0.0.1"
    port: int = 8080
    environment: str = "development"
    max_connections_per_user: int = 5
    sweep_interval_s: int = 60
    session_ttl_s: int = 3600
    default_page_size: int = 20
    max_page_size: int = 50

    @property
    def production(self) -> bool:
        return self.environment == "production"

    @property
    def session_ttl_ms(self) -> int:
        return max(self.session_ttl_s, 0) * 1000

    def clamp_page_size(self, requested: int | None) -> int:
        if requested is None:
            return self.default_page_size
        return max(1, min(self.max_page_size, requested))

    def with_overrides(self, **overrides) -> "AgoraConfig":
        return replace(self, **{key: value for key, value in overrides.items() if value is not None})


def _parse_non_negative_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    try:
        parsed = int(raw)
    except ValueError as exc:
        raise ValueError(f"{name} must be an integer") from exc
    if parsed < 0:
        raise ValueError(f"{name} must be non-negative")
    return parsed


def _parse_positive_int(name: str, default: int) -> int:
    parsed = _parse_non_negative_int(name, default)
    if parsed == 0:
        raise ValueError(f"{name} must be positive")
    return parsed


def _parse_choice(name: str, default: str, choices: set[str]) -> str:
    raw = os.environ.get(name)
    if raw is None or raw == "":
        return default
    if raw not in choices:
        raise ValueError(f"{name} must be one of {', '.join(sorted(choices))}")
    return raw


def load_config_from_env() -> AgoraConfig:
    default_page_size = _parse_positive_int("AGORA_DEFAULT_PAGE_SIZE", 20)
    max_page_size = _parse_positive_int("AGORA_MAX_PAGE_SIZE", 50)
    if default_page_size > max_page_size:
        raise ValueError("AGORA_DEFAULT_PAGE_SIZE must not exceed AGORA_MAX_PAGE_SIZE")
    return AgoraConfig(
        db_path=os.environ.get("AGORA_DB_PATH") or None,
        host=os.environ.get("AGORA_HOST") or "127.0.0.1",
        port=_parse_positive_int("AGORA_PORT", 8080),
        environment=_parse_choice("AGORA_ENV", "development", ENVIRONMENTS),
        max_connections_per_user=_parse_positive_int("AGORA_MAX_CONNECTIONS_PER_USER", 5),
        sweep_interval_s=max(1, _parse_non_negative_int("AGORA_SWEEP_INTERVAL_S", 60)),
        session_ttl_s=_parse_positive_int("AGORA_SESSION_TTL_S", 3600),
        default_page_size=default_page_size,
        max_page_size=max_page_size,
    )
