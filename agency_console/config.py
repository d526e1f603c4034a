"""Configuration management for the agency console."""
from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Dict, Mapping, Optional, Tuple

import yaml

from .scheduling import DEFAULT_HOLD_PRESETS


def _env_int(value: Optional[str], default: int, name: str) -> int:
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError as exc:
        raise ValueError(f"Invalid integer value {value!r} for {name}") from exc


def _env_float(value: Optional[str], default: float, name: str) -> float:
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError as exc:
        raise ValueError(f"Invalid numeric value {value!r} for {name}") from exc


def _parse_presets(raw: object) -> Tuple[int, ...]:
    if isinstance(raw, str):
        items = [part.strip() for part in raw.split(",") if part.strip()]
    elif isinstance(raw, (list, tuple)):
        items = list(raw)
    else:
        raise ValueError("hold_presets must be a list of day counts")
    presets = tuple(sorted({int(item) for item in items}))
    if not presets or presets[0] < 1:
        raise ValueError("hold_presets must contain positive day counts")
    return presets


def _parse_tokens(raw: object) -> Dict[str, str]:
    """Parse ``token:actor`` pairs from a comma separated string or mapping."""

    if raw is None:
        return {}
    if isinstance(raw, Mapping):
        pairs = {str(token).strip(): str(actor).strip() for token, actor in raw.items()}
    else:
        pairs = {}
        for item in str(raw).split(","):
            item = item.strip()
            if not item:
                continue
            token, sep, actor = item.partition(":")
            if not sep or not actor.strip():
                raise ValueError("API tokens must be given as token:actor_user_id pairs")
            pairs[token.strip()] = actor.strip()
    return {token: actor for token, actor in pairs.items() if token and actor}


@dataclass(frozen=True)
class ConsoleSettings:
    """Runtime settings for the lifecycle service and admin sessions."""

    database_path: Optional[Path] = None
    refresh_interval: float = 30.0
    highlight_seconds: float = 10.0
    notification_limit: int = 5
    hold_presets: Tuple[int, ...] = DEFAULT_HOLD_PRESETS
    employee_id_prefix: str = "EMP"
    identity_provider_url: Optional[str] = None
    identity_provider_key: Optional[str] = None
    identity_provider_timeout: float = 10.0
    api_tokens: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        if self.refresh_interval <= 0:
            raise ValueError("refresh_interval must be positive")
        if self.highlight_seconds <= 0:
            raise ValueError("highlight_seconds must be positive")
        if self.notification_limit < 1:
            raise ValueError("notification_limit must be at least 1")

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "ConsoleSettings":
        """Create :class:`ConsoleSettings` from raw dictionary data."""

        database_path: Optional[Path] = None
        raw_db = data.get("database_path")
        if raw_db:
            candidate = Path(str(raw_db)).expanduser()
            if not candidate.is_absolute() and base_path is not None:
                candidate = base_path / candidate
            database_path = candidate.resolve(strict=False)

        identity = data.get("identity_provider") or {}
        if not isinstance(identity, Mapping):
            raise ValueError("identity_provider must be a mapping")

        return ConsoleSettings(
            database_path=database_path,
            refresh_interval=float(data.get("refresh_interval", 30.0)),
            highlight_seconds=float(data.get("highlight_seconds", 10.0)),
            notification_limit=int(data.get("notification_limit", 5)),
            hold_presets=_parse_presets(data.get("hold_presets", list(DEFAULT_HOLD_PRESETS))),
            employee_id_prefix=str(data.get("employee_id_prefix", "EMP")),
            identity_provider_url=str(identity["url"]) if identity.get("url") else None,
            identity_provider_key=str(identity["service_key"]) if identity.get("service_key") else None,
            identity_provider_timeout=float(identity.get("timeout", 10.0)),
            api_tokens=_parse_tokens(data.get("api_tokens")),
        )

    def with_env_overrides(self, environ: Mapping[str, str] | None = None) -> "ConsoleSettings":
        env = os.environ if environ is None else environ
        changes: Dict[str, object] = {}

        if env.get("CONSOLE_DB_PATH"):
            changes["database_path"] = Path(env["CONSOLE_DB_PATH"]).expanduser().resolve(strict=False)
        if "CONSOLE_REFRESH_INTERVAL" in env:
            changes["refresh_interval"] = _env_float(
                env.get("CONSOLE_REFRESH_INTERVAL"), self.refresh_interval, "CONSOLE_REFRESH_INTERVAL"
            )
        if "CONSOLE_HIGHLIGHT_SECONDS" in env:
            changes["highlight_seconds"] = _env_float(
                env.get("CONSOLE_HIGHLIGHT_SECONDS"), self.highlight_seconds, "CONSOLE_HIGHLIGHT_SECONDS"
            )
        if "CONSOLE_NOTIFICATION_LIMIT" in env:
            changes["notification_limit"] = _env_int(
                env.get("CONSOLE_NOTIFICATION_LIMIT"), self.notification_limit, "CONSOLE_NOTIFICATION_LIMIT"
            )
        if env.get("CONSOLE_HOLD_PRESETS"):
            changes["hold_presets"] = _parse_presets(env["CONSOLE_HOLD_PRESETS"])
        if env.get("CONSOLE_EMPLOYEE_ID_PREFIX"):
            changes["employee_id_prefix"] = env["CONSOLE_EMPLOYEE_ID_PREFIX"].strip()
        if env.get("CONSOLE_IDP_URL"):
            changes["identity_provider_url"] = env["CONSOLE_IDP_URL"].strip().rstrip("/")
        if env.get("CONSOLE_IDP_SERVICE_KEY"):
            changes["identity_provider_key"] = env["CONSOLE_IDP_SERVICE_KEY"].strip()
        if env.get("CONSOLE_API_TOKENS"):
            changes["api_tokens"] = _parse_tokens(env["CONSOLE_API_TOKENS"])

        if not changes:
            return self
        return replace(self, **changes)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "console.yaml").resolve(strict=False)


def load_settings(config_path: Optional[Path] = None) -> ConsoleSettings:
    """Load settings from YAML (when present) and apply ``CONSOLE_*`` overrides."""

    path = config_path or resolve_config_path(os.getenv("CONSOLE_CONFIG_PATH"))
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}
        if not isinstance(raw, Mapping):
            raise ValueError("Configuration file must contain a mapping at the top level")
        settings = ConsoleSettings.from_dict(raw, base_path=path.parent)
    else:
        settings = ConsoleSettings()
    return settings.with_env_overrides()


__all__ = ["ConsoleSettings", "load_settings", "resolve_config_path"]
