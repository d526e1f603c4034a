from __future__ import annotations

from pathlib import Path

import pytest

from agency_console.config import ConsoleSettings, load_settings, resolve_config_path


def test_defaults() -> None:
    settings = ConsoleSettings()
    assert settings.refresh_interval == 30.0
    assert settings.highlight_seconds == 10.0
    assert settings.notification_limit == 5
    assert settings.hold_presets == (1, 2, 3)
    assert settings.employee_id_prefix == "EMP"
    assert settings.api_tokens == {}


def test_load_settings_from_yaml(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("CONSOLE_DB_PATH", "CONSOLE_API_TOKENS", "CONSOLE_REFRESH_INTERVAL", "CONSOLE_IDP_URL"):
        monkeypatch.delenv(name, raising=False)
    config = tmp_path / "console.yaml"
    config.write_text(
        "\n".join(
            [
                "database_path: data/accounts.sqlite3",
                "refresh_interval: 15",
                "hold_presets: [1, 7]",
                "identity_provider:",
                "  url: https://idp.example.com/",
                "  service_key: secret",
                "api_tokens:",
                "  token-a: admin-1",
            ]
        ),
        encoding="utf-8",
    )

    settings = load_settings(config)

    assert settings.database_path == (tmp_path / "data" / "accounts.sqlite3").resolve()
    assert settings.refresh_interval == 15.0
    assert settings.hold_presets == (1, 7)
    assert settings.identity_provider_url == "https://idp.example.com/"
    assert settings.identity_provider_key == "secret"
    assert dict(settings.api_tokens) == {"token-a": "admin-1"}


def test_environment_overrides_file(tmp_path: Path) -> None:
    settings = ConsoleSettings(refresh_interval=15.0).with_env_overrides(
        {
            "CONSOLE_DB_PATH": str(tmp_path / "override.sqlite3"),
            "CONSOLE_REFRESH_INTERVAL": "5",
            "CONSOLE_HOLD_PRESETS": "2,4",
            "CONSOLE_API_TOKENS": "t1:admin-1, t2:admin-2",
            "CONSOLE_IDP_URL": "https://idp.example.com/",
        }
    )

    assert settings.database_path == (tmp_path / "override.sqlite3").resolve()
    assert settings.refresh_interval == 5.0
    assert settings.hold_presets == (2, 4)
    assert dict(settings.api_tokens) == {"t1": "admin-1", "t2": "admin-2"}
    assert settings.identity_provider_url == "https://idp.example.com"


def test_missing_file_falls_back_to_defaults(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CONSOLE_REFRESH_INTERVAL", raising=False)
    settings = load_settings(tmp_path / "absent.yaml")
    assert settings.refresh_interval == 30.0


def test_invalid_values_are_rejected() -> None:
    with pytest.raises(ValueError):
        ConsoleSettings(refresh_interval=0)
    with pytest.raises(ValueError):
        ConsoleSettings().with_env_overrides({"CONSOLE_API_TOKENS": "missing-separator"})
    with pytest.raises(ValueError):
        ConsoleSettings.from_dict({"hold_presets": [0]})


def test_config_path_resolution(tmp_path: Path) -> None:
    assert resolve_config_path(str(tmp_path / "x.yaml")) == (tmp_path / "x.yaml").resolve()
    assert resolve_config_path(None).name == "console.yaml"
