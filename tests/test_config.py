from __future__ import annotations

import pytest
from pydantic import ValidationError

from dploy.config import DEFAULT_BACKPLANE_URL, Settings, get_settings


def test_defaults():
    settings = get_settings()

    assert settings.backplane_url == DEFAULT_BACKPLANE_URL
    assert settings.backplane_token == ""
    assert settings.readiness_poll_seconds == 1.0
    assert settings.readiness_timeout_seconds == 0.0
    assert settings.shape_pause_seconds == 30.0


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("BACKPLANE_TOKEN", "tok")
    monkeypatch.setenv("SHAPE_PAUSE_SECONDS", "5")

    settings = Settings()

    assert settings.backplane_token == "tok"
    assert settings.shape_pause_seconds == 5.0


@pytest.mark.parametrize(
    "overrides",
    [
        {"backplane_url": "www.backplane.io"},
        {"backplane_url": "ftp://www.backplane.io"},
        {"readiness_poll_seconds": 0},
        {"readiness_timeout_seconds": -1},
        {"shape_pause_seconds": -5},
        {"shape_pause_seconds": "nan"},
        {"readiness_timeout_seconds": "inf"},
    ],
)
def test_invalid_values_are_rejected(overrides):
    with pytest.raises(ValidationError):
        Settings(**overrides)
