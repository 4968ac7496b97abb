import attrs
import pytest

from geoengine_driver.config.env import from_env, from_env_as_bool, from_env_as_float


@attrs.frozen(kw_only=True)
class _Config:
    color: str = attrs.field(factory=from_env("COLOR", default="red"))
    enabled: bool = attrs.field(factory=from_env_as_bool("ENABLED", default=False))
    ratio: float = attrs.field(factory=from_env_as_float("RATIO", default=0.5))


def test_defaults(monkeypatch):
    for var in ["COLOR", "ENABLED", "RATIO"]:
        monkeypatch.delenv(var, raising=False)
    config = _Config()
    assert (config.color, config.enabled, config.ratio) == ("red", False, 0.5)


def test_from_env(monkeypatch):
    monkeypatch.setenv("COLOR", "blue")
    monkeypatch.setenv("ENABLED", "on")
    monkeypatch.setenv("RATIO", "0.25")
    config = _Config()
    assert (config.color, config.enabled, config.ratio) == ("blue", True, 0.25)


def test_env_is_read_at_construction(monkeypatch):
    monkeypatch.setenv("COLOR", "green")
    first = _Config()
    monkeypatch.setenv("COLOR", "yellow")
    assert first.color == "green"
    assert _Config().color == "yellow"


@pytest.mark.parametrize(
    ["value", "expected"],
    [("1", True), ("yes", True), ("true", True), ("0", False), ("no", False), ("off", False), ("FALSE", False)],
)
def test_from_env_as_bool(monkeypatch, value, expected):
    monkeypatch.setenv("ENABLED", value)
    assert _Config().enabled is expected


def test_explicit_value_wins(monkeypatch):
    monkeypatch.setenv("COLOR", "blue")
    assert _Config(color="purple").color == "purple"
