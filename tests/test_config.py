"""Configuration loading, validation and environment overrides."""

import pytest
from pydantic import ValidationError

from calbridge.core.config import AppConfig, CalendarConfig, MergeConfig, load_config

CONFIG_TOML = """
[general]
log_level = "debug"
data_dir = "{data_dir}"

[caldav]
url = "https://caldav.example.com/"
username = "me@example.com"

[sync]
interval_minutes = 30
conflict_tolerance_seconds = 120

[sync.merge]
start_time = "remote"

[calendars.work]
url = "https://caldav.example.com/calendars/me/work/"
display_name = "Work"
interval_minutes = 5
"""


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "config.toml"
    path.write_text(CONFIG_TOML.format(data_dir=tmp_path / "data"))
    return path


def test_load_from_file(config_file, tmp_path):
    config = load_config(config_file)

    assert config.general.log_level == "DEBUG"
    assert config.general.data_dir == (tmp_path / "data").resolve()
    assert config.general.config_file == config_file
    assert config.sync.interval_minutes == 30
    assert config.sync.conflict_tolerance_seconds == 120
    assert config.sync.max_backoff_minutes == 240
    assert config.sync.merge.start_time == "remote"
    assert config.calendars["work"].display_name == "Work"
    assert config.sync_db_path == (tmp_path / "data" / "sync.db").resolve()


def test_per_calendar_interval_override(config_file):
    config = AppConfig.load_from_file(config_file)

    assert config.interval_for("https://caldav.example.com/calendars/me/work/") == 5
    assert config.interval_for("https://caldav.example.com/calendars/me/other/") == 30


def test_environment_overrides_nested_settings(monkeypatch, tmp_path):
    monkeypatch.setenv("CALBRIDGE_SYNC__INTERVAL_MINUTES", "45")
    monkeypatch.setenv("CALBRIDGE_GENERAL__DATA_DIR", str(tmp_path))

    config = AppConfig()

    assert config.sync.interval_minutes == 45
    assert config.general.data_dir == tmp_path.resolve()


def test_save_and_reload(tmp_path):
    config = AppConfig(general={"data_dir": str(tmp_path)})
    config.caldav.url = "https://caldav.example.com/"
    path = tmp_path / "config.toml"

    config.save_to_file(path)
    reloaded = AppConfig.load_from_file(path)

    assert reloaded.caldav.url == "https://caldav.example.com/"
    assert "config_file" not in path.read_text()


def test_missing_file_gives_defaults(tmp_path):
    config = AppConfig.load_from_file(tmp_path / "nope.toml")

    assert config.sync.interval_minutes == 15
    assert config.sync.conflict_tolerance_seconds == 60


def test_calendar_url_must_be_http():
    with pytest.raises(ValidationError):
        CalendarConfig(url="caldav.example.com/work")


def test_merge_winner_is_validated():
    with pytest.raises(ValidationError):
        MergeConfig(title="newest")


def test_negative_tolerance_is_rejected():
    with pytest.raises(ValidationError):
        AppConfig(sync={"conflict_tolerance_seconds": -1})


def test_password_falls_back_to_config(monkeypatch):
    monkeypatch.setattr(
        "calbridge.utils.credentials.CredentialStore.get_password",
        lambda self, server_url, username: None,
    )
    config = AppConfig(caldav={"username": "me", "password": "from-config"})

    assert config.caldav.get_password() == "from-config"


def test_password_prefers_keyring(monkeypatch):
    monkeypatch.setattr(
        "calbridge.utils.credentials.CredentialStore.get_password",
        lambda self, server_url, username: "from-keyring",
    )
    config = AppConfig(caldav={"username": "me", "password": "from-config"})

    assert config.caldav.get_password() == "from-keyring"

