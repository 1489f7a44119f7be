"""Tests for configuration loading and validation."""

import pytest

from citabot.config import (
    AppConfig,
    BotConfig,
    DataConfig,
    SchedulingConfig,
    ServerConfig,
    _safe_bool,
    _safe_float,
    _safe_int,
    _validate_config,
)


class TestConfigValidation:
    def test_default_config_passes_validation(self):
        config = AppConfig()
        _validate_config(config)  # should not raise

    def test_unsupported_default_language(self):
        config = AppConfig(bot=BotConfig(default_language="fr"))
        with pytest.raises(ValueError, match="DEFAULT_LANGUAGE"):
            _validate_config(config)

    def test_zero_session_timeout(self):
        config = AppConfig(bot=BotConfig(session_timeout_seconds=0))
        with pytest.raises(ValueError, match="SESSION_TIMEOUT_SECONDS"):
            _validate_config(config)

    def test_zero_max_retries(self):
        config = AppConfig(bot=BotConfig(max_retries=0))
        with pytest.raises(ValueError, match="MAX_RETRIES"):
            _validate_config(config)

    def test_unknown_timezone(self):
        config = AppConfig(scheduling=SchedulingConfig(timezone="Mars/Olympus_Mons"))
        with pytest.raises(ValueError, match="TIMEZONE"):
            _validate_config(config)

    def test_lead_time_must_fit_in_horizon(self):
        config = AppConfig(
            scheduling=SchedulingConfig(advance_booking_days=1, min_advance_hours=24)
        )
        with pytest.raises(ValueError, match="MIN_ADVANCE_HOURS"):
            _validate_config(config)

    def test_negative_lead_time(self):
        config = AppConfig(scheduling=SchedulingConfig(min_advance_hours=-1))
        with pytest.raises(ValueError, match="MIN_ADVANCE_HOURS"):
            _validate_config(config)

    def test_zero_slot_duration(self):
        config = AppConfig(scheduling=SchedulingConfig(slot_duration_minutes=0))
        with pytest.raises(ValueError, match="SLOT_DURATION_MINUTES"):
            _validate_config(config)

    def test_zero_listing_limit(self):
        config = AppConfig(scheduling=SchedulingConfig(listing_slot_limit=0))
        with pytest.raises(ValueError, match="LISTING_SLOT_LIMIT"):
            _validate_config(config)

    def test_bad_template_time(self):
        config = AppConfig(scheduling=SchedulingConfig(weekly_template={0: ("9am",)}))
        with pytest.raises(ValueError, match="HH:MM"):
            _validate_config(config)

    def test_bad_template_weekday(self):
        config = AppConfig(scheduling=SchedulingConfig(weekly_template={7: ("09:00",)}))
        with pytest.raises(ValueError, match="weekday"):
            _validate_config(config)

    def test_zero_backup_interval(self):
        config = AppConfig(data=DataConfig(backup_interval_seconds=0))
        with pytest.raises(ValueError, match="BACKUP_INTERVAL_SECONDS"):
            _validate_config(config)

    def test_port_out_of_range(self):
        config = AppConfig(server=ServerConfig(port=70000))
        with pytest.raises(ValueError, match="PORT"):
            _validate_config(config)

    def test_zero_sweep_interval(self):
        config = AppConfig(server=ServerConfig(expiry_sweep_seconds=0))
        with pytest.raises(ValueError, match="EXPIRY_SWEEP_SECONDS"):
            _validate_config(config)


class TestConfigDefaults:
    def test_scheduling_tzinfo(self):
        scheduling = SchedulingConfig(timezone="Europe/Berlin")
        assert scheduling.tzinfo.key == "Europe/Berlin"

    def test_default_weekly_template_has_no_sunday(self):
        template = SchedulingConfig().weekly_template
        assert 6 not in template
        assert template[4] == ("09:00", "11:00", "13:00", "15:00")
        assert template[5] == ("09:00", "11:00", "13:00")

    def test_weekly_template_is_not_shared(self):
        a, b = SchedulingConfig(), SchedulingConfig()
        a.weekly_template[6] = ("10:00",)
        assert 6 not in b.weekly_template

    def test_sections_are_frozen(self):
        config = BotConfig()
        with pytest.raises(AttributeError):
            config.max_retries = 10  # type: ignore[misc]


class TestEnvParsing:
    def test_safe_int_reads_env(self, monkeypatch):
        monkeypatch.setenv("CITABOT_TEST_INT", "42")
        assert _safe_int("CITABOT_TEST_INT", "1") == 42

    def test_safe_int_uses_default(self, monkeypatch):
        monkeypatch.delenv("CITABOT_TEST_INT", raising=False)
        assert _safe_int("CITABOT_TEST_INT", "7") == 7

    def test_safe_int_rejects_garbage(self, monkeypatch):
        monkeypatch.setenv("CITABOT_TEST_INT", "many")
        with pytest.raises(ValueError, match="CITABOT_TEST_INT"):
            _safe_int("CITABOT_TEST_INT", "1")

    def test_safe_float_rejects_garbage(self, monkeypatch):
        monkeypatch.setenv("CITABOT_TEST_FLOAT", "soon")
        with pytest.raises(ValueError, match="CITABOT_TEST_FLOAT"):
            _safe_float("CITABOT_TEST_FLOAT", "1.0")

    @pytest.mark.parametrize("raw,expected", [
        ("true", True), ("1", True), ("YES", True), ("false", False), ("0", False), ("", False),
    ])
    def test_safe_bool(self, monkeypatch, raw, expected):
        monkeypatch.setenv("CITABOT_TEST_BOOL", raw)
        assert _safe_bool("CITABOT_TEST_BOOL", "false") is expected
