"""Tests for the layered configuration loader."""

import pathlib

import pytest
from pydantic import ValidationError

from pestops.config_loader import (
    EnvVarMapping,
    apply_env_var_overrides,
    load_config,
    parse_env_value,
    set_nested_value,
    validate_timezone,
)
from pestops.config_sources import deep_merge_dicts, load_yaml_file

DEFAULTS = str(pathlib.Path(__file__).parents[2] / "src" / "pestops" / "defaults.yaml")


class TestDeepMerge:
    def test_nested_values_are_merged_not_replaced(self) -> None:
        base = {"workflow": {"max_attempts": 3, "timezone": "UTC"}, "dev_mode": False}
        merged = deep_merge_dicts(base, {"workflow": {"max_attempts": 5}})

        assert merged == {
            "workflow": {"max_attempts": 5, "timezone": "UTC"},
            "dev_mode": False,
        }
        # The inputs are left alone
        assert base["workflow"]["max_attempts"] == 3

    def test_non_dict_value_replaces_dict(self) -> None:
        merged = deep_merge_dicts({"jobs": {"a": 1}}, {"jobs": None})
        assert merged == {"jobs": None}


def test_set_nested_value_creates_parents() -> None:
    data: dict = {"scheduler": "not-a-dict"}
    set_nested_value(data, "scheduler.jobs.quickbooks.interval_seconds", 60.0)
    assert data == {"scheduler": {"jobs": {"quickbooks": {"interval_seconds": 60.0}}}}


@pytest.mark.parametrize(
    ("raw", "value_type", "expected"),
    [
        ("8080", int, 8080),
        ("2.5", float, 2.5),
        ("true", bool, True),
        ("YES", bool, True),
        ("0", bool, False),
        ("a, b,,c", list, ["a", "b", "c"]),
        ("plain", str, "plain"),
    ],
)
def test_parse_env_value(raw: str, value_type: type, expected: object) -> None:
    assert parse_env_value(raw, value_type) == expected


def test_parse_env_value_rejects_bad_int() -> None:
    with pytest.raises(ValueError):
        parse_env_value("eight", int)


def test_invalid_env_value_is_ignored(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("TEST_PORT", "not-a-port")
    data = {"server": {"port": 8000}}
    apply_env_var_overrides(data, [EnvVarMapping("TEST_PORT", "server.port", int)])
    assert data["server"]["port"] == 8000


def test_unknown_timezone_falls_back_to_utc() -> None:
    data = {"workflow": {"timezone": "Mars/Olympus_Mons"}}
    validate_timezone(data)
    assert data["workflow"]["timezone"] == "UTC"


def test_load_yaml_file_missing_returns_empty(tmp_path: pathlib.Path) -> None:
    assert load_yaml_file(tmp_path / "nope.yaml") == {}


def test_load_yaml_file_non_mapping_is_ignored(tmp_path: pathlib.Path) -> None:
    path = tmp_path / "list.yaml"
    path.write_text("- one\n- two\n")
    assert load_yaml_file(path) == {}


class TestLoadConfig:
    def test_priority_defaults_file_then_env(
        self, tmp_path: pathlib.Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        """config.yaml overrides defaults.yaml, and the environment overrides both."""
        config_file = tmp_path / "config.yaml"
        config_file.write_text(
            "workflow:\n"
            "  max_attempts: 5\n"
            "  timezone: UTC\n"
            "scheduler:\n"
            "  jobs:\n"
            "    quickbooks:\n"
            "      interval_seconds: 120\n"
        )
        monkeypatch.setenv("WORKFLOW_MAX_ATTEMPTS", "7")
        monkeypatch.setenv("QUICKBOOKS_CLIENT_ID", "client-from-env")
        monkeypatch.setenv("SCHEDULER_ENABLED", "false")

        config = load_config(
            defaults_file_path=DEFAULTS,
            config_file_path=str(config_file),
            load_dotenv_file=False,
        )

        assert config.workflow.max_attempts == 7
        assert config.workflow.timezone == "UTC"
        assert config.quickbooks.client_id == "client-from-env"
        assert config.scheduler.enabled is False
        quickbooks_job = config.scheduler.jobs["quickbooks"]
        assert quickbooks_job.interval_seconds == 120
        # Values from defaults.yaml survive the partial override
        assert quickbooks_job.business_hours_only is True
        assert config.scheduler.jobs["google_calendar"].interval_seconds == 600

    def test_missing_config_file_uses_defaults(self, tmp_path: pathlib.Path) -> None:
        config = load_config(
            defaults_file_path=DEFAULTS,
            config_file_path=str(tmp_path / "absent.yaml"),
            load_dotenv_file=False,
        )
        assert config.workflow.timezone == "America/Los_Angeles"
        assert config.scheduler.business_hours.start_hour == 7
        assert config.scheduler.business_hours.end_hour == 19
        assert config.tokens.refresh_margin_seconds == 300

    def test_unknown_key_is_rejected(self, tmp_path: pathlib.Path) -> None:
        config_file = tmp_path / "config.yaml"
        config_file.write_text("workflow:\n  max_attempt: 5\n")
        with pytest.raises(ValidationError):
            load_config(
                defaults_file_path=DEFAULTS,
                config_file_path=str(config_file),
                load_dotenv_file=False,
            )
