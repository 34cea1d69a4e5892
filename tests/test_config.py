from __future__ import annotations

import json
import os
from pathlib import Path

import allure
import pytest

from taskpilot.config import (
    NotificationSettings,
    Settings,
    detect_plaintext_secrets,
    find_config_file,
    load_settings,
    resolve_config,
)
from taskpilot.orchestrator.errors import (
    CONFIG_ENV_VAR_MISSING,
    CONFIG_INVALID,
    CONFIG_MISSING,
    ConfigError,
)
from taskpilot.orchestrator.models import ScopeMode
from taskpilot.orchestrator.pricing import ModelPricing

pytestmark = [
    allure.epic("Task Execution"),
    allure.feature("Configuration"),
]


@pytest.fixture(autouse=True)
def clean_env(monkeypatch) -> None:
    for name in list(os.environ):
        if name.startswith("TASKPILOT_"):
            monkeypatch.delenv(name)


def test_defaults_match_documented_values() -> None:
    settings = Settings()

    assert settings.provider.type == "claude-cli"
    assert settings.execution.max_iterations == 50
    assert settings.execution.max_consecutive_failures == 3
    assert settings.permissions.scope_enforcement is ScopeMode.ASK
    assert settings.permissions.auto_commit is True
    assert settings.permissions.auto_push is False
    assert settings.git.commit_prefix == "aidf:"
    assert settings.notifications.enabled is False


def test_from_mapping_reads_every_section() -> None:
    settings = Settings.from_mapping(
        {
            "provider": {"type": "anthropic-api", "model": "claude-opus-4"},
            "execution": {
                "max_iterations": 7,
                "max_consecutive_failures": 2,
                "timeout_per_iteration": 30,
                "session_continuation": False,
                "conversation": {"max_messages": 40, "preserve_last_n": 10},
            },
            "permissions": {"scope_enforcement": "STRICT", "auto_commit": False},
            "validation": {"pre_commit": ["ruff check .", "pytest -q"], "pre_push": "make test"},
            "git": {"commit_prefix": "bot:"},
            "notifications": {
                "level": "errors",
                "slack": {"webhook_url": "https://hooks.slack.test/x"},
                "discord": {"webhook_url": "https://discord.test/y", "enabled": False},
                "webhook": "https://example.test/hook",
            },
            "skills": {"enabled": False},
            "cost": {"rates": {"my-model": {"input_per_1m": 1, "output_per_1m": 2}}},
        },
    )

    assert settings.provider.type == "anthropic-api"
    assert settings.provider.model == "claude-opus-4"
    assert settings.execution.max_iterations == 7
    assert settings.execution.max_consecutive_failures == 2
    assert settings.execution.timeout_per_iteration == 30.0
    assert settings.execution.session_continuation is False
    assert settings.execution.conversation.max_messages == 40
    assert settings.execution.conversation.preserve_first_n == 1
    assert settings.execution.conversation.preserve_last_n == 10
    assert settings.permissions.scope_enforcement is ScopeMode.STRICT
    assert settings.permissions.auto_commit is False
    assert settings.validation.pre_commit == ("ruff check .", "pytest -q")
    assert settings.validation.pre_push == ("make test",)
    assert settings.git.commit_prefix == "bot:"
    assert settings.notifications.level == "errors"
    assert settings.notifications.slack_webhook_url == "https://hooks.slack.test/x"
    assert settings.notifications.discord_webhook_url is None
    assert settings.notifications.webhook_url == "https://example.test/hook"
    assert settings.skills.enabled is False
    assert settings.cost.rates == {"my-model": ModelPricing(1.0, 2.0)}


def test_from_mapping_rejects_unknown_scope_mode() -> None:
    with pytest.raises(ConfigError) as error:
        Settings.from_mapping({"permissions": {"scope_enforcement": "sometimes"}})

    assert error.value.code == CONFIG_INVALID
    assert "scope_enforcement" in str(error.value)


def test_validate_rejects_non_positive_budgets() -> None:
    with pytest.raises(ConfigError, match="max_iterations"):
        Settings.from_mapping({"execution": {"max_iterations": 0}})
    with pytest.raises(ConfigError, match="max_consecutive_failures"):
        Settings.from_mapping({"execution": {"max_consecutive_failures": -1}})


def test_validate_rejects_unknown_notification_level() -> None:
    settings = Settings(notifications=NotificationSettings(level="loud"))

    with pytest.raises(ConfigError, match="notifications.level"):
        settings.validate()


def test_load_settings_reads_yaml_from_project_ai_dir(tmp_path: Path) -> None:
    config_path = tmp_path / ".ai" / "config.yml"
    config_path.parent.mkdir()
    config_path.write_text(
        "provider:\n"
        "  type: cursor-cli\n"
        "execution:\n"
        "  max_iterations: 12\n"
        "notifications:\n"
        "  slack:\n"
        "    webhook_url: '${SLACK_WEBHOOK}'\n",
        "utf-8",
    )

    assert find_config_file(tmp_path) == config_path
    settings = load_settings(project_root=tmp_path)

    assert settings.provider.type == "cursor-cli"
    assert settings.execution.max_iterations == 12
    assert settings.notifications.slack_webhook_url == "${SLACK_WEBHOOK}"


def test_load_settings_reads_json(tmp_path: Path) -> None:
    config_path = tmp_path / "config.json"
    config_path.write_text(json.dumps({"execution": {"max_iterations": 4}}), "utf-8")

    assert load_settings(config_path).execution.max_iterations == 4


def test_load_settings_defaults_without_file(tmp_path: Path) -> None:
    assert find_config_file(tmp_path) is None
    assert load_settings(project_root=tmp_path) == Settings()


def test_load_settings_reports_missing_explicit_file(tmp_path: Path) -> None:
    with pytest.raises(ConfigError) as error:
        load_settings(tmp_path / "nope.yml")

    assert error.value.code == CONFIG_MISSING


def test_load_settings_reports_malformed_yaml(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yml"
    config_path.write_text("execution: [unclosed\n", "utf-8")

    with pytest.raises(ConfigError) as error:
        load_settings(config_path)

    assert error.value.code == CONFIG_INVALID


def test_load_settings_rejects_non_mapping_top_level(tmp_path: Path) -> None:
    config_path = tmp_path / "config.yml"
    config_path.write_text("- just\n- a list\n", "utf-8")

    with pytest.raises(ConfigError, match="top level must be a mapping"):
        load_settings(config_path)


def test_from_env_applies_overrides_on_top_of_file(tmp_path: Path, monkeypatch) -> None:
    config_path = tmp_path / "config.yml"
    config_path.write_text("execution:\n  max_iterations: 9\n", "utf-8")
    monkeypatch.setenv("TASKPILOT_PROVIDER", "anthropic-api")
    monkeypatch.setenv("TASKPILOT_MODEL", "claude-haiku")
    monkeypatch.setenv("TASKPILOT_TIMEOUT_PER_ITERATION", "12.5")
    monkeypatch.setenv("TASKPILOT_SCOPE_ENFORCEMENT", "permissive")
    monkeypatch.setenv("TASKPILOT_AUTO_COMMIT", "no")
    monkeypatch.setenv("TASKPILOT_AUTO_PUSH", "yes")

    settings = Settings.from_env(config_path)

    assert settings.execution.max_iterations == 9
    assert settings.provider.type == "anthropic-api"
    assert settings.provider.model == "claude-haiku"
    assert settings.execution.timeout_per_iteration == 12.5
    assert settings.permissions.scope_enforcement is ScopeMode.PERMISSIVE
    assert settings.permissions.auto_commit is False
    assert settings.permissions.auto_push is True


def test_from_env_reads_config_path_from_environment(tmp_path: Path, monkeypatch) -> None:
    config_path = tmp_path / "custom.yml"
    config_path.write_text("git:\n  commit_prefix: 'chore:'\n", "utf-8")
    monkeypatch.setenv("TASKPILOT_CONFIG", str(config_path))
    monkeypatch.setenv("TASKPILOT_MAX_ITERATIONS", "3")

    settings = Settings.from_env()

    assert settings.git.commit_prefix == "chore:"
    assert settings.execution.max_iterations == 3


def test_from_env_rejects_invalid_boolean(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    monkeypatch.setenv("TASKPILOT_AUTO_PUSH", "maybe")

    with pytest.raises(ValueError, match="Invalid boolean value for TASKPILOT_AUTO_PUSH"):
        Settings.from_env()


def test_resolve_config_substitutes_braced_and_bare_references(monkeypatch) -> None:
    monkeypatch.setenv("SLACK_URL", "https://hooks.slack.test/abc")
    monkeypatch.setenv("PREFIX", "bot")
    settings = Settings.from_mapping(
        {
            "permissions": {"scope_enforcement": "strict"},
            "git": {"commit_prefix": "$PREFIX:"},
            "notifications": {"slack": "${SLACK_URL}"},
        },
    )

    resolved = resolve_config(settings)

    assert resolved.notifications.slack_webhook_url == "https://hooks.slack.test/abc"
    assert resolved.git.commit_prefix == "bot:"
    assert resolved.permissions.scope_enforcement is ScopeMode.STRICT
    assert settings.notifications.slack_webhook_url == "${SLACK_URL}"


def test_resolve_config_walks_nested_mappings(monkeypatch) -> None:
    monkeypatch.setenv("TOKEN", "t-1")

    resolved = resolve_config({"a": ["${TOKEN}", {"b": "x-$TOKEN"}], "n": 3})

    assert resolved == {"a": ["t-1", {"b": "x-t-1"}], "n": 3}


def test_resolve_config_fails_on_unset_variable(monkeypatch) -> None:
    monkeypatch.delenv("TASKPILOT_TEST_UNSET", raising=False)

    with pytest.raises(ConfigError) as error:
        resolve_config({"api_key": "${TASKPILOT_TEST_UNSET}"})

    assert error.value.code == CONFIG_ENV_VAR_MISSING
    assert error.value.context == {"variable": "TASKPILOT_TEST_UNSET"}


def test_detect_plaintext_secrets_flags_literal_sensitive_values() -> None:
    warnings = detect_plaintext_secrets(
        {
            "provider": {"api_key": "sk-live-123", "model": "claude-sonnet"},
            "notifications": {"slack": {"webhook_url": "${SLACK_WEBHOOK}"}},
            "database": {"password": "$DB_PASSWORD"},
        },
    )

    assert warnings == [
        'Possible plaintext secret at "provider.api_key". '
        "Consider using an environment variable: ${ENV_VAR_NAME}",
    ]


def test_detect_plaintext_secrets_walks_settings_dataclasses() -> None:
    settings = Settings(
        notifications=NotificationSettings(slack_webhook_url="https://hooks.slack.test/raw"),
    )

    warnings = detect_plaintext_secrets(settings)

    assert len(warnings) == 1
    assert '"notifications.slack_webhook_url"' in warnings[0]
