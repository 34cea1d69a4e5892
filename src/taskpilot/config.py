"""Runtime configuration for task execution."""

from __future__ import annotations

import dataclasses
import json
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

import yaml

from taskpilot.orchestrator.errors import ConfigError
from taskpilot.orchestrator.models import ScopeMode
from taskpilot.orchestrator.pricing import ModelPricing

CONFIG_FILE_NAMES = ("config.yml", "config.yaml", "config.json")
NOTIFICATION_LEVELS = ("all", "errors", "blocked")

_ENV_REFERENCE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}|\$([A-Za-z_][A-Za-z0-9_]*)")
_BRACED_REFERENCE = re.compile(r"\$\{[A-Za-z_][A-Za-z0-9_]*\}")
_BARE_REFERENCE = re.compile(r"^\$[A-Za-z_][A-Za-z0-9_]*$")
_SENSITIVE_KEY_PATTERNS = ("key", "secret", "password", "token", "pass", "webhook_url")


@dataclass(slots=True)
class ProviderSettings:
    """Which agent runs the task."""

    type: str = "claude-cli"
    model: str | None = None


@dataclass(slots=True)
class ConversationSettings:
    max_messages: int = 100
    preserve_first_n: int = 1
    preserve_last_n: int = 20


@dataclass(slots=True)
class ExecutionSettings:
    """Iteration budgets and provider call limits."""

    max_iterations: int = 50
    max_consecutive_failures: int = 3
    timeout_per_iteration: float = 300.0
    session_continuation: bool = True
    rate_limit_backoff_seconds: float = 5.0
    conversation: ConversationSettings = field(default_factory=ConversationSettings)


@dataclass(slots=True)
class PermissionSettings:
    scope_enforcement: ScopeMode = ScopeMode.ASK
    auto_commit: bool = True
    auto_push: bool = False


@dataclass(slots=True)
class ValidationSettings:
    """Quality-gate command lists per phase."""

    pre_commit: tuple[str, ...] = ()
    pre_push: tuple[str, ...] = ()
    pre_pr: tuple[str, ...] = ()
    command_timeout_seconds: float = 300.0


@dataclass(slots=True)
class GitSettings:
    commit_prefix: str = "aidf:"
    branch_prefix: str = "aidf/"


@dataclass(slots=True)
class SecuritySettings:
    skip_permissions: bool = True
    warn_on_skip: bool = True


@dataclass(slots=True)
class NotificationSettings:
    """Outbound notification channels and which outcomes trigger them."""

    level: str = "all"
    webhook_url: str | None = None
    slack_webhook_url: str | None = None
    discord_webhook_url: str | None = None
    timeout_seconds: float = 10.0

    @property
    def enabled(self) -> bool:
        return bool(self.webhook_url or self.slack_webhook_url or self.discord_webhook_url)


@dataclass(slots=True)
class SkillsSettings:
    enabled: bool = True


@dataclass(slots=True)
class CostSettings:
    rates: dict[str, ModelPricing] = field(default_factory=dict)


@dataclass(slots=True)
class Settings:
    """Application settings grouped by domain concerns."""

    provider: ProviderSettings = field(default_factory=ProviderSettings)
    execution: ExecutionSettings = field(default_factory=ExecutionSettings)
    permissions: PermissionSettings = field(default_factory=PermissionSettings)
    validation: ValidationSettings = field(default_factory=ValidationSettings)
    git: GitSettings = field(default_factory=GitSettings)
    security: SecuritySettings = field(default_factory=SecuritySettings)
    notifications: NotificationSettings = field(default_factory=NotificationSettings)
    skills: SkillsSettings = field(default_factory=SkillsSettings)
    cost: CostSettings = field(default_factory=CostSettings)

    @classmethod
    def from_mapping(cls, raw: Mapping[str, Any]) -> Settings:  # noqa: C901
        """Build settings from a parsed YAML/JSON mapping; missing keys keep defaults."""

        provider = _section(raw, "provider")
        execution = _section(raw, "execution")
        conversation = _section(execution, "conversation")
        permissions = _section(raw, "permissions")
        validation = _section(raw, "validation")
        git = _section(raw, "git")
        security = _section(raw, "security")
        notifications = _section(raw, "notifications")
        skills = _section(raw, "skills")
        cost = _section(raw, "cost")

        defaults = cls()
        settings = cls(
            provider=ProviderSettings(
                type=str(provider.get("type", defaults.provider.type)),
                model=provider.get("model"),
            ),
            execution=ExecutionSettings(
                max_iterations=int(
                    execution.get("max_iterations", defaults.execution.max_iterations),
                ),
                max_consecutive_failures=int(
                    execution.get(
                        "max_consecutive_failures",
                        defaults.execution.max_consecutive_failures,
                    ),
                ),
                timeout_per_iteration=float(
                    execution.get(
                        "timeout_per_iteration",
                        defaults.execution.timeout_per_iteration,
                    ),
                ),
                session_continuation=bool(
                    execution.get(
                        "session_continuation",
                        defaults.execution.session_continuation,
                    ),
                ),
                rate_limit_backoff_seconds=float(
                    execution.get(
                        "rate_limit_backoff_seconds",
                        defaults.execution.rate_limit_backoff_seconds,
                    ),
                ),
                conversation=ConversationSettings(
                    max_messages=int(conversation.get("max_messages", 100)),
                    preserve_first_n=int(conversation.get("preserve_first_n", 1)),
                    preserve_last_n=int(conversation.get("preserve_last_n", 20)),
                ),
            ),
            permissions=PermissionSettings(
                scope_enforcement=parse_scope_mode(
                    permissions.get("scope_enforcement", defaults.permissions.scope_enforcement),
                ),
                auto_commit=bool(permissions.get("auto_commit", defaults.permissions.auto_commit)),
                auto_push=bool(permissions.get("auto_push", defaults.permissions.auto_push)),
            ),
            validation=ValidationSettings(
                pre_commit=_commands(validation.get("pre_commit")),
                pre_push=_commands(validation.get("pre_push")),
                pre_pr=_commands(validation.get("pre_pr")),
                command_timeout_seconds=float(
                    validation.get(
                        "command_timeout_seconds",
                        defaults.validation.command_timeout_seconds,
                    ),
                ),
            ),
            git=GitSettings(
                commit_prefix=str(git.get("commit_prefix", defaults.git.commit_prefix)),
                branch_prefix=str(git.get("branch_prefix", defaults.git.branch_prefix)),
            ),
            security=SecuritySettings(
                skip_permissions=bool(
                    security.get("skip_permissions", defaults.security.skip_permissions),
                ),
                warn_on_skip=bool(security.get("warn_on_skip", defaults.security.warn_on_skip)),
            ),
            notifications=NotificationSettings(
                level=str(notifications.get("level", defaults.notifications.level)),
                webhook_url=_webhook(notifications, "webhook"),
                slack_webhook_url=_webhook(notifications, "slack"),
                discord_webhook_url=_webhook(notifications, "discord"),
                timeout_seconds=float(
                    notifications.get("timeout_seconds", defaults.notifications.timeout_seconds),
                ),
            ),
            skills=SkillsSettings(enabled=bool(skills.get("enabled", True))),
            cost=CostSettings(rates=_rates(_section(cost, "rates"))),
        )
        settings.validate()
        return settings

    @classmethod
    def from_env(cls, config_path: Path | None = None) -> Settings:
        """Load the project config file, then apply `TASKPILOT_*` overrides."""

        env_path = os.getenv("TASKPILOT_CONFIG")
        path = config_path or (Path(env_path) if env_path else None)
        settings = load_settings(path)

        if (provider_type := os.getenv("TASKPILOT_PROVIDER")) is not None:
            settings.provider.type = provider_type
        if (model := os.getenv("TASKPILOT_MODEL")) is not None:
            settings.provider.model = model
        if (max_iterations := os.getenv("TASKPILOT_MAX_ITERATIONS")) is not None:
            settings.execution.max_iterations = int(max_iterations)
        if (timeout := os.getenv("TASKPILOT_TIMEOUT_PER_ITERATION")) is not None:
            settings.execution.timeout_per_iteration = float(timeout)
        if (scope_mode := os.getenv("TASKPILOT_SCOPE_ENFORCEMENT")) is not None:
            settings.permissions.scope_enforcement = parse_scope_mode(scope_mode)
        settings.permissions.auto_commit = _env_bool(
            "TASKPILOT_AUTO_COMMIT",
            default=settings.permissions.auto_commit,
        )
        settings.permissions.auto_push = _env_bool(
            "TASKPILOT_AUTO_PUSH",
            default=settings.permissions.auto_push,
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """Raise a configuration error for values the executor cannot run with."""

        if self.execution.max_iterations <= 0:
            raise ConfigError.invalid("execution.max_iterations must be > 0")
        if self.execution.max_consecutive_failures <= 0:
            raise ConfigError.invalid("execution.max_consecutive_failures must be > 0")
        if self.notifications.level not in NOTIFICATION_LEVELS:
            raise ConfigError.invalid(
                f"notifications.level must be one of {', '.join(NOTIFICATION_LEVELS)}",
            )


def find_config_file(project_root: Path) -> Path | None:
    for name in CONFIG_FILE_NAMES:
        candidate = project_root / ".ai" / name
        if candidate.is_file():
            return candidate
    return None


def load_settings(path: Path | None = None, *, project_root: Path | None = None) -> Settings:
    """Read a YAML or JSON config file; defaults when none exists."""

    if path is None:
        path = find_config_file(project_root or Path.cwd())
        if path is None:
            return Settings()
    elif not path.is_file():
        raise ConfigError.missing(str(path))

    text = path.read_text("utf-8")
    try:
        raw = json.loads(text) if path.suffix == ".json" else yaml.safe_load(text)
    except (json.JSONDecodeError, yaml.YAMLError) as error:
        raise ConfigError.invalid(f"{path}: {error}") from error
    if raw is None:
        return Settings()
    if not isinstance(raw, Mapping):
        raise ConfigError.invalid(f"{path}: top level must be a mapping")
    return Settings.from_mapping(raw)


def resolve_config(value: Any) -> Any:
    """Substitute ``${NAME}`` and ``$NAME`` references throughout a config value."""

    if isinstance(value, Enum):
        return value
    if isinstance(value, str):
        return _resolve_string(value)
    if isinstance(value, Mapping):
        return {key: resolve_config(item) for key, item in value.items()}
    if isinstance(value, list):
        return [resolve_config(item) for item in value]
    if isinstance(value, tuple):
        return tuple(resolve_config(item) for item in value)
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return dataclasses.replace(
            value,
            **{
                item.name: resolve_config(getattr(value, item.name))
                for item in dataclasses.fields(value)
                if item.init
            },
        )
    return value


def detect_plaintext_secrets(config: Any, path: tuple[str, ...] = ()) -> list[str]:
    """Warn about sensitive-looking keys holding literal values instead of env references."""

    if dataclasses.is_dataclass(config) and not isinstance(config, type):
        config = {item.name: getattr(config, item.name) for item in dataclasses.fields(config)}
    if not isinstance(config, Mapping):
        return []

    warnings: list[str] = []
    for key, value in config.items():
        current = (*path, str(key))
        if isinstance(value, str) and value:
            sensitive = any(pattern in str(key).lower() for pattern in _SENSITIVE_KEY_PATTERNS)
            uses_env = bool(_BRACED_REFERENCE.search(value) or _BARE_REFERENCE.match(value))
            if sensitive and not uses_env:
                warnings.append(
                    f'Possible plaintext secret at "{".".join(current)}". '
                    "Consider using an environment variable: ${ENV_VAR_NAME}",
                )
        elif isinstance(value, Mapping) or (
            dataclasses.is_dataclass(value) and not isinstance(value, type)
        ):
            warnings.extend(detect_plaintext_secrets(value, current))
    return warnings


def parse_scope_mode(value: Any) -> ScopeMode:
    try:
        return ScopeMode(str(value.value if isinstance(value, ScopeMode) else value).lower())
    except ValueError as error:
        raise ConfigError.invalid(
            f"scope_enforcement must be one of {', '.join(mode.value for mode in ScopeMode)}, "
            f"got {value!r}",
        ) from error


def _resolve_string(value: str) -> str:
    def substitute(match: re.Match[str]) -> str:
        name = match.group(1) or match.group(2)
        resolved = os.getenv(name)
        if resolved is None:
            raise ConfigError.missing_env_var(name)
        return resolved

    return _ENV_REFERENCE.sub(substitute, value)


def _section(raw: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    value = raw.get(name)
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError.invalid(f"'{name}' must be a mapping")
    return value


def _commands(value: Any) -> tuple[str, ...]:
    if value is None:
        return ()
    if isinstance(value, str):
        return (value,)
    return tuple(str(item) for item in value if str(item).strip())


def _webhook(notifications: Mapping[str, Any], channel: str) -> str | None:
    value = notifications.get(channel)
    if isinstance(value, Mapping):
        if value.get("enabled", True) is False:
            return None
        url = value.get("webhook_url") or value.get("url")
        return str(url) if url else None
    return str(value) if value else None


def _rates(raw: Mapping[str, Any]) -> dict[str, ModelPricing]:
    rates: dict[str, ModelPricing] = {}
    for pattern, value in raw.items():
        if not isinstance(value, Mapping):
            raise ConfigError.invalid(f"cost.rates.{pattern} must be a mapping")
        try:
            rates[str(pattern)] = ModelPricing(
                input_per_1m=float(value["input_per_1m"]),
                output_per_1m=float(value["output_per_1m"]),
            )
        except (KeyError, TypeError, ValueError) as error:
            raise ConfigError.invalid(
                f"cost.rates.{pattern} needs numeric input_per_1m and output_per_1m",
            ) from error
    return rates


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    raise ValueError(f"Invalid boolean value for {name}: {value!r}")
