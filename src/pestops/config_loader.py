"""Configuration loading with clear priority hierarchy.

Configuration is loaded in the following priority order (lowest to highest):
1. Pydantic model defaults (defined in config_models.py)
2. defaults.yaml shipped with the package
3. config.yaml file
4. Environment variables
5. CLI arguments (applied after load_config returns)
"""

from __future__ import annotations

import copy
import logging
import os
import pathlib
import zoneinfo
from dataclasses import dataclass
from typing import Any

from dotenv import load_dotenv
from pydantic import ValidationError

from .config_models import AppConfig
from .config_sources import deep_merge_dicts, load_yaml_layers

logger = logging.getLogger(__name__)

DEFAULT_DEFAULTS_FILE = str(pathlib.Path(__file__).parent / "defaults.yaml")
DEFAULT_CONFIG_FILE = "config.yaml"


@dataclass
class EnvVarMapping:
    """Defines how an environment variable maps to a config path.

    Attributes:
        env_var: Environment variable name
        config_path: Dot-separated path in config dict (e.g., "quickbooks.client_id")
        value_type: Type to convert the value to (str, int, float, bool, list)
        list_separator: Separator for list values (default ",")
    """

    env_var: str
    config_path: str
    value_type: type = str
    list_separator: str = ","


ENV_VAR_MAPPINGS: list[EnvVarMapping] = [
    # Database and server
    EnvVarMapping("DATABASE_URL", "database_url"),
    EnvVarMapping("PUBLIC_BASE_URL", "public_base_url"),
    EnvVarMapping("SERVER_HOST", "server.host"),
    EnvVarMapping("SERVER_PORT", "server.port", int),
    EnvVarMapping("DEV_MODE", "dev_mode", bool),
    # Secrets
    EnvVarMapping("TOKEN_ENCRYPTION_KEY", "token_encryption_key"),
    EnvVarMapping("QUICKBOOKS_CLIENT_ID", "quickbooks.client_id"),
    EnvVarMapping("QUICKBOOKS_CLIENT_SECRET", "quickbooks.client_secret"),
    EnvVarMapping("QUICKBOOKS_REDIRECT_URI", "quickbooks.redirect_uri"),
    EnvVarMapping("QUICKBOOKS_ENVIRONMENT", "quickbooks.environment"),
    EnvVarMapping("QBO_WEBHOOK_VERIFIER", "quickbooks.webhook_verifier_token"),
    EnvVarMapping("GOOGLE_CLIENT_ID", "google.client_id"),
    EnvVarMapping("GOOGLE_CLIENT_SECRET", "google.client_secret"),
    EnvVarMapping("GOOGLE_REDIRECT_URI", "google.redirect_uri"),
    EnvVarMapping("SENDGRID_API_KEY", "email.api_key"),
    EnvVarMapping("EMAIL_FROM_ADDRESS", "email.from_address"),
    # Workflow and scheduler tuning
    EnvVarMapping("WORKFLOW_TIMEZONE", "workflow.timezone"),
    EnvVarMapping("WORKFLOW_ACTION_TIMEOUT", "workflow.action_timeout_seconds", float),
    EnvVarMapping("WORKFLOW_MAX_ATTEMPTS", "workflow.max_attempts", int),
    EnvVarMapping("SCHEDULER_ENABLED", "scheduler.enabled", bool),
    EnvVarMapping(
        "QUICKBOOKS_SYNC_INTERVAL", "scheduler.jobs.quickbooks.interval_seconds", float
    ),
    EnvVarMapping(
        "GOOGLE_CALENDAR_SYNC_INTERVAL",
        "scheduler.jobs.google_calendar.interval_seconds",
        float,
    ),
]


def set_nested_value(
    data: dict[str, Any],
    path: str,
    value: Any,  # noqa: ANN401
) -> None:
    """Set a value at a nested path in a dictionary, creating parents."""
    keys = path.split(".")
    current = data
    for key in keys[:-1]:
        if key not in current or not isinstance(current[key], dict):
            current[key] = {}
        current = current[key]
    current[keys[-1]] = value


def parse_env_value(
    value: str,
    value_type: type,
    list_separator: str = ",",
) -> Any:  # noqa: ANN401
    """Parse an environment variable value to the specified type.

    Raises:
        ValueError: If the value cannot be converted to the target type
    """
    if value_type is str:
        return value

    if value_type is int:
        return int(value)

    if value_type is float:
        return float(value)

    if value_type is bool:
        return value.lower() in {"true", "1", "yes"}

    if value_type is list:
        return [item.strip() for item in value.split(list_separator) if item.strip()]

    return value


def apply_env_var_overrides(
    config_data: dict[str, Any],
    mappings: list[EnvVarMapping] | None = None,
) -> None:
    """Apply environment variable overrides to configuration in place."""
    if mappings is None:
        mappings = ENV_VAR_MAPPINGS

    for mapping in mappings:
        env_value = os.getenv(mapping.env_var)  # pylint: disable=invalid-envvar-value
        if env_value is None:
            continue
        try:
            parsed_value = parse_env_value(
                env_value, mapping.value_type, mapping.list_separator
            )
        except ValueError as e:
            logger.warning(
                f"Invalid value for {mapping.env_var}: {env_value!r} ({e}). Ignoring."
            )
            continue
        set_nested_value(config_data, mapping.config_path, parsed_value)
        logger.debug(f"Applied {mapping.env_var} -> {mapping.config_path}")


def validate_timezone(config_data: dict[str, Any]) -> None:
    """Fall back to UTC when the configured business timezone is unknown."""
    workflow = config_data.setdefault("workflow", {})
    timezone = workflow.get("timezone", "UTC")
    try:
        zoneinfo.ZoneInfo(timezone)
    except (zoneinfo.ZoneInfoNotFoundError, ValueError):
        logger.error(f"Invalid timezone '{timezone}'. Defaulting to UTC.")
        workflow["timezone"] = "UTC"


def _log_config(config_data: dict[str, Any]) -> None:
    """Log configuration excluding sensitive values."""
    loggable = copy.deepcopy(config_data)
    loggable.pop("database_url", None)
    loggable.pop("token_encryption_key", None)
    for section in ("quickbooks", "google"):
        if isinstance(loggable.get(section), dict):
            loggable[section].pop("client_secret", None)
            loggable[section].pop("webhook_verifier_token", None)
    if isinstance(loggable.get("email"), dict):
        loggable["email"].pop("api_key", None)
    logger.info(f"Final configuration loaded (secrets omitted): {loggable}")


def load_config(
    defaults_file_path: str = DEFAULT_DEFAULTS_FILE,
    config_file_path: str = DEFAULT_CONFIG_FILE,
    load_dotenv_file: bool = True,
) -> AppConfig:
    """Load configuration with clear priority hierarchy.

    Priority (lowest to highest):
    1. Pydantic model field defaults
    2. defaults.yaml file (shipped with the package)
    3. config.yaml file (operator-provided, optional)
    4. Environment variables

    CLI arguments should be applied after this function returns using
    AppConfig.model_copy(update={...}).

    Raises:
        ValidationError: If configuration contains invalid keys or values
    """
    config_data = AppConfig().model_dump()
    yaml_data = load_yaml_layers([defaults_file_path, config_file_path])
    config_data = deep_merge_dicts(config_data, yaml_data)

    if load_dotenv_file:
        load_dotenv()

    apply_env_var_overrides(config_data)
    validate_timezone(config_data)
    _log_config(config_data)

    try:
        validated_config = AppConfig.model_validate(config_data)
        logger.info("Configuration validated successfully.")
        return validated_config
    except ValidationError as e:
        logger.error(f"Configuration validation failed: {e}")
        raise
