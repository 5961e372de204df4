"""Configuration loading utilities for agentrelay."""

import json
import secrets
import uuid
from pathlib import Path
from typing import Any

from loguru import logger

from agentrelay.config.schema import Config


def get_config_path() -> Path:
    """Get the default configuration file path."""
    return Path.home() / ".agentrelay" / "config.json"


def get_data_dir() -> Path:
    """Get the agentrelay data directory."""
    from agentrelay.utils.helpers import get_data_path
    return get_data_path()


def load_config(config_path: Path | None = None) -> Config:
    """
    Load configuration from file or create default.

    Args:
        config_path: Optional path to config file. Uses default if not provided.

    Returns:
        Loaded configuration object.
    """
    path = config_path or get_config_path()

    if path.exists():
        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            data = _migrate_config(data)
            return Config.model_validate(convert_keys(data))
        except (json.JSONDecodeError, ValueError) as e:
            logger.warning(f"Failed to load config from {path}: {e}. Using default configuration.")

    return Config()


def save_config(config: Config, config_path: Path | None = None) -> None:
    """
    Save configuration to file.

    Args:
        config: Configuration to save.
        config_path: Optional path to save to. Uses default if not provided.
    """
    path = config_path or get_config_path()
    path.parent.mkdir(parents=True, exist_ok=True)

    data = config.model_dump()
    data = convert_to_camel(data)

    with open(path, "w", encoding="utf-8") as f:
        json.dump(data, f, indent=2)


def ensure_generated_secrets(config: Config, config_path: Path | None = None) -> bool:
    """
    Fill in the runner id and pairing secret on first launch.

    Values are generated once and written back; existing values are never replaced.
    Returns True when the config was changed and saved.
    """
    changed = False
    if not config.runner.runner_id.strip():
        config.runner.runner_id = uuid.uuid4().hex
        changed = True
    if not config.telegram.pairing_secret.strip():
        config.telegram.pairing_secret = secrets.token_hex(16)
        changed = True
    if changed:
        save_config(config, config_path)
        logger.info(f"Generated runner identity {config.runner.runner_id}")
    return changed


class ConfigReloader:
    """Re-read the config file only when its modification time changes."""

    def __init__(self, config_path: Path | None = None, initial: Config | None = None):
        self.config_path = config_path or get_config_path()
        self._config = initial
        self._mtime: float | None = self._current_mtime() if initial is not None else None

    def _current_mtime(self) -> float | None:
        try:
            return self.config_path.stat().st_mtime
        except OSError:
            return None

    def __call__(self) -> Config:
        mtime = self._current_mtime()
        if self._config is None or mtime != self._mtime:
            self._config = load_config(self.config_path)
            self._mtime = mtime
        return self._config


def _migrate_config(data: dict) -> dict:
    """Migrate old config formats to current."""
    if not isinstance(data, dict):
        return {}

    # Flat settings keys from early builds → nested sections.
    runner = data.setdefault("runner", {})
    if isinstance(runner, dict) and "runnerId" in data and "runnerId" not in runner:
        runner["runnerId"] = data.pop("runnerId")

    agent = data.setdefault("agent", {})
    if isinstance(agent, dict):
        if "codexBin" in data and "codexBin" not in agent:
            agent["codexBin"] = data.pop("codexBin")
        if "defaultAccessMode" in data and "defaultAccessMode" not in agent:
            agent["defaultAccessMode"] = data.pop("defaultAccessMode")

    telegram = data.setdefault("telegram", {})
    if isinstance(telegram, dict):
        legacy = {
            "telegramEnabled": "enabled",
            "telegramBotToken": "token",
            "telegramAllowedUserIds": "allowedUserIds",
            "telegramDefaultChatId": "defaultChatId",
            "telegramSendAppStatus": "sendAppStatus",
            "telegramSendCompletedMessages": "sendCompleted",
            "telegramPairingSecret": "pairingSecret",
        }
        for old_key, new_key in legacy.items():
            if old_key in data:
                value = data.pop(old_key)
                telegram.setdefault(new_key, value)
        if telegram.get("token") is None:
            telegram["token"] = ""

    nats = data.setdefault("nats", {})
    if isinstance(nats, dict):
        if "natsUrl" in data:
            nats.setdefault("url", data.pop("natsUrl") or "")
        if nats.get("url") is None:
            nats["url"] = ""

    records = data.setdefault("records", {})
    if isinstance(records, dict):
        if "cloudkitContainerId" in data:
            records.setdefault("containerId", data.pop("cloudkitContainerId") or "")
        if "cloudkitEnabled" in data:
            records.setdefault("enabled", bool(data.pop("cloudkitEnabled")))
        if records.get("containerId") is None:
            records["containerId"] = ""
    return data


def convert_keys(data: Any) -> Any:
    """Convert camelCase keys to snake_case for Pydantic."""
    if isinstance(data, dict):
        return {camel_to_snake(k): convert_keys(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_keys(item) for item in data]
    return data


def convert_to_camel(data: Any) -> Any:
    """Convert snake_case keys to camelCase."""
    if isinstance(data, dict):
        return {snake_to_camel(k): convert_to_camel(v) for k, v in data.items()}
    if isinstance(data, list):
        return [convert_to_camel(item) for item in data]
    return data


def camel_to_snake(name: str) -> str:
    """Convert camelCase to snake_case."""
    result = []
    for i, char in enumerate(name):
        if char.isupper() and i > 0:
            result.append("_")
        result.append(char.lower())
    return "".join(result)


def snake_to_camel(name: str) -> str:
    """Convert snake_case to camelCase."""
    components = name.split("_")
    return components[0] + "".join(x.title() for x in components[1:])
