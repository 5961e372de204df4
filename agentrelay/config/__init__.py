"""Configuration module for agentrelay."""

from agentrelay.config.loader import ConfigReloader, get_config_path, load_config, save_config
from agentrelay.config.schema import Config, WorkspaceEntry

__all__ = ["Config", "ConfigReloader", "WorkspaceEntry", "get_config_path", "load_config", "save_config"]
