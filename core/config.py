"""
Configuration Management - YAML-based configuration with environment overrides
=============================================================================

This module handles all configuration aspects including:
- Loading from YAML files
- Environment variable overrides
- Default values
- Configuration validation

Rule definitions live in their own file (see ``rules.store``); this
module only knows where that file is.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Optional
from dataclasses import dataclass, field, asdict

from .exceptions import ConfigError

APP_DIR_NAME = "session-autopilot"


@dataclass
class EngineConfig:
    """
    Rule engine configuration.

    Global rate limits apply across every rule and every session; the
    per-rule limits live on the rules themselves.
    """
    # Global limits
    global_cooldown_seconds: float = 0.0
    max_actions_per_minute: int = 30  # 0 = unlimited

    # Activity log
    activity_log_size: int = 500

    # Dispatch
    dispatch_workers: int = 4

    # Session naming, used to derive {agent} from the session name
    session_prefix: str = "jat-"

    def validate(self) -> None:
        """Validate engine configuration."""
        if self.global_cooldown_seconds < 0:
            raise ConfigError("global_cooldown_seconds cannot be negative")

        if self.max_actions_per_minute < 0:
            raise ConfigError("max_actions_per_minute cannot be negative")

        if self.activity_log_size < 1:
            raise ConfigError("activity_log_size must be at least 1")

        if self.dispatch_workers < 1:
            raise ConfigError("dispatch_workers must be at least 1")


@dataclass
class ActuatorConfig:
    """
    Actuator configuration.

    Controls how actions reach tmux sessions and how notifications are
    delivered.
    """
    tmux_path: str = "tmux"
    command_timeout: int = 10
    confirm_key: str = "Enter"

    # Signal files are read by the dashboard and by the session watcher
    signal_dir: str = "/tmp"

    # Notifications
    notify_command: str = ""  # e.g. "notify-send Autopilot"
    webhook_url: str = ""
    webhook_headers: Dict[str, str] = field(default_factory=dict)

    def validate(self) -> None:
        """Validate actuator configuration."""
        if self.command_timeout < 1:
            raise ConfigError(f"command_timeout must be at least 1, got {self.command_timeout}")

        if not self.confirm_key:
            raise ConfigError("confirm_key cannot be empty")

        if self.webhook_url and not self.webhook_url.startswith(("http://", "https://")):
            raise ConfigError(f"Invalid webhook URL: {self.webhook_url}")


@dataclass
class WatcherConfig:
    """
    Session watcher configuration.

    The watcher polls every session on a fixed interval and hands the
    captured pane text to the engine.
    """
    poll_interval: float = 2.0
    capture_lines: int = 40
    max_workers: int = 8

    # Only evaluate a session when its pane text changed since the last poll
    skip_unchanged: bool = True

    def validate(self) -> None:
        """Validate watcher configuration."""
        if self.poll_interval <= 0:
            raise ConfigError(f"poll_interval must be positive, got {self.poll_interval}")

        if self.capture_lines < 1:
            raise ConfigError(f"capture_lines must be at least 1, got {self.capture_lines}")

        if self.max_workers < 1:
            raise ConfigError("max_workers must be at least 1")


@dataclass
class UIConfig:
    """
    User interface configuration.

    Controls the dashboard API server and the terminal activity viewer.
    """
    web_host: str = "127.0.0.1"
    web_port: int = 8765
    web_debug: bool = False

    tui_refresh_rate: float = 1.0  # seconds
    activity_rows: int = 100

    def validate(self) -> None:
        """Validate UI configuration."""
        if self.web_port < 1 or self.web_port > 65535:
            raise ConfigError(f"Invalid web port: {self.web_port}")

        if self.tui_refresh_rate <= 0:
            raise ConfigError("tui_refresh_rate must be positive")


@dataclass
class Config:
    """
    Main configuration container.

    Aggregates all configuration sections into a single object
    and provides methods for loading, saving, and validating.
    """
    app_name: str = "Session Autopilot"
    version: str = "1.0.0"
    debug: bool = False

    engine: EngineConfig = field(default_factory=EngineConfig)
    actuator: ActuatorConfig = field(default_factory=ActuatorConfig)
    watcher: WatcherConfig = field(default_factory=WatcherConfig)
    ui: UIConfig = field(default_factory=UIConfig)

    # Paths (set at runtime)
    config_dir: str = ""
    data_dir: str = ""
    log_dir: str = ""
    rules_file: str = ""

    def validate(self) -> None:
        """
        Validate all configuration sections.

        Raises:
            ConfigError: If any configuration section is invalid
        """
        self.engine.validate()
        self.actuator.validate()
        self.watcher.validate()
        self.ui.validate()

    @property
    def rules_path(self) -> Path:
        """Location of the rule file."""
        if self.rules_file:
            return Path(self.rules_file).expanduser()
        return Path(self.config_dir) / "rules.yaml"

    def to_dict(self) -> Dict[str, Any]:
        """Convert configuration to dictionary."""
        return {
            "app_name": self.app_name,
            "version": self.version,
            "debug": self.debug,
            "engine": asdict(self.engine),
            "actuator": asdict(self.actuator),
            "watcher": asdict(self.watcher),
            "ui": asdict(self.ui),
            "rules_file": self.rules_file,
        }


_SECTIONS = ("engine", "actuator", "watcher", "ui")


def get_default_config_dir() -> Path:
    """
    Get the default configuration directory path.

    Returns:
        Path to the configuration directory
    """
    if "AUTOPILOT_CONFIG_DIR" in os.environ:
        return Path(os.environ["AUTOPILOT_CONFIG_DIR"])

    if "XDG_CONFIG_HOME" in os.environ:
        return Path(os.environ["XDG_CONFIG_HOME"]) / APP_DIR_NAME

    return Path.home() / ".config" / APP_DIR_NAME


def get_default_data_dir() -> Path:
    """
    Get the default data directory path.

    Returns:
        Path to the data directory
    """
    if "AUTOPILOT_DATA_DIR" in os.environ:
        return Path(os.environ["AUTOPILOT_DATA_DIR"])

    if "XDG_DATA_HOME" in os.environ:
        return Path(os.environ["XDG_DATA_HOME"]) / APP_DIR_NAME

    return Path.home() / ".local" / "share" / APP_DIR_NAME


def load_config(config_path: Optional[str] = None, load_env: bool = True) -> Config:
    """
    Load configuration from YAML file with environment variable overrides.

    This function loads configuration in the following order:
    1. Default values from dataclass
    2. Values from YAML file
    3. Environment variable overrides

    Args:
        config_path: Path to configuration file (optional)
        load_env: Whether to load environment variable overrides

    Returns:
        Config object with loaded values

    Raises:
        ConfigError: If configuration is invalid or cannot be loaded
    """
    config = Config()

    config.config_dir = str(get_default_config_dir())
    config.data_dir = str(get_default_data_dir())
    config.log_dir = str(Path(config.data_dir) / "logs")

    if config_path:
        yaml_path = Path(config_path).expanduser()
        config.config_dir = str(yaml_path.parent)
    else:
        yaml_path = Path(config.config_dir) / "config.yaml"

    if yaml_path.exists():
        try:
            with open(yaml_path, "r", encoding="utf-8") as f:
                yaml_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(f"Failed to parse config file: {e}", {"path": str(yaml_path)})
        except IOError as e:
            raise ConfigError(f"Failed to read config file: {e}", {"path": str(yaml_path)})

        if not isinstance(yaml_config, dict):
            raise ConfigError("Config file must contain a mapping", {"path": str(yaml_path)})

        _apply_yaml_config(config, yaml_config)
    elif config_path:
        raise ConfigError(f"Config file not found: {yaml_path}")

    if load_env:
        _apply_env_overrides(config)

    config.validate()

    return config


def _apply_yaml_config(config: Config, yaml_config: Dict[str, Any]) -> None:
    """
    Apply YAML configuration values to Config object.

    Unknown keys are ignored so older config files keep loading.

    Args:
        config: Config object to update
        yaml_config: Dictionary of configuration values from YAML
    """
    for key in ("app_name", "debug", "rules_file", "data_dir", "log_dir"):
        if key in yaml_config:
            setattr(config, key, yaml_config[key])

    for section in _SECTIONS:
        values = yaml_config.get(section)
        if not values:
            continue
        if not isinstance(values, dict):
            raise ConfigError(f"Config section '{section}' must be a mapping")

        section_obj = getattr(config, section)
        for key, value in values.items():
            if hasattr(section_obj, key):
                setattr(section_obj, key, value)


def _apply_env_overrides(config: Config) -> None:
    """
    Apply environment variable overrides to Config object.

    Environment variables follow the pattern: AUTOPILOT_SECTION_KEY
    For example: AUTOPILOT_ENGINE_MAX_ACTIONS_PER_MINUTE, AUTOPILOT_UI_WEB_PORT

    Args:
        config: Config object to update
    """
    env_mappings = {
        # Engine settings
        "AUTOPILOT_ENGINE_GLOBAL_COOLDOWN_SECONDS": ("engine", "global_cooldown_seconds", float),
        "AUTOPILOT_ENGINE_MAX_ACTIONS_PER_MINUTE": ("engine", "max_actions_per_minute", int),
        "AUTOPILOT_ENGINE_SESSION_PREFIX": ("engine", "session_prefix"),

        # Actuator settings
        "AUTOPILOT_ACTUATOR_TMUX_PATH": ("actuator", "tmux_path"),
        "AUTOPILOT_ACTUATOR_SIGNAL_DIR": ("actuator", "signal_dir"),
        "AUTOPILOT_ACTUATOR_NOTIFY_COMMAND": ("actuator", "notify_command"),
        "AUTOPILOT_ACTUATOR_WEBHOOK_URL": ("actuator", "webhook_url"),

        # Watcher settings
        "AUTOPILOT_WATCHER_POLL_INTERVAL": ("watcher", "poll_interval", float),
        "AUTOPILOT_WATCHER_CAPTURE_LINES": ("watcher", "capture_lines", int),
        "AUTOPILOT_WATCHER_SKIP_UNCHANGED": ("watcher", "skip_unchanged", bool),

        # UI settings
        "AUTOPILOT_UI_WEB_HOST": ("ui", "web_host"),
        "AUTOPILOT_UI_WEB_PORT": ("ui", "web_port", int),
        "AUTOPILOT_UI_WEB_DEBUG": ("ui", "web_debug", bool),
    }

    for env_var, mapping in env_mappings.items():
        value = os.environ.get(env_var)
        if value is None:
            continue

        section, key = mapping[0], mapping[1]
        converter = mapping[2] if len(mapping) > 2 else str

        if converter == bool:
            converted = value.lower() in ("true", "1", "yes", "on")
        else:
            try:
                converted = converter(value)
            except ValueError:
                raise ConfigError(f"Invalid value for {env_var}: {value!r}")

        setattr(getattr(config, section), key, converted)

    if "AUTOPILOT_RULES_FILE" in os.environ:
        config.rules_file = os.environ["AUTOPILOT_RULES_FILE"]


def save_config(config: Config, config_path: Optional[str] = None) -> None:
    """
    Save configuration to YAML file.

    Args:
        config: Config object to save
        config_path: Path to save configuration (optional)

    Raises:
        ConfigError: If configuration cannot be saved
    """
    if config_path:
        yaml_path = Path(config_path)
    else:
        yaml_path = Path(config.config_dir) / "config.yaml"

    yaml_path.parent.mkdir(parents=True, exist_ok=True)

    try:
        with open(yaml_path, "w", encoding="utf-8") as f:
            yaml.dump(config.to_dict(), f, default_flow_style=False, sort_keys=False)
    except IOError as e:
        raise ConfigError(f"Failed to save config file: {e}", {"path": str(yaml_path)})
