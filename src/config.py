"""Configuration resolution and validation for fifo2mqtt.

The resolved configuration is layered: built-in defaults, then an optional
YAML file, then command-line arguments of the form ``key.path=value`` (or a
bare broker URL). See ``src.merge`` for the merge rules.
"""

import logging
import os
import re
from enum import Enum
from pathlib import Path

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, field_validator

from src.merge import compact, expand_key_path, merge_all

logger = logging.getLogger(__name__)

DEFAULT_NAME = "fifo2mqtt"
NAME_ENV = "FIFO2MQTT_NAME"
CONFIG_PATH_ENV = "FIFO2MQTT_CONFIG_PATH"
DEFAULT_CONFIG_PATH = Path("/etc/fifo2mqtt.yaml")
DEFAULT_SOURCE_PATH = "/var/run/fifo2mqtt/source"
DEFAULT_ARG_KEY = "targets.0.url"
ARG_SEPARATOR = "="
ENCODING = "utf-8"

_URI_RE = re.compile(r"^[A-Za-z][A-Za-z0-9+.\-]*:\S+$")


class ConfigurationError(Exception):
    """Raised when the configuration file cannot be read or does not validate."""


class CloseAction(str, Enum):
    SHUTDOWN = "shutdown"
    IGNORE = "ignore"
    REOPEN = "reopen"


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True)


class SourceSpec(_Frozen):
    path: str = DEFAULT_SOURCE_PATH
    topic_separator: str | None = None
    on_close: CloseAction = CloseAction.SHUTDOWN


class TargetOptions(_Frozen):
    client_id: str | None = None
    username: str | None = None
    password: str | None = None
    ca: str | None = None
    cert_file: str | None = None
    key_file: str | None = None
    insecure: bool = False
    keepalive: int = 60
    protocol: str = "3.1.1"
    qos: int = 0
    retain: bool = False
    clean_session: bool = True

    @field_validator("protocol", mode="before")
    @classmethod
    def validate_protocol(cls, v) -> str:
        v = str(v)
        if v not in ("3.1.1", "5"):
            raise ValueError(f"Unsupported MQTT protocol '{v}'. Must be '3.1.1' or '5'")
        return v

    @field_validator("qos")
    @classmethod
    def validate_qos(cls, v: int) -> int:
        if v not in (0, 1, 2):
            raise ValueError(f"Invalid qos {v}. Must be 0, 1 or 2")
        return v


class TargetSpec(_Frozen):
    url: str
    status_topic: str | None = None
    ca_file: str | None = None
    options: TargetOptions = TargetOptions()


class LoggingConfig(_Frozen):
    level: str = "INFO"
    file: str | None = None

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"Invalid log level '{v}'. Must be one of {allowed}")
        return v_upper


class Configuration(_Frozen):
    sources: list[SourceSpec]
    targets: list[TargetSpec]
    topic_separator: str | None = None
    shutdown_timeout: float | None = 10.0
    logging: LoggingConfig = LoggingConfig()


def default_tree() -> dict:
    return {"sources": [{}], "targets": []}


def is_absolute_uri(value: str) -> bool:
    return bool(_URI_RE.match(value))


class ConfigResolver:
    def __init__(self, log: logging.Logger | None = None):
        self.log = log or logger

    def config_path(self) -> Path:
        return Path(os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)

    def split_arg(self, arg: str) -> dict:
        """Convert one command-line argument into a single-key fragment."""
        index = arg.find(ARG_SEPARATOR)
        if index > 0 and not is_absolute_uri(arg):
            key, value = arg[:index], arg[index + len(ARG_SEPARATOR):]
        else:
            self.log.info("Using unqualified arg %r as URL", arg)
            key, value = DEFAULT_ARG_KEY, arg
        return {key: value}

    def args_tree(self, args) -> dict:
        fragments = []
        for arg in args:
            for key, value in self.split_arg(arg).items():
                fragments.append(expand_key_path(key, value))
        tree = merge_all(fragments)
        self.log.debug("Configuration from args: %r", tree)
        return tree

    def file_tree(self, path: Path) -> dict | None:
        if not path.exists():
            self.log.debug("No configuration file at %s", path)
            return None
        if not path.is_file():
            raise ConfigurationError(f"Configuration path is not a file: {path}")
        try:
            with path.open(encoding=ENCODING) as f:
                raw = yaml.safe_load(f)
        except OSError as e:
            raise ConfigurationError(f"Cannot read configuration file {path}: {e}") from e
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Malformed configuration file {path}: {e}") from e
        if raw is None:
            return {}
        if not isinstance(raw, dict):
            raise ConfigurationError(f"Configuration file {path} must contain a mapping")
        return raw

    def resolve_tree(self, args=(), config_path: Path | None = None) -> dict:
        trees = [default_tree()]
        file_tree = self.file_tree(config_path or self.config_path())
        if file_tree is not None:
            trees.append(file_tree)
        if args:
            trees.append(self.args_tree(args))
        return compact(merge_all(trees))

    def resolve(self, args=(), config_path: Path | None = None) -> Configuration:
        tree = self.resolve_tree(args, config_path)
        try:
            config = Configuration.model_validate(tree)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e
        self.log.debug("Configuration: %r", config)
        return config


def load_config(args=(), config_path: Path | None = None) -> Configuration:
    return ConfigResolver().resolve(args, config_path)
