"""
JSON config loading.

The config file holds one selector key (`env` or `app_env`) and any number of
named environment blocks:

    {
      "env": "local",
      "local": {"port": 3000, "database": {...}, "log": {...}, "auth": {...}},
      "live": {...}
    }

Every block is validated strictly with pydantic (unknown keys and wrong types are errors),
so a bad file fails startup instead of the first request that reads it.
The file path comes from APP_CONFIG.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, StrictBool, StrictFloat, StrictInt, StrictStr, ValidationError

from .errors import ConfigError

DEFAULT_CONFIG_PATH = "config.json"
SELECTOR_KEYS = ("env", "app_env")

_MISSING = object()


class _StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)


class DatabaseConfig(_StrictModel):
    host: StrictStr
    user: StrictStr
    password: StrictStr
    database: StrictStr
    port: StrictInt = 5432
    min_size: StrictInt = Field(default=1, ge=0)
    max_size: StrictInt = Field(default=10, ge=1)
    # Per-query deadline in seconds.
    query_timeout: StrictFloat = Field(default=30.0, gt=0)


class LogConfig(_StrictModel):
    directory: StrictStr
    level: StrictStr = "INFO"


class AuthConfig(_StrictModel):
    jwt_secret: StrictStr = Field(..., min_length=1)
    jwt_algorithm: StrictStr = "HS256"
    token_expire_minutes: StrictInt = Field(default=60, ge=1)


class EnvironmentConfig(_StrictModel):
    app_name: StrictStr = "rest-api"
    host: StrictStr = "0.0.0.0"
    url: StrictStr | None = None
    port: StrictInt = Field(..., ge=0, le=65535)
    production: StrictBool = False
    cors_origins: list[StrictStr] = Field(default_factory=list)
    database: DatabaseConfig
    log: LogConfig
    auth: AuthConfig


class Settings:
    """
    The active environment block plus dotted-path lookups into it.
    """

    def __init__(self, environment: str, config: EnvironmentConfig) -> None:
        self.environment = environment
        self.config = config
        self._tree = config.model_dump()

    @property
    def database(self) -> DatabaseConfig:
        return self.config.database

    @property
    def log(self) -> LogConfig:
        return self.config.log

    @property
    def auth(self) -> AuthConfig:
        return self.config.auth

    @property
    def production(self) -> bool:
        return self.config.production

    def get(self, key_path: str | None = None, default: Any = _MISSING) -> Any:
        """
        Look up `a.b.c` (case-insensitive) in the active block.

        Without a path the whole block is returned as a dict. An unknown path
        raises ConfigError unless `default` is given.
        """
        if not key_path:
            return self._tree

        result: Any = self._tree
        for key in key_path.split("."):
            key = key.strip().lower()
            if isinstance(result, dict) and key in result:
                result = result[key]
                continue
            if default is not _MISSING:
                return default
            raise ConfigError(f"'{key}' is invalid key for config.")
        return result


def config_path() -> str:
    return os.environ.get("APP_CONFIG", DEFAULT_CONFIG_PATH).strip() or DEFAULT_CONFIG_PATH


def _format_validation_error(block: str, exc: ValidationError) -> str:
    problems = []
    for err in exc.errors():
        location = ".".join([block, *(str(part) for part in err["loc"])])
        if err["type"] == "extra_forbidden":
            problems.append(f'Invalid key "{location}" in configuration.')
        else:
            problems.append(f'Invalid value for key "{location}": {err["msg"]}.')
    return " ".join(problems)


def parse_settings(raw: Any) -> Settings:
    if not isinstance(raw, dict):
        raise ConfigError("Config root must be a JSON object.")

    selectors = [key for key in SELECTOR_KEYS if key in raw]
    if len(selectors) != 1:
        raise ConfigError('Config must contain exactly one of "env" or "app_env".')
    selector = selectors[0]
    environment = raw[selector]
    if not isinstance(environment, str) or not environment.strip():
        raise ConfigError(f'Invalid type for key "{selector}". Expected a non-empty string.')

    blocks: dict[str, EnvironmentConfig] = {}
    for name, block in raw.items():
        if name == selector:
            continue
        if not isinstance(block, dict):
            raise ConfigError(f'Invalid type for key "{name}". Expected an environment object.')
        try:
            blocks[name] = EnvironmentConfig.model_validate(block)
        except ValidationError as exc:
            raise ConfigError(_format_validation_error(name, exc)) from exc

    if environment not in blocks:
        raise ConfigError(f'Environment "{environment}" is not defined in configuration.')
    return Settings(environment, blocks[environment])


def load_settings(path: str | os.PathLike[str] | None = None) -> Settings:
    file_path = Path(path or config_path())
    if not file_path.is_file():
        raise ConfigError(f"Config file not found at: {file_path}")

    try:
        raw = json.loads(file_path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {file_path} is not valid JSON: {exc.msg}.") from exc
    return parse_settings(raw)
