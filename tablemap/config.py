from __future__ import annotations

# tablemap/config.py
import os
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from .errors import ConfigError

# 配置文件查找顺序：显式路径 > ./config/config.yaml > ./config.yaml；都不存在时使用默认值
DEFAULT_CONFIG_PATHS = (
    os.path.join("config", "config.yaml"),
    "config.yaml",
)


class DatabaseConfig(BaseModel):
    dsn: str = ""
    test_dsn: str = ""
    max_idle_conns: int = Field(default=4, ge=1)
    busy_timeout: float = Field(default=5.0, ge=0)


class NamingConfig(BaseModel):
    table_prefix: str = ""
    singular_table: bool = False
    # shape name -> table name
    table_names: dict[str, str] = Field(default_factory=dict)


class OrmConfig(BaseModel):
    skip_default_transaction: bool = False
    # 0 means "everything in one INSERT"
    create_batch_size: int = Field(default=0, ge=0)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    slow_threshold_ms: int = Field(default=200, ge=0)
    trace_table: bool = False


class Settings(BaseModel):
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    naming: NamingConfig = Field(default_factory=NamingConfig)
    orm: OrmConfig = Field(default_factory=OrmConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @classmethod
    def from_mapping(cls, data: dict | None) -> "Settings":
        try:
            return cls.model_validate(data or {})
        except ValidationError as e:
            raise ConfigError(f"invalid configuration: {e}") from e


def _find_config(path: Optional[str]) -> Optional[str]:
    if path:
        if not os.path.exists(path):
            raise ConfigError(f"config file not found: {path}")
        return path
    for cand in DEFAULT_CONFIG_PATHS:
        if os.path.exists(cand):
            return cand
    return None


def load_settings(path: str | None = None) -> Settings:
    """Read settings from YAML. Missing default files fall back to defaults."""
    cfg_path = _find_config(path)
    if cfg_path is None:
        return Settings()
    try:
        with open(cfg_path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"cannot parse {cfg_path}: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"{cfg_path}: top level must be a mapping")
    return Settings.from_mapping(data)
