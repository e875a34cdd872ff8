"""Server configuration: defaults, environment overrides and YAML files."""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import re
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

log = logging.getLogger(__name__)

DTM_METRICS_PORT = 8889
MYSQL = "mysql"
REDIS = "redis"
BOLTDB = "boltdb"
POSTGRES = "postgres"


class ConfigError(ValueError):
    """Raised when the configuration cannot be loaded or is invalid."""


def _text(yaml_name: str, default: str = "") -> Any:
    return field(default=default, metadata={"yaml": yaml_name, "default": default})


def _number(yaml_name: str, default: int = 0) -> Any:
    return field(default=default, metadata={"yaml": yaml_name, "default": str(default)})


def _section(yaml_name: str, factory: Any) -> Any:
    return field(default_factory=factory, metadata={"yaml": yaml_name, "default": ""})


@dataclass
class MicroService:
    """Settings for a gRPC based micro-service registry."""

    driver: str = _text("Driver", "default")
    target: str = _text("Target")
    end_point: str = _text("EndPoint")


@dataclass
class HTTPMicroService:
    """Settings for an HTTP based micro-service registry."""

    driver: str = _text("Driver", "default")
    registry_type: str = _text("RegistryType")
    registry_address: str = _text("RegistryAddress")
    registry_options: str = _text("RegistryOptions", "{}")
    target: str = _text("Target")
    end_point: str = _text("EndPoint")


@dataclass
class Log:
    """Log output settings."""

    outputs: str = _text("Outputs", "stderr")
    rotation_enable: int = _number("RotationEnable", 0)
    rotation_config_json: str = _text("RotationConfigJSON", "{}")


@dataclass
class StoreConfig:
    """Storage backend settings."""

    driver: str = _text("Driver", BOLTDB)
    host: str = _text("Host")
    port: int = _number("Port")
    user: str = _text("User")
    password: str = _text("Password")
    db: str = _text("Db", "dtm")
    schema: str = _text("Schema", "public")
    max_open_conns: int = _number("MaxOpenConns", 500)
    max_idle_conns: int = _number("MaxIdleConns", 500)
    conn_max_life_time: int = _number("ConnMaxLifeTime", 5)
    # Transaction data expires after 7 days (redis/boltdb only).
    data_expire: int = _number("DataExpire", 604800)
    # Finished transaction data expires after 1 day (redis only).
    finished_data_expire: int = _number("FinishedDataExpire", 86400)
    # Keeps all keys in one cluster slot.
    redis_prefix: str = _text("RedisPrefix", "{a}")

    def is_db(self) -> bool:
        """True when the driver is a relational database."""
        return self.driver in (MYSQL, POSTGRES)


@dataclass
class Config:
    """Configuration of the transaction server."""

    store: StoreConfig = _section("Store", StoreConfig)
    trans_cron_interval: int = _number("TransCronInterval", 3)
    timeout_to_fail: int = _number("TimeoutToFail", 35)
    retry_interval: int = _number("RetryInterval", 10)
    request_timeout: int = _number("RequestTimeout", 3)
    http_port: int = _number("HttpPort", 36789)
    grpc_port: int = _number("GrpcPort", 36790)
    json_rpc_port: int = _number("JsonRpcPort", 36791)
    micro_service: MicroService = _section("MicroService", MicroService)
    http_micro_service: HTTPMicroService = _section("HttpMicroService", HTTPMicroService)
    update_branch_sync: int = _number("UpdateBranchSync")
    update_branch_async_goroutine_num: int = _number("UpdateBranchAsyncGoroutineNum", 1)
    log_level: str = _text("LogLevel", "info")
    log: Log = _section("Log", Log)
    time_zone_offset: str = _text("TimeZoneOffset")
    config_update_interval: int = _number("ConfigUpdateInterval", 3)
    alert_retry_limit: int = _number("AlertRetryLimit", 3)
    alert_web_hook: str = _text("AlertWebHook")


_LAST_CAP = re.compile(r"([A-Z])([A-Z][a-z])")
_FIRST_CAP = re.compile(r"([a-z])([A-Z]+)")
_INTEGER = re.compile(r"[+-]?\d+")


def to_underscore_upper(key: str) -> str:
    """Turn a key such as ``MicroService_Driver`` into ``MICRO_SERVICE_DRIVER``."""
    key = key.strip("_")
    key = _LAST_CAP.sub(r"\1_\2", key)
    key = _FIRST_CAP.sub(r"\1_\2", key)
    return key.upper()


def _to_int(raw: str, name: str) -> int:
    if not _INTEGER.fullmatch(raw):
        raise ConfigError(f"invalid integer for {name}: {raw!r}")
    return int(raw)


def load_from_env(prefix: str, conf: Any) -> None:
    """Fill every field of ``conf`` from the environment, or from its default."""
    if not dataclasses.is_dataclass(conf) or isinstance(conf, type):
        raise TypeError(f"should be a configuration instance, but {type(conf).__name__} found")
    _load_section(prefix, conf)


def _load_section(prefix: str, section: Any) -> None:
    for f in dataclasses.fields(section):
        name = f"{prefix}_{f.metadata['yaml']}"
        current = getattr(section, f.name)
        if dataclasses.is_dataclass(current):
            _load_section(name, current)
            continue
        raw = os.environ.get(to_underscore_upper(name), "") or f.metadata["default"]
        if isinstance(current, bool):
            raise TypeError(f"unsupported type: {type(current).__name__}")
        if isinstance(current, str):
            setattr(section, f.name, raw)
        elif isinstance(current, int):
            setattr(section, f.name, _to_int(raw or "0", name))
        else:
            raise TypeError(f"unsupported type: {type(current).__name__}")


def _scalar_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _apply_yaml(section: Any, data: Mapping[str, Any]) -> None:
    for f in dataclasses.fields(section):
        key = f.metadata["yaml"]
        if key not in data or data[key] is None:
            continue
        value = data[key]
        current = getattr(section, f.name)
        if dataclasses.is_dataclass(current):
            if not isinstance(value, Mapping):
                raise ConfigError(f"{key}: expected a mapping")
            _apply_yaml(current, value)
        elif isinstance(current, str):
            if isinstance(value, (Mapping, list)):
                raise ConfigError(f"{key}: expected a scalar")
            setattr(section, f.name, _scalar_text(value))
        else:
            if isinstance(value, bool) or not isinstance(value, int):
                raise ConfigError(f"{key}: expected an integer, got {value!r}")
            setattr(section, f.name, value)


def check_config(conf: Config) -> None:
    """Raise ConfigError when the configuration is not usable."""
    if conf.retry_interval < 10:
        raise ConfigError("RetryInterval should not be less than 10")
    if conf.timeout_to_fail < conf.retry_interval:
        raise ConfigError("TimeoutToFail should not be less than RetryInterval")
    store = conf.store
    if store.driver in (MYSQL, POSTGRES):
        if store.host == "":
            raise ConfigError("Db host not valid ")
        if store.port == 0:
            raise ConfigError("Db port not valid ")
        if store.user == "":
            raise ConfigError("Db user not valid ")
        if store.schema == "":
            raise ConfigError("Postgres schema not valid")
    elif store.driver == REDIS:
        if store.host == "":
            raise ConfigError("Redis host not valid")
        if store.port == 0:
            raise ConfigError("Redis port not valid")


def must_load_config(conf_file: str = "") -> Config:
    """Load the configuration from the environment and an optional YAML file."""
    conf = Config()
    load_from_env("", conf)
    if conf_file:
        try:
            text = Path(conf_file).read_text(encoding="utf-8")
        except OSError as exc:
            raise ConfigError(f"cannot read config file {conf_file}: {exc}") from exc
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise ConfigError(f"cannot parse config file {conf_file}: {exc}") from exc
        if data is not None:
            if not isinstance(data, Mapping):
                raise ConfigError(f"config file {conf_file} must hold a mapping")
            _apply_yaml(conf, data)
    log.info(
        "config file: %s loaded config is: \n%s",
        conf_file,
        json.dumps(dataclasses.asdict(conf), indent=2),
    )
    check_config(conf)
    return conf