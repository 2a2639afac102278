"""Loading of the server's JSON configuration file."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field, fields
from datetime import timedelta
from fractions import Fraction
from typing import Any

_UNITS_NS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60 * 1_000_000_000,
    "h": 3600 * 1_000_000_000,
}
_COMPONENT = re.compile(r"(\d+\.?\d*|\.\d+)(ns|us|µs|μs|ms|s|m|h)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as ``1h30m`` or ``1.5s``."""
    original = text
    sign = 1
    if text[:1] in ("+", "-"):
        sign = -1 if text[0] == "-" else 1
        text = text[1:]
    if text == "0":
        return timedelta(0)
    if not text:
        raise ValueError(f"invalid duration {original!r}")
    total = Fraction(0)
    position = 0
    while position < len(text):
        match = _COMPONENT.match(text, position)
        if match is None:
            raise ValueError(f"invalid duration {original!r}")
        total += Fraction(match.group(1)) * _UNITS_NS[match.group(2)]
        position = match.end()
    return timedelta(microseconds=sign * int(total / 1000))


def _option(key: str, kind: str, default: Any = None, factory: Any = None) -> Any:
    metadata = {"json": key, "kind": kind}
    if factory is not None:
        return field(default_factory=factory, metadata=metadata)
    return field(default=default, metadata=metadata)


def _convert(kind: str, key: str, value: Any) -> Any:
    if kind == "str" and isinstance(value, str):
        return value
    if kind == "bool" and isinstance(value, bool):
        return value
    if kind == "int" and isinstance(value, int) and not isinstance(value, bool):
        return value
    if kind == "duration" and isinstance(value, str):
        return parse_duration(value)
    if kind == "loggregator" and isinstance(value, dict):
        return _decode(LoggregatorConfig, value)
    raise ValueError(f"invalid value for {key!r}: {value!r}")


def _decode(cls: type, data: Any) -> Any:
    if not isinstance(data, dict):
        raise ValueError(f"expected a JSON object for {cls.__name__}")
    values = {}
    for option in fields(cls):
        key = option.metadata["json"]
        if data.get(key) is not None:
            values[option.name] = _convert(option.metadata["kind"], key, data[key])
    return cls(**values)


@dataclass
class LoggregatorConfig:
    """Settings for the metrics ingress client."""

    use_v2_api: bool = _option("loggregator_use_v2_api", "bool", False)
    api_port: int = _option("loggregator_api_port", "int", 0)
    ca_cert_path: str = _option("loggregator_ca_path", "str", "")
    cert_path: str = _option("loggregator_cert_path", "str", "")
    key_path: str = _option("loggregator_key_path", "str", "")
    job_origin: str = _option("loggregator_job_origin", "str", "")
    source_id: str = _option("loggregator_source_id", "str", "")
    instance_id: str = _option("loggregator_instance_id", "str", "")


@dataclass
class LocketConfig:
    """Server configuration."""

    ca_file: str = _option("ca_file", "str", "")
    cert_file: str = _option("cert_file", "str", "")
    database_connection_string: str = _option("database_connection_string", "str", "")
    max_open_database_connections: int = _option("max_open_database_connections", "int", 0)
    max_database_connection_lifetime: timedelta = _option(
        "max_database_connection_lifetime", "duration", timedelta(0)
    )
    database_driver: str = _option("database_driver", "str", "")
    key_file: str = _option("key_file", "str", "")
    listen_address: str = _option("listen_address", "str", "")
    sql_ca_cert_file: str = _option("sql_ca_cert_file", "str", "")
    sql_enable_identity_verification: bool = _option(
        "sql_enable_identity_verification", "bool", False
    )
    loggregator: LoggregatorConfig = _option("loggregator", "loggregator", factory=LoggregatorConfig)
    report_interval: timedelta = _option("report_interval", "duration", timedelta(0))
    debug_address: str = _option("debug_address", "str", "")
    log_level: str = _option("log_level", "str", "")
    time_format: str = _option("time_format", "str", "")


def load_locket_config(config_path: str) -> LocketConfig:
    """Read and decode the JSON configuration at ``config_path``."""
    with open(config_path, encoding="utf-8") as config_file:
        data = json.load(config_file)
    return _decode(LocketConfig, data)