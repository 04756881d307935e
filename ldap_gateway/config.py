# -*- coding: utf-8 -*-
# Copyright 2016 OpenMarket Ltd
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

import enum
import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple

import yaml

from ldap_gateway.errors import ConfigError

logger = logging.getLogger(__name__)

DEFAULT_LISTENERS: Tuple[str, ...] = ("tcp:8080",)
DEFAULT_CONNECT_TIMEOUT = 10.0
DEFAULT_STORE_FORMAT = "PEM"

_ENV_TOKEN_RE = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-(.*?))?\}")

_SSL_KEYS = (
    "trust_all",
    "truststore_path",
    "truststore_password",
    "truststore_type",
    "hostname_verification",
)


class TrustMode(enum.Enum):
    TRUST_ALL = "trust-all"
    STORE_BASED = "store-based"


@dataclass(frozen=True)
class TrustPolicy:
    mode: TrustMode = TrustMode.TRUST_ALL
    store_path: Optional[str] = None
    store_password: Optional[str] = field(default=None, repr=False)
    store_format: str = DEFAULT_STORE_FORMAT
    verify_hostname: bool = True


@dataclass(frozen=True)
class GatewayConfig:
    trust: TrustPolicy = TrustPolicy()
    listeners: Tuple[str, ...] = DEFAULT_LISTENERS
    log_level: str = "INFO"
    connect_timeout: float = DEFAULT_CONNECT_TIMEOUT


def parse_config(config: Optional[Dict[str, Any]]) -> GatewayConfig:
    """Build a GatewayConfig from the parsed YAML document.

    Every key is optional. The ``ssl`` section follows the layout of the
    ``ldap.ssl`` properties older deployments already carry.
    """
    config = config or {}
    if not isinstance(config, dict):
        raise ConfigError("Gateway config must be a mapping")

    ssl_config = config.get("ssl") or {}
    if not isinstance(ssl_config, dict):
        raise ConfigError("'ssl' must be a mapping")
    unknown = sorted(set(ssl_config) - set(_SSL_KEYS))
    if unknown:
        raise ConfigError(
            "Unknown keys in 'ssl' config: {}".format(", ".join(unknown))
        )

    trust_all = _require_type(ssl_config, "trust_all", bool, True)
    trust = TrustPolicy(
        mode=TrustMode.TRUST_ALL if trust_all else TrustMode.STORE_BASED,
        store_path=_require_type(ssl_config, "truststore_path", str, None) or None,
        store_password=_require_type(ssl_config, "truststore_password", str, None),
        store_format=_require_type(
            ssl_config, "truststore_type", str, DEFAULT_STORE_FORMAT
        ).upper(),
        verify_hostname=_require_type(
            ssl_config, "hostname_verification", bool, True
        ),
    )

    listeners = config.get("listeners", list(DEFAULT_LISTENERS))
    if isinstance(listeners, str):
        listeners = [listeners]
    if not listeners or not all(isinstance(entry, str) for entry in listeners):
        raise ConfigError("'listeners' must be a non-empty list of endpoint strings")

    log_level = _require_type(config, "log_level", str, "INFO").upper()
    if not isinstance(logging.getLevelName(log_level), int):
        raise ConfigError("Unknown log_level: {}".format(log_level))

    connect_timeout = config.get("connect_timeout", DEFAULT_CONNECT_TIMEOUT)
    if isinstance(connect_timeout, bool) or not isinstance(
        connect_timeout, (int, float)
    ):
        raise ConfigError("'connect_timeout' must be a number of seconds")
    if connect_timeout <= 0:
        raise ConfigError("'connect_timeout' must be positive")

    return GatewayConfig(
        trust=trust,
        listeners=tuple(listeners),
        log_level=log_level,
        connect_timeout=float(connect_timeout),
    )


def load_config(path: str) -> GatewayConfig:
    if not os.path.exists(path):
        raise ConfigError("Config file does not exist: {}".format(path))
    with open(path, "r", encoding="utf-8") as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError("Unable to parse {}: {}".format(path, e)) from e
    logger.debug("Loaded gateway config from %s", path)
    return parse_config(_interpolate_env(raw))


def _require_type(
    config: Dict[str, Any], key: str, expected: type, default: Any
) -> Any:
    value = config.get(key)
    if value is None:
        return default
    if isinstance(value, expected):
        return value
    raise ConfigError(
        "'{key}' must be of type {type}, got {value!r}".format(
            key=key, type=expected.__name__, value=value
        )
    )


def _interpolate_env(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _interpolate_env(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_interpolate_env(item) for item in value]
    if isinstance(value, str) and "${" in value:
        return _ENV_TOKEN_RE.sub(_replace_env_token, value)
    return value


def _replace_env_token(match: "re.Match") -> str:
    name, default = match.group(1), match.group(2)
    resolved = os.environ.get(name)
    if resolved is not None:
        return resolved
    if default is not None:
        return default
    raise ConfigError(
        "Missing environment variable '{}' referenced by '{}'".format(
            name, match.group(0)
        )
    )
