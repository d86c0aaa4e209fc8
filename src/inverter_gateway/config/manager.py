"""Configuration loading: YAML defaults, user overrides, environment secrets."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, Mapping

import yaml
from pydantic import ValidationError

from inverter_gateway.config.schema import AppConfig

logger = logging.getLogger(__name__)

USER_CONFIG_ENV = "INVERTER_GATEWAY_CONFIG"

# Credentials are usually injected by the deployment rather than kept in YAML
ENV_OVERRIDES: dict[str, tuple[str, ...]] = {
    "INVERTER_GATEWAY_NEW_VENDOR_COOKIE": ("sources", "new_vendor", "session_cookie"),
    "INVERTER_GATEWAY_MIRROR_COOKIE": ("sources", "mirror", "session_cookie"),
    "INVERTER_GATEWAY_MQTT_HOST": ("mqtt", "broker_host"),
    "INVERTER_GATEWAY_MQTT_USERNAME": ("mqtt", "username"),
    "INVERTER_GATEWAY_MQTT_PASSWORD": ("mqtt", "password"),
    "INVERTER_GATEWAY_LOG_LEVEL": ("logging", "level"),
}


class ConfigManager:
    """Builds the AppConfig from layered sources.

    Precedence, lowest first: ``config.defaults.yaml``, the user file
    (``config.yaml`` or ``$INVERTER_GATEWAY_CONFIG``), then the
    environment variables in ``ENV_OVERRIDES``.
    """

    def __init__(
        self,
        defaults_path: Path | None = None,
        user_path: Path | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        self._environ = os.environ if environ is None else environ
        self._defaults_path = defaults_path or Path("config.defaults.yaml")
        self._user_path = user_path or Path(self._environ.get(USER_CONFIG_ENV, "config.yaml"))
        self._config: AppConfig | None = None
        self._raw: dict[str, Any] = {}

    @property
    def config(self) -> AppConfig:
        if self._config is None:
            raise RuntimeError("Config not loaded. Call load() first.")
        return self._config

    def load(self) -> AppConfig:
        defaults = self._load_yaml(self._defaults_path)
        overrides = self._load_yaml(self._user_path)
        merged = self._deep_merge(defaults, overrides)
        merged = self._deep_merge(merged, self._env_overrides())
        try:
            config = AppConfig.model_validate(merged)
        except ValidationError as e:
            for err in e.errors():
                logger.error("Invalid config %s: %s", ".".join(str(p) for p in err["loc"]), err["msg"])
            raise
        self._raw = merged
        self._config = config
        logger.info(
            "Configuration loaded (user file %s)",
            self._user_path if self._user_path.exists() else "absent",
        )
        return config

    def get_raw(self) -> dict[str, Any]:
        return dict(self._raw)

    def _env_overrides(self) -> dict[str, Any]:
        result: dict[str, Any] = {}
        for var, path in ENV_OVERRIDES.items():
            value = self._environ.get(var)
            if not value:
                continue
            node = result
            for key in path[:-1]:
                node = node.setdefault(key, {})
            node[path[-1]] = value
            logger.debug("Config %s set from %s", ".".join(path), var)
        return result

    @staticmethod
    def _load_yaml(path: Path) -> dict[str, Any]:
        if not path.exists():
            return {}
        with open(path) as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}

    @staticmethod
    def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
        """Recursively merge override into base, returning a new dict."""
        result = dict(base)
        for key, value in override.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = ConfigManager._deep_merge(result[key], value)
            else:
                result[key] = value
        return result
