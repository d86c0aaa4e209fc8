"""Configuration management for Inverter Gateway."""

from inverter_gateway.config.schema import AppConfig
from inverter_gateway.config.manager import ConfigManager

__all__ = ["AppConfig", "ConfigManager"]
