"""Pydantic configuration models for all gateway settings."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class HttpSourceConfig(BaseModel):
    enabled: bool = True
    base_url: str
    timeout_seconds: float = Field(15.0, gt=0)
    # Pre-obtained portal session (login is handled outside the gateway)
    session_cookie: str = ""
    user_agent: str = "Mozilla/5.0 (Linux; Android 10) AppleWebKit/537.36"


class NewVendorSourceConfig(HttpSourceConfig):
    base_url: str = "https://lehtapi.suntcn.com"
    session_cookie_name: str = "SHIRO_SESSION_ID"


class MirrorSourceConfig(HttpSourceConfig):
    base_url: str = "https://lumentree.net"


class LegacySourceConfig(HttpSourceConfig):
    base_url: str = "http://lesvr.suntcn.com"
    timeout_seconds: float = Field(20.0, gt=0)


class SourcesConfig(BaseModel):
    new_vendor: NewVendorSourceConfig = NewVendorSourceConfig()
    mirror: MirrorSourceConfig = MirrorSourceConfig()
    legacy: LegacySourceConfig = LegacySourceConfig()


class MQTTConfig(BaseModel):
    enabled: bool = True
    broker_host: str = "lesvr.suntcn.com"
    broker_port: int = 1886
    username: str = ""
    password: str = ""
    client_id_prefix: str = "inverter_gateway"
    # {device_id} is substituted per device
    request_topic: str = "listenApp/{device_id}"
    report_topic: str = "reportApp/{device_id}"
    keepalive_seconds: int = 60
    reconnect_initial_seconds: float = 1.0
    reconnect_max_seconds: float = 30.0
    disconnect_grace_seconds: float = Field(5.0, gt=0)


class LiveConfig(BaseModel):
    poll_cycle_seconds: float = Field(10.0, gt=0)
    inter_device_delay_seconds: float = Field(1.0, ge=0)
    max_sample_age_seconds: float = Field(300.0, gt=0)
    # Canonical sign of battery_power_w in every RealtimeSample
    battery_power_sign: Literal["discharge_positive", "charge_positive"] = "discharge_positive"


class ReconcileConfig(BaseModel):
    day_energy_priority: list[str] = Field(default_factory=lambda: ["new_vendor", "legacy"])
    soc_priority: list[str] = Field(default_factory=lambda: ["new_vendor", "mirror"])
    realtime_priority: list[str] = Field(default_factory=lambda: ["mirror", "live"])
    wait_poll_interval_seconds: float = Field(1.0, gt=0)
    wait_max_attempts: int = Field(6, ge=0)
    # 0 = no hard ceiling beyond per-source timeouts + wait cap
    request_deadline_seconds: float = Field(0.0, ge=0)
    max_summary_days: int = Field(92, ge=1)
    default_device_type: str = "Hybrid Inverter"
    timezone: str = "Asia/Ho_Chi_Minh"


class DashboardConfig(BaseModel):
    host: str = "0.0.0.0"
    port: int = 8080
    sse_keepalive_seconds: float = Field(15.0, gt=0)
    cors_origins: list[str] = Field(default_factory=list)


class ResilienceConfig(BaseModel):
    max_consecutive_failures: int = Field(3, ge=1)


class LoggingConfig(BaseModel):
    level: str = "INFO"
    format: str = "json"
    file: str = ""


class AppConfig(BaseModel):
    """Root configuration model containing all gateway settings."""

    sources: SourcesConfig = SourcesConfig()
    mqtt: MQTTConfig = MQTTConfig()
    live: LiveConfig = LiveConfig()
    reconcile: ReconcileConfig = ReconcileConfig()
    dashboard: DashboardConfig = DashboardConfig()
    resilience: ResilienceConfig = ResilienceConfig()
    logging: LoggingConfig = LoggingConfig()
