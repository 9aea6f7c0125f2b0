"""
Configuration loader for the COD confirmation service.
Reads settings from YAML file with environment variable substitution.

    ${VAR}           → value of VAR, empty string when unset
    ${VAR:-default}  → value of VAR, "default" when unset or empty
"""
from __future__ import annotations

import os
import re
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Optional

import yaml


@dataclass
class DatabaseConfig:
    url: str = "sqlite:///./cod_confirm.db"            # postgresql:// | mysql:// | sqlite://
    store_backend: str = "memory"                      # "sql" | "memory"
    echo: bool = False
    pool_size: int = 10                                # ignored for sqlite
    max_overflow: int = 20


@dataclass
class VoiceConfig:
    api_key: str = ""
    phone_number_id: str = ""
    assistant_id: str = ""
    order_assistant_id: str = ""                       # falls back to assistant_id
    base_url: str = "https://api.vapi.ai"
    webhook_base_url: str = ""
    app_url: str = ""
    call_language: str = "hindi"                       # "hindi" | "gujarati"
    timeout_s: float = 30.0

    @property
    def resolved_order_assistant_id(self) -> str:
        return self.order_assistant_id or self.assistant_id


@dataclass
class MessagingConfig:
    account_sid: str = ""
    auth_token: str = ""
    whatsapp_from: str = ""                            # e.g. whatsapp:+14155238886
    base_url: str = "https://api.twilio.com/2010-04-01/Accounts"


@dataclass
class OrdersConfig:
    default_agent_phone: str = ""                      # dial this number instead of the customer's
    default_country_code: str = "+91"
    allowed_prefixes: list[str] = field(default_factory=list)


@dataclass
class RetryConfig:
    max_retries: int = 5
    whatsapp_escalation_threshold: int = 3
    retry_delays_s: dict[str, int] = field(default_factory=lambda: {
        "busy": 300,
        "recall_request": 300,
        "no_response": 300,
    })
    default_retry_delay_s: int = 300
    stale_in_progress_s: int = 40
    stale_queued_s: int = 300
    analysis_grace_s: int = 60         # wait for post-call analysis before giving up on an ended call
    claim_batch_size: int = 25
    customer_call_max_retries: int = 3
    customer_call_retry_delay_s: int = 300

    def delay_for(self, intent: str) -> int:
        """Retry delay in seconds for a retry-triggering intent."""
        return int(self.retry_delays_s.get(str(intent).lower(), self.default_retry_delay_s))


@dataclass
class SchedulerConfig:
    enabled: bool = True
    order_interval_s: float = 30.0
    customer_call_interval_s: float = 60.0
    reminder_interval_s: float = 10.0
    reminder_delay_s: int = 60
    whatsapp_reply_timeout_s: int = 1800               # 0 disables the timeout
    poll_attempts: int = 6
    poll_interval_s: float = 5.0
    dispatcher_max_attempts: int = 3


@dataclass
class Settings:
    app_name: str = "CodConfirm"
    debug: bool = False
    upload_batch_limit: int = 500
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    voice: VoiceConfig = field(default_factory=VoiceConfig)
    messaging: MessagingConfig = field(default_factory=MessagingConfig)
    orders: OrdersConfig = field(default_factory=OrdersConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    scheduler: SchedulerConfig = field(default_factory=SchedulerConfig)


_settings: Optional[Settings] = None

_ENV_PATTERN = re.compile(r'\$\{(\w+)(?::-([^}]*))?\}')


def _substitute_env_vars(value: str) -> str:
    """Replace ${VAR} and ${VAR:-default} patterns with environment values."""
    def replacer(match):
        var_name, default = match.group(1), match.group(2)
        resolved = os.environ.get(var_name, "")
        if not resolved and default is not None:
            return default
        return resolved
    return _ENV_PATTERN.sub(replacer, value)


def _process_values(obj: Any) -> Any:
    """Recursively substitute env vars in all string values."""
    if isinstance(obj, str):
        return _substitute_env_vars(obj)
    elif isinstance(obj, dict):
        return {k: _process_values(v) for k, v in obj.items()}
    elif isinstance(obj, list):
        return [_process_values(v) for v in obj]
    return obj


def _coerce(value: Any, default: Any) -> Any:
    """Cast a substituted YAML value to the type of the dataclass default."""
    if value is None:
        return default
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int) and value != "":
        return int(value)
    if isinstance(default, float) and value != "":
        return float(value)
    if isinstance(default, list) and isinstance(value, str):
        return [v.strip() for v in value.split(",") if v.strip()]
    if value == "" and not isinstance(default, str):
        return default
    return value


def _build(cls, data: Optional[dict[str, Any]]):
    """Instantiate a config dataclass from a raw dict, ignoring unknown keys."""
    instance = cls()
    for f in fields(cls):
        if data and f.name in data:
            current = getattr(instance, f.name)
            if isinstance(current, dict):
                merged = dict(current)
                merged.update(data[f.name] or {})
                setattr(instance, f.name, merged)
            else:
                setattr(instance, f.name, _coerce(data[f.name], current))
    return instance


def load_settings(config_path: str = None) -> Settings:
    """Load settings from YAML file."""
    global _settings

    if config_path is None:
        config_path = os.environ.get(
            "COD_CONFIRM_CONFIG",
            str(Path(__file__).parent / "settings.yaml"),
        )

    settings = Settings()

    if Path(config_path).exists():
        with open(config_path) as f:
            raw = yaml.safe_load(f) or {}
        raw = _process_values(raw)

        settings.app_name = raw.get("app_name", settings.app_name)
        settings.debug = _coerce(raw.get("debug"), settings.debug)
        settings.upload_batch_limit = _coerce(
            raw.get("upload_batch_limit"), settings.upload_batch_limit,
        )
        settings.database = _build(DatabaseConfig, raw.get("database"))
        settings.voice = _build(VoiceConfig, raw.get("voice"))
        settings.messaging = _build(MessagingConfig, raw.get("messaging"))
        settings.orders = _build(OrdersConfig, raw.get("orders"))
        settings.retry = _build(RetryConfig, raw.get("retry"))
        settings.scheduler = _build(SchedulerConfig, raw.get("scheduler"))

    _settings = settings
    return settings


def get_settings() -> Settings:
    """Return cached settings or load from default path."""
    global _settings
    if _settings is None:
        _settings = load_settings()
    return _settings


def reset_settings() -> None:
    """Drop the cached settings (for testing)."""
    global _settings
    _settings = None
