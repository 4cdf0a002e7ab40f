"""
Relay Configuration Manager

This module owns the default configuration document and the typed view of it
that the relay components receive.

- config.yml is created from DEFAULT_CONFIG_CONTENT on first run
- keys added in newer versions are merged into an existing file without
  touching the values the operator already set (comments are preserved)
- secrets can be overridden from the environment
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

from ruamel.yaml import YAML

import utils.func as func

log = logging.getLogger(__name__)

# Set up ruamel.yaml in round-trip mode (preserves order and comments)
yaml = YAML(typ='rt')
yaml.preserve_quotes = True
yaml.encoding = "utf-8"

CONFIG_VERSION = "1.0.0"

DEFAULT_CONFIG_CONTENT = r"""version: "1.0.0"
# RELAY CONFIGURATION
# Secrets can also be provided through TELEGRAM_BOT_TOKEN, DIFY_API_URL and DIFY_API_TOKEN.

Telegram:
  bot_token: ""
  api_base: "https://api.telegram.org"
  request_timeout: 30.0

Dify:
  api_url: ""          # e.g. https://api.dify.ai/v1
  api_token: ""
  user_agent: "RelayBot/1.0"

# Relay behaviour for one inbound message
Relay:
  ai_timeout: 120.0            # Hard deadline for the whole AI call (seconds)
  ai_retry_attempts: 2
  ai_retry_delay: 1.0          # Base delay, doubles on every retry
  max_query_length: 4000
  typing_interval: 5.0         # Seconds between "typing..." indicators
  dedupe_inflight: true        # Drop a redelivered update that is still being processed
  default_user_name: "User"
  default_business_user_name: "Customer"
  business_message_format: "Customer: {name}, Message: {message}"
  media_placeholder: "Media message"
  rate_limit_notice: ""        # Sent to throttled users when not empty

Sessions:
  ttl_hours: 24
  max_sessions: 10000
  cleanup_interval_minutes: 60

RateLimit:
  window_seconds: 60
  max_requests: 20

Delivery:
  caption_limit: 1024
  media_group_size: 10
  media_delay: 0.5             # Pause before each extra media call
  retry_attempts: 2            # Attempts for transient Telegram failures
  retry_delay: 1.0

# Cosmetic decoration of section headers found in AI answers
Formatting:
  section_headers: {}          # e.g. {"Details:": "📋", "Allergens:": "⚠️"}

# User-facing texts
Messages:
  fallback: "😔 Sorry, I'm having a technical problem right now. Please try again in a few minutes."
  completion: "✅ Done!"
  success: "✅ *Your request was completed successfully!*"
  timeout: "⏳ The response took too long. Please try again."
  upstream_error: "😔 Sorry, I couldn't get an answer right now. Please try again later."
  not_understood: "🤔 *I didn't quite get that, could you say it again?*"

Webhook:
  host: "0.0.0.0"
  port: 8080
  path: "/webhook"
  background_processing: false # Acknowledge Telegram first, then process

Options:
  debug_mode: false
  log_file: "app.log"
"""

ENV_OVERRIDES = {
    "TELEGRAM_BOT_TOKEN": ("Telegram", "bot_token"),
    "DIFY_API_URL": ("Dify", "api_url"),
    "DIFY_API_TOKEN": ("Dify", "api_token"),
}


@dataclass
class MessagesConfig:
    """User-facing texts."""
    fallback: str = "😔 Sorry, I'm having a technical problem right now. Please try again in a few minutes."
    completion: str = "✅ Done!"
    success: str = "✅ *Your request was completed successfully!*"
    timeout: str = "⏳ The response took too long. Please try again."
    upstream_error: str = "😔 Sorry, I couldn't get an answer right now. Please try again later."
    not_understood: str = "🤔 *I didn't quite get that, could you say it again?*"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'MessagesConfig':
        defaults = cls()
        return cls(**{
            name: str(data.get(name) or getattr(defaults, name))
            for name in defaults.__dataclass_fields__
        })


@dataclass
class RelayConfig:
    """Typed view of config.yml handed to the relay components."""
    telegram_token: str = ""
    telegram_api_base: str = "https://api.telegram.org"
    telegram_timeout: float = 30.0

    dify_api_url: str = ""
    dify_api_token: str = ""
    user_agent: str = "RelayBot/1.0"

    ai_timeout: float = 120.0
    ai_retry_attempts: int = 2
    ai_retry_delay: float = 1.0
    max_query_length: int = 4000
    typing_interval: float = 5.0
    dedupe_inflight: bool = True
    default_user_name: str = "User"
    default_business_user_name: str = "Customer"
    business_message_format: str = "Customer: {name}, Message: {message}"
    media_placeholder: str = "Media message"
    rate_limit_notice: str = ""

    session_ttl: float = 24 * 60 * 60
    max_sessions: int = 10000
    cleanup_interval: float = 60 * 60

    rate_window: float = 60.0
    rate_max_requests: int = 20

    caption_limit: int = 1024
    media_group_size: int = 10
    media_delay: float = 0.5
    delivery_retry_attempts: int = 2
    delivery_retry_delay: float = 1.0

    section_headers: Dict[str, str] = field(default_factory=dict)
    messages: MessagesConfig = field(default_factory=MessagesConfig)

    webhook_host: str = "0.0.0.0"
    webhook_port: int = 8080
    webhook_path: str = "/webhook"
    background_processing: bool = False

    debug_mode: bool = False
    log_file: Optional[str] = "app.log"

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'RelayConfig':
        """Create from the plain dictionary loaded from config.yml."""
        telegram = data.get("Telegram") or {}
        dify = data.get("Dify") or {}
        relay = data.get("Relay") or {}
        sessions = data.get("Sessions") or {}
        rate = data.get("RateLimit") or {}
        delivery = data.get("Delivery") or {}
        formatting = data.get("Formatting") or {}
        webhook = data.get("Webhook") or {}
        options = data.get("Options") or {}

        return cls(
            telegram_token=str(telegram.get("bot_token") or ""),
            telegram_api_base=str(telegram.get("api_base") or "https://api.telegram.org").rstrip("/"),
            telegram_timeout=float(telegram.get("request_timeout", 30.0)),
            dify_api_url=str(dify.get("api_url") or "").rstrip("/"),
            dify_api_token=str(dify.get("api_token") or ""),
            user_agent=str(dify.get("user_agent") or "RelayBot/1.0"),
            ai_timeout=float(relay.get("ai_timeout", 120.0)),
            ai_retry_attempts=int(relay.get("ai_retry_attempts", 2)),
            ai_retry_delay=float(relay.get("ai_retry_delay", 1.0)),
            max_query_length=int(relay.get("max_query_length", 4000)),
            typing_interval=float(relay.get("typing_interval", 5.0)),
            dedupe_inflight=bool(relay.get("dedupe_inflight", True)),
            default_user_name=str(relay.get("default_user_name") or "User"),
            default_business_user_name=str(relay.get("default_business_user_name") or "Customer"),
            business_message_format=str(
                relay.get("business_message_format") or "Customer: {name}, Message: {message}"
            ),
            media_placeholder=str(relay.get("media_placeholder") or "Media message"),
            rate_limit_notice=str(relay.get("rate_limit_notice") or ""),
            session_ttl=float(sessions.get("ttl_hours", 24)) * 60 * 60,
            max_sessions=int(sessions.get("max_sessions", 10000)),
            cleanup_interval=float(sessions.get("cleanup_interval_minutes", 60)) * 60,
            rate_window=float(rate.get("window_seconds", 60)),
            rate_max_requests=int(rate.get("max_requests", 20)),
            caption_limit=int(delivery.get("caption_limit", 1024)),
            media_group_size=int(delivery.get("media_group_size", 10)),
            media_delay=float(delivery.get("media_delay", 0.5)),
            delivery_retry_attempts=int(delivery.get("retry_attempts", 2)),
            delivery_retry_delay=float(delivery.get("retry_delay", 1.0)),
            section_headers=dict(formatting.get("section_headers") or {}),
            messages=MessagesConfig.from_dict(data.get("Messages") or {}),
            webhook_host=str(webhook.get("host") or "0.0.0.0"),
            webhook_port=int(webhook.get("port", 8080)),
            webhook_path=str(webhook.get("path") or "/webhook"),
            background_processing=bool(webhook.get("background_processing", False)),
            debug_mode=bool(options.get("debug_mode", False)),
            log_file=options.get("log_file", "app.log") or None,
        )

    def missing_credentials(self) -> List[str]:
        """Names of the environment variables whose values are still missing."""
        missing = []
        if not self.telegram_token:
            missing.append("TELEGRAM_BOT_TOKEN")
        if not self.dify_api_url:
            missing.append("DIFY_API_URL")
        if not self.dify_api_token:
            missing.append("DIFY_API_TOKEN")
        return missing


def _merge_missing(target, defaults) -> int:
    """Copy keys missing from target out of defaults, recursively. Returns count added."""
    added = 0
    for key, value in defaults.items():
        if key not in target:
            target[key] = value
            added += 1
        elif isinstance(value, dict) and isinstance(target[key], dict) and value:
            added += _merge_missing(target[key], value)
    return added


def initialize_config_file(path: str = "config.yml") -> None:
    """
    Create config.yml with the default content, or add keys that a newer
    version introduced. Existing values are never overwritten.

    Args:
        path: Path of the configuration file
    """
    config_path = Path(path)
    defaults = yaml.load(DEFAULT_CONFIG_CONTENT)

    if not config_path.exists():
        log.info("Creating default configuration file %s", config_path)
        with open(config_path, "w", encoding="utf-8") as f:
            yaml.dump(defaults, f)
        return

    with open(config_path, "r", encoding="utf-8") as f:
        current = yaml.load(f)

    if current is None:
        current = defaults
    elif current.get("version") == CONFIG_VERSION:
        return

    added = _merge_missing(current, defaults)
    current["version"] = CONFIG_VERSION
    with open(config_path, "w", encoding="utf-8") as f:
        yaml.dump(current, f)
    log.info(
        "Updated %s to version %s (%d new keys)", config_path, CONFIG_VERSION, added
    )


def apply_env_overrides(data: Dict[str, Any], environ: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
    """Override secrets in the loaded config with environment variables."""
    environ = os.environ if environ is None else environ
    for variable, (section, key) in ENV_OVERRIDES.items():
        value = environ.get(variable)
        if value:
            data.setdefault(section, {})
            if data[section] is None:
                data[section] = {}
            data[section][key] = value
    return data


def load_relay_config(path: str = "config.yml", create: bool = True) -> RelayConfig:
    """
    Load the relay configuration.

    Args:
        path: Path of config.yml
        create: Create or upgrade the file before loading it

    Returns:
        RelayConfig built from the file and the environment
    """
    if create:
        initialize_config_file(path)
    data = apply_env_overrides(func.load_config(path))
    return RelayConfig.from_dict(data)
