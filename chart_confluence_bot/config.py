from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any, Dict, List, Optional
import os
import yaml


def _env_override(value: Any, env_key: str) -> Any:
    env_val = os.getenv(env_key)
    if env_val is None:
        return value
    # basic parsing
    if isinstance(value, bool):
        return env_val.strip().lower() in ("1", "true", "yes", "y", "on")
    if isinstance(value, int):
        try:
            return int(env_val)
        except ValueError:
            return value
    if isinstance(value, float):
        try:
            return float(env_val)
        except ValueError:
            return value
    return env_val


def _env_list(env_key: str) -> Optional[List[str]]:
    raw = os.getenv(env_key)
    if not raw:
        return None
    return [x.strip() for x in raw.split(",") if x.strip()]


@dataclass(frozen=True)
class SignalSettings:
    """Per-user signal settings, passed into the decision engine on every call."""

    min_confidence_threshold: float = 0.75
    risk_reward_ratio: float = 5.0
    # stop distance as a fraction of entry when no stop structure exists
    fallback_stop_pct: float = 0.002
    capture_interval_seconds: int = 60
    alert_sound_enabled: bool = True
    alert_toast_enabled: bool = True

    def validate(self) -> None:
        errs = []
        if not 0.0 <= self.min_confidence_threshold <= 1.0:
            errs.append("min_confidence_threshold must be within [0, 1]")
        if self.risk_reward_ratio <= 0:
            errs.append("risk_reward_ratio must be > 0")
        if not 0.0 < self.fallback_stop_pct < 1.0:
            errs.append("fallback_stop_pct must be within (0, 1)")
        if self.capture_interval_seconds <= 0:
            errs.append("capture_interval_seconds must be > 0")
        if errs:
            raise ValueError("Invalid signal settings: " + "; ".join(errs))

    def merged(self, overrides: Optional[Dict[str, Any]]) -> "SignalSettings":
        """Apply a stored user_settings row on top of these defaults (unknown/None keys ignored)."""
        if not overrides:
            return self
        known = {f.name for f in fields(self)}
        changes: Dict[str, Any] = {}
        for key, val in overrides.items():
            if key not in known or val is None:
                continue
            current = getattr(self, key)
            if isinstance(current, bool):
                if isinstance(val, str):
                    val = val.strip().lower() in ("1", "true", "yes", "y", "on")
                changes[key] = bool(val)
            elif isinstance(current, int):
                changes[key] = int(val)
            else:
                changes[key] = float(val)
        out = replace(self, **changes)
        out.validate()
        return out


@dataclass
class VisionConfig:
    api_key: str = ""
    base_url: str = "https://api.openai.com/v1"
    model: str = "gpt-4o"
    max_tokens: int = 2000
    timeout_s: int = 60
    max_retries: int = 3
    backoff_s: float = 1.0
    concurrency: int = 4
    # training rules appended to every analysis request
    rules: List[str] = None


@dataclass
class CaptureConfig:
    directory: str = "captures"
    user_id: str = "local"


@dataclass
class StoreConfig:
    type: str = "memory"  # memory | supabase
    url: str = ""
    key: str = ""
    schema: str = "public"
    timeout_s: int = 15
    realtime: bool = True
    poll_interval_s: int = 30
    poll_lookback_s: int = 3600
    ws_heartbeat_s: int = 30


@dataclass
class TelegramConfig:
    enabled: bool = True
    token: str = ""
    chat_ids: List[str] = None
    disable_web_page_preview: bool = True


@dataclass
class WebhookConfig:
    enabled: bool = False
    url: str = ""
    secret: str = ""
    timeout_s: int = 10
    headers: Dict[str, str] = None


@dataclass
class AlertsConfig:
    parse_mode: str = "HTML"  # HTML | MarkdownV2
    include_rationale: bool = True
    footer: str = ""


@dataclass
class AppConfig:
    name: str = "Chart Confluence"
    log_level: str = "INFO"


@dataclass
class Config:
    app: AppConfig
    vision: VisionConfig
    signal: SignalSettings
    capture: CaptureConfig
    store: StoreConfig
    telegram: TelegramConfig
    webhook: WebhookConfig
    alerts: AlertsConfig


def config_from_dict(raw: Dict[str, Any]) -> Config:
    raw = raw or {}
    cfg = Config(
        app=AppConfig(**raw.get("app", {})),
        vision=VisionConfig(**raw.get("vision", {})),
        signal=SignalSettings(**raw.get("signal", {})),
        capture=CaptureConfig(**raw.get("capture", {})),
        store=StoreConfig(**raw.get("store", {})),
        telegram=TelegramConfig(**raw.get("telegram", {})),
        webhook=WebhookConfig(**raw.get("webhook", {})),
        alerts=AlertsConfig(**raw.get("alerts", {})),
    )
    cfg.signal.validate()

    # env overrides (useful on servers)
    cfg.vision.api_key = _env_override(cfg.vision.api_key, "OPENAI_API_KEY")
    if cfg.vision.rules is None:
        cfg.vision.rules = []

    cfg.store.url = _env_override(cfg.store.url, "SUPABASE_URL")
    cfg.store.key = _env_override(cfg.store.key, "SUPABASE_KEY")

    cfg.telegram.token = _env_override(cfg.telegram.token, "TELEGRAM_TOKEN")
    if cfg.telegram.chat_ids is None:
        cfg.telegram.chat_ids = []
    # Allow TELEGRAM_CHAT_IDS="id1,id2"
    chat_env = _env_list("TELEGRAM_CHAT_IDS")
    if chat_env:
        cfg.telegram.chat_ids = chat_env

    cfg.webhook.secret = _env_override(cfg.webhook.secret, "WEBHOOK_SECRET")
    cfg.webhook.url = _env_override(cfg.webhook.url, "WEBHOOK_URL")
    if cfg.webhook.headers is None:
        cfg.webhook.headers = {}

    return cfg


def load_config(path: str) -> Config:
    with open(path, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    return config_from_dict(raw)
