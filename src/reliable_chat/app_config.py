from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path


@dataclass
class AppConfig:
    host: str
    port: int
    db_path: str
    outbox_max_size: int
    resync_page_size: int
    max_message_chars: int
    announce_disconnects: bool
    log_level: str
    log_consumers: list | None


def load_json_config() -> dict:
    config_path = Path.cwd() / "config.json"
    if config_path.exists():
        with open(config_path) as f:
            return json.load(f)
    return {}


def _to_bool(value: object, default: bool = False) -> bool:
    if value is None:
        return default
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    return bool(value)


def parse_app_config(config: dict) -> AppConfig:
    return AppConfig(
        host=str(config.get("Host", "0.0.0.0")),
        port=int(config.get("Port", 3000)),
        db_path=str(config.get("DbPath", ".reliable_chat/chat.db")),
        outbox_max_size=max(1, int(config.get("OutboxMaxSize", 1000))),
        resync_page_size=max(1, int(config.get("ResyncPageSize", 200))),
        max_message_chars=max(1, int(config.get("MaxMessageChars", 4000))),
        announce_disconnects=_to_bool(config.get("AnnounceDisconnects", True), default=True),
        log_level=config.get("LogLevel", "INFO"),
        log_consumers=config.get("LogConsumers"),
    )


def apply_env_overrides(app: AppConfig, environ: Mapping[str, str] | None = None) -> AppConfig:
    """Storage location and listening port may be supplied by the environment."""
    env = os.environ if environ is None else environ
    overrides: dict = {}
    if env.get("CHAT_HOST", "").strip():
        overrides["host"] = env["CHAT_HOST"].strip()
    if env.get("CHAT_PORT", "").strip():
        overrides["port"] = int(env["CHAT_PORT"])
    if env.get("CHAT_DB_PATH", "").strip():
        overrides["db_path"] = env["CHAT_DB_PATH"].strip()
    return replace(app, **overrides) if overrides else app
