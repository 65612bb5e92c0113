"""Environment-based configuration for the Triage Gateway.

Runtime settings come from environment variables. The tool guard policy is
read from .triage/project-config.json under settings.toolGuard and merged
over the built-in defaults.
"""

from __future__ import annotations

import json
import logging
import os
import secrets
from pathlib import Path
from zoneinfo import ZoneInfo

from .models.guard import DenyRule, GuardPolicy, PolicyMode
from .services.tool_guard import DEFAULT_ALLOW_TOOLS, DEFAULT_DENY_RULES, SHELL_TOOLS

logger = logging.getLogger(__name__)

# Defaults for settings.toolGuard
GUARD_DEFAULTS = {
    "defaultMode": "deny",
    "allowTools": DEFAULT_ALLOW_TOOLS,
    "auditedTools": SHELL_TOOLS,
    "denyRules": DEFAULT_DENY_RULES,
    "extraDenyRules": [],
    "auditDetailLimit": 200,
}


def _env_bool(name: str, default: bool) -> bool:
    return os.environ.get(name, str(default)).strip().lower() in ("1", "true", "yes", "on")


class GatewayConfig:
    """Gateway configuration loaded from environment variables."""

    def __init__(self) -> None:
        self.project_dir = Path(os.environ.get("PROJECT_DIR", os.getcwd()))
        self.host = os.environ.get("TRIAGE_GATEWAY_HOST", "0.0.0.0")
        self.port = int(os.environ.get("TRIAGE_GATEWAY_PORT", "8080"))
        self.guard_port = int(os.environ.get("TRIAGE_GUARD_PORT", "3110"))

        # Derived paths
        self.triage_root = self.project_dir / ".triage"
        self.data_dir = Path(os.environ.get("QUEUE_DATA_DIR", str(self.triage_root / "data")))
        self.project_config_path = self.triage_root / "project-config.json"

        # Scheduling
        self.cron_schedule = os.environ.get("CRON_SCHEDULE", "0 1 * * *")
        self.cron_timezone = os.environ.get("CRON_TIMEZONE", "UTC")

        # Queue
        self.max_retries = int(os.environ.get("QUEUE_MAX_RETRIES", "2"))
        self.max_batch_size = int(os.environ.get("QUEUE_MAX_BATCH_SIZE", "5"))
        self.cooldown_seconds = float(os.environ.get("QUEUE_COOLDOWN_SECONDS", "60"))
        self.persist_queue = _env_bool("QUEUE_PERSIST", True)

        # API key auth; the key file is only touched when the key is first used
        self._api_key = os.environ.get("TRIAGE_API_KEY") or None

    @property
    def api_key(self) -> str:
        if self._api_key is None:
            self._api_key = self._load_or_create_api_key()
        return self._api_key

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.cron_timezone)

    @property
    def queue_path(self) -> Path:
        return self.data_dir / "queue.json"

    @property
    def audit_path(self) -> Path:
        return self.data_dir / "audit.jsonl"

    def load_guard_policy(self) -> GuardPolicy:
        return load_guard_policy(self.project_config_path)

    def _load_or_create_api_key(self) -> str:
        """Load API key from .triage/api-key.txt or generate a new one."""
        key_path = self.triage_root / "api-key.txt"
        if key_path.exists():
            return key_path.read_text().strip()

        key = secrets.token_urlsafe(32)
        self.triage_root.mkdir(parents=True, exist_ok=True)
        key_path.write_text(key)
        return key


def load_guard_settings(config_path: Path | None = None) -> dict:
    """Guard settings with defaults, overridden by the project config file."""
    effective = _deep_copy(GUARD_DEFAULTS)

    if config_path is not None and config_path.exists():
        try:
            cfg = json.loads(config_path.read_text())
            guard_cfg = cfg.get("settings", {}).get("toolGuard", {})
            _deep_merge(effective, guard_cfg)
        except (json.JSONDecodeError, OSError) as exc:
            logger.warning("Ignoring unreadable project config %s: %s", config_path, exc)

    mode = os.environ.get("TOOL_GUARD_DEFAULT_MODE")
    if mode:
        effective["defaultMode"] = mode.strip().lower()
    return effective


def load_guard_policy(config_path: Path | None = None) -> GuardPolicy:
    """Build the guard policy. Raises ValueError on invalid rules or mode."""
    settings = load_guard_settings(config_path)
    rules = [*settings["denyRules"], *settings["extraDenyRules"]]
    return GuardPolicy(
        default_mode=PolicyMode(settings["defaultMode"]),
        deny_rules=[DenyRule(**rule) for rule in rules],
        allow_tools=list(settings["allowTools"]),
        audited_tools=list(settings["auditedTools"]),
        audit_detail_limit=int(settings["auditDetailLimit"]),
    )


def _deep_copy(d: dict) -> dict:
    """Simple deep copy for JSON-compatible dicts."""
    return json.loads(json.dumps(d))


def _deep_merge(base: dict, override: dict) -> None:
    """Merge override into base, recursing into nested dicts."""
    for key, value in override.items():
        if key in base and isinstance(base[key], dict) and isinstance(value, dict):
            _deep_merge(base[key], value)
        elif value is not None:
            base[key] = value


# Singleton
config = GatewayConfig()
