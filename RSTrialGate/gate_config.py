from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Tuple

from dotenv import load_dotenv


BASE_DIR = Path(__file__).resolve().parent

DEFAULT_TRIAL_HOURS = 48
DEFAULT_SWEEP_INTERVAL_SECONDS = 60
DEFAULT_DB_FILENAME = "trial_gate.sqlite"


class ConfigError(RuntimeError):
    """Raised when the bot cannot start with the provided configuration."""


def _deep_merge_dict(base: Dict[str, Any], overlay: Dict[str, Any]) -> Dict[str, Any]:
    """Deep-merge overlay into base (in place) and return base.

    - Dict values are merged recursively
    - Other types overwrite
    """
    for k, v in overlay.items():
        if isinstance(v, dict) and isinstance(base.get(k), dict):
            _deep_merge_dict(base[k], v)  # type: ignore[index]
        else:
            base[k] = v
    return base


def load_json(path: Path) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def load_config_with_secrets(
    base_dir: Path,
    config_name: str = "config.json",
    secrets_name: str = "config.secrets.json",
) -> Tuple[Dict[str, Any], Path, Path]:
    """Load config.json and merge config.secrets.json on top.

    Returns: (merged_config, config_path, secrets_path)
    """
    config_path = base_dir / config_name
    secrets_path = base_dir / secrets_name

    if not config_path.exists():
        raise ConfigError(f"Missing config file: {config_path}")

    config = load_json(config_path)
    if not isinstance(config, dict):
        raise ConfigError(f"Invalid config file (expected JSON object): {config_path}")

    if not secrets_path.exists():
        # Caller is expected to fail fast with a clear message.
        return config, config_path, secrets_path

    secrets = load_json(secrets_path)
    if not isinstance(secrets, dict):
        raise ConfigError(f"Invalid secrets file (expected JSON object): {secrets_path}")

    _deep_merge_dict(config, secrets)
    return config, config_path, secrets_path


def is_placeholder_secret(value: Any) -> bool:
    """Return True if the provided secret looks like a template/placeholder value."""
    if value is None:
        return True
    s = str(value).strip()
    if not s:
        return True
    upper = s.upper()
    if upper.startswith("PUT_") or upper.endswith("_HERE"):
        return True
    if upper in {"CHANGEME", "REPLACE_ME", "YOUR_TOKEN_HERE"}:
        return True
    return False


def mask_secret(value: Any, show_last: int = 4) -> str:
    """Mask a secret for printing (never output full tokens)."""
    if value is None:
        return "<missing>"
    s = str(value)
    if not s:
        return "<missing>"
    if len(s) <= show_last:
        return "*" * len(s)
    return ("*" * (len(s) - show_last)) + s[-show_last:]


def _as_int(value: Any, key: str) -> int:
    if isinstance(value, bool):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}")
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be an integer, got {value!r}") from None


def _as_float(value: Any, key: str) -> float:
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        raise ConfigError(f"'{key}' must be a number, got {value!r}") from None


@dataclass(frozen=True)
class GateSettings:
    """Immutable runtime settings, built once at process start."""

    bot_token: str
    guild_id: int
    gate_role_ids: Tuple[int, ...]
    payment_role_id: int
    payment_link: str
    trial_hours: float = DEFAULT_TRIAL_HOURS
    min_account_age_days: float = 0
    sweep_interval_seconds: float = DEFAULT_SWEEP_INTERVAL_SECONDS
    db_path: Path = BASE_DIR / DEFAULT_DB_FILENAME
    log_channel_id: Optional[int] = None
    health_port: Optional[int] = None
    brand_name: str = "VIP"
    messages: Mapping[str, str] = field(default_factory=dict)

    @property
    def trial_duration(self) -> timedelta:
        return timedelta(hours=self.trial_hours)

    @property
    def min_account_age(self) -> timedelta:
        return timedelta(days=self.min_account_age_days)

    @property
    def trial_hours_label(self) -> str:
        hours = self.trial_hours
        return str(int(hours)) if float(hours).is_integer() else str(hours)


def settings_from_mapping(raw: Mapping[str, Any], *, base_dir: Path = BASE_DIR) -> GateSettings:
    """Validate a merged config mapping and build GateSettings.

    Raises ConfigError for anything that would make the gate unsafe to run.
    """
    errors = []

    token = str(raw.get("bot_token") or "").strip()
    if is_placeholder_secret(token):
        errors.append("bot_token missing/placeholder in config.secrets.json")

    guild_raw = raw.get("guild_id")
    payment_raw = raw.get("payment_role_id")
    if not guild_raw:
        errors.append("guild_id is required")
    if not payment_raw:
        errors.append("payment_role_id is required")

    payment_link = str(raw.get("payment_link") or "").strip()
    if not payment_link:
        errors.append("payment_link is required")

    pool_raw = raw.get("gate_role_ids") or []
    if not isinstance(pool_raw, (list, tuple)):
        errors.append("gate_role_ids must be a list of role IDs")
        pool_raw = []

    if errors:
        raise ConfigError("; ".join(errors))

    guild_id = _as_int(guild_raw, "guild_id")
    payment_role_id = _as_int(payment_raw, "payment_role_id")

    pool = []
    for rid in pool_raw:
        rid_i = _as_int(rid, "gate_role_ids")
        if rid_i not in pool:
            pool.append(rid_i)
    if len(pool) < 2:
        raise ConfigError(f"gate_role_ids needs at least 2 distinct role IDs (got {len(pool)})")
    if payment_role_id in pool:
        raise ConfigError("payment_role_id must not be one of gate_role_ids")

    trial_hours = _as_float(raw.get("trial_hours", DEFAULT_TRIAL_HOURS), "trial_hours")
    if trial_hours <= 0:
        raise ConfigError("trial_hours must be greater than 0")
    min_age_days = _as_float(raw.get("min_account_age_days", 0), "min_account_age_days")
    if min_age_days < 0:
        raise ConfigError("min_account_age_days must not be negative")
    sweep_interval = _as_float(
        raw.get("sweep_interval_seconds", DEFAULT_SWEEP_INTERVAL_SECONDS), "sweep_interval_seconds"
    )
    if sweep_interval <= 0:
        raise ConfigError("sweep_interval_seconds must be greater than 0")

    db_path = Path(str(raw.get("db_path") or DEFAULT_DB_FILENAME)).expanduser()
    if not db_path.is_absolute():
        db_path = base_dir / db_path

    log_channel_id = raw.get("log_channel_id")
    health_port = raw.get("health_port")

    messages = raw.get("messages") or {}
    if not isinstance(messages, dict):
        raise ConfigError("messages must be an object of template overrides")

    return GateSettings(
        bot_token=token,
        guild_id=guild_id,
        gate_role_ids=tuple(pool),
        payment_role_id=payment_role_id,
        payment_link=payment_link,
        trial_hours=trial_hours,
        min_account_age_days=min_age_days,
        sweep_interval_seconds=sweep_interval,
        db_path=db_path,
        log_channel_id=_as_int(log_channel_id, "log_channel_id") if log_channel_id else None,
        health_port=_as_int(health_port, "health_port") if health_port else None,
        brand_name=str(raw.get("brand_name") or "VIP"),
        messages={str(k): str(v) for k, v in messages.items()},
    )


# Environment overrides (.env or process env) for the few knobs ops change per deploy
_ENV_OVERRIDES = {
    "TRIAL_HOURS": "trial_hours",
    "MIN_ACCOUNT_AGE_DAYS": "min_account_age_days",
    "PAYMENT_LINK": "payment_link",
    "TRIAL_GATE_DB_PATH": "db_path",
}


def apply_env_overrides(raw: Dict[str, Any], environ: Optional[Mapping[str, str]] = None) -> Dict[str, Any]:
    env = os.environ if environ is None else environ
    for env_key, cfg_key in _ENV_OVERRIDES.items():
        val = (env.get(env_key) or "").strip()
        if val:
            raw[cfg_key] = val
    return raw


def load_settings(base_dir: Path = BASE_DIR) -> GateSettings:
    """Load config.json + config.secrets.json (+ optional .env) into GateSettings."""
    load_dotenv(base_dir / ".env")
    raw, _, secrets_path = load_config_with_secrets(base_dir)
    if not secrets_path.exists():
        raise ConfigError(f"Missing server-only secrets file: {secrets_path}")
    apply_env_overrides(raw)
    return settings_from_mapping(raw, base_dir=base_dir)
