from __future__ import annotations

import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

import yaml

from keepup_checks.endpoints import Endpoint, endpoints_from_lines, parse_endpoint_list


DEFAULT_FLAG_TTL_SECONDS = 3 * 60 * 60


class ConfigurationError(ValueError):
    pass


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        return int(str(raw).strip())
    except Exception:
        return int(default)


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        return float(str(raw).strip())
    except Exception:
        return float(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def _env_csv(name: str, default: tuple[str, ...] = ()) -> tuple[str, ...]:
    raw = os.getenv(name)
    if raw is None:
        return tuple(default)
    return _split_csv(raw)


def _split_csv(raw: Any) -> tuple[str, ...]:
    out: list[str] = []
    for part in str(raw or "").split(","):
        item = part.strip().lower()
        if item:
            out.append(item)
    return tuple(out)


@dataclass(frozen=True)
class CheckSettings:
    # Newline-delimited endpoint list (blank and `#` lines ignored).
    url_list: str = field(default_factory=lambda: os.getenv("URL_LIST", ""))

    # Remediation trigger.
    deploy_api_url: str = field(default_factory=lambda: os.getenv("DEPLOY_API_URL", "").strip())
    deploy_token: str = field(default_factory=lambda: os.getenv("FIXED_TOKEN", "").strip())
    token_header: str = field(default_factory=lambda: _env_str("DEPLOY_TOKEN_HEADER", "X-Deploy-Token"))
    trigger_timeout_seconds: float = field(default_factory=lambda: _env_float("TRIGGER_TIMEOUT_SECONDS", 15.0))

    # Escalation gate.
    escalation_keywords: tuple[str, ...] = field(default_factory=lambda: _env_csv("ESCALATION_KEYWORDS", ("galaxy",)))
    escalation_reason: str = field(default_factory=lambda: _env_str("ESCALATION_REASON", "final_retry_failed"))

    # Probe budget.
    timeout_seconds: float = field(default_factory=lambda: _env_float("PROBE_TIMEOUT_SECONDS", 5.0))
    max_attempts: int = field(default_factory=lambda: _env_int("PROBE_MAX_ATTEMPTS", 3))
    retry_base_delay_seconds: float = field(default_factory=lambda: _env_float("PROBE_RETRY_BASE_DELAY_SECONDS", 0.5))
    concurrency: int = field(default_factory=lambda: _env_int("PROBE_CONCURRENCY", 10))

    # Client-side idempotency guard. The receiver keeps its own, authoritative flag.
    client_guard_enabled: bool = field(default_factory=lambda: _env_bool("CLIENT_GUARD_ENABLED", True))
    flag_key: str = field(default_factory=lambda: _env_str("FLAG_KEY", "flag"))
    flag_value: str = field(default_factory=lambda: _env_str("FLAG_VALUE", "deployed"))
    flag_ttl_seconds: int = field(default_factory=lambda: _env_int("FLAG_TTL_SECONDS", DEFAULT_FLAG_TTL_SECONDS))
    # Empty means an in-process memory store.
    state_db_path: str = field(default_factory=lambda: os.getenv("KEEPUP_STATE_DB_PATH", "").strip())

    interval_seconds: int = field(default_factory=lambda: _env_int("KEEPUP_INTERVAL_SECONDS", 300))

    @property
    def endpoints(self) -> list[Endpoint]:
        return parse_endpoint_list(self.url_list)

    @property
    def escalation_enabled(self) -> bool:
        return bool(self.deploy_api_url and self.deploy_token)

    def validate(self) -> None:
        if not self.endpoints:
            raise ConfigurationError("No endpoints configured (URL_LIST is empty)")
        if self.max_attempts < 1:
            raise ConfigurationError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.timeout_seconds <= 0:
            raise ConfigurationError(f"timeout_seconds must be > 0, got {self.timeout_seconds}")
        if self.retry_base_delay_seconds < 0:
            raise ConfigurationError(
                f"retry_base_delay_seconds must be >= 0, got {self.retry_base_delay_seconds}"
            )
        if self.flag_ttl_seconds < 1:
            raise ConfigurationError(f"flag_ttl_seconds must be >= 1, got {self.flag_ttl_seconds}")


def load_config(path: Path) -> dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    if not isinstance(data, dict):
        raise ConfigurationError("Config YAML must be a mapping")
    return data


def apply_config_overrides(settings: CheckSettings, config: dict[str, Any]) -> CheckSettings:
    """
    YAML keys use the CheckSettings field names. `endpoints` may be a list and
    takes precedence over `url_list`.
    """
    known = {f.name: f for f in fields(CheckSettings)}
    overrides: dict[str, Any] = {}

    for key, value in config.items():
        if key == "endpoints":
            continue
        if key not in known:
            raise ConfigurationError(f"Unknown config key: {key}")
        if value is None:
            continue
        current = getattr(settings, key)
        if isinstance(current, bool):
            overrides[key] = bool(value)
        elif isinstance(current, (int, float)):
            try:
                overrides[key] = type(current)(value)
            except (TypeError, ValueError) as exc:
                raise ConfigurationError(f"Invalid value for {key}: {value!r}") from exc
        elif isinstance(current, tuple):
            overrides[key] = _split_csv(",".join(value)) if isinstance(value, list) else _split_csv(value)
        else:
            overrides[key] = str(value)

    endpoints_cfg = config.get("endpoints")
    if endpoints_cfg is not None:
        if not isinstance(endpoints_cfg, list):
            raise ConfigurationError("endpoints must be a list of URLs")
        overrides["url_list"] = "\n".join(e.url for e in endpoints_from_lines(endpoints_cfg))

    return replace(settings, **overrides) if overrides else settings


def load_settings(config_path: Path | None = None) -> CheckSettings:
    settings = CheckSettings()
    if config_path is not None:
        settings = apply_config_overrides(settings, load_config(config_path))
    return settings
