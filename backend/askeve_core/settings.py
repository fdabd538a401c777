from __future__ import annotations

import os
from dataclasses import dataclass


CONSENT_ABSENT_POLICIES = {"enter_consent", "degrade", "block"}
SAFETY_FAILURE_MODES = {"closed", "open"}


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_flag(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_choice(name: str, default: str, choices: set[str]) -> str:
    value = (os.getenv(name) or default).strip().lower()
    if value not in choices:
        raise ValueError(f"{name} must be one of {sorted(choices)}, got {value!r}")
    return value


@dataclass(frozen=True)
class FlowSettings:
    confidence_floor: float = 0.3
    session_ttl_seconds: int = 30 * 60
    sweep_interval_seconds: int = 60
    history_limit: int = 10
    escalation_timeout_seconds: int = 15 * 60
    escalation_warning_seconds: int = 3 * 60
    crisis_budget_ms: float = 500.0
    safety_failure_mode: str = "closed"
    consent_absent_policy: str = "enter_consent"
    consent_validity_days: int = 30
    crisis_recency_seconds: int = 10 * 60
    seed_escalation_on_crisis: bool = True
    alert_team_on_crisis: bool = False

    @classmethod
    def from_env(cls) -> "FlowSettings":
        return cls(
            confidence_floor=_env_float("ASKEVE_CONFIDENCE_FLOOR", 0.3),
            session_ttl_seconds=_env_int("ASKEVE_SESSION_TTL_SECONDS", 30 * 60),
            sweep_interval_seconds=_env_int("ASKEVE_SWEEP_INTERVAL_SECONDS", 60),
            history_limit=_env_int("ASKEVE_HISTORY_LIMIT", 10),
            escalation_timeout_seconds=_env_int("ASKEVE_ESCALATION_TIMEOUT_SECONDS", 15 * 60),
            escalation_warning_seconds=_env_int("ASKEVE_ESCALATION_WARNING_SECONDS", 3 * 60),
            crisis_budget_ms=_env_float("ASKEVE_CRISIS_BUDGET_MS", 500.0),
            safety_failure_mode=_env_choice("ASKEVE_SAFETY_FAILURE_MODE", "closed", SAFETY_FAILURE_MODES),
            consent_absent_policy=_env_choice(
                "ASKEVE_CONSENT_ABSENT_POLICY", "enter_consent", CONSENT_ABSENT_POLICIES
            ),
            consent_validity_days=_env_int("ASKEVE_CONSENT_VALIDITY_DAYS", 30),
            crisis_recency_seconds=_env_int("ASKEVE_CRISIS_RECENCY_SECONDS", 10 * 60),
            seed_escalation_on_crisis=_env_flag("ASKEVE_SEED_ESCALATION_ON_CRISIS", True),
            alert_team_on_crisis=_env_flag("ASKEVE_ALERT_TEAM_ON_CRISIS", False),
        )
