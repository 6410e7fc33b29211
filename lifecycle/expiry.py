"""
Expiry classification — a pure function of (not_after, now).

  days_remaining >= warning_days                 → HEALTHY
  critical_days <= days_remaining < warning_days → WARNING
  0 <= days_remaining < critical_days            → CRITICAL
  days_remaining < 0                             → EXPIRED

days_remaining is floored, so 29 days and 23 hours is 29 (WARNING) and one
second past notAfter is -1 (EXPIRED).
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta

from lifecycle.models import CertificateRecord, LifecycleState, Severity

ONE_DAY = timedelta(days=1)

RENEWAL_STATES = frozenset({LifecycleState.CRITICAL, LifecycleState.EXPIRED})
ALERT_STATES = frozenset({LifecycleState.WARNING, LifecycleState.CRITICAL, LifecycleState.EXPIRED})


@dataclass(frozen=True)
class ExpiryThresholds:
    warning_days: int = 30
    critical_days: int = 7

    def __post_init__(self) -> None:
        if not 0 < self.critical_days < self.warning_days:
            raise ValueError(
                f"thresholds must satisfy 0 < critical ({self.critical_days}) "
                f"< warning ({self.warning_days})"
            )


@dataclass(frozen=True)
class Evaluation:
    domain: str
    days_remaining: int
    state: LifecycleState
    not_after: datetime

    @property
    def needs_renewal(self) -> bool:
        return self.state in RENEWAL_STATES

    @property
    def needs_alert(self) -> bool:
        return self.state in ALERT_STATES

    @property
    def severity(self) -> Severity:
        if self.state is LifecycleState.EXPIRED:
            return Severity.CRITICAL
        return Severity.WARNING if self.needs_alert else Severity.INFO


def days_remaining(not_after: datetime, now: datetime) -> int:
    """floor((not_after - now) / 1 day), negative once expired."""
    return (not_after - now) // ONE_DAY


def classify(days: int, thresholds: ExpiryThresholds = ExpiryThresholds()) -> LifecycleState:
    if days < 0:
        return LifecycleState.EXPIRED
    if days < thresholds.critical_days:
        return LifecycleState.CRITICAL
    if days < thresholds.warning_days:
        return LifecycleState.WARNING
    return LifecycleState.HEALTHY


class ExpiryEvaluator:
    def __init__(self, thresholds: ExpiryThresholds = ExpiryThresholds()) -> None:
        self.thresholds = thresholds

    def evaluate(self, record: CertificateRecord, now: datetime) -> Evaluation:
        days = days_remaining(record.not_after, now)
        return Evaluation(
            domain=record.domain,
            days_remaining=days,
            state=classify(days, self.thresholds),
            not_after=record.not_after,
        )
