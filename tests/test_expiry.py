"""
Tests for expiry classification.

Boundaries with the default thresholds (warning=30, critical=7):
  30 → HEALTHY, 29 → WARNING, 7 → WARNING, 6 → CRITICAL, 0 → CRITICAL, -1 → EXPIRED
"""
from __future__ import annotations

from datetime import timedelta
from pathlib import Path

import pytest

from lifecycle.expiry import (
    ExpiryEvaluator,
    ExpiryThresholds,
    classify,
    days_remaining,
)
from lifecycle.models import CertificateFiles, CertificateRecord, LifecycleState, Severity
from tests.conftest import NOW


def _record(not_after) -> CertificateRecord:
    return CertificateRecord(
        domain="pool.example.com",
        files=CertificateFiles.in_dir(Path("/nonexistent")),
        not_before=NOW - timedelta(days=60),
        not_after=not_after,
        fingerprint="ab" * 32,
        key_fingerprint="ab" * 32,
    )


@pytest.mark.parametrize(
    "days, expected",
    [
        (90, LifecycleState.HEALTHY),
        (30, LifecycleState.HEALTHY),
        (29, LifecycleState.WARNING),
        (7, LifecycleState.WARNING),
        (6, LifecycleState.CRITICAL),
        (0, LifecycleState.CRITICAL),
        (-1, LifecycleState.EXPIRED),
        (-45, LifecycleState.EXPIRED),
    ],
)
def test_classify_boundaries(days, expected):
    assert classify(days) is expected


def test_classify_custom_thresholds():
    thresholds = ExpiryThresholds(warning_days=14, critical_days=3)
    assert classify(14, thresholds) is LifecycleState.HEALTHY
    assert classify(13, thresholds) is LifecycleState.WARNING
    assert classify(2, thresholds) is LifecycleState.CRITICAL


class TestDaysRemaining:

    def test_whole_days(self):
        assert days_remaining(NOW + timedelta(days=30), NOW) == 30

    def test_floors_partial_day(self):
        """29 days 23 hours is still 29 — one day short of the warning threshold."""
        assert days_remaining(NOW + timedelta(days=29, hours=23), NOW) == 29

    def test_less_than_a_day_is_zero(self):
        assert days_remaining(NOW + timedelta(hours=5), NOW) == 0

    def test_one_second_past_expiry_is_minus_one(self):
        assert days_remaining(NOW - timedelta(seconds=1), NOW) == -1


class TestExpiryEvaluator:

    def test_healthy_needs_nothing(self):
        ev = ExpiryEvaluator().evaluate(_record(NOW + timedelta(days=60)), NOW)
        assert ev.state is LifecycleState.HEALTHY
        assert not ev.needs_alert
        assert not ev.needs_renewal
        assert ev.severity is Severity.INFO

    def test_warning_alerts_without_renewal(self):
        ev = ExpiryEvaluator().evaluate(_record(NOW + timedelta(days=29, hours=12)), NOW)
        assert ev.days_remaining == 29
        assert ev.state is LifecycleState.WARNING
        assert ev.needs_alert
        assert not ev.needs_renewal
        assert ev.severity is Severity.WARNING

    def test_critical_renews(self):
        ev = ExpiryEvaluator().evaluate(_record(NOW + timedelta(days=3)), NOW)
        assert ev.state is LifecycleState.CRITICAL
        assert ev.needs_renewal

    def test_expired_is_critical_severity(self):
        ev = ExpiryEvaluator().evaluate(_record(NOW - timedelta(hours=1)), NOW)
        assert ev.state is LifecycleState.EXPIRED
        assert ev.needs_renewal
        assert ev.severity is Severity.CRITICAL

    def test_evaluation_carries_domain_and_not_after(self):
        not_after = NOW + timedelta(days=10)
        ev = ExpiryEvaluator().evaluate(_record(not_after), NOW)
        assert ev.domain == "pool.example.com"
        assert ev.not_after == not_after


@pytest.mark.parametrize("warning, critical", [(7, 7), (7, 30), (30, 0), (0, -1)])
def test_invalid_thresholds_rejected(warning, critical):
    with pytest.raises(ValueError):
        ExpiryThresholds(warning_days=warning, critical_days=critical)
