"""Tests for the renewal decision."""

from datetime import datetime, timedelta, timezone

import pytest

from edgecert.config_loader import resolve_renewal_config
from edgecert.edge import CertificateDetails
from edgecert.helpers import (
    DecisionReason,
    decide_renewal,
    format_days_remaining,
    is_renewal_due,
    should_renew,
)


NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def details(subject="edge.example.com", days=None):
    expiry = NOW + timedelta(days=days) if days is not None else None
    return CertificateDetails(subject=subject, issuer="R3", expiry=expiry)


@pytest.mark.parametrize("days,due", [(25, False), (21, False), (10, True), (-1, True)])
def test_is_renewal_due(days, due):
    assert is_renewal_due(NOW + timedelta(days=days), 20, now=NOW) is due


def test_is_renewal_due_unknown_expiry():
    assert is_renewal_due(None, 20, now=NOW)


def test_is_renewal_due_naive_datetimes():
    naive_now = NOW.replace(tzinfo=None)
    assert not is_renewal_due(naive_now + timedelta(days=25), 20, now=naive_now)


def test_format_days_remaining():
    assert format_days_remaining(NOW + timedelta(days=25, hours=3), now=NOW) == 25
    assert format_days_remaining(None) == "unknown"


def test_not_due(renewal_config):
    decision = decide_renewal(renewal_config, details(days=25), forced=False, now=NOW)

    assert not decision.proceed
    assert decision.reason == DecisionReason.NOT_DUE
    assert decision.days_remaining == 25
    assert "not yet due" in decision.describe()


def test_due(renewal_config):
    decision = decide_renewal(renewal_config, details(days=10), forced=False, now=NOW)

    assert decision.proceed
    assert decision.reason == DecisionReason.DUE


def test_subject_mismatch(renewal_config):
    decision = decide_renewal(
        renewal_config, details(subject="other.example.com", days=1), forced=False, now=NOW
    )

    assert not decision.proceed
    assert decision.reason == DecisionReason.SUBJECT_MISMATCH


def test_forced_ignores_subject_and_expiry(renewal_config):
    current = details(subject="other.example.com", days=80)

    assert should_renew(renewal_config, current, forced=True, now=NOW)


def test_no_current_certificate(renewal_config):
    decision = decide_renewal(renewal_config, None, forced=False, now=NOW)

    assert decision.proceed
    assert decision.reason == DecisionReason.NO_CURRENT_CERTIFICATE


def test_unknown_expiry(renewal_config):
    decision = decide_renewal(renewal_config, details(days=None), forced=False, now=NOW)

    assert decision.proceed
    assert decision.reason == DecisionReason.EXPIRY_UNKNOWN


def test_threshold_from_options(settings, options):
    config = resolve_renewal_config({**options, "renew_days_before_expiry": "30"}, settings)

    assert should_renew(config, details(days=25), forced=False, now=NOW)
