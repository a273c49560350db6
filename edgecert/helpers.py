"""
Common utility functions and the renewal decision.

Provides date calculations around certificate expiry and decides whether a
run should attempt a renewal.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional, Union

from .config_loader import RenewalConfig
from .edge import CertificateDetails


def _as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def is_renewal_due(
    expires_on: Optional[datetime],
    threshold_days: int,
    now: Optional[datetime] = None,
) -> bool:
    """
    Check if the remaining validity is below the threshold.

    Args:
        expires_on: Certificate expiration datetime
        threshold_days: Renew when fewer days than this remain
        now: Reference time (defaults to the current UTC time)

    Returns:
        True if renewal is due; an unknown expiry always counts as due
    """
    if expires_on is None:
        return True

    now = _as_utc(now) if now else datetime.now(timezone.utc)
    return _as_utc(expires_on) - now < timedelta(days=threshold_days)


def format_days_remaining(
    expires_on: Optional[datetime],
    now: Optional[datetime] = None,
) -> Union[int, str]:
    """
    Days remaining until expiration (negative if expired), or "unknown".
    """
    if expires_on is None:
        return "unknown"

    now = _as_utc(now) if now else datetime.now(timezone.utc)
    return (_as_utc(expires_on) - now).days


class DecisionReason(Enum):
    """Why a run does or does not renew."""
    FORCED = "forced"
    NO_CURRENT_CERTIFICATE = "no_current_certificate"
    SUBJECT_MISMATCH = "subject_mismatch"
    EXPIRY_UNKNOWN = "expiry_unknown"
    DUE = "due"
    NOT_DUE = "not_due"


@dataclass
class RenewalDecision:
    """Result of the renewal decision."""
    proceed: bool
    reason: DecisionReason
    days_remaining: Union[int, str] = "unknown"

    def describe(self) -> str:
        messages = {
            DecisionReason.FORCED: "Forced renewal, skipping all checks.",
            DecisionReason.NO_CURRENT_CERTIFICATE:
                "No current certificate details available, proceeding with issuance.",
            DecisionReason.SUBJECT_MISMATCH:
                "Scheduled renewal not performed since current certificate subject "
                "does not match current config.",
            DecisionReason.EXPIRY_UNKNOWN: "Expiry of current certificate unknown, renewal is due.",
            DecisionReason.DUE: f"Renewal is due ({self.days_remaining} days remaining).",
            DecisionReason.NOT_DUE:
                "Scheduled renewal not performed since certificate renewal is not yet due "
                f"({self.days_remaining} days remaining).",
        }
        return messages[self.reason]


def decide_renewal(
    config: RenewalConfig,
    current: Optional[CertificateDetails],
    forced: bool,
    now: Optional[datetime] = None,
) -> RenewalDecision:
    """
    Decide whether a renewal attempt should proceed.

    Rules (in order of precedence):
    1. A forced run always proceeds.
    2. Without current certificate details, proceed (fail-open).
    3. A subject other than the primary domain means the edge certificate
       belongs to a different configuration; scheduled runs leave it alone.
    4. Proceed when the expiry is unknown or closer than the threshold.

    Args:
        config: Renewal configuration
        current: Certificate currently installed on the edge, if known
        forced: Whether the run was forced
        now: Reference time (defaults to the current UTC time)

    Returns:
        RenewalDecision
    """
    if forced:
        return RenewalDecision(proceed=True, reason=DecisionReason.FORCED)

    if current is None:
        return RenewalDecision(proceed=True, reason=DecisionReason.NO_CURRENT_CERTIFICATE)

    if current.subject != config.primary_domain:
        return RenewalDecision(proceed=False, reason=DecisionReason.SUBJECT_MISMATCH)

    if current.expiry is None:
        return RenewalDecision(proceed=True, reason=DecisionReason.EXPIRY_UNKNOWN)

    days_remaining = format_days_remaining(current.expiry, now)
    if is_renewal_due(current.expiry, config.renew_threshold_days, now):
        return RenewalDecision(proceed=True, reason=DecisionReason.DUE, days_remaining=days_remaining)

    return RenewalDecision(proceed=False, reason=DecisionReason.NOT_DUE, days_remaining=days_remaining)


def should_renew(
    config: RenewalConfig,
    current: Optional[CertificateDetails],
    forced: bool,
    now: Optional[datetime] = None,
) -> bool:
    """Shorthand for decide_renewal(...).proceed."""
    return decide_renewal(config, current, forced, now).proceed
