"""
Alert lifecycle state machine.
"""

from datetime import datetime, timedelta
from typing import Optional

from cryptalert.database.models import Alert, AlertStatus, RepeatOption
from cryptalert.errors import InvalidTransition

ALLOWED_TRANSITIONS = {
    AlertStatus.ACTIVE: {
        AlertStatus.PENDING,
        AlertStatus.TRIGGERED,
        AlertStatus.DISABLED,
        AlertStatus.EXPIRED,
    },
    AlertStatus.PENDING: {
        AlertStatus.ACTIVE,
        AlertStatus.TRIGGERED,
        AlertStatus.DISABLED,
        AlertStatus.EXPIRED,
    },
    AlertStatus.TRIGGERED: {
        AlertStatus.ACTIVE,
        AlertStatus.DISABLED,
        AlertStatus.EXPIRED,
    },
    AlertStatus.DISABLED: {AlertStatus.ACTIVE, AlertStatus.EXPIRED},
    AlertStatus.EXPIRED: set(),
}

REPEAT_DELAYS = {
    RepeatOption.ALWAYS: timedelta(0),
    RepeatOption.HOURLY: timedelta(hours=1),
    RepeatOption.DAILY: timedelta(hours=24),
}


def repeat_delay(repeat: RepeatOption) -> Optional[timedelta]:
    """Delay before a triggered alert re-arms; None when it never does."""
    return REPEAT_DELAYS.get(repeat)


def is_terminal(alert: Alert) -> bool:
    """Terminal alerts are never evaluated or reactivated again."""
    if alert.status == AlertStatus.EXPIRED:
        return True
    return alert.status == AlertStatus.TRIGGERED and alert.repeat == RepeatOption.ONCE


def check_transition(current: AlertStatus, new: AlertStatus) -> None:
    """
    Validate a status change.

    Raises:
        InvalidTransition: If the change is not allowed
    """
    if current == new:
        return
    if new not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(
            f"Cannot change alert status from {current.value} to {new.value}"
        )


def is_expired(alert: Alert, now: datetime) -> bool:
    """Whether a non-terminal alert has passed its expiry instant."""
    if alert.expires_at is None or is_terminal(alert):
        return False
    return alert.expires_at <= now


def reactivation_time(alert: Alert) -> Optional[datetime]:
    """When a triggered repeating alert should return to ACTIVE."""
    if alert.status != AlertStatus.TRIGGERED or alert.triggered_at is None:
        return None
    delay = repeat_delay(alert.repeat)
    if delay is None:
        return None
    return alert.triggered_at + delay
