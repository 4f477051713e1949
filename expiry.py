"""Exam timer: remaining time and expiry, derived from absolute timestamps.

Nothing here keeps state. Callers ticking a countdown must call
``remaining`` again on every tick instead of decrementing a local counter,
so a suspended browser tab or a skewed client clock never drifts the
deadline fixed when the session started.
"""
from datetime import timedelta

ZERO = timedelta(0)


def remaining(session, now):
    """Time left before ``session`` must be submitted, never negative."""
    return max(ZERO, session.end_time - now)


def remaining_seconds(session, now):
    return int(remaining(session, now).total_seconds())


def is_expired(session, now):
    return remaining(session, now) == ZERO


def needs_forced_submit(session, now):
    """True when a still-open session has run out of time."""
    return not session.is_terminal and is_expired(session, now)
