"""Hibernation periods derived from a cluster's state-update service logs."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import List, Optional, Sequence

from triage.core.models import AdvisoryEntry

STATE_UPDATES_FILTER = "log_type='cluster-state-updates'"
HIBERNATION_START_SUMMARY = "cluster_state_hibernating"
HIBERNATION_END_SUMMARY = "cluster_state_ready"

RECENT_WAKEUP_WINDOW = timedelta(hours=2)
HIBERNATION_TOO_LONG = timedelta(days=30)


@dataclass(frozen=True)
class HibernationPeriod:
    hibernation_time: datetime
    dehibernation_time: datetime

    @property
    def duration(self) -> timedelta:
        return self.dehibernation_time - self.hibernation_time


def hibernation_periods(entries: Sequence[AdvisoryEntry]) -> List[HibernationPeriod]:
    """
    Pair each hibernating event with the next ready event.

    A ready event without a preceding hibernating event (a normal install) is ignored.
    """
    timed = sorted((e for e in entries if e.timestamp is not None), key=lambda e: e.timestamp)
    periods: List[HibernationPeriod] = []
    started: Optional[datetime] = None
    for entry in timed:
        if entry.summary == HIBERNATION_START_SUMMARY:
            started = entry.timestamp
        elif entry.summary == HIBERNATION_END_SUMMARY and started is not None:
            periods.append(HibernationPeriod(hibernation_time=started, dehibernation_time=entry.timestamp))
            started = None
    return periods


def has_recently_resumed(periods: Sequence[HibernationPeriod], now: datetime) -> bool:
    """True when the last resume is at most two hours before `now` (inclusive)."""
    if not periods:
        return False
    return now - periods[-1].dehibernation_time <= RECENT_WAKEUP_WINDOW


def hibernated_too_long(periods: Sequence[HibernationPeriod], now: datetime) -> bool:
    """True when the cluster recently woke up from a hibernation of 30 days or more."""
    if not periods:
        return False
    latest = periods[-1]
    if now - latest.dehibernation_time >= RECENT_WAKEUP_WINDOW:
        return False
    return latest.duration >= HIBERNATION_TOO_LONG
