"""
Anti-flapping guard for restriction removal.

A restriction that this system has changed twice or more within the last 24
hours is left in place instead of being removed again.

There is no lock across processes. Two runs against the same cluster can both
pass the check; the guard relies on the platform's history being current.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Callable, List, Sequence

from triage.core.models import AdvisoryEntry, ClusterRecord
from triage.providers.ocm_provider import OcmClient

logger = logging.getLogger(__name__)

RESTRICTION_CHANGE_SERVICE = "LimitedSupport"
FLAPPING_WINDOW = timedelta(hours=24)
FLAPPING_THRESHOLD = 2


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def recent_restriction_changes(
    history: Sequence[AdvisoryEntry],
    summary: str,
    service_accounts: Sequence[str],
    now: datetime,
    window: timedelta = FLAPPING_WINDOW,
) -> List[AdvisoryEntry]:
    """Entries where one of our service accounts changed the restriction `summary` within `window`."""
    since = now - window
    return [
        entry
        for entry in history
        if entry.username in service_accounts
        and entry.service_name == RESTRICTION_CHANGE_SERVICE
        and entry.timestamp is not None
        and entry.timestamp > since
        and entry.summary == summary
    ]


class RestrictionGuard:
    def __init__(
        self,
        ocm: OcmClient,
        service_accounts: Sequence[str],
        threshold: int = FLAPPING_THRESHOLD,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.ocm = ocm
        self.service_accounts = tuple(service_accounts)
        self.threshold = threshold
        self._clock = clock

    def is_flapping(self, cluster: ClusterRecord, summary: str) -> bool:
        history = self.ocm.list_advisories(cluster)
        changes = recent_restriction_changes(history, summary, self.service_accounts, self._clock())
        return len(changes) >= self.threshold

    def remove_restriction(self, cluster: ClusterRecord, summary: str, details: str) -> bool:
        """
        Remove every restriction matching (summary, details) unless it is flapping.

        Returns:
            True if at least one restriction was deleted
        """
        if self.is_flapping(cluster, summary):
            logger.info(
                "Not removing limited support reason %r from cluster %s: it changed %d+ times in the last %s",
                summary,
                cluster.id,
                self.threshold,
                FLAPPING_WINDOW,
            )
            return False

        removed = 0
        for reason in self.ocm.list_restrictions(cluster.id):
            if not reason.matches(summary, details):
                continue
            logger.info("Removing limited support reason %s (%s) from cluster %s", reason.id, summary, cluster.id)
            self.ocm.delete_restriction(cluster.id, reason.id)
            removed += 1
        return bool(removed)
