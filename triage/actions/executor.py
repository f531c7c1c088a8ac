"""Applies an investigation conclusion to the external platforms."""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

import requests

from triage.actions.flapping import RestrictionGuard
from triage.actions.model import (
    Action,
    ActionValidationError,
    AdvisoryAction,
    Escalate,
    InvestigationConclusion,
    Note,
    RemoveRestrictionAction,
    RestrictionAction,
    Silence,
    action_type,
    is_terminal,
)
from triage.core.retry import ACTION_RETRY_POLICY, RetryPolicy, with_retries
from triage.metrics import MetricsRecorder
from triage.providers.pagerduty_provider import INVESTIGATED_TITLE_PREFIX
from triage.resources import AlertContext

logger = logging.getLogger(__name__)

# Notes, advisories and paging calls: retried only on transient failures.
TRANSIENT_RETRY_POLICY = RetryPolicy(max_attempts=3, backoff=lambda attempt: float(attempt * attempt))


class ActionExecutionError(Exception):
    def __init__(self, action: str, err: BaseException) -> None:
        super().__init__(f"failed to execute {action} action: {err}")
        self.action = action
        self.err = err


def is_transient(err: BaseException) -> bool:
    """Timeouts, connection errors, 5xx, 429 and rate-limit messages."""
    if isinstance(err, (requests.Timeout, requests.ConnectionError)):
        return True
    if isinstance(err, requests.HTTPError) and err.response is not None:
        status = err.response.status_code
        if status >= 500 or status == 429:
            return True
    return "rate limit" in str(err).lower()


def order_actions(actions: List[Action]) -> List[Action]:
    """Note first, then platform changes in their original order, then the terminal action."""
    notes = [a for a in actions if isinstance(a, Note)]
    changes = [a for a in actions if not isinstance(a, Note) and not is_terminal(a)]
    terminals = [a for a in actions if is_terminal(a)]
    return notes + changes + terminals


class ActionExecutor:
    def __init__(
        self,
        metrics: MetricsRecorder,
        guard: RestrictionGuard,
        restriction_policy: RetryPolicy = ACTION_RETRY_POLICY,
        transient_policy: RetryPolicy = TRANSIENT_RETRY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.metrics = metrics
        self.guard = guard
        self.restriction_policy = restriction_policy
        self.transient_policy = transient_policy
        self._sleep = sleep

    def execute(self, conclusion: InvestigationConclusion, ctx: AlertContext) -> None:
        """
        Validate and apply every action of `conclusion`.

        Raises:
            ActionValidationError before anything is applied if an action is invalid
            ActionExecutionError on the first action that fails
        """
        actions = order_actions(list(conclusion.actions))
        for action in actions:
            action.validate()

        for action in actions:
            name = action_type(action)
            logger.info("Executing %s action", name)
            try:
                self._apply(action, ctx)
            except ActionValidationError:
                raise
            except Exception as e:
                raise ActionExecutionError(name, e) from e

    def _transient(self, operation: Callable[[], None], description: str) -> None:
        with_retries(
            operation,
            self.transient_policy,
            should_retry=is_transient,
            sleep=self._sleep,
            description=description,
        )

    def _apply(self, action: Action, ctx: AlertContext) -> None:
        if isinstance(action, Note):
            self._transient(lambda: ctx.pagerduty.add_note(action.content), "add note")
        elif isinstance(action, RestrictionAction):
            self._set_restriction(action, ctx)
        elif isinstance(action, RemoveRestrictionAction):
            self._remove_restriction(action, ctx)
        elif isinstance(action, AdvisoryAction):
            self._send_advisory(action, ctx)
        elif isinstance(action, Silence):
            logger.info("Silencing incident: %s", action.reason)
            self._transient(ctx.pagerduty.silence_incident, "silence incident")
        elif isinstance(action, Escalate):
            logger.info("Escalating incident: %s", action.reason)
            self._transient(ctx.pagerduty.escalate_incident, "escalate incident")
        else:
            raise ActionValidationError(f"unsupported action: {action!r}")

    def _set_restriction(self, action: RestrictionAction, ctx: AlertContext) -> None:
        cluster_id = ctx.require_cluster().id

        def _post() -> None:
            if ctx.ocm.restriction_exists(cluster_id, action.summary, action.details):
                logger.info("Limited support reason %r already present on cluster %s", action.summary, cluster_id)
                return
            ctx.ocm.post_restriction(cluster_id, action.summary, action.details)
            self.metrics.restriction_set(ctx.alert_type, action.summary)

        with_retries(_post, self.restriction_policy, sleep=self._sleep, description="post limited support reason")

    def _remove_restriction(self, action: RemoveRestrictionAction, ctx: AlertContext) -> None:
        cluster = ctx.require_cluster()
        removed = with_retries(
            lambda: self.guard.remove_restriction(cluster, action.summary, action.details),
            self.restriction_policy,
            sleep=self._sleep,
            description="remove limited support reason",
        )
        if removed:
            self.metrics.restriction_removed(ctx.alert_type)

    def _send_advisory(self, action: AdvisoryAction, ctx: AlertContext) -> None:
        cluster = ctx.require_cluster()
        self.metrics.advisory_prepared(ctx.alert_type)
        if not action.allow_duplicates:
            existing = ctx.ocm.list_advisories(cluster, search=f"summary = '{action.summary}'")
            if any(entry.summary == action.summary for entry in existing):
                logger.info("Service log %r already sent to cluster %s, skipping", action.summary, cluster.id)
                return

        self._transient(
            lambda: ctx.ocm.post_advisory(
                cluster,
                severity=action.severity,
                summary=action.summary,
                description=action.description,
                service_name=action.service_tag,
                internal_only=action.internal_only,
            ),
            "post service log",
        )
        self.metrics.advisory_sent(ctx.alert_type)


def mark_investigated(ctx: AlertContext) -> Optional[str]:
    """Prefix the incident title once. Returns the new title, or None if unchanged."""
    title = ctx.pagerduty.incident.title
    if title.startswith(INVESTIGATED_TITLE_PREFIX):
        return None
    new_title = f"{INVESTIGATED_TITLE_PREFIX} {title}".strip()
    try:
        ctx.pagerduty.update_title(new_title)
    except Exception as e:
        logger.warning("Failed to update incident title: %s", e)
        return None
    return new_title
