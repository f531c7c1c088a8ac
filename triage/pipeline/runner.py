"""
Investigation runner.

One webhook payload in, one set of applied actions out:

1. Parse the payload and pick the investigation for the incident title.
2. Resolve the cluster, run the pre-check and the credential check.
3. Run the investigation, retrying the whole run on infrastructure failures.
4. Apply the conclusion, mark the incident as investigated, push metrics.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple, Union

from triage.actions.executor import ActionExecutionError, ActionExecutor, mark_investigated
from triage.actions.flapping import RestrictionGuard
from triage.actions.model import ConclusionBuilder, Escalate, InvestigationConclusion, Note
from triage.config import TriageConfig
from triage.core.errors import (
    AmbiguousClusterError,
    ClusterNotFoundError,
    FindingError,
    RetriesExhaustedError,
    should_retry,
)
from triage.core.notes import NoteWriter
from triage.core.retry import INVESTIGATION_RETRY_POLICY, RetryPolicy, with_retries
from triage.investigations.base import Investigation
from triage.investigations.credentials import check_credentials, customer_removed_permissions
from triage.investigations.precheck import run_precheck
from triage.investigations.registry import InvestigationRegistry, build_registry
from triage.metrics import MetricsRecorder
from triage.providers.aws_provider import AwsClientFactory
from triage.providers.ocm_provider import OcmClient, get_ocm_client
from triage.providers.pagerduty_provider import PagerDutyClient, get_pagerduty_client
from triage.resources import AlertContext, AwsClientFactory as AwsFactoryFn, Capability, ResourceResolver

logger = logging.getLogger(__name__)

NO_INVESTIGATION_REASON = "No investigation found for alert"
CLUSTER_LOOKUP_REASON = "Could not retrieve cluster - manual investigation required"
INCOMPLETE_REASON = "Investigation incomplete - manual review required"
FAILED_REASON = "Investigation failed - manual investigation required"


@dataclass
class RunResult:
    """What happened to one payload."""

    investigation: str
    stage: str
    conclusion: InvestigationConclusion


def merge_conclusions(pre: InvestigationConclusion, final: InvestigationConclusion) -> InvestigationConclusion:
    """Carry the non-terminal platform changes of a pre-step into the final conclusion."""
    carried = tuple(a for a in pre.actions if not isinstance(a, Note))
    if not carried:
        return final
    return InvestigationConclusion(
        actions=carried + final.actions,
        restriction_set=pre.restriction_set or final.restriction_set,
        restriction_removed=pre.restriction_removed or final.restriction_removed,
        advisory_sent=pre.advisory_sent or final.advisory_sent,
    )


def escalate_on_failure(ctx: AlertContext, err: BaseException) -> None:
    """
    Page a human after the conclusion could not be applied.

    The executor may have stopped after the note and before the terminal
    action, so the incident is escalated directly. Failures here are only
    logged; the caller re-raises the original error.
    """
    logger.error("Failed to apply conclusion for incident %s: %s", ctx.pagerduty.incident.incident_id, err)
    ctx.notes.append_warning(f"CAD investigation failed, please investigate manually: {err}")
    try:
        ctx.pagerduty.add_note(ctx.notes.render())
    except Exception as e:
        logger.error("Failed to add failure note: %s", e)
    try:
        ctx.pagerduty.escalate_incident()
    except Exception as e:
        logger.error("Failed to escalate incident after investigation failure: %s", e)


class InvestigationRunner:
    def __init__(
        self,
        config: TriageConfig,
        metrics: MetricsRecorder,
        *,
        registry: Optional[InvestigationRegistry] = None,
        ocm: Optional[OcmClient] = None,
        aws_factory: Optional[AwsFactoryFn] = None,
        executor: Optional[ActionExecutor] = None,
        retry_policy: RetryPolicy = INVESTIGATION_RETRY_POLICY,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.config = config
        self.metrics = metrics
        self.registry = registry or build_registry(config)
        self.ocm = ocm or get_ocm_client(config)
        self.aws_factory = aws_factory or AwsClientFactory(config.aws_region, config.aws_jump_role_arn)
        self.executor = executor or ActionExecutor(
            metrics,
            RestrictionGuard(self.ocm, config.service_accounts),
            sleep=sleep,
        )
        self.retry_policy = retry_policy
        self._sleep = sleep

    # ========================================================================
    # Entry point
    # ========================================================================

    def run(self, pagerduty: PagerDutyClient) -> RunResult:
        incident = pagerduty.incident
        investigation = self.registry.for_title(incident.title, self.config.experimental_enabled)
        if investigation is None:
            logger.info("No investigation found for incident %s (%r)", incident.incident_id, incident.title)
            ctx = AlertContext(
                cluster_id="",
                alert_type="",
                ocm=self.ocm,
                pagerduty=pagerduty,
                notes=NoteWriter("alert"),
            )
            conclusion = InvestigationConclusion(actions=(Escalate(reason=NO_INVESTIGATION_REASON),))
            self.executor.execute(conclusion, ctx)
            return RunResult(investigation="", stage="unmatched", conclusion=conclusion)

        name = investigation.name()
        logger.info("Starting investigation %s for incident %s", name, incident.incident_id)
        self.metrics.alert_received(name)
        try:
            stage, conclusion, ctx = self._investigate(investigation, pagerduty)
            if incident.is_resolved and not conclusion.actions:
                logger.info("Incident %s is resolved and needs no action", incident.incident_id)
                return RunResult(investigation=name, stage=stage, conclusion=conclusion)
            try:
                self.executor.execute(conclusion, ctx)
            except ActionExecutionError as e:
                escalate_on_failure(ctx, e)
                raise
            mark_investigated(ctx)
            return RunResult(investigation=name, stage=stage, conclusion=conclusion)
        finally:
            self.metrics.push()

    # ========================================================================
    # Stages
    # ========================================================================

    def _investigate(
        self, investigation: Investigation, pagerduty: PagerDutyClient
    ) -> Tuple[str, InvestigationConclusion, AlertContext]:
        name = investigation.name()
        cluster_id = pagerduty.retrieve_cluster_id()
        resolver = ResourceResolver(cluster_id, name, self.ocm, pagerduty, aws_factory=self.aws_factory)
        resolver.request(*investigation.requirements()).request(Capability.NOTES)
        notes: NoteWriter = resolver.resolve(Capability.NOTES)

        try:
            with_retries(
                lambda: resolver.resolve(Capability.CLUSTER),
                self.retry_policy,
                should_retry=lambda e: not isinstance(e, (ClusterNotFoundError, AmbiguousClusterError)),
                sleep=self._sleep,
                description="cluster lookup",
            )
        except (ClusterNotFoundError, AmbiguousClusterError, RetriesExhaustedError) as e:
            notes.append_warning(f"Could not retrieve cluster {cluster_id}: {e}")
            ctx = AlertContext(cluster_id=cluster_id, alert_type=name, ocm=self.ocm, pagerduty=pagerduty, notes=notes)
            return "cluster_lookup", ConclusionBuilder(notes).escalate(CLUSTER_LOOKUP_REASON), ctx

        partial = AlertContext(
            cluster_id=cluster_id,
            alert_type=name,
            ocm=self.ocm,
            pagerduty=pagerduty,
            notes=notes,
            cluster=resolver.resolve(Capability.CLUSTER),
        )
        pre = run_precheck(partial)
        if pre.terminal is not None:
            return "precheck", pre, partial

        credentials = InvestigationConclusion()
        if Capability.AWS_CLIENT in resolver.requested:
            aws_error: Optional[BaseException] = None
            try:
                with_retries(
                    lambda: resolver.resolve(Capability.AWS_CLIENT),
                    self.retry_policy,
                    should_retry=lambda e: not customer_removed_permissions(str(e)),
                    sleep=self._sleep,
                    description="cloud client setup",
                )
            except RetriesExhaustedError as e:
                aws_error = e.last_error
            except Exception as e:
                aws_error = e
            if aws_error is not None:
                logger.info("Could not build cloud client for cluster %s: %s", cluster_id, aws_error)
            try:
                credentials = check_credentials(partial, aws_error)
            except Exception as e:
                return "credentials", self._failed(notes, e), partial
            if credentials.terminal is not None:
                return "credentials", credentials, partial

        try:
            ctx = with_retries(
                resolver.build, self.retry_policy, sleep=self._sleep, description="resource resolution"
            )
        except Exception as e:
            return "resources", self._failed(notes, e), partial

        conclusion = self._run_with_retries(investigation, ctx)
        return "investigation", merge_conclusions(credentials, conclusion), ctx

    def _run_with_retries(self, investigation: Investigation, ctx: AlertContext) -> InvestigationConclusion:
        resolved = ctx.pagerduty.incident.is_resolved
        operation = getattr(investigation, "resolve", None) if resolved else investigation.run
        if operation is None:
            logger.info("Investigation %s does not handle resolved incidents", investigation.name())
            return InvestigationConclusion()

        mark = len(ctx.notes.lines())

        def _attempt() -> InvestigationConclusion:
            ctx.notes.truncate(mark)
            return operation(ctx)

        try:
            return with_retries(
                _attempt,
                self.retry_policy,
                should_retry=should_retry,
                sleep=self._sleep,
                description=f"investigation {investigation.name()}",
            )
        except FindingError as e:
            ctx.notes.truncate(mark)
            ctx.notes.append_warning(f"Investigation could not reach a conclusion: {e}")
            return ConclusionBuilder(ctx.notes).escalate(INCOMPLETE_REASON)
        except Exception as e:
            ctx.notes.truncate(mark)
            return self._failed(ctx.notes, e)

    @staticmethod
    def _failed(notes: NoteWriter, err: BaseException) -> InvestigationConclusion:
        logger.error("Investigation failed: %s", err)
        notes.append_warning(f"Automated investigation failed, please investigate manually: {err}")
        return ConclusionBuilder(notes).escalate(FAILED_REASON)


def run_investigation(
    payload: Union[bytes, str, Dict[str, Any]],
    config: TriageConfig,
    metrics: Optional[MetricsRecorder] = None,
    **kwargs: Any,
) -> RunResult:
    """Build the clients for `payload` and run the matching investigation."""
    metrics = metrics or MetricsRecorder(config.pushgateway)
    pagerduty = get_pagerduty_client(payload, config.pd_token, config.silent_policy)
    return InvestigationRunner(config, metrics, **kwargs).run(pagerduty)
