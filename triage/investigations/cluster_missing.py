"""
"Cluster has gone missing" (CHGM): the cluster stopped reporting in.

Decision tree:
1. Look for stopped/terminated instances and who stopped them.
   Customer-stopped -> limited support + silence.
2. Note a recent resume from hibernation (certificate renewal risk).
3. Run the egress verifier.
   Deadman's snitch blocked -> limited support + silence.
   Other targets blocked -> service log + escalate.
4. Otherwise escalate.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, List, Optional, Sequence

from triage.actions.model import DEFAULT_SERVICE_TAG, AdvisoryAction, ConclusionBuilder, InvestigationConclusion
from triage.core.documentation import TOPIC_PRIVATELINK_FIREWALL, documentation_link
from triage.core.errors import FindingError, as_finding, as_infrastructure
from triage.core.models import AuditEvent, ClusterRecord, Instance, MachinePool
from triage.investigations.audit import AuditDecodeError, decode_payload, is_user_allowed_to_stop
from triage.investigations.hibernation import (
    RECENT_WAKEUP_WINDOW,
    STATE_UPDATES_FILTER,
    has_recently_resumed,
    hibernation_periods,
)
from triage.providers.network_verifier import NetworkVerifier, NetworkVerifierError, VerifierResult
from triage.resources import AlertContext, Capability

logger = logging.getLogger(__name__)

NAME = "Cluster Has Gone Missing (CHGM)"
ALERT_TYPE = "ClusterHasGoneMissing"
TITLE_MATCH = "has gone missing"

MONITOR_HOSTNAME = "nosnch.in"
STOP_EVENT_RETRIES = 15

UNSUPPORTED_CONFIG_SUMMARY = "Cluster is in Limited Support due to unsupported cloud provider configuration"
STOPPED_INSTANCES_DETAILS = (
    "Your cluster is no longer checking in with Red Hat OpenShift Cluster Manager due to stopped or terminated "
    "instances. If the instances were stopped, please restart them, as stopping instances is not supported. "
    "If you intended to terminate the cluster, please delete it in the Red Hat console"
)
EGRESS_BLOCKED_DETAILS = (
    "Action required: Network configuration changes detected that block required internet egress, impacting "
    "cluster operation and support. Please revert these changes. For firewall requirements for PrivateLink "
    "clusters and troubleshooting help, see: https://access.redhat.com/articles/7128431"
)
EGRESS_BLOCKED_CONTEXT = "EgressBlocked"
STOPPED_INSTANCES_CONTEXT = "StoppedInstances"

EGRESS_ADVISORY_SEVERITY = "Critical"
EGRESS_ADVISORY_SUMMARY = "Action required: Network misconfiguration"

HIBERNATION_DOC = (
    "https://github.com/openshift/ops-sop/blob/master/v4/alerts/cluster_has_gone_missing.md#24-hibernation"
)
NO_INSTANCES_CAVEAT = "no non running instances found, terminated instances may have already expired"


@dataclass
class RunningNodesCount:
    master: int = 0
    infra: int = 0
    worker: int = 0


@dataclass
class ExpectedNodesCount:
    master: int = 0
    infra: int = 0
    min_worker: int = 0
    max_worker: int = 0


@dataclass
class InstanceInvestigationOutput:
    non_running_instances: List[Instance] = field(default_factory=list)
    running_nodes: RunningNodesCount = field(default_factory=RunningNodesCount)
    expected_nodes: ExpectedNodesCount = field(default_factory=ExpectedNodesCount)
    username: str = ""
    issuer_username: str = ""
    user_authorized: bool = False
    caveat: str = ""


def count_running_nodes(instances: Sequence[Instance]) -> RunningNodesCount:
    counts = RunningNodesCount()
    for instance in instances:
        name = instance.name
        if "master" in name:
            counts.master += 1
        elif "infra" in name:
            counts.infra += 1
        elif "worker" in name:
            counts.worker += 1
    return counts


def expected_nodes(cluster: ClusterRecord, pools: Sequence[MachinePool]) -> ExpectedNodesCount:
    """Minimum/maximum node counts from the cluster record and its machine pools."""
    counts = ExpectedNodesCount(master=cluster.nodes.master, infra=cluster.nodes.infra)
    for pool in pools:
        if pool.replicas is None and pool.autoscaling is None:
            raise ValueError(f"machine pool {pool.id} has neither replicas nor autoscaling data")
        if pool.replicas is not None:
            counts.min_worker += pool.replicas
            counts.max_worker += pool.replicas
        if pool.autoscaling is not None:
            counts.min_worker += pool.autoscaling.min_replicas
            counts.max_worker += pool.autoscaling.max_replicas
    return counts


def egress_advisory(failures: str, product: str) -> AdvisoryAction:
    link = documentation_link(product, TOPIC_PRIVATELINK_FIREWALL)
    description = (
        "Your cluster requires you to take action. SRE has observed that there have been changes made to the "
        "network configuration which impacts normal working of the cluster, including lack of network egress to "
        f"these internet-based resources which are required for the cluster operation and support: {failures}. "
        f"Please revert changes, and refer to documentation regarding firewall requirements for PrivateLink "
        f"clusters: {link}"
    )
    return AdvisoryAction(
        severity=EGRESS_ADVISORY_SEVERITY,
        summary=EGRESS_ADVISORY_SUMMARY,
        description=description,
        service_tag=DEFAULT_SERVICE_TAG,
    )


def _event_resource(event: AuditEvent) -> str:
    if event.resource_names:
        return f"with resource {event.resource_names[0]}"
    return "without resources"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ClusterMissingInvestigation:
    def __init__(
        self,
        verifier: Optional[NetworkVerifier] = None,
        clock: Callable[[], datetime] = _utcnow,
    ) -> None:
        self.verifier = verifier or NetworkVerifier()
        self._clock = clock

    def name(self) -> str:
        return NAME

    def description(self) -> str:
        return "Detects reason for clusters that have gone missing"

    def alert_title_match(self, title: str) -> bool:
        return TITLE_MATCH in title

    def is_experimental(self) -> bool:
        return False

    def requirements(self) -> Sequence[Capability]:
        return (Capability.CLUSTER, Capability.CLUSTER_DEPLOYMENT, Capability.AWS_CLIENT, Capability.NOTES)

    # ========================================================================
    # Step 1 + 2: stopped instances and who stopped them
    # ========================================================================

    def investigate_stopped_instances(self, ctx: AlertContext) -> InstanceInvestigationOutput:
        """
        Raises:
            InfrastructureError for failed platform calls
            FindingError when the data cannot answer the question
        """
        cluster = ctx.require_cluster()
        aws = ctx.require_aws()
        if ctx.cluster_deployment is None:
            raise as_finding("clusterdeployment is empty when investigating stopped instances", "stopped instances")
        infra_id = ctx.cluster_deployment.infra_id

        try:
            stopped = aws.list_non_running_instances(infra_id)
        except Exception as e:
            raise as_infrastructure(e, f"could not retrieve non running instances for {infra_id}") from e
        try:
            running = count_running_nodes(aws.list_running_instances(infra_id))
        except Exception as e:
            raise as_infrastructure(e, f"could not retrieve running cluster nodes for {infra_id}") from e
        try:
            expected = expected_nodes(cluster, ctx.ocm.get_machine_pools(cluster.id))
        except Exception as e:
            raise as_infrastructure(e, f"could not retrieve expected cluster nodes for {infra_id}") from e

        output = InstanceInvestigationOutput(
            non_running_instances=stopped, running_nodes=running, expected_nodes=expected
        )
        if not stopped:
            output.user_authorized = True
            output.caveat = NO_INSTANCES_CAVEAT
            return output

        try:
            events = aws.poll_instance_stop_events(stopped, STOP_EVENT_RETRIES)
        except Exception as e:
            raise as_infrastructure(e, "could not poll stop events for stopped instances") from e
        if not events:
            raise as_finding(
                "there are stopped instances but no stoppedInstancesEvents, this means the instances were "
                "stopped too long ago or CloudTrail is not up to date",
                "stopped instances",
            )

        for event in events:
            try:
                payload = decode_payload(event.cloudtrail_event)
            except AuditDecodeError as e:
                raise as_finding(e, f"could not extract user details for event {_event_resource(event)}") from e

            output.username = event.username
            output.issuer_username = payload.issuer_user_name
            output.user_authorized = is_user_allowed_to_stop(output.username, output.issuer_username, cluster.is_ccs)
            if not output.user_authorized:
                break
        return output

    # ========================================================================
    # Decision tree
    # ========================================================================

    def run(self, ctx: AlertContext) -> InvestigationConclusion:
        cluster = ctx.require_cluster()
        notes = ctx.notes
        result = ConclusionBuilder(notes)

        try:
            output = self.investigate_stopped_instances(ctx)
        except FindingError as e:
            notes.append_warning(f"Could not complete instance investigation: {e}")
            return result.escalate("Investigation incomplete - manual review required")

        if output.caveat:
            notes.append_warning(output.caveat)
        logger.info(
            "Instance investigation: %d non-running, running=%s expected=%s user=%r authorized=%s",
            len(output.non_running_instances),
            output.running_nodes,
            output.expected_nodes,
            output.username,
            output.user_authorized,
        )

        if not output.user_authorized:
            logger.info("Instances were stopped by unauthorized user: %s / %s", output.username, output.issuer_username)
            notes.append_automation("Customer stopped instances. Sent LS and silencing alert.")
            result.restrict(UNSUPPORTED_CONFIG_SUMMARY, STOPPED_INSTANCES_DETAILS, STOPPED_INSTANCES_CONTEXT)
            return result.silence("Customer stopped instances - cluster in limited support")
        notes.append_success("Customer did not stop nodes.")

        self._check_hibernation(ctx, cluster)

        try:
            verifier_result, failures = self.verifier.run(cluster, ctx.cluster_deployment, ctx.require_aws())
        except NetworkVerifierError as e:
            logger.warning("Network verifier failed: %s", e)
            notes.append_warning(f"NetworkVerifier failed to run:\n {e}")
            verifier_result, failures = VerifierResult.UNDEFINED, ""

        if verifier_result is VerifierResult.FAILURE:
            logger.info("Network verifier reported failure: %s", failures)
            if MONITOR_HOSTNAME in failures:
                notes.append_automation(f"Egress `{MONITOR_HOSTNAME}` blocked, sent limited support.")
                result.restrict(UNSUPPORTED_CONFIG_SUMMARY, EGRESS_BLOCKED_DETAILS, EGRESS_BLOCKED_CONTEXT)
                return result.silence("Deadman's snitch blocked - cluster in limited support")

            result.advise(egress_advisory(failures, cluster.product.id))
            notes.append_warning(
                "NetworkVerifier found unreachable targets and sent the SL, but deadmanssnitch is not blocked! "
                f"\n⚠️ Please investigate this cluster.\nUnreachable: \n{failures}"
            )
            return result.escalate("Egress blocked but not deadman's snitch - manual investigation required")
        if verifier_result is VerifierResult.SUCCESS:
            notes.append_success("Network verifier passed")

        return result.escalate("No automated remediation available - manual investigation required")

    def _check_hibernation(self, ctx: AlertContext, cluster: ClusterRecord) -> None:
        try:
            history = ctx.ocm.list_advisories(cluster, search=STATE_UPDATES_FILTER)
        except Exception as e:
            logger.warning("could not check hibernation status of cluster: %s", e)
            return
        if has_recently_resumed(hibernation_periods(history), self._clock()):
            logger.info("The cluster has recently resumed from hibernation.")
            hours = int(RECENT_WAKEUP_WINDOW.total_seconds() // 3600)
            ctx.notes.append_warning(
                f"Cluster has resumed from hibernation within the last {hours} hours - investigate CSRs and "
                f"kubelet certificates: see {HIBERNATION_DOC}"
            )

    # ========================================================================
    # Resolved incidents
    # ========================================================================

    def resolve(self, ctx: AlertContext) -> InvestigationConclusion:
        """The cluster checks in again: lift the stopped-instances restriction if nothing is still stopped."""
        notes = ctx.notes
        result = ConclusionBuilder(notes)
        if ctx.cluster_deployment is None:
            notes.append_warning("clusterdeployment is empty, cannot verify that the instances are running")
            return result.escalate("Investigation incomplete - manual review required")

        try:
            stopped = ctx.require_aws().list_non_running_instances(ctx.cluster_deployment.infra_id)
        except Exception as e:
            raise as_infrastructure(e, "could not retrieve non running instances") from e

        if stopped:
            names = ", ".join(i.instance_id for i in stopped)
            notes.append_warning(f"Cluster is back but instances are still not running: {names}")
            return result.escalate("Cluster recovered with non-running instances - manual review required")

        notes.append_automation("All instances are running, removing the stopped instances limited support reason.")
        result.remove_restriction(UNSUPPORTED_CONFIG_SUMMARY, STOPPED_INSTANCES_DETAILS)
        return result.silence("Cluster is checking in again")
