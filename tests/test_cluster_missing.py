"""
Tests for the "cluster has gone missing" decision tree.
"""

from __future__ import annotations

import json
from datetime import timedelta

import pytest

from triage.actions.model import AdvisoryAction, Escalate, RemoveRestrictionAction, RestrictionAction, Silence
from triage.core.errors import InfrastructureError
from triage.core.models import AdvisoryEntry, AuditEvent, Instance, MachinePool, MachinePoolAutoscaling
from triage.investigations.cluster_missing import (
    EGRESS_BLOCKED_CONTEXT,
    EGRESS_BLOCKED_DETAILS,
    NO_INSTANCES_CAVEAT,
    STOPPED_INSTANCES_CONTEXT,
    STOPPED_INSTANCES_DETAILS,
    UNSUPPORTED_CONFIG_SUMMARY,
    ClusterMissingInvestigation,
    count_running_nodes,
    egress_advisory,
    expected_nodes,
)
from triage.investigations.hibernation import HIBERNATION_END_SUMMARY, HIBERNATION_START_SUMMARY
from triage.providers.network_verifier import NetworkVerifierError, VerifierResult


def _instance(instance_id="i-1", name="infra-1-worker-a"):
    return Instance(
        instance_id=instance_id,
        state="stopped",
        tags={"Name": name},
        state_transition_reason="User initiated (2024-06-01 10:00:00 GMT)",
    )


def _stop_event(username, issuer, version="1.08"):
    payload = {
        "eventVersion": version,
        "userIdentity": {"type": "AssumedRole", "sessionContext": {"sessionIssuer": {"userName": issuer}}},
    }
    return AuditEvent(
        event_name="StopInstances",
        username=username,
        resource_names=["i-1"],
        cloudtrail_event=json.dumps(payload),
    )


@pytest.fixture
def investigation_factory(verifier_factory, now):
    def _make(**verifier_kwargs):
        verifier = verifier_factory(**verifier_kwargs)
        return ClusterMissingInvestigation(verifier=verifier, clock=lambda: now), verifier

    return _make


# ============================================================================
# Helpers
# ============================================================================


def test_count_running_nodes():
    instances = [_instance(name="x-master-0"), _instance(name="x-infra-0"), _instance(name="x-worker-0")]
    instances.append(_instance(name="bastion"))
    counts = count_running_nodes(instances)
    assert (counts.master, counts.infra, counts.worker) == (1, 1, 1)


def test_expected_nodes_from_pools(cluster):
    pools = [
        MachinePool(id="a", replicas=3),
        MachinePool(id="b", autoscaling=MachinePoolAutoscaling(min_replicas=2, max_replicas=5)),
    ]
    counts = expected_nodes(cluster, pools)
    assert (counts.master, counts.infra, counts.min_worker, counts.max_worker) == (3, 2, 5, 8)


def test_expected_nodes_rejects_empty_pool(cluster):
    with pytest.raises(ValueError):
        expected_nodes(cluster, [MachinePool(id="broken")])


def test_egress_advisory_lists_failures():
    advisory = egress_advisory("quay.io:443", "rosa")
    advisory.validate()
    assert advisory.severity == "Critical"
    assert advisory.service_tag == "SREManualAction"
    assert "quay.io:443" in advisory.description


# ============================================================================
# Decision tree
# ============================================================================


def test_customer_stopped_instances(investigation_factory, ctx, aws):
    inv, verifier = investigation_factory()
    aws.non_running = [_instance()]
    aws.stop_events = [_stop_event("alice", "alice-admin")]

    conclusion = inv.run(ctx)

    assert conclusion.action_types() == ["note", "restriction", "silence"]
    restriction = conclusion.actions[1]
    assert isinstance(restriction, RestrictionAction)
    assert restriction.summary == UNSUPPORTED_CONFIG_SUMMARY
    assert restriction.details == STOPPED_INSTANCES_DETAILS
    assert restriction.context_label == STOPPED_INSTANCES_CONTEXT
    assert conclusion.terminal == Silence("Customer stopped instances - cluster in limited support")
    assert "Customer stopped instances. Sent LS and silencing alert." in conclusion.actions[0].content
    assert verifier.runs == 0


def test_sre_stopped_instances_continue_to_verifier(investigation_factory, ctx, aws):
    inv, verifier = investigation_factory()
    aws.non_running = [_instance()]
    aws.stop_events = [_stop_event("RH-SRE-jdoe", "")]

    conclusion = inv.run(ctx)

    assert verifier.runs == 1
    assert conclusion.terminal == Escalate("No automated remediation available - manual investigation required")
    assert "Customer did not stop nodes." in conclusion.actions[0].content
    assert "Network verifier passed" in conclusion.actions[0].content


def test_no_stopped_instances_adds_caveat(investigation_factory, ctx):
    inv, verifier = investigation_factory()

    conclusion = inv.run(ctx)

    assert NO_INSTANCES_CAVEAT in conclusion.actions[0].content
    assert verifier.runs == 1
    assert conclusion.action_types() == ["note", "escalate"]
    assert not conclusion.restriction_set
    assert not conclusion.advisory_sent
    assert conclusion.terminal == Escalate("No automated remediation available - manual investigation required")


def test_first_unauthorized_actor_is_reported(investigation_factory, ctx, aws):
    inv, _ = investigation_factory()
    aws.non_running = [_instance()]
    aws.stop_events = [_stop_event("testuser", "testuser"), _stop_event("RH-SRE-jdoe", "")]

    output = inv.investigate_stopped_instances(ctx)

    assert not output.user_authorized
    assert (output.username, output.issuer_username) == ("testuser", "testuser")


def test_last_authorized_actor_is_reported(investigation_factory, ctx, aws):
    inv, _ = investigation_factory()
    aws.non_running = [_instance()]
    aws.stop_events = [
        _stop_event("RH-SRE-jdoe", ""),
        _stop_event("assumed", "ManagedOpenShift-Support-abc"),
    ]

    output = inv.investigate_stopped_instances(ctx)

    assert output.user_authorized
    assert (output.username, output.issuer_username) == ("assumed", "ManagedOpenShift-Support-abc")


def test_deadmanssnitch_blocked(investigation_factory, ctx):
    inv, _ = investigation_factory(result=VerifierResult.FAILURE, failures="nosnch.in:443, quay.io:443")

    conclusion = inv.run(ctx)

    assert conclusion.action_types() == ["note", "restriction", "silence"]
    restriction = conclusion.actions[1]
    assert restriction.details == EGRESS_BLOCKED_DETAILS
    assert restriction.context_label == EGRESS_BLOCKED_CONTEXT
    assert conclusion.terminal == Silence("Deadman's snitch blocked - cluster in limited support")


def test_other_egress_blocked_sends_advisory_and_escalates(investigation_factory, ctx):
    inv, _ = investigation_factory(result=VerifierResult.FAILURE, failures="quay.io:443")

    conclusion = inv.run(ctx)

    assert conclusion.action_types() == ["note", "advisory", "escalate"]
    assert isinstance(conclusion.actions[1], AdvisoryAction)
    assert conclusion.advisory_sent
    assert conclusion.terminal == Escalate(
        "Egress blocked but not deadman's snitch - manual investigation required"
    )
    assert "quay.io:443" in conclusion.actions[0].content


def test_verifier_error_is_noted(investigation_factory, ctx):
    inv, _ = investigation_factory(error=NetworkVerifierError("failed to get SecurityGroupId"))

    conclusion = inv.run(ctx)

    assert "NetworkVerifier failed to run" in conclusion.actions[0].content
    assert conclusion.terminal == Escalate("No automated remediation available - manual investigation required")


def test_missing_stop_events_is_a_finding(investigation_factory, ctx, aws):
    """Stopped instances without CloudTrail events: escalate, never retry."""
    inv, verifier = investigation_factory()
    aws.non_running = [_instance()]
    aws.stop_events = []

    conclusion = inv.run(ctx)

    assert conclusion.action_types() == ["note", "escalate"]
    assert conclusion.terminal == Escalate("Investigation incomplete - manual review required")
    assert "Could not complete instance investigation" in conclusion.actions[0].content
    assert verifier.runs == 0


def test_undecodable_event_is_a_finding(investigation_factory, ctx, aws):
    inv, _ = investigation_factory()
    aws.non_running = [_instance()]
    aws.stop_events = [_stop_event("alice", "alice-admin", version="1.05")]

    conclusion = inv.run(ctx)

    assert conclusion.terminal == Escalate("Investigation incomplete - manual review required")


def test_missing_cluster_deployment_is_a_finding(investigation_factory, ctx):
    inv, _ = investigation_factory()
    ctx.cluster_deployment = None

    conclusion = inv.run(ctx)

    assert conclusion.terminal == Escalate("Investigation incomplete - manual review required")


def test_platform_failure_propagates_as_infrastructure(investigation_factory, ctx, aws):
    inv, _ = investigation_factory()
    aws.fail_with["list_non_running_instances"] = ConnectionError("throttled")

    with pytest.raises(InfrastructureError) as exc:
        inv.run(ctx)

    assert "could not retrieve non running instances" in str(exc.value)


def test_recent_hibernation_is_noted(investigation_factory, ctx, ocm, now):
    inv, _ = investigation_factory()
    ocm.advisories = [
        AdvisoryEntry(summary=HIBERNATION_START_SUMMARY, timestamp=now - timedelta(days=3)),
        AdvisoryEntry(summary=HIBERNATION_END_SUMMARY, timestamp=now - timedelta(hours=1)),
    ]

    conclusion = inv.run(ctx)

    assert "resumed from hibernation" in conclusion.actions[0].content


def test_hibernation_lookup_failure_is_ignored(investigation_factory, ctx, ocm):
    inv, _ = investigation_factory()

    def _boom(cluster, search=""):
        raise ConnectionError("service logs down")

    ocm.list_advisories = _boom

    conclusion = inv.run(ctx)

    assert conclusion.terminal == Escalate("No automated remediation available - manual investigation required")


# ============================================================================
# Resolved incidents
# ============================================================================


def test_resolve_removes_restriction_and_silences(investigation_factory, ctx):
    inv, _ = investigation_factory()

    conclusion = inv.resolve(ctx)

    assert conclusion.action_types() == ["note", "remove_restriction", "silence"]
    assert conclusion.actions[1] == RemoveRestrictionAction(UNSUPPORTED_CONFIG_SUMMARY, STOPPED_INSTANCES_DETAILS)


def test_resolve_with_instances_still_stopped_escalates(investigation_factory, ctx, aws):
    inv, _ = investigation_factory()
    aws.non_running = [_instance()]

    conclusion = inv.resolve(ctx)

    assert conclusion.action_types() == ["note", "escalate"]
    assert "i-1" in conclusion.actions[0].content
