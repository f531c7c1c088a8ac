"""
Tests for capability-driven resource resolution.
"""

from __future__ import annotations

import pytest

from triage.core.errors import ProviderError
from triage.resources import Capability, ResourceResolver


def _resolver(ocm, pagerduty, factory=None):
    return ResourceResolver("abc", "CHGM", ocm, pagerduty, aws_factory=factory)


def test_only_requested_capabilities_are_fetched(ocm, pagerduty):
    ctx = _resolver(ocm, pagerduty).request(Capability.CLUSTER, Capability.NOTES).build()

    assert ctx.cluster.id == "abc"
    assert ctx.cluster_deployment is None
    assert ctx.aws is None
    assert ocm.names() == ["get_cluster"]


def test_prerequisites_are_implied(ocm, pagerduty, aws):
    resolver = _resolver(ocm, pagerduty, factory=lambda cluster, arn: aws)
    resolver.request(Capability.AWS_CLIENT)

    assert Capability.CLUSTER in resolver.requested

    ctx = resolver.build()
    assert ctx.aws is aws
    assert ocm.names() == ["get_cluster", "get_support_role_arn"]


def test_resolution_is_memoized(ocm, pagerduty):
    resolver = _resolver(ocm, pagerduty).request(Capability.CLUSTER_DEPLOYMENT)

    first = resolver.resolve(Capability.CLUSTER_DEPLOYMENT)
    second = resolver.resolve(Capability.CLUSTER_DEPLOYMENT)
    resolver.build()

    assert first is second
    assert ocm.names().count("get_cluster") == 1
    assert ocm.names().count("get_cluster_deployment") == 1


def test_factory_receives_support_role(ocm, pagerduty, aws):
    seen = []

    def _factory(cluster, arn):
        seen.append((cluster.id, arn))
        return aws

    _resolver(ocm, pagerduty, factory=_factory).request(Capability.AWS_CLIENT).build()

    assert seen == [("abc", ocm.support_role_arn)]


def test_resolution_errors_are_raised_unchanged(ocm, pagerduty):
    err = ProviderError("could not assume support role in customer's account: AccessDenied")

    def _factory(cluster, arn):
        raise err

    resolver = _resolver(ocm, pagerduty, factory=_factory).request(Capability.AWS_CLIENT)

    with pytest.raises(ProviderError) as exc:
        resolver.resolve(Capability.AWS_CLIENT)
    assert exc.value is err


def test_notes_are_shared(ocm, pagerduty):
    resolver = _resolver(ocm, pagerduty)
    notes = resolver.resolve(Capability.NOTES)
    assert resolver.build().notes is notes
