"""
Per-alert execution context.

An investigation declares the capabilities it needs; `ResourceResolver.build()`
fetches exactly those (plus their prerequisites) and returns an `AlertContext`.
Fetch failures are raised as they come from the providers, unclassified, so
callers can inspect them (e.g. revoked customer credentials vs. an outage).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Optional, Set

from triage.core.models import ClusterDeployment, ClusterRecord
from triage.core.notes import NoteWriter
from triage.providers.aws_provider import AwsClient
from triage.providers.ocm_provider import OcmClient
from triage.providers.pagerduty_provider import PagerDutyClient

logger = logging.getLogger(__name__)

# (cluster, support_role_arn) -> client for the cluster's account
AwsClientFactory = Callable[[ClusterRecord, str], AwsClient]


class Capability(str, Enum):
    CLUSTER = "cluster"
    CLUSTER_DEPLOYMENT = "cluster_deployment"
    AWS_CLIENT = "aws_client"
    NOTES = "notes"


_IMPLIES: Dict[Capability, Set[Capability]] = {
    Capability.CLUSTER_DEPLOYMENT: {Capability.CLUSTER},
    Capability.AWS_CLIENT: {Capability.CLUSTER},
}


@dataclass
class AlertContext:
    """Everything a decision tree may touch. Owned by one run."""

    cluster_id: str
    alert_type: str
    ocm: OcmClient
    pagerduty: PagerDutyClient
    notes: NoteWriter
    cluster: Optional[ClusterRecord] = None
    cluster_deployment: Optional[ClusterDeployment] = None
    aws: Optional[AwsClient] = None

    def require_cluster(self) -> ClusterRecord:
        if self.cluster is None:
            raise RuntimeError("cluster was not requested for this investigation")
        return self.cluster

    def require_aws(self) -> AwsClient:
        if self.aws is None:
            raise RuntimeError("aws client was not requested for this investigation")
        return self.aws


class ResourceResolver:
    def __init__(
        self,
        cluster_id: str,
        alert_type: str,
        ocm: OcmClient,
        pagerduty: PagerDutyClient,
        aws_factory: Optional[AwsClientFactory] = None,
    ) -> None:
        self.cluster_id = cluster_id
        self.alert_type = alert_type
        self.ocm = ocm
        self.pagerduty = pagerduty
        self.aws_factory = aws_factory
        self._requested: Set[Capability] = set()
        self._resolved: Dict[Capability, Any] = {}

    def request(self, *capabilities: Capability) -> "ResourceResolver":
        for capability in capabilities:
            self._requested.add(capability)
            self._requested.update(_IMPLIES.get(capability, set()))
        return self

    @property
    def requested(self) -> Set[Capability]:
        return set(self._requested)

    def resolve(self, capability: Capability) -> Any:
        """Resolve one capability; repeated calls return the same object."""
        if capability in self._resolved:
            return self._resolved[capability]

        for prerequisite in sorted(_IMPLIES.get(capability, set()), key=lambda c: c.value):
            self.resolve(prerequisite)

        if capability is Capability.CLUSTER:
            value: Any = self.ocm.get_cluster(self.cluster_id)
        elif capability is Capability.CLUSTER_DEPLOYMENT:
            value = self.ocm.get_cluster_deployment(self._resolved[Capability.CLUSTER].id)
        elif capability is Capability.AWS_CLIENT:
            value = self._build_aws_client(self._resolved[Capability.CLUSTER])
        elif capability is Capability.NOTES:
            value = NoteWriter(self.alert_type)
        else:
            raise ValueError(f"unknown capability: {capability}")

        self._resolved[capability] = value
        return value

    def _build_aws_client(self, cluster: ClusterRecord) -> AwsClient:
        if self.aws_factory is None:
            raise RuntimeError("no aws client factory configured")
        support_role_arn = self.ocm.get_support_role_arn(cluster.id)
        logger.info("Assuming support role %s for cluster %s", support_role_arn, cluster.id)
        return self.aws_factory(cluster, support_role_arn)

    def build(self) -> AlertContext:
        """Resolve every requested capability and return the context."""
        order = [Capability.CLUSTER, Capability.CLUSTER_DEPLOYMENT, Capability.AWS_CLIENT, Capability.NOTES]
        for capability in order:
            if capability in self._requested:
                self.resolve(capability)

        notes = self._resolved.get(Capability.NOTES) or self.resolve(Capability.NOTES)
        cluster = self._resolved.get(Capability.CLUSTER)
        return AlertContext(
            cluster_id=cluster.id if cluster is not None else self.cluster_id,
            alert_type=self.alert_type,
            ocm=self.ocm,
            pagerduty=self.pagerduty,
            notes=notes,
            cluster=cluster,
            cluster_deployment=self._resolved.get(Capability.CLUSTER_DEPLOYMENT),
            aws=self._resolved.get(Capability.AWS_CLIENT),
        )
