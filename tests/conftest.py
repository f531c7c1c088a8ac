"""
Pytest config.

Local imports like `import triage` rely on the repo root being on sys.path. When a
global `pytest` entrypoint is used that doesn't happen reliably during collection,
so we pin it here.

Also provides in-memory fakes for the three external platforms. They record every
call so tests can assert on side effects, and expose plain attributes for the data
they return.
"""

from __future__ import annotations

import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import pytest


def _ensure_repo_root_on_syspath() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    repo_root_str = str(repo_root)
    if repo_root_str not in sys.path:
        sys.path.insert(0, repo_root_str)


_ensure_repo_root_on_syspath()

from triage.core.models import (  # noqa: E402
    AdvisoryEntry,
    ClusterDeployment,
    ClusterRecord,
    IncidentData,
    MachinePool,
    RestrictionReason,
)
from triage.core.notes import NoteWriter  # noqa: E402
from triage.resources import AlertContext  # noqa: E402

NOW = datetime(2024, 6, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeOcm:
    """In-memory cluster-management API."""

    def __init__(self, cluster: Optional[ClusterRecord] = None) -> None:
        self.cluster = cluster
        self.deployment = ClusterDeployment(name="cd", namespace="uhc-production-abc", infra_id="infra-1")
        self.machine_pools: List[MachinePool] = [MachinePool(id="worker", replicas=2)]
        self.support_role_arn = "arn:aws:iam::123456789012:role/ManagedOpenShift-Support-abc"
        self.organization_id = "org-1"
        self.access_protected = False
        self.access_protection_error: Optional[Exception] = None
        self.restrictions: List[RestrictionReason] = []
        self.advisories: List[AdvisoryEntry] = []
        self.calls: List[tuple] = []
        self._next_id = 0

    def get_cluster(self, identifier: str) -> ClusterRecord:
        self.calls.append(("get_cluster", identifier))
        if self.cluster is None:
            from triage.core.errors import ClusterNotFoundError

            raise ClusterNotFoundError(f"no cluster found for {identifier}")
        return self.cluster

    def get_cluster_deployment(self, cluster_id: str) -> ClusterDeployment:
        self.calls.append(("get_cluster_deployment", cluster_id))
        return self.deployment

    def get_machine_pools(self, cluster_id: str) -> List[MachinePool]:
        self.calls.append(("get_machine_pools", cluster_id))
        return self.machine_pools

    def get_support_role_arn(self, cluster_id: str) -> str:
        self.calls.append(("get_support_role_arn", cluster_id))
        return self.support_role_arn

    def get_organization_id(self, cluster: ClusterRecord) -> str:
        self.calls.append(("get_organization_id", cluster.id))
        return self.organization_id

    def is_access_protected(self, cluster: ClusterRecord) -> bool:
        self.calls.append(("is_access_protected", cluster.id))
        if self.access_protection_error is not None:
            raise self.access_protection_error
        return self.access_protected

    def list_restrictions(self, cluster_id: str) -> List[RestrictionReason]:
        self.calls.append(("list_restrictions", cluster_id))
        return list(self.restrictions)

    def restriction_exists(self, cluster_id: str, summary: str, details: str) -> bool:
        self.calls.append(("restriction_exists", cluster_id, summary))
        return any(r.matches(summary, details) for r in self.restrictions)

    def post_restriction(self, cluster_id: str, summary: str, details: str) -> None:
        self.calls.append(("post_restriction", cluster_id, summary))
        self._next_id += 1
        self.restrictions.append(RestrictionReason(id=f"ls-{self._next_id}", summary=summary, details=details))

    def delete_restriction(self, cluster_id: str, reason_id: str) -> None:
        self.calls.append(("delete_restriction", cluster_id, reason_id))
        self.restrictions = [r for r in self.restrictions if r.id != reason_id]

    def list_advisories(self, cluster: ClusterRecord, search: str = "") -> List[AdvisoryEntry]:
        self.calls.append(("list_advisories", cluster.id, search))
        return list(self.advisories)

    def post_advisory(
        self,
        cluster: ClusterRecord,
        severity: str,
        summary: str,
        description: str,
        service_name: str,
        internal_only: bool = False,
    ) -> None:
        self.calls.append(("post_advisory", cluster.id, severity, summary))
        self.advisories.append(
            AdvisoryEntry(summary=summary, description=description, severity=severity, service_name=service_name)
        )

    def names(self) -> List[str]:
        return [c[0] for c in self.calls]


class FakePagerDuty:
    """Incident paging client bound to one incident."""

    def __init__(self, title: str = "cluster has gone missing", event_type: str = "incident.triggered") -> None:
        self._incident = IncidentData(incident_id="Q1", title=title, event_type=event_type)
        self.cluster_id = "abc"
        self.notes: List[str] = []
        self.calls: List[str] = []
        self.fail_with: Dict[str, Exception] = {}

    @property
    def incident(self) -> IncidentData:
        return self._incident

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_with:
            raise self.fail_with[name]

    def add_note(self, content: str) -> None:
        self._call("add_note")
        self.notes.append(content)

    def silence_incident(self) -> None:
        self._call("silence_incident")

    def escalate_incident(self) -> None:
        self._call("escalate_incident")

    def update_title(self, title: str) -> None:
        self._call("update_title")
        self._incident = self._incident.model_copy(update={"title": title})

    def retrieve_cluster_id(self) -> str:
        self._call("retrieve_cluster_id")
        return self.cluster_id


class FakeAws:
    """Cloud-provider client for one account."""

    def __init__(self) -> None:
        self.non_running: List[Any] = []
        self.running: List[Any] = []
        self.stop_events: List[Any] = []
        self.route_tables: Dict[str, Dict[str, Any]] = {}
        self.fail_with: Dict[str, Exception] = {}
        self.calls: List[str] = []

    def _call(self, name: str) -> None:
        self.calls.append(name)
        if name in self.fail_with:
            raise self.fail_with[name]

    def list_non_running_instances(self, infra_id: str):
        self._call("list_non_running_instances")
        return list(self.non_running)

    def list_running_instances(self, infra_id: str):
        self._call("list_running_instances")
        return list(self.running)

    def poll_instance_stop_events(self, instances, retry_times: int):
        self._call("poll_instance_stop_events")
        return list(self.stop_events)

    def get_security_group_id(self, infra_id: str) -> str:
        self._call("get_security_group_id")
        return "sg-1"

    def get_subnet_ids(self, infra_id: str) -> List[str]:
        self._call("get_subnet_ids")
        return ["subnet-private"]

    def is_subnet_private(self, subnet_id: str) -> bool:
        self._call("is_subnet_private")
        return True

    def get_route_table_for_subnet(self, subnet_id: str) -> Dict[str, Any]:
        self._call("get_route_table_for_subnet")
        return self.route_tables.get(subnet_id, {"Routes": [{"DestinationCidrBlock": "0.0.0.0/0"}]})

    def get_credentials(self) -> Dict[str, str]:
        return {"AWS_ACCESS_KEY_ID": "AKIA", "AWS_SECRET_ACCESS_KEY": "secret", "AWS_SESSION_TOKEN": ""}


class FakeVerifier:
    """Stands in for NetworkVerifier; returns a fixed result or raises."""

    def __init__(self, result=None, failures: str = "", error: Optional[Exception] = None) -> None:
        from triage.providers.network_verifier import VerifierResult

        self.result = VerifierResult.SUCCESS if result is None else result
        self.failures = failures
        self.error = error
        self.runs = 0

    def run(self, cluster, deployment, aws):
        self.runs += 1
        if self.error is not None:
            raise self.error
        return self.result, self.failures


def make_cluster(**overrides: Any) -> ClusterRecord:
    data: Dict[str, Any] = {
        "id": "abc",
        "external_id": "ext-abc",
        "name": "demo",
        "state": "ready",
        "region": {"id": "us-east-1"},
        "cloud_provider": {"id": "aws"},
        "product": {"id": "osd"},
        "subscription": {"id": "sub-1"},
        "ccs": {"enabled": True},
        "nodes": {"master": 3, "infra": 2, "compute": 2},
    }
    data.update(overrides)
    return ClusterRecord.model_validate(data)


@pytest.fixture
def cluster() -> ClusterRecord:
    return make_cluster()


@pytest.fixture
def ocm(cluster: ClusterRecord) -> FakeOcm:
    return FakeOcm(cluster)


@pytest.fixture
def pagerduty() -> FakePagerDuty:
    return FakePagerDuty()


@pytest.fixture
def aws() -> FakeAws:
    return FakeAws()


@pytest.fixture
def ctx(cluster: ClusterRecord, ocm: FakeOcm, pagerduty: FakePagerDuty, aws: FakeAws) -> AlertContext:
    """A fully resolved context for a ready AWS cluster."""
    return AlertContext(
        cluster_id=cluster.id,
        alert_type="Test",
        ocm=ocm,
        pagerduty=pagerduty,
        notes=NoteWriter("Test"),
        cluster=cluster,
        cluster_deployment=ocm.deployment,
        aws=aws,
    )


@pytest.fixture
def cluster_factory():
    return make_cluster


@pytest.fixture
def verifier_factory():
    return FakeVerifier


@pytest.fixture
def now() -> datetime:
    return NOW
