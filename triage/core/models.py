"""Domain models shared by providers, investigations and the executor.

Upstream API payloads are parsed permissively (`extra="allow"`); the fields
listed here are the ones the decision trees read.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class BaseModelAllowExtra(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)


class BaseModelStrict(BaseModel):
    model_config = ConfigDict(extra="forbid")


def _ensure_utc(v: Optional[datetime]) -> Optional[datetime]:
    if isinstance(v, datetime) and v.tzinfo is None:
        return v.replace(tzinfo=timezone.utc)
    return v


# ============================================================================
# Cluster-management records
# ============================================================================


class IdRef(BaseModelAllowExtra):
    id: str = ""


class ClusterNodes(BaseModelAllowExtra):
    master: int = 0
    infra: int = 0
    compute: int = 0


class ClusterStatus(BaseModelAllowExtra):
    dns_ready: bool = True
    provision_error_code: str = ""
    provision_error_message: str = ""


class ClusterAws(BaseModelAllowExtra):
    subnet_ids: List[str] = Field(default_factory=list)
    private_link: bool = False
    kms_key_arn: str = ""
    sts: Dict[str, Any] = Field(default_factory=dict)


class ClusterProxy(BaseModelAllowExtra):
    http_proxy: str = ""
    https_proxy: str = ""
    no_proxy: str = ""


class ClusterRecord(BaseModelAllowExtra):
    id: str
    external_id: str = ""
    name: str = ""
    display_name: str = ""
    state: str = ""
    region: IdRef = Field(default_factory=IdRef)
    cloud_provider: IdRef = Field(default_factory=IdRef)
    product: IdRef = Field(default_factory=IdRef)
    subscription: IdRef = Field(default_factory=IdRef)
    ccs: Dict[str, Any] = Field(default_factory=dict)
    nodes: ClusterNodes = Field(default_factory=ClusterNodes)
    status: ClusterStatus = Field(default_factory=ClusterStatus)
    aws: Optional[ClusterAws] = None
    proxy: Optional[ClusterProxy] = None
    additional_trust_bundle: str = ""
    infra_id: str = ""

    @property
    def is_ccs(self) -> bool:
        return bool(self.ccs.get("enabled"))

    @property
    def is_aws(self) -> bool:
        return self.cloud_provider.id == "aws"

    @property
    def region_id(self) -> str:
        return self.region.id


class ClusterDeployment(BaseModelAllowExtra):
    """The subset of the hive ClusterDeployment resource the trees need."""

    name: str = ""
    namespace: str = ""
    infra_id: str

    @classmethod
    def from_resource(cls, resource: Dict[str, Any]) -> "ClusterDeployment":
        metadata = resource.get("metadata") or {}
        cluster_metadata = (resource.get("spec") or {}).get("clusterMetadata") or {}
        return cls(
            name=metadata.get("name", ""),
            namespace=metadata.get("namespace", ""),
            infra_id=cluster_metadata.get("infraID", ""),
        )


class MachinePoolAutoscaling(BaseModelAllowExtra):
    min_replicas: int = 0
    max_replicas: int = 0


class MachinePool(BaseModelAllowExtra):
    id: str = ""
    replicas: Optional[int] = None
    autoscaling: Optional[MachinePoolAutoscaling] = None


class RestrictionReason(BaseModelAllowExtra):
    """A limited-support reason. Identity is the (summary, details) pair."""

    id: str = ""
    summary: str
    details: str = ""

    def matches(self, summary: str, details: str) -> bool:
        return self.summary == summary and self.details == details


class AdvisoryEntry(BaseModelAllowExtra):
    """A service log entry read back from the cluster's history."""

    id: str = ""
    summary: str = ""
    description: str = ""
    service_name: str = ""
    severity: str = ""
    username: str = ""
    log_type: str = ""
    timestamp: Optional[datetime] = None
    internal_only: bool = False

    @field_validator("timestamp")
    @classmethod
    def _ensure_timezone_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(v)


# ============================================================================
# Cloud provider records
# ============================================================================


class Instance(BaseModelAllowExtra):
    instance_id: str
    state: str = ""
    tags: Dict[str, str] = Field(default_factory=dict)
    state_transition_reason: str = ""

    @property
    def name(self) -> str:
        return self.tags.get("Name", "")

    @classmethod
    def from_ec2(cls, raw: Dict[str, Any]) -> "Instance":
        return cls(
            instance_id=raw.get("InstanceId", ""),
            state=(raw.get("State") or {}).get("Name", ""),
            tags={t.get("Key", ""): t.get("Value", "") for t in raw.get("Tags") or []},
            state_transition_reason=raw.get("StateTransitionReason") or "",
        )


class AuditEvent(BaseModelAllowExtra):
    """A CloudTrail stop/terminate event, with the raw JSON payload kept as a string."""

    event_id: str = ""
    event_name: str = ""
    event_time: Optional[datetime] = None
    username: str = ""
    resource_names: List[str] = Field(default_factory=list)
    cloudtrail_event: str = ""

    @field_validator("event_time")
    @classmethod
    def _ensure_timezone_aware(cls, v: Optional[datetime]) -> Optional[datetime]:
        return _ensure_utc(v)

    @classmethod
    def from_cloudtrail(cls, raw: Dict[str, Any]) -> "AuditEvent":
        return cls(
            event_id=raw.get("EventId", ""),
            event_name=raw.get("EventName", ""),
            event_time=raw.get("EventTime"),
            username=raw.get("Username") or "",
            resource_names=[r.get("ResourceName", "") for r in raw.get("Resources") or []],
            cloudtrail_event=raw.get("CloudTrailEvent") or "",
        )


class SessionIssuer(BaseModelAllowExtra):
    type: str = ""
    user_name: str = Field(default="", alias="userName")


class SessionContext(BaseModelAllowExtra):
    session_issuer: Optional[SessionIssuer] = Field(default=None, alias="sessionIssuer")


class UserIdentity(BaseModelAllowExtra):
    type: str = ""
    session_context: Optional[SessionContext] = Field(default=None, alias="sessionContext")


class CloudTrailPayload(BaseModelAllowExtra):
    """The decoded `CloudTrailEvent` JSON."""

    event_version: str = Field(default="", alias="eventVersion")
    user_identity: Optional[UserIdentity] = Field(default=None, alias="userIdentity")

    @property
    def issuer_user_name(self) -> str:
        identity = self.user_identity
        if identity is None or identity.session_context is None or identity.session_context.session_issuer is None:
            return ""
        return identity.session_context.session_issuer.user_name

    @classmethod
    def from_json(cls, raw: str) -> "CloudTrailPayload":
        return cls.model_validate(json.loads(raw))


# ============================================================================
# Incident paging
# ============================================================================


class IncidentData(BaseModelStrict):
    incident_id: str
    title: str = ""
    service_id: str = ""
    service_name: str = ""
    event_type: str = ""
    html_url: str = ""

    @property
    def is_resolved(self) -> bool:
        return self.event_type == "incident.resolved"
