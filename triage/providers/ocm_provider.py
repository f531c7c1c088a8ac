"""
Cluster-management (OCM) API client.

Authenticates with the OAuth client-credentials grant; tokens are cached and
refreshed shortly before expiry. Methods raise on failure (`requests.HTTPError`
or `ProviderError`); callers decide how to classify the error.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any, Dict, List, Optional, Protocol, runtime_checkable

import requests

from triage.config import TriageConfig
from triage.core.errors import AmbiguousClusterError, ClusterNotFoundError, ProviderError
from triage.core.models import AdvisoryEntry, ClusterDeployment, ClusterRecord, MachinePool, RestrictionReason

logger = logging.getLogger(__name__)

_UNINSTALLING_MSG = "Operation is not allowed for a cluster in 'uninstalling' state"


@runtime_checkable
class OcmClient(Protocol):
    """Protocol for the cluster-management API used by investigations."""

    # Clusters
    def get_cluster(self, identifier: str) -> ClusterRecord: ...

    def get_cluster_deployment(self, cluster_id: str) -> ClusterDeployment: ...

    def get_machine_pools(self, cluster_id: str) -> List[MachinePool]: ...

    def get_support_role_arn(self, cluster_id: str) -> str: ...

    def get_organization_id(self, cluster: ClusterRecord) -> str: ...

    def is_access_protected(self, cluster: ClusterRecord) -> bool: ...

    # Restrictions (limited support reasons)
    def list_restrictions(self, cluster_id: str) -> List[RestrictionReason]: ...

    def restriction_exists(self, cluster_id: str, summary: str, details: str) -> bool: ...

    def post_restriction(self, cluster_id: str, summary: str, details: str) -> None: ...

    def delete_restriction(self, cluster_id: str, reason_id: str) -> None: ...

    # Advisories (service logs)
    def list_advisories(self, cluster: ClusterRecord, search: str = "") -> List[AdvisoryEntry]: ...

    def post_advisory(
        self,
        cluster: ClusterRecord,
        severity: str,
        summary: str,
        description: str,
        service_name: str,
        internal_only: bool = False,
    ) -> None: ...


class DefaultOcmClient:
    """
    Default OCM client over the REST API.

    Configuration (see `triage.config`):
    - TRIAGE_OCM_URL: API base URL
    - TRIAGE_OCM_TOKEN_URL: SSO token endpoint
    - TRIAGE_OCM_CLIENT_ID / TRIAGE_OCM_CLIENT_SECRET: service account credentials
    """

    def __init__(self, base_url: str, token_url: str, client_id: str, client_secret: str, timeout: int = 30) -> None:
        self.base_url = base_url.rstrip("/")
        self.token_url = token_url
        self.client_id = client_id
        self.client_secret = client_secret
        self.timeout = timeout

        self._token: Optional[str] = None
        self._token_expires_at: float = 0.0

    def _get_token(self) -> str:
        # Refresh one minute before expiry
        if self._token and time.time() < self._token_expires_at - 60:
            return self._token

        if not self.client_id or not self.client_secret:
            raise ValueError("TRIAGE_OCM_CLIENT_ID and TRIAGE_OCM_CLIENT_SECRET required")

        response = requests.post(
            self.token_url,
            data={
                "grant_type": "client_credentials",
                "client_id": self.client_id,
                "client_secret": self.client_secret,
            },
            timeout=self.timeout,
        )
        response.raise_for_status()
        data = response.json()
        self._token = data["access_token"]
        self._token_expires_at = time.time() + int(data.get("expires_in", 300))
        return self._token

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        headers = kwargs.pop("headers", {})
        headers.update({"Authorization": f"Bearer {self._get_token()}", "Accept": "application/json"})
        kwargs["headers"] = headers
        kwargs.setdefault("timeout", self.timeout)

        response = requests.request(method, f"{self.base_url}{path}", **kwargs)
        response.raise_for_status()
        return response

    def _get_json(self, path: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._request("GET", path, params=params).json() or {}

    # ========================================================================
    # Clusters
    # ========================================================================

    def get_cluster(self, identifier: str) -> ClusterRecord:
        """Look a cluster up by internal id, external id or display name."""
        query = f"(id like '{identifier}' or external_id like '{identifier}' or display_name like '{identifier}')"
        data = self._get_json("/api/clusters_mgmt/v1/clusters", params={"search": query})
        items = data.get("items") or []
        total = int(data.get("total", len(items)))
        if total > 1:
            raise AmbiguousClusterError(f"the provided cluster identifier is ambiguous: {identifier}")
        if total == 0 or not items:
            raise ClusterNotFoundError(f"no cluster found for {identifier}")
        return ClusterRecord.model_validate(items[0])

    def _get_live_resource(self, cluster_id: str, key: str) -> Dict[str, Any]:
        data = self._get_json(f"/api/clusters_mgmt/v1/clusters/{cluster_id}/resources/live")
        raw = (data.get("resources") or {}).get(key)
        if not raw:
            raise ProviderError(f"resource {key} not found for cluster {cluster_id}")
        try:
            return json.loads(raw)
        except ValueError as e:
            raise ProviderError(f"failed to decode resource {key} for cluster {cluster_id}: {e}") from e

    def get_cluster_deployment(self, cluster_id: str) -> ClusterDeployment:
        return ClusterDeployment.from_resource(self._get_live_resource(cluster_id, "cluster_deployment"))

    def get_machine_pools(self, cluster_id: str) -> List[MachinePool]:
        data = self._get_json(f"/api/clusters_mgmt/v1/clusters/{cluster_id}/machine_pools", params={"size": -1})
        return [MachinePool.model_validate(item) for item in data.get("items") or []]

    def get_support_role_arn(self, cluster_id: str) -> str:
        claim = self._get_live_resource(cluster_id, "aws_account_claim")
        arn = (claim.get("spec") or {}).get("supportRoleARN") or ""
        if not arn:
            raise ProviderError("AccountClaim is invalid: supportRoleARN is not present in the AccountClaim")
        return arn

    def get_organization_id(self, cluster: ClusterRecord) -> str:
        if not cluster.subscription.id:
            raise ProviderError(f"cluster {cluster.id} has no subscription")
        data = self._get_json(f"/api/accounts_mgmt/v1/subscriptions/{cluster.subscription.id}")
        return data.get("organization_id") or ""

    def is_access_protected(self, cluster: ClusterRecord) -> bool:
        data = self._get_json("/api/access_transparency/v1/access_protection", params={"clusterId": cluster.id})
        return bool(data.get("enabled"))

    # ========================================================================
    # Restrictions
    # ========================================================================

    def list_restrictions(self, cluster_id: str) -> List[RestrictionReason]:
        data = self._get_json(f"/api/clusters_mgmt/v1/clusters/{cluster_id}/limited_support_reasons")
        return [RestrictionReason.model_validate(item) for item in data.get("items") or []]

    def restriction_exists(self, cluster_id: str, summary: str, details: str) -> bool:
        return any(r.matches(summary, details) for r in self.list_restrictions(cluster_id))

    def post_restriction(self, cluster_id: str, summary: str, details: str) -> None:
        body = {"summary": summary, "details": details, "detection_type": "manual"}
        try:
            self._request("POST", f"/api/clusters_mgmt/v1/clusters/{cluster_id}/limited_support_reasons", json=body)
        except requests.HTTPError as e:
            text = e.response.text if e.response is not None else str(e)
            if _UNINSTALLING_MSG in text:
                logger.info("Cluster %s is uninstalling, not posting limited support reason", cluster_id)
                return
            raise

    def delete_restriction(self, cluster_id: str, reason_id: str) -> None:
        self._request("DELETE", f"/api/clusters_mgmt/v1/clusters/{cluster_id}/limited_support_reasons/{reason_id}")

    # ========================================================================
    # Advisories
    # ========================================================================

    def list_advisories(self, cluster: ClusterRecord, search: str = "") -> List[AdvisoryEntry]:
        params: Dict[str, Any] = {"size": -1}
        if search:
            params["search"] = search
        data = self._get_json(f"/api/service_logs/v1/clusters/{cluster.external_id}/cluster_logs", params=params)
        return [AdvisoryEntry.model_validate(item) for item in data.get("items") or []]

    def post_advisory(
        self,
        cluster: ClusterRecord,
        severity: str,
        summary: str,
        description: str,
        service_name: str,
        internal_only: bool = False,
    ) -> None:
        body = {
            "severity": severity,
            "service_name": service_name,
            "summary": summary,
            "description": description,
            "internal_only": internal_only,
            "cluster_uuid": cluster.external_id,
            "cluster_id": cluster.id,
            "subscription_id": cluster.subscription.id,
        }
        self._request("POST", "/api/service_logs/v1/cluster_logs", json=body)


def get_ocm_client(config: TriageConfig) -> OcmClient:
    """Factory function for the OCM client (allows future swapping)."""
    return DefaultOcmClient(
        base_url=config.ocm_url,
        token_url=config.ocm_token_url,
        client_id=config.ocm_client_id,
        client_secret=config.ocm_client_secret,
    )
