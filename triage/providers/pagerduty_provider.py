"""
Incident-paging (PagerDuty) client bound to the incident that triggered a run.

Accepted webhook payloads:
- PagerDuty webhook v3: `{"event": {"event_type": ..., "data": {"id", "title", "html_url", "service": {...}}}}`
- Event orchestration: `{"__pd_metadata": {"incident": {"id": ...}}}` (the incident is fetched from the API)
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Protocol, Union, runtime_checkable

import requests
import yaml

from triage.core.errors import ProviderError
from triage.core.models import IncidentData

logger = logging.getLogger(__name__)

PAGERDUTY_API_URL = "https://api.pagerduty.com"
FROM_EMAIL = "sd-sre-platform+pagerduty-configuration-anomaly-detection-agent@redhat.com"
INVESTIGATED_TITLE_PREFIX = "[CAD Investigated]"

_ALREADY_RESOLVED = "Incident Already Resolved"
_ESCALATION_LEVEL = 2


@runtime_checkable
class PagerDutyClient(Protocol):
    """Protocol for acting on the current incident."""

    @property
    def incident(self) -> IncidentData: ...

    def add_note(self, content: str) -> None: ...

    def silence_incident(self) -> None: ...

    def escalate_incident(self) -> None: ...

    def update_title(self, title: str) -> None: ...

    def retrieve_cluster_id(self) -> str: ...


def _load_payload(payload: Union[bytes, str, Dict[str, Any]]) -> Dict[str, Any]:
    if isinstance(payload, dict):
        return payload
    try:
        data = json.loads(payload)
    except ValueError as e:
        raise ProviderError(f"webhook payload is not valid JSON: {e}") from e
    if not isinstance(data, dict):
        raise ProviderError("webhook payload must be a JSON object")
    return data


def parse_webhook_v3(data: Dict[str, Any]) -> Optional[IncidentData]:
    """Return incident data for a v3 webhook, or None when the payload has another shape."""
    event = data.get("event")
    if not isinstance(event, dict):
        return None
    body = event.get("data") or {}
    incident_id = body.get("id")
    if not incident_id:
        return None
    service = body.get("service") or {}
    return IncidentData(
        incident_id=incident_id,
        title=body.get("title") or "",
        service_id=service.get("id") or "",
        service_name=service.get("summary") or "",
        event_type=event.get("event_type") or "",
        html_url=body.get("html_url") or "",
    )


def orchestration_incident_id(data: Dict[str, Any]) -> Optional[str]:
    metadata = data.get("__pd_metadata") or {}
    return (metadata.get("incident") or {}).get("id") or None


def extract_cluster_id(details: Dict[str, Any]) -> Optional[str]:
    """
    Find the cluster id in an alert's custom details.

    Newer alerts carry `cluster_id` directly; older ones embed a YAML document in `notes`.
    """
    cluster_id = details.get("cluster_id")
    if isinstance(cluster_id, str) and cluster_id:
        return cluster_id

    notes = details.get("notes")
    if not isinstance(notes, str) or not notes.strip():
        return None
    try:
        parsed = yaml.safe_load(notes)
    except yaml.YAMLError as e:
        logger.warning("Could not parse alert notes as YAML: %s", e)
        return None
    if isinstance(parsed, dict) and parsed.get("cluster_id"):
        return str(parsed["cluster_id"])
    return None


class DefaultPagerDutyClient:
    """PagerDuty REST client for a single incident."""

    def __init__(
        self,
        token: str,
        silent_policy: str,
        incident: IncidentData,
        base_url: str = PAGERDUTY_API_URL,
        timeout: int = 30,
    ) -> None:
        self.token = token
        self.silent_policy = silent_policy
        self._incident = incident
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._cluster_id: Optional[str] = None

    @property
    def incident(self) -> IncidentData:
        return self._incident

    def _request(self, method: str, path: str, **kwargs: Any) -> requests.Response:
        headers = kwargs.pop("headers", {})
        headers.update(
            {
                "Authorization": f"Token token={self.token}",
                "Accept": "application/vnd.pagerduty+json;version=2",
                "Content-Type": "application/json",
                "From": FROM_EMAIL,
            }
        )
        kwargs["headers"] = headers
        kwargs.setdefault("timeout", self.timeout)

        response = requests.request(method, f"{self.base_url}{path}", **kwargs)
        response.raise_for_status()
        return response

    def _update_incident(self, fields: Dict[str, Any], what: str) -> None:
        body = {"incidents": [{"id": self._incident.incident_id, "type": "incident_reference", **fields}]}
        try:
            self._request("PUT", "/incidents", json=body)
        except requests.HTTPError as e:
            text = e.response.text if e.response is not None else str(e)
            if _ALREADY_RESOLVED in text:
                logger.info("Skipped %s, incident %s is already resolved", what, self._incident.incident_id)
                return
            raise

    def add_note(self, content: str) -> None:
        self._request("POST", f"/incidents/{self._incident.incident_id}/notes", json={"note": {"content": content}})

    def silence_incident(self) -> None:
        if not self.silent_policy:
            raise ProviderError("TRIAGE_SILENT_POLICY is not configured")
        logger.info("Moving incident %s to escalation policy %s", self._incident.incident_id, self.silent_policy)
        self._update_incident(
            {"escalation_policy": {"id": self.silent_policy, "type": "escalation_policy_reference"}},
            "silencing",
        )

    def escalate_incident(self) -> None:
        logger.info("Escalating incident %s", self._incident.incident_id)
        self._update_incident({"escalation_level": _ESCALATION_LEVEL}, "escalation")

    def update_title(self, title: str) -> None:
        self._update_incident({"title": title}, "title update")
        self._incident = self._incident.model_copy(update={"title": title})

    def get_alert_details(self) -> List[Dict[str, Any]]:
        data = self._request("GET", f"/incidents/{self._incident.incident_id}/alerts").json() or {}
        return [((a.get("body") or {}).get("details") or {}) for a in data.get("alerts") or []]

    def retrieve_cluster_id(self) -> str:
        if self._cluster_id:
            return self._cluster_id
        details = self.get_alert_details()
        if len(details) > 1:
            logger.warning(
                "Incident %s has %d alerts, using the first one with a cluster id",
                self._incident.incident_id,
                len(details),
            )
        for detail in details:
            cluster_id = extract_cluster_id(detail)
            if cluster_id:
                self._cluster_id = cluster_id
                return cluster_id
        raise ProviderError("could not find a clusterID in the given alerts")


def get_pagerduty_client(
    payload: Union[bytes, str, Dict[str, Any]],
    token: str,
    silent_policy: str,
    base_url: str = PAGERDUTY_API_URL,
) -> DefaultPagerDutyClient:
    """Build a client for the incident described by a webhook payload."""
    if not token:
        raise ValueError("TRIAGE_PD_TOKEN required")
    data = _load_payload(payload)

    incident = parse_webhook_v3(data)
    if incident is not None:
        return DefaultPagerDutyClient(token, silent_policy, incident, base_url=base_url)

    incident_id = orchestration_incident_id(data)
    if not incident_id:
        raise ProviderError("payload is neither a v3 webhook nor an event orchestration webhook")

    logger.info("Fetching incident %s for event orchestration payload", incident_id)
    client = DefaultPagerDutyClient(token, silent_policy, IncidentData(incident_id=incident_id), base_url=base_url)
    fetched = (client._request("GET", f"/incidents/{incident_id}").json() or {}).get("incident") or {}
    service = fetched.get("service") or {}
    client._incident = IncidentData(
        incident_id=incident_id,
        title=fetched.get("title") or "",
        service_id=service.get("id") or "",
        service_name=service.get("summary") or "",
        event_type="incident.triggered",
        html_url=fetched.get("html_url") or "",
    )
    return client
