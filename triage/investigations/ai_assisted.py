"""
Experimental catch-all: hand the alert to an external AI agent.

The agent's summary is attached to the incident as a note; the incident is
always escalated, whatever the agent says.
"""

from __future__ import annotations

import json
import logging
import secrets
import time
from typing import Any, Callable, Dict, Sequence

import requests

from triage.actions.model import ConclusionBuilder, InvestigationConclusion
from triage.config import AiAgentConfig
from triage.resources import AlertContext, Capability

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT_SECONDS = 10


def session_id(incident_id: str) -> str:
    return f"cad-{incident_id}-{int(time.time())}-{secrets.token_hex(8)}"


class AiAssistedInvestigation:
    def __init__(self, config: AiAgentConfig, clock: Callable[[], float] = time.monotonic) -> None:
        self.config = config
        self._clock = clock

    def name(self) -> str:
        return "AI Assisted Investigation"

    def description(self) -> str:
        return "Forwards alerts without a dedicated investigation to an AI agent"

    def alert_title_match(self, title: str) -> bool:
        return True

    def is_experimental(self) -> bool:
        return True

    def requirements(self) -> Sequence[Capability]:
        return (Capability.CLUSTER, Capability.NOTES)

    def build_payload(self, ctx: AlertContext) -> Dict[str, Any]:
        incident = ctx.pagerduty.incident
        return {
            "investigation_id": incident.incident_id,
            "alert_name": incident.title,
            "cluster_id": ctx.cluster_id,
            "session_id": session_id(incident.incident_id),
        }

    def run(self, ctx: AlertContext) -> InvestigationConclusion:
        cluster = ctx.require_cluster()
        notes = ctx.notes
        result = ConclusionBuilder(notes)

        if not self.config.enabled:
            notes.append_warning("AI investigation is disabled")
            return result.escalate("AI investigation disabled")

        try:
            org_id = ctx.ocm.get_organization_id(cluster)
        except Exception as e:
            notes.append_warning(f"Failed to get organization ID: {e}")
            return result.escalate("Failed to get organization ID")

        if not self.config.allows(cluster.id, org_id):
            notes.append_warning(f"Cluster {cluster.id} (org: {org_id}) is not in the AI investigation allowlist")
            return result.escalate("Cluster not in AI allowlist")
        notes.append_success(f"AI investigation allowlist check passed for cluster {cluster.id} (org: {org_id})")

        payload = self.build_payload(ctx)
        logger.info("Invoking AI agent for incident %s", payload["investigation_id"])
        try:
            body = self.call_agent(payload)
        except requests.Timeout:
            notes.append_warning(f"AI agent did not answer within {self.config.timeout_seconds}s")
            return result.escalate("AI agent timed out")
        except (requests.RequestException, ValueError) as e:
            notes.append_warning(f"Failed to invoke AI agent: {e}")
            return result.escalate("AI agent invocation failed")

        summary = str(body.get("summary") or "").strip() if isinstance(body, dict) else ""
        if summary:
            notes.append_automation(f"AI agent summary:\n{summary}")
        else:
            notes.append_warning("AI agent returned no summary")
        return result.escalate("AI investigation complete - manual review required")

    def call_agent(self, payload: Dict[str, Any]) -> Any:
        """
        POST `payload` to the agent and return the decoded JSON body.

        `timeout_seconds` bounds the whole call, not each socket read: the
        body is streamed and reading stops once the deadline has passed.

        Raises:
            requests.Timeout when the deadline is exceeded
            requests.RequestException for HTTP failures
            ValueError for a body that is not JSON
        """
        total = self.config.timeout_seconds
        deadline = self._clock() + total
        resp = requests.post(
            self.config.url,
            json=payload,
            timeout=(min(CONNECT_TIMEOUT_SECONDS, total), total),
            stream=True,
        )
        try:
            resp.raise_for_status()
            chunks = []
            for chunk in resp.iter_content(chunk_size=8192):
                if self._clock() > deadline:
                    raise requests.Timeout(f"AI agent response exceeded {total}s")
                chunks.append(chunk)
        finally:
            resp.close()
        return json.loads(b"".join(chunks).decode("utf-8"))
