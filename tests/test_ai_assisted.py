"""
Tests for the experimental AI-assisted investigation.
"""

from __future__ import annotations

from unittest.mock import MagicMock, patch

import requests

from triage.actions.model import Escalate
from triage.config import AiAgentConfig
from triage.investigations.ai_assisted import AiAssistedInvestigation


def _config(**overrides):
    data = dict(enabled=True, url="http://agent.local/invoke", timeout_seconds=30, allowed_orgs=("org-1",))
    data.update(overrides)
    return AiAgentConfig(**data)


def test_allowlist():
    config = _config(allowed_clusters=("abc",), allowed_orgs=())
    assert config.allows("abc", "org-9")
    assert not config.allows("other", "org-9")
    assert not AiAgentConfig(enabled=False, url="x", allowed_clusters=("abc",)).allows("abc", "")


def test_disabled_escalates_without_calls(ctx, ocm):
    conclusion = AiAssistedInvestigation(AiAgentConfig()).run(ctx)

    assert conclusion.terminal == Escalate("AI investigation disabled")
    assert "get_organization_id" not in ocm.names()


def test_not_allowlisted(ctx, ocm):
    ocm.organization_id = "org-2"

    conclusion = AiAssistedInvestigation(_config()).run(ctx)

    assert conclusion.terminal == Escalate("Cluster not in AI allowlist")


def _response(*chunks):
    response = MagicMock()
    response.iter_content.return_value = list(chunks)
    return response


def test_summary_is_attached(ctx):
    response = _response(b'{"summary": ', b'"etcd is degraded"}')

    with patch("triage.investigations.ai_assisted.requests.post", return_value=response) as post:
        conclusion = AiAssistedInvestigation(_config()).run(ctx)

    _, kwargs = post.call_args
    assert kwargs["timeout"] == (10, 30)
    assert kwargs["stream"] is True
    assert kwargs["json"]["cluster_id"] == "abc"
    assert kwargs["json"]["investigation_id"] == "Q1"
    assert kwargs["json"]["session_id"].startswith("cad-Q1-")
    assert response.close.called
    assert "etcd is degraded" in conclusion.actions[0].content
    assert conclusion.terminal == Escalate("AI investigation complete - manual review required")


def test_timeout_escalates(ctx):
    with patch("triage.investigations.ai_assisted.requests.post", side_effect=requests.Timeout()):
        conclusion = AiAssistedInvestigation(_config()).run(ctx)

    assert conclusion.terminal == Escalate("AI agent timed out")
    assert "did not answer within 30s" in conclusion.actions[0].content


def test_slow_response_is_cut_at_the_deadline(ctx):
    """Each chunk arrives within the read timeout, but the whole body takes too long."""
    ticks = iter([0.0, 10.0, 20.0, 31.0, 40.0])
    response = _response(b'{"summary": ', b'"etcd', b' is degraded"}', b"")
    inv = AiAssistedInvestigation(_config(), clock=lambda: next(ticks))

    with patch("triage.investigations.ai_assisted.requests.post", return_value=response):
        conclusion = inv.run(ctx)

    assert conclusion.terminal == Escalate("AI agent timed out")
    assert response.close.called
    assert "etcd is degraded" not in conclusion.actions[0].content


def test_invalid_body_escalates(ctx):
    with patch("triage.investigations.ai_assisted.requests.post", return_value=_response(b"<html>")):
        conclusion = AiAssistedInvestigation(_config()).run(ctx)

    assert conclusion.terminal == Escalate("AI agent invocation failed")


def test_http_failure_escalates(ctx):
    with patch("triage.investigations.ai_assisted.requests.post", side_effect=requests.ConnectionError("refused")):
        conclusion = AiAssistedInvestigation(_config()).run(ctx)

    assert conclusion.terminal == Escalate("AI agent invocation failed")
