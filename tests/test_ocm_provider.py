"""
Unit tests for the cluster-management client with mocked HTTP.
"""

from __future__ import annotations

import json
from unittest.mock import MagicMock, patch

import pytest
import requests

from triage.config import TriageConfig
from triage.core.errors import AmbiguousClusterError, ClusterNotFoundError, ProviderError
from triage.providers.ocm_provider import DefaultOcmClient, get_ocm_client


def _response(payload=None, status=200, text=""):
    resp = MagicMock()
    resp.status_code = status
    resp.json.return_value = payload or {}
    resp.text = text
    if status >= 400:
        resp.raise_for_status.side_effect = requests.HTTPError(f"{status}", response=resp)
    return resp


@pytest.fixture
def client():
    c = DefaultOcmClient("https://api.example.com/", "https://sso.example.com/token", "id", "secret")
    c._token = "tok"
    c._token_expires_at = 1e12
    return c


def test_factory_uses_config():
    c = get_ocm_client(TriageConfig(ocm_url="https://api.stage.example.com", ocm_client_id="x"))
    assert c.base_url == "https://api.stage.example.com"
    assert c.client_id == "x"


def test_token_is_fetched_and_cached():
    c = DefaultOcmClient("https://api.example.com", "https://sso.example.com/token", "id", "secret")
    token_resp = _response({"access_token": "abc", "expires_in": 900})
    with patch("triage.providers.ocm_provider.requests.post", return_value=token_resp) as post:
        assert c._get_token() == "abc"
        assert c._get_token() == "abc"

    assert post.call_count == 1
    assert post.call_args[1]["data"]["grant_type"] == "client_credentials"


def test_token_requires_credentials():
    c = DefaultOcmClient("https://api.example.com", "https://sso.example.com/token", "", "")
    with pytest.raises(ValueError):
        c._get_token()


def test_get_cluster(client):
    payload = {"total": 1, "items": [{"id": "abc", "state": "ready", "cloud_provider": {"id": "aws"}}]}
    with patch("triage.providers.ocm_provider.requests.request", return_value=_response(payload)) as req:
        cluster = client.get_cluster("abc")

    assert cluster.id == "abc"
    assert cluster.is_aws
    assert req.call_args[0] == ("GET", "https://api.example.com/api/clusters_mgmt/v1/clusters")
    assert req.call_args[1]["headers"]["Authorization"] == "Bearer tok"
    assert "id like 'abc'" in req.call_args[1]["params"]["search"]


def test_get_cluster_not_found_or_ambiguous(client):
    with patch("triage.providers.ocm_provider.requests.request", return_value=_response({"total": 0, "items": []})):
        with pytest.raises(ClusterNotFoundError):
            client.get_cluster("abc")

    two = {"total": 2, "items": [{"id": "a"}, {"id": "b"}]}
    with patch("triage.providers.ocm_provider.requests.request", return_value=_response(two)):
        with pytest.raises(AmbiguousClusterError):
            client.get_cluster("abc")


def test_cluster_deployment_and_support_role(client):
    resources = {
        "resources": {
            "cluster_deployment": json.dumps(
                {"metadata": {"name": "cd", "namespace": "ns"}, "spec": {"clusterMetadata": {"infraID": "infra-9"}}}
            ),
            "aws_account_claim": json.dumps({"spec": {"supportRoleARN": "arn:aws:iam::1:role/support"}}),
        }
    }
    with patch("triage.providers.ocm_provider.requests.request", return_value=_response(resources)):
        assert client.get_cluster_deployment("abc").infra_id == "infra-9"
        assert client.get_support_role_arn("abc") == "arn:aws:iam::1:role/support"


def test_missing_live_resource(client):
    with patch("triage.providers.ocm_provider.requests.request", return_value=_response({"resources": {}})):
        with pytest.raises(ProviderError):
            client.get_support_role_arn("abc")


def test_post_restriction_ignores_uninstalling(client):
    resp = _response(status=400, text="Operation is not allowed for a cluster in 'uninstalling' state")
    with patch("triage.providers.ocm_provider.requests.request", return_value=resp) as req:
        client.post_restriction("abc", "summary", "details")

    assert req.call_args[1]["json"] == {"summary": "summary", "details": "details", "detection_type": "manual"}


def test_post_restriction_other_errors_propagate(client):
    with patch("triage.providers.ocm_provider.requests.request", return_value=_response(status=500)):
        with pytest.raises(requests.HTTPError):
            client.post_restriction("abc", "summary", "details")


def test_restriction_exists_matches_summary_and_details(client):
    payload = {"items": [{"id": "1", "summary": "s", "details": "d"}]}
    with patch("triage.providers.ocm_provider.requests.request", return_value=_response(payload)):
        assert client.restriction_exists("abc", "s", "d")
        assert not client.restriction_exists("abc", "s", "other")


def test_list_advisories_uses_external_id(client, cluster):
    payload = {"items": [{"summary": "cluster_state_ready", "timestamp": "2024-06-01T10:00:00Z"}]}
    with patch("triage.providers.ocm_provider.requests.request", return_value=_response(payload)) as req:
        entries = client.list_advisories(cluster, search="log_type='cluster-state-updates'")

    assert req.call_args[0][1] == "https://api.example.com/api/service_logs/v1/clusters/ext-abc/cluster_logs"
    assert req.call_args[1]["params"]["search"] == "log_type='cluster-state-updates'"
    assert entries[0].timestamp.tzinfo is not None


def test_post_advisory_body(client, cluster):
    with patch("triage.providers.ocm_provider.requests.request", return_value=_response()) as req:
        client.post_advisory(cluster, "Critical", "summary", "description", "SREManualAction")

    body = req.call_args[1]["json"]
    assert body["cluster_uuid"] == "ext-abc"
    assert body["subscription_id"] == "sub-1"
    assert body["internal_only"] is False


def test_organization_and_access_protection(client, cluster):
    responses = [_response({"organization_id": "org-1"}), _response({"enabled": True})]
    with patch("triage.providers.ocm_provider.requests.request", side_effect=responses):
        assert client.get_organization_id(cluster) == "org-1"
        assert client.is_access_protected(cluster) is True
