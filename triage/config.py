from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Tuple

DEFAULT_OCM_URL = "https://api.openshift.com"
DEFAULT_OCM_TOKEN_URL = "https://sso.redhat.com/auth/realms/redhat-external/protocol/openid-connect/token"
DEFAULT_SERVICE_ACCOUNTS = ("service-account-ocm-cad-production", "service-account-ocm-cad-staging")
DEFAULT_AI_TIMEOUT_SECONDS = 300


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name) or "").strip().lower()
    if not raw:
        return default
    return raw in ("1", "true", "yes", "y", "on")


def _env_str(name: str, default: str = "") -> str:
    return (os.getenv(name) or "").strip() or default


def _env_list(name: str, default: Tuple[str, ...] = ()) -> Tuple[str, ...]:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    return tuple(item.strip() for item in raw.split(",") if item.strip())


def _env_timeout(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    try:
        value = int(raw) if raw else default
    except Exception:
        value = default
    # Clamp to [5s, 1h].
    return max(5, min(value, 3600))


@dataclass(frozen=True)
class AiAgentConfig:
    enabled: bool = False
    url: str = ""
    timeout_seconds: int = DEFAULT_AI_TIMEOUT_SECONDS
    allowed_clusters: Tuple[str, ...] = ()
    allowed_orgs: Tuple[str, ...] = ()

    def allows(self, cluster_id: str, org_id: str) -> bool:
        if not self.enabled or not self.url:
            return False
        return cluster_id in self.allowed_clusters or (bool(org_id) and org_id in self.allowed_orgs)


@dataclass(frozen=True)
class TriageConfig:
    # Feature flags
    experimental_enabled: bool = False

    # Cluster management
    ocm_url: str = DEFAULT_OCM_URL
    ocm_token_url: str = DEFAULT_OCM_TOKEN_URL
    ocm_client_id: str = ""
    ocm_client_secret: str = ""

    # Incident paging
    pd_token: str = ""
    silent_policy: str = ""

    # Cloud provider
    aws_region: str = "us-east-1"
    aws_jump_role_arn: str = ""

    # Metrics
    pushgateway: str = ""

    # Accounts whose restriction changes count toward flapping
    service_accounts: Tuple[str, ...] = DEFAULT_SERVICE_ACCOUNTS

    ai_agent: AiAgentConfig = field(default_factory=AiAgentConfig)


def load_config() -> TriageConfig:
    """Load configuration from environment variables."""
    ai = AiAgentConfig(
        enabled=_env_bool("TRIAGE_AI_ENABLED", False),
        url=_env_str("TRIAGE_AI_AGENT_URL"),
        timeout_seconds=_env_timeout("TRIAGE_AI_TIMEOUT_SECONDS", DEFAULT_AI_TIMEOUT_SECONDS),
        allowed_clusters=_env_list("TRIAGE_AI_ALLOWED_CLUSTERS"),
        allowed_orgs=_env_list("TRIAGE_AI_ALLOWED_ORGS"),
    )
    return TriageConfig(
        experimental_enabled=_env_bool("TRIAGE_EXPERIMENTAL_ENABLED", False),
        ocm_url=_env_str("TRIAGE_OCM_URL", DEFAULT_OCM_URL).rstrip("/"),
        ocm_token_url=_env_str("TRIAGE_OCM_TOKEN_URL", DEFAULT_OCM_TOKEN_URL),
        ocm_client_id=_env_str("TRIAGE_OCM_CLIENT_ID"),
        ocm_client_secret=_env_str("TRIAGE_OCM_CLIENT_SECRET"),
        pd_token=_env_str("TRIAGE_PD_TOKEN"),
        silent_policy=_env_str("TRIAGE_SILENT_POLICY"),
        aws_region=_env_str("TRIAGE_AWS_REGION", "us-east-1"),
        aws_jump_role_arn=_env_str("TRIAGE_AWS_JUMP_ROLE_ARN"),
        pushgateway=_env_str("TRIAGE_PROMETHEUS_PUSHGATEWAY"),
        service_accounts=_env_list("TRIAGE_SERVICE_ACCOUNTS", DEFAULT_SERVICE_ACCOUNTS),
        ai_agent=ai,
    )
