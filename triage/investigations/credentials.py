"""
Missing cloud credentials (CCAM).

Runs before the alert's own investigation, on the outcome of building the AWS
client. Failures caused by the customer removing the support role or its
trust relationship put the cluster in limited support; anything else is
re-raised unchanged so the run is retried.
"""

from __future__ import annotations

import logging
import re
from typing import List, Optional, Pattern

from triage.actions.model import ConclusionBuilder, InvestigationConclusion
from triage.resources import AlertContext

logger = logging.getLogger(__name__)

NAME = "Cluster Credentials Are Missing (CCAM)"

CREDENTIALS_SUMMARY = "Restore missing cloud credentials"
CREDENTIALS_DETAILS = (
    "Your cluster requires you to take action because Red Hat is not able to access the infrastructure with the "
    "provided credentials. Please restore the credentials and permissions provided during install"
)

USER_CAUSED_ERRORS: List[Pattern[str]] = [
    re.compile(r"Failed to find trusted relationship to support role 'RH-Technical-Support-Access'"),
    re.compile(r"RH-Managed-OpenShift-Installer/OCM is not authorized to perform: sts:AssumeRole on resource"),
    re.compile(r"Support role, used with cluster '[a-z0-9]{32}', does not exist in the customer's AWS account"),
    re.compile(r"could not assume support role in customer's account: .*AccessDenied"),
    re.compile(r"is not authorized to perform: iam:GetRole on resource: role"),
]


def customer_removed_permissions(message: str) -> bool:
    return any(pattern.search(message) for pattern in USER_CAUSED_ERRORS)


def check_credentials(ctx: AlertContext, error: Optional[BaseException]) -> InvestigationConclusion:
    """
    Decide what to do with the result of resolving the AWS client.

    Args:
        ctx: Context with the cluster resolved
        error: The raw resolution error, or None if the client was built

    Returns:
        A terminal conclusion when credentials are missing, a restriction removal
        when they are back, or an empty conclusion

    Raises:
        The original error when it is not customer-caused
    """
    logger.info("Investigating possible missing cloud credentials...")
    cluster = ctx.require_cluster()
    result = ConclusionBuilder(ctx.notes)

    if error is None:
        if ctx.ocm.restriction_exists(cluster.id, CREDENTIALS_SUMMARY, CREDENTIALS_DETAILS):
            ctx.notes.append_automation("Cloud credentials are working again, removing the limited support reason.")
            result.remove_restriction(CREDENTIALS_SUMMARY, CREDENTIALS_DETAILS)
            return result.build()
        return InvestigationConclusion()

    if not customer_removed_permissions(str(error)):
        raise error

    if cluster.state == "ready":
        ctx.notes.append_automation(
            f"Added the following Limited Support reason to cluster: {CREDENTIALS_SUMMARY}. Silencing alert."
        )
        result.restrict(CREDENTIALS_SUMMARY, CREDENTIALS_DETAILS)
        return result.silence("Cluster credentials are missing - cluster in limited support")
    if cluster.state == "uninstalling":
        ctx.notes.append_automation(
            f"Skipped adding limited support reason '{CREDENTIALS_SUMMARY}': cluster is already uninstalling."
        )
        return result.silence("cluster is already uninstalling")

    ctx.notes.append_warning(
        "Cluster has invalid cloud credentials (support role/policy is missing) and the cluster is in state "
        f"'{cluster.state}'. Please investigate."
    )
    return result.escalate("Cluster credentials are missing - manual investigation required")
