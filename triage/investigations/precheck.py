"""Checks that run before any investigation: can we investigate this cluster at all?"""

from __future__ import annotations

import logging

from triage.actions.model import ConclusionBuilder, InvestigationConclusion
from triage.resources import AlertContext

logger = logging.getLogger(__name__)

STATE_UNINSTALLING = "uninstalling"


def run_precheck(ctx: AlertContext) -> InvestigationConclusion:
    """
    Return a terminal conclusion when the cluster must not be investigated, or an empty one.

    - uninstalling clusters are silenced
    - non-AWS clusters are escalated
    - access-protected clusters (or an unknown protection status) are escalated
    """
    cluster = ctx.require_cluster()
    result = ConclusionBuilder(ctx.notes)

    if cluster.state == STATE_UNINSTALLING:
        logger.info("Cluster is uninstalling and requires no investigation. Silencing alert.")
        ctx.notes.append_automation("CAD: Cluster is already uninstalling, silencing alert.")
        return result.silence("cluster is already uninstalling")

    if not cluster.is_aws:
        logger.info("Cloud provider unsupported, forwarding to primary.")
        ctx.notes.append_warning(
            "CAD could not run an automated investigation on this cluster: unsupported cloud provider."
        )
        return result.escalate("unsupported cloud provider (non-AWS)")

    try:
        protected = ctx.ocm.is_access_protected(cluster)
    except Exception as e:
        logger.warning("failed to get access protection status for cluster: %s. Escalating for manual handling.", e)
        ctx.notes.append_warning(
            "CAD could not determine access protection status for this cluster, as CAD is unable to run against "
            "access protected clusters, please investigate manually."
        )
        return result.escalate("access protection could not be determined")

    if protected:
        logger.info("Cluster is access protected. Escalating alert.")
        ctx.notes.append_warning("CAD is unable to run against access protected clusters. Please investigate.")
        return result.escalate("cluster is access protected")

    return InvestigationConclusion()
