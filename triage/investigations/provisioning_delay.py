"""Cluster provisioning delay (CPD): installation is taking longer than expected."""

from __future__ import annotations

import logging
from typing import Optional, Sequence

from triage.actions.model import ConclusionBuilder, InvestigationConclusion
from triage.core.errors import as_infrastructure
from triage.providers.aws_provider import AwsClient
from triage.providers.network_verifier import NetworkVerifier, NetworkVerifierError, VerifierResult
from triage.resources import AlertContext, Capability

logger = logging.getLogger(__name__)

UNKNOWN_PROVISION_CODE = "OCM3999"
NO_ROUTE_TEMPLATE = (
    "https://raw.githubusercontent.com/openshift/managed-notifications/master/osd/aws/InstallFailed_NoRouteToInternet.json"
)
EGRESS_TEMPLATE = (
    "https://raw.githubusercontent.com/openshift/managed-notifications/master/osd/required_network_egresses_are_blocked.json"
)


def is_subnet_route_valid(aws: AwsClient, subnet_id: str) -> bool:
    """A subnet is routable if its route table has a 0.0.0.0/0 route."""
    table = aws.get_route_table_for_subnet(subnet_id)
    return any(route.get("DestinationCidrBlock") == "0.0.0.0/0" for route in table.get("Routes", []))


class ProvisioningDelayInvestigation:
    def __init__(self, verifier: Optional[NetworkVerifier] = None) -> None:
        self.verifier = verifier or NetworkVerifier()

    def name(self) -> str:
        return "Cluster Provisioning Delay (CPD)"

    def description(self) -> str:
        return "Investigates clusters whose installation has not finished in time"

    def alert_title_match(self, title: str) -> bool:
        return "ClusterProvisioningDelay" in title

    def is_experimental(self) -> bool:
        return False

    def requirements(self) -> Sequence[Capability]:
        return (Capability.CLUSTER, Capability.CLUSTER_DEPLOYMENT, Capability.AWS_CLIENT, Capability.NOTES)

    def run(self, ctx: AlertContext) -> InvestigationConclusion:
        cluster = ctx.require_cluster()
        aws = ctx.require_aws()
        notes = ctx.notes
        result = ConclusionBuilder(notes)

        if cluster.state == "ready":
            notes.append_warning("This cluster is in a ready state, thus provisioning succeeded.")
        else:
            notes.append_success("Cluster installation did not yet finish")

        if not cluster.status.dns_ready:
            notes.append_warning(
                "DNS not ready.\nInvestigate reasons using the dnszones CR in the cluster namespace:\n"
                f"oc get dnszones -n uhc-production-{cluster.id} -o yaml --as backplane-cluster-admin"
            )
            return result.escalate("Cluster DNS is not ready")
        notes.append_success("Cluster DNS is ready")

        code = cluster.status.provision_error_code
        if code and code != UNKNOWN_PROVISION_CODE:
            notes.append_warning(f"Error code '{code}' is known, customer already received Service Log")
            return result.escalate("Known provisioning error")
        notes.append_success("OCM Error code is unknown, customer did not receive automated SL from OCM yet.")

        subnet_ids = list(cluster.aws.subnet_ids) if cluster.aws else []
        if subnet_ids:
            logger.info("Checking BYOVPC to ensure subnets have valid routing...")
            for subnet_id in subnet_ids:
                try:
                    valid = is_subnet_route_valid(aws, subnet_id)
                except Exception as e:
                    raise as_infrastructure(e, f"could not check routing of subnet {subnet_id}") from e
                if not valid:
                    notes.append_warning(
                        f"subnet {subnet_id} does not have a default route to 0.0.0.0/0\n"
                        "Run the following to send the according ServiceLog:\n"
                        f"osdctl servicelog post {cluster.id} -t {NO_ROUTE_TEMPLATE}"
                    )
                    return result.escalate("BYOVPC subnet has no default route")
            notes.append_success("BYOVPC has valid routing")

        try:
            verifier_result, failures = self.verifier.run(cluster, ctx.cluster_deployment, aws)
        except NetworkVerifierError as e:
            logger.warning("Network verifier ran into an error: %s", e)
            notes.append_warning(f"NetworkVerifier failed to run:\n\t {e}")
            verifier_result, failures = VerifierResult.UNDEFINED, ""

        if verifier_result is VerifierResult.FAILURE:
            notes.append_warning(
                f"Network verifier found issues:\n {failures} \n\n Verify and send service log if necessary: \n "
                f"osdctl servicelog post {cluster.id} -t {EGRESS_TEMPLATE} -p URLS={failures}"
            )
        elif verifier_result is VerifierResult.SUCCESS:
            notes.append_success("Network verifier passed")

        return result.escalate("No automated remediation available - manual investigation required")
