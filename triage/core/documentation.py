"""Product-specific documentation links used in customer-facing advisories."""

from __future__ import annotations

from typing import Dict

PRODUCT_OSD = "osd"
PRODUCT_ROSA = "rosa"
PRODUCT_UNKNOWN = "unknown"

TOPIC_PRIVATELINK_FIREWALL = "privatelink-firewall"
TOPIC_MONITORING_STACK = "monitoring-stack"
TOPIC_AWS_CUSTOM_VPC = "aws-custom-vpc"

_LINKS: Dict[str, Dict[str, str]] = {
    TOPIC_PRIVATELINK_FIREWALL: {
        PRODUCT_OSD: "https://docs.redhat.com/en/documentation/openshift_dedicated/4/html-single/planning_your_environment/index#osd-aws-privatelink-firewall-prerequisites_aws-ccs",
        PRODUCT_ROSA: "https://docs.redhat.com/en/documentation/red_hat_openshift_service_on_aws_classic_architecture/4/html/install_rosa_classic_clusters/deploying-rosa-without-aws-sts#rosa-classic-firewall-prerequisites_prerequisites",
    },
    TOPIC_MONITORING_STACK: {
        PRODUCT_OSD: "https://docs.redhat.com/en/documentation/openshift_dedicated/4/html/monitoring/configuring-user-workload-monitoring",
        PRODUCT_ROSA: "https://docs.redhat.com/en/documentation/red_hat_openshift_service_on_aws_classic_architecture/4/html/monitoring/configuring-user-workload-monitoring",
    },
    TOPIC_AWS_CUSTOM_VPC: {
        PRODUCT_OSD: "https://docs.redhat.com/en/documentation/openshift_dedicated/4/html/cluster_administration/configuring-private-connections",
        PRODUCT_ROSA: "https://docs.redhat.com/en/documentation/red_hat_openshift_service_on_aws_classic_architecture/4/html/prepare_your_environment/rosa-cloud-expert-prereq-checklist#vpc-requirements-for-privatelink-clusters",
    },
}


def normalize_product(product_id: str) -> str:
    value = (product_id or "").strip().lower()
    if value in (PRODUCT_OSD, PRODUCT_ROSA):
        return value
    return PRODUCT_UNKNOWN


def documentation_link(product: str, topic: str) -> str:
    """Return the link for `topic`, falling back to the ROSA page for unknown products."""
    links = _LINKS.get(topic)
    if not links:
        return ""
    return links.get(normalize_product(product)) or links[PRODUCT_ROSA]
