"""
Egress reachability check through the `osd-network-verifier` CLI.

The verifier launches a probe instance in one of the cluster's private subnets
and reports which required egress URLs it could not reach.
"""

from __future__ import annotations

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Tuple

from triage.core.models import ClusterDeployment, ClusterRecord
from triage.providers.aws_provider import AwsClient

logger = logging.getLogger(__name__)

VERIFIER_BINARY = "osd-network-verifier"
DEFAULT_TIMEOUT_SECONDS = 600
DEFAULT_TAGS = {"osd-network-verifier": "owned", "red-hat-managed": "true", "Name": "osd-network-verifier"}

_FAILURE_PREFIX = "egressURL error: "


class VerifierResult(IntEnum):
    UNDEFINED = 0
    FAILURE = 1
    SUCCESS = 2


class NetworkVerifierError(Exception):
    """The verifier could not run; says nothing about the cluster's egress."""


@dataclass(frozen=True)
class VerifierInput:
    subnet_id: str
    security_group_id: str
    region: str
    kms_key_id: str = ""
    http_proxy: str = ""
    https_proxy: str = ""
    tags: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_TAGS))

    def to_args(self) -> List[str]:
        args = [
            "egress",
            "--platform",
            "aws-classic",
            "--subnet-id",
            self.subnet_id,
            "--security-group-ids",
            self.security_group_id,
            "--region",
            self.region,
            "--cloud-tags",
            ",".join(f"{k}={v}" for k, v in sorted(self.tags.items())),
        ]
        if self.kms_key_id:
            args += ["--kms-key-id", self.kms_key_id]
        if self.http_proxy:
            args += ["--http-proxy", self.http_proxy]
        if self.https_proxy:
            args += ["--https-proxy", self.https_proxy]
        return args


def select_subnets(infra_id: str, cluster: ClusterRecord, aws: AwsClient) -> List[str]:
    """
    Pick the subnet(s) to probe from.

    - Non-BYOVPC clusters: the installer-tagged private subnet
    - PrivateLink clusters: the subnets registered for the cluster
    - Other BYOVPC clusters: the first registered subnet that is private
    """
    subnet_ids = list(cluster.aws.subnet_ids) if cluster.aws else []
    if not subnet_ids:
        return aws.get_subnet_ids(infra_id)
    if cluster.aws is not None and cluster.aws.private_link:
        return subnet_ids
    for subnet_id in subnet_ids:
        if aws.is_subnet_private(subnet_id):
            return [subnet_id]
    raise NetworkVerifierError("could not determine private subnet")


def build_input(cluster: ClusterRecord, deployment: ClusterDeployment, aws: AwsClient) -> VerifierInput:
    if cluster.additional_trust_bundle:
        raise NetworkVerifierError("clusters with an additional trust bundle are not supported")

    infra_id = deployment.infra_id
    try:
        security_group_id = aws.get_security_group_id(infra_id)
    except Exception as e:
        raise NetworkVerifierError(f"failed to get SecurityGroupId: {e}") from e
    try:
        subnets = select_subnets(infra_id, cluster, aws)
    except NetworkVerifierError:
        raise
    except Exception as e:
        raise NetworkVerifierError(f"failed to get Subnets: {e}") from e

    logger.info("Using Security Group ID: %s", security_group_id)
    logger.info("Using SubnetID: %s", subnets[0])

    proxy = cluster.proxy
    return VerifierInput(
        subnet_id=subnets[0],
        security_group_id=security_group_id,
        region=cluster.region_id,
        kms_key_id=cluster.aws.kms_key_arn if cluster.aws else "",
        http_proxy=proxy.http_proxy if proxy else "",
        https_proxy=proxy.https_proxy if proxy else "",
    )


def parse_output(returncode: int, output: str) -> Tuple[VerifierResult, str]:
    """
    Turn verifier output into a result.

    Failure lines look like `egressURL error: nosnch.in:443`; they are joined
    with `, ` after the prefix is stripped.
    """
    failures = []
    for line in output.splitlines():
        line = line.strip()
        if line.startswith(_FAILURE_PREFIX):
            failures.append(line[len(_FAILURE_PREFIX) :])
    if failures:
        return VerifierResult.FAILURE, ", ".join(failures)
    if returncode == 0:
        return VerifierResult.SUCCESS, ""
    tail = output.strip().splitlines()[-1] if output.strip() else f"exit code {returncode}"
    raise NetworkVerifierError(f"network verifier did not complete: {tail}")


Runner = Callable[[List[str], Dict[str, str], int], "subprocess.CompletedProcess[str]"]


def _run_subprocess(cmd: List[str], env: Dict[str, str], timeout: int) -> "subprocess.CompletedProcess[str]":
    return subprocess.run(cmd, env=env, capture_output=True, text=True, timeout=timeout, check=False)


class NetworkVerifier:
    def __init__(
        self,
        binary: str = VERIFIER_BINARY,
        timeout: int = DEFAULT_TIMEOUT_SECONDS,
        runner: Optional[Runner] = None,
    ) -> None:
        self.binary = binary
        self.timeout = timeout
        self._runner = runner or _run_subprocess

    def run(self, cluster: ClusterRecord, deployment: ClusterDeployment, aws: AwsClient) -> Tuple[VerifierResult, str]:
        """
        Run the egress check for a cluster.

        Returns:
            (result, failures) where failures lists the unreachable targets

        Raises:
            NetworkVerifierError when the verifier itself could not run
        """
        logger.info("Running Network Verifier...")
        verifier_input = build_input(cluster, deployment, aws)

        binary = shutil.which(self.binary) or self.binary
        env = dict(os.environ)
        env.update(aws.get_credentials())
        env["AWS_REGION"] = verifier_input.region

        try:
            completed = self._runner([binary] + verifier_input.to_args(), env, self.timeout)
        except FileNotFoundError as e:
            raise NetworkVerifierError(f"{self.binary} is not installed") from e
        except subprocess.TimeoutExpired as e:
            raise NetworkVerifierError(f"network verifier timed out after {self.timeout}s") from e

        output = (completed.stdout or "") + (completed.stderr or "")
        return parse_output(completed.returncode, output)
