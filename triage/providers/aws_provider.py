"""AWS API client for a cluster's account: EC2 instances, networking and CloudTrail stop events."""

from __future__ import annotations

import logging
import re
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Protocol, Sequence, runtime_checkable

import boto3
from dateutil import parser as date_parser

from triage.core.errors import ProviderError
from triage.core.models import AuditEvent, ClusterRecord, Instance

logger = logging.getLogger(__name__)

NON_RUNNING_STATES = ["stopped", "stopping", "terminated", "terminating"]
RUNNING_STATES = ["running", "pending"]
STOP_EVENT_NAMES = ("StopInstances", "TerminateInstances")

_SESSION_NAME = "CAD"
_EVENT_LOOKBACK = timedelta(hours=2)
# Bounded pagination; big accounts can hold 90 days of events.
_MAX_EVENTS = 1000
_POLL_INITIAL_BACKOFF = 2.0
_POLL_MAX_BACKOFF = 300.0

_STOP_TIME_RE = re.compile(r"\((\d{4}-\d{2}-\d{2} \d{2}:\d{2}:\d{2}.*)\)")


@runtime_checkable
class AwsClient(Protocol):
    """Protocol for the cloud-provider calls made by investigations (read-only)."""

    # EC2
    def list_non_running_instances(self, infra_id: str) -> List[Instance]: ...

    def list_running_instances(self, infra_id: str) -> List[Instance]: ...

    # CloudTrail
    def poll_instance_stop_events(self, instances: Sequence[Instance], retry_times: int) -> List[AuditEvent]:
        """
        Find the newest StopInstances/TerminateInstances event for each instance.

        Polls up to `retry_times` times with exponential backoff while CloudTrail catches up.

        Returns:
            One event per instance, or [] if no instance has an event yet

        Raises:
            ProviderError when only some instances have events, or on API failures
        """
        ...

    # Networking
    def get_security_group_id(self, infra_id: str) -> str: ...

    def get_subnet_ids(self, infra_id: str) -> List[str]: ...

    def is_subnet_private(self, subnet_id: str) -> bool: ...

    def get_route_table_for_subnet(self, subnet_id: str) -> Dict[str, Any]: ...

    def get_credentials(self) -> Dict[str, str]: ...


class DefaultAwsClient:
    """Default AWS client using a boto3 session scoped to one account."""

    def __init__(self, session: Any, region: str, sleep: Callable[[float], None] = time.sleep) -> None:
        self.session = session
        self.region = region
        self._sleep = sleep
        self._clients: Dict[str, Any] = {}
        self._client_lock = threading.Lock()

    def get_credentials(self) -> Dict[str, str]:
        """Frozen credentials of the assumed session (for tools that run outside boto3)."""
        creds = self.session.get_credentials().get_frozen_credentials()
        return {
            "AWS_ACCESS_KEY_ID": creds.access_key,
            "AWS_SECRET_ACCESS_KEY": creds.secret_key,
            "AWS_SESSION_TOKEN": creds.token or "",
        }

    def _client(self, service: str) -> Any:
        """Cached boto3 client per service."""
        if service in self._clients:
            return self._clients[service]
        with self._client_lock:
            if service not in self._clients:
                self._clients[service] = self.session.client(service, region_name=self.region)
            return self._clients[service]

    # ========================================================================
    # EC2
    # ========================================================================

    def _list_instances(self, filters: List[Dict[str, Any]]) -> List[Instance]:
        ec2 = self._client("ec2")
        instances: List[Instance] = []
        params: Dict[str, Any] = {"Filters": filters}
        while True:
            response = ec2.describe_instances(**params)
            for reservation in response.get("Reservations", []):
                instances.extend(Instance.from_ec2(raw) for raw in reservation.get("Instances", []))
            next_token = response.get("NextToken")
            if not next_token:
                break
            params["NextToken"] = next_token
        return instances

    def _cluster_filters(self, infra_id: str, states: List[str]) -> List[Dict[str, Any]]:
        return [
            {"Name": f"tag:kubernetes.io/cluster/{infra_id}", "Values": ["owned"]},
            {"Name": "instance-state-name", "Values": states},
        ]

    def list_non_running_instances(self, infra_id: str) -> List[Instance]:
        return self._list_instances(self._cluster_filters(infra_id, NON_RUNNING_STATES))

    def list_running_instances(self, infra_id: str) -> List[Instance]:
        return self._list_instances(self._cluster_filters(infra_id, RUNNING_STATES))

    # ========================================================================
    # CloudTrail
    # ========================================================================

    def _lookup_events(self, event_name: str) -> List[AuditEvent]:
        cloudtrail = self._client("cloudtrail")
        since = datetime.now(timezone.utc) - _EVENT_LOOKBACK
        paginator = cloudtrail.get_paginator("lookup_events")
        events: List[AuditEvent] = []
        pages = paginator.paginate(
            LookupAttributes=[{"AttributeKey": "EventName", "AttributeValue": event_name}],
            StartTime=since,
        )
        for page in pages:
            events.extend(AuditEvent.from_cloudtrail(raw) for raw in page.get("Events", []))
            if len(events) >= _MAX_EVENTS:
                break
        return events

    def _newest_event_per_instance(
        self, instances: Sequence[Instance], stop_times: Dict[str, datetime]
    ) -> Dict[str, AuditEvent]:
        newest: Dict[str, AuditEvent] = {}
        for event_name in STOP_EVENT_NAMES:
            for event in self._lookup_events(event_name):
                for instance_id in event.resource_names:
                    if instance_id not in stop_times:
                        continue
                    stored = newest.get(instance_id)
                    if stored is None or _event_time(stored) < _event_time(event):
                        newest[instance_id] = event

        # An event older than the recorded stop time belongs to an earlier stop.
        return {
            instance_id: event
            for instance_id, event in newest.items()
            if _event_time(event) >= stop_times[instance_id]
        }

    def poll_instance_stop_events(self, instances: Sequence[Instance], retry_times: int) -> List[AuditEvent]:
        stop_times = populate_stop_times(instances)
        backoff = _POLL_INITIAL_BACKOFF
        matched: Dict[str, AuditEvent] = {}

        for attempt in range(1, max(1, retry_times) + 1):
            matched = self._newest_event_per_instance(instances, stop_times)
            missing = [i.instance_id for i in instances if i.instance_id not in matched]
            if not missing:
                break
            if attempt >= retry_times:
                break
            logger.info(
                "Stop events missing for %s (attempt %d/%d), retrying in %.0fs",
                ", ".join(missing),
                attempt,
                retry_times,
                backoff,
            )
            self._sleep(backoff)
            backoff = min(backoff * 2, _POLL_MAX_BACKOFF)

        if not matched:
            return []
        missing = [i.instance_id for i in instances if i.instance_id not in matched]
        if missing:
            raise ProviderError(f"the stopped instance {missing[0]} does not have a StopInstanceEvent")

        events: List[AuditEvent] = []
        for event in matched.values():
            if event not in events:
                events.append(event)
        return events

    # ========================================================================
    # Networking
    # ========================================================================

    def get_security_group_id(self, infra_id: str) -> str:
        ec2 = self._client("ec2")
        # <infra_id>-master-sg before 4.16, <infra_id>-controlplane after
        response = ec2.describe_security_groups(
            Filters=[{"Name": "tag:Name", "Values": [f"{infra_id}-master-sg", f"{infra_id}-controlplane"]}]
        )
        groups = response.get("SecurityGroups", [])
        if not groups:
            raise ProviderError("security groups are empty")
        group_id = groups[0].get("GroupId") or ""
        if not group_id:
            raise ProviderError(f"failed to list security groups: {infra_id}-master-sg, {infra_id}-controlplane")
        return group_id

    def get_subnet_ids(self, infra_id: str) -> List[str]:
        ec2 = self._client("ec2")
        response = ec2.describe_subnets(
            Filters=[
                {"Name": "tag-key", "Values": [f"kubernetes.io/cluster/{infra_id}"]},
                {"Name": "tag-key", "Values": ["kubernetes.io/role/internal-elb"]},
            ]
        )
        subnets = response.get("Subnets", [])
        if not subnets:
            raise ProviderError(
                f"found 0 subnets with kubernetes.io/cluster/{infra_id} and kubernetes.io/role/internal-elb"
            )
        return [subnets[0]["SubnetId"]]

    def _default_route_table_for_vpc(self, vpc_id: str) -> Dict[str, Any]:
        ec2 = self._client("ec2")
        response = ec2.describe_route_tables(Filters=[{"Name": "vpc-id", "Values": [vpc_id]}])
        for table in response.get("RouteTables", []):
            if any(assoc.get("Main") for assoc in table.get("Associations", [])):
                return table
        raise ProviderError(f"no default route table found for vpc: {vpc_id}")

    def _vpc_id_for_subnet(self, subnet_id: str) -> str:
        subnets = self._client("ec2").describe_subnets(SubnetIds=[subnet_id]).get("Subnets", [])
        if not subnets:
            raise ProviderError(f"no subnets returned for subnet id {subnet_id}")
        return subnets[0]["VpcId"]

    def get_route_table_for_subnet(self, subnet_id: str) -> Dict[str, Any]:
        """Return the route table associated with the subnet, or the VPC's main table if none is."""
        ec2 = self._client("ec2")
        response = ec2.describe_route_tables(Filters=[{"Name": "association.subnet-id", "Values": [subnet_id]}])
        tables = response.get("RouteTables", [])
        if tables:
            return tables[0]
        return self._default_route_table_for_vpc(self._vpc_id_for_subnet(subnet_id))

    def is_subnet_private(self, subnet_id: str) -> bool:
        subnets = self._client("ec2").describe_subnets(SubnetIds=[subnet_id]).get("Subnets", [])
        if not subnets:
            raise ProviderError(f"no subnets returned for subnet id {subnet_id}")
        table = self.get_route_table_for_subnet(subnet_id)
        for route in table.get("Routes", []):
            if route.get("DestinationCidrBlock") == "0.0.0.0/0" and (route.get("GatewayId") or "").startswith("igw"):
                return False
        return not subnets[0].get("MapPublicIpOnLaunch", False)


def _event_time(event: AuditEvent) -> datetime:
    return event.event_time or datetime.min.replace(tzinfo=timezone.utc)


def parse_stop_time(reason: str) -> datetime:
    """Extract the timestamp from a StateTransitionReason like `User initiated (2024-01-02 10:00:00 GMT)`."""
    matches = _STOP_TIME_RE.findall(reason or "")
    if not matches:
        raise ProviderError(f"did not find matches: raw data {reason}")
    if len(matches) > 1:
        raise ProviderError(f"found too many matches: raw data {reason}")
    try:
        parsed = date_parser.parse(matches[0])
    except (ValueError, OverflowError) as e:
        raise ProviderError(f"could not parse the time {matches[0]}: {e}") from e
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def populate_stop_times(instances: Sequence[Instance]) -> Dict[str, datetime]:
    stop_times: Dict[str, datetime] = {}
    for instance in instances:
        if not instance.state_transition_reason:
            raise ProviderError(
                f"StateTransitionReason is missing for instance {instance.instance_id}, is required"
            )
        try:
            stop_times[instance.instance_id] = parse_stop_time(instance.state_transition_reason)
        except ProviderError as e:
            raise ProviderError(f"could not extract date for instance {instance.instance_id}: {e}") from e
    return stop_times


# ============================================================================
# Client construction
# ============================================================================


def assume_role_session(session: Any, role_arn: str, region: str) -> Any:
    """Return a new boto3 session for `role_arn`, assumed from `session`."""
    sts = session.client("sts", region_name=region)
    creds = sts.assume_role(RoleArn=role_arn, RoleSessionName=_SESSION_NAME)["Credentials"]
    return boto3.session.Session(
        aws_access_key_id=creds["AccessKeyId"],
        aws_secret_access_key=creds["SecretAccessKey"],
        aws_session_token=creds["SessionToken"],
        region_name=region,
    )


class AwsClientFactory:
    """
    Builds a client for a cluster's account.

    Starts from the default credential chain, optionally hops through a jump
    role, then assumes the cluster's support role. Errors are raised unchanged;
    the credential check inspects their messages.
    """

    def __init__(self, default_region: str, jump_role_arn: str = "", session: Any = None) -> None:
        self.default_region = default_region
        self.jump_role_arn = jump_role_arn
        self._session = session

    def __call__(self, cluster: ClusterRecord, support_role_arn: str) -> AwsClient:
        region = cluster.region_id or self.default_region
        session = self._session or boto3.session.Session(region_name=region)
        if self.jump_role_arn:
            session = assume_role_session(session, self.jump_role_arn, region)
        try:
            session = assume_role_session(session, support_role_arn, region)
        except Exception as e:
            raise ProviderError(f"could not assume support role in customer's account: {e}") from e
        return DefaultAwsClient(session, region)
