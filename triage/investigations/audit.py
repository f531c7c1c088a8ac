"""Who stopped the instances: CloudTrail actor decoding and the stop allow-lists."""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Tuple

from pydantic import ValidationError

from triage.core.models import CloudTrailPayload

# Substrings of usernames that may stop cluster instances.
ALLOWED_USER_PATTERNS: Tuple[str, ...] = (
    "openshift-machine-api-aws",
    "osdCcsAdmin",
    "osdManagedAdmin",
    "RH-SRE-",
)

# Substrings of assumed-role issuer names that may stop cluster instances.
ALLOWED_ROLE_PATTERNS: Tuple[str, ...] = (
    "openshift-machine-api-aws",
    "-Installer-Role",
    "-Support-Role",
    "ManagedOpenShift-Support-",
)

# Only allowed on non-CCS clusters, where the account belongs to Red Hat.
NON_CCS_ROLE = "OrganizationAccountAccessRole"

_VERSION_RE = re.compile(r"^(\d+)\.(\d+)")


class AuditDecodeError(ValueError):
    pass


@dataclass(frozen=True)
class Actor:
    username: str
    issuer_username: str


def parse_event_version(version: str) -> Tuple[int, int]:
    match = _VERSION_RE.match(version or "")
    if not match:
        raise AuditDecodeError(f"failed to parse CloudTrail event version: {version!r}")
    return int(match.group(1)), int(match.group(2))


def decode_payload(raw: str) -> CloudTrailPayload:
    """
    Decode a CloudTrail event payload.

    Raises:
        AuditDecodeError for empty input, invalid JSON, or a schema version that
        is not 1.x with x >= 8
    """
    if not raw:
        raise AuditDecodeError("cannot parse a nil input")
    try:
        payload = CloudTrailPayload.from_json(raw)
    except (ValueError, ValidationError) as e:
        raise AuditDecodeError(f"could not unmarshal CloudTrail event: {e}") from e

    major, minor = parse_event_version(payload.event_version)
    if major != 1 or minor < 8:
        raise AuditDecodeError(
            f"unexpected event version (got {payload.event_version}, expected compatibility with 1.8)"
        )
    return payload


def is_user_allowed_to_stop(username: str, issuer_username: str, is_ccs: bool) -> bool:
    """Users are matched on the event username, roles on the session issuer's username."""
    if any(pattern in username for pattern in ALLOWED_USER_PATTERNS):
        return True

    role_patterns = ALLOWED_ROLE_PATTERNS if is_ccs else ALLOWED_ROLE_PATTERNS + (NON_CCS_ROLE,)
    return any(pattern in issuer_username for pattern in role_patterns)
