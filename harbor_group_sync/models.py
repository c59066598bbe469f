"""
Data model for Harbor LDAP user groups.

Defines the remote Group entity, the declared (desired) group, the two
version-specific request payloads and the typed result of lifecycle
operations, plus the DN normalisation used for matching.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, ClassVar, Dict, Optional

from ldap3.core.exceptions import LDAPInvalidDnError
from ldap3.utils.dn import parse_dn

logger = logging.getLogger(__name__)

# Harbor group types: 1 = LDAP, 2 = HTTP, 3 = OIDC
LDAP_GROUP_TYPE = 1

ENSURE_PRESENT = 'present'
ENSURE_ABSENT = 'absent'
ENSURE_VALUES = (ENSURE_PRESENT, ENSURE_ABSENT)


class ValidationError(ValueError):
    """Raised when an argument is rejected before any request is made."""
    pass


class NotFoundError(LookupError):
    """Raised when no Harbor group matches a required LDAP DN."""
    pass


class AmbiguousGroupError(LookupError):
    """Raised when more than one Harbor group carries the same LDAP DN."""
    pass


def normalize_dn(dn: str) -> str:
    """
    Return the comparison form of a DN: lower-cased, without padding whitespace.

    Unparseable values fall back to a stripped, lower-cased copy so they still
    compare equal to themselves.
    """
    try:
        rdns = parse_dn(dn, escape=False, strip=True)
    except LDAPInvalidDnError:
        return dn.strip().lower()
    return ''.join(f"{attr.lower()}={value.lower()}{sep}" for attr, value, sep in rdns)


def is_valid_dn(dn: Any) -> bool:
    """Check that a value parses as a non-empty distinguished name."""
    if not isinstance(dn, str) or not dn.strip():
        return False
    try:
        return bool(parse_dn(dn, escape=False, strip=True))
    except LDAPInvalidDnError:
        return False


@dataclass
class Group:
    """A user group as returned by Harbor."""

    group_name: str
    ldap_group_dn: str
    id: Optional[int] = None
    group_type: int = LDAP_GROUP_TYPE

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'Group':
        return cls(
            group_name=data.get('group_name', ''),
            ldap_group_dn=data.get('ldap_group_dn', ''),
            id=data.get('id'),
            group_type=data.get('group_type', LDAP_GROUP_TYPE),
        )

    @property
    def is_ldap(self) -> bool:
        return self.group_type == LDAP_GROUP_TYPE

    def matches_dn(self, dn: str) -> bool:
        return normalize_dn(self.ldap_group_dn) == normalize_dn(dn)


@dataclass
class DesiredGroup:
    """
    A declared LDAP group and the lifecycle state it should be in.

    ``provider`` is bound by prefetch to the GroupInstance enumerated from
    Harbor, when one exists.
    """

    group_name: str
    ldap_group_dn: str
    ensure: str = ENSURE_PRESENT
    provider: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def from_config(cls, group_cfg: Dict[str, Any]) -> 'DesiredGroup':
        return cls(
            group_name=group_cfg['group_name'],
            ldap_group_dn=group_cfg['ldap_group_dn'],
            ensure=group_cfg.get('ensure', ENSURE_PRESENT),
        )


@dataclass(frozen=True)
class GroupPayload:
    """Fields shared by the usergroup request bodies of both API versions."""

    API_VERSION: ClassVar[int] = 0

    group_name: str
    ldap_group_dn: str
    group_type: int = LDAP_GROUP_TYPE

    def to_body(self) -> Dict[str, Any]:
        return {
            'usergroup': {
                'group_name': self.group_name,
                'group_type': self.group_type,
                'ldap_group_dn': self.ldap_group_dn,
            }
        }


@dataclass(frozen=True)
class GroupPayloadV1(GroupPayload):
    """Harbor v1 (``/api``) usergroup request body."""

    API_VERSION: ClassVar[int] = 1


@dataclass(frozen=True)
class GroupPayloadV2(GroupPayload):
    """Harbor v2 (``/api/v2.0``) usergroup request body."""

    API_VERSION: ClassVar[int] = 2


PAYLOAD_TYPES = {
    GroupPayloadV1.API_VERSION: GroupPayloadV1,
    GroupPayloadV2.API_VERSION: GroupPayloadV2,
}


def build_payload(api_version: int, group_name: str, ldap_group_dn: str) -> GroupPayload:
    """
    Build the usergroup payload for the negotiated API version.

    The group type is always the LDAP constant; callers cannot override it.

    Raises:
        ValidationError: If the API version is unknown
    """
    payload_type = PAYLOAD_TYPES.get(api_version)
    if payload_type is None:
        raise ValidationError(f"Unsupported Harbor API version: {api_version!r}")
    return payload_type(group_name=group_name, ldap_group_dn=ldap_group_dn)


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a mutating lifecycle operation."""

    operation: str
    ldap_group_dn: str
    success: bool
    group_id: Optional[int] = None
    error: Optional[Exception] = None

    @property
    def failed(self) -> bool:
        return not self.success
