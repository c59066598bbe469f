"""
Lifecycle operations for Harbor LDAP user groups.

UserGroupProvider implements the convergence primitives (list, exists,
create, rename, destroy) on top of a SessionProvider, and exposes the hooks a
declarative resource model drives: instances(), prefetch() and per-instance
GroupInstance objects.

Every operation logs in afresh and re-reads remote state. Failures of
mutating calls are returned as OperationResult instead of being raised, so a
batch run can decide whether to continue.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, List, Optional

from .models import (
    DesiredGroup, Group, NotFoundError, OperationResult, build_payload, normalize_dn,
    ENSURE_PRESENT, ENSURE_ABSENT
)
from .transport import ApiError
from .usergroups import (
    USERGROUPS_ENDPOINT, DEFAULT_PAGE_SIZE, fetch_ldap_groups, find_by_dn, id_of, validate_page_size
)

logger = logging.getLogger(__name__)


def _id_from_location(location: Optional[str]) -> Optional[int]:
    """Extract the new group id from a ``Location: /api/v2.0/usergroups/12`` header."""
    if not location:
        return None
    tail = location.rstrip('/').rsplit('/', 1)[-1]
    return int(tail) if tail.isdigit() else None


class GroupInstance:
    """
    One Harbor group as seen by the resource model.

    Instances produced by enumeration are ``present``; instances created for
    undeclared state start ``absent``. Assigning ``group_name`` renames the
    group in Harbor. The outcome of the last mutation is kept in
    ``last_result``.
    """

    def __init__(self, provider: 'UserGroupProvider', group_name: str, ldap_group_dn: str,
                 ensure: str = ENSURE_ABSENT, group_id: Optional[int] = None):
        self._provider = provider
        self._group_name = group_name
        self.ldap_group_dn = ldap_group_dn
        self.ensure = ensure
        self.id = group_id
        self.resource: Optional[DesiredGroup] = None
        self.last_result: Optional[OperationResult] = None

    @classmethod
    def from_group(cls, provider: 'UserGroupProvider', group: Group) -> 'GroupInstance':
        return cls(provider, group.group_name, group.ldap_group_dn,
                   ensure=ENSURE_PRESENT, group_id=group.id)

    @property
    def group_name(self) -> str:
        return self._group_name

    @group_name.setter
    def group_name(self, value: str):
        self.last_result = self._provider.rename(self.ldap_group_dn, value)
        if self.last_result.success:
            self._group_name = value

    def exists(self) -> bool:
        # Enumerated instances are known to exist without another round trip
        if self.ensure == ENSURE_PRESENT:
            return True
        return self._provider.exists(self.ldap_group_dn)

    def create(self) -> OperationResult:
        desired = self.resource or DesiredGroup(self._group_name, self.ldap_group_dn)
        self.last_result = self._provider.create(desired)
        if self.last_result.success:
            self.ensure = ENSURE_PRESENT
            self._group_name = desired.group_name
            self.id = self.last_result.group_id
        return self.last_result

    def destroy(self) -> OperationResult:
        self.last_result = self._provider.destroy(self.ldap_group_dn)
        if self.last_result.success:
            self.ensure = ENSURE_ABSENT
            self.id = None
        return self.last_result

    def to_dict(self) -> Dict[str, Any]:
        return {
            'ensure': self.ensure,
            'group_name': self._group_name,
            'ldap_group_dn': self.ldap_group_dn,
        }

    def __repr__(self):
        return (f"GroupInstance(ensure={self.ensure!r}, group_name={self._group_name!r}, "
                f"ldap_group_dn={self.ldap_group_dn!r})")


class UserGroupProvider:
    """Converges Harbor LDAP user groups towards declared state."""

    def __init__(self, session_provider, page_size: Optional[int] = DEFAULT_PAGE_SIZE):
        """
        Args:
            session_provider: Object with a ``login()`` method returning a SessionHandle
            page_size: Page size used when enumerating groups

        Raises:
            ValidationError: If page_size is outside [1, 100]
        """
        validate_page_size(page_size)
        self.session_provider = session_provider
        self.page_size = page_size

    @contextmanager
    def _session(self):
        session = self.session_provider.login()
        try:
            yield session
        finally:
            close = getattr(session.transport, 'close_connection', None)
            if close:
                close()

    # Enumeration

    def list_all(self) -> List[GroupInstance]:
        """Return every Harbor LDAP user group as a present GroupInstance."""
        with self._session() as session:
            groups = fetch_ldap_groups(session, page_size=self.page_size)
        logger.info(f"Found {len(groups)} LDAP user groups in Harbor")
        return [GroupInstance.from_group(self, group) for group in groups]

    def instances(self) -> List[GroupInstance]:
        return self.list_all()

    def prefetch(self, desired_map: Dict[str, DesiredGroup]) -> List[GroupInstance]:
        """
        Bind enumerated groups to the declared groups sharing their DN.

        Args:
            desired_map: Declared groups keyed by LDAP DN

        Returns:
            All enumerated instances, bound or not
        """
        by_dn = {normalize_dn(dn): desired for dn, desired in desired_map.items()}
        instances = self.list_all()
        for instance in instances:
            desired = by_dn.get(normalize_dn(instance.ldap_group_dn))
            if desired is not None:
                desired.provider = instance
                instance.resource = desired
        return instances

    def new_instance(self, desired: DesiredGroup) -> GroupInstance:
        """Return the instance bound to a declared group, or an unbound absent one."""
        if desired.provider is not None:
            return desired.provider
        instance = GroupInstance(self, desired.group_name, desired.ldap_group_dn)
        instance.resource = desired
        return instance

    # Lookups

    def find_by_dn(self, dn: str) -> Optional[Group]:
        with self._session() as session:
            return find_by_dn(session, dn, self.page_size)

    def exists(self, dn: str) -> bool:
        return self.find_by_dn(dn) is not None

    def id_of(self, dn: str):
        """
        Raises:
            NotFoundError: If no group carries the DN
        """
        with self._session() as session:
            return id_of(session, dn, self.page_size)

    def _resolve(self, session, dn: str) -> Group:
        group = find_by_dn(session, dn, self.page_size)
        if group is None:
            raise NotFoundError(f"No Harbor group with LDAP DN '{dn}'")
        return group

    # Mutations

    def create(self, desired: DesiredGroup) -> OperationResult:
        """Create a Harbor group for a declared LDAP group."""
        with self._session() as session:
            payload = build_payload(session.api_version, desired.group_name, desired.ldap_group_dn)
            try:
                response = session.transport.request('POST', USERGROUPS_ENDPOINT, body=payload.to_body())
            except ApiError as e:
                logger.error(f"Exception when calling POST {USERGROUPS_ENDPOINT} "
                             f"for '{desired.ldap_group_dn}': {e}")
                return OperationResult('create', desired.ldap_group_dn, False, error=e)

        group_id = _id_from_location(response.header('Location'))
        logger.info(f"Created Harbor group '{desired.group_name}' for {desired.ldap_group_dn}")
        return OperationResult('create', desired.ldap_group_dn, True, group_id=group_id)

    def rename(self, dn: str, new_name: str) -> OperationResult:
        """
        Change the display name of the group with the given DN.

        Raises:
            NotFoundError: If no group carries the DN
        """
        with self._session() as session:
            group = self._resolve(session, dn)
            payload = build_payload(session.api_version, new_name, group.ldap_group_dn)
            endpoint = f"{USERGROUPS_ENDPOINT}/{group.id}"
            try:
                session.transport.request('PUT', endpoint, body=payload.to_body())
            except ApiError as e:
                logger.error(f"Exception when calling PUT {endpoint} for '{dn}': {e}")
                return OperationResult('rename', dn, False, group_id=group.id, error=e)

        logger.info(f"Renamed Harbor group {group.id} from '{group.group_name}' to '{new_name}'")
        return OperationResult('rename', dn, True, group_id=group.id)

    def destroy(self, dn: str) -> OperationResult:
        """
        Delete the group with the given DN.

        Raises:
            NotFoundError: If no group carries the DN
        """
        with self._session() as session:
            group = self._resolve(session, dn)
            endpoint = f"{USERGROUPS_ENDPOINT}/{group.id}"
            try:
                session.transport.request('DELETE', endpoint)
            except ApiError as e:
                logger.error(f"Exception when calling DELETE {endpoint} for '{dn}': {e}")
                return OperationResult('destroy', dn, False, group_id=group.id, error=e)

        logger.info(f"Deleted Harbor group {group.id} ({dn})")
        return OperationResult('destroy', dn, True, group_id=group.id)
