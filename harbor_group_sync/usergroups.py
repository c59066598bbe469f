"""
Paginated retrieval and DN lookup of Harbor user groups.

Harbor pages ``GET /usergroups`` and advertises further pages through a
``Link`` response header carrying ``rel="next"``. The helpers here follow
that signal until it disappears and narrow results by LDAP DN.
"""

import re
import logging
from typing import Any, Dict, List, Optional

from .models import Group, ValidationError, NotFoundError, AmbiguousGroupError
from .transport import ApiError

logger = logging.getLogger(__name__)

USERGROUPS_ENDPOINT = '/usergroups'

DEFAULT_PAGE_SIZE = 20
MIN_PAGE_SIZE = 1
MAX_PAGE_SIZE = 100

_LINK_VALUE_RE = re.compile(r'<[^>]*>([^<]*)')
_REL_PARAM_RE = re.compile(r';\s*rel\s*=\s*"?([^";,]+)"?', re.IGNORECASE)


def validate_page_size(page_size: Optional[int]) -> None:
    """
    Check a page size against the range Harbor accepts.

    Raises:
        ValidationError: If page_size is not an integer in [1, 100]
    """
    if page_size is None:
        return
    if isinstance(page_size, bool) or not isinstance(page_size, int) \
            or not MIN_PAGE_SIZE <= page_size <= MAX_PAGE_SIZE:
        raise ValidationError(
            f"page_size for {USERGROUPS_ENDPOINT} must be between {MIN_PAGE_SIZE} and "
            f"{MAX_PAGE_SIZE} (inclusive). Was {page_size!r}."
        )


def has_next_page(link_header: Optional[str]) -> bool:
    """Return True if a Link header advertises a ``rel="next"`` page."""
    if not link_header or not isinstance(link_header, str):
        return False
    for link_params in _LINK_VALUE_RE.findall(link_header):
        for rel in _REL_PARAM_RE.findall(link_params):
            if 'next' in rel.lower().split():
                return True
    return False


def fetch_all(session, filters: Optional[Dict[str, Any]] = None,
              page_size: Optional[int] = DEFAULT_PAGE_SIZE) -> List[Group]:
    """
    Retrieve every user group matching the filters, in the order Harbor returns them.

    Args:
        session: SessionHandle to query through
        filters: Extra query parameters, e.g. ``{'ldap_group_dn': dn}``
        page_size: Entries per page, or None for the server default

    Returns:
        List of groups, empty if there are none

    Raises:
        ValidationError: If page_size is out of range (no request is made)
        ApiError: If any page request fails
    """
    validate_page_size(page_size)

    groups = []
    page = 1
    while True:
        params = {'page': page, 'page_size': page_size}
        params.update(filters or {})

        try:
            response = session.transport.request('GET', USERGROUPS_ENDPOINT, params=params)
        except ApiError as e:
            logger.error(f"Failed querying {USERGROUPS_ENDPOINT} endpoint on page {page}: {e}")
            raise type(e)(f"Failed querying {USERGROUPS_ENDPOINT} endpoint: {e}",
                          status_code=e.status_code, endpoint=e.endpoint, detail=e.detail) from e

        entries = response.data or []
        if not isinstance(entries, list):
            raise ApiError(f"Unexpected response from {USERGROUPS_ENDPOINT} endpoint: {entries!r}",
                           status_code=response.status, endpoint=f"GET {USERGROUPS_ENDPOINT}")

        groups.extend(Group.from_api(entry) for entry in entries)

        if not has_next_page(response.header('Link')):
            break
        page += 1

    logger.debug(f"Fetched {len(groups)} user groups in {page} page(s)")
    return groups


def fetch_ldap_groups(session, filters: Optional[Dict[str, Any]] = None,
                      page_size: Optional[int] = DEFAULT_PAGE_SIZE) -> List[Group]:
    """
    Like fetch_all, but keep only LDAP groups.

    The usergroups collection also holds HTTP and OIDC groups, which have no
    LDAP DN and are never managed here.
    """
    groups = fetch_all(session, filters, page_size)
    ldap_groups = [group for group in groups if group.is_ldap]
    if len(ldap_groups) != len(groups):
        logger.debug(f"Ignored {len(groups) - len(ldap_groups)} non-LDAP user groups")
    return ldap_groups


def find_all_by_dn(session, dn: str, page_size: Optional[int] = DEFAULT_PAGE_SIZE) -> List[Group]:
    """
    Return every LDAP group whose DN equals ``dn``.

    Harbor narrows the query server side, but its filter is a substring match,
    so the candidates are compared again on the normalised DN.
    """
    candidates = fetch_ldap_groups(session, {'ldap_group_dn': dn}, page_size)
    return [group for group in candidates if group.matches_dn(dn)]


def find_by_dn(session, dn: str, page_size: Optional[int] = DEFAULT_PAGE_SIZE) -> Optional[Group]:
    """
    Return the single group with the given LDAP DN, or None.

    Raises:
        AmbiguousGroupError: If Harbor holds more than one group for the DN
    """
    matches = find_all_by_dn(session, dn, page_size)
    if len(matches) > 1:
        ids = ', '.join(str(group.id) for group in matches)
        raise AmbiguousGroupError(f"{len(matches)} Harbor groups share LDAP DN '{dn}' (ids: {ids})")
    return matches[0] if matches else None


def group_exists(session, dn: str, page_size: Optional[int] = DEFAULT_PAGE_SIZE) -> bool:
    return find_by_dn(session, dn, page_size) is not None


def id_of(session, dn: str, page_size: Optional[int] = DEFAULT_PAGE_SIZE):
    """
    Return the Harbor id of the group with the given LDAP DN.

    Raises:
        NotFoundError: If no group matches
    """
    group = find_by_dn(session, dn, page_size)
    if group is None:
        raise NotFoundError(f"No Harbor group with LDAP DN '{dn}'")
    return group.id
