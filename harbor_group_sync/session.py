"""
Session negotiation with Harbor.

A session handle couples an authenticated transport with the API version it
speaks. The reconciliation engine receives a SessionProvider and asks it for
a fresh handle at the start of every lifecycle operation.
"""

import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

from .transport import HarborTransport, ApiError

logger = logging.getLogger(__name__)

API_BASE_PATHS = {
    1: '/api',
    2: '/api/v2.0',
}


class SessionError(Exception):
    """Raised when a Harbor session cannot be established."""
    pass


class SessionHandle:
    """Authenticated transport plus the negotiated API version."""

    def __init__(self, transport, api_version: int):
        self.transport = transport
        self.api_version = api_version

    def __repr__(self):
        return f"SessionHandle(api_version={self.api_version})"


class SessionProvider(ABC):
    """Source of session handles for the reconciliation engine."""

    @abstractmethod
    def login(self) -> SessionHandle:
        """
        Establish a session.

        Raises:
            SessionError: If authentication or version negotiation fails
        """
        pass


class HarborSessionProvider(SessionProvider):
    """
    Session provider driven by the ``harbor`` configuration section.

    With ``api_version: auto`` the v2 system info endpoint is probed first and
    a 404 falls back to the v1 API. Credentials are checked against
    ``/users/current`` on every login.
    """

    def __init__(self, harbor_config: Dict[str, Any], retry_config: Optional[Dict[str, Any]] = None):
        self.config = harbor_config
        self.retry_config = retry_config or {}
        self.requested_version = harbor_config.get('api_version', 'auto')

    def _create_transport(self, api_version: int) -> HarborTransport:
        return HarborTransport(self.config, API_BASE_PATHS[api_version], self.retry_config)

    def _negotiate_version(self) -> int:
        """Return the API version the server speaks."""
        transport = self._create_transport(2)
        try:
            transport.request('GET', '/systeminfo')
            return 2
        except ApiError as e:
            if e.status_code == 404:
                logger.info("Harbor v2 API not available, falling back to v1")
                return 1
            raise
        finally:
            transport.close_connection()

    def login(self) -> SessionHandle:
        try:
            if self.requested_version == 'auto':
                api_version = self._negotiate_version()
            else:
                api_version = int(self.requested_version)
            if api_version not in API_BASE_PATHS:
                raise SessionError(f"Unsupported Harbor API version: {self.requested_version}")

            transport = self._create_transport(api_version)
            try:
                current_user = transport.request('GET', '/users/current').data or {}
            except ApiError:
                transport.close_connection()
                raise
        except ApiError as e:
            raise SessionError(f"Failed to log in to Harbor at {self.config.get('base_url')}: {e}") from e

        username = current_user.get('username', self.config.get('username')) \
            if isinstance(current_user, dict) else self.config.get('username')
        logger.debug(f"Logged in to Harbor as {username} using API v{api_version}")
        return SessionHandle(transport, api_version)
