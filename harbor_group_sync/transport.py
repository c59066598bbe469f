"""
HTTP transport for the Harbor REST API.

This module provides the authenticated JSON client shared by every Harbor call:
basic authentication, SSL/TLS verification with optional custom truststores,
query string handling and mapping of HTTP failures to ApiError.
"""

import json
import ssl
import base64
import logging
from typing import Dict, Any, Optional, Union
from urllib.parse import urlparse, urlencode
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from .retry import (
    RetryableError, MaxRetriesExceeded, retry_call, is_retryable_error, create_retry_callback
)

logger = logging.getLogger(__name__)

JSON_CONTENT_TYPE = 'application/json'

# Requests that may be repeated without side effects
SAFE_METHODS = ('GET', 'HEAD')


class ApiError(Exception):
    """Raised when a Harbor API call fails."""

    def __init__(self, message: str, status_code: Optional[int] = None,
                 endpoint: Optional[str] = None, detail: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.endpoint = endpoint
        self.detail = detail


class ApiAuthenticationError(ApiError):
    """Raised when Harbor rejects the configured credentials."""
    pass


class ApiConnectionError(ApiError, RetryableError):
    """Raised when Harbor cannot be reached."""
    pass


class ApiResponse:
    """Decoded response of a single Harbor API call."""

    def __init__(self, data: Any, status: int, headers: Optional[Dict[str, str]] = None):
        self.data = data
        self.status = status
        # Header names are stored lower-cased
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}

    def header(self, name: str, default: Optional[str] = None) -> Optional[str]:
        return self.headers.get(name.lower(), default)

    def __repr__(self):
        return f"ApiResponse(status={self.status}, headers={sorted(self.headers)})"


class HarborTransport:
    """
    Authenticated HTTP client bound to one Harbor API base path.

    The base path selects the API version (``/api`` for v1, ``/api/v2.0`` for v2);
    paths passed to request() are relative to it, e.g. ``/usergroups``.
    """

    def __init__(self, config: Dict[str, Any], api_base_path: str,
                 retry_config: Optional[Dict[str, Any]] = None):
        """
        Initialize Harbor transport.

        Args:
            config: ``harbor`` configuration section
            api_base_path: API prefix for the negotiated version
            retry_config: ``error_handling`` configuration section
        """
        self.config = config
        self.base_url = config['base_url'].rstrip('/')
        self.username = config.get('username')
        self.password = config.get('password')
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        retry_config = retry_config or {}
        self.max_retries = retry_config.get('max_retries', 0)
        self.retry_wait = retry_config.get('retry_wait_seconds', 1)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/') + '/' + api_base_path.strip('/')

        self.connection = None
        self.ssl_context = None
        self.auth_headers = {}

        self._setup_ssl_context()
        self._setup_authentication()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.host}")
            return

        self.ssl_context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            self._load_truststore(truststore_file)

    def _load_truststore(self, truststore_file: str):
        """Load custom truststore/CA certificates."""
        truststore_type = self.config.get('truststore_type', 'PEM').upper()
        truststore_password = self.config.get('truststore_password')

        try:
            if truststore_type == 'PEM':
                self.ssl_context.load_verify_locations(cafile=truststore_file)
                logger.info(f"Loaded PEM truststore: {truststore_file}")

            elif truststore_type == 'JKS':
                try:
                    import jks
                except ImportError:
                    logger.error("pyjks library not available for JKS truststore support")
                    raise ApiError("JKS truststore requires the pyjks library")

                keystore = jks.KeyStore.load(truststore_file, truststore_password or '')
                # Trusted entries hold DER certificates, which cadata accepts concatenated
                ca_data = b''.join(entry.cert for entry in keystore.certs.values())
                if ca_data:
                    self.ssl_context.load_verify_locations(cadata=ca_data)
                    logger.info(f"Loaded JKS truststore: {truststore_file}")

            elif truststore_type == 'PKCS12':
                try:
                    from cryptography.hazmat.primitives import serialization
                    from cryptography.hazmat.primitives.serialization import pkcs12
                except ImportError:
                    logger.error("cryptography library not available for PKCS12 truststore support")
                    raise ApiError("PKCS12 truststore requires the cryptography library")

                with open(truststore_file, 'rb') as f:
                    p12_data = f.read()

                _, certificate, additional_certificates = pkcs12.load_key_and_certificates(
                    p12_data, truststore_password.encode() if truststore_password else None
                )

                ca_certs = []
                if certificate:
                    ca_certs.append(certificate.public_bytes(serialization.Encoding.PEM).decode('ascii'))
                for cert in (additional_certificates or []):
                    ca_certs.append(cert.public_bytes(serialization.Encoding.PEM).decode('ascii'))

                if ca_certs:
                    self.ssl_context.load_verify_locations(cadata=''.join(ca_certs))
                    logger.info(f"Loaded PKCS12 truststore: {truststore_file}")

            else:
                raise ApiError(f"Unsupported truststore type: {truststore_type}")

        except ApiError:
            raise
        except Exception as e:
            logger.error(f"Failed to load truststore {truststore_file}: {e}")
            raise ApiError(f"Truststore loading failed: {e}")

    def _setup_authentication(self):
        """Set up the basic authentication header."""
        if self.username and self.password:
            credentials = base64.b64encode(f"{self.username}:{self.password}".encode()).decode()
            self.auth_headers['Authorization'] = f"Basic {credentials}"
            logger.debug(f"Configured Basic authentication for {self.host}")
        else:
            logger.warning(f"No credentials configured for {self.host}, requests will be anonymous")

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def build_path(self, path: str, params: Optional[Dict[str, Any]] = None) -> str:
        """Join the API base path, the endpoint path and the encoded query string."""
        full_path = self.base_path + '/' + path.lstrip('/')
        if params:
            query = {k: v for k, v in params.items() if v is not None}
            if query:
                full_path = f"{full_path}?{urlencode(query)}"
        return full_path

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                body: Optional[Any] = None, headers: Optional[Dict[str, str]] = None) -> ApiResponse:
        """
        Make HTTP request to the Harbor API.

        Safe requests are retried on transient failures when retries are configured.

        Args:
            method: HTTP method (GET, POST, PUT, DELETE)
            path: Endpoint path relative to the API base path
            params: Query parameters
            body: Request body, serialized as JSON
            headers: Additional headers

        Returns:
            Decoded ApiResponse

        Raises:
            ApiError: If the request fails
        """
        method = method.upper()
        if method not in SAFE_METHODS or self.max_retries <= 0:
            return self._send(method, path, params, body, headers)

        try:
            return retry_call(
                self._send,
                args=(method, path, params, body, headers),
                max_attempts=self.max_retries + 1,
                delay=self.retry_wait,
                backoff=2.0,
                exceptions=(ApiError,),
                on_retry=create_retry_callback(f"{method} {path}"),
                should_retry=is_retryable_error
            )
        except MaxRetriesExceeded as e:
            logger.warning(f"{method} {path} still failing after {e.attempts} attempts")
            raise e.last_exception

    def _send(self, method: str, path: str, params: Optional[Dict[str, Any]],
              body: Optional[Any], headers: Optional[Dict[str, str]]) -> ApiResponse:
        full_path = self.build_path(path, params)
        endpoint = f"{method} {path}"

        request_headers = {
            'Accept': JSON_CONTENT_TYPE,
            'Content-Type': JSON_CONTENT_TYPE,
        }
        request_headers.update(self.auth_headers)
        if headers:
            request_headers.update(headers)

        request_body = json.dumps(body) if body is not None else None

        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{full_path}")
            conn.request(method, full_path, request_body, request_headers)

            response = conn.getresponse()
            response_data = response.read().decode('utf-8')
            response_headers = {}
            for name, value in response.getheaders():
                key = name.lower()
                # Repeated headers such as Link are folded into one value
                response_headers[key] = f"{response_headers[key]}, {value}" if key in response_headers else value
        except (HTTPException, OSError) as e:
            self.close_connection()
            raise ApiConnectionError(f"Connection error to {self.host} on {endpoint}: {e}",
                                     endpoint=endpoint, detail=str(e))

        logger.debug(f"Response status: {response.status} {response.reason}")

        if response.status in (401, 403):
            raise ApiAuthenticationError(
                f"Authentication failed on {endpoint}: HTTP {response.status} {response.reason}",
                status_code=response.status, endpoint=endpoint, detail=response_data)
        if response.status >= 400:
            raise ApiError(
                f"HTTP {response.status} {response.reason} on {endpoint}: {response_data}",
                status_code=response.status, endpoint=endpoint, detail=response_data)

        data = None
        if response_data:
            content_type = response_headers.get('content-type', JSON_CONTENT_TYPE)
            if 'json' in content_type:
                try:
                    data = json.loads(response_data)
                except json.JSONDecodeError as e:
                    raise ApiError(f"Invalid JSON response on {endpoint}: {e}",
                                   status_code=response.status, endpoint=endpoint, detail=response_data)
            else:
                data = response_data

        return ApiResponse(data, response.status, response_headers)

    def close_connection(self):
        """Close HTTP connection."""
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection to {self.host}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
