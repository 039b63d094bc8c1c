"""
Base directory API interface and common functionality.

This module defines the collaborator interfaces the sync jobs depend on
(directory lookup, membership changes, user attributes) and the HTTP client
base class the concrete directory modules build on, including SSL and
authentication handling.
"""

import json
import ssl
import time
import base64
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, NamedTuple, Optional, Tuple, Union
from urllib.parse import urlencode, urljoin, urlparse
from http.client import HTTPConnection, HTTPSConnection

from cryptography.hazmat.primitives.serialization import Encoding, pkcs12

from directory_sync.identity import Identity
from directory_sync.logging_setup import audit_logger
from directory_sync.models import DestinationKind, GroupRef, Role
from directory_sync.outcomes import BatchFailure, RemoteFailure
from directory_sync.roster import Roster

logger = logging.getLogger(__name__)


class DirectoryAPIError(RemoteFailure):
    """Base exception for directory API errors."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class DirectoryAuthenticationError(DirectoryAPIError):
    """Raised when authentication to a directory API fails."""
    pass


class DirectoryBatchError(DirectoryAPIError, BatchFailure):
    """Raised when a batch change failed for some of its identities."""

    def __init__(self, message: str, failed):
        BatchFailure.__init__(self, message, failed)
        self.status = None


class Resolution(NamedTuple):
    """Result of looking up a group reference in a directory."""

    exists: bool
    kind: DestinationKind
    group: Optional[GroupRef] = None


class DirectoryLookup(ABC):
    """Resolves group references to concrete destination groups."""

    @abstractmethod
    def resolve(self, reference: Identity) -> Resolution:
        """
        Look up a group by email address or name.

        Returns:
            Resolution with ``exists=False`` when the group is unknown
        """
        pass


class MembershipGateway(ABC):
    """Reads and changes group membership in a directory."""

    @abstractmethod
    def list_current_members(self, group: GroupRef) -> Roster:
        pass

    @abstractmethod
    def add_member(self, group: GroupRef, identity: Identity, role: Role) -> None:
        """
        Add one identity to a group in the given role.

        Raises:
            DirectoryAPIError: If the directory rejects the change
        """
        pass

    @abstractmethod
    def remove_members(self, group: GroupRef, identities: Iterable[Identity], role: Role = Role.MEMBER) -> None:
        """
        Remove one batch of identities from a group.

        Raises:
            DirectoryAPIError: If any removal in the batch failed
        """
        pass


class UserAttributeGateway(ABC):
    """Reads and updates user attributes in a directory."""

    @abstractmethod
    def get_user_attributes(self, identity: Identity, names: Iterable[str]) -> Optional[Dict[str, str]]:
        """Return the requested attributes, or None when the user does not exist."""
        pass

    @abstractmethod
    def update_user_attributes(self, identity: Identity, changes: Dict[str, str]) -> None:
        pass


OAUTH2_FIELDS = ('client_id', 'client_secret', 'token_url')

# Seconds before the reported expiry at which a token is treated as stale
TOKEN_EXPIRY_MARGIN = 60


def _open_connection(url, ssl_context, timeout) -> Union[HTTPSConnection, HTTPConnection]:
    if url.scheme == 'https':
        return HTTPSConnection(url.netloc, context=ssl_context, timeout=timeout)
    return HTTPConnection(url.netloc, timeout=timeout)


class DirectoryAPIBase(DirectoryLookup, MembershipGateway, UserAttributeGateway):
    """
    Base class for REST directory integrations.

    Directory modules under ``directory_sync.gateways`` subclass this and
    implement the collaborator methods on top of :meth:`request`. Supported
    ``auth.method`` values are ``basic``, ``token``/``bearer``, ``api_key``
    (header name in ``auth.header``) and ``oauth2`` client credentials.
    """

    def __init__(self, config: Dict[str, Any]):
        """
        Args:
            config: One entry of the ``directories`` configuration list
        """
        self.config = config
        self.name = config['name']
        self.base_url = config['base_url']
        self.auth_config = config.get('auth') or {}
        self.verify_ssl = config.get('verify_ssl', True)
        self.timeout = config.get('timeout', 30)

        self.parsed_url = urlparse(self.base_url)
        self.host = self.parsed_url.netloc
        self.base_path = self.parsed_url.path.rstrip('/')

        self.connection = None
        self.auth_headers: Dict[str, str] = {}
        self._token_expires_at = None

        self.ssl_context = self._create_ssl_context()
        self._setup_authentication()

    @property
    def auth_method(self) -> str:
        return str(self.auth_config.get('method', '')).lower()

    # SSL

    def _create_ssl_context(self) -> Optional[ssl.SSLContext]:
        """
        Build the SSL context for https base URLs.

        Raises:
            DirectoryAPIError: If a configured truststore or client
                certificate cannot be loaded
        """
        if self.parsed_url.scheme != 'https':
            return None

        if not self.verify_ssl:
            logger.warning(f"SSL verification disabled for {self.name}")
            return ssl._create_unverified_context()

        context = ssl.create_default_context()

        truststore_file = self.config.get('truststore_file')
        if truststore_file:
            try:
                self._load_truststore(context, truststore_file)
            except DirectoryAPIError:
                raise
            except (OSError, ValueError, ssl.SSLError) as e:
                logger.error(f"Failed to load truststore {truststore_file} for {self.name}: {e}")
                raise DirectoryAPIError(f"Truststore loading failed: {e}")

        client_cert_file = self.config.get('client_cert_file')
        if client_cert_file:
            try:
                context.load_cert_chain(client_cert_file, self.config.get('client_key_file'))
            except (OSError, ssl.SSLError) as e:
                raise DirectoryAPIError(f"Client certificate loading failed: {e}")
            logger.info(f"Using client certificate {client_cert_file} for {self.name}")

        return context

    def _load_truststore(self, context: ssl.SSLContext, truststore_file: str):
        truststore_type = str(self.config.get('truststore_type', 'PEM')).upper()

        if truststore_type == 'PEM':
            context.load_verify_locations(cafile=truststore_file)
        elif truststore_type == 'PKCS12':
            password = self.config.get('truststore_password')
            with open(truststore_file, 'rb') as f:
                _, certificate, extra_certificates = pkcs12.load_key_and_certificates(
                    f.read(), password.encode() if password else None
                )
            certificates = ([certificate] if certificate else []) + list(extra_certificates or [])
            if not certificates:
                raise DirectoryAPIError(f"PKCS12 truststore {truststore_file} holds no certificates")
            context.load_verify_locations(
                cadata='\n'.join(cert.public_bytes(Encoding.PEM).decode('ascii') for cert in certificates)
            )
        else:
            raise DirectoryAPIError(f"Unsupported truststore type '{truststore_type}'")

        logger.info(f"Loaded {truststore_type} truststore {truststore_file} for {self.name}")

    # Authentication

    def _setup_authentication(self):
        """Fill ``auth_headers`` for the static methods; oauth2 tokens are fetched by authenticate()."""
        method = self.auth_method
        auth = self.auth_config

        if method == 'oauth2':
            missing = [field for field in OAUTH2_FIELDS if not auth.get(field)]
            if missing:
                logger.error(f"OAuth2 auth for {self.name} is missing {', '.join(missing)}")
            return

        if method == 'basic':
            if auth.get('username') and auth.get('password'):
                credentials = base64.b64encode(f"{auth['username']}:{auth['password']}".encode()).decode()
                self.auth_headers['Authorization'] = f"Basic {credentials}"
        elif method in ('token', 'bearer'):
            if auth.get('token'):
                self.auth_headers['Authorization'] = f"Bearer {auth['token']}"
        elif method == 'api_key':
            if auth.get('api_key'):
                self.auth_headers[auth.get('header', 'x-api-key')] = auth['api_key']
        else:
            if method:
                logger.warning(f"Unknown authentication method '{method}' for {self.name}")
            return

        if not self.auth_headers:
            logger.error(f"{method} auth for {self.name} is missing its credentials")

    def _token_is_fresh(self) -> bool:
        return self._token_expires_at is not None and time.monotonic() < self._token_expires_at

    def _fetch_oauth2_token(self) -> bool:
        """
        Request an access token with the client credentials grant.

        Returns:
            True if a token was stored in ``auth_headers``
        """
        auth = self.auth_config
        if not all(auth.get(field) for field in OAUTH2_FIELDS):
            return False

        form = {
            'grant_type': 'client_credentials',
            'client_id': auth['client_id'],
            'client_secret': auth['client_secret'],
        }
        if auth.get('scope'):
            form['scope'] = auth['scope']

        token_url = urlparse(auth['token_url'])
        conn = _open_connection(token_url, self.ssl_context, self.timeout)
        try:
            conn.request('POST', token_url.path or '/', urlencode(form),
                         {'Content-Type': 'application/x-www-form-urlencoded', 'Accept': 'application/json'})
            response = conn.getresponse()
            payload = response.read().decode('utf-8')
            if response.status != 200:
                logger.error(f"Token endpoint for {self.name} answered {response.status} {response.reason}: "
                             f"{self._error_message(payload)}")
                return False
            token = json.loads(payload)
        except json.JSONDecodeError as e:
            logger.error(f"Token endpoint for {self.name} returned invalid JSON: {e}")
            return False
        except OSError as e:
            logger.error(f"Token request for {self.name} failed: {e}")
            return False
        finally:
            conn.close()

        if not token.get('access_token'):
            logger.error(f"Token response for {self.name} has no access_token")
            return False

        self.auth_headers['Authorization'] = f"Bearer {token['access_token']}"
        expires_in = token.get('expires_in')
        self._token_expires_at = (time.monotonic() + int(expires_in) - TOKEN_EXPIRY_MARGIN) if expires_in else None
        logger.info(f"Obtained OAuth2 token for {self.name}")
        return True

    def authenticate(self) -> bool:
        """
        Make sure requests can be authenticated.

        For oauth2 this fetches a token unless the current one is still
        fresh; the static methods only check that credentials are present.
        """
        method = self.auth_method

        if method == 'oauth2':
            if self._token_is_fresh():
                return True
            principal = self.auth_config.get('client_id') or self.name
            success = self._fetch_oauth2_token()
            audit_logger.log_authentication_attempt(self.name, principal, success)
            return success

        if not method:
            return True
        if method in ('basic', 'token', 'bearer', 'api_key'):
            return bool(self.auth_headers)

        logger.warning(f"Unknown authentication method '{method}' for {self.name}")
        return False

    # HTTP

    def _build_path(self, path: str) -> str:
        if path.startswith(('http://', 'https://')):
            # Absolute next-page links returned by the API
            parsed = urlparse(path)
            return parsed.path + (f"?{parsed.query}" if parsed.query else '')
        return urljoin(self.base_path + '/', path.lstrip('/'))

    @staticmethod
    def _error_message(response_data: str) -> str:
        """Pull the human-readable text out of an error body (Graph, JumpCloud or plain)."""
        if not response_data:
            return ''
        try:
            payload = json.loads(response_data)
        except json.JSONDecodeError:
            return response_data.strip()[:500]

        if not isinstance(payload, dict):
            return str(payload)[:500]
        error = payload.get('error')
        if isinstance(error, dict):
            return error.get('message') or error.get('code') or ''
        return payload.get('message') or (str(error) if error else '') or payload.get('detail', '')

    def _send(self, method: str, path: str, body: Optional[str], headers: Optional[Dict]) -> Tuple[int, str, str]:
        request_headers = {'Accept': 'application/json'}
        request_headers.update(self.auth_headers)
        if body is not None:
            request_headers['Content-Type'] = 'application/json'
        request_headers.update(headers or {})

        if self.connection is None:
            self.connection = _open_connection(self.parsed_url, self.ssl_context, self.timeout)

        logger.debug(f"{method} {self.host}{path}")
        try:
            self.connection.request(method, path, body, request_headers)
            response = self.connection.getresponse()
            data = response.read().decode('utf-8')
        except OSError as e:
            self.close_connection()
            raise DirectoryAPIError(f"Connection error to {self.name}: {e}")

        logger.debug(f"{method} {path} -> {response.status} {response.reason}")
        return response.status, response.reason, data

    def request(self, method: str, path: str, body: Optional[Union[Dict, List]] = None,
                headers: Optional[Dict] = None) -> Any:
        """
        Call the directory API and return the decoded JSON body.

        Args:
            method: HTTP method
            path: Path relative to ``base_url`` or an absolute next-page URL
            body: JSON request body
            headers: Extra headers

        Returns:
            Parsed JSON response ({} for empty responses)

        Raises:
            DirectoryAuthenticationError: On HTTP 401, or when no oauth2
                token can be obtained; the call is never sent twice
            DirectoryAPIError: On any other failure; the message carries the
                remote error text so it can be classified
        """
        full_path = self._build_path(path)
        payload = json.dumps(body) if body is not None else None

        if self.auth_method == 'oauth2' and not self._token_is_fresh():
            logger.info(f"Access token for {self.name} is missing or stale, requesting a new one")
            if not self._fetch_oauth2_token():
                raise DirectoryAuthenticationError(f"Could not obtain an access token for {self.name}")

        status, reason, data = self._send(method, full_path, payload, headers)
        if status == 401:
            raise DirectoryAuthenticationError(f"Authentication failed for {self.name}", status=401)
        if status >= 400:
            detail = self._error_message(data)
            raise DirectoryAPIError(f"HTTP {status}: {reason}" + (f" - {detail}" if detail else ''), status=status)

        if not data:
            return {}
        try:
            return json.loads(data)
        except json.JSONDecodeError as e:
            raise DirectoryAPIError(f"Invalid JSON response from {self.name}: {e}")

    def close_connection(self):
        if self.connection is not None:
            try:
                self.connection.close()
            except OSError as e:
                logger.warning(f"Error closing connection for {self.name}: {e}")
            finally:
                self.connection = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close_connection()
