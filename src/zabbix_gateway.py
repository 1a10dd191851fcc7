"""
Zabbix API gateway - session handling and JSON-RPC calls for the MCP tools

The gateway owns the connection settings, logs in with ``user.login`` and
issues JSON-RPC 2.0 requests against ``<url>/api_jsonrpc.php``. Failures are
never raised to the caller: every operation returns a :class:`Result` holding
either the value or one of the errors defined below, so the tool layer can
render them as text.

Author: Zabbix MCP Server Contributors
License: MIT
"""

import asyncio
import itertools
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Generic, Optional, TypeVar

import httpx
from zabbix_utils import APIVersion

logger = logging.getLogger(__name__)

T = TypeVar("T")

API_PATH = "/api_jsonrpc.php"
CONTENT_TYPE = "application/json-rpc"
DEFAULT_TIMEOUT = 30.0

AUTH_MODES = ("field", "header", "auto")

# Bearer header authentication appeared in Zabbix 6.4
HEADER_AUTH_SINCE = 6.4

# Methods Zabbix answers without a session
UNAUTHENTICATED_METHODS = frozenset(
    {"apiinfo.version", "user.login", "user.checkAuthentication"}
)

SESSION_EXPIRED_MARKERS = (
    "session terminated",
    "re-login",
    "not authorized",
    "not authorised",
)


class ZabbixGatewayError(Exception):
    """Base class for every failure reported by the gateway."""


class ConfigError(ZabbixGatewayError):
    """The connection settings are unusable."""


class InvalidUrlError(ConfigError):
    def __init__(self, url: str):
        super().__init__(f"Invalid Zabbix URL: {url!r}")
        self.url = url


class MissingCredentialError(ConfigError):
    def __init__(self, name: str):
        super().__init__(f"Missing Zabbix credential: {name}")
        self.name = name


class AuthError(ZabbixGatewayError):
    """Login failed or the server could not be reached for login."""


class AuthTransportError(AuthError):
    def __init__(self, status: Optional[int], reason: str = ""):
        if status is None:
            message = f"Failed to authenticate with Zabbix: {reason or 'unreachable'}"
        else:
            message = f"Failed to authenticate with Zabbix: HTTP {status} {reason}".rstrip()
        super().__init__(message)
        self.status = status
        self.reason = reason


class AuthRejectedError(AuthError):
    def __init__(self, code: int, message: str):
        super().__init__(f"Zabbix rejected login ({code}): {message}")
        self.code = code
        self.message = message


class LoginResponseError(AuthError):
    def __init__(self, reason: str):
        super().__init__(f"Malformed Zabbix login response: {reason}")
        self.reason = reason


class GatewayError(ZabbixGatewayError):
    """A JSON-RPC call failed."""


class NotConfiguredError(GatewayError):
    def __init__(self):
        super().__init__("Zabbix connection is not configured")


class TransportError(GatewayError):
    def __init__(self, status: Optional[int], status_text: str):
        if status is None:
            message = f"Zabbix API error: {status_text}"
        else:
            message = f"Zabbix API error: HTTP {status} {status_text}".rstrip()
        super().__init__(message)
        self.status = status
        self.status_text = status_text


class RemoteError(GatewayError):
    def __init__(self, code: int, message: str, data: Any = None):
        text = f"Zabbix API error ({code}): {message}"
        if data:
            text = f"{text} {data}"
        super().__init__(text)
        self.code = code
        self.message = message
        self.data = data


class GatewayTimeoutError(GatewayError):
    def __init__(self, timeout: float):
        super().__init__(f"Zabbix API request timed out after {timeout:g}s")
        self.timeout = timeout


class MalformedResponseError(GatewayError):
    def __init__(self, reason: str):
        super().__init__(f"Malformed Zabbix API response: {reason}")
        self.reason = reason


@dataclass(frozen=True)
class Result(Generic[T]):
    """Outcome of a gateway operation: a value or an error, never both."""

    value: Optional[T] = None
    error: Optional[ZabbixGatewayError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def unwrap(self) -> T:
        """Return the value or raise the stored error."""
        if self.error is not None:
            raise self.error
        return self.value

    @classmethod
    def success(cls, value: Any = None) -> "Result":
        return cls(value=value)

    @classmethod
    def failure(cls, error: ZabbixGatewayError) -> "Result":
        return cls(error=error)


@dataclass(frozen=True)
class Connection:
    """Where and as whom to reach the Zabbix API."""

    base_url: str
    user: str
    password: str = field(repr=False)

    @classmethod
    def from_env(cls, environ: Dict[str, str]) -> Optional["Connection"]:
        """Build a connection from ZABBIX_URL/ZABBIX_USER/ZABBIX_PASSWORD.

        Args:
            environ: Mapping to read the variables from (usually os.environ)

        Returns:
            Optional[Connection]: None unless all three variables are set
        """
        url = environ.get("ZABBIX_URL")
        user = environ.get("ZABBIX_USER")
        password = environ.get("ZABBIX_PASSWORD")
        if url and user and password:
            return cls(base_url=url, user=user, password=password)
        return None

    @property
    def endpoint(self) -> str:
        return self.base_url.rstrip("/") + API_PATH


@dataclass(frozen=True)
class Session:
    token: str = field(repr=False)
    obtained_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


def validate_connection(connection: Connection) -> Optional[ConfigError]:
    """Check a connection without touching the network.

    Args:
        connection: Connection to check

    Returns:
        Optional[ConfigError]: The first problem found, or None
    """
    try:
        url = httpx.URL(connection.base_url)
    except (httpx.InvalidURL, TypeError):
        return InvalidUrlError(connection.base_url)

    if not url.is_absolute_url or url.scheme not in ("http", "https") or not url.host:
        return InvalidUrlError(connection.base_url)
    if not connection.user:
        return MissingCredentialError("user")
    if not connection.password:
        return MissingCredentialError("password")
    return None


def is_session_expired(error: ZabbixGatewayError) -> bool:
    """Tell whether a remote error means the session token is no longer valid."""
    if not isinstance(error, RemoteError):
        return False
    text = f"{error.message} {error.data or ''}".lower()
    return any(marker in text for marker in SESSION_EXPIRED_MARKERS)


class ZabbixGateway:
    """JSON-RPC gateway to one Zabbix server.

    By default every :meth:`invoke` performs a fresh ``user.login`` and never
    reuses a token. Pass ``cache_session=True`` to keep the session between
    calls; logins are then single-flight and the cached session is dropped
    when Zabbix reports it expired.

    Args:
        connection: Optional connection, validated like :meth:`configure`
        timeout: Seconds allowed for each HTTP request
        cache_session: Reuse the session token across calls
        auth_mode: "field" (top-level ``auth``), "header" (Bearer) or "auto"
        transport: httpx transport override, used by tests
    """

    def __init__(
        self,
        connection: Optional[Connection] = None,
        timeout: float = DEFAULT_TIMEOUT,
        cache_session: bool = False,
        auth_mode: str = "field",
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if auth_mode not in AUTH_MODES:
            raise ValueError(f"auth_mode must be one of {', '.join(AUTH_MODES)}")

        self.timeout = timeout
        self.cache_session = cache_session
        self.auth_mode = auth_mode
        self.login_count = 0

        self._transport = transport
        self._connection: Optional[Connection] = None
        self._session: Optional[Session] = None
        self._session_lock = asyncio.Lock()
        self._auth_mode_lock = asyncio.Lock()
        self._resolved_auth_mode: Optional[str] = None
        self._ids = itertools.count(1)

        if connection is not None:
            self.configure(connection).unwrap()

    @property
    def connection(self) -> Optional[Connection]:
        return self._connection

    @property
    def is_configured(self) -> bool:
        return self._connection is not None

    @property
    def session(self) -> Optional[Session]:
        """The cached session, always None unless caching is enabled."""
        return self._session

    def configure(self, connection: Connection) -> Result[None]:
        """Validate and store the connection settings.

        Args:
            connection: New connection, replaces any previous one

        Returns:
            Result[None]: InvalidUrlError or MissingCredentialError on failure
        """
        error = validate_connection(connection)
        if error is not None:
            logger.warning(f"Rejected Zabbix configuration: {error}")
            return Result.failure(error)

        self._connection = connection
        self._session = None
        self._resolved_auth_mode = None
        logger.info(f"Configured Zabbix API at {connection.endpoint} as {connection.user}")
        return Result.success()

    async def authenticate(self) -> Result[Session]:
        """Log in with ``user.login`` and return a new session.

        Returns:
            Result[Session]: AuthTransportError, AuthRejectedError,
            LoginResponseError (undecodable reply), GatewayTimeoutError or
            NotConfiguredError on failure
        """
        connection = self._connection
        if connection is None:
            return Result.failure(NotConfiguredError())

        payload = self._envelope(
            "user.login",
            {"username": connection.user, "password": connection.password},
        )
        self.login_count += 1
        logger.info(f"Authenticating with username: {connection.user}")

        try:
            response = await self._post(connection, payload, {})
        except httpx.TimeoutException:
            return Result.failure(GatewayTimeoutError(self.timeout))
        except httpx.RequestError as e:
            logger.error(f"Zabbix login request failed: {e}")
            return Result.failure(AuthTransportError(None, str(e)))

        if not response.is_success:
            return Result.failure(
                AuthTransportError(response.status_code, response.reason_phrase)
            )

        try:
            body = response.json()
        except ValueError:
            return Result.failure(LoginResponseError("not JSON"))

        if isinstance(body, dict) and "error" in body:
            error = body["error"]
            if not isinstance(error, dict):
                return Result.failure(LoginResponseError("error member is not an object"))
            return Result.failure(
                AuthRejectedError(error.get("code", 0), error.get("message", ""))
            )

        token = body.get("result") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            return Result.failure(LoginResponseError("no token returned"))

        logger.info("Successfully authenticated with Zabbix API")
        return Result.success(Session(token=token))

    async def get_or_refresh_session(self) -> Result[Session]:
        """Return a session usable for the next call.

        Without caching this is a fresh login every time. With caching the
        stored session is reused and concurrent callers wait on a single
        login instead of each starting their own.
        """
        if not self.cache_session:
            return await self.authenticate()

        session = self._session
        if session is not None:
            return Result.success(session)

        async with self._session_lock:
            if self._session is not None:
                return Result.success(self._session)
            connection = self._connection
            result = await self.authenticate()
            # configure() may have replaced the connection during the login
            if result.ok and self._connection is connection:
                self._session = result.value
            return result

    def invalidate_session(self) -> None:
        if self._session is not None:
            logger.info("Dropping cached Zabbix session")
        self._session = None

    async def invoke(self, method: str, params: Any = None) -> Result[Any]:
        """Call a Zabbix API method.

        Args:
            method: JSON-RPC method, e.g. "host.get"
            params: Method parameters, passed through untouched

        Returns:
            Result[Any]: The ``result`` member of the response verbatim, or
            NotConfiguredError, an AuthError, TransportError, RemoteError,
            GatewayTimeoutError or MalformedResponseError
        """
        connection = self._connection
        if connection is None:
            return Result.failure(NotConfiguredError())

        if params is None:
            params = {}

        token = None
        if method not in UNAUTHENTICATED_METHODS:
            session_result = await self.get_or_refresh_session()
            if not session_result.ok:
                return session_result
            token = session_result.value.token

        headers: Dict[str, str] = {}
        payload = self._envelope(method, params)
        if token is not None:
            if await self._auth_mode_for(connection) == "header":
                headers["Authorization"] = f"Bearer {token}"
            else:
                payload["auth"] = token

        result = await self._call(connection, method, payload, headers)
        if self.cache_session and not result.ok and is_session_expired(result.error):
            self.invalidate_session()
        return result

    async def detect_api_version(self) -> Result[APIVersion]:
        """Ask the server for its API version."""
        result = await self.invoke("apiinfo.version", {})
        if not result.ok:
            return result
        try:
            return Result.success(APIVersion(str(result.value)))
        except ValueError:
            return Result.failure(
                MalformedResponseError(f"unexpected API version {result.value!r}")
            )

    async def _auth_mode_for(self, connection: Connection) -> str:
        if self.auth_mode != "auto":
            return self.auth_mode
        if self._resolved_auth_mode is not None:
            return self._resolved_auth_mode

        async with self._auth_mode_lock:
            if self._resolved_auth_mode is not None:
                return self._resolved_auth_mode
            version = await self.detect_api_version()
            if version.ok and version.value.major >= HEADER_AUTH_SINCE:
                mode = "header"
            else:
                mode = "field"
            if not version.ok:
                logger.warning(f"Could not detect Zabbix API version: {version.error}")
            elif self._connection is connection:
                logger.info(f"Zabbix API {version.value} at {connection.endpoint}, using {mode} auth")
                self._resolved_auth_mode = mode
            return mode

    async def _call(
        self,
        connection: Connection,
        method: str,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> Result[Any]:
        logger.debug(f"Calling Zabbix API method {method}")
        try:
            response = await self._post(connection, payload, headers)
        except httpx.TimeoutException:
            logger.error(f"Zabbix API call {method} timed out")
            return Result.failure(GatewayTimeoutError(self.timeout))
        except httpx.RequestError as e:
            logger.error(f"Zabbix API call {method} failed: {e}")
            return Result.failure(TransportError(None, str(e)))

        if not response.is_success:
            logger.error(f"Zabbix API call {method} returned HTTP {response.status_code}")
            return Result.failure(
                TransportError(response.status_code, response.reason_phrase)
            )

        try:
            body = response.json()
        except ValueError:
            return Result.failure(MalformedResponseError("response is not JSON"))

        if not isinstance(body, dict):
            return Result.failure(MalformedResponseError("response is not an object"))

        if "error" in body:
            error = body["error"]
            if not isinstance(error, dict):
                return Result.failure(MalformedResponseError("error member is not an object"))
            return Result.failure(
                RemoteError(
                    error.get("code", 0), error.get("message", ""), error.get("data")
                )
            )

        if "result" not in body:
            return Result.failure(MalformedResponseError("response has no result"))

        return Result.success(body["result"])

    async def _post(
        self,
        connection: Connection,
        payload: Dict[str, Any],
        headers: Dict[str, str],
    ) -> httpx.Response:
        async with httpx.AsyncClient(
            timeout=self.timeout, transport=self._transport
        ) as client:
            return await client.post(
                connection.endpoint,
                json=payload,
                headers={"Content-Type": CONTENT_TYPE, **headers},
            )

    def _envelope(self, method: str, params: Any) -> Dict[str, Any]:
        return {
            "jsonrpc": "2.0",
            "method": method,
            "params": params,
            "id": next(self._ids),
        }
