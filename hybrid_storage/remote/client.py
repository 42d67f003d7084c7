"""
Remote collection API client.

Wraps the collection-oriented HTTP API:

| Operation        | Method | Path                                  |
|------------------|--------|---------------------------------------|
| fetch collection | GET    | /data?collection={c}&userId={u}       |
| save record      | POST   | /data                                 |
| update record    | PUT    | /data                                 |
| delete record    | DELETE | /data                                 |
| authenticate     | POST   | /auth                                 |

The client is stateless with respect to sync: it neither knows nor
records what has been delivered. Every call is bounded by a timeout and
fails with one of:

- RemoteUnreachableError: connection failed or the server is temporarily
  unavailable (408, 429, 5xx); callers should queue the write
- RemoteTimeoutError: the call exceeded the timeout; treated as unreachable
- RemoteRejectedError: the server refused the request (other 4xx)
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import aiohttp

from ..exceptions import RemoteRejectedError, RemoteTimeoutError, RemoteUnreachableError
from ..records import Record, delete_body, update_body

logger = logging.getLogger(__name__)

DATA_ENDPOINT = "/data"
AUTH_ENDPOINT = "/auth"

# Statuses that mean "try again later" rather than "this request is wrong"
TRANSIENT_STATUS_CODES = frozenset({408, 429, 500, 502, 503, 504})


class HttpMethod(str, Enum):
    """HTTP methods used by the remote API."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    DELETE = "DELETE"


@dataclass(frozen=True)
class RemoteRequest:
    """A single remote call, in the form the offline queue persists."""

    method: HttpMethod
    endpoint: str
    payload: Any = None

    @classmethod
    def save(cls, record: Record) -> RemoteRequest:
        return cls(HttpMethod.POST, DATA_ENDPOINT, record.to_wire())

    @classmethod
    def update(cls, collection: str, key: str, partial: dict[str, Any], version: int) -> RemoteRequest:
        return cls(HttpMethod.PUT, DATA_ENDPOINT, update_body(collection, key, partial, version))

    @classmethod
    def delete(cls, collection: str, key: str) -> RemoteRequest:
        return cls(HttpMethod.DELETE, DATA_ENDPOINT, delete_body(collection, key))


@dataclass
class AuthResult:
    """Outcome of an authentication attempt.

    Attributes:
        success: Whether the credentials were accepted
        user: User profile returned on success
        message: Failure reason reported by the server
        offline: True when answered from the local credential cache
    """

    success: bool
    user: dict[str, Any] = field(default_factory=dict)
    message: str | None = None
    offline: bool = False


class RemoteClient:
    """Async client for the remote collection API.

    Example:
        >>> async with RemoteClient("https://example.com/api", timeout=10) as client:
        ...     records = await client.fetch_collection("personnel")
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 10.0,
        user_id: str | None = None,
        headers: dict[str, str] | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            base_url: API base URL, e.g. ``https://example.com/api``
            timeout: Total timeout per call in seconds
            user_id: Default user ID for collection fetches
            headers: Extra headers sent with every request
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.user_id = user_id
        self.headers = {"Content-Type": "application/json", **(headers or {})}
        self._session: aiohttp.ClientSession | None = None

    async def __aenter__(self) -> RemoteClient:
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers=self.headers,
                timeout=aiohttp.ClientTimeout(total=self.timeout),
            )
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session."""
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def send(self, request: RemoteRequest) -> Any:
        """Send a prepared request (used for live writes and queue replay)."""
        return await self.request(request.method, request.endpoint, request.payload)

    async def request(
        self,
        method: HttpMethod | str,
        endpoint: str,
        payload: Any = None,
        params: dict[str, str] | None = None,
    ) -> Any:
        """Perform one API call.

        Returns:
            Decoded JSON body (or raw text for non-JSON bodies, None if empty)

        Raises:
            RemoteUnreachableError: Connection failure or transient server status
            RemoteTimeoutError: Timeout exceeded
            RemoteRejectedError: Server refused the request
        """
        method = HttpMethod(method)
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        kwargs: dict[str, Any] = {}
        if params:
            kwargs["params"] = params
        if payload is not None:
            kwargs["json"] = payload

        try:
            async with self._get_session().request(method.value, url, **kwargs) as response:
                status = response.status
                body = await self._read_body(response)
        except TimeoutError as e:
            raise RemoteTimeoutError(
                f"{method.value} {endpoint} timed out after {self.timeout}s",
                method.value,
                endpoint,
                e,
            ) from e
        except aiohttp.ClientError as e:
            raise RemoteUnreachableError(
                f"{method.value} {endpoint} failed: {e}", method.value, endpoint, e
            ) from e

        if 200 <= status < 300:
            return body

        message = self._error_message(body, status)
        if status in TRANSIENT_STATUS_CODES:
            raise RemoteUnreachableError(
                f"{method.value} {endpoint} unavailable: {message}",
                method.value,
                endpoint,
                status=status,
            )
        raise RemoteRejectedError(message, status, method.value, endpoint, body)

    @staticmethod
    async def _read_body(response: aiohttp.ClientResponse) -> Any:
        text = await response.text()
        if not text.strip():
            return None
        try:
            return json.loads(text)
        except ValueError:
            return text

    @staticmethod
    def _error_message(body: Any, status: int) -> str:
        if isinstance(body, dict):
            for key in ("error", "message"):
                if body.get(key):
                    return str(body[key])
        if isinstance(body, str) and body.strip():
            return body.strip()[:200]
        return f"HTTP {status}"

    async def fetch_collection(self, collection: str, user_id: str | None = None) -> list[Record]:
        """Fetch every record of a collection."""
        params = {"collection": collection}
        user_id = user_id or self.user_id
        if user_id:
            params["userId"] = user_id

        body = await self.request(HttpMethod.GET, DATA_ENDPOINT, params=params)
        if body is None:
            return []
        if not isinstance(body, list):
            raise RemoteRejectedError(
                f"Expected a list for collection {collection}",
                200,
                HttpMethod.GET.value,
                DATA_ENDPOINT,
                body,
            )

        records = []
        for document in body:
            try:
                records.append(Record.from_remote(collection, document))
            except (AttributeError, TypeError, ValueError) as e:
                logger.warning(f"Skipping undecodable document in {collection}: {e}")
        return records

    async def save_record(self, record: Record) -> Any:
        return await self.send(RemoteRequest.save(record))

    async def update_record(
        self, collection: str, key: str, partial: dict[str, Any], version: int
    ) -> Any:
        return await self.send(RemoteRequest.update(collection, key, partial, version))

    async def delete_record(self, collection: str, key: str) -> Any:
        return await self.send(RemoteRequest.delete(collection, key))

    async def authenticate(self, username: str, password: str) -> AuthResult:
        """Check credentials against the remote API.

        A refused login is a normal result (success=False), not an error.

        Raises:
            RemoteUnreachableError: If the API cannot answer right now
            RemoteRejectedError: If the API answers with an unexpected error
        """
        try:
            body = await self.request(
                HttpMethod.POST,
                AUTH_ENDPOINT,
                {"username": username, "password": password},
            )
        except RemoteRejectedError as e:
            if isinstance(e.body, dict) and "success" in e.body:
                body = e.body
            elif e.status in (401, 403):
                return AuthResult(success=False, message=e.message)
            else:
                raise

        if not isinstance(body, dict):
            raise RemoteRejectedError(
                "Unexpected authentication response", 200, HttpMethod.POST.value, AUTH_ENDPOINT, body
            )
        if body.get("success"):
            return AuthResult(success=True, user=body.get("user") or {}, message=body.get("message"))
        return AuthResult(success=False, message=body.get("message") or body.get("error"))
