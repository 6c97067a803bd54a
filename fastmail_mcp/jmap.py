"""
Minimal JMAP (RFC 8620) client for Fastmail.

Requests are described with :class:`MethodBatch`, which keeps the ordered
method calls separate from the back-references between them, so that a
caller can see exactly which argument of which call is computed from an
earlier result.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Tuple
from urllib.parse import quote

import httpx

from .errors import AuthError, ProtocolError

logger = logging.getLogger(__name__)

CORE = "urn:ietf:params:jmap:core"
MAIL = "urn:ietf:params:jmap:mail"
SUBMISSION = "urn:ietf:params:jmap:submission"

DEFAULT_TIMEOUT = 30.0


@dataclass(frozen=True)
class ResultReference:
    """Points an argument at ``path`` inside the result of call ``result_of``."""

    result_of: str
    name: str
    path: str

    def to_json(self) -> Dict[str, str]:
        return {"resultOf": self.result_of, "name": self.name, "path": self.path}


def creation_ref(creation_id: str) -> str:
    """Reference to an object created earlier in the same request."""
    return f"#{creation_id}"


class MethodBatch:
    """An ordered list of JMAP method calls plus their back-references."""

    def __init__(self, using: Iterable[str]) -> None:
        self.using = list(using)
        self.calls: List[Tuple[str, Dict[str, Any], str]] = []
        self.references: Dict[Tuple[str, str], ResultReference] = {}

    def add(self, name: str, arguments: Dict[str, Any], call_id: str) -> str:
        self.calls.append((name, arguments, call_id))
        return call_id

    def refer(self, call_id: str, argument: str, reference: ResultReference) -> None:
        """Compute ``argument`` of ``call_id`` from an earlier result."""
        self.references[(call_id, argument)] = reference

    def to_request(self) -> Dict[str, Any]:
        method_calls = []
        for name, arguments, call_id in self.calls:
            args = dict(arguments)
            for (ref_call, argument), reference in self.references.items():
                if ref_call == call_id:
                    args.pop(argument, None)
                    args[f"#{argument}"] = reference.to_json()
            method_calls.append([name, args, call_id])
        return {"using": self.using, "methodCalls": method_calls}


def method_result(response: Dict[str, Any], call_id: str, expected: str) -> Dict[str, Any]:
    """
    Return the arguments of the response to ``call_id``.

    Raises :class:`ProtocolError` when the call is missing, failed with a
    method-level ``error`` or answered with an unexpected method name.
    """
    for name, arguments, response_id in response.get("methodResponses", []):
        if response_id != call_id:
            continue
        if name == "error":
            error_type = arguments.get("type", "unknown")
            description = arguments.get("description")
            detail = f": {description}" if description else ""
            raise ProtocolError(f"JMAP {expected} failed ({error_type}){detail}")
        if name != expected:
            raise ProtocolError(f"JMAP response mismatch: expected {expected}, got {name}")
        return arguments
    raise ProtocolError(f"JMAP response missing {expected}")


def set_error(error: Dict[str, Any]) -> str:
    error_type = error.get("type", "unknown")
    description = error.get("description")
    return f"{error_type}: {description}" if description else error_type


class JmapClient:
    """JMAP client for the Fastmail API."""

    def __init__(
        self,
        base_url: str,
        api_token: Optional[str] = None,
        username: Optional[str] = None,
        password: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_token and not (username and password):
            raise AuthError(
                "Missing credentials. Provide FASTMAIL_USERNAME + FASTMAIL_APP_PASSWORD "
                "(recommended) or FASTMAIL_API_TOKEN."
            )
        self.base_url = base_url.rstrip("/")
        self._headers = {"Content-Type": "application/json"}
        self._auth: Optional[httpx.Auth] = None
        if api_token:
            self._headers["Authorization"] = f"Bearer {api_token}"
        else:
            self._auth = httpx.BasicAuth(username, password)
        self._transport = transport
        self._session: Optional[Dict[str, Any]] = None
        self._account_id: Optional[str] = None

    @property
    def session_url(self) -> str:
        return f"{self.base_url}/jmap/session"

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=DEFAULT_TIMEOUT, headers=self._headers, auth=self._auth, transport=self._transport
        )

    @staticmethod
    def _check(response: httpx.Response, what: str) -> None:
        if response.status_code in (401, 403):
            logger.error("%s rejected the credentials (%s)", what, response.status_code)
            raise AuthError(f"{what} failed ({response.status_code}): check the Fastmail credentials")
        if response.is_error:
            logger.error("%s failed with status %s", what, response.status_code)
            raise ProtocolError(f"{what} failed", status=response.status_code, body=response.text)

    async def get_session(self) -> Dict[str, Any]:
        """Fetch and cache the JMAP session resource."""
        if self._session is not None:
            return self._session

        try:
            async with self._client() as client:
                response = await client.get(self.session_url)
        except httpx.HTTPError as exc:
            raise ProtocolError(f"JMAP session request failed: {exc}") from exc
        self._check(response, "JMAP session request")
        session = response.json()

        account_id = session.get("primaryAccounts", {}).get(MAIL)
        if not account_id:
            accounts = session.get("accounts") or {}
            account_id = next(iter(accounts), None)
        if not account_id or not session.get("apiUrl"):
            raise ProtocolError("JMAP session missing accounts or apiUrl")

        self._session = session
        self._account_id = account_id
        logger.info("JMAP session established for account %s", account_id)
        return session

    @property
    def account_id(self) -> str:
        if not self._account_id:
            raise ProtocolError("JMAP session not established")
        return self._account_id

    async def call(self, batch: MethodBatch) -> Dict[str, Any]:
        """POST ``batch`` to the API URL and return the decoded response."""
        session = await self.get_session()
        try:
            async with self._client() as client:
                response = await client.post(session["apiUrl"], json=batch.to_request())
        except httpx.HTTPError as exc:
            raise ProtocolError(f"JMAP request failed: {exc}") from exc
        self._check(response, "JMAP request")
        return response.json()

    async def call_one(self, name: str, arguments: Dict[str, Any], using: Iterable[str] = (CORE, MAIL)) -> Dict[str, Any]:
        """Run a single method call with this account and return its result."""
        await self.get_session()
        batch = MethodBatch(using)
        call_id = batch.add(name, {"accountId": self.account_id, **arguments}, "c0")
        return method_result(await self.call(batch), call_id, name)

    async def download_url(self, blob_id: str, content_type: str, name: str) -> str:
        session = await self.get_session()
        template = session.get("downloadUrl")
        if not template:
            raise ProtocolError("JMAP downloadUrl not available")
        return (
            template.replace("{accountId}", quote(self.account_id, safe=""))
            .replace("{blobId}", quote(blob_id, safe=""))
            .replace("{type}", quote(content_type, safe=""))
            .replace("{name}", quote(name, safe=""))
        )
