"""HTTP implementation of the remote sync contract.

Makes exactly one attempt per call and maps every failure onto the
:mod:`tidesync.remote.base` error taxonomy. Retry and backoff are the
worker's job, since they must survive process restarts.
"""

import logging
from typing import Any

import httpx

from .base import (
    ChangesRequest,
    ChangesResponse,
    MalformedResponseError,
    MutationRequest,
    MutationResponse,
    RemoteRejectedError,
    RemoteSyncClient,
    RemoteTimeoutError,
    TransientSyncError,
)

logger = logging.getLogger(__name__)


class HttpSyncClient(RemoteSyncClient):
    """Client for the ``/sync/mutate`` and ``/sync/changes`` endpoints."""

    def __init__(
        self,
        base_url: str,
        auth_token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the client.

        Args:
            base_url: Base URL of the sync server (e.g., "http://localhost:8787").
            auth_token: Optional bearer token.
            timeout: Request timeout in seconds.
            transport: Optional httpx transport (used by tests).
        """
        self.base_url = base_url.rstrip("/")
        self.auth_token = auth_token
        self.timeout = timeout
        self._transport = transport

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.auth_token:
            headers["Authorization"] = f"Bearer {self.auth_token}"
        if extra:
            headers.update(extra)
        return headers

    async def _request(
        self,
        method: str,
        path: str,
        json_data: Any = None,
        params: dict[str, str] | None = None,
        headers: dict[str, str] | None = None,
        allow_status: tuple[int, ...] = (),
    ) -> Any:
        """Make one HTTP request and return the decoded JSON body.

        Raises:
            RemoteTimeoutError: Request timed out.
            TransientSyncError: Connection failure, 429 or 5xx.
            RemoteRejectedError: Any other non-2xx status not in allow_status.
            MalformedResponseError: Body is not JSON.
        """
        url = f"{self.base_url}{path}"

        try:
            async with httpx.AsyncClient(
                timeout=self.timeout, transport=self._transport
            ) as client:
                response = await client.request(
                    method,
                    url,
                    json=json_data,
                    params=params,
                    headers=self._headers(headers),
                )
        except httpx.TimeoutException as e:
            raise RemoteTimeoutError(f"{method} {path} timed out after {self.timeout}s") from e
        except httpx.TransportError as e:
            raise TransientSyncError(f"{method} {path} failed: {e}") from e

        status = response.status_code
        if status == 429 or status >= 500:
            logger.warning(f"Server error {status} on {method} {path}")
            raise TransientSyncError(f"HTTP {status}: {response.text}")
        if not (200 <= status < 300) and status not in allow_status:
            raise RemoteRejectedError(f"HTTP {status}: {response.text}", status)

        try:
            return response.json()
        except ValueError as e:
            raise MalformedResponseError(
                f"{method} {path} returned non-JSON body: {response.text[:200]!r}"
            ) from e

    async def mutate(self, request: MutationRequest) -> MutationResponse:
        data = await self._request(
            "POST",
            "/sync/mutate",
            json_data=request.to_dict(),
            headers={"Idempotency-Key": request.idempotency_key},
            allow_status=(409,),
        )
        # A bare 409 body may omit "success"
        if isinstance(data, dict) and "conflict" in data and "success" not in data:
            data = {**data, "success": False}
        return MutationResponse.from_dict(data)

    async def changes(self, request: ChangesRequest) -> ChangesResponse:
        params = {"since": request.since}
        if request.project_id:
            params["projectId"] = request.project_id

        data = await self._request("GET", "/sync/changes", params=params)
        return ChangesResponse.from_dict(data)
