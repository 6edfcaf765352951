"""Billing API collaborator: free days, cancellation and membership lookup."""

import logging
from typing import Any

import httpx

from recovery.core.config import settings
from recovery.core.errors import raise_for_downstream
from recovery.core.retry import RetryExecutor, RetryPolicy

logger = logging.getLogger(__name__)

BILLING_CIRCUIT = "billing-api"


class BillingClient:
    """Calls the billing provider through the retry executor.

    Every method raises ``TransientDownstreamError`` (including
    ``CircuitOpenError``) or ``PermanentError`` once the executor gives up.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        executor: RetryExecutor | None = None,
        policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.BILLING_API_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.BILLING_API_KEY
        self.executor = executor or RetryExecutor()
        self.policy = policy or RetryPolicy.for_downstream(BILLING_CIRCUIT)
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=settings.DOWNSTREAM_TIMEOUT_SECONDS,
            transport=self._transport,
        )

    async def _request(
        self, method: str, path: str, json: dict[str, Any] | None = None
    ) -> dict[str, Any]:
        async def call() -> dict[str, Any]:
            async with self._client() as client:
                response = await client.request(method, path, json=json)
            raise_for_downstream(response, BILLING_CIRCUIT)
            return response.json() if response.content else {}

        result = await self.executor.execute(call, self.policy)
        if not result.success:
            logger.warning(
                "Billing API %s %s failed after %d attempt(s) (%s): %s",
                method,
                path,
                result.attempts,
                result.resolved_by.value,
                result.error,
            )
        return result.unwrap()  # type: ignore[no-any-return]

    async def add_free_days(self, membership_id: str, days: int) -> dict[str, Any]:
        return await self._request(
            "POST", f"/memberships/{membership_id}/add_free_days", json={"days": days}
        )

    async def cancel_membership(self, membership_id: str, reason: str | None = None) -> dict[str, Any]:
        return await self._request(
            "POST", f"/memberships/{membership_id}/cancel", json={"reason": reason}
        )

    async def get_membership(self, membership_id: str) -> dict[str, Any]:
        return await self._request("GET", f"/memberships/{membership_id}")
