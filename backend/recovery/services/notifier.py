"""Notifier collaborator: delivers push notifications and direct messages.

Delivery is at-least-once; a retried job may notify the same user twice.
"""

import logging
from typing import Any

import httpx

from recovery.core.config import settings
from recovery.core.errors import raise_for_downstream
from recovery.core.retry import RetryExecutor, RetryPolicy
from recovery.models.recovery_action import ActionChannel, ActionType

logger = logging.getLogger(__name__)

NOTIFIER_CIRCUIT = "notifier"

MESSAGES = {
    ActionType.NUDGE: "Your last payment didn't go through. Update your payment method to keep access.",
    ActionType.REMINDER: "Reminder: your membership payment is still failing. Update your payment method.",
}


def build_message(action_type: ActionType, incentive_days: int = 0) -> str:
    message = MESSAGES.get(action_type, MESSAGES[ActionType.REMINDER])
    if incentive_days > 0:
        message += f" We've added {incentive_days} free day(s) while you sort it out."
    return message


class Notifier:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        executor: RetryExecutor | None = None,
        policy: RetryPolicy | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.NOTIFIER_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.NOTIFIER_API_KEY
        self.executor = executor or RetryExecutor()
        self.policy = policy or RetryPolicy.for_downstream(NOTIFIER_CIRCUIT)
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

    async def send(
        self,
        channel: ActionChannel,
        user_id: str,
        message: str,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Deliver ``message`` to ``user_id`` on ``channel``.

        Raises:
            TransientDownstreamError: retries exhausted or circuit open.
            PermanentError: the notifier rejected the request.
        """

        async def call() -> None:
            async with self._client() as client:
                response = await client.post(
                    f"/{channel.value}",
                    json={"user_id": user_id, "message": message, "metadata": metadata or {}},
                )
            raise_for_downstream(response, NOTIFIER_CIRCUIT)

        result = await self.executor.execute(call, self.policy)
        if not result.success:
            logger.warning(
                "Notifier %s delivery to %s failed after %d attempt(s) (%s): %s",
                channel.value,
                user_id,
                result.attempts,
                result.resolved_by.value,
                result.error,
            )
        result.unwrap()
