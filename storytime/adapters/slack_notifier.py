"""Slack notification adapter — implements NotificationPort via chat.postMessage.

Slack answers HTTP 200 even for failures; the JSON body's "ok" flag is the
real delivery result.
"""

from __future__ import annotations

import logging

import httpx

from storytime.ports.notification_port import DeliveryError

logger = logging.getLogger(__name__)

_POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"
_TIMEOUT_SECONDS = 10


class SlackNotifier:
    """Slack implementation of NotificationPort.

    Messages go to `channel` when set (a shared channel), otherwise to the
    Slack conversation id derived from the user id.
    """

    def __init__(
        self,
        token: str,
        channel: str = "",
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._token = token
        self._channel = channel
        self._client = client

    def _destination(self, user_id: int) -> str:
        return self._channel or str(user_id)

    async def _post(self, client: httpx.AsyncClient, payload: dict) -> dict:
        resp = await client.post(
            _POST_MESSAGE_URL,
            json=payload,
            headers={"Authorization": f"Bearer {self._token}"},
        )
        resp.raise_for_status()
        return resp.json()

    async def send_message(self, user_id: int, text: str) -> None:
        payload = {"channel": self._destination(user_id), "text": text}
        try:
            if self._client is not None:
                data = await self._post(self._client, payload)
            else:
                async with httpx.AsyncClient(timeout=_TIMEOUT_SECONDS) as client:
                    data = await self._post(client, payload)
        except httpx.HTTPError as exc:
            raise DeliveryError(f"Slack request failed: {exc}") from exc

        if not data.get("ok"):
            raise DeliveryError(f"Slack API error: {data.get('error', 'unknown')}")
        logger.debug("Slack message posted to %s", payload["channel"])
