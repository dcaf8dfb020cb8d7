"""
Webhook notifications for peer online/offline transitions

Payload follows the Matrix hookshot format (msgtype/body plus an HTML
formatted_body).
"""

import abc
import html
import asyncio
import logging

import requests

logger = logging.getLogger(__name__)


class NotificationSink(abc.ABC):
    @abc.abstractmethod
    async def notify(self, url: str, peer_name: str, online: bool) -> bool:
        """Deliver one transition; returns False on failure, never raises"""


class MatrixWebhookNotifier(NotificationSink):
    """
    Posts transition messages to a Matrix-compatible webhook
    """

    def __init__(self, timeout: float = 5.0, session: requests.Session = None):
        self.timeout = timeout
        self.session = session or requests.Session()

    @staticmethod
    def build_payload(peer_name: str, online: bool) -> dict:
        state = "ONLINE" if online else "OFFLINE"
        emoji = "\U0001F7E2" if online else "\U0001F534"

        return {
            "msgtype": "m.text",
            "body": f"{emoji} **{peer_name}** is now {state}",
            "format": "org.matrix.custom.html",
            "formatted_body": f"<h3>{emoji} {html.escape(peer_name)}</h3><p>Status: <b>{state}</b></p>",
        }

    async def notify(self, url: str, peer_name: str, online: bool) -> bool:
        if not url:
            return False

        payload = self.build_payload(peer_name, online)
        try:
            # requests is blocking; keep it off the event loop
            response = await asyncio.to_thread(
                self.session.post, url, json=payload, timeout=self.timeout
            )
            response.raise_for_status()
            return True
        except requests.RequestException as e:
            logger.error(f"Failed to send webhook for {peer_name}: {e}")
            return False
