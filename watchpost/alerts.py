"""
Alert Dispatcher Module.

Posts a chat-webhook notification when a motion episode starts.

Alerts are best-effort: delivery has a hard timeout and a single retry on
transient failures, and any error is logged and dropped so it can never hold
up recording or streaming. At most one alert is sent per episode, and never
two within the cooldown window even across episodes.
"""

import logging
import time
from typing import Any, Dict, Iterable, Optional

import requests
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from watchpost.frames import Transition

logger = logging.getLogger(__name__)

TEXT_TIME_FORMAT = "%Y-%m-%d_%H-%M-%S"


class WebhookMessenger:
    """
    Slack-style incoming webhook client.

    Each POST has a hard timeout. Connection failures and 5xx replies are
    retried `retries` times with a short backoff before the error surfaces.
    """

    RETRY_STATUSES = (500, 502, 503, 504)
    BACKOFF_FACTOR = 0.5

    def __init__(
        self,
        url: str,
        channel: str,
        username: str,
        timeout: float = 5.0,
        retries: int = 1,
        session: Optional[requests.Session] = None,
    ):
        self.url = url
        self.channel = channel
        self.username = username
        self.timeout = timeout
        self.session = session or self._build_session(retries)

    def _build_session(self, retries: int) -> requests.Session:
        session = requests.Session()
        adapter = HTTPAdapter(max_retries=Retry(
            total=retries,
            backoff_factor=self.BACKOFF_FACTOR,
            status_forcelist=self.RETRY_STATUSES,
            allowed_methods=["POST"],
        ))
        session.mount("http://", adapter)
        session.mount("https://", adapter)
        return session

    def payload(self, text: str, timestamp: float) -> Dict[str, Any]:
        return {
            "channel": self.channel,
            "username": self.username,
            "text": text,
            "timestamp": int(timestamp),
        }

    def send(self, payload: Dict[str, Any]):
        """
        POST the payload.

        Raises:
            requests.RequestException: on network failure or an error status.
        """
        response = self.session.post(self.url, json=payload, timeout=self.timeout)
        response.raise_for_status()

    def close(self):
        self.session.close()


class AlertDispatcher:
    """Debounces motion-start transitions into webhook alerts."""

    def __init__(self, messenger: Optional[WebhookMessenger], cooldown_seconds: float = 5.0):
        """
        Args:
            messenger: Delivery client, or None to only log alerts
            cooldown_seconds: Minimum transition time between two alerts
        """
        self.messenger = messenger
        self.cooldown_seconds = cooldown_seconds

        self._episode_open = False
        self._last_sent_at: Optional[float] = None
        self.sent = 0
        self.failed = 0
        self.suppressed = 0

    @classmethod
    def from_config(cls, alert_config) -> "AlertDispatcher":
        messenger = None
        if alert_config.enabled:
            messenger = WebhookMessenger(
                url=alert_config.webhook_url,
                channel=alert_config.channel,
                username=alert_config.user,
                timeout=alert_config.timeout_seconds,
                retries=alert_config.retries,
            )
        return cls(messenger, cooldown_seconds=alert_config.cooldown_seconds)

    def handle(self, transition: Transition) -> bool:
        """
        Process one transition.

        Returns:
            True if an alert was attempted for it.
        """
        if not transition.is_active:
            self._episode_open = False
            return False

        if self._episode_open:
            self.suppressed += 1
            logger.debug("[ALERT] Episode already alerted, skipping")
            return False
        self._episode_open = True

        if (
            self._last_sent_at is not None
            and transition.timestamp - self._last_sent_at < self.cooldown_seconds
        ):
            self.suppressed += 1
            logger.debug("[ALERT] Within cooldown window, skipping")
            return False
        self._last_sent_at = transition.timestamp

        text = transition.wallclock.strftime(TEXT_TIME_FORMAT) + " Motion Detected"
        logger.info(f"[ALERT] {text}")
        if self.messenger is None:
            return True

        payload = self.messenger.payload(text, transition.wallclock.timestamp())
        try:
            self.messenger.send(payload)
        except requests.RequestException as e:
            self.failed += 1
            logger.warning(f"[ALERT] Failed to deliver alert: {e}")
            return True

        self.sent += 1
        return True

    def run(self, transitions: Iterable[Transition]):
        """Consume transitions until the channel closes."""
        logger.info("[ALERT] Dispatcher thread started")
        started = time.monotonic()
        for transition in transitions:
            self.handle(transition)
        if self.messenger is not None:
            self.messenger.close()
        logger.info(
            f"[ALERT] Dispatcher thread stopped ({self.sent} sent, {self.failed} failed, "
            f"{self.suppressed} suppressed in {time.monotonic() - started:.0f}s)"
        )
