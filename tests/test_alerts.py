"""
Alert dispatcher tests: per-episode debounce, cooldown and failure isolation.
"""

import threading

import pytest
import requests

from watchpost.alerts import AlertDispatcher, WebhookMessenger
from watchpost.channels import Channel
from watchpost.config import AlertConfig
from watchpost.frames import MotionState

from conftest import FPS, FakeMessenger, make_frame, transition

ACTIVE = MotionState.ACTIVE
IDLE = MotionState.IDLE


def at(seconds, state):
    return transition(state, make_frame(int(seconds * FPS)))


class FakeResponse:
    def __init__(self, status_code=200):
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Server Error")


class FakeSession:
    def __init__(self, status_code=200):
        self.status_code = status_code
        self.posts = []
        self.closed = False

    def post(self, url, json=None, timeout=None):
        self.posts.append((url, json, timeout))
        return FakeResponse(self.status_code)

    def close(self):
        self.closed = True


class TestAlertDispatcher:

    @pytest.fixture
    def messenger(self):
        return FakeMessenger()

    def test_first_motion_start_is_sent(self, messenger):
        dispatcher = AlertDispatcher(messenger, cooldown_seconds=5)
        assert dispatcher.handle(at(10, ACTIVE))
        assert dispatcher.sent == 1
        assert messenger.sent[0]["text"] == "2026-01-02_03-04-15 Motion Detected"
        assert messenger.sent[0]["channel"] == "#cam"

    def test_motion_end_never_alerts(self, messenger):
        dispatcher = AlertDispatcher(messenger, cooldown_seconds=5)
        assert not dispatcher.handle(at(1, IDLE))
        assert messenger.sent == []

    def test_one_alert_per_episode(self, messenger):
        dispatcher = AlertDispatcher(messenger, cooldown_seconds=0)
        dispatcher.handle(at(1, ACTIVE))
        assert not dispatcher.handle(at(2, ACTIVE))
        assert len(messenger.sent) == 1
        assert dispatcher.suppressed == 1

    def test_cooldown_spans_episodes(self, messenger):
        dispatcher = AlertDispatcher(messenger, cooldown_seconds=5)
        dispatcher.handle(at(10, ACTIVE))
        dispatcher.handle(at(11, IDLE))
        assert not dispatcher.handle(at(12, ACTIVE))
        dispatcher.handle(at(13, IDLE))
        assert dispatcher.handle(at(15, ACTIVE))
        assert len(messenger.sent) == 2

    def test_episode_started_in_cooldown_stays_silent(self, messenger):
        dispatcher = AlertDispatcher(messenger, cooldown_seconds=5)
        dispatcher.handle(at(10, ACTIVE))
        dispatcher.handle(at(11, IDLE))
        dispatcher.handle(at(12, ACTIVE))
        # Still the same episode once the cooldown has passed
        assert not dispatcher.handle(at(20, ACTIVE))
        assert len(messenger.sent) == 1

    def test_delivery_failure_is_swallowed(self):
        messenger = FakeMessenger(error=requests.ConnectionError("connection refused"))
        dispatcher = AlertDispatcher(messenger, cooldown_seconds=5)
        assert dispatcher.handle(at(10, ACTIVE))
        assert dispatcher.failed == 1
        assert dispatcher.sent == 0

        # A failed attempt still starts the cooldown
        dispatcher.handle(at(11, IDLE))
        assert not dispatcher.handle(at(12, ACTIVE))

    def test_without_messenger_only_logs(self):
        dispatcher = AlertDispatcher(None, cooldown_seconds=5)
        assert dispatcher.handle(at(10, ACTIVE))
        assert dispatcher.sent == 0

    def test_from_config(self):
        assert AlertDispatcher.from_config(AlertConfig(webhook_url="")).messenger is None

        dispatcher = AlertDispatcher.from_config(
            AlertConfig(webhook_url="https://hooks.example.com/T000", channel="#door", cooldown_seconds=30)
        )
        assert dispatcher.messenger.channel == "#door"
        assert dispatcher.cooldown_seconds == 30
        dispatcher.messenger.close()

    def test_run_consumes_channel_until_closed(self, messenger):
        channel = Channel(16, "alerts")
        dispatcher = AlertDispatcher(messenger, cooldown_seconds=5)
        thread = threading.Thread(target=dispatcher.run, args=(channel,))
        thread.start()

        for t in [at(1, ACTIVE), at(2, IDLE), at(10, ACTIVE), at(11, IDLE)]:
            channel.send(t)
        channel.close()
        thread.join(timeout=5)

        assert not thread.is_alive()
        assert len(messenger.sent) == 2
        assert not channel.send(at(20, ACTIVE))


class TestWebhookMessenger:

    def test_payload(self):
        messenger = WebhookMessenger("http://hook", "#cam", "detector", session=FakeSession())
        assert messenger.payload("hello", 1767323045.75) == {
            "channel": "#cam",
            "username": "detector",
            "text": "hello",
            "timestamp": 1767323045,
        }

    def test_send_posts_json_with_timeout(self):
        session = FakeSession()
        messenger = WebhookMessenger("http://hook", "#cam", "detector", timeout=2.5, session=session)
        messenger.send({"text": "hi"})
        assert session.posts == [("http://hook", {"text": "hi"}, 2.5)]

        messenger.close()
        assert session.closed

    def test_error_status_raises(self):
        messenger = WebhookMessenger("http://hook", "#cam", "detector", session=FakeSession(500))
        with pytest.raises(requests.HTTPError):
            messenger.send({"text": "hi"})

    def test_default_session_retries_server_errors(self):
        messenger = WebhookMessenger("https://hooks.example.com/T000", "#cam", "detector", retries=2)
        retry = messenger.session.get_adapter(messenger.url).max_retries
        assert retry.total == 2
        assert 503 in retry.status_forcelist
        assert "POST" in retry.allowed_methods
        messenger.close()
