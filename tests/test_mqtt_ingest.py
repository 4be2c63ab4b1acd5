#!/usr/bin/env python3
"""
Tests for the MQTT ingest service loop, using stand-in aiomqtt clients.

Run with: pytest tests/test_mqtt_ingest.py -v
"""

import asyncio
import signal
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import aiomqtt
import pytest

from mqtt_ingest import MQTTIngestService


@pytest.fixture
def dispatcher():
    fake = MagicMock()
    fake.handle_message = AsyncMock(return_value=True)
    fake.stats = {}
    return fake


def make_service(dispatcher, router, **kwargs):
    kwargs.setdefault("reconnect_interval", 0)
    return MQTTIngestService(dispatcher, router, hostname="broker.test", port=1883, **kwargs)


# =============================================================================
# Message Handling Tests
# =============================================================================

class TestHandleMessage:

    @pytest.mark.asyncio
    async def test_passes_topic_and_payload(self, dispatcher, router):
        service = make_service(dispatcher, router)
        message = SimpleNamespace(topic="CDC/dev1/DEVICE_DATA", payload=b'{"ID": "dev1"}')

        await service._handle_message(message)

        dispatcher.handle_message.assert_awaited_once_with("CDC/dev1/DEVICE_DATA", b'{"ID": "dev1"}')

    @pytest.mark.asyncio
    async def test_empty_payload(self, dispatcher, router):
        service = make_service(dispatcher, router)

        await service._handle_message(SimpleNamespace(topic="CDC/dev1/DEVICE_DATA", payload=None))

        dispatcher.handle_message.assert_awaited_once_with("CDC/dev1/DEVICE_DATA", b"")


# =============================================================================
# Connection Loop Tests
# =============================================================================

class TestConnectionLoop:

    @pytest.mark.asyncio
    async def test_subscribes_and_processes_in_order(self, dispatcher, router):
        service = make_service(dispatcher, router, client_id="eclb_test")
        messages = [
            SimpleNamespace(topic="CDC/dev1/DIGITAL_INPUTS", payload=b"1"),
            SimpleNamespace(topic="CDC/dev1/ANALOG_INPUT", payload=b"2"),
        ]
        clients = []

        class FakeClient:
            def __init__(self, **kwargs):
                self.kwargs = kwargs
                self.subscribe = AsyncMock()
                clients.append(self)

            async def __aenter__(self):
                return self

            async def __aexit__(self, *exc_info):
                return False

            @property
            def messages(self):
                async def stream():
                    for message in messages:
                        yield message
                    service.request_shutdown()
                return stream()

        with patch("mqtt_ingest.aiomqtt.Client", FakeClient):
            await asyncio.wait_for(service._connect_and_subscribe(), timeout=5)

        assert len(clients) == 1
        assert clients[0].kwargs["identifier"] == "eclb_test"
        subscribed = [c.args[0] for c in clients[0].subscribe.await_args_list]
        assert subscribed == router.subscriptions
        topics = [c.args[0] for c in dispatcher.handle_message.await_args_list]
        assert topics == ["CDC/dev1/DIGITAL_INPUTS", "CDC/dev1/ANALOG_INPUT"]
        assert service.connected is False

    @pytest.mark.asyncio
    async def test_reconnects_after_broker_error(self, dispatcher, router):
        service = make_service(dispatcher, router)
        attempts = []

        class FailingClient:
            def __init__(self, **kwargs):
                attempts.append(kwargs)

            async def __aenter__(self):
                if len(attempts) >= 3:
                    service.request_shutdown()
                raise aiomqtt.MqttError("connection refused")

            async def __aexit__(self, *exc_info):
                return False

        with patch("mqtt_ingest.aiomqtt.Client", FailingClient):
            await asyncio.wait_for(service._connect_and_subscribe(), timeout=5)

        assert len(attempts) == 3
        dispatcher.handle_message.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_credentials_passed_when_configured(self, dispatcher, router):
        service = make_service(dispatcher, router, username="user", password="secret")

        with patch("mqtt_ingest.aiomqtt.Client") as client_class:
            service._client()

        kwargs = client_class.call_args.kwargs
        assert kwargs["username"] == "user"
        assert kwargs["password"] == "secret"
        assert kwargs["hostname"] == "broker.test"


# =============================================================================
# Shutdown Tests
# =============================================================================

class TestShutdown:

    @pytest.mark.asyncio
    async def test_start_returns_after_shutdown_request(self, dispatcher, router):
        service = make_service(dispatcher, router, reconnect_interval=0.01)

        class FailingClient:
            def __init__(self, **kwargs):
                pass

            async def __aenter__(self):
                raise aiomqtt.MqttError("broker down")

            async def __aexit__(self, *exc_info):
                return False

        with patch("mqtt_ingest.aiomqtt.Client", FailingClient):
            asyncio.get_running_loop().call_later(0.05, service.request_shutdown, signal.SIGTERM)
            await asyncio.wait_for(service.start(), timeout=5)

        assert service.shutdown_event.is_set()
