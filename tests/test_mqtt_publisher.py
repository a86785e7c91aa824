"""Tests for MqttPublisher using a fake paho client."""

import asyncio
import threading

import paho.mqtt.client as mqtt
import pytest

from mbsniff.config import MqttConfig
from mbsniff.transports.mqtt import MqttPublisher


class FakeReason:
    def __init__(self, failure=False, name="Success"):
        self.is_failure = failure
        self.name = name

    def __str__(self):
        return self.name


class FakeInfo:
    def __init__(self, rc, mid):
        self.rc = rc
        self.mid = mid


class FakeClient:
    """Stands in for paho's Client; acks are driven by the test."""

    def __init__(self, refuse=False, ack_inline=False, rc=mqtt.MQTT_ERR_SUCCESS):
        self.refuse = refuse
        self.ack_inline = ack_inline
        self.rc = rc
        self.published = []
        self.credentials = None
        self.tls = False
        self.loop_running = False
        self.disconnected = False
        self._mid = 0
        self.on_connect = None
        self.on_disconnect = None
        self.on_publish = None

    def username_pw_set(self, username, password=None):
        self.credentials = (username, password)

    def tls_set(self):
        self.tls = True

    def connect_async(self, host, port, keepalive=60):
        self.address = (host, port, keepalive)

    def loop_start(self):
        self.loop_running = True
        reason = FakeReason(True, "Not authorized") if self.refuse else FakeReason()
        threading.Thread(target=self.on_connect, args=(self, None, {}, reason, None)).start()

    def loop_stop(self):
        self.loop_running = False

    def disconnect(self):
        self.disconnected = True

    def is_connected(self):
        return self.loop_running and not self.disconnected

    def publish(self, topic, payload, qos=0, retain=False):
        self._mid += 1
        self.published.append((topic, payload, qos, retain))
        if self.ack_inline and self.rc == mqtt.MQTT_ERR_SUCCESS:
            self.on_publish(self, None, self._mid, FakeReason(), None)
        return FakeInfo(self.rc, self._mid)

    def ack(self, mid, failure=False):
        reason = FakeReason(failure, "Quota exceeded" if failure else "Success")
        thread = threading.Thread(target=self.on_publish, args=(self, None, mid, reason, None))
        thread.start()
        thread.join()


@pytest.mark.asyncio
async def test_connect_applies_settings():
    client = FakeClient()
    config = MqttConfig(host="broker", port=8883, username="u", password="p", client_id="c1", tls=True)
    publisher = MqttPublisher(config, client=client)

    await publisher.connect(timeout=1)
    assert publisher.is_connected
    await publisher.close()

    assert client.address == ("broker", 8883, 60)
    assert client.credentials == ("u", "p")
    assert client.tls is True
    assert client.disconnected
    assert not client.loop_running


@pytest.mark.asyncio
async def test_connect_refused():
    client = FakeClient(refuse=True)
    publisher = MqttPublisher(MqttConfig(), client=client)

    with pytest.raises(ConnectionError, match="Not authorized"):
        await publisher.connect(timeout=1)
    assert not client.loop_running


@pytest.mark.asyncio
async def test_publish_resolves_on_ack_from_network_thread():
    client = FakeClient()
    publisher = MqttPublisher(MqttConfig(), client=client)
    await publisher.connect(timeout=1)

    future = publisher.publish("sensors/x", "2.5", qos=1, retain=True)
    assert not future.done()
    client.ack(1)
    assert await asyncio.wait_for(future, 1) is True
    assert client.published == [("sensors/x", "2.5", 1, True)]
    await publisher.close()


@pytest.mark.asyncio
async def test_ack_before_registration():
    client = FakeClient(ack_inline=True)
    publisher = MqttPublisher(MqttConfig(), client=client)
    await publisher.connect(timeout=1)

    future = publisher.publish("sensors/x", "1")
    assert await asyncio.wait_for(future, 1) is True
    await publisher.close()


@pytest.mark.asyncio
async def test_broker_rejection_fails_future():
    client = FakeClient()
    publisher = MqttPublisher(MqttConfig(), client=client)
    await publisher.connect(timeout=1)

    future = publisher.publish("sensors/x", "1", qos=1)
    client.ack(1, failure=True)
    with pytest.raises(ConnectionError, match="Quota exceeded"):
        await asyncio.wait_for(future, 1)
    await publisher.close()


@pytest.mark.asyncio
async def test_publish_error_code_fails_future():
    client = FakeClient(rc=mqtt.MQTT_ERR_NO_CONN)
    publisher = MqttPublisher(MqttConfig(), client=client)
    await publisher.connect(timeout=1)

    future = publisher.publish("sensors/x", "1")
    assert future.done()
    with pytest.raises(ConnectionError):
        future.result()
    await publisher.close()


@pytest.mark.asyncio
async def test_close_fails_pending_publishes():
    client = FakeClient()
    publisher = MqttPublisher(MqttConfig(), client=client)
    await publisher.connect(timeout=1)

    future = publisher.publish("sensors/x", "1", qos=1)
    await publisher.close()
    with pytest.raises(ConnectionError, match="closed"):
        future.result()
