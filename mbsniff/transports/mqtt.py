"""MQTT publish boundary backed by paho-mqtt.

paho runs its network loop on a background thread (`loop_start()`). Every
publish returns an asyncio future that is resolved on the event loop once the
broker acknowledges the message (or, for QoS 0, once it has been written to
the socket).
"""
from __future__ import annotations

import asyncio
import logging
import threading
from typing import Dict, Optional, Set

import paho.mqtt.client as mqtt

from mbsniff.config import MqttConfig

logger = logging.getLogger(__name__)


class MqttPublisher:
    """Confirmed-publish wrapper around a paho client.

    Usage:
        publisher = MqttPublisher(config)
        await publisher.connect()
        ok = await publisher.publish("sensors/x", "2.5")
        await publisher.close()
    """

    def __init__(self, config: MqttConfig, client: Optional[mqtt.Client] = None):
        """Initialize the publisher.

        Args:
            config: Broker connection settings
            client: Pre-built paho client (a new one is created if omitted)
        """
        self.config = config
        self.client = client or mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=config.client_id,
        )
        if config.username:
            self.client.username_pw_set(config.username, config.password)
        if config.tls:
            self.client.tls_set()

        self.client.on_connect = self._on_connect
        self.client.on_disconnect = self._on_disconnect
        self.client.on_publish = self._on_publish

        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connected: Optional[asyncio.Future] = None
        self._lock = threading.RLock()
        self._pending: Dict[int, asyncio.Future] = {}
        self._acked_early: Set[int] = set()

    @property
    def is_connected(self) -> bool:
        return self.client.is_connected()

    async def connect(self, timeout: float = 10.0) -> None:
        """Connect to the broker and start the network thread."""
        self._loop = asyncio.get_running_loop()
        self._connected = self._loop.create_future()
        logger.info("Connecting to MQTT broker %s:%d", self.config.host, self.config.port)
        self.client.connect_async(self.config.host, self.config.port, keepalive=self.config.keepalive)
        self.client.loop_start()
        try:
            await asyncio.wait_for(asyncio.shield(self._connected), timeout=timeout)
        except BaseException:
            self.client.loop_stop()
            raise

    def publish(self, topic: str, payload: str, qos: int = 0, retain: bool = False) -> "asyncio.Future[bool]":
        """Publish a message; the returned future resolves to True on delivery."""
        loop = self._loop or asyncio.get_running_loop()
        future: asyncio.Future = loop.create_future()

        with self._lock:
            info = self.client.publish(topic, payload, qos=qos, retain=retain)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                future.set_exception(ConnectionError(mqtt.error_string(info.rc)))
                return future
            if info.mid in self._acked_early:
                self._acked_early.discard(info.mid)
                future.set_result(True)
            else:
                self._pending[info.mid] = future
        return future

    async def close(self) -> None:
        """Disconnect and stop the network thread; pending publishes fail."""
        try:
            self.client.disconnect()
        finally:
            self.client.loop_stop()
        with self._lock:
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(ConnectionError("MQTT connection closed"))
        logger.info("MQTT connection closed")

    # paho callbacks (network thread)

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            logger.error("MQTT connection refused: %s", reason_code)
            self._resolve_connect(ConnectionError(f"MQTT connection refused: {reason_code}"))
        else:
            logger.info("MQTT connected")
            self._resolve_connect(None)

    def _on_disconnect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            logger.warning("MQTT disconnected unexpectedly: %s", reason_code)
        else:
            logger.debug("MQTT disconnected")

    def _on_publish(self, client, userdata, mid, reason_code, properties=None) -> None:
        with self._lock:
            future = self._pending.pop(mid, None)
            if future is None:
                self._acked_early.add(mid)
                return
        failed = reason_code is not None and reason_code.is_failure
        if failed:
            self._call_soon(future, ConnectionError(f"Publish rejected: {reason_code}"))
        else:
            self._call_soon(future, True)

    def _resolve_connect(self, error: Optional[Exception]) -> None:
        if self._connected is None:
            return
        self._call_soon(self._connected, error if error else True)

    def _call_soon(self, future: asyncio.Future, outcome) -> None:
        def resolve():
            if future.done():
                return
            if isinstance(outcome, BaseException):
                future.set_exception(outcome)
            else:
                future.set_result(outcome)

        if self._loop is None or self._loop.is_closed():
            return
        self._loop.call_soon_threadsafe(resolve)
