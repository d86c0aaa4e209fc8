"""Async MQTT client wrapper using aiomqtt."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Callable, Coroutine

import aiomqtt

from inverter_gateway.config.schema import MQTTConfig

logger = logging.getLogger(__name__)

# Type alias for message callback: (topic, payload) -> None
MessageCallback = Callable[[str, bytes], Coroutine[Any, Any, None]]

# Builds an aiomqtt.Client (or a test double with the same async-context API)
ClientFactory = Callable[[MQTTConfig, str], Any]


def _default_factory(config: MQTTConfig, identifier: str) -> aiomqtt.Client:
    return aiomqtt.Client(
        hostname=config.broker_host,
        port=config.broker_port,
        username=config.username or None,
        password=config.password or None,
        identifier=identifier,
        keepalive=config.keepalive_seconds,
    )


class MQTTClient:
    """Async MQTT client wrapping aiomqtt.

    Keeps one long-lived broker connection inside a background task,
    reconnecting with exponential backoff. Subscriptions are wildcard
    filters; every registered filter is (re)subscribed on each connect.
    """

    def __init__(self, config: MQTTConfig, client_factory: ClientFactory | None = None) -> None:
        self._config = config
        self._factory = client_factory or _default_factory
        self._identifier = f"{config.client_id_prefix}_{uuid.uuid4().hex[:8]}"
        self._client: Any = None
        self._connected = asyncio.Event()
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None
        self._subscriptions: dict[str, MessageCallback] = {}

    @property
    def is_connected(self) -> bool:
        return self._connected.is_set()

    async def connect(self, wait_seconds: float = 5.0) -> bool:
        """Start the connection task and wait briefly for the first connect.

        Calling again while running is a no-op. Returns the connection state;
        a broker that is down keeps being retried in the background.
        """
        if self._task is None or self._task.done():
            self._stopping.clear()
            self._task = asyncio.create_task(self._run(), name="mqtt-connection")
            logger.info(
                "MQTT connecting to %s:%d as %s",
                self._config.broker_host, self._config.broker_port, self._identifier,
            )
        try:
            await asyncio.wait_for(self._connected.wait(), timeout=wait_seconds)
        except asyncio.TimeoutError:
            logger.warning("MQTT broker not reachable yet, retrying in background")
        return self.is_connected

    async def disconnect(self) -> None:
        """Stop the connection task within the configured grace period."""
        task, self._task = self._task, None
        self._stopping.set()
        if task is None:
            return
        task.cancel()
        try:
            await asyncio.wait_for(task, timeout=self._config.disconnect_grace_seconds)
        except asyncio.CancelledError:
            pass
        except asyncio.TimeoutError:
            logger.warning("MQTT connection did not close within grace period")
        self._connected.clear()
        self._client = None
        logger.info("MQTT disconnected")

    async def publish(self, topic: str, payload: str | bytes) -> bool:
        """Publish a message; False when not connected or the publish failed."""
        client = self._client
        if client is None or not self.is_connected:
            logger.debug("MQTT publish to %s dropped: not connected", topic)
            return False
        try:
            await client.publish(topic, payload)
        except aiomqtt.MqttError as e:
            logger.error("MQTT publish failed for %s: %s", topic, e)
            return False
        return True

    def subscribe(self, topic_filter: str, callback: MessageCallback) -> None:
        """Register a callback for a topic filter (``+``/``#`` allowed)."""
        self._subscriptions[topic_filter] = callback

    async def _run(self) -> None:
        delay = self._config.reconnect_initial_seconds
        while not self._stopping.is_set():
            try:
                async with self._factory(self._config, self._identifier) as client:
                    self._client = client
                    self._connected.set()
                    delay = self._config.reconnect_initial_seconds
                    logger.info("MQTT connected to %s", self._config.broker_host)
                    try:
                        await self._listen(client)
                    finally:
                        self._connected.clear()
                        self._client = None
            except aiomqtt.MqttError as e:
                logger.warning("MQTT error %s; retrying in %.0fs", e, delay)
            except Exception:
                logger.exception("Unhandled MQTT loop error")

            if self._stopping.is_set():
                break
            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=delay)
            except asyncio.TimeoutError:
                pass
            delay = min(delay * 2, self._config.reconnect_max_seconds)

    async def _listen(self, client: Any) -> None:
        for topic_filter in self._subscriptions:
            await client.subscribe(topic_filter)

        async for message in client.messages:
            topic = str(message.topic)
            payload = message.payload if isinstance(message.payload, bytes) else str(message.payload).encode()
            await self._dispatch(topic, payload)

    async def _dispatch(self, topic: str, payload: bytes) -> None:
        for topic_filter, callback in self._subscriptions.items():
            if not aiomqtt.Topic(topic).matches(topic_filter):
                continue
            try:
                await callback(topic, payload)
            except Exception:
                logger.exception("MQTT callback error for %s", topic)
