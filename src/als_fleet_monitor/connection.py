"""MQTT connection to the device broker.

A thin state machine over paho-mqtt's threaded network loop::

    DISCONNECTED → start() → CONNECTING → (CONNACK ok)      → CONNECTED
                                        → (CONNACK refused) → ERROR
    CONNECTED    → (unplanned drop)  → CONNECTING   (paho retries)
    CONNECTING   → (socket/TLS fail) → CONNECTING   (paho retries)
    ERROR        → start()           → CONNECTING
    any          → stop()            → DISCONNECTED

Reconnects use a fixed delay with unlimited attempts.  ERROR is sticky:
paho's retry loop is halted and only an explicit :meth:`MqttConnection.start`
begins a new cycle.

paho callbacks run on its network thread; every state change and every
inbound message is handed to the asyncio loop with ``call_soon_threadsafe``
so consumers only ever see them on the loop thread, in arrival order.
"""

from __future__ import annotations

import asyncio
import enum
import logging
import uuid
from typing import AsyncIterator, Callable, Optional

import paho.mqtt.client as mqtt

from als_fleet_monitor.config import BrokerConfig

logger = logging.getLogger(__name__)

PUBLISH_QOS = 1
SUBSCRIBE_QOS = 0

_STOP = object()


class ConnectionState(enum.Enum):
    """Externally visible connection states."""

    DISCONNECTED = "DISCONNECTED"
    CONNECTING = "CONNECTING"
    CONNECTED = "CONNECTED"
    ERROR = "ERROR"


StateListener = Callable[[ConnectionState, ConnectionState], None]


class MqttConnection:
    """One logical connection to the broker.

    Parameters
    ----------
    config:
        Broker settings (host, transport, TLS, credentials, namespace,
        retry interval).
    """

    def __init__(self, config: BrokerConfig) -> None:
        self._config = config
        self._state = ConnectionState.DISCONNECTED
        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._inbox: asyncio.Queue = asyncio.Queue()
        self._settled = asyncio.Event()
        self._listeners: list[StateListener] = []
        self._stopping = False
        self._in_flight: list[mqtt.MQTTMessageInfo] = []
        self.messages_received = 0

    @property
    def state(self) -> ConnectionState:
        return self._state

    def add_state_listener(self, listener: StateListener) -> None:
        """Call ``listener(old, new)`` on the loop after every state change."""
        self._listeners.append(listener)

    # ── lifecycle ───────────────────────────────────────────────────

    def start(self) -> None:
        """Begin a connect cycle.  Must be called from the running loop.

        Also the way out of ERROR: any previous client is discarded.
        """
        self._loop = asyncio.get_running_loop()
        self._stopping = False
        self._discard_client()

        cfg = self._config
        self._client = self._build_client()
        self._set_state(ConnectionState.CONNECTING)
        logger.info(
            "Connecting to %s:%d (transport=%s, tls=%s, subscription=%s)",
            cfg.host,
            cfg.port,
            cfg.transport,
            cfg.tls,
            cfg.subscription,
        )
        self._client.connect_async(cfg.host, cfg.port, keepalive=cfg.keepalive_s)
        self._client.loop_start()

    def stop(self) -> None:
        """Close the connection immediately and end :meth:`messages`.

        In-flight publishes are not awaited.
        """
        self._stopping = True
        self._discard_client()
        self._set_state(ConnectionState.DISCONNECTED)
        self._inbox.put_nowait(_STOP)

    async def wait_connected(self, timeout: float) -> bool:
        """Wait until CONNECTED (True) or ERROR / timeout (False)."""
        try:
            await asyncio.wait_for(self._settled.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        return self._state is ConnectionState.CONNECTED

    async def messages(self) -> AsyncIterator[tuple[str, bytes]]:
        """Yield ``(topic, payload)`` for every delivery until :meth:`stop`."""
        while True:
            item = await self._inbox.get()
            if item is _STOP:
                return
            yield item

    def publish(self, topic: str, payload: str) -> bool:
        """Publish *payload* at QoS 1.

        Only valid while CONNECTED.  Otherwise the message is dropped (never
        queued) and ``False`` is returned.
        """
        if self._state is not ConnectionState.CONNECTED or self._client is None:
            logger.error(
                "Not connected to broker (state %s); dropping publish to %s",
                self._state.value,
                topic,
            )
            return False

        info = self._client.publish(topic, payload, qos=PUBLISH_QOS)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.error("Publish to %s failed: %s", topic, mqtt.error_string(info.rc))
            return False
        self._in_flight = [i for i in self._in_flight if not i.is_published()]
        self._in_flight.append(info)
        logger.info("Published %r to %s", payload, topic)
        return True

    async def drain(self, timeout: float) -> bool:
        """Wait up to *timeout* seconds for the broker to acknowledge publishes."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while any(not info.is_published() for info in self._in_flight):
            if loop.time() >= deadline or self._state is not ConnectionState.CONNECTED:
                return False
            await asyncio.sleep(0.05)
        self._in_flight.clear()
        return True

    # ── paho client ─────────────────────────────────────────────────

    def _build_client(self) -> mqtt.Client:
        cfg = self._config
        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=cfg.client_id or f"als-monitor-{uuid.uuid4().hex[:8]}",
            clean_session=cfg.clean_session,
            transport=cfg.transport,
        )
        client.connect_timeout = cfg.connect_timeout_s

        if cfg.transport == "websockets":
            client.ws_set_options(path=cfg.ws_path)
        if cfg.username:
            client.username_pw_set(cfg.username, cfg.password or None)
        if cfg.tls:
            client.tls_set(ca_certs=cfg.ca_cert or None)
            if cfg.tls_insecure:
                client.tls_insecure_set(True)

        # Fixed interval, unlimited attempts.
        client.reconnect_delay_set(min_delay=cfg.retry_interval_s, max_delay=cfg.retry_interval_s)

        client.on_connect = self._on_connect
        client.on_connect_fail = self._on_connect_fail
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        return client

    def _discard_client(self) -> None:
        client, self._client = self._client, None
        if client is None:
            return
        client.disconnect()
        # loop_stop() joins paho's network thread; never on the event loop.
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            client.loop_stop()
        else:
            loop.run_in_executor(None, client.loop_stop)

    # ── paho callbacks (network thread) ─────────────────────────────

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code.is_failure:
            logger.error("Broker refused connection: %s", reason_code)
            # Halts paho's retry loop; ERROR holds until start() is called.
            client.disconnect()
            self._post(self._set_state, ConnectionState.ERROR)
            return

        client.subscribe(self._config.subscription, qos=SUBSCRIBE_QOS)
        logger.info("Subscribed to %s", self._config.subscription)
        self._post(self._set_state, ConnectionState.CONNECTED)

    def _on_connect_fail(self, client, userdata) -> None:
        logger.warning(
            "Connection attempt to %s:%d failed; retrying in %.1fs",
            self._config.host,
            self._config.port,
            self._config.retry_interval_s,
        )

    def _on_disconnect(self, client, userdata, disconnect_flags, reason_code, properties=None) -> None:
        self._post(self._handle_disconnect, reason_code)

    def _on_message(self, client, userdata, message) -> None:
        self._post(self._deliver, message.topic, bytes(message.payload))

    def _post(self, callback: Callable, *args) -> None:
        loop = self._loop
        if loop is None or loop.is_closed():
            return
        loop.call_soon_threadsafe(callback, *args)

    # ── loop-side handlers ──────────────────────────────────────────

    def _deliver(self, topic: str, payload: bytes) -> None:
        self.messages_received += 1
        self._inbox.put_nowait((topic, payload))

    def _handle_disconnect(self, reason_code) -> None:
        if self._stopping or self._state in (ConnectionState.ERROR, ConnectionState.DISCONNECTED):
            return
        logger.warning("Connection lost (%s); reconnecting", reason_code)
        self._set_state(ConnectionState.CONNECTING)

    def _set_state(self, new: ConnectionState) -> None:
        old = self._state
        if new is old:
            return
        if self._stopping and new is not ConnectionState.DISCONNECTED:
            return
        self._state = new
        logger.info("Connection state: %s → %s", old.value, new.value)

        if new in (ConnectionState.CONNECTED, ConnectionState.ERROR):
            self._settled.set()
        else:
            self._settled.clear()

        for listener in list(self._listeners):
            listener(old, new)
