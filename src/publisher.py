"""MQTT target: one paho-mqtt connection per configured broker.

Publishes forwarded messages verbatim and announces its own connect and
disconnect on a status topic. Reconnection is left to paho's network loop.
"""

import logging
import ssl
import threading
import uuid
from pathlib import Path
from typing import Callable
from urllib.parse import urlsplit

import paho.mqtt.client as mqtt
from paho.mqtt.packettypes import PacketTypes
from paho.mqtt.properties import Properties
from paho.mqtt.reasoncodes import ReasonCode

from src.config import ConfigurationError, TargetSpec
from src.lifecycle import EXIT_SUCCESS, LifecycleState

logger = logging.getLogger(__name__)

# scheme -> (transport, tls, default port)
SCHEMES = {
    "mqtt": ("tcp", False, 1883),
    "tcp": ("tcp", False, 1883),
    "mqtts": ("tcp", True, 8883),
    "ssl": ("tcp", True, 8883),
    "tls": ("tcp", True, 8883),
    "ws": ("websockets", False, 80),
    "wss": ("websockets", True, 443),
}
PROTOCOLS = {"3.1.1": mqtt.MQTTv311, "5": mqtt.MQTTv5}
ENCODING = "utf-8"


class _MqttAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        return "MQTT %s: %s" % (self.extra["label"].replace("%", "%%"), msg), kwargs


class MqttPublisher:
    def __init__(self, name: str, spec: TargetSpec, log: logging.Logger | None = None):
        self.name = name
        self.spec = spec
        self.options = spec.options
        self.status_topic = f"{name}/status" if spec.status_topic is None else spec.status_topic

        parts = urlsplit(spec.url)
        if parts.scheme not in SCHEMES:
            raise ConfigurationError(f"Unsupported target URL scheme in {spec.url!r}")
        self.transport, self.tls, default_port = SCHEMES[parts.scheme]
        self.host = parts.hostname or "localhost"
        self.port = parts.port or default_port
        self.ws_path = parts.path or "/mqtt"
        self.username = self.options.username or parts.username
        self.password = self.options.password or parts.password
        self.client_id = self.options.client_id or f"{name}_{uuid.uuid4().hex[:8]}"

        self.log = _MqttAdapter(log or logger, {"label": self.client_id})

        self.ca = self.options.ca
        if not self.ca and spec.ca_file and Path(spec.ca_file).exists():
            self.log.debug("Reading CA certificate from %s", spec.ca_file)
            self.ca = Path(spec.ca_file).read_text(encoding=ENCODING)

        self.client: mqtt.Client | None = None
        self._state = LifecycleState.STOPPED
        self._lock = threading.Lock()
        self._on_stopped: Callable[[], None] | None = None
        self.log.debug("Created publisher for %s:%d", self.host, self.port)

    @property
    def state(self) -> LifecycleState:
        return self._state

    @property
    def connected(self) -> bool:
        return self.client is not None and self.client.is_connected()

    def _setup_client(self) -> mqtt.Client:
        protocol = PROTOCOLS[self.options.protocol]
        kwargs = {}
        if protocol != mqtt.MQTTv5:
            kwargs["clean_session"] = self.options.clean_session
        client = mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=protocol,
            transport=self.transport,
            **kwargs,
        )
        if self.transport == "websockets":
            client.ws_set_options(path=self.ws_path)
        if self.username:
            client.username_pw_set(self.username, self.password)
        if self.tls or self.ca or self.options.cert_file:
            client.tls_set_context(self._ssl_context())
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_log = self._on_log
        return client

    def _ssl_context(self) -> ssl.SSLContext:
        context = ssl.create_default_context(cadata=self.ca) if self.ca else ssl.create_default_context()
        if self.options.cert_file:
            context.load_cert_chain(self.options.cert_file, self.options.key_file)
        if self.options.insecure:
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE
        return context

    def _on_connect(self, client: mqtt.Client, userdata, flags, reason_code, properties) -> None:
        if reason_code.is_failure:
            self.log.error("Connection to %s:%d failed: %s", self.host, self.port, reason_code)
            return
        self.publish_status(f"{self.client_id} is connected")

    def _on_disconnect(self, client: mqtt.Client, userdata, flags, reason_code, properties) -> None:
        if self._state is LifecycleState.STOPPING:
            self.log.debug("Disconnected")
            self._finish_stop()
        else:
            self.log.debug("Connection closed: %s", reason_code)

    def _on_log(self, client: mqtt.Client, userdata, level: int, buf: str) -> None:
        if level == mqtt.MQTT_LOG_ERR:
            self.log.error(buf)

    def start(self) -> None:
        with self._lock:
            if self._state is not LifecycleState.STOPPED:
                self.log.debug("Publisher is already %s", self._state.value)
                return
            self._state = LifecycleState.STARTING
        self.log.debug("%s is connecting to %s", self.name, self.spec.url)
        client = self._setup_client()
        self.client = client
        client.connect_async(self.host, self.port, keepalive=self.options.keepalive)
        client.loop_start()
        with self._lock:
            if self._state is LifecycleState.STARTING:
                self._state = LifecycleState.RUNNING

    def publish(self, topic: str, content: str | None) -> None:
        client = self.client
        if client is None:
            self.log.debug("Not started, dropping message on %s", topic)
            return
        try:
            result = client.publish(topic, content, qos=self.options.qos, retain=self.options.retain)
        except ValueError as e:
            self.log.warning("Dropping message on %r: %s", topic, e)
            return
        if result.rc != mqtt.MQTT_ERR_SUCCESS:
            self.log.debug("Publish to %s dropped: rc=%s", topic, result.rc)

    def publish_status(self, message: str) -> None:
        self.log.info(message)
        if not self.status_topic:
            return
        if self.connected:
            self.client.publish(self.status_topic, message)
        else:
            self.log.warning("Currently disconnected, dropping status message")

    def _disconnect_kwargs(self, code: int | None, cause: str | None) -> dict:
        if self.options.protocol != "5":
            return {}
        name = "Normal disconnection" if code in (None, EXIT_SUCCESS) else "Unspecified error"
        properties = Properties(PacketTypes.DISCONNECT)
        if cause:
            properties.ReasonString = str(cause)
        if code is not None:
            properties.UserProperty = [("exit_code", str(code))]
        return {"reasoncode": ReasonCode(PacketTypes.DISCONNECT, name), "properties": properties}

    def stop(self, code: int | None = None, cause: str | None = None, on_completion: Callable[[], None] | None = None) -> None:
        with self._lock:
            if not self._state.active:
                return
            self._state = LifecycleState.STOPPING
            self._on_stopped = on_completion
        self.publish_status(f"{self.client_id} is disconnected (Cause: {cause})")
        client = self.client
        if client is None or not client.is_connected():
            if client is not None:
                client.loop_stop()
            self._finish_stop()
            return
        rc = client.disconnect(**self._disconnect_kwargs(code, cause))
        if rc != mqtt.MQTT_ERR_SUCCESS:
            self.log.warning("Disconnect failed: rc=%s", rc)
            client.loop_stop()
            self._finish_stop()

    def _finish_stop(self) -> None:
        with self._lock:
            if self._state is not LifecycleState.STOPPING:
                return
            self._state = LifecycleState.STOPPED
            on_stopped, self._on_stopped = self._on_stopped, None
        if on_stopped:
            on_stopped()
