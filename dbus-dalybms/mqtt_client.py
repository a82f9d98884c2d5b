# -*- coding: utf-8 -*-

# NOTES
# MQTT connection to the Victron GX device (or any broker bridged to it).
# Outbound: the virtual battery is published to W/dbus-mqtt-services.
# Inbound: W/daly_bms_service/soc/<pack id> with {"value": <soc>} sets the SoC of a pack.
# Topic layout: https://github.com/victronenergy/venus-html5-app/blob/master/TOPICS.md

from concurrent.futures import Executor
from enum import Enum
from typing import Any, Callable, List, Optional
from utils import Config, exception_location, logger
import json
import paho.mqtt.client as mqtt
import uuid

WRITE_SOC_TOPIC_PREFIX = "W/daly_bms_service/soc/"

# (pack id, soc)
WriteSocListener = Callable[[str, int], None]


class TopicType(Enum):
    NOTIFY = "N"
    READ = "R"
    WRITE = "W"


def int_value(value: Any) -> int:
    if value is None:
        return 0
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, (int, float)):
        return int(value)
    logger.error(f"int_value - Unsupported type {value!r}")
    return 0


class VictronMqttClient:
    def __init__(self, config: Config, executor: Executor, client: Optional[mqtt.Client] = None):
        self.config = config
        self.executor = executor
        self.listeners: List[WriteSocListener] = []
        self.mqtt_connected = False

        self.client = client or mqtt.Client(
            callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            client_id="DalyBmsService_" + uuid.uuid4().hex[:12],
        )
        self.client.on_connect = self.on_connect
        self.client.on_disconnect = self.on_disconnect
        self.client.on_message = self.on_message
        self.client.reconnect_delay_set(min_delay=1, max_delay=5)

    def add_listener(self, listener: WriteSocListener) -> None:
        self.listeners.append(listener)

    def connect(self) -> None:
        broker_address = self.config.get_str("MQTT_BROKER_ADDRESS", "localhost")
        broker_port = self.config.get_int("MQTT_BROKER_PORT", 1883)

        # check tls and use settings, if provided
        if self.config.get_bool("MQTT_TLS_ENABLED", False):
            logger.info("MQTT client: TLS is enabled")
            path_to_ca = self.config.get_str("MQTT_TLS_PATH_TO_CA", "")
            if path_to_ca:
                logger.info(f'MQTT client: TLS: custom ca "{path_to_ca}" used')
                self.client.tls_set(path_to_ca, tls_version=2)
            else:
                self.client.tls_set(tls_version=2)

            if self.config.get_bool("MQTT_TLS_INSECURE", False):
                logger.info("MQTT client: TLS certificate server hostname verification disabled")
                self.client.tls_insecure_set(True)

        # check if username and password are set
        username = self.config.get_str("MQTT_USERNAME", "")
        password = self.config.get_str("MQTT_PASSWORD", "")
        if username and password:
            logger.info(f'MQTT client: Using username "{username}" and password to connect')
            self.client.username_pw_set(username=username, password=password)

        logger.info(f"MQTT client: Connecting to broker {broker_address} on port {broker_port}")
        # the network loop connects in the background and keeps retrying while the broker is unreachable
        self.client.connect_async(host=broker_address, port=broker_port)
        self.client.loop_start()

    def disconnect(self) -> None:
        self.client.disconnect()
        self.client.loop_stop()

    def on_connect(self, client, userdata, flags, reason_code, properties):
        if reason_code == 0:
            logger.info("MQTT client: Connected to MQTT broker!")
            self.mqtt_connected = True
            client.subscribe(WRITE_SOC_TOPIC_PREFIX + "#")
        else:
            logger.error(f"MQTT client: Failed to connect, return code {reason_code}")

    def on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.mqtt_connected = False
        if reason_code != 0:
            logger.warning(f"MQTT client: Unexpected disconnection ({reason_code}). Will auto-reconnect")
        else:
            logger.info("MQTT client: Disconnected")

    def on_message(self, client, userdata, msg):
        # writing the SoC waits for the running poll cycle, so it must not block the network loop
        self.executor.submit(self.on_message_error_catching, msg.topic, msg.payload)

    def on_message_error_catching(self, topic: str, payload: bytes) -> None:
        try:
            self.handle_message(topic, payload)
        except ValueError as e:
            logger.error(f"Received message on {topic} is not valid JSON: {e}")
        except Exception:
            logger.error(f"Exception occurred: {exception_location()}")
            logger.debug(f"MQTT payload: {payload!r}")

    def handle_message(self, topic: str, payload: bytes) -> None:
        if not topic.startswith(WRITE_SOC_TOPIC_PREFIX):
            logger.debug(f"MQTT client: Ignoring message on {topic}")
            return

        body = payload.decode("utf-8") if payload else "{}"
        json_raw = json.loads(body) if body.strip() else {}
        bms_id = topic[len(WRITE_SOC_TOPIC_PREFIX) :]
        soc = int_value(json_raw.get("value") if isinstance(json_raw, dict) else None)

        logger.info(f"MQTT client: Request to set SoC of {bms_id} to {soc}%")
        for listener in self.listeners:
            listener(bms_id, soc)

    def write_enabled(self) -> bool:
        return self.config.get_bool("MQTT_WRITE_ENABLED", True)

    def topic(self, topic_type: TopicType, path: str) -> str:
        portal_id = self.config.get_str("VICTRON_PORTAL_ID")
        if not portal_id:
            raise ValueError("VICTRON_PORTAL_ID not configured")
        return f"{topic_type.value}/{portal_id}{path}"

    def publish(self, topic: str, payload: Any = None) -> None:
        if topic.startswith("W/") and not self.write_enabled():
            logger.warning(f"Could not publish to {topic} - write disabled")
            return

        message = None if payload is None else json.dumps(payload)
        info = self.client.publish(topic, message, qos=1)
        if info.rc != mqtt.MQTT_ERR_SUCCESS:
            logger.warning(f"MQTT client: Publishing to {topic} failed with rc={info.rc}")
