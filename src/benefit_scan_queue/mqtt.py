"""MQTT transport for scan queue activity.

Two kinds of messages go out:

- Activity events on the events topic (``MQTT_TOPIC``): one JSON object per
  queue mutation, e.g. ``job_claimed`` or ``period_completed``.
- Period snapshots, retained on ``{MQTT_TOPIC}/periods/{YYYY}-{MM}``, so a
  dashboard subscribing late still sees the latest state of every period.
"""
import json
import logging
import time
from typing import Any, Optional, Union

import paho.mqtt.client as mqtt

from .schemas import PeriodStatusRecord

logger = logging.getLogger(__name__)


def period_topic(base_topic: str, month: int, year: int) -> str:
    """Retained snapshot topic of one period, e.g. ``.../periods/2025-03``."""
    return f"{base_topic}/periods/{year}-{month:02d}"


def event_payload(event_type: str, entity_id: str, data: dict[str, Any]) -> str:
    """Serialize an activity event; ``data`` keys sit beside the envelope."""
    return json.dumps(
        {
            "event_type": event_type,
            "entity_id": entity_id,
            "timestamp": int(time.time() * 1000),
            **data,
        }
    )


class MQTTBroadcaster:
    """Publishes scan queue events and period snapshots to an MQTT broker."""

    def __init__(self, broker: str, port: int, topic: str):
        self.broker = broker
        self.port = port
        self.topic = topic
        self.client: Optional[mqtt.Client] = None
        self.connected = False

    def connect(self) -> bool:
        try:
            self.client = mqtt.Client(mqtt.CallbackAPIVersion.VERSION2)
            self.client.on_connect = self._on_connect
            self.client.on_disconnect = self._on_disconnect
            self.client.connect(self.broker, self.port, keepalive=60)
            self.client.loop_start()
            self.connected = True
            return True
        except Exception as e:
            logger.warning(f"Failed to connect to MQTT broker {self.broker}:{self.port}: {e}")
            return False

    def disconnect(self):
        if self.client:
            self.client.loop_stop()
            self.client.disconnect()
            self.connected = False

    def _publish(self, topic: str, payload: str, retain: bool) -> bool:
        if not self.connected or not self.client:
            return False
        try:
            result = self.client.publish(topic, payload, qos=1, retain=retain)
            return result.rc == mqtt.MQTT_ERR_SUCCESS
        except Exception as e:
            logger.error(f"Error publishing to {topic}: {e}")
            return False

    def publish_event(self, event_type: str, entity_id: str, data: dict[str, Any]) -> bool:
        """Publish one activity event on the events topic."""
        return self._publish(self.topic, event_payload(event_type, entity_id, data), retain=False)

    def publish_period(self, period: PeriodStatusRecord) -> bool:
        """Replace the retained snapshot of a period."""
        topic = period_topic(self.topic, period.month, period.year)
        return self._publish(topic, period.model_dump_json(), retain=True)

    def _on_connect(self, client, userdata, flags, reason_code, properties):
        self.connected = not reason_code.is_failure
        if reason_code.is_failure:
            logger.warning(f"MQTT broker refused connection: {reason_code}")

    def _on_disconnect(self, client, userdata, flags, reason_code, properties):
        self.connected = False


class NoOpBroadcaster:
    """Broadcaster used when BROADCAST_TYPE is not ``mqtt``."""

    def connect(self) -> bool:
        return True

    def disconnect(self):
        pass

    def publish_event(self, event_type: str, entity_id: str, data: dict[str, Any]) -> bool:
        return True

    def publish_period(self, period: PeriodStatusRecord) -> bool:
        return True


Broadcaster = Union[MQTTBroadcaster, NoOpBroadcaster]

_broadcaster: Optional[Broadcaster] = None


def get_broadcaster(broadcast_type: str, broker: str, port: int, topic: str) -> Broadcaster:
    """Get or create the process-wide broadcaster."""
    global _broadcaster
    if _broadcaster is not None:
        return _broadcaster

    if broadcast_type == "mqtt":
        _broadcaster = MQTTBroadcaster(broker, port, topic)
    else:
        _broadcaster = NoOpBroadcaster()
    _ = _broadcaster.connect()

    return _broadcaster


def shutdown_broadcaster():
    """Disconnect and forget the process-wide broadcaster."""
    global _broadcaster
    if _broadcaster:
        _broadcaster.disconnect()
        _broadcaster = None
