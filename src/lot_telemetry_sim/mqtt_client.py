"""MQTT publisher for simulator and lot events, with publish buffering."""

import json
import logging
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from queue import Empty, Queue
from typing import Any, Dict, Optional

import paho.mqtt.client as mqtt

from .config import MQTTConfig
from .models import Lot, LotSummary, format_time

logger = logging.getLogger(__name__)

CONNECT_TIMEOUT = 10.0


@dataclass
class Message:
    """MQTT message to be published."""

    topic: str
    payload: Dict[str, Any]
    retain: bool = False
    qos: int = 1


class MQTTClient:
    """Publishes simulator status, cycle events and completed lots."""

    def __init__(self, mqtt_config: MQTTConfig):
        self.mqtt_config = mqtt_config

        self._client: Optional[mqtt.Client] = None
        self._connected = False
        self._publish_queue: "Queue[Message]" = Queue()
        self._publish_thread: Optional[threading.Thread] = None
        self._running = False
        self._dry_run = False

        self._messages_published = 0
        self._messages_dropped = 0

    @property
    def connected(self) -> bool:
        return self._connected

    @property
    def messages_published(self) -> int:
        return self._messages_published

    @property
    def messages_dropped(self) -> int:
        return self._messages_dropped

    @property
    def status_topic(self) -> str:
        return f"{self.mqtt_config.topic_prefix}/simulator/_state"

    @property
    def cycle_topic(self) -> str:
        return f"{self.mqtt_config.topic_prefix}/simulator/_event/cycle"

    def lot_topic(self, lot_number: str) -> str:
        return f"{self.mqtt_config.topic_prefix}/lots/{lot_number}/_state"

    def connect(self, dry_run: bool = False) -> bool:
        """Connect to the MQTT broker."""
        self._dry_run = dry_run

        if dry_run:
            logger.info("Dry run mode - not connecting to MQTT broker")
            self._connected = True
            self._start_publish_thread()
            return True

        try:
            self._client = mqtt.Client(
                client_id=self.mqtt_config.client_id,
                callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
            )
            if self.mqtt_config.username:
                self._client.username_pw_set(self.mqtt_config.username, self.mqtt_config.password)

            self._client.on_connect = self._on_connect
            self._client.on_disconnect = self._on_disconnect

            logger.info(
                f"Connecting to MQTT broker {self.mqtt_config.broker}:{self.mqtt_config.port}"
            )
            self._client.connect(self.mqtt_config.broker, self.mqtt_config.port)
            self._client.loop_start()

            start = time.time()
            while not self._connected and (time.time() - start) < CONNECT_TIMEOUT:
                time.sleep(0.1)

            if self._connected:
                self._start_publish_thread()
            return self._connected

        except Exception as e:
            logger.error(f"Failed to connect to MQTT broker: {e}")
            return False

    def disconnect(self) -> None:
        """Publish whatever is still queued, then close the connection."""
        self._running = False

        if self._publish_thread:
            self._publish_thread.join(timeout=2)
            self._publish_thread = None
        else:
            self._flush_queue()

        if self._client and not self._dry_run:
            self._client.loop_stop()
            self._client.disconnect()

        self._connected = False
        logger.info("Disconnected from MQTT broker")

    def publish_raw(self, topic: str, payload: Dict[str, Any], retain: bool = False) -> bool:
        """Queue a message for the publish thread."""
        msg = Message(topic=topic, payload=payload, retain=retain, qos=self.mqtt_config.qos)
        self._publish_queue.put(msg)
        return True

    # ------------------------------------------------------------------
    # Event payloads
    # ------------------------------------------------------------------

    def publish_simulator_status(self, enabled: bool, current_machine: Optional[str] = None) -> None:
        status = {
            "enabled": enabled,
            "current_machine": current_machine,
            "messages_published": self._messages_published,
            "messages_dropped": self._messages_dropped,
            "timestamp_ms": int(time.time() * 1000),
        }
        self.publish_raw(self.status_topic, status, retain=True)

    def on_cycle_complete(self, completed_at: datetime, last_machine: str) -> None:
        self.publish_raw(
            self.cycle_topic,
            {"completedAt": format_time(completed_at), "lastMachine": last_machine},
        )

    def publish_lot_completed(self, lot: Lot, summary: LotSummary) -> None:
        payload = {
            "lotNumber": lot.lot_number,
            "machineName": lot.machine_name,
            "status": "completed",
            "summary": summary.to_dict(),
        }
        self.publish_raw(self.lot_topic(lot.lot_number), payload, retain=True)

    # ------------------------------------------------------------------
    # Publish thread
    # ------------------------------------------------------------------

    def _start_publish_thread(self) -> None:
        self._running = True
        self._publish_thread = threading.Thread(
            target=self._publish_loop, name="mqtt-publisher", daemon=True
        )
        self._publish_thread.start()

    def _publish_loop(self) -> None:
        while self._running:
            try:
                msg = self._publish_queue.get(timeout=0.1)
            except Empty:
                continue
            self._do_publish(msg)
        self._flush_queue()

    def _flush_queue(self) -> None:
        while True:
            try:
                msg = self._publish_queue.get_nowait()
            except Empty:
                return
            self._do_publish(msg)

    def _do_publish(self, msg: Message) -> None:
        payload_str = json.dumps(msg.payload)

        if self._dry_run:
            logger.debug(f"[DRY RUN] {msg.topic}: {payload_str[:100]}")
            self._messages_published += 1
            return

        if not (self._client and self._connected):
            self._messages_dropped += 1
            return

        try:
            result = self._client.publish(msg.topic, payload_str, qos=msg.qos, retain=msg.retain)
            if result.rc == mqtt.MQTT_ERR_SUCCESS:
                self._messages_published += 1
            else:
                self._messages_dropped += 1
                logger.warning(f"Failed to publish to {msg.topic}: {result.rc}")
        except Exception as e:
            self._messages_dropped += 1
            logger.error(f"Error publishing to {msg.topic}: {e}")

    def _on_connect(self, client, userdata, flags, rc, properties=None) -> None:
        if rc == 0:
            self._connected = True
            logger.info("Connected to MQTT broker")
        else:
            logger.error(f"Connection failed with code {rc}")

    def _on_disconnect(self, client, userdata, flags, rc, properties=None) -> None:
        self._connected = False
        if rc != 0:
            logger.warning(f"Unexpected disconnection (rc={rc})")
