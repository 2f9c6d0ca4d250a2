"""Unit tests for MQTT broadcaster.

Tests MQTTBroadcaster and NoOpBroadcaster implementations and how the scan
queue publishes through them.
Requires MQTT broker running on localhost:1883 for MQTTBroadcaster tests.
"""

import json
import socket
from unittest.mock import MagicMock
from uuid import uuid4

import paho.mqtt.client as mqtt
import pytest

from benefit_scan_queue import PeriodState, PeriodStatusRecord, ScanQueueService
from benefit_scan_queue.mqtt import (
    MQTTBroadcaster,
    NoOpBroadcaster,
    event_payload,
    get_broadcaster,
    period_topic,
    shutdown_broadcaster,
)
from helpers import RecordingBroadcaster, register_workers


# ============================================================================
# Helper Functions
# ============================================================================

def is_mqtt_running(host="localhost", port=1883, timeout=2):
    """Check if MQTT broker is running on specified host:port.

    Args:
        host: MQTT broker hostname
        port: MQTT broker port
        timeout: Connection timeout in seconds

    Returns:
        True if MQTT broker is reachable, False otherwise
    """
    try:
        sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        sock.settimeout(timeout)
        result = sock.connect_ex((host, port))
        sock.close()
        return result == 0
    except OSError:
        return False


def skip_if_no_mqtt():
    """Skip the calling test if MQTT is not running."""
    if not is_mqtt_running():
        pytest.skip("MQTT broker not running on localhost:1883")


class ExplodingBroadcaster:
    """Broadcaster whose every publish raises, like a broken network stack."""

    def connect(self) -> bool:
        return True

    def disconnect(self):
        pass

    def publish_event(self, event_type: str, entity_id: str, data: dict) -> bool:
        raise ConnectionError("broker went away")

    def publish_period(self, period: PeriodStatusRecord) -> bool:
        raise ConnectionError("broker went away")


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
def test_topic():
    """Generate unique test topic for each test."""
    return f"test/wmb-scan/{uuid4()}"


@pytest.fixture
def mqtt_broadcaster(test_topic):
    """Create MQTTBroadcaster instance for testing."""
    skip_if_no_mqtt()
    broadcaster = MQTTBroadcaster(broker="localhost", port=1883, topic=test_topic)
    yield broadcaster
    broadcaster.disconnect()


@pytest.fixture
def noop_broadcaster():
    """Create NoOpBroadcaster instance for testing."""
    return NoOpBroadcaster()


@pytest.fixture
def march_period():
    """Running snapshot of March 2025."""
    return PeriodStatusRecord(
        id=7,
        month=3,
        year=2025,
        status=PeriodState.running,
        total_queued=10,
        processed_success=4,
        processed_failed=1,
        created_at=1_739_620_800_000,
        started_at=1_739_621_100_000,
    )


# ============================================================================
# Topics and payloads
# ============================================================================

def test_period_topic_pads_month():
    """Test period topics use a zero-padded YYYY-MM suffix."""
    assert period_topic("trust/wmb-scan/events", 3, 2025) == "trust/wmb-scan/events/periods/2025-03"
    assert period_topic("ops", 12, 2024) == "ops/periods/2024-12"


def test_event_payload_flattens_data():
    """Test event data sits beside the envelope fields."""
    payload = json.loads(event_payload("job_completed", "17", {"worker_id": "W-001", "status": "success"}))

    assert payload["event_type"] == "job_completed"
    assert payload["entity_id"] == "17"
    assert payload["worker_id"] == "W-001"
    assert payload["status"] == "success"
    assert isinstance(payload["timestamp"], int)


# ============================================================================
# NoOpBroadcaster Tests (Always Run)
# ============================================================================

class TestNoOpBroadcaster:
    """Test suite for NoOpBroadcaster."""

    def test_connect(self, noop_broadcaster):
        """Test NoOp connect always succeeds."""
        assert noop_broadcaster.connect() is True

    def test_disconnect(self, noop_broadcaster):
        """Test NoOp disconnect does nothing."""
        noop_broadcaster.disconnect()

    def test_publish_event(self, noop_broadcaster):
        """Test NoOp publish_event always succeeds."""
        result = noop_broadcaster.publish_event(
            event_type="job_claimed",
            entity_id="42",
            data={"worker_id": "W-001", "attempts": 1}
        )
        assert result is True

    def test_publish_period(self, noop_broadcaster, march_period):
        """Test NoOp publish_period always succeeds."""
        assert noop_broadcaster.publish_period(march_period) is True


# ============================================================================
# MQTTBroadcaster Tests (Require MQTT Broker)
# ============================================================================

class TestMQTTBroadcaster:
    """Test suite for MQTTBroadcaster.

    These tests require MQTT broker running on localhost:1883.
    Tests will be skipped if broker is not available.
    """

    def test_connect(self, mqtt_broadcaster):
        """Test connecting to MQTT broker."""
        result = mqtt_broadcaster.connect()
        assert result is True
        assert mqtt_broadcaster.connected is True
        assert mqtt_broadcaster.client is not None

    def test_disconnect(self, mqtt_broadcaster):
        """Test disconnecting from MQTT broker."""
        mqtt_broadcaster.connect()
        mqtt_broadcaster.disconnect()
        assert mqtt_broadcaster.connected is False

    def test_publish_event(self, mqtt_broadcaster):
        """Test publishing a queue event to MQTT."""
        mqtt_broadcaster.connect()

        result = mqtt_broadcaster.publish_event(
            event_type="job_completed",
            entity_id="17",
            data={"worker_id": "W-001", "status": "success"}
        )

        assert result is True

    def test_publish_event_without_connection(self, test_topic):
        """Test publish_event fails without connection."""
        broadcaster = MQTTBroadcaster(broker="localhost", port=1883, topic=test_topic)

        result = broadcaster.publish_event(event_type="test", entity_id="1", data={})

        assert result is False

    def test_publish_period_without_connection(self, test_topic, march_period):
        """Test publish_period fails without connection."""
        broadcaster = MQTTBroadcaster(broker="localhost", port=1883, topic=test_topic)

        assert broadcaster.publish_period(march_period) is False

    def test_publish_period_is_retained_on_period_topic(self, test_topic, march_period):
        """Test period snapshots go out retained on the period's own topic."""
        broadcaster = MQTTBroadcaster(broker="localhost", port=1883, topic=test_topic)
        broadcaster.client = MagicMock()
        broadcaster.client.publish.return_value.rc = mqtt.MQTT_ERR_SUCCESS
        broadcaster.connected = True

        assert broadcaster.publish_period(march_period) is True

        broadcaster.client.publish.assert_called_once_with(
            f"{test_topic}/periods/2025-03", march_period.model_dump_json(), qos=1, retain=True
        )

    def test_publish_event_is_not_retained(self, test_topic):
        """Test activity events go to the events topic without the retain flag."""
        broadcaster = MQTTBroadcaster(broker="localhost", port=1883, topic=test_topic)
        broadcaster.client = MagicMock()
        broadcaster.client.publish.return_value.rc = mqtt.MQTT_ERR_SUCCESS
        broadcaster.connected = True

        assert broadcaster.publish_event("job_claimed", "42", {"attempts": 1}) is True

        args, kwargs = broadcaster.client.publish.call_args
        assert args[0] == test_topic
        assert json.loads(args[1])["attempts"] == 1
        assert kwargs == {"qos": 1, "retain": False}

    def test_publish_error_returns_false(self, test_topic, march_period):
        """Test a client error while publishing is reported as False."""
        broadcaster = MQTTBroadcaster(broker="localhost", port=1883, topic=test_topic)
        broadcaster.client = MagicMock()
        broadcaster.client.publish.side_effect = OSError("socket closed")
        broadcaster.connected = True

        assert broadcaster.publish_period(march_period) is False

    def test_publish_period(self, mqtt_broadcaster, march_period):
        """Test publishing a retained period snapshot to a live broker."""
        mqtt_broadcaster.connect()

        assert mqtt_broadcaster.publish_period(march_period) is True

    def test_reconnect(self, mqtt_broadcaster):
        """Test reconnecting to MQTT broker."""
        mqtt_broadcaster.connect()
        assert mqtt_broadcaster.connected is True

        mqtt_broadcaster.disconnect()
        assert mqtt_broadcaster.connected is False

        result = mqtt_broadcaster.connect()
        assert result is True
        assert mqtt_broadcaster.connected is True


def test_connect_to_unreachable_broker():
    """Test connect reports failure instead of raising."""
    broadcaster = MQTTBroadcaster(broker="127.0.0.1", port=1, topic="test/unreachable")

    assert broadcaster.connect() is False
    assert broadcaster.connected is False


# ============================================================================
# Global Broadcaster Tests
# ============================================================================

class TestGlobalBroadcaster:
    """Test suite for global broadcaster singleton."""

    def setup_method(self):
        """Ensure clean state before each test."""
        shutdown_broadcaster()

    def teardown_method(self):
        """Cleanup after each test."""
        shutdown_broadcaster()

    def test_get_broadcaster_mqtt(self):
        """Test getting MQTT broadcaster."""
        skip_if_no_mqtt()

        broadcaster = get_broadcaster(
            broadcast_type="mqtt",
            broker="localhost",
            port=1883,
            topic="test/wmb-scan/events"
        )

        assert isinstance(broadcaster, MQTTBroadcaster)
        assert broadcaster.connected is True

    def test_get_broadcaster_noop(self):
        """Test getting NoOp broadcaster."""
        broadcaster = get_broadcaster(
            broadcast_type="none",
            broker="localhost",
            port=1883,
            topic="test/wmb-scan/events"
        )

        assert isinstance(broadcaster, NoOpBroadcaster)

    def test_get_broadcaster_singleton(self):
        """Test that get_broadcaster returns same instance."""
        broadcaster1 = get_broadcaster("none", "localhost", 1883, "test/wmb-scan/events")
        broadcaster2 = get_broadcaster("none", "localhost", 1883, "test/wmb-scan/events")

        assert broadcaster1 is broadcaster2

    def test_shutdown_broadcaster(self):
        """Test shutting down global broadcaster."""
        broadcaster = get_broadcaster("none", "localhost", 1883, "test/wmb-scan/events")

        shutdown_broadcaster()

        new_broadcaster = get_broadcaster("none", "localhost", 1883, "test/wmb-scan/events")
        assert new_broadcaster is not broadcaster

    def test_queue_uses_global_broadcaster_by_default(self, session_factory):
        """Test a queue without an explicit broadcaster picks the configured one."""
        queue = ScanQueueService(session_factory)

        assert isinstance(queue.broadcaster, NoOpBroadcaster)
        assert queue.broadcaster is get_broadcaster("none", "localhost", 1883, "test/wmb-scan/events")


# ============================================================================
# Queue Integration Tests
# ============================================================================

class TestQueueBroadcasting:
    """How ScanQueueService publishes through its broadcaster."""

    def test_publish_failures_do_not_break_the_queue(self, session_factory, clock):
        """Test a raising broadcaster never fails a queue operation."""
        queue = ScanQueueService(session_factory, broadcaster=ExplodingBroadcaster(), clock=clock)
        _ = register_workers(queue, 2)

        result = queue.enqueue_month(3, 2025)
        for _ in range(2):
            job = queue.claim_next_job()
            assert job is not None
            queue.record_job_result(job.id, True, {})

        period = queue.get_month_status(3, 2025)
        assert result.queued_count == 2
        assert period is not None
        assert period.status == PeriodState.completed

    def test_period_snapshot_topic(self, session_factory, clock):
        """Test period snapshots are retained under the broadcaster's topic."""
        broadcaster = RecordingBroadcaster(topic="ops/scan")
        queue = ScanQueueService(session_factory, broadcaster=broadcaster, clock=clock)
        _ = register_workers(queue, 1)

        result = queue.enqueue_month(3, 2025)

        snapshot = json.loads(broadcaster.retained["ops/scan/periods/2025-03"])
        assert snapshot["id"] == result.status_id
        assert snapshot["status"] == "queued"
        assert snapshot["total_queued"] == 1

    def test_lifecycle_event_sequence(self, scan_queue, workers, broadcaster):
        """Test the events of a one-worker period arrive in lifecycle order."""
        _ = scan_queue.enqueue_worker(workers[0], 3, 2025)
        job = scan_queue.claim_next_job()
        scan_queue.record_job_result(job.id, False, None, "timeout")

        assert [e[0] for e in broadcaster.events] == [
            "worker_enqueued",
            "job_claimed",
            "job_completed",
            "period_completed",
        ]
        assert broadcaster.events[2][2] == {"worker_id": workers[0], "status": "failed", "error": "timeout"}
