"""Configuration for the benefit scan queue.

Usage:
    from benefit_scan_queue.config import Config

    # Access config values
    database_url = Config.DATABASE_URL
    poll_interval = Config.WORKER_POLL_INTERVAL
"""

import os


class Config:
    """Centralized configuration for the scan queue and its executors.

    All configuration values are class variables that can be accessed directly.
    Values are loaded from environment variables with sensible defaults.

    Example:
        from benefit_scan_queue.config import Config

        print(Config.SCAN_QUEUE_DIR)
        print(Config.DATABASE_URL)
    """

    # ========================================================================
    # Helper methods (static)
    # ========================================================================

    @staticmethod
    def _get_value(key: str, default: str) -> str:
        """Get configuration value from environment with optional default."""
        return os.getenv(key, default)

    @staticmethod
    def _get_int(key: str, default: int) -> int:
        """Get integer configuration value."""
        return int(os.getenv(key, str(default)))

    @staticmethod
    def _get_float(key: str, default: float) -> float:
        """Get float configuration value."""
        return float(os.getenv(key, str(default)))

    # ========================================================================
    # Common Configuration
    # ========================================================================

    SCAN_QUEUE_DIR: str = _get_value("SCAN_QUEUE_DIR", os.path.abspath("data"))

    # ========================================================================
    # Database Configuration
    # ========================================================================

    # Enqueue triggers, invalidation hooks and executors share one database
    DATABASE_URL: str = _get_value("DATABASE_URL", f"sqlite:///{SCAN_QUEUE_DIR}/scan_queue.db")

    LOG_LEVEL: str = _get_value("LOG_LEVEL", "INFO")

    # ========================================================================
    # Executor Configuration
    # ========================================================================

    WORKER_ID: str = _get_value("WORKER_ID", "worker-default")
    WORKER_POLL_INTERVAL: float = _get_float("WORKER_POLL_INTERVAL", 5)
    WORKER_MAX_POLL_INTERVAL: float = _get_float("WORKER_MAX_POLL_INTERVAL", 60)
    PROCESS_BATCH_SIZE: int = _get_int("PROCESS_BATCH_SIZE", 10)

    # ========================================================================
    # MQTT Configuration
    # ========================================================================

    BROADCAST_TYPE: str = _get_value("BROADCAST_TYPE", "none")
    MQTT_BROKER: str = _get_value("MQTT_BROKER", "localhost")
    MQTT_PORT: int = _get_int("MQTT_PORT", 1883)
    MQTT_TOPIC: str = _get_value("MQTT_TOPIC", "trust/wmb-scan/events")
