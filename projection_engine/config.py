"""
config.py - Configuration for the projection engine
"""
import os
from typing import Dict, Any, Optional
from dataclasses import dataclass, field


@dataclass
class SyncConfig:
    """Configuration for the projection engine"""

    # Write store configuration
    write_store_uri: str = ":memory:"

    # Ledger / read store / dead-letter backing
    store_type: str = "memory"  # memory or redis
    redis_config: Dict[str, Any] = field(default_factory=dict)
    namespace: str = "projection"

    # Change consumer configuration
    consumer_partitions: int = 4
    consumer_max_attempts: int = 5
    retry_base_delay: float = 0.05
    retry_max_delay: float = 2.0
    cdc_batch_size: int = 100
    cdc_poll_interval: float = 0.5
    cdc_provider: str = "polling"  # polling or push

    # Timeouts (seconds)
    store_timeout: float = 1.0
    dual_write_timeout: float = 0.25
    cas_max_retries: int = 10

    # Reconciler configuration
    reconcile_interval: float = 30.0
    staleness_threshold: float = 3600.0
    recent_window: float = 300.0
    sample_rate: float = 0.1
    reconcile_limit: int = 1000
    reconcile_concurrency: int = 8
    repair_alert_threshold: int = 3
    tombstone_retention: float = 86400.0

    log_level: str = "INFO"

    def from_env(self) -> 'SyncConfig':
        """Load configuration from environment variables"""
        config = SyncConfig()

        config.write_store_uri = os.getenv('PROJECTION_WRITE_STORE_URI', config.write_store_uri)

        config.store_type = os.getenv('PROJECTION_STORE_TYPE', config.store_type)
        config.namespace = os.getenv('PROJECTION_NAMESPACE', config.namespace)

        # Redis settings if enabled
        if config.store_type == 'redis':
            config.redis_config = {
                'host': os.getenv('REDIS_HOST', 'localhost'),
                'port': int(os.getenv('REDIS_PORT', '6379')),
                'db': int(os.getenv('REDIS_DB', '0')),
                'password': os.getenv('REDIS_PASSWORD', None)
            }

        config.consumer_partitions = int(os.getenv('PROJECTION_CONSUMER_PARTITIONS', str(config.consumer_partitions)))
        config.consumer_max_attempts = int(os.getenv('PROJECTION_CONSUMER_MAX_ATTEMPTS', str(config.consumer_max_attempts)))
        config.cdc_batch_size = int(os.getenv('PROJECTION_CDC_BATCH_SIZE', str(config.cdc_batch_size)))
        config.cdc_poll_interval = float(os.getenv('PROJECTION_CDC_POLL_INTERVAL', str(config.cdc_poll_interval)))
        config.cdc_provider = os.getenv('PROJECTION_CDC_PROVIDER', config.cdc_provider)

        config.store_timeout = float(os.getenv('PROJECTION_STORE_TIMEOUT', str(config.store_timeout)))
        config.dual_write_timeout = float(os.getenv('PROJECTION_DUAL_WRITE_TIMEOUT', str(config.dual_write_timeout)))

        config.reconcile_interval = float(os.getenv('PROJECTION_RECONCILE_INTERVAL', str(config.reconcile_interval)))
        config.staleness_threshold = float(os.getenv('PROJECTION_STALENESS_THRESHOLD', str(config.staleness_threshold)))
        config.sample_rate = float(os.getenv('PROJECTION_SAMPLE_RATE', str(config.sample_rate)))
        config.tombstone_retention = float(os.getenv('PROJECTION_TOMBSTONE_RETENTION', str(config.tombstone_retention)))

        config.log_level = os.getenv('PROJECTION_LOG_LEVEL', config.log_level)

        return config

    def validate(self) -> None:
        """Validate configuration settings"""
        errors = []

        if self.store_type not in ("memory", "redis"):
            errors.append("store_type must be 'memory' or 'redis'")

        if self.cdc_provider not in ("polling", "push"):
            errors.append("cdc_provider must be 'polling' or 'push'")

        if self.consumer_partitions <= 0:
            errors.append("consumer_partitions must be positive")

        if self.consumer_max_attempts <= 0:
            errors.append("consumer_max_attempts must be positive")

        if self.retry_base_delay < 0 or self.retry_max_delay < self.retry_base_delay:
            errors.append("retry delays must satisfy 0 <= retry_base_delay <= retry_max_delay")

        if self.cdc_batch_size <= 0:
            errors.append("cdc_batch_size must be positive")

        if self.store_timeout <= 0 or self.dual_write_timeout <= 0:
            errors.append("timeouts must be positive")

        if self.cas_max_retries <= 0:
            errors.append("cas_max_retries must be positive")

        if self.reconcile_interval <= 0:
            errors.append("reconcile_interval must be positive")

        if not 0.0 <= self.sample_rate <= 1.0:
            errors.append("sample_rate must be between 0 and 1")

        if self.reconcile_concurrency <= 0:
            errors.append("reconcile_concurrency must be positive")

        if errors:
            raise ValueError(f"Configuration validation errors: {'; '.join(errors)}")


class ConfigManager:
    """Manager for configuration loading and validation"""

    def __init__(self):
        self.config: Optional[SyncConfig] = None

    def load_config(self, config_source: Optional[str] = None) -> SyncConfig:
        """Load configuration from various sources"""
        if config_source == 'env':
            self.config = SyncConfig().from_env()
        else:
            self.config = SyncConfig()

        self.config.validate()
        return self.config

    def get_config(self) -> SyncConfig:
        """Get the loaded configuration"""
        if self.config is None:
            self.config = self.load_config()
        return self.config


# Global configuration manager
config_manager = ConfigManager()


def get_config() -> SyncConfig:
    """Get the global configuration"""
    return config_manager.get_config()
