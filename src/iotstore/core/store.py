"""Telemetry store facade.

Entry point for the write path (ingestion) and the read path (dashboards) of the tiered
telemetry store, plus the admin operations of compaction and retention.

Example:
    .. code-block:: python

        store = TelemetryStore()
        store.append_sample("dev-1", "temperature", 21.5, {"deviceName": "Lab"})
        points = store.query_range(["dev-1"], "temperature", start, end, interval="5m")
        store.close()
"""

from typing import Any, Optional, Sequence, Union

from loguru import logger

from iotstore.core.compaction import (
    CompressionStats,
    Compactor,
    MaintenanceResult,
)
from iotstore.core.coreabc import ConfigMixin, DatabaseMixin
from iotstore.core.maintenance import MaintenanceRunner
from iotstore.core.reader import DataPoint, SmartReader
from iotstore.core.records import RawStats, Sample
from iotstore.core.retention import CleanupResult, DistributionStats, RetentionSweep
from iotstore.utils.cacheutil import ResultCache, generate_cache_key
from iotstore.utils.datetimeutil import to_datetime, utc_now

COMPACTION_JOB = "compaction"


class TelemetryStore(ConfigMixin, DatabaseMixin):
    """Facade of the tiered telemetry store.

    Args:
        cache: Query result cache. Created from the cache settings if not given.
        runner: Runner of the fire-and-forget compaction check.
        compactor: Compactor of the raw tier.
        retention: Retention sweep of the raw tier.
        reader: Tier-aware reader.
    """

    def __init__(
        self,
        cache: Optional[ResultCache] = None,
        runner: Optional[MaintenanceRunner] = None,
        compactor: Optional[Compactor] = None,
        retention: Optional[RetentionSweep] = None,
        reader: Optional[SmartReader] = None,
    ) -> None:
        self.cache = cache or ResultCache(ttl=self.config.cache.ttl_sec)
        self.compactor = compactor or Compactor()
        self.retention = retention or RetentionSweep(self.compactor)
        self.reader = reader or SmartReader()
        self.runner = runner or MaintenanceRunner()
        self.runner.register(
            COMPACTION_JOB,
            self.compactor.check_and_compact,
            on_result=self._on_maintenance_result,
        )

    def _on_maintenance_result(self, result: Optional[MaintenanceResult]) -> None:
        """Invalidate cached query results after maintenance moved rows between tiers."""
        if result is not None and result.deleted_rows:
            self.cache.clear()

    # Write path

    def append_sample(
        self,
        device_id: str,
        datastream_id: str,
        value: float,
        payload: Optional[dict[str, Any]] = None,
        created_at: Optional[Any] = None,
    ) -> Sample:
        """Store a raw sample and trigger a non-blocking compaction check.

        Args:
            device_id: Device identifier.
            datastream_id: Datastream identifier.
            value: Sample value.
            payload: Opaque sample attributes, e.g. {"deviceName": "..."}.
            created_at: Write time, defaults to the current time.

        Returns:
            Sample: The stored sample.

        Raises:
            ValueError: On invalid sample data.
            sqlite3.Error: On store errors.
        """
        if not isinstance(device_id, str) or not device_id:
            raise ValueError("Device id is required.")
        if not isinstance(datastream_id, str) or not datastream_id:
            raise ValueError("Datastream id is required.")
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValueError(f"Sample value must be a number: {value!r}")
        if payload is not None and not isinstance(payload, dict):
            raise ValueError(f"Sample payload must be a dict: {payload!r}")

        created_at = utc_now() if created_at is None else to_datetime(created_at, in_timezone="UTC")
        sample = self.database.insert_sample(device_id, datastream_id, value, payload, created_at)

        if self.config.compaction.enabled:
            try:
                self.runner.trigger(COMPACTION_JOB)
            except RuntimeError as e:
                # Executor gone at interpreter shutdown, the write itself succeeded
                logger.warning(f"Compaction check not started: {e}")
        return sample

    # Read path

    def query_range(
        self,
        devices: Sequence[str],
        datastream: str,
        start: Any,
        end: Any,
        limit: int = 1000,
        interval: Optional[Union[str, int]] = None,
    ) -> list[DataPoint]:
        """Query a datastream of the given devices in `[start, end)`, ascending by time.

        Results are cached for `cache.ttl_sec` if the cache is enabled.

        Raises:
            ValueError: On invalid arguments.
            StoreQueryError: If the query failed on all tiers.
        """

        def fetch() -> list[DataPoint]:
            return self.reader.query(devices, datastream, start, end, limit, interval)

        if not self.config.cache.enabled:
            return fetch()
        key = generate_cache_key(
            "query_range",
            {
                "devices": list(devices) if not isinstance(devices, str) else devices,
                "datastream": datastream,
                "start": to_datetime(start, as_string=True),
                "end": to_datetime(end, as_string=True),
                "limit": limit,
                "interval": interval,
            },
        )
        return self.cache.with_cache(key, fetch)

    def latest_samples(self, limit: int = 100) -> list[Sample]:
        """Latest raw samples of all devices, newest first."""
        return self.database.latest_samples(limit)

    def samples_by_device(self, device_id: str, limit: int = 100) -> list[Sample]:
        """Latest raw samples of one device, newest first."""
        return self.database.latest_samples(limit, device_id=device_id)

    def raw_stats(self) -> RawStats:
        """Summary of the raw tier."""
        return self.database.sample_stats()

    # Admin

    def get_distribution_stats(self) -> DistributionStats:
        """Record counts of both tiers."""
        return self.retention.distribution_stats()

    def compression_stats(self) -> CompressionStats:
        """Record counts of both tiers and the compaction schedule."""
        return self.compactor.compression_stats()

    def should_cleanup(self) -> bool:
        """Whether raw samples older than the retention threshold exist."""
        return self.retention.should_cleanup()

    def force_compress(self) -> MaintenanceResult:
        """Compact now, bypassing the compaction gate."""
        result = self.compactor.check_and_compact(force=True)
        self._on_maintenance_result(result)
        return result

    def force_cleanup(self) -> CleanupResult:
        """Sweep raw samples older than the retention threshold now."""
        result = self.retention.perform_cleanup()
        self._on_maintenance_result(result)
        return result

    def maintenance_status(self) -> list[dict]:
        """State of the maintenance jobs."""
        return self.runner.status()

    def close(self, timeout: Optional[float] = None) -> None:
        """Wait for in-flight maintenance and close the database."""
        self.runner.shutdown(timeout)
        self.database.close()
