"""Monitoring scheduler.

Uses APScheduler to run one recurring poll job per device. Jobs are
(re)installed by :meth:`MonitoringScheduler.reload`, which runs on its own
interval so configuration changes are picked up without a restart.

Concurrency model: every job runs on the APScheduler thread pool; a bounded
semaphore caps the number of polls in flight across all devices, and
``max_instances=1`` keeps at most one poll per device running at a time.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent import futures
from datetime import datetime, timedelta, timezone
from typing import Callable, Protocol

from apscheduler.executors.pool import ThreadPoolExecutor
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.schedulers.base import BaseScheduler
from apscheduler.triggers.interval import IntervalTrigger

from linkwatch.core.config import MonitoringSettings
from linkwatch.core.models import DeviceDescriptor, DeviceStatus, MonitoringResult
from linkwatch.core.secrets import CredentialError
from linkwatch.core.storage import DeviceNotFoundError
from linkwatch.monitoring.extractors import Extractor

logger = logging.getLogger(__name__)

RELOAD_JOB_ID = "reload_devices"
DEVICE_JOB_PREFIX = "poll_device:"


class DeviceSource(Protocol):
    def list_devices(self) -> list[DeviceDescriptor]: ...

    def get_device(self, device_id: int) -> DeviceDescriptor | None: ...

    def get_device_with_credentials(self, device_id: int) -> DeviceDescriptor | None: ...

    def update_cache(self, device_id: int, status: DeviceStatus, metrics: dict | None) -> None: ...


class Notifier(Protocol):
    def evaluate(self, device: DeviceDescriptor, result: MonitoringResult) -> list: ...


def _device_job_id(device_id: int) -> str:
    return f"{DEVICE_JOB_PREFIX}{device_id}"


class MonitoringScheduler:
    """Owns the per-device poll timers and the global in-flight bound."""

    def __init__(
        self,
        store: DeviceSource,
        extractor: Extractor,
        notifier: Notifier,
        settings: MonitoringSettings | None = None,
        sleep: Callable[[float], None] = time.sleep,
        scheduler: BaseScheduler | None = None,
    ) -> None:
        self._store = store
        self._extractor = extractor
        self._notifier = notifier
        self._settings = settings or MonitoringSettings()
        self._sleep = sleep
        self._scheduler = scheduler or BackgroundScheduler(
            executors={"default": ThreadPoolExecutor(max_workers=self._settings.max_concurrent * 2 + 1)},
            job_defaults={"coalesce": True, "max_instances": 1, "misfire_grace_time": None},
            timezone=timezone.utc,
        )
        self._slots = threading.BoundedSemaphore(self._settings.max_concurrent)
        self._lock = threading.RLock()
        self._counter_lock = threading.Lock()
        self._timers: dict[int, int] = {}
        self._in_flight = 0
        self._running = False

    # ---------------------------------------------------------------- lifecycle

    @property
    def running(self) -> bool:
        return self._running

    @property
    def in_flight(self) -> int:
        with self._counter_lock:
            return self._in_flight

    def start(self, paused: bool = False) -> None:
        """Start the scheduler and register every device.

        ``paused`` installs the jobs without firing them.
        """

        with self._lock:
            if self._running:
                logger.info("Monitoring scheduler is already running")
                return
            self._running = True
            self._scheduler.start(paused=paused)
            self._scheduler.add_job(
                self.reload,
                IntervalTrigger(seconds=self._settings.reload_interval, timezone=timezone.utc),
                id=RELOAD_JOB_ID,
                name="Reload device list",
                replace_existing=True,
            )
        logger.info(
            "Monitoring scheduler started: max_concurrent=%d stagger=%ss reload=%ss",
            self._settings.max_concurrent,
            self._settings.stagger_seconds,
            self._settings.reload_interval,
        )
        self.reload()

    def stop(self) -> None:
        """Cancel all timers without waiting for polls in flight."""

        with self._lock:
            if not self._running:
                logger.info("Monitoring scheduler is not running")
                return
            self._running = False
            for device_id in list(self._timers):
                logger.debug("stopped monitoring for device id=%d", device_id)
            self._timers.clear()
            self._scheduler.remove_all_jobs()
            self._scheduler.shutdown(wait=False)
        logger.info("Monitoring scheduler stopped")

    # ----------------------------------------------------------------- timers

    def reload(self) -> None:
        """Bring the per-device jobs in line with the current device list."""

        if not self._running:
            return

        devices = self._store.list_devices()
        current_ids = {device.id for device in devices}
        now = datetime.now(timezone.utc)
        stagger = self._settings.stagger_seconds

        with self._lock:
            if not self._running:
                return

            for device_id in list(self._timers):
                if device_id not in current_ids:
                    self._cancel(device_id)
                    logger.info("removed monitoring for deleted device id=%d", device_id)

            batch_index = 0
            for device in devices:
                interval = device.polling.interval
                existing = self._timers.get(device.id)
                if existing == interval:
                    continue
                if existing is not None:
                    self._cancel(device.id)
                    logger.info(
                        "interval changed %ss -> %ss, rescheduling", existing, interval, extra={"device": device.name}
                    )

                first_run = now + timedelta(seconds=stagger * batch_index)
                batch_index += 1
                self._scheduler.add_job(
                    self.poll_device,
                    IntervalTrigger(seconds=interval, timezone=timezone.utc),
                    args=[device.id],
                    id=_device_job_id(device.id),
                    name=f"Poll {device.name}",
                    next_run_time=first_run,
                    max_instances=1,
                    coalesce=True,
                    replace_existing=True,
                )
                self._timers[device.id] = interval
                logger.info(
                    "scheduled monitoring every %ss, first poll at %s",
                    interval,
                    first_run.isoformat(),
                    extra={"device": device.name},
                )

    def _cancel(self, device_id: int) -> None:
        self._timers.pop(device_id, None)
        job = self._scheduler.get_job(_device_job_id(device_id))
        if job is not None:
            job.remove()

    def scheduled_intervals(self) -> dict[int, int]:
        with self._lock:
            return dict(self._timers)

    def next_run_times(self) -> dict[int, datetime]:
        """First pending run time of each device job."""

        times: dict[int, datetime] = {}
        for job in self._scheduler.get_jobs():
            if job.id.startswith(DEVICE_JOB_PREFIX) and job.next_run_time is not None:
                times[int(job.id[len(DEVICE_JOB_PREFIX):])] = job.next_run_time
        return times

    # ------------------------------------------------------------------- polls

    def poll_device(self, device_id: int) -> MonitoringResult | None:
        """Scheduled entry point: poll one device unless the scheduler stopped."""

        if not self._running:
            return None
        return self._poll(device_id, require_running=True)

    def trigger(self, device_id: int) -> MonitoringResult:
        """Poll a device immediately, outside its regular schedule."""

        result = self._poll(device_id, require_running=False)
        if result is None:
            raise DeviceNotFoundError(device_id)
        return result

    def trigger_all(self) -> dict[int, MonitoringResult]:
        """Poll every enabled device once, at most ``max_concurrent`` at a time.

        Devices deleted while the batch runs are left out of the result.
        """

        device_ids = [device.id for device in self._store.list_devices()]
        results: dict[int, MonitoringResult] = {}
        if not device_ids:
            return results

        logger.info("manual poll of %d device(s) started", len(device_ids))
        workers = min(self._settings.max_concurrent, len(device_ids))
        with futures.ThreadPoolExecutor(max_workers=workers, thread_name_prefix="linkwatch-poll") as pool:
            pending = {pool.submit(self._poll, device_id, False): device_id for device_id in device_ids}
            for future in futures.as_completed(pending):
                result = future.result()
                if result is not None:
                    results[pending[future]] = result
        failed = sum(1 for result in results.values() if not result.success)
        logger.info("manual poll finished devices=%d failed=%d", len(results), failed)
        return results

    def _poll(self, device_id: int, require_running: bool) -> MonitoringResult | None:
        with self._slots:
            if require_running and not self._running:
                return None
            with self._counter_lock:
                self._in_flight += 1
            try:
                device, result = self._load_and_extract(device_id)
            finally:
                with self._counter_lock:
                    self._in_flight -= 1

        if device is None:
            return None
        self._forward(device, result)
        return result

    def _load_and_extract(self, device_id: int) -> tuple[DeviceDescriptor | None, MonitoringResult]:
        try:
            device = self._store.get_device_with_credentials(device_id)
        except CredentialError as exc:
            device = self._store.get_device(device_id)
            if device is not None:
                logger.error("cannot decrypt credentials error=%s", exc, extra={"device": device.name})
            return device, MonitoringResult.failed(str(exc))

        if device is None:
            logger.info("device id=%d no longer exists, skipping monitoring", device_id)
            return None, MonitoringResult.failed("Device not found")

        logger.debug("monitoring device address=%s", device.address, extra={"device": device.name})
        return device, self.poll_with_retry(device)

    def poll_with_retry(self, device: DeviceDescriptor) -> MonitoringResult:
        """Run the extractor up to ``retry_attempts`` times.

        Attempts are strictly sequential and separated by ``retry_delay``.
        """

        log_extra = {"device": device.name}
        max_attempts = max(1, device.polling.retry_attempts)
        last_error: str | None = None

        for attempt in range(1, max_attempts + 1):
            try:
                result = self._extractor.extract(device)
            except Exception as exc:
                logger.exception("extractor raised on attempt %d/%d", attempt, max_attempts, extra=log_extra)
                result = MonitoringResult.failed(str(exc) or type(exc).__name__)

            if result.success:
                return result

            last_error = result.error or "Unknown error"
            logger.info("attempt %d/%d failed error=%s", attempt, max_attempts, last_error, extra=log_extra)
            if attempt < max_attempts:
                self._sleep(device.polling.retry_delay)

        return MonitoringResult.failed(last_error or "All retry attempts failed")

    def _forward(self, device: DeviceDescriptor, result: MonitoringResult) -> None:
        log_extra = {"device": device.name}
        self._store.update_cache(device.id, result.status, result.metrics if result.success else None)
        try:
            self._notifier.evaluate(device, result)
        except Exception:
            logger.exception("notification evaluation failed", extra=log_extra)
