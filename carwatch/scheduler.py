# carwatch/scheduler.py
"""Staleness reconciliation: daily HEAD checks of listings nobody has refreshed."""
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta
from typing import List, Optional

from apscheduler.schedulers.background import BackgroundScheduler

from . import crud
from .db import Database
from .liveness import LivenessProbe, ProbeResult
from .models import HeadCheck, ListingStatus, TriggerSource, Vehicle, SYSTEM_USER_ID
from .schemas import SnapshotPayload
from .services import SnapshotPipeline
from .utils import get_logger, utcnow

logger = get_logger("carwatch.scheduler")

JOB_ID = "head_check_job"


class HeadCheckScheduler:
    def __init__(self, database: Database, pipeline: SnapshotPipeline, probe: LivenessProbe,
                 stale_after_days: int = 7, batch_size: int = 100, concurrency: int = 5, run_hour: int = 3):
        self.database = database
        self.pipeline = pipeline
        self.probe = probe
        self.stale_after = timedelta(days=stale_after_days)
        self.batch_size = batch_size
        self.run_hour = run_hour
        self._executor = ThreadPoolExecutor(max_workers=concurrency, thread_name_prefix="head-check")
        self._scheduler: Optional[BackgroundScheduler] = None
        self._lock = threading.Lock()
        self._last_result: Optional[dict] = None

    @classmethod
    def from_settings(cls, settings, database, pipeline, probe):
        return cls(
            database,
            pipeline,
            probe,
            stale_after_days=settings.STALE_AFTER_DAYS,
            batch_size=settings.HEAD_CHECK_BATCH_SIZE,
            concurrency=settings.HEAD_CHECK_CONCURRENCY,
            run_hour=settings.HEAD_CHECK_HOUR,
        )

    def select_stale(self, now=None) -> List[tuple]:
        """(vehicle id, first known url) for stale active vehicles, oldest first."""
        cutoff = (now or utcnow()) - self.stale_after
        with self.database.session_scope() as db:
            vehicles = crud.select_stale_vehicles(db, cutoff, self.batch_size)
            return [(v.id, v.source_urls[0]) for v in vehicles if v.source_urls]

    def schedule_head_checks(self, now=None) -> list:
        """Enqueue one probe per stale vehicle; returns the futures."""
        scheduled_at = now or utcnow()
        targets = self.select_stale(scheduled_at)
        futures = [
            self._executor.submit(self.run_head_check, vehicle_id, url, scheduled_at)
            for vehicle_id, url in targets
        ]
        self._last_result = {"scheduled": len(futures), "at": scheduled_at.isoformat()}
        logger.info("Scheduled %d HEAD checks", len(futures))
        return futures

    def run_head_check(self, vehicle_id: str, url: str, scheduled_at=None) -> ProbeResult:
        result = self.probe.check(vehicle_id, url)
        with self.database.session_scope() as db:
            vehicle = db.get(Vehicle, vehicle_id)
            if vehicle is None:
                # merged away while the probe was in flight
                logger.info("Vehicle %s no longer exists, dropping HEAD check result", vehicle_id)
                return result
            db.add(HeadCheck(
                vehicle_id=vehicle_id,
                url=url,
                scheduled_at=scheduled_at or utcnow(),
                executed_at=utcnow(),
                http_status=result.http_status,
                is_alive=result.is_alive,
                redirect_url=result.redirect_url,
                attempts=result.attempts,
            ))
            still_active = vehicle.current_status == ListingStatus.ACTIVE.value
            source = (vehicle.sources or ["unknown"])[0]

        if result.is_dead and still_active:
            logger.info("Listing %s for vehicle %s is gone, marking removed", url, vehicle_id)
            payload = SnapshotPayload(url=url, source=source, status=ListingStatus.REMOVED.value)
            # a user may have refreshed the listing since it was read above
            self.pipeline.process_snapshot(
                SYSTEM_USER_ID, payload, vehicle_id=vehicle_id, trigger=TriggerSource.HEAD_CHECK,
                expected_status=ListingStatus.ACTIVE.value,
            )
        return result

    def _job(self):
        """APScheduler job wrapper."""
        logger.info("Running daily HEAD check scheduler")
        try:
            self.schedule_head_checks()
        except Exception:
            logger.exception("HEAD check scheduler failed")

    def start(self):
        with self._lock:
            if self._scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = BackgroundScheduler()
            self._scheduler.add_job(self._job, "cron", hour=self.run_hour, id=JOB_ID, replace_existing=True)
            self._scheduler.start()
            logger.info("HEAD check cron job scheduled (daily at %02d:00)", self.run_hour)

    def stop(self):
        with self._lock:
            if self._scheduler and self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None
            logger.info("Scheduler stopped")

    def trigger_now(self) -> dict:
        """Run a scheduling pass in the background right away."""
        thread = threading.Thread(target=self._job, daemon=True)
        thread.start()
        return {"status": "triggered"}

    def get_status(self) -> dict:
        running = self._scheduler is not None and self._scheduler.running
        status = {"running": running, "last_result": self._last_result}
        if running:
            job = self._scheduler.get_job(JOB_ID)
            if job and job.next_run_time:
                status["next_run"] = job.next_run_time.isoformat()
        return status

    def shutdown(self):
        self.stop()
        self._executor.shutdown(wait=False)
