# carwatch/services.py
"""Crowd-refresh pipeline: resolve -> ingest -> detect changes -> notify.

``SnapshotPipeline.process_snapshot`` is the single entry point for live
submissions and for scheduler-originated synthetic snapshots.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from . import crud
from .changes import ChangeEvent, detect_changes
from .db import Database
from .delivery import RealtimePublisher, vehicle_event
from .errors import ConcurrentUpdateError, VehicleNotFoundError
from .fingerprint import normalize_vin
from .ingest import observe, apply_observation, create_vehicle, record_snapshot
from .locks import KeyedLock, acquire_advisory
from .merging import merge_into
from .models import Vehicle, Snapshot, TriggerSource, SYSTEM_USER_ID
from .notifications import NotificationDispatcher
from .schemas import SnapshotPayload
from .utils import get_logger, retry

logger = get_logger("carwatch.services")

RETRYABLE = (IntegrityError, StaleDataError, ConcurrentUpdateError)


@dataclass
class IngestResult:
    vehicle: Vehicle
    snapshot: Snapshot
    is_new_vehicle: bool
    events: List[ChangeEvent] = field(default_factory=list)
    merged_vehicle_ids: List[str] = field(default_factory=list)


class SnapshotPipeline:
    def __init__(self, database: Database, dispatcher: NotificationDispatcher, publisher: RealtimePublisher,
                 locks: Optional[KeyedLock] = None, max_attempts: int = 3, retry_delay: float = 0.05,
                 auto_merge: bool = True, max_photo_urls: Optional[int] = 50):
        self.database = database
        self.dispatcher = dispatcher
        self.publisher = publisher
        self.locks = locks or KeyedLock()
        self.auto_merge = auto_merge
        self.max_photo_urls = max_photo_urls
        self._ingest = retry(RETRYABLE, tries=max_attempts, delay=retry_delay, backoff=2, logger=logger)(self._ingest_once)

    @classmethod
    def from_settings(cls, settings, database, dispatcher, publisher):
        return cls(
            database,
            dispatcher,
            publisher,
            max_attempts=settings.INGEST_MAX_ATTEMPTS,
            retry_delay=settings.INGEST_RETRY_DELAY_SECONDS,
            auto_merge=settings.AUTO_MERGE_ON_VIN,
            max_photo_urls=settings.MAX_PHOTO_URLS,
        )

    def process_snapshot(self, user_id: str, payload: SnapshotPayload, vehicle_id: Optional[str] = None,
                         trigger: TriggerSource = TriggerSource.EXTENSION_REFRESH,
                         expected_status: Optional[str] = None) -> Optional[IngestResult]:
        """Ingest one snapshot and fan out whatever changed.

        Store failures propagate to the caller. Notification and realtime
        failures never do. With ``expected_status`` set (pinned vehicles only),
        the snapshot is dropped and None returned if the vehicle's status has
        moved on by the time its row is locked.
        """
        result = self._ingest(user_id, payload, vehicle_id, trigger, expected_status)
        if result is None:
            return None

        # change records are committed at this point
        triggered_by = None if user_id == SYSTEM_USER_ID else user_id
        for event in result.events:
            try:
                self.dispatcher.dispatch(event)
            except Exception:
                logger.exception("Fan-out failed for %s %s", event.kind, event.change_id)
            self._emit(vehicle_event(event.vehicle_id, event.kind, event.previous_value, event.new_value,
                                     triggered_by))
        self._emit(vehicle_event(result.vehicle.id, "refresh", triggered_by_user_id=triggered_by))

        logger.info("Processed snapshot for vehicle %s (VIN: %s)", result.vehicle.id, result.vehicle.vin)
        return result

    def _ingest_once(self, user_id, payload, vehicle_id, trigger, expected_status=None) -> Optional[IngestResult]:
        vin = normalize_vin(payload.vin)
        obs = observe(payload, vin)
        with self.locks.hold(vin, payload.url):
            with self.database.session_scope() as db:
                acquire_advisory(db, vin, payload.url)
                target_id = vehicle_id
                if target_id is None:
                    found = crud.find_vehicle(db, vin, obs.fingerprint, obs.url)
                    target_id = found.id if found else None

                # held through commit: one writer at a time per vehicle
                with self.locks.hold(target_id):
                    result = self._apply(db, user_id, payload, obs, vin, vehicle_id, target_id, trigger,
                                         expected_status)
                    db.commit()
                return result

    def _apply(self, db, user_id, payload, obs, vin, vehicle_id, target_id, trigger, expected_status):
        merged = []
        vehicle = None
        if target_id is not None:
            vehicle = crud.lock_vehicle(db, target_id)
            if vehicle is None:
                if vehicle_id is not None:
                    raise VehicleNotFoundError(vehicle_id)
                raise ConcurrentUpdateError("Resolved vehicle disappeared before it could be locked")
            if expected_status is not None and vehicle.current_status != expected_status:
                logger.info("Vehicle %s is now %s, not %s; dropping snapshot",
                            vehicle.id, vehicle.current_status, expected_status)
                return None
            if vehicle_id is None and self.auto_merge and vin and vehicle.vin == vin:
                merged = self._absorb_url_duplicate(db, vehicle, obs.url)

        is_new = vehicle is None
        previous_price = None if is_new else vehicle.current_price
        previous_status = None if is_new else vehicle.current_status

        if is_new:
            vehicle = create_vehicle(db, obs, self.max_photo_urls)
        else:
            apply_observation(vehicle, obs, self.max_photo_urls)
            db.flush()

        snapshot = record_snapshot(db, vehicle, user_id, obs, payload)
        events = detect_changes(
            db, vehicle, previous_price, previous_status, is_new,
            None if user_id == SYSTEM_USER_ID else user_id, trigger,
        )
        return IngestResult(vehicle, snapshot, is_new, events, merged)

    def _absorb_url_duplicate(self, db, vehicle: Vehicle, url: str) -> List[str]:
        """A VIN just surfaced on a listing we knew VIN-less under another record: fold it in."""
        duplicate = crud.find_vinless_by_url(db, url, exclude_id=vehicle.id)
        if duplicate is None:
            return []
        duplicate = crud.lock_vehicle(db, duplicate.id)
        if duplicate is None:
            return []
        merge_into(db, vehicle, duplicate)
        return [duplicate.id]

    def _emit(self, event):
        try:
            self.publisher.publish(event)
        except Exception as e:
            logger.warning("Realtime publish failed for event=%s: %s", event["type"], e)
