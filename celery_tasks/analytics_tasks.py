from celery_config import celery_app
from data.database import AnalyticsEventRecord, SessionLocal, to_naive_utc
from models.events import AnalyticsBatch, ImmediateEvent
from models.experiments import AssignmentCreate
from services import assignment_records
from fastapi import HTTPException
from typing import Any
from config import config # initialize logging
import json
import logging

logger = logging.getLogger(__name__)

ASSIGNMENT_EVENT = "ab_test_assignment"

def get_db_session():
    """Provides a fresh database session for asynchronous task execution."""
    try:
        db = SessionLocal()
        return db
    except Exception as e:
        logger.error("Failed to create database session in Celery task: %s", e)
        return None

def to_record(session_id: str, event) -> AnalyticsEventRecord:
    """Flatten an AnalyticsEvent into a row; experiment and goal ids are lifted out of custom data."""
    custom = event.custom_data or {}
    return AnalyticsEventRecord(
        session_id=session_id,
        user_id=custom.get("user_id"),
        event_name=event.event_name,
        audience=event.audience,
        section=event.section,
        action=event.action,
        value=event.value,
        test_id=custom.get("test_id"),
        variant_id=custom.get("variant_id"),
        goal_id=custom.get("goal_id") or custom.get("goal"),
        timestamp=to_naive_utc(event.timestamp),
        custom_data_json=json.dumps(custom, default=str),
    )

def assignment_from_event(session_id: str, event) -> AssignmentCreate | None:
    """The server-side assignment record carried by an ab_test_assignment event, keyed by user id or session id."""
    custom = event.custom_data or {}
    if event.event_name != ASSIGNMENT_EVENT or not custom.get("test_id") or not custom.get("variant_id"):
        return None
    return AssignmentCreate(
        test_id=custom["test_id"],
        variant_id=custom["variant_id"],
        subject_key=custom.get("user_id") or session_id,
        session_id=session_id,
        is_control=bool(custom.get("is_control")),
        assigned_at=custom.get("assigned_at"),
    )

def _record_assignments(assignments: list[AssignmentCreate]) -> int:
    db = get_db_session()
    if not db:
        logger.error("No database session, %d assignments not recorded.", len(assignments))
        return 0
    recorded = 0
    try:
        for data in assignments:
            try:
                assignment_records.record_assignment(db, data)
                recorded += 1
            except HTTPException as e:
                logger.warning("Assignment %s/%s not recorded: %s", data.test_id, data.subject_key, e.detail)
    finally:
        db.close()
    return recorded

def _insert(task, records: list[AnalyticsEventRecord]) -> int:
    db = None
    try:
        db = get_db_session()
        if not db:
            # Raise an exception to potentially trigger Celery retry
            raise ConnectionError("Could not establish database session.")

        db.add_all(records)
        db.commit()
        return len(records)
    except ConnectionError as exc:
        logger.error("Database connection failed in Celery task. Retrying...")
        raise task.retry(exc=exc)
    except Exception as exc:
        logger.error("Failed to insert %d analytics events: %s", len(records), exc)
        if db:
            db.rollback()
        raise  # re-raise so Celery marks FAILURE
    finally:
        if db:
            db.close()

@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def ingest_analytics_batch(self, batch_data: dict[str, Any]):
    """
    Inserts a batch of analytics events posted by a session.
    The HTTP route only validates and enqueues; rows are written here.
    """
    batch = AnalyticsBatch.model_validate(batch_data)
    records = [to_record(batch.session_id, event) for event in batch.events]
    inserted = _insert(self, records)
    assignments = [a for a in (assignment_from_event(batch.session_id, e) for e in batch.events) if a is not None]
    if assignments:
        _record_assignments(assignments)
    logger.info("Task %s[%s]. Inserted %d events for session %s.",
                self.name, self.request.id, inserted, batch.session_id)
    return inserted

@celery_app.task(bind=True, max_retries=3, default_retry_delay=30)
def ingest_immediate_event(self, kind: str, event_data: dict[str, Any]):
    """
    Stores a high-priority conversion/error signal as 'immediate_<kind>'.
    The same event also arrives in a regular batch, so reports never count these rows.
    """
    event = ImmediateEvent.model_validate(event_data)
    custom = event.model_dump(mode="json", exclude_none=True)
    record = AnalyticsEventRecord(
        session_id=event.session_id,
        user_id=event.user_id,
        event_name=f"immediate_{kind}",
        audience=event.audience,
        action=kind,
        value=event.value,
        goal_id=event.goal_id,
        timestamp=to_naive_utc(event.timestamp),
        custom_data_json=json.dumps(custom, default=str),
    )
    _insert(self, [record])
    logger.info("Task %s[%s]. Stored immediate %s for session %s.",
                self.name, self.request.id, kind, event.session_id)
