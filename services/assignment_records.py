from sqlalchemy.orm import Session
from sqlalchemy.exc import IntegrityError
from data.database import ABTestAssignmentRecord, to_naive_utc
from models.experiments import AssignmentCreate
from datetime import datetime, timezone
import logging
from fastapi import HTTPException

logger = logging.getLogger(__name__)

# Define the maximum number of times to retry the transaction
MAX_RETRIES = 3

def get_existing_record(db: Session, test_id: str, subject_key: str):
    return db.query(ABTestAssignmentRecord).filter(
        ABTestAssignmentRecord.test_id == test_id,
        ABTestAssignmentRecord.subject_key == subject_key
    ).first()

def record_assignment(db: Session, data: AssignmentCreate):
    """
    Stores the assignment a client reported for (test_id, subject_key), or returns
    the one already stored. Clients decide variants locally and may race across
    tabs; the unique constraint keeps the first write and later ones read it back.
    """
    for attempt in range(MAX_RETRIES):

        existing = get_existing_record(db, data.test_id, data.subject_key)
        if existing:
            if existing.variant_id != data.variant_id:
                logger.warning("Subject %s reported variant %s for %s but %s is already recorded.",
                               data.subject_key, data.variant_id, data.test_id, existing.variant_id)
            return existing

        try:
            record = ABTestAssignmentRecord(
                test_id=data.test_id,
                variant_id=data.variant_id,
                subject_key=data.subject_key,
                session_id=data.session_id,
                is_control=data.is_control,
                assigned_at=to_naive_utc(data.assigned_at or datetime.now(timezone.utc)),
            )
            db.add(record)
            db.commit() # This is where the database constraint check happens
            db.refresh(record)

            logger.info("Recorded assignment of %s to %s (test %s) on attempt %d.",
                        data.subject_key, data.variant_id, data.test_id, attempt + 1)
            return record

        except IntegrityError:
            # A concurrent insert won; the next pass reads it back
            db.rollback()
            logger.warning("RACE DETECTED: IntegrityError on subject %s (test %s). Retrying (Attempt %d/%d)...",
                           data.subject_key, data.test_id, attempt + 2, MAX_RETRIES)

        except Exception:
            db.rollback()
            logger.exception("An unexpected error occurred while recording assignment for %s.", data.subject_key)
            raise HTTPException(status_code=400, detail=f"Test {data.test_id} unable to record assignment.")

    logger.warning("Failed to record assignment for subject %s after %d attempts.", data.subject_key, MAX_RETRIES)
    raise HTTPException(status_code=400, detail=f"Test {data.test_id} unable to record assignment.")
