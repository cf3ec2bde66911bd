from fastapi import APIRouter, status
from fastapi.responses import JSONResponse, Response
from sqlalchemy.orm import Session
from datetime import datetime, timedelta, timezone
from typing import Literal
from models.events import AnalyticsBatch, ImmediateEvent, IngestResponse
from models.results import ConversionReport, ConversionReportRequest, ExportRequest
from services import results
from api.depends import CLIENT_AUTH, DB_DEPENDENCY
from config import config # initialize logging

# Import the Celery tasks
from celery_tasks.analytics_tasks import ingest_analytics_batch, ingest_immediate_event
import csv
import io
import logging

logger = logging.getLogger(__name__)

analytics_router = APIRouter(
    prefix="/api/analytics",
    tags=["analytics"],
    dependencies=[CLIENT_AUTH]
)

# POST /api/analytics/events
@analytics_router.post("/events", response_model=IngestResponse, status_code=status.HTTP_202_ACCEPTED)
def ingest_events_route(batch: AnalyticsBatch):
    """
    Accept a batch of analytics events from a session.
    The batch goes straight to a celery worker and the call returns immediately;
    the worker inserts the rows.
    """
    if not batch.events:
        return IngestResponse(status="empty", accepted=0)

    # Celery requires simple serializable types
    task = ingest_analytics_batch.delay(batch.model_dump(mode="json"))
    logger.debug("ingest_analytics_batch task: %s (%d events)", task.id, len(batch.events))
    return IngestResponse(status="accepted", task_id=task.id, accepted=len(batch.events))

def _ingest_immediate(kind: Literal["conversion", "error"], event: ImmediateEvent) -> IngestResponse:
    task = ingest_immediate_event.delay(kind, event.model_dump(mode="json"))
    logger.debug("ingest_immediate_event task: %s (%s)", task.id, kind)
    return IngestResponse(status="accepted", task_id=task.id, accepted=1)

# POST /api/analytics/conversion
@analytics_router.post("/conversion", response_model=IngestResponse, status_code=status.HTTP_202_ACCEPTED)
def ingest_conversion_route(event: ImmediateEvent):
    """High-priority goal conversion signal."""
    return _ingest_immediate("conversion", event)

# POST /api/analytics/error
@analytics_router.post("/error", response_model=IngestResponse, status_code=status.HTTP_202_ACCEPTED)
def ingest_error_route(event: ImmediateEvent):
    """High-priority client error signal."""
    return _ingest_immediate("error", event)

# POST /api/analytics/conversion-report
@analytics_router.post("/conversion-report", response_model=ConversionReport)
def conversion_report_route(
    request: ConversionReportRequest,
    db: Session = DB_DEPENDENCY
):
    """Goal conversions against sessions, optionally for a goal and a time window."""
    start_datetime = request.start_date
    # last_day overrides start_date
    if request.last_day:
        start_datetime = datetime.now(timezone.utc) - timedelta(days=request.last_day)

    return results.conversion_report(db=db, goal_id=request.goal_id, start_datetime=start_datetime)

# POST /api/analytics/export
@analytics_router.post("/export")
def export_route(
    request: ExportRequest,
    db: Session = DB_DEPENDENCY
):
    """Export stored events as JSON or CSV."""
    rows = results.export_events(db, request)

    if request.format == "json":
        return JSONResponse(content={"events": rows, "count": len(rows)}, status_code=status.HTTP_200_OK)

    buffer = io.StringIO()
    fieldnames = list(rows[0].keys()) if rows else ["id", "session_id", "event_name", "timestamp"]
    writer = csv.DictWriter(buffer, fieldnames=fieldnames)
    writer.writeheader()
    writer.writerows(rows)
    filename = f"analytics-export-{int(datetime.now(timezone.utc).timestamp() * 1000)}.csv"
    return Response(
        content=buffer.getvalue(),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )
