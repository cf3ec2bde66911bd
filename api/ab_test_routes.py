from fastapi import APIRouter, status
from sqlalchemy.orm import Session

from models.experiments import AssignmentCreate, AssignmentRecordResponse
from models.results import ExperimentResultsSummary
from services import assignment_records, results
from api.depends import CLIENT_AUTH, DB_DEPENDENCY

import logging

logger = logging.getLogger(__name__)

ab_test_router = APIRouter(
    prefix="/api/ab-tests",
    tags=["ab-tests"],
    dependencies=[CLIENT_AUTH], # CLIENT_AUTH is applied to all routes in this router
)


# POST /api/ab-tests/assignments (first write wins)
@ab_test_router.post(
    "/assignments",
    response_model=AssignmentRecordResponse,
    status_code=status.HTTP_201_CREATED
)
def record_assignment_route(
    assignment_data: AssignmentCreate,
    db: Session = DB_DEPENDENCY
):
    """Record the variant a client assigned. Returns the stored record, which may predate this call."""
    return assignment_records.record_assignment(db, assignment_data)


# GET /api/ab-tests/{test_id}/results
@ab_test_router.get("/{test_id}/results", response_model=ExperimentResultsSummary)
def get_test_results_route(
    test_id: str,
    db: Session = DB_DEPENDENCY
):
    """Aggregate per-variant results across all sessions."""
    return results.calculate_test_results(db=db, test_id=test_id)
