from sqlalchemy.orm import Session
from sqlalchemy import func
from datetime import datetime, timezone
from fastapi import HTTPException
from models.results import ConversionReport, ExperimentResultsSummary, ExportRequest, VariantResult
from data.database import ABTestAssignmentRecord, AnalyticsEventRecord, to_naive_utc
import math
import logging

logger = logging.getLogger(__name__)

IMPRESSION_EVENT = "ab_test_impression"
CONVERSION_EVENT = "ab_test_conversion"
GOAL_CONVERSION_EVENT = "conversion"
SIGNIFICANCE_LEVEL = 0.05


def two_proportion_p_value(control_conversions: int, control_samples: int,
                           variant_conversions: int, variant_samples: int) -> float | None:
    """Two-sided p-value of a pooled two-proportion z-test, None when it cannot be computed."""
    if control_samples <= 0 or variant_samples <= 0:
        return None
    control_rate = control_conversions / control_samples
    variant_rate = variant_conversions / variant_samples
    pooled = (control_conversions + variant_conversions) / (control_samples + variant_samples)
    standard_error = math.sqrt(pooled * (1 - pooled) * (1 / control_samples + 1 / variant_samples))
    if standard_error == 0:
        return None
    z_score = abs(variant_rate - control_rate) / standard_error
    normal_cdf = 0.5 * (1 + math.erf(z_score / math.sqrt(2)))
    return 2 * (1 - normal_cdf)


def _rate(conversions: int, impressions: int) -> float:
    if impressions <= 0:
        return 0.0
    return round(min(1.0, conversions / impressions) * 100, 2)


def calculate_test_results(db: Session, test_id: str) -> ExperimentResultsSummary:
    """
    Aggregates assignments, impressions and conversions per variant for one test,
    with a significance test of every variant against the control.
    """

    # 1. Assignments (first write per subject)
    assignment_counts = db.query(
        ABTestAssignmentRecord.variant_id,
        func.count(ABTestAssignmentRecord.id).label('total_assignments')
    ).filter(
        ABTestAssignmentRecord.test_id == test_id
    ).group_by(ABTestAssignmentRecord.variant_id).all()

    # 2. Impressions and conversions reported by sessions
    engagement_counts = db.query(
        AnalyticsEventRecord.variant_id,
        AnalyticsEventRecord.event_name,
        func.count(AnalyticsEventRecord.id).label('event_count')
    ).filter(
        AnalyticsEventRecord.test_id == test_id,
        AnalyticsEventRecord.event_name.in_([IMPRESSION_EVENT, CONVERSION_EVENT])
    ).group_by(AnalyticsEventRecord.variant_id, AnalyticsEventRecord.event_name).all()

    if not assignment_counts and not engagement_counts:
        raise HTTPException(status_code=404, detail=f"No data recorded for test {test_id}.")

    # 3. Aggregate
    counts: dict[str, dict[str, int]] = {}
    for variant_id, total in assignment_counts:
        counts.setdefault(variant_id, {})["assignments"] = total
    for variant_id, event_name, total in engagement_counts:
        if variant_id is None:
            continue
        counts.setdefault(variant_id, {})[event_name] = total

    control = db.query(ABTestAssignmentRecord.variant_id).filter(
        ABTestAssignmentRecord.test_id == test_id,
        ABTestAssignmentRecord.is_control.is_(True)
    ).first()
    control_id = control[0] if control else ("control" if "control" in counts else None)
    logger.debug("results for %s: control=%s counts=%s", test_id, control_id, counts)

    results_map: dict[str, VariantResult] = {}
    for variant_id, c in counts.items():
        impressions = c.get(IMPRESSION_EVENT, 0)
        conversions = c.get(CONVERSION_EVENT, 0)
        results_map[variant_id] = VariantResult(
            total_assignments=c.get("assignments", 0),
            impressions=impressions,
            conversion_count=conversions,
            conversion_rate=_rate(conversions, impressions),
        )

    # 4. Significance against control and winner
    winner = None
    control_result = results_map.get(control_id) if control_id else None
    if control_result is not None:
        best_rate = control_result.conversion_rate
        for variant_id, result in results_map.items():
            if variant_id == control_id:
                continue
            p_value = two_proportion_p_value(
                min(control_result.conversion_count, control_result.impressions), control_result.impressions,
                min(result.conversion_count, result.impressions), result.impressions,
            )
            result.p_value = p_value
            result.significant = p_value is not None and p_value < SIGNIFICANCE_LEVEL
            if result.significant and result.conversion_rate > best_rate:
                best_rate = result.conversion_rate
                winner = variant_id

    return ExperimentResultsSummary(
        test_id=test_id,
        report_generated_at=datetime.now(timezone.utc),
        control_variant_id=control_id,
        winner=winner,
        variant_data=results_map
    )


def conversion_report(db: Session, goal_id: str | None, start_datetime: datetime | None) -> ConversionReport:
    """Goal conversions against distinct sessions, optionally since a start time."""
    start = to_naive_utc(start_datetime)

    session_query = db.query(func.count(func.distinct(AnalyticsEventRecord.session_id))).filter(
        AnalyticsEventRecord.event_name.notlike("immediate_%")
    )
    conversion_query = db.query(
        AnalyticsEventRecord.goal_id,
        func.count(AnalyticsEventRecord.id).label('conversion_count')
    ).filter(AnalyticsEventRecord.event_name == GOAL_CONVERSION_EVENT)

    if start:
        logger.debug("conversion report from start_datetime %s", start)
        session_query = session_query.filter(AnalyticsEventRecord.timestamp >= start)
        conversion_query = conversion_query.filter(AnalyticsEventRecord.timestamp >= start)
    if goal_id:
        conversion_query = conversion_query.filter(AnalyticsEventRecord.goal_id == goal_id)

    sessions = session_query.scalar() or 0
    by_goal = {goal or "unknown": count for goal, count in conversion_query.group_by(AnalyticsEventRecord.goal_id).all()}
    conversions = sum(by_goal.values())

    return ConversionReport(
        report_generated_at=datetime.now(timezone.utc),
        start_date=start_datetime,
        sessions=sessions,
        conversions=conversions,
        conversion_rate=round(conversions / sessions * 100, 2) if sessions else 0.0,
        conversions_by_goal=by_goal,
    )


def export_events(db: Session, request: ExportRequest) -> list[dict]:
    query = db.query(AnalyticsEventRecord)
    if request.event_name:
        query = query.filter(AnalyticsEventRecord.event_name == request.event_name)
    if request.session_id:
        query = query.filter(AnalyticsEventRecord.session_id == request.session_id)
    if request.start_date:
        query = query.filter(AnalyticsEventRecord.timestamp >= to_naive_utc(request.start_date))

    rows = query.order_by(AnalyticsEventRecord.timestamp, AnalyticsEventRecord.id).limit(request.limit).all()
    logger.info("exporting %d analytics events", len(rows))
    return [row.to_dict() for row in rows]
