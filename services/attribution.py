import logging
from typing import Any, Callable

from models.events import EngagementRecord, EngagementType
from models.results import SessionTestResults, VariantStats
from services.assignment import VariantAssigner

logger = logging.getLogger(__name__)

# UI action -> conversion goal id
GOAL_MAP = {
    "demo": "demo_request",
    "trial": "trial_signup",
    "register": "registration",
    "contact": "contact_sales",
    "calculator-complete": "calculator_completion",
}


def goal_for_action(action: str | None) -> str | None:
    if not action:
        return None
    return GOAL_MAP.get(action)


class ConversionAttribution:
    """Impressions and conversions recorded against the session's active assignments.

    Counters live on the session's copy of each variant so reads see this
    session's own writes without a round trip. Records are append-only and
    handed to ``on_record`` (the session's analytics queue) when set.
    """

    def __init__(self, assigner: VariantAssigner,
                 on_record: Callable[[EngagementRecord], None] | None = None,
                 logger: logging.Logger | None = None):
        self.assigner = assigner
        self.on_record = on_record
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.records: list[EngagementRecord] = []

    def _append(self, record: EngagementRecord) -> None:
        self.records.append(record)
        if self.on_record is not None:
            try:
                self.on_record(record)
            except Exception:
                self.logger.warning("engagement listener failed for %s/%s",
                                    record.test_id, record.variant_id, exc_info=True)

    def _active_variant(self, test_id: str, variant_id: str):
        if self.assigner.get_assignment(test_id) is None:
            self.logger.debug("no active assignment for %s, counters untouched", test_id)
            return None
        experiment = self.assigner.get_experiment(test_id)
        variant = experiment.find_variant(variant_id) if experiment else None
        if variant is None:
            self.logger.debug("variant %s is not part of %s, counters untouched", variant_id, test_id)
        return variant

    def track_impression(self, test_id: str, variant_id: str, context: dict[str, Any] | None = None) -> None:
        self._append(EngagementRecord(
            test_id=test_id,
            variant_id=variant_id,
            event_type=EngagementType.IMPRESSION,
            context=dict(context or {}),
        ))
        variant = self._active_variant(test_id, variant_id)
        if variant is not None:
            variant.impressions += 1

    def track_conversion(self, test_id: str, variant_id: str, conversion_data: dict[str, Any] | None = None) -> None:
        self._append(EngagementRecord(
            test_id=test_id,
            variant_id=variant_id,
            event_type=EngagementType.CONVERSION,
            context=dict(conversion_data or {}),
        ))
        variant = self._active_variant(test_id, variant_id)
        if variant is None:
            return
        variant.conversions += 1
        if variant.impressions > 0:
            # conversions are not required to follow an impression, cap the ratio
            variant.conversion_rate = min(1.0, variant.conversions / variant.impressions)
        self.logger.debug("conversion on %s/%s (%d/%d)", test_id, variant_id,
                          variant.conversions, variant.impressions)

    def attribute_action(self, action: str | None, context: dict[str, Any] | None = None) -> int:
        """Record a goal conversion for every active assignment. Returns how many were recorded.

        One action may count against several concurrently running experiments.
        """
        goal = goal_for_action(action)
        if goal is None:
            return 0

        count = 0
        for assignment in self.assigner.active_assignments():
            data = dict(context or {})
            data.update({"goal": goal, "action": action})
            self.track_conversion(assignment.test_id, assignment.variant_id, data)
            count += 1
        return count

    def get_test_results(self, test_id: str) -> SessionTestResults | None:
        experiment = self.assigner.get_experiment(test_id)
        if experiment is None:
            return None
        assignment = self.assigner.get_assignment(test_id)
        return SessionTestResults(
            test_id=test_id,
            assigned_variant_id=assignment.variant_id if assignment else None,
            variants={
                v.id: VariantStats(impressions=v.impressions, conversions=v.conversions,
                                   conversion_rate=v.conversion_rate)
                for v in experiment.variants
            },
        )
