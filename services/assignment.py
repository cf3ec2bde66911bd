"""Variant assignment for client-side experiments.

With a subject key (user id) the choice is a pure function of
``(test_id, subject_key)`` and the variant weights, so the same visitor
lands in the same variant on every page load without asking a server.
Without one, the choice is a weighted random draw made once per session.
"""
import logging
import random
from datetime import datetime, timezone

from models.experiments import Assignment, Experiment, StoredAssignment, Variant
from services.cache import StorageClient, now_ms

logger = logging.getLogger(__name__)

CONTROL_VARIANT_ID = "control"
HASH_BUCKETS = 100


def string_hash(value: str) -> int:
    """31-multiplier rolling hash over UTF-16 code units, wrapped to signed 32 bits, absolute value."""
    data = value.encode("utf-16-le")
    h = 0
    for i in range(0, len(data), 2):
        code = data[i] | (data[i + 1] << 8)
        h = (((h << 5) - h) + code) & 0xFFFFFFFF
    if h & 0x80000000:
        h -= 0x100000000
    return abs(h)


def _pick_by_weight(variants: list[Variant], threshold: float) -> Variant | None:
    """First variant whose cumulative weight meets or exceeds the threshold. Zero weights never win."""
    cumulative = 0.0
    for variant in variants:
        if variant.weight <= 0:
            continue
        cumulative += variant.weight
        if cumulative >= threshold:
            return variant
    return None


def assign_variant(experiment: Experiment, subject_key: str | None = None, rng: random.Random | None = None) -> Variant:
    """Choose a variant; deterministic when a subject key is given, weighted random otherwise."""
    total_weight = experiment.total_weight
    selected = None

    if total_weight > 0:
        if subject_key is not None:
            bucket = string_hash(f"{experiment.test_id}-{subject_key}") % HASH_BUCKETS
            threshold = bucket / HASH_BUCKETS * total_weight
        else:
            threshold = (rng or random).random() * total_weight
        selected = _pick_by_weight(experiment.variants, threshold)

    if selected is None:
        logger.warning("experiment %s has no usable weights (total %s), falling back to first variant",
                       experiment.test_id, total_weight)
        selected = experiment.variants[0]
    return selected


def is_control_variant(experiment: Experiment, variant: Variant) -> bool:
    return variant.id == CONTROL_VARIANT_ID or variant.id == experiment.variants[0].id


class VariantAssigner:
    """Per-session assignment map backed by a persisted store.

    The first ``get_variant`` for a test id wins for the rest of the session.
    Experiments are copied on first sight, so variant counters belong to this
    session only.
    """

    def __init__(self, store: StorageClient | None = None, rng: random.Random | None = None,
                 logger: logging.Logger | None = None):
        self.store = store
        self.rng = rng or random.Random()
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self._assignments: dict[str, Assignment] = {}
        self._experiments: dict[str, Experiment] = {}

    def get_variant(self, experiment: Experiment, subject_key: str | None = None) -> Assignment | None:
        if not experiment.enabled:
            self.logger.debug("experiment %s disabled, no assignment", experiment.test_id)
            return None
        if not experiment.variants:
            self.logger.debug("experiment %s has no variants, no assignment", experiment.test_id)
            return None

        existing = self._assignments.get(experiment.test_id)
        if existing is not None:
            return existing

        tracked = experiment.model_copy(deep=True)
        assignment = self._restore(tracked)
        if assignment is None:
            variant = assign_variant(tracked, subject_key, rng=self.rng)
            assignment = self._build(tracked, variant, datetime.now(timezone.utc))
            self._persist(assignment)
            self.logger.info("assigned %s to variant %s (control=%s)",
                             assignment.test_id, assignment.variant_id, assignment.is_control)

        self._experiments[tracked.test_id] = tracked
        self._assignments[tracked.test_id] = assignment
        return assignment

    def _build(self, experiment: Experiment, variant: Variant, assigned_at: datetime) -> Assignment:
        return Assignment(
            test_id=experiment.test_id,
            variant_id=variant.id,
            variant=variant,
            is_control=is_control_variant(experiment, variant),
            assigned_at=assigned_at,
        )

    def _restore(self, experiment: Experiment) -> Assignment | None:
        if self.store is None:
            return None
        record = self.store.get_assignment(experiment.test_id)
        if record is None:
            return None
        variant = experiment.find_variant(record.variant_id)
        if variant is None:
            self.logger.info("stored variant %s no longer exists in %s, reassigning",
                             record.variant_id, experiment.test_id)
            return None
        assigned_at = datetime.fromtimestamp(record.assigned_at / 1000, tz=timezone.utc)
        self.logger.debug("restored assignment %s -> %s", experiment.test_id, variant.id)
        return self._build(experiment, variant, assigned_at)

    def _persist(self, assignment: Assignment) -> None:
        if self.store is None:
            return
        record = StoredAssignment(
            variant_id=assignment.variant_id,
            assigned_at=int(assignment.assigned_at.timestamp() * 1000),
        )
        try:
            self.store.save_assignment(assignment.test_id, record, now=now_ms())
        except Exception:
            self.logger.warning("could not persist assignment for %s, keeping it in memory",
                                assignment.test_id, exc_info=True)

    def get_assignment(self, test_id: str) -> Assignment | None:
        return self._assignments.get(test_id)

    def get_experiment(self, test_id: str) -> Experiment | None:
        return self._experiments.get(test_id)

    def active_assignments(self) -> list[Assignment]:
        return list(self._assignments.values())

    def clear(self, test_id: str | None = None) -> None:
        """Forget assignments, in memory and in the store, for one test or all of them."""
        if test_id is None:
            self._assignments.clear()
            self._experiments.clear()
        else:
            self._assignments.pop(test_id, None)
            self._experiments.pop(test_id, None)

        if self.store is not None:
            try:
                self.store.remove_assignments(test_id)
            except Exception:
                self.logger.warning("could not clear stored assignments", exc_info=True)
