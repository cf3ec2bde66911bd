"""Session-level aggregation of page behavior, experiment assignment and attribution.

One ``ExperimentSession`` is created per page/visitor session and handed to
whatever renders the page. It owns the session identity, queues analytics
events and flushes them to a sink, and turns CTA clicks into goal
conversions for every experiment the visitor is enrolled in.

None of the tracking calls raise. Storage and transport failures end up in
the session's logger and the page carries on.
"""
import functools
import logging
import random
import threading
import time
from enum import Enum
from typing import Any, Callable

from pydantic import ValidationError

from config import AnalyticsConfig
from models.events import (
    AnalyticsBatch,
    AnalyticsEvent,
    CalculatorUsageEvent,
    CTAClickEvent,
    EngagementRecord,
    FormSubmissionEvent,
    ImmediateEvent,
    PageViewEvent,
    ScrollEvent,
    SectionViewEvent,
)
from models.experiments import Assignment, Experiment
from models.results import SessionTestResults
from services.assignment import VariantAssigner
from services.attribution import ConversionAttribution
from services.cache import StorageClient, get_storage_client
from services.transport import AnalyticsSink, HttpAnalyticsSink

logger = logging.getLogger(__name__)

ACTIVITY_EVENTS = ("click", "scroll", "keypress", "mousemove", "touchstart")
INACTIVITY_TIMEOUT = 30.0  # seconds
HIGH_PRIORITY_EVENTS = frozenset({"conversion", "error", "form_submission", "cta_click"})
SENSITIVE_FIELDS = ("password", "ssn", "credit_card", "phone", "email")
SCROLL_MILESTONES = (25, 50, 75, 100)
REDACTED = "[REDACTED]"
BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


class SessionState(str, Enum):
    UNINITIALIZED = "uninitialized"
    ACTIVE = "active"
    IDLE = "idle"
    TERMINATED = "terminated"


def device_type(viewport_width: int) -> str:
    if viewport_width < 768:
        return "mobile"
    if viewport_width < 1024:
        return "tablet"
    return "desktop"


def engagement_level(duration: float) -> str:
    if duration < 5:
        return "low"
    if duration < 30:
        return "medium"
    return "high"


def generate_session_id(prefix: str = "session", rng: random.Random | None = None) -> str:
    suffix = "".join((rng or random).choices(BASE36, k=9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def sanitize_form_data(form_data: dict[str, Any] | None) -> dict[str, Any] | None:
    if form_data is None:
        return None
    sanitized = dict(form_data)
    for field in SENSITIVE_FIELDS:
        if sanitized.get(field):
            sanitized[field] = REDACTED
    return sanitized


class EventSurface:
    """Named page signals (click, scroll, visibilitychange, online, ...) and their listeners.

    The host dispatches; the session only listens.
    """

    def __init__(self):
        self._listeners: dict[str, list[Callable[..., None]]] = {}

    def add_listener(self, event: str, listener: Callable[..., None]) -> None:
        self._listeners.setdefault(event, []).append(listener)

    def remove_listener(self, event: str, listener: Callable[..., None]) -> None:
        listeners = self._listeners.get(event, [])
        if listener in listeners:
            listeners.remove(listener)
        if not listeners:
            self._listeners.pop(event, None)

    def dispatch(self, event: str, **detail) -> None:
        for listener in list(self._listeners.get(event, [])):
            try:
                listener(**detail)
            except Exception:
                logger.warning("listener for %s failed", event, exc_info=True)

    def listener_count(self, event: str | None = None) -> int:
        if event is not None:
            return len(self._listeners.get(event, []))
        return sum(len(listeners) for listeners in self._listeners.values())


def best_effort(method):
    """Swallow and log any failure; ignore calls once the session has ended."""
    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        if self._ended:
            self.logger.debug("%s ignored, session %s has ended", method.__name__, self.session_id)
            return None
        try:
            return method(self, *args, **kwargs)
        except Exception:
            self.logger.warning("%s failed for session %s", method.__name__, self.session_id, exc_info=True)
            return None
    return wrapper


class ExperimentSession:
    def __init__(
        self,
        config: AnalyticsConfig | None = None,
        user_id: str | None = None,
        audience: str = "unknown",
        storage: StorageClient | None = None,
        sink: AnalyticsSink | None = None,
        surface: EventSurface | None = None,
        viewport_width: int = 1024,
        clock: Callable[[], float] = time.monotonic,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
        forwarders: list[Callable[[AnalyticsEvent], None]] | None = None,
    ):
        self.config = config or AnalyticsConfig()
        self.user_id = user_id
        self.audience = audience
        self.logger = logger if logger is not None else logging.getLogger(__name__)
        self.storage = storage if storage is not None else get_storage_client(namespace=user_id)
        self._owns_sink = sink is None
        self.sink = sink if sink is not None else HttpAnalyticsSink(self.config.api_endpoint, self.config.api_token)
        self.surface = surface if surface is not None else EventSurface()
        self.forwarders = list(forwarders or [])
        self.clock = clock
        self._rng = rng or random.Random()

        self.session_id = generate_session_id(self.config.session_prefix, self._rng)
        self.device_type = device_type(viewport_width)
        self.viewport_width = viewport_width
        self.is_online = True

        self.assigner = VariantAssigner(store=self.storage, rng=self._rng, logger=self.logger)
        self.attribution = ConversionAttribution(self.assigner, on_record=self._queue_engagement, logger=self.logger)

        self.current_page = ""
        self.pages_visited: list[str] = []
        self._page_view_started: float | None = None
        self._section_view_started: dict[str, float] = {}
        self._scroll_milestones: set[int] = set()

        self._queue: list[AnalyticsEvent] = []
        self._lock = threading.RLock()
        self._flush_timer: threading.Timer | None = None
        self._attached: list[tuple[str, Callable[..., None]]] = []

        self._started_at: float | None = None
        self._ended_at: float | None = None
        self._last_activity: float | None = None
        self._ended = False

    # --- lifecycle ---

    def start(self) -> "ExperimentSession":
        if self._started_at is not None or self._ended:
            return self

        now = self.clock()
        self._started_at = now
        self._last_activity = now

        for event in ACTIVITY_EVENTS:
            self._listen(event, self._on_activity)
        self._listen("visibilitychange", self._on_visibility_change)
        self._listen("online", self._on_online)
        self._listen("offline", self._on_offline)

        self._load_offline_events()
        self._schedule_flush()

        if self.config.enable_debug_mode:
            self.logger.info("session %s started (audience=%s, device=%s, config=%s)",
                             self.session_id, self.audience, self.device_type, self.config)
        return self

    def end(self) -> None:
        """Tear the session down. Buffered events are flushed once, with no delivery guarantee."""
        if self._ended:
            return
        try:
            self._track_page_exit(exit_type="teardown")
            if self.config.flush_on_teardown:
                self.flush()
            else:
                with self._lock:
                    if self._queue:
                        self.logger.debug("dropping %d buffered events on teardown", len(self._queue))
                    self._queue.clear()
        except Exception:
            self.logger.warning("teardown flush failed for session %s", self.session_id, exc_info=True)
        finally:
            self._ended = True
            self._ended_at = self.clock()
            if self._flush_timer is not None:
                self._flush_timer.cancel()
                self._flush_timer = None
            for event, listener in self._attached:
                self.surface.remove_listener(event, listener)
            self._attached.clear()
            if self._owns_sink:
                self.sink.close()
            self.logger.debug("session %s terminated", self.session_id)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc, tb):
        self.end()
        return False

    def _listen(self, event: str, listener: Callable[..., None]) -> None:
        self.surface.add_listener(event, listener)
        self._attached.append((event, listener))

    # --- state ---

    @property
    def state(self) -> SessionState:
        if self._ended:
            return SessionState.TERMINATED
        if self._started_at is None:
            return SessionState.UNINITIALIZED
        return SessionState.ACTIVE if self.is_active else SessionState.IDLE

    @property
    def session_duration(self) -> int:
        """Whole seconds since start."""
        if self._started_at is None:
            return 0
        end = self._ended_at if self._ended_at is not None else self.clock()
        return int(end - self._started_at)

    @property
    def is_active(self) -> bool:
        if self._ended or self._last_activity is None:
            return False
        return self.clock() - self._last_activity < INACTIVITY_TIMEOUT

    def record_activity(self) -> None:
        if not self._ended and self._started_at is not None:
            self._last_activity = self.clock()

    def set_viewport_width(self, width: int) -> None:
        self.viewport_width = width
        self.device_type = device_type(width)

    # --- surface listeners ---

    def _on_activity(self, **detail) -> None:
        self.record_activity()

    def _on_visibility_change(self, state: str = "visible", **detail) -> None:
        if state == "hidden":
            self._track_page_exit(exit_type="visibility_change")
            self.flush()
        elif self.current_page:
            self._track_event("page_resume", {"page": self.current_page})

    def _on_online(self, **detail) -> None:
        self.is_online = True
        self.flush()

    def _on_offline(self, **detail) -> None:
        self.is_online = False

    # --- experiments ---

    @best_effort
    def get_variant(self, experiment: Experiment) -> Assignment | None:
        if not self.config.enable_ab_testing:
            return None
        known = self.assigner.get_assignment(experiment.test_id) is not None
        assignment = self.assigner.get_variant(experiment, subject_key=self.user_id)
        if assignment is not None and not known:
            self._track_event("ab_test_assignment", {
                "test_id": assignment.test_id,
                "variant_id": assignment.variant_id,
                "is_control": assignment.is_control,
                "assigned_at": assignment.assigned_at.isoformat(),
            })
        return assignment

    @best_effort
    def track_impression(self, test_id: str, variant_id: str, context: dict[str, Any] | None = None) -> None:
        self.attribution.track_impression(test_id, variant_id, context)

    @best_effort
    def track_ab_conversion(self, test_id: str, variant_id: str, conversion_data: dict[str, Any] | None = None) -> None:
        self.attribution.track_conversion(test_id, variant_id, conversion_data)

    @best_effort
    def get_test_results(self, test_id: str) -> SessionTestResults | None:
        return self.attribution.get_test_results(test_id)

    def _queue_engagement(self, record: EngagementRecord) -> None:
        data = dict(record.context)
        data.update({
            "test_id": record.test_id,
            "variant_id": record.variant_id,
        })
        self._track_event(f"ab_test_{record.event_type.value}", data)

    # --- page tracking ---

    @best_effort
    def track_page_view(self, event: PageViewEvent) -> None:
        if self.current_page:
            self._track_page_exit(exit_type="navigation")

        self.current_page = event.page
        self.pages_visited.append(event.page)
        self._page_view_started = self.clock()
        self._scroll_milestones.clear()

        data = {
            "page": event.page,
            "referrer": event.referrer,
            "viewport_width": self.viewport_width,
            "device_type": self.device_type,
        }
        data.update(event.additional_data)
        self._track_event("page_view", data)

    def _track_page_exit(self, exit_type: str) -> None:
        if not self.current_page or self._page_view_started is None:
            return
        self._track_event("page_exit", {
            "page": self.current_page,
            "time_on_page": self.clock() - self._page_view_started,
            "max_scroll_depth": max(self._scroll_milestones, default=0),
            "exit_type": exit_type,
        })

    @best_effort
    def track_section_view(self, event: SectionViewEvent) -> None:
        self._section_view_started[event.section] = self.clock()
        self._track_event("section_view", event.model_dump())

    @best_effort
    def track_section_exit(self, section: str) -> None:
        started = self._section_view_started.pop(section, None)
        if started is None:
            return
        self._track_event("section_exit", {"section": section, "time_spent": self.clock() - started})

    @best_effort
    def track_scroll_depth(self, event: ScrollEvent) -> None:
        milestone = int(event.percentage // 25) * 25
        if milestone in SCROLL_MILESTONES and milestone not in self._scroll_milestones:
            self._scroll_milestones.add(milestone)
            time_to_reach = self.clock() - self._page_view_started if self._page_view_started is not None else None
            self._track_event("scroll_depth", {
                "percentage": milestone,
                "section": event.section,
                "page": self.current_page,
                "time_to_reach": time_to_reach,
                "scroll_direction": event.scroll_direction,
            })

        # continuous scroll signal goes to forwarders only
        self._track_event("scroll_behavior", event.model_dump(), queue=False)

    @best_effort
    def track_time_on_section(self, section: str, duration: float) -> None:
        self._track_event("time_on_section", {
            "section": section,
            "duration": duration,
            "page": self.current_page,
            "engagement_level": engagement_level(duration),
        })

    # --- interactions ---

    @best_effort
    def track_cta_click(self, event: CTAClickEvent) -> None:
        data = event.model_dump(exclude={"click_coordinates", "additional_data"})
        data.update(event.additional_data)
        self._track_event("cta_click", data)

        if self.config.enable_heat_mapping and event.click_coordinates is not None:
            self._track_event("click_heatmap", {
                "x": event.click_coordinates.x,
                "y": event.click_coordinates.y,
                "element": event.section,
                "action": event.action,
            })

        if self.config.enable_ab_testing:
            attributed = self.attribution.attribute_action(event.action, {"section": event.section, "session_id": self.session_id})
            if attributed:
                # goal conversions go out with the click
                self.flush()

    @best_effort
    def track_form_submission(self, event: FormSubmissionEvent) -> None:
        self._track_event("form_submission", {
            "form_type": event.form_type,
            "form_id": event.form_id,
            "success": event.success,
            "error_message": event.error_message,
            "form_data": sanitize_form_data(event.form_data),
            "validation_errors": event.validation_errors,
            "time_to_complete": event.time_to_complete,
            "field_interactions": event.field_interactions,
        })

        if not event.success and event.abandonment_point:
            self._track_event("form_abandonment", {
                "form_type": event.form_type,
                "abandonment_point": event.abandonment_point,
                "completed_fields": event.completed_fields,
                "time_spent": event.time_to_complete,
            })

    @best_effort
    def track_calculator_usage(self, event: CalculatorUsageEvent) -> None:
        self._track_event("calculator_usage", {
            "step": event.step,
            "total_steps": event.total_steps,
            "completed": event.completed,
            "calculator_data": sanitize_form_data(event.calculator_data),
            "time_spent": event.time_spent,
            "backtrack_count": event.backtrack_count,
            "help_used": event.help_used,
        })
        self._track_event("calculator_funnel", {
            "step": event.step,
            "step_name": event.step_name,
            "completed": event.completed,
            "dropoff_point": not event.completed and event.step < event.total_steps,
        })

    @best_effort
    def track_user_behavior(self, behavior_type: str, element: str | None = None, action: str | None = None,
                            value: Any = None, **custom_data) -> None:
        data = {
            "behavior_type": behavior_type,
            "element": element,
            "action": action or behavior_type,
            "behavior_value": value,
            "device_type": self.device_type,
        }
        data.update(custom_data)
        self._track_event("user_behavior", data)

    @best_effort
    def track_conversion(self, goal_id: str, value: float | None = None, **additional_data) -> None:
        data = {
            "goal_id": goal_id,
            "conversion_path": list(self.pages_visited),
            "time_to_conversion": self.session_duration,
        }
        data.update(additional_data)
        self._track_event("conversion", data, value=value)
        self._send_immediate("conversion", ImmediateEvent(
            session_id=self.session_id,
            user_id=self.user_id,
            audience=self.audience,
            goal_id=goal_id,
            value=value,
        ))

    @best_effort
    def track_error(self, error_type: str, **error_data) -> None:
        data = {"error_type": error_type, "page": self.current_page}
        data.update(error_data)
        self._track_event("error", data)
        self._send_immediate("error", ImmediateEvent(
            session_id=self.session_id,
            user_id=self.user_id,
            audience=self.audience,
            error_type=error_type,
            error_data=error_data,
        ))

    @best_effort
    def track_custom_event(self, event_name: str, **data) -> None:
        payload = {"event_name": event_name, "page": self.current_page}
        payload.update(data)
        self._track_event("custom_event", payload)

    # --- queue ---

    def _track_event(self, event_name: str, data: dict[str, Any], queue: bool = True, value: float | None = None) -> None:
        custom_data = {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "session_duration": self.session_duration,
            "is_active": self.is_active,
        }
        if self.config.tracking_id:
            custom_data["tracking_id"] = self.config.tracking_id
        custom_data.update(data)

        event = AnalyticsEvent(
            event_name=event_name,
            audience=self.audience,
            section=data.get("section") or "unknown",
            action=data.get("action") or event_name,
            value=value,
            custom_data=custom_data,
        )

        for forward in self.forwarders:
            try:
                forward(event)
            except Exception:
                self.logger.warning("analytics forwarder %r failed on %s", forward, event_name, exc_info=True)

        if not queue:
            return

        with self._lock:
            self._queue.append(event)
            pending = len(self._queue)

        if self.config.enable_debug_mode:
            self.logger.info("analytics event tracked: %s", event_name)

        if event_name in HIGH_PRIORITY_EVENTS or pending >= self.config.batch_size:
            self.flush()

    @property
    def pending_events(self) -> list[AnalyticsEvent]:
        with self._lock:
            return list(self._queue)

    def flush(self) -> None:
        """Send everything queued. Failures are logged; events go to offline storage when enabled."""
        with self._lock:
            if not self._queue:
                return
            events = list(self._queue)
            self._queue.clear()

        if not self.is_online:
            if self.config.enable_offline_storage:
                self._store_offline(events)
            else:
                self.logger.debug("offline, dropping %d events", len(events))
            return

        try:
            self.sink.send(AnalyticsBatch(session_id=self.session_id, events=events))
            if self.config.enable_debug_mode:
                self.logger.info("analytics events sent: %d", len(events))
        except Exception:
            self.logger.warning("failed to send %d analytics events", len(events), exc_info=True)
            if self.config.enable_offline_storage:
                self._store_offline(events)

    def _send_immediate(self, kind: str, event: ImmediateEvent) -> None:
        if not self.is_online:
            return
        try:
            self.sink.send_immediate(kind, event)
        except Exception:
            self.logger.warning("failed to send immediate %s event", kind, exc_info=True)

    def _store_offline(self, events: list[AnalyticsEvent]) -> None:
        stored = self.storage.store_offline_events([e.model_dump(mode="json", by_alias=True) for e in events])
        if not stored:
            self.logger.warning("could not keep %d events offline, dropped", len(events))

    def _load_offline_events(self) -> None:
        if not self.config.enable_offline_storage:
            return
        restored = []
        for data in self.storage.pop_offline_events():
            try:
                restored.append(AnalyticsEvent.model_validate(data))
            except ValidationError:
                self.logger.warning("skipping malformed offline event")
        if restored:
            with self._lock:
                self._queue[:0] = restored
            if self.config.enable_debug_mode:
                self.logger.info("loaded %d offline events", len(restored))

    def _schedule_flush(self) -> None:
        if self._ended or self.config.flush_interval <= 0:
            return
        timer = threading.Timer(self.config.flush_interval, self._periodic_flush)
        timer.daemon = True
        self._flush_timer = timer
        timer.start()

    def _periodic_flush(self) -> None:
        if self._ended:
            return
        try:
            self.flush()
        except Exception:
            self.logger.warning("periodic flush failed", exc_info=True)
        self._schedule_flush()
