import logging
import re
from unittest.mock import ANY, patch

import pytest

from config import AnalyticsConfig
from models.events import (
    CalculatorUsageEvent,
    ClickCoordinates,
    CTAClickEvent,
    FormSubmissionEvent,
    PageViewEvent,
    ScrollEvent,
    SectionViewEvent,
)
from services.session import (
    REDACTED,
    EventSurface,
    ExperimentSession,
    SessionState,
    device_type,
    engagement_level,
    generate_session_id,
    sanitize_form_data,
)
from services.transport import AnalyticsSink, InMemoryAnalyticsSink


class FailingSink(AnalyticsSink):
    def __init__(self):
        self.attempts = 0

    def send(self, batch):
        self.attempts += 1
        raise ConnectionError("endpoint unreachable")

    def send_immediate(self, kind, event):
        raise ConnectionError("endpoint unreachable")


def names(events):
    return [e.event_name for e in events]


def make_session(config, storage, sink, surface, clock, **kwargs):
    return ExperimentSession(config=config, user_id="user-42", audience="institutional", storage=storage,
                             sink=sink, surface=surface, viewport_width=1280, clock=clock, **kwargs)


# --- helpers ---

def test_session_id_format():
    session_id = generate_session_id()
    assert re.fullmatch(r"session_\d+_[0-9a-z]{9}", session_id)
    assert generate_session_id() != session_id

def test_session_id_prefix_is_configurable(storage, sink, surface, clock):
    config = AnalyticsConfig(session_prefix="visit", flush_interval=0)
    s = make_session(config, storage, sink, surface, clock)
    assert s.session_id.startswith("visit_")

@pytest.mark.parametrize("width, expected", [
    (320, "mobile"), (767, "mobile"), (768, "tablet"), (1023, "tablet"), (1024, "desktop"), (1920, "desktop"),
])
def test_device_type_breakpoints(width, expected):
    assert device_type(width) == expected

@pytest.mark.parametrize("seconds, expected", [(0, "low"), (4.9, "low"), (5, "medium"), (29, "medium"), (30, "high")])
def test_engagement_level(seconds, expected):
    assert engagement_level(seconds) == expected

def test_sanitize_form_data_redacts_sensitive_fields():
    form = {"name": "Ada", "email": "ada@example.com", "password": "hunter2", "phone": "", "company": "ACME"}
    sanitized = sanitize_form_data(form)
    assert sanitized["email"] == REDACTED
    assert sanitized["password"] == REDACTED
    # empty values are left alone
    assert sanitized["phone"] == ""
    assert sanitized["name"] == "Ada"
    assert form["email"] == "ada@example.com"
    assert sanitize_form_data(None) is None

def test_surface_isolates_failing_listeners():
    surface = EventSurface()
    calls = []

    def broken(**detail):
        raise RuntimeError("boom")

    surface.add_listener("click", broken)
    surface.add_listener("click", lambda **detail: calls.append(detail))
    surface.dispatch("click", x=1)
    assert calls == [{"x": 1}]

    surface.remove_listener("click", broken)
    assert surface.listener_count("click") == 1


# --- lifecycle and state ---

def test_state_follows_activity(session, surface, clock):
    assert session.state == SessionState.ACTIVE

    clock.advance(31)
    assert session.state == SessionState.IDLE
    assert not session.is_active
    assert session.session_duration == 31

    surface.dispatch("scroll")
    assert session.state == SessionState.ACTIVE

def test_uninitialized_until_started(analytics_config, storage, sink, surface, clock):
    s = make_session(analytics_config, storage, sink, surface, clock)
    assert s.state == SessionState.UNINITIALIZED
    assert s.session_duration == 0
    assert surface.listener_count() == 0

def test_end_detaches_listeners_and_terminates(session, surface, clock):
    assert surface.listener_count("click") == 1
    clock.advance(12)
    session.end()

    assert session.state == SessionState.TERMINATED
    assert surface.listener_count() == 0
    clock.advance(100)
    assert session.session_duration == 12

    session.end()  # second call is a no-op

def test_context_manager(analytics_config, storage, sink, surface, clock):
    with make_session(analytics_config, storage, sink, surface, clock) as s:
        s.track_custom_event("hello")
        assert s.state == SessionState.ACTIVE
    assert s.state == SessionState.TERMINATED
    assert "custom_event" in names(sink.events)

def test_tracking_after_end_is_ignored(session, sink):
    session.end()
    sent = len(sink.events)

    session.track_custom_event("late")
    session.track_error("late")
    assert session.pending_events == []
    assert len(sink.events) == sent

def test_flush_timer_is_cancelled_on_end(storage, sink, surface, clock):
    config = AnalyticsConfig(flush_interval=60, batch_size=50)
    s = make_session(config, storage, sink, surface, clock).start()
    timer = s._flush_timer
    assert timer is not None and timer.is_alive()

    s.end()
    timer.join(timeout=1)
    assert not timer.is_alive()
    assert s._flush_timer is None


# --- queue and flushing ---

def test_events_batch_until_batch_size(session, sink):
    for i in range(49):
        session.track_custom_event("tick", n=i)
    assert sink.batches == []
    assert len(session.pending_events) == 49

    session.track_custom_event("tick", n=49)
    assert len(sink.batches) == 1
    assert len(sink.batches[0].events) == 50
    assert sink.batches[0].session_id == session.session_id
    assert session.pending_events == []

def test_event_carries_session_context(session):
    session.track_custom_event("signup_started", plan="pro")
    event = session.pending_events[-1]
    assert event.event_name == "custom_event"
    assert event.audience == "institutional"
    assert event.custom_data["session_id"] == session.session_id
    assert event.custom_data["user_id"] == "user-42"
    assert event.custom_data["plan"] == "pro"
    assert event.custom_data["is_active"] is True
    assert "tracking_id" not in event.custom_data

def test_tracking_id_is_attached_when_configured(storage, sink, surface, clock):
    config = AnalyticsConfig(flush_interval=0, tracking_id="G-123")
    with make_session(config, storage, sink, surface, clock) as s:
        s.track_custom_event("x")
        assert s.pending_events[-1].custom_data["tracking_id"] == "G-123"

@pytest.mark.parametrize("track", [
    lambda s: s.track_error("timeout", component="calculator"),
    lambda s: s.track_conversion("demo_request", value=250.0),
    lambda s: s.track_form_submission(FormSubmissionEvent(form_type="contact")),
    lambda s: s.track_cta_click(CTAClickEvent(action="learn_more")),
])
def test_high_priority_events_flush_immediately(session, sink, track):
    session.track_custom_event("before")
    track(session)
    assert len(sink.batches) == 1
    assert names(sink.batches[0].events)[0] == "custom_event"
    assert session.pending_events == []

def test_conversion_is_also_sent_immediately(session, sink):
    session.track_page_view(PageViewEvent(page="/pricing"))
    session.track_conversion("demo_request", value=250.0)

    event = sink.events[-1]
    assert event.event_name == "conversion"
    assert event.value == 250.0
    assert event.custom_data["conversion_path"] == ["/pricing"]

    kind, immediate = sink.immediate[-1]
    assert kind == "conversion"
    assert immediate.goal_id == "demo_request"
    assert immediate.session_id == session.session_id

def test_error_is_also_sent_immediately(session, sink):
    session.track_error("chunk_load", url="/app.js")
    kind, immediate = sink.immediate[-1]
    assert kind == "error"
    assert immediate.error_type == "chunk_load"

def test_offline_events_are_stored_and_restored(analytics_config, session, storage, sink, surface, clock):
    surface.dispatch("offline")
    session.track_error("network_down")
    assert sink.batches == []
    assert sink.immediate == []

    session.end()

    restored = make_session(analytics_config, storage, InMemoryAnalyticsSink(), EventSurface(), clock).start()
    try:
        assert "error" in names(restored.pending_events)
        assert storage.pop_offline_events() == []
    finally:
        restored.end()

def test_offline_without_storage_drops_events(storage, sink, surface, clock):
    config = AnalyticsConfig(flush_interval=0, enable_offline_storage=False)
    with make_session(config, storage, sink, surface, clock) as s:
        surface.dispatch("offline")
        s.track_error("network_down")
        assert s.pending_events == []
    assert storage.pop_offline_events() == []

def test_back_online_flushes_queue(session, sink, surface):
    surface.dispatch("offline")
    session.track_custom_event("queued")
    surface.dispatch("online")
    assert "custom_event" in names(sink.events)

def test_sink_failure_never_reaches_the_caller(analytics_config, storage, surface, clock, caplog):
    failing = FailingSink()
    s = make_session(analytics_config, storage, failing, surface, clock).start()

    with caplog.at_level(logging.WARNING, logger="services.session"):
        s.track_error("boom")
        s.track_conversion("demo_request")

    assert failing.attempts == 2
    assert "failed to send" in caplog.text
    assert len(storage.pop_offline_events()) == 2
    s.end()

def test_teardown_flushes_remaining_events(session, sink):
    session.track_page_view(PageViewEvent(page="/"))
    session.end()
    assert names(sink.events) == ["page_view", "page_exit"]
    assert sink.events[-1].custom_data["exit_type"] == "teardown"

def test_teardown_can_drop_remaining_events(storage, sink, surface, clock):
    config = AnalyticsConfig(flush_interval=0, flush_on_teardown=False)
    with make_session(config, storage, sink, surface, clock) as s:
        s.track_custom_event("unsent")
    assert sink.batches == []

def test_hidden_page_exits_and_flushes(session, sink, surface, clock):
    session.track_page_view(PageViewEvent(page="/pricing"))
    clock.advance(8)
    surface.dispatch("visibilitychange", state="hidden")

    assert names(sink.events) == ["page_view", "page_exit"]
    exit_event = sink.events[-1]
    assert exit_event.custom_data["time_on_page"] == 8
    assert exit_event.custom_data["exit_type"] == "visibility_change"

    surface.dispatch("visibilitychange", state="visible")
    assert names(session.pending_events) == ["page_resume"]

def test_forwarders_see_every_event(analytics_config, storage, sink, surface, clock):
    seen = []

    def broken(event):
        raise RuntimeError("tag manager missing")

    with make_session(analytics_config, storage, sink, surface, clock, forwarders=[broken, seen.append]) as s:
        s.track_scroll_depth(ScrollEvent(percentage=10))
        s.track_custom_event("x")
    assert names(seen)[:2] == ["scroll_behavior", "custom_event"]
    assert "scroll_behavior" not in names(sink.events)


# --- page and interaction tracking ---

def test_page_navigation_emits_exit_for_previous_page(session, clock):
    session.track_page_view(PageViewEvent(page="/", referrer="https://search.example"))
    clock.advance(3)
    session.track_page_view(PageViewEvent(page="/pricing", additional_data={"campaign": "spring"}))

    events = session.pending_events
    assert names(events) == ["page_view", "page_exit", "page_view"]
    assert events[0].custom_data["device_type"] == "desktop"
    assert events[1].custom_data["page"] == "/"
    assert events[1].custom_data["exit_type"] == "navigation"
    assert events[2].custom_data["campaign"] == "spring"
    assert session.pages_visited == ["/", "/pricing"]

def test_scroll_milestones_are_reported_once_per_page(session):
    session.track_page_view(PageViewEvent(page="/"))
    for pct in (10, 30, 40, 55, 99, 100, 100):
        session.track_scroll_depth(ScrollEvent(percentage=pct, section="hero"))

    milestones = [e.custom_data["percentage"] for e in session.pending_events if e.event_name == "scroll_depth"]
    assert milestones == [25, 50, 75, 100]

    session.track_page_view(PageViewEvent(page="/pricing"))
    exit_event = [e for e in session.pending_events if e.event_name == "page_exit"][-1]
    assert exit_event.custom_data["max_scroll_depth"] == 100

    session.track_scroll_depth(ScrollEvent(percentage=30))
    assert session.pending_events[-1].custom_data["page"] == "/pricing"

def test_section_view_and_exit(session, clock):
    session.track_section_view(SectionViewEvent(section="features"))
    clock.advance(6)
    session.track_section_exit("features")
    session.track_section_exit("never_viewed")
    session.track_time_on_section("features", 42)

    events = session.pending_events
    assert names(events) == ["section_view", "section_exit", "time_on_section"]
    assert events[0].section == "features"
    assert events[1].custom_data["time_spent"] == 6
    assert events[2].custom_data["engagement_level"] == "high"

def test_cta_click_with_heat_mapping(session, sink):
    session.track_cta_click(CTAClickEvent(action="learn_more", section="hero", cta_text="Learn more",
                                          click_coordinates=ClickCoordinates(x=120, y=48)))
    click = sink.events[-1]
    assert click.event_name == "cta_click"
    assert click.action == "learn_more"
    assert click.custom_data["cta_text"] == "Learn more"

    heatmap = session.pending_events[-1]
    assert heatmap.event_name == "click_heatmap"
    assert (heatmap.custom_data["x"], heatmap.custom_data["y"]) == (120, 48)

def test_heat_mapping_disabled(storage, sink, surface, clock):
    config = AnalyticsConfig(flush_interval=0, enable_heat_mapping=False)
    with make_session(config, storage, sink, surface, clock) as s:
        s.track_cta_click(CTAClickEvent(action="demo", click_coordinates=ClickCoordinates(x=1, y=2)))
        assert "click_heatmap" not in names(s.pending_events)

def test_form_submission_is_sanitized(session, sink):
    session.track_form_submission(FormSubmissionEvent(
        form_type="contact",
        success=False,
        form_data={"email": "ada@example.com", "company": "ACME"},
        abandonment_point="phone",
        completed_fields=["email", "company"],
    ))

    submitted = sink.events[-1]
    assert submitted.event_name == "form_submission"
    assert submitted.custom_data["form_data"] == {"email": REDACTED, "company": "ACME"}

    abandonment = session.pending_events[-1]
    assert abandonment.event_name == "form_abandonment"
    assert abandonment.custom_data["abandonment_point"] == "phone"

def test_calculator_usage_funnel(session):
    session.track_calculator_usage(CalculatorUsageEvent(step=2, total_steps=4, step_name="assets",
                                                         calculator_data={"ssn": "123-45-6789"}))
    usage, funnel = session.pending_events
    assert usage.custom_data["calculator_data"] == {"ssn": REDACTED}
    assert funnel.event_name == "calculator_funnel"
    assert funnel.custom_data["dropoff_point"] is True

def test_user_behavior_defaults_action(session):
    session.track_user_behavior("hover", element="pricing-table", value=3)
    event = session.pending_events[-1]
    assert event.action == "hover"
    assert event.custom_data["behavior_value"] == 3


# --- experiments ---

def test_get_variant_queues_assignment_event_once(session, pricing_experiment):
    first = session.get_variant(pricing_experiment)
    second = session.get_variant(pricing_experiment)
    assert first is second

    assignments = [e for e in session.pending_events if e.event_name == "ab_test_assignment"]
    assert len(assignments) == 1
    assert assignments[0].custom_data["test_id"] == "pricing_test"
    assert assignments[0].custom_data["variant_id"] == first.variant_id

def test_get_variant_is_deterministic_for_a_user(analytics_config, sink, surface, clock, pricing_experiment):
    from services.cache import get_memory_storage_client

    ids = set()
    for _ in range(3):
        with make_session(analytics_config, get_memory_storage_client(), sink, surface, clock) as s:
            ids.add(s.get_variant(pricing_experiment).variant_id)
    assert len(ids) == 1

def test_ab_testing_disabled(storage, sink, surface, clock, pricing_experiment):
    config = AnalyticsConfig(flush_interval=0, enable_ab_testing=False)
    with make_session(config, storage, sink, surface, clock) as s:
        assert s.get_variant(pricing_experiment) is None
        with patch.object(s.attribution, "track_conversion") as track_conversion:
            s.track_cta_click(CTAClickEvent(action="demo"))
        track_conversion.assert_not_called()

def test_cta_click_attributes_goal_to_active_experiment(session, pricing_experiment):
    assignment = session.get_variant(pricing_experiment)

    with patch.object(session.attribution, "track_conversion") as track_conversion:
        session.track_cta_click(CTAClickEvent(action="demo", section="hero"))
    track_conversion.assert_called_once_with("pricing_test", assignment.variant_id, ANY)
    assert track_conversion.call_args.args[2]["goal"] == "demo_request"

    with patch.object(session.attribution, "track_conversion") as track_conversion:
        session.track_cta_click(CTAClickEvent(action="unmapped_action"))
    track_conversion.assert_not_called()

def test_engagement_is_queued_and_counted(session, sink, pricing_experiment):
    assignment = session.get_variant(pricing_experiment)
    for _ in range(4):
        session.track_impression("pricing_test", assignment.variant_id)
    session.track_cta_click(CTAClickEvent(action="trial"))

    results = session.get_test_results("pricing_test")
    stats = results.variants[assignment.variant_id]
    assert (stats.impressions, stats.conversions, stats.conversion_rate) == (4, 1, 0.25)

    queued = names(sink.events) + names(session.pending_events)
    assert queued.count("ab_test_impression") == 4
    assert "ab_test_conversion" in queued

def test_goal_conversions_are_sent_with_the_click(session, sink, pricing_experiment):
    session.get_variant(pricing_experiment)
    session.track_cta_click(CTAClickEvent(action="demo", section="hero"))

    assert session.pending_events == []
    sent = names(sink.events)
    assert sent.index("cta_click") < sent.index("ab_test_conversion")
    conversion = [e for e in sink.events if e.event_name == "ab_test_conversion"][0]
    assert conversion.custom_data["goal"] == "demo_request"

def test_manual_conversion_on_unknown_test_is_harmless(session):
    session.track_ab_conversion("unknown_test", "control", {"goal": "demo_request"})
    assert session.get_test_results("unknown_test") is None
    assert session.pending_events[-1].event_name == "ab_test_conversion"
