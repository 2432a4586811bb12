"""Tests for the capture tick loop around one tracked session."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta

import pytest

from trackq.capture.service import CapturedFrame, CaptureService
from trackq.classification.categorizer import Categorizer
from trackq.llm.client import TransportError
from trackq.observability.telemetry import get_counter

START = datetime(2025, 3, 10, 9, 0, 0, tzinfo=UTC)


class MovableClock:
    def __init__(self, start: datetime):
        self.now = start

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)

    def __call__(self) -> datetime:
        return self.now


class StaticSource:
    def __init__(self, app_name="Xcode", window_title="DISP-42 Fix crash", on_capture=None):
        self.frame = CapturedFrame(image=b"png", app_name=app_name, window_title=window_title)
        self.on_capture = on_capture
        self.captures = 0

    def capture(self) -> CapturedFrame:
        self.captures += 1
        if self.on_capture:
            self.on_capture()
        return self.frame


@pytest.fixture
def movable_clock():
    return MovableClock(START)


@pytest.fixture
def make_service(taxonomy, sessions, suggestions, cache, clock, movable_clock):
    def _make(gateway, source=None) -> CaptureService:
        categorizer = Categorizer(taxonomy, sessions, suggestions, cache, gateway, clock=clock)
        return CaptureService(
            categorizer, sessions, taxonomy, source or StaticSource(), interval=0.01, clock=movable_clock
        )

    return _make


def test_tick_without_session_does_nothing(make_service, gateway_factory, categorization):
    service = make_service(gateway_factory(categorization()))
    assert service.tick() is False
    assert service.is_tracking is False


def test_tick_categorizes_active_session(make_service, gateway_factory, categorization, sessions, movable_clock):
    service = make_service(gateway_factory(categorization()))
    session = service.start(app_name="Xcode")

    movable_clock.advance(30)
    assert service.tick() is True

    stored = sessions.get(session.id)
    assert stored.window_title == "DISP-42 Fix crash"
    assert stored.screenshot_count == 1
    assert stored.duration == pytest.approx(30)
    assert stored.project_id == service.last_outcome.project.id
    assert get_counter("capture.tick") == 1


def test_overlapping_tick_is_skipped(make_service, gateway_factory, categorization):
    source = StaticSource()
    service = make_service(gateway_factory(categorization()), source)
    service.start()

    with service._tick_lock:
        assert service.tick() is False

    assert source.captures == 0
    assert get_counter("capture.tick_skipped") == 1


def test_concurrent_tick_skipped_while_classifier_blocks(make_service, categorization):
    entered = threading.Event()
    release = threading.Event()

    class BlockingGateway:
        def classify(self, *args):
            entered.set()
            release.wait(5)
            return categorization()

    service = make_service(BlockingGateway())
    service.start()

    worker = threading.Thread(target=service.tick)
    worker.start()
    assert entered.wait(5)
    try:
        assert service.tick() is False
    finally:
        release.set()
        worker.join(5)

    assert get_counter("capture.tick_skipped") == 1
    assert get_counter("capture.tick") == 1


def test_unavailable_categorization_leaves_session_uncategorized(make_service, gateway_factory, sessions):
    service = make_service(gateway_factory(TransportError("offline")))
    session = service.start()

    assert service.tick() is True

    stored = sessions.get(session.id)
    assert stored.project_id is None
    assert stored.is_ai_categorized is False
    assert stored.screenshot_count == 1
    assert get_counter("capture.uncategorized") == 1
    assert service.is_tracking is True


def test_stop_ends_session_and_credits_project(
    make_service, gateway_factory, categorization, sessions, taxonomy, movable_clock
):
    service = make_service(gateway_factory(categorization()))
    session = service.start()
    movable_clock.advance(120)
    service.tick()
    movable_clock.advance(180)

    stopped = service.stop()

    assert stopped.id == session.id
    assert stopped.is_active is False
    assert stopped.end_time == START + timedelta(seconds=300)
    assert stopped.duration == pytest.approx(300)
    # 120s credited by the tick, then the full 300s on stop
    assert taxonomy.projects.get(stopped.project_id).total_duration == pytest.approx(420)
    assert service.is_tracking is False
    assert service.stop() is None


def test_stop_during_classification_discards_result(make_service, categorization, sessions, taxonomy):
    holder = {}

    class StoppingGateway:
        def classify(self, *args):
            holder["service"].stop()
            return categorization()

    service = make_service(StoppingGateway())
    holder["service"] = service
    session = service.start()

    assert service.tick() is True

    stored = sessions.get(session.id)
    assert stored.is_active is False
    assert stored.project_id is None
    assert service.last_outcome is None
    assert taxonomy.projects.fetch_all() == []
    assert get_counter("capture.result_discarded") == 1


def test_stop_during_reconciliation_keeps_session_closed(
    make_service, gateway_factory, categorization, sessions, suggestions, taxonomy, monkeypatch
):
    service = make_service(gateway_factory(categorization(confidence=0.5)))
    reconcile = taxonomy.find_or_create_project

    def stop_then_reconcile(*args, **kwargs):
        service.stop()
        return reconcile(*args, **kwargs)

    monkeypatch.setattr(taxonomy, "find_or_create_project", stop_then_reconcile)
    session = service.start()

    assert service.tick() is True

    stored = sessions.get(session.id)
    assert stored.is_active is False
    assert stored.end_time is not None
    assert stored.project_id is None
    assert stored.is_ai_categorized is False
    assert suggestions.fetch_for_session(session.id) == []
    assert all(p.total_duration == 0 for p in taxonomy.projects.fetch_all())
    assert get_counter("capture.result_discarded") == 1


def test_start_ends_previous_session(make_service, gateway_factory, categorization, sessions):
    service = make_service(gateway_factory(categorization()))
    first = service.start(app_name="Mail")
    second = service.start(app_name="Slack")

    assert sessions.get(first.id).is_active is False
    assert service.current.id == second.id


def test_run_forever_stops_when_event_set(make_service, gateway_factory, categorization, sessions):
    stop_event = threading.Event()
    source = StaticSource(on_capture=stop_event.set)
    service = make_service(gateway_factory(categorization()), source)
    session = service.start()

    service.run_forever(stop_event)

    assert source.captures == 1
    assert service.is_tracking is False
    assert sessions.get(session.id).is_active is False


def test_run_forever_with_event_already_set(make_service, gateway_factory, categorization):
    stop_event = threading.Event()
    stop_event.set()
    source = StaticSource()
    service = make_service(gateway_factory(categorization()), source)
    service.start()

    service.run_forever(stop_event)

    assert source.captures == 0
    assert service.is_tracking is False
