"""Activity reporter tests — toasts, manual-check state, staleness, fan-out.

Tests cover:
    - Success/info toasts expire, error toasts persist until dismissed
    - Held toasts are capped, oldest dropped first
    - PollTimeout moves to manual check exactly once
    - Stale flag publishes only on change
    - Subscribers receive {"type", "data"} envelopes; full queues drop, never block
"""

from pocflow.core.deltas import ActivityStatus, PollTimeout
from pocflow.core.domain_types import AgentStatus, ToastLevel
from pocflow.core.errors import TransportError
from pocflow.services.activity_reporter import ActivityReporter


class ManualClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


def _reporter(clock=None) -> ActivityReporter:
    return ActivityReporter("s1", toast_duration_ms=3000, clock=clock or ManualClock())


def _drain(queue) -> list[dict]:
    events = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# --- Toasts ---------------------------------------------------------------------

def test_success_toast_expires():
    clock = ManualClock()
    reporter = _reporter(clock)
    reporter.toast(ToastLevel.SUCCESS, "Problem statement saved")
    assert [t.message for t in reporter.active_toasts()] == ["Problem statement saved"]
    clock.now += 3.1
    assert reporter.active_toasts() == []


def test_error_toast_persists_until_dismissed():
    clock = ManualClock()
    reporter = _reporter(clock)
    reporter.report_error(TransportError("down", "ask"))
    clock.now += 3600
    toasts = reporter.active_toasts()
    assert len(toasts) == 1
    assert toasts[0].level == ToastLevel.ERROR
    assert reporter.dismiss(toasts[0].toast_id)
    assert reporter.active_toasts() == []
    assert not reporter.dismiss(toasts[0].toast_id)


def test_unread_error_toasts_are_capped_oldest_first():
    reporter = _reporter()
    for i in range(50):
        reporter.report_error(TransportError(f"down {i}", "ask"))
    toasts = reporter.active_toasts()
    assert len(toasts) == 20
    assert toasts[0].message.endswith("down 30")
    assert toasts[-1].message.endswith("down 49")


# --- Advisory deltas ------------------------------------------------------------

def test_activity_published_only_on_change():
    reporter = _reporter()
    queue = reporter.subscribe()
    delta = ActivityStatus(AgentStatus.RUNNING, "file_analysis", "Analyzing files...")
    reporter.on_activity(delta)
    reporter.on_activity(delta)
    events = _drain(queue)
    assert [e["type"] for e in events] == ["activity"]
    assert reporter.activity_label == "Analyzing files..."


def test_poll_timeout_enters_manual_check_once():
    reporter = _reporter()
    queue = reporter.subscribe()
    reporter.on_poll_timeout(PollTimeout("analysis", 300000))
    reporter.on_poll_timeout(PollTimeout("analysis", 300000))

    assert reporter.awaiting_manual_check
    events = _drain(queue)
    errors = [e for e in events if e["type"] == "error"]
    assert len(errors) == 1
    assert errors[0]["data"]["code"] == "WORKFLOW_TIMEOUT"
    assert len(reporter.active_toasts()) == 1

    reporter.clear_manual_check()
    assert reporter.view()["awaiting_manual_check"] is False


def test_stale_published_on_change_only():
    reporter = _reporter()
    queue = reporter.subscribe()
    reporter.set_stale(True, 3)
    reporter.set_stale(True, 4)
    reporter.set_stale(False)
    assert [e["data"]["stale"] for e in _drain(queue)] == [True, False]


# --- Fan-out --------------------------------------------------------------------

def test_full_subscriber_queue_drops_instead_of_blocking():
    reporter = _reporter()
    queue = reporter.subscribe()
    for i in range(150):
        reporter.publish("snapshot", {"i": i})
    assert queue.qsize() == 100


def test_unsubscribed_queue_receives_nothing():
    reporter = _reporter()
    queue = reporter.subscribe()
    reporter.unsubscribe(queue)
    reporter.publish("snapshot", {})
    assert queue.empty()


def test_view_lists_active_toasts():
    reporter = _reporter()
    reporter.toast(ToastLevel.INFO, "Generating POC...")
    view = reporter.view()
    assert view["toasts"][0]["message"] == "Generating POC..."
    assert view["toasts"][0]["level"] == "info"
    assert view["stale"] is False
