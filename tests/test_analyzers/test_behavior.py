"""
Tests for Behavior Analyzer and BehaviorTracker
"""
import pytest
from trafficgate.analyzers.behavior import (
    BehaviorData,
    BehaviorTracker,
    MousePoint,
    analyze_behavior,
    is_human_behavior,
    has_robotic_patterns,
    get_behavior_score,
    create_behavior_tracker,
    ROBOTIC_SCORE_CAP,
)
from trafficgate.errors import MalformedInput, SignalKind, SignalUnavailable

# Wandering path with uneven timing
HUMAN_PATH = (
    (0, 0, 0), (10, 5, 16), (25, 3, 45), (30, 20, 70), (22, 35, 110),
    (40, 42, 128), (55, 30, 170), (60, 50, 190), (45, 60, 240), (70, 65, 262),
)


def make_data(points, dwell=4000, **kwargs) -> BehaviorData:
    return BehaviorData(
        mouse_path=tuple(MousePoint(x, y, t) for x, y, t in points),
        total_time_on_page_ms=dwell,
        **kwargs,
    )


class TestHumanBehavior:
    def test_natural_path_is_human(self):
        analysis = analyze_behavior(make_data(HUMAN_PATH, scroll_events=2, click_events=1))
        assert analysis.is_human
        assert not analysis.has_robotic_patterns
        assert analysis.score >= 80
        assert analysis.interval_cv >= 0.2
        assert analysis.velocity_cv >= 0.2
        assert analysis.straight_ratio <= 0.7

    def test_helpers_agree(self):
        data = make_data(HUMAN_PATH)
        assert is_human_behavior(data)
        assert not has_robotic_patterns(data)
        assert get_behavior_score(data) == analyze_behavior(data).score

    def test_unordered_samples_are_sorted(self):
        shuffled = tuple(reversed(HUMAN_PATH))
        assert analyze_behavior(make_data(shuffled)) == analyze_behavior(make_data(HUMAN_PATH))

    def test_too_few_samples_not_human(self):
        analysis = analyze_behavior(make_data(HUMAN_PATH[:3]))
        assert not analysis.is_human
        assert not analysis.has_robotic_patterns


class TestRoboticBehavior:
    def test_straight_constant_path(self):
        points = [(i * 10, i * 5, i * 16) for i in range(10)]
        analysis = analyze_behavior(make_data(points))
        assert analysis.has_robotic_patterns
        assert not analysis.is_human
        assert {"constant_timing", "constant_velocity", "straight_line_path"} <= set(analysis.issues)
        assert analysis.score <= ROBOTIC_SCORE_CAP

    def test_constant_timing_on_curved_path(self):
        points = [(x, y, i * 20) for i, (x, y, _) in enumerate(HUMAN_PATH)]
        analysis = analyze_behavior(make_data(points))
        assert "constant_timing" in analysis.issues
        assert analysis.has_robotic_patterns

    def test_empty_path_with_long_dwell(self):
        analysis = analyze_behavior(make_data((), dwell=2500))
        assert analysis.has_robotic_patterns
        assert "no_pointer_activity" in analysis.issues
        assert analysis.score == ROBOTIC_SCORE_CAP

    def test_empty_path_with_touch_is_not_robotic(self):
        analysis = analyze_behavior(make_data((), dwell=2500, touch_events=1))
        assert not analysis.has_robotic_patterns
        assert not analysis.is_human

    def test_short_dwell_penalized(self):
        analysis = analyze_behavior(make_data((), dwell=300))
        assert not analysis.has_robotic_patterns
        assert "short_dwell" in analysis.issues
        assert analysis.score == 30

    def test_score_range(self):
        for data in (make_data(()), make_data(HUMAN_PATH), make_data([(0, 0, 0)] * 6, dwell=0)):
            assert 0 <= analyze_behavior(data).score <= 100


class TestPayload:
    def test_from_payload(self):
        data = BehaviorData.from_payload({
            "mousePath": [{"x": x, "y": y, "t": t} for x, y, t in HUMAN_PATH],
            "dwellTimeMs": 4000,
            "scrollEvents": 2,
            "clickEvents": 1,
        })
        assert len(data.mouse_path) == len(HUMAN_PATH)
        assert data.scroll_events == 2
        assert not data.partial

    def test_list_points(self):
        data = BehaviorData.from_payload({"mousePath": [[1, 2, 3]], "dwellTimeMs": 10})
        assert data.mouse_path == (MousePoint(1.0, 2.0, 3.0),)

    @pytest.mark.parametrize("payload", [
        {"mousePath": "garbage"},
        {"mousePath": [{"x": "a", "y": 1, "t": 0}]},
        {"mousePath": [{"x": 1}]},
        {"dwellTimeMs": -5},
        {"clickEvents": "many"},
        ["not", "a", "dict"],
    ])
    def test_malformed(self, payload):
        with pytest.raises(MalformedInput) as exc:
            BehaviorData.from_payload(payload)
        assert exc.value.signal == SignalKind.BEHAVIOR

    def test_partial_halves_confidence(self):
        analysis = analyze_behavior(make_data(HUMAN_PATH, partial=True))
        assert analysis.confidence == 0.5


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now


class TestBehaviorTracker:
    def test_records_within_window(self):
        clock = FakeClock()
        tracker = BehaviorTracker(capture_window_ms=5000, clock=clock)
        tracker.start()
        for x, y, t in HUMAN_PATH:
            tracker.record_mouse_move(x, y, t)
        tracker.record_scroll(100)
        tracker.record_click(200)
        clock.now = 300
        data = tracker.snapshot()
        assert len(data.mouse_path) == len(HUMAN_PATH)
        assert data.scroll_events == 1
        assert data.click_events == 1
        assert data.total_time_on_page_ms == 300
        assert not data.partial

    def test_samples_outside_window_dropped(self):
        tracker = BehaviorTracker(capture_window_ms=1000, clock=FakeClock())
        tracker.start()
        tracker.record_mouse_move(1, 1, 500)
        tracker.record_mouse_move(2, 2, 1500)
        tracker.record_click(2000)
        data = tracker.snapshot()
        assert len(data.mouse_path) == 1
        assert data.click_events == 0

    def test_samples_before_start_dropped(self):
        tracker = BehaviorTracker(clock=FakeClock())
        tracker.record_mouse_move(1, 1, 0)
        tracker.start()
        assert tracker.snapshot().mouse_path == ()

    def test_max_samples(self):
        tracker = BehaviorTracker(max_samples=3, clock=FakeClock())
        tracker.start()
        for i in range(10):
            tracker.record_mouse_move(i, i, i)
        assert len(tracker.snapshot().mouse_path) == 3

    def test_partial_before_ready(self):
        tracker = BehaviorTracker(capture_window_ms=5000, clock=FakeClock())
        tracker.start()
        tracker.record_mouse_move(1, 1, 0)
        assert tracker.snapshot().partial

    def test_not_partial_after_window(self):
        clock = FakeClock()
        tracker = BehaviorTracker(capture_window_ms=5000, clock=clock)
        tracker.start()
        clock.now = 6000
        data = tracker.snapshot()
        assert not data.partial
        assert data.total_time_on_page_ms == 5000

    def test_snapshot_requires_start(self):
        with pytest.raises(SignalUnavailable):
            BehaviorTracker(clock=FakeClock()).snapshot()

    def test_dispose(self):
        tracker = create_behavior_tracker()
        tracker.start()
        tracker.dispose()
        assert tracker.disposed
        tracker.record_mouse_move(1, 1)
        with pytest.raises(SignalUnavailable):
            tracker.snapshot()
        with pytest.raises(SignalUnavailable):
            tracker.start()

    @pytest.mark.asyncio
    async def test_wait_ready_returns_when_enough_samples(self):
        tracker = BehaviorTracker(clock=FakeClock())
        tracker.start()
        for x, y, t in HUMAN_PATH[:5]:
            tracker.record_mouse_move(x, y, t)
        data = await tracker.wait_ready(timeout=1.0)
        assert not data.partial
        assert len(data.mouse_path) == 5

    @pytest.mark.asyncio
    async def test_wait_ready_timeout_is_partial(self):
        tracker = BehaviorTracker(capture_window_ms=5000, clock=FakeClock())
        tracker.start()
        tracker.record_mouse_move(1, 1, 0)
        data = await tracker.wait_ready(timeout=0.05)
        assert data.partial
        assert len(data.mouse_path) == 1
