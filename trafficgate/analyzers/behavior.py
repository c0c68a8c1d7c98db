"""
Behavior Analyzer - Scores pointer and interaction telemetry.

Metric definitions:
  interval_cv        Inter-sample time CV       - Natural timing jitter (>= 0.20)
  velocity_cv        Pointer speed CV           - Accelerating/decelerating pointer (>= 0.20)
  straight_ratio     Collinear turn share       - Curved, corrected paths (<= 0.70)
  direction_entropy  Heading entropy, 8 bins    - Movement in many directions (>= 1.5 bits)

A path is robotic when its timing is near-constant (CV < 0.05 over >= 4
deltas), its speed is constant, more than 90% of its turns are collinear, or
it is empty although the visitor stayed over 2 s without touch input.
"""
import asyncio
import math
import time
from collections import Counter
from dataclasses import dataclass
from typing import Callable, Optional

from ..errors import MalformedInput, SignalKind, SignalUnavailable

ROBOTIC_CV = 0.05
NATURAL_CV = 0.20
MIN_DELTAS_FOR_TIMING = 4
MAX_STRAIGHT_RATIO = 0.90
HUMAN_STRAIGHT_RATIO = 0.70
MIN_HUMAN_SAMPLES = 5
EMPTY_PATH_DWELL_MS = 2000
SHORT_DWELL_MS = 500
MAX_PLAUSIBLE_DWELL_MS = 30 * 60 * 1000
DIRECTION_BINS = 8
COLLINEAR_SIN = 0.05
ROBOTIC_SCORE_CAP = 25
PARTIAL_CONFIDENCE = 0.5

DEFAULT_CAPTURE_WINDOW_MS = 5000
DEFAULT_MAX_SAMPLES = 500


@dataclass(frozen=True)
class MousePoint:
    x: float
    y: float
    t: float  # milliseconds


@dataclass(frozen=True)
class BehaviorData:
    mouse_path: tuple[MousePoint, ...]
    total_time_on_page_ms: float
    scroll_events: int = 0
    click_events: int = 0
    keypress_events: int = 0
    touch_events: int = 0
    partial: bool = False

    @classmethod
    def from_payload(cls, payload: dict) -> "BehaviorData":
        """Build from the interstitial's JSON body. Raises MalformedInput."""
        try:
            raw_path = payload.get("mousePath") or []
            path = []
            for p in raw_path:
                if isinstance(p, dict):
                    path.append(MousePoint(float(p["x"]), float(p["y"]), float(p["t"])))
                else:
                    x, y, t = p
                    path.append(MousePoint(float(x), float(y), float(t)))
            dwell = float(payload.get("dwellTimeMs", 0))
            counts = [int(payload.get(k, 0) or 0) for k in
                      ("scrollEvents", "clickEvents", "keypressEvents", "touchEvents")]
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            raise MalformedInput(SignalKind.BEHAVIOR, f"bad behavior payload: {e}") from e

        if dwell < 0 or any(c < 0 for c in counts) or any(not math.isfinite(v) for p in path for v in (p.x, p.y, p.t)):
            raise MalformedInput(SignalKind.BEHAVIOR, "negative or non-finite values")
        return cls(
            mouse_path=tuple(path),
            total_time_on_page_ms=dwell,
            scroll_events=counts[0],
            click_events=counts[1],
            keypress_events=counts[2],
            touch_events=counts[3],
            partial=bool(payload.get("partial", False)),
        )


@dataclass(frozen=True)
class BehaviorAnalysis:
    is_human: bool
    has_robotic_patterns: bool
    score: int
    interval_cv: Optional[float] = None
    velocity_cv: Optional[float] = None
    straight_ratio: float = 0.0
    direction_entropy: float = 0.0
    confidence: float = 1.0
    issues: tuple[str, ...] = ()
    positive_signals: tuple[str, ...] = ()

    def summary(self) -> dict:
        return {
            "score": self.score,
            "is_human": self.is_human,
            "robotic": self.has_robotic_patterns,
            "confidence": self.confidence,
            "metrics": {
                "interval_cv": None if self.interval_cv is None else round(self.interval_cv, 4),
                "velocity_cv": None if self.velocity_cv is None else round(self.velocity_cv, 4),
                "straight_ratio": round(self.straight_ratio, 4),
                "direction_entropy": round(self.direction_entropy, 4),
            },
            "issues": list(self.issues),
        }


def _cv(values: list[float]) -> Optional[float]:
    """Coefficient of variation, None when undefined"""
    if len(values) < 2:
        return None
    mean = sum(values) / len(values)
    if mean == 0:
        return None
    variance = sum((x - mean) ** 2 for x in values) / len(values)
    return math.sqrt(variance) / mean


def _ordered(path: tuple[MousePoint, ...]) -> list[MousePoint]:
    return sorted(path, key=lambda p: p.t)


def _deltas(points: list[MousePoint]) -> list[float]:
    return [points[i].t - points[i - 1].t for i in range(1, len(points))]


def _velocities(points: list[MousePoint]) -> list[float]:
    out = []
    for i in range(1, len(points)):
        dt = points[i].t - points[i - 1].t
        if dt > 0:
            out.append(math.hypot(points[i].x - points[i - 1].x, points[i].y - points[i - 1].y) / dt)
    return out


def _segments(points: list[MousePoint]) -> list[tuple[float, float]]:
    segs = []
    for i in range(1, len(points)):
        dx = points[i].x - points[i - 1].x
        dy = points[i].y - points[i - 1].y
        if dx or dy:
            segs.append((dx, dy))
    return segs


def _straight_ratio(segs: list[tuple[float, float]]) -> tuple[float, int]:
    """Share of consecutive segment pairs that continue in the same direction"""
    turns = 0
    straight = 0
    for (ax, ay), (bx, by) in zip(segs, segs[1:]):
        turns += 1
        cross = ax * by - ay * bx
        dot = ax * bx + ay * by
        norm = math.hypot(ax, ay) * math.hypot(bx, by)
        if dot > 0 and abs(cross) / norm < COLLINEAR_SIN:
            straight += 1
    return (straight / turns if turns else 0.0), turns


def _direction_entropy(segs: list[tuple[float, float]]) -> float:
    """Shannon entropy of segment headings over 8 bins (0 to 3 bits)"""
    if not segs:
        return 0.0
    bins: Counter = Counter()
    width = 2 * math.pi / DIRECTION_BINS
    for dx, dy in segs:
        angle = math.atan2(dy, dx) % (2 * math.pi)
        bins[int(angle // width) % DIRECTION_BINS] += 1
    total = sum(bins.values())
    entropy = 0.0
    for count in bins.values():
        p = count / total
        if p > 0:
            entropy -= p * math.log2(p)
    return entropy


def analyze_behavior(data: BehaviorData) -> BehaviorAnalysis:
    """Score a behavior snapshot"""
    points = _ordered(data.mouse_path)
    deltas = _deltas(points)
    velocities = _velocities(points)
    segs = _segments(points)

    interval_cv = _cv(deltas)
    velocity_cv = _cv(velocities)
    straight_ratio, turns = _straight_ratio(segs)
    entropy = _direction_entropy(segs)
    dwell = data.total_time_on_page_ms

    issues: list[str] = []
    positives: list[str] = []

    if len(deltas) >= MIN_DELTAS_FOR_TIMING and (interval_cv is None or interval_cv < ROBOTIC_CV):
        # A None CV here means every delta was zero
        issues.append("constant_timing")
    if len(velocities) >= MIN_DELTAS_FOR_TIMING and velocity_cv is not None and velocity_cv < ROBOTIC_CV:
        issues.append("constant_velocity")
    if turns >= 3 and straight_ratio > MAX_STRAIGHT_RATIO:
        issues.append("straight_line_path")
    if not points and dwell > EMPTY_PATH_DWELL_MS and data.touch_events == 0:
        issues.append("no_pointer_activity")
    robotic = bool(issues)

    score = 50
    if interval_cv is not None and interval_cv >= NATURAL_CV:
        score += 10
        positives.append("natural_timing")
    if velocity_cv is not None and velocity_cv >= NATURAL_CV:
        score += 10
        positives.append("natural_velocity")
    if entropy >= 1.5:
        score += 10
        positives.append("varied_direction")
    elif entropy >= 1.0:
        score += 5
    if EMPTY_PATH_DWELL_MS <= dwell <= MAX_PLAUSIBLE_DWELL_MS:
        score += 5
        positives.append("plausible_dwell")
    if data.scroll_events > 0:
        score += 5
        positives.append("scrolled")
    if data.click_events > 0:
        score += 5
        positives.append("clicked")
    if data.keypress_events > 0 or data.touch_events > 0:
        score += 5
        positives.append("keyboard_or_touch")
    if dwell < SHORT_DWELL_MS:
        score -= 20
        issues.append("short_dwell")
    if robotic:
        score = min(score - 30, ROBOTIC_SCORE_CAP)

    is_human = (
        not robotic
        and len(points) >= MIN_HUMAN_SAMPLES
        and velocity_cv is not None and velocity_cv >= NATURAL_CV
        and straight_ratio <= HUMAN_STRAIGHT_RATIO
        and dwell > 0
    )

    return BehaviorAnalysis(
        is_human=is_human,
        has_robotic_patterns=robotic,
        score=max(0, min(100, score)),
        interval_cv=interval_cv,
        velocity_cv=velocity_cv,
        straight_ratio=straight_ratio,
        direction_entropy=entropy,
        confidence=PARTIAL_CONFIDENCE if data.partial else 1.0,
        issues=tuple(issues),
        positive_signals=tuple(positives),
    )


def is_human_behavior(data: BehaviorData) -> bool:
    return analyze_behavior(data).is_human


def has_robotic_patterns(data: BehaviorData) -> bool:
    return analyze_behavior(data).has_robotic_patterns


def get_behavior_score(data: BehaviorData) -> int:
    return analyze_behavior(data).score


@dataclass
class _Counters:
    scroll: int = 0
    click: int = 0
    keypress: int = 0
    touch: int = 0


class BehaviorTracker:
    """
    Collects interaction samples for one visitor and produces BehaviorData.

    Usage:
        tracker = create_behavior_tracker()
        tracker.start()
        tracker.record_mouse_move(10, 20)
        tracker.record_click()
        data = await tracker.wait_ready(timeout=3.0)
        tracker.dispose()

    Samples outside the capture window or beyond the sample cap are dropped.
    """

    def __init__(
        self,
        capture_window_ms: float = DEFAULT_CAPTURE_WINDOW_MS,
        max_samples: int = DEFAULT_MAX_SAMPLES,
        min_samples: int = MIN_HUMAN_SAMPLES,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.capture_window_ms = capture_window_ms
        self.max_samples = max_samples
        self.min_samples = min_samples
        self._clock = clock or (lambda: time.monotonic() * 1000)
        self._start: Optional[float] = None
        self._path: list[MousePoint] = []
        self._counters = _Counters()
        self._ready = asyncio.Event()
        self._disposed = False

    # -- Lifecycle --

    def start(self, now_ms: Optional[float] = None) -> None:
        if self._disposed:
            raise SignalUnavailable(SignalKind.BEHAVIOR, "tracker disposed")
        self._start = self._clock() if now_ms is None else now_ms

    @property
    def started(self) -> bool:
        return self._start is not None

    @property
    def disposed(self) -> bool:
        return self._disposed

    def dispose(self) -> None:
        self._disposed = True
        self._path.clear()
        self._ready.set()

    # -- Recording methods --

    def _accepts(self, t: float) -> bool:
        if self._disposed or self._start is None:
            return False
        return 0 <= t - self._start <= self.capture_window_ms

    def record_mouse_move(self, x: float, y: float, t: Optional[float] = None) -> None:
        t = self._clock() if t is None else t
        if not self._accepts(t) or len(self._path) >= self.max_samples:
            return
        self._path.append(MousePoint(x, y, t))
        if len(self._path) >= self.min_samples:
            self._ready.set()

    def _bump(self, name: str, t: Optional[float]) -> None:
        t = self._clock() if t is None else t
        if self._accepts(t):
            setattr(self._counters, name, getattr(self._counters, name) + 1)

    def record_scroll(self, t: Optional[float] = None) -> None:
        self._bump("scroll", t)

    def record_click(self, t: Optional[float] = None) -> None:
        self._bump("click", t)

    def record_keypress(self, t: Optional[float] = None) -> None:
        self._bump("keypress", t)

    def record_touch(self, t: Optional[float] = None) -> None:
        self._bump("touch", t)

    # -- Snapshots --

    def elapsed_ms(self) -> float:
        if self._start is None:
            return 0.0
        return max(0.0, self._clock() - self._start)

    def is_ready(self) -> bool:
        return len(self._path) >= self.min_samples or self.elapsed_ms() >= self.capture_window_ms

    def snapshot(self) -> BehaviorData:
        """Current samples. Partial when neither the window nor the sample target was reached."""
        if self._disposed:
            raise SignalUnavailable(SignalKind.BEHAVIOR, "tracker disposed")
        if self._start is None:
            raise SignalUnavailable(SignalKind.BEHAVIOR, "tracker not started")
        c = self._counters
        return BehaviorData(
            mouse_path=tuple(self._path),
            total_time_on_page_ms=min(self.elapsed_ms(), self.capture_window_ms),
            scroll_events=c.scroll,
            click_events=c.click,
            keypress_events=c.keypress,
            touch_events=c.touch,
            partial=not self.is_ready(),
        )

    async def wait_ready(self, timeout: float) -> BehaviorData:
        """
        Wait until enough samples arrive or the capture window elapses.

        Never waits longer than `timeout` seconds; on timeout the returned
        snapshot is marked partial.
        """
        remaining_window = max(0.0, (self.capture_window_ms - self.elapsed_ms()) / 1000)
        try:
            await asyncio.wait_for(self._ready.wait(), timeout=min(timeout, remaining_window))
        except asyncio.TimeoutError:
            pass
        return self.snapshot()


def create_behavior_tracker(
    capture_window_ms: float = DEFAULT_CAPTURE_WINDOW_MS,
    max_samples: int = DEFAULT_MAX_SAMPLES,
) -> BehaviorTracker:
    return BehaviorTracker(capture_window_ms=capture_window_ms, max_samples=max_samples)
