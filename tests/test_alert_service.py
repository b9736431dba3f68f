"""
test_alert_service.py — Tests for tap aggregation and escalation.

Covers:
    • Rolling metrics recomputed from the tap log (window, order independence)
    • Alert creation and the initial fan-out
    • The reference corroboration scenario (score 31, edge 30)
    • Escalation to "escalated" and the widened fan-out
    • Failed commits suppress fan-out
    • Rejections: unauthenticated, invalid location, missing, closed, non-reporter
    • Lifecycle transitions, media and recording state
    • Read models: detail metrics, dashboard, history, nearby, mine, active

Run with:
    pytest tests/test_alert_service.py -v
"""

from __future__ import annotations

import math
import random
import threading
from datetime import datetime, timedelta, timezone

import pytest

from backend.app.alerts.alert_service import (
    AlertAggregator,
    compute_tap_metrics,
    to_coordinate,
)
from backend.app.alerts.models import AlertStatus, Tap
from backend.app.alerts.severity import BALANCED_WEIGHTS
from backend.app.alerts.store import (
    InMemoryAlertStore,
    InMemoryLocationDirectory,
    InMemoryNotificationInbox,
)
from backend.app.core.config import Settings
from backend.app.core.errors import (
    AlertClosedError,
    InvalidLocationError,
    NotFoundError,
    UnauthenticatedError,
    UnauthorizedError,
    ValidationError,
)
from backend.app.spatial.radius_utils import EARTH_RADIUS_KM, Coordinate


# ═══════════════════════════════════════════════════════════════════════════
# Test Fixtures
# ═══════════════════════════════════════════════════════════════════════════

T0 = datetime(2026, 3, 1, 12, 0, 0, tzinfo=timezone.utc)

# Chennai central (13.0827°N, 80.2707°E)
CHENNAI = Coordinate(13.0827, 80.2707)
BANGALORE = Coordinate(12.9716, 77.5946)


def _north_of(center: Coordinate, km: float) -> Coordinate:
    return Coordinate(center.latitude + math.degrees(km / EARTH_RADIUS_KM), center.longitude)


def _at(seconds: float) -> datetime:
    return T0 + timedelta(seconds=seconds)


def _tap(reporter: str, seconds: float, alert_id: str = "ALR-X") -> Tap:
    return Tap(alert_id=alert_id, reporter_id=reporter, timestamp=_at(seconds),
               latitude=0.0, longitude=0.0)


def _tap_sequence(aggregator, alert_id, reporters, *, start=1, center=CHENNAI):
    """One tap per reporter, one second apart, starting at T0 + start."""
    results = []
    for offset, reporter in enumerate(reporters):
        results.append(aggregator.record_tap(
            alert_id, reporter, center, now=_at(start + offset),
        ))
    return results


class FailingCommitStore(InMemoryAlertStore):
    """Alert store whose commit_tap can be switched to fail."""

    def __init__(self) -> None:
        super().__init__()
        self.fail = False

    def commit_tap(self, tap, rescore):
        if self.fail:
            raise RuntimeError("storage unavailable")
        return super().commit_tap(tap, rescore)


# ═══════════════════════════════════════════════════════════════════════════
# Section 1: Rolling Metrics
# ═══════════════════════════════════════════════════════════════════════════

class TestComputeTapMetrics:

    def test_counts_all_taps_and_unique_reporters(self):
        taps = [_tap("a", 0), _tap("a", 1), _tap("b", 2)]
        metrics = compute_tap_metrics(taps, _at(2))
        assert metrics.tap_count == 3
        assert metrics.unique_reporters == 2
        assert metrics.last_tap_at == _at(2)

    def test_window_excludes_tap_exactly_at_start(self):
        taps = [_tap("a", 0), _tap("b", 5), _tap("c", 10)]
        metrics = compute_tap_metrics(taps, _at(10), window_seconds=10)
        # (T0, T0+10] holds the taps at 5 and 10 only
        assert metrics.tap_frequency == pytest.approx(0.2)

    def test_old_taps_outside_window(self):
        taps = [_tap("a", 0), _tap("b", 1)]
        assert compute_tap_metrics(taps, _at(60)).tap_frequency == 0.0

    def test_order_independent(self):
        taps = [_tap(f"r{i % 4}", i * 0.7) for i in range(20)]
        expected = compute_tap_metrics(taps, _at(14))
        rng = random.Random(7)
        for _ in range(5):
            shuffled = list(taps)
            rng.shuffle(shuffled)
            assert compute_tap_metrics(shuffled, _at(14)) == expected

    def test_empty_log(self):
        metrics = compute_tap_metrics([], _at(0))
        assert metrics.tap_count == 0
        assert metrics.last_tap_at is None


# ═══════════════════════════════════════════════════════════════════════════
# Section 2: Creation
# ═══════════════════════════════════════════════════════════════════════════

class TestCreateAlert:

    def test_initial_state(self, aggregator, store):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        alert = store.get_alert(alert_id)

        assert alert.tap_count == 1
        assert alert.severity_score == 0
        assert alert.status == AlertStatus.ACTIVE
        assert alert.created_at == T0
        assert alert.resolved_at is None
        assert len(store.list_taps(alert_id)) == 1

    def test_metadata_stored(self, aggregator, store):
        alert_id = aggregator.create_alert(
            "reporter", CHENNAI,
            {"title": "Building fire", "address": "Anna Salai", "ignored": "x"},
            now=T0,
        )
        alert = store.get_alert(alert_id)
        assert alert.title == "Building fire"
        assert alert.address == "Anna Salai"
        assert alert.description is None

    def test_initial_fan_out_within_three_km(self, aggregator, inbox, directory):
        directory.update("near", _north_of(CHENNAI, 2.0))
        directory.update("outside", _north_of(CHENNAI, 4.0))
        directory.register("no-fix")

        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)

        sent = inbox.all()
        assert [n.recipient_id for n in sent] == ["near"]
        assert sent[0].metadata["alert_id"] == alert_id
        assert sent[0].metadata["reason"] == "initial"
        assert sent[0].metadata["radius_km"] == 3.0

    def test_requires_caller(self, aggregator):
        with pytest.raises(UnauthenticatedError):
            aggregator.create_alert(None, CHENNAI)

    def test_requires_location(self, aggregator):
        with pytest.raises(InvalidLocationError):
            aggregator.create_alert("reporter", None)

    def test_null_island_allowed_by_default(self, aggregator):
        assert aggregator.create_alert("reporter", Coordinate(0.0, 0.0), now=T0)

    def test_null_island_rejected_when_configured(self, store, inbox, directory):
        strict = AlertAggregator(store, inbox, directory, reject_null_island=True)
        with pytest.raises(InvalidLocationError):
            strict.create_alert("reporter", Coordinate(0.0, 0.0))


class TestToCoordinate:

    def test_valid(self):
        assert to_coordinate(13.0, 80.0, 5.0) == Coordinate(13.0, 80.0, 5.0)

    @pytest.mark.parametrize("lat,lon", [(None, 80.0), (13.0, None), (95.0, 0.0), (0.0, 200.0)])
    def test_invalid_raises_invalid_location(self, lat, lon):
        with pytest.raises(InvalidLocationError):
            to_coordinate(lat, lon)


# ═══════════════════════════════════════════════════════════════════════════
# Section 3: Recording Taps
# ═══════════════════════════════════════════════════════════════════════════

class TestReferenceScenario:
    """Alert at (0,0); six taps within 10 s from r1×3, r2, r3, r4."""

    def test_scenario(self, aggregator, inbox, directory, store):
        directory.update("neighbour", Coordinate(0.0, 0.01))  # ≈ 1.1 km east
        alert_id = aggregator.create_alert("reporter", Coordinate(0.0, 0.0), now=T0)

        alert = store.get_alert(alert_id)
        assert (alert.tap_count, alert.severity_score, alert.status) == (1, 0, AlertStatus.ACTIVE)
        assert [n.recipient_id for n in inbox.all()] == ["neighbour"]

        results = _tap_sequence(
            aggregator, alert_id, ["r1", "r1", "r1", "r2", "r3", "r4"],
            start=5, center=Coordinate(0.0, 0.0),
        )

        assert [r.severity_score for r in results] == [12, 13, 14, 20, 26, 31]
        final = results[-1]
        assert final.unique_reporters == 5
        assert final.tap_count == 7
        assert final.tap_frequency == pytest.approx(0.6)
        assert final.severity_score == 31
        assert final.escalation_edge == 30
        assert final.escalated is True
        assert final.status == AlertStatus.ACTIVE
        assert final.notified == []

        detail = aggregator.get_alert_with_metrics(alert_id, now=_at(10))
        assert detail["severity_tier"] == "medium"
        assert detail["notification_radius_km"] == 5.0
        assert detail["tap_count"] == 7

        # Below 50 there is no second fan-out
        assert len(inbox.all()) == 1


class TestEscalation:

    @pytest.fixture
    def populated(self, aggregator, directory):
        directory.update("near", _north_of(CHENNAI, 2.0))
        directory.update("mid", _north_of(CHENNAI, 7.0))
        directory.update("far", _north_of(CHENNAI, 12.0))
        return aggregator.create_alert("u0", CHENNAI, now=T0)

    def test_each_distinct_reporter_adds_six_points(self, aggregator, populated):
        # n taps from n reporters inside the window → 0.4n + 0.6n + 5n
        results = _tap_sequence(aggregator, populated, [f"u{i}" for i in range(1, 8)])
        assert [r.severity_score for r in results] == [12, 18, 24, 30, 36, 42, 48]

    def test_medium_edge_keeps_status_active(self, aggregator, populated):
        results = _tap_sequence(aggregator, populated, ["u1", "u2", "u3", "u4"])
        crossing = results[-1]
        assert crossing.escalation_edge == 30
        assert crossing.status == AlertStatus.ACTIVE
        assert crossing.notified == []

    def test_high_edge_escalates_and_widens_fan_out(self, aggregator, populated, inbox, store):
        _tap_sequence(aggregator, populated, [f"u{i}" for i in range(1, 8)])
        before = len(inbox.all())

        result = aggregator.record_tap(populated, "u8", CHENNAI, now=_at(8))

        assert result.severity_score == 54
        assert result.escalation_edge == 50
        assert result.status == AlertStatus.ESCALATED
        assert result.notified == ["mid", "near"]
        assert store.get_alert(populated).status == AlertStatus.ESCALATED

        escalation = inbox.all()[before:]
        assert {n.recipient_id for n in escalation} == {"near", "mid"}
        assert all(n.metadata["radius_km"] == 10.0 for n in escalation)
        assert all(n.metadata["severity_score"] == 54 for n in escalation)

    def test_escalated_status_is_sticky(self, aggregator, populated):
        _tap_sequence(aggregator, populated, [f"u{i}" for i in range(1, 9)])
        later = aggregator.record_tap(populated, "u9", CHENNAI, now=_at(9))
        assert later.escalation_edge is None
        assert later.escalated is False
        assert later.status == AlertStatus.ESCALATED

    def test_failed_commit_suppresses_fan_out(self, inbox, directory):
        store = FailingCommitStore()
        aggregator = AlertAggregator(store, inbox, directory)
        directory.update("near", _north_of(CHENNAI, 2.0))
        alert_id = aggregator.create_alert("u0", CHENNAI, now=T0)
        _tap_sequence(aggregator, alert_id, [f"u{i}" for i in range(1, 8)])
        sent_before = len(inbox.all())

        store.fail = True
        with pytest.raises(RuntimeError, match="storage unavailable"):
            aggregator.record_tap(alert_id, "u8", CHENNAI, now=_at(8))

        assert len(inbox.all()) == sent_before
        alert = store.get_alert(alert_id)
        assert alert.severity_score == 48
        assert alert.tap_count == 8
        assert len(store.list_taps(alert_id)) == 8


class TestTapRejections:

    def test_unauthenticated(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        with pytest.raises(UnauthenticatedError):
            aggregator.record_tap(alert_id, None, CHENNAI)

    def test_missing_location(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        with pytest.raises(InvalidLocationError):
            aggregator.record_tap(alert_id, "u1", None)

    def test_unknown_alert(self, aggregator):
        with pytest.raises(NotFoundError):
            aggregator.record_tap("ALR-MISSING", "u1", CHENNAI)

    @pytest.mark.parametrize("terminal", [AlertStatus.RESOLVED, AlertStatus.FALSE_ALARM])
    def test_closed_alert(self, aggregator, store, terminal):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        aggregator.update_status(alert_id, "reporter", terminal, now=_at(5))
        with pytest.raises(AlertClosedError):
            aggregator.record_tap(alert_id, "u1", CHENNAI, now=_at(6))
        assert store.get_alert(alert_id).tap_count == 1


class TestConcurrentTaps:

    def test_no_lost_updates(self, aggregator, store):
        alert_id = aggregator.create_alert("reporter", CHENNAI)
        errors = []

        def worker(n: int) -> None:
            try:
                for _ in range(5):
                    aggregator.record_tap(alert_id, f"w{n}", CHENNAI)
            except Exception as exc:  # surfaced via the assertion below
                errors.append(exc)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        alert = store.get_alert(alert_id)
        assert alert.tap_count == 41
        assert alert.tap_count == len(store.list_taps(alert_id))


class TestAlertLocks:

    def test_unknown_ids_leave_no_locks(self, aggregator):
        for i in range(1000):
            with pytest.raises(NotFoundError):
                aggregator.record_tap(f"ALR-{i}", "u1", CHENNAI)
            with pytest.raises(NotFoundError):
                aggregator.update_status(f"ALR-{i}", "u1", AlertStatus.RESOLVED)
        assert len(aggregator._locks) == 0

    def test_lock_released_after_lifecycle_change(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        aggregator.update_recording_state(alert_id, "reporter", True, now=_at(1))
        aggregator.update_status(alert_id, "reporter", AlertStatus.RESOLVED, now=_at(2))
        assert len(aggregator._locks) == 0

    def test_entry_lives_while_held(self, aggregator):
        with aggregator._alert_lock("ALR-1"):
            assert set(aggregator._locks) == {"ALR-1"}
        assert aggregator._locks == {}

    def test_waiter_keeps_entry(self, aggregator):
        entered = threading.Event()
        release = threading.Event()

        def holder() -> None:
            with aggregator._alert_lock("ALR-1"):
                entered.set()
                release.wait(5)

        def waiter() -> None:
            with aggregator._alert_lock("ALR-1"):
                pass

        first = threading.Thread(target=holder)
        first.start()
        entered.wait(5)
        second = threading.Thread(target=waiter)
        second.start()
        release.set()
        first.join()
        second.join()

        assert aggregator._locks == {}


# ═══════════════════════════════════════════════════════════════════════════
# Section 4: Lifecycle
# ═══════════════════════════════════════════════════════════════════════════

class TestUpdateStatus:

    def test_resolve_stamps_resolved_at(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        alert = aggregator.update_status(alert_id, "reporter", "resolved", now=_at(300))
        assert alert.status == AlertStatus.RESOLVED
        assert alert.resolved_at == _at(300)
        assert alert.resolution_duration == timedelta(seconds=300)

    def test_false_alarm_stamps_resolved_at(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        alert = aggregator.update_status(alert_id, "reporter", AlertStatus.FALSE_ALARM, now=_at(9))
        assert alert.resolved_at == _at(9)

    def test_escalate_leaves_resolved_at_unset(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        alert = aggregator.update_status(alert_id, "reporter", "escalated", now=_at(9))
        assert alert.status == AlertStatus.ESCALATED
        assert alert.resolved_at is None

    def test_only_reporter_may_change_status(self, aggregator, store):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        with pytest.raises(UnauthorizedError):
            aggregator.update_status(alert_id, "someone-else", "resolved")
        assert store.get_alert(alert_id).status == AlertStatus.ACTIVE

    def test_unauthenticated(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        with pytest.raises(UnauthenticatedError):
            aggregator.update_status(alert_id, None, "resolved")

    def test_unknown_status(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        with pytest.raises(ValidationError):
            aggregator.update_status(alert_id, "reporter", "archived")

    def test_terminal_cannot_reopen(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        aggregator.update_status(alert_id, "reporter", "resolved", now=_at(1))
        with pytest.raises(AlertClosedError):
            aggregator.update_status(alert_id, "reporter", "active", now=_at(2))


class TestMediaAndRecording:

    def test_recording_state(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        alert = aggregator.update_recording_state(alert_id, "reporter", True, True)
        assert alert.is_recording and alert.is_streaming

        alert = aggregator.update_recording_state(alert_id, "reporter", False)
        assert not alert.is_recording
        assert alert.is_streaming  # untouched when not given

    def test_attach_media_stops_recording(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        aggregator.update_recording_state(alert_id, "reporter", True)
        alert = aggregator.attach_media(alert_id, "reporter", "media/clip.mp4", "https://cdn/clip.mp4")
        assert alert.media_storage_id == "media/clip.mp4"
        assert alert.media_url == "https://cdn/clip.mp4"
        assert alert.is_recording is False

    def test_media_reporter_only(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        with pytest.raises(UnauthorizedError):
            aggregator.attach_media(alert_id, "intruder", "x", "y")
        with pytest.raises(UnauthorizedError):
            aggregator.update_recording_state(alert_id, "intruder", True)


# ═══════════════════════════════════════════════════════════════════════════
# Section 5: Read Models
# ═══════════════════════════════════════════════════════════════════════════

class TestAlertDetail:

    def test_recent_tap_window(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        _tap_sequence(aggregator, alert_id, ["a", "b"], start=1)

        fresh = aggregator.get_alert_with_metrics(alert_id, now=_at(30))
        assert fresh["recent_tap_count"] == 3
        assert fresh["unique_users"] == 3

        stale = aggregator.get_alert_with_metrics(alert_id, now=_at(120))
        assert stale["recent_tap_count"] == 0
        assert stale["unique_users"] == 3

    def test_missing_alert(self, aggregator):
        with pytest.raises(NotFoundError):
            aggregator.get_alert_with_metrics("ALR-MISSING")

    def test_dashboard_metrics_timeline(self, aggregator):
        alert_id = aggregator.create_alert("reporter", CHENNAI, now=T0)
        _tap_sequence(aggregator, alert_id, [f"u{i}" for i in range(12)])

        metrics = aggregator.get_alert_metrics(alert_id)
        assert metrics["total_taps"] == 13
        assert metrics["unique_users"] == 13
        assert len(metrics["recent_taps"]) == 10
        assert metrics["recent_taps"][0]["reporter_id"] == "u11"
        assert metrics["status"] == "escalated"


class TestHistoryAndNearby:

    def test_history_filters_by_window_and_distance(self, aggregator):
        recent = aggregator.create_alert("a", CHENNAI, now=T0)
        newer = aggregator.create_alert("b", _north_of(CHENNAI, 5.0), now=_at(60))
        aggregator.create_alert("c", BANGALORE, now=T0)
        aggregator.create_alert("d", CHENNAI, now=T0 - timedelta(days=8))
        aggregator.update_status(recent, "a", "resolved", now=_at(90))

        history = aggregator.get_alert_history(CHENNAI, now=_at(3600))

        assert [h["alert_id"] for h in history] == [newer, recent]
        assert history[0]["distance_km"] == pytest.approx(5.0, abs=1e-3)
        assert history[1]["status"] == "resolved"

    def test_history_custom_radius(self, aggregator):
        aggregator.create_alert("a", _north_of(CHENNAI, 5.0), now=T0)
        assert aggregator.get_alert_history(CHENNAI, radius_km=2.0, now=_at(10)) == []

    def test_nearby_requires_caller(self, aggregator):
        aggregator.create_alert("a", CHENNAI, now=T0)
        assert aggregator.get_nearby_active_alerts(None, CHENNAI) == []

    def test_nearby_unknown_caller(self, aggregator):
        aggregator.create_alert("a", CHENNAI, now=T0)
        assert aggregator.get_nearby_active_alerts("stranger", CHENNAI) == []

    def test_nearby_hides_alerts_older_than_caller(self, aggregator, directory):
        aggregator.create_alert("a", CHENNAI, now=T0)
        directory.register("viewer", now=_at(30))
        newer = aggregator.create_alert("b", CHENNAI, now=_at(30))

        nearby = aggregator.get_nearby_active_alerts("viewer", CHENNAI)
        assert [a["alert_id"] for a in nearby] == [newer]

    def test_nearby_open_only_nearest_first(self, aggregator, directory):
        directory.register("viewer", now=T0)
        far = aggregator.create_alert("a", _north_of(CHENNAI, 4.0), now=T0)
        near = aggregator.create_alert("b", _north_of(CHENNAI, 1.0), now=T0)
        closed = aggregator.create_alert("c", CHENNAI, now=T0)
        aggregator.update_status(closed, "c", "false-alarm")
        aggregator.create_alert("d", _north_of(CHENNAI, 30.0), now=T0)

        nearby = aggregator.get_nearby_active_alerts("viewer", CHENNAI)
        assert [a["alert_id"] for a in nearby] == [near, far]

    def test_user_active_alerts(self, aggregator):
        first = aggregator.create_alert("me", CHENNAI, now=T0)
        second = aggregator.create_alert("me", CHENNAI, now=_at(10))
        done = aggregator.create_alert("me", CHENNAI, now=_at(20))
        aggregator.create_alert("other", CHENNAI, now=_at(30))
        aggregator.update_status(done, "me", "resolved")

        mine = aggregator.get_user_active_alerts("me")
        assert [a.alert_id for a in mine] == [second, first]
        assert aggregator.get_user_active_alerts(None) == []

    def test_active_alerts_excludes_escalated(self, aggregator):
        active = aggregator.create_alert("a", CHENNAI, now=T0)
        escalated = aggregator.create_alert("b", CHENNAI, now=T0)
        aggregator.update_status(escalated, "b", "escalated")

        assert [a.alert_id for a in aggregator.get_active_alerts()] == [active]


# ═══════════════════════════════════════════════════════════════════════════
# Section 6: Configuration
# ═══════════════════════════════════════════════════════════════════════════

class TestFromSettings:

    def test_preset_and_windows(self, store, inbox, directory):
        settings = Settings(
            SEVERITY_WEIGHT_PRESET="balanced",
            TAP_WINDOW_SECONDS=20.0,
            REJECT_NULL_ISLAND=True,
        )
        aggregator = AlertAggregator.from_settings(store, inbox, directory, settings)
        assert aggregator.weights == BALANCED_WEIGHTS
        assert aggregator.tap_window_seconds == 20.0
        assert aggregator.reject_null_island is True

    def test_policy_report(self, aggregator):
        policy = aggregator.severity_policy()
        assert policy["weights"] == {"tap_weight": 20, "freq_weight": 30, "reporter_weight": 50}
        assert policy["escalation_edges"] == [30, 50, 80]
        assert policy["radius_by_tier_km"]["critical"] == 15.0

    def test_rejects_non_positive_window(self, store, inbox, directory):
        with pytest.raises(ValueError):
            AlertAggregator(store, inbox, directory, tap_window_seconds=0)
