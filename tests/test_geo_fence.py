"""
test_geo_fence.py — Haversine targeting and notification fan-out.

Run with:
    pytest tests/test_geo_fence.py -v
"""

from __future__ import annotations

import math

import pytest

from backend.app.alerts.geo_fence import (
    NOTIFICATION_TITLE,
    build_message,
    fan_out,
    notify_within_radius,
    targets_within_radius,
)
from backend.app.alerts.models import Alert, NotificationType
from backend.app.alerts.store import InMemoryNotificationInbox
from backend.app.spatial.radius_utils import (
    EARTH_RADIUS_KM,
    Coordinate,
    bounding_box,
    format_distance,
    haversine,
    inside_bbox,
)

# Chennai central (13.0827°N, 80.2707°E)
CHENNAI_LAT = 13.0827
CHENNAI_LON = 80.2707

CENTER = Coordinate(CHENNAI_LAT, CHENNAI_LON)


def _north_of(center: Coordinate, km: float) -> Coordinate:
    """A point exactly ``km`` due north along the meridian."""
    return Coordinate(center.latitude + math.degrees(km / EARTH_RADIUS_KM), center.longitude)


# ═══════════════════════════════════════════════════════════════════════════
# Haversine
# ═══════════════════════════════════════════════════════════════════════════

class TestHaversine:

    def test_same_point_is_zero(self):
        assert haversine(Coordinate(0, 0), Coordinate(0, 0)) == 0.0

    def test_one_degree_latitude(self):
        dist = haversine(Coordinate(0, 0), Coordinate(1, 0))
        assert dist == pytest.approx(111.195, rel=1e-3)

    def test_symmetric(self):
        a, b = Coordinate(13.0827, 80.2707), Coordinate(12.9716, 77.5946)
        assert haversine(a, b) == pytest.approx(haversine(b, a))

    def test_known_city_pair(self):
        # Chennai → Bangalore ≈ 290 km great-circle
        dist = haversine(Coordinate(13.0827, 80.2707), Coordinate(12.9716, 77.5946))
        assert 285 < dist < 295


class TestCoordinate:

    @pytest.mark.parametrize("lat,lon", [(91, 0), (-91, 0), (0, 181), (0, -181)])
    def test_out_of_range_rejected(self, lat, lon):
        with pytest.raises(ValueError):
            Coordinate(lat, lon)

    def test_non_finite_rejected(self):
        with pytest.raises(ValueError, match="finite"):
            Coordinate(float("nan"), 0.0)

    def test_null_island_flag(self):
        assert Coordinate(0.0, 0.0).is_null_island
        assert not Coordinate(0.0, 0.1).is_null_island


class TestBoundingBox:

    def test_contains_circle_at_high_latitude(self):
        center = Coordinate(70.0, 10.0)
        box = bounding_box(center, 15.0)
        # Points on the circle in several bearings must lie inside the box
        for bearing in range(0, 360, 15):
            b = math.radians(bearing)
            d = 15.0 / EARTH_RADIUS_KM
            lat1, lon1 = center.lat_rad, center.lon_rad
            lat2 = math.asin(math.sin(lat1) * math.cos(d) + math.cos(lat1) * math.sin(d) * math.cos(b))
            lon2 = lon1 + math.atan2(
                math.sin(b) * math.sin(d) * math.cos(lat1),
                math.cos(d) - math.sin(lat1) * math.sin(lat2),
            )
            point = Coordinate(math.degrees(lat2), math.degrees(lon2))
            assert inside_bbox(point, box)

    def test_near_antimeridian_opens_longitude(self):
        box = bounding_box(Coordinate(0.0, 179.99), 10.0)
        assert box[2] == -180.0 and box[3] == 180.0


# ═══════════════════════════════════════════════════════════════════════════
# Targeting
# ═══════════════════════════════════════════════════════════════════════════

class TestTargeting:

    def test_includes_inside_excludes_outside(self):
        candidates = {
            "near": _north_of(CENTER, 1.0),
            "far": _north_of(CENTER, 4.0),
        }
        assert notify_within_radius(CENTER, 3.0, candidates) == {"near"}

    def test_boundary_is_inclusive(self):
        on_edge = _north_of(CENTER, 3.0)
        radius = haversine(CENTER, on_edge)
        assert notify_within_radius(CENTER, radius, {"edge": on_edge}) == {"edge"}

    def test_just_past_boundary_excluded(self):
        on_edge = _north_of(CENTER, 3.0)
        radius = haversine(CENTER, on_edge)
        assert notify_within_radius(CENTER, radius - 1e-6, {"edge": on_edge}) == set()

    def test_unknown_location_skipped(self):
        assert notify_within_radius(CENTER, 100.0, {"ghost": None}) == set()

    def test_distances_reported(self):
        found = targets_within_radius(CENTER, 5.0, {"a": _north_of(CENTER, 2.0)})
        assert found["a"] == pytest.approx(2.0, abs=1e-6)

    def test_negative_radius_rejected(self):
        with pytest.raises(ValueError):
            targets_within_radius(CENTER, -1.0, {})


# ═══════════════════════════════════════════════════════════════════════════
# Fan-out
# ═══════════════════════════════════════════════════════════════════════════

class TestFanOut:

    def _alert(self, **kwargs) -> Alert:
        return Alert(reporter_id="reporter", latitude=CHENNAI_LAT, longitude=CHENNAI_LON, **kwargs)

    def test_message_uses_default_label(self):
        msg = build_message(self._alert(), 1.234)
        assert msg == "Emergency incident detected 1.2km away. Tap to view live stream."

    def test_message_uses_title(self):
        msg = build_message(self._alert(title="Building fire"), 0.46)
        assert msg.startswith("Building fire detected 0.5km away.")

    def test_format_distance_one_decimal(self):
        assert format_distance(3.75) in ("3.7km", "3.8km")
        assert format_distance(0.0) == "0.0km"

    def test_sends_one_notification_per_target(self):
        sink = InMemoryNotificationInbox()
        alert = self._alert(severity_score=55)
        candidates = {
            "a": _north_of(CENTER, 1.0),
            "b": _north_of(CENTER, 2.0),
            "c": _north_of(CENTER, 20.0),
            "d": None,
        }

        notified = fan_out(sink, alert, 10.0, candidates)

        assert notified == {"a", "b"}
        sent = sink.all()
        assert {n.recipient_id for n in sent} == {"a", "b"}
        for n in sent:
            assert n.title == NOTIFICATION_TITLE
            assert n.type == NotificationType.EMERGENCY
            assert n.metadata["alert_id"] == alert.alert_id
            assert n.metadata["radius_km"] == 10.0
            assert n.metadata["severity_score"] == 55
            assert n.metadata["reason"] == "escalation"

    def test_empty_directory_sends_nothing(self):
        sink = InMemoryNotificationInbox()
        assert fan_out(sink, self._alert(), 15.0, {}) == set()
        assert sink.all() == []
