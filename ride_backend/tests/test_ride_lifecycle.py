import logging
from datetime import timedelta
from decimal import Decimal
from uuid import uuid4

import pytest
from sqlalchemy import func, select, update

from src.api.models.ride import (
    CancelledBy,
    RejectionReason,
    Ride,
    RideCancellation,
    RideRejection,
    RideRequestGeo,
    RideStatus,
)
from src.api.services import ride_lifecycle
from src.api.services.exceptions import PreconditionFailedError, RideNotFoundError, RideValidationError
from src.api.services.pricing import calculate_base_price, compute_final_price


def _naive(dt):
    # SQLite drops tzinfo on round-trip; all stored instants are UTC.
    return None if dt is None else dt.replace(tzinfo=None)


def _count(db, model):
    return db.scalar(select(func.count()).select_from(model))


def _race_after_load(monkeypatch, status):
    """Make another writer move the ride to `status` between our read and our conditional update."""
    real_load = ride_lifecycle._load_ride

    def load_then_race(session, ride_id):
        loaded = real_load(session, ride_id)
        session.execute(
            update(Ride)
            .where(Ride.id == loaded.id)
            .values(status=status)
            .execution_options(synchronize_session=False)
        )
        return loaded

    monkeypatch.setattr(ride_lifecycle, "_load_ride", load_then_race)


@pytest.fixture
def ride(db, ride_payload, rider_id, clock, geo_sink):
    return ride_lifecycle.create_ride(db, ride_payload, rider_id, clock=clock, geo_sink=geo_sink)


@pytest.fixture
def accepted_ride(db, ride, driver_id, clock):
    return ride_lifecycle.accept_ride(db, ride.id, driver_id, clock=clock)


@pytest.fixture
def in_progress_ride(db, accepted_ride, clock):
    ride_lifecycle.driver_arrived(db, accepted_ride.id, clock=clock)
    return ride_lifecycle.start_ride(db, accepted_ride.id, clock=clock)


class TestCreateRide:
    def test_persists_requested_ride(self, ride, ride_payload, rider_id, clock):
        assert ride.status is RideStatus.requested
        assert ride.rider_id == rider_id
        assert ride.driver_id is None
        assert ride.final_price is None
        assert ride.base_price == calculate_base_price(
            ride_payload["pickup_lat"],
            ride_payload["pickup_lng"],
            ride_payload["dropoff_lat"],
            ride_payload["dropoff_lng"],
        )
        assert ride.surge_multiplier == Decimal("1.25")
        assert _naive(ride.requested_at) == _naive(clock.now())
        for field in ("accepted_at", "driver_arrived_at", "started_at", "completed_at", "cancelled_at"):
            assert getattr(ride, field) is None

    def test_round_trip_by_id(self, db, ride, session_factory):
        other = session_factory()
        try:
            fetched = ride_lifecycle.get_ride(other, ride.id)
            for field in (
                "pickup_lat",
                "pickup_lng",
                "pickup_address",
                "dropoff_lat",
                "dropoff_lng",
                "dropoff_address",
                "status",
                "base_price",
                "surge_multiplier",
            ):
                assert getattr(fetched, field) == getattr(ride, field)
        finally:
            other.close()

    def test_records_geo_marker(self, db, ride, ride_payload):
        marker = db.scalar(select(RideRequestGeo).where(RideRequestGeo.ride_id == ride.id))
        assert marker is not None
        assert marker.lat == ride_payload["pickup_lat"]
        assert marker.lng == ride_payload["pickup_lng"]

    def test_geo_marker_failure_keeps_ride(self, db, ride_payload, rider_id, clock, caplog):
        class BrokenSink:
            def publish(self, ride_id, lat, lng):
                raise RuntimeError("sink down")

        with caplog.at_level(logging.ERROR):
            ride = ride_lifecycle.create_ride(db, ride_payload, rider_id, clock=clock, geo_sink=BrokenSink())

        assert ride_lifecycle.get_ride(db, ride.id).status is RideStatus.requested
        assert _count(db, RideRequestGeo) == 0
        assert "Failed to publish geo marker" in caplog.text

    @pytest.mark.parametrize(
        "override",
        [
            {"pickup_address": ""},
            {"dropoff_address": "   "},
            {"pickup_lat": "north"},
            {"dropoff_lng": None},
            {"pickup_lat": True},
            {"dropoff_lng": False},
        ],
    )
    def test_malformed_input_writes_nothing(self, db, ride_payload, rider_id, clock, override):
        with pytest.raises(RideValidationError):
            ride_lifecycle.create_ride(db, {**ride_payload, **override}, rider_id, clock=clock)
        assert _count(db, Ride) == 0

    def test_missing_address_writes_nothing(self, db, ride_payload, rider_id, clock):
        payload = dict(ride_payload)
        del payload["dropoff_address"]
        with pytest.raises(RideValidationError):
            ride_lifecycle.create_ride(db, payload, rider_id, clock=clock)
        assert _count(db, Ride) == 0

    def test_off_peak_surge(self, db, ride_payload, rider_id, clock):
        clock.advance_to(clock.now().replace(hour=10))
        ride = ride_lifecycle.create_ride(db, ride_payload, rider_id, clock=clock)
        assert ride.surge_multiplier == Decimal("1.00")


class TestAcceptRide:
    def test_accept_freezes_final_price(self, accepted_ride, ride, driver_id, clock):
        assert accepted_ride.status is RideStatus.accepted
        assert accepted_ride.driver_id == driver_id
        assert _naive(accepted_ride.accepted_at) == _naive(clock.now())
        assert accepted_ride.final_price == compute_final_price(ride.base_price, ride.surge_multiplier)

    def test_final_price_survives_base_price_change(self, db, accepted_ride):
        frozen = accepted_ride.final_price
        db.execute(update(Ride).where(Ride.id == accepted_ride.id).values(base_price=Decimal("999.00")))
        db.commit()
        assert ride_lifecycle.get_ride(db, accepted_ride.id).final_price == frozen

    def test_accept_non_requested_leaves_ride_unmodified(self, db, accepted_ride, clock):
        before = {
            "status": accepted_ride.status,
            "driver_id": accepted_ride.driver_id,
            "final_price": accepted_ride.final_price,
            "accepted_at": accepted_ride.accepted_at,
            "updated_at": accepted_ride.updated_at,
        }
        clock.advance_to(clock.now() + timedelta(minutes=5))

        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.accept_ride(db, accepted_ride.id, uuid4(), clock=clock)

        db.expire_all()
        after = ride_lifecycle.get_ride(db, accepted_ride.id)
        for field, value in before.items():
            assert getattr(after, field) == value

    def test_unknown_ride(self, db, driver_id):
        with pytest.raises(RideNotFoundError):
            ride_lifecycle.accept_ride(db, uuid4(), driver_id)

    def test_accepts_string_ids(self, db, ride, driver_id, clock):
        accepted = ride_lifecycle.accept_ride(db, str(ride.id), str(driver_id), clock=clock)
        assert accepted.status is RideStatus.accepted
        assert accepted.driver_id == driver_id

    def test_malformed_ride_id_is_not_found(self, db, driver_id):
        with pytest.raises(RideNotFoundError):
            ride_lifecycle.accept_ride(db, "not-a-ride", driver_id)

    def test_lost_race_is_precondition_failure(self, db, ride, driver_id, clock, monkeypatch):
        _race_after_load(monkeypatch, RideStatus.accepted)

        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.accept_ride(db, ride.id, driver_id, clock=clock)


class TestRejectRide:
    def test_reject_records_rejection(self, db, ride, driver_id, clock):
        rejected = ride_lifecycle.reject_ride(
            db, ride.id, driver_id, RejectionReason.too_far, "Across the city", clock=clock
        )
        assert rejected.status is RideStatus.rejected
        assert rejected.driver_id is None
        assert _naive(rejected.updated_at) == _naive(clock.now())

        rows = db.scalars(select(RideRejection).where(RideRejection.ride_id == ride.id)).all()
        assert len(rows) == 1
        assert rows[0].driver_id == driver_id
        assert rows[0].reason is RejectionReason.too_far
        assert rows[0].notes == "Across the city"

    def test_reject_accepts_string_reason(self, db, ride, driver_id, clock):
        ride_lifecycle.reject_ride(db, ride.id, driver_id, "traffic", clock=clock)
        row = db.scalar(select(RideRejection).where(RideRejection.ride_id == ride.id))
        assert row.reason is RejectionReason.traffic
        assert row.notes is None

    def test_unknown_reason(self, db, ride, driver_id, clock):
        with pytest.raises(RideValidationError):
            ride_lifecycle.reject_ride(db, ride.id, driver_id, "bored", clock=clock)
        assert _count(db, RideRejection) == 0

    def test_reject_after_accept_fails_without_audit_row(self, db, accepted_ride, clock):
        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.reject_ride(db, accepted_ride.id, uuid4(), RejectionReason.personal, clock=clock)
        assert _count(db, RideRejection) == 0

    def test_lost_race_writes_no_rejection(self, db, ride, driver_id, clock, monkeypatch):
        _race_after_load(monkeypatch, RideStatus.accepted)

        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.reject_ride(db, ride.id, driver_id, RejectionReason.traffic, clock=clock)
        assert _count(db, RideRejection) == 0

    def test_rejected_is_terminal(self, db, ride, driver_id, clock):
        ride_lifecycle.reject_ride(db, ride.id, driver_id, RejectionReason.other, clock=clock)
        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.accept_ride(db, ride.id, uuid4(), clock=clock)
        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.cancel_ride(db, ride.id, CancelledBy.rider, clock=clock)


class TestTripProgress:
    def test_happy_path_stamps_each_timestamp(self, db, accepted_ride, clock):
        start = clock.now()

        clock.advance_to(start + timedelta(minutes=4))
        arrived = ride_lifecycle.driver_arrived(db, accepted_ride.id, clock=clock)
        assert arrived.status is RideStatus.driver_arrived
        assert _naive(arrived.driver_arrived_at) == _naive(clock.now())

        clock.advance_to(start + timedelta(minutes=6))
        started = ride_lifecycle.start_ride(db, accepted_ride.id, clock=clock)
        assert started.status is RideStatus.in_progress
        assert _naive(started.started_at) == _naive(clock.now())

        clock.advance_to(start + timedelta(minutes=30))
        completed = ride_lifecycle.complete_ride(db, accepted_ride.id, clock=clock)
        assert completed.status is RideStatus.completed
        assert _naive(completed.completed_at) == _naive(clock.now())
        assert completed.cancelled_at is None
        assert _naive(completed.updated_at) == _naive(clock.now())
        # Earlier stamps are never reset.
        assert _naive(completed.accepted_at) == _naive(start)
        assert _naive(completed.driver_arrived_at) == _naive(start + timedelta(minutes=4))

    def test_cannot_skip_arrival(self, db, accepted_ride, clock):
        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.start_ride(db, accepted_ride.id, clock=clock)

    def test_cannot_complete_requested_ride(self, db, ride, clock):
        with pytest.raises(PreconditionFailedError) as excinfo:
            ride_lifecycle.complete_ride(db, ride.id, clock=clock)
        assert excinfo.value.current_status is RideStatus.requested

    def test_arrival_requires_acceptance(self, db, ride, clock):
        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.driver_arrived(db, ride.id, clock=clock)

    def test_complete_twice_fails(self, db, in_progress_ride, clock):
        ride_lifecycle.complete_ride(db, in_progress_ride.id, clock=clock)
        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.complete_ride(db, in_progress_ride.id, clock=clock)


class TestCancelRide:
    def _penalty(self, db, ride_id):
        return db.scalar(select(RideCancellation).where(RideCancellation.ride_id == ride_id)).penalty_applied

    def test_rider_early_cancel(self, db, ride, clock):
        cancelled = ride_lifecycle.cancel_ride(db, ride.id, CancelledBy.rider, clock=clock)
        assert cancelled.status is RideStatus.cancelled
        assert _naive(cancelled.cancelled_at) == _naive(clock.now())
        assert cancelled.completed_at is None
        assert self._penalty(db, ride.id) == Decimal("5.00")

    def test_rider_late_cancel(self, db, accepted_ride, clock):
        ride_lifecycle.cancel_ride(db, accepted_ride.id, "rider", clock=clock)
        assert self._penalty(db, accepted_ride.id) == Decimal("15.00")

    def test_rider_cancel_mid_trip(self, db, in_progress_ride, clock):
        ride_lifecycle.cancel_ride(db, in_progress_ride.id, CancelledBy.rider, clock=clock)
        assert self._penalty(db, in_progress_ride.id) == Decimal("15.00")

    @pytest.mark.parametrize("party", [CancelledBy.driver, CancelledBy.system])
    def test_driver_and_system_cancel_free(self, db, ride, accepted_ride, clock, party):
        ride_lifecycle.cancel_ride(db, accepted_ride.id, party, clock=clock)
        assert self._penalty(db, accepted_ride.id) == Decimal("0.00")

    def test_driver_cancel_on_requested_is_free(self, db, ride, clock):
        ride_lifecycle.cancel_ride(db, ride.id, CancelledBy.driver, clock=clock)
        assert self._penalty(db, ride.id) == Decimal("0.00")

    def test_cancel_twice_fails(self, db, ride, clock):
        ride_lifecycle.cancel_ride(db, ride.id, CancelledBy.rider, clock=clock)
        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.cancel_ride(db, ride.id, CancelledBy.rider, clock=clock)
        assert _count(db, RideCancellation) == 1

    def test_cannot_cancel_completed(self, db, in_progress_ride, clock):
        ride_lifecycle.complete_ride(db, in_progress_ride.id, clock=clock)
        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.cancel_ride(db, in_progress_ride.id, CancelledBy.system, clock=clock)
        assert _count(db, RideCancellation) == 0

    def test_unknown_party(self, db, ride, clock):
        with pytest.raises(RideValidationError):
            ride_lifecycle.cancel_ride(db, ride.id, "dispatcher", clock=clock)

    def test_lost_race_writes_no_cancellation(self, db, ride, clock, monkeypatch):
        _race_after_load(monkeypatch, RideStatus.accepted)

        with pytest.raises(PreconditionFailedError):
            ride_lifecycle.cancel_ride(db, ride.id, CancelledBy.rider, clock=clock)
        assert _count(db, RideCancellation) == 0


class TestQueries:
    def test_list_rides_by_role(self, db, ride_payload, rider_id, driver_id, clock):
        first = ride_lifecycle.create_ride(db, ride_payload, rider_id, clock=clock)
        clock.advance_to(clock.now() + timedelta(minutes=1))
        second = ride_lifecycle.create_ride(db, ride_payload, rider_id, clock=clock)
        ride_lifecycle.create_ride(db, ride_payload, uuid4(), clock=clock)
        ride_lifecycle.accept_ride(db, first.id, driver_id, clock=clock)

        as_rider = ride_lifecycle.list_rides(db, role="rider", user_id=rider_id)
        assert [r.id for r in as_rider] == [second.id, first.id]

        as_driver = ride_lifecycle.list_rides(db, role="driver", user_id=driver_id)
        assert [r.id for r in as_driver] == [first.id]

        requested_only = ride_lifecycle.list_rides(db, role="rider", user_id=rider_id, status="requested")
        assert [r.id for r in requested_only] == [second.id]

    def test_list_rides_invalid_role(self, db, rider_id):
        with pytest.raises(RideValidationError):
            ride_lifecycle.list_rides(db, role="admin", user_id=rider_id)

    def test_available_rides_only_requested(self, db, ride_payload, rider_id, driver_id, clock):
        taken = ride_lifecycle.create_ride(db, ride_payload, rider_id, clock=clock)
        clock.advance_to(clock.now() + timedelta(minutes=1))
        open_ride = ride_lifecycle.create_ride(db, ride_payload, rider_id, clock=clock)
        ride_lifecycle.accept_ride(db, taken.id, driver_id, clock=clock)

        assert [r.id for r in ride_lifecycle.list_available_rides(db)] == [open_ride.id]

    def test_history(self, db, ride, driver_id, clock):
        ride_lifecycle.reject_ride(db, ride.id, driver_id, RejectionReason.vehicle_issue, clock=clock)
        history = ride_lifecycle.get_ride_history(db, ride.id)
        assert history.ride_id == ride.id
        assert [r.reason for r in history.rejections] == [RejectionReason.vehicle_issue]
        assert history.cancellations == []

    def test_history_unknown_ride(self, db):
        with pytest.raises(RideNotFoundError):
            ride_lifecycle.get_ride_history(db, uuid4())

    def test_get_ride_by_string_id(self, db, ride):
        assert ride_lifecycle.get_ride(db, str(ride.id)).id == ride.id
        with pytest.raises(RideNotFoundError):
            ride_lifecycle.get_ride_history(db, "garbage")
