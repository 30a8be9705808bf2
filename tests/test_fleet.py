import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from ems.errors import AmbulanceNotFound, InvalidStatus
from ems.models import Ambulance, AmbulanceStatus, RequestStatus, Tier, TransportRequest
from ems.schemas import AmbulanceRegister, LocationUpdate, StatusUpdate


def test_status_parse_accepts_spaced_forms():
    assert AmbulanceStatus.parse("en route") is AmbulanceStatus.EN_ROUTE
    assert AmbulanceStatus.parse(" Arrived At Patient ") is AmbulanceStatus.ARRIVED_AT_PATIENT
    assert AmbulanceStatus.parse("available") is AmbulanceStatus.AVAILABLE


@pytest.mark.parametrize("value", ["", None, "refueling", "en-route"])
def test_unknown_status_is_rejected(value):
    with pytest.raises(InvalidStatus):
        AmbulanceStatus.parse(value)


def test_update_status_rejects_unknown_value_without_writing(fleet, add_ambulance, reload):
    unit = add_ambulance("Basic 2", Tier.BLS)

    with pytest.raises(InvalidStatus):
        fleet.update_status(unit.id, "napping")
    assert reload(Ambulance, unit.id).status == AmbulanceStatus.AVAILABLE


def test_update_status_for_unknown_ambulance(fleet):
    with pytest.raises(AmbulanceNotFound):
        fleet.update_status(404, "available")


def test_status_update_emits_event(fleet, add_ambulance, bus):
    unit = add_ambulance("Basic 2", Tier.BLS)

    fleet.update_status(unit.id, "on scene")

    assert bus.of_type("statusUpdate") == [{"ambulanceId": unit.id, "status": "on_scene"}]


def test_full_call_cycle_drives_the_request(dispatcher, fleet, add_ambulance, transport, reload, clock):
    unit = add_ambulance("Medic 3", Tier.ALS)
    result = asyncio.run(dispatcher.submit(transport("ALS")))

    fleet.update_status(unit.id, "en route")
    assert reload(TransportRequest, result.request_id).status == RequestStatus.IN_PROGRESS

    for status in ("on scene", "arrived at patient", "transporting"):
        fleet.update_status(unit.id, status)
        assert reload(TransportRequest, result.request_id).status == RequestStatus.IN_PROGRESS

    clock.advance(minutes=45)
    fleet.update_status(unit.id, "completed")
    assert reload(TransportRequest, result.request_id).status == RequestStatus.COMPLETED
    ambulance = reload(Ambulance, unit.id)
    assert ambulance.status == AmbulanceStatus.COMPLETED
    assert ambulance.last_call_end == clock()

    # the cycle only closes on an explicit update
    assert fleet.available() == []
    fleet.update_status(unit.id, "available")
    assert [a.id for a in fleet.available()] == [unit.id]


def test_completed_without_en_route_still_closes_the_request(dispatcher, fleet, add_ambulance, transport, reload):
    unit = add_ambulance("Basic 2", Tier.BLS)
    result = asyncio.run(dispatcher.submit(transport("BLS")))

    fleet.update_status(unit.id, "completed")

    assert reload(TransportRequest, result.request_id).status == RequestStatus.COMPLETED


def test_status_change_without_open_request_touches_no_request(fleet, add_ambulance, reload):
    unit = add_ambulance("Basic 2", Tier.BLS)

    ambulance = fleet.update_status(unit.id, "en route")

    assert ambulance.status == AmbulanceStatus.EN_ROUTE


def test_leaving_available_clears_a_break(fleet, add_ambulance, reload):
    unit = add_ambulance("Basic 2", Tier.BLS, on_break=True)

    fleet.update_status(unit.id, "en route")

    assert reload(Ambulance, unit.id).on_break is False


def test_location_update_upserts_by_name(fleet, bus):
    created_unit, created = fleet.update_location(LocationUpdate(name="Rover", latitude=1.0, longitude=2.0))
    moved_unit, created_again = fleet.update_location(LocationUpdate(name="Rover", latitude=1.5, longitude=2.5))

    assert created is True
    assert created_again is False
    assert moved_unit.id == created_unit.id
    assert (moved_unit.latitude, moved_unit.longitude) == (1.5, 2.5)
    assert len(fleet.list_ambulances()) == 1
    assert bus.of_type("locationUpdate")[-1] == {"name": "Rover", "latitude": 1.5, "longitude": 2.5}


def test_unregistered_unit_is_never_dispatchable(fleet):
    fleet.update_location(LocationUpdate(name="Rover", latitude=1.0, longitude=2.0))

    # no tier yet: present in the pool, eligible for nothing
    assert fleet.available()[0].designation_level is None


def test_register_sets_tier_and_shift(fleet, clock):
    unit = fleet.register(AmbulanceRegister(name="Medic 7", designation_level=3, shift_length_hours=12))

    assert unit.designation_level == Tier.ALS
    assert unit.shift_start == clock()
    assert unit.status == AmbulanceStatus.AVAILABLE


def test_register_rejects_unknown_tier():
    with pytest.raises(ValueError):
        AmbulanceRegister(name="Medic 9", designation_level=5, shift_length_hours=12)


def test_closest_by_tier_picks_nearest_free_unit(fleet, add_ambulance):
    hospital = (40.0, -75.0)
    add_ambulance("Far BLS", Tier.BLS, latitude=40.5, longitude=-75.0)
    add_ambulance("Near BLS", Tier.BLS, latitude=40.1, longitude=-75.0)
    add_ambulance("Busy ALS", Tier.ALS, latitude=40.0, longitude=-75.0, status=AmbulanceStatus.TRANSPORTING.value)
    add_ambulance("Resting CCT", Tier.CCT, latitude=40.0, longitude=-75.0, on_break=True)
    add_ambulance("Chair", Tier.WHEELCHAIR, latitude=40.0, longitude=-75.0)

    closest = fleet.closest_by_tier(*hospital)

    assert closest["Wheelchair"].name == "Chair"
    assert closest["Wheelchair"].eta_minutes == 0
    assert closest["BLS"].name == "Near BLS"
    # 0.1 degree of latitude is ~11.1 km, ~13 minutes at 50 km/h
    assert closest["BLS"].eta_minutes == 13
    assert closest["ALS"] is None
    assert closest["CCT"] is None


def test_closest_by_tier_with_custom_speed(fleet, add_ambulance):
    add_ambulance("Near BLS", Tier.BLS, latitude=40.1, longitude=-75.0)

    closest = fleet.closest_by_tier(40.0, -75.0, speed_kmh=100.0)

    assert closest["BLS"].eta_minutes == 7


def test_shift_start_defaults_apply_on_reregistration(fleet, clock):
    first = fleet.register(AmbulanceRegister(name="Medic 7", designation_level=3, shift_length_hours=12))
    clock.advance(hours=1)
    start = clock() - timedelta(hours=5)
    again = fleet.register(
        AmbulanceRegister(name="Medic 7", designation_level=4, shift_length_hours=8, shift_start=start)
    )

    assert again.id == first.id
    assert again.designation_level == Tier.CCT
    assert again.shift_start == start


def test_register_converts_an_offset_shift_start_to_utc(fleet, reload):
    plus_five = timezone(timedelta(hours=5))
    unit = fleet.register(
        AmbulanceRegister(
            name="Medic 8",
            designation_level=3,
            shift_length_hours=12,
            shift_start=datetime(2026, 3, 1, 12, 0, tzinfo=plus_five),
        )
    )

    stored = reload(Ambulance, unit.id).shift_start
    assert stored == datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)
    assert stored.utcoffset() == timedelta(0)


def test_naive_shift_start_is_read_as_utc():
    payload = AmbulanceRegister(
        name="Medic 9", designation_level=2, shift_length_hours=8, shift_start=datetime(2026, 3, 1, 7, 0)
    )

    assert payload.shift_start == datetime(2026, 3, 1, 7, 0, tzinfo=timezone.utc)


def test_status_update_accepts_the_event_key():
    update = StatusUpdate.model_validate({"ambulanceId": 7, "status": "en route"})

    assert update.ambulance_id == 7
