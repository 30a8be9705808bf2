from datetime import datetime, timedelta, timezone

import pytest
from sqlmodel import Session

from ems.breaks import BreakScheduler
from ems.bus import NotificationBus
from ems.db import create_db_engine, init_db
from ems.dispatch import DispatchEngine
from ems.fleet import FleetRegistry
from ems.geo import ConstantEstimator
from ems.inventory import InventoryMonitor
from ems.ledger import RequestLedger
from ems.models import Ambulance
from ems.schemas import HospitalCreate, TransportRequestCreate

NOW = datetime(2026, 3, 1, 20, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    def __init__(self, now=NOW):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


class RecordingBus(NotificationBus):
    """Keeps emitted events instead of broadcasting them."""

    def __init__(self):
        super().__init__()
        self.events = []

    def emit(self, event, payload):
        self.events.append((event, payload))

    def of_type(self, event):
        return [payload for name, payload in self.events if name == event]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def bus():
    return RecordingBus()


@pytest.fixture
def engine():
    engine = create_db_engine("sqlite://")
    init_db(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def ledger(engine, clock):
    return RequestLedger(engine, clock=clock)


@pytest.fixture
def fleet(engine, ledger, bus, clock):
    return FleetRegistry(engine, ledger, bus, clock=clock)


@pytest.fixture
def inventory(engine, bus, clock):
    return InventoryMonitor(engine, bus, clock=clock)


@pytest.fixture
def dispatcher(fleet, ledger, bus, clock):
    return DispatchEngine(fleet, ledger, ConstantEstimator(10), bus, clock=clock)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def breaks(engine, bus, clock, sleeps):
    async def fake_sleep(seconds):
        sleeps.append(seconds)
        clock.advance(seconds=seconds)

    return BreakScheduler(engine, bus, clock=clock, sleep=fake_sleep)


@pytest.fixture
def hospital(ledger):
    return ledger.register_hospital(HospitalCreate(name="General", latitude=40.0, longitude=-75.0))


@pytest.fixture
def add_ambulance(engine, clock):
    """Insert an ambulance row directly; keyword arguments override the defaults."""

    def _add(name, tier, shift_length_hours=12, shift_hours_ago=1, last_call_hours_ago=None, **fields):
        ambulance = Ambulance(
            name=name,
            designation_level=tier,
            shift_length_hours=shift_length_hours,
            shift_start=clock() - timedelta(hours=shift_hours_ago),
            last_call_end=(
                clock() - timedelta(hours=last_call_hours_ago) if last_call_hours_ago is not None else None
            ),
            latitude=fields.pop("latitude", 40.01),
            longitude=fields.pop("longitude", -75.01),
            **fields,
        )
        with Session(engine) as session:
            session.add(ambulance)
            session.commit()
            session.refresh(ambulance)
        return ambulance

    return _add


@pytest.fixture
def transport(hospital):
    def _make(call_type="BLS", **overrides):
        fields = dict(
            patient_name="Jane Doe",
            age=70,
            chief_complaint="Fall",
            call_type=call_type,
            hospital_id=hospital.id,
        )
        fields.update(overrides)
        return TransportRequestCreate(**fields)

    return _make


@pytest.fixture
def reload(engine):
    def _reload(model, ident):
        with Session(engine) as session:
            return session.get(model, ident)

    return _reload
