from datetime import datetime, timedelta, timezone

import pytest

from careline.engine import build_memory_engine
from careline.models import Doctor, Patient
from careline.notifications import RecordingNotificationSender


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime) -> None:
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now += timedelta(**kwargs)
        return self.now


@pytest.fixture
def clock():
    # a Monday, one hour before the reference hour
    return FakeClock(datetime(2024, 3, 4, 8, 0, tzinfo=timezone.utc))


@pytest.fixture
def doctor():
    return Doctor(id="doc-1", firstname="Ada", lastname="Okafor", email="ada.okafor@clinic.test")


@pytest.fixture
def patient():
    return Patient(id="pat-1", firstname="Lena", lastname="Marsh", email="lena@example.test")


@pytest.fixture
def other_patient():
    return Patient(id="pat-2", firstname="Tomas", lastname="Reyes")


@pytest.fixture
def sender():
    return RecordingNotificationSender()


@pytest.fixture
def tasks():
    return {"measure": lambda ctx: {"value": 5}}


@pytest.fixture
def make_engine(clock, doctor, patient, other_patient, sender, tasks):
    engines = []

    def factory(config=None, **overrides):
        kwargs = dict(
            patients=[patient, other_patient],
            doctors=[doctor],
            sender=sender,
            tasks=tasks,
            clock=clock,
        )
        kwargs.update(overrides)
        eng = build_memory_engine(config, **kwargs)
        engines.append(eng)
        return eng

    yield factory
    for eng in engines:
        eng.close()


@pytest.fixture
def engine(make_engine):
    return make_engine()


@pytest.fixture
def audit_types(engine):
    def collect():
        engine.audit.flush()
        return [r.action_type for r in engine.audit_log.records]

    return collect


def _draft(*steps, patient_ids=("pat-1",), **kwargs):
    data = {"name": "Renal follow-up", "doctor_id": "doc-1", "patient_ids": list(patient_ids), "steps": list(steps)}
    data.update(kwargs)
    return data


@pytest.fixture
def draft():
    """Build a workflow creation payload for ``doc-1`` from step dictionaries."""
    return _draft


@pytest.fixture
def create(engine):
    """Create a workflow on the default engine from step dictionaries."""

    def factory(*steps, **kwargs):
        return engine.service.create_workflow(_draft(*steps, **kwargs))

    return factory


@pytest.fixture
def started(engine, create):
    """Create a workflow, start it for ``pat-1`` and return it with its steps by name."""

    def factory(*steps, **kwargs):
        wf = create(*steps, **kwargs)
        engine.service.start_workflow(wf.id, "pat-1")
        by_name = {s.name: s for s in engine.steps.find(wf.id)}
        return wf, by_name

    return factory
