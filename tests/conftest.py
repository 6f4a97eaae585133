import os

os.environ.setdefault("ENVIRONMENT", "testing")
os.environ.setdefault("SQLITE_MODE", "True")
os.environ.setdefault("DB_NAME", "test_treatments")

import pytest
import pytest_asyncio

from db.database import build_engine, build_session_factory, create_tables, disconnect_db
from schemas.treatment_schemas import TreatmentRecord
from services.treatment_service import TreatmentService


@pytest_asyncio.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'treatments.db'}")
    await create_tables(engine)
    yield engine
    await disconnect_db(engine)


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest_asyncio.fixture
async def db(session_factory):
    async with session_factory() as session:
        yield session


@pytest.fixture
def service():
    # Fresh instance per test so the ID locks belong to the test's event loop
    return TreatmentService()


@pytest.fixture
def treatment_payload():
    return {
        "patient_id": "patient-001",
        "doctor_id": "doctor-001",
        "clinic_id": "clinic-001",
        "name": "Root canal on 36",
        "type": "root_canal",
        "category": "restorative",
        "description": "Endodontic treatment of the lower left first molar",
        "indication": "Irreversible pulpitis",
        "prognosis": "good",
        "teeth_involved": [{"tooth_number": "36", "surface": "occlusal"}],
        "estimated_duration": {"sessions": 2, "total_minutes": 90},
        "billing": {"estimated_cost": "450.00"},
        "created_by": "doctor-001",
    }


@pytest.fixture
def make_record(treatment_payload):
    def _make(**overrides):
        data = {**treatment_payload, "treatment_id": "TRT202601000001", **overrides}
        return TreatmentRecord.model_validate(data)

    return _make
