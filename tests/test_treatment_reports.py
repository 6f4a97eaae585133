from datetime import timedelta
from decimal import Decimal

import pytest

from services import treatment_lifecycle as lifecycle
from utils.exceptions import ValidationException


def _window(hours=1):
    now = lifecycle.utcnow()
    return now - timedelta(hours=hours), now + timedelta(hours=hours)


async def _create(service, db, payload, **overrides):
    return await service.create_treatment(db, {**payload, **overrides})


async def _finish(service, db, ref, minutes, success=True, cost=None):
    for duration in minutes:
        step = await service.add_procedure(db, ref, "Step")
        await service.complete_procedure(db, ref, step.id, duration)
    if cost is not None:
        await service.update_billing(db, ref, cost)
    await service.start(db, ref, "doctor-001")
    return await service.complete(db, ref, "doctor-001", success=success)


@pytest.mark.asyncio
async def test_find_by_patient_is_newest_first_and_limited(db, service, treatment_payload):
    created = [await _create(service, db, treatment_payload) for _ in range(12)]
    await _create(service, db, treatment_payload, patient_id="patient-002")

    found = await service.find_by_patient(db, "patient-001")

    assert len(found) == 10
    assert [r.treatment_id for r in found] == [
        r.treatment_id for r in reversed(created)
    ][:10]
    assert len(await service.find_by_patient(db, "patient-002")) == 1
    assert await service.find_by_patient(db, "patient-404") == []


@pytest.mark.asyncio
async def test_find_by_doctor_with_optional_range(db, service, treatment_payload):
    first = await _create(service, db, treatment_payload)
    second = await _create(service, db, treatment_payload)
    await _create(service, db, treatment_payload, doctor_id="doctor-002")

    found = await service.find_by_doctor(db, "doctor-001")
    assert [r.treatment_id for r in found] == [second.treatment_id, first.treatment_id]

    start, end = _window()
    assert len(await service.find_by_doctor(db, "doctor-001", start, end)) == 2

    past_start, past_end = start - timedelta(days=30), end - timedelta(days=30)
    assert await service.find_by_doctor(db, "doctor-001", past_start, past_end) == []


@pytest.mark.asyncio
async def test_find_by_type_filters_type_and_clinic(db, service, treatment_payload):
    await _create(service, db, treatment_payload)
    await _create(service, db, treatment_payload, clinic_id="clinic-002")
    await _create(service, db, treatment_payload, type="extraction", category="surgical")

    assert len(await service.find_by_type(db, "root_canal")) == 2
    assert len(await service.find_by_type(db, "root_canal", clinic_id="clinic-002")) == 1
    assert len(await service.find_by_type(db, "extraction")) == 1
    assert await service.find_by_type(db, "implant") == []


@pytest.mark.asyncio
async def test_find_by_type_rejects_unknown_type(db, service):
    with pytest.raises(ValidationException) as exc_info:
        await service.find_by_type(db, "whitening")
    assert exc_info.value.field == "type"


@pytest.mark.asyncio
async def test_find_by_date_range(db, service, treatment_payload):
    await _create(service, db, treatment_payload)
    await _create(service, db, treatment_payload, clinic_id="clinic-002")

    start, end = _window()
    assert len(await service.find_by_date_range(db, start, end)) == 2
    assert len(await service.find_by_date_range(db, start, end, clinic_id="clinic-002")) == 1
    assert len(await service.find_by_date_range(db, start, end, limit=1)) == 1
    assert await service.find_by_date_range(
        db, end + timedelta(days=1), end + timedelta(days=2)
    ) == []


@pytest.mark.asyncio
async def test_completed_treatments_latest_end_date_first(db, service, treatment_payload):
    first = await _create(service, db, treatment_payload)
    second = await _create(service, db, treatment_payload)
    open_one = await _create(service, db, treatment_payload)

    await _finish(service, db, first.treatment_id, [30])
    await _finish(service, db, second.treatment_id, [45])
    await service.start(db, open_one.treatment_id, "doctor-001")

    start, end = _window()
    completed = await service.get_completed_treatments(db, start, end)

    assert [r.treatment_id for r in completed] == [second.treatment_id, first.treatment_id]
    assert all(r.is_completed for r in completed)
    assert await service.get_completed_treatments(db, start, end, clinic_id="clinic-404") == []
    assert await service.get_completed_treatments(
        db, start - timedelta(days=30), end - timedelta(days=30)
    ) == []


@pytest.mark.asyncio
async def test_treatment_stats(db, service, treatment_payload):
    records = [await _create(service, db, treatment_payload) for _ in range(4)]
    refs = [r.treatment_id for r in records]

    await _finish(service, db, refs[0], [30, 40], cost="500.00")
    await _finish(service, db, refs[1], [80], success=False, cost="250.50")
    await service.cancel(db, refs[2], "Patient declined", "admin-1")
    await service.start(db, refs[3], "doctor-001")

    start, end = _window()
    stats = await service.get_treatment_stats(db, start, end)

    assert stats.total_treatments == 4
    assert stats.completed == 2
    assert stats.in_progress == 1
    assert stats.cancelled == 1
    assert stats.total_revenue == Decimal("750.50")
    assert stats.average_duration == 75.0
    assert stats.success_rate == 0.25


@pytest.mark.asyncio
async def test_treatment_stats_for_empty_range(db, service, treatment_payload):
    await _create(service, db, treatment_payload)
    start, end = _window()

    stats = await service.get_treatment_stats(
        db, start - timedelta(days=60), end - timedelta(days=30)
    )

    assert stats.total_treatments == 0
    assert stats.total_revenue == Decimal(0)
    assert stats.average_duration is None
    assert stats.success_rate == 0.0


@pytest.mark.asyncio
async def test_complication_stats_grouped_by_type(db, service, treatment_payload):
    first = await _create(service, db, treatment_payload)
    second = await _create(service, db, treatment_payload)
    await _create(service, db, treatment_payload)

    swelling = await service.add_complication(
        db, first.treatment_id, "minor", "Swelling", "low"
    )
    await service.add_complication(db, first.treatment_id, "minor", "Sensitivity", "low")
    await service.add_complication(db, second.treatment_id, "minor", "Bruising", "low")
    await service.add_complication(db, second.treatment_id, "major", "Perforation", "high")
    await service.resolve_complication(
        db, first.treatment_id, swelling.id, "Ice packs", "doctor-001"
    )

    start, end = _window()
    stats = await service.get_complication_stats(db, start, end)

    assert [(s.type, s.count, s.resolved) for s in stats] == [
        ("minor", 3, 1),
        ("major", 1, 0),
    ]
    assert stats[0].average_resolution_time > 0
    assert stats[1].average_resolution_time is None
    assert await service.get_complication_stats(db, start, end, clinic_id="clinic-404") == []


@pytest.mark.asyncio
async def test_completion_date_not_creation_date_selects_completed(
    db, service, make_record
):
    now = lifecycle.utcnow()
    old = await service._insert(db, make_record(created_at=now - timedelta(days=40)))
    await _finish(service, db, old.treatment_id, [50], cost="90.00")

    start, end = _window()
    completed = await service.get_completed_treatments(db, start, end)
    assert [r.treatment_id for r in completed] == [old.treatment_id]

    # Stats select by creation date
    assert (await service.get_treatment_stats(db, start, end)).total_treatments == 0
    month_ago = await service.get_treatment_stats(db, now - timedelta(days=41), end)
    assert month_ago.completed == 1
    assert month_ago.total_revenue == Decimal("90.00")
    assert month_ago.average_duration == 50.0
    assert month_ago.success_rate == 1.0


@pytest.mark.asyncio
async def test_treatment_stats_by_clinic(db, service, treatment_payload):
    first = await _create(service, db, treatment_payload)
    await _create(service, db, treatment_payload, clinic_id="clinic-002")
    await service.start(db, first.treatment_id, "doctor-001")

    start, end = _window()
    stats = await service.get_treatment_stats(db, start, end, clinic_id="clinic-001")

    assert stats.total_treatments == 1
    assert stats.in_progress == 1
    assert stats.average_duration is None
    assert stats.success_rate == 0.0
