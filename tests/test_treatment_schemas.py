from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from schemas.treatment_schemas import (
    Complication,
    Material,
    PostOperativeAssessment,
    ProcedureStep,
    TreatmentCreate,
)


def _steps(statuses):
    return [
        ProcedureStep(step_number=i + 1, title=f"Step {i + 1}", status=status)
        for i, status in enumerate(statuses)
    ]


def test_completion_percentage_is_zero_without_procedures(make_record):
    assert make_record().completion_percentage == 0


@pytest.mark.parametrize(
    "statuses, expected",
    [
        (["completed", "pending", "pending"], 33),
        (["completed", "completed", "pending"], 67),
        (["completed", "pending"], 50),
        (["completed"] + ["pending"] * 7, 13),
        (["completed", "skipped", "in_progress", "completed"], 50),
        (["completed"] * 3, 100),
    ],
)
def test_completion_percentage_rounds_to_nearest_integer(make_record, statuses, expected):
    record = make_record(procedures=_steps(statuses))
    assert record.completion_percentage == expected


def test_total_material_cost_treats_missing_cost_as_zero(make_record):
    record = make_record(
        materials=[
            Material(name="Gutta-percha", type="filling", quantity={"value": 2, "unit": "points"}, cost="12.50"),
            Material(name="Sealer", type="cement", quantity={"value": 1, "unit": "g"}),
            Material(name="Lidocaine", type="anesthetic", quantity={"value": 1.8, "unit": "ml"}, cost=3),
        ]
    )
    assert record.total_material_cost == Decimal("15.50")


def test_has_complications_follows_post_operative_list(make_record):
    assert make_record().has_complications is False
    assert (
        make_record(post_operative_assessment=PostOperativeAssessment()).has_complications
        is False
    )

    record = make_record(
        post_operative_assessment=PostOperativeAssessment(
            complications=[
                Complication(type="minor", description="Swelling", severity="low")
            ]
        )
    )
    assert record.has_complications is True


def test_risk_level_is_highest_phase_level(make_record):
    assert make_record().risk_level == "low"

    record = make_record(
        risk_assessment={
            "pre_operative": {"level": "medium"},
            "intra_operative": {"level": "very_high"},
            "post_operative": {"level": "high"},
        }
    )
    assert record.risk_level == "very_high"

    record = make_record(
        risk_assessment={
            "pre_operative": {"level": "high"},
            "post_operative": {"level": "medium"},
        }
    )
    assert record.risk_level == "high"


def test_treatment_duration_rounds_partial_days_up(make_record):
    start = datetime(2026, 3, 1, 9, 0, tzinfo=timezone.utc)
    record = make_record(
        actual_duration={"start_date": start, "end_date": start + timedelta(days=2, hours=1)}
    )
    assert record.treatment_duration == 3


def test_treatment_duration_is_none_without_both_bounds(make_record):
    start = datetime(2026, 3, 1, tzinfo=timezone.utc)
    assert make_record().treatment_duration is None
    assert make_record(actual_duration={"start_date": start}).treatment_duration is None


def test_derived_fields_are_serialized(make_record):
    dumped = make_record().model_dump(mode="json")
    assert dumped["completion_percentage"] == 0
    assert dumped["has_complications"] is False
    assert dumped["risk_level"] == "low"


@pytest.mark.parametrize(
    "field, value",
    [
        ("type", "whitening"),
        ("category", "aesthetic"),
        ("priority", "asap"),
        ("urgency", "whenever"),
        ("prognosis", "hopeless"),
    ],
)
def test_closed_enumerations_reject_unknown_values(treatment_payload, field, value):
    with pytest.raises(ValidationError) as exc_info:
        TreatmentCreate.model_validate({**treatment_payload, field: value})
    assert exc_info.value.errors()[0]["loc"] == (field,)


def test_estimated_duration_bounds(treatment_payload):
    with pytest.raises(ValidationError):
        TreatmentCreate.model_validate(
            {**treatment_payload, "estimated_duration": {"sessions": 0, "total_minutes": 90}}
        )
    with pytest.raises(ValidationError):
        TreatmentCreate.model_validate(
            {**treatment_payload, "estimated_duration": {"sessions": 1, "total_minutes": 10}}
        )
    with pytest.raises(ValidationError):
        TreatmentCreate.model_validate({**treatment_payload, "estimated_duration": None})


def test_description_is_bounded(treatment_payload):
    with pytest.raises(ValidationError):
        TreatmentCreate.model_validate({**treatment_payload, "description": "x" * 2001})


@pytest.mark.parametrize("tooth", ["11", "48", "A", "T"])
def test_tooth_number_accepts_fdi_and_primary_letters(treatment_payload, tooth):
    data = TreatmentCreate.model_validate(
        {**treatment_payload, "teeth_involved": [{"tooth_number": tooth}]}
    )
    assert data.teeth_involved[0].tooth_number == tooth


@pytest.mark.parametrize("tooth", ["19", "50", "U", "111", ""])
def test_tooth_number_rejects_malformed_values(treatment_payload, tooth):
    with pytest.raises(ValidationError):
        TreatmentCreate.model_validate(
            {**treatment_payload, "teeth_involved": [{"tooth_number": tooth}]}
        )


def test_supplied_treatment_id_is_upper_cased(treatment_payload):
    data = TreatmentCreate.model_validate({**treatment_payload, "treatment_id": "trt202601000042"})
    assert data.treatment_id == "TRT202601000042"
