# src/services/treatment_lifecycle.py
"""
Stateless operations over a TreatmentRecord.

Every operation works on a deep copy of the record it is given and returns a
MutationResult. ``changed`` is False when the operation resolved to a no-op
(an unknown procedure or complication id); the record in such a result is
the caller's original and must not be written back.

Nothing here touches the database. TreatmentService loads the record, calls
one of these operations, runs prepare_for_commit and performs the
version-checked write.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional, Union

from core.config import settings
from models.treatment import (
    ALLOWED_TRANSITIONS,
    ClinicalNoteType,
    ProcedureStatus,
    TreatmentPhase,
    TreatmentStatus,
)
from schemas.treatment_schemas import (
    Assistant,
    Billing,
    BillingLine,
    BillingUpdate,
    ClinicalNote,
    Complication,
    ComplicationCreate,
    Consent,
    ConsentCreate,
    EquipmentUsage,
    FollowUpAppointment,
    Material,
    PatientSatisfaction,
    PostOperativeAssessment,
    PreOperativeAssessment,
    ProcedureCreate,
    ProcedureStep,
    QualityMetric,
    QualityMetricCreate,
    TreatmentImage,
    TreatmentRecord,
    VitalSigns,
)
from utils.exceptions import InvalidTransitionException, ValidationException


@dataclass
class MutationResult:
    record: TreatmentRecord
    outcome: Any = None
    changed: bool = True


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _copy(record: TreatmentRecord) -> TreatmentRecord:
    return record.model_copy(deep=True)


def _touch(record: TreatmentRecord, actor: Optional[str]) -> None:
    if actor:
        record.metadata.last_modified_by = actor


# --- Identifier and pre-commit -----------------------------------------------


def treatment_id_prefix(now: Optional[datetime] = None, prefix: Optional[str] = None) -> str:
    """``TRT<YYYY><MM>`` for the month of ``now``"""
    now = now or utcnow()
    return f"{prefix or settings.TREATMENT_ID_PREFIX}{now.year:04d}{now.month:02d}"


def build_treatment_id(existing_count: int, now: Optional[datetime] = None,
                       prefix: Optional[str] = None) -> str:
    """Next identifier given how many records already carry the month prefix"""
    if existing_count < 0:
        raise ValueError("existing_count cannot be negative")
    return f"{treatment_id_prefix(now, prefix)}{existing_count + 1:06d}"


def sequence_number(treatment_id: str, month_prefix: str) -> Optional[int]:
    """The 6-digit suffix of an identifier generated under ``month_prefix``,
    or None when the identifier does not have that shape"""
    suffix = treatment_id[len(month_prefix):]
    if not treatment_id.startswith(month_prefix) or len(suffix) != 6 or not suffix.isdigit():
        return None
    return int(suffix)


def prepare_for_commit(record: TreatmentRecord, is_new: bool,
                       now: Optional[datetime] = None) -> TreatmentRecord:
    """Validate and derive stored fields before a write.

    New records get version 1 and a creation timestamp and must already
    carry a treatment_id. Existing records get their version bumped by one.
    The cached ``billing.material_costs`` is re-synced with the materials.
    Raises pydantic.ValidationError when the aggregate is not valid.
    """
    now = now or utcnow()
    data = record.model_dump()
    prepared = TreatmentRecord.model_validate(data)

    if is_new:
        if not prepared.treatment_id:
            raise ValidationException(
                "treatment_id must be assigned before the first write",
                field="treatment_id",
            )
        prepared.metadata.version = 1
        if prepared.created_at is None:
            prepared.created_at = now
    else:
        prepared.metadata.version += 1
        prepared.updated_at = now

    if prepared.billing is not None:
        prepared.billing.material_costs = prepared.total_material_cost

    return prepared


# --- Clinical documentation --------------------------------------------------


def _append_note(record: TreatmentRecord, content: str,
                 note_type: Union[str, ClinicalNoteType] = ClinicalNoteType.PROGRESS,
                 author: Optional[str] = None) -> ClinicalNote:
    note = ClinicalNote(
        content=content,
        type=note_type or ClinicalNoteType.PROGRESS,
        author=author,
        timestamp=utcnow(),
    )
    if record.documentation.clinical_notes is None:
        record.documentation.clinical_notes = []
    record.documentation.clinical_notes.append(note)
    return note


def add_clinical_note(record: TreatmentRecord, content: str,
                      note_type: Union[str, ClinicalNoteType] = ClinicalNoteType.PROGRESS,
                      author: Optional[str] = None) -> MutationResult:
    updated = _copy(record)
    note = _append_note(updated, content, note_type, author)
    _touch(updated, author)
    return MutationResult(updated, note)


def add_image(record: TreatmentRecord, image_type: str, url: Optional[str] = None,
              caption: Optional[str] = None, taken_by: Optional[str] = None) -> MutationResult:
    image = TreatmentImage(
        type=image_type, url=url, caption=caption, taken_by=taken_by, taken_at=utcnow()
    )
    updated = _copy(record)
    updated.documentation.images.append(image)
    _touch(updated, taken_by)
    return MutationResult(updated, image)


# --- Status transitions ------------------------------------------------------


def _status(value: Union[str, TreatmentStatus]) -> TreatmentStatus:
    try:
        return TreatmentStatus(value)
    except ValueError:
        raise ValidationException(f"Invalid treatment status '{value}'", field="status")


def transition(record: TreatmentRecord, target: Union[str, TreatmentStatus],
               actor: Optional[str] = None, reason: Optional[str] = None,
               new_date: Optional[datetime] = None, success: bool = True) -> MutationResult:
    """Move the record to ``target`` and fire that transition's side effects.

    Re-entering the current status only records the actor. Moves not listed
    in ALLOWED_TRANSITIONS raise InvalidTransitionException: leaving a
    terminal status, or going back along planned, scheduled, in_progress,
    completed.
    """
    target = _status(target)
    current = TreatmentStatus(record.status)

    updated = _copy(record)
    _touch(updated, actor)

    if target == current:
        return MutationResult(updated, updated.status)

    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransitionException(
            current.value, target.value, resource_id=record.treatment_id
        )

    updated.status = target.value

    if target == TreatmentStatus.IN_PROGRESS:
        updated.phase = TreatmentPhase.TREATMENT.value
        if updated.actual_duration.start_date is None:
            updated.actual_duration.start_date = utcnow()
            _append_note(updated, "Treatment started", ClinicalNoteType.PROGRESS, actor)
        else:
            _append_note(updated, "Treatment resumed", ClinicalNoteType.PROGRESS, actor)

    elif target == TreatmentStatus.COMPLETED:
        updated.phase = TreatmentPhase.RECOVERY.value
        if updated.actual_duration.end_date is None:
            updated.actual_duration.end_date = utcnow()
        updated.outcomes.success = success
        completed = [
            p for p in updated.procedures if p.status == ProcedureStatus.COMPLETED
        ]
        updated.actual_duration.sessions = len(completed)
        updated.actual_duration.total_minutes = sum(
            p.actual_duration or 0 for p in updated.procedures
        )
        _append_note(updated, "Treatment completed", ClinicalNoteType.PROGRESS, actor)

    elif target == TreatmentStatus.CANCELLED:
        _append_note(
            updated, f"Treatment cancelled: {reason or 'no reason given'}",
            ClinicalNoteType.PLAN, actor,
        )

    elif target == TreatmentStatus.POSTPONED:
        reason = reason or "no reason given"
        if new_date:
            note = f"Treatment postponed until {new_date.isoformat()}: {reason}"
        else:
            note = f"Treatment postponed: {reason}"
        _append_note(updated, note, ClinicalNoteType.PLAN, actor)

    elif target in (TreatmentStatus.ON_HOLD, TreatmentStatus.FAILED, TreatmentStatus.PARTIAL):
        label = target.value.replace("_", " ")
        note = f"Treatment marked {label}"
        if reason:
            note = f"{note}: {reason}"
        _append_note(updated, note, ClinicalNoteType.PLAN, actor)

    return MutationResult(updated, updated.status)


def start(record: TreatmentRecord, started_by: Optional[str] = None) -> MutationResult:
    return transition(record, TreatmentStatus.IN_PROGRESS, actor=started_by)


def complete(record: TreatmentRecord, completed_by: Optional[str] = None,
             success: bool = True) -> MutationResult:
    return transition(record, TreatmentStatus.COMPLETED, actor=completed_by, success=success)


def cancel(record: TreatmentRecord, reason: str,
           cancelled_by: Optional[str] = None) -> MutationResult:
    return transition(record, TreatmentStatus.CANCELLED, actor=cancelled_by, reason=reason)


def postpone(record: TreatmentRecord, reason: str, postponed_by: Optional[str] = None,
             new_date: Optional[datetime] = None) -> MutationResult:
    return transition(
        record, TreatmentStatus.POSTPONED, actor=postponed_by, reason=reason, new_date=new_date
    )


def schedule(record: TreatmentRecord, scheduled_by: Optional[str] = None) -> MutationResult:
    return transition(record, TreatmentStatus.SCHEDULED, actor=scheduled_by)


def put_on_hold(record: TreatmentRecord, reason: Optional[str] = None,
                held_by: Optional[str] = None) -> MutationResult:
    return transition(record, TreatmentStatus.ON_HOLD, actor=held_by, reason=reason)


def mark_failed(record: TreatmentRecord, reason: Optional[str] = None,
                marked_by: Optional[str] = None) -> MutationResult:
    return transition(record, TreatmentStatus.FAILED, actor=marked_by, reason=reason)


def mark_partial(record: TreatmentRecord, reason: Optional[str] = None,
                 marked_by: Optional[str] = None) -> MutationResult:
    return transition(record, TreatmentStatus.PARTIAL, actor=marked_by, reason=reason)


# --- Procedure steps ---------------------------------------------------------


def add_procedure(record: TreatmentRecord, title: str, description: Optional[str] = None,
                  estimated_duration: Optional[int] = None) -> MutationResult:
    data = ProcedureCreate(
        title=title, description=description, estimated_duration=estimated_duration
    )
    updated = _copy(record)
    step = ProcedureStep(step_number=len(updated.procedures) + 1, **data.model_dump())
    updated.procedures.append(step)
    return MutationResult(updated, step)


def start_procedure(record: TreatmentRecord, procedure_id: Any,
                    performed_by: Optional[str] = None) -> MutationResult:
    if record.find_procedure(procedure_id) is None:
        return MutationResult(record, None, changed=False)

    updated = _copy(record)
    step = updated.find_procedure(procedure_id)
    step.status = ProcedureStatus.IN_PROGRESS.value
    step.started_at = utcnow()
    step.performed_by = performed_by
    _touch(updated, performed_by)
    return MutationResult(updated, step)


def complete_procedure(record: TreatmentRecord, procedure_id: Any, actual_duration: int,
                       notes: Optional[str] = None) -> MutationResult:
    if record.find_procedure(procedure_id) is None:
        return MutationResult(record, None, changed=False)
    if actual_duration is None or actual_duration < 0:
        raise ValidationException(
            "Actual duration cannot be negative", field="actual_duration"
        )

    updated = _copy(record)
    step = updated.find_procedure(procedure_id)
    step.status = ProcedureStatus.COMPLETED.value
    step.completed_at = utcnow()
    step.actual_duration = actual_duration
    if notes:
        step.notes = notes
    return MutationResult(updated, step)


# --- Materials, equipment, staff ---------------------------------------------


def add_material(record: TreatmentRecord,
                 material: Union[Material, Dict[str, Any]]) -> MutationResult:
    material = Material.model_validate(
        material.model_dump() if isinstance(material, Material) else material
    )
    updated = _copy(record)
    updated.materials.append(material)
    if updated.billing is not None:
        updated.billing.material_costs = updated.total_material_cost
    return MutationResult(updated, material)


def add_equipment_usage(record: TreatmentRecord,
                        usage: Union[EquipmentUsage, Dict[str, Any]]) -> MutationResult:
    usage = EquipmentUsage.model_validate(
        usage.model_dump() if isinstance(usage, EquipmentUsage) else usage
    )
    updated = _copy(record)
    updated.equipment.append(usage)
    return MutationResult(updated, usage)


def add_assistant(record: TreatmentRecord,
                  assistant: Union[Assistant, Dict[str, Any]]) -> MutationResult:
    assistant = Assistant.model_validate(
        assistant.model_dump() if isinstance(assistant, Assistant) else assistant
    )
    updated = _copy(record)
    updated.assistants.append(assistant)
    return MutationResult(updated, assistant)


# --- Complications -----------------------------------------------------------


def add_complication(record: TreatmentRecord, complication_type: str, description: str,
                     severity: str, discovered_by: Optional[str] = None) -> MutationResult:
    data = ComplicationCreate(
        type=complication_type,
        description=description,
        severity=severity,
        discovered_by=discovered_by,
    )
    updated = _copy(record)
    if updated.post_operative_assessment is None:
        updated.post_operative_assessment = PostOperativeAssessment()

    complication = Complication(occurred=utcnow(), **data.model_dump())
    updated.post_operative_assessment.complications.append(complication)
    _append_note(
        updated, f"Complication: {data.description}", ClinicalNoteType.COMPLICATION,
        discovered_by,
    )
    _touch(updated, discovered_by)
    return MutationResult(updated, complication)


def resolve_complication(record: TreatmentRecord, complication_id: Any, resolution: str,
                         resolved_by: Optional[str] = None) -> MutationResult:
    if record.find_complication(complication_id) is None:
        return MutationResult(record, None, changed=False)
    if not resolution or not resolution.strip():
        raise ValidationException("Resolution is required", field="resolution")

    updated = _copy(record)
    complication = updated.find_complication(complication_id)
    resolved_at = utcnow()
    # Resolution is always recorded strictly after the occurrence
    if complication.occurred and resolved_at <= complication.occurred:
        resolved_at = complication.occurred + timedelta(microseconds=1)

    complication.resolved = True
    complication.resolution = resolution
    complication.resolved_at = resolved_at
    complication.resolved_by = resolved_by
    _append_note(
        updated, f"Complication resolved: {resolution}", ClinicalNoteType.PROGRESS,
        resolved_by,
    )
    _touch(updated, resolved_by)
    return MutationResult(updated, complication)


# --- Assessments, consent, quality, follow-up, billing ----------------------


def record_vitals(record: TreatmentRecord, vitals: Union[VitalSigns, Dict[str, Any]],
                  assessed_by: Optional[str] = None) -> MutationResult:
    vitals = VitalSigns.model_validate(
        vitals.model_dump() if isinstance(vitals, VitalSigns) else vitals
    )
    updated = _copy(record)
    if updated.pre_operative_assessment is None:
        updated.pre_operative_assessment = PreOperativeAssessment()

    assessment = updated.pre_operative_assessment
    assessment.vital_signs = vitals
    assessment.assessed_by = assessed_by
    assessment.assessed_at = utcnow()
    _append_note(updated, "Vital signs recorded", ClinicalNoteType.OBSERVATION, assessed_by)
    _touch(updated, assessed_by)
    return MutationResult(updated, vitals)


def obtain_consent(record: TreatmentRecord, obtained_by: str,
                   witnessed_by: Optional[str] = None,
                   risks_explained: Optional[List[str]] = None,
                   alternatives_discussed: Optional[List[str]] = None,
                   form: Optional[str] = None) -> MutationResult:
    data = ConsentCreate(
        obtained_by=obtained_by,
        witnessed_by=witnessed_by,
        form=form,
        risks_explained=risks_explained or [],
        alternatives_discussed=alternatives_discussed or [],
    )
    updated = _copy(record)
    updated.consent = Consent(
        obtained=True,
        obtained_at=utcnow(),
        questions_answered=True,
        patient_understands=True,
        **data.model_dump(),
    )
    _append_note(updated, "Informed consent obtained", ClinicalNoteType.PLAN, obtained_by)
    _touch(updated, obtained_by)
    return MutationResult(updated, updated.consent)


def add_quality_metric(record: TreatmentRecord, metric: str, value: Any,
                       target: Any = None, unit: Optional[str] = None,
                       assessed_by: Optional[str] = None,
                       notes: Optional[str] = None) -> MutationResult:
    data = QualityMetricCreate(
        metric=metric, value=value, target=target, unit=unit,
        assessed_by=assessed_by, notes=notes,
    )
    quality_metric = QualityMetric(assessed_at=utcnow(), **data.model_dump())
    updated = _copy(record)
    updated.quality_metrics.append(quality_metric)
    return MutationResult(updated, quality_metric)


def schedule_follow_up(record: TreatmentRecord, follow_up_type: str,
                       scheduled_date: datetime, purpose: Optional[str] = None,
                       appointment_id: Optional[str] = None) -> MutationResult:
    appointment = FollowUpAppointment(
        type=follow_up_type,
        scheduled_date=scheduled_date,
        purpose=purpose,
        appointment_id=appointment_id,
    )
    updated = _copy(record)
    updated.follow_up.appointments.append(appointment)
    updated.follow_up.required = True
    return MutationResult(updated, appointment)


def record_patient_satisfaction(record: TreatmentRecord, rating: int,
                                comments: Optional[str] = None,
                                would_recommend: Optional[bool] = None) -> MutationResult:
    satisfaction = PatientSatisfaction(
        rating=rating,
        comments=comments,
        would_recommend=would_recommend,
        collected_at=utcnow(),
    )
    updated = _copy(record)
    updated.outcomes.patient_satisfaction = satisfaction
    return MutationResult(updated, satisfaction)


def update_billing(record: TreatmentRecord, actual_cost: Union[Decimal, float, int],
                   breakdown: Optional[List[Union[BillingLine, Dict[str, Any]]]] = None
                   ) -> MutationResult:
    data = BillingUpdate(actual_cost=actual_cost, breakdown=breakdown)
    updated = _copy(record)
    if updated.billing is None:
        updated.billing = Billing(estimated_cost=data.actual_cost)

    billing = updated.billing
    billing.actual_cost = data.actual_cost
    if data.breakdown is not None:
        billing.breakdown = data.breakdown
    billing.total_amount = (
        data.actual_cost
        + (billing.tax_amount or Decimal(0))
        - (billing.discount_applied or Decimal(0))
    )
    billing.material_costs = updated.total_material_cost
    return MutationResult(updated, billing)
