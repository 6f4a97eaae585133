# src/models/treatment.py
import uuid
from enum import Enum as PyEnum

from sqlalchemy import (
    Column,
    DateTime,
    Integer,
    JSON,
    String,
    Text,
)
from sqlalchemy.types import Uuid

from db.database import Base


class TreatmentType(str, PyEnum):
    CLEANING = "cleaning"
    EXAMINATION = "examination"
    FILLING = "filling"
    EXTRACTION = "extraction"
    ROOT_CANAL = "root_canal"
    CROWN = "crown"
    BRIDGE = "bridge"
    IMPLANT = "implant"
    SCALING = "scaling"
    POLISHING = "polishing"
    FLUORIDE_TREATMENT = "fluoride_treatment"
    SEALANT = "sealant"
    ORTHODONTIC = "orthodontic"
    COSMETIC = "cosmetic"
    SURGICAL = "surgical"
    PERIODONTAL = "periodontal"
    ENDODONTIC = "endodontic"
    PROSTHETIC = "prosthetic"
    PREVENTIVE = "preventive"
    EMERGENCY = "emergency"


class TreatmentCategory(str, PyEnum):
    PREVENTIVE = "preventive"
    DIAGNOSTIC = "diagnostic"
    RESTORATIVE = "restorative"
    SURGICAL = "surgical"
    COSMETIC = "cosmetic"
    ORTHODONTIC = "orthodontic"
    EMERGENCY = "emergency"


class TreatmentPriority(str, PyEnum):
    LOW = "low"
    NORMAL = "normal"
    HIGH = "high"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class TreatmentUrgency(str, PyEnum):
    ELECTIVE = "elective"
    URGENT = "urgent"
    EMERGENCY = "emergency"


class TreatmentStatus(str, PyEnum):
    PLANNED = "planned"
    SCHEDULED = "scheduled"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    POSTPONED = "postponed"
    ON_HOLD = "on_hold"
    FAILED = "failed"
    PARTIAL = "partial"


TERMINAL_STATUSES = frozenset(
    {TreatmentStatus.COMPLETED, TreatmentStatus.CANCELLED, TreatmentStatus.FAILED}
)

# Reachable from every non-terminal status
SIDE_EXIT_STATUSES = frozenset(
    {
        TreatmentStatus.CANCELLED,
        TreatmentStatus.POSTPONED,
        TreatmentStatus.ON_HOLD,
        TreatmentStatus.FAILED,
        TreatmentStatus.PARTIAL,
    }
)

# Main path planned -> scheduled -> in_progress -> completed only moves forward;
# interrupted treatments resume to scheduled or in_progress
_RESUME_TARGETS = frozenset({TreatmentStatus.SCHEDULED, TreatmentStatus.IN_PROGRESS})

ALLOWED_TRANSITIONS = {
    TreatmentStatus.PLANNED: _RESUME_TARGETS | SIDE_EXIT_STATUSES,
    TreatmentStatus.SCHEDULED: {TreatmentStatus.IN_PROGRESS} | SIDE_EXIT_STATUSES,
    TreatmentStatus.IN_PROGRESS: {TreatmentStatus.COMPLETED} | SIDE_EXIT_STATUSES,
    TreatmentStatus.POSTPONED: _RESUME_TARGETS | SIDE_EXIT_STATUSES,
    TreatmentStatus.ON_HOLD: _RESUME_TARGETS | SIDE_EXIT_STATUSES,
    TreatmentStatus.PARTIAL: _RESUME_TARGETS | SIDE_EXIT_STATUSES,
    **{status: frozenset() for status in TERMINAL_STATUSES},
}


class TreatmentPhase(str, PyEnum):
    PLANNING = "planning"
    PREPARATION = "preparation"
    TREATMENT = "treatment"
    RECOVERY = "recovery"
    FOLLOW_UP = "follow_up"


class Prognosis(str, PyEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    POOR = "poor"
    GUARDED = "guarded"


class ProcedureStatus(str, PyEnum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    SKIPPED = "skipped"


class MaterialType(str, PyEnum):
    FILLING = "filling"
    CROWN = "crown"
    BRIDGE = "bridge"
    IMPLANT = "implant"
    CEMENT = "cement"
    ANESTHETIC = "anesthetic"
    MEDICATION = "medication"
    OTHER = "other"


class ComplicationType(str, PyEnum):
    MINOR = "minor"
    MODERATE = "moderate"
    MAJOR = "major"
    SEVERE = "severe"


class ComplicationSeverity(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class ClinicalNoteType(str, PyEnum):
    PROGRESS = "progress"
    COMPLICATION = "complication"
    OBSERVATION = "observation"
    PLAN = "plan"


class ImageType(str, PyEnum):
    PRE_TREATMENT = "pre_treatment"
    DURING_TREATMENT = "during_treatment"
    POST_TREATMENT = "post_treatment"
    XRAY = "xray"
    SCAN = "scan"


class RiskLevel(str, PyEnum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    VERY_HIGH = "very_high"


# Ascending severity, used to pick the aggregate risk level
RISK_ORDER = [RiskLevel.LOW, RiskLevel.MEDIUM, RiskLevel.HIGH, RiskLevel.VERY_HIGH]


class ToothSurface(str, PyEnum):
    MESIAL = "mesial"
    DISTAL = "distal"
    OCCLUSAL = "occlusal"
    BUCCAL = "buccal"
    LINGUAL = "lingual"
    INCISAL = "incisal"
    COMPLETE = "complete"


class AnesthesiaType(str, PyEnum):
    LOCAL = "local"
    GENERAL = "general"
    SEDATION = "sedation"
    NONE = "none"


class AssistantRole(str, PyEnum):
    DENTAL_ASSISTANT = "dental_assistant"
    HYGIENIST = "hygienist"
    ANESTHETIST = "anesthetist"
    NURSE = "nurse"


class EquipmentCondition(str, PyEnum):
    EXCELLENT = "excellent"
    GOOD = "good"
    FAIR = "fair"
    NEEDS_REPAIR = "needs_repair"


class PaymentStatus(str, PyEnum):
    PENDING = "pending"
    PARTIAL = "partial"
    PAID = "paid"
    OVERDUE = "overdue"


class FollowUpStatus(str, PyEnum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    MISSED = "missed"
    CANCELLED = "cancelled"


class Complexity(str, PyEnum):
    SIMPLE = "simple"
    MODERATE = "moderate"
    COMPLEX = "complex"
    HIGHLY_COMPLEX = "highly_complex"


class Treatment(Base):
    """Stored treatment record.

    Scalar fields that are filtered or sorted on have their own columns; each
    embedded group of the aggregate is kept as a JSON document. ``version`` is
    the ``metadata.version`` counter and guards every update.
    """

    __tablename__ = "treatments"

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    treatment_id = Column(String(32), nullable=False, unique=True, index=True)

    # References (not owned)
    patient_id = Column(String(64), nullable=False, index=True)
    doctor_id = Column(String(64), nullable=False, index=True)
    clinic_id = Column(String(64), nullable=False, index=True)
    appointment_id = Column(String(64), nullable=True, index=True)
    treatment_plan_id = Column(String(64), nullable=True, index=True)

    # Classification
    name = Column(String(200), nullable=False)
    type = Column(String(32), nullable=False, index=True)
    category = Column(String(32), nullable=False, index=True)
    priority = Column(String(20), nullable=False, default=TreatmentPriority.NORMAL.value)
    urgency = Column(String(20), nullable=False, default=TreatmentUrgency.ELECTIVE.value)
    status = Column(
        String(20), nullable=False, default=TreatmentStatus.PLANNED.value, index=True
    )
    phase = Column(String(20), nullable=False, default=TreatmentPhase.PLANNING.value)
    prognosis = Column(String(20), nullable=False)

    # Clinical content
    description = Column(Text, nullable=False)
    indication = Column(Text, nullable=False)
    expected_outcome = Column(Text, nullable=True)
    contraindications = Column(JSON, default=list)
    teeth_involved = Column(JSON, default=list)
    diagnosis = Column(JSON, nullable=True)
    treatment_goals = Column(JSON, default=list)

    # Durations
    estimated_duration = Column(JSON, nullable=False)
    actual_duration = Column(JSON, default=dict)

    # Embedded collections and sub-records
    procedures = Column(JSON, default=list)
    anesthesia = Column(JSON, nullable=True)
    materials = Column(JSON, default=list)
    equipment = Column(JSON, default=list)
    assistants = Column(JSON, default=list)
    pre_operative_instructions = Column(JSON, default=list)
    post_operative_instructions = Column(JSON, default=list)
    pre_operative_assessment = Column(JSON, nullable=True)
    post_operative_assessment = Column(JSON, nullable=True)
    quality_metrics = Column(JSON, default=list)
    risk_assessment = Column(JSON, default=dict)
    consent = Column(JSON, default=dict)
    insurance = Column(JSON, nullable=True)
    billing = Column(JSON, nullable=True)
    follow_up = Column(JSON, default=dict)
    documentation = Column(JSON, default=dict)
    outcomes = Column(JSON, default=dict)

    # "metadata" is reserved on declarative classes
    record_metadata = Column("metadata", JSON, default=dict)
    version = Column(Integer, nullable=False, default=1)

    # Timestamps
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=True)
