# src/schemas/treatment_schemas.py
import math
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional
from uuid import UUID, uuid4

from pydantic import Field, computed_field, field_validator

from models.treatment import (
    AnesthesiaType,
    AssistantRole,
    ClinicalNoteType,
    ComplicationSeverity,
    ComplicationType,
    Complexity,
    EquipmentCondition,
    FollowUpStatus,
    ImageType,
    MaterialType,
    PaymentStatus,
    ProcedureStatus,
    Prognosis,
    RISK_ORDER,
    RiskLevel,
    ToothSurface,
    TreatmentCategory,
    TreatmentPhase,
    TreatmentPriority,
    TreatmentStatus,
    TreatmentType,
    TreatmentUrgency,
)
from .base_schemas import BaseSchema, IDMixin, TimestampMixin

# FDI two-digit permanent tooth or a primary tooth letter
TOOTH_NUMBER_PATTERN = r"^([1-4][1-8]|[A-T])$"


# --- Value types -------------------------------------------------------------


class Quantity(BaseSchema):
    value: float
    unit: str = Field(..., min_length=1)


class Material(BaseSchema):
    """Consumed supply recorded against a treatment"""

    material_id: Optional[str] = None
    name: str = Field(..., min_length=1)
    type: MaterialType
    brand: Optional[str] = None
    batch_number: Optional[str] = None
    expiry_date: Optional[datetime] = None
    quantity: Quantity
    cost: Optional[Decimal] = Field(None, ge=0)
    supplier: Optional[str] = None
    notes: Optional[str] = None


class StepImage(BaseSchema):
    url: Optional[str] = None
    caption: Optional[str] = None
    taken_at: Optional[datetime] = None


class ProcedureStep(BaseSchema):
    """Ordered unit of work inside a treatment"""

    id: UUID = Field(default_factory=uuid4)
    step_number: int = Field(..., ge=1)
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    estimated_duration: Optional[int] = Field(None, ge=0)
    actual_duration: Optional[int] = Field(None, ge=0)
    status: ProcedureStatus = ProcedureStatus.PENDING
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    performed_by: Optional[str] = None
    complications: Optional[str] = None
    notes: Optional[str] = None
    images: List[StepImage] = []


class QualityMetric(BaseSchema):
    metric: str = Field(..., min_length=1)
    value: Any
    target: Optional[Any] = None
    unit: Optional[str] = None
    assessed_by: Optional[str] = None
    assessed_at: Optional[datetime] = None
    notes: Optional[str] = None


class Complication(BaseSchema):
    """Adverse event with severity and resolution tracking"""

    id: UUID = Field(default_factory=uuid4)
    type: ComplicationType
    description: str = Field(..., min_length=1)
    occurred: Optional[datetime] = None
    discovered_by: Optional[str] = None
    severity: ComplicationSeverity
    resolved: bool = False
    resolution: Optional[str] = None
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    preventable: bool = False
    reported_to_authorities: bool = False
    follow_up_required: bool = False


class ClinicalNote(BaseSchema):
    timestamp: Optional[datetime] = None
    author: Optional[str] = None
    content: str = Field(..., min_length=1)
    type: ClinicalNoteType = ClinicalNoteType.PROGRESS


class TreatmentImage(BaseSchema):
    type: ImageType
    url: Optional[str] = None
    caption: Optional[str] = None
    taken_at: Optional[datetime] = None
    taken_by: Optional[str] = None


class Report(BaseSchema):
    type: Optional[str] = None
    url: Optional[str] = None
    generated_at: Optional[datetime] = None
    generated_by: Optional[str] = None


# --- Supporting groups -------------------------------------------------------


class ToothInvolvement(BaseSchema):
    tooth_number: str = Field(..., pattern=TOOTH_NUMBER_PATTERN)
    surface: Optional[ToothSurface] = None
    condition: Optional[str] = None
    notes: Optional[str] = None


class DiagnosisCode(BaseSchema):
    code: Optional[str] = None
    description: Optional[str] = None


class DifferentialDiagnosis(DiagnosisCode):
    probability: Optional[float] = Field(None, ge=0, le=1)


class Diagnosis(BaseSchema):
    primary: Optional[DiagnosisCode] = None
    secondary: List[DiagnosisCode] = []
    differential: List[DifferentialDiagnosis] = []


class EstimatedDuration(BaseSchema):
    sessions: int = Field(..., ge=1)
    total_minutes: int = Field(..., ge=15)
    session_duration: Optional[int] = Field(None, ge=0)


class ActualDuration(BaseSchema):
    sessions: Optional[int] = None
    total_minutes: Optional[int] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None


class Anesthesia(BaseSchema):
    type: AnesthesiaType = AnesthesiaType.NONE
    agent: Optional[str] = None
    dosage: Optional[str] = None
    administered_by: Optional[str] = None
    administered_at: Optional[datetime] = None
    duration: Optional[int] = Field(None, ge=0)
    side_effects: List[str] = []
    effectiveness: Optional[str] = None

    @field_validator("effectiveness")
    @classmethod
    def validate_effectiveness(cls, v: Optional[str]) -> Optional[str]:
        if v is not None and v not in ("excellent", "good", "fair", "poor"):
            raise ValueError("Effectiveness must be one of: excellent, good, fair, poor")
        return v


class EquipmentUsage(BaseSchema):
    equipment_id: Optional[str] = None
    name: Optional[str] = None
    type: Optional[str] = None
    settings: Optional[Dict[str, Any]] = None
    usage_duration: Optional[int] = Field(None, ge=0)
    condition: EquipmentCondition = EquipmentCondition.GOOD


class Assistant(BaseSchema):
    user_id: Optional[str] = None
    role: AssistantRole
    tasks: List[str] = []
    performance: Optional[str] = None


class VitalSigns(BaseSchema):
    blood_pressure: Optional[str] = Field(None, pattern=r"^\d{2,3}/\d{2,3}$")
    heart_rate: Optional[int] = Field(None, ge=0, le=300)
    temperature: Optional[float] = Field(None, ge=25, le=45)
    oxygen_saturation: Optional[float] = Field(None, ge=0, le=100)


class PreOperativeAssessment(BaseSchema):
    vital_signs: Optional[VitalSigns] = None
    medical_history: Optional[str] = None
    allergies: List[str] = []
    current_medications: List[str] = []
    risk_factors: List[str] = []
    assessed_by: Optional[str] = None
    assessed_at: Optional[datetime] = None
    clearance_required: bool = False
    clearance_obtained: bool = False


class PostOperativeAssessment(BaseSchema):
    immediate_condition: str = "stable"
    pain_level: Optional[int] = Field(None, ge=0, le=10)
    swelling: Optional[str] = None
    bleeding: Optional[str] = None
    functionality: Optional[str] = None
    complications: List[Complication] = []
    notes: Optional[str] = None
    assessed_by: Optional[str] = None
    assessed_at: Optional[datetime] = None

    @field_validator("immediate_condition")
    @classmethod
    def validate_condition(cls, v: str) -> str:
        valid = ["stable", "satisfactory", "concerning", "critical"]
        if v not in valid:
            raise ValueError(f'Immediate condition must be one of: {", ".join(valid)}')
        return v


class PhaseRisk(BaseSchema):
    level: RiskLevel = RiskLevel.LOW
    factors: List[str] = []
    mitigation_strategies: List[str] = []
    complications: List[str] = []
    monitoring_required: List[str] = []


class RiskAssessment(BaseSchema):
    pre_operative: PhaseRisk = Field(default_factory=PhaseRisk)
    intra_operative: PhaseRisk = Field(default_factory=PhaseRisk)
    post_operative: PhaseRisk = Field(default_factory=PhaseRisk)


class Consent(BaseSchema):
    obtained: bool = False
    obtained_by: Optional[str] = None
    obtained_at: Optional[datetime] = None
    witnessed_by: Optional[str] = None
    form: Optional[str] = None
    risks_explained: List[str] = []
    alternatives_discussed: List[str] = []
    questions_answered: bool = False
    patient_understands: bool = False


class PreAuthorization(BaseSchema):
    required: bool = False
    obtained: bool = False
    number: Optional[str] = None
    expiry_date: Optional[datetime] = None


class Insurance(BaseSchema):
    covered: bool = False
    provider: Optional[str] = None
    policy_number: Optional[str] = None
    pre_authorization: PreAuthorization = Field(default_factory=PreAuthorization)
    claim_number: Optional[str] = None
    coverage_percentage: Optional[float] = Field(None, ge=0, le=100)
    maximum_benefit: Optional[Decimal] = None
    deductible: Optional[Decimal] = None
    copay_amount: Optional[Decimal] = None
    estimated_coverage: Optional[Decimal] = None


class BillingLine(BaseSchema):
    item: str
    quantity: int = Field(1, ge=1)
    unit_price: Decimal = Field(..., ge=0)
    total_price: Optional[Decimal] = None
    taxable: bool = True


class Billing(BaseSchema):
    estimated_cost: Decimal = Field(..., ge=0)
    actual_cost: Optional[Decimal] = Field(None, ge=0)
    breakdown: List[BillingLine] = []
    lab_costs: Optional[Decimal] = None
    material_costs: Optional[Decimal] = None
    equipment_costs: Optional[Decimal] = None
    facility_fees: Optional[Decimal] = None
    discount_applied: Optional[Decimal] = Field(None, ge=0)
    discount_reason: Optional[str] = None
    tax_amount: Optional[Decimal] = Field(None, ge=0)
    total_amount: Optional[Decimal] = None
    payment_status: PaymentStatus = PaymentStatus.PENDING
    invoice_id: Optional[str] = None


class FollowUpAppointment(BaseSchema):
    type: str = Field(..., min_length=1)
    scheduled_date: datetime
    appointment_id: Optional[str] = None
    purpose: Optional[str] = None
    status: FollowUpStatus = FollowUpStatus.SCHEDULED


class EmergencyContact(BaseSchema):
    name: Optional[str] = None
    phone: Optional[str] = None
    role: Optional[str] = None


class FollowUp(BaseSchema):
    required: bool = False
    appointments: List[FollowUpAppointment] = []
    instructions: List[str] = []
    warning_signs_to_watch: List[str] = []
    emergency_contacts: List[EmergencyContact] = []


class Documentation(BaseSchema):
    clinical_notes: List[ClinicalNote] = []
    images: List[TreatmentImage] = []
    reports: List[Report] = []


class PatientSatisfaction(BaseSchema):
    rating: int = Field(..., ge=1, le=5)
    comments: Optional[str] = None
    would_recommend: Optional[bool] = None
    collected_at: Optional[datetime] = None


class Outcomes(BaseSchema):
    success: Optional[bool] = None
    complications: List[Complication] = []
    patient_satisfaction: Optional[PatientSatisfaction] = None
    functional_improvement: str = "moderate"
    aesthetic_improvement: str = "good"
    pain_reduction: str = "significant"


class RecordMetadata(BaseSchema):
    created_by: Optional[str] = None
    last_modified_by: Optional[str] = None
    version: int = Field(1, ge=1)
    source: Optional[str] = None
    external_id: Optional[str] = None
    tags: List[str] = []
    custom_fields: Optional[Dict[str, Any]] = None
    complexity: Complexity = Complexity.MODERATE


# --- Aggregate root ----------------------------------------------------------


class TreatmentBase(BaseSchema):
    """Fields a caller supplies when a treatment is planned"""

    patient_id: str = Field(..., min_length=1)
    doctor_id: str = Field(..., min_length=1)
    clinic_id: str = Field(..., min_length=1)
    appointment_id: Optional[str] = None
    treatment_plan_id: Optional[str] = None

    name: str = Field(..., min_length=1, max_length=200)
    type: TreatmentType
    category: TreatmentCategory
    priority: TreatmentPriority = TreatmentPriority.NORMAL
    urgency: TreatmentUrgency = TreatmentUrgency.ELECTIVE
    description: str = Field(..., min_length=1, max_length=2000)
    indication: str = Field(..., min_length=1)
    contraindications: List[str] = []
    teeth_involved: List[ToothInvolvement] = []
    diagnosis: Optional[Diagnosis] = None
    treatment_goals: List[str] = []
    expected_outcome: Optional[str] = None
    prognosis: Prognosis
    estimated_duration: EstimatedDuration

    anesthesia: Optional[Anesthesia] = None
    pre_operative_instructions: List[str] = []
    post_operative_instructions: List[str] = []
    risk_assessment: RiskAssessment = Field(default_factory=RiskAssessment)
    insurance: Optional[Insurance] = None
    billing: Optional[Billing] = None


class TreatmentCreate(TreatmentBase):
    """Schema for creating a treatment"""

    treatment_id: Optional[str] = Field(None, pattern=r"^[A-Za-z0-9]{3,32}$")
    created_by: Optional[str] = None
    source: Optional[str] = None
    external_id: Optional[str] = None
    tags: List[str] = []
    complexity: Complexity = Complexity.MODERATE

    @field_validator("treatment_id")
    @classmethod
    def upper_treatment_id(cls, v: Optional[str]) -> Optional[str]:
        return v.upper() if v else v


class TreatmentRecord(IDMixin, TreatmentBase, TimestampMixin):
    """The treatment aggregate: stored fields plus derived read-only values"""

    treatment_id: Optional[str] = None
    status: TreatmentStatus = TreatmentStatus.PLANNED
    phase: TreatmentPhase = TreatmentPhase.PLANNING

    actual_duration: ActualDuration = Field(default_factory=ActualDuration)
    procedures: List[ProcedureStep] = []
    materials: List[Material] = []
    equipment: List[EquipmentUsage] = []
    assistants: List[Assistant] = []
    pre_operative_assessment: Optional[PreOperativeAssessment] = None
    post_operative_assessment: Optional[PostOperativeAssessment] = None
    quality_metrics: List[QualityMetric] = []
    consent: Consent = Field(default_factory=Consent)
    follow_up: FollowUp = Field(default_factory=FollowUp)
    documentation: Documentation = Field(default_factory=Documentation)
    outcomes: Outcomes = Field(default_factory=Outcomes)
    metadata: RecordMetadata = Field(default_factory=RecordMetadata)

    @computed_field
    @property
    def is_completed(self) -> bool:
        return self.status == TreatmentStatus.COMPLETED

    @computed_field
    @property
    def is_in_progress(self) -> bool:
        return self.status == TreatmentStatus.IN_PROGRESS

    @computed_field
    @property
    def completion_percentage(self) -> int:
        if not self.procedures:
            return 0
        completed = sum(
            1 for p in self.procedures if p.status == ProcedureStatus.COMPLETED
        )
        # Half-up rounding; round() would send 50.5 to 50
        return math.floor(completed * 100 / len(self.procedures) + 0.5)

    @computed_field
    @property
    def total_material_cost(self) -> Decimal:
        return sum((m.cost or Decimal(0) for m in self.materials), Decimal(0))

    @computed_field
    @property
    def has_complications(self) -> bool:
        return bool(
            self.post_operative_assessment
            and self.post_operative_assessment.complications
        )

    @computed_field
    @property
    def risk_level(self) -> RiskLevel:
        levels = [
            RiskLevel(self.risk_assessment.pre_operative.level),
            RiskLevel(self.risk_assessment.intra_operative.level),
            RiskLevel(self.risk_assessment.post_operative.level),
        ]
        return max(levels, key=RISK_ORDER.index)

    @computed_field
    @property
    def treatment_duration(self) -> Optional[int]:
        """Days between actual start and end, rounded up"""
        start = self.actual_duration.start_date
        end = self.actual_duration.end_date
        if start is None or end is None:
            return None
        return math.ceil((end - start).total_seconds() / 86400)

    def find_procedure(self, procedure_id: Any) -> Optional[ProcedureStep]:
        return next((p for p in self.procedures if str(p.id) == str(procedure_id)), None)

    def find_complication(self, complication_id: Any) -> Optional[Complication]:
        if not self.post_operative_assessment:
            return None
        return next(
            (
                c
                for c in self.post_operative_assessment.complications
                if str(c.id) == str(complication_id)
            ),
            None,
        )


# --- Operation inputs --------------------------------------------------------


class ProcedureCreate(BaseSchema):
    title: str = Field(..., min_length=1)
    description: Optional[str] = None
    estimated_duration: Optional[int] = Field(None, ge=0)


class ComplicationCreate(BaseSchema):
    type: ComplicationType
    description: str = Field(..., min_length=1)
    severity: ComplicationSeverity
    discovered_by: Optional[str] = None


class ConsentCreate(BaseSchema):
    obtained_by: str = Field(..., min_length=1)
    witnessed_by: Optional[str] = None
    form: Optional[str] = None
    risks_explained: List[str] = []
    alternatives_discussed: List[str] = []


class QualityMetricCreate(BaseSchema):
    metric: str = Field(..., min_length=1)
    value: Any
    target: Optional[Any] = None
    unit: Optional[str] = None
    assessed_by: Optional[str] = None
    notes: Optional[str] = None


class BillingUpdate(BaseSchema):
    actual_cost: Decimal = Field(..., ge=0)
    breakdown: Optional[List[BillingLine]] = None


# --- Report shapes -----------------------------------------------------------


class TreatmentStats(BaseSchema):
    """Aggregate statistics over a creation-date range"""

    total_treatments: int = 0
    completed: int = 0
    in_progress: int = 0
    cancelled: int = 0
    total_revenue: Decimal = Decimal(0)
    average_duration: Optional[float] = None
    success_rate: float = 0.0


class ComplicationStat(BaseSchema):
    """Complications of one type; resolution time is in seconds"""

    type: ComplicationType
    count: int
    resolved: int
    average_resolution_time: Optional[float] = None
