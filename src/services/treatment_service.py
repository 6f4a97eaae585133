# src/services/treatment_service.py
import asyncio
from collections import defaultdict
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Union
from uuid import UUID

from pydantic import ValidationError
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import settings
from models.treatment import Treatment, TreatmentStatus, TreatmentType
from schemas.treatment_schemas import (
    ComplicationStat,
    RecordMetadata,
    TreatmentBase,
    TreatmentCreate,
    TreatmentRecord,
    TreatmentStats,
)
from utils.exceptions import (
    ConflictException,
    NotFoundException,
    ValidationException,
    handle_db_exception,
)
from utils.logger import setup_logger
from . import treatment_lifecycle as lifecycle
from .base_service import BaseService

logger = setup_logger("TREATMENT_SERVICE")

# Columns holding a scalar field of the aggregate under the same name
SCALAR_COLUMNS = [
    "treatment_id",
    "patient_id",
    "doctor_id",
    "clinic_id",
    "appointment_id",
    "treatment_plan_id",
    "name",
    "type",
    "category",
    "priority",
    "urgency",
    "status",
    "phase",
    "prognosis",
    "description",
    "indication",
    "expected_outcome",
]

# Columns holding an embedded group of the aggregate as JSON
DOCUMENT_COLUMNS = [
    "contraindications",
    "teeth_involved",
    "diagnosis",
    "treatment_goals",
    "estimated_duration",
    "actual_duration",
    "procedures",
    "anesthesia",
    "materials",
    "equipment",
    "assistants",
    "pre_operative_instructions",
    "post_operative_instructions",
    "pre_operative_assessment",
    "post_operative_assessment",
    "quality_metrics",
    "risk_assessment",
    "consent",
    "insurance",
    "billing",
    "follow_up",
    "documentation",
    "outcomes",
]

TreatmentRef = Union[str, UUID]


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _in_range(value: Optional[datetime], start: datetime, end: datetime) -> bool:
    value = _as_utc(value)
    return value is not None and start <= value <= end


class TreatmentService(BaseService):
    """Treatment records: creation, version-checked mutation and reporting.

    Mutations load the stored record, apply one operation from
    ``treatment_lifecycle`` to it and write the result back only if nobody
    else wrote in between. Operations addressing an unknown procedure or
    complication return None without writing.
    """

    def __init__(self):
        super().__init__(Treatment)
        # One lock per TRT<YYYY><MM> prefix; serializes count-then-insert
        self._id_locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)

    # --- Mapping between row and aggregate ----------------------------------

    @staticmethod
    def to_record(row: Treatment) -> TreatmentRecord:
        data: Dict[str, Any] = {"id": row.id}
        for column in SCALAR_COLUMNS + DOCUMENT_COLUMNS:
            value = getattr(row, column)
            if value is not None:
                data[column] = value
        data["metadata"] = {**(row.record_metadata or {}), "version": row.version}
        data["created_at"] = _as_utc(row.created_at)
        data["updated_at"] = _as_utc(row.updated_at)
        return TreatmentRecord.model_validate(data)

    @staticmethod
    def to_row_values(record: TreatmentRecord) -> Dict[str, Any]:
        document = record.model_dump(mode="json")
        values = {column: document.get(column) for column in SCALAR_COLUMNS}
        values.update({column: document.get(column) for column in DOCUMENT_COLUMNS})
        values["record_metadata"] = document["metadata"]
        values["version"] = record.metadata.version
        values["created_at"] = record.created_at
        values["updated_at"] = record.updated_at
        return values

    # --- Loading ------------------------------------------------------------

    async def _load_row(self, db: AsyncSession, treatment_ref: TreatmentRef) -> Treatment:
        if isinstance(treatment_ref, UUID):
            row = await self.get(db, treatment_ref)
        else:
            row = await self.get_by(db, treatment_id=str(treatment_ref).upper())
        if row is None:
            logger.info(f"Treatment {treatment_ref} not found")
            raise NotFoundException(
                f"Treatment {treatment_ref} not found", resource_id=str(treatment_ref)
            )
        return row

    async def get_treatment(
        self, db: AsyncSession, treatment_ref: TreatmentRef
    ) -> TreatmentRecord:
        """Get a treatment by its row UUID or its TRT identifier"""
        return self.to_record(await self._load_row(db, treatment_ref))

    # --- Creation -----------------------------------------------------------

    async def create_treatment(
        self,
        db: AsyncSession,
        treatment_data: Union[TreatmentCreate, Dict[str, Any]],
    ) -> TreatmentRecord:
        """Create a planned treatment, generating its identifier if none given"""
        try:
            if not isinstance(treatment_data, TreatmentCreate):
                treatment_data = TreatmentCreate.model_validate(treatment_data)

            base_fields = set(TreatmentBase.model_fields)
            record = TreatmentRecord(
                **treatment_data.model_dump(include=base_fields),
                treatment_id=treatment_data.treatment_id,
                metadata=RecordMetadata(
                    created_by=treatment_data.created_by,
                    last_modified_by=treatment_data.created_by,
                    source=treatment_data.source,
                    external_id=treatment_data.external_id,
                    tags=treatment_data.tags,
                    complexity=treatment_data.complexity,
                ),
            )
        except ValidationError as e:
            raise ValidationException.from_pydantic(e)

        if record.treatment_id:
            return await self._insert(db, record)

        now = lifecycle.utcnow()
        prefix = lifecycle.treatment_id_prefix(now)
        async with self._id_locks[prefix]:
            for attempt in range(1, settings.TREATMENT_ID_MAX_RETRIES + 1):
                issued = await self._issued_sequence(db, prefix)
                candidate = record.model_copy(
                    update={
                        "treatment_id": lifecycle.build_treatment_id(issued, now),
                        "created_at": now,
                    }
                )
                try:
                    return await self._insert(db, candidate)
                except ConflictException:
                    # Another process took this sequence number
                    logger.warning(
                        f"Treatment ID {candidate.treatment_id} taken, "
                        f"retrying (attempt {attempt})"
                    )

        raise ConflictException(
            detail=f"Could not assign a unique treatment ID for {prefix}",
            field="treatment_id",
        )

    async def _issued_sequence(self, db: AsyncSession, prefix: str) -> int:
        """Last sequence number in use for the month: the number of ids with
        the prefix, or the highest supplied ``<prefix>NNNNNN`` id if larger"""
        existing = await self.count(
            db, conditions=[Treatment.treatment_id.like(f"{prefix}%")]
        )
        try:
            result = await db.execute(
                select(Treatment.treatment_id).where(
                    Treatment.treatment_id.like(f"{prefix}______")
                )
            )
        except SQLAlchemyError as e:
            await handle_db_exception(db, logger, "read treatment sequence", e)

        numbers = [lifecycle.sequence_number(tid, prefix) for tid in result.scalars()]
        return max([existing] + [n for n in numbers if n is not None])

    async def _insert(self, db: AsyncSession, record: TreatmentRecord) -> TreatmentRecord:
        try:
            prepared = lifecycle.prepare_for_commit(record, is_new=True)
        except ValidationError as e:
            raise ValidationException.from_pydantic(e)

        values = self.to_row_values(prepared)
        try:
            row = await self.create(db, values)
        except ConflictException:
            raise ConflictException(
                detail=f"Treatment {prepared.treatment_id} already exists",
                field="treatment_id",
                resource_id=prepared.treatment_id,
            )

        logger.info(
            f"Created treatment {prepared.treatment_id} for patient "
            f"{prepared.patient_id} by doctor {prepared.doctor_id}"
        )
        return prepared.model_copy(update={"id": row.id})

    # --- Mutation -----------------------------------------------------------

    async def _mutate(
        self,
        db: AsyncSession,
        treatment_ref: TreatmentRef,
        operation: Callable[..., lifecycle.MutationResult],
        *args: Any,
        **kwargs: Any,
    ) -> lifecycle.MutationResult:
        row = await self._load_row(db, treatment_ref)
        record = self.to_record(row)

        try:
            result = operation(record, *args, **kwargs)
            if not result.changed:
                logger.info(
                    f"{operation.__name__} on treatment {record.treatment_id} "
                    f"found nothing to change"
                )
                return result
            prepared = lifecycle.prepare_for_commit(result.record, is_new=False)
        except ValidationError as e:
            raise ValidationException.from_pydantic(e)

        await self.update_versioned(
            db, row.id, expected_version=row.version, values=self.to_row_values(prepared)
        )
        result.record = prepared
        return result

    async def transition(
        self,
        db: AsyncSession,
        treatment_ref: TreatmentRef,
        status: Union[str, TreatmentStatus],
        actor: Optional[str] = None,
        reason: Optional[str] = None,
        new_date: Optional[datetime] = None,
        success: bool = True,
    ) -> TreatmentRecord:
        """Move a treatment to another status"""
        result = await self._mutate(
            db, treatment_ref, lifecycle.transition, status,
            actor=actor, reason=reason, new_date=new_date, success=success,
        )
        logger.info(
            f"Treatment {result.record.treatment_id} status is now {result.record.status}"
        )
        return result.record

    async def schedule(
        self, db: AsyncSession, treatment_ref: TreatmentRef, scheduled_by: Optional[str] = None
    ) -> TreatmentRecord:
        return await self.transition(
            db, treatment_ref, TreatmentStatus.SCHEDULED, actor=scheduled_by
        )

    async def start(
        self, db: AsyncSession, treatment_ref: TreatmentRef, started_by: Optional[str] = None
    ) -> TreatmentRecord:
        return await self.transition(
            db, treatment_ref, TreatmentStatus.IN_PROGRESS, actor=started_by
        )

    async def complete(
        self,
        db: AsyncSession,
        treatment_ref: TreatmentRef,
        completed_by: Optional[str] = None,
        success: bool = True,
    ) -> TreatmentRecord:
        return await self.transition(
            db, treatment_ref, TreatmentStatus.COMPLETED,
            actor=completed_by, success=success,
        )

    async def cancel(
        self,
        db: AsyncSession,
        treatment_ref: TreatmentRef,
        reason: str,
        cancelled_by: Optional[str] = None,
    ) -> TreatmentRecord:
        return await self.transition(
            db, treatment_ref, TreatmentStatus.CANCELLED, actor=cancelled_by, reason=reason
        )

    async def postpone(
        self,
        db: AsyncSession,
        treatment_ref: TreatmentRef,
        reason: str,
        postponed_by: Optional[str] = None,
        new_date: Optional[datetime] = None,
    ) -> TreatmentRecord:
        return await self.transition(
            db, treatment_ref, TreatmentStatus.POSTPONED,
            actor=postponed_by, reason=reason, new_date=new_date,
        )

    async def put_on_hold(
        self,
        db: AsyncSession,
        treatment_ref: TreatmentRef,
        reason: Optional[str] = None,
        held_by: Optional[str] = None,
    ) -> TreatmentRecord:
        return await self.transition(
            db, treatment_ref, TreatmentStatus.ON_HOLD, actor=held_by, reason=reason
        )

    async def mark_failed(
        self,
        db: AsyncSession,
        treatment_ref: TreatmentRef,
        reason: Optional[str] = None,
        marked_by: Optional[str] = None,
    ) -> TreatmentRecord:
        return await self.transition(
            db, treatment_ref, TreatmentStatus.FAILED, actor=marked_by, reason=reason
        )

    async def mark_partial(
        self,
        db: AsyncSession,
        treatment_ref: TreatmentRef,
        reason: Optional[str] = None,
        marked_by: Optional[str] = None,
    ) -> TreatmentRecord:
        return await self.transition(
            db, treatment_ref, TreatmentStatus.PARTIAL, actor=marked_by, reason=reason
        )

    async def add_procedure(self, db: AsyncSession, treatment_ref: TreatmentRef,
                            title: str, description: Optional[str] = None,
                            estimated_duration: Optional[int] = None):
        result = await self._mutate(
            db, treatment_ref, lifecycle.add_procedure, title, description, estimated_duration
        )
        return result.outcome

    async def start_procedure(self, db: AsyncSession, treatment_ref: TreatmentRef,
                              procedure_id: Any, performed_by: Optional[str] = None):
        """Returns the started step, or None when the step does not exist"""
        result = await self._mutate(
            db, treatment_ref, lifecycle.start_procedure, procedure_id, performed_by
        )
        return result.outcome

    async def complete_procedure(self, db: AsyncSession, treatment_ref: TreatmentRef,
                                 procedure_id: Any, actual_duration: int,
                                 notes: Optional[str] = None):
        """Returns the completed step, or None when the step does not exist"""
        result = await self._mutate(
            db, treatment_ref, lifecycle.complete_procedure,
            procedure_id, actual_duration, notes,
        )
        return result.outcome

    async def add_material(self, db: AsyncSession, treatment_ref: TreatmentRef,
                           material: Any) -> TreatmentRecord:
        result = await self._mutate(db, treatment_ref, lifecycle.add_material, material)
        return result.record

    async def add_equipment_usage(self, db: AsyncSession, treatment_ref: TreatmentRef,
                                  usage: Any):
        result = await self._mutate(db, treatment_ref, lifecycle.add_equipment_usage, usage)
        return result.outcome

    async def add_assistant(self, db: AsyncSession, treatment_ref: TreatmentRef,
                            assistant: Any):
        result = await self._mutate(db, treatment_ref, lifecycle.add_assistant, assistant)
        return result.outcome

    async def add_complication(self, db: AsyncSession, treatment_ref: TreatmentRef,
                               complication_type: str, description: str, severity: str,
                               discovered_by: Optional[str] = None):
        result = await self._mutate(
            db, treatment_ref, lifecycle.add_complication,
            complication_type, description, severity, discovered_by,
        )
        logger.warning(
            f"Complication ({severity}) recorded on treatment {result.record.treatment_id}"
        )
        return result.outcome

    async def resolve_complication(self, db: AsyncSession, treatment_ref: TreatmentRef,
                                   complication_id: Any, resolution: str,
                                   resolved_by: Optional[str] = None):
        """Returns the resolved complication, or None when it does not exist"""
        result = await self._mutate(
            db, treatment_ref, lifecycle.resolve_complication,
            complication_id, resolution, resolved_by,
        )
        return result.outcome

    async def add_clinical_note(self, db: AsyncSession, treatment_ref: TreatmentRef,
                                content: str, note_type: str = "progress",
                                author: Optional[str] = None):
        result = await self._mutate(
            db, treatment_ref, lifecycle.add_clinical_note, content, note_type, author
        )
        return result.outcome

    async def add_image(self, db: AsyncSession, treatment_ref: TreatmentRef,
                        image_type: str, url: Optional[str] = None,
                        caption: Optional[str] = None, taken_by: Optional[str] = None):
        result = await self._mutate(
            db, treatment_ref, lifecycle.add_image, image_type, url, caption, taken_by
        )
        return result.outcome

    async def record_vitals(self, db: AsyncSession, treatment_ref: TreatmentRef,
                            vitals: Any, assessed_by: Optional[str] = None) -> TreatmentRecord:
        result = await self._mutate(
            db, treatment_ref, lifecycle.record_vitals, vitals, assessed_by
        )
        return result.record

    async def obtain_consent(self, db: AsyncSession, treatment_ref: TreatmentRef,
                             obtained_by: str, witnessed_by: Optional[str] = None,
                             risks_explained: Optional[List[str]] = None,
                             alternatives_discussed: Optional[List[str]] = None,
                             form: Optional[str] = None) -> TreatmentRecord:
        result = await self._mutate(
            db, treatment_ref, lifecycle.obtain_consent, obtained_by,
            witnessed_by=witnessed_by,
            risks_explained=risks_explained,
            alternatives_discussed=alternatives_discussed,
            form=form,
        )
        return result.record

    async def add_quality_metric(self, db: AsyncSession, treatment_ref: TreatmentRef,
                                 metric: str, value: Any, target: Any = None,
                                 unit: Optional[str] = None,
                                 assessed_by: Optional[str] = None,
                                 notes: Optional[str] = None):
        result = await self._mutate(
            db, treatment_ref, lifecycle.add_quality_metric, metric, value,
            target=target, unit=unit, assessed_by=assessed_by, notes=notes,
        )
        return result.outcome

    async def schedule_follow_up(self, db: AsyncSession, treatment_ref: TreatmentRef,
                                 follow_up_type: str, scheduled_date: datetime,
                                 purpose: Optional[str] = None,
                                 appointment_id: Optional[str] = None):
        result = await self._mutate(
            db, treatment_ref, lifecycle.schedule_follow_up,
            follow_up_type, scheduled_date, purpose, appointment_id,
        )
        return result.outcome

    async def record_patient_satisfaction(self, db: AsyncSession,
                                          treatment_ref: TreatmentRef, rating: int,
                                          comments: Optional[str] = None,
                                          would_recommend: Optional[bool] = None):
        result = await self._mutate(
            db, treatment_ref, lifecycle.record_patient_satisfaction,
            rating, comments, would_recommend,
        )
        return result.outcome

    async def update_billing(self, db: AsyncSession, treatment_ref: TreatmentRef,
                             actual_cost: Any, breakdown: Optional[List[Any]] = None
                             ) -> TreatmentRecord:
        result = await self._mutate(
            db, treatment_ref, lifecycle.update_billing, actual_cost, breakdown
        )
        return result.record

    # --- Reporting ----------------------------------------------------------

    def _limit(self, limit: Optional[int]) -> int:
        return limit if limit is not None else settings.DEFAULT_QUERY_LIMIT

    def _range_conditions(self, start_date: datetime, end_date: datetime,
                          clinic_id: Optional[str] = None) -> List[Any]:
        conditions = [
            Treatment.created_at >= _as_utc(start_date),
            Treatment.created_at <= _as_utc(end_date),
        ]
        if clinic_id:
            conditions.append(Treatment.clinic_id == clinic_id)
        return conditions

    async def _find(self, db: AsyncSession, limit: Optional[int],
                    filters: Optional[Dict[str, Any]] = None,
                    conditions: Optional[List[Any]] = None) -> List[TreatmentRecord]:
        rows = await self.get_multi(
            db,
            limit=limit,
            filters=filters,
            conditions=conditions,
            order_by=[Treatment.created_at.desc()],
        )
        return [self.to_record(row) for row in rows]

    async def find_by_patient(self, db: AsyncSession, patient_id: str,
                              limit: int = 10) -> List[TreatmentRecord]:
        """Most recent treatments of a patient"""
        return await self._find(db, limit, filters={"patient_id": patient_id})

    async def find_by_doctor(self, db: AsyncSession, doctor_id: str,
                             start_date: Optional[datetime] = None,
                             end_date: Optional[datetime] = None,
                             limit: Optional[int] = None) -> List[TreatmentRecord]:
        conditions = []
        if start_date and end_date:
            conditions = self._range_conditions(start_date, end_date)
        return await self._find(
            db, self._limit(limit), filters={"doctor_id": doctor_id}, conditions=conditions
        )

    async def find_by_type(self, db: AsyncSession, treatment_type: str,
                           clinic_id: Optional[str] = None,
                           limit: Optional[int] = None) -> List[TreatmentRecord]:
        try:
            treatment_type = TreatmentType(treatment_type).value
        except ValueError:
            raise ValidationException(
                f"Invalid treatment type '{treatment_type}'", field="type"
            )
        filters = {"type": treatment_type}
        if clinic_id:
            filters["clinic_id"] = clinic_id
        return await self._find(db, self._limit(limit), filters=filters)

    async def find_by_date_range(self, db: AsyncSession, start_date: datetime,
                                 end_date: datetime, clinic_id: Optional[str] = None,
                                 limit: Optional[int] = None) -> List[TreatmentRecord]:
        return await self._find(
            db, self._limit(limit),
            conditions=self._range_conditions(start_date, end_date, clinic_id),
        )

    async def get_completed_treatments(self, db: AsyncSession, start_date: datetime,
                                       end_date: datetime,
                                       clinic_id: Optional[str] = None
                                       ) -> List[TreatmentRecord]:
        """Completed treatments whose actual end date lies in the range,
        latest end date first"""
        start, end = _as_utc(start_date), _as_utc(end_date)
        filters = {"status": TreatmentStatus.COMPLETED.value}
        if clinic_id:
            filters["clinic_id"] = clinic_id
        # The end date lives in JSON; a record ends after it is created and
        # no later than its last write
        conditions = [Treatment.created_at <= end, Treatment.updated_at >= start]
        rows = await self.get_multi(db, limit=None, filters=filters, conditions=conditions)

        records = [
            record
            for record in (self.to_record(row) for row in rows)
            if _in_range(record.actual_duration.end_date, start, end)
        ]
        records.sort(key=lambda r: _as_utc(r.actual_duration.end_date), reverse=True)
        return records

    async def get_treatment_stats(self, db: AsyncSession, start_date: datetime,
                                  end_date: datetime,
                                  clinic_id: Optional[str] = None) -> TreatmentStats:
        """Counts, revenue, average duration and success rate of the treatments
        created in the range"""
        conditions = self._range_conditions(start_date, end_date, clinic_id)
        try:
            status_result = await db.execute(
                select(Treatment.status, func.count(Treatment.id))
                .where(*conditions)
                .group_by(Treatment.status)
            )
            by_status = dict(status_result.all())

            documents_result = await db.execute(
                select(Treatment.billing, Treatment.actual_duration, Treatment.outcomes)
                .where(*conditions)
            )
            documents = documents_result.all()
        except SQLAlchemyError as e:
            await handle_db_exception(db, logger, "treatment stats", e)

        total = sum(by_status.values())
        stats = TreatmentStats(
            total_treatments=total,
            completed=by_status.get(TreatmentStatus.COMPLETED.value, 0),
            in_progress=by_status.get(TreatmentStatus.IN_PROGRESS.value, 0),
            cancelled=by_status.get(TreatmentStatus.CANCELLED.value, 0),
        )
        if not total:
            return stats

        durations = []
        revenue = Decimal(0)
        successes = 0
        for billing, actual_duration, outcomes in documents:
            if billing and billing.get("actual_cost") is not None:
                revenue += Decimal(str(billing["actual_cost"]))
            minutes = (actual_duration or {}).get("total_minutes")
            if minutes is not None:
                durations.append(minutes)
            if (outcomes or {}).get("success"):
                successes += 1

        stats.total_revenue = revenue
        stats.average_duration = sum(durations) / len(durations) if durations else None
        stats.success_rate = successes / total
        return stats

    async def get_complication_stats(self, db: AsyncSession, start_date: datetime,
                                     end_date: datetime,
                                     clinic_id: Optional[str] = None
                                     ) -> List[ComplicationStat]:
        """Complications of treatments created in the range, grouped by type,
        most frequent first"""
        rows = await self.get_multi(
            db, limit=None,
            conditions=self._range_conditions(start_date, end_date, clinic_id),
        )

        groups: Dict[str, Dict[str, Any]] = {}
        for record in (self.to_record(row) for row in rows):
            if not record.has_complications:
                continue
            for complication in record.post_operative_assessment.complications:
                group = groups.setdefault(
                    complication.type, {"count": 0, "resolved": 0, "durations": []}
                )
                group["count"] += 1
                if complication.resolved:
                    group["resolved"] += 1
                if complication.resolved_at and complication.occurred:
                    group["durations"].append(
                        (
                            _as_utc(complication.resolved_at)
                            - _as_utc(complication.occurred)
                        ).total_seconds()
                    )

        stats = [
            ComplicationStat(
                type=complication_type,
                count=group["count"],
                resolved=group["resolved"],
                average_resolution_time=(
                    sum(group["durations"]) / len(group["durations"])
                    if group["durations"]
                    else None
                ),
            )
            for complication_type, group in groups.items()
        ]
        stats.sort(key=lambda s: (-s.count, s.type))
        return stats


treatment_service = TreatmentService()
