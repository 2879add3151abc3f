"""Inbound ADT processing.

Admit, discharge and update events upsert the patient. A discharge (A03)
opens a care-transition episode at LOW risk and builds its first outreach
plan. Every processed message is logged by its control id, so re-delivery
returns the original result without side effects.
"""

import logging
from typing import Any

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select

from toc_orchestrator.core.errors import MalformedMessageError, NoTemplateError
from toc_orchestrator.integrations.hl7 import infer_condition, parse_hl7
from toc_orchestrator.models.audit_event import ActorType
from toc_orchestrator.models.ehr import AdtMessageLog
from toc_orchestrator.models.episode import Episode, EpisodeStatus, RiskLevel
from toc_orchestrator.models.medication import EpisodeMedication
from toc_orchestrator.models.patient import Patient
from toc_orchestrator.schemas.ehr import ADTMessage, ADTResult
from toc_orchestrator.services.audit import write_audit_event
from toc_orchestrator.services.context import OrchestratorContext, retry_on_conflict
from toc_orchestrator.services.plan_builder import OutreachPlanBuilder

logger = logging.getLogger(__name__)

EVENT_ADMIT = "A01"
EVENT_DISCHARGE = "A03"
EVENT_UPDATE = "A08"


def coerce_adt_message(body: ADTMessage | dict[str, Any] | str) -> ADTMessage:
    """Accept a parsed message, a JSON object or raw HL7 text.

    Raises:
        MalformedMessageError: The body cannot be understood
    """
    if isinstance(body, ADTMessage):
        return body
    if isinstance(body, str):
        return parse_hl7(body)
    try:
        return ADTMessage.model_validate(body)
    except PydanticValidationError as e:
        first = e.errors()[0]
        location = ".".join(str(part) for part in first["loc"])
        raise MalformedMessageError(f"Invalid ADT message: {location}: {first['msg']}") from e


class EHRInboundAdapter:
    """Processes ADT messages from the EHR."""

    def __init__(self, ctx: OrchestratorContext) -> None:
        self.ctx = ctx
        self.session = ctx.session
        self.plan_builder = OutreachPlanBuilder(ctx)

    async def _find_log(self, message_id: str) -> AdtMessageLog | None:
        result = await self.session.execute(
            select(AdtMessageLog).where(AdtMessageLog.external_message_id == message_id)
        )
        return result.scalar_one_or_none()

    async def process(self, body: ADTMessage | dict[str, Any] | str) -> ADTResult:
        """Process one ADT message.

        Raises:
            MalformedMessageError: Unparseable message or missing fields
        """
        message = coerce_adt_message(body)
        if message.event_type == EVENT_DISCHARGE and message.discharge_at is None:
            raise MalformedMessageError("Discharge event without discharge timestamp (PV1-45)")

        async def operation() -> ADTResult:
            existing = await self._find_log(message.message_id)
            if existing is not None:
                logger.info(f"Duplicate ADT message {message.message_id}")
                return ADTResult(**{**existing.result, "duplicate": True})

            result = await self._apply(message)
            await self.session.commit()
            return result

        return await retry_on_conflict(
            self.session, operation, f"ADT message {message.message_id}"
        )

    async def _upsert_patient(self, message: ADTMessage) -> Patient:
        result = await self.session.execute(select(Patient).where(Patient.mrn == message.mrn))
        patient = result.scalar_one_or_none()

        if patient is None:
            patient = Patient(
                mrn=message.mrn,
                first_name=message.first_name,
                last_name=message.last_name,
            )
            self.session.add(patient)

        # Only overwrite with values the message actually carries
        for attr in ("first_name", "last_name", "date_of_birth", "sex", "phone", "email"):
            value = getattr(message, attr)
            if value:
                setattr(patient, attr, value)

        await self.session.flush()
        return patient

    async def _apply(self, message: ADTMessage) -> ADTResult:
        patient = await self._upsert_patient(message)
        result = ADTResult(
            message_id=message.message_id,
            event_type=message.event_type,
            patient_id=patient.id,
        )

        episode = None
        if message.event_type == EVENT_DISCHARGE:
            condition = infer_condition(message.diagnosis_codes)
            episode = Episode(
                patient_id=patient.id,
                condition_code=condition.value,
                admit_at=message.admit_at,
                discharge_at=message.discharge_at,
                diagnosis_codes=list(message.diagnosis_codes),
                risk_level=RiskLevel.LOW.value,
                wellness_streak=0,
                status=EpisodeStatus.OPEN.value,
                source_system=message.source_system,
            )
            self.session.add(episode)
            await self.session.flush()

            for medication in message.medications:
                self.session.add(EpisodeMedication(
                    episode_id=episode.id,
                    name=medication.name,
                    dose=medication.dose,
                    frequency=medication.frequency,
                    instructions=medication.instructions,
                    source="ADT",
                ))

            result.episode_id = episode.id
            result.condition_code = condition.value

            try:
                plan = await self.plan_builder.build_plan_in_transaction(episode, reason="DISCHARGE")
                result.plan_id = plan.id
            except NoTemplateError as e:
                logger.error(
                    f"No outreach template for episode {episode.id}: {e.detail}",
                    extra={"episode_id": episode.id},
                )
                result.plan_error = e.detail
                await write_audit_event(
                    session=self.session,
                    actor_type=ActorType.SYSTEM,
                    actor_id=None,
                    action="configuration_defect",
                    action_category="outreach",
                    entity_type="episode",
                    entity_id=episode.id,
                    metadata={"error": e.code, "detail": e.detail},
                )

        self.session.add(AdtMessageLog(
            external_message_id=message.message_id,
            message_type=message.event_type,
            patient_id=patient.id,
            episode_id=episode.id if episode else None,
            result=result.model_dump(),
        ))

        await write_audit_event(
            session=self.session,
            actor_type=ActorType.EHR,
            actor_id=message.message_id,
            action="adt_processed",
            action_category="ehr",
            entity_type="patient",
            entity_id=patient.id,
            metadata={
                "event_type": message.event_type,
                "episode_id": result.episode_id,
                "condition_code": result.condition_code,
                "source_system": message.source_system,
            },
        )

        logger.info(
            f"Processed ADT {message.event_type} {message.message_id} for MRN {message.mrn}",
            extra={"episode_id": result.episode_id},
        )
        return result
