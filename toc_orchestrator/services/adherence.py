"""Medication adherence tracking.

Adherence evidence comes from patient dose reports and pharmacy fill checks.
Poor adherence is submitted to the risk state machine as an ELEVATED signal;
missing evidence is reported as unknown, never as adherent.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any

from sqlalchemy import select

from toc_orchestrator.core.errors import TransientIntegrationError, ValidationError
from toc_orchestrator.models.audit_event import ActorType
from toc_orchestrator.models.episode import Episode
from toc_orchestrator.models.medication import (
    AdherenceEventType,
    AdherenceSource,
    EpisodeMedication,
    MedicationAdherenceEvent,
)
from toc_orchestrator.models.response import RiskSignal
from toc_orchestrator.models.risk import RiskSource
from toc_orchestrator.services.audit import write_audit_event
from toc_orchestrator.services.context import (
    OrchestratorContext,
    load_episode,
    load_patient,
    retry_on_conflict,
)
from toc_orchestrator.services.risk import RiskStateMachine
from toc_orchestrator.utils.time import format_datetime

logger = logging.getLogger(__name__)

STATUS_ADHERENT = "ADHERENT"
STATUS_NON_ADHERENT = "NON_ADHERENT"
STATUS_UNKNOWN = "UNKNOWN"

PICKUP_CONFIRMED = "CONFIRMED"
PICKUP_PENDING = "PENDING"
PICKUP_DELAYED = "DELAYED"


def adherence_ratio(taken: int, missed: int) -> float | None:
    """taken / (taken + missed); None when there is no evidence."""
    total = taken + missed
    if total == 0:
        return None
    return taken / total


@dataclass
class MedicationAdherence:
    medication: str
    taken: int = 0
    missed: int = 0

    @property
    def ratio(self) -> float | None:
        return adherence_ratio(self.taken, self.missed)

    @property
    def events(self) -> int:
        return self.taken + self.missed


@dataclass
class AdherenceSummary:
    """Computed adherence for an episode over the configured window."""

    episode_id: str
    window_days: int
    taken: int
    missed: int
    ratio: float | None
    status: str
    medications: list[MedicationAdherence] = field(default_factory=list)
    pickup_status: str | None = None
    last_pharmacy_check: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "episodeId": self.episode_id,
            "windowDays": self.window_days,
            "taken": self.taken,
            "missed": self.missed,
            "adherenceRatio": self.ratio,
            "status": self.status,
            "medications": [
                {
                    "medication": m.medication,
                    "taken": m.taken,
                    "missed": m.missed,
                    "adherenceRatio": m.ratio,
                }
                for m in self.medications
            ],
            "pickupStatus": self.pickup_status,
            "lastPharmacyCheck": (
                format_datetime(self.last_pharmacy_check) if self.last_pharmacy_check else None
            ),
        }


class MedicationAdherenceTracker:
    """Records adherence evidence and raises signals on poor adherence."""

    def __init__(self, ctx: OrchestratorContext) -> None:
        self.ctx = ctx
        self.session = ctx.session
        self.settings = ctx.settings
        self.risk = RiskStateMachine(ctx)

    async def _events(
        self,
        episode_id: str,
        since: datetime | None = None,
        event_types: list[AdherenceEventType] | None = None,
    ) -> list[MedicationAdherenceEvent]:
        query = select(MedicationAdherenceEvent).where(
            MedicationAdherenceEvent.episode_id == episode_id
        )
        if since is not None:
            query = query.where(MedicationAdherenceEvent.occurred_at >= since)
        if event_types:
            query = query.where(
                MedicationAdherenceEvent.event_type.in_([t.value for t in event_types])
            )
        result = await self.session.execute(query.order_by(MedicationAdherenceEvent.occurred_at))
        return list(result.scalars().all())

    async def medications(self, episode_id: str) -> list[EpisodeMedication]:
        result = await self.session.execute(
            select(EpisodeMedication)
            .where(EpisodeMedication.episode_id == episode_id)
            .order_by(EpisodeMedication.name)
        )
        return list(result.scalars().all())

    async def summary(self, episode_id: str, now: datetime | None = None) -> AdherenceSummary:
        """Adherence over the trailing window."""
        now = now or self.ctx.now()
        episode = await load_episode(self.session, episode_id)
        window_start = now - timedelta(days=self.settings.adherence_window_days)

        per_med: dict[str, MedicationAdherence] = {}
        for event in await self._events(
            episode.id,
            since=window_start,
            event_types=[AdherenceEventType.DOSE_TAKEN, AdherenceEventType.DOSE_MISSED],
        ):
            name = event.medication_name or "unspecified"
            entry = per_med.setdefault(name, MedicationAdherence(medication=name))
            if event.event_type == AdherenceEventType.DOSE_TAKEN:
                entry.taken += 1
            else:
                entry.missed += 1

        taken = sum(m.taken for m in per_med.values())
        missed = sum(m.missed for m in per_med.values())
        ratio = adherence_ratio(taken, missed)

        if ratio is None:
            status = STATUS_UNKNOWN
        elif ratio < self.settings.adherence_threshold:
            status = STATUS_NON_ADHERENT
        else:
            status = STATUS_ADHERENT

        pickup_status, last_check = await self._pickup_state(episode)

        return AdherenceSummary(
            episode_id=episode.id,
            window_days=self.settings.adherence_window_days,
            taken=taken,
            missed=missed,
            ratio=ratio,
            status=status,
            medications=sorted(per_med.values(), key=lambda m: m.medication),
            pickup_status=pickup_status,
            last_pharmacy_check=last_check,
        )

    async def _pickup_state(self, episode: Episode) -> tuple[str | None, datetime | None]:
        events = await self._events(
            episode.id,
            event_types=[
                AdherenceEventType.PICKUP_CONFIRMED,
                AdherenceEventType.PICKUP_DELAYED,
                AdherenceEventType.CHECK_FAILED,
            ],
        )
        if not events:
            return None, None

        last = events[-1]
        status = {
            AdherenceEventType.PICKUP_CONFIRMED: PICKUP_CONFIRMED,
            AdherenceEventType.PICKUP_DELAYED: PICKUP_DELAYED,
            AdherenceEventType.CHECK_FAILED: STATUS_UNKNOWN,
        }[AdherenceEventType(last.event_type)]
        return status, last.occurred_at

    async def log_dose(
        self,
        episode_id: str,
        medication: str,
        taken: bool,
        reported_at: datetime | None = None,
    ) -> AdherenceSummary:
        """Record a patient-reported dose and re-evaluate adherence.

        Raises:
            ValidationError: Missing medication name
            NotFoundError: Unknown episode
        """
        if not medication or not medication.strip():
            raise ValidationError("Medication name is required")
        medication = medication.strip()

        async def operation() -> None:
            now = self.ctx.now()
            episode = await load_episode(self.session, episode_id)
            occurred_at = reported_at or now

            self.session.add(MedicationAdherenceEvent(
                episode_id=episode.id,
                medication_name=medication,
                event_type=(
                    AdherenceEventType.DOSE_TAKEN if taken else AdherenceEventType.DOSE_MISSED
                ).value,
                source=AdherenceSource.PATIENT_REPORTED.value,
                occurred_at=occurred_at,
            ))
            await self.session.flush()

            await self._evaluate_medication(episode, medication, now)
            episode.touch(now)
            await self.session.commit()

        await retry_on_conflict(self.session, operation, f"Log dose for episode {episode_id}")
        return await self.summary(episode_id)

    async def _evaluate_medication(self, episode: Episode, medication: str, now: datetime) -> None:
        window_start = now - timedelta(days=self.settings.adherence_window_days)
        entry = MedicationAdherence(medication=medication)
        for event in await self._events(
            episode.id,
            since=window_start,
            event_types=[AdherenceEventType.DOSE_TAKEN, AdherenceEventType.DOSE_MISSED],
        ):
            if event.medication_name != medication:
                continue
            if event.event_type == AdherenceEventType.DOSE_TAKEN:
                entry.taken += 1
            else:
                entry.missed += 1

        if entry.events < self.settings.adherence_min_events:
            return
        if entry.ratio is None or entry.ratio >= self.settings.adherence_threshold:
            return

        logger.info(
            f"Low adherence for {medication} on episode {episode.id}: {entry.ratio:.2f}",
            extra={"episode_id": episode.id},
        )
        await self.risk.apply_signal_in_transaction(
            episode,
            RiskSignal.ELEVATED,
            RiskSource.ADHERENCE,
            idempotency_key=f"adherence:{episode.id}:{medication.lower()}:{now.date().isoformat()}",
            reason=f"Adherence {entry.ratio:.0%} for {medication}",
        )

    async def check_pharmacy(self, episode_id: str) -> dict[str, Any]:
        """Query pharmacy fill status for the episode's medications.

        A failed or timed-out check is recorded and reported as UNKNOWN.
        """
        episode = await load_episode(self.session, episode_id)
        patient = await load_patient(self.session, episode.patient_id)
        medication_names = [m.name for m in await self.medications(episode.id)]

        try:
            fills = await asyncio.wait_for(
                self.ctx.pharmacy.get_fill_status(patient.mrn, medication_names),
                timeout=self.settings.pharmacy_timeout_seconds,
            )
        except (asyncio.TimeoutError, TransientIntegrationError) as e:
            error = str(e) or "Pharmacy check timed out"
            return await self._record_failed_check(episode_id, error)

        async def operation() -> dict[str, Any]:
            now = self.ctx.now()
            episode = await load_episode(self.session, episode_id)
            grace_deadline = episode.discharge_at + timedelta(
                hours=self.settings.pharmacy_pickup_grace_hours
            )
            results = []

            for fill in fills:
                if fill.picked_up:
                    status = PICKUP_CONFIRMED
                    self._add_pharmacy_event(
                        episode.id, fill.medication, AdherenceEventType.PICKUP_CONFIRMED, now,
                        {"picked_up_at": format_datetime(fill.picked_up_at)},
                    )
                elif now >= grace_deadline:
                    status = PICKUP_DELAYED
                    self._add_pharmacy_event(
                        episode.id, fill.medication, AdherenceEventType.PICKUP_DELAYED, now,
                        {"filled_at": format_datetime(fill.filled_at)},
                    )
                    await self.session.flush()
                    await self.risk.apply_signal_in_transaction(
                        episode,
                        RiskSignal.ELEVATED,
                        RiskSource.ADHERENCE,
                        idempotency_key=f"pickup:{episode.id}:{fill.medication.lower()}",
                        reason=f"{fill.medication} not picked up within "
                               f"{self.settings.pharmacy_pickup_grace_hours}h of discharge",
                    )
                else:
                    status = PICKUP_PENDING
                results.append({"medication": fill.medication, "pickupStatus": status})

            await write_audit_event(
                session=self.session,
                actor_type=ActorType.SYSTEM,
                actor_id=None,
                action="pharmacy_checked",
                action_category="adherence",
                entity_type="episode",
                entity_id=episode.id,
                metadata={"results": results},
            )
            episode.touch(now)
            await self.session.commit()

            if any(r["pickupStatus"] == PICKUP_DELAYED for r in results):
                overall = PICKUP_DELAYED
            elif results and all(r["pickupStatus"] == PICKUP_CONFIRMED for r in results):
                overall = PICKUP_CONFIRMED
            elif results:
                overall = PICKUP_PENDING
            else:
                overall = STATUS_UNKNOWN
            return {"episodeId": episode.id, "status": overall, "medications": results}

        return await retry_on_conflict(
            self.session, operation, f"Pharmacy check for episode {episode_id}"
        )

    def _add_pharmacy_event(
        self,
        episode_id: str,
        medication: str | None,
        event_type: AdherenceEventType,
        now: datetime,
        details: dict[str, Any] | None = None,
    ) -> None:
        self.session.add(MedicationAdherenceEvent(
            episode_id=episode_id,
            medication_name=medication,
            event_type=event_type.value,
            source=AdherenceSource.PHARMACY_API.value,
            details=details,
            occurred_at=now,
        ))

    async def _record_failed_check(self, episode_id: str, error: str) -> dict[str, Any]:
        logger.warning(
            f"Pharmacy check failed for episode {episode_id}: {error}",
            extra={"episode_id": episode_id},
        )
        self._add_pharmacy_event(
            episode_id, None, AdherenceEventType.CHECK_FAILED, self.ctx.now(), {"error": error}
        )
        await self.session.commit()
        return {"episodeId": episode_id, "status": STATUS_UNKNOWN, "error": error, "medications": []}
