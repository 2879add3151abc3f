"""Encounter note generation and export to the EHR.

Template-based note text (no free-form generation). SECURE_FAX exports are
rendered to PDF.
"""

import asyncio
import hashlib
import logging
from io import BytesIO
from typing import Any

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import mm
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy import select

from toc_orchestrator.core.errors import (
    NotFoundError,
    StateConflictError,
    TransientIntegrationError,
    ValidationError,
)
from toc_orchestrator.integrations.ehr import EHRRejectedError
from toc_orchestrator.models.audit_event import ActorType
from toc_orchestrator.models.ehr import EncounterExport, ExportDestination, ExportStatus
from toc_orchestrator.models.escalation import EscalationTask
from toc_orchestrator.models.response import PatientResponse
from toc_orchestrator.models.risk import RiskTransition
from toc_orchestrator.services.audit import write_audit_event
from toc_orchestrator.services.context import OrchestratorContext, load_episode, load_patient
from toc_orchestrator.services.work_queue import KIND_EXPORT_NOTE, TaskQueue
from toc_orchestrator.utils.time import format_datetime

logger = logging.getLogger(__name__)


class EncounterNoteGenerator:
    """Builds a transition-of-care encounter note from episode data."""

    def __init__(self, summary: dict[str, Any]) -> None:
        self.patient = summary["patient"]
        self.episode = summary["episode"]
        self.transitions = summary.get("transitions", [])
        self.responses = summary.get("responses", [])
        self.tasks = summary.get("tasks", [])

    def generate_text(self) -> str:
        sections = [
            self._header_section(),
            self._risk_section(),
            self._responses_section(),
            self._tasks_section(),
        ]
        return "\n\n".join(s for s in sections if s)

    def _header_section(self) -> str:
        return f"""TRANSITION OF CARE FOLLOW-UP NOTE
{'=' * 50}
Patient: {self.patient['name']} (MRN {self.patient['mrn']})
Date of Birth: {self.patient['date_of_birth']}
Condition: {self.episode['condition_code']}
Discharged: {self.episode['discharge_at']}
Current Risk Level: {self.episode['risk_level']}
Episode Status: {self.episode['status']}"""

    def _risk_section(self) -> str:
        if not self.transitions:
            return ""
        lines = ["RISK HISTORY", "-" * 30]
        for t in self.transitions:
            lines.append(f"{t['at']}: {t['from']} -> {t['to']} ({t['source']}) {t['reason'] or ''}".rstrip())
        return "\n".join(lines)

    def _responses_section(self) -> str:
        lines = ["PATIENT RESPONSES", "-" * 30]
        if not self.responses:
            lines.append("No responses recorded.")
        for r in self.responses:
            flag = " [REVIEW]" if r["needs_review"] else ""
            lines.append(f"{r['at']}: \"{r['text']}\" -> {r['signal']}{flag}")
        return "\n".join(lines)

    def _tasks_section(self) -> str:
        if not self.tasks:
            return ""
        lines = ["ESCALATIONS", "-" * 30]
        for t in self.tasks:
            line = f"{t['created_at']}: {t['severity']} {t['status']}"
            if t["outcome"]:
                line += f" - {t['outcome']}: {t['notes']}"
            lines.append(line)
        return "\n".join(lines)


class EncounterNotePDF:
    """Renders an encounter note to PDF."""

    def __init__(self) -> None:
        self.styles = getSampleStyleSheet()
        self.styles.add(ParagraphStyle(
            name="NoteHeader",
            parent=self.styles["Heading1"],
            fontSize=16,
            spaceAfter=6,
        ))
        self.styles.add(ParagraphStyle(
            name="NoteSection",
            parent=self.styles["Heading2"],
            fontSize=12,
            spaceBefore=8,
            spaceAfter=4,
        ))

    def generate_pdf(self, summary: dict[str, Any]) -> bytes:
        buffer = BytesIO()
        doc = SimpleDocTemplate(
            buffer,
            pagesize=LETTER,
            leftMargin=20 * mm,
            rightMargin=20 * mm,
            topMargin=20 * mm,
            bottomMargin=20 * mm,
        )

        patient = summary["patient"]
        episode = summary["episode"]
        story = [
            Paragraph("TRANSITION OF CARE FOLLOW-UP NOTE", self.styles["NoteHeader"]),
            Spacer(1, 4 * mm),
        ]

        info = Table([
            ["Patient:", f"{patient['name']} (MRN {patient['mrn']})"],
            ["DOB:", patient["date_of_birth"]],
            ["Condition:", episode["condition_code"]],
            ["Discharged:", episode["discharge_at"]],
            ["Risk level:", episode["risk_level"]],
        ], colWidths=[80, 300])
        info.setStyle(TableStyle([
            ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
            ("FONTSIZE", (0, 0), (-1, -1), 10),
            ("VALIGN", (0, 0), (-1, -1), "TOP"),
        ]))
        story.append(info)

        if summary.get("transitions"):
            story.append(Paragraph("RISK HISTORY", self.styles["NoteSection"]))
            rows = [["When", "From", "To", "Source"]] + [
                [t["at"], t["from"], t["to"], t["source"]] for t in summary["transitions"]
            ]
            table = Table(rows, colWidths=[120, 60, 60, 100])
            table.setStyle(TableStyle([
                ("BACKGROUND", (0, 0), (-1, 0), colors.lightgrey),
                ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
                ("FONTSIZE", (0, 0), (-1, -1), 9),
                ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
            ]))
            story.append(table)

        story.append(Paragraph("PATIENT RESPONSES", self.styles["NoteSection"]))
        if not summary.get("responses"):
            story.append(Paragraph("No responses recorded.", self.styles["BodyText"]))
        for r in summary.get("responses", []):
            story.append(Paragraph(
                f"{r['at']}: {_escape(r['text'])} &rarr; {r['signal']}",
                self.styles["BodyText"],
            ))

        if summary.get("tasks"):
            story.append(Paragraph("ESCALATIONS", self.styles["NoteSection"]))
            for t in summary["tasks"]:
                text = f"{t['created_at']}: {t['severity']} {t['status']}"
                if t["outcome"]:
                    text += f" - {t['outcome']}: {_escape(t['notes'] or '')}"
                story.append(Paragraph(text, self.styles["BodyText"]))

        doc.build(story)
        return buffer.getvalue()


def _escape(text: str) -> str:
    return text.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


class EHRExportService:
    """Exports encounter notes through the EHR client."""

    def __init__(self, ctx: OrchestratorContext) -> None:
        self.ctx = ctx
        self.session = ctx.session
        self.settings = ctx.settings
        self.queue = TaskQueue(ctx.session, ctx.settings)

    async def build_summary(self, episode_id: str) -> dict[str, Any]:
        episode = await load_episode(self.session, episode_id)
        patient = await load_patient(self.session, episode.patient_id)

        transitions = (await self.session.execute(
            select(RiskTransition)
            .where(RiskTransition.episode_id == episode.id)
            .order_by(RiskTransition.created_at)
        )).scalars().all()
        responses = (await self.session.execute(
            select(PatientResponse)
            .where(PatientResponse.episode_id == episode.id)
            .order_by(PatientResponse.received_at)
        )).scalars().all()
        tasks = (await self.session.execute(
            select(EscalationTask)
            .where(EscalationTask.episode_id == episode.id)
            .order_by(EscalationTask.created_at)
        )).scalars().all()

        return {
            "patient": {
                "name": patient.full_name,
                "mrn": patient.mrn,
                "date_of_birth": (
                    patient.date_of_birth.isoformat() if patient.date_of_birth else "Not recorded"
                ),
            },
            "episode": {
                "id": episode.id,
                "condition_code": episode.condition_code,
                "discharge_at": format_datetime(episode.discharge_at),
                "risk_level": episode.current_risk.value,
                "status": episode.status,
            },
            "transitions": [
                {
                    "at": format_datetime(t.created_at),
                    "from": t.from_level,
                    "to": t.to_level,
                    "source": t.source,
                    "reason": t.reason,
                }
                for t in transitions
                if t.changed
            ],
            "responses": [
                {
                    "at": format_datetime(r.received_at),
                    "text": r.raw_text or "",
                    "signal": r.risk_signal,
                    "needs_review": r.needs_review,
                }
                for r in responses
            ],
            "tasks": [
                {
                    "created_at": format_datetime(t.created_at),
                    "severity": t.severity,
                    "status": t.status,
                    "outcome": t.outcome,
                    "notes": t.resolution_notes,
                }
                for t in tasks
            ],
        }

    def render(self, summary: dict[str, Any], destination: ExportDestination) -> tuple[bytes, str]:
        """Document bytes and content type for a destination."""
        if destination == ExportDestination.SECURE_FAX:
            return EncounterNotePDF().generate_pdf(summary), "application/pdf"
        return EncounterNoteGenerator(summary).generate_text().encode("utf-8"), "text/plain"

    async def export_note(self, episode_id: str, destination: str) -> EncounterExport:
        """Create an export record and attempt delivery.

        Raises:
            ValidationError: Unknown destination
            NotFoundError: Unknown episode
        """
        try:
            target = ExportDestination(destination)
        except ValueError as e:
            raise ValidationError(
                f"Invalid destination: {destination}. "
                f"Expected one of {', '.join(d.value for d in ExportDestination)}"
            ) from e

        episode = await load_episode(self.session, episode_id)
        export = EncounterExport(
            episode_id=episode.id,
            destination=target.value,
            status=ExportStatus.PENDING.value,
            attempts=0,
        )
        self.session.add(export)
        await self.session.flush()
        await write_audit_event(
            session=self.session,
            actor_type=ActorType.SYSTEM,
            actor_id=None,
            action="note_export_requested",
            action_category="ehr",
            entity_type="encounter_export",
            entity_id=export.id,
            metadata={"episode_id": episode.id, "destination": target.value},
        )
        await self.session.commit()

        return await self.deliver(export.id)

    async def get_export(self, export_id: str) -> EncounterExport:
        result = await self.session.execute(
            select(EncounterExport)
            .where(EncounterExport.id == export_id)
            .execution_options(populate_existing=True)
        )
        export = result.scalar_one_or_none()
        if export is None:
            raise NotFoundError("Export", export_id)
        return export

    async def deliver(self, export_id: str, raise_transient: bool = False) -> EncounterExport:
        """Render and send an export.

        A transient failure leaves the export PENDING and queues a retry
        (or re-raises, when called from the queue runner). A rejection marks
        it FAILED.
        """
        export = await self.get_export(export_id)
        if export.status != ExportStatus.PENDING:
            if export.status == ExportStatus.EXPORTED:
                return export
            raise StateConflictError(f"Export {export_id} already failed")

        summary = await self.build_summary(export.episode_id)
        content, content_type = self.render(summary, ExportDestination(export.destination))
        patient_mrn = summary["patient"]["mrn"]
        now = self.ctx.now()

        export.attempts = (export.attempts or 0) + 1
        export.content_type = content_type
        export.document_hash = hashlib.sha256(content).hexdigest()

        try:
            reference = await asyncio.wait_for(
                self.ctx.ehr.send_document(
                    patient_mrn,
                    export.destination,
                    content,
                    content_type,
                    idempotency_key=export.id,
                ),
                timeout=self.settings.ehr_timeout_seconds,
            )
        except (asyncio.TimeoutError, TransientIntegrationError) as e:
            error = str(e) or f"EHR export timed out after {self.settings.ehr_timeout_seconds}s"
            export.last_error = error
            logger.warning(f"EHR export {export.id} failed transiently: {error}")
            if raise_transient:
                await self.session.commit()
                raise TransientIntegrationError(error) from e
            await self.queue.enqueue(
                kind=KIND_EXPORT_NOTE,
                payload={"export_id": export.id},
                idempotency_key=f"export:{export.id}",
                available_at=now,
            )
            await self.session.commit()
            return export
        except EHRRejectedError as e:
            export.status = ExportStatus.FAILED.value
            export.last_error = e.detail
            await self._audit(export, "note_export_failed", {"error": e.detail})
            await self.session.commit()
            logger.error(f"EHR rejected export {export.id}: {e.detail}")
            return export

        export.status = ExportStatus.EXPORTED.value
        export.document_reference = reference
        export.last_error = None
        await self._audit(export, "note_exported", {"document_reference": reference})
        await self.session.commit()
        logger.info(
            f"Exported note {export.id} to {export.destination}",
            extra={"episode_id": export.episode_id},
        )
        return export

    async def _audit(self, export: EncounterExport, action: str, metadata: dict) -> None:
        await write_audit_event(
            session=self.session,
            actor_type=ActorType.SYSTEM,
            actor_id=None,
            action=action,
            action_category="ehr",
            entity_type="encounter_export",
            entity_id=export.id,
            metadata={"episode_id": export.episode_id, "destination": export.destination, **metadata},
        )
