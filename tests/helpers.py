"""Test doubles for external collaborators and small DB helpers."""

from datetime import datetime, timedelta, timezone

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from toc_orchestrator.integrations.ehr import EHRClient
from toc_orchestrator.integrations.pharmacy import PharmacyClient, PharmacyFill
from toc_orchestrator.models.outreach import OutreachAttempt
from toc_orchestrator.services.notifications import DeliveryReceipt, NotificationGateway

DISCHARGE_AT = datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime = DISCHARGE_AT) -> None:
        self.current = now

    def now(self) -> datetime:
        return self.current

    def set(self, when: datetime) -> None:
        self.current = when

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


class FakeGateway(NotificationGateway):
    """Records sends. Queued failures are raised by the next sends, in order."""

    def __init__(self) -> None:
        self.sent: list[dict] = []
        self.failures: list[Exception] = []
        self._receipts: dict[str, DeliveryReceipt] = {}

    async def send(self, channel, recipient, body, idempotency_key) -> DeliveryReceipt:
        if self.failures:
            raise self.failures.pop(0)
        if idempotency_key in self._receipts:
            return self._receipts[idempotency_key]

        self.sent.append({
            "channel": channel,
            "recipient": recipient,
            "body": body,
            "idempotency_key": idempotency_key,
        })
        receipt = DeliveryReceipt(
            provider_message_id=f"fake-{len(self.sent)}",
            accepted_at=datetime.now(timezone.utc),
        )
        self._receipts[idempotency_key] = receipt
        return receipt

    def sent_to(self, recipient: str) -> list[dict]:
        return [s for s in self.sent if s["recipient"] == recipient]


class FakePharmacy(PharmacyClient):
    def __init__(self) -> None:
        self.fills: list[PharmacyFill] = []
        self.error: Exception | None = None
        self.calls: list[tuple[str, list[str]]] = []

    async def get_fill_status(self, mrn, medications):
        self.calls.append((mrn, list(medications)))
        if self.error is not None:
            raise self.error
        return list(self.fills)


class FakeEHRClient(EHRClient):
    def __init__(self) -> None:
        self.documents: list[dict] = []
        self.failures: list[Exception] = []

    async def send_document(self, mrn, destination, content, content_type, idempotency_key):
        if self.failures:
            raise self.failures.pop(0)
        self.documents.append({
            "mrn": mrn,
            "destination": destination,
            "content": content,
            "content_type": content_type,
            "idempotency_key": idempotency_key,
        })
        return f"DOC-{len(self.documents)}"


async def reload(session: AsyncSession, model, entity_id: str):
    """Fresh copy of a row, bypassing the identity map."""
    result = await session.execute(
        select(model).where(model.id == entity_id).execution_options(populate_existing=True)
    )
    return result.scalar_one()


async def plan_attempts(session: AsyncSession, plan_id: str) -> list[OutreachAttempt]:
    result = await session.execute(
        select(OutreachAttempt)
        .where(OutreachAttempt.plan_id == plan_id)
        .order_by(OutreachAttempt.sequence_number)
        .execution_options(populate_existing=True)
    )
    return list(result.scalars().all())


def hl7_discharge(message_id: str = "MSG-HL7-1", mrn: str = "MRN-HL7-1") -> str:
    """A minimal ADT^A03 for a heart failure discharge."""
    pv1 = ["PV1", "1", "I"] + [""] * 41 + ["20260228083000", "20260302090000"]
    return "\r".join([
        f"MSH|^~\\&|EPIC|GENHOSP|TOC|TOC|20260302090500||ADT^A03|{message_id}|P|2.5",
        f"PID|1||{mrn}^^^GENHOSP^MR||Rivera^Ana||19560412|F|||||+15555550123",
        "|".join(pv1),
        "DG1|1||I50.9^Heart failure, unspecified^I10",
        "DG1|2||E11.9^Type 2 diabetes^I10",
    ])
