"""Minimal HL7 v2 ADT parser.

Only the segments and fields the orchestrator consumes are read:

    MSH-3   sending application
    MSH-9   message type (ADT^A03)
    MSH-10  message control id
    PID-3   MRN (first repetition, first component)
    PID-5   name (last^first)
    PID-7   date of birth
    PID-8   administrative sex
    PID-13  home phone
    PV1-44  admit date/time
    PV1-45  discharge date/time
    DG1-3   diagnosis code (one DG1 per diagnosis)
"""

import re
from datetime import date, datetime, timedelta, timezone

from pydantic import ValidationError as PydanticValidationError

from toc_orchestrator.core.errors import MalformedMessageError
from toc_orchestrator.models.episode import ConditionCode
from toc_orchestrator.schemas.ehr import ADTMessage

_SEGMENT_SPLIT = re.compile(r"\r\n|\r|\n")
_HL7_TS = re.compile(
    r"^(\d{4})(\d{2})(\d{2})(?:(\d{2})(\d{2})(?:(\d{2}))?)?(?:\.\d+)?([+-]\d{4})?$"
)

# ICD-10 prefixes for tracked conditions, checked in order
_CONDITION_PREFIXES: list[tuple[tuple[str, ...], ConditionCode]] = [
    (("I50",), ConditionCode.HF),
    (("J44",), ConditionCode.COPD),
    (("I21", "I22"), ConditionCode.AMI),
    (("J12", "J13", "J14", "J15", "J16", "J17", "J18"), ConditionCode.PNA),
]


def infer_condition(diagnosis_codes: list[str]) -> ConditionCode:
    """Map ICD-10 codes to a tracked condition; first recognised code wins."""
    for raw in diagnosis_codes:
        code = raw.replace(".", "").strip().upper()
        for prefixes, condition in _CONDITION_PREFIXES:
            if code.startswith(prefixes):
                return condition
    return ConditionCode.OTHER


def parse_hl7_timestamp(value: str) -> datetime | None:
    """Parse YYYYMMDD[HHMM[SS]][.S][+/-ZZZZ]; naive values are UTC."""
    value = value.strip()
    if not value:
        return None

    match = _HL7_TS.match(value)
    if not match:
        raise MalformedMessageError(f"Invalid HL7 timestamp: {value}")

    year, month, day, hour, minute, second, offset = match.groups()
    tz = timezone.utc
    if offset:
        sign = 1 if offset[0] == "+" else -1
        tz = timezone(sign * timedelta(hours=int(offset[1:3]), minutes=int(offset[3:5])))

    try:
        parsed = datetime(
            int(year), int(month), int(day),
            int(hour or 0), int(minute or 0), int(second or 0),
            tzinfo=tz,
        )
    except ValueError as e:
        raise MalformedMessageError(f"Invalid HL7 timestamp: {value}") from e

    return parsed.astimezone(timezone.utc)


def _parse_date(value: str) -> date | None:
    parsed = parse_hl7_timestamp(value)
    return parsed.date() if parsed else None


def _field(fields: list[str], index: int) -> str:
    return fields[index] if index < len(fields) else ""


def _component(value: str, index: int = 0) -> str:
    """First repetition, nth component."""
    first_repetition = value.split("~")[0]
    components = first_repetition.split("^")
    return components[index].strip() if index < len(components) else ""


def split_segments(text: str) -> dict[str, list[list[str]]]:
    """Group pipe-delimited segments by segment id."""
    segments: dict[str, list[list[str]]] = {}
    for line in _SEGMENT_SPLIT.split(text.strip()):
        line = line.strip()
        if not line:
            continue
        fields = line.split("|")
        segments.setdefault(fields[0].upper(), []).append(fields)
    return segments


def parse_hl7(text: str) -> ADTMessage:
    """Parse an HL7 v2 ADT message into an ADTMessage.

    Raises:
        MalformedMessageError: Missing MSH/PID, message id or MRN, an
            unsupported event, or unparseable timestamps
    """
    if not text or not text.strip():
        raise MalformedMessageError("Empty HL7 message")

    segments = split_segments(text)

    if "MSH" not in segments:
        raise MalformedMessageError("Missing MSH segment")
    if "PID" not in segments:
        raise MalformedMessageError("Missing PID segment")

    # MSH-1 is the field separator itself, so MSH-n sits at index n-1
    msh = segments["MSH"][0]
    message_type = _field(msh, 8)
    message_id = _field(msh, 9).strip()
    sending_app = _component(_field(msh, 2)) or None

    if not message_id:
        raise MalformedMessageError("Missing message control id (MSH-10)")
    if not message_type:
        raise MalformedMessageError("Missing message type (MSH-9)")

    pid = segments["PID"][0]
    mrn = _component(_field(pid, 3))
    if not mrn:
        raise MalformedMessageError("Missing MRN (PID-3)")

    name = _field(pid, 5)
    pv1 = segments.get("PV1", [[]])[0]

    diagnosis_codes = [
        code
        for code in (_component(_field(dg1, 3)) for dg1 in segments.get("DG1", []))
        if code
    ]

    try:
        return ADTMessage(
            message_id=message_id,
            event_type=_component(message_type, 1) or message_type,
            mrn=mrn,
            last_name=_component(name, 0),
            first_name=_component(name, 1),
            date_of_birth=_parse_date(_component(_field(pid, 7))),
            sex=_component(_field(pid, 8)) or None,
            phone=_component(_field(pid, 13)) or None,
            admit_at=parse_hl7_timestamp(_component(_field(pv1, 44))),
            discharge_at=parse_hl7_timestamp(_component(_field(pv1, 45))),
            diagnosis_codes=diagnosis_codes,
            source_system=sending_app,
        )
    except PydanticValidationError as e:
        raise MalformedMessageError(f"Invalid ADT message: {e.errors()[0]['msg']}") from e
