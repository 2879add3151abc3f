"""Tests for the HL7 v2 ADT parser."""

from datetime import date, datetime, timezone

import pytest

from tests.helpers import hl7_discharge
from toc_orchestrator.core.errors import MalformedMessageError
from toc_orchestrator.integrations.hl7 import infer_condition, parse_hl7, parse_hl7_timestamp
from toc_orchestrator.models.episode import ConditionCode


class TestParseHL7:
    def test_parses_discharge_message(self) -> None:
        message = parse_hl7(hl7_discharge(message_id="M1", mrn="MRN-42"))

        assert message.message_id == "M1"
        assert message.event_type == "A03"
        assert message.mrn == "MRN-42"
        assert message.last_name == "Rivera"
        assert message.first_name == "Ana"
        assert message.date_of_birth == date(1956, 4, 12)
        assert message.sex == "F"
        assert message.phone == "+15555550123"
        assert message.source_system == "EPIC"
        assert message.discharge_at == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)
        assert message.admit_at == datetime(2026, 2, 28, 8, 30, tzinfo=timezone.utc)
        assert message.diagnosis_codes == ["I50.9", "E11.9"]

    def test_accepts_newline_separated_segments(self) -> None:
        message = parse_hl7(hl7_discharge().replace("\r", "\n"))

        assert message.mrn == "MRN-HL7-1"

    def test_missing_pid_is_malformed(self) -> None:
        text = "MSH|^~\\&|EPIC|GENHOSP|TOC|TOC|20260302||ADT^A03|M1|P|2.5"

        with pytest.raises(MalformedMessageError):
            parse_hl7(text)

    def test_missing_message_id_is_malformed(self) -> None:
        text = hl7_discharge(message_id="")

        with pytest.raises(MalformedMessageError):
            parse_hl7(text)

    def test_unsupported_event_is_malformed(self) -> None:
        text = hl7_discharge().replace("ADT^A03", "ORU^R01")

        with pytest.raises(MalformedMessageError):
            parse_hl7(text)

    def test_empty_message_is_malformed(self) -> None:
        with pytest.raises(MalformedMessageError):
            parse_hl7("   ")


class TestTimestamps:
    def test_offset_is_converted_to_utc(self) -> None:
        parsed = parse_hl7_timestamp("202603020400-0500")

        assert parsed == datetime(2026, 3, 2, 9, 0, tzinfo=timezone.utc)

    def test_date_only(self) -> None:
        assert parse_hl7_timestamp("20260302") == datetime(2026, 3, 2, tzinfo=timezone.utc)

    def test_blank_is_none(self) -> None:
        assert parse_hl7_timestamp("") is None

    def test_garbage_is_malformed(self) -> None:
        with pytest.raises(MalformedMessageError):
            parse_hl7_timestamp("yesterday")

    def test_impossible_date_is_malformed(self) -> None:
        with pytest.raises(MalformedMessageError):
            parse_hl7_timestamp("20261340")


@pytest.mark.parametrize(
    "codes,expected",
    [
        (["I50.9"], ConditionCode.HF),
        (["J44.1"], ConditionCode.COPD),
        (["I21.4"], ConditionCode.AMI),
        (["J18.9"], ConditionCode.PNA),
        (["E11.9", "J44.0"], ConditionCode.COPD),
        (["Z99.9"], ConditionCode.OTHER),
        ([], ConditionCode.OTHER),
    ],
)
def test_infer_condition(codes, expected) -> None:
    """Test that the first recognised diagnosis code picks the condition."""
    assert infer_condition(codes) == expected
