"""Protocol content pack and outreach template data models."""

import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

from toc_orchestrator.core.errors import ConfigurationError, NoTemplateError

WILDCARD = "*"


class ComparisonOperator(str, Enum):
    """Operators for numeric follow-up thresholds."""

    GREATER_THAN = "gt"
    GREATER_THAN_OR_EQUAL = "gte"
    LESS_THAN = "lt"
    LESS_THAN_OR_EQUAL = "lte"
    EQUALS = "eq"


@dataclass
class NumericFollowUp:
    """Question asked when a matched reply carries no number."""

    question: str
    operator: ComparisonOperator
    threshold: float

    def breached(self, value: float) -> bool:
        """True when the value is at or beyond the threshold."""
        op = self.operator

        if op == ComparisonOperator.GREATER_THAN:
            return value > self.threshold
        elif op == ComparisonOperator.GREATER_THAN_OR_EQUAL:
            return value >= self.threshold
        elif op == ComparisonOperator.LESS_THAN:
            return value < self.threshold
        elif op == ComparisonOperator.LESS_THAN_OR_EQUAL:
            return value <= self.threshold
        elif op == ComparisonOperator.EQUALS:
            return value == self.threshold

        return False


def _phrase_regexes(phrases: list[str]) -> list[re.Pattern]:
    return [re.compile(rf"(?<!\w){re.escape(p.lower())}(?!\w)") for p in phrases]


def _spans(patterns: list[re.Pattern], text: str) -> list[tuple[int, int]]:
    return [m.span() for pattern in patterns for m in pattern.finditer(text)]


@dataclass
class ProtocolRule:
    """A text-pattern rule in a content pack."""

    id: str
    condition: str
    category: str
    patterns: list[str]
    signal: str
    critical: bool = False
    exclude_patterns: list[str] = field(default_factory=list)
    numeric_follow_up: Optional[NumericFollowUp] = None
    description: str = ""

    def __post_init__(self) -> None:
        self._include = _phrase_regexes(self.patterns)
        self._exclude = _phrase_regexes(self.exclude_patterns)

    def applies_to(self, condition: str | None, category: str | None) -> bool:
        """Check the rule's condition and category scope."""
        if self.condition != WILDCARD and self.condition != condition:
            return False
        if self.category != WILDCARD and self.category != category:
            return False
        return True

    def matches(self, normalized_text: str) -> bool:
        """Match already-normalized text against include/exclude phrases.

        An exclude phrase cancels only the include matches it contains, so
        "chest pain but no chest pressure" still matches a chest pain rule.
        Reassurance rules (signal NONE) are cancelled by any exclude phrase:
        "fine but not good" is not a wellness confirmation.
        """
        included = _spans(self._include, normalized_text)
        if not included:
            return False

        excluded = _spans(self._exclude, normalized_text)
        if excluded and self.signal == "NONE":
            return False

        return any(
            not any(ex_start <= start and end <= ex_end for ex_start, ex_end in excluded)
            for start, end in included
        )


@dataclass
class OutreachQuestion:
    """Prompt text for a question code."""

    code: str
    text: str
    category: str


@dataclass
class ContentPack:
    """A versioned, ordered set of protocol rules and questions."""

    id: str
    version: str
    description: str
    questions: dict[str, OutreachQuestion]
    rules: list[ProtocolRule]
    content_hash: str = ""

    def get_rule(self, rule_id: str) -> Optional[ProtocolRule]:
        for rule in self.rules:
            if rule.id == rule_id:
                return rule
        return None

    def question_text(self, code: str) -> str:
        question = self.questions.get(code)
        if question is None:
            raise ConfigurationError(f"Question {code} missing from content pack {self.id}")
        return question.text

    @classmethod
    def from_dict(cls, data: dict[str, Any], content_hash: str = "") -> "ContentPack":
        """Create a ContentPack from its YAML representation."""
        questions = {
            code: OutreachQuestion(code=code, text=q["text"], category=q.get("category", "GENERAL"))
            for code, q in (data.get("questions") or {}).items()
        }

        rules = []
        for rule_data in data.get("rules", []):
            follow_up = None
            follow_up_data = rule_data.get("numeric_follow_up")
            if follow_up_data:
                follow_up = NumericFollowUp(
                    question=follow_up_data["question"],
                    operator=ComparisonOperator(follow_up_data["operator"]),
                    threshold=float(follow_up_data["threshold"]),
                )
                if follow_up.question not in questions:
                    raise ConfigurationError(
                        f"Rule {rule_data['id']} references unknown question {follow_up.question}"
                    )

            rules.append(ProtocolRule(
                id=rule_data["id"],
                condition=rule_data.get("condition") or WILDCARD,
                category=rule_data.get("category") or WILDCARD,
                patterns=list(rule_data.get("patterns", [])),
                exclude_patterns=list(rule_data.get("exclude_patterns") or []),
                signal=rule_data.get("signal", "NONE"),
                critical=bool(rule_data.get("critical", False)),
                numeric_follow_up=follow_up,
                description=rule_data.get("description", ""),
            ))

        return cls(
            id=data["id"],
            version=str(data["version"]),
            description=data.get("description", ""),
            questions=questions,
            rules=rules,
            content_hash=content_hash,
        )


@dataclass
class OutreachStep:
    """One planned touch, relative to discharge."""

    offset_hours: float
    channel: str
    question_code: str
    category: str | None = None


@dataclass
class OutreachTemplate:
    """Cadence of check-ins for a condition and risk level."""

    key: str
    condition: str | None
    risk_level: str | None
    attempts: list[OutreachStep]


SYSTEM_DEFAULT_KEY = "SYSTEM_DEFAULT"


@dataclass
class TemplateCatalog:
    """All outreach templates from one versioned document."""

    id: str
    version: str
    templates: list[OutreachTemplate]
    content_hash: str = ""

    def select(self, condition_code: str, risk_level: str) -> OutreachTemplate:
        """Pick the template for an episode.

        Exact (condition, risk) match first, then the condition default,
        then the system default.

        Raises:
            NoTemplateError: If not even the system default exists
        """
        for template in self.templates:
            if template.condition == condition_code and template.risk_level == risk_level:
                return template

        for template in self.templates:
            if template.condition == condition_code and template.risk_level is None:
                return template

        for template in self.templates:
            if template.key == SYSTEM_DEFAULT_KEY:
                return template

        raise NoTemplateError(condition_code, risk_level)

    @classmethod
    def from_dict(cls, data: dict[str, Any], content_hash: str = "") -> "TemplateCatalog":
        templates = []
        for template_data in data.get("templates", []):
            steps = [
                OutreachStep(
                    offset_hours=float(step["offset_hours"]),
                    channel=step["channel"],
                    question_code=step["question_code"],
                    category=step.get("category"),
                )
                for step in template_data.get("attempts", [])
            ]
            if not steps:
                raise ConfigurationError(f"Outreach template {template_data['key']} has no attempts")

            templates.append(OutreachTemplate(
                key=template_data["key"],
                condition=template_data.get("condition"),
                risk_level=template_data.get("risk_level"),
                attempts=steps,
            ))

        return cls(
            id=data.get("id", "unknown"),
            version=str(data.get("version", "unknown")),
            templates=templates,
            content_hash=content_hash,
        )
