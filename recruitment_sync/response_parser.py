"""
Survey response flattening.

A ResponseParser is built from the version history of one survey and turns
nested survey responses into flat column -> value records:

- Meta columns: ID, participantID, version, opened, submitted, arrived
- Single choice: ``<item>`` holds the selected option key
- Multiple choice: ``<item>-<option>`` holds true/false per option
- Input questions (text, number, date, ...): ``<item>`` holds the entered value
- Options with an input field add ``<item>-<option>-open`` with the entered value
- Anything else: ``<item>`` holds the JSON encoded response tree

When a question has more than one response slot, the slot key is inserted
after the item key (``<item>-<slot>``).
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .models import ResponseItem, SurveyItemResponse, SurveyResponse

logger = logging.getLogger(__name__)

DEFAULT_QUESTION_OPTION_SEP = "-"
OPEN_FIELD_SUFFIX = "open"

QUESTION_TYPE_SINGLE_CHOICE = "single_choice"
QUESTION_TYPE_DROPDOWN = "dropdown"
QUESTION_TYPE_MULTIPLE_CHOICE = "multiple_choice"
QUESTION_TYPE_TEXT_INPUT = "text_input"
QUESTION_TYPE_NUMBER_INPUT = "number_input"
QUESTION_TYPE_DATE_INPUT = "date_input"
QUESTION_TYPE_NUMERIC_SLIDER = "numeric_slider"

SINGLE_CHOICE_TYPES = {QUESTION_TYPE_SINGLE_CHOICE, QUESTION_TYPE_DROPDOWN}
INPUT_TYPES = {
    QUESTION_TYPE_TEXT_INPUT,
    QUESTION_TYPE_NUMBER_INPUT,
    QUESTION_TYPE_DATE_INPUT,
    QUESTION_TYPE_NUMERIC_SLIDER,
}
NUMERIC_TYPES = {QUESTION_TYPE_NUMBER_INPUT, QUESTION_TYPE_NUMERIC_SLIDER, QUESTION_TYPE_DATE_INPUT}

OPTION_TYPE_OPTION = "option"

META_COLUMNS = ["ID", "participantID", "version", "opened", "submitted", "arrived"]


@dataclass
class ResponseOption:
    id: str
    option_type: str = OPTION_TYPE_OPTION

    @property
    def has_input(self) -> bool:
        return self.option_type != OPTION_TYPE_OPTION


@dataclass
class ResponseSlotDefinition:
    id: str
    response_type: str = ""
    options: List[ResponseOption] = field(default_factory=list)


@dataclass
class QuestionDefinition:
    id: str
    question_type: str
    title: str = ""
    responses: List[ResponseSlotDefinition] = field(default_factory=list)


@dataclass
class SurveyVersion:
    """Question list of one published survey version."""
    version_id: str
    published: int = 0
    unpublished: int = 0
    questions: List[QuestionDefinition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SurveyVersion":
        questions = []
        for q in data.get("questions") or []:
            slots = []
            for slot in q.get("responses") or []:
                slots.append(ResponseSlotDefinition(
                    id=slot.get("id", ""),
                    response_type=slot.get("responseType", ""),
                    options=[
                        ResponseOption(id=o.get("id", ""), option_type=o.get("optionType") or OPTION_TYPE_OPTION)
                        for o in slot.get("options") or []
                    ],
                ))
            questions.append(QuestionDefinition(
                id=q.get("id", ""),
                question_type=q.get("questionType", ""),
                title=q.get("title", ""),
                responses=slots,
            ))
        return cls(
            version_id=data.get("versionId", ""),
            published=int(data.get("published") or 0),
            unpublished=int(data.get("unpublished") or 0),
            questions=questions,
        )

    def is_active_at(self, ts: int) -> bool:
        return self.published <= ts and (self.unpublished == 0 or ts < self.unpublished)


@dataclass
class ParsedResponse:
    id: str
    participant_id: str
    version: str
    opened: int
    submitted: int
    arrived: int
    responses: Dict[str, Any] = field(default_factory=dict)


def _find_child(item: Optional[ResponseItem], key: str) -> Optional[ResponseItem]:
    if item is None:
        return None
    for child in item.items:
        if child.key == key:
            return child
    return None


def _number_value(value: str) -> Any:
    if not value:
        return ""
    try:
        return int(value)
    except (TypeError, ValueError):
        pass
    try:
        return float(value)
    except (TypeError, ValueError):
        return value


class ResponseParser:
    """Flattens responses of one survey, given its version history."""

    def __init__(
        self,
        survey_key: str,
        versions: List[SurveyVersion],
        excluded_columns: Optional[List[str]] = None,
        question_option_sep: str = DEFAULT_QUESTION_OPTION_SEP,
    ):
        if not versions:
            raise ValueError(f"no survey versions available for survey '{survey_key}'")
        self.survey_key = survey_key
        self.versions = versions
        self.excluded_columns = set(excluded_columns or [])
        self.sep = question_option_sep

    def _find_version(self, raw: SurveyResponse) -> SurveyVersion:
        if raw.version_id:
            for version in self.versions:
                if version.version_id == raw.version_id:
                    return version
            raise ValueError(f"no survey definition found for version '{raw.version_id}'")

        ts = raw.submitted_at or raw.arrived_at
        for version in self.versions:
            if version.is_active_at(ts):
                return version
        raise ValueError(f"no survey version active at {ts} for survey '{self.survey_key}'")

    def parse_response(self, raw: SurveyResponse) -> ParsedResponse:
        """
        Map a raw response onto its survey version.

        Raises:
            ValueError: If the response belongs to another survey or its
                version is unknown.
        """
        if raw.key != self.survey_key:
            raise ValueError(f"response survey key '{raw.key}' does not match parser '{self.survey_key}'")

        version = self._find_version(raw)
        items_by_key: Dict[str, SurveyItemResponse] = {r.key: r for r in raw.responses}

        columns: Dict[str, Any] = {}
        for question in version.questions:
            if question.id in self.excluded_columns:
                continue
            item = items_by_key.get(question.id)
            root = item.response if item is not None else None
            columns.update(self._question_columns(question, root))

        return ParsedResponse(
            id=raw.id,
            participant_id=raw.participant_id,
            version=version.version_id,
            opened=raw.opened_at,
            submitted=raw.submitted_at,
            arrived=raw.arrived_at,
            responses=columns,
        )

    def _question_columns(self, question: QuestionDefinition, root: Optional[ResponseItem]) -> Dict[str, Any]:
        columns: Dict[str, Any] = {}
        multi_slot = len(question.responses) > 1

        if not question.responses:
            columns[question.id] = self._json_value(root)
            return columns

        for slot in question.responses:
            base = f"{question.id}{self.sep}{slot.id}" if multi_slot else question.id
            slot_item = _find_child(root, slot.id)

            if question.question_type in SINGLE_CHOICE_TYPES:
                selected = slot_item.items[0] if slot_item is not None and slot_item.items else None
                columns[base] = selected.key if selected is not None else ""
                for option in slot.options:
                    if option.has_input:
                        value = selected.value if selected is not None and selected.key == option.id else ""
                        columns[self._open_column(base, option.id)] = value

            elif question.question_type == QUESTION_TYPE_MULTIPLE_CHOICE:
                for option in slot.options:
                    chosen = _find_child(slot_item, option.id)
                    columns[f"{base}{self.sep}{option.id}"] = chosen is not None
                    if option.has_input:
                        columns[self._open_column(base, option.id)] = chosen.value if chosen is not None else ""

            elif question.question_type in INPUT_TYPES:
                value = slot_item.value if slot_item is not None else ""
                if question.question_type in NUMERIC_TYPES or (slot_item is not None and slot_item.dtype == "number"):
                    value = _number_value(value)
                columns[base] = value

            else:
                columns[base] = self._json_value(slot_item)

        return columns

    def _open_column(self, base: str, option_id: str) -> str:
        return f"{base}{self.sep}{option_id}{self.sep}{OPEN_FIELD_SUFFIX}"

    @staticmethod
    def _json_value(item: Optional[ResponseItem]) -> str:
        if item is None:
            return ""
        return json.dumps(item.to_dict(), separators=(",", ":"))

    def response_to_flat_obj(self, parsed: ParsedResponse) -> Dict[str, Any]:
        """Flat record of a parsed response, excluded columns removed."""
        record: Dict[str, Any] = {
            "ID": parsed.id,
            "participantID": parsed.participant_id,
            "version": parsed.version,
            "opened": parsed.opened,
            "submitted": parsed.submitted,
            "arrived": parsed.arrived,
        }
        record.update(parsed.responses)
        return {k: v for k, v in record.items() if k not in self.excluded_columns}
