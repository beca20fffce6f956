"""
Inclusion criteria: a nested AND/OR expression over participant flags and status.

Criteria are stored on a list's auto-config as a JSON string. Nodes are a tagged
union discriminated by ``kind`` ("group" or "condition"). Documents written
before ``kind`` existed are read by probing for an ``operator`` field.
"""

import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from jsonschema import Draft7Validator

from .errors import ConfigError
from .models import StudyParticipant

logger = logging.getLogger(__name__)


class ConditionType(str, Enum):
    FLAG_EXISTS = "flagExists"
    FLAG_HAS_VALUE = "flagHasValue"
    FLAG_NOT_EXISTS = "flagNotExists"
    FLAG_NOT_HAS_VALUE = "flagNotHasValue"
    HAS_STATUS = "hasStatus"


class Operator(str, Enum):
    AND = "AND"
    OR = "OR"


NODE_KIND_GROUP = "group"
NODE_KIND_CONDITION = "condition"

CRITERIA_SCHEMA: Dict[str, Any] = {
    "$schema": "http://json-schema.org/draft-07/schema#",
    "definitions": {
        "node": {
            "type": "object",
            "properties": {
                "kind": {"enum": [NODE_KIND_GROUP, NODE_KIND_CONDITION]},
                "operator": {"type": "string"},
                "conditions": {
                    "type": "array",
                    "items": {"$ref": "#/definitions/node"},
                },
                "type": {"type": "string"},
                "key": {"type": "string"},
                "value": {"type": ["string", "null"]},
            },
        },
    },
    "$ref": "#/definitions/node",
}

_validator = Draft7Validator(CRITERIA_SCHEMA)


@dataclass
class Condition:
    """Atomic test against a participant's flags or study status."""
    type: str
    key: str = ""
    value: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"kind": NODE_KIND_CONDITION, "type": self.type, "key": self.key}
        if self.value is not None:
            result["value"] = self.value
        return result


@dataclass
class CriteriaGroup:
    operator: str
    conditions: List[Union["CriteriaGroup", Condition]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "kind": NODE_KIND_GROUP,
            "operator": self.operator,
            "conditions": [c.to_dict() for c in self.conditions],
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


CriteriaNode = Union[CriteriaGroup, Condition]


def _node_kind(data: Dict[str, Any]) -> str:
    kind = data.get("kind")
    if kind:
        return kind
    return NODE_KIND_GROUP if "operator" in data else NODE_KIND_CONDITION


def _group_from_dict(data: Dict[str, Any]) -> CriteriaGroup:
    children: List[CriteriaNode] = []
    for child in data.get("conditions") or []:
        if _node_kind(child) == NODE_KIND_GROUP:
            children.append(_group_from_dict(child))
        else:
            children.append(Condition(
                type=child.get("type", ""),
                key=child.get("key", ""),
                value=child.get("value"),
            ))
    return CriteriaGroup(operator=data.get("operator", ""), conditions=children)


def parse_criteria(json_str: str) -> CriteriaGroup:
    """
    Parse a stored criteria expression. The root is always read as a group.

    Raises:
        ConfigError: If the string is not valid JSON or not a criteria document.
    """
    try:
        data = json.loads(json_str)
    except (TypeError, ValueError) as e:
        raise ConfigError(f"failed to unmarshal criteria JSON: {e}") from e

    errors = sorted(_validator.iter_errors(data), key=lambda err: list(err.path))
    if errors:
        first = errors[0]
        location = "/".join(str(p) for p in first.path) or "<root>"
        raise ConfigError(
            f"invalid criteria at {location}: {first.message}",
            details={"errors": [err.message for err in errors]},
        )

    return _group_from_dict(data)


def evaluate_criteria(group: CriteriaGroup, participant: StudyParticipant) -> bool:
    """
    Evaluate a group against a participant snapshot.

    An empty AND group is true and an empty OR group is false. AND stops at the
    first false child, OR stops at the first true child. When no OR child
    matches, the value of the last child is returned; that tail behavior is
    kept as is because inclusion decisions depend on it.
    """
    result = group.operator == Operator.AND
    for child in group.conditions:
        if isinstance(child, CriteriaGroup):
            result = evaluate_criteria(child, participant)
        else:
            result = evaluate_condition(child, participant)

        if group.operator == Operator.AND:
            if not result:
                return False
        elif group.operator == Operator.OR:
            if result:
                return True
    return result


def evaluate_condition(condition: Condition, participant: StudyParticipant) -> bool:
    flags = participant.flags or {}
    has_flag = condition.key in flags

    if condition.type == ConditionType.FLAG_EXISTS:
        return has_flag
    if condition.type == ConditionType.FLAG_HAS_VALUE:
        return has_flag and condition.value is not None and flags[condition.key] == condition.value
    if condition.type == ConditionType.FLAG_NOT_EXISTS:
        return not has_flag
    if condition.type == ConditionType.FLAG_NOT_HAS_VALUE:
        # Quirk: only true when the flag is absent and a non-empty comparison value is given
        return not has_flag and condition.value is not None and flags.get(condition.key, "") != condition.value
    if condition.type == ConditionType.HAS_STATUS:
        return condition.value is not None and participant.study_status == condition.value

    logger.debug(f"Unknown condition type '{condition.type}', evaluating to false")
    return False
