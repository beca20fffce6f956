"""
Value transforms applied before a participant info is stored.
"""

import json
import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import Any

from .models import MappingType, ParticipantInfoDefinition

logger = logging.getLogger(__name__)

TS2DATE_FORMAT = "%Y-%b-%d"

# Optional sign and ASCII digits only, no whitespace or underscores
INTEGER_PATTERN = re.compile(r"[+-]?[0-9]+")


def apply_mapping(definition: ParticipantInfoDefinition, value: str) -> str:
    """
    Transform a raw string value according to the definition's mapping type.

    Never raises: unparsable timestamps and unmatched keys return ``value``.
    """
    if value is None:
        value = ""

    if definition.mapping_type == MappingType.TS2DATE:
        seconds = value.split(".")[0]
        if not INTEGER_PATTERN.fullmatch(seconds):
            logger.error(f"Failed to parse date from '{value}': not an integer timestamp")
            return value
        try:
            ts = int(seconds)
            return datetime.fromtimestamp(ts).strftime(TS2DATE_FORMAT)
        except (ValueError, OverflowError, OSError) as e:
            logger.error(f"Failed to parse date from '{value}': {e}")
            return value

    if definition.mapping_type == MappingType.KEY2VALUE:
        for entry in definition.mapping:
            if entry.key == value:
                return entry.value

    return value


def _format_float(value: float) -> str:
    text = format(Decimal(repr(value)), "f")
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def stringify_value(value: Any) -> str:
    """
    String form of a flattened response value.

    Floats keep full precision without exponent notation, booleans become
    "true"/"false", containers and other types are JSON encoded.
    """
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        return _format_float(value)
    return json.dumps(value, separators=(",", ":"), default=str)
