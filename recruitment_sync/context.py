"""
Caches scoped to a single sync invocation.

A SyncRunContext is created at the start of every list-level data sync (and for
each single-participant sync) and handed down the call chain. Nothing here is
shared between runs, so survey schema changes are picked up by the next run and
concurrent runs for different lists never see each other's parsers.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Optional

from .models import Study, SurveyResponse
from .response_parser import ResponseParser


@dataclass
class SyncRunContext:
    """Parsers initialized once per survey key for the duration of one run."""
    # Parsers honoring each research data definition's excluded columns
    response_parsers: Dict[str, ResponseParser] = field(default_factory=dict)
    # Parsers without exclusions, used for participant info lookups
    participant_info_parsers: Dict[str, ResponseParser] = field(default_factory=dict)


@dataclass
class ParticipantInfoCache:
    """Lookups shared by the info definitions of one participant."""
    study: Optional[Study] = None
    confidential_id: Optional[str] = None
    # item key -> most recent confidential response
    confidential_responses: Dict[str, SurveyResponse] = field(default_factory=dict)
    # survey key -> flattened most recent response
    last_responses: Dict[str, Dict[str, Any]] = field(default_factory=dict)
