"""
Conversion of raw survey responses into ResponseData records.
"""

import logging
from typing import Dict, List, Optional

from .errors import ExternalLookupError
from .models import RecruitmentList, ResearchDataDefinition, ResponseData, SurveyResponse
from .response_parser import ResponseParser

logger = logging.getLogger(__name__)


def init_response_parser(
    study_system,
    instance_id: str,
    study_key: str,
    survey_key: str,
    excluded_columns: Optional[List[str]] = None,
) -> ResponseParser:
    """
    Load the survey's version history and build a parser for it.

    Raises:
        ExternalLookupError: If the versions cannot be loaded or are unusable.
    """
    versions = study_system.load_survey_versions(instance_id, study_key, survey_key, excluded_columns or [])
    try:
        return ResponseParser(survey_key, versions, excluded_columns=excluded_columns)
    except ValueError as e:
        raise ExternalLookupError(f"failed to create response parser for survey '{survey_key}': {e}") from e


def responses_to_research_data(
    responses: List[SurveyResponse],
    study_system,
    instance_id: str,
    recruitment_list: RecruitmentList,
    definition: ResearchDataDefinition,
    participant_id: str,
    parser_cache: Dict[str, ResponseParser],
) -> List[Optional[ResponseData]]:
    """
    Flatten ``responses`` with the (cached) parser of the definition's survey.

    The result has one slot per input response. A response that cannot be
    parsed is logged and its slot is left as None; the rest are still
    converted.

    Raises:
        ExternalLookupError: If no parser can be built for the survey.
    """
    survey_key = definition.survey_key
    parser = parser_cache.get(survey_key)
    if parser is None:
        parser = init_response_parser(
            study_system,
            instance_id,
            recruitment_list.study_key,
            survey_key,
            definition.excluded_columns,
        )
        parser_cache[survey_key] = parser

    research_data: List[Optional[ResponseData]] = [None] * len(responses)
    for i, raw in enumerate(responses):
        try:
            parsed = parser.parse_response(raw)
            output = parser.response_to_flat_obj(parsed)
        except (TypeError, ValueError) as e:
            logger.error(f"Failed to parse response {raw.id} of survey {survey_key}: {e}")
            continue

        research_data[i] = ResponseData(
            response_id=raw.id,
            participant_id=participant_id,
            recruitment_list_id=recruitment_list.id,
            survey_key=survey_key,
            arrived_at=raw.arrived_at,
            response=output,
        )

    return research_data
