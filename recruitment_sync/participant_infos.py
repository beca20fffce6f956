"""
Participant info derivation.

For each info definition of a recruitment list, the current value is resolved
from one of three sources in the study system:
- flagValue: a participant flag
- confidentialData: a slot of the latest confidential response for an item
- responseData: a column of the latest flattened response of a survey

Lookups that miss leave the previously stored value untouched. The merged map
replaces the stored infos of the member and is returned for exclusion checks.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from .context import ParticipantInfoCache, SyncRunContext
from .errors import ConfigError, ExternalLookupError
from .interfaces import RecruitmentListDB, ResponseFilter, StudySystem
from .mapping import apply_mapping, stringify_value
from .models import (
    MappingType,
    Participant,
    ParticipantInfoDefinition,
    RecruitmentList,
    ResearchDataDefinition,
    ResponseItem,
    SourceType,
    StudyParticipant,
    SurveyItemResponse,
    SurveyResponse,
    to_unix,
)
from .research_data import responses_to_research_data

logger = logging.getLogger(__name__)

CONFIDENTIAL_KEY_SEP = "-"


def derive_participant_info(
    db: RecruitmentListDB,
    study_system: StudySystem,
    recruitment_list: RecruitmentList,
    participant: Participant,
    study_participant: StudyParticipant,
    last_data_sync: Optional[datetime],
    global_secret: str,
    instance_id: str,
    ctx: SyncRunContext,
) -> Dict[str, Any]:
    """
    Recompute and persist the info map of one member.

    Args:
        db: Recruitment list datastore.
        study_system: External study system.
        recruitment_list: List whose info definitions apply.
        participant: Stored membership record.
        study_participant: Current participant record from the study system.
        last_data_sync: Start of the last data sync, None if never synced.
        global_secret: Global secret used to derive confidential ids.
        instance_id: Study system instance.
        ctx: Caches of the running sync.

    Returns:
        The merged info map as persisted.

    Raises:
        PersistenceError: If the merged map cannot be stored.
    """
    definitions = recruitment_list.participant_data.participant_infos
    labels = {d.label for d in definitions}

    # Drop infos whose definition was removed from the list
    infos: Dict[str, Any] = {k: v for k, v in (participant.infos or {}).items() if k in labels}

    cache = ParticipantInfoCache()

    for definition in definitions:
        if not definition.source_key:
            logger.error(f"sourceKey is empty for label '{definition.label}' in list {recruitment_list.id}")
            continue
        if not definition.label:
            logger.error(f"label is empty for sourceKey '{definition.source_key}' in list {recruitment_list.id}")
            continue

        if definition.source_type == SourceType.FLAG_VALUE:
            raw = study_participant.flags.get(definition.source_key, "")
            infos[definition.label] = apply_mapping(definition, raw)

        elif definition.source_type == SourceType.CONFIDENTIAL_DATA:
            value = _confidential_value(
                study_system, recruitment_list, participant, definition,
                global_secret, instance_id, cache,
            )
            if value is not None:
                infos[definition.label] = value

        elif definition.source_type == SourceType.RESPONSE_DATA:
            value = _response_value(
                study_system, recruitment_list, participant, study_participant, definition,
                last_data_sync, instance_id, ctx, cache,
            )
            if value is not None:
                infos[definition.label] = value

        else:
            logger.error(f"Unknown source type '{definition.source_type}' for label '{definition.label}'")

    db.update_participant_infos(participant.participant_id, recruitment_list.id, infos)
    return infos


def _confidential_value(
    study_system: StudySystem,
    recruitment_list: RecruitmentList,
    participant: Participant,
    definition: ParticipantInfoDefinition,
    global_secret: str,
    instance_id: str,
    cache: ParticipantInfoCache,
) -> Optional[str]:
    key_parts = definition.source_key.split(CONFIDENTIAL_KEY_SEP)
    if len(key_parts) < 2:
        logger.error(f"Invalid confidential source key: {definition.source_key}")
        return None

    item_key, slot_key = key_parts[0], key_parts[1]
    study_key = recruitment_list.study_key

    latest = cache.confidential_responses.get(item_key)
    if latest is None:
        try:
            if cache.confidential_id is None:
                if cache.study is None:
                    cache.study = study_system.get_study(instance_id, study_key)
                cache.confidential_id = study_system.resolve_confidential_id(
                    participant.participant_id,
                    global_secret,
                    cache.study.secret_key,
                    cache.study.id_mapping_method,
                )
            found = study_system.find_confidential_responses(
                instance_id, study_key, cache.confidential_id, item_key,
            )
        except (ConfigError, ExternalLookupError) as e:
            logger.error(f"Could not get confidential data for item {item_key}: {e}")
            return None

        if not found:
            logger.debug(f"No confidential data found for item {item_key}")
            return None

        # Latest first; equal timestamps keep the order they were returned in
        latest = sorted(found, key=lambda r: r.arrived_at or r.submitted_at, reverse=True)[0]
        cache.confidential_responses[item_key] = latest

    item_response = find_item_response(latest, item_key)
    if item_response is None or item_response.response is None:
        logger.debug(f"No item response found for {item_key}")
        return None

    root = ResponseItem(items=[item_response.response])
    value = extract_slot_value(root, slot_key, definition)
    if value is None:
        logger.debug(f"No slot value found for {slot_key}")
    return value


def _response_value(
    study_system: StudySystem,
    recruitment_list: RecruitmentList,
    participant: Participant,
    study_participant: StudyParticipant,
    definition: ParticipantInfoDefinition,
    last_data_sync: Optional[datetime],
    instance_id: str,
    ctx: SyncRunContext,
    cache: ParticipantInfoCache,
) -> Optional[str]:
    survey_key = survey_key_from_source_key(definition.source_key)
    if not last_submission_later_than(study_participant.last_submissions, survey_key, last_data_sync):
        return None

    last_response = cache.last_responses.get(survey_key)
    if last_response is None:
        response_filter = ResponseFilter(
            participant_id=participant.participant_id,
            survey_key=survey_key,
            arrived_from=to_unix(last_data_sync) if last_data_sync is not None else 0,
        )
        try:
            responses = study_system.get_responses(
                instance_id, recruitment_list.study_key, response_filter,
                sort_ascending=False, page=1, page_size=1,
            )
            if not responses:
                logger.debug(f"No responses found for {participant.participant_id} in survey {survey_key}")
                return None

            parsed = responses_to_research_data(
                responses[:1],
                study_system,
                instance_id,
                recruitment_list,
                ResearchDataDefinition(survey_key=survey_key),
                participant.participant_id,
                ctx.participant_info_parsers,
            )
        except ExternalLookupError as e:
            logger.error(f"Could not get latest response of survey {survey_key}: {e}")
            return None

        last_response = parsed[0].response if parsed[0] is not None else {}
        cache.last_responses[survey_key] = last_response

    if definition.source_key not in last_response:
        logger.debug(f"No response entry '{definition.source_key}' in survey {survey_key}")
        return None

    return apply_mapping(definition, stringify_value(last_response[definition.source_key]))


def check_exclusion_conditions(recruitment_list: RecruitmentList, infos: Dict[str, Any]) -> bool:
    """True when any exclusion condition matches ``infos`` exactly."""
    for condition in recruitment_list.exclusion_conditions:
        if condition.key in infos and infos[condition.key] == condition.value:
            return True
    return False


def find_item_response(response: SurveyResponse, item_key: str) -> Optional[SurveyItemResponse]:
    for item in response.responses:
        if item.key == item_key:
            return item
    return None


def extract_slot_value(item: ResponseItem, slot_key: str, definition: ParticipantInfoDefinition) -> Optional[str]:
    """
    Follow the dot separated ``slot_key`` down the response tree.

    At the last segment, a slot with children yields the JSON encoded children
    (json mapping) or the comma joined mapped child keys; a leaf yields its
    mapped value. Returns None when a segment is missing.
    """
    slot_parts = slot_key.split(".")

    current = None
    for slot in item.items:
        if slot.key == slot_parts[0]:
            current = slot
            break

    if current is None:
        return None

    if len(slot_parts) > 1:
        return extract_slot_value(current, ".".join(slot_parts[1:]), definition)

    if current.items:
        if definition.mapping_type == MappingType.JSON:
            return json.dumps([child.to_dict() for child in current.items], separators=(",", ":"))
        return ",".join(apply_mapping(definition, child.key) for child in current.items)

    return apply_mapping(definition, current.value)


def last_submission_later_than(
    last_submissions: Dict[str, int],
    survey_key: str,
    last_sync: Optional[datetime],
) -> bool:
    if last_sync is None:
        return True
    last_submission = last_submissions.get(survey_key)
    if last_submission is None:
        return False
    return last_submission > to_unix(last_sync)


def survey_key_from_source_key(source_key: str) -> str:
    return source_key.split(".")[0]
