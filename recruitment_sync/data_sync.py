"""
Data sync: refreshes member infos and copies new survey responses.

For every member of a list, in storage order:
1. skip members already soft-deleted
2. soft-delete members whose study account was deleted
3. derive participant infos and soft-delete members matching an exclusion condition
4. fetch responses per research data definition and store them flattened
"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from .context import SyncRunContext
from .errors import ExternalLookupError, OverlapError, PersistenceError
from .interfaces import RecruitmentListDB, ResponseFilter, StudySystem
from .models import (
    PARTICIPANT_STUDY_STATUS_ACCOUNT_DELETED,
    SYNC_STATUS_RUNNING,
    Participant,
    RecruitmentList,
    SyncInfo,
    to_unix,
    utcnow,
)
from .participant_infos import check_exclusion_conditions, derive_participant_info
from .research_data import responses_to_research_data

logger = logging.getLogger(__name__)

# Used as last sync start when a list has never been synced
DEFAULT_LAST_DATA_SYNC = datetime(2020, 1, 1)

RESPONSE_PAGE_SIZE = 1000

DELETED_IN_STUDY_REASON = "deleted in study DB"
EXCLUDED_REASON = "excluded by exclusion conditions"


def sync_research_data_for_list(
    db: RecruitmentListDB,
    study_system: StudySystem,
    list_id: str,
    instance_id: str,
    global_secret: str,
    overlap_window: Optional[timedelta] = None,
) -> None:
    """
    Run a data sync for every member of a list.

    Per-member lookup failures and unexpected errors are logged and the
    member is skipped. A persistence failure for a member stops the member
    iteration. The run is marked idle afterwards in every case.

    Args:
        overlap_window: When set, refuse to start if a data sync of this list
            is still running and started within this window. None disables
            the guard.

    Raises:
        NotFoundError / PersistenceError: If the list cannot be loaded or the
            sync state cannot be updated.
        OverlapError: If the overlap guard rejects the run.
    """
    recruitment_list = db.get_recruitment_list_by_id(list_id)

    last_sync_info = db.get_sync_info(list_id)
    if last_sync_info is None:
        logger.debug(f"No sync info for list {list_id}, syncing full history")
        last_sync_info = SyncInfo(recruitment_list_id=list_id, data_sync_started_at=DEFAULT_LAST_DATA_SYNC)

    if (
        overlap_window is not None
        and last_sync_info.data_sync_status == SYNC_STATUS_RUNNING
        and last_sync_info.data_sync_started_at is not None
        and utcnow() - overlap_window < last_sync_info.data_sync_started_at
    ):
        logger.warning(f"Data sync of list {list_id} is still running (started {last_sync_info.data_sync_started_at}), skipping sync")
        raise OverlapError(
            f"data sync started less than {overlap_window} ago and is still running",
            recruitment_list_id=list_id,
            details={"startedAt": last_sync_info.data_sync_started_at.isoformat()},
        )

    db.start_data_sync(list_id)

    ctx = SyncRunContext()

    def sync_member(participant: Participant) -> None:
        try:
            sync_data_for_participant(
                db, study_system, recruitment_list, participant, instance_id,
                last_sync_info, global_secret, ctx,
            )
        except PersistenceError:
            raise
        except Exception as e:
            logger.error(f"Data sync of participant {participant.participant_id} in list {list_id} failed: {e}", exc_info=True)

    try:
        db.iterate_participants_by_list(list_id, sync_member)
    except PersistenceError as e:
        logger.error(f"Could not iterate participants of list {list_id}: {e}")
    finally:
        db.finish_data_sync(list_id)
    logger.info(f"Data sync of list {list_id} finished")


def sync_data_for_participant(
    db: RecruitmentListDB,
    study_system: StudySystem,
    recruitment_list: RecruitmentList,
    participant: Participant,
    instance_id: str,
    last_sync_info: Optional[SyncInfo],
    global_secret: str,
    ctx: Optional[SyncRunContext] = None,
    skip_response_sync: bool = False,
) -> None:
    """
    Sync one member: deletion check, infos, exclusion and new responses.

    Study system failures are logged and end processing of this member.

    Raises:
        PersistenceError: If the member's infos or deletion cannot be stored.
    """
    if participant.is_deleted:
        logger.debug(f"Skip deleted participant {participant.participant_id}")
        return

    if ctx is None:
        ctx = SyncRunContext()

    try:
        study_participant = study_system.get_participant(
            instance_id, recruitment_list.study_key, participant.participant_id,
        )
    except ExternalLookupError as e:
        logger.error(f"Could not retrieve participant {participant.participant_id} from study system: {e}")
        return

    if study_participant.study_status == PARTICIPANT_STUDY_STATUS_ACCOUNT_DELETED:
        db.on_participant_deleted(participant, recruitment_list.id, DELETED_IN_STUDY_REASON)
        logger.info(f"Removed participant {participant.participant_id} from list {recruitment_list.id}: {DELETED_IN_STUDY_REASON}")
        return

    last_data_sync = last_sync_info.data_sync_started_at if last_sync_info is not None else None
    infos = derive_participant_info(
        db, study_system, recruitment_list, participant, study_participant,
        last_data_sync, global_secret, instance_id, ctx,
    )

    if check_exclusion_conditions(recruitment_list, infos):
        db.on_participant_deleted(participant, recruitment_list.id, EXCLUDED_REASON)
        logger.info(f"Excluded participant {participant.participant_id} from list {recruitment_list.id}")
        return

    if not skip_response_sync:
        sync_new_responses(db, study_system, recruitment_list, instance_id, participant, last_sync_info, ctx)


def sync_new_responses(
    db: RecruitmentListDB,
    study_system: StudySystem,
    recruitment_list: RecruitmentList,
    instance_id: str,
    participant: Participant,
    last_sync_info: Optional[SyncInfo],
    ctx: SyncRunContext,
) -> None:
    """
    Fetch and store responses per research data definition.

    The window runs from the definition's start date (or epoch) to its end
    date (or now). Members included before the last sync start only fetch
    responses that arrived since that start; later joiners get the full
    window.
    """
    now = to_unix(utcnow())
    last_data_sync_started = 0
    if last_sync_info is not None and last_sync_info.data_sync_started_at is not None:
        last_data_sync_started = to_unix(last_sync_info.data_sync_started_at)

    included_at = to_unix(participant.included_at) if participant.included_at is not None else 0
    apply_since = included_at <= last_data_sync_started

    for definition in recruitment_list.participant_data.research_data:
        since = to_unix(definition.start_date) if definition.start_date is not None else 0
        until = to_unix(definition.end_date) if definition.end_date is not None else now
        if apply_since:
            since = max(since, last_data_sync_started)

        response_filter = ResponseFilter(
            participant_id=participant.participant_id,
            survey_key=definition.survey_key,
            arrived_from=since,
            arrived_until=until,
        )

        try:
            responses = study_system.get_responses(
                instance_id, recruitment_list.study_key, response_filter,
                sort_ascending=True, page=1, page_size=RESPONSE_PAGE_SIZE,
            )
        except ExternalLookupError as e:
            logger.error(f"Could not get responses of survey {definition.survey_key}: {e}")
            return

        if not responses:
            logger.debug(f"No responses found for {participant.participant_id} in survey {definition.survey_key}")
            continue

        try:
            research_data = responses_to_research_data(
                responses,
                study_system,
                instance_id,
                recruitment_list,
                definition,
                participant.participant_id,
                ctx.response_parsers,
            )
        except ExternalLookupError as e:
            logger.error(f"Failed to convert responses to research data entries: {e}")
            continue

        entries = [entry for entry in research_data if entry is not None]
        if not entries:
            continue

        try:
            db.save_research_data(recruitment_list.id, participant.participant_id, entries)
        except PersistenceError as e:
            logger.error(f"Could not save research data for {participant.participant_id}: {e}")
            continue
