"""
Participant sync: adds study participants to an auto-populated recruitment list.
"""

import logging
from datetime import timedelta
from typing import Optional

from .criteria import evaluate_criteria, parse_criteria
from .errors import OverlapError, SyncError
from .interfaces import NotificationSender, ParticipantStateFilter, RecruitmentListDB, StudySystem
from .models import (
    PARTICIPANT_INCLUSION_TYPE_AUTO,
    PARTICIPANT_STUDY_STATUS_ACCOUNT_DELETED,
    RecruitmentList,
    StudyParticipant,
    to_unix,
    utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_OVERLAP_WINDOW = timedelta(minutes=5)
AUTO_INCLUDED_BY = "auto"


def sync_participants_for_list(
    db: RecruitmentListDB,
    study_system: StudySystem,
    list_id: str,
    instance_id: str,
    notifier: Optional[NotificationSender] = None,
    overlap_window: timedelta = DEFAULT_OVERLAP_WINDOW,
) -> int:
    """
    Include every matching study participant not yet in the list.

    Manual lists are marked idle and left untouched. For auto lists the study
    participants (minus deleted accounts, optionally bounded by the auto-config
    entry window) are streamed, filtered by the inclusion criteria and added
    with ``included_by="auto"``. One notification summarizes the additions.

    Returns:
        Number of members added.

    Raises:
        NotFoundError / PersistenceError: If the list or sync state cannot be
            loaded or updated.
        OverlapError: If a participant sync of this list started within
            ``overlap_window``.
        ConfigError: If the inclusion criteria cannot be parsed.
    """
    recruitment_list = db.get_recruitment_list_by_id(list_id)
    inclusion = recruitment_list.participant_inclusion

    if inclusion.type != PARTICIPANT_INCLUSION_TYPE_AUTO:
        logger.info(f"Participant inclusion type of list {list_id} is '{inclusion.type}', skipping sync")
        db.finish_participant_sync(list_id)
        return 0

    sync_info = db.get_sync_info(list_id)
    if (
        sync_info is not None
        and sync_info.participant_sync_started_at is not None
        and utcnow() - overlap_window < sync_info.participant_sync_started_at
    ):
        logger.warning(f"Last participant sync of list {list_id} started less than {overlap_window} ago, skipping sync")
        raise OverlapError(
            f"last participant sync started less than {overlap_window} ago",
            recruitment_list_id=list_id,
            details={"startedAt": sync_info.participant_sync_started_at.isoformat()},
        )

    inclusion_criteria = None
    if inclusion.auto_config is not None and inclusion.auto_config.criteria:
        inclusion_criteria = parse_criteria(inclusion.auto_config.criteria)

    db.start_participant_sync(list_id)

    participant_filter = ParticipantStateFilter(exclude_statuses=[PARTICIPANT_STUDY_STATUS_ACCOUNT_DELETED])
    auto_config = inclusion.auto_config
    if auto_config is not None and auto_config.start_date is not None and auto_config.end_date is not None:
        participant_filter.entered_after = to_unix(auto_config.start_date)
        participant_filter.entered_before = to_unix(auto_config.end_date)

    new_participants = 0

    def include(study_participant: StudyParticipant) -> None:
        nonlocal new_participants
        if db.participant_exists(study_participant.participant_id, list_id):
            logger.debug(f"Participant {study_participant.participant_id} already included in list {list_id}")
            return
        if inclusion_criteria is not None and not evaluate_criteria(inclusion_criteria, study_participant):
            return
        db.create_participant(study_participant.participant_id, list_id, AUTO_INCLUDED_BY)
        new_participants += 1

    try:
        study_system.iterate_participants(instance_id, inclusion.study_key, participant_filter, include)
    except SyncError as e:
        logger.error(f"Participant scan for list {list_id} stopped early: {e}")

    if new_participants > 0 and inclusion.notification_emails:
        _notify_new_participants(notifier, recruitment_list, new_participants)

    db.finish_participant_sync(list_id)
    logger.info(f"Participant sync of list {list_id} finished, {new_participants} new participant(s)")
    return new_participants


def _notify_new_participants(
    notifier: Optional[NotificationSender],
    recruitment_list: RecruitmentList,
    count: int,
) -> None:
    if notifier is None:
        logger.error("Could not send email: no notification sender configured")
        return

    subject = f"[{recruitment_list.name}] - New participants"
    message = f"One new participant has been added to recruitment list '{recruitment_list.name}'"
    if count > 1:
        message = f"{count} new participants have been added to recruitment list '{recruitment_list.name}'"

    try:
        notifier.send(recipients=recruitment_list.participant_inclusion.notification_emails, subject=subject, body=message)
    except SyncError as e:
        logger.error(f"Could not send email: {e}")
