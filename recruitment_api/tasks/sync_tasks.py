"""
Celery tasks for background synchronization of recruitment lists.

Every task opens its own database session and closes it when done. A run
rejected by the overlap guard is logged and not retried; study service
failures are retried.
"""

import logging
from typing import Dict, List

from recruitment_api.celery_app import celery_app
from recruitment_api.config import settings
from recruitment_api.db import get_session_factory
from recruitment_api.services.recruitment_list_db import RecruitmentListDBService
from recruitment_api.services.smtp_bridge import SmtpBridgeSender
from recruitment_api.services.study_service_client import StudyServiceClient
from recruitment_sync.data_sync import sync_data_for_participant, sync_research_data_for_list
from recruitment_sync.errors import ExternalLookupError, OverlapError, SyncError
from recruitment_sync.models import RecruitmentList
from recruitment_sync.participant_sync import sync_participants_for_list

logger = logging.getLogger(__name__)


def build_study_system() -> StudyServiceClient:
    return StudyServiceClient.from_settings(settings)


def build_notifier():
    return SmtpBridgeSender.from_settings(settings)


def run_participant_sync(store: RecruitmentListDBService, list_id: str) -> int:
    return sync_participants_for_list(
        store,
        build_study_system(),
        list_id,
        settings.study_instance_id,
        notifier=build_notifier(),
        overlap_window=settings.participant_sync_overlap,
    )


def run_data_sync(store: RecruitmentListDBService, list_id: str) -> None:
    sync_research_data_for_list(
        store,
        build_study_system(),
        list_id,
        settings.study_instance_id,
        settings.study_global_secret,
        overlap_window=settings.data_sync_overlap,
    )


@celery_app.task(
    name="recruitment_api.tasks.sync_tasks.sync_participants_task",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def sync_participants_task(self, list_id: str):
    """
    Include new matching study participants into a list.

    Args:
        list_id: Recruitment list ID

    Returns:
        Summary with the number of added members
    """
    logger.info(f"Starting participant sync task for list {list_id}")

    SessionLocal = get_session_factory()
    db = SessionLocal()

    try:
        added = run_participant_sync(RecruitmentListDBService(db), list_id)
        logger.info(f"Participant sync task for list {list_id} completed, {added} added")
        return {"listId": list_id, "added": added}

    except OverlapError as e:
        logger.warning(f"Participant sync task for list {list_id} skipped: {e}")
        return {"listId": list_id, "skipped": True}

    except ExternalLookupError as e:
        logger.error(f"Participant sync task for list {list_id} failed: {e}")
        raise self.retry(exc=e)

    except Exception as e:
        logger.error(f"Participant sync task for list {list_id} failed: {e}")
        raise

    finally:
        db.close()


@celery_app.task(
    name="recruitment_api.tasks.sync_tasks.sync_research_data_task",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def sync_research_data_task(self, list_id: str):
    """
    Refresh member infos and copy new responses of a list.

    Args:
        list_id: Recruitment list ID
    """
    logger.info(f"Starting research data sync task for list {list_id}")

    SessionLocal = get_session_factory()
    db = SessionLocal()

    try:
        run_data_sync(RecruitmentListDBService(db), list_id)
        return {"listId": list_id}

    except OverlapError as e:
        logger.warning(f"Research data sync task for list {list_id} skipped: {e}")
        return {"listId": list_id, "skipped": True}

    except ExternalLookupError as e:
        logger.error(f"Research data sync task for list {list_id} failed: {e}")
        raise self.retry(exc=e)

    except Exception as e:
        logger.error(f"Research data sync task for list {list_id} failed: {e}")
        raise

    finally:
        db.close()


@celery_app.task(
    name="recruitment_api.tasks.sync_tasks.sync_participant_data_task",
    bind=True,
    max_retries=3,
    default_retry_delay=60,
)
def sync_participant_data_task(self, list_id: str, participant_record_id: str):
    """
    Derive the infos of a freshly imported member without copying responses.

    Args:
        list_id: Recruitment list ID
        participant_record_id: Membership record ID
    """
    SessionLocal = get_session_factory()
    db = SessionLocal()

    try:
        store = RecruitmentListDBService(db)
        recruitment_list = store.get_recruitment_list_by_id(list_id)
        participant = store.get_participant_by_id(participant_record_id, list_id)
        sync_data_for_participant(
            store,
            build_study_system(),
            recruitment_list,
            participant,
            settings.study_instance_id,
            store.get_sync_info(list_id),
            settings.study_global_secret,
            skip_response_sync=True,
        )
        return {"listId": list_id, "participantRecordId": participant_record_id}

    except Exception as e:
        logger.error(f"Data sync of imported participant {participant_record_id} in list {list_id} failed: {e}")
        raise

    finally:
        db.close()


@celery_app.task(name="recruitment_api.tasks.sync_tasks.sync_all_lists_task")
def sync_all_lists_task():
    """
    Nightly sync: participant sync, then data sync, for every list.

    A failing list is logged and does not stop the others.

    Returns:
        Per-list outcome, keyed by list id
    """
    logger.info("Starting sync of all recruitment lists")

    SessionLocal = get_session_factory()
    db = SessionLocal()

    try:
        store = RecruitmentListDBService(db)
        list_ids: List[str] = []

        def collect(recruitment_list: RecruitmentList) -> None:
            list_ids.append(recruitment_list.id)

        store.iterate_recruitment_lists(collect)

        results: Dict[str, str] = {}
        for list_id in list_ids:
            results[list_id] = run_full_sync(store, list_id)

        logger.info(f"Sync of {len(list_ids)} recruitment lists finished")
        return results

    finally:
        db.close()


def run_full_sync(
    store: RecruitmentListDBService,
    list_id: str,
    participants: bool = True,
    data: bool = True,
) -> str:
    """
    Participant sync then data sync of one list.

    A failed or skipped participant sync is logged and the data sync still
    runs.

    Returns:
        "ok", "skipped" (a stage was rejected by its overlap guard) or
        "failed" (a stage raised)
    """
    outcome = "ok"

    if participants:
        try:
            run_participant_sync(store, list_id)
        except OverlapError as e:
            logger.warning(f"Participant sync of list {list_id} skipped: {e}")
            outcome = "skipped"
        except SyncError as e:
            logger.error(f"Participant sync of list {list_id} failed: {e}")
            outcome = "failed"

    if data:
        try:
            run_data_sync(store, list_id)
        except OverlapError as e:
            logger.warning(f"Data sync of list {list_id} skipped: {e}")
            if outcome == "ok":
                outcome = "skipped"
        except SyncError as e:
            logger.error(f"Data sync of list {list_id} failed: {e}")
            outcome = "failed"

    return outcome
