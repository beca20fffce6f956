"""
Recruitment lists router.

Endpoints:
- GET / - Lists visible to the user
- POST / - Create a list
- DELETE /{list_id} - Delete a list with all its data
- Manage (manage-recruitment-list): update, import, permissions, sync control
- Access (access, manage or delete permission): list details, members, notes,
  available responses

Sync runs are dispatched to Celery; their progress is reported through the
sync infos of the list.
"""

import logging
from contextlib import contextmanager
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, Query
from pydantic import BaseModel

from recruitment_api.config import settings
from recruitment_api.routers.auth import CurrentUser, check_permission, get_current_user, get_store
from recruitment_api.services.permission_checker import (
    ACCESS_ACTIONS,
    ACTION_CREATE_RECRUITMENT_LIST,
    ACTION_DELETE_RECRUITMENT_LIST,
    ACTION_MANAGE_RECRUITMENT_LIST,
    accessible_list_ids,
)
from recruitment_api.services.recruitment_list_db import RecruitmentListDBService
from recruitment_api.tasks import sync_tasks
from recruitment_sync.criteria import parse_criteria
from recruitment_sync.errors import ConfigError, ExternalLookupError, NotFoundError, OverlapError, SyncError
from recruitment_sync.models import (
    PARTICIPANT_INCLUSION_TYPE_AUTO,
    PARTICIPANT_STUDY_STATUS_ACCOUNT_DELETED,
    RecruitmentList,
    SyncInfo,
    parse_datetime,
)
from recruitment_sync.pagination import ParticipantFilter, ParticipantSort

logger = logging.getLogger(__name__)

router = APIRouter()


class ImportParticipantRequest(BaseModel):
    participantId: str


class PermissionRequest(BaseModel):
    userId: str
    action: str


class ParticipantStatusRequest(BaseModel):
    status: str


class NoteRequest(BaseModel):
    note: str


@contextmanager
def _translate_errors(action: str):
    """Map engine and store errors of ``action`` to HTTP errors."""
    try:
        yield
    except HTTPException:
        raise
    except NotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    except OverlapError as e:
        raise HTTPException(status_code=409, detail=e.message)
    except ConfigError as e:
        raise HTTPException(status_code=400, detail=e.message)
    except ExternalLookupError as e:
        logger.error(f"Could not {action}: {e}")
        raise HTTPException(status_code=502, detail=f"could not {action}")
    except SyncError as e:
        logger.error(f"Could not {action}: {e}")
        raise HTTPException(status_code=500, detail=f"could not {action}")


def _list_from_payload(payload: Dict[str, Any]) -> RecruitmentList:
    """Parse a list document and validate its inclusion criteria."""
    try:
        recruitment_list = RecruitmentList.from_dict(payload)
    except (TypeError, ValueError) as e:
        raise HTTPException(status_code=400, detail=f"invalid recruitment list: {e}")

    if not recruitment_list.name or not recruitment_list.study_key:
        raise HTTPException(status_code=400, detail="name and participantInclusion.studyKey are required")

    inclusion = recruitment_list.participant_inclusion
    if inclusion.type == PARTICIPANT_INCLUSION_TYPE_AUTO and inclusion.auto_config and inclusion.auto_config.criteria:
        try:
            parse_criteria(inclusion.auto_config.criteria)
        except ConfigError as e:
            raise HTTPException(status_code=400, detail=e.message)
    return recruitment_list


def _optional_datetime(name: str, value: Optional[str]):
    """Parse a query timestamp; unparsable values are logged and ignored."""
    try:
        return parse_datetime(value)
    except ValueError:
        logger.warning(f"Could not parse {name}: {value}")
        return None


def require_manage(
    list_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: RecruitmentListDBService = Depends(get_store),
) -> CurrentUser:
    with _translate_errors("check permissions"):
        check_permission(store, user, [ACTION_MANAGE_RECRUITMENT_LIST], [list_id])
    return user


def require_access(
    list_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: RecruitmentListDBService = Depends(get_store),
) -> CurrentUser:
    with _translate_errors("check permissions"):
        check_permission(store, user, ACCESS_ACTIONS, [list_id])
    return user


# =============================================================================
# Lists
# =============================================================================

@router.get("")
async def get_recruitment_lists(
    user: CurrentUser = Depends(get_current_user),
    store: RecruitmentListDBService = Depends(get_store),
):
    """Lists the user may see; admins see every list."""
    logger.info(f"Get recruitment lists for user {user.sub}")
    with _translate_errors("get recruitment lists"):
        lists = store.get_recruitment_lists_infos()
        if not user.is_admin:
            visible = set(accessible_list_ids(store, user.sub))
            lists = [rl for rl in lists if rl.id in visible]
    return {"recruitmentLists": [rl.to_dict() for rl in lists]}


@router.post("")
async def create_recruitment_list(
    payload: Dict[str, Any] = Body(...),
    user: CurrentUser = Depends(get_current_user),
    store: RecruitmentListDBService = Depends(get_store),
):
    """Create a list; a non-admin creator is granted manage and delete on it."""
    with _translate_errors("create recruitment list"):
        check_permission(store, user, [ACTION_CREATE_RECRUITMENT_LIST], [])
        recruitment_list = _list_from_payload(payload)
        created = store.create_recruitment_list(recruitment_list, user.sub)

        if not user.is_admin:
            for action in (ACTION_MANAGE_RECRUITMENT_LIST, ACTION_DELETE_RECRUITMENT_LIST):
                store.create_permission(user.sub, action, created.id, user.sub)

    logger.info(f"User {user.sub} created recruitment list {created.id}")
    return created.to_dict()


@router.delete("/{list_id}")
async def delete_recruitment_list(
    list_id: str,
    user: CurrentUser = Depends(get_current_user),
    store: RecruitmentListDBService = Depends(get_store),
):
    """Delete a list together with its permissions, members, sync state, data and notes."""
    with _translate_errors("delete recruitment list"):
        check_permission(store, user, [ACTION_DELETE_RECRUITMENT_LIST], [list_id])
        store.get_recruitment_list_by_id(list_id)

        store.delete_permissions_by_resource_id(list_id)
        store.delete_research_data_by_list(list_id)
        store.delete_participant_notes_by_list(list_id)
        store.delete_all_participants_by_list(list_id)
        store.delete_sync_infos_by_list(list_id)
        store.delete_recruitment_list_by_id(list_id)

    logger.info(f"User {user.sub} deleted recruitment list {list_id}")
    return {"message": "recruitment list deleted"}


# =============================================================================
# Manage group
# =============================================================================

@router.put("/{list_id}")
async def update_recruitment_list(
    list_id: str,
    payload: Dict[str, Any] = Body(...),
    user: CurrentUser = Depends(require_manage),
    store: RecruitmentListDBService = Depends(get_store),
):
    recruitment_list = _list_from_payload(payload)
    recruitment_list.id = list_id
    with _translate_errors("update recruitment list"):
        existing = store.get_recruitment_list_by_id(list_id)
        recruitment_list.created_at = existing.created_at
        recruitment_list.created_by = existing.created_by
        store.save_recruitment_list(recruitment_list)
    logger.info(f"User {user.sub} updated recruitment list {list_id}")
    return {"message": "recruitment list updated"}


@router.post("/{list_id}/import-participant")
async def import_participant(
    list_id: str,
    request: ImportParticipantRequest,
    user: CurrentUser = Depends(require_manage),
    store: RecruitmentListDBService = Depends(get_store),
):
    """
    Add a study participant to the list by hand.

    Accounts deleted in the study system are rejected. The member's infos are
    derived in the background, without copying responses.
    """
    with _translate_errors("import participant"):
        recruitment_list = store.get_recruitment_list_by_id(list_id)
        study_participant = sync_tasks.build_study_system().get_participant(
            settings.study_instance_id,
            recruitment_list.study_key,
            request.participantId,
        )

        if study_participant.study_status == PARTICIPANT_STUDY_STATUS_ACCOUNT_DELETED:
            logger.warning(f"Import of deleted participant {request.participantId} into list {list_id} rejected")
            raise HTTPException(status_code=400, detail="participant has been deleted")

        if store.participant_exists(request.participantId, list_id):
            return {"message": "participant already included"}

        participant = store.create_participant(request.participantId, list_id, user.sub)

    sync_tasks.sync_participant_data_task.delay(list_id, participant.id)
    logger.info(f"User {user.sub} imported participant {request.participantId} into list {list_id}")
    return {"message": "participant imported", "id": participant.id}


@router.get("/{list_id}/permissions")
async def get_recruitment_list_permissions(
    list_id: str,
    user: CurrentUser = Depends(require_manage),
    store: RecruitmentListDBService = Depends(get_store),
):
    with _translate_errors("get permissions"):
        permissions = store.get_permissions_by_resource_id(list_id)
    return {"permissions": [p.to_dict() for p in permissions]}


@router.post("/{list_id}/permissions")
async def create_recruitment_list_permission(
    list_id: str,
    request: PermissionRequest,
    user: CurrentUser = Depends(require_manage),
    store: RecruitmentListDBService = Depends(get_store),
):
    if request.action not in ACCESS_ACTIONS:
        raise HTTPException(status_code=400, detail=f"unknown action '{request.action}'")
    with _translate_errors("create permission"):
        permission = store.create_permission(request.userId, request.action, list_id, user.sub)
    logger.info(f"User {user.sub} granted {request.action} on list {list_id} to {request.userId}")
    return permission.to_dict()


@router.delete("/{list_id}/permissions/{permission_id}")
async def delete_recruitment_list_permission(
    list_id: str,
    permission_id: str,
    user: CurrentUser = Depends(require_manage),
    store: RecruitmentListDBService = Depends(get_store),
):
    with _translate_errors("delete permission"):
        permission = store.get_permission_by_id(permission_id)
        if permission.resource_id != list_id:
            raise HTTPException(status_code=404, detail="permission not found")
        store.delete_permission_by_id(permission_id)
    return {"message": "permission deleted"}


@router.get("/{list_id}/sync-infos")
async def get_sync_infos(
    list_id: str,
    user: CurrentUser = Depends(require_manage),
    store: RecruitmentListDBService = Depends(get_store),
):
    with _translate_errors("get sync infos"):
        sync_info = store.get_sync_info(list_id)
    if sync_info is None:
        sync_info = SyncInfo(recruitment_list_id=list_id)
    return sync_info.to_dict()


@router.post("/{list_id}/sync-participants")
async def sync_participants(
    list_id: str,
    user: CurrentUser = Depends(require_manage),
):
    logger.info(f"User {user.sub} started participant sync of list {list_id}")
    task = sync_tasks.sync_participants_task.delay(list_id)
    return {"message": "participant sync started", "taskId": task.id}


@router.post("/{list_id}/sync-responses")
async def sync_responses(
    list_id: str,
    user: CurrentUser = Depends(require_manage),
):
    logger.info(f"User {user.sub} started research data sync of list {list_id}")
    task = sync_tasks.sync_research_data_task.delay(list_id)
    return {"message": "sync started", "taskId": task.id}


@router.post("/{list_id}/reset-participant-sync")
async def reset_participant_sync(
    list_id: str,
    user: CurrentUser = Depends(require_manage),
    store: RecruitmentListDBService = Depends(get_store),
):
    """Forget all members and their data so the next sync starts from scratch."""
    logger.info(f"User {user.sub} reset participant sync of list {list_id}")
    with _translate_errors("reset participant sync"):
        store.reset_participant_sync_time(list_id)
        store.delete_all_participants_by_list(list_id)
        store.delete_participant_notes_by_list(list_id)
        store.delete_research_data_by_list(list_id)
        store.reset_data_sync_time(list_id)
    return {"message": "participant sync reset"}


@router.post("/{list_id}/reset-data-sync")
async def reset_data_sync(
    list_id: str,
    user: CurrentUser = Depends(require_manage),
    store: RecruitmentListDBService = Depends(get_store),
):
    logger.info(f"User {user.sub} reset data sync of list {list_id}")
    with _translate_errors("reset data sync"):
        store.delete_research_data_by_list(list_id)
        store.reset_data_sync_time(list_id)
    return {"message": "data sync reset"}


# =============================================================================
# Access group
# =============================================================================

@router.get("/{list_id}")
async def get_recruitment_list(
    list_id: str,
    user: CurrentUser = Depends(require_access),
    store: RecruitmentListDBService = Depends(get_store),
):
    with _translate_errors("get recruitment list"):
        recruitment_list = store.get_recruitment_list_by_id(list_id)
    return recruitment_list.to_dict()


@router.get("/{list_id}/participants")
async def get_participants(
    list_id: str,
    page: int = Query(1),
    limit: int = Query(50, ge=0),
    includedSince: Optional[str] = Query(None),
    includedUntil: Optional[str] = Query(None),
    participantId: str = Query(""),
    recruitmentStatus: str = Query(""),
    sortBy: str = Query("includedAt"),
    sortDir: str = Query("asc"),
    user: CurrentUser = Depends(require_access),
    store: RecruitmentListDBService = Depends(get_store),
):
    """Paginated, filtered and sorted members of the list."""
    participant_filter = ParticipantFilter(
        included_since=_optional_datetime("includedSince", includedSince),
        included_until=_optional_datetime("includedUntil", includedUntil),
        participant_id=participantId,
        recruitment_status=recruitmentStatus,
    )
    sort = ParticipantSort(field=sortBy, order=sortDir)

    with _translate_errors("get participants"):
        participants, pagination = store.get_participants_by_list(list_id, page, limit, participant_filter, sort)

    return {
        "participants": [p.to_dict() for p in participants],
        "pagination": pagination.to_dict(),
    }


@router.get("/{list_id}/participants/{participant_record_id}")
async def get_participant(
    list_id: str,
    participant_record_id: str,
    user: CurrentUser = Depends(require_access),
    store: RecruitmentListDBService = Depends(get_store),
):
    with _translate_errors("get participant"):
        participant = store.get_participant_by_id(participant_record_id, list_id)
    return participant.to_dict()


@router.post("/{list_id}/participants/{participant_record_id}/status")
async def update_participant_status(
    list_id: str,
    participant_record_id: str,
    request: ParticipantStatusRequest,
    user: CurrentUser = Depends(require_access),
    store: RecruitmentListDBService = Depends(get_store),
):
    with _translate_errors("update participant status"):
        store.update_participant_status(participant_record_id, list_id, request.status)
    logger.info(f"User {user.sub} set status of participant {participant_record_id} to '{request.status}'")
    return {"message": "participant status updated"}


@router.get("/{list_id}/participants/{participant_record_id}/notes")
async def get_participant_notes(
    list_id: str,
    participant_record_id: str,
    user: CurrentUser = Depends(require_access),
    store: RecruitmentListDBService = Depends(get_store),
):
    with _translate_errors("get participant notes"):
        notes = store.get_participant_notes(participant_record_id, list_id)
    return {"notes": [n.to_dict() for n in notes]}


@router.post("/{list_id}/participants/{participant_record_id}/notes")
async def add_participant_note(
    list_id: str,
    participant_record_id: str,
    request: NoteRequest,
    user: CurrentUser = Depends(require_access),
    store: RecruitmentListDBService = Depends(get_store),
):
    if not request.note.strip():
        raise HTTPException(status_code=400, detail="no note")

    with _translate_errors("add participant note"):
        store.get_participant_by_id(participant_record_id, list_id)
        note = store.create_participant_note(
            participant_record_id, list_id, request.note, user.sub, user.email or user.sub,
        )
    return {"message": "participant note added", "id": note.id}


@router.delete("/{list_id}/participants/{participant_record_id}/notes/{note_id}")
async def delete_participant_note(
    list_id: str,
    participant_record_id: str,
    note_id: str,
    user: CurrentUser = Depends(require_access),
    store: RecruitmentListDBService = Depends(get_store),
):
    """Notes may be deleted by their author, by admins and by list managers."""
    with _translate_errors("delete participant note"):
        note = store.get_participant_note_by_id(note_id)
        if note.recruitment_list_id != list_id or note.participant_id != participant_record_id:
            raise HTTPException(status_code=404, detail="note not found")

        if note.created_by_id != user.sub:
            check_permission(store, user, [ACTION_MANAGE_RECRUITMENT_LIST], [list_id])

        store.delete_participant_note_by_id(note_id)
    return {"message": "participant note deleted"}


@router.get("/{list_id}/available-responses")
async def get_available_responses(
    list_id: str,
    pid: str = Query(""),
    startDate: Optional[str] = Query(None),
    endDate: Optional[str] = Query(None),
    user: CurrentUser = Depends(require_access),
    store: RecruitmentListDBService = Depends(get_store),
):
    """Per-survey counts and arrival range of the stored responses."""
    with _translate_errors("get available responses"):
        infos = store.get_available_response_data_infos(
            list_id,
            participant_id=pid,
            start_date=_optional_datetime("startDate", startDate),
            end_date=_optional_datetime("endDate", endDate),
        )
    return {"infos": [i.to_dict() for i in infos]}
