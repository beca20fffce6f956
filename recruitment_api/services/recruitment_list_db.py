"""
SQLAlchemy implementation of the recruitment list datastore.

Wraps every database failure in a PersistenceError so the sync engine and the
HTTP layer can handle storage problems without knowing about SQLAlchemy.
"""

import logging
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from recruitment_api.db import (
    ParticipantNoteRecord,
    ParticipantRecord,
    PermissionRecord,
    RecruitmentListRecord,
    ResearchDataRecord,
    SyncInfoRecord,
)
from recruitment_sync.errors import NotFoundError, PersistenceError
from recruitment_sync.interfaces import RecruitmentListDB
from recruitment_sync.models import (
    SYNC_STATUS_IDLE,
    SYNC_STATUS_RUNNING,
    Participant,
    ParticipantNote,
    Permission,
    RecruitmentList,
    ResponseData,
    ResponseDataInfo,
    StudyAction,
    SyncInfo,
    to_unix,
    utcnow,
)
from recruitment_sync.pagination import (
    PaginationInfo,
    ParticipantFilter,
    ParticipantSort,
    prep_pagination_infos,
)

logger = logging.getLogger(__name__)

ITERATION_BATCH_SIZE = 500
SYSTEM_USER = "system"

PARTICIPANT_SORT_COLUMNS = {
    "includedAt": ParticipantRecord.included_at,
    "participantId": ParticipantRecord.participant_id,
    "recruitmentStatus": ParticipantRecord.recruitment_status,
}


def _list_from_record(record: RecruitmentListRecord) -> RecruitmentList:
    recruitment_list = RecruitmentList.from_dict(record.config or {})
    recruitment_list.id = record.id
    recruitment_list.created_at = record.created_at
    recruitment_list.created_by = record.created_by or ""
    recruitment_list.tags = list(record.tags or [])
    return recruitment_list


def _participant_from_record(record: ParticipantRecord) -> Participant:
    return Participant(
        id=record.id,
        participant_id=record.participant_id,
        recruitment_list_id=record.recruitment_list_id,
        included_at=record.included_at,
        included_by=record.included_by or "",
        deleted_at=record.deleted_at,
        recruitment_status=record.recruitment_status or "",
        infos=dict(record.infos or {}),
    )


def _note_from_record(record: ParticipantNoteRecord) -> ParticipantNote:
    return ParticipantNote(
        id=record.id,
        participant_id=record.participant_record_id,
        recruitment_list_id=record.recruitment_list_id,
        note=record.note,
        created_at=record.created_at,
        created_by_id=record.created_by_id or "",
        created_by=record.created_by or "",
    )


def _response_data_from_record(record: ResearchDataRecord) -> ResponseData:
    return ResponseData(
        id=record.id,
        response_id=record.response_id,
        participant_id=record.participant_id,
        recruitment_list_id=record.recruitment_list_id,
        survey_key=record.survey_key,
        arrived_at=record.arrived_at,
        response=dict(record.response or {}),
    )


def _sync_info_from_record(record: SyncInfoRecord) -> SyncInfo:
    return SyncInfo(
        recruitment_list_id=record.recruitment_list_id,
        participant_sync_status=record.participant_sync_status or "",
        participant_sync_started_at=record.participant_sync_started_at,
        data_sync_status=record.data_sync_status or "",
        data_sync_started_at=record.data_sync_started_at,
    )


def _permission_from_record(record: PermissionRecord) -> Permission:
    return Permission(
        id=record.id,
        user_id=record.user_id,
        resource_id=record.resource_id or "",
        action=record.action,
        limiter=list(record.limiter or []),
        created_at=record.created_at,
        created_by=record.created_by or "",
    )


class RecruitmentListDBService(RecruitmentListDB):
    """
    Recruitment list datastore backed by a SQLAlchemy session.

    Each write commits immediately; a failed write is rolled back and raised
    as PersistenceError.
    """

    def __init__(self, db: Session):
        """Initialize with database session."""
        self.db = db

    def _safe_rollback(self):
        """Safely rollback the session, handling any errors."""
        try:
            self.db.rollback()
        except SQLAlchemyError as e:
            logger.warning(f"Rollback failed: {e}")

    @contextmanager
    def _reading(self, action: str):
        try:
            yield
        except SQLAlchemyError as e:
            self._safe_rollback()
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceError(f"failed to {action}: {e}") from e

    @contextmanager
    def _writing(self, action: str):
        try:
            yield
            self.db.commit()
        except SQLAlchemyError as e:
            self._safe_rollback()
            logger.error(f"Failed to {action}: {e}")
            raise PersistenceError(f"failed to {action}: {e}") from e

    # =========================================================================
    # Recruitment lists
    # =========================================================================

    def _get_list_record(self, list_id: str) -> RecruitmentListRecord:
        record = self.db.query(RecruitmentListRecord).filter(RecruitmentListRecord.id == list_id).first()
        if record is None:
            raise NotFoundError(f"recruitment list {list_id} not found")
        return record

    def create_recruitment_list(self, recruitment_list: RecruitmentList, created_by: str) -> RecruitmentList:
        with self._writing("create recruitment list"):
            record = RecruitmentListRecord(
                name=recruitment_list.name,
                description=recruitment_list.description,
                study_key=recruitment_list.study_key,
                inclusion_type=recruitment_list.participant_inclusion.type,
                tags=list(recruitment_list.tags),
                created_by=created_by,
                config={},
            )
            self.db.add(record)
            self.db.flush()
            document = recruitment_list.to_dict()
            document["id"] = record.id
            record.config = document
        logger.info(f"Created recruitment list {record.id} ({record.name})")
        return _list_from_record(record)

    def save_recruitment_list(self, recruitment_list: RecruitmentList) -> None:
        with self._writing(f"save recruitment list {recruitment_list.id}"):
            record = self._get_list_record(recruitment_list.id)
            record.name = recruitment_list.name
            record.description = recruitment_list.description
            record.study_key = recruitment_list.study_key
            record.inclusion_type = recruitment_list.participant_inclusion.type
            record.tags = list(recruitment_list.tags)
            record.config = recruitment_list.to_dict()

    def get_recruitment_list_by_id(self, list_id: str) -> RecruitmentList:
        with self._reading(f"load recruitment list {list_id}"):
            return _list_from_record(self._get_list_record(list_id))

    def update_recruitment_list_tags(self, list_id: str, tags: List[str]) -> None:
        with self._writing(f"update tags of list {list_id}"):
            record = self._get_list_record(list_id)
            record.tags = list(tags)
            record.config = {**(record.config or {}), "tags": list(tags)}

    def update_recruitment_list_study_actions(self, list_id: str, study_actions: List[StudyAction]) -> None:
        with self._writing(f"update study actions of list {list_id}"):
            record = self._get_list_record(list_id)
            record.config = {**(record.config or {}), "studyActions": [a.to_dict() for a in study_actions]}

    def get_recruitment_lists_infos(self) -> List[RecruitmentList]:
        with self._reading("list recruitment lists"):
            records = (
                self.db.query(RecruitmentListRecord)
                .order_by(RecruitmentListRecord.created_at.desc())
                .all()
            )
            return [_list_from_record(r) for r in records]

    def iterate_recruitment_lists(
        self,
        callback: Callable[[RecruitmentList], None],
        study_key: Optional[str] = None,
        inclusion_type: Optional[str] = None,
    ) -> None:
        with self._reading("iterate recruitment lists"):
            query = self.db.query(RecruitmentListRecord)
            if study_key is not None:
                query = query.filter(RecruitmentListRecord.study_key == study_key)
            if inclusion_type is not None:
                query = query.filter(RecruitmentListRecord.inclusion_type == inclusion_type)
            lists = [_list_from_record(r) for r in query.order_by(RecruitmentListRecord.created_at).all()]

        for recruitment_list in lists:
            callback(recruitment_list)

    def delete_recruitment_list_by_id(self, list_id: str) -> None:
        with self._writing(f"delete recruitment list {list_id}"):
            self.db.query(RecruitmentListRecord).filter(RecruitmentListRecord.id == list_id).delete()
        logger.info(f"Deleted recruitment list {list_id}")

    # =========================================================================
    # Participants
    # =========================================================================

    def participant_exists(self, participant_id: str, list_id: str) -> bool:
        with self._reading(f"check participant {participant_id}"):
            count = (
                self.db.query(func.count(ParticipantRecord.id))
                .filter(
                    ParticipantRecord.participant_id == participant_id,
                    ParticipantRecord.recruitment_list_id == list_id,
                )
                .scalar()
            )
            return count > 0

    def create_participant(self, participant_id: str, list_id: str, included_by: str) -> Participant:
        with self._writing(f"create participant {participant_id}"):
            record = ParticipantRecord(
                participant_id=participant_id,
                recruitment_list_id=list_id,
                included_at=utcnow(),
                included_by=included_by,
                recruitment_status="",
                infos={},
            )
            self.db.add(record)
        return _participant_from_record(record)

    def _get_participant_record(self, record_id: str, list_id: str) -> ParticipantRecord:
        record = (
            self.db.query(ParticipantRecord)
            .filter(ParticipantRecord.id == record_id, ParticipantRecord.recruitment_list_id == list_id)
            .first()
        )
        if record is None:
            raise NotFoundError(f"participant {record_id} not found in list {list_id}")
        return record

    def get_participant_by_id(self, record_id: str, list_id: str) -> Participant:
        with self._reading(f"load participant {record_id}"):
            return _participant_from_record(self._get_participant_record(record_id, list_id))

    def update_participant_status(self, record_id: str, list_id: str, status: str) -> None:
        with self._writing(f"update status of participant {record_id}"):
            self._get_participant_record(record_id, list_id).recruitment_status = status

    def update_participant_infos(self, participant_id: str, list_id: str, infos: Dict[str, object]) -> None:
        with self._writing(f"update infos of participant {participant_id}"):
            updated = (
                self.db.query(ParticipantRecord)
                .filter(
                    ParticipantRecord.participant_id == participant_id,
                    ParticipantRecord.recruitment_list_id == list_id,
                )
                .update({ParticipantRecord.infos: dict(infos)}, synchronize_session=False)
            )
            if updated == 0:
                raise NotFoundError(f"participant {participant_id} not found in list {list_id}")

    def on_participant_deleted(self, participant: Participant, list_id: str, reason: str) -> None:
        with self._writing(f"remove participant {participant.participant_id}"):
            self.db.query(ParticipantRecord).filter(
                ParticipantRecord.participant_id == participant.participant_id,
                ParticipantRecord.recruitment_list_id == list_id,
            ).update(
                {ParticipantRecord.deleted_at: utcnow(), ParticipantRecord.infos: {}},
                synchronize_session=False,
            )
            self.db.query(ResearchDataRecord).filter(
                ResearchDataRecord.participant_id == participant.participant_id,
                ResearchDataRecord.recruitment_list_id == list_id,
            ).delete(synchronize_session=False)
            self.db.add(ParticipantNoteRecord(
                participant_record_id=participant.id,
                recruitment_list_id=list_id,
                note=f"Participant deleted: {reason}",
                created_by_id=SYSTEM_USER,
                created_by=SYSTEM_USER,
                created_at=utcnow(),
            ))

    def iterate_participants_by_list(self, list_id: str, callback: Callable[[Participant], None]) -> None:
        offset = 0
        while True:
            with self._reading(f"iterate participants of list {list_id}"):
                records = (
                    self.db.query(ParticipantRecord)
                    .filter(ParticipantRecord.recruitment_list_id == list_id)
                    .order_by(ParticipantRecord.included_at, ParticipantRecord.id)
                    .offset(offset)
                    .limit(ITERATION_BATCH_SIZE)
                    .all()
                )
                batch = [_participant_from_record(r) for r in records]

            for participant in batch:
                callback(participant)

            if len(batch) < ITERATION_BATCH_SIZE:
                return
            offset += ITERATION_BATCH_SIZE

    def delete_all_participants_by_list(self, list_id: str) -> None:
        with self._writing(f"delete participants of list {list_id}"):
            self.db.query(ParticipantRecord).filter(
                ParticipantRecord.recruitment_list_id == list_id
            ).delete(synchronize_session=False)

    def count_participants_by_list(self, list_id: str) -> int:
        with self._reading(f"count participants of list {list_id}"):
            return (
                self.db.query(func.count(ParticipantRecord.id))
                .filter(ParticipantRecord.recruitment_list_id == list_id)
                .scalar()
            )

    def get_participants_by_list(
        self,
        list_id: str,
        page: int,
        limit: int,
        participant_filter: ParticipantFilter,
        sort: ParticipantSort,
    ) -> Tuple[List[Participant], PaginationInfo]:
        with self._reading(f"list participants of list {list_id}"):
            query = self.db.query(ParticipantRecord).filter(ParticipantRecord.recruitment_list_id == list_id)
            if participant_filter.included_since is not None:
                query = query.filter(ParticipantRecord.included_at >= participant_filter.included_since)
            if participant_filter.included_until is not None:
                query = query.filter(ParticipantRecord.included_at <= participant_filter.included_until)
            if participant_filter.participant_id:
                query = query.filter(ParticipantRecord.participant_id == participant_filter.participant_id)
            if participant_filter.recruitment_status:
                query = query.filter(ParticipantRecord.recruitment_status == participant_filter.recruitment_status)

            pagination = prep_pagination_infos(query.count(), page, limit)

            column = PARTICIPANT_SORT_COLUMNS.get(sort.field, ParticipantRecord.included_at)
            if sort.descending:
                query = query.order_by(column.desc(), ParticipantRecord.id.desc())
            else:
                query = query.order_by(column.asc(), ParticipantRecord.id.asc())

            records = query.offset(pagination.offset).limit(pagination.page_size).all()
            return [_participant_from_record(r) for r in records], pagination

    # =========================================================================
    # Participant notes
    # =========================================================================

    def create_participant_note(
        self,
        record_id: str,
        list_id: str,
        note: str,
        created_by_id: str,
        created_by: str,
    ) -> ParticipantNote:
        with self._writing(f"create note for participant {record_id}"):
            record = ParticipantNoteRecord(
                participant_record_id=record_id,
                recruitment_list_id=list_id,
                note=note,
                created_by_id=created_by_id,
                created_by=created_by,
                created_at=utcnow(),
            )
            self.db.add(record)
        return _note_from_record(record)

    def get_participant_notes(self, record_id: str, list_id: str) -> List[ParticipantNote]:
        with self._reading(f"load notes of participant {record_id}"):
            records = (
                self.db.query(ParticipantNoteRecord)
                .filter(
                    ParticipantNoteRecord.participant_record_id == record_id,
                    ParticipantNoteRecord.recruitment_list_id == list_id,
                )
                .order_by(ParticipantNoteRecord.created_at.desc())
                .all()
            )
            return [_note_from_record(r) for r in records]

    def get_participant_note_by_id(self, note_id: str) -> ParticipantNote:
        with self._reading(f"load note {note_id}"):
            record = self.db.query(ParticipantNoteRecord).filter(ParticipantNoteRecord.id == note_id).first()
            if record is None:
                raise NotFoundError(f"note {note_id} not found")
            return _note_from_record(record)

    def delete_participant_note_by_id(self, note_id: str) -> None:
        with self._writing(f"delete note {note_id}"):
            self.db.query(ParticipantNoteRecord).filter(ParticipantNoteRecord.id == note_id).delete()

    def delete_participant_notes_by_list(self, list_id: str) -> None:
        with self._writing(f"delete notes of list {list_id}"):
            self.db.query(ParticipantNoteRecord).filter(
                ParticipantNoteRecord.recruitment_list_id == list_id
            ).delete(synchronize_session=False)

    # =========================================================================
    # Research data
    # =========================================================================

    def save_research_data(self, list_id: str, participant_id: str, research_data: List[ResponseData]) -> int:
        if not research_data:
            return 0

        with self._writing(f"save research data of participant {participant_id}"):
            response_ids = [r.response_id for r in research_data]
            existing = {
                row.response_id for row in
                self.db.query(ResearchDataRecord.response_id).filter(
                    ResearchDataRecord.recruitment_list_id == list_id,
                    ResearchDataRecord.participant_id == participant_id,
                    ResearchDataRecord.response_id.in_(response_ids),
                )
            }

            inserted = 0
            for entry in research_data:
                if entry.response_id in existing:
                    continue
                self.db.add(ResearchDataRecord(
                    response_id=entry.response_id,
                    participant_id=participant_id,
                    recruitment_list_id=list_id,
                    survey_key=entry.survey_key,
                    arrived_at=entry.arrived_at,
                    response=entry.response,
                ))
                existing.add(entry.response_id)
                inserted += 1

        logger.debug(f"Stored {inserted} research data record(s) for {participant_id} in list {list_id}")
        return inserted

    def delete_research_data_by_list(self, list_id: str) -> None:
        with self._writing(f"delete research data of list {list_id}"):
            self.db.query(ResearchDataRecord).filter(
                ResearchDataRecord.recruitment_list_id == list_id
            ).delete(synchronize_session=False)

    def get_available_response_data_infos(
        self,
        list_id: str,
        participant_id: str = "",
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[ResponseDataInfo]:
        with self._reading(f"summarize research data of list {list_id}"):
            query = (
                self.db.query(
                    ResearchDataRecord.survey_key,
                    func.count(ResearchDataRecord.id),
                    func.min(ResearchDataRecord.arrived_at),
                    func.max(ResearchDataRecord.arrived_at),
                )
                .filter(ResearchDataRecord.recruitment_list_id == list_id)
            )
            if participant_id:
                query = query.filter(ResearchDataRecord.participant_id == participant_id)
            if start_date is not None:
                query = query.filter(ResearchDataRecord.arrived_at >= to_unix(start_date))
            if end_date is not None:
                query = query.filter(ResearchDataRecord.arrived_at <= to_unix(end_date))

            rows = query.group_by(ResearchDataRecord.survey_key).order_by(ResearchDataRecord.survey_key).all()
            return [
                ResponseDataInfo(survey_key=key, count=count, first_arrived_at=first, last_arrived_at=last)
                for key, count, first, last in rows
            ]

    def iterate_response_data(
        self,
        list_id: str,
        callback: Callable[[ResponseData], None],
        survey_key: Optional[str] = None,
        participant_id: Optional[str] = None,
        arrived_from: Optional[int] = None,
        arrived_until: Optional[int] = None,
    ) -> None:
        offset = 0
        while True:
            with self._reading(f"iterate research data of list {list_id}"):
                query = self.db.query(ResearchDataRecord).filter(ResearchDataRecord.recruitment_list_id == list_id)
                if survey_key:
                    query = query.filter(ResearchDataRecord.survey_key == survey_key)
                if participant_id:
                    query = query.filter(ResearchDataRecord.participant_id == participant_id)
                if arrived_from is not None:
                    query = query.filter(ResearchDataRecord.arrived_at >= arrived_from)
                if arrived_until is not None:
                    query = query.filter(ResearchDataRecord.arrived_at <= arrived_until)
                records = (
                    query.order_by(ResearchDataRecord.arrived_at, ResearchDataRecord.id)
                    .offset(offset)
                    .limit(ITERATION_BATCH_SIZE)
                    .all()
                )
                batch = [_response_data_from_record(r) for r in records]

            for entry in batch:
                callback(entry)

            if len(batch) < ITERATION_BATCH_SIZE:
                return
            offset += ITERATION_BATCH_SIZE

    # =========================================================================
    # Sync infos
    # =========================================================================

    def _sync_info_record(self, list_id: str) -> SyncInfoRecord:
        record = self.db.query(SyncInfoRecord).filter(SyncInfoRecord.recruitment_list_id == list_id).first()
        if record is None:
            record = SyncInfoRecord(recruitment_list_id=list_id)
            self.db.add(record)
        return record

    def get_sync_info(self, list_id: str) -> Optional[SyncInfo]:
        with self._reading(f"load sync info of list {list_id}"):
            record = self.db.query(SyncInfoRecord).filter(SyncInfoRecord.recruitment_list_id == list_id).first()
            return _sync_info_from_record(record) if record is not None else None

    def start_participant_sync(self, list_id: str) -> None:
        with self._writing(f"start participant sync of list {list_id}"):
            record = self._sync_info_record(list_id)
            record.participant_sync_status = SYNC_STATUS_RUNNING
            record.participant_sync_started_at = utcnow()

    def finish_participant_sync(self, list_id: str) -> None:
        with self._writing(f"finish participant sync of list {list_id}"):
            self._sync_info_record(list_id).participant_sync_status = SYNC_STATUS_IDLE

    def reset_participant_sync_time(self, list_id: str) -> None:
        with self._writing(f"reset participant sync time of list {list_id}"):
            record = self._sync_info_record(list_id)
            if record.participant_sync_status != SYNC_STATUS_RUNNING:
                record.participant_sync_started_at = None

    def start_data_sync(self, list_id: str) -> None:
        with self._writing(f"start data sync of list {list_id}"):
            record = self._sync_info_record(list_id)
            record.data_sync_status = SYNC_STATUS_RUNNING
            record.data_sync_started_at = utcnow()

    def finish_data_sync(self, list_id: str) -> None:
        with self._writing(f"finish data sync of list {list_id}"):
            self._sync_info_record(list_id).data_sync_status = SYNC_STATUS_IDLE

    def reset_data_sync_time(self, list_id: str) -> None:
        with self._writing(f"reset data sync time of list {list_id}"):
            record = self._sync_info_record(list_id)
            if record.data_sync_status != SYNC_STATUS_RUNNING:
                record.data_sync_started_at = None

    def delete_sync_infos_by_list(self, list_id: str) -> None:
        with self._writing(f"delete sync infos of list {list_id}"):
            self.db.query(SyncInfoRecord).filter(SyncInfoRecord.recruitment_list_id == list_id).delete()

    # =========================================================================
    # Permissions
    # =========================================================================

    def create_permission(
        self,
        user_id: str,
        action: str,
        resource_id: str,
        created_by: str,
        limiter: Optional[List[Dict[str, str]]] = None,
    ) -> Permission:
        with self._writing(f"create permission {action} for {user_id}"):
            record = PermissionRecord(
                user_id=user_id,
                action=action,
                resource_id=resource_id,
                limiter=list(limiter or []),
                created_by=created_by,
                created_at=utcnow(),
            )
            self.db.add(record)
        return _permission_from_record(record)

    def get_permission_by_id(self, permission_id: str) -> Permission:
        with self._reading(f"load permission {permission_id}"):
            record = self.db.query(PermissionRecord).filter(PermissionRecord.id == permission_id).first()
            if record is None:
                raise NotFoundError(f"permission {permission_id} not found")
            return _permission_from_record(record)

    def get_permissions_by_user_id(self, user_id: str) -> List[Permission]:
        with self._reading(f"load permissions of user {user_id}"):
            records = self.db.query(PermissionRecord).filter(PermissionRecord.user_id == user_id).all()
            return [_permission_from_record(r) for r in records]

    def get_permissions_by_resource_id(self, resource_id: str) -> List[Permission]:
        with self._reading(f"load permissions of resource {resource_id}"):
            records = self.db.query(PermissionRecord).filter(PermissionRecord.resource_id == resource_id).all()
            return [_permission_from_record(r) for r in records]

    def get_specific_permissions_by_user_id(
        self,
        user_id: str,
        actions: List[str],
        resource_ids: List[str],
    ) -> List[Permission]:
        with self._reading(f"load permissions of user {user_id}"):
            query = self.db.query(PermissionRecord).filter(
                PermissionRecord.user_id == user_id,
                PermissionRecord.action.in_(actions),
            )
            if resource_ids:
                query = query.filter(PermissionRecord.resource_id.in_(resource_ids))
            return [_permission_from_record(r) for r in query.all()]

    def delete_permission_by_id(self, permission_id: str) -> None:
        with self._writing(f"delete permission {permission_id}"):
            self.db.query(PermissionRecord).filter(PermissionRecord.id == permission_id).delete()

    def delete_permissions_by_user_id(self, user_id: str) -> None:
        with self._writing(f"delete permissions of user {user_id}"):
            self.db.query(PermissionRecord).filter(PermissionRecord.user_id == user_id).delete()

    def delete_permissions_by_resource_id(self, resource_id: str) -> None:
        with self._writing(f"delete permissions of resource {resource_id}"):
            self.db.query(PermissionRecord).filter(PermissionRecord.resource_id == resource_id).delete()
