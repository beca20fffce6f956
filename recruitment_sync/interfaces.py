"""
Collaborator interfaces consumed by the synchronization engine.

The engine never talks to a database or HTTP service directly. It is handed
implementations of these abstract classes:
- RecruitmentListDB: lists, memberships, notes, research data, sync state, permissions
- StudySystem: participants, responses, confidential data and survey definitions
- NotificationSender: best-effort e-mail notifications
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from .confidential import profile_id_to_participant_id
from .models import (
    Participant,
    ParticipantNote,
    Permission,
    RecruitmentList,
    ResponseData,
    ResponseDataInfo,
    Study,
    StudyAction,
    StudyParticipant,
    SurveyResponse,
    SyncInfo,
)
from .pagination import PaginationInfo, ParticipantFilter, ParticipantSort
from .response_parser import SurveyVersion

logger = logging.getLogger(__name__)


@dataclass
class ParticipantStateFilter:
    """Selects participants in the external study system."""
    exclude_statuses: List[str] = field(default_factory=list)
    entered_after: Optional[int] = None     # epoch seconds, inclusive
    entered_before: Optional[int] = None    # epoch seconds, inclusive


@dataclass
class ResponseFilter:
    """Selects survey responses in the external study system."""
    participant_id: str = ""
    survey_key: str = ""
    arrived_from: Optional[int] = None      # epoch seconds, inclusive
    arrived_until: Optional[int] = None     # epoch seconds, inclusive


# =============================================================================
# Recruitment list datastore
# =============================================================================

class RecruitmentListStore(ABC):

    @abstractmethod
    def create_recruitment_list(self, recruitment_list: RecruitmentList, created_by: str) -> RecruitmentList:
        pass

    @abstractmethod
    def save_recruitment_list(self, recruitment_list: RecruitmentList) -> None:
        """Replace the stored configuration of an existing list."""
        pass

    @abstractmethod
    def get_recruitment_list_by_id(self, list_id: str) -> RecruitmentList:
        """
        Load a list.

        Raises:
            NotFoundError: If no list has this id.
            PersistenceError: If the datastore fails.
        """
        pass

    @abstractmethod
    def update_recruitment_list_tags(self, list_id: str, tags: List[str]) -> None:
        pass

    @abstractmethod
    def update_recruitment_list_study_actions(self, list_id: str, study_actions: List[StudyAction]) -> None:
        pass

    @abstractmethod
    def get_recruitment_lists_infos(self) -> List[RecruitmentList]:
        """All lists, newest first."""
        pass

    @abstractmethod
    def iterate_recruitment_lists(
        self,
        callback: Callable[[RecruitmentList], None],
        study_key: Optional[str] = None,
        inclusion_type: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    def delete_recruitment_list_by_id(self, list_id: str) -> None:
        pass


class MembershipStore(ABC):

    @abstractmethod
    def participant_exists(self, participant_id: str, list_id: str) -> bool:
        pass

    @abstractmethod
    def create_participant(self, participant_id: str, list_id: str, included_by: str) -> Participant:
        pass

    @abstractmethod
    def get_participant_by_id(self, record_id: str, list_id: str) -> Participant:
        """
        Load a membership by its record id (not the study participant id).

        Raises:
            NotFoundError: If the record does not exist in this list.
        """
        pass

    @abstractmethod
    def update_participant_status(self, record_id: str, list_id: str, status: str) -> None:
        pass

    @abstractmethod
    def update_participant_infos(self, participant_id: str, list_id: str, infos: Dict[str, object]) -> None:
        """Replace the whole info map of a member."""
        pass

    @abstractmethod
    def on_participant_deleted(self, participant: Participant, list_id: str, reason: str) -> None:
        """
        Soft-delete a member.

        Sets the deletion timestamp, clears infos, removes the member's research
        data and records a system note with the reason.
        """
        pass

    @abstractmethod
    def iterate_participants_by_list(self, list_id: str, callback: Callable[[Participant], None]) -> None:
        """Call ``callback`` for each member in storage order; stops on the first exception."""
        pass

    @abstractmethod
    def delete_all_participants_by_list(self, list_id: str) -> None:
        pass

    @abstractmethod
    def count_participants_by_list(self, list_id: str) -> int:
        pass

    @abstractmethod
    def get_participants_by_list(
        self,
        list_id: str,
        page: int,
        limit: int,
        participant_filter: ParticipantFilter,
        sort: ParticipantSort,
    ) -> Tuple[List[Participant], PaginationInfo]:
        pass

    @abstractmethod
    def create_participant_note(
        self,
        record_id: str,
        list_id: str,
        note: str,
        created_by_id: str,
        created_by: str,
    ) -> ParticipantNote:
        pass

    @abstractmethod
    def get_participant_notes(self, record_id: str, list_id: str) -> List[ParticipantNote]:
        pass

    @abstractmethod
    def get_participant_note_by_id(self, note_id: str) -> ParticipantNote:
        pass

    @abstractmethod
    def delete_participant_note_by_id(self, note_id: str) -> None:
        pass

    @abstractmethod
    def delete_participant_notes_by_list(self, list_id: str) -> None:
        pass


class ResearchDataStore(ABC):

    @abstractmethod
    def save_research_data(self, list_id: str, participant_id: str, research_data: List[ResponseData]) -> int:
        """
        Bulk insert flattened responses.

        Entries already stored for the same (participant, response id, list)
        are skipped. Returns the number of inserted records.
        """
        pass

    @abstractmethod
    def delete_research_data_by_list(self, list_id: str) -> None:
        pass

    @abstractmethod
    def get_available_response_data_infos(
        self,
        list_id: str,
        participant_id: str = "",
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> List[ResponseDataInfo]:
        pass

    @abstractmethod
    def iterate_response_data(
        self,
        list_id: str,
        callback: Callable[[ResponseData], None],
        survey_key: Optional[str] = None,
        participant_id: Optional[str] = None,
        arrived_from: Optional[int] = None,
        arrived_until: Optional[int] = None,
    ) -> None:
        pass


class SyncInfoStore(ABC):

    @abstractmethod
    def get_sync_info(self, list_id: str) -> Optional[SyncInfo]:
        pass

    @abstractmethod
    def start_participant_sync(self, list_id: str) -> None:
        """Upsert: status running, start time now."""
        pass

    @abstractmethod
    def finish_participant_sync(self, list_id: str) -> None:
        pass

    @abstractmethod
    def reset_participant_sync_time(self, list_id: str) -> None:
        """Clear the start time, only when the participant sync is idle."""
        pass

    @abstractmethod
    def start_data_sync(self, list_id: str) -> None:
        pass

    @abstractmethod
    def finish_data_sync(self, list_id: str) -> None:
        pass

    @abstractmethod
    def reset_data_sync_time(self, list_id: str) -> None:
        pass

    @abstractmethod
    def delete_sync_infos_by_list(self, list_id: str) -> None:
        pass


class PermissionStore(ABC):

    @abstractmethod
    def create_permission(
        self,
        user_id: str,
        action: str,
        resource_id: str,
        created_by: str,
        limiter: Optional[List[Dict[str, str]]] = None,
    ) -> Permission:
        pass

    @abstractmethod
    def get_permission_by_id(self, permission_id: str) -> Permission:
        pass

    @abstractmethod
    def get_permissions_by_user_id(self, user_id: str) -> List[Permission]:
        pass

    @abstractmethod
    def get_permissions_by_resource_id(self, resource_id: str) -> List[Permission]:
        pass

    @abstractmethod
    def get_specific_permissions_by_user_id(
        self,
        user_id: str,
        actions: List[str],
        resource_ids: List[str],
    ) -> List[Permission]:
        """Grants of ``user_id`` with any of ``actions`` on any of ``resource_ids`` (all resources when empty)."""
        pass

    @abstractmethod
    def delete_permission_by_id(self, permission_id: str) -> None:
        pass

    @abstractmethod
    def delete_permissions_by_user_id(self, user_id: str) -> None:
        pass

    @abstractmethod
    def delete_permissions_by_resource_id(self, resource_id: str) -> None:
        pass


class RecruitmentListDB(
    RecruitmentListStore,
    MembershipStore,
    ResearchDataStore,
    SyncInfoStore,
    PermissionStore,
    ABC,
):
    """Everything the engine and API need from the recruitment list datastore."""


# =============================================================================
# External study system
# =============================================================================

class StudySystem(ABC):
    """
    Read access to the study-management service.

    Implementations raise ExternalLookupError on transport or lookup failures.
    """

    @abstractmethod
    def get_participant(self, instance_id: str, study_key: str, participant_id: str) -> StudyParticipant:
        pass

    @abstractmethod
    def iterate_participants(
        self,
        instance_id: str,
        study_key: str,
        participant_filter: ParticipantStateFilter,
        callback: Callable[[StudyParticipant], None],
    ) -> None:
        pass

    @abstractmethod
    def get_responses(
        self,
        instance_id: str,
        study_key: str,
        response_filter: ResponseFilter,
        sort_ascending: bool,
        page: int,
        page_size: int,
    ) -> List[SurveyResponse]:
        """One page of responses sorted by arrival time."""
        pass

    @abstractmethod
    def find_confidential_responses(
        self,
        instance_id: str,
        study_key: str,
        confidential_id: str,
        item_key: str,
    ) -> List[SurveyResponse]:
        pass

    @abstractmethod
    def get_study(self, instance_id: str, study_key: str) -> Study:
        pass

    @abstractmethod
    def load_survey_versions(
        self,
        instance_id: str,
        study_key: str,
        survey_key: str,
        excluded_columns: Optional[List[str]] = None,
    ) -> List[SurveyVersion]:
        """Version history of a survey, items in ``excluded_columns`` removed."""
        pass

    def resolve_confidential_id(
        self,
        participant_id: str,
        global_secret: str,
        study_secret: str,
        mapping_method: str,
    ) -> str:
        return profile_id_to_participant_id(participant_id, global_secret, study_secret, mapping_method)


class NotificationSender(ABC):

    @abstractmethod
    def send(self, recipients: List[str], subject: str, body: str) -> None:
        pass
