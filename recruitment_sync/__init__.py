"""
Recruitment Sync - synchronization engine for recruitment lists.

A recruitment list is a cohort of study participants drawn from an external
study system. This package keeps lists up to date:
- criteria: AND/OR inclusion expressions over participant flags and status
- participant_sync: includes matching study participants into auto lists
- data_sync: derives participant infos, applies exclusions, copies responses
- response_parser: flattens nested survey responses into column records
- pagination: paging helpers for listing list members

Storage, the study system and notifications are reached only through the
abstract classes in ``interfaces``.

Usage:
    from recruitment_sync import sync_participants_for_list, sync_research_data_for_list

    added = sync_participants_for_list(db, study_system, list_id, instance_id, notifier)
    sync_research_data_for_list(db, study_system, list_id, instance_id, global_secret)
"""

from .errors import (
    SyncError,
    ConfigError,
    ExternalLookupError,
    PersistenceError,
    NotFoundError,
    OverlapError,
)
from .models import (
    RecruitmentList,
    Participant,
    ParticipantNote,
    ResponseData,
    SyncInfo,
    Permission,
    StudyParticipant,
    SurveyResponse,
    Study,
)
from .criteria import parse_criteria, evaluate_criteria, CriteriaGroup, Condition
from .context import SyncRunContext
from .participant_sync import sync_participants_for_list
from .data_sync import sync_research_data_for_list, sync_data_for_participant

__version__ = "1.0.0"
