"""
Data models for recruitment lists and the study system they draw from.

This module defines the dataclasses used for:
- Recruitment list configuration (inclusion policy, participant infos, research data)
- List-scoped membership records, notes and flattened response data
- Per-list synchronization state
- Participants, responses and studies as reported by the external study system

All datetimes are naive UTC. ``to_dict()`` produces the camelCase shape used on
the wire and in JSON columns; ``from_dict()`` accepts the same shape.
"""

import calendar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


PARTICIPANT_INCLUSION_TYPE_MANUAL = "manual"
PARTICIPANT_INCLUSION_TYPE_AUTO = "auto"

SYNC_STATUS_IDLE = "idle"
SYNC_STATUS_RUNNING = "running"

PARTICIPANT_STUDY_STATUS_ACTIVE = "active"
PARTICIPANT_STUDY_STATUS_TEMPORARY = "temporary"
PARTICIPANT_STUDY_STATUS_EXITED = "exited"
PARTICIPANT_STUDY_STATUS_ACCOUNT_DELETED = "accountDeleted"


class MappingType(str, Enum):
    """How a raw source value is turned into a stored participant info."""
    DEFAULT = "default"        # Use value as is
    JSON = "json"              # Already JSON encoded upstream
    KEY2VALUE = "key2value"    # Lookup in the mapping table
    TS2DATE = "ts2date"        # Unix seconds to calendar date


class SourceType(str, Enum):
    """Where a participant info value is read from."""
    FLAG_VALUE = "flagValue"
    CONFIDENTIAL_DATA = "confidentialData"
    RESPONSE_DATA = "responseData"


def utcnow() -> datetime:
    """Current time as naive UTC."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def to_unix(value: datetime) -> int:
    """Epoch seconds for a naive UTC (or aware) datetime."""
    return calendar.timegm(value.utctimetuple())


def from_unix(ts: float) -> datetime:
    return datetime.fromtimestamp(ts, timezone.utc).replace(tzinfo=None)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse ISO-8601 strings, epoch numbers or datetimes into naive UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return from_unix(value)
    else:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    return value.isoformat() + "Z"


# =============================================================================
# Recruitment list configuration
# =============================================================================

@dataclass
class MappingEntry:
    key: str
    value: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MappingEntry":
        return cls(key=data.get("key", ""), value=data.get("value", ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "value": self.value}


@dataclass
class ParticipantInfoDefinition:
    """
    Declares one derived participant attribute.

    ``label`` is the target key in the participant's info map, ``source_key``
    is interpreted according to ``source_type``:
    - flagValue: the flag key
    - confidentialData: ``<itemKey>-<slotPath>``
    - responseData: ``<surveyKey>.<fieldPath>`` (a flattened response column)
    """
    label: str
    source_type: str
    source_key: str
    mapping_type: str = MappingType.DEFAULT.value
    mapping: List[MappingEntry] = field(default_factory=list)
    id: str = ""
    show_in_preview: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParticipantInfoDefinition":
        return cls(
            id=data.get("id", ""),
            label=data.get("label", ""),
            source_type=data.get("sourceType", ""),
            source_key=data.get("sourceKey", ""),
            show_in_preview=bool(data.get("showInPreview", False)),
            mapping_type=data.get("mappingType") or MappingType.DEFAULT.value,
            mapping=[MappingEntry.from_dict(m) for m in data.get("mapping") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "label": self.label,
            "sourceType": self.source_type,
            "sourceKey": self.source_key,
            "showInPreview": self.show_in_preview,
            "mappingType": self.mapping_type,
            "mapping": [m.to_dict() for m in self.mapping],
        }


@dataclass
class ResearchDataDefinition:
    """Survey whose responses are copied into the research data store."""
    survey_key: str
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    excluded_columns: List[str] = field(default_factory=list)
    id: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResearchDataDefinition":
        return cls(
            id=data.get("id", ""),
            survey_key=data.get("surveyKey", ""),
            start_date=parse_datetime(data.get("startDate")),
            end_date=parse_datetime(data.get("endDate")),
            excluded_columns=list(data.get("excludedColumns") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "surveyKey": self.survey_key,
            "startDate": format_datetime(self.start_date),
            "endDate": format_datetime(self.end_date),
            "excludedColumns": list(self.excluded_columns),
        }


@dataclass
class ExclusionCondition:
    """Exclude a member when ``infos[key] == value``."""
    key: str
    value: str

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ExclusionCondition":
        return cls(key=data.get("key", ""), value=data.get("value", ""))

    def to_dict(self) -> Dict[str, Any]:
        return {"key": self.key, "value": self.value}


@dataclass
class InclusionAutoConfig:
    criteria: str = ""
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "InclusionAutoConfig":
        return cls(
            criteria=data.get("criteria") or "",
            start_date=parse_datetime(data.get("startDate")),
            end_date=parse_datetime(data.get("endDate")),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "criteria": self.criteria,
            "startDate": format_datetime(self.start_date),
            "endDate": format_datetime(self.end_date),
        }


@dataclass
class ParticipantInclusion:
    study_key: str = ""
    type: str = PARTICIPANT_INCLUSION_TYPE_MANUAL
    auto_config: Optional[InclusionAutoConfig] = None
    notification_emails: List[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParticipantInclusion":
        auto_config = data.get("autoConfig")
        return cls(
            study_key=data.get("studyKey", ""),
            type=data.get("type") or PARTICIPANT_INCLUSION_TYPE_MANUAL,
            auto_config=InclusionAutoConfig.from_dict(auto_config) if auto_config else None,
            notification_emails=list(data.get("notificationEmails") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "studyKey": self.study_key,
            "type": self.type,
            "autoConfig": self.auto_config.to_dict() if self.auto_config else None,
            "notificationEmails": list(self.notification_emails),
        }


@dataclass
class ParticipantDataConfig:
    participant_infos: List[ParticipantInfoDefinition] = field(default_factory=list)
    research_data: List[ResearchDataDefinition] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ParticipantDataConfig":
        return cls(
            participant_infos=[
                ParticipantInfoDefinition.from_dict(d) for d in data.get("participantInfos") or []
            ],
            research_data=[
                ResearchDataDefinition.from_dict(d) for d in data.get("researchData") or []
            ],
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "participantInfos": [d.to_dict() for d in self.participant_infos],
            "researchData": [d.to_dict() for d in self.research_data],
        }


@dataclass
class StudyAction:
    id: str = ""
    encoded_action: str = ""
    label: str = ""
    description: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudyAction":
        return cls(
            id=data.get("id", ""),
            encoded_action=data.get("encodedAction", ""),
            label=data.get("label", ""),
            description=data.get("description", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "encodedAction": self.encoded_action,
            "label": self.label,
            "description": self.description,
        }


@dataclass
class RecruitmentList:
    """A named cohort definition plus the policy for who belongs in it."""
    name: str = ""
    id: str = ""
    description: str = ""
    created_at: Optional[datetime] = None
    created_by: str = ""
    participant_inclusion: ParticipantInclusion = field(default_factory=ParticipantInclusion)
    exclusion_conditions: List[ExclusionCondition] = field(default_factory=list)
    participant_data: ParticipantDataConfig = field(default_factory=ParticipantDataConfig)
    recruitment_status_values: List[str] = field(default_factory=list)
    study_actions: List[StudyAction] = field(default_factory=list)
    tags: List[str] = field(default_factory=list)

    @property
    def study_key(self) -> str:
        return self.participant_inclusion.study_key

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecruitmentList":
        customization = data.get("customization") or {}
        return cls(
            id=data.get("id", ""),
            name=data.get("name", ""),
            description=data.get("description", ""),
            created_at=parse_datetime(data.get("createdAt")),
            created_by=data.get("createdBy", ""),
            participant_inclusion=ParticipantInclusion.from_dict(data.get("participantInclusion") or {}),
            exclusion_conditions=[
                ExclusionCondition.from_dict(c) for c in data.get("exclusionConditions") or []
            ],
            participant_data=ParticipantDataConfig.from_dict(data.get("participantData") or {}),
            recruitment_status_values=list(customization.get("recruitmentStatusValues") or []),
            study_actions=[StudyAction.from_dict(a) for a in data.get("studyActions") or []],
            tags=list(data.get("tags") or []),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "createdAt": format_datetime(self.created_at),
            "createdBy": self.created_by,
            "participantInclusion": self.participant_inclusion.to_dict(),
            "exclusionConditions": [c.to_dict() for c in self.exclusion_conditions],
            "participantData": self.participant_data.to_dict(),
            "customization": {"recruitmentStatusValues": list(self.recruitment_status_values)},
            "studyActions": [a.to_dict() for a in self.study_actions],
            "tags": list(self.tags),
        }


# =============================================================================
# Membership, notes, research data, sync state, permissions
# =============================================================================

@dataclass
class Participant:
    """List-scoped membership record."""
    participant_id: str
    recruitment_list_id: str
    id: str = ""
    included_at: Optional[datetime] = None
    included_by: str = ""
    deleted_at: Optional[datetime] = None
    recruitment_status: str = ""
    infos: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_deleted(self) -> bool:
        return self.deleted_at is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "participantId": self.participant_id,
            "recruitmentListId": self.recruitment_list_id,
            "includedAt": format_datetime(self.included_at),
            "includedBy": self.included_by,
            "deletedAt": format_datetime(self.deleted_at),
            "recruitmentStatus": self.recruitment_status,
            "infos": dict(self.infos),
        }


@dataclass
class ParticipantNote:
    participant_id: str
    recruitment_list_id: str
    note: str
    id: str = ""
    created_at: Optional[datetime] = None
    created_by_id: str = ""
    created_by: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "participantId": self.participant_id,
            "recruitmentListId": self.recruitment_list_id,
            "note": self.note,
            "createdAt": format_datetime(self.created_at),
            "createdById": self.created_by_id,
            "createdBy": self.created_by,
        }


@dataclass
class ResponseData:
    """One flattened survey response stored for a list member."""
    response_id: str
    participant_id: str
    recruitment_list_id: str
    survey_key: str
    arrived_at: int
    response: Dict[str, Any] = field(default_factory=dict)
    id: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "responseId": self.response_id,
            "participantId": self.participant_id,
            "recruitmentListId": self.recruitment_list_id,
            "surveyKey": self.survey_key,
            "arrivedAt": self.arrived_at,
            "response": dict(self.response),
        }


@dataclass
class ResponseDataInfo:
    survey_key: str
    count: int
    first_arrived_at: int
    last_arrived_at: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "surveyKey": self.survey_key,
            "count": self.count,
            "firstArrivedAt": self.first_arrived_at,
            "lastArrivedAt": self.last_arrived_at,
        }


@dataclass
class SyncInfo:
    """Per-list sync state; the only status channel of background runs."""
    recruitment_list_id: str
    participant_sync_status: str = ""
    participant_sync_started_at: Optional[datetime] = None
    data_sync_status: str = ""
    data_sync_started_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "recruitmentListId": self.recruitment_list_id,
            "participantSyncStatus": self.participant_sync_status,
            "participantSyncStartedAt": format_datetime(self.participant_sync_started_at),
            "dataSyncStatus": self.data_sync_status,
            "dataSyncStartedAt": format_datetime(self.data_sync_started_at),
        }


@dataclass
class Permission:
    """Capability grant; ``resource_id`` is a list id or empty for global actions."""
    user_id: str
    action: str
    resource_id: str = ""
    limiter: List[Dict[str, str]] = field(default_factory=list)
    id: str = ""
    created_at: Optional[datetime] = None
    created_by: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "userId": self.user_id,
            "resourceId": self.resource_id,
            "action": self.action,
            "limiter": list(self.limiter),
            "createdAt": format_datetime(self.created_at),
            "createdBy": self.created_by,
        }


# =============================================================================
# External study system
# =============================================================================

@dataclass
class StudyParticipant:
    participant_id: str
    study_status: str = PARTICIPANT_STUDY_STATUS_ACTIVE
    entered_at: int = 0
    flags: Dict[str, str] = field(default_factory=dict)
    last_submissions: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StudyParticipant":
        return cls(
            participant_id=data.get("participantId", ""),
            study_status=data.get("studyStatus", ""),
            entered_at=int(data.get("enteredAt") or 0),
            flags=dict(data.get("flags") or {}),
            last_submissions={k: int(v) for k, v in (data.get("lastSubmissions") or {}).items()},
        )


@dataclass
class ResponseItem:
    """Node of a nested survey response (response group, slot, option)."""
    key: str = ""
    value: str = ""
    dtype: str = ""
    items: List["ResponseItem"] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ResponseItem":
        # JSON null decodes to an empty string
        value = data.get("value")
        return cls(
            key=data.get("key") or "",
            value="" if value is None else value,
            dtype=data.get("dtype") or "",
            items=[cls.from_dict(i) for i in data.get("items") or []],
        )

    def to_dict(self) -> Dict[str, Any]:
        # Empty fields are omitted so encoded slots stay compact
        result: Dict[str, Any] = {}
        if self.key:
            result["key"] = self.key
        if self.value:
            result["value"] = self.value
        if self.dtype:
            result["dtype"] = self.dtype
        if self.items:
            result["items"] = [i.to_dict() for i in self.items]
        return result


@dataclass
class SurveyItemResponse:
    key: str
    response: Optional[ResponseItem] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SurveyItemResponse":
        response = data.get("response")
        return cls(
            key=data.get("key", ""),
            response=ResponseItem.from_dict(response) if response else None,
        )


@dataclass
class SurveyResponse:
    id: str
    key: str
    participant_id: str
    version_id: str = ""
    submitted_at: int = 0
    arrived_at: int = 0
    opened_at: int = 0
    responses: List[SurveyItemResponse] = field(default_factory=list)
    context: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SurveyResponse":
        return cls(
            id=data.get("id", ""),
            key=data.get("key", ""),
            participant_id=data.get("participantId", ""),
            version_id=data.get("versionId", ""),
            submitted_at=int(data.get("submittedAt") or 0),
            arrived_at=int(data.get("arrivedAt") or 0),
            opened_at=int(data.get("openedAt") or 0),
            responses=[SurveyItemResponse.from_dict(r) for r in data.get("responses") or []],
            context=dict(data.get("context") or {}),
        )


@dataclass
class Study:
    key: str
    secret_key: str = ""
    id_mapping_method: str = ""

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Study":
        configs = data.get("configs") or {}
        return cls(
            key=data.get("key", ""),
            secret_key=data.get("secretKey", ""),
            id_mapping_method=configs.get("idMappingMethod", ""),
        )
