"""
Unit tests for participant info derivation.

Tests cover:
- flagValue, confidentialData and responseData sources
- Pruning of infos whose definition was removed
- Lookups that miss keep the previous value
- Per-participant caching of study and confidential lookups
- Exclusion condition matching
"""

import json
from datetime import datetime

import pytest

from recruitment_sync.confidential import profile_id_to_participant_id
from recruitment_sync.context import SyncRunContext
from recruitment_sync.errors import PersistenceError
from recruitment_sync.models import (
    ExclusionCondition,
    MappingEntry,
    ParticipantDataConfig,
    ParticipantInclusion,
    ParticipantInfoDefinition,
    RecruitmentList,
    ResponseItem,
    Study,
    StudyParticipant,
    SurveyItemResponse,
    SurveyResponse,
    to_unix,
)
from recruitment_sync.participant_infos import (
    check_exclusion_conditions,
    derive_participant_info,
    extract_slot_value,
    last_submission_later_than,
    survey_key_from_source_key,
)
from recruitment_sync.response_parser import SurveyVersion

from recruitment_sync.tests.fakes import FailingParticipantDB, FakeStudySystem, InMemoryRecruitmentListDB

GLOBAL_SECRET = "global-secret"

SURVEY1 = {
    "versionId": "v1",
    "published": 1,
    "questions": [
        {"id": "survey1.q1", "questionType": "single_choice", "responses": [
            {"id": "scg", "options": [{"id": "1"}, {"id": "2"}]},
        ]},
    ],
}


def _survey1_response(response_id: str, option: str, arrived_at: int) -> SurveyResponse:
    return SurveyResponse(
        id=response_id,
        key="survey1",
        participant_id="p1",
        version_id="v1",
        submitted_at=arrived_at,
        arrived_at=arrived_at,
        responses=[SurveyItemResponse(
            "survey1.q1",
            ResponseItem(key="rg", items=[ResponseItem(key="scg", items=[ResponseItem(key=option)])]),
        )],
    )


def _list_with(*definitions, exclusions=None) -> RecruitmentList:
    return RecruitmentList(
        id="rl1",
        name="Cohort",
        participant_inclusion=ParticipantInclusion(study_key="study1"),
        participant_data=ParticipantDataConfig(participant_infos=list(definitions)),
        exclusion_conditions=exclusions or [],
    )


@pytest.fixture
def db() -> InMemoryRecruitmentListDB:
    store = InMemoryRecruitmentListDB()
    store.create_participant("p1", "rl1", "auto")
    return store


@pytest.fixture
def study_system() -> FakeStudySystem:
    system = FakeStudySystem()
    system.studies["study1"] = Study(key="study1", secret_key="study-secret", id_mapping_method="sha256")
    system.survey_versions["survey1"] = [SurveyVersion.from_dict(SURVEY1)]
    return system


@pytest.fixture
def study_participant() -> StudyParticipant:
    return StudyParticipant(
        participant_id="p1",
        study_status="active",
        flags={"gender": "f", "joined": "1700000000"},
        last_submissions={"survey1": 5000},
    )


def _derive(db, study_system, recruitment_list, study_participant, last_data_sync=None):
    participant = db._find("p1", "rl1")
    return derive_participant_info(
        db, study_system, recruitment_list, participant, study_participant,
        last_data_sync, GLOBAL_SECRET, "inst", SyncRunContext(),
    )


class TestFlagSource:
    """flagValue definitions."""

    def test_flag_value_with_mapping(self, db, study_system, study_participant):
        rl = _list_with(ParticipantInfoDefinition(
            label="Gender", source_type="flagValue", source_key="gender",
            mapping_type="key2value", mapping=[MappingEntry("f", "female")],
        ))
        infos = _derive(db, study_system, rl, study_participant)
        assert infos == {"Gender": "female"}
        assert db._find("p1", "rl1").infos == {"Gender": "female"}

    def test_missing_flag_stores_empty_string(self, db, study_system, study_participant):
        rl = _list_with(ParticipantInfoDefinition(label="Region", source_type="flagValue", source_key="region"))
        assert _derive(db, study_system, rl, study_participant) == {"Region": ""}

    def test_stale_keys_are_pruned(self, db, study_system, study_participant):
        db._find("p1", "rl1").infos = {"Old": "x", "Gender": "m"}
        rl = _list_with(ParticipantInfoDefinition(label="Gender", source_type="flagValue", source_key="gender"))
        assert _derive(db, study_system, rl, study_participant) == {"Gender": "f"}

    def test_incomplete_definitions_are_skipped(self, db, study_system, study_participant):
        rl = _list_with(
            ParticipantInfoDefinition(label="NoKey", source_type="flagValue", source_key=""),
            ParticipantInfoDefinition(label="Weird", source_type="somethingElse", source_key="gender"),
        )
        assert _derive(db, study_system, rl, study_participant) == {}


class TestResponseSource:
    """responseData definitions."""

    def test_key2value_on_flattened_response(self, db, study_system, study_participant):
        study_system.responses = [_survey1_response("r1", "1", 4000)]
        rl = _list_with(ParticipantInfoDefinition(
            label="Answer", source_type="responseData", source_key="survey1.q1",
            mapping_type="key2value", mapping=[MappingEntry("1", "yes")],
        ))
        assert _derive(db, study_system, rl, study_participant) == {"Answer": "yes"}

    def test_latest_response_wins(self, db, study_system, study_participant):
        study_system.responses = [
            _survey1_response("r1", "1", 4000),
            _survey1_response("r2", "2", 4500),
        ]
        rl = _list_with(ParticipantInfoDefinition(label="Answer", source_type="responseData", source_key="survey1.q1"))
        assert _derive(db, study_system, rl, study_participant) == {"Answer": "2"}

    def test_no_new_submission_keeps_previous_value(self, db, study_system, study_participant):
        db._find("p1", "rl1").infos = {"Answer": "old"}
        study_system.responses = [_survey1_response("r1", "1", 4000)]
        rl = _list_with(ParticipantInfoDefinition(label="Answer", source_type="responseData", source_key="survey1.q1"))

        last_sync = datetime(2030, 1, 1)
        assert _derive(db, study_system, rl, study_participant, last_data_sync=last_sync) == {"Answer": "old"}
        assert study_system.count("get_responses") == 0

    def test_latest_response_fetched_once_per_survey(self, db, study_system, study_participant):
        study_system.responses = [_survey1_response("r1", "1", 4000)]
        rl = _list_with(
            ParticipantInfoDefinition(label="A", source_type="responseData", source_key="survey1.q1"),
            ParticipantInfoDefinition(label="B", source_type="responseData", source_key="survey1.q1",
                                      mapping_type="key2value", mapping=[MappingEntry("1", "one")]),
        )
        assert _derive(db, study_system, rl, study_participant) == {"A": "1", "B": "one"}
        assert study_system.count("get_responses") == 1

    def test_missing_column_keeps_previous_value(self, db, study_system, study_participant):
        db._find("p1", "rl1").infos = {"Other": "kept"}
        study_system.responses = [_survey1_response("r1", "1", 4000)]
        rl = _list_with(ParticipantInfoDefinition(label="Other", source_type="responseData", source_key="survey1.q9"))
        assert _derive(db, study_system, rl, study_participant) == {"Other": "kept"}


class TestConfidentialSource:
    """confidentialData definitions."""

    @pytest.fixture
    def confidential_id(self) -> str:
        return profile_id_to_participant_id("p1", GLOBAL_SECRET, "study-secret", "sha256")

    def _confidential_response(self, arrived_at: int, value: str) -> SurveyResponse:
        return SurveyResponse(
            id=f"c{arrived_at}",
            key="contact",
            participant_id="hidden",
            arrived_at=arrived_at,
            responses=[SurveyItemResponse(
                "contact.email",
                ResponseItem(key="rg", items=[ResponseItem(key="input", value=value)]),
            )],
        )

    def test_latest_confidential_value(self, db, study_system, study_participant, confidential_id):
        study_system.confidential_responses[(confidential_id, "contact.email")] = [
            self._confidential_response(100, "old@example.com"),
            self._confidential_response(200, "new@example.com"),
        ]
        rl = _list_with(ParticipantInfoDefinition(
            label="Email", source_type="confidentialData", source_key="contact.email-rg.input",
        ))
        assert _derive(db, study_system, rl, study_participant) == {"Email": "new@example.com"}

    def test_study_loaded_once_per_participant(self, db, study_system, study_participant, confidential_id):
        study_system.confidential_responses[(confidential_id, "contact.email")] = [
            self._confidential_response(100, "a@example.com"),
        ]
        rl = _list_with(
            ParticipantInfoDefinition(label="Email", source_type="confidentialData", source_key="contact.email-rg.input"),
            ParticipantInfoDefinition(label="Email2", source_type="confidentialData", source_key="contact.email-rg.input"),
        )
        infos = _derive(db, study_system, rl, study_participant)
        assert infos == {"Email": "a@example.com", "Email2": "a@example.com"}
        assert study_system.count("get_study") == 1
        assert study_system.count("find_confidential_responses") == 1

    def test_study_not_loaded_without_confidential_definitions(self, db, study_system, study_participant):
        rl = _list_with(ParticipantInfoDefinition(label="Gender", source_type="flagValue", source_key="gender"))
        _derive(db, study_system, rl, study_participant)
        assert study_system.count("get_study") == 0

    def test_invalid_source_key_is_skipped(self, db, study_system, study_participant):
        rl = _list_with(ParticipantInfoDefinition(label="Email", source_type="confidentialData", source_key="nodash"))
        assert _derive(db, study_system, rl, study_participant) == {}

    def test_missing_study_keeps_previous_value(self, db, study_system, study_participant):
        del study_system.studies["study1"]
        db._find("p1", "rl1").infos = {"Email": "kept@example.com"}
        rl = _list_with(ParticipantInfoDefinition(
            label="Email", source_type="confidentialData", source_key="contact.email-rg.input",
        ))
        assert _derive(db, study_system, rl, study_participant) == {"Email": "kept@example.com"}

    def test_children_joined_or_json(self):
        root = ResponseItem(items=[ResponseItem(key="mcg", items=[ResponseItem(key="a"), ResponseItem(key="b")])])
        plain = ParticipantInfoDefinition(label="x", source_type="confidentialData", source_key="i-mcg")
        as_json = ParticipantInfoDefinition(label="x", source_type="confidentialData", source_key="i-mcg",
                                            mapping_type="json")
        assert extract_slot_value(root, "mcg", plain) == "a,b"
        assert json.loads(extract_slot_value(root, "mcg", as_json)) == [{"key": "a"}, {"key": "b"}]

    def test_nested_slot_path(self):
        root = ResponseItem(items=[ResponseItem(key="rg", items=[ResponseItem(key="input", value="v")])])
        definition = ParticipantInfoDefinition(label="x", source_type="confidentialData", source_key="i-rg.input")
        assert extract_slot_value(root, "rg.input", definition) == "v"
        assert extract_slot_value(root, "rg.missing", definition) is None


class TestPersistence:

    def test_store_failure_propagates(self, study_system, study_participant):
        db = FailingParticipantDB(failing={"p1"}, error=PersistenceError)
        db.create_participant("p1", "rl1", "auto")
        rl = _list_with(ParticipantInfoDefinition(label="Gender", source_type="flagValue", source_key="gender"))
        with pytest.raises(PersistenceError):
            _derive(db, study_system, rl, study_participant)


class TestHelpers:

    def test_exclusion_exact_match(self):
        rl = _list_with(exclusions=[ExclusionCondition("Status", "withdrawn")])
        assert check_exclusion_conditions(rl, {"Status": "withdrawn"}) is True
        assert check_exclusion_conditions(rl, {"Status": "Withdrawn"}) is False
        assert check_exclusion_conditions(rl, {}) is False

    def test_last_submission_later_than(self):
        last_sync = datetime(2024, 1, 1)
        newer = {"s": to_unix(last_sync) + 1}
        older = {"s": to_unix(last_sync) - 1}
        assert last_submission_later_than(newer, "s", last_sync) is True
        assert last_submission_later_than(older, "s", last_sync) is False
        assert last_submission_later_than({}, "s", last_sync) is False
        assert last_submission_later_than({}, "s", None) is True

    def test_survey_key_from_source_key(self):
        assert survey_key_from_source_key("survey1.q1.sub") == "survey1"
        assert survey_key_from_source_key("survey1") == "survey1"
