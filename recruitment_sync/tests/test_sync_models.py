"""
Unit tests for recruitment list data models.
"""

from datetime import datetime

from recruitment_sync.models import (
    RecruitmentList,
    ResponseItem,
    Study,
    StudyParticipant,
    SurveyResponse,
    format_datetime,
    parse_datetime,
    to_unix,
)


class TestRecruitmentListSerialization:
    """Tests for RecruitmentList.from_dict / to_dict."""

    def test_from_dict(self):
        data = {
            "name": "Cohort",
            "participantInclusion": {
                "studyKey": "study1",
                "type": "auto",
                "autoConfig": {"criteria": "{}", "startDate": "2024-01-01T00:00:00Z"},
                "notificationEmails": ["a@example.com"],
            },
            "exclusionConditions": [{"key": "Group", "value": "control"}],
            "participantData": {
                "participantInfos": [
                    {"label": "Gender", "sourceType": "flagValue", "sourceKey": "gender",
                     "mappingType": "key2value", "mapping": [{"key": "f", "value": "female"}]},
                ],
                "researchData": [{"surveyKey": "weekly", "excludedColumns": ["weekly.Q4"]}],
            },
            "customization": {"recruitmentStatusValues": ["contacted", "enrolled"]},
            "tags": ["pilot"],
        }
        rl = RecruitmentList.from_dict(data)

        assert rl.study_key == "study1"
        assert rl.participant_inclusion.auto_config.start_date == datetime(2024, 1, 1)
        assert rl.participant_inclusion.auto_config.end_date is None
        assert rl.participant_data.participant_infos[0].mapping[0].value == "female"
        assert rl.participant_data.research_data[0].excluded_columns == ["weekly.Q4"]
        assert rl.recruitment_status_values == ["contacted", "enrolled"]

    def test_defaults_to_manual_inclusion(self):
        rl = RecruitmentList.from_dict({"name": "Empty"})
        assert rl.participant_inclusion.type == "manual"
        assert rl.participant_inclusion.auto_config is None
        assert rl.participant_data.participant_infos == []

    def test_to_dict_round_trip(self):
        rl = RecruitmentList.from_dict({
            "name": "Cohort",
            "participantInclusion": {"studyKey": "s", "type": "manual"},
            "customization": {"recruitmentStatusValues": ["x"]},
        })
        assert RecruitmentList.from_dict(rl.to_dict()) == rl


class TestStudyTypes:

    def test_study_participant_from_dict(self):
        p = StudyParticipant.from_dict({
            "participantId": "p1",
            "studyStatus": "active",
            "enteredAt": "1700000000",
            "flags": {"a": "b"},
            "lastSubmissions": {"weekly": "1700000100"},
        })
        assert p.entered_at == 1700000000
        assert p.last_submissions == {"weekly": 1700000100}

    def test_survey_response_from_dict(self):
        r = SurveyResponse.from_dict({
            "id": "r1",
            "key": "weekly",
            "participantId": "p1",
            "arrivedAt": 5,
            "responses": [{"key": "weekly.Q1", "response": {"key": "rg", "items": [{"key": "1"}]}}],
        })
        assert r.responses[0].response.items[0].key == "1"
        assert r.submitted_at == 0

    def test_study_mapping_method_from_configs(self):
        study = Study.from_dict({"key": "s", "secretKey": "x", "configs": {"idMappingMethod": "same"}})
        assert study.id_mapping_method == "same"


class TestDatetimeHelpers:

    def test_parse_iso_with_offset(self):
        assert parse_datetime("2024-01-01T02:00:00+02:00") == datetime(2024, 1, 1)

    def test_parse_epoch(self):
        assert parse_datetime(0) == datetime(1970, 1, 1)

    def test_parse_empty(self):
        assert parse_datetime("") is None
        assert parse_datetime(None) is None

    def test_format_and_unix(self):
        value = datetime(2024, 1, 1, 12, 30)
        assert format_datetime(value) == "2024-01-01T12:30:00Z"
        assert parse_datetime(format_datetime(value)) == value
        assert to_unix(datetime(1970, 1, 2)) == 86400


class TestResponseItem:

    def test_null_value_becomes_empty_string(self):
        item = ResponseItem.from_dict({"key": "num", "value": None, "dtype": None, "items": None})
        assert item.value == ""
        assert item.dtype == ""
        assert item.items == []

    def test_numeric_value_is_kept(self):
        assert ResponseItem.from_dict({"key": "num", "value": 0}).value == 0
