"""
Unit tests for survey response flattening.
"""

import json

import pytest

from recruitment_sync.errors import ExternalLookupError
from recruitment_sync.models import (
    RecruitmentList,
    ParticipantInclusion,
    ResearchDataDefinition,
    ResponseItem,
    SurveyItemResponse,
    SurveyResponse,
)
from recruitment_sync.research_data import init_response_parser, responses_to_research_data
from recruitment_sync.response_parser import ResponseParser, SurveyVersion

from recruitment_sync.tests.fakes import FakeStudySystem


SURVEY_VERSION = {
    "versionId": "v1",
    "published": 1000,
    "questions": [
        {
            "id": "weekly.Q1",
            "questionType": "single_choice",
            "responses": [
                {"id": "scg", "responseType": "singleChoiceGroup", "options": [
                    {"id": "1", "optionType": "option"},
                    {"id": "2", "optionType": "option"},
                    {"id": "other", "optionType": "input"},
                ]},
            ],
        },
        {
            "id": "weekly.Q2",
            "questionType": "multiple_choice",
            "responses": [
                {"id": "mcg", "options": [
                    {"id": "a"},
                    {"id": "b"},
                    {"id": "c", "optionType": "input"},
                ]},
            ],
        },
        {
            "id": "weekly.Q3",
            "questionType": "number_input",
            "responses": [{"id": "num"}],
        },
        {
            "id": "weekly.Q4",
            "questionType": "text_input",
            "responses": [{"id": "first"}, {"id": "last"}],
        },
        {
            "id": "weekly.Q5",
            "questionType": "matrix",
            "responses": [{"id": "mat"}],
        },
    ],
}


def _item(key, value="", items=None) -> ResponseItem:
    return ResponseItem(key=key, value=value, items=items or [])


def _response(response_id="r1", version_id="v1", submitted_at=2000, key="weekly") -> SurveyResponse:
    return SurveyResponse(
        id=response_id,
        key=key,
        participant_id="p1",
        version_id=version_id,
        submitted_at=submitted_at,
        arrived_at=submitted_at + 1,
        opened_at=submitted_at - 60,
        responses=[
            SurveyItemResponse("weekly.Q1", _item("rg", items=[_item("scg", items=[_item("other", "free text")])])),
            SurveyItemResponse("weekly.Q2", _item("rg", items=[_item("mcg", items=[_item("a"), _item("c", "extra")])])),
            SurveyItemResponse("weekly.Q3", _item("rg", items=[_item("num", "42")])),
            SurveyItemResponse("weekly.Q4", _item("rg", items=[_item("first", "Ada"), _item("last", "Lovelace")])),
            SurveyItemResponse("weekly.Q5", _item("rg", items=[_item("mat", items=[_item("row1", "x")])])),
        ],
    )


@pytest.fixture
def parser() -> ResponseParser:
    return ResponseParser("weekly", [SurveyVersion.from_dict(SURVEY_VERSION)])


class TestResponseParser:
    """Tests for ResponseParser column layout."""

    def test_meta_columns(self, parser):
        flat = parser.response_to_flat_obj(parser.parse_response(_response()))
        assert flat["ID"] == "r1"
        assert flat["participantID"] == "p1"
        assert flat["version"] == "v1"
        assert flat["opened"] == 1940
        assert flat["submitted"] == 2000
        assert flat["arrived"] == 2001

    def test_single_choice_with_open_field(self, parser):
        flat = parser.response_to_flat_obj(parser.parse_response(_response()))
        assert flat["weekly.Q1"] == "other"
        assert flat["weekly.Q1-other-open"] == "free text"

    def test_multiple_choice_columns(self, parser):
        flat = parser.response_to_flat_obj(parser.parse_response(_response()))
        assert flat["weekly.Q2-a"] is True
        assert flat["weekly.Q2-b"] is False
        assert flat["weekly.Q2-c"] is True
        assert flat["weekly.Q2-c-open"] == "extra"

    def test_number_input_is_numeric(self, parser):
        flat = parser.response_to_flat_obj(parser.parse_response(_response()))
        assert flat["weekly.Q3"] == 42

    def test_multi_slot_question_uses_slot_key(self, parser):
        flat = parser.response_to_flat_obj(parser.parse_response(_response()))
        assert flat["weekly.Q4-first"] == "Ada"
        assert flat["weekly.Q4-last"] == "Lovelace"

    def test_null_number_is_empty(self, parser):
        response = _response()
        response.responses[2] = SurveyItemResponse("weekly.Q3", _item("rg", items=[_item("num", None)]))
        flat = parser.response_to_flat_obj(parser.parse_response(response))
        assert flat["weekly.Q3"] == ""

    def test_unknown_question_type_is_json(self, parser):
        flat = parser.response_to_flat_obj(parser.parse_response(_response()))
        assert json.loads(flat["weekly.Q5"]) == {"key": "mat", "items": [{"key": "row1", "value": "x"}]}

    def test_missing_answer_yields_empty_values(self, parser):
        raw = _response()
        raw.responses = []
        flat = parser.response_to_flat_obj(parser.parse_response(raw))
        assert flat["weekly.Q1"] == ""
        assert flat["weekly.Q2-a"] is False
        assert flat["weekly.Q3"] == ""

    def test_excluded_columns(self):
        parser = ResponseParser(
            "weekly",
            [SurveyVersion.from_dict(SURVEY_VERSION)],
            excluded_columns=["weekly.Q4", "opened"],
        )
        flat = parser.response_to_flat_obj(parser.parse_response(_response()))
        assert "opened" not in flat
        assert not any(k.startswith("weekly.Q4") for k in flat)

    def test_version_picked_by_submission_time(self, parser):
        parsed = parser.parse_response(_response(version_id=""))
        assert parsed.version == "v1"

    def test_unknown_version_raises(self, parser):
        with pytest.raises(ValueError):
            parser.parse_response(_response(version_id="v9"))

    def test_other_survey_raises(self, parser):
        with pytest.raises(ValueError):
            parser.parse_response(_response(key="intake"))

    def test_no_versions_raises(self):
        with pytest.raises(ValueError):
            ResponseParser("weekly", [])


class TestResponsesToResearchData:
    """Tests for parser caching and per-response failures."""

    @pytest.fixture
    def study_system(self) -> FakeStudySystem:
        system = FakeStudySystem()
        system.survey_versions["weekly"] = [SurveyVersion.from_dict(SURVEY_VERSION)]
        return system

    @pytest.fixture
    def recruitment_list(self) -> RecruitmentList:
        return RecruitmentList(id="rl1", name="List", participant_inclusion=ParticipantInclusion(study_key="s1"))

    def test_failed_response_leaves_empty_slot(self, study_system, recruitment_list):
        responses = [_response("r1"), _response("r2", version_id="v9"), _response("r3")]
        result = responses_to_research_data(
            responses, study_system, "inst", recruitment_list,
            ResearchDataDefinition(survey_key="weekly"), "p1", {},
        )
        assert len(result) == 3
        assert result[1] is None
        assert [r.response_id for r in result if r is not None] == ["r1", "r3"]
        assert result[0].recruitment_list_id == "rl1"
        assert result[0].arrived_at == 2001

    def test_parser_is_built_once_per_cache(self, study_system, recruitment_list):
        cache = {}
        definition = ResearchDataDefinition(survey_key="weekly")
        responses_to_research_data([_response()], study_system, "inst", recruitment_list, definition, "p1", cache)
        responses_to_research_data([_response()], study_system, "inst", recruitment_list, definition, "p1", cache)
        assert study_system.count("load_survey_versions") == 1
        assert "weekly" in cache

    def test_missing_survey_raises(self, study_system, recruitment_list):
        with pytest.raises(ExternalLookupError):
            init_response_parser(study_system, "inst", "s1", "unknown")

    def test_empty_history_raises_lookup_error(self, study_system):
        study_system.survey_versions["empty"] = []
        with pytest.raises(ExternalLookupError):
            init_response_parser(study_system, "inst", "s1", "empty")
