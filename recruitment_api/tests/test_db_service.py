"""
Tests for the SQLAlchemy recruitment list datastore.

Tests cover:
- List documents round-tripping through the config column
- Memberships, soft deletion and paging
- Research data deduplication and summaries
- Sync info state transitions
- Permission queries
"""

from datetime import timedelta

import pytest

from recruitment_sync.errors import NotFoundError
from recruitment_sync.models import (
    SYNC_STATUS_IDLE,
    SYNC_STATUS_RUNNING,
    ParticipantInclusion,
    RecruitmentList,
    ResponseData,
    StudyAction,
    utcnow,
)
from recruitment_sync.pagination import ParticipantFilter, ParticipantSort

from recruitment_api.db import ParticipantRecord


def _new_list(store, name="Cohort", study_key="study1", inclusion_type="auto") -> RecruitmentList:
    return store.create_recruitment_list(
        RecruitmentList(
            name=name,
            description="test cohort",
            participant_inclusion=ParticipantInclusion(study_key=study_key, type=inclusion_type),
            recruitment_status_values=["contacted", "enrolled"],
            tags=["pilot"],
        ),
        created_by="user-1",
    )


def _data(response_id: str, participant_id: str, list_id: str, arrived_at: int, survey_key="weekly") -> ResponseData:
    return ResponseData(
        response_id=response_id,
        participant_id=participant_id,
        recruitment_list_id=list_id,
        survey_key=survey_key,
        arrived_at=arrived_at,
        response={"weekly.Q1": "yes"},
    )


class TestRecruitmentLists:
    """Tests for list storage."""

    def test_create_assigns_id_and_creator(self, store):
        """Created lists get an id and keep the creator."""
        created = _new_list(store)

        assert created.id
        assert created.created_by == "user-1"
        assert created.created_at is not None

        loaded = store.get_recruitment_list_by_id(created.id)
        assert loaded.name == "Cohort"
        assert loaded.study_key == "study1"
        assert loaded.recruitment_status_values == ["contacted", "enrolled"]
        assert loaded.tags == ["pilot"]

    def test_unknown_list_raises_not_found(self, store):
        with pytest.raises(NotFoundError):
            store.get_recruitment_list_by_id("missing")

    def test_save_replaces_document(self, store):
        created = _new_list(store)
        created.name = "Renamed"
        created.participant_inclusion.type = "manual"

        store.save_recruitment_list(created)

        loaded = store.get_recruitment_list_by_id(created.id)
        assert loaded.name == "Renamed"
        assert loaded.participant_inclusion.type == "manual"

    def test_tags_and_study_actions_update(self, store):
        created = _new_list(store)

        store.update_recruitment_list_tags(created.id, ["a", "b"])
        store.update_recruitment_list_study_actions(created.id, [StudyAction(id="act1", label="Send reminder")])

        loaded = store.get_recruitment_list_by_id(created.id)
        assert loaded.tags == ["a", "b"]
        assert [a.id for a in loaded.study_actions] == ["act1"]

    def test_iterate_filters_by_inclusion_type(self, store):
        auto = _new_list(store, name="Auto")
        _new_list(store, name="Manual", inclusion_type="manual")

        seen = []
        store.iterate_recruitment_lists(seen.append, inclusion_type="auto")

        assert [rl.id for rl in seen] == [auto.id]

    def test_delete_list(self, store):
        created = _new_list(store)
        store.delete_recruitment_list_by_id(created.id)

        assert store.get_recruitment_lists_infos() == []


class TestParticipants:
    """Tests for memberships."""

    def test_create_and_exists(self, store):
        rl = _new_list(store)
        participant = store.create_participant("p1", rl.id, "auto")

        assert participant.id
        assert participant.included_by == "auto"
        assert store.participant_exists("p1", rl.id)
        assert not store.participant_exists("p2", rl.id)
        assert store.count_participants_by_list(rl.id) == 1

    def test_update_infos_of_unknown_member_raises(self, store):
        rl = _new_list(store)
        with pytest.raises(NotFoundError):
            store.update_participant_infos("ghost", rl.id, {"Group": "a"})

    def test_update_status_and_infos(self, store):
        rl = _new_list(store)
        participant = store.create_participant("p1", rl.id, "auto")

        store.update_participant_status(participant.id, rl.id, "contacted")
        store.update_participant_infos("p1", rl.id, {"Group": "a"})

        loaded = store.get_participant_by_id(participant.id, rl.id)
        assert loaded.recruitment_status == "contacted"
        assert loaded.infos == {"Group": "a"}

    def test_deletion_clears_infos_data_and_adds_note(self, store):
        """Soft deletion keeps the record but drops infos and stored responses."""
        rl = _new_list(store)
        participant = store.create_participant("p1", rl.id, "auto")
        store.update_participant_infos("p1", rl.id, {"Group": "a"})
        store.save_research_data(rl.id, "p1", [_data("r1", "p1", rl.id, 100)])

        store.on_participant_deleted(participant, rl.id, "deleted in study DB")

        loaded = store.get_participant_by_id(participant.id, rl.id)
        assert loaded.is_deleted
        assert loaded.infos == {}
        assert store.get_available_response_data_infos(rl.id) == []

        notes = store.get_participant_notes(participant.id, rl.id)
        assert [n.note for n in notes] == ["Participant deleted: deleted in study DB"]
        assert notes[0].created_by == "system"

    def test_iterate_in_inclusion_order(self, store, db_session):
        rl = _new_list(store)
        now = utcnow()
        for pid in ["late", "early", "middle"]:
            store.create_participant(pid, rl.id, "auto")
        offsets = {"early": 0, "middle": 1, "late": 2}
        for record in db_session.query(ParticipantRecord).all():
            record.included_at = now + timedelta(minutes=offsets[record.participant_id])
        db_session.commit()

        seen = []
        store.iterate_participants_by_list(rl.id, lambda p: seen.append(p.participant_id))

        assert seen == ["early", "middle", "late"]

    def test_paging_filter_and_sort(self, store):
        rl = _new_list(store)
        for i in range(5):
            participant = store.create_participant(f"p{i}", rl.id, "auto")
            if i % 2 == 0:
                store.update_participant_status(participant.id, rl.id, "contacted")

        page, pagination = store.get_participants_by_list(
            rl.id, 1, 2, ParticipantFilter(recruitment_status="contacted"),
            ParticipantSort(field="participantId", order="desc"),
        )

        assert [p.participant_id for p in page] == ["p4", "p2"]
        assert pagination.total_count == 3
        assert pagination.total_pages == 2

        second, _ = store.get_participants_by_list(
            rl.id, 2, 2, ParticipantFilter(recruitment_status="contacted"),
            ParticipantSort(field="participantId", order="desc"),
        )
        assert [p.participant_id for p in second] == ["p0"]

    def test_delete_all_participants(self, store):
        rl = _new_list(store)
        store.create_participant("p1", rl.id, "auto")
        store.delete_all_participants_by_list(rl.id)

        assert store.count_participants_by_list(rl.id) == 0


class TestNotes:
    """Tests for participant notes."""

    def test_create_list_and_delete(self, store):
        rl = _new_list(store)
        participant = store.create_participant("p1", rl.id, "user-1")

        note = store.create_participant_note(participant.id, rl.id, "called", "user-1", "user@example.org")

        assert store.get_participant_note_by_id(note.id).note == "called"
        assert [n.id for n in store.get_participant_notes(participant.id, rl.id)] == [note.id]

        store.delete_participant_note_by_id(note.id)
        with pytest.raises(NotFoundError):
            store.get_participant_note_by_id(note.id)


class TestResearchData:
    """Tests for stored responses."""

    def test_existing_responses_are_skipped(self, store):
        """Saving the same response twice stores it once."""
        rl = _new_list(store)

        assert store.save_research_data(rl.id, "p1", [_data("r1", "p1", rl.id, 100)]) == 1
        assert store.save_research_data(
            rl.id, "p1", [_data("r1", "p1", rl.id, 100), _data("r2", "p1", rl.id, 200)],
        ) == 1

        stored = []
        store.iterate_response_data(rl.id, stored.append)
        assert sorted(r.response_id for r in stored) == ["r1", "r2"]

    def test_empty_batch(self, store):
        rl = _new_list(store)
        assert store.save_research_data(rl.id, "p1", []) == 0

    def test_available_infos_per_survey(self, store):
        rl = _new_list(store)
        store.save_research_data(rl.id, "p1", [
            _data("r1", "p1", rl.id, 100),
            _data("r2", "p1", rl.id, 300),
            _data("r3", "p1", rl.id, 200, survey_key="intake"),
        ])
        store.save_research_data(rl.id, "p2", [_data("r4", "p2", rl.id, 400)])

        infos = {i.survey_key: i for i in store.get_available_response_data_infos(rl.id)}
        assert infos["weekly"].count == 3
        assert infos["weekly"].first_arrived_at == 100
        assert infos["weekly"].last_arrived_at == 400
        assert infos["intake"].count == 1

        only_p1 = store.get_available_response_data_infos(rl.id, participant_id="p1")
        assert {i.survey_key: i.count for i in only_p1} == {"intake": 1, "weekly": 2}

    def test_iterate_with_filters(self, store):
        rl = _new_list(store)
        store.save_research_data(rl.id, "p1", [
            _data("r1", "p1", rl.id, 100),
            _data("r2", "p1", rl.id, 300),
        ])

        stored = []
        store.iterate_response_data(rl.id, stored.append, survey_key="weekly", arrived_from=200)
        assert [r.response_id for r in stored] == ["r2"]

    def test_delete_by_list(self, store):
        rl = _new_list(store)
        store.save_research_data(rl.id, "p1", [_data("r1", "p1", rl.id, 100)])
        store.delete_research_data_by_list(rl.id)

        assert store.get_available_response_data_infos(rl.id) == []


class TestSyncInfos:
    """Tests for sync state."""

    def test_missing_info_is_none(self, store):
        assert store.get_sync_info("rl-none") is None

    def test_start_and_finish(self, store):
        rl = _new_list(store)

        store.start_participant_sync(rl.id)
        info = store.get_sync_info(rl.id)
        assert info.participant_sync_status == SYNC_STATUS_RUNNING
        started = info.participant_sync_started_at
        assert started is not None

        store.finish_participant_sync(rl.id)
        info = store.get_sync_info(rl.id)
        assert info.participant_sync_status == SYNC_STATUS_IDLE
        assert info.participant_sync_started_at == started

    def test_reset_skipped_while_running(self, store):
        """A running sync keeps its start time on reset."""
        rl = _new_list(store)
        store.start_data_sync(rl.id)

        store.reset_data_sync_time(rl.id)
        assert store.get_sync_info(rl.id).data_sync_started_at is not None

        store.finish_data_sync(rl.id)
        store.reset_data_sync_time(rl.id)
        assert store.get_sync_info(rl.id).data_sync_started_at is None

    def test_delete_sync_infos(self, store):
        rl = _new_list(store)
        store.start_data_sync(rl.id)
        store.delete_sync_infos_by_list(rl.id)

        assert store.get_sync_info(rl.id) is None


class TestPermissions:
    """Tests for permission queries."""

    def test_specific_permissions_by_resource(self, store):
        store.create_permission("u1", "manage-recruitment-list", "rl1", "admin")
        store.create_permission("u1", "access-recruitment-list", "rl2", "admin")

        assert len(store.get_specific_permissions_by_user_id("u1", ["manage-recruitment-list"], ["rl1"])) == 1
        assert store.get_specific_permissions_by_user_id("u1", ["manage-recruitment-list"], ["rl2"]) == []

    def test_empty_resources_match_any(self, store):
        store.create_permission("u1", "create-recruitment-list", "", "admin")

        assert len(store.get_specific_permissions_by_user_id("u1", ["create-recruitment-list"], [])) == 1

    def test_delete_by_resource(self, store):
        store.create_permission("u1", "manage-recruitment-list", "rl1", "admin")
        store.create_permission("u2", "access-recruitment-list", "rl1", "admin")
        kept = store.create_permission("u2", "access-recruitment-list", "rl2", "admin")

        store.delete_permissions_by_resource_id("rl1")

        assert store.get_permissions_by_resource_id("rl1") == []
        assert store.get_permission_by_id(kept.id).resource_id == "rl2"
