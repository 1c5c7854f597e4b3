"""Unit tests for the journey state machine."""

import pytest

from journey.errors import AuthorizationError, NotFoundError, PersistenceError, StateError, ValidationError
from journey.models import JourneyRecord, Organization, SelectionPhase, UploadedFile
from journey.state import JourneyStateMachine, SessionState, project_view

from tests.conftest import OWNER, FakeExtractor, InMemoryJourneyStore, seed_organization


class TestLifecycle:
    """Test cases for organization and journey lifecycle."""

    def test_no_organization(self, store):
        state = JourneyStateMachine(store, OWNER)
        assert state.state is SessionState.NO_ORGANIZATION
        with pytest.raises(StateError):
            state.view()

    def test_select_organization_without_journeys(self, store):
        seed_organization(store)
        state = JourneyStateMachine(store, OWNER)
        assert state.select_organization("org-acme") is SessionState.RESEARCHING
        assert state.record is None

    def test_select_organization_activates_newest(self, store):
        seed_organization(store)
        for jid, created in (("journey-old", "2024-01-01T00:00:00Z"), ("journey-new", "2024-06-01T00:00:00Z")):
            store.journeys[jid] = JourneyRecord(id=jid, organization_id="org-acme", created_at=created).to_dict()
        state = JourneyStateMachine(store, OWNER)
        assert state.select_organization("org-acme") is SessionState.ACTIVE
        assert state.active_journey_id == "journey-new"

    def test_select_organization_prefers_stored_current(self, store):
        seed_organization(store, current_journey_id="journey-old")
        for jid, created in (("journey-old", "2024-01-01T00:00:00Z"), ("journey-new", "2024-06-01T00:00:00Z")):
            store.journeys[jid] = JourneyRecord(id=jid, organization_id="org-acme", created_at=created).to_dict()
        state = JourneyStateMachine(store, OWNER)
        state.select_organization("org-acme")
        assert state.active_journey_id == "journey-old"

    def test_create_journey_seeds_from_organization(self, machine, store):
        record = machine.record
        assert record.research_complete is False
        assert record.current_step_id == "research"
        for phase in SelectionPhase:
            assert record.selection(phase) == (["Finance"], ["invoice"])
        assert store.organizations["org-acme"]["current_journey_id"] == record.id
        assert record.id in store.journeys

    def test_create_organization_owned_by_identity(self, store):
        state = JourneyStateMachine(store, OWNER)
        organization = state.create_organization("Globex", ["Sales"])
        assert organization.owner_id == OWNER
        assert state.state is SessionState.RESEARCHING

    def test_create_organization_requires_name(self, store):
        state = JourneyStateMachine(store, OWNER)
        with pytest.raises(ValidationError):
            state.create_organization("   ")

    def test_switch_unknown_journey(self, machine):
        with pytest.raises(NotFoundError):
            machine.switch_journey("journey-missing")


class TestProjection:
    """Test cases for the view projection and journey isolation."""

    def test_fallback_chain(self):
        organization = Organization(id="o", name="O", owner_id=OWNER, selected_domains=["Org"], selected_use_cases=["u-org"])
        record = JourneyRecord(id="j", organization_id="o", targeting_selected_domains=["Target"])
        view = project_view(record, organization)
        assert view.selection(SelectionPhase.TARGETING).domains == ("Target",)
        assert view.selection(SelectionPhase.TARGETING).use_cases == ("u-org",)
        assert view.selection(SelectionPhase.HIGH_LEVEL).domains == ("Target",)
        assert view.selection(SelectionPhase.DEEP_DIVE).domains == ("Target",)

        record = record.with_fields(high_level_selected_domains=["High"])
        view = project_view(record, organization)
        assert view.selection(SelectionPhase.DEEP_DIVE).domains == ("High",)

    def test_empty_recorded_selection_is_a_value(self):
        organization = Organization(id="o", name="O", owner_id=OWNER, selected_domains=["Org"])
        record = JourneyRecord(id="j", organization_id="o", targeting_selected_domains=[])
        assert project_view(record, organization).selection(SelectionPhase.TARGETING).domains == ()

    def test_switch_does_not_leak_previous_journey(self, machine):
        first = machine.active_journey_id
        machine.toggle_domain(SelectionPhase.TARGETING, "Sales")
        machine.add_kickoff_note("Invoice approvals are the biggest pain point.")
        machine.save_output("https://slides.example.com/a")

        second = machine.create_journey().id
        view = machine.switch_journey(second)
        assert view.selection(SelectionPhase.TARGETING).domains == ("Finance",)
        assert view.kickoff_notes == ()
        assert view.kickoff_presentation_url == ""

        view = machine.switch_journey(first)
        assert "Sales" in view.selection(SelectionPhase.TARGETING).domains
        assert view.kickoff_presentation_url == "https://slides.example.com/a"


class TestSelections:
    """Test cases for domain and use-case toggles."""

    def test_toggle_domain_adds_and_removes(self, machine):
        selection = machine.toggle_domain("targeting", "Sales")
        assert selection.domains == ("Finance", "Sales")
        selection = machine.toggle_domain("targeting", "Sales")
        assert selection.domains == ("Finance",)

    def test_removing_domain_drops_orphaned_use_cases(self, machine):
        machine.toggle_domain("high_level", "Customer Service")
        machine.toggle_use_case("high_level", "triage")
        machine.toggle_use_case("high_level", "close")
        selection = machine.toggle_domain("high_level", "Finance")
        assert selection.use_cases == ("triage",)
        assert machine.view().selection(SelectionPhase.HIGH_LEVEL).use_cases == ("triage",)
        assert machine.view().selection(SelectionPhase.TARGETING).use_cases == ("invoice",)

    def test_removing_last_domain_clears_use_cases(self, machine):
        selection = machine.toggle_domain("targeting", "Finance")
        assert selection == selection.__class__((), ())

    def test_toggle_use_case_has_no_domain_effect(self, machine):
        selection = machine.toggle_use_case("targeting", "triage")
        assert selection.use_cases == ("invoice", "triage")
        assert selection.domains == ("Finance",)

    def test_unknown_phase(self, machine):
        with pytest.raises(ValidationError):
            machine.toggle_domain("kickoff", "Finance")

    def test_save_output_trims_and_clears(self, machine):
        assert machine.save_output("  https://deck.example.com  ") == "https://deck.example.com"
        assert machine.record.kickoff_presentation_url == "https://deck.example.com"
        assert machine.save_output("   ") == ""
        assert machine.record.kickoff_presentation_url == ""


class TestPersistence:
    """Test cases for two-phase writes, rollback and authorization."""

    def test_rollback_on_persistence_failure(self, machine, store):
        before = machine.record
        store.fail_writes = True
        with pytest.raises(PersistenceError):
            machine.toggle_domain("targeting", "Sales")
        assert machine.record == before
        assert machine.view().selection(SelectionPhase.TARGETING).domains == ("Finance",)

    def test_create_journey_rolls_back_when_pointer_write_fails(self, machine, store, monkeypatch):
        before = machine.active_journey_id
        known = [journey.id for journey in machine.journeys()]
        resets = []
        machine.add_reset_listener(resets.append)

        def fail(organization_id, fields):
            raise PersistenceError("disk unavailable", operation="save", target_id=organization_id)

        monkeypatch.setattr(store, "save_organization_fields", fail)
        with pytest.raises(PersistenceError):
            machine.create_journey()

        assert machine.active_journey_id == before
        assert [journey.id for journey in machine.journeys()] == known
        assert machine.organization.current_journey_id == before
        assert resets == []

    def test_only_changed_fields_written(self, machine, store):
        machine.save_output("https://deck.example.com")
        assert store.writes[-1] == ("fields", machine.active_journey_id, ["kickoff_presentation_url"])

    def test_no_write_without_change(self, machine, store):
        count = len(store.writes)
        machine.save_output("")
        assert len(store.writes) == count

    def test_authorization_checked_before_write(self, store):
        seed_organization(store, owner_id="someone-else")
        state = JourneyStateMachine(store, OWNER)
        state.select_organization("org-acme")
        with pytest.raises(AuthorizationError, match="Not authorized"):
            state.create_journey()
        assert store.journeys == {}

    def test_remote_update_overwrites(self, machine, store):
        machine.toggle_domain("targeting", "Sales")
        store.notify(machine.active_journey_id, {"targeting_selected_domains": ["Retail"]})
        assert machine.view().selection(SelectionPhase.TARGETING).domains == ("Retail",)

    def test_remote_update_for_inactive_journey_does_not_touch_view(self, machine, store):
        first = machine.active_journey_id
        machine.create_journey()
        store.notify(first, {"kickoff_presentation_url": "https://remote.example.com"})
        assert machine.record.kickoff_presentation_url == ""


class TestNotesAndMeetings:
    """Test cases for notes, meetings and file ingestion."""

    def test_kickoff_notes_append_in_order(self, machine):
        first = machine.add_kickoff_note("First note")
        second = machine.add_kickoff_note("Second note")
        assert [n.id for n in machine.record.kickoff_notes] == [first.id, second.id]

    def test_empty_note_rejected(self, machine):
        with pytest.raises(ValidationError):
            machine.add_kickoff_note("   ")

    def test_remove_kickoff_note(self, machine):
        note = machine.add_kickoff_note("Temporary")
        machine.remove_kickoff_note(note.id)
        assert machine.record.kickoff_notes == ()
        with pytest.raises(NotFoundError):
            machine.remove_kickoff_note(note.id)

    def test_add_meeting_seeded_from_selection(self, machine):
        machine.toggle_use_case("high_level", "close")
        first = machine.add_meeting("high_level")
        second = machine.add_meeting("high_level")
        third = machine.add_meeting("high_level")
        assert (first.domain, first.function_name) == ("Finance", "Accounts Payable")
        assert second.function_name == "Reporting"
        assert third.function_name == "Accounts Payable"

    def test_add_meeting_without_selection(self, machine):
        machine.toggle_use_case("deep_dive", "invoice")
        meeting = machine.add_meeting("deep_dive")
        assert meeting.domain == "Finance"
        assert meeting.function_name == "New Deep Dive Meeting"

    def test_targeting_has_no_meetings(self, machine):
        with pytest.raises(ValidationError):
            machine.add_meeting("targeting")

    def test_meeting_notes_and_url(self, machine):
        meeting = machine.add_meeting("high_level", "Finance", "Payables")
        note = machine.add_meeting_note("high_level", meeting.id, "Approvals wait for days")
        machine.set_meeting_presentation_url("high_level", meeting.id, " https://deck ")
        stored = machine.record.high_level_meetings[0]
        assert stored.notes[0].id == note.id
        assert stored.presentation_url == "https://deck"

        machine.remove_meeting_note("high_level", meeting.id, note.id)
        assert machine.record.high_level_meetings[0].notes == []
        machine.remove_meeting("high_level", meeting.id)
        assert machine.record.high_level_meetings == ()

    def test_ingest_collects_warnings(self, machine, store):
        files = [
            UploadedFile("a.txt", b"Invoice backlog grows every month"),
            UploadedFile("broken.bad", b"???"),
            UploadedFile("empty.txt", b"   "),
            UploadedFile("b.txt", b"Ticket routing is manual"),
        ]
        writes = len(store.writes)
        notes, warnings = machine.ingest_files(files)
        assert [n.file_name for n in notes] == ["a.txt", "b.txt"]
        assert warnings == ["broken.bad: Unsupported file", "empty.txt: No readable text found"]
        assert len(store.writes) == writes + 1

    def test_ingest_into_meeting(self, machine):
        meeting = machine.add_meeting("high_level", "Finance", "Payables")
        notes, warnings = machine.ingest_files([UploadedFile("m.txt", b"Three-way match")], phase="high_level", meeting_id=meeting.id)
        assert warnings == []
        assert machine.record.high_level_meetings[0].notes[0].id == notes[0].id

    def test_ingest_requires_extractor(self, store):
        seed_organization(store)
        state = JourneyStateMachine(store, OWNER)
        state.select_organization("org-acme")
        state.create_journey()
        with pytest.raises(StateError):
            state.ingest_files([UploadedFile("a.txt", b"x")])


class TestStepsAndHypotheses:
    """Test cases for step navigation and recommendations on the machine."""

    def test_steps_locked_until_research(self, machine):
        assert machine.select_step("kickoff_meeting") == "research"
        machine.mark_research_complete()
        assert machine.select_step("kickoff_meeting") == "kickoff_meeting"
        assert machine.record.current_step_id == "kickoff_meeting"

    def test_research_content_unlocks(self, machine):
        machine.save_research_summary("Acme runs a large shared services centre.")
        assert not any(step.locked for step in machine.steps())

    def test_toggle_step_visibility(self, machine):
        machine.mark_research_complete()
        machine.select_step("kickoff_meeting")
        machine.toggle_step_visibility("kickoff_meeting", False)
        assert machine.record.step_overrides == {"kickoff_meeting": False}
        assert machine.record.current_step_id == "research"
        assert "kickoff_meeting" not in [s.step_id for s in machine.steps()]

        machine.toggle_step_visibility("kickoff_meeting", True)
        assert machine.record.step_overrides == {}

    def test_research_visibility_cannot_change(self, machine):
        with pytest.raises(ValidationError):
            machine.toggle_step_visibility("research", False)

    def test_global_settings_read_once(self):
        store = InMemoryJourneyStore(settings={"integration_strategy": False})
        seed_organization(store)
        state = JourneyStateMachine(store, OWNER)
        state.select_organization("org-acme")
        state.create_journey()
        store.settings["integration_strategy"] = True
        assert "integration_strategy" not in [s.step_id for s in state.steps()]

    def test_high_level_hypotheses_from_kickoff(self, machine):
        assert machine.hypotheses("high_level") == []
        machine.add_kickoff_note("Supplier invoice matching is slow and manual.")
        ranked = machine.hypotheses("high_level")
        assert [r.use_case_id for r in ranked] == ["invoice"]
        assert ranked[0].explanation.startswith("Kickoff notes repeatedly reference invoice")
        assert machine.recommended_ids("high_level") == ["invoice"]

    def test_zero_score_items_are_still_recommended(self, machine):
        machine.toggle_use_case("targeting", "close")
        machine.add_kickoff_note("Team wants better supplier invoice capture.")
        ranked = machine.hypotheses("high_level")
        assert [(r.use_case_id, r.score) for r in ranked] == [("invoice", 3), ("close", 0)]
        assert machine.recommended_ids("high_level") == ["invoice", "close"]

    def test_deep_dive_hypotheses_from_meetings(self, machine):
        machine.toggle_use_case("high_level", "close")
        meeting = machine.add_meeting("high_level", "Finance", "Reporting")
        machine.add_meeting_note("high_level", meeting.id, "Ledgers are reconciled by hand each month.")
        ranked = machine.hypotheses("deep_dive")
        assert ranked[0].use_case_id == "close"
        assert "indicating deep-dive priority" in ranked[0].explanation

    def test_targeting_hypotheses_from_research(self, machine):
        machine.save_research_summary("Customer tickets pile up without routing.")
        ranked = machine.hypotheses("targeting")
        assert [r.use_case_id for r in ranked] == ["invoice", "close"]
        machine.toggle_domain("targeting", "Customer Service")
        assert machine.hypotheses("targeting")[0].use_case_id == "triage"

    def test_notes_digest(self, machine):
        machine.add_kickoff_note("Short. The invoice approval chain has seven manual sign-offs.")
        assert machine.notes_digest("high_level") == ["The invoice approval chain has seven manual sign-offs."]
