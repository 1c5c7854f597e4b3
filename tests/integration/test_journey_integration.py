"""Integration tests for the journey workflow on the JSON store.

These tests run complete operator sessions against real files and check
that state survives reloads and reaches other sessions.
"""

import base64

import pytest

from journey.extraction import FileTextExtractor
from journey.store import JsonJourneyStore
from journey.workflow import JourneyWorkflow

from tests.conftest import FakeCompletion

OWNER = "operator@example.com"


def _session(store, identity=OWNER):
    return JourneyWorkflow(store, identity, extractor=FileTextExtractor(), completion=FakeCompletion())


def _upload(name, text):
    return {"file_name": name, "content_base64": base64.b64encode(text.encode("utf-8")).decode("ascii")}


@pytest.fixture
def store(tmp_path):
    return JsonJourneyStore(tmp_path)


class TestJourneyLifecycle:
    """End-to-end journey sessions."""

    def test_complete_session(self, store, tmp_path):
        """Test a session from organization setup through deep-dive hypotheses."""
        session = _session(store)

        created = session.create_organization("Acme Support", ["Customer Service"], ["support-triage"])
        organization_id = created["organization"]["id"]
        session.save_research_summary("Acme runs a 40 person support desk handling customer tickets.")
        journey_id = session.create_journey()["journey_id"]

        assert session.select_step("target_domains")["selected"] is True

        targeting = session.hypotheses("targeting")
        assert targeting["recommended_ids"][0] == "support-triage"

        uploaded = session.upload_notes([
            _upload("kickoff.txt", "Customer support tickets need faster triage and escalation."),
            _upload("empty.txt", "   "),
        ])
        assert len(uploaded["notes"]) == 1
        assert uploaded["warnings"] == ["empty.txt: No readable text found"]

        high_level = session.hypotheses("high_level")
        assert high_level["recommended_ids"] == ["support-triage"]

        meeting = session.add_meeting("high_level")["meeting"]
        assert meeting["function_name"] == "Ticket Triage"
        session.add_meeting_note("high_level", meeting["id"], "Agents triage tickets by hand before escalation.")

        deep_dive = session.hypotheses("deep_dive")
        assert deep_dive["recommendations"][0]["explanation"].startswith("Functional high-level notes")

        step = session.create_custom_step({"title": "Escalation Matrix", "output_type": "TABULAR"})
        assert step["custom_step"]["output_type"] == "TABULAR"

        # A fresh process sees everything that was written.
        reloaded = _session(JsonJourneyStore(tmp_path))
        status = reloaded.select_organization(organization_id)
        assert status["active_journey_id"] == journey_id
        journey = status["journey"]
        assert journey["current_step_id"] == "target_domains"
        assert journey["kickoff_notes"][0]["file_name"] == "kickoff.txt"
        assert journey["high_level_meetings"][0]["notes"][0]["content"].startswith("Agents triage")
        assert [s["step_id"] for s in status["steps"]][-1] == f"custom-{step['custom_step']['id']}"

    def test_remote_changes_reach_other_sessions(self, store):
        first = _session(store)
        organization_id = first.create_organization("Acme", ["Sales"], [])["organization"]["id"]
        first.create_journey()

        second = _session(store)
        second.select_organization(organization_id)

        first.save_output("https://slides.example.com/kickoff")
        first.toggle_domain("targeting", "Marketing")

        journey = second.journey_status()["journey"]
        assert journey["kickoff_presentation_url"] == "https://slides.example.com/kickoff"
        assert journey["selections"]["targeting"]["domains"] == ["Sales", "Marketing"]

    def test_other_identity_cannot_write(self, store):
        owner = _session(store)
        organization_id = owner.create_organization("Acme")["organization"]["id"]
        owner.create_journey()

        visitor = _session(store, identity="visitor@example.com")
        visitor.select_organization(organization_id)
        result = visitor.add_kickoff_note("Visitor note")

        assert result["error_type"] == "AuthorizationError"
        assert owner.journey_status()["journey"]["kickoff_notes"] == []

    def test_journeys_are_isolated_on_disk(self, store, tmp_path):
        session = _session(store)
        organization_id = session.create_organization("Acme", ["Finance"], [])["organization"]["id"]
        first = session.create_journey()["journey_id"]
        session.add_kickoff_note("Journey one only.")
        second = session.create_journey()["journey_id"]

        reloaded = _session(JsonJourneyStore(tmp_path))
        reloaded.select_organization(organization_id)
        assert reloaded.journey_status()["active_journey_id"] == second
        assert reloaded.journey_status()["journey"]["kickoff_notes"] == []

        switched = reloaded.switch_journey(first)
        assert switched["journey"]["kickoff_notes"][0]["content"] == "Journey one only."
