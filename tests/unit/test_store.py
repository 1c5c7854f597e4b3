"""Unit tests for the JSON journey store.

These tests exercise the on-disk layout, partial field writes,
change notifications and the seeded use-case library.
"""

import json
import tempfile
from pathlib import Path

import pytest

from journey.errors import NotFoundError, PersistenceError, ValidationError
from journey.models import JourneyRecord, Note, Organization
from journey.store import DEFAULT_LIBRARY, JsonJourneyStore


def _organization(**overrides):
    data = {"id": "org-acme", "name": "Acme", "owner_id": "operator@example.com"}
    data.update(overrides)
    return Organization.from_dict(data)


class TestStoreInitialization:
    """Test cases for store initialization."""

    def test_store_creation(self, tmp_path):
        """Test creating a store lays out its directories."""
        store = JsonJourneyStore(tmp_path)

        assert store.root == tmp_path.resolve()
        assert store.base_dir == tmp_path / ".journeys"
        assert store.organizations_dir.exists()
        assert store.journeys_dir.exists()

    def test_store_with_custom_storage_dir(self, tmp_path, monkeypatch):
        """Test the storage directory can be set from the environment."""
        monkeypatch.setenv("JOURNEY_STORAGE_DIR", ".custom-journeys")
        store = JsonJourneyStore(tmp_path)

        assert store.base_dir == tmp_path / ".custom-journeys"
        assert store.base_dir.exists()

    def test_store_with_string_path(self):
        """Test store creation with a string path."""
        with tempfile.TemporaryDirectory() as temp_dir:
            store = JsonJourneyStore(temp_dir)
            assert store.root == Path(temp_dir).resolve()


class TestOrganizations:
    """Test cases for organization persistence."""

    def test_save_and_load(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        store.save_organization(_organization(selected_domains=["Finance"]))

        snapshot = store.load("org-acme")
        assert snapshot.organization.name == "Acme"
        assert snapshot.organization.selected_domains == ["Finance"]
        assert snapshot.journeys == {}

    def test_list_organizations(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        store.save_organization(_organization())
        store.save_organization(_organization(id="org-beta", name="Beta"))

        assert [org.name for org in store.list_organizations()] == ["Acme", "Beta"]

    def test_load_missing_organization(self, tmp_path):
        store = JsonJourneyStore(tmp_path)

        with pytest.raises(NotFoundError):
            store.load("org-missing")

    def test_save_fields_overwrites_named_fields_only(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        store.save_organization(_organization(research_summary="Old"))
        store.save_organization_fields("org-acme", {"current_journey_id": "journey-1", "id": "hijack"})

        organization = store.load_organization("org-acme")
        assert organization.id == "org-acme"
        assert organization.current_journey_id == "journey-1"
        assert organization.research_summary == "Old"

    def test_unsafe_ids_rejected(self, tmp_path):
        store = JsonJourneyStore(tmp_path)

        with pytest.raises(ValidationError):
            store.load_organization("../escape")

    def test_corrupt_file_raises_persistence_error(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        (store.organizations_dir / "org-acme.json").write_text("{not json", encoding="utf-8")

        with pytest.raises(PersistenceError):
            store.load_organization("org-acme")


class TestJourneys:
    """Test cases for journey persistence and change notifications."""

    def test_snapshot_groups_journeys_by_organization(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        store.save_organization(_organization())
        store.save_journey(JourneyRecord(id="journey-1", organization_id="org-acme"))
        store.save_journey(JourneyRecord(id="journey-2", organization_id="org-other"))

        snapshot = store.load("org-acme")
        assert list(snapshot.journeys) == ["journey-1"]

    def test_save_fields_is_partial(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        record = JourneyRecord(
            id="journey-1",
            organization_id="org-acme",
            kickoff_notes=(Note(id="n1", file_name="kickoff.txt", content="Invoices pile up"),),
        )
        store.save_journey(record)

        store.save_fields("journey-1", {"research_complete": True, "organization_id": "org-other"})

        loaded = store.load_journey("journey-1")
        assert loaded.research_complete is True
        assert loaded.organization_id == "org-acme"
        assert loaded.kickoff_notes[0].content == "Invoices pile up"

    def test_null_selection_survives_round_trip(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        store.save_journey(JourneyRecord(id="journey-1", organization_id="org-acme", high_level_selected_domains=[]))

        loaded = store.load_journey("journey-1")
        assert loaded.high_level_selected_domains == []
        assert loaded.deep_dive_selected_domains is None

        raw = json.loads((store.journeys_dir / "journey-1.json").read_text(encoding="utf-8"))
        assert raw["deep_dive_selected_domains"] is None

    def test_subscribers_notified_after_write(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        store.save_journey(JourneyRecord(id="journey-1", organization_id="org-acme"))
        received = []

        def on_change(fields):
            received.append((fields, store.load_journey("journey-1").current_step_id))

        unsubscribe = store.subscribe("journey-1", on_change)
        store.save_fields("journey-1", {"current_step_id": "target_domains"})
        assert received[0][0]["current_step_id"] == "target_domains"
        assert received[0][1] == "target_domains"

        unsubscribe()
        store.save_fields("journey-1", {"current_step_id": "research"})
        assert len(received) == 1

    def test_failing_subscriber_does_not_fail_write(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        store.save_journey(JourneyRecord(id="journey-1", organization_id="org-acme"))

        def broken(fields):
            raise RuntimeError("listener crashed")

        store.subscribe("journey-1", broken)
        store.save_fields("journey-1", {"research_complete": True})
        assert store.load_journey("journey-1").research_complete is True

    def test_save_fields_for_missing_journey(self, tmp_path):
        store = JsonJourneyStore(tmp_path)

        with pytest.raises(NotFoundError):
            store.save_fields("journey-missing", {"research_complete": True})


class TestSettingsAndLibrary:
    """Test cases for global step settings and the use-case library."""

    def test_settings_default_empty(self, tmp_path):
        assert JsonJourneyStore(tmp_path).load_step_settings() == {}

    def test_settings_round_trip(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        store.save_step_settings({"functional_deep_dive": False, "integration_strategy": 1})

        assert store.load_step_settings() == {"functional_deep_dive": False, "integration_strategy": True}

    def test_library_seeded_on_first_use(self, tmp_path):
        store = JsonJourneyStore(tmp_path)

        library = store.library_use_cases()
        assert [item.id for item in library] == [item["id"] for item in DEFAULT_LIBRARY]
        assert store.library_path.exists()

    def test_library_read_from_disk(self, tmp_path):
        store = JsonJourneyStore(tmp_path)
        store.library_path.write_text(
            json.dumps([{"id": "custom", "title": "Custom Item", "domain": "Legal"}]),
            encoding="utf-8",
        )

        library = store.library_use_cases()
        assert len(library) == 1
        assert library[0].domain == "Legal"
