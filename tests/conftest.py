"""Shared fixtures and in-memory fakes for the journey ports."""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

import pytest

from journey.errors import CompletionError, ExtractionError, NotFoundError, PersistenceError
from journey.models import JourneyRecord, Organization, OrganizationSnapshot, UploadedFile, UseCase
from journey.state import JourneyStateMachine
from journey.custom_steps import CustomStepManager

OWNER = "operator@example.com"

LIBRARY = [
    UseCase(id="invoice", title="Invoice Processing Automation", domain="Finance",
            process="Accounts Payable", description="Capture and match supplier invoices."),
    UseCase(id="close", title="Month End Close", domain="Finance",
            process="Reporting", description="Reconcile ledgers and publish statements."),
    UseCase(id="triage", title="Support Ticket Triage", domain="Customer Service",
            process="Ticket Routing", description="Categorize tickets by urgency and intent."),
    UseCase(id="outreach", title="Personalized Sales Outreach", domain="Sales",
            process="Prospecting", description="Draft prospect emails from research."),
]


class InMemoryJourneyStore:
    """Journey store fake holding serialized records, with failure switches."""

    def __init__(self, library: Optional[List[UseCase]] = None, settings: Optional[Dict[str, bool]] = None):
        self.organizations: Dict[str, Dict[str, Any]] = {}
        self.journeys: Dict[str, Dict[str, Any]] = {}
        self.library = list(library if library is not None else LIBRARY)
        self.settings = dict(settings or {})
        self.subscribers: Dict[str, List] = {}
        self.fail_writes = False
        self.writes: List[tuple] = []

    def _check_write(self, target: str) -> None:
        if self.fail_writes:
            raise PersistenceError("disk unavailable", operation="save", target_id=target)

    def list_organizations(self) -> List[Organization]:
        return [Organization.from_dict(data) for data in self.organizations.values()]

    def load(self, organization_id: str) -> OrganizationSnapshot:
        if organization_id not in self.organizations:
            raise NotFoundError(f"Organization '{organization_id}' not found", target_id=organization_id)
        journeys = {
            jid: JourneyRecord.from_dict(data)
            for jid, data in self.journeys.items()
            if data["organization_id"] == organization_id
        }
        return OrganizationSnapshot(Organization.from_dict(self.organizations[organization_id]), journeys)

    def load_journey(self, journey_id: str) -> JourneyRecord:
        return JourneyRecord.from_dict(self.journeys[journey_id])

    def save_journey(self, record: JourneyRecord) -> None:
        self._check_write(record.id)
        self.journeys[record.id] = record.to_dict()
        self.writes.append(("journey", record.id, None))

    def save_fields(self, journey_id: str, fields: Mapping[str, Any]) -> None:
        self._check_write(journey_id)
        self.journeys[journey_id].update(copy.deepcopy(dict(fields)))
        self.writes.append(("fields", journey_id, sorted(fields)))
        for callback in list(self.subscribers.get(journey_id, [])):
            callback(dict(fields))

    def save_organization(self, organization: Organization) -> None:
        self._check_write(organization.id)
        self.organizations[organization.id] = organization.to_dict()

    def save_organization_fields(self, organization_id: str, fields: Mapping[str, Any]) -> None:
        self._check_write(organization_id)
        self.organizations[organization_id].update(copy.deepcopy(dict(fields)))
        self.writes.append(("organization", organization_id, sorted(fields)))

    def subscribe(self, journey_id: str, callback):
        self.subscribers.setdefault(journey_id, []).append(callback)
        return lambda: self.subscribers[journey_id].remove(callback)

    def load_step_settings(self) -> Dict[str, bool]:
        return dict(self.settings)

    def library_use_cases(self) -> List[UseCase]:
        return list(self.library)

    def notify(self, journey_id: str, fields: Dict[str, Any]) -> None:
        """Simulate a change made by another session."""
        self.journeys[journey_id].update(fields)
        for callback in list(self.subscribers.get(journey_id, [])):
            callback(dict(fields))


class FakeExtractor:
    """Extractor that decodes UTF-8 and fails for files named ``*.bad``."""

    def extract(self, file: UploadedFile) -> str:
        if file.file_name.endswith(".bad"):
            raise ExtractionError(file.file_name, "Unsupported file")
        return file.data.decode("utf-8")


class FakeCompletion:
    """Completion client returning canned replies and recording calls."""

    def __init__(self, reply: str = "Here is a draft.", error: Optional[Exception] = None):
        self.reply = reply
        self.error = error
        self.calls: List[Dict[str, Any]] = []

    def complete(self, prompt, context, *, model=None):
        self.calls.append({"prompt": prompt, "context": list(context), "model": model})
        if self.error is not None:
            raise self.error
        return self.reply

    def summarize(self, text):
        if self.error is not None:
            raise self.error
        return {"summary": text[:40], "key_points": [], "themes": []}


def seed_organization(store: InMemoryJourneyStore, **overrides) -> Organization:
    data = {
        "id": "org-acme",
        "name": "Acme",
        "owner_id": OWNER,
        "selected_domains": ["Finance"],
        "selected_use_cases": ["invoice"],
    }
    data.update(overrides)
    organization = Organization.from_dict(data)
    store.organizations[organization.id] = organization.to_dict()
    return organization


@pytest.fixture
def store():
    return InMemoryJourneyStore()


@pytest.fixture
def machine(store):
    """State machine with Acme selected and a fresh active journey."""
    seed_organization(store)
    state = JourneyStateMachine(store, OWNER, extractor=FakeExtractor())
    state.select_organization("org-acme")
    state.create_journey()
    return state


@pytest.fixture
def completion():
    return FakeCompletion()


@pytest.fixture
def manager(machine, completion):
    return CustomStepManager(machine, completion)


@pytest.fixture
def failing_completion():
    return FakeCompletion(error=CompletionError("service down"))
