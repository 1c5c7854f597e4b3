"""Collaborator ports consumed by the journey engine."""

from __future__ import annotations

from typing import Any, Callable, Dict, List, Mapping, Protocol, Sequence

from .models import JourneyRecord, Organization, OrganizationSnapshot, UploadedFile, UseCase

Unsubscribe = Callable[[], None]
ChangeCallback = Callable[[Dict[str, Any]], None]


class JourneyStore(Protocol):
    """Persistence for organizations and their journeys.

    Every method raises ``PersistenceError`` when the backing store fails.
    """

    def load(self, organization_id: str) -> OrganizationSnapshot: ...

    def load_journey(self, journey_id: str) -> JourneyRecord: ...

    def save_journey(self, record: JourneyRecord) -> None: ...

    def save_fields(self, journey_id: str, fields: Mapping[str, Any]) -> None: ...

    def save_organization(self, organization: Organization) -> None: ...

    def save_organization_fields(self, organization_id: str, fields: Mapping[str, Any]) -> None: ...

    def list_organizations(self) -> List[Organization]: ...

    def subscribe(self, journey_id: str, callback: ChangeCallback) -> Unsubscribe: ...

    def load_step_settings(self) -> Dict[str, bool]: ...

    def library_use_cases(self) -> List[UseCase]: ...


class TextExtractor(Protocol):
    """Turns one uploaded file into plain text; raises ``ExtractionError``."""

    def extract(self, file: UploadedFile) -> str: ...


class CompletionClient(Protocol):
    """Generative text service; raises ``CompletionError``."""

    def complete(self, prompt: str, context: Sequence[Mapping[str, str]], *, model: str | None = None) -> str: ...

    def summarize(self, text: str) -> Dict[str, Any]: ...
