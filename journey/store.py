"""JSON file persistence for organizations and journeys.

Layout under the project root::

    .journeys/
        organizations/<organization_id>.json
        journeys/<journey_id>.json
        settings.json      global step visibility flags
        library.json       library use-case catalog
"""

from __future__ import annotations

import json
import logging
import os
import re
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional

from .errors import NotFoundError, PersistenceError, ValidationError
from .journey_logging import log_error_with_context, log_operation, log_performance, observability_hooks
from .models import JourneyRecord, Organization, OrganizationSnapshot, UseCase, utc_timestamp
from .ports import ChangeCallback, Unsubscribe

logger = logging.getLogger("journey.store")

_SAFE_ID = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_.-]*$")

DEFAULT_LIBRARY: List[Dict[str, str]] = [
    {
        "id": "support-triage",
        "title": "Automating Customer Support Triage",
        "domain": "Customer Service",
        "process": "Ticket Triage",
        "description": (
            "Design a workflow to manage incoming customer support tickets, deciding which steps "
            "to automate with AI and when to escalate to a human agent."
        ),
    },
    {
        "id": "sales-personalization",
        "title": "Hyper-Personalizing Sales Outreach",
        "domain": "Sales",
        "process": "Prospect Outreach",
        "description": (
            "Design a process that uses AI to research prospects and personalize email drafts, "
            "deciding what parts of the process should remain human-driven."
        ),
    },
    {
        "id": "content-pipeline",
        "title": "Content Pipeline: From Transcript to Blog Post",
        "domain": "Marketing",
        "process": "Content Production",
        "description": (
            "Create a workflow to turn a raw meeting transcript into a polished blog post, strategically "
            "using AI for steps like summarization and drafting while reserving others for human oversight."
        ),
    },
    {
        "id": "market-research",
        "title": "Analyzing Customer Feedback at Scale",
        "domain": "Product",
        "process": "Feedback Analysis",
        "description": (
            "Design an AI-powered workflow to analyze hundreds of app store reviews to extract themes, "
            "sentiment, and feature requests. Determine the AI's role versus the human analyst's."
        ),
    },
]


class JsonJourneyStore:
    """Journey store backed by JSON files in the project root."""

    STORAGE_DIR_ENV = "JOURNEY_STORAGE_DIR"
    DEFAULT_STORAGE_DIR = ".journeys"

    def __init__(self, root: Path | str, storage_dir: Optional[str] = None):
        self.root = Path(root).resolve()
        name = storage_dir or os.getenv(self.STORAGE_DIR_ENV) or self.DEFAULT_STORAGE_DIR

        self.base_dir = self.root / name
        self.organizations_dir = self.base_dir / "organizations"
        self.journeys_dir = self.base_dir / "journeys"
        self.settings_path = self.base_dir / "settings.json"
        self.library_path = self.base_dir / "library.json"

        self._subscribers: Dict[str, List[ChangeCallback]] = {}
        self._lock = threading.RLock()

        try:
            self.organizations_dir.mkdir(parents=True, exist_ok=True)
            self.journeys_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.error(f"Failed to create storage directories: {e}")
            raise PersistenceError(
                f"Could not initialize journey storage at {self.base_dir}: {e}",
                operation="store_init",
            ) from e

        logger.info(f"Journey store initialized at {self.base_dir}")

    # ------------------------------------------------------------------
    # File helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_id(value: str, kind: str) -> str:
        if not value or not _SAFE_ID.match(value):
            raise ValidationError(f"Invalid {kind} id '{value}'", operation="store", target_id=value)
        return value

    def _organization_path(self, organization_id: str) -> Path:
        return self.organizations_dir / f"{self._check_id(organization_id, 'organization')}.json"

    def _journey_path(self, journey_id: str) -> Path:
        return self.journeys_dir / f"{self._check_id(journey_id, 'journey')}.json"

    def _read_json(self, path: Path, operation: str, target_id: Optional[str] = None) -> Any:
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            raise NotFoundError(f"No record found at {path.name}", operation=operation, target_id=target_id)
        except (OSError, json.JSONDecodeError) as e:
            log_error_with_context(e, {"operation": operation, "path": str(path)})
            raise PersistenceError(f"Failed to read {path.name}: {e}", operation=operation, target_id=target_id) from e

    def _write_json(self, path: Path, data: Any, operation: str, target_id: Optional[str] = None) -> None:
        temp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            temp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
            os.replace(temp_path, path)
        except (OSError, TypeError, ValueError) as e:
            log_error_with_context(e, {"operation": operation, "path": str(path)})
            raise PersistenceError(f"Failed to write {path.name}: {e}", operation=operation, target_id=target_id) from e

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def list_organizations(self) -> List[Organization]:
        organizations = []
        for path in sorted(self.organizations_dir.glob("*.json")):
            organizations.append(Organization.from_dict(self._read_json(path, "list_organizations")))
        return organizations

    def load_organization(self, organization_id: str) -> Organization:
        data = self._read_json(self._organization_path(organization_id), "load_organization", organization_id)
        return Organization.from_dict(data)

    @log_performance("load_organization_snapshot")
    def load(self, organization_id: str) -> OrganizationSnapshot:
        """Load an organization with all of its journeys."""
        organization = self.load_organization(organization_id)
        journeys: Dict[str, JourneyRecord] = {}
        with self._lock:
            for path in sorted(self.journeys_dir.glob("*.json")):
                data = self._read_json(path, "load")
                if data.get("organization_id") == organization_id:
                    record = JourneyRecord.from_dict(data)
                    journeys[record.id] = record
        logger.debug(f"Loaded organization {organization_id} with {len(journeys)} journeys")
        return OrganizationSnapshot(organization=organization, journeys=journeys)

    def save_organization(self, organization: Organization) -> None:
        with self._lock, log_operation("save_organization", organization_id=organization.id):
            self._write_json(
                self._organization_path(organization.id),
                organization.to_dict(),
                "save_organization",
                organization.id,
            )
        observability_hooks.log_workflow_event("organization_saved", organization_id=organization.id)

    def save_organization_fields(self, organization_id: str, fields: Mapping[str, Any]) -> None:
        """Overwrite the given top-level fields of an organization."""
        with self._lock:
            path = self._organization_path(organization_id)
            data = self._read_json(path, "save_organization_fields", organization_id)
            data.update({k: v for k, v in fields.items() if k != "id"})
            data["updated_at"] = utc_timestamp()
            self._write_json(path, data, "save_organization_fields", organization_id)
        logger.debug(f"Organization {organization_id} fields saved: {sorted(fields)}")

    # ------------------------------------------------------------------
    # Journeys
    # ------------------------------------------------------------------

    def load_journey(self, journey_id: str) -> JourneyRecord:
        return JourneyRecord.from_dict(self._read_json(self._journey_path(journey_id), "load_journey", journey_id))

    def save_journey(self, record: JourneyRecord) -> None:
        """Write a complete journey record, creating it if needed."""
        with self._lock:
            self._write_json(self._journey_path(record.id), record.to_dict(), "save_journey", record.id)
        observability_hooks.log_workflow_event("journey_saved", journey_id=record.id)

    @log_performance("save_fields")
    def save_fields(self, journey_id: str, fields: Mapping[str, Any]) -> None:
        """Overwrite the given serialized fields of a journey and notify subscribers."""
        with self._lock:
            path = self._journey_path(journey_id)
            data = self._read_json(path, "save_fields", journey_id)
            changes = {k: v for k, v in fields.items() if k not in ("id", "organization_id")}
            changes["updated_at"] = utc_timestamp()
            data.update(changes)
            self._write_json(path, data, "save_fields", journey_id)
            callbacks = list(self._subscribers.get(journey_id, []))

        logger.debug(f"Journey {journey_id} fields saved: {sorted(changes)}")
        for callback in callbacks:
            try:
                callback(dict(changes))
            except Exception as e:
                logger.error(f"Subscriber failed for journey {journey_id}: {e}")

    def subscribe(self, journey_id: str, callback: ChangeCallback) -> Unsubscribe:
        """Register ``callback`` for field changes written to ``journey_id``."""
        with self._lock:
            self._subscribers.setdefault(journey_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(journey_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    # ------------------------------------------------------------------
    # Settings and library
    # ------------------------------------------------------------------

    def load_step_settings(self) -> Dict[str, bool]:
        if not self.settings_path.exists():
            return {}
        data = self._read_json(self.settings_path, "load_step_settings")
        return {key: bool(value) for key, value in data.items()}

    def save_step_settings(self, flags: Mapping[str, bool]) -> None:
        with self._lock:
            self._write_json(self.settings_path, {k: bool(v) for k, v in flags.items()}, "save_step_settings")

    def library_use_cases(self) -> List[UseCase]:
        """Library catalog; seeded with the default catalog on first use."""
        if not self.library_path.exists():
            with self._lock:
                self._write_json(self.library_path, DEFAULT_LIBRARY, "seed_library")
            logger.info(f"Seeded use-case library at {self.library_path}")
        data = self._read_json(self.library_path, "library_use_cases")
        return [UseCase.from_dict(item) for item in data]
