"""Journey state machine.

The persisted :class:`JourneyRecord` is the single source of truth. Every
transition computes the next record, swaps it in optimistically, writes the
changed fields through the store and restores the previous record if the
write fails. The view an operator sees is a pure projection of the active
record plus the organization defaults, recomputed on every read.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from .errors import AuthorizationError, ExtractionError, NotFoundError, StateError, ValidationError
from .journey_logging import log_recommendations, log_rollback, log_transition, observability_hooks
from .models import (
    DEFAULT_DOMAIN,
    MEETING_FIELDS,
    RESEARCH_KEY,
    SELECTION_FIELDS,
    STEP_SETTING_KEYS,
    Document,
    JourneyRecord,
    Meeting,
    Note,
    Organization,
    Recommendation,
    SelectionPhase,
    StepView,
    UploadedFile,
    UseCase,
    new_id,
    utc_timestamp,
)
from .ports import JourneyStore, TextExtractor, Unsubscribe
from .recommendations import (
    GENERIC_EXPLANATION,
    HIGH_LEVEL_EXPLANATION,
    KICKOFF_EXPLANATION,
    build_candidate_pool,
    combine_meeting_text,
    combine_note_text,
    derive_domains,
    merge_recommendations,
    recommend,
    recommended_ids,
    select_pool,
)
from .steps import StepSettings, build_steps, resolve_current_step, select_step
from .tokenizer import key_sentences

logger = logging.getLogger("journey.state")

NEW_MEETING_NAMES = {
    SelectionPhase.HIGH_LEVEL: "New Function Meeting",
    SelectionPhase.DEEP_DIVE: "New Deep Dive Meeting",
}

# Fields the store stamps itself; never diffed.
_UNTRACKED_FIELDS = ("id", "organization_id", "created_at", "updated_at")


class SessionState(str, Enum):
    NO_ORGANIZATION = "no_organization"
    RESEARCHING = "researching"
    ACTIVE = "active"


@dataclass(frozen=True, slots=True)
class PhaseSelection:
    domains: Tuple[str, ...] = ()
    use_cases: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, List[str]]:
        return {"domains": list(self.domains), "use_cases": list(self.use_cases)}


@dataclass(frozen=True, slots=True)
class JourneyView:
    """Everything an operator sees for the active journey."""

    journey_id: str
    organization_id: str
    research_complete: bool
    kickoff_presentation_url: str
    kickoff_notes: Tuple[Note, ...]
    selections: Dict[SelectionPhase, PhaseSelection]
    high_level_meetings: Tuple[Meeting, ...]
    deep_dive_meetings: Tuple[Meeting, ...]
    custom_step_ids: Tuple[str, ...]
    current_step_id: str

    def selection(self, phase: SelectionPhase | str) -> PhaseSelection:
        return self.selections[SelectionPhase.parse(phase)]

    def meetings(self, phase: SelectionPhase) -> Tuple[Meeting, ...]:
        return self.high_level_meetings if phase is SelectionPhase.HIGH_LEVEL else self.deep_dive_meetings

    def to_dict(self) -> Dict[str, Any]:
        return {
            "journey_id": self.journey_id,
            "organization_id": self.organization_id,
            "research_complete": self.research_complete,
            "kickoff_presentation_url": self.kickoff_presentation_url,
            "kickoff_notes": [note.to_dict() for note in self.kickoff_notes],
            "selections": {phase.value: sel.to_dict() for phase, sel in self.selections.items()},
            "high_level_meetings": [m.to_dict() for m in self.high_level_meetings],
            "deep_dive_meetings": [m.to_dict() for m in self.deep_dive_meetings],
            "custom_step_ids": list(self.custom_step_ids),
            "current_step_id": self.current_step_id,
        }


def _first_recorded(*candidates: Optional[List[str]]) -> Tuple[str, ...]:
    for values in candidates:
        if values is not None:
            return tuple(values)
    return ()


def project_view(record: JourneyRecord, organization: Organization) -> JourneyView:
    """Project the operator view from a record and its organization defaults.

    A phase with no recorded value falls back along its own record first and
    then to the organization defaults, never to another journey.
    """
    t_domains, t_use_cases = record.selection(SelectionPhase.TARGETING)
    h_domains, h_use_cases = record.selection(SelectionPhase.HIGH_LEVEL)
    d_domains, d_use_cases = record.selection(SelectionPhase.DEEP_DIVE)
    org_domains, org_use_cases = organization.selected_domains, organization.selected_use_cases

    selections = {
        SelectionPhase.TARGETING: PhaseSelection(
            _first_recorded(t_domains, org_domains),
            _first_recorded(t_use_cases, org_use_cases),
        ),
        SelectionPhase.HIGH_LEVEL: PhaseSelection(
            _first_recorded(h_domains, t_domains, org_domains),
            _first_recorded(h_use_cases, t_use_cases, org_use_cases),
        ),
        SelectionPhase.DEEP_DIVE: PhaseSelection(
            _first_recorded(d_domains, h_domains, t_domains, org_domains),
            _first_recorded(d_use_cases, h_use_cases, t_use_cases, org_use_cases),
        ),
    }
    return JourneyView(
        journey_id=record.id,
        organization_id=record.organization_id,
        research_complete=record.research_complete,
        kickoff_presentation_url=record.kickoff_presentation_url,
        kickoff_notes=record.kickoff_notes,
        selections=selections,
        high_level_meetings=record.high_level_meetings,
        deep_dive_meetings=record.deep_dive_meetings,
        custom_step_ids=tuple(step.id for step in record.custom_steps),
        current_step_id=record.current_step_id,
    )


def _toggle(values: Sequence[str], value: str) -> List[str]:
    if value in values:
        return [item for item in values if item != value]
    return list(values) + [value]


def _meeting_phase(phase: SelectionPhase | str) -> SelectionPhase:
    parsed = SelectionPhase.parse(phase)
    if parsed not in MEETING_FIELDS:
        raise ValidationError(f"Phase '{parsed.value}' has no meetings", operation="meeting", target_id=parsed.value)
    return parsed


class JourneyStateMachine:
    """Owns the organization, its journeys and the active journey of one session."""

    def __init__(
        self,
        store: JourneyStore,
        identity: str,
        *,
        extractor: Optional[TextExtractor] = None,
        step_settings: Optional[StepSettings] = None,
    ):
        self.store = store
        self.identity = identity
        self.extractor = extractor
        self._settings = step_settings
        self._organization: Optional[Organization] = None
        self._journeys: Dict[str, JourneyRecord] = {}
        self._active_id: Optional[str] = None
        self._library: Optional[List[UseCase]] = None
        self._unsubscribe: Optional[Unsubscribe] = None
        self._writing = False
        self._reset_listeners: List[Callable[[Optional[str]], None]] = []

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    @property
    def state(self) -> SessionState:
        if self._organization is None:
            return SessionState.NO_ORGANIZATION
        if self._active_id is None:
            return SessionState.RESEARCHING
        return SessionState.ACTIVE

    @property
    def organization(self) -> Optional[Organization]:
        return self._organization

    @property
    def active_journey_id(self) -> Optional[str]:
        return self._active_id

    @property
    def record(self) -> Optional[JourneyRecord]:
        return self._journeys.get(self._active_id) if self._active_id else None

    @property
    def step_settings(self) -> StepSettings:
        """Global visibility flags, read from the store once per session."""
        if self._settings is None:
            self._settings = StepSettings(self.store.load_step_settings())
        return self._settings

    def journeys(self) -> List[JourneyRecord]:
        """Journeys of the selected organization, newest first."""
        return sorted(self._journeys.values(), key=lambda j: (j.created_at, j.id), reverse=True)

    def require_organization(self) -> Organization:
        if self._organization is None:
            raise StateError("No organization selected", operation="require_organization")
        return self._organization

    def require_record(self) -> JourneyRecord:
        record = self.record
        if record is None:
            raise StateError(
                "No active journey. Create or switch to a journey first",
                operation="require_journey",
                target_id=self._organization.id if self._organization else None,
            )
        return record

    def view(self) -> JourneyView:
        return project_view(self.require_record(), self.require_organization())

    def candidate_pool(self) -> List[UseCase]:
        if self._library is None:
            self._library = self.store.library_use_cases()
        organization_items = self._organization.use_cases if self._organization else []
        return build_candidate_pool(self._library, organization_items)

    def steps(self) -> List[StepView]:
        record = self.record
        organization = self._organization
        return build_steps(
            record,
            self.step_settings,
            record.custom_steps if record else (),
            has_research_content=bool(organization and organization.has_research_content),
            organization_bound=organization is not None,
        )

    def add_reset_listener(self, callback: Callable[[Optional[str]], None]) -> None:
        """Call ``callback(journey_id)`` whenever the active journey changes."""
        self._reset_listeners.append(callback)

    # ------------------------------------------------------------------
    # Write plumbing
    # ------------------------------------------------------------------

    def _authorize(self, operation: str) -> None:
        organization = self.require_organization()
        if organization.owner_id != self.identity:
            raise AuthorizationError(
                "Not authorized to update this organization",
                operation=operation,
                target_id=organization.id,
            )

    def commit(self, transition: str, **fields: Any) -> JourneyRecord:
        """Apply ``fields`` to the active record and persist what changed.

        The new record is visible immediately; if the write fails the previous
        record is restored and the error propagates.
        """
        self._authorize(transition)
        previous = self.require_record()
        proposed = previous.with_fields(**fields)

        before = previous.to_dict()
        after = proposed.to_dict()
        changed = [name for name in after if name not in _UNTRACKED_FIELDS and after[name] != before[name]]
        if not changed:
            return previous

        proposed = proposed.with_fields(updated_at=utc_timestamp())
        self._journeys[previous.id] = proposed
        self._writing = True
        try:
            self.store.save_fields(previous.id, proposed.to_dict(only=changed))
        except Exception as e:
            self._journeys[previous.id] = previous
            log_rollback(transition, previous.id, e, fields=changed)
            raise
        finally:
            self._writing = False

        log_transition(transition, previous.id, fields=changed)
        return proposed

    def commit_organization(self, transition: str, **fields: Any) -> Organization:
        """Two-phase write of organization fields."""
        self._authorize(transition)
        previous = self.require_organization()
        proposed = replace(previous, **fields)

        before = previous.to_dict()
        after = proposed.to_dict()
        changed = {name: after[name] for name in after if name not in _UNTRACKED_FIELDS and after[name] != before[name]}
        if not changed:
            return previous

        proposed = replace(proposed, updated_at=utc_timestamp())
        self._organization = proposed
        try:
            self.store.save_organization_fields(previous.id, changed)
        except Exception as e:
            self._organization = previous
            log_rollback(transition, self._active_id, e, organization_id=previous.id, fields=sorted(changed))
            raise

        log_transition(transition, self._active_id, organization_id=previous.id, fields=sorted(changed))
        return proposed

    def _activate(self, journey_id: Optional[str]) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self._active_id = journey_id
        if journey_id is not None:
            self._unsubscribe = self.store.subscribe(
                journey_id, lambda fields, jid=journey_id: self.apply_remote_update(fields, journey_id=jid)
            )
        for callback in list(self._reset_listeners):
            callback(journey_id)

    # ------------------------------------------------------------------
    # Organization lifecycle
    # ------------------------------------------------------------------

    def list_organizations(self) -> List[Organization]:
        return self.store.list_organizations()

    def create_organization(
        self,
        name: str,
        selected_domains: Iterable[str] = (),
        selected_use_cases: Iterable[str] = (),
    ) -> Organization:
        if not name or not name.strip():
            raise ValidationError("Organization name is required.", operation="create_organization")
        organization = Organization(
            id=new_id("org"),
            name=name.strip(),
            owner_id=self.identity,
            selected_domains=list(dict.fromkeys(selected_domains)),
            selected_use_cases=list(dict.fromkeys(selected_use_cases)),
        )
        self.store.save_organization(organization)
        log_transition("create_organization", None, organization_id=organization.id)
        self.select_organization(organization.id)
        return organization

    def select_organization(self, organization_id: str) -> SessionState:
        snapshot = self.store.load(organization_id)
        if self._settings is None:
            self._settings = StepSettings(self.store.load_step_settings())
        self._organization = snapshot.organization
        self._journeys = dict(snapshot.journeys)

        journey_id = snapshot.organization.current_journey_id
        if journey_id not in self._journeys:
            ordered = snapshot.ordered_journeys()
            journey_id = ordered[0].id if ordered else None
        self._activate(journey_id)

        observability_hooks.log_workflow_event(
            "organization_selected",
            journey_id=journey_id,
            organization_id=organization_id,
            journey_count=len(self._journeys),
        )
        return self.state

    def set_organization_defaults(self, domains: Iterable[str], use_cases: Iterable[str]) -> Organization:
        return self.commit_organization(
            "set_organization_defaults",
            selected_domains=list(dict.fromkeys(domains)),
            selected_use_cases=list(dict.fromkeys(use_cases)),
        )

    def save_research_summary(self, summary: str) -> Organization:
        return self.commit_organization("save_research_summary", research_summary=(summary or "").strip())

    def add_organization_use_case(self, title: str, domain: str = "", process: str = "", description: str = "") -> UseCase:
        if not title or not title.strip():
            raise ValidationError("Use case title is required.", operation="add_organization_use_case")
        organization = self.require_organization()
        item = UseCase(
            id=new_id("usecase"),
            title=title.strip(),
            domain=domain.strip() or DEFAULT_DOMAIN,
            process=process.strip(),
            description=description.strip(),
        )
        self.commit_organization("add_organization_use_case", use_cases=list(organization.use_cases) + [item])
        return item

    def remove_research_document(self, document_id: str) -> Organization:
        organization = self.require_organization()
        remaining = [doc for doc in organization.documents if doc.id != document_id]
        if len(remaining) == len(organization.documents):
            raise NotFoundError(f"Document '{document_id}' not found", operation="remove_research_document", target_id=document_id)
        return self.commit_organization("remove_research_document", documents=remaining)

    # ------------------------------------------------------------------
    # Journey lifecycle
    # ------------------------------------------------------------------

    def create_journey(self) -> JourneyRecord:
        """Start a new journey seeded from the organization defaults."""
        self._authorize("create_journey")
        organization = self.require_organization()
        record = JourneyRecord(
            id=new_id("journey"),
            organization_id=organization.id,
            research_complete=False,
            targeting_selected_domains=list(organization.selected_domains),
            targeting_selected_use_cases=list(organization.selected_use_cases),
            high_level_selected_domains=list(organization.selected_domains),
            high_level_selected_use_cases=list(organization.selected_use_cases),
            deep_dive_selected_domains=list(organization.selected_domains),
            deep_dive_selected_use_cases=list(organization.selected_use_cases),
            current_step_id=RESEARCH_KEY,
        )

        self._journeys[record.id] = record
        try:
            self.store.save_journey(record)
            self.commit_organization("create_journey", current_journey_id=record.id)
        except Exception as e:
            del self._journeys[record.id]
            log_rollback("create_journey", record.id, e, organization_id=organization.id)
            raise
        self._activate(record.id)

        log_transition("create_journey", record.id, organization_id=organization.id)
        return record

    def switch_journey(self, journey_id: str) -> JourneyView:
        """Make ``journey_id`` active; the view is re-projected from its record alone."""
        self.require_organization()
        if journey_id not in self._journeys:
            raise NotFoundError(f"Journey '{journey_id}' not found", operation="switch_journey", target_id=journey_id)
        self._activate(journey_id)
        log_transition("switch_journey", journey_id)
        return self.view()

    def apply_remote_update(self, fields: Dict[str, Any], *, journey_id: Optional[str] = None) -> None:
        """Overwrite local fields with a store notification; never merges lists."""
        if self._writing:
            return
        target = journey_id or self._active_id
        record = self._journeys.get(target) if target else None
        if record is None:
            return
        self._journeys[target] = record.merge_dict(fields)
        observability_hooks.log_workflow_event("remote_update_applied", journey_id=target, fields=sorted(fields))

    # ------------------------------------------------------------------
    # Research and steps
    # ------------------------------------------------------------------

    def mark_research_complete(self, complete: bool = True) -> JourneyRecord:
        return self.commit("mark_research_complete", research_complete=bool(complete))

    def select_step(self, step_id: str) -> str:
        record = self.require_record()
        chosen = select_step(self.steps(), step_id, record.current_step_id)
        if chosen != record.current_step_id:
            self.commit("select_step", current_step_id=chosen)
        return chosen

    def toggle_step_visibility(self, key: str, enabled: bool) -> Dict[str, bool]:
        """Store a per-journey visibility override when it differs from the global flag."""
        if key == RESEARCH_KEY:
            raise ValidationError("The research step is always visible.", operation="toggle_step_visibility", target_id=key)
        if key not in STEP_SETTING_KEYS:
            raise ValidationError(f"Unknown step setting '{key}'", operation="toggle_step_visibility", target_id=key)

        record = self.require_record()
        overrides = dict(record.step_overrides)
        if bool(enabled) == self.step_settings[key]:
            overrides.pop(key, None)
        else:
            overrides[key] = bool(enabled)

        preview = record.with_fields(step_overrides=overrides)
        steps = build_steps(preview, self.step_settings, preview.custom_steps)
        current = resolve_current_step(steps, record.current_step_id)
        self.commit("toggle_step_visibility", step_overrides=overrides, current_step_id=current)
        return self.step_settings.overlay(overrides).to_dict()

    # ------------------------------------------------------------------
    # Selections
    # ------------------------------------------------------------------

    def toggle_domain(self, phase: SelectionPhase | str, domain: str) -> PhaseSelection:
        """Add or remove ``domain``; use cases outside the selected domains are dropped."""
        phase = SelectionPhase.parse(phase)
        if not domain or not domain.strip():
            raise ValidationError("Domain is required.", operation="toggle_domain")
        current = self.view().selection(phase)
        domains = _toggle(current.domains, domain.strip())

        by_id = {item.id: item for item in self.candidate_pool()}
        allowed = set(domains)
        use_cases = [
            uid for uid in current.use_cases
            if uid in by_id and (by_id[uid].domain or DEFAULT_DOMAIN) in allowed
        ]

        domains_field, use_cases_field = SELECTION_FIELDS[phase]
        self.commit("toggle_domain", **{domains_field: domains, use_cases_field: use_cases})
        return PhaseSelection(tuple(domains), tuple(use_cases))

    def toggle_use_case(self, phase: SelectionPhase | str, use_case_id: str) -> PhaseSelection:
        phase = SelectionPhase.parse(phase)
        if not use_case_id:
            raise ValidationError("Use case id is required.", operation="toggle_use_case")
        current = self.view().selection(phase)
        use_cases = _toggle(current.use_cases, use_case_id)
        _, use_cases_field = SELECTION_FIELDS[phase]
        self.commit("toggle_use_case", **{use_cases_field: use_cases})
        return PhaseSelection(current.domains, tuple(use_cases))

    def save_output(self, url: str) -> str:
        """Record the kickoff presentation link; an empty value clears it."""
        normalized = (url or "").strip()
        self.commit("save_output", kickoff_presentation_url=normalized)
        return normalized

    # ------------------------------------------------------------------
    # Notes and meetings
    # ------------------------------------------------------------------

    @staticmethod
    def _new_note(text: str, file_name: str) -> Note:
        content = (text or "").strip()
        if not content:
            raise ValidationError("Note text is required.", operation="add_note")
        return Note(id=new_id("note"), file_name=file_name, content=content)

    def add_kickoff_note(self, text: str, file_name: str = "Pasted notes") -> Note:
        note = self._new_note(text, file_name)
        record = self.require_record()
        self.commit("add_kickoff_note", kickoff_notes=record.kickoff_notes + (note,))
        return note

    def remove_kickoff_note(self, note_id: str) -> None:
        record = self.require_record()
        remaining = tuple(note for note in record.kickoff_notes if note.id != note_id)
        if len(remaining) == len(record.kickoff_notes):
            raise NotFoundError(f"Note '{note_id}' not found", operation="remove_kickoff_note", target_id=note_id)
        self.commit("remove_kickoff_note", kickoff_notes=remaining)

    def _find_meeting(self, phase: SelectionPhase, meeting_id: str) -> Tuple[int, Meeting]:
        for index, meeting in enumerate(self.require_record().meetings(phase)):
            if meeting.id == meeting_id:
                return index, meeting
        raise NotFoundError(f"Meeting '{meeting_id}' not found", operation="find_meeting", target_id=meeting_id)

    def _replace_meeting(self, transition: str, phase: SelectionPhase, index: int, meeting: Meeting) -> Meeting:
        meetings = list(self.require_record().meetings(phase))
        meetings[index] = meeting
        self.commit(transition, **{MEETING_FIELDS[phase]: tuple(meetings)})
        return meeting

    def add_meeting(
        self,
        phase: SelectionPhase | str,
        domain: Optional[str] = None,
        function_name: Optional[str] = None,
    ) -> Meeting:
        """Append a meeting, seeded from the phase's selected use cases."""
        phase = _meeting_phase(phase)
        record = self.require_record()
        selection = self.view().selection(phase)
        existing = record.meetings(phase)

        by_id = {item.id: item for item in self.candidate_pool()}
        selected = [by_id[uid] for uid in selection.use_cases if uid in by_id]
        seed = None
        if selected:
            seed = selected[len(existing)] if len(existing) < len(selected) else selected[0]

        meeting = Meeting(
            id=new_id("meeting"),
            domain=(domain or "").strip()
            or (seed.domain if seed else "")
            or (selection.domains[0] if selection.domains else DEFAULT_DOMAIN),
            function_name=(function_name or "").strip()
            or (seed.process or seed.title if seed else "")
            or NEW_MEETING_NAMES[phase],
        )
        self.commit("add_meeting", **{MEETING_FIELDS[phase]: existing + (meeting,)})
        return meeting

    def remove_meeting(self, phase: SelectionPhase | str, meeting_id: str) -> None:
        phase = _meeting_phase(phase)
        index, _ = self._find_meeting(phase, meeting_id)
        meetings = list(self.require_record().meetings(phase))
        del meetings[index]
        self.commit("remove_meeting", **{MEETING_FIELDS[phase]: tuple(meetings)})

    def add_meeting_note(
        self,
        phase: SelectionPhase | str,
        meeting_id: str,
        text: str,
        file_name: str = "Pasted notes",
    ) -> Note:
        phase = _meeting_phase(phase)
        note = self._new_note(text, file_name)
        index, meeting = self._find_meeting(phase, meeting_id)
        self._replace_meeting("add_meeting_note", phase, index, meeting.with_notes(list(meeting.notes) + [note]))
        return note

    def remove_meeting_note(self, phase: SelectionPhase | str, meeting_id: str, note_id: str) -> None:
        phase = _meeting_phase(phase)
        index, meeting = self._find_meeting(phase, meeting_id)
        remaining = [note for note in meeting.notes if note.id != note_id]
        if len(remaining) == len(meeting.notes):
            raise NotFoundError(f"Note '{note_id}' not found", operation="remove_meeting_note", target_id=note_id)
        self._replace_meeting("remove_meeting_note", phase, index, meeting.with_notes(remaining))

    def set_meeting_presentation_url(self, phase: SelectionPhase | str, meeting_id: str, url: str) -> Meeting:
        phase = _meeting_phase(phase)
        index, meeting = self._find_meeting(phase, meeting_id)
        updated = replace(meeting, presentation_url=(url or "").strip(), updated_at=utc_timestamp())
        return self._replace_meeting("set_meeting_presentation_url", phase, index, updated)

    def _extract_all(self, files: Iterable[UploadedFile]) -> Tuple[List[Tuple[UploadedFile, str]], List[str]]:
        if self.extractor is None:
            raise StateError("No text extractor configured", operation="ingest_files")
        extracted: List[Tuple[UploadedFile, str]] = []
        warnings: List[str] = []
        for upload in files:
            try:
                text = self.extractor.extract(upload)
            except ExtractionError as e:
                warnings.append(f"{upload.file_name}: {e.reason}")
                continue
            if not text.strip():
                warnings.append(f"{upload.file_name}: No readable text found")
                continue
            extracted.append((upload, text.strip()))
        return extracted, warnings

    def ingest_files(
        self,
        files: Iterable[UploadedFile],
        *,
        phase: SelectionPhase | str | None = None,
        meeting_id: Optional[str] = None,
    ) -> Tuple[List[Note], List[str]]:
        """Extract each file independently and commit the successes in one write.

        Without a phase the notes go to the kickoff meeting; with a phase they
        go to ``meeting_id`` of that phase.
        """
        extracted, warnings = self._extract_all(files)
        notes = [Note(id=new_id("note"), file_name=upload.file_name, content=text) for upload, text in extracted]
        if notes:
            if phase is None:
                record = self.require_record()
                self.commit("ingest_files", kickoff_notes=record.kickoff_notes + tuple(notes))
            else:
                meeting_phase = _meeting_phase(phase)
                if not meeting_id:
                    raise ValidationError("Meeting id is required for meeting uploads.", operation="ingest_files")
                index, meeting = self._find_meeting(meeting_phase, meeting_id)
                self._replace_meeting("ingest_files", meeting_phase, index, meeting.with_notes(list(meeting.notes) + notes))
        if warnings:
            logger.warning(f"Skipped {len(warnings)} uploaded files: {'; '.join(warnings)}")
        return notes, warnings

    def ingest_research_documents(self, files: Iterable[UploadedFile]) -> Tuple[List[Document], List[str]]:
        """Attach extracted files to the organization's research documents."""
        extracted, warnings = self._extract_all(files)
        documents = [Document(id=new_id("doc"), file_name=upload.file_name, content=text) for upload, text in extracted]
        if documents:
            organization = self.require_organization()
            self.commit_organization("ingest_research_documents", documents=list(organization.documents) + documents)
        return documents, warnings

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    def _research_text(self) -> str:
        organization = self.require_organization()
        parts = [organization.research_summary] + [doc.content for doc in organization.documents]
        return "\n\n".join(part for part in parts if part).strip()

    def source_text(self, phase: SelectionPhase | str) -> str:
        """Note text that feeds recommendations for ``phase``."""
        phase = SelectionPhase.parse(phase)
        if phase is SelectionPhase.TARGETING:
            return self._research_text()
        record = self.require_record()
        if phase is SelectionPhase.HIGH_LEVEL:
            return combine_note_text(record.kickoff_notes)
        return combine_meeting_text(record.high_level_meetings)

    def hypotheses(self, phase: SelectionPhase | str) -> List[Recommendation]:
        """Recommendations for ``phase`` computed from the committed record.

        Targeting ranks the whole pool against research content; high-level
        ranks the targeted use cases against kickoff notes; deep-dive ranks
        the high-level use cases against the high-level meeting notes.
        """
        phase = SelectionPhase.parse(phase)
        view = self.view()
        pool = self.candidate_pool()
        notes = self.source_text(phase)

        if phase is SelectionPhase.TARGETING:
            candidates = pool
            domains = list(view.selection(SelectionPhase.TARGETING).domains)
            explanations = GENERIC_EXPLANATION
        elif phase is SelectionPhase.HIGH_LEVEL:
            targeted = view.selection(SelectionPhase.TARGETING)
            candidates = select_pool(targeted.use_cases, pool)
            domains = list(targeted.domains) or derive_domains(targeted.use_cases, pool)
            explanations = KICKOFF_EXPLANATION
        else:
            high_level = view.selection(SelectionPhase.HIGH_LEVEL)
            candidates = select_pool(high_level.use_cases, pool) or select_pool(
                view.selection(SelectionPhase.TARGETING).use_cases, pool
            )
            domains = (
                list(view.selection(SelectionPhase.DEEP_DIVE).domains)
                or list(high_level.domains)
                or derive_domains([item.id for item in candidates], pool)
            )
            explanations = HIGH_LEVEL_EXPLANATION

        fresh = recommend(notes, domains, candidates, explanations=explanations)
        selected = set(view.selection(phase).use_cases)
        ranked = merge_recommendations([rec for rec in fresh if rec.use_case_id in selected], fresh)
        log_recommendations(phase.value, view.journey_id, len(ranked), candidates=len(candidates))
        return ranked

    def recommended_ids(self, phase: SelectionPhase | str) -> List[str]:
        return recommended_ids(self.hypotheses(phase))

    def notes_digest(self, phase: SelectionPhase | str) -> List[str]:
        return key_sentences(self.source_text(phase))
