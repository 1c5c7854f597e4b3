"""Data models for engagement journeys.

This module contains the core data structures used throughout the journey
engine: organizations, journeys and their phase payloads, candidate use
cases, notes and meetings, custom steps, recommendations and step views.
"""

from __future__ import annotations

import base64
import uuid
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Tuple


DEFAULT_DOMAIN = "General"
DEFAULT_FUNCTION_NAME = "General Function"
DEFAULT_MODEL_ID = "gemini-2.5-pro"
CUSTOM_PHASE = "Custom"

# Generative models a custom step may run on.
SUPPORTED_MODELS: Tuple[str, ...] = (
    "gemini-2.5-pro",
    "gemini-2.5-flash",
    "gemini-2.5-flash-lite",
)


def utc_timestamp() -> str:
    """Current UTC time as an ISO-8601 string with a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def new_id(prefix: str) -> str:
    """Generate a unique identifier with a readable prefix."""
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class SelectionPhase(str, Enum):
    """Phases that carry their own domain and use-case selection."""

    TARGETING = "targeting"
    HIGH_LEVEL = "high_level"
    DEEP_DIVE = "deep_dive"

    @classmethod
    def parse(cls, value: "SelectionPhase | str") -> "SelectionPhase":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower().replace("-", "_"))
        except ValueError:
            from .errors import ValidationError
            raise ValidationError(
                f"Unknown phase '{value}'. Expected one of: {', '.join(p.value for p in cls)}",
                operation="parse_phase",
            )


class OutputType(str, Enum):
    """Output contract of a custom step."""

    CHAT = "CHAT"
    TABULAR = "TABULAR"
    PRESENTATION = "PRESENTATION"

    @classmethod
    def parse(cls, value: "OutputType | str | None") -> "OutputType":
        if isinstance(value, cls):
            return value
        if not value:
            return cls.CHAT
        normalized = str(value).strip().upper()
        legacy = {"CHAT_INTERFACE": cls.CHAT, "EXCEL_DOC": cls.TABULAR, "CSV": cls.TABULAR}
        if normalized in legacy:
            return legacy[normalized]
        try:
            return cls(normalized)
        except ValueError:
            from .errors import ValidationError
            raise ValidationError(
                f"Unknown output type '{value}'. Expected one of: {', '.join(t.value for t in cls)}",
                operation="parse_output_type",
            )


# Record field names per phase: (domains, use cases).
SELECTION_FIELDS: Dict[SelectionPhase, Tuple[str, str]] = {
    SelectionPhase.TARGETING: ("targeting_selected_domains", "targeting_selected_use_cases"),
    SelectionPhase.HIGH_LEVEL: ("high_level_selected_domains", "high_level_selected_use_cases"),
    SelectionPhase.DEEP_DIVE: ("deep_dive_selected_domains", "deep_dive_selected_use_cases"),
}

MEETING_FIELDS: Dict[SelectionPhase, str] = {
    SelectionPhase.HIGH_LEVEL: "high_level_meetings",
    SelectionPhase.DEEP_DIVE: "deep_dive_meetings",
}


@dataclass(slots=True)
class UseCase:
    """Candidate work item scoped to one domain."""

    id: str
    title: str
    domain: str = DEFAULT_DOMAIN
    process: str = ""
    description: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "title": self.title,
            "domain": self.domain,
            "process": self.process,
            "description": self.description,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "UseCase":
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            domain=data.get("domain") or DEFAULT_DOMAIN,
            process=data.get("process") or "",
            description=data.get("description") or "",
        )


@dataclass(slots=True)
class Note:
    """Free-text note pasted or extracted from an uploaded file."""

    id: str
    file_name: str
    content: str
    uploaded_at: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> Dict[str, str]:
        return {
            "id": self.id,
            "file_name": self.file_name,
            "content": self.content,
            "uploaded_at": self.uploaded_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Note":
        return cls(
            id=data["id"],
            file_name=data.get("file_name") or "",
            content=data.get("content") or "",
            uploaded_at=data.get("uploaded_at") or utc_timestamp(),
        )


@dataclass(slots=True)
class Meeting:
    """Functional meeting for one domain/function pair with attached notes."""

    id: str
    domain: str
    function_name: str
    presentation_url: str = ""
    notes: List[Note] = field(default_factory=list)
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "domain": self.domain,
            "function_name": self.function_name,
            "presentation_url": self.presentation_url,
            "notes": [note.to_dict() for note in self.notes],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Meeting":
        return cls(
            id=data["id"],
            domain=data.get("domain") or DEFAULT_DOMAIN,
            function_name=data.get("function_name") or "",
            presentation_url=data.get("presentation_url") or "",
            notes=[Note.from_dict(item) for item in data.get("notes", [])],
            created_at=data.get("created_at") or utc_timestamp(),
            updated_at=data.get("updated_at") or utc_timestamp(),
        )

    def with_notes(self, notes: List[Note]) -> "Meeting":
        return replace(self, notes=notes, updated_at=utc_timestamp())


@dataclass(slots=True)
class Document:
    """Research document attached to an organization."""

    id: str
    file_name: str
    content: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "file_name": self.file_name, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        return cls(id=data["id"], file_name=data.get("file_name") or "", content=data.get("content") or "")


@dataclass(slots=True)
class UploadedFile:
    """Raw upload handed to the text extractor."""

    file_name: str
    data: bytes
    content_type: str = ""


@dataclass(slots=True)
class StepTemplate:
    """Template file attached to a tabular custom step."""

    file_name: str
    payload: bytes
    uploaded_at: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> Dict[str, str]:
        return {
            "file_name": self.file_name,
            "payload": base64.b64encode(self.payload).decode("ascii"),
            "uploaded_at": self.uploaded_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StepTemplate":
        return cls(
            file_name=data.get("file_name") or "",
            payload=base64.b64decode(data.get("payload") or ""),
            uploaded_at=data.get("uploaded_at") or utc_timestamp(),
        )


@dataclass(slots=True)
class ChatTurn:
    """One turn of a custom step chat transcript."""

    role: str
    content: str

    def to_dict(self) -> Dict[str, str]:
        return {"role": self.role, "content": self.content}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ChatTurn":
        return cls(role=data.get("role", "assistant"), content=data.get("content", ""))


@dataclass(slots=True)
class CustomStep:
    """Operator-defined journey step with a generative prompt and output contract."""

    id: str
    title: str
    description: Optional[str] = None
    phase: str = CUSTOM_PHASE
    model_id: str = DEFAULT_MODEL_ID
    prompt: Optional[str] = None
    document_ids: List[str] = field(default_factory=list)
    transcript_ids: List[str] = field(default_factory=list)
    output_type: OutputType = OutputType.CHAT
    template: Optional[StepTemplate] = None
    transcript: List[ChatTurn] = field(default_factory=list)
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "title": self.title,
            "description": self.description,
            "phase": self.phase,
            "model_id": self.model_id,
            "prompt": self.prompt,
            "document_ids": list(self.document_ids),
            "transcript_ids": list(self.transcript_ids),
            "output_type": self.output_type.value,
            "template": self.template.to_dict() if self.template else None,
            "transcript": [turn.to_dict() for turn in self.transcript],
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CustomStep":
        template = data.get("template")
        return cls(
            id=data["id"],
            title=data.get("title", ""),
            description=data.get("description"),
            phase=data.get("phase") or CUSTOM_PHASE,
            model_id=data.get("model_id") or DEFAULT_MODEL_ID,
            prompt=data.get("prompt"),
            document_ids=list(data.get("document_ids", [])),
            transcript_ids=list(data.get("transcript_ids", [])),
            output_type=OutputType.parse(data.get("output_type")),
            template=StepTemplate.from_dict(template) if template else None,
            transcript=[ChatTurn.from_dict(turn) for turn in data.get("transcript", [])],
            created_at=data.get("created_at") or utc_timestamp(),
            updated_at=data.get("updated_at") or utc_timestamp(),
        )

    def validate(self) -> List[str]:
        """Validate the step and return any issues."""
        issues = []
        if not self.id:
            issues.append("Step ID is required")
        if not self.title or not self.title.strip():
            issues.append("Step title is required")
        if self.template is not None and self.output_type is not OutputType.TABULAR:
            issues.append("Templates can only be attached to tabular steps")
        return issues


@dataclass(slots=True)
class Recommendation:
    """Ranked candidate item derived from note text. Never persisted."""

    domain: str
    use_case_id: str
    use_case_title: str
    function_name: str
    explanation: str
    score: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "domain": self.domain,
            "use_case_id": self.use_case_id,
            "use_case_title": self.use_case_title,
            "function_name": self.function_name,
            "explanation": self.explanation,
            "score": self.score,
        }


@dataclass(slots=True)
class Organization:
    """Organization profiled across one or more journeys."""

    id: str
    name: str
    owner_id: str
    selected_domains: List[str] = field(default_factory=list)
    selected_use_cases: List[str] = field(default_factory=list)
    research_summary: str = ""
    documents: List[Document] = field(default_factory=list)
    use_cases: List[UseCase] = field(default_factory=list)
    current_journey_id: Optional[str] = None
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)

    @property
    def has_research_content(self) -> bool:
        return bool(self.research_summary.strip()) or bool(self.documents)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "owner_id": self.owner_id,
            "selected_domains": list(self.selected_domains),
            "selected_use_cases": list(self.selected_use_cases),
            "research_summary": self.research_summary,
            "documents": [doc.to_dict() for doc in self.documents],
            "use_cases": [item.to_dict() for item in self.use_cases],
            "current_journey_id": self.current_journey_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Organization":
        return cls(
            id=data["id"],
            name=data.get("name", ""),
            owner_id=data.get("owner_id", ""),
            selected_domains=list(data.get("selected_domains", [])),
            selected_use_cases=list(data.get("selected_use_cases", [])),
            research_summary=data.get("research_summary") or "",
            documents=[Document.from_dict(doc) for doc in data.get("documents", [])],
            use_cases=[UseCase.from_dict(item) for item in data.get("use_cases", [])],
            current_journey_id=data.get("current_journey_id"),
            created_at=data.get("created_at") or utc_timestamp(),
            updated_at=data.get("updated_at") or utc_timestamp(),
        )


def _optional_list(value: Any) -> Optional[List[str]]:
    return list(value) if isinstance(value, list) else None


@dataclass(frozen=True, slots=True)
class JourneyRecord:
    """Persisted journey. Topology is fixed; transitions replace the record.

    A selection field of ``None`` means the journey has no value recorded for
    that phase, which is different from an empty selection.
    """

    id: str
    organization_id: str
    created_at: str = field(default_factory=utc_timestamp)
    updated_at: str = field(default_factory=utc_timestamp)
    research_complete: bool = False
    kickoff_presentation_url: str = ""
    kickoff_notes: Tuple[Note, ...] = ()
    targeting_selected_domains: Optional[List[str]] = None
    targeting_selected_use_cases: Optional[List[str]] = None
    high_level_selected_domains: Optional[List[str]] = None
    high_level_selected_use_cases: Optional[List[str]] = None
    deep_dive_selected_domains: Optional[List[str]] = None
    deep_dive_selected_use_cases: Optional[List[str]] = None
    high_level_meetings: Tuple[Meeting, ...] = ()
    deep_dive_meetings: Tuple[Meeting, ...] = ()
    custom_steps: Tuple[CustomStep, ...] = ()
    step_overrides: Dict[str, bool] = field(default_factory=dict)
    current_step_id: str = "research"

    def selection(self, phase: SelectionPhase) -> Tuple[Optional[List[str]], Optional[List[str]]]:
        domains_field, use_cases_field = SELECTION_FIELDS[phase]
        return getattr(self, domains_field), getattr(self, use_cases_field)

    def meetings(self, phase: SelectionPhase) -> Tuple[Meeting, ...]:
        return getattr(self, MEETING_FIELDS[phase])

    def with_fields(self, **fields: Any) -> "JourneyRecord":
        return replace(self, **fields)

    def to_dict(self, only: Optional[Iterable[str]] = None) -> Dict[str, Any]:
        data = {
            "id": self.id,
            "organization_id": self.organization_id,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "research_complete": self.research_complete,
            "kickoff_presentation_url": self.kickoff_presentation_url,
            "kickoff_notes": [note.to_dict() for note in self.kickoff_notes],
            "targeting_selected_domains": _copy(self.targeting_selected_domains),
            "targeting_selected_use_cases": _copy(self.targeting_selected_use_cases),
            "high_level_selected_domains": _copy(self.high_level_selected_domains),
            "high_level_selected_use_cases": _copy(self.high_level_selected_use_cases),
            "deep_dive_selected_domains": _copy(self.deep_dive_selected_domains),
            "deep_dive_selected_use_cases": _copy(self.deep_dive_selected_use_cases),
            "high_level_meetings": [meeting.to_dict() for meeting in self.high_level_meetings],
            "deep_dive_meetings": [meeting.to_dict() for meeting in self.deep_dive_meetings],
            "custom_steps": [step.to_dict() for step in self.custom_steps],
            "step_overrides": dict(self.step_overrides),
            "current_step_id": self.current_step_id,
        }
        if only is None:
            return data
        return {name: data[name] for name in only}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JourneyRecord":
        return cls(
            id=data["id"],
            organization_id=data.get("organization_id", ""),
            created_at=data.get("created_at") or utc_timestamp(),
            updated_at=data.get("updated_at") or utc_timestamp(),
            research_complete=bool(data.get("research_complete", False)),
            kickoff_presentation_url=data.get("kickoff_presentation_url") or "",
            kickoff_notes=tuple(Note.from_dict(item) for item in data.get("kickoff_notes") or []),
            targeting_selected_domains=_optional_list(data.get("targeting_selected_domains")),
            targeting_selected_use_cases=_optional_list(data.get("targeting_selected_use_cases")),
            high_level_selected_domains=_optional_list(data.get("high_level_selected_domains")),
            high_level_selected_use_cases=_optional_list(data.get("high_level_selected_use_cases")),
            deep_dive_selected_domains=_optional_list(data.get("deep_dive_selected_domains")),
            deep_dive_selected_use_cases=_optional_list(data.get("deep_dive_selected_use_cases")),
            high_level_meetings=tuple(Meeting.from_dict(item) for item in data.get("high_level_meetings") or []),
            deep_dive_meetings=tuple(Meeting.from_dict(item) for item in data.get("deep_dive_meetings") or []),
            custom_steps=tuple(CustomStep.from_dict(item) for item in data.get("custom_steps") or []),
            step_overrides={k: bool(v) for k, v in (data.get("step_overrides") or {}).items()},
            current_step_id=data.get("current_step_id") or "research",
        )

    def merge_dict(self, fields: Dict[str, Any]) -> "JourneyRecord":
        """Return a record with the serialized ``fields`` overwriting this one."""
        data = self.to_dict()
        data.update({k: v for k, v in fields.items() if k in data and k not in ("id", "organization_id")})
        return JourneyRecord.from_dict(data)


def _copy(values: Optional[List[str]]) -> Optional[List[str]]:
    return list(values) if values is not None else None


@dataclass(slots=True)
class OrganizationSnapshot:
    """Organization plus all of its journeys, as loaded from the store."""

    organization: Organization
    journeys: Dict[str, JourneyRecord] = field(default_factory=dict)

    def ordered_journeys(self) -> List[JourneyRecord]:
        """Journeys newest first."""
        return sorted(self.journeys.values(), key=lambda j: (j.created_at, j.id), reverse=True)


@dataclass(frozen=True, slots=True)
class StepDefinition:
    """Fixed backbone step."""

    step_id: str
    setting_key: Optional[str]
    title: str
    phase: str
    status: str
    description: str
    cta: str


@dataclass(slots=True)
class StepView:
    """Step as shown in the navigation, with its computed lock state."""

    step_id: str
    title: str
    phase: str
    description: str
    cta: str
    locked: bool
    status: str = "next"
    setting_key: Optional[str] = None
    is_custom: bool = False
    custom_step_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "step_id": self.step_id,
            "title": self.title,
            "phase": self.phase,
            "description": self.description,
            "cta": self.cta,
            "locked": self.locked,
            "status": self.status,
            "setting_key": self.setting_key,
            "is_custom": self.is_custom,
            "custom_step_id": self.custom_step_id,
        }


RESEARCH_KEY = "research"

# Backbone step definitions, in journey order.
BACKBONE_STEPS: Tuple[StepDefinition, ...] = (
    StepDefinition(
        step_id="research",
        setting_key=RESEARCH_KEY,
        title="Company Research",
        phase="MVP",
        status="current",
        description="Gather baseline company context and prioritize areas for discovery.",
        cta="Go to research",
    ),
    StepDefinition(
        step_id="target_domains",
        setting_key="target_domains",
        title="Target Domains",
        phase="MVP",
        status="next",
        description="Select priority domains and workflows for presentations and delivery planning.",
        cta="Select domains",
    ),
    StepDefinition(
        step_id="kickoff_meeting",
        setting_key="kickoff_meeting",
        title="Kickoff Meeting",
        phase="MVP",
        status="next",
        description="Align on goals, stakeholders, and initial hypotheses for transformation.",
        cta="Create kickoff brief",
    ),
    StepDefinition(
        step_id="hypotheses_high_level",
        setting_key="hypotheses_high_level",
        title="Make Hypotheses (High-level)",
        phase="MVP",
        status="next",
        description="Generate high-level hypotheses to guide functional discovery.",
        cta="Generate hypotheses",
    ),
    StepDefinition(
        step_id="functional_high_level",
        setting_key="functional_high_level",
        title="Functional High-Level",
        phase="MVP",
        status="next",
        description="Create functional high-level assessments across priority areas.",
        cta="Create assessments",
    ),
    StepDefinition(
        step_id="hypotheses_deep_dive",
        setting_key="hypotheses_deep_dive",
        title="Make Hypotheses (Deep Dive)",
        phase="Post MVP 2",
        status="later",
        description="Refine hypotheses with deeper operational and data signals.",
        cta="Refine hypotheses",
    ),
    StepDefinition(
        step_id="functional_deep_dive",
        setting_key="functional_deep_dive",
        title="Functional Deep Dive",
        phase="Post MVP 2",
        status="later",
        description="Run deep-dive diagnostics and capture detailed requirements.",
        cta="Run deep dives",
    ),
    StepDefinition(
        step_id="integration_strategy",
        setting_key="integration_strategy",
        title="Design Integration Strategy",
        phase="Post MVP 3",
        status="later",
        description="Define the integrated target state and sequencing approach.",
        cta="Design strategy",
    ),
    StepDefinition(
        step_id="development_documentation",
        setting_key="development_documentation",
        title="Create Development Documentation",
        phase="Post MVP 3",
        status="later",
        description="Produce implementation artifacts for engineering delivery.",
        cta="Create documentation",
    ),
)

STEP_SETTING_KEYS: Tuple[str, ...] = tuple(
    step.setting_key for step in BACKBONE_STEPS if step.setting_key is not None
)
