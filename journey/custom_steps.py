"""Custom journey steps: CRUD, output renderers and step chat."""

from __future__ import annotations

import logging
import re
import threading
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence

from .errors import NotFoundError, ValidationError
from .journey_logging import log_custom_step_event, log_error_with_context
from .models import (
    DEFAULT_MODEL_ID,
    SUPPORTED_MODELS,
    ChatTurn,
    CustomStep,
    Document,
    JourneyRecord,
    OutputType,
    StepTemplate,
    new_id,
    utc_timestamp,
)
from .ports import CompletionClient

logger = logging.getLogger("journey.custom_steps")

CONTEXT_PREFIX = "Custom step context:\n"
EMPTY_REPLY = "No response returned."
FALLBACK_REPLY = "I could not respond right now. Please try again."
PROMPT_LOADED = "Prompt loaded:\n{prompt}"


# ----------------------------------------------------------------------
# Label resolution
# ----------------------------------------------------------------------


class LabelResolver:
    """Maps document and transcript ids referenced by custom steps to labels."""

    def __init__(self, documents: Sequence[Document], record: Optional[JourneyRecord]):
        self.documents: Dict[str, str] = {
            doc.id: doc.file_name or "Untitled document" for doc in documents
        }
        self.transcripts: Dict[str, str] = {}
        if record is None:
            return
        for note in record.kickoff_notes:
            self.transcripts[f"kickoff-{note.id}"] = f"Kickoff: {note.file_name or 'Meeting note'}"
        for prefix, meetings in (("fhl", record.high_level_meetings), ("fdd", record.deep_dive_meetings)):
            for meeting in meetings:
                for note in meeting.notes:
                    self.transcripts[f"{prefix}-{meeting.id}-{note.id}"] = (
                        f"{meeting.domain} / {meeting.function_name}: {note.file_name or 'Meeting note'}"
                    )

    def document_labels(self, ids: Sequence[str]) -> List[str]:
        return [self.documents.get(item, item) for item in ids]

    def transcript_labels(self, ids: Sequence[str]) -> List[str]:
        return [self.transcripts.get(item, item) for item in ids]

    def options(self) -> Dict[str, List[Dict[str, str]]]:
        return {
            "documents": [{"id": k, "label": v} for k, v in self.documents.items()],
            "transcripts": [{"id": k, "label": v} for k, v in self.transcripts.items()],
        }


# ----------------------------------------------------------------------
# Renderers
# ----------------------------------------------------------------------


@dataclass(slots=True)
class RenderedOutput:
    output_type: OutputType
    content: str
    media_type: str
    file_name: str

    def to_dict(self) -> Dict[str, str]:
        return {
            "output_type": self.output_type.value,
            "content": self.content,
            "media_type": self.media_type,
            "file_name": self.file_name,
        }


def _slug(title: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", title.lower()).strip("-")
    return slug or "custom-step"


def context_text(step: CustomStep, labels: LabelResolver) -> str:
    """Plain-text summary of a step sent ahead of every chat turn."""
    docs = labels.document_labels(step.document_ids)
    transcripts = labels.transcript_labels(step.transcript_ids)
    return "\n".join([
        f"Step Title: {step.title}",
        f"Description: {step.description or 'N/A'}",
        f"AI Model: {step.model_id or 'N/A'}",
        f"Output: {step.output_type.value}",
        f"Prompt: {step.prompt or 'N/A'}",
        f"Documents: {'; '.join(docs) if docs else 'None selected'}",
        f"Transcripts: {'; '.join(transcripts) if transcripts else 'None selected'}",
        f"Template: {step.template.file_name if step.template else 'None'}",
    ])


def _csv_cell(value: Any) -> str:
    return '"' + str(value).replace('"', '""') + '"'


def render_table(step: CustomStep, labels: LabelResolver) -> str:
    """Two-column ``Field,Value`` table with every cell quoted."""
    rows = [
        ("Field", "Value"),
        ("Title", step.title),
        ("Description", step.description or ""),
        ("AI Model", step.model_id or ""),
        ("Output", step.output_type.value),
        ("Prompt", step.prompt or ""),
        ("Documents", " | ".join(labels.document_labels(step.document_ids))),
        ("Transcripts", " | ".join(labels.transcript_labels(step.transcript_ids))),
    ]
    return "\n".join(",".join(_csv_cell(cell) for cell in row) for row in rows)


def _bullets(values: Sequence[str]) -> str:
    return "\n".join(f"- {value}" for value in values) if values else "- None selected"


def render_outline(step: CustomStep, labels: LabelResolver) -> str:
    return (
        f"# {step.title}\n\n"
        f"## Objective\n{step.description or 'Define the objective'}\n\n"
        f"## Prompt\n{step.prompt or 'No prompt provided'}\n\n"
        f"## Source Documents\n{_bullets(labels.document_labels(step.document_ids))}\n\n"
        f"## Source Transcripts\n{_bullets(labels.transcript_labels(step.transcript_ids))}\n\n"
        f"## Suggested Output\nPresentation"
    )


def _render_chat(step: CustomStep, labels: LabelResolver, transcript: Sequence[ChatTurn]) -> RenderedOutput:
    lines = [context_text(step, labels), ""]
    lines.extend(f"{turn.role.title()}: {turn.content}" for turn in transcript)
    return RenderedOutput(OutputType.CHAT, "\n".join(lines).rstrip(), "text/plain", f"{_slug(step.title)}.txt")


def _render_tabular(step: CustomStep, labels: LabelResolver, transcript: Sequence[ChatTurn]) -> RenderedOutput:
    return RenderedOutput(OutputType.TABULAR, render_table(step, labels), "text/csv", f"{_slug(step.title)}.csv")


def _render_presentation(step: CustomStep, labels: LabelResolver, transcript: Sequence[ChatTurn]) -> RenderedOutput:
    return RenderedOutput(
        OutputType.PRESENTATION, render_outline(step, labels), "text/markdown", f"{_slug(step.title)}.md"
    )


Renderer = Callable[[CustomStep, LabelResolver, Sequence[ChatTurn]], RenderedOutput]

RENDERERS: Dict[OutputType, Renderer] = {
    OutputType.CHAT: _render_chat,
    OutputType.TABULAR: _render_tabular,
    OutputType.PRESENTATION: _render_presentation,
}

_unrendered = [member.value for member in OutputType if member not in RENDERERS]
if _unrendered:
    raise RuntimeError(f"No renderer registered for output types: {', '.join(_unrendered)}")


# ----------------------------------------------------------------------
# Manager
# ----------------------------------------------------------------------


class CustomStepManager:
    """CRUD and chat over the active journey's custom steps.

    Steps live in the journey record; this class reads them as an id-keyed
    arena and writes every change through the state machine's two-phase
    commit. Chat transcripts are kept per step for the session and only
    stored on the step by :meth:`persist_transcript`.
    """

    def __init__(self, state, completion: Optional[CompletionClient] = None, *, default_model: str = DEFAULT_MODEL_ID):
        self.state = state
        self.completion = completion
        self.default_model = default_model if default_model in SUPPORTED_MODELS else DEFAULT_MODEL_ID
        self._transcripts: Dict[str, List[ChatTurn]] = {}
        self._in_flight: set[str] = set()
        self._lock = threading.Lock()
        state.add_reset_listener(self._on_journey_changed)

    def _on_journey_changed(self, journey_id: Optional[str]) -> None:
        with self._lock:
            self._transcripts.clear()
            self._in_flight.clear()

    # ------------------------------------------------------------------
    # Arena
    # ------------------------------------------------------------------

    def _arena(self) -> Dict[str, CustomStep]:
        return {step.id: step for step in self.state.require_record().custom_steps}

    def labels(self) -> LabelResolver:
        organization = self.state.organization
        return LabelResolver(organization.documents if organization else [], self.state.record)

    def list_steps(self) -> List[CustomStep]:
        return list(self._arena().values())

    def get(self, step_id: str) -> CustomStep:
        step = self._arena().get(step_id)
        if step is None:
            raise NotFoundError(f"Custom step '{step_id}' not found", operation="get_custom_step", target_id=step_id)
        return step

    def _normalize(self, step: CustomStep) -> CustomStep:
        issues = step.validate()
        if issues:
            raise ValidationError(issues[0] + ".", operation="custom_step", target_id=step.id)
        labels = self.labels()
        step.title = step.title.strip()
        step.description = (step.description or "").strip() or None
        step.prompt = (step.prompt or "").strip() or None
        if step.model_id not in SUPPORTED_MODELS:
            step.model_id = self.default_model
        step.document_ids = [item for item in dict.fromkeys(step.document_ids) if item in labels.documents]
        step.transcript_ids = [item for item in dict.fromkeys(step.transcript_ids) if item in labels.transcripts]
        return step

    def _commit(self, transition: str, arena: Dict[str, CustomStep], step_id: str) -> None:
        self.state.commit(transition, custom_steps=tuple(arena.values()))
        log_custom_step_event(transition, self.state.active_journey_id, step_id)

    # ------------------------------------------------------------------
    # CRUD
    # ------------------------------------------------------------------

    def create(self, fields: Mapping[str, Any]) -> CustomStep:
        """Validate and append a new custom step to the active journey."""
        title = (fields.get("title") or "").strip()
        if not title:
            raise ValidationError("Step title is required.", operation="create_custom_step")

        step = CustomStep(
            id=new_id("custom-step"),
            title=title,
            description=fields.get("description"),
            model_id=fields.get("model_id") or self.default_model,
            prompt=fields.get("prompt"),
            document_ids=list(fields.get("document_ids") or []),
            transcript_ids=list(fields.get("transcript_ids") or []),
            output_type=OutputType.parse(fields.get("output_type")),
        )
        step = self._normalize(step)

        arena = self._arena()
        arena[step.id] = step
        self._commit("create", arena, step.id)
        return step

    def update(self, step_id: str, mutator: Callable[[CustomStep], Optional[CustomStep]]) -> CustomStep:
        """Apply ``mutator`` to a copy of the step and commit the result."""
        arena = self._arena()
        if step_id not in arena:
            raise NotFoundError(f"Custom step '{step_id}' not found", operation="update_custom_step", target_id=step_id)

        draft = CustomStep.from_dict(arena[step_id].to_dict())
        result = mutator(draft)
        updated = self._normalize(result if result is not None else draft)
        updated.id = step_id
        updated.updated_at = utc_timestamp()

        arena[step_id] = updated
        self._commit("update", arena, step_id)
        return updated

    def update_fields(self, step_id: str, fields: Mapping[str, Any]) -> CustomStep:
        editable = {"title", "description", "model_id", "prompt", "document_ids", "transcript_ids", "output_type"}
        unknown = set(fields) - editable
        if unknown:
            raise ValidationError(f"Unknown custom step fields: {', '.join(sorted(unknown))}", operation="update_custom_step")

        def apply(step: CustomStep) -> None:
            for name, value in fields.items():
                if name == "output_type":
                    value = OutputType.parse(value)
                    if value is not OutputType.TABULAR:
                        step.template = None
                elif name in ("document_ids", "transcript_ids"):
                    value = list(value or [])
                setattr(step, name, value)

        return self.update(step_id, apply)

    def remove(self, step_id: str) -> None:
        arena = self._arena()
        if step_id not in arena:
            raise NotFoundError(f"Custom step '{step_id}' not found", operation="remove_custom_step", target_id=step_id)
        del arena[step_id]
        self._commit("remove", arena, step_id)
        with self._lock:
            self._transcripts.pop(step_id, None)

    def attach_template(self, step_id: str, file_name: str, payload: bytes) -> CustomStep:
        """Attach or replace the template of a tabular step."""
        if not file_name or not payload:
            raise ValidationError("Template file name and content are required.", operation="attach_template", target_id=step_id)
        if self.get(step_id).output_type is not OutputType.TABULAR:
            raise ValidationError("Templates can only be attached to tabular steps.", operation="attach_template", target_id=step_id)

        def apply(step: CustomStep) -> None:
            step.template = StepTemplate(file_name=file_name, payload=payload)

        return self.update(step_id, apply)

    def remove_template(self, step_id: str) -> CustomStep:
        def apply(step: CustomStep) -> None:
            step.template = None

        return self.update(step_id, apply)

    # ------------------------------------------------------------------
    # Output
    # ------------------------------------------------------------------

    def render(self, step_id: str) -> RenderedOutput:
        step = self.get(step_id)
        return RENDERERS[step.output_type](step, self.labels(), self.transcript(step_id))

    def export_table(self, step_id: str) -> str:
        return render_table(self.get(step_id), self.labels())

    # ------------------------------------------------------------------
    # Chat
    # ------------------------------------------------------------------

    def transcript(self, step_id: str) -> List[ChatTurn]:
        with self._lock:
            turns = self._transcripts.get(step_id)
            if turns is not None:
                return list(turns)
        return list(self.get(step_id).transcript)

    def open_chat(self, step_id: str) -> List[ChatTurn]:
        """Transcript for ``step_id``; an empty one is seeded with the step prompt."""
        step = self.get(step_id)
        with self._lock:
            turns = self._transcripts.setdefault(step_id, list(step.transcript))
            if not turns and step.prompt:
                turns.append(ChatTurn("assistant", PROMPT_LOADED.format(prompt=step.prompt)))
            return list(turns)

    def send_message(self, step_id: str, text: str) -> ChatTurn:
        """Send ``text`` on a chat step and append the assistant reply.

        Exactly one user turn and one assistant turn are appended per call;
        when the completion service fails the assistant turn is a fixed
        apology. A second send on the same step while one is outstanding is
        rejected.
        """
        message = (text or "").strip()
        if not message:
            raise ValidationError("Message text is required.", operation="send_message", target_id=step_id)
        step = self.get(step_id)
        if step.output_type is not OutputType.CHAT:
            raise ValidationError("Only chat steps accept messages.", operation="send_message", target_id=step_id)

        with self._lock:
            if step_id in self._in_flight:
                raise ValidationError("A message is already being sent for this step.", operation="send_message", target_id=step_id)
            self._in_flight.add(step_id)
            turns = self._transcripts.setdefault(step_id, list(step.transcript))
            previous = list(turns)
            turns.append(ChatTurn("user", message))

        try:
            context = [{"role": "assistant", "content": CONTEXT_PREFIX + context_text(step, self.labels())}]
            context.extend(turn.to_dict() for turn in previous)
            try:
                if self.completion is None:
                    raise RuntimeError("No completion client configured")
                reply = (self.completion.complete(message, context, model=step.model_id) or "").strip() or EMPTY_REPLY
                status = "ok"
            except Exception as e:
                log_error_with_context(e, {"operation": "send_message", "target_id": step_id})
                reply = FALLBACK_REPLY
                status = "fallback"

            answer = ChatTurn("assistant", reply)
            with self._lock:
                # A journey switch during the call drops the transcript.
                if self._transcripts.get(step_id) is turns:
                    turns.append(answer)
                else:
                    status = "discarded"
            log_custom_step_event("message", self.state.active_journey_id, step_id, status=status)
            return answer
        finally:
            with self._lock:
                self._in_flight.discard(step_id)

    def persist_transcript(self, step_id: str) -> CustomStep:
        turns = self.transcript(step_id)

        def apply(step: CustomStep) -> None:
            step.transcript = list(turns)

        return self.update(step_id, apply)
