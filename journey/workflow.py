"""Operator-facing workflow for engagement journeys.

Every method maps to one operator action and returns a dictionary ready for
display. Expected failures come back as dictionaries with ``error``,
``error_type``, ``suggestion`` and ``message`` instead of being raised.
"""

from __future__ import annotations

import base64
import binascii
import logging
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .custom_steps import CustomStepManager
from .errors import CompletionError, JourneyError, ValidationError
from .journey_logging import log_error_with_context, log_operation, log_performance, observability_hooks
from .models import DEFAULT_MODEL_ID, BACKBONE_STEPS, SelectionPhase, UploadedFile
from .ports import CompletionClient, JourneyStore, TextExtractor
from .recommendations import recommended_ids
from .state import JourneyStateMachine
from .steps import StepSettings

logger = logging.getLogger("journey.workflow")

# Where the operator usually goes after finishing each backbone step.
NEXT_STEP = {
    step.step_id: BACKBONE_STEPS[index + 1].step_id if index + 1 < len(BACKBONE_STEPS) else None
    for index, step in enumerate(BACKBONE_STEPS)
}


def decode_uploads(files: Iterable[Mapping[str, Any]]) -> List[UploadedFile]:
    """Turn ``{"file_name", "content_base64", "content_type"}`` items into uploads."""
    uploads = []
    for item in files:
        name = (item.get("file_name") or "").strip()
        if not name:
            raise ValidationError("Every uploaded file needs a file_name.", operation="decode_uploads")
        try:
            data = base64.b64decode(item.get("content_base64") or "", validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValidationError(f"{name}: content is not valid base64", operation="decode_uploads", target_id=name) from e
        uploads.append(UploadedFile(file_name=name, data=data, content_type=item.get("content_type") or ""))
    logger.debug(f"Decoded {len(uploads)} uploads")
    return uploads


class JourneyWorkflow:
    """Dictionary-returning facade over the state machine and custom steps."""

    def __init__(
        self,
        store: JourneyStore,
        identity: str,
        *,
        extractor: Optional[TextExtractor] = None,
        completion: Optional[CompletionClient] = None,
        default_model: str = DEFAULT_MODEL_ID,
        step_settings: Optional[StepSettings] = None,
    ):
        self.state = JourneyStateMachine(store, identity, extractor=extractor, step_settings=step_settings)
        self.custom_steps = CustomStepManager(self.state, completion, default_model=default_model)
        self.completion = completion

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _failure(self, operation: str, error: Exception, next_step: Optional[str] = None) -> Dict[str, Any]:
        context = {"operation": operation, "journey_id": self.state.active_journey_id}
        if isinstance(error, JourneyError):
            context.update({k: v for k, v in error.context().items() if k != "operation"})
            suggestion = error.suggestion
        else:
            suggestion = "Unexpected failure; check the server log"
        log_error_with_context(error, context)
        return {
            "error": str(error),
            "error_type": type(error).__name__,
            "suggestion": suggestion,
            "next_suggested_step": next_step,
            "message": f"Error: {error}",
        }

    def _run(self, operation: str, action: Callable[[], Dict[str, Any]], next_step: Optional[str] = None) -> Dict[str, Any]:
        try:
            with log_operation(operation, journey_id=self.state.active_journey_id):
                return action()
        except Exception as e:
            return self._failure(operation, e, next_step)

    def _journey_payload(self) -> Dict[str, Any]:
        record = self.state.record
        if record is None:
            return {"journey": None, "steps": [step.to_dict() for step in self.state.steps()]}
        return {
            "journey": self.state.view().to_dict(),
            "steps": [step.to_dict() for step in self.state.steps()],
        }

    # ------------------------------------------------------------------
    # Organizations
    # ------------------------------------------------------------------

    def list_organizations(self) -> Dict[str, Any]:
        def action():
            organizations = self.state.list_organizations()
            return {
                "organizations": [
                    {"id": org.id, "name": org.name, "owner_id": org.owner_id, "updated_at": org.updated_at}
                    for org in organizations
                ],
                "count": len(organizations),
                "message": f"Found {len(organizations)} organizations" if organizations
                else "No organizations yet. Use create_organization to add one.",
            }

        return self._run("list_organizations", action, "create_organization")

    @log_performance("create_organization")
    def create_organization(
        self,
        name: str,
        selected_domains: Iterable[str] = (),
        selected_use_cases: Iterable[str] = (),
    ) -> Dict[str, Any]:
        def action():
            organization = self.state.create_organization(name, selected_domains, selected_use_cases)
            return {
                "organization": organization.to_dict(),
                "state": self.state.state.value,
                "next_suggested_step": "create_journey",
                "workflow_tip": "Next: record research, then start a journey with create_journey",
                "message": f"Organization '{organization.name}' created.",
            }

        return self._run("create_organization", action, "create_organization")

    def select_organization(self, organization_id: str) -> Dict[str, Any]:
        def action():
            state = self.state.select_organization(organization_id)
            payload = self._journey_payload()
            return {
                "organization": self.state.organization.to_dict(),
                "journeys": [
                    {"id": j.id, "created_at": j.created_at, "updated_at": j.updated_at}
                    for j in self.state.journeys()
                ],
                "active_journey_id": self.state.active_journey_id,
                "state": state.value,
                **payload,
                "next_suggested_step": "create_journey" if self.state.record is None else "select_step",
                "message": f"Organization '{self.state.organization.name}' selected.",
            }

        return self._run("select_organization", action, "list_organizations")

    def set_organization_defaults(self, domains: Iterable[str], use_cases: Iterable[str]) -> Dict[str, Any]:
        def action():
            organization = self.state.set_organization_defaults(domains, use_cases)
            return {
                "selected_domains": organization.selected_domains,
                "selected_use_cases": organization.selected_use_cases,
                "message": "Organization defaults saved. New journeys start from these selections.",
            }

        return self._run("set_organization_defaults", action)

    def save_research_summary(self, summary: str) -> Dict[str, Any]:
        def action():
            organization = self.state.save_research_summary(summary)
            return {
                "research_summary": organization.research_summary,
                "has_research_content": organization.has_research_content,
                "next_suggested_step": "target_domains",
                "message": "Research summary saved.",
            }

        return self._run("save_research_summary", action)

    def summarize_research(self) -> Dict[str, Any]:
        """Ask the completion service for a structured research summary."""

        def action():
            text = self.state.source_text(SelectionPhase.TARGETING)
            if not text:
                raise ValidationError("Add a research summary or documents first.", operation="summarize_research")
            try:
                if self.completion is None:
                    raise CompletionError("No completion client configured", operation="summarize_research")
                summary = self.completion.summarize(text)
            except CompletionError as e:
                log_error_with_context(e, e.context())
                return {"summary": None, "error": str(e), "error_type": type(e).__name__,
                        "suggestion": e.suggestion, "message": "Summary unavailable."}
            return {"summary": summary, "message": "Research summarized."}

        return self._run("summarize_research", action)

    def add_use_case(self, title: str, domain: str = "", process: str = "", description: str = "") -> Dict[str, Any]:
        def action():
            item = self.state.add_organization_use_case(title, domain, process, description)
            return {"use_case": item.to_dict(), "message": f"Use case '{item.title}' added."}

        return self._run("add_use_case", action)

    def upload_research_documents(self, files: Iterable[Mapping[str, Any]]) -> Dict[str, Any]:
        def action():
            documents, warnings = self.state.ingest_research_documents(decode_uploads(files))
            return {
                "documents": [{"id": doc.id, "file_name": doc.file_name} for doc in documents],
                "warnings": warnings,
                "message": f"Added {len(documents)} documents" + (f" with {len(warnings)} warnings." if warnings else "."),
            }

        return self._run("upload_research_documents", action)

    def remove_research_document(self, document_id: str) -> Dict[str, Any]:
        def action():
            organization = self.state.remove_research_document(document_id)
            return {"document_count": len(organization.documents), "message": "Document removed."}

        return self._run("remove_research_document", action)

    def candidate_pool(self) -> Dict[str, Any]:
        def action():
            pool = self.state.candidate_pool()
            return {"use_cases": [item.to_dict() for item in pool], "count": len(pool)}

        return self._run("candidate_pool", action)

    # ------------------------------------------------------------------
    # Journeys
    # ------------------------------------------------------------------

    @log_performance("create_journey")
    def create_journey(self) -> Dict[str, Any]:
        def action():
            record = self.state.create_journey()
            observability_hooks.log_workflow_event("journey_started", journey_id=record.id)
            return {
                "journey_id": record.id,
                **self._journey_payload(),
                "next_suggested_step": "research",
                "workflow_tip": "Next: complete research or mark it complete to unlock the remaining steps",
                "message": f"Journey {record.id} created.",
            }

        return self._run("create_journey", action, "select_organization")

    def list_journeys(self) -> Dict[str, Any]:
        def action():
            self.state.require_organization()
            journeys = self.state.journeys()
            return {
                "journeys": [
                    {"id": j.id, "created_at": j.created_at, "research_complete": j.research_complete,
                     "current_step_id": j.current_step_id}
                    for j in journeys
                ],
                "active_journey_id": self.state.active_journey_id,
                "count": len(journeys),
            }

        return self._run("list_journeys", action, "select_organization")

    def switch_journey(self, journey_id: str) -> Dict[str, Any]:
        def action():
            self.state.switch_journey(journey_id)
            return {**self._journey_payload(), "message": f"Switched to journey {journey_id}."}

        return self._run("switch_journey", action, "list_journeys")

    def journey_status(self) -> Dict[str, Any]:
        def action():
            self.state.require_organization()
            return {
                "state": self.state.state.value,
                "organization_id": self.state.organization.id,
                "active_journey_id": self.state.active_journey_id,
                **self._journey_payload(),
            }

        return self._run("journey_status", action, "select_organization")

    def mark_research_complete(self, complete: bool = True) -> Dict[str, Any]:
        def action():
            record = self.state.mark_research_complete(complete)
            return {
                "research_complete": record.research_complete,
                "steps": [step.to_dict() for step in self.state.steps()],
                "next_suggested_step": "target_domains" if record.research_complete else "research",
                "message": "Research marked complete." if record.research_complete else "Research reopened.",
            }

        return self._run("mark_research_complete", action)

    def select_step(self, step_id: str) -> Dict[str, Any]:
        def action():
            chosen = self.state.select_step(step_id)
            changed = chosen == step_id
            return {
                "current_step_id": chosen,
                "selected": changed,
                "next_suggested_step": NEXT_STEP.get(chosen),
                "message": f"Current step: {chosen}" if changed
                else f"Step '{step_id}' is locked or unknown; staying on {chosen}.",
            }

        return self._run("select_step", action)

    def toggle_step_visibility(self, key: str, enabled: bool) -> Dict[str, Any]:
        def action():
            flags = self.state.toggle_step_visibility(key, enabled)
            return {
                "effective_settings": flags,
                "step_overrides": dict(self.state.record.step_overrides),
                "steps": [step.to_dict() for step in self.state.steps()],
                "message": f"Step '{key}' {'shown' if enabled else 'hidden'} for this journey.",
            }

        return self._run("toggle_step_visibility", action)

    # ------------------------------------------------------------------
    # Selections and output
    # ------------------------------------------------------------------

    def toggle_domain(self, phase: str, domain: str) -> Dict[str, Any]:
        def action():
            selection = self.state.toggle_domain(phase, domain)
            return {"phase": SelectionPhase.parse(phase).value, **selection.to_dict()}

        return self._run("toggle_domain", action)

    def toggle_use_case(self, phase: str, use_case_id: str) -> Dict[str, Any]:
        def action():
            selection = self.state.toggle_use_case(phase, use_case_id)
            return {"phase": SelectionPhase.parse(phase).value, **selection.to_dict()}

        return self._run("toggle_use_case", action)

    def save_output(self, url: str) -> Dict[str, Any]:
        def action():
            saved = self.state.save_output(url)
            return {
                "kickoff_presentation_url": saved,
                "message": "Presentation link saved." if saved else "Presentation link cleared.",
            }

        return self._run("save_output", action)

    # ------------------------------------------------------------------
    # Notes and meetings
    # ------------------------------------------------------------------

    def add_kickoff_note(self, text: str, file_name: str = "Pasted notes") -> Dict[str, Any]:
        def action():
            note = self.state.add_kickoff_note(text, file_name)
            return {
                "note": note.to_dict(),
                "next_suggested_step": "hypotheses_high_level",
                "message": "Kickoff note added.",
            }

        return self._run("add_kickoff_note", action)

    def remove_kickoff_note(self, note_id: str) -> Dict[str, Any]:
        def action():
            self.state.remove_kickoff_note(note_id)
            return {"removed": note_id, "message": "Kickoff note removed."}

        return self._run("remove_kickoff_note", action)

    def upload_notes(
        self,
        files: Iterable[Mapping[str, Any]],
        phase: Optional[str] = None,
        meeting_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        def action():
            notes, warnings = self.state.ingest_files(decode_uploads(files), phase=phase, meeting_id=meeting_id)
            return {
                "notes": [note.to_dict() for note in notes],
                "warnings": warnings,
                "message": f"Added {len(notes)} notes" + (f" with {len(warnings)} warnings." if warnings else "."),
            }

        return self._run("upload_notes", action)

    def add_meeting(self, phase: str, domain: Optional[str] = None, function_name: Optional[str] = None) -> Dict[str, Any]:
        def action():
            meeting = self.state.add_meeting(phase, domain, function_name)
            return {"meeting": meeting.to_dict(), "message": f"Meeting for {meeting.domain} / {meeting.function_name} added."}

        return self._run("add_meeting", action)

    def remove_meeting(self, phase: str, meeting_id: str) -> Dict[str, Any]:
        def action():
            self.state.remove_meeting(phase, meeting_id)
            return {"removed": meeting_id, "message": "Meeting removed."}

        return self._run("remove_meeting", action)

    def add_meeting_note(self, phase: str, meeting_id: str, text: str, file_name: str = "Pasted notes") -> Dict[str, Any]:
        def action():
            note = self.state.add_meeting_note(phase, meeting_id, text, file_name)
            return {"meeting_id": meeting_id, "note": note.to_dict(), "message": "Meeting note added."}

        return self._run("add_meeting_note", action)

    def remove_meeting_note(self, phase: str, meeting_id: str, note_id: str) -> Dict[str, Any]:
        def action():
            self.state.remove_meeting_note(phase, meeting_id, note_id)
            return {"meeting_id": meeting_id, "removed": note_id, "message": "Meeting note removed."}

        return self._run("remove_meeting_note", action)

    def set_meeting_presentation_url(self, phase: str, meeting_id: str, url: str) -> Dict[str, Any]:
        def action():
            meeting = self.state.set_meeting_presentation_url(phase, meeting_id, url)
            return {"meeting": meeting.to_dict(), "message": "Meeting presentation link saved."}

        return self._run("set_meeting_presentation_url", action)

    # ------------------------------------------------------------------
    # Recommendations
    # ------------------------------------------------------------------

    @log_performance("hypotheses")
    def hypotheses(self, phase: str) -> Dict[str, Any]:
        def action():
            ranked = self.state.hypotheses(phase)
            parsed = SelectionPhase.parse(phase)
            return {
                "phase": parsed.value,
                "recommendations": [rec.to_dict() for rec in ranked],
                "recommended_ids": recommended_ids(ranked),
                "count": len(ranked),
                "message": f"{len(ranked)} recommendations" if ranked
                else "No recommendations yet. Add notes for this phase first.",
            }

        return self._run("hypotheses", action)

    def notes_digest(self, phase: str) -> Dict[str, Any]:
        def action():
            return {"phase": SelectionPhase.parse(phase).value, "key_sentences": self.state.notes_digest(phase)}

        return self._run("notes_digest", action)

    # ------------------------------------------------------------------
    # Custom steps
    # ------------------------------------------------------------------

    def custom_step_options(self) -> Dict[str, Any]:
        def action():
            self.state.require_record()
            return self.custom_steps.labels().options()

        return self._run("custom_step_options", action)

    def create_custom_step(self, fields: Mapping[str, Any]) -> Dict[str, Any]:
        def action():
            step = self.custom_steps.create(fields)
            return {"custom_step": step.to_dict(), "message": f"Custom step '{step.title}' created."}

        return self._run("create_custom_step", action)

    def update_custom_step(self, step_id: str, fields: Mapping[str, Any]) -> Dict[str, Any]:
        def action():
            step = self.custom_steps.update_fields(step_id, fields)
            return {"custom_step": step.to_dict(), "message": f"Custom step '{step.title}' updated."}

        return self._run("update_custom_step", action)

    def remove_custom_step(self, step_id: str) -> Dict[str, Any]:
        def action():
            self.custom_steps.remove(step_id)
            return {"removed": step_id, "message": "Custom step removed."}

        return self._run("remove_custom_step", action)

    def attach_template(self, step_id: str, file_name: str, content_base64: str) -> Dict[str, Any]:
        def action():
            upload = decode_uploads([{"file_name": file_name, "content_base64": content_base64}])[0]
            step = self.custom_steps.attach_template(step_id, upload.file_name, upload.data)
            return {"custom_step": step.to_dict(), "message": f"Template '{upload.file_name}' attached."}

        return self._run("attach_template", action)

    def remove_template(self, step_id: str) -> Dict[str, Any]:
        def action():
            step = self.custom_steps.remove_template(step_id)
            return {"custom_step": step.to_dict(), "message": "Template removed."}

        return self._run("remove_template", action)

    def render_custom_step(self, step_id: str) -> Dict[str, Any]:
        def action():
            return self.custom_steps.render(step_id).to_dict()

        return self._run("render_custom_step", action)

    def open_chat(self, step_id: str) -> Dict[str, Any]:
        def action():
            turns = self.custom_steps.open_chat(step_id)
            return {"step_id": step_id, "transcript": [turn.to_dict() for turn in turns]}

        return self._run("open_chat", action)

    def send_message(self, step_id: str, text: str) -> Dict[str, Any]:
        def action():
            reply = self.custom_steps.send_message(step_id, text)
            return {
                "step_id": step_id,
                "reply": reply.to_dict(),
                "transcript": [turn.to_dict() for turn in self.custom_steps.transcript(step_id)],
            }

        return self._run("send_message", action)

    def persist_transcript(self, step_id: str) -> Dict[str, Any]:
        def action():
            step = self.custom_steps.persist_transcript(step_id)
            return {"step_id": step_id, "turns": len(step.transcript), "message": "Transcript saved with the step."}

        return self._run("persist_transcript", action)
