"""MCP server exposing engagement journey tools."""

from __future__ import annotations

import getpass
import os
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.resources import TextResource

from journey.extraction import FileTextExtractor
from journey.gemini import GeminiCompletionClient
from journey.journey_logging import setup_logging
from journey.store import JsonJourneyStore
from journey.workflow import JourneyWorkflow

mcp = FastMCP("engagement-journey")

_SESSION: Optional[JourneyWorkflow] = None


def _resolve_root() -> Path:
    env_root = os.getenv("JOURNEY_PROJECT_ROOT")
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable JOURNEY_PROJECT_ROOT points to '{env_root}', which does not exist."
            )
        return env_path
    return Path.cwd().resolve()


def _identity() -> str:
    return os.getenv("JOURNEY_IDENTITY") or getpass.getuser()


def _session() -> JourneyWorkflow:
    """One workflow per server process; settings and library are read once."""
    global _SESSION
    if _SESSION is None:
        _SESSION = JourneyWorkflow(
            JsonJourneyStore(_resolve_root()),
            _identity(),
            extractor=FileTextExtractor(),
            completion=GeminiCompletionClient(),
            default_model=os.getenv("JOURNEY_MODEL") or "gemini-2.5-pro",
        )
    return _SESSION


# ----------------------------------------------------------------------
# Organizations
# ----------------------------------------------------------------------


@mcp.tool()
def list_organizations() -> Dict[str, Any]:
    """List organizations stored in the project root."""
    return _session().list_organizations()


@mcp.tool()
def create_organization(
    name: str,
    selected_domains: Optional[List[str]] = None,
    selected_use_cases: Optional[List[str]] = None,
) -> Dict[str, Any]:
    """STEP 1: Create an organization owned by the current identity and select it."""
    return _session().create_organization(name, selected_domains or [], selected_use_cases or [])


@mcp.tool()
def select_organization(organization_id: str) -> Dict[str, Any]:
    """Select an organization and activate its current (or newest) journey."""
    return _session().select_organization(organization_id)


@mcp.tool()
def set_organization_defaults(domains: List[str], use_cases: List[str]) -> Dict[str, Any]:
    """Set the domain and use-case selections new journeys start from."""
    return _session().set_organization_defaults(domains, use_cases)


@mcp.tool()
def save_research_summary(summary: str) -> Dict[str, Any]:
    """STEP 2: Save company research notes. Research content unlocks the journey steps."""
    return _session().save_research_summary(summary)


@mcp.tool()
def summarize_research() -> Dict[str, Any]:
    """Summarize research content with the generative model."""
    return _session().summarize_research()


@mcp.tool()
def upload_research_documents(files: List[Dict[str, str]]) -> Dict[str, Any]:
    """Attach research documents. Each file: {file_name, content_base64, content_type}."""
    return _session().upload_research_documents(files)


@mcp.tool()
def remove_research_document(document_id: str) -> Dict[str, Any]:
    """Remove a research document by id."""
    return _session().remove_research_document(document_id)


@mcp.tool()
def add_use_case(title: str, domain: str = "", process: str = "", description: str = "") -> Dict[str, Any]:
    """Add an organization-specific candidate use case."""
    return _session().add_use_case(title, domain, process, description)


@mcp.tool()
def candidate_pool() -> Dict[str, Any]:
    """List library and organization use cases available for selection."""
    return _session().candidate_pool()


# ----------------------------------------------------------------------
# Journeys
# ----------------------------------------------------------------------


@mcp.tool()
def create_journey() -> Dict[str, Any]:
    """Start a new journey seeded from the organization defaults and make it active."""
    return _session().create_journey()


@mcp.tool()
def list_journeys() -> Dict[str, Any]:
    """List journeys of the selected organization, newest first."""
    return _session().list_journeys()


@mcp.tool()
def switch_journey(journey_id: str) -> Dict[str, Any]:
    """Make another journey of the selected organization active."""
    return _session().switch_journey(journey_id)


@mcp.tool()
def journey_status() -> Dict[str, Any]:
    """Show the active journey view and its steps with lock state."""
    return _session().journey_status()


@mcp.tool()
def mark_research_complete(complete: bool = True) -> Dict[str, Any]:
    """Mark research complete (or reopen it) for the active journey."""
    return _session().mark_research_complete(complete)


@mcp.tool()
def select_step(step_id: str) -> Dict[str, Any]:
    """Move to a step. Locked steps other than research are ignored."""
    return _session().select_step(step_id)


@mcp.tool()
def toggle_step_visibility(key: str, enabled: bool) -> Dict[str, Any]:
    """Show or hide a backbone step for the active journey only."""
    return _session().toggle_step_visibility(key, enabled)


@mcp.tool()
def toggle_domain(phase: str, domain: str) -> Dict[str, Any]:
    """STEP 3: Add or remove a domain in a phase (targeting, high_level, deep_dive)."""
    return _session().toggle_domain(phase, domain)


@mcp.tool()
def toggle_use_case(phase: str, use_case_id: str) -> Dict[str, Any]:
    """Add or remove a use case in a phase selection."""
    return _session().toggle_use_case(phase, use_case_id)


@mcp.tool()
def save_output(url: str) -> Dict[str, Any]:
    """Record the kickoff presentation link. An empty value clears it."""
    return _session().save_output(url)


# ----------------------------------------------------------------------
# Notes and meetings
# ----------------------------------------------------------------------


@mcp.tool()
def add_kickoff_note(text: str, file_name: str = "Pasted notes") -> Dict[str, Any]:
    """STEP 4: Add kickoff meeting notes."""
    return _session().add_kickoff_note(text, file_name)


@mcp.tool()
def remove_kickoff_note(note_id: str) -> Dict[str, Any]:
    """Remove a kickoff note by id."""
    return _session().remove_kickoff_note(note_id)


@mcp.tool()
def upload_notes(
    files: List[Dict[str, str]],
    phase: Optional[str] = None,
    meeting_id: Optional[str] = None,
) -> Dict[str, Any]:
    """Upload note files to the kickoff, or to a meeting when phase and meeting_id are given."""
    return _session().upload_notes(files, phase, meeting_id)


@mcp.tool()
def add_meeting(phase: str, domain: Optional[str] = None, function_name: Optional[str] = None) -> Dict[str, Any]:
    """Add a functional meeting (phase high_level or deep_dive)."""
    return _session().add_meeting(phase, domain, function_name)


@mcp.tool()
def remove_meeting(phase: str, meeting_id: str) -> Dict[str, Any]:
    """Remove a functional meeting."""
    return _session().remove_meeting(phase, meeting_id)


@mcp.tool()
def add_meeting_note(phase: str, meeting_id: str, text: str, file_name: str = "Pasted notes") -> Dict[str, Any]:
    """Add notes to a functional meeting."""
    return _session().add_meeting_note(phase, meeting_id, text, file_name)


@mcp.tool()
def remove_meeting_note(phase: str, meeting_id: str, note_id: str) -> Dict[str, Any]:
    """Remove a note from a functional meeting."""
    return _session().remove_meeting_note(phase, meeting_id, note_id)


@mcp.tool()
def set_meeting_presentation_url(phase: str, meeting_id: str, url: str) -> Dict[str, Any]:
    """Record the presentation link of a functional meeting."""
    return _session().set_meeting_presentation_url(phase, meeting_id, url)


@mcp.tool()
def hypotheses(phase: str) -> Dict[str, Any]:
    """STEP 5: Rank candidate use cases for a phase against its source notes."""
    return _session().hypotheses(phase)


@mcp.tool()
def notes_digest(phase: str) -> Dict[str, Any]:
    """Key sentences from the notes that feed a phase."""
    return _session().notes_digest(phase)


# ----------------------------------------------------------------------
# Custom steps
# ----------------------------------------------------------------------


@mcp.tool()
def custom_step_options() -> Dict[str, Any]:
    """Documents and transcripts a custom step may reference."""
    return _session().custom_step_options()


@mcp.tool()
def create_custom_step(
    title: str,
    description: Optional[str] = None,
    model_id: Optional[str] = None,
    prompt: Optional[str] = None,
    document_ids: Optional[List[str]] = None,
    transcript_ids: Optional[List[str]] = None,
    output_type: str = "CHAT",
) -> Dict[str, Any]:
    """Create a custom step with output type CHAT, TABULAR or PRESENTATION."""
    return _session().create_custom_step({
        "title": title,
        "description": description,
        "model_id": model_id,
        "prompt": prompt,
        "document_ids": document_ids or [],
        "transcript_ids": transcript_ids or [],
        "output_type": output_type,
    })


@mcp.tool()
def update_custom_step(step_id: str, fields: Dict[str, Any]) -> Dict[str, Any]:
    """Update editable fields of a custom step."""
    return _session().update_custom_step(step_id, fields)


@mcp.tool()
def remove_custom_step(step_id: str) -> Dict[str, Any]:
    """Remove a custom step."""
    return _session().remove_custom_step(step_id)


@mcp.tool()
def attach_template(step_id: str, file_name: str, content_base64: str) -> Dict[str, Any]:
    """Attach or replace the template file of a tabular custom step."""
    return _session().attach_template(step_id, file_name, content_base64)


@mcp.tool()
def remove_template(step_id: str) -> Dict[str, Any]:
    """Remove the template file from a tabular custom step."""
    return _session().remove_template(step_id)


@mcp.tool()
def render_custom_step(step_id: str) -> Dict[str, Any]:
    """Render a custom step: chat transcript, CSV table or presentation outline."""
    return _session().render_custom_step(step_id)


@mcp.tool()
def open_chat(step_id: str) -> Dict[str, Any]:
    """Open a chat step, seeding an empty transcript with its prompt."""
    return _session().open_chat(step_id)


@mcp.tool()
def send_message(step_id: str, text: str) -> Dict[str, Any]:
    """Send a message on a chat step and return the assistant reply."""
    return _session().send_message(step_id, text)


@mcp.tool()
def persist_transcript(step_id: str) -> Dict[str, Any]:
    """Store the current chat transcript with the step."""
    return _session().persist_transcript(step_id)


def _text_resource(text: str) -> TextResource:
    return TextResource(uri="journey://status", name="journey-status", text=text)


@mcp.resource("journey://status")
def resource_status():
    """Resource view of the active journey's steps."""

    status = _session().journey_status()
    if status.get("error"):
        return _text_resource(f"No active journey: {status['error']}")

    lines = [f"Journey {status.get('active_journey_id') or '(none)'}"]
    for step in status.get("steps", []):
        marker = "locked" if step["locked"] else "open"
        lines.append(f"- {step['title']} [{step['phase']}] ({marker})")
    return _text_resource("\n".join(lines))


if __name__ == "__main__":
    log_file = os.getenv("JOURNEY_LOG_FILE")
    setup_logging(os.getenv("JOURNEY_LOG_LEVEL", "INFO").upper(), Path(log_file) if log_file else None)
    mcp.run(transport="stdio")
