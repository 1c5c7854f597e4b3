"""Step registry: backbone steps, visibility, locking and selection."""

from __future__ import annotations

from types import MappingProxyType
from typing import Dict, Iterable, List, Mapping, Optional

from .models import (
    BACKBONE_STEPS,
    CUSTOM_PHASE,
    RESEARCH_KEY,
    STEP_SETTING_KEYS,
    CustomStep,
    JourneyRecord,
    StepView,
)

CUSTOM_STEP_PREFIX = "custom-"


class StepSettings(Mapping[str, bool]):
    """Immutable global step visibility flags keyed by setting key.

    Missing keys default to visible. The research key is always on.
    """

    __slots__ = ("_flags",)

    def __init__(self, flags: Optional[Mapping[str, bool]] = None):
        values: Dict[str, bool] = {key: True for key in STEP_SETTING_KEYS}
        for key, enabled in (flags or {}).items():
            if key in values:
                values[key] = bool(enabled)
        values[RESEARCH_KEY] = True
        self._flags = MappingProxyType(values)

    def __getitem__(self, key: str) -> bool:
        return self._flags[key]

    def __iter__(self):
        return iter(self._flags)

    def __len__(self) -> int:
        return len(self._flags)

    def __repr__(self) -> str:
        return f"StepSettings({dict(self._flags)!r})"

    def overlay(self, overrides: Mapping[str, bool]) -> "StepSettings":
        """Settings with per-journey ``overrides`` applied on top."""
        merged = dict(self._flags)
        merged.update({k: v for k, v in overrides.items() if k != RESEARCH_KEY})
        return StepSettings(merged)

    def to_dict(self) -> Dict[str, bool]:
        return dict(self._flags)


def prerequisites_complete(journey: Optional[JourneyRecord], has_research_content: bool) -> bool:
    return bool(journey is not None and journey.research_complete) or has_research_content


def custom_view_id(step_id: str) -> str:
    return f"{CUSTOM_STEP_PREFIX}{step_id}"


def build_steps(
    journey: Optional[JourneyRecord],
    global_settings: StepSettings,
    custom_steps: Iterable[CustomStep],
    *,
    has_research_content: bool = False,
    organization_bound: bool = True,
) -> List[StepView]:
    """Project the navigable step list for a journey.

    Backbone steps are filtered by the effective visibility flags; custom
    steps are appended after them and never filtered.
    """
    effective = global_settings.overlay(journey.step_overrides) if journey else global_settings
    ready = prerequisites_complete(journey, has_research_content) and organization_bound

    views: List[StepView] = []
    for step in BACKBONE_STEPS:
        key = step.setting_key
        if key is not None and key != RESEARCH_KEY and not effective.get(key, True):
            continue
        views.append(
            StepView(
                step_id=step.step_id,
                title=step.title,
                phase=step.phase,
                description=step.description,
                cta=step.cta,
                locked=False if key == RESEARCH_KEY else not ready,
                status=step.status,
                setting_key=key,
            )
        )

    for custom in custom_steps:
        views.append(
            StepView(
                step_id=custom_view_id(custom.id),
                title=custom.title,
                phase=custom.phase or CUSTOM_PHASE,
                description=custom.description or "Custom journey step.",
                cta="Open step",
                locked=not organization_bound,
                status="next",
                is_custom=True,
                custom_step_id=custom.id,
            )
        )
    return views


def select_step(steps: Iterable[StepView], step_id: str, current: str) -> str:
    """Return the step id to make current; unknown or locked steps are a no-op."""
    for view in steps:
        if view.step_id != step_id:
            continue
        if view.locked and view.setting_key != RESEARCH_KEY:
            return current
        return step_id
    return current


def resolve_current_step(steps: List[StepView], step_id: Optional[str]) -> str:
    """``step_id`` when it is still visible, else the first visible step."""
    if step_id and any(view.step_id == step_id for view in steps):
        return step_id
    return steps[0].step_id if steps else RESEARCH_KEY
