"""Content-based recommendation engine.

Candidate use cases are scored by how many significant words they share with
the accumulated notes of a phase. Everything here is pure: the same inputs
always give the same ranked list, so callers recompute on every note edit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence

from .models import DEFAULT_DOMAIN, DEFAULT_FUNCTION_NAME, Meeting, Note, Recommendation, UseCase
from .tokenizer import token_sequence, tokenize

PER_DOMAIN_CAP = 8
RESULT_CAP = 12
CITED_KEYWORDS = 4


@dataclass(frozen=True, slots=True)
class ExplanationTemplate:
    """Sentences used to explain a recommendation.

    ``matched`` receives ``{keywords}``; ``unmatched`` receives ``{domain}``.
    """

    matched: str
    unmatched: str

    def explain(self, domain: str, keywords: Sequence[str]) -> str:
        if keywords:
            return self.matched.format(keywords=", ".join(keywords[:CITED_KEYWORDS]))
        return self.unmatched.format(domain=domain)


GENERIC_EXPLANATION = ExplanationTemplate(
    matched="Notes repeatedly reference {keywords}, which aligns with this use case.",
    unmatched="This use case supports the {domain} domain priority and is a candidate for validation.",
)

KICKOFF_EXPLANATION = ExplanationTemplate(
    matched="Kickoff notes repeatedly reference {keywords}, which aligns with this use case.",
    unmatched=(
        "This use case supports the {domain} domain priority discussed during kickoff "
        "and is a strong candidate for high-level validation."
    ),
)

HIGH_LEVEL_EXPLANATION = ExplanationTemplate(
    matched="Functional high-level notes repeatedly reference {keywords}, indicating deep-dive priority.",
    unmatched=(
        "This use case is aligned with functional high-level findings "
        "and should be validated in deep dive sessions."
    ),
)


def _domain_order(prioritized_domains: Sequence[str], pool: Sequence[UseCase]) -> List[str]:
    if prioritized_domains:
        return list(dict.fromkeys(prioritized_domains))
    return list(dict.fromkeys(item.domain or DEFAULT_DOMAIN for item in pool))


def _matched_keywords(item: UseCase, note_tokens: frozenset) -> List[str]:
    """Distinct item tokens found in the notes, in the item's own word order."""
    text = f"{item.title} {item.process} {item.description}"
    return [token for token in dict.fromkeys(token_sequence(text)) if token in note_tokens]


def recommend(
    note_text: str,
    prioritized_domains: Sequence[str],
    candidate_pool: Sequence[UseCase],
    per_domain_cap: int = PER_DOMAIN_CAP,
    result_cap: int = RESULT_CAP,
    *,
    explanations: ExplanationTemplate = GENERIC_EXPLANATION,
) -> List[Recommendation]:
    """Rank candidate use cases against ``note_text``.

    Every candidate within the per-domain cap produces a recommendation, even
    with a score of zero. The sort is stable, so ties keep domain priority
    and then pool order.
    """
    note_tokens = tokenize(note_text)
    if not note_tokens:
        return []

    ranked: List[Recommendation] = []
    for domain in _domain_order(prioritized_domains, candidate_pool):
        bucket = [item for item in candidate_pool if (item.domain or DEFAULT_DOMAIN) == domain]
        for item in bucket[:per_domain_cap]:
            keywords = _matched_keywords(item, note_tokens)
            ranked.append(
                Recommendation(
                    domain=domain,
                    use_case_id=item.id,
                    use_case_title=item.title,
                    function_name=item.process or DEFAULT_FUNCTION_NAME,
                    explanation=explanations.explain(domain, keywords),
                    score=len(keywords),
                )
            )

    ranked.sort(key=lambda rec: rec.score, reverse=True)
    return ranked[:result_cap]


def merge_recommendations(*passes: Iterable[Recommendation]) -> List[Recommendation]:
    """Merge recommendation passes given in priority order.

    Items without a numeric score are dropped and the first occurrence of each
    use-case id is kept, even when a later duplicate scores higher.
    """
    seen = set()
    merged: List[Recommendation] = []
    for batch in passes:
        for rec in batch:
            if not isinstance(rec.score, (int, float)) or isinstance(rec.score, bool):
                continue
            if rec.use_case_id in seen:
                continue
            seen.add(rec.use_case_id)
            merged.append(rec)
    merged.sort(key=lambda rec: rec.score, reverse=True)
    return merged


def build_candidate_pool(library: Iterable[UseCase], organization_items: Iterable[UseCase]) -> List[UseCase]:
    """Merge library and organization use cases into one pool keyed by id.

    A later duplicate replaces the earlier entry at its original position.
    """
    pool: Dict[str, UseCase] = {}
    for item in list(library) + list(organization_items):
        pool[item.id] = item
    return list(pool.values())


def derive_domains(use_case_ids: Sequence[str], pool: Sequence[UseCase]) -> List[str]:
    """Distinct domains of the selected use cases, in selection order."""
    by_id = {item.id: item for item in pool}
    domains = (by_id[uid].domain or DEFAULT_DOMAIN for uid in use_case_ids if uid in by_id)
    return list(dict.fromkeys(domains))


def select_pool(use_case_ids: Sequence[str], pool: Sequence[UseCase]) -> List[UseCase]:
    """Pool items whose id is selected, in pool order."""
    selected = set(use_case_ids)
    return [item for item in pool if item.id in selected]


def combine_note_text(notes: Iterable[Note]) -> str:
    return "\n\n".join(note.content for note in notes).strip()


def combine_meeting_text(meetings: Iterable[Meeting]) -> str:
    blocks = []
    for meeting in meetings:
        parts = [f"{meeting.domain} {meeting.function_name}"]
        parts.extend(note.content for note in meeting.notes)
        blocks.append("\n".join(parts))
    return "\n\n".join(blocks).strip()


def recommended_ids(recommendations: Iterable[Recommendation], minimum_score: Optional[float] = None) -> List[str]:
    """Ids that get a "recommended" badge.

    Every ranked item is badged, zero scores included, unless ``minimum_score``
    is given.
    """
    return [
        rec.use_case_id
        for rec in recommendations
        if minimum_score is None or (rec.score or 0) >= minimum_score
    ]
