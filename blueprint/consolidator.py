"""Cluster near-duplicate signal highlights into categorized insights.

Clustering is greedy and order dependent: each highlight joins the first
existing bucket (in insertion order) of the same category that it
overlaps with, otherwise it opens a new bucket.
"""
from __future__ import annotations

import re
from datetime import datetime

from blueprint.signals import ConsolidatedInsight, DealSignal

STOP_WORDS = frozenset({
    "a", "an", "the", "and", "or", "to", "for", "of", "in", "on",
    "with", "is", "are", "was", "were", "it", "this", "that",
})

SIMILARITY_THRESHOLD = 0.78

_URL_RE = re.compile(r"https?://\S+")
_NON_ALNUM_RE = re.compile(r"[^a-z0-9\s]")

# Checked in order; first match wins.
_CATEGORY_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    ("signer_path", re.compile(r"signer|signature|cfo|cio|buyer|procurement|approver")),
    ("economic_value", re.compile(r"roi|metric|value|cost|savings|revenue|payback")),
    ("competition", re.compile(r"competitor|competition|incumbent|displacement")),
    ("timeline", re.compile(r"next step|next action|due|timeline|deadline|close date")),
    ("risk", re.compile(r"risk|blocker|issue|concern|security|legal")),
)


def normalize_text(text: str) -> str:
    cleaned = _NON_ALNUM_RE.sub(" ", _URL_RE.sub(" ", text.lower()))
    return " ".join(tok for tok in cleaned.split() if tok not in STOP_WORDS)


def classify(text: str) -> str:
    value = text.lower()
    for category, pattern in _CATEGORY_RULES:
        if pattern.search(value):
            return category
    return "general"


def similarity(a: str, b: str) -> float:
    """Jaccard similarity of the whitespace token sets."""
    a_set, b_set = set(a.split()), set(b.split())
    if not a_set or not b_set:
        return 0.0
    return len(a_set & b_set) / len(a_set | b_set)


def _is_near_duplicate(existing: str, incoming: str) -> bool:
    if existing in incoming or incoming in existing:
        return True
    return similarity(existing, incoming) >= SIMILARITY_THRESHOLD


def _later(a: datetime | None, b: datetime | None) -> datetime | None:
    if a is None:
        return b
    if b is None:
        return a
    return b if b > a else a


def consolidate(signals: list[DealSignal]) -> list[ConsolidatedInsight]:
    buckets: dict[str, ConsolidatedInsight] = {}

    for signal in signals:
        for idx, highlight in enumerate(signal.highlights):
            normalized = normalize_text(highlight)
            if not normalized:
                continue
            category = classify(normalized)

            evidence = None
            if idx < len(signal.deep_links):
                evidence = signal.deep_links[idx]
            elif signal.deep_links:
                evidence = signal.deep_links[0]

            match = next(
                (b for b in buckets.values()
                 if b.category == category and _is_near_duplicate(b.normalized, normalized)),
                None,
            )
            if match is not None:
                match.occurrences += 1
                if signal.source not in match.sources:
                    match.sources.append(signal.source)
                if evidence:
                    match.evidence_links.append(evidence)
                match.last_activity_at = _later(match.last_activity_at, signal.last_activity_at)
                continue

            key = f"{category}:{normalized}"
            buckets[key] = ConsolidatedInsight(
                id=key,
                category=category,
                summary=highlight,
                normalized=normalized,
                sources=[signal.source],
                evidence_links=[evidence] if evidence else [],
                occurrences=1,
                last_activity_at=signal.last_activity_at,
            )

    insights = list(buckets.values())
    for insight in insights:
        insight.evidence_links = list(dict.fromkeys(link for link in insight.evidence_links if link))

    # Two stable sorts: recency desc, then occurrences desc.
    insights.sort(key=lambda i: i.last_activity_at.timestamp() if i.last_activity_at else 0.0, reverse=True)
    insights.sort(key=lambda i: i.occurrences, reverse=True)
    return insights
