"""Role-based redaction of deal signals for viewers who do not own the deal."""
from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, replace

from blueprint.consolidator import consolidate
from blueprint.signals import ConsolidatedInsight, DealSignal

ROLES = ("AD", "SE", "SA", "MANAGER")

_SOURCE_LABELS = {
    "gmail": "Gmail",
    "slack": "Slack",
    "gong": "Gong",
    "gtm_agent": "GTM Agent",
}


@dataclass(frozen=True)
class Viewer:
    user_id: str
    email: str = ""
    role: str = "AD"
    name: str = ""

    @property
    def display_name(self) -> str:
        return self.name or self.email or self.user_id


def source_label(source: str) -> str:
    return _SOURCE_LABELS.get(source, source.replace("_", " ").title())


def is_restricted(viewer_role: str, is_owner: bool) -> bool:
    """Managers looking at someone else's deal only get summaries."""
    return viewer_role == "MANAGER" and not is_owner


def redact_signals(signals: list[DealSignal], viewer_role: str, is_owner: bool) -> list[DealSignal]:
    if not is_restricted(viewer_role, is_owner):
        return list(signals)
    return [
        replace(
            s,
            highlights=[f"Summary available from {source_label(s.source)}."],
            visibility="manager_summary",
        )
        for s in signals
    ]


def consolidate_for_viewer(
    signals: list[DealSignal], viewer_role: str, is_owner: bool,
) -> list[ConsolidatedInsight]:
    """Consolidated insights as the viewer may see them.

    Restricted viewers get exactly one generic insight per signal; no
    highlight text is consolidated on their behalf.
    """
    if not is_restricted(viewer_role, is_owner):
        return consolidate(signals)

    per_source = Counter(s.source for s in signals)
    insights: list[ConsolidatedInsight] = []
    for idx, s in enumerate(signals, start=1):
        count = per_source[s.source]
        noun = "signal" if count == 1 else "signals"
        insights.append(ConsolidatedInsight(
            id=f"insight-{idx}",
            category="general",
            summary=f"{source_label(s.source)} has {count} {noun} for this deal. Details are limited to the deal owner.",
            normalized=f"{s.source}:{count}",
            sources=[s.source],
            evidence_links=list(dict.fromkeys(s.deep_links)),
            occurrences=1,
            last_activity_at=s.last_activity_at,
        ))
    return insights
