"""Value types passed between the signal fetchers, the cache and the consolidator."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from blueprint.utils import isoformat


@dataclass(frozen=True)
class SignalQuery:
    account_name: str
    opportunity_name: str
    opportunity_id: str = ""
    owner_email: str = ""
    viewer_id: str = ""
    viewer_role: str = "AD"

    def as_payload(self) -> dict[str, str]:
        return {
            "opportunityId": self.opportunity_id,
            "accountName": self.account_name,
            "opportunityName": self.opportunity_name,
            "ownerEmail": self.owner_email,
        }


@dataclass
class DealSignal:
    source: str  # gmail | slack | gong | gtm_agent
    total_matches: int
    highlights: list[str] = field(default_factory=list)
    deep_links: list[str] = field(default_factory=list)
    last_activity_at: datetime | None = None
    source_owner: str | None = None  # self | other
    visibility: str | None = None  # owner_only | manager_summary

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "total_matches": self.total_matches,
            "highlights": list(self.highlights),
            "deep_links": list(self.deep_links),
            "last_activity_at": isoformat(self.last_activity_at),
            "source_owner": self.source_owner,
            "visibility": self.visibility,
        }


@dataclass
class ConsolidatedInsight:
    id: str
    category: str  # signer_path | economic_value | competition | timeline | risk | general
    summary: str
    normalized: str
    sources: list[str] = field(default_factory=list)
    evidence_links: list[str] = field(default_factory=list)
    occurrences: int = 1
    last_activity_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "category": self.category,
            "summary": self.summary,
            "normalized": self.normalized,
            "sources": list(self.sources),
            "evidence_links": list(self.evidence_links),
            "occurrences": self.occurrences,
            "last_activity_at": isoformat(self.last_activity_at),
        }
