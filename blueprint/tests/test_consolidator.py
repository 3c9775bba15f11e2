"""Tests for insight consolidation and the manager redaction firewall."""
from __future__ import annotations

from datetime import UTC, datetime

from blueprint.consolidator import classify, consolidate, normalize_text, similarity
from blueprint.signals import DealSignal
from blueprint.visibility import consolidate_for_viewer, is_restricted, redact_signals

T1 = datetime(2026, 9, 1, tzinfo=UTC)
T2 = datetime(2026, 9, 20, tzinfo=UTC)


def _signal(source: str, highlights: list[str], links: list[str] | None = None, at: datetime | None = T1) -> DealSignal:
    return DealSignal(
        source=source, total_matches=len(highlights), highlights=highlights,
        deep_links=links or [], last_activity_at=at,
    )


class TestText:
    def test_normalize_strips_urls_punctuation_and_stop_words(self):
        assert normalize_text("The CFO, see https://x.io/a for the ROI!") == "cfo see roi"

    def test_classify_first_rule_wins(self):
        # "signer" and "risk" both match; signer_path is checked first
        assert classify("signer risk on legal") == "signer_path"
        assert classify("payback in 9 months") == "economic_value"
        assert classify("incumbent vendor pushing back") == "competition"
        assert classify("next step is a workshop") == "timeline"
        assert classify("security review pending") == "risk"
        assert classify("great call today") == "general"

    def test_similarity(self):
        assert similarity("a b c", "a b c") == 1.0
        assert similarity("a b", "c d") == 0.0
        assert similarity("", "a") == 0.0


class TestConsolidate:
    def test_same_highlight_across_sources_merges(self):
        text = "CFO approval required before signature"
        insights = consolidate([
            _signal("slack", [text], ["https://slack/1"], T1),
            _signal("gong", [text], ["https://gong/1"], T2),
        ])
        assert len(insights) == 1
        insight = insights[0]
        assert insight.category == "signer_path"
        assert insight.occurrences == 2
        assert insight.sources == ["slack", "gong"]
        assert insight.evidence_links == ["https://slack/1", "https://gong/1"]
        assert insight.last_activity_at == T2

    def test_containment_counts_as_duplicate(self):
        insights = consolidate([
            _signal("gmail", ["ROI model shared"]),
            _signal("gong", ["ROI model shared with finance team"]),
        ])
        assert len(insights) == 1
        assert insights[0].summary == "ROI model shared"

    def test_different_categories_never_merge(self):
        insights = consolidate([_signal("gmail", ["budget value", "budget risk"])])
        assert sorted(i.category for i in insights) == ["economic_value", "risk"]

    def test_link_falls_back_to_first(self):
        insights = consolidate([_signal("gmail", ["roi shared", "competitor demo"], ["https://mail/1"])])
        assert all(i.evidence_links == ["https://mail/1"] for i in insights)

    def test_duplicate_links_collapsed(self):
        insights = consolidate([
            _signal("slack", ["procurement asked for MSA"], ["https://s/1"]),
            _signal("slack", ["procurement asked for MSA"], ["https://s/1"]),
        ])
        assert insights[0].evidence_links == ["https://s/1"]

    def test_order_occurrences_then_recency(self):
        insights = consolidate([
            _signal("gmail", ["competitor demo scheduled"], at=T1),
            _signal("gong", ["security questionnaire sent"], at=T2),
            _signal("slack", ["competitor demo scheduled"], at=T1),
        ])
        assert [i.category for i in insights] == ["competition", "risk"]
        single = consolidate([
            _signal("gmail", ["competitor demo scheduled"], at=T1),
            _signal("gong", ["security questionnaire sent"], at=T2),
        ])
        assert [i.category for i in single] == ["risk", "competition"]

    def test_blank_highlights_skipped(self):
        assert consolidate([_signal("gmail", ["", "  !!  "])]) == []


class TestVisibility:
    signals = [
        _signal("slack", ["CFO approval required before signature"], ["https://slack/1"]),
        _signal("gong", ["CFO approval required before signature", "pricing concern"], ["https://gong/1"]),
    ]

    def test_only_foreign_managers_are_restricted(self):
        assert is_restricted("MANAGER", is_owner=False)
        assert not is_restricted("MANAGER", is_owner=True)
        assert not is_restricted("AD", is_owner=False)

    def test_owner_sees_raw_highlights(self):
        redacted = redact_signals(self.signals, "AD", is_owner=True)
        assert redacted[0].highlights == ["CFO approval required before signature"]

    def test_manager_sees_summaries_only(self):
        redacted = redact_signals(self.signals, "MANAGER", is_owner=False)
        assert [s.highlights for s in redacted] == [
            ["Summary available from Slack."], ["Summary available from Gong."],
        ]
        assert all(s.visibility == "manager_summary" for s in redacted)
        assert self.signals[0].highlights == ["CFO approval required before signature"]

    def test_manager_insights_are_one_per_signal_and_leak_nothing(self):
        insights = consolidate_for_viewer(self.signals, "MANAGER", is_owner=False)
        assert len(insights) == len(self.signals)
        assert insights[0].summary == (
            "Slack has 1 signal for this deal. Details are limited to the deal owner."
        )
        assert insights[1].normalized == "gong:1"
        assert insights[1].evidence_links == ["https://gong/1"]
        for insight in insights:
            assert insight.category == "general"
            assert "CFO" not in insight.summary
            assert "pricing" not in insight.summary

    def test_owner_insights_are_consolidated(self):
        insights = consolidate_for_viewer(self.signals, "AD", is_owner=True)
        assert insights[0].occurrences == 2
