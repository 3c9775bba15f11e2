"""Per-source deal signal fetchers: Gmail, Slack, Gong and the GTM agent.

Every fetcher follows the same contract: ``enabled(ctx)`` says whether
credentials exist, ``fetch(query, ctx)`` returns a :class:`DealSignal` or
None and never raises, ``probe(ctx)`` reports connectivity. Credentials
come from a :class:`ConnectorContext` resolved once per request.
"""
from __future__ import annotations

import asyncio
import logging
import re
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx

from blueprint.config import Settings, get_settings
from blueprint.signals import DealSignal, SignalQuery
from blueprint.utils import parse_timestamp

log = logging.getLogger(__name__)

_USER_AGENT = "BlueprintBot/1.0 (+https://blueprint.local)"
_MAX_HIGHLIGHTS = 3
_SLACK_TAG_RE = re.compile(r"<[^>]+>")

GMAIL_API = "https://gmail.googleapis.com/gmail/v1"
SLACK_API = "https://slack.com/api"

PROVIDERS = ("gmail", "slack", "gong", "gtm_agent")


# ---------------------------------------------------------------------------
# Connector context
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ConnectorContext:
    """Credentials for every provider, tagged with where they came from."""

    mode: str = "legacy_env"  # legacy_env | user_scoped
    gmail_token: str = ""
    slack_token: str = ""
    slack_signing_secret: str = ""
    gong_access_key: str = ""
    gong_access_key_secret: str = ""
    gong_base_url: str = "https://api.gong.io"
    gong_signal_endpoint: str = ""
    gtm_agent_base_url: str = ""
    gtm_agent_api_key: str = ""

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> ConnectorContext:
        s = settings or get_settings()
        return cls(
            mode="legacy_env",
            gmail_token=s.gmail_access_token,
            slack_token=s.slack_token,
            slack_signing_secret=s.slack_signing_secret,
            gong_access_key=s.gong_access_key,
            gong_access_key_secret=s.gong_access_key_secret,
            gong_base_url=s.gong_base_url,
            gong_signal_endpoint=s.gong_signal_endpoint,
            gtm_agent_base_url=s.gtm_agent_base_url,
            gtm_agent_api_key=s.gtm_agent_api_key,
        )

    @classmethod
    def from_credentials(
        cls, credentials: dict[str, dict[str, str]], settings: Settings | None = None,
    ) -> ConnectorContext:
        """Build a user-scoped context from decrypted per-provider credential dicts."""
        s = settings or get_settings()
        gmail = credentials.get("gmail", {})
        slack = credentials.get("slack", {})
        gong = credentials.get("gong", {})
        gtm = credentials.get("gtm_agent", {})
        return cls(
            mode="user_scoped",
            gmail_token=gmail.get("access_token", ""),
            slack_token=slack.get("access_token", ""),
            slack_signing_secret=s.slack_signing_secret,
            gong_access_key=gong.get("access_key", ""),
            gong_access_key_secret=gong.get("access_key_secret", ""),
            gong_base_url=gong.get("base_url") or s.gong_base_url,
            gong_signal_endpoint=gong.get("signal_endpoint", ""),
            gtm_agent_base_url=gtm.get("base_url", ""),
            gtm_agent_api_key=gtm.get("api_key", ""),
        )


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------


def _client(headers: dict[str, str] | None = None, auth: Any = None) -> httpx.AsyncClient:
    return httpx.AsyncClient(
        timeout=httpx.Timeout(get_settings().request_timeout_seconds),
        headers={"User-Agent": _USER_AGENT, "Content-Type": "application/json", **(headers or {})},
        auth=auth,
    )


async def _request_json(client: httpx.AsyncClient, method: str, url: str, **kwargs: Any) -> Any:
    resp = await client.request(method, url, **kwargs)
    if resp.status_code >= 400:
        raise httpx.HTTPStatusError(
            f"Request failed ({resp.status_code}): {resp.text[:280]}",
            request=resp.request, response=resp,
        )
    return resp.json()


def _bearer(token: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {token}"} if token else {}


def _summarize_rows(
    source: str, rows: list[dict[str, Any]], text_keys: tuple[str, ...], link_key: str,
    time_keys: tuple[str, ...], total: int | None = None,
) -> DealSignal | None:
    """Newest-first signal from provider rows carrying text, link and timestamp fields."""
    if not rows:
        return None

    def _ts(row: dict[str, Any]) -> datetime | None:
        for key in time_keys:
            parsed = parse_timestamp(row.get(key))
            if parsed:
                return parsed
        return None

    stamped = [(row, _ts(row)) for row in rows if isinstance(row, dict)]
    stamped.sort(key=lambda pair: pair[1].timestamp() if pair[1] else 0.0, reverse=True)

    highlights: list[str] = []
    for row, _ in stamped:
        text = next((row.get(k) for k in text_keys if isinstance(row.get(k), str) and row.get(k)), None)
        if text:
            highlights.append(text)
    links = [row[link_key] for row, _ in stamped if isinstance(row.get(link_key), str) and row.get(link_key)]
    return DealSignal(
        source=source,
        total_matches=total if total is not None else len(rows),
        highlights=highlights[:_MAX_HIGHLIGHTS],
        deep_links=links[:_MAX_HIGHLIGHTS],
        last_activity_at=stamped[0][1] if stamped else None,
    )


# ---------------------------------------------------------------------------
# Gmail
# ---------------------------------------------------------------------------


def gmail_enabled(ctx: ConnectorContext) -> bool:
    return bool(ctx.gmail_token)


async def fetch_gmail_signal(query: SignalQuery, ctx: ConnectorContext) -> DealSignal | None:
    if not gmail_enabled(ctx):
        return None
    search = " OR ".join([f'"{query.opportunity_name}"', f'"{query.account_name}"', "newer_than:180d"])
    try:
        async with _client(_bearer(ctx.gmail_token)) as client:
            listing = await _request_json(
                client, "GET", f"{GMAIL_API}/users/me/messages", params={"q": search, "maxResults": 5},
            )
            messages = [m for m in (listing.get("messages") or []) if isinstance(m, dict) and m.get("id")]
            if not messages:
                return None
            details = await asyncio.gather(*(
                _request_json(client, "GET", f"{GMAIL_API}/users/me/messages/{m['id']}", params={"format": "metadata"})
                for m in messages
            ))
    except Exception as exc:
        log.warning("Gmail signal fetch failed for %s: %s", query.account_name, exc)
        return None

    pairs = [(m, d) for m, d in zip(messages, details) if isinstance(d, dict)]
    stamps = []
    for _, item in pairs:
        try:
            stamps.append(int(item.get("internalDate") or 0))
        except (TypeError, ValueError):
            continue
    latest = max((s for s in stamps if s > 0), default=0)
    shown = [(m, d) for m, d in pairs if d.get("snippet")][:_MAX_HIGHLIGHTS]
    return DealSignal(
        source="gmail",
        total_matches=listing.get("resultSizeEstimate") or len(messages),
        highlights=[d["snippet"] for _, d in shown],
        deep_links=[f"https://mail.google.com/mail/u/0/#all/{m['id']}" for m, _ in shown],
        last_activity_at=datetime.fromtimestamp(latest / 1000, UTC) if latest else None,
    )


async def probe_gmail(ctx: ConnectorContext) -> dict[str, Any]:
    if not gmail_enabled(ctx):
        return {"connected": False, "message": "Missing Gmail access token."}
    try:
        async with _client(_bearer(ctx.gmail_token)) as client:
            await _request_json(client, "GET", f"{GMAIL_API}/users/me/profile")
        return {"connected": True, "message": None}
    except Exception as exc:
        return {"connected": False, "message": str(exc) or "Gmail probe failed"}


# ---------------------------------------------------------------------------
# Slack
# ---------------------------------------------------------------------------


def slack_enabled(ctx: ConnectorContext) -> bool:
    return bool(ctx.slack_token or ctx.slack_signing_secret)


def _merge_slack(context_signal: DealSignal, api_signal: DealSignal) -> DealSignal:
    stamps = [t for t in (context_signal.last_activity_at, api_signal.last_activity_at) if t]
    return DealSignal(
        source="slack",
        total_matches=context_signal.total_matches + api_signal.total_matches,
        highlights=list(dict.fromkeys(context_signal.highlights + api_signal.highlights))[:6],
        deep_links=list(dict.fromkeys(context_signal.deep_links + api_signal.deep_links))[:6],
        last_activity_at=max(stamps) if stamps else None,
        source_owner=context_signal.source_owner,
        visibility=context_signal.visibility,
    )


async def fetch_slack_signal(
    query: SignalQuery, ctx: ConnectorContext, context_signal: DealSignal | None = None,
) -> DealSignal | None:
    """Slack search results merged with stored channel updates (*context_signal*)."""
    if not ctx.slack_token:
        return context_signal
    try:
        async with _client(_bearer(ctx.slack_token)) as client:
            payload = await _request_json(
                client, "GET", f"{SLACK_API}/search.messages",
                params={
                    "query": f"{query.opportunity_name} OR {query.account_name}",
                    "count": 5, "sort": "timestamp", "sort_dir": "desc",
                },
            )
        if not payload.get("ok"):
            raise RuntimeError(payload.get("error") or "Unknown Slack API error")
    except Exception as exc:
        log.warning("Slack signal fetch failed for %s: %s", query.account_name, exc)
        return context_signal

    messages = payload.get("messages") or {}
    matches = [m for m in (messages.get("matches") or []) if isinstance(m, dict)]
    if not matches:
        return context_signal

    stamps = []
    for m in matches:
        try:
            stamps.append(float(m.get("ts") or 0))
        except (TypeError, ValueError):
            continue
    latest = max((s for s in stamps if s > 0), default=0.0)
    api_signal = DealSignal(
        source="slack",
        total_matches=messages.get("total") or len(matches),
        highlights=[t for t in (_SLACK_TAG_RE.sub("", m.get("text") or "").strip() for m in matches) if t][:_MAX_HIGHLIGHTS],
        deep_links=[m["permalink"] for m in matches if m.get("permalink")][:_MAX_HIGHLIGHTS],
        last_activity_at=datetime.fromtimestamp(latest, UTC) if latest else None,
    )
    return _merge_slack(context_signal, api_signal) if context_signal else api_signal


async def probe_slack(ctx: ConnectorContext) -> dict[str, Any]:
    events = bool(ctx.slack_signing_secret)
    token = ctx.slack_token
    if token and events:
        mode = "search+events"
    elif events:
        mode = "events_only"
    elif token:
        mode = "search_only"
    else:
        return {"connected": False, "mode": "disabled", "message": "Missing Slack token and signing secret."}
    if not token:
        return {"connected": True, "mode": mode, "message": None}
    try:
        async with _client(_bearer(token)) as client:
            payload = await _request_json(client, "GET", f"{SLACK_API}/auth.test")
        if not payload.get("ok"):
            return {"connected": False, "mode": mode, "message": payload.get("error") or "Slack auth probe failed."}
        return {"connected": True, "mode": mode, "message": None}
    except Exception as exc:
        return {"connected": False, "mode": mode, "message": str(exc) or "Slack probe failed"}


# ---------------------------------------------------------------------------
# Gong
# ---------------------------------------------------------------------------


def gong_enabled(ctx: ConnectorContext) -> bool:
    return bool(ctx.gong_access_key and ctx.gong_access_key_secret)


def _gong_rows(payload: dict[str, Any]) -> list[dict[str, Any]]:
    rows = payload.get("calls") or payload.get("records") or []
    return [r for r in rows if isinstance(r, dict)]


def _gong_window(days: int) -> dict[str, str]:
    now = datetime.now(UTC)
    return {"fromDateTime": (now - timedelta(days=days)).isoformat(), "toDateTime": now.isoformat()}


async def fetch_gong_signal(query: SignalQuery, ctx: ConnectorContext) -> DealSignal | None:
    if not gong_enabled(ctx):
        return None
    auth = httpx.BasicAuth(ctx.gong_access_key, ctx.gong_access_key_secret)
    try:
        async with _client(auth=auth) as client:
            if ctx.gong_signal_endpoint:
                payload = await _request_json(
                    client, "GET", ctx.gong_signal_endpoint,
                    params={"account": query.account_name, "deal": query.opportunity_name},
                )
            else:
                payload = await _request_json(
                    client, "POST", f"{ctx.gong_base_url.rstrip('/')}/v2/calls/extensive",
                    json={"filter": {**_gong_window(180), "companyName": query.account_name}, "limit": 6},
                )
    except Exception as exc:
        log.warning("Gong signal fetch failed for %s: %s", query.account_name, exc)
        return None
    return _summarize_rows("gong", _gong_rows(payload), ("snippet", "title"), "url", ("startedAt", "started"))


async def probe_gong(ctx: ConnectorContext) -> dict[str, Any]:
    if not gong_enabled(ctx):
        return {"connected": False, "message": "Missing Gong access key or secret."}
    auth = httpx.BasicAuth(ctx.gong_access_key, ctx.gong_access_key_secret)
    try:
        async with _client(auth=auth) as client:
            await _request_json(
                client, "POST", f"{ctx.gong_base_url.rstrip('/')}/v2/calls/extensive",
                json={"filter": _gong_window(7), "limit": 1},
            )
        return {"connected": True, "message": None}
    except Exception as exc:
        return {"connected": False, "message": str(exc) or "Gong probe failed"}


# ---------------------------------------------------------------------------
# GTM agent
# ---------------------------------------------------------------------------


def gtm_agent_enabled(ctx: ConnectorContext) -> bool:
    return bool(ctx.gtm_agent_base_url)


async def fetch_gtm_agent_signal(query: SignalQuery, ctx: ConnectorContext) -> DealSignal | None:
    if not gtm_agent_enabled(ctx):
        return None
    try:
        async with _client(_bearer(ctx.gtm_agent_api_key)) as client:
            payload = await _request_json(
                client, "POST", f"{ctx.gtm_agent_base_url.rstrip('/')}/deals/signals", json=query.as_payload(),
            )
    except Exception as exc:
        log.warning("GTM agent signal fetch failed for %s: %s", query.account_name, exc)
        return None
    rows = [r for r in (payload.get("signals") or payload.get("items") or []) if isinstance(r, dict)][:10]
    return _summarize_rows("gtm_agent", rows, ("summary",), "link", ("timestamp",), total=payload.get("total"))


async def probe_gtm_agent(ctx: ConnectorContext) -> dict[str, Any]:
    if not gtm_agent_enabled(ctx):
        return {"connected": False, "message": "Missing GTM agent base URL."}
    base = ctx.gtm_agent_base_url.rstrip("/")
    async with _client(_bearer(ctx.gtm_agent_api_key)) as client:
        for path in ("/health", "/status", ""):
            try:
                resp = await client.get(f"{base}{path}")
            except httpx.HTTPError as exc:
                log.debug("GTM agent probe %s failed: %s", path or "/", exc)
                continue
            if resp.status_code < 400:
                return {"connected": True, "message": None}
    return {"connected": False, "message": "Unable to reach GTM agent health/status endpoint."}


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------


async def collect_signals(
    query: SignalQuery, ctx: ConnectorContext, slack_context: DealSignal | None = None,
) -> list[DealSignal]:
    """Fetch every enabled source concurrently; failed or empty sources are dropped."""
    tasks: list[tuple[str, Any]] = []
    if gmail_enabled(ctx):
        tasks.append(("gmail", fetch_gmail_signal(query, ctx)))
    if slack_enabled(ctx) or slack_context is not None:
        tasks.append(("slack", fetch_slack_signal(query, ctx, slack_context)))
    if gong_enabled(ctx):
        tasks.append(("gong", fetch_gong_signal(query, ctx)))
    if gtm_agent_enabled(ctx):
        tasks.append(("gtm_agent", fetch_gtm_agent_signal(query, ctx)))
    if not tasks:
        return []

    results = await asyncio.gather(*(t for _, t in tasks), return_exceptions=True)
    signals: list[DealSignal] = []
    for (source, _), result in zip(tasks, results):
        if isinstance(result, Exception):
            log.warning("Signal source %s raised for %s: %s", source, query.account_name, result)
        elif result is not None:
            signals.append(result)
    return signals


async def connector_health(ctx: ConnectorContext) -> list[dict[str, Any]]:
    """Probe every provider: ``missing_config``, ``connected`` or ``degraded``."""
    checks = [
        ("gmail", gmail_enabled(ctx), probe_gmail(ctx)),
        ("slack", slack_enabled(ctx), probe_slack(ctx)),
        ("gong", gong_enabled(ctx), probe_gong(ctx)),
        ("gtm_agent", gtm_agent_enabled(ctx), probe_gtm_agent(ctx)),
    ]
    results = await asyncio.gather(*(c for _, _, c in checks), return_exceptions=True)
    report = []
    for (provider, enabled, _), result in zip(checks, results):
        if isinstance(result, Exception):
            result = {"connected": False, "message": str(result)}
        if not enabled:
            status = "missing_config"
        else:
            status = "connected" if result.get("connected") else "degraded"
        report.append({"provider": provider, "status": status, "auth_mode": ctx.mode, **result})
    return report
