"""Unified async LLM client used by the extraction and quality engines."""
from __future__ import annotations

import json
import logging
import re
from typing import Any

from blueprint.config import get_settings
from blueprint.errors import LLMCallError

log = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(\{.*\})\s*```", re.DOTALL)


def parse_json_object(text: str | None) -> dict[str, Any] | None:
    """Parse model output into a JSON object.

    Tries the whole text first, then the slice from the first ``{`` to the
    last ``}``. Returns ``None`` when neither yields an object.
    """
    if not text:
        return None
    try:
        parsed = json.loads(text)
        if isinstance(parsed, dict):
            return parsed
    except json.JSONDecodeError:
        pass
    start, end = text.find("{"), text.rfind("}")
    if start == -1 or end <= start:
        return None
    try:
        parsed = json.loads(text[start:end + 1])
    except json.JSONDecodeError:
        log.debug("Unparseable LLM output: %s", text[:200])
        return None
    return parsed if isinstance(parsed, dict) else None


class LLMClient:
    """Async client for Anthropic and OpenAI with optional structured output."""

    def __init__(
        self,
        provider: str | None = None,
        model: str | None = None,
        api_key: str | None = None,
        base_url: str | None = None,
        timeout: float | None = None,
    ):
        settings = get_settings()
        self.provider = provider or settings.llm_provider
        self.model = model or settings.llm_model
        self.timeout = timeout or settings.llm_timeout_seconds
        self._api_key = api_key
        self._base_url = base_url
        self._client: Any = None
        self._init_client()

    def _init_client(self) -> None:
        if self.provider == "anthropic":
            import anthropic
            self.model = self.model or "claude-haiku-4-5-20251001"
            kwargs: dict[str, Any] = {"timeout": self.timeout}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            self._client = anthropic.AsyncAnthropic(**kwargs)
        elif self.provider in ("openai", "openai_compatible"):
            import openai
            self.model = self.model or "gpt-4o-mini"
            kwargs = {"timeout": self.timeout}
            if self._api_key:
                kwargs["api_key"] = self._api_key
            if self._base_url:
                kwargs["base_url"] = self._base_url
            self._client = openai.AsyncOpenAI(**kwargs)
        else:
            raise ValueError(f"Unknown LLM provider: {self.provider!r}")

    async def complete(
        self,
        system: str,
        user: str,
        schema: dict[str, Any] | None = None,
        schema_name: str = "payload",
        max_tokens: int = 4096,
    ) -> str:
        """Send system+user messages and return the raw text of the reply.

        With *schema*, OpenAI gets a strict ``json_schema`` response format;
        Anthropic gets the schema appended to the system prompt.
        """
        try:
            if self.provider == "anthropic":
                if schema is not None:
                    system = (
                        f"{system}\n\nRespond with ONLY a JSON object matching this JSON schema:\n"
                        f"{json.dumps(schema)}"
                    )
                response = await self._client.messages.create(
                    model=self.model,
                    max_tokens=max_tokens,
                    system=system,
                    messages=[{"role": "user", "content": user}],
                )
                text = response.content[0].text.strip()
                m = _FENCE_RE.search(text)
                if m:
                    text = m.group(1)
                return text

            if schema is not None:
                response_format: dict[str, Any] = {
                    "type": "json_schema",
                    "json_schema": {"name": schema_name, "strict": True, "schema": schema},
                }
            else:
                response_format = {"type": "json_object"}
            response = await self._client.chat.completions.create(
                model=self.model,
                max_tokens=max_tokens,
                response_format=response_format,
                messages=[
                    {"role": "system", "content": system},
                    {"role": "user", "content": user},
                ],
            )
            return response.choices[0].message.content or ""
        except Exception as exc:
            raise LLMCallError(f"LLM API call failed: {exc}", retryable=True) from exc

    async def call(self, system: str, user: str, **kwargs: Any) -> dict[str, Any]:
        """Like :meth:`complete` but parses the reply into a JSON object."""
        text = await self.complete(system, user, **kwargs)
        parsed = parse_json_object(text)
        if parsed is None:
            raise LLMCallError(f"LLM returned invalid JSON: {text[:200]}", retryable=False)
        return parsed
