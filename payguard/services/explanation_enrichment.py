"""
Flag Explanation Enrichment Service
Uses an OpenAI-compatible chat completion API (Groq by default) to rewrite
deterministic flag reasons into auditor-facing explanations.

Enrichment is strictly optional: every call returns the supplied fallback
text when the API is unconfigured, slow, or failing.
"""

import asyncio
import json
import logging
from typing import Any, Dict, Optional

import httpx
import openai

from payguard.config import settings
from payguard.models.flag import FlagType

logger = logging.getLogger(__name__)


SYSTEM_PROMPT = (
    "You are a fraud detection analyst for a Nigerian civil service payroll system. "
    "Explain anomalies in clear, professional language that auditors and administrators "
    "can understand. Be concise (2-3 sentences max), factual, and state the severity "
    "and recommended action."
)

SUMMARY_SYSTEM_PROMPT = (
    "You are a payroll auditor. Write a concise executive summary (2-3 sentences) "
    "of a payroll batch analysis."
)

FLAG_PROMPT_HEADINGS = {
    FlagType.GHOST: "a ghost worker detection (identity not found in the staff registry)",
    FlagType.MISSING_REGISTRY: "an unverified staff member (registered but not proven on the ledger)",
    FlagType.DUPLICATE: "a potential duplicate identity",
    FlagType.SALARY_ANOMALY: "a salary outside the configured range for the staff grade",
}

# Context keys that must never be sent to the enrichment provider
_REDACTED_KEYS = {"name", "matched_name"}


class ExplanationEnricher:
    """
    Optional natural-language enrichment of flag reasons and batch summaries.
    """

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = None,
        base_url: Optional[str] = None,
        timeout_seconds: Optional[float] = None,
        client: Optional[Any] = None,
    ):
        self.api_key = api_key if api_key is not None else settings.groq_api_key
        self.model = model or settings.enrichment_model
        self.base_url = base_url or settings.enrichment_base_url
        self.timeout_seconds = timeout_seconds or settings.enrichment_timeout_seconds
        self.max_tokens = settings.enrichment_max_tokens
        self._client = client

    @property
    def enabled(self) -> bool:
        if self._client is not None:
            return True
        return bool(self.api_key) and self.api_key != "gsk-your-groq-api-key-here"

    def _get_client(self):
        if self._client is None:
            self._client = openai.AsyncOpenAI(
                api_key=self.api_key,
                base_url=self.base_url,
                max_retries=0,
                http_client=httpx.AsyncClient(timeout=httpx.Timeout(self.timeout_seconds)),
            )
        return self._client

    async def _complete(self, system_prompt: str, user_prompt: str) -> Optional[str]:
        client = self._get_client()
        response = await asyncio.wait_for(
            client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": system_prompt},
                    {"role": "user", "content": user_prompt},
                ],
                temperature=0.7,
                max_tokens=self.max_tokens,
            ),
            timeout=self.timeout_seconds,
        )
        if not response.choices:
            return None
        content = response.choices[0].message.content
        return content.strip() if content else None

    async def enrich(
        self,
        flag_type: FlagType,
        context: Dict[str, Any],
        fallback_text: str,
    ) -> str:
        """
        Rewrite a flag reason.

        Returns:
            The enriched explanation, or fallback_text on any failure
        """
        if not self.enabled:
            return fallback_text

        safe_context = {k: v for k, v in context.items() if k not in _REDACTED_KEYS}
        prompt = (
            f"Generate a professional explanation for {FLAG_PROMPT_HEADINGS.get(flag_type, 'a payroll anomaly')}.\n\n"
            f"Details:\n{json.dumps(safe_context, indent=2, default=str)}\n\n"
            f"Template: {fallback_text}\n\n"
            f"Provide a clear, actionable explanation for auditors in 2-3 sentences."
        )

        try:
            text = await self._complete(SYSTEM_PROMPT, prompt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Explanation enrichment failed ({flag_type.value}): {e}")
            return fallback_text

        return text or fallback_text

    async def summarize_batch(self, summary: Dict[str, Any], fallback_text: str) -> str:
        """Executive summary of a processed batch, or fallback_text."""
        if not self.enabled:
            return fallback_text

        prompt = f"Summarize this payroll batch:\n{json.dumps(summary, indent=2, default=str)}"
        try:
            text = await self._complete(SUMMARY_SYSTEM_PROMPT, prompt)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Batch summary enrichment failed: {e}")
            return fallback_text

        return text or fallback_text

    async def close(self) -> None:
        """Close the underlying HTTP client."""
        if self._client is not None and hasattr(self._client, "close"):
            await self._client.close()
        self._client = None


# =========================================================================
# GLOBAL INSTANCE
# =========================================================================

_enricher: Optional[ExplanationEnricher] = None


def get_enricher() -> Optional[ExplanationEnricher]:
    """Process-wide enricher, or None when enrichment is not configured."""
    global _enricher
    if not settings.enrichment_enabled:
        return None
    if _enricher is None:
        _enricher = ExplanationEnricher()
    return _enricher


async def close_enricher():
    global _enricher
    if _enricher:
        await _enricher.close()
        _enricher = None
