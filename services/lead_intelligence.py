"""
Lead scoring, provider matching and provider support answers.

RuleBasedLeadIntelligence works offline and is always available.
OpenAILeadIntelligence asks a chat model first and falls back to the rules
whenever the API key is missing or the call (or its JSON) fails.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from openai import OpenAI, OpenAIError

from domain.lead import LeadPublicView
from domain.provider import Provider, normalize_provider_id
from services.collaborators import LeadScore, ProviderMatch

logger = logging.getLogger(__name__)

# Only matches above this score are dispatched.
MIN_MATCH_SCORE: float = 0.6

FALLBACK_SUPPORT_ANSWER: str = (
    "Thanks for your question! For immediate help, visit our website or reply "
    "with specific questions about how client requests work."
)

_QUESTION_INDICATORS = (
    "?", "how", "what", "when", "where", "why", "who",
    "help", "info", "explain", "tell me", "understand",
    "work", "cost", "price", "fee", "charge", "pay",
    "location", "area", "commission", "cut", "earn",
    "often", "many", "request", "lead", "client", "question",
    "cancel", "cancellation", "unsubscribe", "quit",
    "plan", "subscription", "account", "billing", "support",
    "trying to", "need to", "want to",
    "issue", "problem", "trouble", "site", "website",
)
_LEAD_RESPONSE_WORDS = ("yes", "no", "interested", "pass", "skip")

SUPPORT_SYSTEM_PROMPT = """You are Provider Support for a client-request marketplace. You answer
questions from independent service providers about how the service works.

Rules:
- Short, clear, friendly answers. SMS: 2 to 4 short lines.
- The platform is a directory and lead service; it does not perform or arrange services.
- Providers set their own prices, schedules and payment methods.
- Unlocking means paying to view a client's contact details. Unlock fees are
  non-refundable once details are revealed, except billing errors or duplicate charges.
- No medical or legal advice. Do not promise bookings or income.
- Never reveal any client data."""

MATCHING_SYSTEM_PROMPT = (
    "You match client service requests with suitable providers based on location, "
    "service type and service-area coverage. Always respond with valid JSON."
)

QUALITY_SYSTEM_PROMPT = (
    "You are a lead quality analyst. Evaluate client requests for completeness, "
    "legitimacy and commercial viability. Always respond with valid JSON."
)


def looks_like_support_question(text: str) -> bool:
    """
    Heuristic: does a provider message ask something, rather than answer a teaser?

    Plain lead responses ("y", "no", "not interested") are never questions.
    """

    lowered = text.lower().strip()
    if not lowered:
        return False
    if lowered in ("y", "n"):
        return False
    for word in _LEAD_RESPONSE_WORDS:
        if (
            lowered == word
            or f" {word} " in lowered
            or lowered.startswith(f"{word} ")
            or lowered.endswith(f" {word}")
        ):
            return False
    return any(indicator in lowered for indicator in _QUESTION_INDICATORS)


def _covers(provider: Provider, lead: LeadPublicView) -> Optional[float]:
    if not provider.service_areas:
        return 0.7
    city = lead.city.strip().lower()
    for area in provider.service_areas:
        area_text = area.strip().lower()
        if area_text and (area_text == city or area_text in city or city in area_text):
            return 1.0
    return None


class RuleBasedLeadIntelligence:
    """Deterministic scoring and matching; no network access."""

    def score_lead(self, lead: LeadPublicView) -> LeadScore:
        red_flags: List[str] = []
        if not lead.city.strip():
            red_flags.append("missing city")
        if not lead.service_type.strip():
            red_flags.append("missing service type")

        filled = sum(
            1
            for value in (lead.preferred_time_window, lead.session_length, lead.location_type)
            if value
        )
        quality = 0.55 + 0.15 * filled
        level = "high" if quality >= 0.9 else "medium" if quality >= 0.7 else "low"
        return LeadScore(
            should_process=not red_flags,
            quality_score=round(quality, 2),
            quality_level=level,
            red_flags=red_flags,
        )

    def match_providers(
        self, lead: LeadPublicView, providers: Sequence[Provider]
    ) -> List[ProviderMatch]:
        matches: List[ProviderMatch] = []
        for provider in providers:
            if not provider.can_receive_leads():
                continue
            score = _covers(provider, lead)
            if score is None:
                continue
            reasons = ["Service area match"] if score == 1.0 else ["Covers all areas"]
            matches.append(
                ProviderMatch(provider_id=provider.provider_id, match_score=score, reasons=reasons)
            )
        matches.sort(key=lambda m: (-m.match_score, m.provider_id))
        return matches

    def is_support_question(self, text: str) -> bool:
        return looks_like_support_question(text)

    def answer_support_question(self, text: str) -> str:
        return FALLBACK_SUPPORT_ANSWER


class OpenAILeadIntelligence(RuleBasedLeadIntelligence):
    def __init__(
        self,
        api_key: Optional[str] = None,
        *,
        model: str = "gpt-4o-mini",
        client: Optional[Any] = None,
    ) -> None:
        if client is not None:
            self.client = client
        elif api_key:
            self.client = OpenAI(api_key=api_key)
        else:
            self.client = None
            logger.warning("No OpenAI API key - lead intelligence running in rule-based mode only")
        self.model = model

    def _complete_json(self, system: str, prompt: str, *, max_tokens: int) -> Dict[str, Any]:
        response = self.client.chat.completions.create(
            model=self.model,
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": prompt},
            ],
            response_format={"type": "json_object"},
            temperature=0.2,
            max_tokens=max_tokens,
        )
        content = response.choices[0].message.content or "{}"
        parsed = json.loads(content)
        if not isinstance(parsed, dict):
            raise ValueError("expected a JSON object")
        return parsed

    def score_lead(self, lead: LeadPublicView) -> LeadScore:
        if self.client is None:
            return super().score_lead(lead)

        prompt = f"""Analyze this client request for quality and completeness.

REQUEST:
- Service: {lead.service_type}
- Location: {lead.city}
- Time: {lead.preferred_time_window or 'Not specified'}
- Session Length: {lead.session_length or 'Not specified'}
- Location Type: {lead.location_type or 'Not specified'}

Respond with JSON:
{{"quality_score": 0.85, "quality_level": "high|medium|low",
  "red_flags": ["..."], "should_process": true}}"""
        try:
            data = self._complete_json(QUALITY_SYSTEM_PROMPT, prompt, max_tokens=300)
            return LeadScore(
                should_process=bool(data.get("should_process", True)),
                quality_score=float(data.get("quality_score", 0.7)),
                quality_level=str(data.get("quality_level", "medium")),
                red_flags=[str(flag) for flag in data.get("red_flags") or []],
            )
        except (OpenAIError, ValueError, KeyError, TypeError, IndexError) as exc:
            logger.warning(
                "Lead scoring via OpenAI failed; using rules",
                extra={"lead_id": str(lead.lead_id), "error": str(exc)},
            )
            return super().score_lead(lead)

    def match_providers(
        self, lead: LeadPublicView, providers: Sequence[Provider]
    ) -> List[ProviderMatch]:
        if self.client is None or not providers:
            return super().match_providers(lead, providers)

        # Only non-PII provider attributes go into the prompt.
        roster = "\n".join(
            f"- ID: {p.provider_id}; Service Areas: {', '.join(p.service_areas) or 'All'}"
            for p in providers
        )
        prompt = f"""Match this client request with suitable providers.

REQUEST:
- Service Type: {lead.service_type}
- Location: {lead.city}
- Preferred Time: {lead.preferred_time_window or 'Flexible'}
- Session Length: {lead.session_length or 'Not specified'}

PROVIDERS:
{roster}

Respond with JSON:
{{"matches": [{{"provider_id": "provider1", "match_score": 0.95, "match_reasons": ["Same city"]}}]}}
Scores are 0.0 to 1.0. Only include providers with score > {MIN_MATCH_SCORE}."""
        known = {p.provider_id for p in providers}
        try:
            data = self._complete_json(MATCHING_SYSTEM_PROMPT, prompt, max_tokens=800)
            matches: List[ProviderMatch] = []
            for item in data.get("matches") or []:
                provider_id = normalize_provider_id(item["provider_id"])
                score = float(item.get("match_score", 0))
                if provider_id not in known or score <= MIN_MATCH_SCORE:
                    continue
                matches.append(
                    ProviderMatch(
                        provider_id=provider_id,
                        match_score=score,
                        reasons=[str(r) for r in item.get("match_reasons") or []],
                    )
                )
            matches.sort(key=lambda m: (-m.match_score, m.provider_id))
            return matches
        except (OpenAIError, ValueError, KeyError, TypeError, IndexError) as exc:
            logger.warning(
                "Provider matching via OpenAI failed; using rules",
                extra={"lead_id": str(lead.lead_id), "error": str(exc)},
            )
            return super().match_providers(lead, providers)

    def close(self) -> None:
        close = getattr(self.client, "close", None)
        if callable(close):
            close()

    def answer_support_question(self, text: str) -> str:
        if self.client is None:
            return FALLBACK_SUPPORT_ANSWER
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[
                    {"role": "system", "content": SUPPORT_SYSTEM_PROMPT},
                    {"role": "user", "content": f"Provider question: {text}"},
                ],
                max_tokens=100,
                temperature=0.7,
            )
            answer = (response.choices[0].message.content or "").strip()
        except (OpenAIError, IndexError, AttributeError) as exc:
            logger.warning("Support answer via OpenAI failed", extra={"error": str(exc)})
            return FALLBACK_SUPPORT_ANSWER
        return answer or FALLBACK_SUPPORT_ANSWER


__all__ = [
    "MIN_MATCH_SCORE",
    "FALLBACK_SUPPORT_ANSWER",
    "looks_like_support_question",
    "RuleBasedLeadIntelligence",
    "OpenAILeadIntelligence",
]
