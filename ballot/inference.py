"""
Inference Client
Asks a chat-completions model for a vote recommendation.

Only the proposal's title and description are sent. The model is asked
for JSON, but replies are parsed defensively: JSON first, then a keyword
scan, then Abstain.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field

import httpx

from ballot.errors import InferenceError
from ballot.proposal import Proposal, VoteOption

logger = logging.getLogger(__name__)


PROMPT_TEMPLATE = """# House of Stake — Voting Agent
Your job is to recommend a vote based only on whether the proposal benefits the NEAR ecosystem.

You receive:
- title
- description
- voting_options: For, Against, Abstain

Use only the information in the title and description.

Mapping:
- For → meaningful benefit
- Abstain → unclear benefit
- Against → no benefit or poses risk

"Benefit" means the proposal provides a clear and specific benefit to NEAR's governance, infrastructure, or ecosystem growth.

## Meaningful Benefit → For
Select For when the proposal provides a clear and specific positive benefit.

## Unclear Benefit → Abstain
Select Abstain when the description does not provide enough information to determine whether it benefits the ecosystem.

## No Benefit or Risk → Against
Select Against when the proposal is irrelevant to NEAR, asks for funding without a clear purpose, centralizes control, or poses an obvious risk to the ecosystem.

## Output Format (JSON Only)
Return only valid JSON:
{{
  "selected_option": "For | Against | Abstain",
  "reason": "Short explanation based only on title and description."
}}

Always select the option that matches whether the proposal offers meaningful benefit, unclear benefit, or no benefit to the NEAR ecosystem.

Proposal context:
Title: {title}
Description: {description}"""


# Accepted spellings for each option in a JSON reply
OPTION_SYNONYMS: dict[str, VoteOption] = {
    "for": VoteOption.FOR,
    "yes": VoteOption.FOR,
    "approve": VoteOption.FOR,
    "support": VoteOption.FOR,
    "against": VoteOption.AGAINST,
    "no": VoteOption.AGAINST,
    "reject": VoteOption.AGAINST,
    "oppose": VoteOption.AGAINST,
    "abstain": VoteOption.ABSTAIN,
    "abstention": VoteOption.ABSTAIN,
    "neutral": VoteOption.ABSTAIN,
}

# Keyword fallback precedence: against, then for, then abstain
_KEYWORD_ORDER = (
    ("against", VoteOption.AGAINST),
    ("for", VoteOption.FOR),
    ("abstain", VoteOption.ABSTAIN),
)

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")


@dataclass
class AIDecision:
    selected_option: VoteOption
    reasons: list[str] = field(default_factory=list)


def build_prompt(proposal: Proposal) -> str:
    return PROMPT_TEMPLATE.format(
        title=proposal.title or "No title",
        description=proposal.description or "No description",
    )


def normalize_option(value) -> VoteOption | None:
    if value is None:
        return None
    return OPTION_SYNONYMS.get(str(value).strip().lower())


def _scan_keywords(text: str) -> VoteOption:
    lowered = text.lower()
    for keyword, option in _KEYWORD_ORDER:
        if keyword in lowered:
            return option
    return VoteOption.ABSTAIN


def parse_ai_response(response: str) -> AIDecision:
    """Turn raw model output into a decision. Never raises."""
    match = _JSON_OBJECT.search(response or "")
    if match:
        try:
            parsed = json.loads(match.group(0))
        except ValueError:
            parsed = None

        if isinstance(parsed, dict):
            lowered = {str(k).lower(): v for k, v in parsed.items()}
            selected = (
                normalize_option(lowered.get("selected_option"))
                or normalize_option(lowered.get("selectedoption"))
                or normalize_option(lowered.get("decision"))
            )
            reason = lowered.get("reason")
            if not reason and isinstance(lowered.get("reasons"), list):
                reason = " ".join(str(r) for r in lowered["reasons"])

            option = selected or VoteOption.ABSTAIN
            return AIDecision(
                selected_option=option,
                reasons=[
                    f"Vote: {option.value}",
                    f"Reason: {reason}" if reason else "Reason: Not provided",
                ],
            )

    option = _scan_keywords(response or "")
    return AIDecision(
        selected_option=option,
        reasons=[f"Vote: {option.value}", "Reason: Could not parse structured JSON"],
    )


class InferenceClient:
    """Minimal chat-completions client (OpenAI-compatible endpoint)."""

    def __init__(
        self,
        api_url: str,
        api_key: str | None,
        model: str,
        timeout: float = 60.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.api_url = api_url
        self.api_key = api_key
        self.model = model
        self._client = httpx.AsyncClient(timeout=timeout, transport=transport)

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    async def complete(self, prompt: str) -> str:
        """Return the model's reply text. Raises InferenceError on any failure."""
        if not self.api_key:
            raise InferenceError("No inference API key configured")

        try:
            resp = await self._client.post(
                self.api_url,
                headers={"Authorization": f"Bearer {self.api_key}"},
                json={
                    "model": self.model,
                    "messages": [{"role": "user", "content": prompt}],
                },
            )
        except httpx.HTTPError as exc:
            raise InferenceError(f"AI API request failed: {exc}") from exc

        if resp.status_code >= 300:
            raise InferenceError(f"AI API error: {resp.status_code} - {resp.text[:200]}")

        try:
            body = resp.json()
            content = body["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as exc:
            raise InferenceError(f"AI API returned no completion: {exc}") from exc
        if not content:
            raise InferenceError("AI API returned an empty completion")
        return content

    async def recommend(self, proposal: Proposal) -> AIDecision:
        logger.info("Sending proposal %s to inference for screening", proposal.id)
        decision = parse_ai_response(await self.complete(build_prompt(proposal)))
        logger.info("AI recommendation for %s: %s", proposal.id, decision.selected_option.value)
        return decision

    async def aclose(self) -> None:
        await self._client.aclose()
