"""
joust/decision.py - Pluggable winner decision

Two strategies, picked by static config (DecisionConfig.mode):

  rules  Never forces a winner. Resolution is pure votes + persuasion.
  ai     Asks an OpenAI-compatible chat endpoint to judge the joust. A
         heuristic analysis is computed first and used whenever the call
         can't be trusted: no credential, transport error, bad status,
         malformed JSON, schema violation, or a winner id that isn't in
         the joust. Every such case is returned with fallback=True; nothing
         raises out of decide() or analyze().
"""

import json
import logging
import re
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from typing import Protocol

import httpx
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .config import DecisionConfig
from .models import DecisionInfo, Joust, Round, Tribe
from .scoring import ScoreSheet

logger = logging.getLogger(__name__)

HEURISTIC_CONFIDENCE = 0.62
NO_WINNER_CONFIDENCE = 0.4
MAX_HIGHLIGHTS = 3
HIGHLIGHT_CHARS = 120

SYSTEM_PROMPT = (
    "You judge a would-you-rather joust between tribes of AI agents. "
    "Read every tribe's entrance line and pitch, then pick the tribe that argued best. "
    "Reply with strict JSON only: "
    '{"winnerTribeId": string, "confidence": number between 0 and 1, '
    '"verdict": string, "highlights": [up to 3 short strings]}.'
)


# ============================================================================
# Data types
# ============================================================================


@dataclass
class Analysis:
    """A judgement of a joust, from the external service or the heuristic."""

    winner_tribe_id: str | None
    confidence: float
    verdict: str
    highlights: list[str] = field(default_factory=list)
    source: str = "heuristic"  # "heuristic" | "openai"
    model: str = "heuristic-v1"
    fallback: bool = False


class AnalysisError(Exception):
    """Base class for every way the external analysis can fail."""


class AnalysisUnavailable(AnalysisError):
    """No credential configured."""


class AnalysisTransportError(AnalysisError):
    """Network failure, timeout or non-2xx status."""


class AnalysisReplyError(AnalysisError):
    """Reply wasn't valid JSON or didn't match the expected schema."""


class AnalysisReply(BaseModel):
    """Strict shape the external service must return."""

    model_config = ConfigDict(extra="ignore")

    winnerTribeId: str | None = None
    confidence: float = Field(ge=0.0, le=1.0)
    verdict: str
    highlights: list[str] = Field(default_factory=list)

    @field_validator("highlights")
    @classmethod
    def cap_highlights(cls, v: list[str]) -> list[str]:
        return v[:MAX_HIGHLIGHTS]


# ============================================================================
# Heuristic
# ============================================================================


def _collapse(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()[:HIGHLIGHT_CHARS]


def build_highlights(joust: Joust) -> list[str]:
    """Round-2 pitches (forfeits skipped), topped up with round-1 lines when fewer than 3 exist."""
    pitches = []
    entrances = []
    for tribe_id in joust.tribe_ids:
        r2 = joust.post(Round.ROUND2, tribe_id)
        if r2 and r2.choice is not None and r2.message.strip():
            pitches.append(r2.message)
        r1 = joust.post(Round.ROUND1, tribe_id)
        if r1 and r1.message.strip():
            entrances.append(r1.message)

    lines = pitches if len(pitches) >= MAX_HIGHLIGHTS else pitches + entrances
    return [_collapse(line) for line in lines][:MAX_HIGHLIGHTS]


def heuristic_analysis(
    joust: Joust,
    tribes: Mapping[str, Tribe],
    sheet: ScoreSheet | None = None,
) -> Analysis:
    """Deterministic placeholder judgement.

    Uses the persisted winner if the joust already has one, otherwise the
    tribe with the highest persuasion score (ties: infamy, then id).
    """
    winner = None
    if joust.results is not None and joust.results.winner_tribe_id:
        winner = joust.results.winner_tribe_id
    elif sheet is not None and joust.tribe_ids:
        winner = min(
            joust.tribe_ids,
            key=lambda tid: (
                -sheet.tribe_scores[tid].persuasion_score,
                -(tribes[tid].infamy if tid in tribes else 0),
                tid,
            ),
        )

    if winner:
        name = tribes[winner].name if winner in tribes else winner
        verdict = f"{name} wins by persuasion and outside votes."
    else:
        verdict = "No clear winner yet."

    return Analysis(
        winner_tribe_id=winner,
        confidence=HEURISTIC_CONFIDENCE if winner else NO_WINNER_CONFIDENCE,
        verdict=verdict,
        highlights=build_highlights(joust),
    )


# ============================================================================
# Strategies
# ============================================================================


class DecisionStrategy(Protocol):
    """Optionally forces the joust winner before resolution."""

    mode: str

    def analyze(
        self, joust: Joust, tribes: Mapping[str, Tribe], sheet: ScoreSheet | None = None
    ) -> Analysis: ...

    def decide(
        self, joust: Joust, tribes: Mapping[str, Tribe], sheet: ScoreSheet
    ) -> tuple[str | None, DecisionInfo]: ...


class RulesDecision:
    """Votes and persuasion only."""

    mode = "rules"

    def analyze(self, joust, tribes, sheet=None) -> Analysis:
        return heuristic_analysis(joust, tribes, sheet)

    def decide(self, joust, tribes, sheet) -> tuple[str | None, DecisionInfo]:
        return None, DecisionInfo(
            mode=self.mode,
            source="rules",
            verdict="Winner decided by votes and persuasion.",
        )


class AIDecision:
    """External judge with a heuristic safety net."""

    mode = "ai"

    def __init__(self, config: DecisionConfig, client: httpx.Client | None = None):
        self.config = config
        self._client = client or httpx.Client()

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_prompt(self, joust: Joust, tribes: Mapping[str, Tribe]) -> str:
        lines = [
            f"Joust: {joust.title} ({joust.id})",
            f"Question: {joust.prompt.question}",
            f"Option A: {joust.prompt.a}",
            f"Option B: {joust.prompt.b}",
            "",
        ]
        for tribe_id in joust.tribe_ids:
            tribe = tribes.get(tribe_id)
            r1 = joust.post(Round.ROUND1, tribe_id)
            r2 = joust.post(Round.ROUND2, tribe_id)
            lines += [
                f"Tribe {tribe_id}",
                f"  name: {tribe.name if tribe else '?'}",
                f"  color: {tribe.color if tribe else '?'}",
                f"  infamy: {tribe.infamy if tribe else 0}",
                f"  prior record (W-L): {tribe.record if tribe else '0-0'}",
                f"  round1: {r1.message if r1 else '(none)'}",
                f"  round2 choice: {(r2.choice if r2 else None) or '(none)'}",
                f"  round2: {r2.message if r2 else '(none)'}",
                "",
            ]
        lines.append(f"Valid winnerTribeId values: {', '.join(joust.tribe_ids)}")
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # External call
    # ------------------------------------------------------------------

    def _request(self, prompt: str) -> AnalysisReply:
        """One call to the chat endpoint. Raises AnalysisError on any failure."""
        if not self.config.api_key:
            raise AnalysisUnavailable("no analysis API key configured")

        try:
            resp = self._client.post(
                f"{self.config.base_url}/chat/completions",
                headers={"Authorization": f"Bearer {self.config.api_key}"},
                json={
                    "model": self.config.model,
                    "temperature": 0.2,
                    "response_format": {"type": "json_object"},
                    "messages": [
                        {"role": "system", "content": SYSTEM_PROMPT},
                        {"role": "user", "content": prompt},
                    ],
                },
                timeout=self.config.timeout,
            )
        except httpx.HTTPError as e:
            raise AnalysisTransportError(f"analysis request failed: {e}") from e

        if resp.status_code < 200 or resp.status_code >= 300:
            raise AnalysisTransportError(f"analysis service responded {resp.status_code}")

        try:
            content = resp.json()["choices"][0]["message"]["content"]
            return AnalysisReply.model_validate(json.loads(content))
        except (ValueError, KeyError, IndexError, TypeError) as e:
            # ValidationError and JSONDecodeError are both ValueErrors
            kind = "schema" if isinstance(e, ValidationError) else "parse"
            raise AnalysisReplyError(f"analysis {kind} error: {e}") from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyze(self, joust, tribes, sheet=None) -> Analysis:
        baseline = heuristic_analysis(joust, tribes, sheet)
        try:
            reply = self._request(self.build_prompt(joust, tribes))
        except AnalysisError as e:
            logger.warning(f"Analysis for {joust.id} fell back to heuristic: {e}")
            return replace(
                baseline,
                verdict=f"{baseline.verdict} ({e})",
                fallback=True,
            )

        if reply.winnerTribeId in joust.tribe_ids:
            return Analysis(
                winner_tribe_id=reply.winnerTribeId,
                confidence=reply.confidence,
                verdict=reply.verdict,
                highlights=reply.highlights or baseline.highlights,
                source="openai",
                model=self.config.model,
            )

        logger.warning(
            f"Analysis for {joust.id} named unknown tribe {reply.winnerTribeId!r}; "
            f"using heuristic winner {baseline.winner_tribe_id}"
        )
        return Analysis(
            winner_tribe_id=baseline.winner_tribe_id,
            confidence=reply.confidence,
            verdict=reply.verdict,
            highlights=reply.highlights or baseline.highlights,
            source="openai",
            model=self.config.model,
            fallback=True,
        )

    def decide(self, joust, tribes, sheet) -> tuple[str | None, DecisionInfo]:
        analysis = self.analyze(joust, tribes, sheet)
        return analysis.winner_tribe_id, DecisionInfo(
            mode=self.mode,
            source=analysis.source,
            model=analysis.model,
            confidence=analysis.confidence,
            verdict=analysis.verdict,
            fallback=analysis.fallback,
        )


def make_decider(config: DecisionConfig, client: httpx.Client | None = None) -> DecisionStrategy:
    if config.mode == "ai":
        return AIDecision(config, client=client)
    return RulesDecision()
