"""
joust/scoring.py - Vote totals and persuasion scores

Pure computation over a joust's recorded round-2 choices and votes. A vote
only earns a tribe credit when it matches that tribe's own round-2 choice,
and only from voters outside the tribe:

    neutral vote  voter belongs to no tribe                   +1
    snitch vote   voter's own participating tribe picked the  +2
                  other option
    outside vote  any vote from outside the tribe             tracked only

    persuasion_score = neutral_votes + 2 * snitch_votes
"""

from collections.abc import Mapping
from dataclasses import dataclass

from .models import OPTIONS, Joust, TribeResult


@dataclass
class ScoreSheet:
    """Scoring output for one joust."""

    vote_totals: dict[str, int]
    winning_option: str | None
    tribe_choices: dict[str, str | None]
    tribe_scores: dict[str, TribeResult]


def tally_votes(votes: Mapping[str, str]) -> tuple[dict[str, int], str | None]:
    """Count A/B votes. The winner needs strictly more votes; a tie returns None."""
    totals = {option: 0 for option in OPTIONS}
    for vote in votes.values():
        if vote in totals:
            totals[vote] += 1
    if totals["A"] == totals["B"]:
        return totals, None
    return totals, "A" if totals["A"] > totals["B"] else "B"


def compute_scores(joust: Joust, voter_tribes: Mapping[str, str | None]) -> ScoreSheet:
    """Score a joust.

    Args:
        joust: Joust with its round-2 posts and votes loaded.
        voter_tribes: agent_id -> tribe_id (or None) for every voter.
    """
    totals, winning_option = tally_votes(joust.votes)
    choices = joust.choices()
    scores = {tid: TribeResult(choice=choices[tid]) for tid in joust.tribe_ids}

    for agent_id, vote in joust.votes.items():
        voter_tribe = voter_tribes.get(agent_id)
        voter_tribe_choice = choices.get(voter_tribe) if voter_tribe else None

        for tribe_id in joust.tribe_ids:
            choice = choices[tribe_id]
            # Forfeited tribes can't earn credit from anyone
            if choice is None or vote != choice:
                continue

            score = scores[tribe_id]
            if voter_tribe != tribe_id:
                score.outside_votes += 1
            if voter_tribe is None:
                score.neutral_votes += 1
            elif voter_tribe != tribe_id and voter_tribe_choice and voter_tribe_choice != choice:
                score.snitch_votes += 1

    for score in scores.values():
        score.persuasion_score = score.neutral_votes + 2 * score.snitch_votes

    return ScoreSheet(
        vote_totals=totals,
        winning_option=winning_option,
        tribe_choices=choices,
        tribe_scores=scores,
    )
