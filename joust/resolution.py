"""
joust/resolution.py - Winner selection and infamy redistribution

Winner selection, in order:
  1. A forced winner from the decision strategy, if it's in the joust.
  2. Among tribes that picked the winning option, the highest persuasion score.
  3. Ties broken by current infamy (desc), then tribe id (asc).
  4. If no tribe picked the winning option (or the vote tied), rank every
     tribe by persuasion, infamy, id.

Infamy delta per tribe:
    base + winner_bonus + persuasion_score
    base          +6 on the winning side, -6 otherwise
                  (no winning option at all: +2 winner, -2 everyone else)
    winner_bonus  +8 for the designated winner
Members get round(delta * 0.35), rounding half away from zero.
"""

import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal

from .scoring import ScoreSheet
from .store import JoustStore

logger = logging.getLogger(__name__)

SIDE_REWARD = 6
NO_OPTION_REWARD = 2
WINNER_BONUS = 8
MEMBER_SHARE = Decimal("0.35")


@dataclass
class Resolution:
    winner_tribe_id: str | None
    winning_option: str | None


def member_delta(tribe_delta: int) -> int:
    """A member's share of the tribe delta, rounded half away from zero."""
    share = Decimal(tribe_delta) * MEMBER_SHARE
    # Decimal's ROUND_HALF_UP rounds ties away from zero
    return int(share.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _rank_key(tribe_id: str, sheet: ScoreSheet, infamy: Mapping[str, int]):
    return (-sheet.tribe_scores[tribe_id].persuasion_score, -infamy.get(tribe_id, 0), tribe_id)


def pick_winner(
    tribe_ids: Sequence[str],
    sheet: ScoreSheet,
    infamy: Mapping[str, int],
    forced_winner: str | None = None,
) -> Resolution:
    """Designate the winning tribe and the effective winning option.

    Deterministic: identical scores, infamy and ids always give the same winner.
    """
    if forced_winner is not None and forced_winner in tribe_ids:
        option = sheet.tribe_choices.get(forced_winner) or sheet.winning_option
        return Resolution(winner_tribe_id=forced_winner, winning_option=option)

    option = sheet.winning_option
    eligible = [tid for tid in tribe_ids if option and sheet.tribe_choices.get(tid) == option]
    pool = eligible or list(tribe_ids)
    if not pool:
        return Resolution(winner_tribe_id=None, winning_option=option)

    ranked = sorted(pool, key=lambda tid: _rank_key(tid, sheet, infamy))
    return Resolution(winner_tribe_id=ranked[0], winning_option=option)


def infamy_delta(
    tribe_id: str, sheet: ScoreSheet, resolution: Resolution
) -> tuple[int, bool]:
    """Return (delta, on_winning_side) for one tribe."""
    choice = sheet.tribe_choices.get(tribe_id)
    is_winner = tribe_id == resolution.winner_tribe_id

    if resolution.winning_option is not None:
        on_winning_side = choice == resolution.winning_option
        base = SIDE_REWARD if on_winning_side else -SIDE_REWARD
    else:
        on_winning_side = False
        base = NO_OPTION_REWARD if is_winner else -NO_OPTION_REWARD

    bonus = WINNER_BONUS if is_winner else 0
    return base + bonus + sheet.tribe_scores[tribe_id].persuasion_score, on_winning_side


def apply_reputation(
    store: JoustStore,
    tribe_ids: Sequence[str],
    sheet: ScoreSheet,
    resolution: Resolution,
) -> dict[str, int]:
    """Apply infamy and win/loss to every tribe and its members, once.

    Each tribe's update (tribe delta + member deltas) is one store call,
    which backends make atomic. Returns tribe_id -> delta.
    """
    deltas = {}
    for tribe_id in tribe_ids:
        delta, won = infamy_delta(tribe_id, sheet, resolution)
        share = member_delta(delta)
        members = store.apply_tribe_outcome(tribe_id, delta, won, share)
        sheet.tribe_scores[tribe_id].delta_infamy = delta
        deltas[tribe_id] = delta
        logger.info(
            f"Tribe {tribe_id}: {delta:+d} infamy ({'win' if won else 'loss'}), "
            f"{len(members)} member(s) {share:+d} each"
        )
    return deltas
