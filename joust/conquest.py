"""
joust/conquest.py - Post-joust membership transfer

The winning tribe absorbs every member of the other tribes in the joust.
One-shot and one-way; join policies are not consulted.
"""

import logging
from collections.abc import Sequence

from .models import Migration
from .store import JoustStore

logger = logging.getLogger(__name__)


def conquer(store: JoustStore, tribe_ids: Sequence[str], winner_tribe_id: str | None) -> Migration:
    """Move all losing-tribe members into the winner. Returns the tally."""
    migration = Migration(winner_tribe_id=winner_tribe_id)
    if winner_tribe_id is None:
        return migration

    for tribe_id in tribe_ids:
        if tribe_id == winner_tribe_id:
            continue
        moved = 0
        for agent_id in store.list_tribe_member_ids(tribe_id):
            if store.get_agent_tribe_id(agent_id) == winner_tribe_id:
                continue
            store.transfer_agent(agent_id, winner_tribe_id)
            moved += 1
        if moved:
            migration.moved_from_tribes.append({"tribe_id": tribe_id, "moved_count": moved})
            migration.moved_agents += moved

    if migration.moved_agents:
        logger.info(
            f"Conquest: {migration.moved_agents} agent(s) moved into {winner_tribe_id}"
        )
    return migration
