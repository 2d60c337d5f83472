"""
Entity key resolution.

An agent or player can be addressed by several ids: the internal metric row
id, the stable organization/player id, the external (platform) id, and
importer-prefixed ids such as ``cp_<external id>`` written by the ChipPix
importer. The resolver returns all of them as one frozen set, and the
registry makes sure two different canonical entities never share a key.
"""

from __future__ import annotations

import logging
import re
import unicodedata
from typing import Dict, FrozenSet, Iterable, List, Optional, Set

from .models import AgentMetric, KeyConflict, PlayerMetric

logger = logging.getLogger(__name__)

IMPORTER_PREFIXES = ('cp_',)

_NUMERIC_PREFIX = re.compile(r'^(\d+)')


def norm_name(value: Optional[str]) -> str:
    """Lowercase and strip accents"""
    decomposed = unicodedata.normalize('NFD', (value or '').strip().lower())
    return ''.join(ch for ch in decomposed if not unicodedata.combining(ch))


def numeric_prefix(value: Optional[str], min_digits: int = 4) -> Optional[str]:
    """'1610051AG' -> '1610051'; None when the leading digits are too short"""
    match = _NUMERIC_PREFIX.match((value or '').strip())
    if match and len(match.group(1)) >= min_digits:
        return match.group(1)
    return None


def agent_entity_id(agent_id: Optional[str], agent_name: Optional[str]) -> str:
    if agent_id:
        return str(agent_id)
    return 'ag_' + norm_name(agent_name)


def player_entity_id(player: PlayerMetric) -> str:
    if player.player_id:
        return str(player.player_id)
    return 'pl_' + str(player.external_id or norm_name(player.nickname) or player.id)


class EntityKeyResolver:
    """Builds the complete, order-independent key set of an entity"""

    def player_keys(self, player: PlayerMetric) -> Set[str]:
        keys = set()
        for value in (player.id, player.player_id):
            if value:
                keys.add(str(value))
        if player.external_id:
            external = str(player.external_id).strip()
            keys.add(external)
            for prefix in IMPORTER_PREFIXES:
                keys.add(prefix + external)
        return keys

    def keys_for_agent(self, entity_id: str, agent_rows: Iterable[AgentMetric],
                       players: Iterable[PlayerMetric]) -> FrozenSet[str]:
        keys = {entity_id}
        for row in agent_rows:
            for value in (row.id, row.agent_id, row.external_id):
                if value:
                    keys.add(str(value))
        for player in players:
            keys |= self.player_keys(player)
        return frozenset(keys)

    def keys_for_player(self, entity_id: str, player: PlayerMetric) -> FrozenSet[str]:
        return frozenset({entity_id} | self.player_keys(player))


class KeyRegistry:
    """
    First-writer-wins ownership of ledger keys within one computation.

    A key already owned by another canonical entity is removed from the later
    entity's set and recorded as a conflict, so no ledger row is counted twice
    and two entities are never silently merged.
    """

    def __init__(self):
        self._owners: Dict[str, str] = {}
        self.conflicts: List[KeyConflict] = []

    def claim(self, entity_id: str, keys: Iterable[str]) -> FrozenSet[str]:
        owned = set()
        for key in sorted(keys):
            owner = self._owners.get(key)
            if owner is None:
                self._owners[key] = entity_id
                owned.add(key)
            elif owner == entity_id:
                owned.add(key)
            else:
                logger.warning(
                    f"Key conflict: '{key}' already belongs to {owner}; ignored for {entity_id}"
                )
                self.conflicts.append(KeyConflict(key=key, kept_entity_id=owner, dropped_entity_id=entity_id))
        return frozenset(owned)

    def owner_of(self, key: str) -> Optional[str]:
        return self._owners.get(key)
