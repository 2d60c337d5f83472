"""
Rakeback calculation.

Pooled agents earn one rate over the whole book; direct agents and
standalone players are paid per player at each player's own effective rate.
A rate frozen in the week's snapshot always beats the live configuration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, Iterable, Optional, Tuple

from .models import PlayerMetric, RateConfig, RateSnapshot, SettlementEntity, EntityRole
from .money import ZERO, round2, to_decimal

logger = logging.getLogger(__name__)

HUNDRED = Decimal('100')


@dataclass(frozen=True)
class RateSource:
    """A rate as seen from one week: the frozen snapshot value (if any) and the live value"""
    snapshot_rate: Optional[Decimal]
    live_rate: Decimal = ZERO

    def effective_rate(self) -> Decimal:
        if self.snapshot_rate is not None:
            return self.snapshot_rate
        return self.live_rate


def calc_agent_rakeback(players: Iterable[PlayerMetric], agent_rate_percent,
                        is_direct: bool,
                        player_rate: Optional[Callable[[PlayerMetric], Decimal]] = None) -> Decimal:
    """
    Rakeback owed to an agent.

    Pooled: sum(rake) * agent rate / 100.
    Direct: sum(rake_i * rate_i / 100), rate_i given by ``player_rate``.
    """
    players = list(players)
    if is_direct:
        total = ZERO
        for player in players:
            rate = player_rate(player) if player_rate else ZERO
            total += to_decimal(player.rake) * to_decimal(rate) / HUNDRED
        return round2(total)

    total_rake = sum((to_decimal(p.rake) for p in players), ZERO)
    return round2(total_rake * to_decimal(agent_rate_percent) / HUNDRED)


class RakebackCalculator:
    """Resolves rates (snapshot first) and computes rakeback per settlement entity"""

    def __init__(self, rate_config: RateConfig, snapshot: Optional[RateSnapshot] = None):
        self.rate_config = rate_config
        self.snapshot = snapshot

    def agent_rate_source(self, agent_key: str) -> RateSource:
        snapshot_rate = None
        if self.snapshot is not None and agent_key in self.snapshot.agents:
            snapshot_rate = to_decimal(self.snapshot.agents[agent_key])
        live = self.rate_config.agents.get(agent_key)
        if snapshot_rate is None and live is None:
            logger.info(f"No rakeback rate configured for agent {agent_key} - using 0%")
        return RateSource(snapshot_rate=snapshot_rate, live_rate=to_decimal(live))

    def player_rate_source(self, player: PlayerMetric, agent_key: Optional[str] = None) -> RateSource:
        key = player.rate_key
        snapshot_rate = None
        if self.snapshot is not None and key in self.snapshot.players:
            snapshot_rate = to_decimal(self.snapshot.players[key])

        # Live: player's own override, then the agent's rate
        live = self.rate_config.players.get(key)
        if live is None and agent_key is not None:
            live = self.rate_config.agents.get(agent_key)
        if snapshot_rate is None and live is None:
            logger.info(f"No rakeback rate configured for player {key} - using 0%")
        return RateSource(snapshot_rate=snapshot_rate, live_rate=to_decimal(live))

    def rakeback_for(self, entity: SettlementEntity) -> Tuple[Decimal, Dict[str, Decimal], Dict[str, Decimal]]:
        """
        Returns (rakeback, rates used, unrounded rakeback per player metric row id).

        Rates used are keyed like the snapshot so they can be frozen at week close:
        ``agent:<id>`` for pooled agents and ``player:<rate key>`` for per-player rates.
        """
        agent_key = entity.entity_id if entity.role == EntityRole.AGENT else None
        per_player: Dict[str, Decimal] = {}
        rates: Dict[str, Decimal] = {}

        if entity.role == EntityRole.AGENT and not entity.is_direct:
            rate = self.agent_rate_source(entity.entity_id).effective_rate()
            rates['agent:' + entity.entity_id] = rate
            for player in entity.players:
                per_player[player.id] = to_decimal(player.rake) * rate / HUNDRED
            total = calc_agent_rakeback(entity.players, rate, is_direct=False)
            return total, rates, per_player

        def player_rate(player: PlayerMetric) -> Decimal:
            rate = self.player_rate_source(player, agent_key).effective_rate()
            rates['player:' + player.rate_key] = rate
            per_player[player.id] = to_decimal(player.rake) * rate / HUNDRED
            return rate

        total = calc_agent_rakeback(entity.players, ZERO, is_direct=True, player_rate=player_rate)
        return total, rates, per_player


def snapshot_from_rates(rates: Dict[str, Decimal]) -> RateSnapshot:
    """Turn the ``agent:``/``player:`` keyed rates used in a computation into a snapshot"""
    snapshot = RateSnapshot()
    for key, rate in rates.items():
        kind, _, entity_key = key.partition(':')
        if kind == 'agent':
            snapshot.agents[entity_key] = rate
        elif kind == 'player':
            snapshot.players[entity_key] = rate
    return snapshot
