#!/usr/bin/env python3
"""
Settlement Aggregator
Groups weekly metrics into settlement entities (agencies and standalone players)
and applies the canonical owed-amount chain:

    resultado   = ganhos + rakeback
    totalDevido = resultado + saldoAnterior
    pago        = entradas - saidas
    pendente    = totalDevido + pago

Every chain is rounded half-up to cents once, after the addition.
"""

import logging
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

from .config import NO_AGENT_NAMES, SETTLEMENT_CONFIG
from .entity_keys import (
    EntityKeyResolver, KeyRegistry, agent_entity_id, norm_name, player_entity_id,
)
from .ledger import LedgerMatcher
from .models import (
    EntityRole, EntitySettlement, SettlementEntity, SettlementResult, SettlementStatus,
    WeeklyMetrics,
    DIRECTION_NEUTRAL, DIRECTION_PAY, DIRECTION_RECEIVE,
    STATUS_ABERTO, STATUS_CREDITO, STATUS_PARCIAL, STATUS_QUITADO, STATUS_SEM_MOV,
)
from .money import ZERO, as_float, is_negligible, round2, sum_money, to_decimal
from .rakeback import RakebackCalculator, snapshot_from_rates

logger = logging.getLogger(__name__)

TOTAL_FIELDS = (
    ('ganhos', 'ganhos'),
    ('rake', 'rake'),
    ('ggr', 'ggr'),
    ('rakeback', 'rakeback'),
    ('resultado', 'resultado'),
    ('saldoAnterior', 'saldo_anterior'),
    ('totalDevido', 'total_devido'),
    ('entradas', 'total_in'),
    ('saidas', 'total_out'),
    ('pago', 'pago'),
    ('pendente', 'pendente'),
)


def classify_status(total_devido, pago, pendente, has_confirmed_payment: bool,
                    epsilon: Decimal = None) -> str:
    """
    Status of one settlement row, first match wins:
    sem-mov, quitado, credito (sign flipped), parcial (confirmed payment, residual), aberto
    """
    eps = epsilon if epsilon is not None else SETTLEMENT_CONFIG['EPSILON']
    total_devido = to_decimal(total_devido)
    pago = to_decimal(pago)
    pendente = to_decimal(pendente)

    if abs(total_devido) <= eps and abs(pago) <= eps:
        return STATUS_SEM_MOV
    if abs(pendente) <= eps:
        return STATUS_QUITADO
    if abs(total_devido) > eps and (pendente > 0) != (total_devido > 0):
        return STATUS_CREDITO
    if has_confirmed_payment:
        return STATUS_PARCIAL
    return STATUS_ABERTO


def direction_label(resultado, epsilon: Decimal = None) -> str:
    eps = epsilon if epsilon is not None else SETTLEMENT_CONFIG['EPSILON']
    resultado = to_decimal(resultado)
    if resultado > eps:
        return DIRECTION_RECEIVE
    if resultado < -eps:
        return DIRECTION_PAY
    return DIRECTION_NEUTRAL


def _has_no_agent(agent_id: Optional[str], agent_name: Optional[str]) -> bool:
    return not agent_id and norm_name(agent_name) in NO_AGENT_NAMES


def build_entities(metrics: WeeklyMetrics, resolver: EntityKeyResolver,
                   registry: KeyRegistry) -> List[SettlementEntity]:
    """
    One entity per canonical agent (all of its rows and players) and one per
    player without an agent. Players pointing at an agent with no metrics row
    get a synthesized agency so their movement is never dropped.
    """
    agencies: Dict[str, SettlementEntity] = {}
    standalone: Dict[str, SettlementEntity] = {}
    alias_to_agency: Dict[str, str] = {}
    name_to_agency: Dict[str, str] = {}

    for row in metrics.agents:
        if _has_no_agent(row.agent_id, row.agent_name):
            continue
        entity_id = agent_entity_id(row.agent_id, row.agent_name)
        entity = agencies.get(entity_id)
        if entity is None:
            entity = SettlementEntity(
                entity_id=entity_id,
                role=EntityRole.AGENT,
                name=row.agent_name or entity_id,
                subclub_id=row.subclub_id,
                subclub_name=row.subclub_name,
            )
            agencies[entity_id] = entity
        entity.agent_metrics.append(row)
        entity.is_direct = entity.is_direct or row.is_direct
        for alias in (row.id, row.agent_id, row.external_id):
            if alias:
                alias_to_agency.setdefault(str(alias), entity_id)
        name_to_agency.setdefault(norm_name(row.agent_name), entity_id)

    for player in metrics.players:
        if _has_no_agent(player.agent_id, player.agent_name):
            entity_id = player_entity_id(player)
            entity = standalone.get(entity_id)
            if entity is None:
                entity = SettlementEntity(
                    entity_id=entity_id,
                    role=EntityRole.PLAYER,
                    name=player.nickname or entity_id,
                    is_direct=True,
                    subclub_id=player.subclub_id,
                    subclub_name=player.subclub_name,
                )
                standalone[entity_id] = entity
            entity.players.append(player)
            continue

        entity_id = None
        if player.agent_id:
            entity_id = alias_to_agency.get(str(player.agent_id))
        if entity_id is None and player.agent_name:
            entity_id = name_to_agency.get(norm_name(player.agent_name))
        if entity_id is None:
            entity_id = agent_entity_id(player.agent_id, player.agent_name)
            logger.info(f"Agent {entity_id} has players but no metrics row - synthesized")
            agencies[entity_id] = SettlementEntity(
                entity_id=entity_id,
                role=EntityRole.AGENT,
                name=player.agent_name or entity_id,
                subclub_id=player.subclub_id,
                subclub_name=player.subclub_name,
            )
            if player.agent_id:
                alias_to_agency[str(player.agent_id)] = entity_id
            name_to_agency.setdefault(norm_name(player.agent_name), entity_id)

        entity = agencies[entity_id]
        entity.players.append(player)
        entity.is_direct = entity.is_direct or player.agent_is_direct

    # Agencies claim keys first, then standalone players, each in id order
    entities = []
    for entity_id in sorted(agencies):
        entity = agencies[entity_id]
        keys = resolver.keys_for_agent(entity_id, entity.agent_metrics, entity.players)
        entity.keys = registry.claim(entity_id, keys)
        entities.append(entity)
    for entity_id in sorted(standalone):
        entity = standalone[entity_id]
        keys = set()
        for player in entity.players:
            keys |= resolver.keys_for_player(entity_id, player)
        entity.keys = registry.claim(entity_id, keys)
        entities.append(entity)
    return entities


class SettlementAggregator:
    """Pure computation over already-loaded inputs; no repository access"""

    def __init__(self, calculator: RakebackCalculator, carry_lookup: Callable[[str], Decimal],
                 matcher: LedgerMatcher, epsilon: Decimal = None,
                 resolver: Optional[EntityKeyResolver] = None,
                 carried_ids: Iterable[str] = ()):
        self.calculator = calculator
        self.carry_lookup = carry_lookup
        self.matcher = matcher
        self.epsilon = epsilon if epsilon is not None else SETTLEMENT_CONFIG['EPSILON']
        self.resolver = resolver or EntityKeyResolver()
        self.carried_ids = list(carried_ids)

    def settle_entity(self, entity: SettlementEntity, payment_type: Optional[str] = None) -> EntitySettlement:
        ganhos = sum_money(p.ganhos for p in entity.players)
        rake = sum_money(p.rake for p in entity.players)
        ggr = sum_money(p.ggr for p in entity.players)
        if entity.players or entity.agent_metrics:
            rakeback, rates, per_player = self.calculator.rakeback_for(entity)
        else:
            rakeback, rates, per_player = ZERO, {}, {}

        resultado = round2(ganhos + rakeback)
        saldo_anterior = round2(self.carry_lookup(entity.entity_id))
        total_devido = round2(resultado + saldo_anterior)

        net = self.matcher.net_for(entity.keys)
        pago = net.net
        pendente = round2(total_devido + pago)

        return EntitySettlement(
            entity_id=entity.entity_id,
            role=entity.role,
            name=entity.name,
            is_direct=entity.is_direct,
            subclub_id=entity.subclub_id,
            subclub_name=entity.subclub_name,
            player_count=len(entity.players),
            ganhos=ganhos,
            rake=rake,
            ggr=ggr,
            rakeback=rakeback,
            resultado=resultado,
            saldo_anterior=saldo_anterior,
            total_devido=total_devido,
            total_in=net.total_in,
            total_out=net.total_out,
            pago=pago,
            pendente=pendente,
            status=classify_status(total_devido, pago, pendente, net.reconciled_count > 0, self.epsilon),
            direcao=direction_label(resultado, self.epsilon),
            entries_count=net.count,
            payment_type=payment_type,
            keys=entity.keys,
            rates=rates,
            player_rakeback=per_player,
        )

    def carried_only(self, entities: List[SettlementEntity], registry: KeyRegistry) -> List[SettlementEntity]:
        """
        Entities with no metrics this week that still hold a balance or have
        payments addressed to their id. They settle with zero movement so the
        balance reaches the next close.
        """
        known = {entity.entity_id for entity in entities}
        carried = []
        for entity_id in sorted(set(self.carried_ids) - known):
            if registry.owner_of(entity_id) is not None:
                continue
            net = self.matcher.net_for({entity_id})
            if is_negligible(self.carry_lookup(entity_id), self.epsilon) and not net.count:
                continue
            names = [entry.entity_name for entry in net.entries if entry.entity_name]
            entity = SettlementEntity(
                entity_id=entity_id,
                # only name-derived player ids say what they are; everything else settles as an agent
                role=EntityRole.PLAYER if entity_id.startswith('pl_') else EntityRole.AGENT,
                name=names[0] if names else entity_id,
            )
            entity.keys = registry.claim(entity_id, {entity_id})
            carried.append(entity)
        if carried:
            logger.info(f"{len(carried)} entities settled from carry-forward only: {[e.entity_id for e in carried]}")
        return carried

    def aggregate(self, club_id: str, week_start: str, metrics: WeeklyMetrics,
                  status: Optional[SettlementStatus] = None,
                  payment_types: Optional[Dict[str, str]] = None) -> SettlementResult:
        payment_types = payment_types or {}
        registry = KeyRegistry()
        entities = build_entities(metrics, self.resolver, registry)
        entities += self.carried_only(entities, registry)

        rows = []
        all_rates: Dict[str, Decimal] = {}
        all_keys = set()
        for entity in entities:
            payment_type = None
            if entity.role == EntityRole.AGENT:
                payment_type = payment_types.get(entity.entity_id, SETTLEMENT_CONFIG['DEFAULT_PAYMENT_TYPE'])
            row = self.settle_entity(entity, payment_type)
            rows.append(row)
            all_rates.update(row.rates)
            all_keys |= entity.keys

        unmatched = self.matcher.unmatched(all_keys)
        if unmatched:
            logger.info(f"{len(unmatched)} ledger entries in {week_start} match no entity of {club_id}")

        rows.sort(key=lambda r: (r.subclub_name or '', r.role != EntityRole.AGENT, norm_name(r.name), r.entity_id))

        return SettlementResult(
            club_id=club_id,
            week_start=week_start,
            status=status,
            entities=rows,
            totals=summarize(rows),
            warnings=list(registry.conflicts),
            rate_snapshot=snapshot_from_rates(all_rates),
        )


def summarize(rows: Iterable[EntitySettlement]) -> Dict:
    rows = list(rows)
    totals = {
        key: as_float(sum_money(getattr(row, attr) for row in rows))
        for key, attr in TOTAL_FIELDS
    }
    totals['entidades'] = len(rows)
    by_status: Dict[str, int] = {}
    for row in rows:
        by_status[row.status] = by_status.get(row.status, 0) + 1
    totals['porStatus'] = dict(sorted(by_status.items()))
    return totals
