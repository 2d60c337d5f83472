#!/usr/bin/env python3
"""
Settlement Engine
Facade used by the HTTP layer: every read recomputes the whole week from
the repository; writes go through the ledger service or the week closer.
"""

import logging
from typing import Dict, List, Optional

from .aggregator import SettlementAggregator
from .auto_match import AutoMatchClassifier
from .carry_forward import CarryForwardResolver
from .entity_keys import EntityKeyResolver
from .errors import SettlementStateError, TransactionNotFound
from .ledger import LedgerMatcher, LedgerService
from .models import (
    LedgerEntry, LedgerNet, PaymentType, SettlementResult, SettlementStatus, Suggestion, WeekCloseResult,
)
from .money import parse_rate
from .ofx_parser import parse_ofx
from .rakeback import RakebackCalculator
from .reporting import build_subclub_summaries, rollup_dashboard
from .repository import SettlementRepository, SqlSettlementRepository, ledger_fingerprint
from .week_closer import WeekCloser

logger = logging.getLogger(__name__)


class SettlementEngine:
    def __init__(self, repository: Optional[SettlementRepository] = None,
                 classifier: Optional[AutoMatchClassifier] = None):
        self.repository = repository or SqlSettlementRepository()
        self.classifier = classifier or AutoMatchClassifier()
        self.ledger = LedgerService(self.repository)
        self.closer = WeekCloser(self.repository, self.compute_settlement)
        self.key_resolver = EntityKeyResolver()

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------
    def compute_settlement(self, club_id: str, week_start: str) -> SettlementResult:
        """Full, side-effect-free recomputation of one (club, week)"""
        settlement = self.repository.get_settlement(club_id, week_start)
        status = settlement.status if settlement else None

        snapshot = None
        if settlement is not None and settlement.is_locked:
            snapshot = self.repository.get_rate_snapshot(club_id, week_start)
            if snapshot is None:
                logger.info(f"Week {week_start} is locked but has no rate snapshot - using live rates")

        metrics = self.repository.get_weekly_metrics(club_id, week_start)
        calculator = RakebackCalculator(self.repository.get_rate_config(club_id), snapshot)
        carry_resolver = CarryForwardResolver(self.repository)
        carry = carry_resolver.bind(club_id, week_start)
        matcher = LedgerMatcher(self.repository.list_ledger_entries(week_start, club_id=club_id))

        aggregator = SettlementAggregator(
            calculator, carry, matcher,
            resolver=self.key_resolver,
            carried_ids=carry_resolver.carried_entities(club_id, week_start),
        )
        result = aggregator.aggregate(
            club_id, week_start, metrics,
            status=status,
            payment_types=self.repository.get_agent_payment_types(club_id, week_start),
        )

        result.subclubs = build_subclub_summaries(
            metrics, result.entities,
            self.repository.get_fee_config(club_id),
            self.repository.get_club_adjustments(club_id, week_start),
        )
        result.dashboard = rollup_dashboard(result.subclubs)
        result.ledger_fingerprint = ledger_fingerprint(matcher.entries)

        if result.warnings:
            logger.warning(f"Settlement {club_id} {week_start}: {len(result.warnings)} key conflicts")
        return result

    def ledger_net(self, club_id: str, week_start: str, entity_id: str) -> LedgerNet:
        """Net of one entity, matched over the full key set it has in that week"""
        result = self.compute_settlement(club_id, week_start)
        row = result.entity(entity_id)
        keys = row.keys if row is not None else {entity_id}
        return self.ledger.net_for_entity(club_id, week_start, keys)

    def suggest_auto_matches(self, club_id: str, week_start: str) -> List[Suggestion]:
        transactions = self.repository.list_bank_transactions(club_id, week_start=week_start, status='pending')
        if not transactions:
            return []
        result = self.compute_settlement(club_id, week_start)
        return self.classifier.suggest(transactions, result.entities, week_start)

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------
    def close_week(self, club_id: str, week_start: str) -> WeekCloseResult:
        return self.closer.close(club_id, week_start)

    def find_inconsistent_weeks(self, club_id: str) -> List[str]:
        return self.closer.find_inconsistent_weeks(club_id)

    def repair_week(self, club_id: str, week_start: str) -> WeekCloseResult:
        return self.closer.repair(club_id, week_start)

    def apply_suggestion(self, club_id: str, transaction_id: str, entity_id: str,
                         entity_name: Optional[str] = None) -> LedgerEntry:
        """Link a bank transaction to an entity by creating the matching ledger entry"""
        tx = self.repository.get_bank_transaction(club_id, transaction_id)
        if tx is None:
            raise TransactionNotFound(f"Transação {transaction_id} não encontrada")
        if tx.status == 'applied':
            raise SettlementStateError(f"Transação {transaction_id} já aplicada ({tx.applied_ledger_id})")
        week_start = tx.week_start
        if not week_start:
            raise SettlementStateError(f"Transação {transaction_id} sem semana associada")

        entry = self.ledger.create_entry(
            club_id, week_start, entity_id, tx.direction, tx.amount,
            method=tx.bank_name or 'OFX',
            description=tx.memo or f"OFX: {tx.fitid}",
            entity_name=entity_name,
            is_reconciled=True,
            persist=False,
        )
        self.repository.apply_bank_transaction(club_id, transaction_id, entry)
        logger.info(f"Transaction {transaction_id} applied to {entity_id} as ledger entry {entry.id}")
        return entry

    def import_ofx(self, club_id: str, week_start: Optional[str], raw: str, file_name: str = '') -> Dict:
        parsed = parse_ofx(raw, file_name, week_start=week_start)
        imported = self.repository.save_bank_transactions(club_id, parsed) if parsed else 0
        return {'imported': imported, 'skipped': len(parsed) - imported, 'total_parsed': len(parsed)}

    def _require_draft(self, club_id: str, week_start: str):
        settlement = self.repository.get_settlement(club_id, week_start)
        if settlement is not None and settlement.status != SettlementStatus.DRAFT:
            raise SettlementStateError(f"Semana {week_start} está {settlement.status.value} - edição bloqueada")

    def set_agent_payment_type(self, club_id: str, week_start: str, agent_id: str, payment_type: str) -> str:
        value = PaymentType(str(payment_type).strip().lower()).value
        self._require_draft(club_id, week_start)
        self.repository.set_agent_payment_type(club_id, week_start, agent_id, value)
        return value

    def set_rate(self, club_id: str, week_start: str, entity_type: str, entity_id: str, rate) -> None:
        """Live rate change, edited from a DRAFT week; locked weeks keep their snapshot"""
        value = parse_rate(rate)
        self._require_draft(club_id, week_start)
        self.repository.set_rate(club_id, entity_type, entity_id, value)
        logger.info(f"Rate {entity_type} {entity_id} set to {value}% from week {week_start}")
