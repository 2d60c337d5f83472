#!/usr/bin/env python3
"""
Week Closer
Finalizes a settlement week: freezes balances and rates for the week and
writes next week's carry-forward map, all in one transaction. Also finds and
repairs FINAL weeks whose carry-forward write is missing.
"""

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List

from .config import SETTLEMENT_CONFIG
from .errors import SettlementNotFound, SettlementStateError
from .models import SettlementResult, SettlementStatus, WeekCloseResult

logger = logging.getLogger(__name__)


def next_week_of(week_start: str, days: int = None) -> str:
    days = days if days is not None else SETTLEMENT_CONFIG['WEEK_LENGTH_DAYS']
    return (datetime.strptime(week_start, '%Y-%m-%d') + timedelta(days=days)).strftime('%Y-%m-%d')


class WeekCloser:
    """Write side of the carry-forward: one atomic close per (club, week)"""

    def __init__(self, repository, compute_settlement: Callable[[str, str], SettlementResult]):
        self.repository = repository
        self.compute_settlement = compute_settlement

    def _require_settlement(self, club_id: str, week_start: str):
        settlement = self.repository.get_settlement(club_id, week_start)
        if settlement is None:
            raise SettlementNotFound(f"Settlement não encontrado: {club_id} {week_start}")
        if settlement.status == SettlementStatus.VOID:
            raise SettlementStateError(f"Settlement {club_id} {week_start} está VOID")
        return settlement

    def close(self, club_id: str, week_start: str) -> WeekCloseResult:
        """
        Close a week. Re-closing a FINAL week recomputes from the same frozen
        inputs and overwrites with the same values.
        """
        settlement = self._require_settlement(club_id, week_start)
        if settlement.is_locked:
            logger.info(f"Week {week_start} of {club_id} already FINAL - re-closing")

        result = self.compute_settlement(club_id, week_start)
        carries = {row.entity_id: row.pendente for row in result.entities}
        next_week = next_week_of(week_start)

        self.repository.save_week_close(
            club_id, week_start, next_week,
            carries=carries,
            balances=dict(carries),
            rate_snapshot=result.rate_snapshot,
            expected_ledger=result.ledger_fingerprint,
        )
        logger.info(f"Week {week_start} closed for {club_id}: {len(carries)} carries written to {next_week}")
        return WeekCloseResult(club_id=club_id, week_closed=week_start, next_week=next_week, carries=carries)

    def find_inconsistent_weeks(self, club_id: str) -> List[str]:
        """FINAL weeks with movement but no carry-forward written for the following week"""
        inconsistent = []
        for settlement in self.repository.list_weeks(club_id):
            if not settlement.is_locked:
                continue
            next_week = next_week_of(settlement.week_start)
            if self.repository.get_carry_forward_map(club_id, next_week):
                continue
            if (self.repository.get_weekly_metrics(club_id, settlement.week_start).is_empty
                    and not self.repository.get_balance_snapshot(club_id, settlement.week_start)):
                continue
            logger.warning(f"Week {settlement.week_start} of {club_id} is FINAL without carry-forward for {next_week}")
            inconsistent.append(settlement.week_start)
        return inconsistent

    def repair(self, club_id: str, week_start: str) -> WeekCloseResult:
        """Re-derive the missing carry-forward from the week's balance snapshot (or recompute)"""
        settlement = self._require_settlement(club_id, week_start)
        if not settlement.is_locked:
            raise SettlementStateError(f"Settlement {club_id} {week_start} não está FINAL - use close")

        next_week = next_week_of(week_start)
        snapshot: Dict = self.repository.get_balance_snapshot(club_id, week_start)
        if snapshot:
            self.repository.save_carry_forward(club_id, next_week, snapshot, source_week=week_start)
            logger.info(f"Carry-forward for {next_week} rebuilt from snapshot of {week_start} ({len(snapshot)})")
            return WeekCloseResult(club_id=club_id, week_closed=week_start, next_week=next_week,
                                   carries=dict(snapshot), repaired=True)

        closed = self.close(club_id, week_start)
        closed.repaired = True
        return closed
