#!/usr/bin/env python3
"""
Payment Ledger
LedgerMatcher nets IN/OUT movements over an entity's full key set;
LedgerService is the write boundary (create / delete / reconcile)
"""

import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional

from .errors import LedgerEntryNotFound, NegativeAmountLedgerEntry, SettlementStateError
from .models import LedgerDirection, LedgerEntry, LedgerNet, SettlementStatus
from .money import ZERO, round2, to_decimal
from .repository import new_id

logger = logging.getLogger(__name__)


class LedgerMatcher:
    """Indexes one week's ledger entries by the key they were written against"""

    def __init__(self, entries: Iterable[LedgerEntry]):
        self.entries = list(entries)
        self._by_key: Dict[str, List[LedgerEntry]] = {}
        for entry in self.entries:
            self._by_key.setdefault(str(entry.entity_id), []).append(entry)

    def entries_for(self, keys: Iterable[str]) -> List[LedgerEntry]:
        """Entries addressed to any of ``keys``, each entry at most once"""
        seen = set()
        matched = []
        for key in sorted(set(keys)):
            for entry in self._by_key.get(key, []):
                if entry.id in seen:
                    continue
                seen.add(entry.id)
                matched.append(entry)
        matched.sort(key=lambda e: (e.created_at or '', e.id))
        return matched

    def net_for(self, keys: Iterable[str]) -> LedgerNet:
        entries = self.entries_for(keys)
        total_in = ZERO
        total_out = ZERO
        for entry in entries:
            if entry.direction == LedgerDirection.IN:
                total_in += to_decimal(entry.amount)
            else:
                total_out += to_decimal(entry.amount)
        return LedgerNet(
            total_in=round2(total_in),
            total_out=round2(total_out),
            net=round2(total_in - total_out),
            entries=entries,
        )

    def unmatched(self, known_keys: Iterable[str]) -> List[LedgerEntry]:
        """Entries whose entity id belongs to no entity of the computation"""
        known = set(known_keys)
        return [entry for entry in self.entries if str(entry.entity_id) not in known]


class LedgerService:
    """Validated writes; every write is picked up by the next full recomputation"""

    def __init__(self, repository):
        self.repository = repository

    def _ensure_writable(self, club_id: str, week_start: str, allowed=(SettlementStatus.DRAFT,)):
        settlement = self.repository.get_settlement(club_id, week_start)
        if settlement is not None and settlement.status not in allowed:
            raise SettlementStateError(
                f"Semana {week_start} está {settlement.status.value} - lançamentos não podem ser alterados"
            )

    def create_entry(self, club_id: str, week_start: str, entity_id: str, direction, amount,
                     method: Optional[str] = None, description: Optional[str] = None,
                     entity_name: Optional[str] = None, is_reconciled: bool = False,
                     persist: bool = True) -> LedgerEntry:
        """Validate and build a ledger entry; ``persist=False`` leaves the insert to the caller"""
        if not entity_id:
            raise ValueError("entity_id is required")
        if not isinstance(direction, LedgerDirection):
            direction = LedgerDirection(str(direction).strip().upper())

        value = to_decimal(amount)
        if value <= 0:
            raise NegativeAmountLedgerEntry(f"Ledger amount must be positive, got {amount}")

        self._ensure_writable(club_id, week_start)

        entry = LedgerEntry(
            id=new_id(),
            entity_id=str(entity_id),
            direction=direction,
            amount=round2(value),
            week_start=week_start,
            method=method,
            description=description,
            created_at=datetime.now().isoformat(),
            entity_name=entity_name,
            is_reconciled=is_reconciled,
        )
        if persist:
            self.repository.create_ledger_entry(club_id, entry)
        logger.info(f"Ledger entry {entry.id}: {direction.value} {entry.amount} for {entity_id} ({week_start})")
        return entry

    def delete_entry(self, club_id: str, entry_id: str) -> LedgerEntry:
        entry = self.repository.get_ledger_entry(entry_id)
        if entry is None:
            raise LedgerEntryNotFound(f"Ledger entry {entry_id} not found")
        self._ensure_writable(club_id, entry.week_start, allowed=(SettlementStatus.DRAFT, SettlementStatus.VOID))
        self.repository.delete_ledger_entry(entry_id)
        logger.info(f"Ledger entry {entry_id} deleted ({entry.entity_id}, {entry.week_start})")
        return entry

    def set_reconciled(self, club_id: str, entry_id: str, value: bool = True) -> LedgerEntry:
        """Reconciliation feeds the parcial/aberto status, so it is frozen with the week"""
        entry = self.repository.get_ledger_entry(entry_id)
        if entry is None:
            raise LedgerEntryNotFound(f"Ledger entry {entry_id} not found")
        self._ensure_writable(club_id, entry.week_start)
        self.repository.set_ledger_reconciled(entry_id, value)
        entry.is_reconciled = bool(value)
        return entry

    def net_for_entity(self, club_id: str, week_start: str, keys: Iterable[str]) -> LedgerNet:
        entries = self.repository.list_ledger_entries(week_start, club_id=club_id)
        return LedgerMatcher(entries).net_for(keys)
