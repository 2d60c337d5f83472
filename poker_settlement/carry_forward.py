"""
Carry-forward resolution (read side of the week close).

The balance an entity brings into a week comes from the first source that
answers, tried in this order:

1. the carry-forward map written for this exact week by the week close
   (returned as stored, zero included);
2. the balance snapshot of the nearest *locked* prior week;
3. the legacy flat balance stored for that same locked week;
4. nothing: 0.

Once the nearest locked week is found the search stops there. An entity that
is absent from it, or whose balance there is negligible, starts from 0 even if
an older week still holds a balance for it. Entities never seen in a locked
week are not looked up in older unlocked weeks either; that stays a policy
choice of the club, not something this module guesses.
"""

from __future__ import annotations

import bisect
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from .config import SETTLEMENT_CONFIG
from .models import SettlementRecord
from .money import ZERO, to_decimal

logger = logging.getLogger(__name__)

Resolution = Tuple[Decimal, bool]


@dataclass
class CarryLookup:
    """Everything a resolver needs to answer for one entity"""
    entity_id: str
    club_id: str
    week_start: str
    locked_week: Optional[str]


def week_index_of(weeks: Sequence[SettlementRecord], week_start: str) -> int:
    """Position of ``week_start`` in the ascending history (insertion point when absent)"""
    keys = [w.week_start for w in weeks]
    return bisect.bisect_left(keys, week_start)


class CarryForwardResolver:
    """
    Resolves saldo anterior per entity from the repository.

    Repository reads are cached for the lifetime of the instance; build one
    resolver per settlement computation.
    """

    def __init__(self, repository, negligible: Optional[Decimal] = None):
        self.repository = repository
        self.negligible = negligible if negligible is not None else SETTLEMENT_CONFIG['CARRY_NEGLIGIBLE']
        self._weeks: Dict[str, List[SettlementRecord]] = {}
        self._carry_maps: Dict[Tuple[str, str], Dict[str, Decimal]] = {}
        self._snapshots: Dict[Tuple[str, str], Dict[str, Decimal]] = {}
        self._legacy: Dict[Tuple[str, str], Dict[str, Decimal]] = {}
        self.resolvers: List[Callable[[CarryLookup], Resolution]] = [
            self._from_carry_map,
            self._from_locked_snapshot,
            self._from_legacy_balance,
            self._default_zero,
        ]

    # Cached reads
    def weeks(self, club_id: str) -> List[SettlementRecord]:
        if club_id not in self._weeks:
            self._weeks[club_id] = self.repository.list_weeks(club_id)
        return self._weeks[club_id]

    def _carry_map(self, club_id: str, week_start: str) -> Dict[str, Decimal]:
        key = (club_id, week_start)
        if key not in self._carry_maps:
            self._carry_maps[key] = self.repository.get_carry_forward_map(club_id, week_start)
        return self._carry_maps[key]

    def _snapshot(self, club_id: str, week_start: str) -> Dict[str, Decimal]:
        key = (club_id, week_start)
        if key not in self._snapshots:
            self._snapshots[key] = self.repository.get_balance_snapshot(club_id, week_start)
        return self._snapshots[key]

    def _legacy_balances(self, club_id: str, week_start: str) -> Dict[str, Decimal]:
        key = (club_id, week_start)
        if key not in self._legacy:
            self._legacy[key] = self.repository.get_legacy_balances(club_id, week_start)
        return self._legacy[key]

    def nearest_locked_week(self, weeks: Sequence[SettlementRecord], week_index: int) -> Optional[str]:
        for record in reversed(weeks[:week_index]):
            if record.is_locked:
                return record.week_start
        return None

    def _significant(self, value) -> Decimal:
        value = to_decimal(value)
        return value if abs(value) > self.negligible else ZERO

    # Resolvers, in priority order
    def _from_carry_map(self, lookup: CarryLookup) -> Resolution:
        carry_map = self._carry_map(lookup.club_id, lookup.week_start)
        if lookup.entity_id in carry_map:
            return to_decimal(carry_map[lookup.entity_id]), True
        return ZERO, False

    def _from_locked_snapshot(self, lookup: CarryLookup) -> Resolution:
        if lookup.locked_week is None:
            return ZERO, False
        snapshot = self._snapshot(lookup.club_id, lookup.locked_week)
        if lookup.entity_id in snapshot:
            return self._significant(snapshot[lookup.entity_id]), True
        return ZERO, False

    def _from_legacy_balance(self, lookup: CarryLookup) -> Resolution:
        if lookup.locked_week is None:
            return ZERO, False
        legacy = self._legacy_balances(lookup.club_id, lookup.locked_week)
        if lookup.entity_id in legacy:
            return self._significant(legacy[lookup.entity_id]), True
        # Nearest locked week does not know the entity: fresh start, no older scan
        logger.info(f"{lookup.entity_id} absent from locked week {lookup.locked_week} - saldo anterior 0")
        return ZERO, True

    def _default_zero(self, lookup: CarryLookup) -> Resolution:
        logger.info(f"No carry-forward source for {lookup.entity_id} before {lookup.week_start} - using 0")
        return ZERO, True

    def resolve(self, entity_id: str, club_id: str, current_week: str, week_index: int,
                weeks: Optional[Sequence[SettlementRecord]] = None) -> Decimal:
        """Saldo anterior of ``entity_id`` for ``current_week`` (position ``week_index`` in the history)"""
        if week_index <= 0:
            return ZERO

        if weeks is None:
            weeks = self.weeks(club_id)
        lookup = CarryLookup(
            entity_id=entity_id,
            club_id=club_id,
            week_start=current_week,
            locked_week=self.nearest_locked_week(weeks, week_index),
        )
        for resolver in self.resolvers:
            value, found = resolver(lookup)
            if found:
                return value
        return ZERO

    def carried_entities(self, club_id: str, current_week: str) -> List[str]:
        """
        Every entity some source may hold a balance for in ``current_week``:
        this week's carry map plus the snapshot and legacy balances of the
        nearest locked week. Entities without metrics that week still need a
        row, or their balance would not be carried any further.
        """
        weeks = self.weeks(club_id)
        week_index = week_index_of(weeks, current_week)
        if week_index <= 0:
            return []

        entity_ids = set(self._carry_map(club_id, current_week))
        locked_week = self.nearest_locked_week(weeks, week_index)
        if locked_week is not None:
            entity_ids |= set(self._snapshot(club_id, locked_week))
            entity_ids |= set(self._legacy_balances(club_id, locked_week))
        return sorted(entity_ids)

    def bind(self, club_id: str, current_week: str) -> Callable[[str], Decimal]:
        """Single-argument lookup for one (club, week), as used by the aggregator"""
        weeks = self.weeks(club_id)
        week_index = week_index_of(weeks, current_week)

        def lookup(entity_id: str) -> Decimal:
            return self.resolve(entity_id, club_id, current_week, week_index, weeks)
        return lookup
