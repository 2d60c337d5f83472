#!/usr/bin/env python3
"""
Settlement Repository
Narrow persistence interface consumed by the settlement engine, plus the
SQL implementation on top of DatabaseManager (SQLite / PostgreSQL)
"""

import logging
import uuid
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from .database import DatabaseManager, db_manager
from .errors import SettlementNotFound, SettlementStateError
from .models import (
    AgentMetric, BankTransaction, LedgerDirection, LedgerEntry, PlayerMetric,
    RateConfig, RateSnapshot, SettlementRecord, SettlementStatus, WeeklyMetrics,
)
from .money import parse_rate, round2, to_decimal

logger = logging.getLogger(__name__)


def new_id() -> str:
    return str(uuid.uuid4())


def _money(value) -> str:
    """Decimal parameters travel as strings; both backends cast them to NUMERIC"""
    return str(round2(value))


def _rate(value) -> str:
    return str(parse_rate(value))


def ledger_fingerprint(entries: Iterable[LedgerEntry]) -> Tuple:
    """Identity of a week's ledger as a settlement saw it: entry ids and their reconciled flag"""
    return tuple(sorted((str(entry.id), bool(entry.is_reconciled)) for entry in entries))


class SettlementRepository:
    """
    Collaborator interface of the settlement core.

    The engine only reads and writes through these calls; it never touches
    storage directly. Implementations must make ``save_week_close`` and
    ``apply_bank_transaction`` atomic.
    """

    # Settlements
    def get_settlement(self, club_id: str, week_start: str) -> Optional[SettlementRecord]:
        raise NotImplementedError

    def create_settlement(self, club_id: str, week_start: str,
                          status: SettlementStatus = SettlementStatus.DRAFT) -> SettlementRecord:
        raise NotImplementedError

    def list_weeks(self, club_id: str) -> List[SettlementRecord]:
        """All settlements of a club, oldest week first"""
        raise NotImplementedError

    def get_locked_weeks(self, club_id: str) -> List[str]:
        return [s.week_start for s in self.list_weeks(club_id) if s.is_locked]

    # Metrics and configuration
    def get_weekly_metrics(self, club_id: str, week_start: str) -> WeeklyMetrics:
        raise NotImplementedError

    def get_rate_config(self, club_id: str) -> RateConfig:
        raise NotImplementedError

    def set_rate(self, club_id: str, entity_type: str, entity_id: str, rate) -> None:
        raise NotImplementedError

    def get_rate_snapshot(self, club_id: str, week_start: str) -> Optional[RateSnapshot]:
        raise NotImplementedError

    def get_fee_config(self, club_id: str) -> Dict[str, Decimal]:
        raise NotImplementedError

    def get_club_adjustments(self, club_id: str, week_start: str) -> Dict[str, Dict[str, Decimal]]:
        raise NotImplementedError

    def get_agent_payment_types(self, club_id: str, week_start: str) -> Dict[str, str]:
        raise NotImplementedError

    def set_agent_payment_type(self, club_id: str, week_start: str, agent_id: str, payment_type: str) -> None:
        raise NotImplementedError

    # Carry-forward sources
    def get_carry_forward_map(self, club_id: str, week_start: str) -> Dict[str, Decimal]:
        raise NotImplementedError

    def get_balance_snapshot(self, club_id: str, week_start: str) -> Dict[str, Decimal]:
        raise NotImplementedError

    def get_legacy_balances(self, club_id: str, week_start: str) -> Dict[str, Decimal]:
        raise NotImplementedError

    def save_week_close(self, club_id: str, week_start: str, next_week: str,
                        carries: Dict[str, Decimal], balances: Dict[str, Decimal],
                        rate_snapshot: RateSnapshot, expected_ledger: Optional[Tuple] = None) -> None:
        """
        Writes the close. When ``expected_ledger`` (see ledger_fingerprint) is given and the week's
        ledger no longer matches it, nothing is written and SettlementStateError
        is raised.
        """
        raise NotImplementedError

    def save_carry_forward(self, club_id: str, week_start: str, carries: Dict[str, Decimal],
                           source_week: Optional[str] = None) -> None:
        raise NotImplementedError

    # Ledger
    def list_ledger_entries(self, week_start: str, entity_id: Optional[str] = None,
                            club_id: Optional[str] = None) -> List[LedgerEntry]:
        raise NotImplementedError

    def get_ledger_entry(self, entry_id: str) -> Optional[LedgerEntry]:
        raise NotImplementedError

    def create_ledger_entry(self, club_id: str, entry: LedgerEntry) -> LedgerEntry:
        raise NotImplementedError

    def delete_ledger_entry(self, entry_id: str) -> bool:
        raise NotImplementedError

    def set_ledger_reconciled(self, entry_id: str, value: bool) -> bool:
        raise NotImplementedError

    # Bank transactions
    def save_bank_transactions(self, club_id: str, transactions: List[BankTransaction]) -> int:
        raise NotImplementedError

    def list_bank_transactions(self, club_id: str, week_start: Optional[str] = None,
                               status: Optional[str] = None) -> List[BankTransaction]:
        raise NotImplementedError

    def get_bank_transaction(self, club_id: str, transaction_id: str) -> Optional[BankTransaction]:
        raise NotImplementedError

    def apply_bank_transaction(self, club_id: str, transaction_id: str, entry: LedgerEntry) -> LedgerEntry:
        raise NotImplementedError


class SqlSettlementRepository(SettlementRepository):
    """SettlementRepository over the settlement schema created by DatabaseManager.init_database()"""

    def __init__(self, db: Optional[DatabaseManager] = None):
        self.db = db or db_manager

    # ------------------------------------------------------------------
    # Settlements
    # ------------------------------------------------------------------
    @staticmethod
    def _settlement_from_row(row: Dict) -> SettlementRecord:
        return SettlementRecord(
            id=row['id'],
            club_id=row['club_id'],
            week_start=str(row['week_start']),
            status=SettlementStatus(row['status']),
            finalized_at=row.get('finalized_at'),
        )

    def get_settlement(self, club_id, week_start):
        row = self.db.execute_with_retry(
            "SELECT id, club_id, week_start, status, finalized_at FROM settlements "
            "WHERE club_id = ? AND week_start = ?",
            (club_id, week_start), fetch_one=True)
        return self._settlement_from_row(row) if row else None

    def create_settlement(self, club_id, week_start, status=SettlementStatus.DRAFT):
        record = SettlementRecord(id=new_id(), club_id=club_id, week_start=week_start, status=status)
        self.db.execute_query(
            "INSERT INTO settlements (id, club_id, week_start, status) VALUES (?, ?, ?, ?)",
            (record.id, club_id, week_start, status.value))
        logger.info(f"Settlement created: {club_id} {week_start} ({status.value})")
        return record

    def list_weeks(self, club_id):
        rows = self.db.execute_with_retry(
            "SELECT id, club_id, week_start, status, finalized_at FROM settlements "
            "WHERE club_id = ? ORDER BY week_start ASC",
            (club_id,), fetch_all=True)
        return [self._settlement_from_row(row) for row in rows]

    # ------------------------------------------------------------------
    # Metrics and configuration
    # ------------------------------------------------------------------
    def get_weekly_metrics(self, club_id, week_start):
        agent_rows = self.db.execute_with_retry(
            "SELECT id, agent_id, agent_name, external_agent_id, subclub_id, subclub_name, is_direct "
            "FROM agent_week_metrics WHERE club_id = ? AND week_start = ? ORDER BY id",
            (club_id, week_start), fetch_all=True)
        player_rows = self.db.execute_with_retry(
            "SELECT id, player_id, external_player_id, nickname, agent_id, agent_name, subclub_id, "
            "subclub_name, winnings_brl, rake_total_brl, ggr_brl, agent_is_direct "
            "FROM player_week_metrics WHERE club_id = ? AND week_start = ? ORDER BY id",
            (club_id, week_start), fetch_all=True)

        agents = [
            AgentMetric(
                id=row['id'],
                agent_id=row['agent_id'],
                agent_name=row['agent_name'] or '',
                external_id=row['external_agent_id'],
                subclub_id=row['subclub_id'],
                subclub_name=row['subclub_name'],
                is_direct=bool(row['is_direct']),
            )
            for row in agent_rows
        ]
        players = [
            PlayerMetric(
                id=row['id'],
                player_id=row['player_id'],
                external_id=row['external_player_id'],
                nickname=row['nickname'] or '',
                agent_id=row['agent_id'],
                agent_name=row['agent_name'],
                subclub_id=row['subclub_id'],
                subclub_name=row['subclub_name'],
                ganhos=to_decimal(row['winnings_brl']),
                rake=to_decimal(row['rake_total_brl']),
                ggr=to_decimal(row['ggr_brl']),
                agent_is_direct=bool(row['agent_is_direct']),
            )
            for row in player_rows
        ]
        return WeeklyMetrics(agents=agents, players=players)

    def get_rate_config(self, club_id):
        agent_rows = self.db.execute_with_retry(
            "SELECT agent_id, rate FROM agent_rate_config WHERE club_id = ? AND rate IS NOT NULL",
            (club_id,), fetch_all=True)
        player_rows = self.db.execute_with_retry(
            "SELECT player_id, rate FROM player_rate_config WHERE club_id = ? AND rate IS NOT NULL",
            (club_id,), fetch_all=True)
        return RateConfig(
            agents={row['agent_id']: to_decimal(row['rate']) for row in agent_rows},
            players={row['player_id']: to_decimal(row['rate']) for row in player_rows},
        )

    def set_rate(self, club_id, entity_type, entity_id, rate):
        if entity_type == 'agent':
            query = ("INSERT INTO agent_rate_config (club_id, agent_id, rate) VALUES (?, ?, ?) "
                     "ON CONFLICT (club_id, agent_id) DO UPDATE SET rate = excluded.rate")
        elif entity_type == 'player':
            query = ("INSERT INTO player_rate_config (club_id, player_id, rate) VALUES (?, ?, ?) "
                     "ON CONFLICT (club_id, player_id) DO UPDATE SET rate = excluded.rate")
        else:
            raise ValueError(f"Unknown rate entity type: {entity_type}")
        self.db.execute_query(query, (club_id, entity_id, _rate(rate)))

    def get_rate_snapshot(self, club_id, week_start):
        rows = self.db.execute_with_retry(
            "SELECT entity_type, entity_id, rate FROM rate_snapshots WHERE club_id = ? AND week_start = ?",
            (club_id, week_start), fetch_all=True)
        if not rows:
            return None
        snapshot = RateSnapshot()
        for row in rows:
            target = snapshot.agents if row['entity_type'] == 'agent' else snapshot.players
            target[row['entity_id']] = to_decimal(row['rate'])
        return snapshot

    def get_fee_config(self, club_id):
        rows = self.db.execute_with_retry(
            "SELECT name, rate FROM fee_config WHERE club_id = ? AND is_active = 1",
            (club_id,), fetch_all=True)
        return {row['name']: to_decimal(row['rate']) for row in rows}

    def get_club_adjustments(self, club_id, week_start):
        rows = self.db.execute_with_retry(
            "SELECT subclub_id, overlay, compras, security, outros FROM club_adjustments "
            "WHERE club_id = ? AND week_start = ?",
            (club_id, week_start), fetch_all=True)
        return {
            row['subclub_id']: {
                name: to_decimal(row[name]) for name in ('overlay', 'compras', 'security', 'outros')
            }
            for row in rows
        }

    def get_agent_payment_types(self, club_id, week_start):
        rows = self.db.execute_with_retry(
            "SELECT agent_id, payment_type FROM agent_payment_types WHERE club_id = ? AND week_start = ?",
            (club_id, week_start), fetch_all=True)
        return {row['agent_id']: row['payment_type'] for row in rows}

    def set_agent_payment_type(self, club_id, week_start, agent_id, payment_type):
        self.db.execute_query(
            "INSERT INTO agent_payment_types (club_id, week_start, agent_id, payment_type) VALUES (?, ?, ?, ?) "
            "ON CONFLICT (club_id, week_start, agent_id) DO UPDATE SET payment_type = excluded.payment_type",
            (club_id, week_start, agent_id, payment_type))

    # ------------------------------------------------------------------
    # Carry-forward sources
    # ------------------------------------------------------------------
    def _balance_map(self, query: str, column: str, club_id: str, week_start: str) -> Dict[str, Decimal]:
        rows = self.db.execute_with_retry(query, (club_id, week_start), fetch_all=True)
        return {row['entity_id']: to_decimal(row[column]) for row in rows}

    def get_carry_forward_map(self, club_id, week_start):
        return self._balance_map(
            "SELECT entity_id, amount FROM carry_forward WHERE club_id = ? AND week_start = ?",
            'amount', club_id, week_start)

    def get_balance_snapshot(self, club_id, week_start):
        return self._balance_map(
            "SELECT entity_id, saldo_final FROM balance_snapshots WHERE club_id = ? AND week_start = ?",
            'saldo_final', club_id, week_start)

    def get_legacy_balances(self, club_id, week_start):
        return self._balance_map(
            "SELECT entity_id, saldo_aberto FROM legacy_balances WHERE club_id = ? AND week_start = ?",
            'saldo_aberto', club_id, week_start)

    def _write_carries(self, conn, club_id, week_start, carries, source_week):
        self.db.execute_in_transaction(
            conn, "DELETE FROM carry_forward WHERE club_id = ? AND week_start = ?", (club_id, week_start))
        for entity_id, amount in sorted(carries.items()):
            self.db.execute_in_transaction(
                conn,
                "INSERT INTO carry_forward (club_id, week_start, entity_id, amount, source_week) "
                "VALUES (?, ?, ?, ?, ?)",
                (club_id, week_start, entity_id, _money(amount), source_week))

    def _lock_settlement(self, conn, club_id: str, week_start: str, shared: bool = False) -> Optional[Dict]:
        """Row-lock the week's settlement inside a get_transaction() block"""
        self.db.begin_write(conn)
        return self.db.fetch_in_transaction(
            conn,
            "SELECT status FROM settlements WHERE club_id = ? AND week_start = ?" + self.db.lock_clause(shared),
            (club_id, week_start), fetch_one=True)

    def _check_ledger_writable(self, conn, club_id: str, week_start: str,
                               allowed=(SettlementStatus.DRAFT,)) -> None:
        row = self._lock_settlement(conn, club_id, week_start, shared=True)
        if row is not None and SettlementStatus(row['status']) not in allowed:
            raise SettlementStateError(
                f"Semana {week_start} está {row['status']} - lançamentos não podem ser alterados")

    def save_week_close(self, club_id, week_start, next_week, carries, balances, rate_snapshot,
                        expected_ledger=None):
        """Carry-forward for next week, snapshots for this week and FINAL status in one transaction"""
        with self.db.get_transaction() as conn:
            row = self._lock_settlement(conn, club_id, week_start)
            if row is None:
                raise SettlementNotFound(f"Settlement {club_id} {week_start} not found during close")
            if row['status'] == SettlementStatus.VOID.value:
                raise SettlementStateError(f"Settlement {club_id} {week_start} está VOID")

            if expected_ledger is not None:
                rows = self.db.fetch_in_transaction(
                    conn,
                    "SELECT id, is_reconciled FROM ledger_entries WHERE club_id = ? AND week_start = ?",
                    (club_id, week_start))
                current = tuple(sorted((str(r['id']), bool(r['is_reconciled'])) for r in rows))
                if current != tuple(expected_ledger):
                    raise SettlementStateError(
                        f"Lançamentos de {week_start} mudaram durante o fechamento - feche novamente")

            self._write_carries(conn, club_id, next_week, carries, week_start)

            self.db.execute_in_transaction(
                conn, "DELETE FROM balance_snapshots WHERE club_id = ? AND week_start = ?",
                (club_id, week_start))
            for entity_id, balance in sorted(balances.items()):
                self.db.execute_in_transaction(
                    conn,
                    "INSERT INTO balance_snapshots (club_id, week_start, entity_id, saldo_final) VALUES (?, ?, ?, ?)",
                    (club_id, week_start, entity_id, _money(balance)))

            self.db.execute_in_transaction(
                conn, "DELETE FROM rate_snapshots WHERE club_id = ? AND week_start = ?",
                (club_id, week_start))
            for entity_type, rates in (('agent', rate_snapshot.agents), ('player', rate_snapshot.players)):
                for entity_id, rate in sorted(rates.items()):
                    self.db.execute_in_transaction(
                        conn,
                        "INSERT INTO rate_snapshots (club_id, week_start, entity_type, entity_id, rate) "
                        "VALUES (?, ?, ?, ?, ?)",
                        (club_id, week_start, entity_type, entity_id, str(to_decimal(rate))))

            updated = self.db.execute_in_transaction(
                conn,
                "UPDATE settlements SET status = ?, finalized_at = COALESCE(finalized_at, ?) "
                "WHERE club_id = ? AND week_start = ?",
                (SettlementStatus.FINAL.value, datetime.now().isoformat(), club_id, week_start))
            if updated != 1:
                # Abort the whole close: carries without a FINAL week are not allowed either
                raise SettlementNotFound(f"Settlement {club_id} {week_start} not found during close")

    def save_carry_forward(self, club_id, week_start, carries, source_week=None):
        with self.db.get_transaction() as conn:
            self._write_carries(conn, club_id, week_start, carries, source_week)

    # ------------------------------------------------------------------
    # Ledger
    # ------------------------------------------------------------------
    @staticmethod
    def _entry_from_row(row: Dict) -> LedgerEntry:
        return LedgerEntry(
            id=row['id'],
            entity_id=row['entity_id'],
            direction=LedgerDirection(row['dir']),
            amount=to_decimal(row['amount']),
            week_start=str(row['week_start']),
            method=row.get('method'),
            description=row.get('description'),
            created_at=row.get('created_at'),
            entity_name=row.get('entity_name'),
            is_reconciled=bool(row.get('is_reconciled')),
        )

    _ENTRY_COLUMNS = ("id, entity_id, entity_name, week_start, dir, amount, method, description, "
                      "is_reconciled, created_at")

    def list_ledger_entries(self, week_start, entity_id=None, club_id=None):
        query = f"SELECT {self._ENTRY_COLUMNS} FROM ledger_entries WHERE week_start = ?"
        params = [week_start]
        if club_id is not None:
            query += " AND club_id = ?"
            params.append(club_id)
        if entity_id is not None:
            query += " AND entity_id = ?"
            params.append(entity_id)
        query += " ORDER BY created_at, id"
        rows = self.db.execute_with_retry(query, tuple(params), fetch_all=True)
        return [self._entry_from_row(row) for row in rows]

    def get_ledger_entry(self, entry_id):
        row = self.db.execute_with_retry(
            f"SELECT {self._ENTRY_COLUMNS} FROM ledger_entries WHERE id = ?",
            (entry_id,), fetch_one=True)
        return self._entry_from_row(row) if row else None

    def _insert_entry_params(self, club_id: str, entry: LedgerEntry, source: str) -> tuple:
        return (entry.id, club_id, entry.entity_id, entry.entity_name, entry.week_start,
                entry.direction.value, _money(entry.amount), entry.method, entry.description,
                source, 1 if entry.is_reconciled else 0, entry.created_at)

    _INSERT_ENTRY = ("INSERT INTO ledger_entries (id, club_id, entity_id, entity_name, week_start, dir, amount, "
                     "method, description, source, is_reconciled, created_at) "
                     "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)")

    def create_ledger_entry(self, club_id, entry):
        with self.db.get_transaction() as conn:
            self._check_ledger_writable(conn, club_id, entry.week_start)
            self.db.execute_in_transaction(conn, self._INSERT_ENTRY, self._insert_entry_params(club_id, entry, 'manual'))
        return entry

    def _update_entry(self, entry_id, query, params, allowed) -> bool:
        """Runs ``query`` on one entry while its week's settlement row is locked"""
        with self.db.get_transaction() as conn:
            row = self.db.fetch_in_transaction(
                conn, "SELECT club_id, week_start FROM ledger_entries WHERE id = ?", (entry_id,), fetch_one=True)
            if row is None:
                return False
            self._check_ledger_writable(conn, row['club_id'], str(row['week_start']), allowed)
            return self.db.execute_in_transaction(conn, query, params) > 0

    def delete_ledger_entry(self, entry_id):
        return self._update_entry(
            entry_id, "DELETE FROM ledger_entries WHERE id = ?", (entry_id,),
            allowed=(SettlementStatus.DRAFT, SettlementStatus.VOID))

    def set_ledger_reconciled(self, entry_id, value):
        return self._update_entry(
            entry_id, "UPDATE ledger_entries SET is_reconciled = ? WHERE id = ?", (1 if value else 0, entry_id),
            allowed=(SettlementStatus.DRAFT,))

    # ------------------------------------------------------------------
    # Bank transactions
    # ------------------------------------------------------------------
    @staticmethod
    def _transaction_from_row(row: Dict) -> BankTransaction:
        return BankTransaction(
            id=row['id'],
            fitid=row['fitid'],
            tx_date=str(row['tx_date']),
            amount=to_decimal(row['amount']),
            memo=row.get('memo') or '',
            direction=LedgerDirection(row['dir']),
            bank_name=row.get('bank_name'),
            week_start=row.get('week_start'),
            status=row.get('status') or 'pending',
            entity_id=row.get('entity_id'),
            entity_name=row.get('entity_name'),
            applied_ledger_id=row.get('applied_ledger_id'),
        )

    _TX_COLUMNS = ("id, fitid, tx_date, amount, memo, bank_name, dir, status, entity_id, entity_name, "
                   "week_start, applied_ledger_id")

    def save_bank_transactions(self, club_id, transactions):
        """Insert new transactions; a FITID already imported for the club is skipped"""
        inserted = 0
        with self.db.get_transaction() as conn:
            for tx in transactions:
                inserted += self.db.execute_in_transaction(
                    conn,
                    "INSERT INTO bank_transactions (id, club_id, fitid, tx_date, amount, memo, bank_name, dir, "
                    "status, entity_id, entity_name, week_start) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?) "
                    "ON CONFLICT (club_id, fitid) DO NOTHING",
                    (tx.id, club_id, tx.fitid, tx.tx_date, _money(tx.amount), tx.memo, tx.bank_name,
                     tx.direction.value, tx.status, tx.entity_id, tx.entity_name, tx.week_start))
        logger.info(f"Bank transactions saved: {inserted} new, {len(transactions) - inserted} duplicates")
        return inserted

    def list_bank_transactions(self, club_id, week_start=None, status=None):
        query = f"SELECT {self._TX_COLUMNS} FROM bank_transactions WHERE club_id = ?"
        params = [club_id]
        if week_start is not None:
            query += " AND week_start = ?"
            params.append(week_start)
        if status is not None:
            query += " AND status = ?"
            params.append(status)
        query += " ORDER BY tx_date DESC, id"
        rows = self.db.execute_with_retry(query, tuple(params), fetch_all=True)
        return [self._transaction_from_row(row) for row in rows]

    def get_bank_transaction(self, club_id, transaction_id):
        row = self.db.execute_with_retry(
            f"SELECT {self._TX_COLUMNS} FROM bank_transactions WHERE club_id = ? AND id = ?",
            (club_id, transaction_id), fetch_one=True)
        return self._transaction_from_row(row) if row else None

    def apply_bank_transaction(self, club_id, transaction_id, entry):
        """Create the ledger entry and mark the transaction applied, atomically"""
        with self.db.get_transaction() as conn:
            self._check_ledger_writable(conn, club_id, entry.week_start)
            self.db.execute_in_transaction(conn, self._INSERT_ENTRY, self._insert_entry_params(club_id, entry, 'ofx'))
            self.db.execute_in_transaction(
                conn,
                "UPDATE bank_transactions SET status = 'applied', entity_id = ?, entity_name = ?, "
                "applied_ledger_id = ? WHERE club_id = ? AND id = ?",
                (entry.entity_id, entry.entity_name, entry.id, club_id, transaction_id))
        return entry
