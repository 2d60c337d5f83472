"""
Poker Settlement - Settlement Reconciliation & Carry-Forward Engine
Weekly agent/player balances, payment ledger netting and week-over-week carry-forward
"""

from .engine import SettlementEngine
from .repository import SettlementRepository, SqlSettlementRepository

__all__ = ['SettlementEngine', 'SettlementRepository', 'SqlSettlementRepository']
