"""Exceptions raised by the settlement engine and its persistence layer."""


class SettlementError(Exception):
    """Base settlement engine error"""
    pass


class SettlementNotFound(SettlementError):
    """No settlement exists for the requested club/week"""
    pass


class SettlementStateError(SettlementError):
    """Operation not allowed for the settlement's current status"""
    pass


class NegativeAmountLedgerEntry(SettlementError, ValueError):
    """Ledger entries carry a direction and a strictly positive amount"""
    pass


class LedgerEntryNotFound(SettlementError):
    pass


class TransactionNotFound(SettlementError):
    pass
