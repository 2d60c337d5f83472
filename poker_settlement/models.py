#!/usr/bin/env python3
"""
Settlement Data Models
Typed records exchanged between the engine and its collaborators
"""

from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Optional, List, Dict, Any, FrozenSet, Tuple

from .money import ZERO, as_float


class SettlementStatus(Enum):
    """Lifecycle of a (club, week) settlement"""
    DRAFT = "DRAFT"
    FINAL = "FINAL"
    VOID = "VOID"


class LedgerDirection(Enum):
    """IN = club pays entity, OUT = entity pays club"""
    IN = "IN"
    OUT = "OUT"


class EntityRole(Enum):
    AGENT = "agent"
    PLAYER = "player"


class Confidence(Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"
    NONE = "none"


class PaymentType(Enum):
    """Display-only agent payment type; never used in the arithmetic"""
    FIADO = "fiado"
    AVISTA = "avista"


# Settlement status labels (Portuguese, as shown to operators)
STATUS_SEM_MOV = 'sem-mov'
STATUS_QUITADO = 'quitado'
STATUS_CREDITO = 'credito'
STATUS_PARCIAL = 'parcial'
STATUS_ABERTO = 'aberto'

DIRECTION_RECEIVE = 'A Receber'
DIRECTION_PAY = 'A Pagar'
DIRECTION_NEUTRAL = 'Neutro'


@dataclass
class SettlementRecord:
    id: str
    club_id: str
    week_start: str
    status: SettlementStatus = SettlementStatus.DRAFT
    finalized_at: Optional[str] = None

    @property
    def is_locked(self) -> bool:
        return self.status == SettlementStatus.FINAL


@dataclass
class AgentMetric:
    """One agent_week_metrics row; one agent may own several rows (one per subclub)"""
    id: str
    agent_id: Optional[str]
    agent_name: str
    external_id: Optional[str] = None
    subclub_id: Optional[str] = None
    subclub_name: Optional[str] = None
    is_direct: bool = False


@dataclass
class PlayerMetric:
    id: str
    player_id: Optional[str]
    external_id: Optional[str]
    nickname: str
    agent_id: Optional[str] = None
    agent_name: Optional[str] = None
    subclub_id: Optional[str] = None
    subclub_name: Optional[str] = None
    ganhos: Decimal = ZERO
    rake: Decimal = ZERO
    ggr: Decimal = ZERO
    agent_is_direct: bool = False

    @property
    def rate_key(self) -> str:
        """Key used by rate configuration and rate snapshots"""
        return str(self.player_id or self.external_id or self.id)


@dataclass
class WeeklyMetrics:
    agents: List[AgentMetric] = field(default_factory=list)
    players: List[PlayerMetric] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.agents and not self.players


@dataclass
class RateConfig:
    """Live (mutable) rakeback configuration, in percent"""
    agents: Dict[str, Decimal] = field(default_factory=dict)
    players: Dict[str, Decimal] = field(default_factory=dict)


@dataclass
class RateSnapshot:
    """Rates frozen when a week was locked, in percent"""
    agents: Dict[str, Decimal] = field(default_factory=dict)
    players: Dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'agents': {k: float(v) for k, v in sorted(self.agents.items())},
            'players': {k: float(v) for k, v in sorted(self.players.items())},
        }


@dataclass
class LedgerEntry:
    id: str
    entity_id: str
    direction: LedgerDirection
    amount: Decimal
    week_start: str
    method: Optional[str] = None
    description: Optional[str] = None
    created_at: Optional[str] = None
    entity_name: Optional[str] = None
    is_reconciled: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'entity_id': self.entity_id,
            'entity_name': self.entity_name,
            'dir': self.direction.value,
            'amount': as_float(self.amount),
            'week_start': self.week_start,
            'method': self.method,
            'description': self.description,
            'created_at': self.created_at,
            'is_reconciled': self.is_reconciled,
        }


@dataclass
class LedgerNet:
    total_in: Decimal = ZERO
    total_out: Decimal = ZERO
    net: Decimal = ZERO
    entries: List[LedgerEntry] = field(default_factory=list)

    @property
    def count(self) -> int:
        return len(self.entries)

    @property
    def reconciled_count(self) -> int:
        return sum(1 for entry in self.entries if entry.is_reconciled)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entradas': as_float(self.total_in),
            'saidas': as_float(self.total_out),
            'net': as_float(self.net),
            'count': self.count,
        }


@dataclass
class BankTransaction:
    id: str
    fitid: str
    tx_date: str
    amount: Decimal
    memo: str
    direction: LedgerDirection
    bank_name: Optional[str] = None
    week_start: Optional[str] = None
    status: str = 'pending'
    entity_id: Optional[str] = None
    entity_name: Optional[str] = None
    applied_ledger_id: Optional[str] = None


@dataclass
class Suggestion:
    """Proposed link between a bank transaction and a settlement entity"""
    transaction_id: str
    entity_id: Optional[str]
    entity_name: Optional[str]
    confidence: Confidence
    tier: int
    reason: str
    memo: Optional[str] = None
    amount: Decimal = ZERO
    tx_date: Optional[str] = None
    direction: Optional[LedgerDirection] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'transaction_id': self.transaction_id,
            'suggested_entity_id': self.entity_id,
            'suggested_entity_name': self.entity_name,
            'confidence': self.confidence.value,
            'match_tier': self.tier,
            'match_reason': self.reason,
            'memo': self.memo,
            'amount': as_float(self.amount),
            'tx_date': self.tx_date,
            'dir': self.direction.value if self.direction else None,
        }


@dataclass
class KeyConflict:
    """Two canonical entities resolved the same ledger key; the first claim wins"""
    key: str
    kept_entity_id: str
    dropped_entity_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'type': 'InconsistentEntityKeys',
            'key': self.key,
            'kept_entity_id': self.kept_entity_id,
            'dropped_entity_id': self.dropped_entity_id,
        }


@dataclass
class SettlementEntity:
    """A logical agent or standalone player, with every row and key that belongs to it"""
    entity_id: str
    role: EntityRole
    name: str
    is_direct: bool = False
    subclub_id: Optional[str] = None
    subclub_name: Optional[str] = None
    agent_metrics: List[AgentMetric] = field(default_factory=list)
    players: List[PlayerMetric] = field(default_factory=list)
    keys: FrozenSet[str] = frozenset()


@dataclass
class EntitySettlement:
    """One settlement row: WeeklyResult + carry-forward + ledger net + status"""
    entity_id: str
    role: EntityRole
    name: str
    is_direct: bool
    subclub_id: Optional[str]
    subclub_name: Optional[str]
    player_count: int
    ganhos: Decimal
    rake: Decimal
    ggr: Decimal
    rakeback: Decimal
    resultado: Decimal
    saldo_anterior: Decimal
    total_devido: Decimal
    total_in: Decimal
    total_out: Decimal
    pago: Decimal
    pendente: Decimal
    status: str
    direcao: str
    entries_count: int = 0
    payment_type: Optional[str] = None
    keys: FrozenSet[str] = frozenset()
    rates: Dict[str, Decimal] = field(default_factory=dict)
    player_rakeback: Dict[str, Decimal] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'entity_id': self.entity_id,
            'tipo': self.role.value,
            'nome': self.name,
            'is_direct': self.is_direct,
            'subclub_id': self.subclub_id,
            'subclub_name': self.subclub_name,
            'jogadores': self.player_count,
            'ganhos': as_float(self.ganhos),
            'rake': as_float(self.rake),
            'ggr': as_float(self.ggr),
            'rakeback': as_float(self.rakeback),
            'resultado': as_float(self.resultado),
            'saldoAnterior': as_float(self.saldo_anterior),
            'totalDevido': as_float(self.total_devido),
            'entradas': as_float(self.total_in),
            'saidas': as_float(self.total_out),
            'pago': as_float(self.pago),
            'pendente': as_float(self.pendente),
            'status': self.status,
            'direcao': self.direcao,
            'movimentacoes': self.entries_count,
            'payment_type': self.payment_type,
            'keys': sorted(self.keys),
        }


@dataclass
class SettlementResult:
    club_id: str
    week_start: str
    status: Optional[SettlementStatus]
    entities: List[EntitySettlement]
    totals: Dict[str, Any]
    subclubs: List[Dict[str, Any]] = field(default_factory=list)
    dashboard: Dict[str, Any] = field(default_factory=dict)
    warnings: List[KeyConflict] = field(default_factory=list)
    rate_snapshot: Optional[RateSnapshot] = None
    ledger_fingerprint: Tuple = ()

    def entity(self, entity_id: str) -> Optional[EntitySettlement]:
        for row in self.entities:
            if row.entity_id == entity_id:
                return row
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'club_id': self.club_id,
            'week_start': self.week_start,
            'status': self.status.value if self.status else None,
            'perEntity': [row.to_dict() for row in self.entities],
            'totals': self.totals,
            'subclubs': self.subclubs,
            'dashboardTotals': self.dashboard,
            'warnings': [w.to_dict() for w in self.warnings],
        }


@dataclass
class WeekCloseResult:
    club_id: str
    week_closed: str
    next_week: str
    carries: Dict[str, Decimal] = field(default_factory=dict)
    repaired: bool = False

    @property
    def count(self) -> int:
        return len(self.carries)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'club_id': self.club_id,
            'count': self.count,
            'week_closed': self.week_closed,
            'next_week': self.next_week,
            'carries': {k: as_float(v) for k, v in sorted(self.carries.items())},
            'repaired': self.repaired,
        }
