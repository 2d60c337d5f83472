"""In-memory SettlementRepository and metric builders shared by the tests."""

from decimal import Decimal

from poker_settlement.errors import SettlementStateError
from poker_settlement.models import (
    AgentMetric, PlayerMetric, RateConfig, RateSnapshot, SettlementRecord, SettlementStatus, WeeklyMetrics,
)
from poker_settlement.repository import SettlementRepository, ledger_fingerprint, new_id


def D(value):
    return Decimal(str(value))


def player(pid, rake=0, ganhos=0, ggr=0, agent_id=None, agent_name=None, external_id=None,
           subclub_id='sc1', subclub_name='Sub 1', agent_is_direct=False, nickname=None):
    return PlayerMetric(
        id='pm_' + pid,
        player_id=pid,
        external_id=external_id,
        nickname=nickname or pid,
        agent_id=agent_id,
        agent_name=agent_name,
        subclub_id=subclub_id,
        subclub_name=subclub_name,
        ganhos=D(ganhos),
        rake=D(rake),
        ggr=D(ggr),
        agent_is_direct=agent_is_direct,
    )


def agent(agent_id, name=None, external_id=None, is_direct=False, subclub_id='sc1', subclub_name='Sub 1'):
    return AgentMetric(
        id='am_' + agent_id,
        agent_id=agent_id,
        agent_name=name or agent_id,
        external_id=external_id,
        subclub_id=subclub_id,
        subclub_name=subclub_name,
        is_direct=is_direct,
    )


OFX_HEADER = """OFXHEADER:100
DATA:OFXSGML
VERSION:102
SECURITY:NONE
ENCODING:USASCII
CHARSET:1252
COMPRESSION:NONE
OLDFILEUID:NONE
NEWFILEUID:NONE

"""


def stmttrn(fitid, posted, amount, memo=None, name=None, trntype=None):
    """One SGML STMTTRN block; pass fitid=None to leave the tag out"""
    lines = ['<STMTTRN>', f"<TRNTYPE>{trntype or ('DEBIT' if str(amount).startswith('-') else 'CREDIT')}",
             f'<DTPOSTED>{posted}', f'<TRNAMT>{amount}']
    if fitid is not None:
        lines.append(f'<FITID>{fitid}')
    if name:
        lines.append(f'<NAME>{name}')
    if memo:
        lines.append(f'<MEMO>{memo}')
    lines.append('</STMTTRN>')
    return '\n'.join(lines)


def ofx_statement(*transactions, org=None):
    """Bank statement in OFX 1.x SGML, the format Brazilian banks export"""
    signon = ['<SIGNONMSGSRSV1>', '<SONRS>', '<STATUS>', '<CODE>0', '<SEVERITY>INFO', '</STATUS>',
              '<DTSERVER>20240115120000', '<LANGUAGE>POR']
    if org:
        signon += ['<FI>', f'<ORG>{org}', '<FID>077', '</FI>']
    signon += ['</SONRS>', '</SIGNONMSGSRSV1>']
    body = signon + [
        '<BANKMSGSRSV1>', '<STMTTRNRS>', '<TRNUID>1', '<STATUS>', '<CODE>0', '<SEVERITY>INFO', '</STATUS>',
        '<STMTRS>', '<CURDEF>BRL',
        '<BANKACCTFROM>', '<BANKID>0077', '<ACCTID>12345', '<ACCTTYPE>CHECKING', '</BANKACCTFROM>',
        '<BANKTRANLIST>', '<DTSTART>20240101', '<DTEND>20240115',
        *transactions,
        '</BANKTRANLIST>',
        '<LEDGERBAL>', '<BALAMT>0.00', '<DTASOF>20240115', '</LEDGERBAL>',
        '</STMTRS>', '</STMTTRNRS>', '</BANKMSGSRSV1>',
    ]
    return OFX_HEADER + '<OFX>\n' + '\n'.join(body) + '\n</OFX>\n'


class FakeRepository(SettlementRepository):
    def __init__(self):
        self.settlements = {}
        self.metrics = {}
        self.rate_config = RateConfig()
        self.rate_snapshots = {}
        self.carry_forward = {}
        self.balance_snapshots = {}
        self.legacy_balances = {}
        self.ledger = {}
        self.fees = {}
        self.adjustments = {}
        self.payment_types = {}
        self.transactions = {}
        self.calls = []

    # Settlements
    def get_settlement(self, club_id, week_start):
        return self.settlements.get((club_id, week_start))

    def create_settlement(self, club_id, week_start, status=SettlementStatus.DRAFT):
        record = SettlementRecord(id=new_id(), club_id=club_id, week_start=week_start, status=status)
        self.settlements[(club_id, week_start)] = record
        return record

    def list_weeks(self, club_id):
        return sorted((s for (club, _), s in self.settlements.items() if club == club_id),
                      key=lambda s: s.week_start)

    # Metrics and configuration
    def set_metrics(self, club_id, week_start, agents=(), players=()):
        self.metrics[(club_id, week_start)] = WeeklyMetrics(agents=list(agents), players=list(players))

    def get_weekly_metrics(self, club_id, week_start):
        return self.metrics.get((club_id, week_start), WeeklyMetrics())

    def get_rate_config(self, club_id):
        return RateConfig(agents=dict(self.rate_config.agents), players=dict(self.rate_config.players))

    def set_rate(self, club_id, entity_type, entity_id, rate):
        target = self.rate_config.agents if entity_type == 'agent' else self.rate_config.players
        target[entity_id] = D(rate)

    def get_rate_snapshot(self, club_id, week_start):
        return self.rate_snapshots.get((club_id, week_start))

    def get_fee_config(self, club_id):
        return dict(self.fees)

    def get_club_adjustments(self, club_id, week_start):
        return self.adjustments.get((club_id, week_start), {})

    def get_agent_payment_types(self, club_id, week_start):
        return dict(self.payment_types.get((club_id, week_start), {}))

    def set_agent_payment_type(self, club_id, week_start, agent_id, payment_type):
        self.payment_types.setdefault((club_id, week_start), {})[agent_id] = payment_type

    # Carry-forward sources
    def get_carry_forward_map(self, club_id, week_start):
        self.calls.append(('carry_forward', week_start))
        return dict(self.carry_forward.get((club_id, week_start), {}))

    def get_balance_snapshot(self, club_id, week_start):
        self.calls.append(('balance_snapshot', week_start))
        return dict(self.balance_snapshots.get((club_id, week_start), {}))

    def get_legacy_balances(self, club_id, week_start):
        self.calls.append(('legacy', week_start))
        return dict(self.legacy_balances.get((club_id, week_start), {}))

    def save_week_close(self, club_id, week_start, next_week, carries, balances, rate_snapshot,
                        expected_ledger=None):
        if expected_ledger is not None:
            current = ledger_fingerprint(self.list_ledger_entries(week_start, club_id=club_id))
            if current != tuple(expected_ledger):
                raise SettlementStateError(f"ledger of {week_start} changed during close")
        self.carry_forward[(club_id, next_week)] = dict(carries)
        self.balance_snapshots[(club_id, week_start)] = dict(balances)
        self.rate_snapshots[(club_id, week_start)] = RateSnapshot(
            agents=dict(rate_snapshot.agents), players=dict(rate_snapshot.players))
        self.settlements[(club_id, week_start)].status = SettlementStatus.FINAL

    def save_carry_forward(self, club_id, week_start, carries, source_week=None):
        self.carry_forward[(club_id, week_start)] = dict(carries)

    # Ledger
    def list_ledger_entries(self, week_start, entity_id=None, club_id=None):
        return [
            entry for (club, _), entry in sorted(self.ledger.items())
            if entry.week_start == week_start
            and (club_id is None or club == club_id)
            and (entity_id is None or entry.entity_id == entity_id)
        ]

    def get_ledger_entry(self, entry_id):
        for (_, eid), entry in self.ledger.items():
            if eid == entry_id:
                return entry
        return None

    def create_ledger_entry(self, club_id, entry):
        self.ledger[(club_id, entry.id)] = entry
        return entry

    def delete_ledger_entry(self, entry_id):
        for key in list(self.ledger):
            if key[1] == entry_id:
                del self.ledger[key]
                return True
        return False

    def set_ledger_reconciled(self, entry_id, value):
        entry = self.get_ledger_entry(entry_id)
        if entry is None:
            return False
        entry.is_reconciled = bool(value)
        return True

    # Bank transactions
    def save_bank_transactions(self, club_id, transactions):
        known = {tx.fitid for (club, _), tx in self.transactions.items() if club == club_id}
        inserted = 0
        for tx in transactions:
            if tx.fitid in known:
                continue
            self.transactions[(club_id, tx.id)] = tx
            known.add(tx.fitid)
            inserted += 1
        return inserted

    def list_bank_transactions(self, club_id, week_start=None, status=None):
        return [
            tx for (club, _), tx in sorted(self.transactions.items())
            if club == club_id
            and (week_start is None or tx.week_start == week_start)
            and (status is None or tx.status == status)
        ]

    def get_bank_transaction(self, club_id, transaction_id):
        return self.transactions.get((club_id, transaction_id))

    def apply_bank_transaction(self, club_id, transaction_id, entry):
        self.create_ledger_entry(club_id, entry)
        tx = self.transactions[(club_id, transaction_id)]
        tx.status = 'applied'
        tx.entity_id = entry.entity_id
        tx.entity_name = entry.entity_name
        tx.applied_ledger_id = entry.id
        return entry
