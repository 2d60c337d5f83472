#!/usr/bin/env python3
"""
OFX Statement Parser
Reads bank statements (SGML or XML flavour) with ofxparse and turns their
transactions into BankTransaction rows for the auto-match classifier
"""

import io
import logging
import re
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from ofxparse import OfxParser
from ofxparse.ofxparse import OfxParserException

from .models import BankTransaction, LedgerDirection
from .repository import new_id

logger = logging.getLogger(__name__)


def _force_utf8_header(raw: str) -> str:
    """Statements arrive already decoded; the SGML header must agree with the bytes we hand over"""
    lines = []
    in_header = True
    for line in raw.splitlines():
        if in_header and line.strip().startswith('<'):
            in_header = False
        if in_header and re.match(r'(?i)^\s*encoding\s*:', line):
            line = 'ENCODING:UTF-8'
        elif in_header and re.match(r'(?i)^\s*charset\s*:', line):
            line = 'CHARSET:NONE'
        lines.append(line)
    return '\n'.join(lines)


def _bank_name(account, file_name: str) -> str:
    institution = getattr(account, 'institution', None)
    organization = getattr(institution, 'organization', None) if institution is not None else None
    if organization:
        return organization.strip()
    return re.sub(r'\.ofx$', '', file_name, flags=re.IGNORECASE)


def _describe(tx) -> str:
    """MEMO, enriched with NAME (the payee) when the memo does not already mention it"""
    memo = (tx.memo or '').strip()
    payee = (tx.payee or '').strip()
    if payee and payee.lower()[:8] not in memo.lower():
        return f"{memo} · {payee}" if memo else payee
    return memo


def parse_ofx(raw: str, file_name: str = '', week_start: Optional[str] = None) -> List[BankTransaction]:
    """
    Parse an OFX statement.

    Rows without FITID, with a zero amount or that ofxparse rejects (bad date,
    bad amount) are dropped, as are repeated FITIDs. Amounts are stored
    positive with the direction taken from the sign. Result is sorted newest
    first. A file ofxparse cannot read at all raises ValueError.
    """
    if not raw or not raw.strip():
        return []

    try:
        ofx = OfxParser.parse(io.BytesIO(_force_utf8_header(raw).encode('utf-8')), fail_fast=False)
    except (OfxParserException, UnicodeError) as e:
        logger.error(f"OFX {file_name or '(sem nome)'} ilegível: {e}")
        raise ValueError(f"Arquivo OFX inválido: {e}")

    transactions = []
    seen = set()
    skipped = 0
    for account in getattr(ofx, 'accounts', []):
        statement = getattr(account, 'statement', None)
        if statement is None:
            continue
        skipped += len(getattr(statement, 'discarded_entries', []))
        bank_name = _bank_name(account, file_name)

        for tx in statement.transactions:
            fitid = (tx.id or '').strip()
            amount = Decimal(str(tx.amount)) if tx.amount is not None else Decimal('0')
            if not fitid or amount == 0 or fitid in seen:
                skipped += 1
                continue
            seen.add(fitid)

            tx_date = tx.date.date() if isinstance(tx.date, datetime) else tx.date
            transactions.append(BankTransaction(
                id=new_id(),
                fitid=fitid,
                tx_date=tx_date.isoformat(),
                amount=abs(amount),
                memo=_describe(tx),
                direction=LedgerDirection.IN if amount > 0 else LedgerDirection.OUT,
                bank_name=bank_name or None,
                week_start=week_start,
            ))

    if skipped:
        logger.info(f"OFX {file_name or '(sem nome)'}: {skipped} lançamentos ignorados (sem FITID, valor ou data)")

    transactions.sort(key=lambda tx: (tx.tx_date, tx.fitid), reverse=True)
    return transactions
