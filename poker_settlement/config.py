#!/usr/bin/env python3
"""
Poker Settlement Configuration
Environment-driven settings for the settlement engine
"""

import os
from decimal import Decimal

from dotenv import load_dotenv

# Load environment variables
load_dotenv()


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


MODULE_VERSION = "1.0.0"
MODULE_NAME = "Poker Settlement Engine"

# Database Configuration
DATABASE_CONFIG = {
    'DB_TYPE': os.getenv('DB_TYPE', 'sqlite'),
    'SQLITE_DB_PATH': os.getenv('SQLITE_DB_PATH', 'poker_settlement.db'),
}

# Settlement arithmetic
SETTLEMENT_CONFIG = {
    'EPSILON': Decimal(os.getenv('SETTLEMENT_EPSILON', '0.01')),
    'CARRY_NEGLIGIBLE': Decimal(os.getenv('CARRY_NEGLIGIBLE', '0.01')),
    'WEEK_LENGTH_DAYS': int(os.getenv('WEEK_LENGTH_DAYS', 7)),
    'DEFAULT_PAYMENT_TYPE': 'fiado',
}

# Agent names that mean "no agency": each player is settled individually
NO_AGENT_NAMES = {'', 'none', 'null', 'undefined', 'sem agente', '(sem agente)'}

# Auto-match heuristics
AUTO_MATCH_CONFIG = {
    'FUZZY_THRESHOLD': float(os.getenv('AUTO_MATCH_FUZZY_THRESHOLD', 0.85)),
    'AMOUNT_EPSILON': Decimal(os.getenv('AUTO_MATCH_AMOUNT_EPSILON', '0.01')),
    'DATE_WINDOW_DAYS': int(os.getenv('AUTO_MATCH_DATE_WINDOW_DAYS', 14)),
    'MIN_ALIAS_LENGTH': int(os.getenv('AUTO_MATCH_MIN_ALIAS_LENGTH', 4)),
    'MIN_NAME_LENGTH': 3,
    'AI_HINTS': _env_bool('AUTO_MATCH_AI_HINTS', False),
    'PAYMENT_METHODS': ['PIX', 'TED', 'DOC', 'BOLETO', 'TRANSFERENCIA', 'TRANSF', 'DEPOSITO', 'DEP', 'SAQUE'],
}

# Claude API Configuration (optional, only used for unmatched-transaction hints)
CLAUDE_CONFIG = {
    'API_KEY': os.getenv('ANTHROPIC_API_KEY', ''),
    'MODEL': os.getenv('CLAUDE_MODEL', 'claude-3-haiku-20240307'),
    'MAX_TOKENS': 200,
}

# League fee names recognised by the subclub roll-up (rates in %)
FEE_NAMES = ('taxaApp', 'taxaLiga', 'taxaRodeoGGR', 'taxaRodeoApp')
ADJUSTMENT_FIELDS = ('overlay', 'compras', 'security', 'outros')
