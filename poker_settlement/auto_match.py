#!/usr/bin/env python3
"""
Auto-Match Classifier - Sugestões de vínculo entre transações bancárias e entidades

Tiers (first hit wins per transaction):
1. Exact entity id (transaction already linked, or the canonical id in the memo) - high
2. Known alias (external id, importer-prefixed id, numeric prefix) in the memo - high
3. Fuzzy name match against the entity display name - medium
4. Amount + date coincidence with exactly one open (aberto/parcial) entity - medium
5. No structural match: payment method detected (low) or nothing (none)

The classifier only proposes. Applying a suggestion is a separate, explicit write.
"""

import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from difflib import SequenceMatcher
from typing import Callable, Dict, List, Optional, Set

import anthropic

from .config import AUTO_MATCH_CONFIG, CLAUDE_CONFIG
from .entity_keys import norm_name, numeric_prefix
from .models import (
    BankTransaction, Confidence, EntitySettlement, LedgerDirection, Suggestion,
    STATUS_ABERTO, STATUS_PARCIAL,
)
from .money import to_decimal

logger = logging.getLogger(__name__)

_TOKEN_RE = re.compile(r'[\w-]+', re.UNICODE)


@dataclass
class MatchContext:
    """Indexes over the week's settlement rows, built once per classification run"""
    entities: List[EntitySettlement]
    week_start: Optional[str] = None
    fuzzy_threshold: float = 0.85
    amount_epsilon: Decimal = Decimal('0.01')
    date_window_days: int = 14
    min_alias_length: int = 4
    min_name_length: int = 3
    by_id: Dict[str, EntitySettlement] = field(default_factory=dict)
    aliases: Dict[str, Set[str]] = field(default_factory=dict)

    def __post_init__(self):
        for entity in self.entities:
            self.by_id[entity.entity_id] = entity
            for key in entity.keys:
                if key == entity.entity_id:
                    continue
                if len(key) >= self.min_alias_length:
                    self.aliases.setdefault(key.lower(), set()).add(entity.entity_id)
                prefix = numeric_prefix(key, self.min_alias_length)
                if prefix:
                    self.aliases.setdefault(prefix, set()).add(entity.entity_id)


def memo_tokens(memo: Optional[str]) -> List[str]:
    return _TOKEN_RE.findall(memo or '')


def _suggestion(tx: BankTransaction, entity: Optional[EntitySettlement], confidence: Confidence,
                tier: int, reason: str) -> Suggestion:
    return Suggestion(
        transaction_id=tx.id,
        entity_id=entity.entity_id if entity else None,
        entity_name=entity.name if entity else None,
        confidence=confidence,
        tier=tier,
        reason=reason,
        memo=tx.memo,
        amount=tx.amount,
        tx_date=tx.tx_date,
        direction=tx.direction,
    )


def tier_exact_id(tx: BankTransaction, ctx: MatchContext) -> Optional[Suggestion]:
    if tx.entity_id and tx.entity_id in ctx.by_id:
        entity = ctx.by_id[tx.entity_id]
        return _suggestion(tx, entity, Confidence.HIGH, 1, f"Transação vinculada a {entity.name}")

    lowered = {entity_id.lower(): entity_id for entity_id in ctx.by_id}
    for token in memo_tokens(tx.memo):
        entity_id = lowered.get(token.lower())
        if entity_id:
            entity = ctx.by_id[entity_id]
            return _suggestion(tx, entity, Confidence.HIGH, 1, f"ID {entity_id} no memo")
    return None


def tier_alias(tx: BankTransaction, ctx: MatchContext) -> Optional[Suggestion]:
    hits: Dict[str, str] = {}
    for token in memo_tokens(tx.memo):
        candidates = [token.lower()]
        prefix = numeric_prefix(token, ctx.min_alias_length)
        if prefix:
            candidates.append(prefix)
        for candidate in candidates:
            for entity_id in ctx.aliases.get(candidate, ()):
                hits.setdefault(entity_id, candidate)

    if len(hits) != 1:
        if len(hits) > 1:
            logger.info(f"Alias ambíguo em '{tx.memo}': {sorted(hits)}")
        return None
    entity_id, alias = next(iter(hits.items()))
    return _suggestion(tx, ctx.by_id[entity_id], Confidence.HIGH, 2, f"Alias {alias} no memo")


def name_similarity(name: str, memo: str) -> float:
    """1.0 when the whole name appears as words in the memo, else best ratio over same-length windows"""
    if not name or not memo:
        return 0.0
    if re.search(r'\b' + re.escape(name) + r'\b', memo):
        return 1.0

    words = memo.split()
    size = max(len(name.split()), 1)
    best = SequenceMatcher(None, name, memo).ratio()
    for start in range(0, max(len(words) - size + 1, 0)):
        window = ' '.join(words[start:start + size])
        best = max(best, SequenceMatcher(None, name, window).ratio())
    return best


def tier_fuzzy_name(tx: BankTransaction, ctx: MatchContext) -> Optional[Suggestion]:
    memo = norm_name(tx.memo)
    if not memo:
        return None

    scored = []
    for entity in ctx.entities:
        name = norm_name(entity.name)
        if len(name) < ctx.min_name_length:
            continue
        score = name_similarity(name, memo)
        if score >= ctx.fuzzy_threshold:
            scored.append((score, entity))
    if not scored:
        return None

    scored.sort(key=lambda item: (-item[0], item[1].entity_id))
    best_score, best = scored[0]
    if len(scored) > 1 and abs(scored[1][0] - best_score) < 1e-9:
        logger.info(f"Nome ambíguo em '{tx.memo}': {best.name} / {scored[1][1].name}")
        return None
    return _suggestion(tx, best, Confidence.MEDIUM, 3, f"Nome similar: {best.name} ({best_score:.0%})")


def _days_between(first: Optional[str], second: Optional[str]) -> Optional[int]:
    try:
        return abs((datetime.strptime(first, '%Y-%m-%d') - datetime.strptime(second, '%Y-%m-%d')).days)
    except (TypeError, ValueError):
        return None


def tier_amount_date(tx: BankTransaction, ctx: MatchContext) -> Optional[Suggestion]:
    days = _days_between(tx.tx_date, ctx.week_start)
    if days is None or days > ctx.date_window_days:
        return None

    amount = to_decimal(tx.amount)
    candidates = []
    for entity in ctx.entities:
        if entity.status not in (STATUS_ABERTO, STATUS_PARCIAL):
            continue
        if abs(abs(entity.pendente) - amount) > ctx.amount_epsilon:
            continue
        # pendente < 0 is settled by IN movements, pendente > 0 by OUT
        needed = LedgerDirection.IN if entity.pendente < 0 else LedgerDirection.OUT
        if tx.direction != needed:
            continue
        candidates.append(entity)

    if len(candidates) != 1:
        return None
    entity = candidates[0]
    return _suggestion(tx, entity, Confidence.MEDIUM, 4,
                       f"Valor {amount} coincide com pendente de {entity.name} ({days}d da semana)")


def detect_payment_method(memo: Optional[str], methods: List[str]) -> Optional[str]:
    upper = norm_name(memo).upper()
    for method in methods:
        if re.search(r'\b' + re.escape(method) + r'\b', upper):
            return method
    return None


TIERS: List[Callable[[BankTransaction, MatchContext], Optional[Suggestion]]] = [
    tier_exact_id,
    tier_alias,
    tier_fuzzy_name,
    tier_amount_date,
]


class AutoMatchClassifier:
    """
    Classificador de 5 tiers para transações bancárias pendentes
    Nunca grava nada: retorna apenas sugestões
    """

    def __init__(self, config: Optional[Dict] = None, claude_client=None):
        self.config = dict(AUTO_MATCH_CONFIG)
        if config:
            self.config.update(config)
        self.tiers = list(TIERS)
        self.claude_client = claude_client
        if self.claude_client is None and self.config.get('AI_HINTS'):
            self.claude_client = self._init_claude_client()

    def _init_claude_client(self):
        """Cliente Claude opcional, usado apenas para dicas no tier 5"""
        api_key = CLAUDE_CONFIG['API_KEY']
        if api_key:
            return anthropic.Anthropic(api_key=api_key.strip())
        logger.warning("Claude API key not found - AI hints disabled")
        return None

    def build_context(self, entities: List[EntitySettlement], week_start: Optional[str]) -> MatchContext:
        return MatchContext(
            entities=list(entities),
            week_start=week_start,
            fuzzy_threshold=self.config['FUZZY_THRESHOLD'],
            amount_epsilon=to_decimal(self.config['AMOUNT_EPSILON']),
            date_window_days=self.config['DATE_WINDOW_DAYS'],
            min_alias_length=self.config['MIN_ALIAS_LENGTH'],
            min_name_length=self.config['MIN_NAME_LENGTH'],
        )

    def classify(self, tx: BankTransaction, ctx: MatchContext) -> Suggestion:
        for tier in self.tiers:
            suggestion = tier(tx, ctx)
            if suggestion is not None:
                return suggestion
        return self._unmatched(tx, ctx)

    def suggest(self, transactions: List[BankTransaction], entities: List[EntitySettlement],
                week_start: Optional[str] = None) -> List[Suggestion]:
        ctx = self.build_context(entities, week_start)
        suggestions = [self.classify(tx, ctx) for tx in transactions]

        by_tier: Dict[int, int] = {}
        for suggestion in suggestions:
            by_tier[suggestion.tier] = by_tier.get(suggestion.tier, 0) + 1
        logger.info(f"Auto-match {week_start}: {len(suggestions)} transações, por tier {dict(sorted(by_tier.items()))}")
        return suggestions

    def _unmatched(self, tx: BankTransaction, ctx: MatchContext) -> Suggestion:
        method = detect_payment_method(tx.memo, self.config['PAYMENT_METHODS'])
        if method:
            suggestion = _suggestion(tx, None, Confidence.LOW, 5, f"Sem correspondência - método {method} detectado")
        else:
            suggestion = _suggestion(tx, None, Confidence.NONE, 5, "Sem correspondência")

        if self.claude_client is not None:
            hint = self._ai_hint(tx, ctx)
            if hint is not None:
                entity, reasoning = hint
                suggestion.entity_id = entity.entity_id
                suggestion.entity_name = entity.name
                suggestion.confidence = Confidence.LOW
                suggestion.reason = f"{suggestion.reason} | AI: {reasoning}"
        return suggestion

    def _ai_hint(self, tx: BankTransaction, ctx: MatchContext):
        """Asks Claude which entity name the memo most likely refers to; informational only"""
        names = sorted({entity.name for entity in ctx.entities})[:100]
        if not names:
            return None

        prompt = f"""
        Uma transação bancária de um clube de poker não foi associada a nenhum agente ou jogador.

        TRANSAÇÃO:
        - Memo: {tx.memo}
        - Valor: R$ {tx.amount}
        - Data: {tx.tx_date}
        - Direção: {tx.direction.value}

        ENTIDADES DA SEMANA:
        {json.dumps(names, ensure_ascii=False)}

        Responda somente em JSON:
        {{"entity_name": "nome exato da lista ou null", "reasoning": "explicação curta"}}
        """

        try:
            response = self.claude_client.messages.create(
                model=CLAUDE_CONFIG['MODEL'],
                max_tokens=CLAUDE_CONFIG['MAX_TOKENS'],
                messages=[{"role": "user", "content": prompt}]
            )
            result = json.loads(response.content[0].text)
        except (anthropic.APIError, json.JSONDecodeError, IndexError, AttributeError) as e:
            logger.warning(f"AI hint failed for transaction {tx.id}: {e}")
            return None

        name = result.get('entity_name') if isinstance(result, dict) else None
        for entity in ctx.entities:
            if name and entity.name == name:
                return entity, result.get('reasoning', '')
        return None
