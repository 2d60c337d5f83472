#!/usr/bin/env python3
"""
Subclub Roll-up and DRE
League settlement per subclub (fees, adjustments, acerto liga), dashboard
totals and the operator income statement (DRE). Pure sums over the rows the
aggregator already produced; nothing here is re-derived per entity.
"""

import logging
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from .config import ADJUSTMENT_FIELDS, FEE_NAMES
from .models import EntitySettlement, WeeklyMetrics
from .money import ZERO, as_float, round2, sum_money, to_decimal

logger = logging.getLogger(__name__)

HUNDRED = Decimal('100')
DEFAULT_SUBCLUB_NAME = 'OUTROS'


def compute_fees(rake, ggr, fees: Dict[str, Any]) -> Dict[str, Decimal]:
    """League fees: taxaApp/taxaLiga on rake, rodeo fees on positive GGR only"""
    rake = to_decimal(rake)
    ggr_base = max(to_decimal(ggr), ZERO)

    computed = {
        'taxaApp': round2(rake * to_decimal(fees.get('taxaApp')) / HUNDRED),
        'taxaLiga': round2(rake * to_decimal(fees.get('taxaLiga')) / HUNDRED),
        'taxaRodeoGGR': round2(ggr_base * to_decimal(fees.get('taxaRodeoGGR')) / HUNDRED),
        'taxaRodeoApp': round2(ggr_base * to_decimal(fees.get('taxaRodeoApp')) / HUNDRED),
    }
    computed['totalTaxas'] = sum_money(computed[name] for name in FEE_NAMES)
    computed['totalTaxasSigned'] = round2(-computed['totalTaxas'])
    return computed


def calc_dre(rake, ggr, total_taxas, adjustments: Dict[str, Any], total_rakeback) -> Dict[str, float]:
    """
    Demonstrativo de resultado:
    receita bruta - taxas - custos (|ajustes|) - rakeback = lucro líquido
    """
    receita_bruta = round2(to_decimal(rake) + to_decimal(ggr))
    total_custos = sum_money(abs(to_decimal(adjustments.get(name))) for name in ADJUSTMENT_FIELDS)
    total_taxas = round2(total_taxas)
    total_rakeback = round2(total_rakeback)
    lucro_liquido = round2(receita_bruta - total_taxas - total_custos - total_rakeback)

    margem = ZERO
    if receita_bruta > Decimal('0.01'):
        margem = round2(lucro_liquido / receita_bruta * HUNDRED)

    return {
        'receitaBruta': as_float(receita_bruta),
        'totalTaxas': as_float(total_taxas),
        'totalCustos': as_float(total_custos),
        'totalRakeback': as_float(total_rakeback),
        'lucroLiquido': as_float(lucro_liquido),
        'margem': as_float(margem),
    }


def acerto_direction(acerto, subclub_name: str) -> str:
    acerto = to_decimal(acerto)
    if acerto > Decimal('0.01'):
        return f"Liga deve pagar ao {subclub_name}"
    if acerto < Decimal('-0.01'):
        return f"{subclub_name} deve pagar à Liga"
    return 'Neutro'


def _subclub_key(subclub_id: Optional[str], subclub_name: Optional[str]) -> str:
    return subclub_id or f"name:{subclub_name or DEFAULT_SUBCLUB_NAME}"


def build_subclub_summaries(metrics: WeeklyMetrics, rows: Iterable[EntitySettlement],
                            fees: Dict[str, Any],
                            adjustments: Dict[str, Dict[str, Any]]) -> List[Dict[str, Any]]:
    """One league settlement block per subclub, sorted by subclub name"""
    rakeback_by_player: Dict[str, Decimal] = {}
    for row in rows:
        rakeback_by_player.update(row.player_rakeback)

    groups: Dict[str, Dict[str, Any]] = {}

    def group_for(subclub_id, subclub_name):
        key = _subclub_key(subclub_id, subclub_name)
        if key not in groups:
            groups[key] = {
                'id': subclub_id or '',
                'name': subclub_name or DEFAULT_SUBCLUB_NAME,
                'players': [],
                'agents': set(),
            }
        return groups[key]

    for player in metrics.players:
        group_for(player.subclub_id, player.subclub_name)['players'].append(player)
    for agent in metrics.agents:
        if agent.agent_name:
            group_for(agent.subclub_id, agent.subclub_name)['agents'].add(agent.agent_name)

    summaries = []
    for group in groups.values():
        players = group['players']
        ganhos = sum_money(p.ganhos for p in players)
        rake = sum_money(p.rake for p in players)
        ggr = sum_money(p.ggr for p in players)
        rb_total = sum_money(rakeback_by_player.get(p.id, ZERO) for p in players)
        resultado = round2(ganhos + rake + ggr)

        active = [p for p in players if to_decimal(p.ganhos) != 0 or to_decimal(p.rake) > 0]
        fees_computed = compute_fees(rake, ggr, fees)

        raw_adjustments = adjustments.get(group['id'], {})
        subclub_adjustments = {name: round2(raw_adjustments.get(name)) for name in ADJUSTMENT_FIELDS}
        total_lancamentos = sum_money(subclub_adjustments.values())

        acerto_liga = round2(resultado + fees_computed['totalTaxasSigned'] + total_lancamentos)

        summaries.append({
            'id': group['id'],
            'name': group['name'],
            'totals': {
                'players': len(active),
                'agents': len(group['agents']),
                'ganhos': as_float(ganhos),
                'rake': as_float(rake),
                'ggr': as_float(ggr),
                'rbTotal': as_float(rb_total),
                'resultado': as_float(resultado),
            },
            'feesComputed': {name: as_float(value) for name, value in fees_computed.items()},
            'adjustments': {name: as_float(value) for name, value in subclub_adjustments.items()},
            'totalLancamentos': as_float(total_lancamentos),
            'acertoLiga': as_float(acerto_liga),
            'acertoDirecao': acerto_direction(acerto_liga, group['name']),
            'dre': calc_dre(rake, ggr, fees_computed['totalTaxas'], subclub_adjustments, rb_total),
        })

    summaries.sort(key=lambda s: s['name'])
    return summaries


def rollup_dashboard(subclubs: List[Dict[str, Any]]) -> Dict[str, Any]:
    """Club-wide totals over the subclub blocks, DRE included"""

    def sum_field(section, name):
        return sum_money(s[section].get(name) for s in subclubs)

    rake = sum_field('totals', 'rake')
    ggr = sum_field('totals', 'ggr')
    rb_total = sum_field('totals', 'rbTotal')
    total_taxas = sum_field('feesComputed', 'totalTaxas')
    club_adjustments = {name: sum_money(abs(to_decimal(s['adjustments'].get(name))) for s in subclubs)
                        for name in ADJUSTMENT_FIELDS}

    return {
        'players': sum(s['totals']['players'] for s in subclubs),
        'agents': sum(s['totals']['agents'] for s in subclubs),
        'ganhos': as_float(sum_field('totals', 'ganhos')),
        'rake': as_float(rake),
        'ggr': as_float(ggr),
        'rbTotal': as_float(rb_total),
        'resultado': as_float(sum_field('totals', 'resultado')),
        'totalTaxas': as_float(total_taxas),
        'totalLancamentos': as_float(sum_money(s['totalLancamentos'] for s in subclubs)),
        'acertoLiga': as_float(sum_money(s['acertoLiga'] for s in subclubs)),
        'dre': calc_dre(rake, ggr, total_taxas, club_adjustments, rb_total),
    }
