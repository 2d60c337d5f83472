import unittest
from decimal import Decimal

from poker_settlement.engine import SettlementEngine
from poker_settlement.reporting import acerto_direction, calc_dre, compute_fees

from helpers import D, FakeRepository, agent, player

CLUB = 'club-1'
WEEK = '2024-01-08'


class TestFeesAndDRE(unittest.TestCase):
    def test_compute_fees(self):
        fees = compute_fees(1000, 200, {'taxaApp': 5, 'taxaLiga': 3, 'taxaRodeoGGR': 10, 'taxaRodeoApp': 2})
        self.assertEqual(fees['taxaApp'], D('50.00'))
        self.assertEqual(fees['taxaLiga'], D('30.00'))
        self.assertEqual(fees['taxaRodeoGGR'], D('20.00'))
        self.assertEqual(fees['taxaRodeoApp'], D('4.00'))
        self.assertEqual(fees['totalTaxas'], D('104.00'))
        self.assertEqual(fees['totalTaxasSigned'], D('-104.00'))

    def test_rodeo_fees_ignore_negative_ggr(self):
        fees = compute_fees(0, -500, {'taxaRodeoGGR': 10, 'taxaRodeoApp': 2})
        self.assertEqual(fees['totalTaxas'], Decimal('0.00'))

    def test_calc_dre(self):
        dre = calc_dre(1000, 200, D('104'), {'overlay': -50, 'compras': 20, 'security': 0, 'outros': -10}, 100)
        self.assertEqual(dre, {
            'receitaBruta': 1200.0,
            'totalTaxas': 104.0,
            'totalCustos': 80.0,
            'totalRakeback': 100.0,
            'lucroLiquido': 916.0,
            'margem': 76.33,
        })

    def test_dre_without_revenue(self):
        self.assertEqual(calc_dre(0, 0, 0, {}, 0)['margem'], 0.0)

    def test_acerto_direction(self):
        self.assertEqual(acerto_direction(D('10'), 'Sub 1'), 'Liga deve pagar ao Sub 1')
        self.assertEqual(acerto_direction(D('-10'), 'Sub 1'), 'Sub 1 deve pagar à Liga')
        self.assertEqual(acerto_direction(D('0.01'), 'Sub 1'), 'Neutro')


class TestSubclubSummaries(unittest.TestCase):
    def setUp(self):
        self.repo = FakeRepository()
        self.repo.create_settlement(CLUB, WEEK)
        self.repo.set_rate(CLUB, 'agent', 'AG1', 10)
        self.repo.set_metrics(CLUB, WEEK, agents=[agent('AG1')], players=[
            player('P1', rake='600.00', ganhos='-150.00', agent_id='AG1'),
            player('P2', rake='400.00', ganhos='-50.00', agent_id='AG1'),
            player('P3', rake='0', ganhos='0', agent_id='AG1'),
            player('P9', rake='50.00', ganhos='25.00', subclub_id=None, subclub_name=None),
        ])
        self.repo.fees = {'taxaApp': D(5), 'taxaLiga': D(3)}
        self.repo.adjustments[(CLUB, WEEK)] = {'sc1': {'overlay': D(-50), 'compras': D(-50)}}
        self.result = SettlementEngine(self.repo).compute_settlement(CLUB, WEEK)

    def test_subclub_settlement(self):
        _, sub1 = self.result.subclubs
        self.assertEqual(sub1['name'], 'Sub 1')
        self.assertEqual(sub1['totals'], {
            'players': 2, 'agents': 1, 'ganhos': -200.0, 'rake': 1000.0, 'ggr': 0.0,
            'rbTotal': 100.0, 'resultado': 800.0,
        })
        self.assertEqual(sub1['feesComputed']['totalTaxas'], 80.0)
        self.assertEqual(sub1['totalLancamentos'], -100.0)
        self.assertEqual(sub1['acertoLiga'], 620.0)
        self.assertEqual(sub1['acertoDirecao'], 'Liga deve pagar ao Sub 1')
        self.assertEqual(sub1['dre']['lucroLiquido'], 720.0)
        self.assertEqual(sub1['dre']['margem'], 72.0)

    def test_players_without_subclub_grouped_as_outros(self):
        outros = self.result.subclubs[0]
        self.assertEqual((outros['id'], outros['name']), ('', 'OUTROS'))
        self.assertEqual(outros['totals']['resultado'], 75.0)
        self.assertEqual(outros['adjustments']['overlay'], 0.0)

    def test_dashboard_rollup(self):
        dashboard = self.result.dashboard
        self.assertEqual(dashboard['players'], 3)
        self.assertEqual(dashboard['rake'], 1050.0)
        self.assertEqual(dashboard['totalTaxas'], 84.0)
        self.assertEqual(dashboard['acertoLiga'], 620.0 + 75.0 - 4.0)
        self.assertEqual(dashboard['dre']['totalCustos'], 100.0)


if __name__ == '__main__':
    unittest.main()
