import unittest
from decimal import Decimal

from poker_settlement.models import EntityRole, RateConfig, RateSnapshot, SettlementEntity
from poker_settlement.rakeback import RakebackCalculator, RateSource, calc_agent_rakeback, snapshot_from_rates

from helpers import D, player


class TestRateSource(unittest.TestCase):
    def test_snapshot_first(self):
        self.assertEqual(RateSource(snapshot_rate=D(15), live_rate=D(20)).effective_rate(), D(15))
        self.assertEqual(RateSource(snapshot_rate=D(0), live_rate=D(20)).effective_rate(), D(0))
        self.assertEqual(RateSource(snapshot_rate=None, live_rate=D(20)).effective_rate(), D(20))


class TestCalcAgentRakeback(unittest.TestCase):
    def test_pooled(self):
        players = [player('P1', rake=600), player('P2', rake=400)]
        self.assertEqual(calc_agent_rakeback(players, 10, is_direct=False), Decimal('100.00'))

    def test_direct_uses_each_player_rate(self):
        players = [player('P1', rake=100), player('P2', rake=50)]
        rates = {'P1': D(15), 'P2': D(10)}
        total = calc_agent_rakeback(players, 99, is_direct=True, player_rate=lambda p: rates[p.player_id])
        self.assertEqual(total, Decimal('20.00'))

    def test_missing_rate_is_zero(self):
        self.assertEqual(calc_agent_rakeback([player('P1', rake=100)], None, is_direct=False), Decimal('0.00'))


class TestRakebackCalculator(unittest.TestCase):
    def _direct_agent(self):
        return SettlementEntity(
            entity_id='AGD', role=EntityRole.AGENT, name='Direct', is_direct=True,
            players=[player('P1', rake=100, agent_id='AGD'), player('P2', rake=50, agent_id='AGD')],
        )

    def test_direct_player_override_beats_agent_rate(self):
        calc = RakebackCalculator(RateConfig(agents={'AGD': D(10)}, players={'P1': D(15)}))
        total, rates, per_player = calc.rakeback_for(self._direct_agent())
        self.assertEqual(total, Decimal('20.00'))
        self.assertEqual(rates, {'player:P1': D(15), 'player:P2': D(10)})
        self.assertEqual(per_player['pm_P1'], D(15))

    def test_snapshot_beats_changed_live_config(self):
        live = RateConfig(agents={'AGD': D(10)}, players={'P1': D(20)})
        snapshot = RateSnapshot(players={'P1': D(15)})
        total, _, _ = RakebackCalculator(live, snapshot).rakeback_for(self._direct_agent())
        # P1 frozen at 15%, P2 falls back to the live agent rate
        self.assertEqual(total, Decimal('20.00'))

    def test_pooled_agent_rate_from_snapshot(self):
        entity = SettlementEntity(entity_id='AG1', role=EntityRole.AGENT, name='AG1',
                                  players=[player('P1', rake=1000)])
        calc = RakebackCalculator(RateConfig(agents={'AG1': D(30)}), RateSnapshot(agents={'AG1': D(10)}))
        total, rates, _ = calc.rakeback_for(entity)
        self.assertEqual(total, Decimal('100.00'))
        self.assertEqual(rates, {'agent:AG1': D(10)})

    def test_standalone_player_without_config(self):
        entity = SettlementEntity(entity_id='P7', role=EntityRole.PLAYER, name='P7', is_direct=True,
                                  players=[player('P7', rake=80)])
        total, rates, _ = RakebackCalculator(RateConfig()).rakeback_for(entity)
        self.assertEqual(total, Decimal('0.00'))
        self.assertEqual(rates, {'player:P7': Decimal('0')})

    def test_snapshot_from_rates(self):
        snapshot = snapshot_from_rates({'agent:AG1': D(10), 'player:P1': D(15)})
        self.assertEqual(snapshot.agents, {'AG1': D(10)})
        self.assertEqual(snapshot.players, {'P1': D(15)})


if __name__ == '__main__':
    unittest.main()
