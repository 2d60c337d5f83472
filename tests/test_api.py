import io
import unittest

from poker_settlement import api as appmod
from poker_settlement.engine import SettlementEngine
from poker_settlement.models import SettlementStatus

from helpers import FakeRepository, agent, ofx_statement, player, stmttrn

CLUB = 'club-1'
W1, W2 = '2024-01-01', '2024-01-08'

STATEMENT = ofx_statement(stmttrn('F1', '20240102', '100.00', memo='PIX AG1'), org='Banco Inter')


class TestSettlementAPI(unittest.TestCase):
    def setUp(self):
        self.repo = FakeRepository()
        self.repo.set_rate(CLUB, 'agent', 'AG1', 10)
        self.repo.create_settlement(CLUB, W1)
        self.repo.set_metrics(CLUB, W1, agents=[agent('AG1')], players=[
            player('P1', rake='600.00', ganhos='-150.00', agent_id='AG1'),
            player('P2', rake='400.00', ganhos='-50.00', agent_id='AG1'),
        ])
        self.previous_engine = appmod.engine
        appmod.engine = SettlementEngine(self.repo)
        self.client = appmod.app.test_client()

    def tearDown(self):
        appmod.engine = self.previous_engine

    def test_health_without_database(self):
        resp = self.client.get('/api/health')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['status'], 'ok')
        self.assertNotIn('database', resp.get_json())

    def test_settlement(self):
        resp = self.client.get(f'/api/clubs/{CLUB}/settlements/{W1}')
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()['data']
        self.assertEqual(data['status'], 'DRAFT')
        self.assertEqual(data['perEntity'][0]['entity_id'], 'AG1')
        self.assertEqual(data['perEntity'][0]['pendente'], -100.0)
        self.assertEqual(data['totals']['entidades'], 1)

    def test_ledger_lifecycle(self):
        resp = self.client.post(f'/api/clubs/{CLUB}/ledger', json={
            'week_start': W1, 'entity_id': 'AG1', 'dir': 'IN', 'amount': 30, 'method': 'PIX'})
        self.assertEqual(resp.status_code, 201)
        entry_id = resp.get_json()['data']['id']

        resp = self.client.get(f'/api/clubs/{CLUB}/ledger/{W1}/AG1/net')
        self.assertEqual(resp.get_json()['data']['net'], 30.0)
        self.assertEqual(len(resp.get_json()['data']['entries']), 1)

        resp = self.client.patch(f'/api/clubs/{CLUB}/ledger/{entry_id}/reconcile', json={'is_reconciled': True})
        self.assertTrue(resp.get_json()['data']['is_reconciled'])

        resp = self.client.delete(f'/api/clubs/{CLUB}/ledger/{entry_id}')
        self.assertEqual(resp.status_code, 200)
        resp = self.client.delete(f'/api/clubs/{CLUB}/ledger/{entry_id}')
        self.assertEqual(resp.status_code, 404)

    def test_ledger_validation_errors(self):
        resp = self.client.post(f'/api/clubs/{CLUB}/ledger', json={
            'week_start': W1, 'entity_id': 'AG1', 'dir': 'IN', 'amount': -5})
        self.assertEqual(resp.status_code, 400)
        self.assertFalse(resp.get_json()['success'])

        resp = self.client.post(f'/api/clubs/{CLUB}/ledger', json={'week_start': W1})
        self.assertEqual(resp.status_code, 400)

    def test_close_then_frozen(self):
        resp = self.client.post(f'/api/clubs/{CLUB}/settlements/{W1}/close')
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()['data']['next_week'], W2)
        self.assertEqual(self.repo.get_settlement(CLUB, W1).status, SettlementStatus.FINAL)

        resp = self.client.get(f'/api/clubs/{CLUB}/carry-forward/{W2}')
        self.assertEqual(resp.get_json()['data'], {'AG1': -100.0})

        resp = self.client.post(f'/api/clubs/{CLUB}/ledger', json={
            'week_start': W1, 'entity_id': 'AG1', 'dir': 'IN', 'amount': 1})
        self.assertEqual(resp.status_code, 409)

        resp = self.client.put(f'/api/clubs/{CLUB}/settlements/{W1}/rates',
                               json={'entity_type': 'agent', 'entity_id': 'AG1', 'rate': 20})
        self.assertEqual(resp.status_code, 409)

    def test_close_unknown_week(self):
        resp = self.client.post(f'/api/clubs/{CLUB}/settlements/2030-01-07/close')
        self.assertEqual(resp.status_code, 404)

    def test_inconsistent_and_repair(self):
        self.repo.settlements[(CLUB, W1)].status = SettlementStatus.FINAL
        resp = self.client.get(f'/api/clubs/{CLUB}/settlements/inconsistent')
        self.assertEqual(resp.get_json()['data'], [W1])

        resp = self.client.post(f'/api/clubs/{CLUB}/settlements/{W1}/repair')
        self.assertTrue(resp.get_json()['data']['repaired'])
        resp = self.client.get(f'/api/clubs/{CLUB}/settlements/inconsistent')
        self.assertEqual(resp.get_json()['data'], [])

    def test_payment_type(self):
        resp = self.client.put(f'/api/clubs/{CLUB}/settlements/{W1}/payment-type/AG1',
                               json={'payment_type': 'avista'})
        self.assertEqual(resp.get_json()['data']['payment_type'], 'avista')
        resp = self.client.put(f'/api/clubs/{CLUB}/settlements/{W1}/payment-type/AG1',
                               json={'payment_type': 'cheque'})
        self.assertEqual(resp.status_code, 400)

    def test_rate_must_be_numeric(self):
        url = f'/api/clubs/{CLUB}/settlements/{W1}/rates'
        resp = self.client.put(url, json={'entity_type': 'agent', 'entity_id': 'AG1', 'rate': 'abc'})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.repo.rate_config.agents['AG1'], 10)

        resp = self.client.put(url, json={'entity_type': 'agent', 'entity_id': 'AG1', 'rate': '12.5'})
        self.assertEqual(resp.status_code, 200)
        resp = self.client.get(f'/api/clubs/{CLUB}/settlements/{W1}')
        self.assertEqual(resp.get_json()['data']['perEntity'][0]['rakeback'], 125.0)

    def test_reconcile_blocked_after_close(self):
        resp = self.client.post(f'/api/clubs/{CLUB}/ledger', json={
            'week_start': W1, 'entity_id': 'AG1', 'dir': 'IN', 'amount': 30})
        entry_id = resp.get_json()['data']['id']
        self.client.post(f'/api/clubs/{CLUB}/settlements/{W1}/close')

        resp = self.client.patch(f'/api/clubs/{CLUB}/ledger/{entry_id}/reconcile', json={'is_reconciled': True})
        self.assertEqual(resp.status_code, 409)

    def test_ofx_upload_match_and_apply(self):
        resp = self.client.post(f'/api/clubs/{CLUB}/ofx/upload', data={
            'week_start': W1, 'file': (io.BytesIO(STATEMENT.encode('latin-1')), 'inter.ofx')},
            content_type='multipart/form-data')
        self.assertEqual(resp.get_json()['data'], {'imported': 1, 'skipped': 0, 'total_parsed': 1})

        resp = self.client.post(f'/api/clubs/{CLUB}/ofx/upload',
                                json={'content': STATEMENT, 'file_name': 'inter.ofx', 'week_start': W1})
        self.assertEqual(resp.get_json()['data']['skipped'], 1)

        resp = self.client.get(f'/api/clubs/{CLUB}/ofx/auto-match/{W1}')
        suggestion = resp.get_json()['data'][0]
        self.assertEqual(suggestion['suggested_entity_id'], 'AG1')
        self.assertEqual(suggestion['match_tier'], 1)

        resp = self.client.post(f"/api/clubs/{CLUB}/ofx/{suggestion['transaction_id']}/apply",
                                json={'entity_id': 'AG1', 'entity_name': 'AG1'})
        self.assertEqual(resp.status_code, 201)
        self.assertTrue(resp.get_json()['data']['is_reconciled'])

        resp = self.client.post(f"/api/clubs/{CLUB}/ofx/{suggestion['transaction_id']}/apply",
                                json={'entity_id': 'AG1'})
        self.assertEqual(resp.status_code, 409)

        resp = self.client.get(f'/api/clubs/{CLUB}/settlements/{W1}')
        self.assertEqual(resp.get_json()['data']['perEntity'][0]['status'], 'quitado')


if __name__ == '__main__':
    unittest.main()
