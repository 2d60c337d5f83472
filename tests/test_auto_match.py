import copy
import types
import unittest
from decimal import Decimal

from poker_settlement.auto_match import AutoMatchClassifier, detect_payment_method, name_similarity
from poker_settlement.models import (
    BankTransaction, Confidence, EntityRole, EntitySettlement, LedgerDirection,
    STATUS_ABERTO, STATUS_QUITADO,
)

WEEK = '2024-01-08'


def row(entity_id, name, pendente, status=STATUS_ABERTO, keys=()):
    pendente = Decimal(str(pendente))
    zero = Decimal('0')
    return EntitySettlement(
        entity_id=entity_id, role=EntityRole.AGENT, name=name, is_direct=False,
        subclub_id='sc1', subclub_name='Sub 1', player_count=1,
        ganhos=pendente, rake=zero, ggr=zero, rakeback=zero, resultado=pendente,
        saldo_anterior=zero, total_devido=pendente, total_in=zero, total_out=zero,
        pago=zero, pendente=pendente, status=status, direcao='A Pagar',
        keys=frozenset({entity_id, *keys}),
    )


def tx(memo, amount='50.00', direction='IN', tx_date='2024-01-09', entity_id=None, tx_id='tx-1'):
    return BankTransaction(id=tx_id, fitid='F-' + tx_id, tx_date=tx_date, amount=Decimal(amount),
                           memo=memo, direction=LedgerDirection(direction), bank_name='Inter',
                           week_start=WEEK, entity_id=entity_id)


class FakeClaude:
    def __init__(self, text):
        self.prompts = []
        self.messages = types.SimpleNamespace(create=self._create)
        self._text = text

    def _create(self, **kwargs):
        self.prompts.append(kwargs['messages'][0]['content'])
        return types.SimpleNamespace(content=[types.SimpleNamespace(text=self._text)])


class TestAutoMatchClassifier(unittest.TestCase):
    def setUp(self):
        self.entities = [
            row('a-111', 'Joao Silva', '-100.00', keys=('pm_1', '1610051AG', 'cp_1610051AG')),
            row('a-222', 'Maria Souza', '-300.00'),
            row('a-333', 'Pedro Lima', '-300.00', status=STATUS_QUITADO),
        ]
        self.classifier = AutoMatchClassifier(config={'AI_HINTS': False})

    def classify(self, transaction):
        return self.classifier.suggest([transaction], self.entities, WEEK)[0]

    def test_tier1_linked_transaction(self):
        s = self.classify(tx('qualquer coisa', entity_id='a-111'))
        self.assertEqual((s.tier, s.confidence, s.entity_id), (1, Confidence.HIGH, 'a-111'))

    def test_tier1_entity_id_in_memo(self):
        s = self.classify(tx('ref A-222 semana'))
        self.assertEqual((s.tier, s.entity_id), (1, 'a-222'))

    def test_tier2_numeric_prefix_alias(self):
        s = self.classify(tx('PIX 1610051'))
        self.assertEqual((s.tier, s.confidence, s.entity_id), (2, Confidence.HIGH, 'a-111'))

    def test_tier2_importer_prefixed_alias(self):
        s = self.classify(tx('credito cp_1610051ag'))
        self.assertEqual((s.tier, s.entity_id), (2, 'a-111'))

    def test_tier3_name_in_memo(self):
        s = self.classify(tx('PIX RECEBIDO MARIA SOUZA'))
        self.assertEqual((s.tier, s.confidence, s.entity_id), (3, Confidence.MEDIUM, 'a-222'))

    def test_tier3_tolerates_typo(self):
        s = self.classify(tx('PIX MARIA SOUSA'))
        self.assertEqual((s.tier, s.entity_id), (3, 'a-222'))

    def test_tier4_amount_and_date(self):
        s = self.classify(tx('TED RECEBIDA', amount='300.00', tx_date='2024-01-10'))
        self.assertEqual((s.tier, s.confidence, s.entity_id), (4, Confidence.MEDIUM, 'a-222'))

    def test_tier4_requires_matching_direction(self):
        s = self.classify(tx('TED RECEBIDA', amount='300.00', direction='OUT', tx_date='2024-01-10'))
        self.assertEqual((s.tier, s.confidence, s.entity_id), (5, Confidence.LOW, None))
        self.assertIn('TED', s.reason)

    def test_tier4_outside_date_window(self):
        s = self.classify(tx('TED RECEBIDA', amount='300.00', tx_date='2024-02-20'))
        self.assertEqual(s.tier, 5)

    def test_no_match(self):
        s = self.classify(tx('XYZ', amount='5.00'))
        self.assertEqual((s.tier, s.confidence, s.entity_id), (5, Confidence.NONE, None))
        self.assertEqual(s.to_dict()['confidence'], 'none')

    def test_suggest_does_not_mutate_inputs(self):
        transactions = [tx('PIX 1610051'), tx('XYZ', tx_id='tx-2')]
        before = (copy.deepcopy(transactions), copy.deepcopy(self.entities))
        suggestions = self.classifier.suggest(transactions, self.entities, WEEK)
        self.assertEqual(len(suggestions), 2)
        self.assertEqual((transactions, self.entities), before)


class TestAIHints(unittest.TestCase):
    def setUp(self):
        self.entities = [row('a-222', 'Maria Souza', '-300.00')]

    def test_hint_attached_to_unmatched(self):
        client = FakeClaude('{"entity_name": "Maria Souza", "reasoning": "apelido conhecido"}')
        classifier = AutoMatchClassifier(claude_client=client)
        s = classifier.suggest([tx('XYZ', amount='5.00')], self.entities, WEEK)[0]
        self.assertEqual((s.tier, s.confidence, s.entity_id), (5, Confidence.LOW, 'a-222'))
        self.assertIn('AI: apelido conhecido', s.reason)
        self.assertEqual(len(client.prompts), 1)

    def test_invalid_answer_is_ignored(self):
        classifier = AutoMatchClassifier(claude_client=FakeClaude('not json'))
        s = classifier.suggest([tx('XYZ', amount='5.00')], self.entities, WEEK)[0]
        self.assertEqual((s.confidence, s.entity_id), (Confidence.NONE, None))

    def test_structural_tiers_skip_ai(self):
        client = FakeClaude('{"entity_name": "Maria Souza", "reasoning": "x"}')
        AutoMatchClassifier(claude_client=client).suggest([tx('ref a-222')], self.entities, WEEK)
        self.assertEqual(client.prompts, [])


class TestHelpers(unittest.TestCase):
    def test_payment_method_word_boundary(self):
        methods = ['PIX', 'TED', 'DEP']
        self.assertEqual(detect_payment_method('Pix recebido', methods), 'PIX')
        self.assertIsNone(detect_payment_method('DEPOSITADO', methods))
        self.assertIsNone(detect_payment_method(None, methods))

    def test_name_similarity(self):
        self.assertEqual(name_similarity('maria souza', 'pix maria souza ltda'), 1.0)
        self.assertEqual(name_similarity('', 'memo'), 0.0)
        self.assertLess(name_similarity('joao silva', 'ted recebida'), 0.85)


if __name__ == '__main__':
    unittest.main()
