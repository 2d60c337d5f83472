#!/usr/bin/env python3
"""
Poker Settlement - HTTP API
Thin Flask JSON adapter over SettlementEngine
"""

import os
import logging

from flask import Flask, request, jsonify

from .config import MODULE_NAME, MODULE_VERSION
from .engine import SettlementEngine
from .errors import (
    LedgerEntryNotFound, NegativeAmountLedgerEntry, SettlementNotFound, SettlementStateError,
    TransactionNotFound,
)

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Created on first request; tests replace it with an engine over a fake repository
engine = None


def get_engine() -> SettlementEngine:
    global engine
    if engine is None:
        engine = SettlementEngine()
    return engine


def _error_response(e: Exception):
    if isinstance(e, (SettlementNotFound, LedgerEntryNotFound, TransactionNotFound)):
        status = 404
    elif isinstance(e, SettlementStateError):
        status = 409
    elif isinstance(e, (NegativeAmountLedgerEntry, ValueError, KeyError)):
        status = 400
    else:
        logger.error(f"Unexpected API error: {e}", exc_info=True)
        status = 500
    return jsonify({'success': False, 'error': str(e)}), status


def _json_body() -> dict:
    return request.get_json(silent=True) or {}


@app.route('/api/health')
def api_health():
    """Service and database status"""
    try:
        health = {'status': 'ok', 'module': MODULE_NAME, 'version': MODULE_VERSION}
        db = getattr(get_engine().repository, 'db', None)
        if db is not None:
            health['database'] = db.health_check()
            if health['database']['status'] != 'healthy':
                health['status'] = 'degraded'
        return jsonify(health)
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/settlements/<week_start>')
def api_settlement(club_id, week_start):
    """Full recomputation of one week: per-entity rows, totals, subclubs, dashboard"""
    try:
        result = get_engine().compute_settlement(club_id, week_start)
        return jsonify({'success': True, 'data': result.to_dict()})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/settlements/<week_start>/close', methods=['POST'])
def api_close_week(club_id, week_start):
    try:
        result = get_engine().close_week(club_id, week_start)
        return jsonify({'success': True, 'data': result.to_dict()})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/settlements/<week_start>/repair', methods=['POST'])
def api_repair_week(club_id, week_start):
    try:
        result = get_engine().repair_week(club_id, week_start)
        return jsonify({'success': True, 'data': result.to_dict()})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/settlements/inconsistent')
def api_inconsistent_weeks(club_id):
    try:
        weeks = get_engine().find_inconsistent_weeks(club_id)
        return jsonify({'success': True, 'data': weeks})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/settlements/<week_start>/payment-type/<agent_id>', methods=['PUT'])
def api_payment_type(club_id, week_start, agent_id):
    try:
        value = get_engine().set_agent_payment_type(club_id, week_start, agent_id, _json_body()['payment_type'])
        return jsonify({'success': True, 'data': {'agent_id': agent_id, 'payment_type': value}})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/settlements/<week_start>/rates', methods=['PUT'])
def api_set_rate(club_id, week_start):
    try:
        body = _json_body()
        get_engine().set_rate(club_id, week_start, body['entity_type'], body['entity_id'], body['rate'])
        return jsonify({'success': True})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/carry-forward/<week_start>')
def api_carry_forward(club_id, week_start):
    try:
        carries = get_engine().repository.get_carry_forward_map(club_id, week_start)
        return jsonify({
            'success': True,
            'data': {entity_id: float(amount) for entity_id, amount in sorted(carries.items())},
        })
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/ledger', methods=['POST'])
def api_create_ledger_entry(club_id):
    try:
        body = _json_body()
        entry = get_engine().ledger.create_entry(
            club_id,
            body['week_start'],
            body['entity_id'],
            body['dir'],
            body['amount'],
            method=body.get('method'),
            description=body.get('description'),
            entity_name=body.get('entity_name'),
        )
        return jsonify({'success': True, 'data': entry.to_dict()}), 201
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/ledger/<entry_id>', methods=['DELETE'])
def api_delete_ledger_entry(club_id, entry_id):
    try:
        entry = get_engine().ledger.delete_entry(club_id, entry_id)
        return jsonify({'success': True, 'data': entry.to_dict()})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/ledger/<entry_id>/reconcile', methods=['PATCH'])
def api_reconcile_ledger_entry(club_id, entry_id):
    try:
        value = bool(_json_body().get('is_reconciled', True))
        entry = get_engine().ledger.set_reconciled(club_id, entry_id, value)
        return jsonify({'success': True, 'data': entry.to_dict()})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/ledger/<week_start>/<entity_id>/net')
def api_ledger_net(club_id, week_start, entity_id):
    try:
        net = get_engine().ledger_net(club_id, week_start, entity_id)
        data = net.to_dict()
        data['entries'] = [entry.to_dict() for entry in net.entries]
        return jsonify({'success': True, 'data': data})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/ofx/upload', methods=['POST'])
def api_upload_ofx(club_id):
    """Accepts a multipart 'file' or a JSON body {content, file_name, week_start}"""
    try:
        week_start = request.form.get('week_start') or _json_body().get('week_start')
        uploaded = request.files.get('file')
        if uploaded is not None:
            raw = uploaded.read().decode('latin-1')
            file_name = uploaded.filename or ''
        else:
            body = _json_body()
            raw = body['content']
            file_name = body.get('file_name', '')
        summary = get_engine().import_ofx(club_id, week_start, raw, file_name)
        return jsonify({'success': True, 'data': summary})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/ofx/auto-match/<week_start>')
def api_auto_match(club_id, week_start):
    try:
        suggestions = get_engine().suggest_auto_matches(club_id, week_start)
        return jsonify({'success': True, 'data': [s.to_dict() for s in suggestions]})
    except Exception as e:
        return _error_response(e)


@app.route('/api/clubs/<club_id>/ofx/<transaction_id>/apply', methods=['POST'])
def api_apply_suggestion(club_id, transaction_id):
    try:
        body = _json_body()
        entry = get_engine().apply_suggestion(
            club_id, transaction_id, body['entity_id'], entity_name=body.get('entity_name'))
        return jsonify({'success': True, 'data': entry.to_dict()}), 201
    except Exception as e:
        return _error_response(e)


if __name__ == '__main__':
    from .database import init_database
    init_database()
    app.run(host='0.0.0.0', port=int(os.getenv('PORT', 5002)), debug=False)
