"""Tests for the Flask API."""

import logging

import pytest

from tobby.engine import StoreError
from tobby.generation import GenerationJob

TRIGGER = '/api/jobs/generate-recurring'


def add_rule(client, headers, **overrides):
    body = {
        'description': 'Rent',
        'amount': '1200.00',
        'transaction_type': 'withdrawal',
        'frequency_type': 'monthly',
        'frequency_config': {'day': 15},
        'start_date': '2024-01-01',
    }
    body.update(overrides)
    return client.post('/api/recurring_transactions', json=body, headers=headers)


class TestAuth:

    def test_health_is_public(self, client):
        response = client.get('/api/health')
        assert response.status_code == 200
        assert response.get_json() == {'status': 'ok'}

    def test_missing_token(self, client):
        response = client.get('/api/transactions')
        assert response.status_code == 401
        assert response.get_json()['success'] is False

    def test_wrong_token(self, client, user):
        response = client.get('/api/transactions', headers={'Authorization': 'Bearer nope'})
        assert response.status_code == 401


class TestGenerationTrigger:

    def test_requires_cron_secret(self, client, auth_headers):
        assert client.post(TRIGGER).status_code == 401
        assert client.post(TRIGGER, headers=auth_headers).status_code == 401

    def test_disabled_without_cron_secret(self, client, cron_headers, monkeypatch):
        monkeypatch.delenv('CRON_SECRET')
        assert client.post(TRIGGER, headers=cron_headers).status_code == 403

    def test_generates_then_skips(self, client, auth_headers, cron_headers):
        add_rule(client, auth_headers)

        first = client.post(TRIGGER, json={'date': '2024-03-15'}, headers=cron_headers)
        second = client.post(TRIGGER, json={'date': '2024-03-15'}, headers=cron_headers)

        assert first.status_code == 200
        assert first.get_json() == {
            'success': True, 'date': '2024-03-15',
            'processed': 1, 'generated': 1, 'skipped': 0, 'failed': 0,
        }
        assert second.get_json()['generated'] == 0
        assert second.get_json()['skipped'] == 1

        transactions = client.get('/api/transactions', headers=auth_headers).get_json()
        assert len(transactions) == 1
        assert transactions[0]['amount'] == 1200.0

    def test_invalid_date(self, client, cron_headers):
        response = client.post(TRIGGER, json={'date': '15/03/2024'}, headers=cron_headers)
        assert response.status_code == 400

    def test_fetch_failure(self, client, cron_headers, monkeypatch):
        from tobby import api

        def broken(day):
            raise StoreError("database is locked")
        monkeypatch.setattr(api.engine, 'fetch_eligible_rules', broken)

        response = client.post(TRIGGER, headers=cron_headers)
        assert response.status_code == 500
        assert 'database is locked' in response.get_json()['error']

    def test_timeout_returns_partial_summary(self, client, auth_headers, cron_headers, monkeypatch):
        from tobby import api

        add_rule(client, auth_headers)
        ticks = iter([0.0, 100.0])
        monkeypatch.setattr(
            api, 'GenerationJob',
            lambda store: GenerationJob(store, clock=lambda: next(ticks), timeout=1),
        )

        response = client.post(TRIGGER, json={'date': '2024-03-15'}, headers=cron_headers)
        body = response.get_json()
        assert response.status_code == 500
        assert body['success'] is False
        assert body['processed'] == 1
        assert body['generated'] == 0
        assert 'timed out' in body['error']


class TestRecurringTransactions:

    def test_create_and_list(self, client, auth_headers):
        response = add_rule(client, auth_headers)
        assert response.status_code == 201

        rules = client.get('/api/recurring_transactions', headers=auth_headers).get_json()
        assert len(rules) == 1
        assert rules[0]['schedule'] == 'Monthly - day 15'
        assert rules[0]['amount'] == 1200.0
        assert rules[0]['is_active'] is True

    def test_default_config_when_missing(self, client, auth_headers):
        add_rule(client, auth_headers, frequency_type='biweekly', frequency_config=None)
        rules = client.get('/api/recurring_transactions', headers=auth_headers).get_json()
        assert rules[0]['frequency_config'] == {'days': [1, 15]}

    def test_validation(self, client, auth_headers):
        assert add_rule(client, auth_headers, amount=None).status_code == 400
        response = add_rule(client, auth_headers, frequency_config={'day': 40})
        assert response.status_code == 400
        assert response.get_json()['success'] is False

    def test_toggle(self, client, auth_headers):
        rule_id = add_rule(client, auth_headers).get_json()['id']
        url = f'/api/recurring_transactions/{rule_id}/toggle'

        paused = client.post(url, headers=auth_headers).get_json()
        assert paused['is_active'] is False
        assert paused['message'] == 'Recurring transaction paused.'

        resumed = client.post(url, json={'is_active': True}, headers=auth_headers).get_json()
        assert resumed['is_active'] is True

    @pytest.mark.parametrize('value', ['false', 0, 'yes'])
    def test_toggle_rejects_non_boolean(self, client, auth_headers, value):
        rule_id = add_rule(client, auth_headers).get_json()['id']
        url = f'/api/recurring_transactions/{rule_id}/toggle'

        response = client.post(url, json={'is_active': value}, headers=auth_headers)
        assert response.status_code == 400
        rules = client.get('/api/recurring_transactions', headers=auth_headers).get_json()
        assert rules[0]['is_active'] is True

    def test_update_keeps_start_date_when_omitted(self, client, auth_headers):
        rule_id = add_rule(client, auth_headers).get_json()['id']
        update = {
            'description': 'Rent', 'amount': '1250', 'transaction_type': 'withdrawal',
            'frequency_type': 'monthly', 'frequency_config': {'day': 15},
        }
        response = client.put(f'/api/recurring_transactions/{rule_id}', json=update, headers=auth_headers)
        assert response.status_code == 200
        rules = client.get('/api/recurring_transactions', headers=auth_headers).get_json()
        assert rules[0]['start_date'] == '2024-01-01'

    def test_update_and_delete(self, client, auth_headers):
        rule_id = add_rule(client, auth_headers).get_json()['id']
        url = f'/api/recurring_transactions/{rule_id}'
        update = {
            'description': 'Rent', 'amount': '1250', 'transaction_type': 'withdrawal',
            'frequency_type': 'weekly', 'frequency_config': {'weekday': 1}, 'start_date': '2024-01-01',
        }
        assert client.put(url, json=update, headers=auth_headers).status_code == 200
        assert client.delete(url, headers=auth_headers).status_code == 200
        assert client.delete(url, headers=auth_headers).status_code == 404

    def test_logs(self, client, auth_headers, cron_headers):
        rule_id = add_rule(client, auth_headers).get_json()['id']
        client.post(TRIGGER, json={'date': '2024-03-15'}, headers=cron_headers)

        logs = client.get(f'/api/recurring_transactions/{rule_id}/logs', headers=auth_headers).get_json()
        assert [log['generated_for_date'] for log in logs] == ['2024-03-15']
        assert client.get('/api/recurring_transactions/999/logs', headers=auth_headers).status_code == 404


class TestTransactions:

    def test_crud_and_filters(self, client, auth_headers):
        for body in (
            {'description': 'Coffee', 'amount': '4.50', 'transaction_type': 'withdrawal', 'transaction_date': '2024-03-01'},
            {'description': 'Salary', 'amount': '3000', 'transaction_type': 'deposit', 'transaction_date': '2024-03-05'},
        ):
            assert client.post('/api/transactions', json=body, headers=auth_headers).status_code == 201

        deposits = client.get('/api/transactions?type=deposit', headers=auth_headers).get_json()
        assert [t['description'] for t in deposits] == ['Salary']

        by_amount = client.get('/api/transactions?sort=amount&order=asc', headers=auth_headers).get_json()
        assert [t['description'] for t in by_amount] == ['Coffee', 'Salary']

        coffee_id = by_amount[0]['id']
        update = {'description': 'Latte', 'amount': '5', 'transaction_type': 'withdrawal',
                  'transaction_date': '2024-03-01'}
        assert client.put(f'/api/transactions/{coffee_id}', json=update, headers=auth_headers).status_code == 200
        assert client.delete(f'/api/transactions/{coffee_id}', headers=auth_headers).status_code == 200
        assert len(client.get('/api/transactions', headers=auth_headers).get_json()) == 1

    def test_bad_filter(self, client, auth_headers):
        assert client.get('/api/transactions?date_from=yesterday', headers=auth_headers).status_code == 400
        assert client.get('/api/transactions?sort=colour', headers=auth_headers).status_code == 400

    def test_invalid_amount(self, client, auth_headers):
        body = {'description': 'Coffee', 'amount': '-1', 'transaction_type': 'withdrawal'}
        assert client.post('/api/transactions', json=body, headers=auth_headers).status_code == 400

    def test_set_categories(self, client, auth_headers):
        category_id = client.post('/api/categories', json={'name': 'Food'}, headers=auth_headers).get_json()['id']
        tx_id = client.post('/api/transactions', json={
            'description': 'Lunch', 'amount': '12', 'transaction_type': 'withdrawal',
        }, headers=auth_headers).get_json()['id']

        response = client.put(f'/api/transactions/{tx_id}/categories',
                              json={'category_ids': [category_id]}, headers=auth_headers)
        assert response.status_code == 200
        tx = client.get('/api/transactions', headers=auth_headers).get_json()[0]
        assert [c['name'] for c in tx['categories']] == ['Food']

    def test_stats_and_analytics(self, client, auth_headers):
        client.put('/api/budget', json={'monthly_budget': 100}, headers=auth_headers)
        client.post('/api/transactions', json={
            'description': 'Coffee', 'amount': '50', 'transaction_type': 'withdrawal',
        }, headers=auth_headers)

        body = client.get('/api/transactions/stats', headers=auth_headers).get_json()
        assert body['metrics'][0]['month_percentage'] == 100.0
        assert body['summary']['expenses'] == 50.0
        assert body['budget']['variant'] == 'happy'
        assert body['budget']['percentage'] == 50.0

        analytics = client.get('/api/analytics?months=3', headers=auth_headers).get_json()
        assert len(analytics['by_month']) == 3
        assert analytics['by_description'][0]['description'] == 'Coffee'


class TestCategoriesAndBudget:

    def test_category_lifecycle(self, client, auth_headers):
        created = client.post('/api/categories', json={'name': 'Food'}, headers=auth_headers)
        assert created.status_code == 201
        duplicate = client.post('/api/categories', json={'name': 'Food'}, headers=auth_headers)
        assert duplicate.status_code == 409

        category_id = created.get_json()['id']
        suggestions = client.get('/api/categories/suggest?description=food court', headers=auth_headers).get_json()
        assert [c['id'] for c in suggestions] == [category_id]

        url = f'/api/categories/{category_id}'
        assert client.put(url, json={'color': '#ff0000'}, headers=auth_headers).status_code == 200
        assert client.delete(url, headers=auth_headers).status_code == 200
        assert client.delete(url, headers=auth_headers).status_code == 404

    def test_budget(self, client, auth_headers):
        assert client.get('/api/budget', headers=auth_headers).get_json() == {'monthly_budget': 0.0}
        assert client.put('/api/budget', json={'monthly_budget': '1500.50'}, headers=auth_headers).status_code == 200
        assert client.get('/api/budget', headers=auth_headers).get_json() == {'monthly_budget': 1500.5}
        assert client.put('/api/budget', json={'monthly_budget': -5}, headers=auth_headers).status_code == 400


class TestTelegram:

    def test_link_flow(self, client, auth_headers, cron_headers, user):
        token = client.post('/api/telegram/link_token', headers=auth_headers).get_json()['token']
        status = client.get('/api/telegram/status', headers=auth_headers).get_json()
        assert status['linked'] is False
        assert status['pending_token']['token'] == token

        linked = client.post('/api/telegram/link', json={'token': token, 'chat_id': 777}, headers=cron_headers)
        assert linked.status_code == 200
        assert linked.get_json()['user_id'] == user['user_id']

        status = client.get('/api/telegram/status', headers=auth_headers).get_json()
        assert status['linked'] is True
        assert status['link']['chat_id'] == '777'

    def test_link_requires_cron_secret(self, client, auth_headers):
        response = client.post('/api/telegram/link', json={'token': 'ABCDEF', 'chat_id': 1}, headers=auth_headers)
        assert response.status_code == 401

    @pytest.mark.parametrize('body', [{}, {'token': 'ABCDEF'}])
    def test_link_missing_fields(self, client, cron_headers, body):
        assert client.post('/api/telegram/link', json=body, headers=cron_headers).status_code == 400


class TestSubscription:

    def test_free_without_subscription(self, client, auth_headers):
        body = client.get('/api/subscription', headers=auth_headers).get_json()
        assert body['subscription'] is None
        assert body['is_premium'] is False
        assert body['features']['basic_dashboard'] is True
        assert body['features']['advanced_analytics'] is False

    def test_active_paid_plan_unlocks_premium(self, client, auth_headers, engine, user):
        assert engine.set_user_subscription(user['user_id'], 'active', 'pro')[0]

        body = client.get('/api/subscription', headers=auth_headers).get_json()
        assert body['subscription']['plan_name'] == 'pro'
        assert body['is_premium'] is True
        assert all(body['features'].values())

    def test_requires_login(self, client):
        assert client.get('/api/subscription').status_code == 401


class TestErrorHandling:

    def test_array_body_is_rejected(self, client, cron_headers):
        response = client.post(TRIGGER, json=['2024-03-15'], headers=cron_headers)
        assert response.status_code == 400
        assert response.get_json() == {'success': False, 'message': 'Request body must be a JSON object.'}

    @pytest.mark.parametrize('method, url, body', [
        ('put', '/api/budget', [1500]),
        ('post', '/api/transactions', 'coffee'),
        ('post', '/api/categories', 42),
    ])
    def test_non_object_body_is_rejected(self, client, auth_headers, method, url, body):
        response = getattr(client, method)(url, json=body, headers=auth_headers)
        assert response.status_code == 400
        assert response.get_json()['success'] is False

    def test_unhandled_error_is_logged_with_traceback(self, client, auth_headers, monkeypatch, caplog):
        from tobby import api

        def broken(user_id):
            raise RuntimeError("disk on fire")
        monkeypatch.setattr(api.engine, 'get_monthly_budget', broken)
        monkeypatch.setitem(api.app.config, 'PROPAGATE_EXCEPTIONS', False)

        with caplog.at_level(logging.ERROR, logger='tobby.api'):
            response = client.get('/api/budget', headers=auth_headers)

        assert response.status_code == 500
        assert response.get_json()['success'] is False
        record = next(r for r in caplog.records if r.name == 'tobby.api')
        assert record.exc_info[0] is RuntimeError
