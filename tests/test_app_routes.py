import io
import json

import pytest

import app as bakery_app
import database


@pytest.fixture(autouse=True)
def set_testing_flag():
    original = bakery_app.app.config.get('TESTING')
    bakery_app.app.config['TESTING'] = True
    try:
        yield
    finally:
        if original is None:
            bakery_app.app.config.pop('TESTING', None)
        else:
            bakery_app.app.config['TESTING'] = original


@pytest.fixture()
def client(tmp_path, monkeypatch):
    monkeypatch.setattr(database, 'DATABASE_FILE', tmp_path / 'bakery.db')
    monkeypatch.setattr(bakery_app, 'SETTINGS_FILE', tmp_path / 'settings.json')
    monkeypatch.setattr(bakery_app, '_db_bootstrapped', False)
    monkeypatch.delenv('BAKERY_TIMEZONE', raising=False)
    monkeypatch.delenv('BAKERY_DEFAULT_USER_ID', raising=False)
    return bakery_app.app.test_client()


ORDERS_CSV = (
    b"Order Number,Customer Name,Customer Email,Status,Event Date,Total\n"
    b"W1,Kit Harper,kit@example.com,Confirmed,2025-08-01,120\n"
    b"W2,Kit Harper,kit@example.com,Draft,2025-08-09,80\n"
)


def _upload(client, payload, filename='orders.csv', **fields):
    data = {'file': (io.BytesIO(payload), filename)}
    data.update(fields)
    return client.post('/api/data/import', data=data, content_type='multipart/form-data')


def test_import_csv_upload(client):
    response = _upload(client, ORDERS_CSV, type='auto')

    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is True
    assert body['status'] == 'completed'
    assert body['processedRows'] == 2
    assert body['failedRows'] == 0
    assert body['errors'] == []


def test_import_raw_json_body(client):
    payload = json.dumps([{"title": "Order sprinkles"}, {"title": "Clean piping bags"}])

    response = client.post('/api/data/import?type=tasks', data=payload, content_type='application/json')

    assert response.status_code == 200
    assert response.get_json()['processedRows'] == 2


def test_import_rejects_unrecognised_csv(client):
    response = _upload(client, b"Colour,Flavour\nPink,Lemon\n", filename='mystery.csv')

    assert response.status_code == 400
    body = response.get_json()
    assert body['status'] == 'error'
    assert 'Unrecognised file format' in body['message']


def test_import_rejects_unknown_type(client):
    response = _upload(client, ORDERS_CSV, type='invoices')

    assert response.status_code == 400
    assert response.get_json()['status'] == 'error'


def test_import_without_payload(client):
    response = client.post('/api/data/import')

    assert response.status_code == 400


def test_invalid_user_header_is_rejected(client):
    response = client.post(
        '/api/data/import', data=ORDERS_CSV, content_type='text/csv', headers={'X-User-Id': 'abc'}
    )

    assert response.status_code == 400


def test_import_fields_listing(client):
    response = client.get('/api/data/import/fields/order-items')

    assert response.status_code == 200
    body = response.get_json()
    assert body['type'] == 'order_items'
    names = [field['name'] for field in body['fields']]
    assert 'order_number' in names
    assert 'price' in names

    assert client.get('/api/data/import/fields/invoices').status_code == 400


def test_export_json_snapshot_after_import(client):
    _upload(client, ORDERS_CSV)

    response = client.get('/api/data/export?type=all&format=json')

    assert response.status_code == 200
    body = response.get_json()
    assert body['success'] is True
    assert [order['order_number'] for order in body['data']['orders']] == ['W1', 'W2']
    assert body['data']['orders'][0]['contact_email'] == 'kit@example.com'
    assert len(body['data']['contacts']) == 1


def test_export_csv_download(client):
    _upload(client, ORDERS_CSV)

    response = client.get('/api/data/export/orders.csv')

    assert response.status_code == 200
    assert response.mimetype == 'text/csv'
    assert 'orders-export-' in response.headers['Content-Disposition']
    lines = response.data.decode('utf-8').splitlines()
    assert lines[0].startswith('Order Number,Status,Event Type,Event Date')
    assert lines[1].startswith('W1,Confirmed')


def test_export_csv_of_everything_is_rejected(client):
    response = client.get('/api/data/export?type=all&format=csv')

    assert response.status_code == 400
    assert response.get_json()['status'] == 'error'


def test_user_header_scopes_imports_and_exports(client):
    _upload(client, ORDERS_CSV)
    response = client.get('/api/data/export?type=orders', headers={'X-User-Id': '2'})

    assert response.get_json()['data']['orders'] == []


def test_legacy_import_route(client):
    export = {
        "customers": [{"id": 1, "firstName": "Bea", "lastName": "Arthur", "email": "bea@example.com"}],
        "orders": [{"id": 9, "orderNumber": "BD-9", "customerId": 1, "status": "Collected", "eventDate": "2025-02-02"}],
        "settings": {"currency": "GBP"},
    }

    response = client.post(
        '/api/data/import/legacy',
        data={'file': (io.BytesIO(json.dumps(export).encode('utf-8')), 'bakediary.json')},
        content_type='multipart/form-data',
    )

    assert response.status_code == 200
    body = response.get_json()
    assert body['sourceSystem'] == 'Bake Diary'
    assert body['processedRows'] == 2
    assert body['notes'] == ['Skipped 1 settings record(s); Bake Diary settings are not imported.']


def test_legacy_import_rejects_unknown_source(client):
    response = client.post(
        '/api/data/import/legacy?sourceSystem=cake-planner',
        data=b'{"orders": []}',
        content_type='application/json',
    )

    assert response.status_code == 400


def test_timezone_setting_resolution(tmp_path, monkeypatch):
    settings_file = tmp_path / 'settings.json'
    monkeypatch.setattr(bakery_app, 'SETTINGS_FILE', settings_file)
    monkeypatch.delenv('BAKERY_TIMEZONE', raising=False)

    settings_file.write_text(json.dumps({'timezone': 'Europe/London'}))
    assert bakery_app._resolve_timezone_setting() == 'Europe/London'

    settings_file.write_text(json.dumps({'timezone': 'Mars/Olympus_Mons'}))
    assert bakery_app._resolve_timezone_setting() == 'UTC'

    monkeypatch.setenv('BAKERY_TIMEZONE', 'America/New_York')
    assert bakery_app._resolve_timezone_setting() == 'America/New_York'


def test_malformed_nested_items_are_rejected(client):
    payload = json.dumps([{"order_number": "A1", "status": "Draft", "event_date": "2025-01-01", "items": 5}])

    response = client.post('/api/data/import', data=payload, content_type='application/json')

    assert response.status_code == 400
    assert "expected a list of items" in response.get_json()['message']


def test_ingredients_csv_download(client):
    response = client.get('/api/data/export/ingredients.csv')

    assert response.status_code == 200
    assert response.data.decode('utf-8').splitlines()[0].startswith('Name,Unit,Cost Per Unit')
