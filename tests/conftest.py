from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

import pytest

import inventory_store as store
from inventory_api_server import app
from restock_engine import RestockAdvisor

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeMessages:
    """Stands in for ``client.messages``; replays canned answers in order."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def create(self, **kwargs):
        self.calls.append(kwargs)
        response = self.responses.pop(0) if self.responses else '{}'
        if isinstance(response, Exception):
            raise response
        return SimpleNamespace(content=[SimpleNamespace(text=response)])


class FakeClient:
    def __init__(self, *responses):
        self.messages = FakeMessages(responses)


def make_order(items, status='completed', days_ago=1, now=NOW):
    return {
        'id': f'order-{days_ago}-{status}',
        'customer_name': 'Bar do Zé',
        'address': 'Rua A, 10',
        'delivery_date': '2026-10-20',
        'notes': None,
        'status': status,
        'created_at': (now - timedelta(days=days_ago)).isoformat(),
        'items': [{'product_id': pid, 'product_name': pid, 'quantity': qty} for pid, qty in items],
    }


@pytest.fixture
def db_path(tmp_path):
    return str(tmp_path / 'inventory.db')


@pytest.fixture
def conn(db_path):
    connection = store.get_db_connection(db_path)
    store.init_db(connection)
    yield connection
    connection.close()


@pytest.fixture
def wine(conn):
    return store.create_product(conn, {
        'name': 'Vinho Tinto Cabernet', 'pack_type': 'case', 'units_per_pack': 6,
        'pack_quantity': 5, 'price': 75.50, 'expiration_date': '2027-12-20',
    })


@pytest.fixture
def soda(conn):
    return store.create_product(conn, {
        'name': 'Refrigerante de Cola', 'pack_type': 'bundle', 'units_per_pack': 5,
        'pack_quantity': 2, 'price': 5.00, 'expiration_date': '2027-03-01',
    })


@pytest.fixture
def fake_client():
    return FakeClient()


@pytest.fixture
def client(db_path, fake_client, monkeypatch):
    monkeypatch.setitem(app.config, 'DATABASE', db_path)
    monkeypatch.setitem(app.config, 'RESTOCK_ADVISOR', RestockAdvisor(client=fake_client, model='test-model'))
    app.config['TESTING'] = True
    with app.test_client() as test_client:
        yield test_client
