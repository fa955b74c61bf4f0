import json

import pytest

from inventory_api_server import app, get_advisor


@pytest.fixture
def seeded(client):
    response = client.get('/populate-db')
    assert response.status_code == 200
    return client


def place_order(client, *items):
    return client.post('/orders', json={
        'customer_name': 'Adega do Porto',
        'address': 'Rua das Flores, 42',
        'delivery_date': '2026-10-22',
        'items': [{'product_id': pid, 'quantity': qty} for pid, qty in items],
    })


def stock(client, product_id):
    return client.get(f'/products/{product_id}').get_json()['quantity']


def test_home_and_health(client):
    assert client.get('/').status_code == 200
    assert client.get('/health').get_json()['endpoints']['orders'] == '/orders'


def test_populate_db_seeds_catalogue(seeded):
    data = seeded.get('/products').get_json()

    assert data['total'] == 8
    assert data['products'][0]['name'] == 'Cerveja Artesanal IPA'
    wine = next(p for p in data['products'] if p['id'] == 'prod_001')
    assert wine['quantity'] == 30

    # seeding twice upserts instead of duplicating
    seeded.get('/populate-db')
    assert seeded.get('/products').get_json()['total'] == 8


def test_product_crud(client):
    response = client.post('/products', json={
        'name': 'Gin Tônica Lata', 'pack_type': 'case', 'units_per_pack': 24,
        'pack_quantity': 2, 'pack_price': '120,00', 'expiration_date': '2027-05-01',
    })
    assert response.status_code == 201
    product = response.get_json()['product']
    assert product['quantity'] == 48
    assert product['price'] == 5.0

    response = client.put(f"/products/{product['id']}", json={'name': 'Gin Tônica'})
    assert response.get_json()['product']['name'] == 'Gin Tônica'

    response = client.patch(f"/products/{product['id']}/quantity", json={'quantity': 12})
    assert response.get_json()['product']['quantity'] == 12

    assert client.delete(f"/products/{product['id']}").status_code == 200
    assert client.get(f"/products/{product['id']}").status_code == 404


def test_invalid_product_is_400(client):
    response = client.post('/products', json={'name': 'Gin', 'pack_type': 'barrel', 'price': 1,
                                              'expiration_date': '2027-01-01'})
    assert response.status_code == 400
    assert 'error' in response.get_json()

    response = client.post('/products', data='not json', content_type='text/plain')
    assert response.status_code == 400


def test_post_product_ignores_client_id(seeded):
    response = seeded.post('/products', json={
        'id': 'prod_001', 'name': 'Outro', 'pack_type': 'unit', 'quantity': 1,
        'price': 1, 'expiration_date': '2027-01-01',
    })

    assert response.status_code == 201
    assert response.get_json()['product']['id'] != 'prod_001'
    assert stock(seeded, 'prod_001') == 30
    assert seeded.get('/products').get_json()['total'] == 9


def test_huge_quantity_is_400(seeded):
    response = seeded.patch('/products/prod_001/quantity', json={'quantity': 10 ** 20})
    assert response.status_code == 400
    assert stock(seeded, 'prod_001') == 30


def test_products_sort_and_filter(seeded):
    data = seeded.get('/products?sort=quantity&direction=desc').get_json()
    assert data['products'][0]['id'] == 'prod_005'

    data = seeded.get('/products?search=vinho').get_json()
    assert [p['id'] for p in data['products']] == ['prod_001']

    assert seeded.get('/products?sort=price').status_code == 400


def test_sell_product(seeded):
    response = seeded.post('/products/prod_001/sell', json={'quantity': 5})
    assert response.status_code == 200
    assert response.get_json()['product']['quantity'] == 25

    response = seeded.post('/products/prod_001/sell', json={'quantity': 26})
    assert response.status_code == 400
    assert 'Estoque insuficiente' in response.get_json()['error']
    assert stock(seeded, 'prod_001') == 25


def test_dashboard_zone_counts(seeded, fake_client):
    data = seeded.get('/dashboard').get_json()

    assert data['zone_counts'] == {'green': 2, 'yellow': 3, 'red': 3}
    assert data['pending_orders'] == 0
    assert len(data['sales']['weekly']) == 7
    assert all(card['confidence_level'] == 'low' for card in data['products'])
    assert fake_client.messages.calls == []


def test_restock_alerts_filter_by_zone(seeded):
    data = seeded.get('/restock-alerts?zone=red').get_json()
    assert sorted(p['id'] for p in data['alerts']) == ['prod_003', 'prod_004', 'prod_008']

    assert seeded.get('/restock-alerts?zone=bogus').status_code == 400


def test_single_restock_alert(seeded):
    data = seeded.get('/products/prod_003/restock-alert').get_json()
    assert data['zone'] == 'red'
    assert data['product_name'] == 'Whisky Escocês 12 Anos'

    assert seeded.get('/products/nope/restock-alert').status_code == 404


def test_restock_alert_for_selling_product_uses_model(seeded, fake_client):
    order_id = place_order(seeded, ('prod_002', 30)).get_json()['order']['id']
    seeded.patch(f'/orders/{order_id}/status', json={'status': 'completed'})
    fake_client.messages.responses.append(json.dumps({
        'zone': 'red', 'restock_recommendation': 'Estoque para mais de 3 meses.', 'confidence_level': 'high'}))

    data = seeded.get('/products/prod_002/restock-alert').get_json()

    assert data['zone'] == 'green'
    assert data['restock_recommendation'] == 'Estoque para mais de 3 meses.'
    assert len(fake_client.messages.calls) == 1


def test_order_lifecycle(seeded):
    response = place_order(seeded, ('prod_001', 10), ('prod_007', 5))
    assert response.status_code == 201
    order = response.get_json()['order']
    assert order['status'] == 'pending'
    assert stock(seeded, 'prod_001') == 20
    assert stock(seeded, 'prod_007') == 20

    response = seeded.put(f"/orders/{order['id']}", json={
        'items': [{'product_id': 'prod_001', 'quantity': 12}],
    })
    assert response.status_code == 200
    assert stock(seeded, 'prod_001') == 18
    assert stock(seeded, 'prod_007') == 25

    response = seeded.post(f"/orders/{order['id']}/notes", json={'note': 'Portão lateral'})
    assert response.get_json()['order']['notes'] == 'Portão lateral'

    response = seeded.patch(f"/orders/{order['id']}/status", json={'status': 'cancelled'})
    assert response.get_json()['order']['status'] == 'cancelled'
    assert stock(seeded, 'prod_001') == 30

    response = seeded.patch(f"/orders/{order['id']}/status", json={'status': 'completed'})
    assert response.status_code == 409

    assert seeded.get('/orders?status=cancelled').get_json()['total'] == 1


def test_order_with_insufficient_stock(seeded):
    response = place_order(seeded, ('prod_001', 10), ('prod_008', 11))

    assert response.status_code == 400
    assert response.get_json()['error'] == 'Estoque insuficiente para Champanhe Brut. Disponível: 10'
    assert stock(seeded, 'prod_001') == 30
    assert seeded.get('/orders').get_json()['total'] == 0


def test_delete_orders(seeded):
    pending = place_order(seeded, ('prod_006', 8)).get_json()['order']
    completed = place_order(seeded, ('prod_006', 2)).get_json()['order']
    seeded.patch(f"/orders/{completed['id']}/status", json={'status': 'completed', 'note': 'Entregue'})
    assert stock(seeded, 'prod_006') == 30

    response = seeded.delete(f"/orders/{pending['id']}")
    assert response.get_json()['stock_restored'] is True
    assert stock(seeded, 'prod_006') == 38

    response = seeded.delete(f"/orders/{completed['id']}")
    assert response.get_json()['stock_restored'] is False
    assert stock(seeded, 'prod_006') == 38

    assert seeded.delete(f"/orders/{completed['id']}").status_code == 404


def test_sales_summary_counts_completed_orders(seeded):
    order = place_order(seeded, ('prod_008', 2)).get_json()['order']
    assert seeded.get('/sales/summary').get_json()['weekly_total'] == 0

    seeded.patch(f"/orders/{order['id']}/status", json={'status': 'completed'})
    data = seeded.get('/sales/summary').get_json()
    assert data['weekly_total'] == 500.0
    assert data['monthly_total'] == 500.0


def test_forecast_without_history(seeded):
    data = seeded.get('/forecasts/product/prod_001?days=500').get_json()

    assert data['forecast_days'] == 90
    assert data['forecasts'] == []
    assert data['source'] == 'insufficient_history'
    assert seeded.get('/forecasts/product/nope').status_code == 404


def test_search_products(seeded, fake_client):
    fake_client.messages.responses.append(json.dumps({'relevant_product_names': ['Vodka Premium']}))

    data = seeded.get('/products/search?q=vodca').get_json()

    assert data['product_names'] == ['Vodka Premium']
    assert [p['id'] for p in data['products']] == ['prod_007']


def test_advisor_is_taken_from_config(client):
    with app.app_context():
        assert get_advisor() is app.config['RESTOCK_ADVISOR']
