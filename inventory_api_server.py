import os
import logging

from flask import Flask, request, jsonify
from flask_cors import CORS

import inventory_store as store
from inventory_store import InventoryError
from restock_engine import RestockAdvisor, products_with_status, ZONES
from sales_analytics import sales_summary, forecast_product
from seed_inventory import seed_products

logging.basicConfig(level=os.getenv('LOGLEVEL', 'INFO'))
logger = logging.getLogger(__name__)

app = Flask(__name__)
CORS(app)  # Enable CORS for all routes

app.config['DATABASE'] = store.default_db_path()
app.config['RESTOCK_MODEL'] = os.getenv('RESTOCK_MODEL')
app.config['RESTOCK_ADVISOR'] = None

# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def get_db_connection():
    """Open the configured database, creating the tables on first use."""
    conn = store.get_db_connection(app.config['DATABASE'])
    store.init_db(conn)
    return conn


def get_advisor():
    """Restock advisor from the app config, created lazily."""
    advisor = app.config.get('RESTOCK_ADVISOR')
    if advisor is None:
        advisor = RestockAdvisor(model=app.config.get('RESTOCK_MODEL'))
        app.config['RESTOCK_ADVISOR'] = advisor
    return advisor


def error_response(e):
    """JSON error for domain errors (their own status) and anything else (500)."""
    if isinstance(e, InventoryError):
        return jsonify({'error': str(e)}), e.status_code
    logger.exception('Unexpected error handling %s %s', request.method, request.path)
    return jsonify({'error': str(e)}), 500


def get_json_body():
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise store.ValidationError('Corpo da requisição inválido. Envie um objeto JSON.')
    return data

# ============================================================================
# PRODUCT CATALOG APIs
# ============================================================================

@app.route('/products', methods=['GET'])
def get_products():
    """Get all products with optional sorting and name filter"""
    sort = request.args.get('sort', 'name')
    direction = request.args.get('direction', 'asc')
    search = request.args.get('search', '').strip() or None

    conn = get_db_connection()
    try:
        products = store.list_products(conn, sort=sort, direction=direction, search=search)
        return jsonify({'total': len(products), 'products': products})
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/products', methods=['POST'])
def create_product():
    """Register a new product"""
    conn = get_db_connection()
    try:
        product = store.create_product(conn, get_json_body())
        return jsonify({'message': 'Produto adicionado com sucesso.', 'product': product}), 201
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/products/search', methods=['GET'])
def search_products():
    """Semantic product search by name"""
    query = request.args.get('q', '')
    conn = get_db_connection()
    try:
        products = store.list_products(conn)
        names = get_advisor().find_relevant_products(query, [p['name'] for p in products])
        wanted = set(names)
        return jsonify({
            'query': query,
            'product_names': names,
            'products': [p for p in products if p['name'] in wanted]
        })
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/products/<product_id>', methods=['GET'])
def get_product_details(product_id):
    """Get detailed information for a specific product"""
    conn = get_db_connection()
    try:
        return jsonify(store.get_product(conn, product_id))
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/products/<product_id>', methods=['PUT'])
def update_product(product_id):
    """Edit a product; quantity is recomputed when the pack composition changes"""
    conn = get_db_connection()
    try:
        product = store.update_product(conn, product_id, get_json_body())
        return jsonify({'message': 'Produto atualizado com sucesso.', 'product': product})
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/products/<product_id>', methods=['DELETE'])
def delete_product(product_id):
    conn = get_db_connection()
    try:
        store.delete_product(conn, product_id)
        return jsonify({'message': 'Produto excluído com sucesso.', 'product_id': product_id})
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/products/<product_id>/quantity', methods=['PATCH'])
def update_product_quantity(product_id):
    conn = get_db_connection()
    try:
        product = store.set_product_quantity(conn, product_id, get_json_body().get('quantity'))
        return jsonify({'message': 'Quantidade atualizada.', 'product': product})
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/products/<product_id>/sell', methods=['POST'])
def sell_product(product_id):
    """Register a direct sale and return the product with its refreshed status"""
    conn = get_db_connection()
    try:
        product = store.sell_product(conn, product_id, get_json_body().get('quantity'))
        orders = store.list_orders(conn)
        alert = get_advisor().restock_alert(product, orders)
        return jsonify({'message': 'Venda registrada.', 'product': dict(product, **alert)})
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()

# ============================================================================
# RESTOCK ALERT APIs
# ============================================================================

@app.route('/products/<product_id>/restock-alert', methods=['GET'])
def get_restock_alert(product_id):
    """Restock alert for one product based on its last 30 days of sales"""
    conn = get_db_connection()
    try:
        product = store.get_product(conn, product_id)
        alert = get_advisor().restock_alert(product, store.list_orders(conn))
        return jsonify(dict(alert, product_id=product_id, product_name=product['name']))
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/restock-alerts', methods=['GET'])
def get_restock_alerts():
    """Restock alerts for every product, optionally filtered by zone"""
    zone = request.args.get('zone')
    conn = get_db_connection()
    try:
        if zone and zone not in ZONES:
            raise store.ValidationError(f"Zona inválida. Use um de: {', '.join(ZONES)}.")
        products = products_with_status(store.list_products(conn), store.list_orders(conn), get_advisor())
        if zone:
            products = [p for p in products if p['zone'] == zone]
        return jsonify({'total': len(products), 'alerts': products})
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/dashboard', methods=['GET'])
def get_dashboard():
    """Product cards with zones plus the sales charts data"""
    conn = get_db_connection()
    try:
        products = store.list_products(conn)
        orders = store.list_orders(conn)
        cards = products_with_status(products, orders, get_advisor())
        zone_counts = {zone: 0 for zone in ZONES}
        for card in cards:
            zone_counts[card['zone']] += 1
        return jsonify({
            'products': cards,
            'zone_counts': zone_counts,
            'pending_orders': sum(1 for o in orders if o['status'] == 'pending'),
            'sales': sales_summary(orders, products)
        })
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()

# ============================================================================
# ORDER APIs
# ============================================================================

@app.route('/orders', methods=['GET'])
def get_orders():
    """Get all orders, newest first"""
    status = request.args.get('status')
    conn = get_db_connection()
    try:
        orders = store.list_orders(conn, status=status)
        return jsonify({'total': len(orders), 'orders': orders})
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/orders', methods=['POST'])
def create_order():
    """Place an order and reserve its stock.

    Request JSON:
    {
      "customer_name": <str>, "address": <str>, "delivery_date": "YYYY-MM-DD",
      "notes": <str, optional>,
      "items": [{"product_id": <str>, "quantity": <int>}, ...]
    }
    """
    conn = get_db_connection()
    try:
        order = store.create_order(conn, get_json_body())
        return jsonify({'message': 'Pedido registrado com sucesso.', 'order': order}), 201
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/orders/<order_id>', methods=['GET'])
def get_order(order_id):
    conn = get_db_connection()
    try:
        return jsonify(store.get_order(conn, order_id))
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/orders/<order_id>', methods=['PUT'])
def update_order(order_id):
    """Edit an order; changed items are netted against the stock they reserved"""
    conn = get_db_connection()
    try:
        order = store.update_order(conn, order_id, get_json_body())
        return jsonify({'message': 'Pedido atualizado com sucesso.', 'order': order})
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/orders/<order_id>', methods=['DELETE'])
def delete_order(order_id):
    """Delete an order, returning pending items to stock"""
    conn = get_db_connection()
    try:
        order = store.delete_order(conn, order_id)
        return jsonify({
            'message': 'Pedido excluído com sucesso.',
            'order_id': order_id,
            'stock_restored': order['status'] == 'pending'
        })
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/orders/<order_id>/status', methods=['PATCH'])
def update_order_status(order_id):
    """Complete or cancel a pending order"""
    conn = get_db_connection()
    try:
        data = get_json_body()
        order = store.update_order_status(conn, order_id, data.get('status'), data.get('note'))
        return jsonify({'message': 'Status do pedido atualizado.', 'order': order})
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/orders/<order_id>/notes', methods=['POST'])
def add_order_note(order_id):
    conn = get_db_connection()
    try:
        order = store.add_order_note(conn, order_id, get_json_body().get('note'))
        return jsonify({'message': 'Observação adicionada.', 'order': order})
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()

# ============================================================================
# SALES & FORECASTING APIs
# ============================================================================

@app.route('/sales/summary', methods=['GET'])
def get_sales_summary():
    """Completed-order revenue for the last 7 and 30 days"""
    conn = get_db_connection()
    try:
        return jsonify(sales_summary(store.list_orders(conn, status='completed'), store.list_products(conn)))
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()


@app.route('/forecasts/product/<product_id>', methods=['GET'])
def get_product_forecast(product_id):
    """Get ML-generated demand forecast for a specific product"""
    days = request.args.get('days', 30, type=int)
    days = min(90, max(1, days))  # clamp to 1-90 days

    conn = get_db_connection()
    try:
        store.get_product(conn, product_id)
        history, forecasts = forecast_product(product_id, store.list_orders(conn, status='completed'), days)
        return jsonify({
            'product_id': product_id,
            'forecast_days': days,
            'history_days': len(history),
            'forecasts': forecasts or [],
            'source': 'ml' if forecasts else 'insufficient_history'
        })
    except Exception as e:
        return error_response(e)
    finally:
        conn.close()

# ============================================================================
# UTILITY ENDPOINTS
# ============================================================================

@app.route('/populate-db', methods=['GET'])
def populate_db():
    """Seed the product catalogue (one-time setup)"""
    conn = get_db_connection()
    try:
        products = seed_products(conn)
        return jsonify({'success': True, 'message': 'Banco de dados populado com sucesso.',
                        'products': len(products)})
    except Exception as e:
        logger.exception('Error populating database')
        return jsonify({'success': False, 'message': 'Falha ao popular o banco de dados.', 'error': str(e)}), 500
    finally:
        conn.close()


@app.route('/health', methods=['GET'])
def health_check():
    """Health check endpoint"""
    return jsonify({
        'status': 'Beverage Inventory API Server is running',
        'endpoints': {
            'dashboard': '/dashboard',
            'products': '/products',
            'product_details': '/products/<id>',
            'restock_alerts': '/restock-alerts',
            'orders': '/orders',
            'sales': '/sales/summary',
            'forecasts': '/forecasts/product/<id>',
            'populate_db': '/populate-db'
        }
    })


@app.route('/', methods=['GET'])
def home():
    """Home endpoint with API information"""
    return jsonify({
        'message': 'Beverage Inventory - Stock, Orders & Restock Alerts',
        'version': '1.0',
        'description': 'Inventory and order management with AI-written restock recommendations',
        'endpoints': {
            'dashboard': [
                'GET /dashboard - Products with zones, zone counts and sales charts'
            ],
            'products': [
                'GET /products?sort=name&direction=asc&search= - List products',
                'POST /products - Add a product',
                'GET /products/search?q= - Semantic product search',
                'GET /products/<id> - Product details',
                'PUT /products/<id> - Edit a product',
                'DELETE /products/<id> - Delete a product',
                'PATCH /products/<id>/quantity - Set stock quantity',
                'POST /products/<id>/sell - Register a direct sale'
            ],
            'restock': [
                'GET /products/<id>/restock-alert - Restock alert for one product',
                'GET /restock-alerts?zone=red - Restock alerts for all products'
            ],
            'orders': [
                'GET /orders?status=pending - List orders',
                'POST /orders - Place an order',
                'GET /orders/<id> - Order details',
                'PUT /orders/<id> - Edit an order',
                'DELETE /orders/<id> - Delete an order',
                'PATCH /orders/<id>/status - Complete or cancel an order',
                'POST /orders/<id>/notes - Append a note'
            ],
            'sales': [
                'GET /sales/summary - Weekly and monthly revenue',
                'GET /forecasts/product/<id>?days=30 - Demand forecast for product'
            ],
            'system': [
                'GET /populate-db - Seed the database',
                'GET /health - Health check',
                'GET / - API documentation'
            ]
        }
    })

# ============================================================================
# MAIN APPLICATION
# ============================================================================

if __name__ == '__main__':
    print("=" * 70)
    print("Starting Beverage Inventory API")
    print("=" * 70)
    print(f"Database: {app.config['DATABASE']}")
    print("\nAvailable API endpoints:")
    print("   - GET /dashboard - Products with zones and sales charts")
    print("   - GET/POST /products - Product catalogue")
    print("   - GET /restock-alerts - Restock alerts for all products")
    print("   - GET/POST /orders - Customer orders")
    print("   - GET /sales/summary - Weekly and monthly revenue")
    print("   - GET /forecasts/product/<id> - Demand forecast")
    print("   - GET /populate-db - Seed the database")
    print("=" * 70)
    print("Server running on http://127.0.0.1:5000")
    print("=" * 70 + "\n")

    app.run(port=5000, debug=True, host='127.0.0.1')
