import os
import sqlite3
import uuid
import logging
from contextlib import contextmanager
from datetime import datetime, timezone

logger = logging.getLogger(__name__)

DB_NAME = 'inventory.db'

PACK_TYPES = ('case', 'bundle', 'unit')
ORDER_STATUSES = ('pending', 'completed', 'cancelled')
PRODUCT_SORT_COLUMNS = {
    'name': 'name COLLATE NOCASE',
    'quantity': 'quantity',
    'expiration_date': 'expiration_date',
}
NOTE_SEPARATOR = '\n---\n'
# Keeps packs x units and stock sums inside SQLite's 64-bit integers
MAX_COUNT = 1_000_000_000

# ============================================================================
# ERRORS
# ============================================================================

class InventoryError(Exception):
    status_code = 400


class ValidationError(InventoryError):
    status_code = 400


class NotFoundError(InventoryError):
    status_code = 404


class InsufficientStockError(InventoryError):
    status_code = 400


class OrderStateError(InventoryError):
    status_code = 409

# ============================================================================
# DATABASE HELPER FUNCTIONS
# ============================================================================

def default_db_path():
    """Database path from INVENTORY_DB, falling back to a file beside this module."""
    env_path = os.getenv('INVENTORY_DB')
    if env_path:
        return env_path
    here = os.path.abspath(os.path.dirname(__file__))
    return os.path.join(here, DB_NAME)


def get_db_connection(db_path=None):
    """Open a connection with row access by column name and foreign keys on."""
    conn = sqlite3.connect(db_path or default_db_path(), timeout=10)
    conn.row_factory = sqlite3.Row
    conn.execute('PRAGMA foreign_keys = ON')
    return conn


def init_db(conn):
    """Create the inventory tables if missing (idempotent)."""
    cursor = conn.cursor()
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS products (
            id TEXT PRIMARY KEY,
            name TEXT NOT NULL,
            pack_type TEXT NOT NULL,
            units_per_pack INTEGER NOT NULL DEFAULT 1,
            pack_quantity INTEGER NOT NULL DEFAULT 0,
            quantity INTEGER NOT NULL DEFAULT 0 CHECK (quantity >= 0),
            price REAL NOT NULL DEFAULT 0,
            pack_price REAL,
            expiration_date TEXT NOT NULL,
            image_url TEXT
        )
    ''')
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS orders (
            id TEXT PRIMARY KEY,
            customer_name TEXT NOT NULL,
            address TEXT NOT NULL,
            delivery_date TEXT NOT NULL,
            notes TEXT,
            status TEXT NOT NULL DEFAULT 'pending',
            created_at TEXT NOT NULL
        )
    ''')
    cursor.execute('''
        CREATE TABLE IF NOT EXISTS order_items (
            item_id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id TEXT NOT NULL,
            product_id TEXT NOT NULL,
            product_name TEXT NOT NULL,
            quantity INTEGER NOT NULL CHECK (quantity > 0),
            FOREIGN KEY (order_id) REFERENCES orders(id) ON DELETE CASCADE
        )
    ''')
    conn.commit()


@contextmanager
def atomic(conn):
    """Run the block as one write transaction, rolling back on any error."""
    conn.execute('BEGIN IMMEDIATE')
    try:
        yield conn.cursor()
    except Exception:
        conn.rollback()
        raise
    else:
        conn.commit()


def _new_id():
    return uuid.uuid4().hex


def _utc_now_iso():
    return datetime.now(timezone.utc).isoformat()

# ============================================================================
# VALIDATION HELPERS
# ============================================================================

def _parse_int(value, field, minimum=None, maximum=MAX_COUNT):
    if isinstance(value, bool):
        raise ValidationError(f'Valor inválido para {field}.')
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise ValidationError(f'Valor inválido para {field}.')
    if isinstance(value, float) and value != number:
        raise ValidationError(f'Valor inválido para {field}.')
    if minimum is not None and number < minimum:
        raise ValidationError(f'{field} deve ser no mínimo {minimum}.')
    if maximum is not None and number > maximum:
        raise ValidationError(f'{field} deve ser no máximo {maximum}.')
    return number


def _parse_price(value, field):
    if value is None or value == '':
        return None
    if isinstance(value, str):
        # Accepts "1.234,56" as well as "1234.56"
        text = value.strip()
        if ',' in text:
            text = text.replace('.', '').replace(',', '.')
        value = text
    try:
        price = float(value)
    except (TypeError, ValueError):
        raise ValidationError('O preço deve ser um número válido.')
    if price < 0:
        raise ValidationError('O preço não pode ser negativo.')
    return round(price, 2)


def _parse_date(value, field):
    try:
        return datetime.strptime(str(value)[:10], '%Y-%m-%d').date().isoformat()
    except (TypeError, ValueError):
        raise ValidationError(f'Data inválida para {field}. Use o formato AAAA-MM-DD.')


def build_product_fields(data, existing=None):
    """Validate a product payload and derive quantity and prices.

    ``existing`` is the stored product for edits: missing keys keep their
    stored value, and the stored quantity survives unless the pack
    composition changed.
    """
    merged = dict(existing or {})
    merged.update({k: v for k, v in data.items() if v is not None})

    name = str(merged.get('name') or '').strip()
    if len(name) < 2:
        raise ValidationError('O nome deve ter pelo menos 2 caracteres.')

    pack_type = str(merged.get('pack_type') or '').strip().lower()
    if pack_type not in PACK_TYPES:
        raise ValidationError(f"Tipo de embalagem inválido. Use um de: {', '.join(PACK_TYPES)}.")

    if pack_type == 'unit':
        units_per_pack = 1
        direct = data.get('quantity')
        if direct is None:
            direct = data.get('pack_quantity')
        if direct is None and existing:
            direct = existing.get('pack_quantity')
        pack_quantity = _parse_int(direct if direct is not None else 0, 'quantidade', minimum=0)
    else:
        units_per_pack = _parse_int(merged.get('units_per_pack', 1), 'unidades por embalagem', minimum=1)
        pack_quantity = _parse_int(merged.get('pack_quantity', 0), 'quantidade de embalagens', minimum=0)

    composed_quantity = pack_quantity * units_per_pack
    if existing and (
        existing.get('pack_type') == pack_type
        and existing.get('units_per_pack') == units_per_pack
        and existing.get('pack_quantity') == pack_quantity
    ):
        quantity = existing['quantity']
    else:
        quantity = composed_quantity

    price = _parse_price(data.get('price'), 'preço')
    pack_price = _parse_price(data.get('pack_price'), 'preço da embalagem')
    if price is None and pack_price is None and existing:
        price, pack_price = existing.get('price'), existing.get('pack_price')
        if existing.get('units_per_pack') != units_per_pack:
            # Unit price is kept; the pack price follows the new pack size
            pack_price = None
    if price is None and pack_price is not None:
        price = round(pack_price / units_per_pack, 2)
    elif pack_price is None and price is not None:
        pack_price = round(price * units_per_pack, 2)
    if price is None:
        raise ValidationError('Informe o preço unitário ou o preço da embalagem.')

    if not merged.get('expiration_date'):
        raise ValidationError('A data de vencimento é obrigatória.')
    expiration_date = _parse_date(merged['expiration_date'], 'vencimento')

    return {
        'name': name,
        'pack_type': pack_type,
        'units_per_pack': units_per_pack,
        'pack_quantity': pack_quantity,
        'quantity': quantity,
        'price': price,
        'pack_price': pack_price,
        'expiration_date': expiration_date,
        'image_url': merged.get('image_url'),
    }

# ============================================================================
# PRODUCT FUNCTIONS
# ============================================================================

PRODUCT_COLUMNS = ['id', 'name', 'pack_type', 'units_per_pack', 'pack_quantity', 'quantity',
                   'price', 'pack_price', 'expiration_date', 'image_url']


def _product_from_row(row):
    return {column: row[column] for column in PRODUCT_COLUMNS}


def list_products(conn, sort='name', direction='asc', search=None):
    """Get all products, optionally filtered by name and sorted."""
    if sort not in PRODUCT_SORT_COLUMNS:
        raise ValidationError(f"Ordenação inválida. Use um de: {', '.join(PRODUCT_SORT_COLUMNS)}.")
    if direction not in ('asc', 'desc'):
        raise ValidationError("Direção inválida. Use 'asc' ou 'desc'.")

    query = f"SELECT {', '.join(PRODUCT_COLUMNS)} FROM products"
    params = []
    if search:
        escaped = search.replace('\\', '\\\\').replace('%', '\\%').replace('_', '\\_')
        query += " WHERE name LIKE ? ESCAPE '\\'"
        params.append(f'%{escaped}%')
    query += f' ORDER BY {PRODUCT_SORT_COLUMNS[sort]} {direction.upper()}, id'

    cursor = conn.cursor()
    cursor.execute(query, params)
    return [_product_from_row(row) for row in cursor.fetchall()]


def _fetch_product(cursor, product_id):
    cursor.execute(f"SELECT {', '.join(PRODUCT_COLUMNS)} FROM products WHERE id = ?", (product_id,))
    row = cursor.fetchone()
    return _product_from_row(row) if row else None


def get_product(conn, product_id):
    product = _fetch_product(conn.cursor(), product_id)
    if product is None:
        raise NotFoundError('Produto não encontrado.')
    return product


def _insert_product(cursor, product, verb='INSERT'):
    cursor.execute(f'''
        {verb} INTO products ({', '.join(PRODUCT_COLUMNS)})
        VALUES ({', '.join(['?'] * len(PRODUCT_COLUMNS))})
    ''', [product[column] for column in PRODUCT_COLUMNS])


def upsert_product(cursor, product):
    """Insert or overwrite a product by id (seeding only)."""
    _insert_product(cursor, product, verb='INSERT OR REPLACE')


def create_product(conn, data):
    """Validate and insert a new product under a fresh id; returns the stored product."""
    product = build_product_fields(data)
    product['id'] = _new_id()
    with atomic(conn) as cursor:
        _insert_product(cursor, product)
    logger.info('Product %s created with %s units', product['id'], product['quantity'])
    return product


def update_product(conn, product_id, data):
    """Edit a product's fields in place."""
    with atomic(conn) as cursor:
        existing = _fetch_product(cursor, product_id)
        if existing is None:
            raise NotFoundError('Produto não encontrado.')
        product = build_product_fields(data, existing=existing)
        product['id'] = product_id
        fields = [column for column in PRODUCT_COLUMNS if column != 'id']
        cursor.execute(
            f"UPDATE products SET {', '.join(f'{c} = ?' for c in fields)} WHERE id = ?",
            [product[c] for c in fields] + [product_id],
        )
    return product


def set_product_quantity(conn, product_id, quantity):
    quantity = _parse_int(quantity, 'quantidade', minimum=0)
    with atomic(conn) as cursor:
        cursor.execute('UPDATE products SET quantity = ? WHERE id = ?', (quantity, product_id))
        if cursor.rowcount == 0:
            raise NotFoundError('Produto não encontrado.')
        product = _fetch_product(cursor, product_id)
    return product


def sell_product(conn, product_id, quantity_sold):
    """Decrement stock for a direct sale, rejecting anything above the available units."""
    quantity_sold = _parse_int(quantity_sold, 'quantidade vendida', minimum=1)
    with atomic(conn) as cursor:
        product = _fetch_product(cursor, product_id)
        if product is None:
            raise NotFoundError('Produto não encontrado.')
        if product['quantity'] < quantity_sold:
            raise InsufficientStockError(
                f"Estoque insuficiente para {product['name']}. Disponível: {product['quantity']}"
            )
        product['quantity'] -= quantity_sold
        cursor.execute('UPDATE products SET quantity = ? WHERE id = ?', (product['quantity'], product_id))
    logger.info('Sold %s units of product %s', quantity_sold, product_id)
    return product


def delete_product(conn, product_id):
    with atomic(conn) as cursor:
        cursor.execute('DELETE FROM products WHERE id = ?', (product_id,))
        if cursor.rowcount == 0:
            raise NotFoundError('Produto não encontrado.')

# ============================================================================
# ORDER FUNCTIONS
# ============================================================================

ORDER_COLUMNS = ['id', 'customer_name', 'address', 'delivery_date', 'notes', 'status', 'created_at']


def _load_items(cursor, order_ids):
    items = {order_id: [] for order_id in order_ids}
    if not order_ids:
        return items
    cursor.execute(f'''
        SELECT order_id, product_id, product_name, quantity
        FROM order_items
        WHERE order_id IN ({','.join(['?'] * len(order_ids))})
        ORDER BY item_id
    ''', list(order_ids))
    for row in cursor.fetchall():
        items[row['order_id']].append({
            'product_id': row['product_id'],
            'product_name': row['product_name'],
            'quantity': row['quantity'],
        })
    return items


def list_orders(conn, status=None):
    """Get all orders with their items, newest first."""
    query = f"SELECT {', '.join(ORDER_COLUMNS)} FROM orders"
    params = []
    if status:
        if status not in ORDER_STATUSES:
            raise ValidationError(f"Status inválido. Use um de: {', '.join(ORDER_STATUSES)}.")
        query += ' WHERE status = ?'
        params.append(status)
    query += ' ORDER BY created_at DESC, id'

    cursor = conn.cursor()
    cursor.execute(query, params)
    orders = [{column: row[column] for column in ORDER_COLUMNS} for row in cursor.fetchall()]
    items = _load_items(cursor, [o['id'] for o in orders])
    for order in orders:
        order['items'] = items[order['id']]
    return orders


def _fetch_order(cursor, order_id):
    cursor.execute(f"SELECT {', '.join(ORDER_COLUMNS)} FROM orders WHERE id = ?", (order_id,))
    row = cursor.fetchone()
    if not row:
        return None
    order = {column: row[column] for column in ORDER_COLUMNS}
    order['items'] = _load_items(cursor, [order_id])[order_id]
    return order


def get_order(conn, order_id):
    order = _fetch_order(conn.cursor(), order_id)
    if order is None:
        raise NotFoundError('Pedido não encontrado.')
    return order


def _parse_items(raw_items):
    if not isinstance(raw_items, list) or not raw_items:
        raise ValidationError('O pedido deve ter pelo menos um item.')
    items = []
    for raw in raw_items:
        if not isinstance(raw, dict) or not raw.get('product_id'):
            raise ValidationError('Formato de item inválido.')
        items.append({
            'product_id': str(raw['product_id']),
            'product_name': raw.get('product_name'),
            'quantity': _parse_int(raw.get('quantity'), 'quantidade do item', minimum=1),
        })
    return items


def _parse_order_header(data, existing=None):
    merged = dict(existing or {})
    merged.update({k: v for k, v in data.items() if v is not None})
    header = {}
    for field, label in (('customer_name', 'nome do cliente'), ('address', 'endereço')):
        value = str(merged.get(field) or '').strip()
        if not value:
            raise ValidationError(f'O campo {label} é obrigatório.')
        header[field] = value
    if not merged.get('delivery_date'):
        raise ValidationError('A data de entrega é obrigatória.')
    header['delivery_date'] = _parse_date(merged['delivery_date'], 'entrega')
    notes = merged.get('notes')
    header['notes'] = (str(notes).strip() or None) if notes is not None else None
    return header


def _insert_items(cursor, order_id, items):
    cursor.executemany('''
        INSERT INTO order_items (order_id, product_id, product_name, quantity)
        VALUES (?, ?, ?, ?)
    ''', [(order_id, i['product_id'], i['product_name'], i['quantity']) for i in items])


def create_order(conn, data):
    """Place an order, decrementing every product in a single transaction."""
    header = _parse_order_header(data)
    items = _parse_items(data.get('items'))

    requested = {}
    for item in items:
        requested[item['product_id']] = requested.get(item['product_id'], 0) + item['quantity']

    with atomic(conn) as cursor:
        products = {}
        for item in items:
            product = products.get(item['product_id']) or _fetch_product(cursor, item['product_id'])
            if product is None:
                raise NotFoundError(f"Produto {item['product_name'] or item['product_id']} não encontrado.")
            products[product['id']] = product
            item['product_name'] = product['name']

        for product_id, quantity in requested.items():
            product = products[product_id]
            if product['quantity'] < quantity:
                raise InsufficientStockError(
                    f"Estoque insuficiente para {product['name']}. Disponível: {product['quantity']}"
                )
            cursor.execute('UPDATE products SET quantity = quantity - ? WHERE id = ?', (quantity, product_id))

        order = dict(header, id=_new_id(), status='pending', created_at=_utc_now_iso())
        cursor.execute(f'''
            INSERT INTO orders ({', '.join(ORDER_COLUMNS)})
            VALUES ({', '.join(['?'] * len(ORDER_COLUMNS))})
        ''', [order[column] for column in ORDER_COLUMNS])
        _insert_items(cursor, order['id'], items)

    order['items'] = items
    logger.info('Order %s placed for %s (%s items)', order['id'], order['customer_name'], len(items))
    return order


def _restore_stock(cursor, items):
    for item in items:
        cursor.execute('UPDATE products SET quantity = quantity + ? WHERE id = ?',
                       (item['quantity'], item['product_id']))
        if cursor.rowcount == 0:
            logger.warning('Product %s no longer exists; skipping stock restore', item['product_id'])


def update_order(conn, order_id, data):
    """Edit an order; when items change, apply the net stock delta per product."""
    with atomic(conn) as cursor:
        original = _fetch_order(cursor, order_id)
        if original is None:
            raise NotFoundError('Pedido original não encontrado.')
        header = _parse_order_header(data, existing=original)

        items = original['items']
        if data.get('items') is not None:
            if original['status'] == 'cancelled':
                raise OrderStateError('Não é possível alterar os itens de um pedido cancelado.')
            items = _parse_items(data['items'])

            adjustments = {}
            for item in original['items']:
                adjustments[item['product_id']] = adjustments.get(item['product_id'], 0) + item['quantity']
            for item in items:
                adjustments[item['product_id']] = adjustments.get(item['product_id'], 0) - item['quantity']

            for product_id, delta in adjustments.items():
                product = _fetch_product(cursor, product_id)
                if product is None:
                    raise NotFoundError(f'Produto com ID {product_id} não encontrado.')
                new_quantity = product['quantity'] + delta
                if new_quantity < 0:
                    raise InsufficientStockError(f"Estoque insuficiente para {product['name']}.")
                if delta:
                    cursor.execute('UPDATE products SET quantity = ? WHERE id = ?', (new_quantity, product_id))

            names = {}
            for item in items:
                if item['product_id'] not in names:
                    names[item['product_id']] = _fetch_product(cursor, item['product_id'])['name']
                item['product_name'] = names[item['product_id']]

            cursor.execute('DELETE FROM order_items WHERE order_id = ?', (order_id,))
            _insert_items(cursor, order_id, items)

        cursor.execute('''
            UPDATE orders SET customer_name = ?, address = ?, delivery_date = ?, notes = ?
            WHERE id = ?
        ''', (header['customer_name'], header['address'], header['delivery_date'], header['notes'], order_id))

    order = dict(original, **header)
    order['items'] = items
    return order


def _append_note(current, note):
    note = (note or '').strip()
    if not note:
        return current
    return f'{current}{NOTE_SEPARATOR}{note}' if current else note


def complete_order(conn, order_id, note=None):
    with atomic(conn) as cursor:
        order = _fetch_order(cursor, order_id)
        if order is None:
            raise NotFoundError('Pedido não encontrado.')
        if order['status'] != 'pending':
            raise OrderStateError('Apenas pedidos pendentes podem ser concluídos.')
        order['status'] = 'completed'
        order['notes'] = _append_note(order['notes'], note)
        cursor.execute('UPDATE orders SET status = ?, notes = ? WHERE id = ?',
                       (order['status'], order['notes'], order_id))
    return order


def cancel_order(conn, order_id):
    """Cancel a pending order and return its items to stock."""
    with atomic(conn) as cursor:
        order = _fetch_order(cursor, order_id)
        if order is None:
            raise NotFoundError('Pedido não encontrado.')
        if order['status'] != 'pending':
            raise OrderStateError('Apenas pedidos pendentes podem ser cancelados.')
        _restore_stock(cursor, order['items'])
        order['status'] = 'cancelled'
        cursor.execute('UPDATE orders SET status = ? WHERE id = ?', (order['status'], order_id))
    logger.info('Order %s cancelled; stock restored', order_id)
    return order


def update_order_status(conn, order_id, status, note=None):
    if status == 'completed':
        return complete_order(conn, order_id, note)
    if status == 'cancelled':
        return cancel_order(conn, order_id)
    raise ValidationError("Status inválido. Use 'completed' ou 'cancelled'.")


def add_order_note(conn, order_id, note):
    if not (note or '').strip():
        raise ValidationError('A observação não pode estar vazia.')
    with atomic(conn) as cursor:
        order = _fetch_order(cursor, order_id)
        if order is None:
            raise NotFoundError('Pedido não encontrado.')
        order['notes'] = _append_note(order['notes'], note)
        cursor.execute('UPDATE orders SET notes = ? WHERE id = ?', (order['notes'], order_id))
    return order


def delete_order(conn, order_id):
    """Delete an order; pending orders give their items back to stock."""
    with atomic(conn) as cursor:
        order = _fetch_order(cursor, order_id)
        if order is None:
            raise NotFoundError('Pedido não encontrado.')
        if order['status'] == 'pending':
            _restore_stock(cursor, order['items'])
        cursor.execute('DELETE FROM order_items WHERE order_id = ?', (order_id,))
        cursor.execute('DELETE FROM orders WHERE id = ?', (order_id,))
    logger.info('Order %s deleted (status %s)', order_id, order['status'])
    return order
