import os
import sys
import shutil
from datetime import date, timedelta

from inventory_store import atomic, build_product_fields, default_db_path, get_db_connection, init_db, upsert_product

BACKUP_SUFFIX = '.bak'

# Expiration dates are kept relative to the seeding day so the catalogue never starts out expired
SEED_PRODUCTS = [
    {'id': 'prod_001', 'name': 'Vinho Tinto Cabernet', 'pack_type': 'case', 'units_per_pack': 6,
     'pack_quantity': 5, 'price': 75.50, 'expires_in_days': 420},
    {'id': 'prod_002', 'name': 'Cerveja Artesanal IPA', 'pack_type': 'bundle', 'units_per_pack': 12,
     'pack_quantity': 12, 'price': 12.99, 'expires_in_days': 60},
    {'id': 'prod_003', 'name': 'Whisky Escocês 12 Anos', 'pack_type': 'unit', 'quantity': 15,
     'price': 189.90, 'expires_in_days': 1800},
    {'id': 'prod_004', 'name': 'Refrigerante de Cola', 'pack_type': 'bundle', 'units_per_pack': 6,
     'pack_quantity': 3, 'price': 5.00, 'expires_in_days': 10},
    {'id': 'prod_005', 'name': 'Água Mineral com Gás', 'pack_type': 'bundle', 'units_per_pack': 12,
     'pack_quantity': 16, 'price': 3.50, 'expires_in_days': 280},
    {'id': 'prod_006', 'name': 'Suco de Laranja Integral', 'pack_type': 'case', 'units_per_pack': 8,
     'pack_quantity': 5, 'price': 8.75, 'expires_in_days': 25},
    {'id': 'prod_007', 'name': 'Vodka Premium', 'pack_type': 'unit', 'quantity': 25,
     'price': 95.00, 'expires_in_days': 1300},
    {'id': 'prod_008', 'name': 'Champanhe Brut', 'pack_type': 'unit', 'quantity': 10,
     'price': 250.00, 'expires_in_days': 580},
]


def seed_products(conn, today=None):
    """Upsert the seed catalogue; returns the stored products."""
    today = today or date.today()
    init_db(conn)
    products = []
    for seed in SEED_PRODUCTS:
        data = {k: v for k, v in seed.items() if k != 'expires_in_days'}
        data['expiration_date'] = (today + timedelta(days=seed['expires_in_days'])).isoformat()
        product = build_product_fields(data)
        product['id'] = seed['id']
        products.append(product)
    with atomic(conn) as cursor:
        for product in products:
            upsert_product(cursor, product)
    return products


def backup_db(db_path: str) -> str:
    backup_path = db_path + BACKUP_SUFFIX
    shutil.copy2(db_path, backup_path)
    return backup_path


def main(db_path=None):
    db_path = db_path or default_db_path()

    if os.path.exists(db_path):
        backup_path = backup_db(db_path)
        print(f"Backup created: {backup_path}")

    conn = get_db_connection(db_path)
    try:
        products = seed_products(conn)
    finally:
        conn.close()

    print(f"Seeded {len(products)} products into {db_path}")
    print("Sample products (id, name, quantity, expiration_date):")
    for p in products[:5]:
        print(f"  {p['id']}: {p['name']} -> {p['quantity']} units, expires {p['expiration_date']}")
    return products


if __name__ == '__main__':
    main(sys.argv[1] if len(sys.argv) > 1 else None)
