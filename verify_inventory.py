import sys
from datetime import date, timedelta

from inventory_store import default_db_path, get_db_connection
from restock_engine import EXPIRATION_ALERT_DAYS


def verify(conn, today=None):
    """Count stock invariant violations and products close to expiration."""
    today = today or date.today()
    limit = (today + timedelta(days=EXPIRATION_ALERT_DAYS)).isoformat()
    cur = conn.cursor()

    cur.execute("SELECT COUNT(*) FROM products WHERE quantity < 0")
    negative = cur.fetchone()[0]

    cur.execute("SELECT COUNT(*) FROM products WHERE expiration_date < ?", (limit,))
    expiring = cur.fetchone()[0]

    cur.execute("SELECT id, name, quantity, expiration_date FROM products ORDER BY expiration_date LIMIT 10")
    sample = [tuple(r) for r in cur.fetchall()]

    return {'negative_stock': negative, 'expiring_soon': expiring, 'sample': sample}


def main(db_path=None):
    con = get_db_connection(db_path or default_db_path())
    try:
        report = verify(con)
    finally:
        con.close()

    print('Negative stock products:', report['negative_stock'])
    print(f'Expiring within {EXPIRATION_ALERT_DAYS} days:', report['expiring_soon'])
    print('Sample rows:')
    for r in report['sample']:
        print(r)
    return report


if __name__ == '__main__':
    main(sys.argv[1] if len(sys.argv) > 1 else None)
