# scripts/check_db.py
# Проверяет подключение к DATABASE_URL и наличие таблиц заказов
from sqlalchemy import inspect, text
from orderflow.core.config import settings
from orderflow.db.session import make_engine

REQUIRED_TABLES = ("users", "products", "orders", "order_items", "order_status_history", "refund_records")

def main():
    url = settings.DATABASE_URL
    print('Trying to connect to:', url)
    engine = make_engine(url)
    try:
        with engine.connect() as conn:
            print('Connection OK, SELECT 1 ->', conn.execute(text("SELECT 1")).scalar())
        existing = set(inspect(engine).get_table_names())
        missing = [t for t in REQUIRED_TABLES if t not in existing]
        if missing:
            print('Missing tables (run `alembic upgrade head`):', ', '.join(missing))
        else:
            print('All order tables present')
    except Exception as e:
        print('Connection failed:', e)

if __name__ == '__main__':
    main()
