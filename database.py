import sqlite3
import logging

# Configure logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

from data_paths import DATA_ROOT, ensure_data_root

ensure_data_root()

DATA_DIR = DATA_ROOT
DATABASE_FILE = DATA_DIR / 'bakery.db'


# Columns added after the first release.  Older databases get them back-filled
# by init_db() so imports never trip over a missing column.  Money columns hold
# decimal text ("12.50"), never REAL.
DRIFT_COLUMNS = {
    'contacts': {
        'updated_at': 'TEXT',
        'business_name': 'TEXT',
        'type': "TEXT DEFAULT 'Customer'",
        'country': 'TEXT',
        'notes': 'TEXT',
    },
    'orders': {
        'contact_id': 'INTEGER',
        'event_type': "TEXT DEFAULT 'Other'",
        'theme': 'TEXT',
        'delivery_type': "TEXT DEFAULT 'Pickup'",
        'delivery_details': 'TEXT',
        'delivery_fee': "TEXT DEFAULT '0.00'",
        'amount_paid': "TEXT DEFAULT '0.00'",
        'deposit_paid': 'INTEGER DEFAULT 0',
        'balance_paid': 'INTEGER DEFAULT 0',
        'notes': 'TEXT',
        'updated_at': 'TEXT',
    },
    'order_items': {
        'servings': 'INTEGER DEFAULT 0',
        'cost_price': "TEXT DEFAULT '0.00'",
        'labour': 'REAL DEFAULT 0',
        'hours': 'REAL DEFAULT 0',
        'overhead': 'REAL DEFAULT 0',
        'recipes': 'TEXT',
        'contact_item': 'TEXT',
    },
    'quotes': {
        'delivery_details': 'TEXT',
        'delivery_fee': "TEXT DEFAULT '0.00'",
        'expiry_date': 'TEXT',
        'updated_at': 'TEXT',
    },
    'enquiries': {
        'contact_id': 'INTEGER',
        'budget': 'TEXT',
    },
    'ingredients': {
        'category': 'TEXT',
        'in_stock': 'INTEGER DEFAULT 1',
        'stock_quantity': 'REAL DEFAULT 0',
        'supplier': 'TEXT',
    },
}


def get_db_connection():
    """Establishes a connection to the SQLite database."""
    ensure_data_root()
    conn = sqlite3.connect(str(DATABASE_FILE), timeout=30.0, isolation_level='DEFERRED')
    try:
        conn.execute("PRAGMA journal_mode=WAL;")
        conn.execute("PRAGMA synchronous=NORMAL;")
        conn.execute("PRAGMA foreign_keys=ON;")
        conn.execute("PRAGMA temp_store=MEMORY;")
    except sqlite3.Error as e:
        logger.warning(f"Could not set PRAGMA settings: {e}")
    conn.row_factory = sqlite3.Row
    return conn


def _backfill_columns(cursor, table, columns):
    cursor.execute(f"PRAGMA table_info({table})")
    existing = {row[1] for row in cursor.fetchall()}
    for name, declaration in columns.items():
        if name not in existing:
            logger.info(f"Adding missing column {table}.{name}")
            cursor.execute(f"ALTER TABLE {table} ADD COLUMN {name} {declaration}")


def create_schema(conn):
    """Creates the bakery tables on ``conn`` and back-fills drifted columns."""
    cursor = conn.cursor()

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS contacts (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL DEFAULT 1,
            first_name TEXT NOT NULL,
            last_name TEXT NOT NULL DEFAULT '',
            business_name TEXT,
            email TEXT,
            phone TEXT,
            type TEXT DEFAULT 'Customer',
            address TEXT,
            city TEXT,
            state TEXT,
            zip TEXT,
            country TEXT,
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_contacts_user_email ON contacts(user_id, email)")

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL DEFAULT 1,
            order_number TEXT NOT NULL,
            contact_id INTEGER REFERENCES contacts(id) ON DELETE SET NULL,
            event_type TEXT NOT NULL DEFAULT 'Other',
            event_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'Draft',
            theme TEXT,
            delivery_type TEXT DEFAULT 'Pickup',
            delivery_details TEXT,
            delivery_fee TEXT DEFAULT '0.00',
            total TEXT NOT NULL DEFAULT '0.00',
            amount_paid TEXT DEFAULT '0.00',
            deposit_paid INTEGER DEFAULT 0,
            balance_paid INTEGER DEFAULT 0,
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS order_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            description TEXT,
            quantity INTEGER NOT NULL DEFAULT 1,
            servings INTEGER DEFAULT 0,
            price TEXT NOT NULL DEFAULT '0.00',
            cost_price TEXT DEFAULT '0.00',
            labour REAL DEFAULT 0,
            hours REAL DEFAULT 0,
            overhead REAL DEFAULT 0,
            recipes TEXT,
            contact_item TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)
    cursor.execute("CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id)")

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS quotes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL DEFAULT 1,
            quote_number TEXT NOT NULL,
            contact_id INTEGER REFERENCES contacts(id) ON DELETE SET NULL,
            event_type TEXT NOT NULL DEFAULT 'Other',
            event_date TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'Draft',
            theme TEXT,
            delivery_type TEXT DEFAULT 'Pickup',
            delivery_details TEXT,
            delivery_fee TEXT DEFAULT '0.00',
            total TEXT NOT NULL DEFAULT '0.00',
            expiry_date TEXT,
            notes TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS quote_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            quote_id INTEGER NOT NULL REFERENCES quotes(id) ON DELETE CASCADE,
            name TEXT NOT NULL,
            description TEXT,
            quantity INTEGER NOT NULL DEFAULT 1,
            servings INTEGER DEFAULT 0,
            price TEXT NOT NULL DEFAULT '0.00',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS tasks (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL DEFAULT 1,
            title TEXT NOT NULL,
            description TEXT,
            due_date TEXT,
            priority TEXT DEFAULT 'Medium',
            completed INTEGER NOT NULL DEFAULT 0,
            order_id INTEGER REFERENCES orders(id) ON DELETE SET NULL,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)

    cursor.execute("""
        CREATE TABLE IF NOT EXISTS enquiries (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL DEFAULT 1,
            contact_id INTEGER REFERENCES contacts(id) ON DELETE SET NULL,
            name TEXT NOT NULL,
            email TEXT,
            phone TEXT,
            event_type TEXT DEFAULT 'Other',
            event_date TEXT,
            budget TEXT,
            message TEXT,
            status TEXT NOT NULL DEFAULT 'Open',
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)

    # Recipes and products are export-only.
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS recipes (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL DEFAULT 1,
            name TEXT NOT NULL,
            description TEXT,
            category TEXT,
            servings INTEGER DEFAULT 0,
            prep_time INTEGER,
            cook_time INTEGER,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS ingredients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL DEFAULT 1,
            name TEXT NOT NULL,
            unit TEXT,
            unit_cost TEXT DEFAULT '0.00',
            category TEXT,
            in_stock INTEGER NOT NULL DEFAULT 1,
            stock_quantity REAL DEFAULT 0,
            supplier TEXT,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS recipe_ingredients (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            recipe_id INTEGER NOT NULL REFERENCES recipes(id) ON DELETE CASCADE,
            ingredient_id INTEGER NOT NULL REFERENCES ingredients(id) ON DELETE CASCADE,
            quantity REAL DEFAULT 0,
            notes TEXT
        );
    """)
    cursor.execute("""
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            user_id INTEGER NOT NULL DEFAULT 1,
            name TEXT NOT NULL,
            type TEXT,
            description TEXT,
            servings INTEGER DEFAULT 0,
            price TEXT DEFAULT '0.00',
            cost TEXT DEFAULT '0.00',
            active INTEGER NOT NULL DEFAULT 1,
            created_at TEXT DEFAULT CURRENT_TIMESTAMP
        );
    """)

    for table, columns in DRIFT_COLUMNS.items():
        _backfill_columns(cursor, table, columns)

    # Business numbers are unique per user; a concurrent duplicate import
    # fails on these instead of writing a second row.
    cursor.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_orders_user_number ON orders(user_id, order_number)"
    )
    cursor.execute(
        "CREATE UNIQUE INDEX IF NOT EXISTS idx_quotes_user_number ON quotes(user_id, quote_number)"
    )

    for table in ('contacts', 'orders', 'quotes'):
        cursor.execute(
            f"CREATE TRIGGER IF NOT EXISTS update_{table}_updated_at AFTER UPDATE ON {table} "
            f"FOR EACH ROW BEGIN UPDATE {table} SET updated_at = CURRENT_TIMESTAMP WHERE id = OLD.id; END;"
        )

    conn.commit()


def init_db():
    """Initializes the database schema."""
    conn = get_db_connection()
    try:
        create_schema(conn)
        logger.info(f"Database initialized at {DATABASE_FILE}")
    except sqlite3.Error as e:
        conn.rollback()
        logger.error(f"Database initialization failed: {e}")
        raise
    finally:
        conn.close()


if __name__ == '__main__':
    init_db()
