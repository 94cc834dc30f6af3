import pathlib
import sqlite3
import sys
import unittest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from database import DRIFT_COLUMNS, create_schema


class DatabaseSchemaTests(unittest.TestCase):
    def setUp(self):
        self.conn = sqlite3.connect(':memory:')
        self.conn.row_factory = sqlite3.Row

    def tearDown(self):
        self.conn.close()

    def _columns(self, table):
        return {row[1] for row in self.conn.execute(f"PRAGMA table_info({table})").fetchall()}

    def test_create_schema_builds_every_table(self):
        create_schema(self.conn)
        tables = {
            row[0] for row in self.conn.execute("SELECT name FROM sqlite_master WHERE type='table'").fetchall()
        }
        for table in (
            'contacts', 'orders', 'order_items', 'quotes', 'quote_items', 'tasks',
            'enquiries', 'recipes', 'ingredients', 'recipe_ingredients', 'products',
        ):
            self.assertIn(table, tables)

    def test_create_schema_is_idempotent(self):
        create_schema(self.conn)
        create_schema(self.conn)
        self.assertIn('amount_paid', self._columns('orders'))

    def test_money_columns_hold_text(self):
        create_schema(self.conn)
        money = {
            'orders': ('total', 'delivery_fee', 'amount_paid'),
            'order_items': ('price', 'cost_price'),
            'quotes': ('total', 'delivery_fee'),
            'products': ('price', 'cost'),
            'ingredients': ('unit_cost',),
        }
        for table, columns in money.items():
            declared = {row[1]: row[2] for row in self.conn.execute(f"PRAGMA table_info({table})").fetchall()}
            for column in columns:
                self.assertEqual(declared[column], 'TEXT', f"{table}.{column}")

        self.conn.execute("INSERT INTO orders (order_number, event_date, total) VALUES ('T-1', '2025-01-01', '12.50')")
        total = self.conn.execute("SELECT total FROM orders").fetchone()['total']
        self.assertEqual(total, '12.50')

    def test_drifted_tables_are_backfilled(self):
        self.conn.execute(
            """
            CREATE TABLE orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL DEFAULT 1,
                order_number TEXT NOT NULL,
                event_date TEXT NOT NULL,
                status TEXT,
                total REAL
            )
            """
        )
        self.conn.execute(
            "INSERT INTO orders (order_number, event_date, status, total) VALUES ('OLD-1', '2024-12-24', 'Delivered', 90)"
        )
        self.conn.commit()

        create_schema(self.conn)

        columns = self._columns('orders')
        for name in DRIFT_COLUMNS['orders']:
            self.assertIn(name, columns)
        row = self.conn.execute("SELECT order_number, amount_paid FROM orders").fetchone()
        self.assertEqual(row['order_number'], 'OLD-1')
        self.assertEqual(row['amount_paid'], '0.00')

    def test_order_numbers_are_unique_per_user(self):
        create_schema(self.conn)
        self.conn.execute("INSERT INTO orders (user_id, order_number, event_date) VALUES (1, 'N-1', '2025-01-01')")
        self.conn.execute("INSERT INTO orders (user_id, order_number, event_date) VALUES (2, 'N-1', '2025-01-01')")
        with self.assertRaises(sqlite3.IntegrityError):
            self.conn.execute("INSERT INTO orders (user_id, order_number, event_date) VALUES (1, 'N-1', '2025-01-02')")

    def test_quote_numbers_are_unique_per_user(self):
        create_schema(self.conn)
        self.conn.execute("INSERT INTO quotes (user_id, quote_number, event_date) VALUES (1, 'Q-1', '2025-01-01')")
        with self.assertRaises(sqlite3.IntegrityError):
            self.conn.execute("INSERT INTO quotes (user_id, quote_number, event_date) VALUES (1, 'Q-1', '2025-01-01')")


if __name__ == '__main__':
    unittest.main()
