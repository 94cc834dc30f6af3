import pathlib
import sqlite3
import sys
import unittest

PROJECT_ROOT = pathlib.Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from services.entities import EntityKind
from services.errors import ReferenceCreationError
from services.reference_resolver import (
    PLACEHOLDER_ORDER_NOTE,
    BatchContext,
    ReferenceKey,
    ReferenceResolver,
    SchemaShape,
)
from services.storage import ColumnInfo, SqliteStorage


class ReferenceResolverTests(unittest.TestCase):
    def setUp(self):
        self.conn = sqlite3.connect(':memory:')
        self.conn.row_factory = sqlite3.Row
        self.conn.execute(
            """
            CREATE TABLE contacts (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL DEFAULT 1,
                first_name TEXT NOT NULL,
                last_name TEXT NOT NULL DEFAULT '',
                email TEXT,
                notes TEXT
            )
            """
        )
        self.conn.execute(
            """
            CREATE TABLE orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id INTEGER NOT NULL DEFAULT 1,
                order_number TEXT NOT NULL,
                status TEXT NOT NULL,
                event_date TEXT NOT NULL,
                total REAL NOT NULL DEFAULT 0,
                notes TEXT
            )
            """
        )
        self.storage = SqliteStorage(self.conn)

    def tearDown(self):
        self.conn.close()

    def _resolver(self, user_id=1):
        return ReferenceResolver(BatchContext(storage=self.storage, user_id=user_id))

    def test_placeholder_order_is_created_once_per_batch(self):
        resolver = self._resolver()
        first = resolver.resolve(EntityKind.ORDERS, "ORD-999")
        second = resolver.resolve(EntityKind.ORDERS, "ORD-999")

        self.assertEqual(first, second)
        rows = self.conn.execute("SELECT order_number, status, notes FROM orders").fetchall()
        self.assertEqual(len(rows), 1)
        self.assertEqual(rows[0]['order_number'], 'ORD-999')
        self.assertEqual(rows[0]['status'], 'Draft')
        self.assertEqual(rows[0]['notes'], PLACEHOLDER_ORDER_NOTE)

    def test_existing_order_is_found_in_store(self):
        self.conn.execute(
            "INSERT INTO orders (user_id, order_number, status, event_date) VALUES (1, 'ORD-1', 'Confirmed', '2025-01-01')"
        )
        resolver = self._resolver()
        found = resolver.lookup(EntityKind.ORDERS, "ORD-1")

        self.assertIsNotNone(found)
        self.assertEqual(resolver.resolve(EntityKind.ORDERS, "ORD-1"), found)
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0], 1)

    def test_lookup_is_scoped_to_user(self):
        self.conn.execute(
            "INSERT INTO orders (user_id, order_number, status, event_date) VALUES (2, 'ORD-1', 'Draft', '2025-01-01')"
        )
        self.assertIsNone(self._resolver(user_id=1).lookup(EntityKind.ORDERS, "ORD-1"))
        self.assertIsNotNone(self._resolver(user_id=2).lookup(EntityKind.ORDERS, "ORD-1"))

    def test_contacts_match_email_case_insensitively(self):
        self.conn.execute("INSERT INTO contacts (first_name, email) VALUES ('Sam', 'sam@example.com')")
        resolver = self._resolver()
        key = ReferenceKey.for_contact(email="SAM@Example.com")
        self.assertIsNotNone(resolver.lookup(EntityKind.CONTACTS, key))

    def test_contacts_fall_back_to_name_match(self):
        self.conn.execute("INSERT INTO contacts (first_name, last_name) VALUES ('Robin', 'Hood')")
        resolver = self._resolver()
        key = ReferenceKey.for_contact(first_name="robin", last_name="HOOD")
        self.assertIsNotNone(resolver.lookup(EntityKind.CONTACTS, key))

    def test_blank_contact_reference_resolves_to_none(self):
        resolver = self._resolver()
        self.assertIsNone(resolver.resolve(EntityKind.CONTACTS, None, {}))
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM contacts").fetchone()[0], 0)

    def test_blank_order_number_gets_synthesized(self):
        resolver = self._resolver()
        resolver.resolve(EntityKind.ORDERS, "")
        number = self.conn.execute("SELECT order_number FROM orders").fetchone()[0]
        self.assertTrue(number.startswith('AUTO-'))

    def test_lookup_does_not_create(self):
        resolver = self._resolver()
        self.assertIsNone(resolver.lookup(EntityKind.ORDERS, "ORD-404"))
        self.assertEqual(self.conn.execute("SELECT COUNT(*) FROM orders").fetchone()[0], 0)


class SchemaDriftTests(unittest.TestCase):
    def setUp(self):
        self.conn = sqlite3.connect(':memory:')
        self.conn.row_factory = sqlite3.Row
        self.storage = SqliteStorage(self.conn)

    def tearDown(self):
        self.conn.close()

    def test_placeholder_skips_unknown_columns_and_fills_not_null(self):
        # No theme/delivery columns, and a mandatory column the resolver knows nothing about.
        self.conn.execute(
            """
            CREATE TABLE orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_number TEXT NOT NULL,
                status TEXT,
                event_date TEXT,
                kitchen_code TEXT NOT NULL,
                oven_slot INTEGER NOT NULL
            )
            """
        )
        resolver = ReferenceResolver(BatchContext(storage=self.storage))
        resolver.resolve(EntityKind.ORDERS, "ORD-5")

        row = self.conn.execute("SELECT * FROM orders").fetchone()
        self.assertEqual(row['order_number'], 'ORD-5')
        self.assertEqual(row['kitchen_code'], '')
        self.assertEqual(row['oven_slot'], 0)

    def test_failed_placeholder_write_raises_reference_creation_error(self):
        self.conn.execute(
            """
            CREATE TABLE orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                order_number TEXT NOT NULL,
                status TEXT NOT NULL CHECK (status <> 'Draft')
            )
            """
        )
        resolver = ReferenceResolver(BatchContext(storage=self.storage))
        with self.assertRaises(ReferenceCreationError) as ctx:
            resolver.resolve(EntityKind.ORDERS, "ORD-6")
        self.assertIn('ORD-6', str(ctx.exception))

    def test_missing_table_raises_reference_creation_error(self):
        resolver = ReferenceResolver(BatchContext(storage=self.storage))
        with self.assertRaises(ReferenceCreationError):
            resolver.resolve(EntityKind.ORDERS, "ORD-7")

    def test_schema_shape_prepare(self):
        shape = SchemaShape(
            table='things',
            columns=(
                ColumnInfo('id', 'INTEGER', not_null=False, primary_key=True),
                ColumnInfo('name', 'TEXT', not_null=True),
                ColumnInfo('price', 'REAL', not_null=True, has_default=True),
            ),
        )
        prepared = shape.prepare({'colour': 'red', 'price': None})
        self.assertEqual(prepared, {'price': None, 'name': ''})


if __name__ == '__main__':
    unittest.main()
