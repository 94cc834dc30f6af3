import pytest

from services.entities import CanonicalRecord, EntityKind
from services.legacy_format import BAKE_DIARY, LegacyFormatAdapter, get_legacy_format


BAKE_DIARY_EXPORT = {
    "version": 3,
    "data": {
        "customers": [
            {"id": 11, "firstName": "Priya", "lastName": "Shah", "email": "priya@example.com"},
            {"id": 12, "firstName": "Tom", "lastName": "Jones", "email": "tom@example.com", "country": "Ireland"},
        ],
        "orders": [
            {
                "id": 501,
                "orderNumber": "BD-501",
                "customerId": 11,
                "status": "Booked",
                "eventType": "Hen Do",
                "eventDate": "2025-06-14",
                "total": "85.00",
                "items": [
                    {"id": 1, "name": "Cupcakes", "quantity": 12, "price": "3.50"},
                    {"id": 2, "name": "Topper", "quantity": 1, "price": "43.00"},
                ],
            },
            {"id": 502, "customerId": 12, "status": "", "eventDate": "2025-07-01", "total": "40"},
        ],
        "tasks": [{"title": "Buy ribbon", "orderId": 501}],
        "enquiries": [{"customerId": 12, "message": "Do you do vegan?", "status": "New"}],
        "recipes": [{"name": "Victoria sponge"}, {"name": "Brownies"}],
    },
}


def test_get_legacy_format_by_name_or_label():
    assert get_legacy_format("bake-diary") is BAKE_DIARY
    assert get_legacy_format("Bake Diary") is BAKE_DIARY
    with pytest.raises(ValueError):
        get_legacy_format("cake-planner-9000")


def test_extract_links_customers_and_flattens_items():
    dataset = LegacyFormatAdapter().extract(BAKE_DIARY_EXPORT)

    contacts = dataset.records[EntityKind.CONTACTS]
    assert [contact["email"] for contact in contacts] == ["priya@example.com", "tom@example.com"]
    assert contacts[0]["country"] == "United Kingdom"
    assert contacts[1]["country"] == "Ireland"
    assert all("id" not in contact for contact in contacts)

    orders = dataset.records[EntityKind.ORDERS]
    assert orders[0]["orderNumber"] == "BD-501"
    assert orders[0]["contact_email"] == "priya@example.com"
    assert orders[0]["contact_name"] == "Priya Shah"
    assert "items" not in orders[0]
    assert orders[1]["orderNumber"].startswith("ORD-")

    items = dataset.records[EntityKind.ORDER_ITEMS]
    assert [item["order_number"] for item in items] == ["BD-501", "BD-501"]

    assert dataset.records[EntityKind.TASKS][0]["order_number"] == "BD-501"

    enquiry = dataset.records[EntityKind.ENQUIRIES][0]
    assert enquiry["name"] == "Tom Jones"
    assert enquiry["email"] == "tom@example.com"


def test_extract_reports_ignored_collections():
    dataset = LegacyFormatAdapter().extract(BAKE_DIARY_EXPORT)
    assert dataset.notes == ["Skipped 2 recipes record(s); Bake Diary recipes are not imported."]


def test_plan_follows_import_order():
    dataset = LegacyFormatAdapter().extract(BAKE_DIARY_EXPORT)
    kinds = [kind for kind, _ in dataset.plan()]
    assert kinds == [
        EntityKind.CONTACTS,
        EntityKind.ORDERS,
        EntityKind.ORDER_ITEMS,
        EntityKind.TASKS,
        EntityKind.ENQUIRIES,
    ]
    assert [kind for kind, _ in dataset.plan([EntityKind.ORDERS])] == [EntityKind.ORDERS]


@pytest.mark.parametrize(
    "kind, field, raw, expected",
    [
        (EntityKind.ORDERS, "status", "Booked", "Confirmed"),
        (EntityKind.ORDERS, "status", "collected", "Delivered"),
        (EntityKind.ORDERS, "status", "", "Draft"),
        (EntityKind.ORDERS, "status", "Quote", "Draft"),
        (EntityKind.ORDERS, "status", "something odd", "Draft"),
        (EntityKind.ORDERS, "event_type", "stag", "Hen/Stag"),
        (EntityKind.ORDERS, "event_type", "baby shower", "Baby Shower"),
        (EntityKind.ORDERS, "event_type", "Bar Mitzvah", "Other"),
        (EntityKind.QUOTES, "status", "canceled", "Cancelled"),
        (EntityKind.ENQUIRIES, "status", "Waiting", "Waiting for Reply"),
        (EntityKind.ENQUIRIES, "status", "converted", "Converted to Order"),
    ],
)
def test_apply_maps_enumerations(kind, field, raw, expected):
    record = CanonicalRecord(kind=kind, values={field: raw})
    LegacyFormatAdapter().apply(record)
    assert record[field] == expected


def test_apply_leaves_unmapped_kinds_alone():
    record = CanonicalRecord(kind=EntityKind.CONTACTS, values={"type": "Supplier"})
    LegacyFormatAdapter().apply(record)
    assert record["type"] == "Supplier"
