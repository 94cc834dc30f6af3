from datetime import date

import pytest

from services.entities import EntityKind
from services.errors import MissingRequiredFieldError
from services.field_normalizer import accepted_headers, describe_fields, is_blank_row, normalize, resolves_to
from services.sanitizers import POLICY_DATE_TODAY, today


def test_order_aliases_resolve_to_canonical_fields():
    record = normalize(
        {
            "Order Number": "ORD-1001",
            "Customer Name": "Jamie Baker",
            "Customer Email": "Jamie@Example.com",
            "Event Date": "19 May 2025",
            "Order Total": "£120.5",
            "Delivery Amount": "7.5",
            "Status": "Confirmed",
        },
        EntityKind.ORDERS,
    )

    assert record["order_number"] == "ORD-1001"
    assert record["contact_name"] == "Jamie Baker"
    assert record["contact_email"] == "Jamie@Example.com"
    assert record["event_date"] == date(2025, 5, 19)
    assert record["total"] == "120.50"
    assert record["delivery_fee"] == "7.50"
    assert record["event_type"] == "Other"
    assert record.warnings == []


def test_header_matching_ignores_case_and_punctuation():
    record = normalize({"order_number": "A1", "ORDER  total": "5"}, EntityKind.ORDERS)
    assert record["total"] == "5.00"
    assert resolves_to("Sell Price (excl VAT)", EntityKind.ORDER_ITEMS) == "price"
    assert resolves_to("Mystery Column", EntityKind.ORDER_ITEMS) is None


def test_missing_required_field_raises():
    with pytest.raises(MissingRequiredFieldError) as excinfo:
        normalize({"Status": "Draft", "Total": "10"}, EntityKind.ORDERS)
    assert excinfo.value.field == "order_number"


def test_missing_event_date_defaults_to_today_with_warning():
    record = normalize({"Order Number": "A2"}, EntityKind.ORDERS, timezone="Europe/London")
    assert record["event_date"] == today("Europe/London")
    assert [warning.policy for warning in record.warnings] == [POLICY_DATE_TODAY]
    assert record.warnings[0].field == "event_date"
    assert record.warnings[0].raw_value is None


def test_missing_quote_event_date_is_reported():
    record = normalize({"Quote Number": "Q-2", "Total": "10"}, EntityKind.QUOTES)
    assert [warning.field for warning in record.warnings] == ["event_date"]


def test_missing_optional_dates_stay_quiet():
    record = normalize({"Title": "Pipe roses"}, EntityKind.TASKS)
    assert record.values["due_date"] is None
    assert record.warnings == []


def test_unreadable_event_date_is_reported():
    record = normalize({"Order Number": "A3", "Event Date": "soon"}, EntityKind.ORDERS)
    assert [warning.policy for warning in record.warnings] == [POLICY_DATE_TODAY]


def test_amount_paid_stays_unset_when_absent():
    record = normalize({"Order Number": "A4", "Total": "50"}, EntityKind.ORDERS)
    assert record.values["amount_paid"] is None
    assert record.values["amount_outstanding"] is None


def test_quote_number_falls_back_to_order_number_column():
    record = normalize({"Order Number": "Q-7", "Order Total": "99"}, EntityKind.QUOTES)
    assert record["quote_number"] == "Q-7"
    assert record["total"] == "99.00"


def test_order_item_numbers_are_sanitised():
    record = normalize(
        {"Order Number": "ORD-1", "Item": "Sponge", "Servings": "250", "Qty": "", "Sell Price (excl VAT)": "30"},
        EntityKind.ORDER_ITEMS,
    )
    assert record["servings"] == 99
    assert record["quantity"] == 1
    assert record["price"] == "30.00"
    assert record.values["created_at"] is None


def test_contact_full_name_is_split():
    record = normalize({"Name": "Ada Lovelace King", "Email": "ADA@EXAMPLE.COM"}, EntityKind.CONTACTS)
    assert record["first_name"] == "Ada"
    assert record["last_name"] == "Lovelace King"
    assert record["email"] == "ada@example.com"
    assert "full_name" not in record.values


def test_contact_falls_back_to_business_name():
    record = normalize({"Company": "Flour Power Ltd"}, EntityKind.CONTACTS)
    assert record["first_name"] == "Flour Power Ltd"


def test_contact_without_any_name_is_rejected():
    with pytest.raises(MissingRequiredFieldError):
        normalize({"Email": "nobody@example.com"}, EntityKind.CONTACTS)


def test_task_completed_flag():
    record = normalize({"Task": "Order boxes", "Completed": "yes"}, EntityKind.TASKS)
    assert record["title"] == "Order boxes"
    assert record["completed"] is True
    assert record["priority"] == "Medium"


def test_blank_row_detection():
    assert is_blank_row({"Order Number": "", "Total": "   "})
    assert not is_blank_row({"Order Number": "A1"})


def test_describe_fields_lists_aliases():
    fields = {entry["name"]: entry for entry in describe_fields(EntityKind.ORDERS)}
    assert fields["order_number"]["required"] is True
    assert "Order Number" in fields["order_number"]["aliases"]
    assert "Deposit" in list(accepted_headers(EntityKind.ORDERS))
