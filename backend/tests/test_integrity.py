import os
import sys

sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))

from autofix.services.integrity import check_collection


def test_missing_value_is_empty_and_clean():
    result = check_collection("requests", None)
    assert result.records == []
    assert result.corrupted is False


def test_record_list_passes_through():
    rows = [{"id": "1", "customer_id": "c", "mechanic_id": "m"}]
    result = check_collection("requests", rows)
    assert result.records == rows
    assert result.corrupted is False


def test_bare_string_entries_are_corrupted():
    result = check_collection("requests", ["1700000000000", "1700000000001"])
    assert result.corrupted is True
    assert result.records == []


def test_any_collection_is_guarded():
    result = check_collection("messages", ["abc"])
    assert result.corrupted is True


def test_non_list_value_is_corrupted():
    result = check_collection("customers", {"id": "1"})
    assert result.corrupted is True
    assert "dict" in result.reason


def test_empty_list_is_clean():
    result = check_collection("reviews", [])
    assert result.corrupted is False
    assert result.records == []
