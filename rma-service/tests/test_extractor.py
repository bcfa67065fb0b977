"""
Extractor Module Tests
======================

Purpose
-------
Validate device identifier extraction from ticket text: both identifier
families, separator handling, de-duplication and the search renderings used
by the Teams matcher.

Scope
-----
- Pure functions only. No I/O.
"""

# -----------------------------------------------------------------------------
# Libraries
# -----------------------------------------------------------------------------

# Third-party libraries
import pytest             # Pytest framework for isolated and reproducible testing

# Local modules
from extractor import TicketText, extract_device_ids, is_reserved_prefix_id, search_variants


# ----------------------------
# Unit Test: Numeric identifiers
# ----------------------------
@pytest.mark.parametrize("text", [
    "Return for VID 1234567890 please",
    "Serial # 1234567890",
    "Device ID: 1234567890",
    "unit 1234567890 stopped charging",
    "unit 1234-567-890 stopped charging",
])
def test_numeric_identifier_is_extracted(text):
    """
    A ten-digit identifier is found whether bare, labeled or grouped.
    """
    assert "1234567890" in extract_device_ids(TicketText(description=text))


def test_short_digit_runs_are_ignored():
    """
    Nine digits never qualify as an identifier.
    """
    assert extract_device_ids(TicketText(subject="Order 123456789 arrived late")) == []


# ----------------------------
# Unit Test: Reserved-prefix identifiers
# ----------------------------
def test_reserved_prefix_with_separators_is_compacted():
    """
    Dashes inside a reserved-prefix identifier are removed and the trailing
    words swallowed by the greedy rule are cut off.
    """
    ids = extract_device_ids(TicketText(description="Unit 5A12-34-5678 failed"))
    assert ids == ["5A12345678"]


def test_reserved_prefix_is_upper_cased():
    """
    Lower-case input is normalized to the canonical upper-case form.
    """
    ids = extract_device_ids(TicketText(subject="device 5a1234abcd"))
    assert ids == ["5A1234ABCD"]


# ----------------------------
# Unit Test: Aggregation
# ----------------------------
def test_duplicates_across_sources_are_folded():
    """
    The same identifier in subject, description and a conversation body is
    reported once.
    """
    text = TicketText(
        subject="RMA for 1234567890",
        description="Device 1234567890 is broken",
        conversation_bodies=["Any update on 1234567890?", None],
    )
    assert extract_device_ids(text) == ["1234567890"]


def test_result_is_sorted_and_idempotent():
    """
    The output is sorted and extracting twice yields the same list.
    """
    text = TicketText(description="units 9876543210 and 1234567890 and 5A12345678")
    first = extract_device_ids(text)
    assert first == sorted(first)
    assert first == extract_device_ids(text)
    assert set(first) >= {"1234567890", "9876543210", "5A12345678"}


def test_custom_field_contributes_bare_numbers():
    """
    The associated-devices custom field is scanned for bare ten-digit values.
    """
    text = TicketText(subject="Return", custom_field="1234567890, 2345678901")
    assert extract_device_ids(text) == ["1234567890", "2345678901"]


def test_empty_ticket_yields_empty_list():
    """
    No text means no identifiers, and no error.
    """
    assert extract_device_ids(TicketText()) == []


# ----------------------------
# Unit Test: Helpers
# ----------------------------
def test_is_reserved_prefix_id():
    """
    Only compact reserved-prefix identifiers qualify.
    """
    assert is_reserved_prefix_id("5A12345678")
    assert not is_reserved_prefix_id("1234567890")
    assert not is_reserved_prefix_id("5A1234")
    assert not is_reserved_prefix_id("")


def test_search_variants_cover_common_groupings():
    """
    A ten-character identifier yields its compact form followed by spaced,
    dashed and dotted groupings.
    """
    assert search_variants("5A12345678") == [
        "5a12345678",
        "5a 1234 5678",
        "5a-1234-5678",
        "5a.1234.5678",
        "5a12 345 678",
        "5a12-345-678",
        "5a12.345.678",
    ]


def test_search_variants_for_other_lengths_is_compact_only():
    """
    Identifiers of any other length are matched verbatim.
    """
    assert search_variants("AB-12") == ["ab12"]


# ----------------------------
# Unit Test: Non-ASCII digits
# ----------------------------
@pytest.mark.parametrize("text", [
    "serial １２３４５６７８９０",
    "device ١٢٣٤٥٦٧٨٩٠",
    "unit ١٢٣٤-٥٦٧-٨٩٠",
    "VID ١٢٣٤٥٦٧٨٩٠",
])
def test_non_ascii_digit_runs_are_ignored(text):
    """
    Full-width and Arabic-Indic digits never form an identifier.
    """
    assert extract_device_ids(TicketText(description=text)) == []


def test_non_ascii_digits_next_to_ascii_id_do_not_leak():
    """
    An ASCII identifier is still found beside non-ASCII digit runs, and only
    it is reported.
    """
    text = TicketText(description="serial １２３４５６７８９０ and 1234567890", custom_field="١٢٣٤٥٦٧٨٩٠")
    assert extract_device_ids(text) == ["1234567890"]
