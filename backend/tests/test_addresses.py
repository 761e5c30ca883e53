"""
Tests for address normalization helpers.
"""
import pytest

from einvoice.services.mapping import split_address_lines, to_state_code


@pytest.mark.parametrize("state, expected", [
    ("Selangor", "10"),
    ("  selangor ", "10"),
    ("Pulau Pinang", "07"),
    ("Penang", "07"),
    ("W.P. Kuala Lumpur", "14"),
    ("Wilayah Persekutuan Labuan", "15"),
    ("Federal Territory of Putrajaya", "16"),
    ("5", "05"),
    ("14", "14"),
    (10, "10"),
    ("N/A", "17"),
])
def test_to_state_code(state, expected):
    assert to_state_code(state) == expected


@pytest.mark.parametrize("state", [None, "", "18", "0", "Atlantis"])
def test_to_state_code_unknown(state):
    assert to_state_code(state) is None


def test_split_on_commas_and_newlines():
    assert split_address_lines("Lot 5, Persiaran Teknologi\nShah Alam") == [
        "Lot 5",
        "Persiaran Teknologi",
        "Shah Alam",
    ]


def test_split_run_on_line_before_street_tokens():
    lines = split_address_lines("12A Jalan Bukit Bintang Taman Maju")
    assert lines == ["12A", "Jalan Bukit Bintang", "Taman Maju"]


def test_numbered_prefix_gets_trailing_comma():
    assert split_address_lines("No. 8, Jalan Tun Razak") == ["No. 8,", "Jalan Tun Razak"]


def test_repeated_country_and_duplicates_are_dropped():
    lines = split_address_lines("Jalan Ampang, Malaysia, Jalan Ampang, MYS")
    assert lines == ["Jalan Ampang", "Malaysia"]


def test_na_and_empty_input():
    assert split_address_lines("NA") == ["NA"]
    assert split_address_lines("   ") == ["NA"]
    assert split_address_lines("") == []
    assert split_address_lines(None) == []
