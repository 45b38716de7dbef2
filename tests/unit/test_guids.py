"""Unit tests for MS <-> IFC GUID conversion."""

from __future__ import annotations

from uuid import uuid4

import pytest

from assemblyqc.core.errors import ValidationFailure
from assemblyqc.lifecycle.guids import (
    ifc_to_ms_guid,
    is_ifc_guid,
    ms_to_ifc_guid,
    normalize_guid,
)

KNOWN_PAIRS = [
    ("00000000-0000-0000-0000-000000000000", "0000000000000000000000"),
    ("00000000-0000-0000-0000-000000000040", "0000000000000000000010"),
    ("ffffffff-ffff-ffff-ffff-ffffffffffff", "3" + "$" * 21),
    ("2a1f7c3e-9b5d-4e0f-8a6b-1c2d3e4f5061", "0g7tm_crrE3ufh72q_Jr1X"),
]


@pytest.mark.parametrize("ms_guid,ifc_guid", KNOWN_PAIRS)
def test_known_pairs(ms_guid, ifc_guid):
    assert ms_to_ifc_guid(ms_guid) == ifc_guid
    assert ifc_to_ms_guid(ifc_guid) == ms_guid


def test_braces_case_and_missing_hyphens_are_accepted():
    expected = "0g7tm_crrE3ufh72q_Jr1X"

    assert ms_to_ifc_guid("{2A1F7C3E-9B5D-4E0F-8A6B-1C2D3E4F5061}") == expected
    assert ms_to_ifc_guid("2a1f7c3e9b5d4e0f8a6b1c2d3e4f5061") == expected


def test_random_uuid_survives_both_directions():
    value = str(uuid4())

    ifc = ms_to_ifc_guid(value)

    assert is_ifc_guid(ifc)
    assert ifc_to_ms_guid(ifc) == value


@pytest.mark.parametrize("bad", ["", "not-a-guid", "2a1f7c3e-9b5d-4e0f-8a6b-1c2d3e4f506"])
def test_invalid_ms_guid(bad):
    with pytest.raises(ValidationFailure):
        ms_to_ifc_guid(bad)


@pytest.mark.parametrize(
    "bad",
    [
        "0g7tm_crrE3ufh72q_Jr1",  # 21 characters
        "4g7tm_crrE3ufh72q_Jr1X",  # first character above 2 bits
        "0g7tm-crrE3ufh72q_Jr1X",  # '-' is not in the alphabet
    ],
)
def test_invalid_ifc_guid(bad):
    with pytest.raises(ValidationFailure):
        ifc_to_ms_guid(bad)


def test_normalize_guid():
    assert normalize_guid(" 2a1f7c3e-9b5d-4e0f-8a6b-1c2d3e4f5061 ") == "0g7tm_crrE3ufh72q_Jr1X"
    assert normalize_guid("0g7tm_crrE3ufh72q_Jr1X") == "0g7tm_crrE3ufh72q_Jr1X"
    assert normalize_guid("  C-101-custom ") == "C-101-custom"
    assert normalize_guid(None) == ""
