"""Conversion between Microsoft-style and IFC model GUIDs.

Both spellings carry the same 128 bits. The MS form is 32 hex digits
(usually hyphenated, 36 characters); the IFC form packs the number into
22 characters of a 64-symbol alphabet, 2 bits in the first character and
6 bits in each of the other 21. Elements are stored under the IFC form.
"""

from __future__ import annotations

import re

from assemblyqc.core.errors import ValidationFailure

IFC_GUID_CHARS = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz_$"

_IFC_INDEX = {char: index for index, char in enumerate(IFC_GUID_CHARS)}
_MS_GUID = re.compile(
    r"^\{?[0-9a-fA-F]{8}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{4}-?[0-9a-fA-F]{12}\}?$"
)


def is_ms_guid(value: str) -> bool:
    return bool(_MS_GUID.match(value))


def is_ifc_guid(value: str) -> bool:
    return (
        len(value) == 22
        and value[0] in "0123"
        and all(char in _IFC_INDEX for char in value)
    )


def ms_to_ifc_guid(ms_guid: str) -> str:
    """``"0a1b...-..."`` -> 22-character IFC GUID.

    Raises:
        ValidationFailure: not a 128-bit hex GUID
    """
    if not is_ms_guid(ms_guid or ""):
        raise ValidationFailure(f"Not an MS GUID: {ms_guid!r}", guid=ms_guid)
    number = int(re.sub(r"[{}\-]", "", ms_guid), 16)

    chars = [IFC_GUID_CHARS[number >> 126]]
    for shift in range(120, -1, -6):
        chars.append(IFC_GUID_CHARS[(number >> shift) & 0x3F])
    return "".join(chars)


def ifc_to_ms_guid(ifc_guid: str) -> str:
    """22-character IFC GUID -> lowercase hyphenated MS GUID.

    Raises:
        ValidationFailure: wrong length, unknown character or more than 128 bits
    """
    if not is_ifc_guid(ifc_guid or ""):
        raise ValidationFailure(f"Not an IFC GUID: {ifc_guid!r}", guid=ifc_guid)
    number = 0
    for char in ifc_guid:
        number = (number << 6) | _IFC_INDEX[char]

    hex_digits = f"{number:032x}"
    return "-".join(
        (hex_digits[:8], hex_digits[8:12], hex_digits[12:16], hex_digits[16:20], hex_digits[20:])
    )


def normalize_guid(guid: str | None) -> str:
    """Canonical stored form of a model GUID.

    MS GUIDs become their IFC spelling. Anything else (IFC GUIDs and
    free-form ids from other authoring tools) is only trimmed.
    """
    value = (guid or "").strip()
    if is_ms_guid(value):
        return ms_to_ifc_guid(value)
    return value
