"""Quote-aware CSV decoding for sheet exports.

The text is split into lines *before* quote handling, so a quoted field
that contains an embedded newline is not reassembled, and ``_rowIndex``
counts physical lines. Multi-line cells are not supported.
"""

from __future__ import annotations

ROW_INDEX_FIELD = "_rowIndex"
DELIMITER = ","
QUOTE = '"'

# Line 1 is the header, so the first data row lives on sheet row 2.
FIRST_DATA_ROW = 2


def _clean(value: str) -> str:
    """Trim whitespace and a single surrounding quote pair."""
    value = value.strip()
    if value.startswith(QUOTE):
        value = value[1:]
    if value.endswith(QUOTE):
        value = value[:-1]
    return value


def split_fields(line: str) -> list[str]:
    """Split one line into raw field values, honouring quoted delimiters.

    A quote toggles the in-quotes flag and is never copied into the value.
    Unbalanced quotes simply leave the rest of the line in one field.
    """
    fields: list[str] = []
    current: list[str] = []
    in_quotes = False

    for char in line:
        if char == QUOTE:
            in_quotes = not in_quotes
        elif char == DELIMITER and not in_quotes:
            fields.append("".join(current))
            current = []
        else:
            current.append(char)
    fields.append("".join(current))
    return fields


def decode_table(text: str) -> list[dict[str, str]]:
    """Decode CSV text into rows keyed by the header's column names.

    Each row also carries ``_rowIndex``: its 1-based line number in the
    source sheet, as a string. Rows shorter than the header omit the
    missing keys; extra trailing fields are dropped. Never raises.
    """
    lines = [line for line in text.split("\n") if line.strip()]
    if len(lines) < 2:
        return []

    headers = [_clean(name) for name in lines[0].split(DELIMITER)]

    rows: list[dict[str, str]] = []
    for offset, line in enumerate(lines[1:]):
        row: dict[str, str] = {}
        for column, raw in zip(headers, split_fields(line)):
            row[column] = _clean(raw)
        row[ROW_INDEX_FIELD] = str(offset + FIRST_DATA_ROW)
        rows.append(row)
    return rows
