# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Codec and stream framing tests.
"""

import json
from datetime import datetime, UTC
from decimal import Decimal

import pytest

from datamover.config import DataFormat
from datamover.exceptions import CodecError, ConfigurationError, ExportError
from datamover.formats import (
    FramingState,
    StreamFraming,
    flatten_row,
    get_codec,
    resolve_format,
)

ROWS = [
    {"id": 1, "name": "alpha", "amount": 1.5, "note": None},
    {"id": 2, "name": "it's, quoted", "amount": 2.25, "note": "x;y"},
]


# ============================================================================
# Batch encoding
# ============================================================================

def test_json_document_shape():
    codec = get_codec("json")
    document = json.loads(codec.encode(ROWS, {"table": "events"}))

    assert document["metadata"] == {"table": "events"}
    assert document["recordCount"] == 2
    assert document["data"] == ROWS
    assert "timestamp" in document
    assert codec.decode(codec.encode(ROWS)) == ROWS


def test_json_decode_accepts_bare_list_and_rejects_garbage():
    codec = get_codec("json")
    assert codec.decode(b'[{"a": 1}]') == [{"a": 1}]

    with pytest.raises(CodecError):
        codec.decode(b"{not json")
    with pytest.raises(CodecError):
        codec.decode(b'{"rows": []}')


def test_csv_escapes_and_restores_nulls():
    codec = get_codec("csv")
    text = codec.encode(ROWS).decode()

    assert text.splitlines()[0] == "id,name,amount,note"
    assert '"it\'s, quoted"' in text

    decoded = codec.decode(text.encode())
    assert decoded[0]["note"] is None
    assert decoded[1]["name"] == "it's, quoted"
    assert decoded[1]["id"] == "2"


def test_csv_empty_rowset_encodes_to_nothing():
    assert get_codec("csv").encode([]) == b""


def test_ndjson_one_object_per_line():
    codec = get_codec("ndjson")
    lines = codec.encode(ROWS).decode().splitlines()

    assert len(lines) == 2
    assert json.loads(lines[1])["note"] == "x;y"
    assert codec.decode(codec.encode(ROWS)) == ROWS


def test_xml_escapes_values_and_sanitizes_tags():
    codec = get_codec("xml")
    data = codec.encode([{"bad key": "<b>&</b>", "ok": 1}], {"exportId": "e1"})
    text = data.decode()

    assert "<bad_key>&lt;b&gt;&amp;&lt;/b&gt;</bad_key>" in text
    assert "<exportId>e1</exportId>" in text
    assert codec.decode(data) == [{"bad_key": "<b>&</b>", "ok": "1"}]


def test_sql_dump_round_trip_with_quotes_and_semicolons():
    codec = get_codec("sql")
    data = codec.encode(ROWS, {"table": "events"})
    text = data.decode()

    assert text.startswith("INSERT INTO events (id, name, amount, note) VALUES (1, 'alpha', 1.5, NULL);")
    assert "'it''s, quoted'" in text
    assert codec.decode(data) == ROWS


def test_sql_dump_requires_table():
    with pytest.raises(CodecError):
        get_codec("sql").encode(ROWS, {})


def test_flatten_row_serializes_nested_values():
    row = flatten_row(
        {
            "at": datetime(2024, 1, 1, tzinfo=UTC),
            "price": Decimal("9.99"),
            "tags": ["a", "b"],
            "meta": {"k": 1},
        }
    )
    assert row == {
        "at": "2024-01-01T00:00:00+00:00",
        "price": "9.99",
        "tags": '["a","b"]',
        "meta": '{"k":1}',
    }


# ============================================================================
# Format resolution
# ============================================================================

def test_unknown_and_unlisted_formats_are_rejected():
    with pytest.raises(ConfigurationError):
        get_codec("yaml")
    with pytest.raises(ConfigurationError):
        resolve_format("xml", ["json", "csv"])


def test_parquet_needs_explicit_substitution():
    allowed = ["json", "parquet"]
    with pytest.raises(ConfigurationError):
        resolve_format("parquet", allowed)

    used, substituted = resolve_format("parquet", allowed, allow_substitution=True)
    assert used is DataFormat.JSON
    assert substituted is DataFormat.PARQUET


def test_parquet_has_no_codec():
    with pytest.raises(ConfigurationError):
        get_codec("parquet")


# ============================================================================
# Stream framing
# ============================================================================

def test_json_framing_concatenates_to_valid_document():
    framing = StreamFraming(get_codec("json"))
    parts = [
        framing.fragment(ROWS[:1]),
        framing.fragment([]),
        framing.fragment(ROWS[1:], is_last=True),
    ]

    assert json.loads("".join(parts)) == {"data": ROWS}
    assert framing.state is FramingState.CLOSED
    assert framing.rows_emitted == 2


def test_json_framing_of_empty_stream():
    framing = StreamFraming(get_codec("json"))
    assert framing.state is FramingState.NOT_STARTED
    assert json.loads(framing.close()) == {"data": []}
    assert framing.close() == ""


def test_json_framing_error_after_rows_is_still_valid_json():
    framing = StreamFraming(get_codec("json"))
    text = framing.fragment(ROWS) + framing.fail("database went away")

    document = json.loads(text)
    assert document["data"] == ROWS
    assert document["error"] == {"message": "database went away"}
    assert framing.closed


def test_json_framing_error_before_rows():
    framing = StreamFraming(get_codec("json"))
    document = json.loads(framing.fail("boom"))
    assert document == {"data": [], "error": {"message": "boom"}}


def test_csv_framing_writes_header_once():
    framing = StreamFraming(get_codec("csv"))
    text = framing.fragment(ROWS[:1]) + framing.fragment(ROWS[1:], is_last=True)

    lines = text.splitlines()
    assert lines[0] == "id,name,amount,note"
    assert len(lines) == 3


def test_json_encode_chunk_fragments_join_into_one_document():
    rows = ROWS + [{"id": 3, "name": "gamma", "amount": 0.0, "note": "end"}]
    codec = get_codec("json")
    parts = [
        codec.encode_chunk(rows[:1], is_first=True, is_last=False),
        codec.encode_chunk(rows[1:2], is_first=False, is_last=False),
        codec.encode_chunk(rows[2:], is_first=False, is_last=True),
    ]

    assert json.loads("".join(parts)) == {"data": rows}
    assert json.loads(get_codec("json").encode_chunk(ROWS, is_first=True, is_last=True)) == {"data": ROWS}


def test_csv_encode_chunk_writes_header_once():
    rows = ROWS + [{"id": 3, "name": "gamma", "amount": 0.0, "note": "end"}]
    codec = get_codec("csv")
    text = "".join([
        codec.encode_chunk(rows[:1], is_first=True, is_last=False),
        codec.encode_chunk(rows[1:2], is_first=False, is_last=False),
        codec.encode_chunk(rows[2:], is_first=False, is_last=True),
    ])

    lines = text.splitlines()
    assert lines.count("id,name,amount,note") == 1
    assert lines[0] == "id,name,amount,note"
    assert len(lines) == 4
    assert codec.decode(text.encode())[2]["name"] == "gamma"


def test_encode_chunk_refuses_document_formats():
    with pytest.raises(ConfigurationError):
        get_codec("xml").encode_chunk(ROWS, is_first=True, is_last=True)


def test_fragment_after_close_raises():
    framing = StreamFraming(get_codec("ndjson"))
    framing.close()
    with pytest.raises(ExportError):
        framing.fragment(ROWS)


@pytest.mark.parametrize("fmt", ["xml", "sql"])
def test_document_formats_cannot_stream(fmt):
    with pytest.raises(ConfigurationError):
        StreamFraming(get_codec(fmt))
