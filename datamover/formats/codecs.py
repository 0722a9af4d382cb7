# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Row-set codecs.

Each codec turns a list of row dicts into bytes and back. Codecs that can
be streamed also expose open/rows/close hooks which StreamFraming drives.
"""

import base64
import csv
import io
import json
import math
import re
import xml.etree.ElementTree as ET
from datetime import date, datetime, time, UTC
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Sequence, Tuple
from uuid import UUID
from xml.sax.saxutils import escape

import structlog

from datamover.config import DataFormat, is_safe_identifier
from datamover.errors import explain_format_without_codec, explain_unsupported_format
from datamover.exceptions import CodecError, ConfigurationError

logger = structlog.get_logger()

Row = Dict[str, Any]


def to_jsonable(value: Any) -> Any:
    """Normalise one value for JSON-family output."""
    if isinstance(value, (datetime, date, time)):
        return value.isoformat()
    if isinstance(value, (Decimal, UUID)):
        return str(value)
    if isinstance(value, (bytes, bytearray, memoryview)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if isinstance(value, float) and not math.isfinite(value):
        return None
    return value


def _json_default(value: Any) -> Any:
    normalised = to_jsonable(value)
    if normalised is value:
        return str(value)
    return normalised


def dumps(value: Any) -> str:
    return json.dumps(value, default=_json_default, separators=(",", ":"))


def flatten_row(row: Mapping[str, Any]) -> Row:
    """
    Prepare a row for export.

    Timestamps become ISO strings and nested objects/arrays become JSON
    strings, so every format sees flat scalar values.
    """
    result: Row = {}
    for key, value in row.items():
        if isinstance(value, (dict, list)):
            result[key] = dumps(value)
        else:
            result[key] = to_jsonable(value)
    return result


def _text(value: Any) -> str:
    """Scalar to text for CSV/XML cells."""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return dumps(value)
    value = to_jsonable(value)
    return "" if value is None else str(value)


class Codec:
    """Base class for a single wire format."""

    format: DataFormat
    extension: str
    content_type: str = "application/octet-stream"
    streamable: bool = True

    def encode(self, rows: Sequence[Row], metadata: Mapping[str, Any] | None = None) -> bytes:
        raise NotImplementedError

    def decode(self, data: bytes) -> List[Row]:
        raise NotImplementedError

    # Streaming hooks, driven by StreamFraming
    def open_stream(self) -> str:
        return ""

    def encode_rows(self, rows: Sequence[Row], has_previous_rows: bool) -> str:
        raise NotImplementedError

    def close_stream(self) -> str:
        return ""

    def error_fragment(self, message: str, opened: bool) -> str:
        """Terminal fragment reporting a failed stream."""
        return ""

    def encode_chunk(self, rows: Sequence[Row], is_first: bool, is_last: bool) -> str:
        """
        Encode one stream fragment without a framing object.

        Assumes every fragment after the first carries rows; use
        StreamFraming when empty fragments are possible.
        """
        if not self.streamable:
            raise ConfigurationError(f"{self.format.value} output cannot be streamed")
        parts = []
        if is_first:
            parts.append(self.open_stream())
        parts.append(self.encode_rows(rows, has_previous_rows=not is_first))
        if is_last:
            parts.append(self.close_stream())
        return "".join(parts)


class JSONCodec(Codec):
    format = DataFormat.JSON
    extension = "json"
    content_type = "application/json"

    def encode(self, rows, metadata=None):
        document = {
            "metadata": dict(metadata or {}),
            "timestamp": datetime.now(UTC).isoformat(),
            "recordCount": len(rows),
            "data": list(rows),
        }
        return json.dumps(document, default=_json_default).encode("utf-8")

    def decode(self, data):
        try:
            document = json.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            raise CodecError("Malformed JSON chunk", details={"error": str(e)}) from e
        if isinstance(document, list):
            return document
        if isinstance(document, dict) and isinstance(document.get("data"), list):
            return document["data"]
        raise CodecError("JSON chunk has no data array")

    def open_stream(self):
        return '{"data":['

    def encode_rows(self, rows, has_previous_rows):
        if not rows:
            return ""
        body = ",".join(dumps(row) for row in rows)
        return ("," + body) if has_previous_rows else body

    def close_stream(self):
        return "]}"

    def error_fragment(self, message, opened):
        error = dumps({"message": message})
        if opened:
            return f'],"error":{error}}}'
        return f'{{"data":[],"error":{error}}}'


class NDJSONCodec(Codec):
    format = DataFormat.NDJSON
    extension = "ndjson"
    content_type = "application/x-ndjson"

    def encode(self, rows, metadata=None):
        return self.encode_rows(rows, False).encode("utf-8")

    def decode(self, data):
        rows = []
        for number, line in enumerate(data.decode("utf-8").splitlines(), start=1):
            if not line.strip():
                continue
            try:
                rows.append(json.loads(line))
            except ValueError as e:
                raise CodecError("Malformed NDJSON line", details={"line": number}) from e
        return rows

    def encode_rows(self, rows, has_previous_rows):
        return "".join(dumps(row) + "\n" for row in rows)

    def error_fragment(self, message, opened):
        return dumps({"error": message}) + "\n"


class CSVCodec(Codec):
    """
    CSV with a header taken from the first row's fields.

    The codec remembers the header between streamed fragments; a fresh
    instance is used per stream.
    """

    format = DataFormat.CSV
    extension = "csv"
    content_type = "text/csv"

    def __init__(self) -> None:
        self._header: List[str] | None = None

    def _write(self, rows: Sequence[Row], header: List[str], with_header: bool) -> str:
        buffer = io.StringIO()
        writer = csv.writer(buffer, lineterminator="\n", quoting=csv.QUOTE_MINIMAL)
        if with_header:
            writer.writerow(header)
        for row in rows:
            writer.writerow([_text(row.get(field)) for field in header])
        return buffer.getvalue()

    def encode(self, rows, metadata=None):
        if not rows:
            return b""
        header = list(rows[0].keys())
        return self._write(rows, header, True).encode("utf-8")

    def decode(self, data):
        reader = csv.DictReader(io.StringIO(data.decode("utf-8"), newline=""))
        return [
            {key: (value if value != "" else None) for key, value in row.items()}
            for row in reader
        ]

    def open_stream(self):
        self._header = None
        return ""

    def encode_rows(self, rows, has_previous_rows):
        if not rows:
            return ""
        with_header = self._header is None
        if with_header:
            self._header = list(rows[0].keys())
        return self._write(rows, self._header, with_header)

    def error_fragment(self, message, opened):
        return f"# export failed: {message}\n"


_XML_NAME = re.compile(r"[^A-Za-z0-9_.-]")


def _xml_tag(name: str) -> str:
    tag = _XML_NAME.sub("_", str(name)) or "field"
    if not (tag[0].isalpha() or tag[0] == "_"):
        tag = "_" + tag
    return tag


def _xml_escape(value: str) -> str:
    return escape(value, {'"': "&quot;", "'": "&apos;"})


class XMLCodec(Codec):
    format = DataFormat.XML
    extension = "xml"
    content_type = "application/xml"
    streamable = False

    def _element(self, name: str, value: Any) -> str:
        tag = _xml_tag(name)
        return f"<{tag}>{_xml_escape(_text(value))}</{tag}>"

    def encode(self, rows, metadata=None):
        lines = ['<?xml version="1.0" encoding="UTF-8"?>', "<export>", "<metadata>"]
        for key, value in (metadata or {}).items():
            lines.append(self._element(key, value))
        lines.append("</metadata>")
        lines.append("<data>")
        for row in rows:
            fields = "".join(self._element(k, v) for k, v in row.items())
            lines.append(f"<record>{fields}</record>")
        lines.append("</data>")
        lines.append("</export>")
        return "\n".join(lines).encode("utf-8")

    def decode(self, data):
        try:
            root = ET.fromstring(data)
        except ET.ParseError as e:
            raise CodecError("Malformed XML chunk", details={"error": str(e)}) from e
        container = root.find("data")
        if container is None:
            raise CodecError("XML chunk has no data element")
        return [
            {field.tag: (field.text if field.text else None) for field in record}
            for record in container.findall("record")
        ]


def sql_literal(value: Any) -> str:
    if value is None:
        return "NULL"
    if isinstance(value, bool):
        return "TRUE" if value else "FALSE"
    if isinstance(value, (int, Decimal)):
        return str(value)
    if isinstance(value, float):
        return repr(value) if math.isfinite(value) else "NULL"
    if isinstance(value, (dict, list)):
        text = dumps(value)
    else:
        text = str(to_jsonable(value))
    return "'" + text.replace("'", "''") + "'"


_INSERT = re.compile(
    r"^INSERT INTO (?P<table>[A-Za-z_][A-Za-z0-9_.]*) \((?P<columns>[^)]*)\) VALUES \((?P<values>.*)\);$",
    re.DOTALL,
)


def _parse_literals(text: str) -> List[Any]:
    values: List[Any] = []
    i = 0
    n = len(text)
    while i < n:
        ch = text[i]
        if ch in " ,":
            i += 1
            continue
        if ch == "'":
            i += 1
            parts = []
            while i < n:
                if text[i] == "'":
                    if i + 1 < n and text[i + 1] == "'":
                        parts.append("'")
                        i += 2
                        continue
                    break
                parts.append(text[i])
                i += 1
            if i >= n:
                raise CodecError("Unterminated string literal in SQL dump")
            values.append("".join(parts))
            i += 1
            continue
        end = text.find(",", i)
        end = n if end == -1 else end
        token = text[i:end].strip()
        upper = token.upper()
        if upper == "NULL":
            values.append(None)
        elif upper == "TRUE":
            values.append(True)
        elif upper == "FALSE":
            values.append(False)
        else:
            try:
                values.append(int(token))
            except ValueError:
                try:
                    values.append(float(token))
                except ValueError as e:
                    raise CodecError(f"Unrecognised SQL literal: {token!r}") from e
        i = end
    return values


def _split_statements(text: str) -> List[str]:
    """Split on semicolons outside string literals; each piece keeps its ';'."""
    statements = []
    start = 0
    quoted = False
    for i, ch in enumerate(text):
        if ch == "'":
            quoted = not quoted
        elif ch == ";" and not quoted:
            statement = text[start:i + 1].strip()
            if statement:
                statements.append(statement)
            start = i + 1
    if text[start:].strip():
        raise CodecError("Trailing incomplete statement in SQL dump")
    return statements


class SQLDumpCodec(Codec):
    """
    One INSERT per row.

    The table name comes from metadata["table"]. Decoding understands
    exactly the statements encode() writes.
    """

    format = DataFormat.SQL
    extension = "sql"
    content_type = "application/sql"
    streamable = False

    def encode(self, rows, metadata=None):
        table = (metadata or {}).get("table")
        if not table or not is_safe_identifier(table):
            raise CodecError("SQL dump needs a valid table name", details={"table": table})
        statements = []
        for row in rows:
            columns = ", ".join(row.keys())
            values = ", ".join(sql_literal(v) for v in row.values())
            statements.append(f"INSERT INTO {table} ({columns}) VALUES ({values});")
        return ("\n".join(statements) + ("\n" if statements else "")).encode("utf-8")

    def decode(self, data):
        rows = []
        for number, statement in enumerate(_split_statements(data.decode("utf-8")), start=1):
            match = _INSERT.match(statement)
            if not match:
                raise CodecError("Unrecognised statement in SQL dump", details={"statement": number})
            columns = [c.strip() for c in match.group("columns").split(",")]
            values = _parse_literals(match.group("values"))
            if len(columns) != len(values):
                raise CodecError(
                    "Column/value count mismatch in SQL dump",
                    details={"statement": number},
                )
            rows.append(dict(zip(columns, values)))
        return rows


_CODECS = {
    DataFormat.JSON: JSONCodec,
    DataFormat.NDJSON: NDJSONCodec,
    DataFormat.CSV: CSVCodec,
    DataFormat.XML: XMLCodec,
    DataFormat.SQL: SQLDumpCodec,
}


def _as_format(fmt: str | DataFormat, allowed: Iterable[str]) -> DataFormat:
    try:
        return DataFormat(fmt)
    except ValueError as e:
        raise ConfigurationError(explain_unsupported_format(str(fmt), allowed)) from e


def get_codec(fmt: str | DataFormat) -> Codec:
    """
    Return a new codec instance for a format.

    Raises:
        ConfigurationError: Unknown format, or a format without a codec
    """
    data_format = _as_format(fmt, [f.value for f in _CODECS])
    codec_cls = _CODECS.get(data_format)
    if codec_cls is None:
        raise ConfigurationError(explain_format_without_codec(data_format.value))
    return codec_cls()


def resolve_format(
    fmt: str | DataFormat,
    allowed: Sequence[str],
    allow_substitution: bool = False,
) -> Tuple[DataFormat, DataFormat | None]:
    """
    Check a requested format against a whitelist.

    Returns:
        (format to encode with, format it substitutes or None)

    Raises:
        ConfigurationError: If the format is not whitelisted, or has no
            codec and substitution was not requested
    """
    data_format = _as_format(fmt, allowed)
    if data_format.value not in allowed:
        raise ConfigurationError(
            explain_unsupported_format(data_format.value, allowed),
            details={"format": data_format.value},
        )
    if data_format in _CODECS:
        return data_format, None
    if not allow_substitution:
        raise ConfigurationError(
            explain_format_without_codec(data_format.value),
            details={"format": data_format.value},
        )
    logger.warning(
        "format_substituted",
        requested=data_format.value,
        used=DataFormat.JSON.value,
    )
    return DataFormat.JSON, data_format
