# SPDX-License-Identifier: LGPL-2.1-only
# Copyright (c) 2026 Akshat Kotpalliwar (alias IntegerAlex)

"""
Framing for streamed exports.

A stream is NOT_STARTED until the first fragment, STREAMING while rows
flow, and CLOSED after the closing fragment. For JSON that means
'{"data":[' exactly once at the start, ',' only between non-empty
fragments and ']}' exactly once at the end, so any sequence of fragments
(including an empty one) concatenates to a valid document.
"""

from enum import Enum
from typing import Sequence

from datamover.exceptions import ConfigurationError, ExportError
from datamover.formats.codecs import Codec, Row


class FramingState(str, Enum):
    NOT_STARTED = "not_started"
    STREAMING = "streaming"
    CLOSED = "closed"


class StreamFraming:
    """
    Explicit framing state machine around a streamable codec.

    Example:
        framing = StreamFraming(get_codec("json"))
        parts = [framing.fragment(chunk_1), framing.fragment(chunk_2, is_last=True)]
        "".join(parts)  # '{"data":[{...},{...}]}'
    """

    def __init__(self, codec: Codec):
        if not codec.streamable:
            raise ConfigurationError(
                f"{codec.format.value} output cannot be streamed",
                details={"format": codec.format.value},
            )
        self.codec = codec
        self.state = FramingState.NOT_STARTED
        self.rows_emitted = 0

    @property
    def closed(self) -> bool:
        return self.state is FramingState.CLOSED

    def fragment(self, rows: Sequence[Row], is_last: bool = False) -> str:
        """Encode one chunk of rows, opening and/or closing the frame as needed."""
        if self.state is FramingState.CLOSED:
            raise ExportError("Stream framing is already closed")

        parts = []
        if self.state is FramingState.NOT_STARTED:
            parts.append(self.codec.open_stream())
            self.state = FramingState.STREAMING

        parts.append(self.codec.encode_rows(rows, has_previous_rows=self.rows_emitted > 0))
        self.rows_emitted += len(rows)

        if is_last:
            parts.append(self.codec.close_stream())
            self.state = FramingState.CLOSED

        return "".join(parts)

    def fail(self, message: str) -> str:
        """Terminal error fragment; the frame is closed afterwards."""
        if self.state is FramingState.CLOSED:
            return ""
        fragment = self.codec.error_fragment(message, opened=self.state is FramingState.STREAMING)
        self.state = FramingState.CLOSED
        return fragment

    def close(self) -> str:
        """Closing fragment; opens the frame first if nothing was emitted."""
        if self.state is FramingState.CLOSED:
            return ""
        return self.fragment([], is_last=True)
