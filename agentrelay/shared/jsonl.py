"""Incremental decoder for newline-delimited JSON (JSONL).

Bytes go in through ``feed()`` in chunks of any size; each complete
line comes back as a ``Frame`` holding either the parsed value or a
``DecodeError``. A bad line never stops decoding of the lines after it.
"""
from __future__ import annotations

import codecs
import json
from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class DecodeError:
    """One line that could not be parsed as JSON."""
    line: str
    message: str

    def __str__(self) -> str:
        preview = self.line if len(self.line) <= 200 else self.line[:200] + "..."
        return f"Invalid JSON: {preview} ({self.message})"


@dataclass(frozen=True)
class Frame:
    """Result of decoding one line."""
    value: Any = None
    error: DecodeError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None


class JsonLinesDecoder:
    """Pull-based JSONL frame decoder.

    Output is independent of how the input is chunked: a record (or a
    multi-byte UTF-8 character) split across two ``feed()`` calls
    decodes exactly as if it had arrived whole.
    """

    def __init__(self) -> None:
        self._text = codecs.getincrementaldecoder("utf-8")(errors="replace")
        self._buffer = ""

    @property
    def buffer(self) -> str:
        """Text received but not yet terminated by a newline."""
        return self._buffer

    def feed(self, chunk: bytes | str) -> list[Frame]:
        """Append *chunk* and decode every line it completes."""
        if isinstance(chunk, str):
            self._buffer += chunk
        else:
            self._buffer += self._text.decode(chunk)
        if "\n" not in self._buffer:
            return []
        lines = self._buffer.split("\n")
        self._buffer = lines.pop()
        return [frame for frame in map(self._decode_line, lines) if frame is not None]

    def flush(self) -> list[Frame]:
        """Decode whatever remains at end of stream."""
        self._buffer += self._text.decode(b"", final=True)
        remaining, self._buffer = self._buffer, ""
        frame = self._decode_line(remaining)
        return [frame] if frame is not None else []

    def reset(self) -> None:
        self._text.reset()
        self._buffer = ""

    @staticmethod
    def _decode_line(line: str) -> Frame | None:
        if not line.strip():
            return None
        try:
            return Frame(value=json.loads(line))
        except ValueError as exc:
            return Frame(error=DecodeError(line=line, message=str(exc)))


def iter_json_lines(text: str) -> list[Frame]:
    """Decode a complete JSONL document in one go."""
    decoder = JsonLinesDecoder()
    frames = decoder.feed(text)
    frames.extend(decoder.flush())
    return frames
