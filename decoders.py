"""
Provider wire decoders.

Every upstream format is decoded through the same capability:

    decode(frame) -> (increments, is_terminal)
    finish()      -> increments still buffered when the connection ends

Three formats are line framed and share LineBuffer; the fourth receives
already-decoded SDK chunks and only extracts their text.
"""

import json
import logging
from abc import ABC, abstractmethod
from enum import Enum
from typing import Any, AsyncIterable, AsyncIterator, List, Optional, Tuple

from errors import DecodeError

logger = logging.getLogger("translator.gateway.decoders")


SSE_DATA_PREFIX = "data:"
SSE_DONE_MARKER = "[DONE]"
SSE_IGNORED_FIELDS = ("event:", "id:", "retry:")


class WireFormat(str, Enum):
    CHAT_SSE = "chat-sse"
    GENERATE_NDJSON = "generate-ndjson"
    TOKEN_SSE = "token-sse"
    GENERATOR = "generator"


# =========================
# Line buffering
# =========================

class LineBuffer:
    """
    Carry-over buffer for record-oriented byte streams.

    Bytes are appended, split on the separator, and the trailing
    (possibly incomplete) fragment is kept for the next read. Splitting
    works on bytes so a UTF-8 sequence cut by a read boundary stays intact.
    """

    def __init__(self, separator: bytes = b"\n"):
        self._separator = separator
        self._carry = b""

    def feed(self, frame: bytes) -> List[bytes]:
        self._carry += frame
        *records, self._carry = self._carry.split(self._separator)
        return records

    def flush(self) -> Optional[bytes]:
        rest, self._carry = self._carry, b""
        return rest if rest.strip() else None


# =========================
# Decoder interface
# =========================

class StreamDecoder(ABC):
    wire_format: WireFormat

    def __init__(self, label: str = ""):
        self.label = label or self.wire_format.value
        self.finished = False

    @abstractmethod
    def decode(self, frame: Any) -> Tuple[List[str], bool]:
        """Decode one upstream read into text increments."""

    def finish(self) -> List[str]:
        """Called once when the upstream connection ends."""
        self.finished = True
        return []


class LineDecoder(StreamDecoder):
    """
    Shared read-loop for the line framed formats.

    Subclasses only implement decode_record(); blank lines, SSE comments
    and malformed records never abort the stream.
    """

    end_marker: Optional[str] = None

    def __init__(self, label: str = "", separator: bytes = b"\n"):
        super().__init__(label)
        self._buffer = LineBuffer(separator)

    def decode(self, frame: bytes) -> Tuple[List[str], bool]:
        increments: List[str] = []
        if self.finished:
            return increments, True

        for raw in self._buffer.feed(frame):
            self._consume(raw, increments)
            if self.finished:
                break

        return increments, self.finished

    def finish(self) -> List[str]:
        increments: List[str] = []
        if not self.finished:
            rest = self._buffer.flush()
            if rest is not None:
                self._consume(rest, increments)
        self.finished = True
        return increments

    def _consume(self, raw: bytes, increments: List[str]) -> None:
        try:
            record = raw.decode("utf-8").strip()
        except UnicodeDecodeError:
            logger.warning(f"[{self.label}] Dropping record with invalid UTF-8 ({len(raw)} bytes)")
            return

        if not record or record.startswith(":"):
            return

        if self.end_marker is not None and record == self.end_marker:
            self.finished = True
            return

        try:
            text = self.decode_record(record)
        except DecodeError as e:
            logger.warning(f"[{self.label}] Dropping malformed record: {e}")
            return

        if text:
            increments.append(text)

    @abstractmethod
    def decode_record(self, record: str) -> Optional[str]:
        """Return the text carried by one complete record, if any."""


# =========================
# Wire formats
# =========================

def _load_json(payload: str) -> Any:
    try:
        return json.loads(payload)
    except json.JSONDecodeError as e:
        raise DecodeError(f"invalid JSON ({e.msg}): {payload[:120]!r}") from e


class SSEDecoder(LineDecoder):
    """`data: ` framed event stream ending with a literal [DONE] record."""

    end_marker = SSE_DONE_MARKER

    def _consume(self, raw: bytes, increments: List[str]) -> None:
        # strip the SSE field name before the shared handling sees the record
        stripped = raw.lstrip()
        if stripped.startswith(SSE_DATA_PREFIX.encode()):
            raw = stripped[len(SSE_DATA_PREFIX):]
        elif stripped.startswith(tuple(f.encode() for f in SSE_IGNORED_FIELDS)):
            return
        super()._consume(raw, increments)

    def decode_record(self, record: str) -> Optional[str]:
        data = _load_json(record)
        if not isinstance(data, dict):
            raise DecodeError(f"expected an object, got {type(data).__name__}")
        return self.extract_text(data)

    @abstractmethod
    def extract_text(self, data: dict) -> Optional[str]:
        ...


class ChatCompletionDecoder(SSEDecoder):
    """OpenAI-compatible chat completion chunks (OpenAI, DeepSeek)."""

    wire_format = WireFormat.CHAT_SSE

    def extract_text(self, data: dict) -> Optional[str]:
        choices = data.get("choices")
        if not isinstance(choices, list) or not choices:
            return None

        choice = choices[0]
        if not isinstance(choice, dict):
            raise DecodeError("choices[0] is not an object")

        delta = choice.get("delta")
        content = delta.get("content") if isinstance(delta, dict) else None
        if isinstance(content, str) and content:
            return content

        text = choice.get("text")
        if isinstance(text, str):
            return text
        return None


class TokenEventDecoder(SSEDecoder):
    """text-generation-inference style `{"token": {"text": ...}}` events."""

    wire_format = WireFormat.TOKEN_SSE

    def extract_text(self, data: dict) -> Optional[str]:
        token = data.get("token")
        if token is None:
            return None
        if not isinstance(token, dict):
            raise DecodeError("token is not an object")
        text = token.get("text")
        return text if isinstance(text, str) else None


class GenerateNDJSONDecoder(LineDecoder):
    """Ollama /api/generate: one JSON object per line, no end marker."""

    wire_format = WireFormat.GENERATE_NDJSON

    def decode_record(self, record: str) -> Optional[str]:
        data = _load_json(record)
        if not isinstance(data, dict):
            raise DecodeError(f"expected an object, got {type(data).__name__}")
        if "error" in data:
            raise DecodeError(f"upstream reported error: {data['error']}")
        text = data.get("response")
        return text if isinstance(text, str) else None


class GeneratorCallbackDecoder(StreamDecoder):
    """
    SDK iterators that already yield decoded chunks (LiteLLM streaming).

    A frame is one chunk object; completion of the iteration is the end
    marker, so decode() never reports a terminal on its own.
    """

    wire_format = WireFormat.GENERATOR

    def decode(self, frame: Any) -> Tuple[List[str], bool]:
        if self.finished:
            return [], True
        try:
            text = self._chunk_text(frame)
        except DecodeError as e:
            logger.warning(f"[{self.label}] Dropping malformed chunk: {e}")
            return [], False
        return ([text] if text else []), False

    @staticmethod
    def _chunk_text(chunk: Any) -> Optional[str]:
        if chunk is None:
            return None
        if isinstance(chunk, str):
            return chunk
        if isinstance(chunk, dict):
            choices = chunk.get("choices") or []
            delta = choices[0].get("delta") if choices and isinstance(choices[0], dict) else None
            content = delta.get("content") if isinstance(delta, dict) else None
            return content if isinstance(content, str) else None

        try:
            choices = chunk.choices
            if not choices:
                return None
            content = choices[0].delta.content
        except (AttributeError, IndexError, TypeError) as e:
            raise DecodeError(f"unexpected chunk shape {type(chunk).__name__}") from e
        return content if isinstance(content, str) else None


# =========================
# Registry
# =========================

DECODERS = {
    WireFormat.CHAT_SSE: ChatCompletionDecoder,
    WireFormat.GENERATE_NDJSON: GenerateNDJSONDecoder,
    WireFormat.TOKEN_SSE: TokenEventDecoder,
    WireFormat.GENERATOR: GeneratorCallbackDecoder,
}


def build_decoder(wire_format: WireFormat, label: str = "") -> StreamDecoder:
    return DECODERS[wire_format](label=label)


async def iter_increments(
    decoder: StreamDecoder,
    frames: AsyncIterable[Any],
) -> AsyncIterator[str]:
    """
    Drive a decoder over an upstream frame source.

    Stops at the decoder's end marker or when the source is exhausted,
    whichever comes first. Frames are pulled one at a time, so a slow
    consumer pauses upstream reads.
    """
    async for frame in frames:
        increments, is_terminal = decoder.decode(frame)
        for text in increments:
            yield text
        if is_terminal:
            return

    for text in decoder.finish():
        yield text
