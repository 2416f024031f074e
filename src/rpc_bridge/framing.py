"""Line-delimited JSON framing for child process streams.

Outbound, a request becomes exactly one newline-terminated UTF-8 frame.
Inbound, bytes arrive at arbitrary boundaries; ``StreamReassembler``
accumulates them and extracts one complete JSON value per pass.
"""

import json
from typing import Any, Iterator, List, Optional, Tuple

from structlog import get_logger

logger = get_logger(__name__)

FRAME_TERMINATOR = b"\n"
DEFAULT_MAX_BUFFER_BYTES = 10 * 1024 * 1024


def encode_frame(value: Any) -> bytes:
    """Serialize a JSON value to its compact text form plus one newline."""
    text = json.dumps(value, ensure_ascii=False, separators=(",", ":"), allow_nan=False)
    return text.encode("utf-8") + FRAME_TERMINATOR


class StreamReassembler:
    """Recovers JSON values from an arbitrarily chunked byte stream.

    Only newline-terminated lines are complete. A line that fails to parse
    is treated as "not a response yet", never as an error: the reassembler
    cannot tell malformed JSON from partial JSON, so eventual failure is
    left to the caller's deadline.
    """

    def __init__(
        self,
        slot: Optional[str] = None,
        max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES,
    ):
        self.slot = slot
        self.max_buffer_bytes = max_buffer_bytes
        self.raw = bytearray()
        # Offset past complete lines already known not to parse
        self._checked = 0

    def __len__(self) -> int:
        return len(self.raw)

    def feed(self, chunk: bytes) -> List[Any]:
        """Append a chunk and return every value that became extractable."""
        self.raw.extend(chunk)
        values = list(self.drain())
        if not values and len(self.raw) > self.max_buffer_bytes:
            logger.warning(
                "Discarding oversized output buffer",
                slot=self.slot,
                size=len(self.raw),
                limit=self.max_buffer_bytes,
            )
            self.reset()
        return values

    def drain(self) -> Iterator[Any]:
        """Yield values pass by pass until a pass finds nothing."""
        while True:
            found, value = self.extract()
            if not found:
                return
            yield value

    def extract(self) -> Tuple[bool, Any]:
        """Run one pass: return the first parseable complete line, if any.

        On success every line up to and including the parsed one is consumed
        and later bytes stay buffered. On failure the buffer is kept intact.
        """
        start = self._checked
        while True:
            end = self.raw.find(FRAME_TERMINATOR, start)
            if end < 0:
                self._checked = start
                return False, None

            line = bytes(self.raw[start:end]).strip()
            start = end + 1
            if not line:
                continue

            try:
                value = json.loads(line.decode("utf-8", errors="replace"))
            except (ValueError, RecursionError):
                logger.debug(
                    "Non-JSON output from backend",
                    slot=self.slot,
                    output=line[:200].decode("utf-8", errors="replace"),
                )
                continue

            del self.raw[:start]
            self._checked = 0
            return True, value

    def reset(self) -> None:
        """Drop all buffered bytes."""
        self.raw.clear()
        self._checked = 0
