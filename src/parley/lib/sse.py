"""
Incremental framing for ``data:``-prefixed event streams.

Both ends of Parley read streams of this shape: the completion provider
emits one ``data: <json>`` record per line, and the plan endpoint emits one
``data: <json>`` record per blank-line separated block. The helpers here
decode arbitrary byte/text chunks, keep a carry-over buffer for partial
records and hand back complete records only.
"""

import codecs
from typing import AsyncIterable, AsyncIterator, List, Optional, Union

DATA_PREFIX = "data: "
DONE_SENTINEL = "[DONE]"

# Record delimiters
LINE_DELIMITER = "\n"
EVENT_DELIMITER = "\n\n"


class RecordBuffer:
    """Split an incremental text source into complete records.

    Usage::

        buffer = RecordBuffer("\\n\\n")
        for record in buffer.feed(chunk):
            ...
        tail = buffer.flush()
    """

    def __init__(self, delimiter: str = LINE_DELIMITER):
        if not delimiter:
            raise ValueError("delimiter cannot be empty")
        self.delimiter = delimiter
        self._buffer = ""
        self._decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")

    def feed(self, chunk: Union[bytes, str]) -> List[str]:
        """Add a chunk and return every record completed by it."""
        if isinstance(chunk, bytes):
            chunk = self._decoder.decode(chunk)
        self._buffer += chunk
        # CRLF-framed streams are normalised so delimiters still match
        if "\r" in self._buffer:
            self._buffer = self._buffer.replace("\r\n", "\n")

        parts = self._buffer.split(self.delimiter)
        self._buffer = parts.pop()
        return parts

    def flush(self) -> Optional[str]:
        """Return any trailing partial record and reset the buffer."""
        self._buffer += self._decoder.decode(b"", final=True)
        tail, self._buffer = self._buffer, ""
        return tail if tail.strip() else None

    @property
    def pending(self) -> str:
        return self._buffer


def data_payload(record: str) -> Optional[str]:
    """Return the payload of a ``data: `` record, or None for other records.

    Records spanning several lines (comments, ``event:`` fields) are scanned
    for their first ``data: `` line.
    """
    for line in record.split(LINE_DELIMITER):
        line = line.rstrip("\r")
        if line.startswith(DATA_PREFIX):
            return line[len(DATA_PREFIX):]
    return None


async def iter_records(
    chunks: AsyncIterable[Union[bytes, str]],
    delimiter: str = LINE_DELIMITER
) -> AsyncIterator[str]:
    """Yield complete records from an async chunk source, in order.

    A trailing record without its delimiter is yielded once the source ends.
    """
    buffer = RecordBuffer(delimiter)
    async for chunk in chunks:
        for record in buffer.feed(chunk):
            yield record
    tail = buffer.flush()
    if tail is not None:
        yield tail


def encode_record(payload: str) -> str:
    """Frame a payload as one event-stream record."""
    return f"{DATA_PREFIX}{payload}{EVENT_DELIMITER}"
