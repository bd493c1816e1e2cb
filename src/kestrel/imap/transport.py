# =============================================================================
# Transport
# =============================================================================
# The byte-stream the engine talks over. Kestrel never opens sockets or
# negotiates TLS itself: callers hand in an already-connected stream.
#
# Anything with these four coroutines works as a transport:
#   - write(data)         send bytes
#   - read_line()         read up to and including the next LF
#   - read_exactly(n)     read exactly n bytes (literal data)
#   - close()             close the stream
#
# StreamTransport adapts an asyncio StreamReader/StreamWriter pair, e.g.
# the result of asyncio.open_connection(host, 993, ssl=context).
# =============================================================================

import asyncio
import logging
from typing import Protocol

from kestrel.errors import ConnectionClosedError, ProtocolError

logger = logging.getLogger(__name__)


class Transport(Protocol):
    """Byte-stream interface consumed by the engine."""

    async def write(self, data: bytes) -> None: ...

    async def read_line(self) -> bytes: ...

    async def read_exactly(self, n: int) -> bytes: ...

    async def close(self) -> None: ...


class StreamTransport:
    """
    Transport backed by asyncio streams.

    Usage:
        >>> reader, writer = await asyncio.open_connection(host, 993, ssl=ctx)
        >>> transport = StreamTransport(reader, writer)
    """

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        self._reader = reader
        self._writer = writer

    async def write(self, data: bytes) -> None:
        try:
            self._writer.write(data)
            await self._writer.drain()
        except OSError as e:
            raise ConnectionClosedError(f"write failed: {e}") from e

    async def read_line(self) -> bytes:
        try:
            return await self._reader.readuntil(b"\n")
        except asyncio.IncompleteReadError as e:
            # EOF: hand back what we have, the reader decides what it means
            return e.partial
        except asyncio.LimitOverrunError as e:
            raise ProtocolError(f"response line exceeds stream limit ({e.consumed} bytes)") from e
        except OSError as e:
            raise ConnectionClosedError(f"read failed: {e}") from e

    async def read_exactly(self, n: int) -> bytes:
        try:
            return await self._reader.readexactly(n)
        except asyncio.IncompleteReadError as e:
            raise ConnectionClosedError(
                f"connection closed after {len(e.partial)} of {n} literal bytes"
            ) from e
        except OSError as e:
            raise ConnectionClosedError(f"read failed: {e}") from e

    async def close(self) -> None:
        if self._writer.is_closing():
            return
        self._writer.close()
        try:
            await self._writer.wait_closed()
        except OSError as e:
            logger.debug(f"Error while closing transport: {e}")
