# =============================================================================
# Command Dispatcher
# =============================================================================
# Serializes commands onto one connection and routes responses back.
#
# Key responsibilities:
#   - Assign a unique tag to every outgoing command
#   - Keep exactly one command in flight (FIFO), however many tasks call in
#   - Hand synchronizing literals to the server only after "+" continuation
#   - Buffer untagged data for the command that expects it, pass anything
#     else to the unsolicited-response listener
#   - Turn NO/BAD into CommandRejectedError, timeouts into a dead connection
#
# Design notes:
#   - A background reader task owns the inbound parse cursor and resolves a
#     per-command future; a background writer task owns all writes. Callers
#     only ever touch their own future.
#   - A caller that is cancelled while waiting marks its command abandoned.
#     If it was not written yet it is skipped; if it is in flight its
#     response is still read and then discarded, so the stream stays in sync.
#   - Nothing is retried. Fatal errors fail every queued command and close
#     the transport; later calls fail fast with ConnectionClosedError.
# =============================================================================

import asyncio
import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field

from kestrel.errors import (
    CommandRejectedError,
    CommandTimeoutError,
    ConnectionClosedError,
    ImapError,
    ProtocolError,
)
from kestrel.imap.codec import (
    DEFAULT_MAX_LINE_LENGTH,
    DEFAULT_MAX_LITERAL_SIZE,
    Command,
    Response,
    ResponseReader,
)
from kestrel.imap.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class CommandResult:
    """
    Successful (OK) completion of a command.

    Attributes:
        tag: The tag the command was sent with.
        command: The command name.
        code: Response code of the tagged OK, e.g. "READ-WRITE".
        code_args: Values following the response code.
        text: Text of the tagged OK.
        untagged: Untagged responses the command expected, in arrival order.
    """
    tag: str
    command: str
    code: str | None = None
    code_args: tuple = ()
    text: str = ""
    untagged: list[Response] = field(default_factory=list)

    def of_kind(self, kind: str) -> list[Response]:
        """Return the buffered untagged responses of one kind."""
        kind = kind.upper()
        return [r for r in self.untagged if r.kind == kind]


@dataclass(eq=False)
class _PendingCommand:
    command: Command
    expect: frozenset[str]
    future: asyncio.Future
    tag: str | None = None
    untagged: list[Response] = field(default_factory=list)
    abandoned: bool = False
    completed: asyncio.Event = field(default_factory=asyncio.Event)


# Callback types
UnsolicitedListener = Callable[[Response], None]
FailureListener = Callable[[ImapError], None]


class CommandDispatcher:
    """
    Single-flight command pipeline over a transport.

    Usage:
        >>> dispatcher = CommandDispatcher(transport)
        >>> greeting = await dispatcher.start()
        >>> result = await dispatcher.execute(Command("NOOP"))
        >>> await dispatcher.close()

    Attributes:
        timeout: Default seconds to wait for a tagged response (None = forever).
        literal_plus: Send non-synchronizing literals (server has LITERAL+).
        on_unsolicited: Called with every untagged response no command claimed.
        on_failure: Called once when the connection becomes unusable.
    """

    def __init__(
        self,
        transport: Transport,
        *,
        tag_prefix: str = "A",
        timeout: float | None = 30.0,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
        max_literal_size: int = DEFAULT_MAX_LITERAL_SIZE,
        wire_trace: bool = False,
    ) -> None:
        self._transport = transport
        self._reader = ResponseReader(
            transport,
            max_line_length=max_line_length,
            max_literal_size=max_literal_size,
        )
        self._tag_prefix = tag_prefix
        self._counter = 0
        self._queue: asyncio.Queue[_PendingCommand] = asyncio.Queue()
        self._current: _PendingCommand | None = None
        self._continuation: asyncio.Future | None = None
        self._reader_task: asyncio.Task | None = None
        self._writer_task: asyncio.Task | None = None
        self._failure: ImapError | None = None
        self._closing = False
        self._wire_trace = wire_trace

        self.timeout = timeout
        self.literal_plus = False
        self.on_unsolicited: UnsolicitedListener | None = None
        self.on_failure: FailureListener | None = None

    @property
    def is_usable(self) -> bool:
        """True while commands can still be sent."""
        return self._failure is None and self._reader_task is not None

    @property
    def failure(self) -> ImapError | None:
        """The error that made the connection unusable, if any."""
        return self._failure

    def next_tag(self) -> str:
        """Generate the next command tag (A1, A2, ...)."""
        self._counter += 1
        return f"{self._tag_prefix}{self._counter}"

    # =========================================================================
    # Lifecycle
    # =========================================================================

    async def start(self, greeting_timeout: float | None = None) -> Response:
        """
        Read the server greeting and start the background tasks.

        Args:
            greeting_timeout: Seconds to wait for the greeting.

        Returns:
            The greeting response (OK, PREAUTH or BYE).

        Raises:
            CommandTimeoutError: If no greeting arrives in time.
            ProtocolError: If the greeting cannot be decoded.
        """
        try:
            greeting = await asyncio.wait_for(self._reader.read_response(), greeting_timeout)
        except asyncio.TimeoutError as e:
            error = CommandTimeoutError("greeting", greeting_timeout or 0)
            await self._fail(error)
            raise error from e
        except ProtocolError as e:
            await self._fail(e)
            raise

        self._trace("S", greeting.raw)
        self._reader_task = asyncio.create_task(self._read_loop(), name="kestrel-reader")
        self._writer_task = asyncio.create_task(self._write_loop(), name="kestrel-writer")
        return greeting

    def expect_close(self) -> None:
        """Mark the coming end of stream as expected (LOGOUT in progress)."""
        self._closing = True

    async def close(self) -> None:
        """Stop the background tasks and close the transport."""
        self._closing = True
        await self._fail(ConnectionClosedError("connection closed by client"))

    # =========================================================================
    # Command Execution
    # =========================================================================

    async def execute(
        self,
        command: Command,
        *,
        expect: Iterable[str] = (),
        timeout: float | None = None,
    ) -> CommandResult:
        """
        Queue a command and wait for its tagged completion.

        Args:
            command: The command to send.
            expect: Untagged response kinds this command collects
                    (e.g. {"SEARCH"}); everything else is unsolicited.
            timeout: Override of the default timeout, in seconds.

        Returns:
            CommandResult with the buffered untagged responses.

        Raises:
            CommandRejectedError: The server answered NO or BAD.
            CommandTimeoutError: No completion in time; connection is dead.
            ConnectionClosedError: The connection is (or became) unusable.
        """
        self._check_usable()

        loop = asyncio.get_running_loop()
        pending = _PendingCommand(
            command=command,
            expect=frozenset(kind.upper() for kind in expect),
            future=loop.create_future(),
        )
        self._queue.put_nowait(pending)

        wait = self.timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(asyncio.shield(pending.future), wait)
        except asyncio.TimeoutError:
            pending.abandoned = True
            error = CommandTimeoutError(command.describe(), wait or 0)
            await self._fail(error)
            raise error from None
        except asyncio.CancelledError:
            pending.abandoned = True
            raise

    def _check_usable(self) -> None:
        if self._failure is not None:
            raise ConnectionClosedError(f"connection is unusable: {self._failure}") from self._failure
        if self._reader_task is None:
            raise ConnectionClosedError("connection has not been started")

    # =========================================================================
    # Background Tasks
    # =========================================================================

    async def _write_loop(self) -> None:
        loop = asyncio.get_running_loop()
        try:
            while True:
                pending = await self._queue.get()
                if pending.abandoned:
                    logger.debug(f"Skipping abandoned command {pending.command.name}")
                    pending.future.cancel()
                    continue

                pending.tag = self.next_tag()
                self._current = pending
                logger.debug(f"> {pending.tag} {pending.command.describe()}")

                segments = pending.command.encode(pending.tag, literal_plus=self.literal_plus)
                for i, segment in enumerate(segments):
                    last = i == len(segments) - 1
                    if not last:
                        self._continuation = loop.create_future()
                    await self._write(pending, segment)
                    if not last:
                        # Wait for "+"; False means the server already
                        # completed (rejected) the command.
                        proceed = await self._continuation
                        self._continuation = None
                        if not proceed:
                            break

                await pending.completed.wait()
        except asyncio.CancelledError:
            raise
        except ImapError as e:
            await self._fail(e)

    async def _write(self, pending: _PendingCommand, segment: bytes) -> None:
        if pending.command.sensitive:
            self._trace("C", f"{pending.tag} {pending.command.name} <redacted>".encode())
        else:
            self._trace("C", segment)
        try:
            await self._transport.write(segment)
        except OSError as e:
            raise ConnectionClosedError(f"write failed: {e}") from e

    async def _read_loop(self) -> None:
        try:
            while True:
                response = await self._reader.read_response()
                self._trace("S", response.raw)
                self._route(response)
        except asyncio.CancelledError:
            raise
        except ImapError as e:
            await self._fail(e)

    def _route(self, response: Response) -> None:
        if response.is_continuation:
            if self._continuation is not None and not self._continuation.done():
                self._continuation.set_result(True)
            else:
                logger.warning(f"Unexpected continuation request: {response.text}")
            return

        current = self._current
        if response.is_untagged:
            if current is not None and response.kind in current.expect:
                current.untagged.append(response)
            else:
                self._dispatch_unsolicited(response)
            return

        if current is None or response.tag != current.tag:
            raise ProtocolError(f"unexpected tagged response {response.tag!r}: {response.text}")

        if self._continuation is not None and not self._continuation.done():
            self._continuation.set_result(False)
        self._complete(current, response)

    def _complete(self, pending: _PendingCommand, response: Response) -> None:
        self._current = None
        logger.debug(f"< {pending.tag} {response.kind} {response.text}")

        if pending.abandoned:
            logger.debug(f"Discarded response for abandoned command {pending.tag}")
            pending.future.cancel()
        elif not pending.future.done():
            if response.kind == "OK":
                pending.future.set_result(CommandResult(
                    tag=pending.tag or "",
                    command=pending.command.name,
                    code=response.code,
                    code_args=response.code_args,
                    text=response.text,
                    untagged=pending.untagged,
                ))
            else:
                pending.future.set_exception(CommandRejectedError(
                    pending.command.name, response.kind, response.text, response.code,
                ))
        pending.completed.set()

    def _dispatch_unsolicited(self, response: Response) -> None:
        if self.on_unsolicited is None:
            logger.debug(f"Ignoring unsolicited {response.kind} response")
            return
        try:
            self.on_unsolicited(response)
        except Exception as e:
            logger.warning(f"Unsolicited response listener failed on {response.kind}: {e}")

    # =========================================================================
    # Failure Handling
    # =========================================================================

    async def _fail(self, error: ImapError) -> None:
        """Make the connection unusable and fail everything waiting on it."""
        if self._failure is not None:
            return
        self._failure = error

        if self._closing:
            logger.debug(f"Connection closed: {error}")
        else:
            logger.error(f"Connection failed: {error}")

        pending: list[_PendingCommand] = []
        if self._current is not None:
            pending.append(self._current)
            self._current = None
        while not self._queue.empty():
            pending.append(self._queue.get_nowait())

        for i, item in enumerate(pending):
            if item.abandoned or item.future.done():
                item.future.cancel()
            elif i == 0 and item.tag is not None:
                item.future.set_exception(error)
            else:
                item.future.set_exception(ConnectionClosedError(f"connection failed: {error}"))
            item.completed.set()

        if self._continuation is not None and not self._continuation.done():
            self._continuation.set_result(False)

        current = asyncio.current_task()
        for task in (self._reader_task, self._writer_task):
            if task is not None and task is not current and not task.done():
                task.cancel()

        try:
            await self._transport.close()
        except (OSError, ImapError) as e:
            logger.debug(f"Error closing transport: {e}")

        if self.on_failure is not None:
            self.on_failure(error)

    def _trace(self, direction: str, data: bytes) -> None:
        if self._wire_trace:
            logger.debug(f"{direction}: {data!r}")
