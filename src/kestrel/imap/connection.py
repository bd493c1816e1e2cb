# =============================================================================
# IMAP Connection
# =============================================================================
# The entry point of the engine: one authenticated conversation with one
# server over one transport.
#
# Key responsibilities:
#   - Greeting, capabilities and authentication (LOGIN or PREAUTH)
#   - Enforce the state machine before anything is queued
#   - Mailbox operations (list, select, examine, rename, delete)
#   - Route unsolicited mailbox updates to the selected FolderSession and
#     to registered listeners
#
# Design notes:
#   - At most one FolderSession is open per connection. Selecting another
#     mailbox closes the old session object; the server does the same.
#   - Connection-fatal errors (timeouts, protocol errors, BYE) move the
#     state to Logout and invalidate the session. Nothing reconnects.
# =============================================================================

import logging
import re
from collections.abc import Callable, Iterable
from dataclasses import dataclass

import keyring
from keyring.errors import KeyringError

from kestrel.config import Config
from kestrel.core import Account, FolderMode, MailboxInfo, SelectStatus
from kestrel.errors import (
    AuthenticationError,
    CapabilityError,
    CommandRejectedError,
    ConnectionClosedError,
    ImapError,
    MailboxPermissionError,
    NoSuchMailboxError,
)
from kestrel.imap.codec import Command, Response, decode_mailbox_name, encode_mailbox_name
from kestrel.imap.dispatcher import CommandDispatcher, CommandResult
from kestrel.imap.fetch import FetchPlanner
from kestrel.imap.folder import FolderSession
from kestrel.imap.state import Phase, StateMachine
from kestrel.imap.transport import Transport

logger = logging.getLogger(__name__)


@dataclass
class MailboxEvent:
    """
    Event emitted for unsolicited server data.

    Attributes:
        kind: "exists", "recent", "expunge", "flags", "alert" or "bye".
        mailbox: The selected mailbox, or None outside the Selected state.
        number: Message count (exists/recent) or sequence number
                (expunge/flags).
        flags: New flag set for "flags" events.
        text: Server text for "alert" and "bye" events.
    """
    kind: str
    mailbox: str | None
    number: int | None = None
    flags: frozenset[str] | None = None
    text: str = ""


MailboxListener = Callable[[MailboxEvent], None]

# Commands whose untagged data belongs to a SELECT/EXAMINE
SELECT_RESPONSES = ("FLAGS", "EXISTS", "RECENT", "OK")

# Server texts that mean "no such mailbox" when no response code is sent
_MISSING_MAILBOX = re.compile(
    r"no such|does ?n[o']t exist|not exist|not found|unknown mailbox|nonexistent",
    re.IGNORECASE,
)


class Connection:
    """
    An IMAP client connection.

    Usage:
        >>> reader, writer = await asyncio.open_connection(host, 993, ssl=ctx)
        >>> async with await Connection.open(StreamTransport(reader, writer)) as conn:
        ...     await conn.login("user@example.com", password)
        ...     inbox = await conn.select("INBOX")
        ...     records = await inbox.search(SearchBuilder().unseen())

    Attributes:
        config: Configuration in effect.
        state: The connection state machine.
        capabilities: Upper-cased capabilities the server advertised.
        greeting: The server greeting once started.
    """

    def __init__(self, transport: Transport, config: Config | None = None) -> None:
        self.config = config or Config()
        self._dispatcher = CommandDispatcher(
            transport,
            tag_prefix=self.config.connection.tag_prefix,
            timeout=self.config.connection.timeout,
            max_line_length=self.config.codec.max_line_length,
            max_literal_size=self.config.codec.max_literal_size,
            wire_trace=self.config.connection.wire_trace,
        )
        self._dispatcher.on_unsolicited = self._on_unsolicited
        self._dispatcher.on_failure = self._on_failure

        self.state = StateMachine()
        self.capabilities: frozenset[str] = frozenset()
        self.greeting: Response | None = None
        self.planner = FetchPlanner(self.config.fetch.max_command_length)
        self._session: FolderSession | None = None
        self._listeners: list[MailboxListener] = []

    @classmethod
    async def open(cls, transport: Transport, config: Config | None = None) -> "Connection":
        """Create a connection and read the server greeting."""
        connection = cls(transport, config)
        await connection.start()
        return connection

    @property
    def is_usable(self) -> bool:
        return self._dispatcher.is_usable and self.state.phase is not Phase.LOGOUT

    @property
    def failure(self) -> ImapError | None:
        """The connection-fatal error, if one happened."""
        return self._dispatcher.failure

    @property
    def session(self) -> FolderSession | None:
        """The open folder session, if a mailbox is selected."""
        return self._session

    # =========================================================================
    # Connection Management
    # =========================================================================

    async def start(self) -> Response:
        """
        Read the greeting. PREAUTH moves straight to Authenticated.

        Raises:
            ConnectionClosedError: If the server greets with BYE.
            CommandTimeoutError: If no greeting arrives in time.
        """
        greeting = await self._dispatcher.start(self.config.connection.greeting_timeout or None)
        self.greeting = greeting

        if greeting.kind == "BYE":
            await self._dispatcher.close()
            self.state.logged_out()
            raise ConnectionClosedError(f"server refused the connection: {greeting.text}")

        if greeting.code == "CAPABILITY":
            self._set_capabilities(greeting.code_args)
        if greeting.kind == "PREAUTH":
            self.state.authenticated()
            logger.info("Connection is pre-authenticated")
        else:
            logger.info(f"Connected: {greeting.text}")
        return greeting

    async def execute(
        self,
        command: Command,
        *,
        expect: Iterable[str] = (),
        timeout: float | None = None,
    ) -> CommandResult:
        """
        Check the command against the state machine and run it.

        Raises:
            ConnectionClosedError: If the connection already failed.
            InvalidStateError: If the command is illegal in the current state.
            CommandRejectedError: If the server answers NO or BAD.
            CommandTimeoutError: If the server does not answer in time.
        """
        failure = self._dispatcher.failure
        if failure is not None:
            raise ConnectionClosedError(f"connection is unusable: {failure}") from failure
        self.state.require(command.name)
        return await self._dispatcher.execute(command, expect=expect, timeout=timeout)

    async def logout(self) -> None:
        """
        Log out and close the transport. Safe to call more than once.
        """
        if self.state.phase is Phase.LOGOUT:
            await self._dispatcher.close()
            return

        if self._session is not None:
            self._session._invalidate("logged out")
            self._session = None

        self._dispatcher.expect_close()
        try:
            await self.execute(Command("LOGOUT"), expect=("BYE",))
        except ConnectionClosedError as e:
            # Servers may hang up right after BYE
            logger.debug(f"Connection closed during LOGOUT: {e}")
        finally:
            self.state.logged_out()
            await self._dispatcher.close()
        logger.info("Logged out")

    async def close(self) -> None:
        """Drop the connection without LOGOUT."""
        if self._session is not None:
            self._session._invalidate("connection closed")
            self._session = None
        self.state.logged_out()
        await self._dispatcher.close()

    async def __aenter__(self) -> "Connection":
        return self

    async def __aexit__(self, *exc_info) -> None:
        if self.is_usable:
            await self.logout()
        else:
            await self.close()

    # =========================================================================
    # Capabilities and Authentication
    # =========================================================================

    def has_capability(self, name: str) -> bool:
        return name.upper() in self.capabilities

    async def capability(self) -> frozenset[str]:
        """Ask the server for its capabilities."""
        result = await self.execute(Command("CAPABILITY"), expect=("CAPABILITY",))
        values: list = []
        for response in result.of_kind("CAPABILITY"):
            values.extend(response.payload)
        self._set_capabilities(values)
        return self.capabilities

    def _set_capabilities(self, values: Iterable) -> None:
        self.capabilities = frozenset(str(v).upper() for v in values if v is not None)
        self._dispatcher.literal_plus = "LITERAL+" in self.capabilities
        logger.debug(f"Server capabilities: {sorted(self.capabilities)}")

    async def login(self, username: str, password: str) -> None:
        """
        Authenticate with LOGIN.

        Raises:
            AuthenticationError: If the server rejects the credentials.
            CapabilityError: If the server advertises LOGINDISABLED.
        """
        if self.has_capability("LOGINDISABLED"):
            raise CapabilityError("server has disabled LOGIN on this connection (LOGINDISABLED)")

        logger.debug(f"Authenticating as {username}")
        command = Command("LOGIN", username, password, sensitive=True)
        try:
            result = await self.execute(command, expect=("CAPABILITY",))
        except CommandRejectedError as e:
            raise AuthenticationError("LOGIN", e.result, e.text, e.code) from e

        self.state.authenticated()
        logger.info(f"Logged in as {username}")

        # Capabilities often change after login
        if result.code == "CAPABILITY":
            self._set_capabilities(result.code_args)
        elif result.of_kind("CAPABILITY"):
            self._set_capabilities(result.of_kind("CAPABILITY")[-1].payload)
        else:
            await self.capability()

    async def login_account(self, account: Account) -> None:
        """
        Authenticate with a password retrieved from the system keyring.

        Raises:
            AuthenticationError: If login fails or the password is not found.
        """
        try:
            password = keyring.get_password(account.keyring_service, account.username)
        except KeyringError as e:
            raise AuthenticationError(
                "LOGIN", "NO", f"Keyring lookup failed for {account.username}: {e}"
            ) from e

        if not password:
            raise AuthenticationError(
                "LOGIN", "NO",
                f"No password found in keyring for {account.username}. "
                f"Set it with: keyring set {account.keyring_service} {account.username}",
            )
        await self.login(account.username, password)

    # =========================================================================
    # Mailbox Operations
    # =========================================================================

    async def select(self, mailbox: str, mode: FolderMode = FolderMode.READ_WRITE) -> FolderSession:
        """
        Open a mailbox and return its FolderSession.

        Any previously open session is invalidated first.

        Raises:
            NoSuchMailboxError: The mailbox does not exist.
            MailboxPermissionError: Access was denied, or a read-write open
                was downgraded to read-only by the server.
            CommandRejectedError: Any other NO/BAD answer.
        """
        if self._session is not None:
            self._session._invalidate(f"{mailbox} was selected")
            self._session = None

        command = Command(mode.command, encode_mailbox_name(mailbox))
        try:
            result = await self.execute(command, expect=SELECT_RESPONSES)
        except CommandRejectedError as e:
            # A failed SELECT leaves no mailbox selected (RFC 3501 6.3.1)
            if self.state.phase is Phase.SELECTED:
                self.state.deselected()
            error = _select_error(mailbox, e)
            if error is e:
                raise
            raise error from e

        status = _select_status(result)
        wants_write = mode is FolderMode.READ_WRITE
        if wants_write and status.read_only:
            # Downgraded by the server: leave the mailbox without expunging
            self.state.selected(mailbox, True)
            await self.execute(Command("CLOSE"))
            self.state.deselected()
            raise MailboxPermissionError(
                command.name, "NO", f"{mailbox} can only be opened read-only", "READ-ONLY",
            )

        read_only = status.read_only or not wants_write
        self.state.selected(mailbox, read_only)
        session = FolderSession(
            self,
            mailbox,
            FolderMode.READ_ONLY if read_only else FolderMode.READ_WRITE,
            status,
            self.config.fetch.profile,
        )
        self._session = session
        logger.info(
            f"Selected {mailbox} ({'read-only' if read_only else 'read-write'}, "
            f"{status.exists} messages)"
        )
        return session

    async def examine(self, mailbox: str) -> FolderSession:
        """Open a mailbox read-only."""
        return await self.select(mailbox, FolderMode.READ_ONLY)

    async def list_mailboxes(self, reference: str = "", pattern: str = "*") -> list[MailboxInfo]:
        """
        List mailboxes matching a pattern ("*" = everything, "%" = one level).
        """
        command = Command("LIST", encode_mailbox_name(reference), encode_mailbox_name(pattern))
        result = await self.execute(command, expect=("LIST",))
        mailboxes = []
        for response in result.of_kind("LIST"):
            info = _parse_list(response)
            if info is not None:
                mailboxes.append(info)
        logger.debug(f"LIST {pattern!r} returned {len(mailboxes)} mailboxes")
        return mailboxes

    async def mailbox_info(self, mailbox: str) -> MailboxInfo | None:
        """LIST a single mailbox; None if it does not exist."""
        for info in await self.list_mailboxes("", mailbox):
            if info.name == mailbox:
                return info
        return None

    async def rename_mailbox(self, old: str, new: str) -> None:
        """
        Rename a mailbox. An open session on it is closed first.
        """
        await self._close_session_on(old)
        await self.execute(Command("RENAME", encode_mailbox_name(old), encode_mailbox_name(new)))
        logger.info(f"Renamed mailbox {old} -> {new}")

    async def delete_mailbox(self, mailbox: str) -> None:
        """
        Delete a mailbox. An open session on it is closed first.
        """
        await self._close_session_on(mailbox)
        try:
            await self.execute(Command("DELETE", encode_mailbox_name(mailbox)))
        except CommandRejectedError as e:
            error = _select_error(mailbox, e)
            if error is e:
                raise
            raise error from e
        logger.info(f"Deleted mailbox {mailbox}")

    async def noop(self) -> None:
        """Poll for mailbox updates; they arrive through the listeners."""
        await self.execute(Command("NOOP"))

    async def _close_session_on(self, mailbox: str) -> None:
        session = self._session
        if session is not None and session.mailbox == mailbox and session.is_open:
            await session.close()

    def _session_closed(self, session: FolderSession) -> None:
        if self._session is session:
            self._session = None

    # =========================================================================
    # Unsolicited Responses
    # =========================================================================

    def add_listener(self, listener: MailboxListener) -> None:
        """Register a callback for unsolicited mailbox updates."""
        self._listeners.append(listener)

    def remove_listener(self, listener: MailboxListener) -> None:
        self._listeners.remove(listener)

    def _on_unsolicited(self, response: Response) -> None:
        session = self._session
        mailbox = session.mailbox if session is not None else None
        kind = response.kind
        event: MailboxEvent | None = None

        if kind == "BYE":
            logger.warning(f"Server is closing the connection: {response.text}")
            event = MailboxEvent("bye", mailbox, text=response.text)
        elif kind in ("EXISTS", "RECENT", "EXPUNGE"):
            if session is not None:
                session._apply(response)
            event = MailboxEvent(kind.lower(), mailbox, number=response.number)
        elif kind == "FETCH":
            flags = _fetch_flags(response)
            if flags is not None:
                event = MailboxEvent("flags", mailbox, number=response.number, flags=flags)
        elif kind == "CAPABILITY":
            self._set_capabilities(response.payload)
        elif response.is_status and response.code == "ALERT":
            logger.warning(f"Server alert: {response.text}")
            event = MailboxEvent("alert", mailbox, text=response.text)
        else:
            logger.debug(f"Unsolicited {kind} response: {response.text or response.payload}")

        if event is not None:
            self._emit(event)

    def _emit(self, event: MailboxEvent) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception as e:
                logger.warning(f"Mailbox listener failed on {event.kind} event: {e}")

    def _on_failure(self, error: ImapError) -> None:
        self.state.logged_out()
        if self._session is not None:
            self._session._invalidate(f"connection failed: {error}")
            self._session = None


# =============================================================================
# Response Helpers
# =============================================================================

def _select_error(mailbox: str, error: CommandRejectedError) -> CommandRejectedError:
    """Map a rejected SELECT/EXAMINE/DELETE onto a specific error."""
    if error.result != "NO":
        return error
    if error.code == "NONEXISTENT" or (error.code is None and _MISSING_MAILBOX.search(error.text)):
        return NoSuchMailboxError(error.command, error.result, error.text, error.code)
    if error.code in ("NOPERM", "READ-ONLY"):
        return MailboxPermissionError(error.command, error.result, error.text, error.code)
    return error


def _select_status(result: CommandResult) -> SelectStatus:
    status = SelectStatus(read_only=result.code == "READ-ONLY")
    for response in result.untagged:
        if response.kind == "EXISTS" and response.number is not None:
            status.exists = response.number
        elif response.kind == "RECENT" and response.number is not None:
            status.recent = response.number
        elif response.kind == "FLAGS" and response.payload and isinstance(response.payload[0], tuple):
            status.flags = frozenset(str(f) for f in response.payload[0])
        elif response.kind == "OK" and response.code_args:
            value = response.code_args[0]
            if response.code == "UIDVALIDITY" and isinstance(value, int):
                status.uid_validity = value
            elif response.code == "UIDNEXT" and isinstance(value, int):
                status.uid_next = value
            elif response.code == "UNSEEN" and isinstance(value, int):
                status.first_unseen = value
            elif response.code == "PERMANENTFLAGS" and isinstance(value, tuple):
                status.permanent_flags = frozenset(str(f) for f in value)
    return status


def _parse_list(response: Response) -> MailboxInfo | None:
    payload = response.payload
    if len(payload) < 3 or not isinstance(payload[0], tuple):
        logger.warning(f"Ignoring malformed LIST response: {response.raw!r}")
        return None
    attributes, delimiter, name = payload[0], payload[1], payload[2]
    if isinstance(name, bytes):
        name = name.decode("utf-8", errors="replace")
    return MailboxInfo(
        name=decode_mailbox_name(str(name)),
        delimiter=None if delimiter is None else str(delimiter),
        attributes=frozenset(str(a) for a in attributes),
    )


def _fetch_flags(response: Response) -> frozenset[str] | None:
    if len(response.payload) != 1 or not isinstance(response.payload[0], tuple):
        return None
    pairs = response.payload[0]
    for i in range(0, len(pairs) - 1, 2):
        if isinstance(pairs[i], str) and pairs[i].upper() == "FLAGS" and isinstance(pairs[i + 1], tuple):
            return frozenset(str(f) for f in pairs[i + 1])
    return None
