# =============================================================================
# Exceptions
# =============================================================================
# Every error raised by Kestrel derives from ImapError so callers can catch
# the whole family in one place.
#
# Errors fall into two groups:
#   - Connection-fatal: ProtocolError (and ConnectionClosedError) and
#     CommandTimeoutError. Once one of these is raised the connection and
#     its folder session are unusable; every later call fails fast.
#   - Recoverable: everything else. The connection stays usable and the
#     caller decides what to do next. Nothing is retried automatically.
# =============================================================================


class ImapError(Exception):
    """Base exception for IMAP operations."""
    pass


# =============================================================================
# Connection-fatal errors
# =============================================================================

class ProtocolError(ImapError):
    """Raised when the server sends data that cannot be framed or parsed."""
    pass


class ConnectionClosedError(ProtocolError):
    """Raised when the connection is closed or was invalidated by a fatal error."""
    pass


class CommandTimeoutError(ImapError, TimeoutError):
    """
    Raised when no tagged response arrives within the command timeout.

    Also a TimeoutError, so `except TimeoutError` catches it.

    The response stream may be desynchronized afterwards, so the connection
    is marked unusable.
    """

    def __init__(self, command: str, timeout: float) -> None:
        super().__init__(f"{command} timed out after {timeout:g}s")
        self.command = command
        self.timeout = timeout


# =============================================================================
# Recoverable errors
# =============================================================================

class InvalidStateError(ImapError):
    """Raised when an operation is illegal in the current connection state."""

    def __init__(self, operation: str, current: str, required: str) -> None:
        super().__init__(f"{operation} requires {required} (connection is {current})")
        self.operation = operation
        self.current = current
        self.required = required


class CommandRejectedError(ImapError):
    """
    Raised when the server completes a command with NO or BAD.

    Attributes:
        command: The command name (e.g. "SEARCH").
        result: "NO" or "BAD".
        text: Human-readable text sent by the server, verbatim.
        code: Response code in brackets (e.g. "NONEXISTENT"), if any.
    """

    def __init__(
        self,
        command: str,
        result: str,
        text: str,
        code: str | None = None,
    ) -> None:
        super().__init__(f"{command} failed ({result}): {text}")
        self.command = command
        self.result = result
        self.text = text
        self.code = code


class AuthenticationError(CommandRejectedError):
    """Raised when LOGIN is rejected or credentials cannot be found."""
    pass


class NoSuchMailboxError(CommandRejectedError):
    """Raised when selecting a mailbox that does not exist."""
    pass


class MailboxPermissionError(CommandRejectedError, PermissionError):
    """Raised when a mailbox cannot be opened with the requested access (also a PermissionError)."""
    pass


class InvalidRangeError(ImapError):
    """Raised when a sequence range is empty, inverted or outside the mailbox."""
    pass


class StaleRecordError(InvalidRangeError):
    """Raised when a record's sequence number predates the last expunge."""
    pass


class EmptyPredicateError(ImapError):
    """Raised when a search predicate has no terms."""
    pass


class PartialFetchError(ImapError):
    """
    Reported when the server omits requested attributes for a message.

    This is non-fatal: the rest of the batch is still returned, and the
    affected record marks the attributes as missing.
    """

    def __init__(self, sequence: int | None, uid: int | None, missing: frozenset[str]) -> None:
        names = ", ".join(sorted(missing))
        super().__init__(f"message {sequence} (UID {uid}) is missing: {names}")
        self.sequence = sequence
        self.uid = uid
        self.missing = missing


class AttributeNotFetchedError(ImapError):
    """Raised when reading a record attribute the fetch profile did not request."""
    pass


class CapabilityError(ImapError):
    """Raised when an operation needs a capability the server does not advertise."""
    pass
