# =============================================================================
# Connection State Machine
# =============================================================================
# IMAP connections move through four states (RFC 3501 section 3):
#
#   NotAuthenticated --LOGIN--> Authenticated --SELECT--> Selected
#          |                          ^                      |
#          |                          +-------CLOSE----------+
#          +------------------ LOGOUT ------------------> Logout
#
# The state is a closed set of frozen dataclasses rather than a bundle of
# booleans, so "selected but not authenticated" cannot be represented.
# Every command is checked against the table below before it is queued.
# =============================================================================

import logging
from dataclasses import dataclass
from enum import Enum

from kestrel.errors import InvalidStateError

logger = logging.getLogger(__name__)


class Phase(Enum):
    """The four protocol phases."""
    NOT_AUTHENTICATED = "NotAuthenticated"
    AUTHENTICATED = "Authenticated"
    SELECTED = "Selected"
    LOGOUT = "Logout"


@dataclass(frozen=True)
class NotAuthenticated:
    """Connected, no credentials accepted yet."""

    @property
    def phase(self) -> Phase:
        return Phase.NOT_AUTHENTICATED


@dataclass(frozen=True)
class Authenticated:
    """Logged in, no mailbox selected."""

    @property
    def phase(self) -> Phase:
        return Phase.AUTHENTICATED


@dataclass(frozen=True)
class Selected:
    """
    A mailbox is selected.

    Attributes:
        mailbox: Name of the selected mailbox.
        read_only: True when opened with EXAMINE or downgraded by the server.
    """
    mailbox: str
    read_only: bool

    @property
    def phase(self) -> Phase:
        return Phase.SELECTED


@dataclass(frozen=True)
class Logout:
    """Terminal state: logged out or connection lost."""

    @property
    def phase(self) -> Phase:
        return Phase.LOGOUT


ConnectionState = NotAuthenticated | Authenticated | Selected | Logout


_ANY = frozenset({Phase.NOT_AUTHENTICATED, Phase.AUTHENTICATED, Phase.SELECTED})
_NOT_AUTH = frozenset({Phase.NOT_AUTHENTICATED})
_AUTH_OR_SELECTED = frozenset({Phase.AUTHENTICATED, Phase.SELECTED})
_SELECTED = frozenset({Phase.SELECTED})

# Which phases each command is legal in
COMMAND_PHASES: dict[str, frozenset[Phase]] = {
    "CAPABILITY": _ANY,
    "NOOP": _ANY,
    "LOGOUT": _ANY,
    "LOGIN": _NOT_AUTH,
    "AUTHENTICATE": _NOT_AUTH,
    "SELECT": _AUTH_OR_SELECTED,
    "EXAMINE": _AUTH_OR_SELECTED,
    "LIST": _AUTH_OR_SELECTED,
    "STATUS": _AUTH_OR_SELECTED,
    "RENAME": _AUTH_OR_SELECTED,
    "DELETE": _AUTH_OR_SELECTED,
    "FETCH": _SELECTED,
    "SEARCH": _SELECTED,
    "SORT": _SELECTED,
    "STORE": _SELECTED,
    "EXPUNGE": _SELECTED,
    "CLOSE": _SELECTED,
    "UNSELECT": _SELECTED,
    "UID FETCH": _SELECTED,
    "UID SEARCH": _SELECTED,
    "UID SORT": _SELECTED,
    "UID STORE": _SELECTED,
}

# Commands that modify the mailbox and so need a read-write selection
WRITE_COMMANDS = frozenset({"STORE", "UID STORE", "EXPUNGE"})


def _describe(phases: frozenset[Phase]) -> str:
    order = [p for p in Phase if p in phases]
    return " or ".join(p.value for p in order)


class StateMachine:
    """
    Tracks the connection state and validates commands against it.

    Usage:
        >>> machine = StateMachine()
        >>> machine.require("SELECT")   # raises InvalidStateError
        >>> machine.authenticated()
        >>> machine.require("SELECT")   # fine now
    """

    def __init__(self, state: ConnectionState | None = None) -> None:
        self.state: ConnectionState = state or NotAuthenticated()

    @property
    def phase(self) -> Phase:
        return self.state.phase

    @property
    def selected_mailbox(self) -> str | None:
        """Name of the selected mailbox, or None outside the Selected state."""
        if isinstance(self.state, Selected):
            return self.state.mailbox
        return None

    def require(self, command: str) -> None:
        """
        Check that a command may be sent in the current state.

        Args:
            command: Command name, e.g. "FETCH" or "UID SEARCH".

        Raises:
            InvalidStateError: Naming the state the command requires.
        """
        name = command.upper()
        current = self.phase
        if current is Phase.LOGOUT:
            raise InvalidStateError(name, current.value, "an open connection")

        allowed = COMMAND_PHASES.get(name, _ANY)
        if current not in allowed:
            raise InvalidStateError(name, current.value, _describe(allowed))

        if name in WRITE_COMMANDS and isinstance(self.state, Selected) and self.state.read_only:
            raise InvalidStateError(name, "Selected (read-only)", "Selected (read-write)")

    # -------------------------------------------------------------------------
    # Transitions
    # -------------------------------------------------------------------------

    def authenticated(self) -> None:
        """LOGIN succeeded or the server greeted with PREAUTH."""
        self._move(Authenticated(), from_phases=_NOT_AUTH)

    def selected(self, mailbox: str, read_only: bool) -> None:
        """SELECT or EXAMINE succeeded."""
        self._move(Selected(mailbox, read_only), from_phases=_AUTH_OR_SELECTED)

    def deselected(self) -> None:
        """CLOSE/UNSELECT succeeded, or a SELECT failed while Selected."""
        self._move(Authenticated(), from_phases=_AUTH_OR_SELECTED)

    def logged_out(self) -> None:
        """LOGOUT, BYE, or a fatal connection error. Always allowed."""
        if self.phase is not Phase.LOGOUT:
            logger.debug(f"State {self.phase.value} -> Logout")
        self.state = Logout()

    def _move(self, new_state: ConnectionState, *, from_phases: frozenset[Phase]) -> None:
        if self.phase not in from_phases:
            raise InvalidStateError(
                f"transition to {new_state.phase.value}",
                self.phase.value,
                _describe(from_phases),
            )
        logger.debug(f"State {self.phase.value} -> {new_state}")
        self.state = new_state
