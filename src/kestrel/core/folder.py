# =============================================================================
# Folder Model
# =============================================================================
# Mailbox-level values: how a mailbox is opened, what it can hold, and the
# status the server reports on SELECT.
#
# IMAP allows arbitrary hierarchies, so a mailbox may hold messages,
# child mailboxes, or both. The LIST attributes say which:
#   - \Noselect: cannot be selected, so it only holds folders
#   - \Noinferiors: can have no children, so it only holds messages
# =============================================================================

from collections.abc import Iterable
from dataclasses import dataclass, field
from enum import Enum


class FolderMode(Enum):
    """Access mode a mailbox is opened with."""
    READ_ONLY = "read-only"     # EXAMINE
    READ_WRITE = "read-write"   # SELECT

    @property
    def command(self) -> str:
        return "EXAMINE" if self is FolderMode.READ_ONLY else "SELECT"


class FolderType(Enum):
    """What a mailbox can contain."""
    HOLDS_FOLDERS = "holds-folders"
    HOLDS_MESSAGES = "holds-messages"
    HOLDS_BOTH = "holds-both"

    @classmethod
    def from_attributes(cls, attributes: Iterable[str]) -> "FolderType":
        """
        Classify a mailbox from its LIST attributes.

        Example:
            >>> FolderType.from_attributes(["\\\\Noselect", "\\\\HasChildren"])
            <FolderType.HOLDS_FOLDERS: 'holds-folders'>
        """
        attrs = {a.lower() for a in attributes}
        if "\\noselect" in attrs or "\\nonexistent" in attrs:
            return cls.HOLDS_FOLDERS
        if "\\noinferiors" in attrs:
            return cls.HOLDS_MESSAGES
        return cls.HOLDS_BOTH


@dataclass(frozen=True)
class MailboxInfo:
    """
    One entry of a LIST response.

    Attributes:
        name: Decoded mailbox name (modified UTF-7 already undone).
        delimiter: Hierarchy delimiter ("/" or "."), None for a flat namespace.
        attributes: Name attributes such as "\\HasChildren" or "\\Sent".
    """
    name: str
    delimiter: str | None
    attributes: frozenset[str] = frozenset()

    @property
    def folder_type(self) -> FolderType:
        return FolderType.from_attributes(self.attributes)

    @property
    def selectable(self) -> bool:
        return self.folder_type is not FolderType.HOLDS_FOLDERS

    @property
    def parent(self) -> str | None:
        """Name of the parent mailbox, or None at the top level."""
        if not self.delimiter or self.delimiter not in self.name:
            return None
        return self.name.rsplit(self.delimiter, 1)[0]


@dataclass(frozen=True)
class MailboxCounts:
    """
    Message counts for a selected mailbox.

    These are advisory: another client can change the mailbox at any time,
    so the numbers are only as fresh as the last server response.

    Attributes:
        total: Messages in the mailbox (last EXISTS).
        unread: Messages without \\Seen.
        new: Messages with \\Recent (last RECENT).
    """
    total: int
    unread: int
    new: int


@dataclass
class SelectStatus:
    """
    What the server reported while selecting a mailbox.

    Updated in place by unsolicited EXISTS/RECENT/EXPUNGE responses for as
    long as the mailbox stays selected.
    """
    exists: int = 0
    recent: int = 0
    uid_validity: int | None = None
    uid_next: int | None = None
    first_unseen: int | None = None     # Sequence number of the first unseen message
    flags: frozenset[str] = frozenset()
    permanent_flags: frozenset[str] = field(default_factory=frozenset)
    read_only: bool = False
