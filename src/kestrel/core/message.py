# =============================================================================
# Message Records
# =============================================================================
# What a fetch returns for one message. A record is a snapshot: it holds the
# sequence number (valid only in the numbering epoch it was fetched in), the
# UID, the flags, and exactly the attributes the active pre-fetch profile
# asked for. Refetching produces a new record.
#
# Reading an attribute never triggers I/O:
#   - not requested by the profile -> AttributeNotFetchedError
#   - requested, server omitted it -> PartialFetchError
#
# MIME bodies are returned as raw bytes. Parsing them is the caller's job.
# =============================================================================

import email.header
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from email.parser import BytesHeaderParser
from email.utils import parsedate_to_datetime
from enum import IntFlag
from types import MappingProxyType
from typing import Any

from kestrel.core.profile import FetchItem
from kestrel.errors import AttributeNotFetchedError, PartialFetchError


class MessageFlags(IntFlag):
    """
    IMAP system flags as a bitmask.

    Standard IMAP flags (RFC 3501):
        - SEEN: Message has been read
        - ANSWERED: Message has been replied to
        - FLAGGED: User-flagged as important (usually shown as a star)
        - DELETED: Marked for deletion (will be purged on EXPUNGE)
        - DRAFT: Message is a draft (not yet sent)
        - RECENT: First session to see the message (server-managed)

    Keywords (flags without a backslash) are not represented here; use
    MessageRecord.flags for the full set.

    Usage:
        if record.system_flags & MessageFlags.SEEN:
            print("Message has been read")
    """
    NONE = 0            # No flags set
    SEEN = 1 << 0       # \Seen
    ANSWERED = 1 << 1   # \Answered
    FLAGGED = 1 << 2    # \Flagged
    DELETED = 1 << 3    # \Deleted
    DRAFT = 1 << 4      # \Draft
    RECENT = 1 << 5     # \Recent (read-only, set by the server)

    @classmethod
    def from_imap(cls, flags: Iterable[str]) -> "MessageFlags":
        """Convert IMAP flag strings such as "\\Seen" into a bitmask."""
        result = cls.NONE
        for flag in flags:
            result |= _FLAG_NAMES.get(flag.lower(), cls.NONE)
        return result

    def to_imap(self) -> list[str]:
        """Convert the bitmask back into IMAP flag strings."""
        return [name for name, bit in _IMAP_NAMES.items() if self & bit]


_IMAP_NAMES = {
    "\\Seen": MessageFlags.SEEN,
    "\\Answered": MessageFlags.ANSWERED,
    "\\Flagged": MessageFlags.FLAGGED,
    "\\Deleted": MessageFlags.DELETED,
    "\\Draft": MessageFlags.DRAFT,
    "\\Recent": MessageFlags.RECENT,
}
_FLAG_NAMES = {name.lower(): bit for name, bit in _IMAP_NAMES.items()}


def decode_words(value: str) -> str:
    """Decode RFC 2047 encoded words ("=?utf-8?q?...?=") in a header value."""
    if not value or "=?" not in value:
        return value
    try:
        result = ""
        for part, charset in email.header.decode_header(value):
            if isinstance(part, bytes):
                result += part.decode(charset or "utf-8", errors="replace")
            else:
                result += part
        return result
    except (ValueError, LookupError):
        return value


# =============================================================================
# Envelope and Body Structure
# =============================================================================

@dataclass(frozen=True)
class Address:
    """
    One address from an ENVELOPE address list.

    Attributes:
        name: Display name, RFC 2047 decoded ("" if none).
        route: Source route (obsolete, almost always None).
        mailbox: Local part, or the group name for group syntax.
        host: Domain, or None for group markers.
    """
    name: str
    route: str | None
    mailbox: str | None
    host: str | None

    @property
    def email(self) -> str:
        """The addr-spec, e.g. "alice@example.com"."""
        if self.mailbox and self.host:
            return f"{self.mailbox}@{self.host}"
        return self.mailbox or ""

    def __str__(self) -> str:
        if self.name:
            return f"{self.name} <{self.email}>"
        return self.email


@dataclass(frozen=True)
class Envelope:
    """
    Parsed ENVELOPE structure (RFC 3501 section 7.4.2).

    String fields are "" when the server sent NIL.
    """
    date: str
    subject: str
    from_: tuple[Address, ...]
    sender: tuple[Address, ...]
    reply_to: tuple[Address, ...]
    to: tuple[Address, ...]
    cc: tuple[Address, ...]
    bcc: tuple[Address, ...]
    in_reply_to: str
    message_id: str

    @property
    def sent_at(self) -> datetime | None:
        """The Date header as a datetime, or None if missing or unparseable."""
        if not self.date:
            return None
        try:
            return parsedate_to_datetime(self.date)
        except (TypeError, ValueError):
            return None


@dataclass(frozen=True)
class BodyStructure:
    """
    Parsed BODYSTRUCTURE, reduced to what a client needs to pick parts.

    Attributes:
        content_type: Lower-cased "type/subtype", e.g. "multipart/mixed".
        parameters: Body parameters as (name, value) pairs, names lower-cased.
        encoding: Content-Transfer-Encoding, lower-cased (None for multipart).
        size: Size of the part in bytes (None for multipart).
        parts: Child parts of a multipart body.
    """
    content_type: str
    parameters: tuple[tuple[str, str], ...] = ()
    encoding: str | None = None
    size: int | None = None
    parts: tuple["BodyStructure", ...] = ()

    @property
    def is_multipart(self) -> bool:
        return self.content_type.startswith("multipart/")

    def param(self, name: str) -> str | None:
        """Return a body parameter such as "charset"."""
        name = name.lower()
        for key, value in self.parameters:
            if key == name:
                return value
        return None

    def walk(self):
        """Yield this part and every nested part, depth first."""
        yield self
        for part in self.parts:
            yield from part.walk()


# =============================================================================
# Message Record
# =============================================================================

@dataclass(frozen=True)
class MessageRecord:
    """
    An immutable snapshot of one message.

    Attributes:
        sequence: Message sequence number in the epoch it was fetched in.
                  None when the message vanished before it could be fetched.
        uid: IMAP UID, stable for the life of the mailbox (per UIDVALIDITY).
        mailbox: Name of the mailbox the record came from.
        epoch: Numbering epoch of the session; bumped on every expunge.
        requested: Every item the fetch asked for.
        header_names: Header fields the fetch asked for.
        values: Decoded attribute values keyed by item.
        missing: Requested items the server did not return.
        expunged: True for records returned by FolderSession.expunge().

    Example:
        >>> record.envelope.subject
        'Invoice 42'
        >>> record.size   # not in the profile
        AttributeNotFetchedError: SIZE was not fetched for message 3 ...
    """
    sequence: int | None
    uid: int | None
    mailbox: str
    epoch: int
    requested: frozenset[FetchItem] = frozenset()
    header_names: tuple[str, ...] = ()
    values: Mapping[FetchItem, Any] = field(default_factory=dict, hash=False)
    missing: frozenset[FetchItem] = frozenset()
    expunged: bool = False

    def __post_init__(self) -> None:
        # Freeze the mapping so the record cannot be changed after the fact
        object.__setattr__(self, "values", MappingProxyType(dict(self.values)))

    def has(self, item: FetchItem) -> bool:
        """True if the attribute was fetched and returned."""
        return item in self.values

    def get(self, item: FetchItem) -> Any:
        """
        Return a fetched attribute value.

        Raises:
            AttributeNotFetchedError: The profile did not request it.
            PartialFetchError: It was requested but the server omitted it.
        """
        if item in self.values:
            return self.values[item]
        if item in self.missing:
            raise PartialFetchError(self.sequence, self.uid, frozenset({item.value}))
        raise AttributeNotFetchedError(
            f"{item.name} was not fetched for message {self.sequence} (UID {self.uid}); "
            f"add it to the pre-fetch profile or use FolderSession.refetch()"
        )

    # -------------------------------------------------------------------------
    # Attributes
    # -------------------------------------------------------------------------

    @property
    def flags(self) -> frozenset[str]:
        """All flags, system flags and keywords alike."""
        return self.get(FetchItem.FLAGS)

    @property
    def system_flags(self) -> MessageFlags:
        return MessageFlags.from_imap(self.flags)

    @property
    def envelope(self) -> Envelope:
        return self.get(FetchItem.ENVELOPE)

    @property
    def body_structure(self) -> BodyStructure:
        return self.get(FetchItem.BODY_STRUCTURE)

    @property
    def internal_date(self) -> datetime:
        """When the server received the message."""
        return self.get(FetchItem.INTERNAL_DATE)

    @property
    def size(self) -> int:
        """RFC 822 size in bytes."""
        return self.get(FetchItem.SIZE)

    @property
    def headers(self) -> bytes:
        """
        Raw header bytes: the whole header block when HEADERS was fetched,
        otherwise just the named fields.
        """
        if FetchItem.HEADERS in self.requested:
            return self.get(FetchItem.HEADERS)
        return self.get(FetchItem.HEADER_FIELDS)

    @property
    def body(self) -> bytes:
        """The full raw message (headers and body), undecoded."""
        if FetchItem.BODY in self.requested:
            return self.get(FetchItem.BODY)
        return self.get(FetchItem.BODY_PEEK)

    def header(self, name: str) -> str | None:
        """
        Return one header value, RFC 2047 decoded.

        Raises:
            AttributeNotFetchedError: If neither HEADERS nor this field was
                requested.
        """
        if (FetchItem.HEADERS not in self.requested
                and name.upper() not in self.header_names):
            raise AttributeNotFetchedError(
                f"header {name!r} was not fetched for message {self.sequence} (UID {self.uid})"
            )
        value = BytesHeaderParser().parsebytes(self.headers).get(name)
        return decode_words(str(value)) if value is not None else None

    # -------------------------------------------------------------------------
    # Convenience properties for checking flags
    # -------------------------------------------------------------------------

    @property
    def is_read(self) -> bool:
        """Returns True if the message has been read (SEEN flag)."""
        return bool(self.system_flags & MessageFlags.SEEN)

    @property
    def is_answered(self) -> bool:
        return bool(self.system_flags & MessageFlags.ANSWERED)

    @property
    def is_flagged(self) -> bool:
        """Returns True if the message is starred/flagged."""
        return bool(self.system_flags & MessageFlags.FLAGGED)

    @property
    def is_deleted(self) -> bool:
        """Returns True if the message is marked for deletion."""
        return bool(self.system_flags & MessageFlags.DELETED)

    @property
    def is_recent(self) -> bool:
        return bool(self.system_flags & MessageFlags.RECENT)

    def __repr__(self) -> str:
        return (
            f"MessageRecord(sequence={self.sequence}, uid={self.uid}, "
            f"mailbox={self.mailbox!r}, epoch={self.epoch}, "
            f"items={sorted(item.name for item in self.values)})"
        )
