# =============================================================================
# Pre-fetch Profile
# =============================================================================
# Which message attributes a search, sort or range fetch loads up front.
#
# A profile is immutable. FolderSession.set_prefetch_profile() replaces the
# active profile wholesale, while add_prefetch_items() rebuilds it from an
# empty profile. UID and FLAGS are always fetched regardless of the profile.
# =============================================================================

import re
from collections.abc import Iterable
from dataclasses import dataclass
from enum import Enum


class FetchItem(Enum):
    """
    Message attributes that can be pre-fetched.

    The value is the FETCH data item sent to the server. Everything except
    BODY uses a PEEK form, so only BODY marks a message \\Seen.
    """
    UID = "UID"
    FLAGS = "FLAGS"
    ENVELOPE = "ENVELOPE"
    BODY_STRUCTURE = "BODYSTRUCTURE"
    INTERNAL_DATE = "INTERNALDATE"
    SIZE = "RFC822.SIZE"
    HEADERS = "BODY.PEEK[HEADER]"           # All header lines
    HEADER_FIELDS = "BODY.PEEK[HEADER.FIELDS]"  # Named headers only
    BODY_PEEK = "BODY.PEEK[]"               # Full message, flags untouched
    BODY = "BODY[]"                         # Full message, sets \Seen

    # JavaMail-style alias
    CONTENT_INFO = "BODYSTRUCTURE"

    @property
    def marks_seen(self) -> bool:
        """True if fetching this item sets the \\Seen flag."""
        return self is FetchItem.BODY

    @classmethod
    def from_name(cls, name: str) -> "FetchItem":
        """
        Look up an item by enum name or FETCH item ("ENVELOPE", "RFC822.SIZE").

        Raises:
            ValueError: If the name is unknown.
        """
        key = name.strip().upper()
        if key in cls.__members__:
            return cls.__members__[key]
        for item in cls:
            if item.value == key:
                return item
        raise ValueError(f"unknown fetch item: {name!r}")


# Items every fetch carries so records always have identity and flags
BASE_ITEMS = frozenset({FetchItem.UID, FetchItem.FLAGS})

# RFC 5322 field names: printable ASCII except ":" and space. We stay a
# little stricter so names are also valid IMAP atoms.
_HEADER_NAME = re.compile(r"[A-Za-z0-9!#$&'+.^_`|~-]+")

# Prefix used when a profile is written to configuration
HEADER_PREFIX = "header:"


@dataclass(frozen=True)
class FetchProfile:
    """
    An immutable set of fetch items plus specific header names.

    Attributes:
        items: The requested fetch items.
        header_names: Header fields to fetch (upper-cased, in first-seen order).

    Example:
        >>> profile = FetchProfile.of(FetchItem.ENVELOPE, "X-Priority")
        >>> FetchItem.ENVELOPE in profile
        True
        >>> profile.header_names
        ('X-PRIORITY',)
    """
    items: frozenset[FetchItem] = frozenset()
    header_names: tuple[str, ...] = ()

    @classmethod
    def of(cls, *items: FetchItem | str) -> "FetchProfile":
        """Build a profile from items and header names."""
        return cls().add(*items)

    @classmethod
    def from_names(cls, names: Iterable[str]) -> "FetchProfile":
        """
        Build a profile from configuration strings.

        Entries are item names ("ENVELOPE", "SIZE") or "header:<Name>".
        """
        members: list[FetchItem | str] = []
        for name in names:
            if name.lower().startswith(HEADER_PREFIX):
                members.append(name[len(HEADER_PREFIX):])
            else:
                members.append(FetchItem.from_name(name))
        return cls.of(*members)

    def add(self, *items: FetchItem | str) -> "FetchProfile":
        """
        Return a new profile with extra items.

        Strings are header names, not fetch item names.

        Raises:
            ValueError: If a header name is not a valid field name.
        """
        new_items = set(self.items)
        headers = list(self.header_names)
        for item in items:
            if isinstance(item, FetchItem):
                if item is FetchItem.HEADER_FIELDS:
                    continue  # Implied by header names
                new_items.add(item)
                continue
            if not _HEADER_NAME.fullmatch(item):
                raise ValueError(f"invalid header name: {item!r}")
            name = item.upper()
            if name not in headers:
                headers.append(name)
        return FetchProfile(frozenset(new_items), tuple(headers))

    def to_names(self) -> list[str]:
        """Inverse of from_names(), for saving to configuration."""
        names = [item.name for item in FetchItem if item in self.items]
        names.extend(f"{HEADER_PREFIX}{name}" for name in self.header_names)
        return names

    @property
    def requested(self) -> frozenset[FetchItem]:
        """Everything a fetch with this profile asks for, base items included."""
        requested = set(self.items) | BASE_ITEMS
        if self.header_names:
            requested.add(FetchItem.HEADER_FIELDS)
        return frozenset(requested)

    @property
    def marks_seen(self) -> bool:
        return any(item.marks_seen for item in self.items)

    def __contains__(self, item: object) -> bool:
        if isinstance(item, str):
            return item.upper() in self.header_names
        return item in self.items

    def __bool__(self) -> bool:
        return bool(self.items or self.header_names)


# Profile used when fetching without pre-fetch: identity and flags only
MINIMAL_PROFILE = FetchProfile()
