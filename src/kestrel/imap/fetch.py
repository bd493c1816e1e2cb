# =============================================================================
# Fetch Planner
# =============================================================================
# Turns a pre-fetch profile into FETCH commands and the responses back into
# MessageRecords.
#
# Planning:
#   - One item list per profile, UID and FLAGS always included
#   - Message numbers compressed into a sequence set ("1:3,7")
#   - Split into several commands only when one would exceed the
#     configured command length
#
# Collecting:
#   - FETCH responses are keyed by sequence number (or UID for UID FETCH);
#     a server may split one message's data over several responses, so
#     they are merged
#   - Anything requested but not returned is recorded as missing on the
#     record and reported as a PartialFetchError; the batch continues
# =============================================================================

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from typing import Any

from kestrel.core.message import Address, BodyStructure, Envelope, MessageRecord, decode_words
from kestrel.core.profile import FetchItem, FetchProfile
from kestrel.errors import PartialFetchError
from kestrel.imap.codec import Atom, Command, Response, format_sequence_set, parse_internal_date

logger = logging.getLogger(__name__)

DEFAULT_MAX_COMMAND_LENGTH = 8000

# Item order on the wire
_WIRE_ORDER = (
    FetchItem.UID,
    FetchItem.FLAGS,
    FetchItem.INTERNAL_DATE,
    FetchItem.SIZE,
    FetchItem.ENVELOPE,
    FetchItem.BODY_STRUCTURE,
    FetchItem.HEADERS,
    FetchItem.HEADER_FIELDS,
    FetchItem.BODY_PEEK,
    FetchItem.BODY,
)


@dataclass
class FetchBatch:
    """
    Records produced from one logical fetch.

    Attributes:
        records: One record per requested message, in request order.
        errors: One PartialFetchError per message with missing attributes.
    """
    records: list[MessageRecord] = field(default_factory=list)
    errors: list[PartialFetchError] = field(default_factory=list)


class FetchPlanner:
    """
    Plans FETCH commands for a profile and assembles the results.

    Usage:
        >>> planner = FetchPlanner()
        >>> commands = planner.plan([1, 2, 3, 7], profile)
        >>> # ... execute each, collecting FETCH responses ...
        >>> batch = planner.collect(responses, [1, 2, 3, 7], profile,
        ...                         mailbox="INBOX", epoch=0)
    """

    def __init__(self, max_command_length: int = DEFAULT_MAX_COMMAND_LENGTH) -> None:
        self.max_command_length = max_command_length

    # =========================================================================
    # Planning
    # =========================================================================

    def item_list(self, profile: FetchProfile) -> list[Atom]:
        """The parenthesized FETCH item list for a profile."""
        requested = profile.requested
        items: list[Atom] = []
        for item in _WIRE_ORDER:
            if item not in requested:
                continue
            if item is FetchItem.HEADER_FIELDS:
                names = " ".join(profile.header_names)
                items.append(Atom(f"BODY.PEEK[HEADER.FIELDS ({names})]"))
            else:
                items.append(Atom(item.value))
        return items

    def plan(self, numbers: Sequence[int], profile: FetchProfile, *, uid: bool = False) -> list[Command]:
        """
        Build the FETCH commands for a set of message numbers or UIDs.

        Returns:
            Commands in ascending number order; empty when numbers is empty.
        """
        if not numbers:
            return []
        name = "UID FETCH" if uid else "FETCH"
        items = self.item_list(profile)
        # Tag, name, spaces, parentheses and CRLF
        overhead = len(name) + sum(len(i) + 1 for i in items) + 24

        budget = max(self.max_command_length - overhead, 1)
        commands: list[Command] = []
        chunk: list[str] = []
        length = 0
        for part in format_sequence_set(numbers).split(","):
            extra = len(part) + (1 if chunk else 0)
            if chunk and length + extra > budget:
                commands.append(Command(name, Atom(",".join(chunk)), items))
                chunk, length = [], 0
                extra = len(part)
            chunk.append(part)
            length += extra
        commands.append(Command(name, Atom(",".join(chunk)), items))

        if len(commands) > 1:
            logger.debug(f"Split fetch of {len(numbers)} messages into {len(commands)} commands")
        return commands

    # =========================================================================
    # Collecting
    # =========================================================================

    def collect(
        self,
        responses: Iterable[Response],
        wanted: Sequence[int],
        profile: FetchProfile,
        *,
        mailbox: str,
        epoch: int,
        by_uid: bool = False,
        expunged: bool = False,
    ) -> FetchBatch:
        """
        Assemble records from FETCH responses.

        Args:
            responses: Untagged responses from the FETCH command(s).
            wanted: The sequence numbers (or UIDs when by_uid) that were
                    requested, in the order records should be returned.
            profile: The profile the commands were planned from.
            mailbox: Mailbox name recorded on each record.
            epoch: Numbering epoch recorded on each record.
            by_uid: Match responses to wanted by UID instead of number.
            expunged: Mark the records as expunged.

        Returns:
            FetchBatch with one record per wanted entry.
        """
        requested = profile.requested
        by_sequence: dict[int, dict[FetchItem, Any]] = {}
        for response in responses:
            if response.kind != "FETCH" or response.number is None:
                continue
            values = by_sequence.setdefault(response.number, {})
            values.update(self._decode(response, requested))

        uid_index: dict[int, int] = {}
        if by_uid:
            for sequence, values in by_sequence.items():
                if FetchItem.UID in values:
                    uid_index[values[FetchItem.UID]] = sequence

        batch = FetchBatch()
        for key in wanted:
            sequence = uid_index.get(key) if by_uid else key
            values = by_sequence.get(sequence, {}) if sequence is not None else {}
            uid = values.get(FetchItem.UID, key if by_uid else None)
            missing = frozenset(requested - values.keys())
            if missing:
                error = PartialFetchError(sequence, uid, frozenset(item.value for item in missing))
                logger.warning(f"Partial fetch in {mailbox}: {error}")
                batch.errors.append(error)
            batch.records.append(MessageRecord(
                sequence=sequence,
                uid=uid,
                mailbox=mailbox,
                epoch=epoch,
                requested=requested,
                header_names=profile.header_names,
                values=values,
                missing=missing,
                expunged=expunged,
            ))
        return batch

    def _decode(self, response: Response, requested: frozenset[FetchItem]) -> dict[FetchItem, Any]:
        """Decode one FETCH response's attribute list into item values."""
        if len(response.payload) != 1 or not isinstance(response.payload[0], tuple):
            logger.warning(f"Ignoring malformed FETCH response for message {response.number}")
            return {}
        pairs = response.payload[0]

        values: dict[FetchItem, Any] = {}
        for i in range(0, len(pairs) - 1, 2):
            name, raw = pairs[i], pairs[i + 1]
            if not isinstance(name, str):
                continue
            for item in _items_for(name.upper(), requested):
                try:
                    values[item] = _decode_value(item, raw)
                except (ValueError, TypeError, IndexError) as e:
                    # Left out of values, so it is reported as missing
                    logger.warning(f"Cannot decode {name} for message {response.number}: {e}")
        return values


def _items_for(name: str, requested: frozenset[FetchItem]) -> list[FetchItem]:
    """Which requested items a response attribute name answers."""
    if name.startswith("BODY[HEADER.FIELDS"):
        candidates = [FetchItem.HEADER_FIELDS]
    elif name == "BODY[HEADER]":
        candidates = [FetchItem.HEADERS]
    elif name == "BODY[]":
        candidates = [FetchItem.BODY, FetchItem.BODY_PEEK]
    else:
        try:
            candidates = [FetchItem(name)]
        except ValueError:
            return []
    return [item for item in candidates if item in requested]


def _decode_value(item: FetchItem, raw: Any) -> Any:
    if item in (FetchItem.UID, FetchItem.SIZE):
        if not isinstance(raw, int):
            raise TypeError(f"expected a number, got {raw!r}")
        return raw
    if item is FetchItem.FLAGS:
        if not isinstance(raw, tuple):
            raise TypeError(f"expected a flag list, got {raw!r}")
        return frozenset(str(flag) for flag in raw)
    if item is FetchItem.ENVELOPE:
        return parse_envelope(raw)
    if item is FetchItem.BODY_STRUCTURE:
        return parse_body_structure(raw)
    if item is FetchItem.INTERNAL_DATE:
        return parse_internal_date(_text(raw))
    # Header and body sections
    if raw is None:
        return b""
    if isinstance(raw, str):
        return raw.encode("utf-8")
    if isinstance(raw, bytes):
        return raw
    raise TypeError(f"expected a string, got {raw!r}")


# =============================================================================
# Structure Parsing
# =============================================================================

def _text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


def _optional(value: Any) -> str | None:
    return None if value is None else _text(value)


def _addresses(value: Any) -> tuple[Address, ...]:
    if value is None:
        return ()
    if not isinstance(value, tuple):
        raise TypeError(f"expected an address list, got {value!r}")
    addresses = []
    for entry in value:
        if not isinstance(entry, tuple) or len(entry) != 4:
            raise ValueError(f"malformed address: {entry!r}")
        name, route, mailbox, host = entry
        addresses.append(Address(
            name=decode_words(_text(name)),
            route=_optional(route),
            mailbox=_optional(mailbox),
            host=_optional(host),
        ))
    return tuple(addresses)


def parse_envelope(value: Any) -> Envelope:
    """
    Parse an ENVELOPE list (RFC 3501 section 7.4.2).

    Raises:
        ValueError: If the list does not have the ten envelope fields.
    """
    if not isinstance(value, tuple) or len(value) != 10:
        raise ValueError("ENVELOPE must have 10 fields")
    return Envelope(
        date=_text(value[0]),
        subject=decode_words(_text(value[1])),
        from_=_addresses(value[2]),
        sender=_addresses(value[3]),
        reply_to=_addresses(value[4]),
        to=_addresses(value[5]),
        cc=_addresses(value[6]),
        bcc=_addresses(value[7]),
        in_reply_to=_text(value[8]),
        message_id=_text(value[9]),
    )


def _parameters(value: Any) -> tuple[tuple[str, str], ...]:
    if not isinstance(value, tuple):
        return ()
    return tuple(
        (_text(value[i]).lower(), _text(value[i + 1]))
        for i in range(0, len(value) - 1, 2)
    )


def parse_body_structure(value: Any) -> BodyStructure:
    """
    Parse a BODYSTRUCTURE list, keeping type, parameters, encoding and size.

    Raises:
        ValueError: If a single-part body has fewer than seven fields.
    """
    if not isinstance(value, tuple) or not value:
        raise ValueError("BODYSTRUCTURE must be a non-empty list")

    if isinstance(value[0], tuple):
        # multipart: (part)(part)... "subtype" [params ...]
        parts = []
        i = 0
        while i < len(value) and isinstance(value[i], tuple):
            parts.append(parse_body_structure(value[i]))
            i += 1
        subtype = _text(value[i]).lower() if i < len(value) else "mixed"
        params = _parameters(value[i + 1]) if i + 1 < len(value) else ()
        return BodyStructure(f"multipart/{subtype}", params, None, None, tuple(parts))

    if len(value) < 7:
        raise ValueError("single-part BODYSTRUCTURE needs at least 7 fields")
    content_type = f"{_text(value[0]).lower()}/{_text(value[1]).lower()}"
    encoding = _optional(value[5])
    size = value[6] if isinstance(value[6], int) else None
    return BodyStructure(
        content_type,
        _parameters(value[2]),
        encoding.lower() if encoding else None,
        size,
    )
