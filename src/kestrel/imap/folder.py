# =============================================================================
# Folder Session
# =============================================================================
# Mailbox-scoped operations on a selected mailbox: search, sort, range
# fetches, flag changes, expunge and counts.
#
# Key responsibilities:
#   - Run searches as UID SEARCH / UID SORT followed by UID FETCH, so the
#     messages found are the messages fetched even if the mailbox changes
#     between the two round-trips
#   - Pre-fetch exactly what the active profile asks for
#   - Track the numbering epoch: every expunge renumbers the mailbox, so
#     records from an older epoch cannot be used by sequence number
#
# Design notes:
#   - A session is bound to one selection. It is invalidated by close(),
#     by selecting another mailbox, by renaming or deleting its mailbox,
#     and by any connection-fatal error.
#   - Counts are advisory. EXISTS and RECENT come from the last server
#     update; unread is asked for on every call.
# =============================================================================

import logging
from collections.abc import Iterable, Sequence
from dataclasses import replace
from enum import Enum
from typing import TYPE_CHECKING

from kestrel.core import (
    FetchItem,
    FetchProfile,
    FolderMode,
    FolderType,
    MailboxCounts,
    MessageRecord,
    SelectStatus,
)
from kestrel.core.profile import MINIMAL_PROFILE
from kestrel.errors import (
    CapabilityError,
    ConnectionClosedError,
    InvalidRangeError,
    InvalidStateError,
    PartialFetchError,
    StaleRecordError,
)
from kestrel.imap.codec import Atom, Command, Response, encode_mailbox_name, format_sequence_set
from kestrel.imap.search import Predicate, Query, SearchBuilder, SortBuilder, SortSpec, compile_query

if TYPE_CHECKING:
    from kestrel.imap.connection import Connection

logger = logging.getLogger(__name__)


class FlagAction(Enum):
    """How store_flags() changes the flag set."""
    ADD = "+FLAGS"
    REMOVE = "-FLAGS"
    REPLACE = "FLAGS"


class FolderSession:
    """
    Operations on one selected mailbox.

    Created by Connection.select() / Connection.examine(), never directly.

    Usage:
        >>> inbox = await conn.select("INBOX")
        >>> inbox.set_prefetch_profile(FetchProfile.of(FetchItem.ENVELOPE))
        >>> query = SearchBuilder().subject("invoice").unseen().sorted_by(SortKey.DATE, reverse=True)
        >>> for record in await inbox.search(query):
        ...     print(record.uid, record.envelope.subject)
        >>> await inbox.close()

    Attributes:
        mailbox: Name of the selected mailbox.
        mode: Effective access mode (the server may force read-only).
        status: What the server reported on select, kept up to date.
        epoch: Numbering epoch, bumped on every expunge.
        last_errors: Partial-fetch errors from the most recent fetch.
    """

    def __init__(
        self,
        connection: "Connection",
        mailbox: str,
        mode: FolderMode,
        status: SelectStatus,
        profile: FetchProfile,
    ) -> None:
        self._connection = connection
        self.mailbox = mailbox
        self.mode = mode
        self.status = status
        self.epoch = 0
        self.last_errors: list[PartialFetchError] = []
        self._profile = profile
        self._closed: str | None = None     # Reason, once invalidated

    # =========================================================================
    # Session State
    # =========================================================================

    @property
    def is_open(self) -> bool:
        return self._closed is None and self._connection.failure is None

    @property
    def read_only(self) -> bool:
        return self.mode is FolderMode.READ_ONLY

    @property
    def uid_validity(self) -> int | None:
        return self.status.uid_validity

    @property
    def message_count(self) -> int:
        """Messages in the mailbox as of the last EXISTS."""
        return self.status.exists

    @property
    def prefetch_profile(self) -> FetchProfile:
        return self._profile

    def _ensure_open(self, operation: str) -> None:
        failure = self._connection.failure
        if failure is not None:
            raise ConnectionClosedError(f"connection is unusable: {failure}") from failure
        if self._closed is not None:
            raise InvalidStateError(
                operation, f"a closed session ({self._closed})", f"an open session on {self.mailbox}"
            )

    def _invalidate(self, reason: str) -> None:
        if self._closed is None:
            logger.debug(f"Session on {self.mailbox} invalidated: {reason}")
            self._closed = reason

    def _apply(self, response: Response) -> None:
        """Apply an unsolicited EXISTS/RECENT/EXPUNGE."""
        if self._closed is not None or response.number is None:
            return
        if response.kind == "EXISTS":
            self.status.exists = response.number
        elif response.kind == "RECENT":
            self.status.recent = response.number
        elif response.kind == "EXPUNGE":
            self.status.exists = max(self.status.exists - 1, 0)
            self.epoch += 1
            logger.debug(f"Message {response.number} expunged from {self.mailbox}, epoch {self.epoch}")

    # =========================================================================
    # Pre-fetch Profile
    # =========================================================================

    def set_prefetch_profile(self, profile: FetchProfile) -> None:
        """Replace the active profile wholesale."""
        self._profile = profile

    def add_prefetch_items(self, *items: FetchItem | str) -> FetchProfile:
        """
        Rebuild the profile from an empty one with the given items.

        Items from the previous profile are NOT kept: every call starts
        over. Strings are header names.

        Returns:
            The new active profile.
        """
        self._profile = FetchProfile().add(*items)
        return self._profile

    # =========================================================================
    # Search and Sort
    # =========================================================================

    async def search(
        self,
        query: Query | Predicate | SearchBuilder,
        sort: SortSpec | SortBuilder | None = None,
    ) -> list[MessageRecord]:
        """
        Find messages and pre-fetch them with the active profile.

        Args:
            query: A built Query, a predicate tree, or a SearchBuilder.
            sort: Sort spec; overrides the one in the query. With a sort
                  spec the server must support SORT.

        Returns:
            Records in server order (sort order when sorting), or an empty
            list when nothing matches.

        Raises:
            EmptyPredicateError: The predicate has no terms.
            CapabilityError: Sorting was asked for but SORT is not advertised.
            CommandRejectedError: The server rejected the search.
        """
        self._ensure_open("SEARCH")
        if isinstance(query, SearchBuilder):
            query = query.build()
        if isinstance(sort, SortBuilder):
            sort = sort.build()
        spec = tuple(sort or (query.sort if isinstance(query, Query) else ()))

        if spec and not self._connection.has_capability("SORT"):
            raise CapabilityError("server does not support SORT (RFC 5256)")

        command = compile_query(query, spec, uid=True)
        kind = "SORT" if spec else "SEARCH"
        result = await self._connection.execute(command, expect=(kind,))
        uids = _numbers(result.of_kind(kind))
        logger.debug(f"{kind} in {self.mailbox} matched {len(uids)} messages")
        return await self._fetch(uids, self._profile, uid=True)

    async def sorted_by(self, sort: SortSpec | SortBuilder) -> list[MessageRecord]:
        """Every message in the mailbox, in server sort order."""
        if isinstance(sort, SortBuilder):
            sort = sort.build()
        if not sort:
            raise ValueError("sorted_by() needs at least one sort criterion")
        return await self.search(SearchBuilder().all().build_predicate(), sort)

    # =========================================================================
    # Fetching
    # =========================================================================

    async def fetch_range(self, low: int, high: int, prefetch: bool = True) -> list[MessageRecord]:
        """
        Fetch messages low..high (inclusive) by sequence number.

        Args:
            low: First sequence number (1-based).
            high: Last sequence number.
            prefetch: Use the active profile; otherwise only UID and FLAGS.

        Returns:
            Exactly high - low + 1 records in ascending sequence order.

        Raises:
            InvalidRangeError: low < 1, low > high, or high beyond the
                current message count.
        """
        self._ensure_open("FETCH")
        total = self.status.exists
        if low < 1 or low > high or high > total:
            raise InvalidRangeError(f"range {low}:{high} is outside the mailbox (1:{total})")
        profile = self._profile if prefetch else MINIMAL_PROFILE
        return await self._fetch(list(range(low, high + 1)), profile, uid=False)

    async def message(self, number: int) -> MessageRecord | None:
        """The record at a sequence number, or None outside the mailbox."""
        self._ensure_open("FETCH")
        if number < 1 or number > self.status.exists:
            return None
        records = await self.fetch_range(number, number)
        return records[0]

    async def refetch(self, record: MessageRecord, *items: FetchItem | str) -> MessageRecord | None:
        """
        Fetch a message again by UID.

        Args:
            record: A record from this session.
            *items: Items to fetch; the active profile when none are given.

        Returns:
            A new record in the current epoch, or None if the message no
            longer exists.
        """
        self._ensure_open("FETCH")
        self._check_own(record)
        if record.uid is None:
            raise ValueError("record has no UID and cannot be refetched")
        profile = FetchProfile.of(*items) if items else self._profile
        records = await self._fetch([record.uid], profile, uid=True)
        fresh = records[0]
        return fresh if fresh.sequence is not None else None

    async def _fetch(
        self,
        numbers: Sequence[int],
        profile: FetchProfile,
        *,
        uid: bool,
        expunged: bool = False,
    ) -> list[MessageRecord]:
        if not numbers:
            self.last_errors = []
            return []

        # Sequence numbers are only meaningful in the epoch they were sent in
        epoch = self.epoch
        planner = self._connection.planner
        responses: list[Response] = []
        for command in planner.plan(numbers, profile, uid=uid):
            result = await self._connection.execute(command, expect=("FETCH",))
            responses.extend(result.untagged)

        batch = planner.collect(
            responses, numbers, profile,
            mailbox=self.mailbox, epoch=epoch, by_uid=uid, expunged=expunged,
        )
        self.last_errors = batch.errors
        return batch.records

    # =========================================================================
    # Records and Sequence Numbers
    # =========================================================================

    def _check_own(self, record: MessageRecord) -> None:
        if record.mailbox != self.mailbox:
            raise ValueError(f"record belongs to {record.mailbox}, not {self.mailbox}")

    def sequence_of(self, record: MessageRecord) -> int:
        """
        The record's sequence number, if it is still valid.

        Raises:
            StaleRecordError: The mailbox was expunged since the record was
                fetched, so its sequence number may point at another message.
        """
        self._check_own(record)
        if record.sequence is None or record.expunged:
            raise InvalidRangeError(f"message UID {record.uid} is no longer in {self.mailbox}")
        if record.epoch != self.epoch:
            raise StaleRecordError(
                f"sequence number {record.sequence} is from epoch {record.epoch}, "
                f"mailbox is now at epoch {self.epoch}; use the UID instead"
            )
        if record.sequence > self.status.exists:
            raise InvalidRangeError(f"sequence number {record.sequence} is beyond 1:{self.status.exists}")
        return record.sequence

    # =========================================================================
    # Flags and Expunge
    # =========================================================================

    async def store_flags(
        self,
        targets: Iterable[MessageRecord | int],
        flags: Iterable[str],
        action: FlagAction = FlagAction.ADD,
        *,
        by_sequence: bool = False,
    ) -> None:
        """
        Change flags on messages.

        Args:
            targets: Records or sequence numbers.
            flags: Flags such as "\\Seen" or keywords such as "$Label1".
            action: Add, remove or replace.
            by_sequence: Address records by sequence number (checked
                         against the epoch) instead of UID.

        Raises:
            InvalidStateError: The mailbox is open read-only.
            StaleRecordError: by_sequence with a record from an older epoch.
            InvalidRangeError: A sequence number is outside the mailbox.
        """
        self._ensure_open("STORE")
        self._connection.state.require("STORE")

        flag_list = [Atom(flag) for flag in flags]
        for flag in flag_list:
            if not flag or any(ch in flag for ch in ' ()"{'):
                raise ValueError(f"invalid flag: {flag!r}")

        uids: list[int] = []
        sequences: list[int] = []
        for target in targets:
            if isinstance(target, MessageRecord):
                if by_sequence:
                    sequences.append(self.sequence_of(target))
                else:
                    self._check_own(target)
                    if target.uid is None:
                        raise ValueError("record has no UID")
                    uids.append(target.uid)
            else:
                if target < 1 or target > self.status.exists:
                    raise InvalidRangeError(f"sequence number {target} is outside 1:{self.status.exists}")
                sequences.append(target)

        item = Atom(f"{action.value}.SILENT")
        if uids:
            await self._connection.execute(
                Command("UID STORE", Atom(format_sequence_set(uids)), item, flag_list)
            )
        if sequences:
            await self._connection.execute(
                Command("STORE", Atom(format_sequence_set(sequences)), item, flag_list)
            )
        logger.debug(f"{action.name} {[str(f) for f in flag_list]} on {len(uids) + len(sequences)} messages")

    async def expunge(self) -> list[MessageRecord]:
        """
        Permanently remove messages flagged \\Deleted.

        The doomed messages are pre-fetched with the active profile before
        the EXPUNGE, so their records can still be inspected afterwards.
        Bumps the numbering epoch: every earlier record's sequence number
        becomes stale.

        Returns:
            Records of the removed messages (marked expunged), in their
            original sequence order.

        Raises:
            InvalidStateError: The mailbox is open read-only.
        """
        self._ensure_open("EXPUNGE")
        self._connection.state.require("EXPUNGE")

        result = await self._connection.execute(Command("UID SEARCH", Atom("DELETED")), expect=("SEARCH",))
        uids = _numbers(result.of_kind("SEARCH"))
        doomed = {r.sequence: r for r in await self._fetch(uids, self._profile, uid=True)
                  if r.sequence is not None}

        epoch = self.epoch
        result = await self._connection.execute(Command("EXPUNGE"), expect=("EXPUNGE", "EXISTS"))

        # Replay in arrival order: each EXPUNGE renumbers the rest, and an
        # EXISTS may announce new mail (None) between them
        positions: list[int | None] = list(range(1, self.status.exists + 1))
        removed: list[int] = []
        for response in result.untagged:
            n = response.number
            if n is None:
                continue
            if response.kind == "EXISTS":
                if n > len(positions):
                    positions.extend([None] * (n - len(positions)))
                elif n < len(positions):
                    logger.warning(f"EXISTS {n} in {self.mailbox} is below the known count {len(positions)}")
                continue
            if not 1 <= n <= len(positions):
                logger.warning(f"Ignoring EXPUNGE of unknown message {n} in {self.mailbox}")
                continue
            original = positions.pop(n - 1)
            if original is not None:
                removed.append(original)

        self.status.exists = len(positions)
        self.epoch += 1

        records = []
        for sequence in sorted(removed):
            record = doomed.get(sequence)
            if record is None:
                # Flagged by someone else after our search
                record = MessageRecord(sequence=sequence, uid=None, mailbox=self.mailbox, epoch=epoch)
            records.append(replace(record, expunged=True))
        logger.info(f"Expunged {len(records)} messages from {self.mailbox}")
        return records

    # =========================================================================
    # Mailbox Information
    # =========================================================================

    async def counts(self) -> MailboxCounts:
        """
        Total, unread and new message counts. Advisory only.
        """
        self._ensure_open("SEARCH")
        result = await self._connection.execute(Command("SEARCH", Atom("UNSEEN")), expect=("SEARCH",))
        unread = len(_numbers(result.of_kind("SEARCH")))
        return MailboxCounts(total=self.status.exists, unread=unread, new=self.status.recent)

    async def has_new_messages(self) -> bool:
        """Poll the server, then report whether any message is \\Recent."""
        self._ensure_open("NOOP")
        await self._connection.noop()
        return self.status.recent > 0

    async def folder_type(self) -> FolderType:
        """Whether this mailbox can hold messages, child folders, or both."""
        self._ensure_open("LIST")
        info = await self._connection.mailbox_info(self.mailbox)
        if info is None:
            # Selected mailboxes hold messages even if LIST hides them
            return FolderType.HOLDS_MESSAGES
        return info.folder_type

    # =========================================================================
    # Closing
    # =========================================================================

    async def close(self, expunge: bool = False) -> None:
        """
        Close the mailbox and end the session.

        Args:
            expunge: Remove \\Deleted messages while closing (CLOSE). When
                     False nothing is removed: UNSELECT is used if the
                     server has it, otherwise the mailbox is re-opened
                     read-only and closed.

        Closing an already closed session does nothing.
        """
        if self._closed is not None:
            return
        self._ensure_open("CLOSE")
        connection = self._connection

        if expunge and self.read_only:
            raise InvalidStateError("CLOSE with expunge", "Selected (read-only)", "Selected (read-write)")

        if expunge or self.read_only:
            await connection.execute(Command("CLOSE"))
        elif connection.has_capability("UNSELECT"):
            await connection.execute(Command("UNSELECT"))
        else:
            # CLOSE on a read-only selection never expunges
            await connection.execute(
                Command("EXAMINE", encode_mailbox_name(self.mailbox)),
                expect=("FLAGS", "EXISTS", "RECENT", "OK"),
            )
            connection.state.selected(self.mailbox, True)
            await connection.execute(Command("CLOSE"))

        connection.state.deselected()
        self._invalidate("closed")
        connection._session_closed(self)
        logger.info(f"Closed {self.mailbox}{' (expunged)' if expunge else ''}")

    def __repr__(self) -> str:
        state = "open" if self.is_open else "closed"
        return f"FolderSession({self.mailbox!r}, {self.mode.value}, {state}, epoch={self.epoch})"


def _numbers(responses: Iterable[Response]) -> list[int]:
    """Message numbers from SEARCH/SORT responses, in server order."""
    numbers = []
    for response in responses:
        numbers.extend(n for n in response.payload if isinstance(n, int))
    return numbers
