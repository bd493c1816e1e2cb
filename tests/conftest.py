# =============================================================================
# Pytest Configuration and Fixtures
# =============================================================================
# Shared fixtures for the Kestrel test suite.
#
# FakeServer is an in-memory IMAP server that doubles as the transport: the
# client writes commands into it and reads responses out of it, byte for
# byte, literals and continuations included. It keeps a small mailbox model
# so SEARCH, SORT, FETCH, STORE and EXPUNGE behave like a real server, and
# it can be scripted to misbehave (reject, stay silent, hang up).
# =============================================================================

import asyncio
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone

import pytest
import pytest_asyncio

from kestrel.config import Config
from kestrel.errors import ConnectionClosedError
from kestrel.imap.codec import MONTHS, parse_search_date, parse_sequence_set, parse_values
from kestrel.imap.connection import Connection

DEFAULT_CAPABILITIES = ("IMAP4rev1", "SORT", "UNSELECT", "LITERAL+")

_LITERAL_MARKER = re.compile(rb"\{(\d+)(\+?)\}\r\n\Z")


@dataclass
class FakeMessage:
    """One message in a FakeServer mailbox."""
    uid: int
    subject: str
    sender: str = "alice@example.com"
    to: str = "bob@example.com"
    date: datetime = field(default_factory=lambda: datetime(2024, 1, 1, 9, 0, tzinfo=timezone.utc))
    flags: set[str] = field(default_factory=set)
    body: bytes = b"Hello.\r\n"

    @property
    def header_block(self) -> bytes:
        return (
            f"Subject: {self.subject}\r\n"
            f"From: {self.sender}\r\n"
            f"To: {self.to}\r\n"
            f"Date: {self.date.strftime('%d')} {MONTHS[self.date.month - 1]} "
            f"{self.date.year} {self.date.strftime('%H:%M:%S')} +0000\r\n"
            f"Message-ID: <{self.uid}@example.com>\r\n"
            f"\r\n"
        ).encode()

    @property
    def raw(self) -> bytes:
        return self.header_block + self.body

    @property
    def internal_date(self) -> str:
        return (
            f"{self.date.day:02d}-{MONTHS[self.date.month - 1]}-{self.date.year} "
            f"{self.date.strftime('%H:%M:%S')} +0000"
        )


def _q(value: str) -> str:
    return '"' + value.replace("\\", "\\\\").replace('"', '\\"') + '"'


def _address(email: str) -> str:
    local, _, host = email.partition("@")
    return f"((NIL NIL {_q(local)} {_q(host)}))"


class FakeServer:
    """
    Scripted IMAP server implementing the Transport interface.

    Usage:
        >>> server = FakeServer()
        >>> server.add_mailbox("INBOX", [FakeMessage(uid=1, subject="Hi")])
        >>> conn = await Connection.open(server)
    """

    def __init__(
        self,
        capabilities: tuple[str, ...] = DEFAULT_CAPABILITIES,
        greeting: bytes | None = None,
    ) -> None:
        self.capabilities = list(capabilities)
        self.users = {"user": "secret"}
        self.mailboxes: dict[str, list[FakeMessage]] = {}
        self.attributes: dict[str, tuple[str, ...]] = {}
        self.read_only_mailboxes: set[str] = set()
        self.recent: dict[str, int] = {}
        self.selected: str | None = None
        self.selected_read_only = False

        self.commands: list[str] = []      # Command names in arrival order
        self.received: list[bytes] = []    # Raw commands, literals included
        self.writes: list[bytes] = []      # Every write() call, unjoined
        self.omit_items: set[str] = set()  # FETCH items the server "forgets"
        self._scripted: dict[str, list[tuple[list[bytes], str, str]]] = {}
        self._silent: set[str] = set()

        self._outbound = bytearray()
        self._inbound = bytearray()
        self._pending = bytearray()
        self._literal_needed = 0
        self._ready = asyncio.Event()
        self.closed = False

        if greeting is None:
            caps = " ".join(self.capabilities)
            greeting = f"* OK [CAPABILITY {caps}] Fake IMAP ready\r\n".encode()
        self.send(greeting)

    # =========================================================================
    # Test controls
    # =========================================================================

    def add_mailbox(self, name: str, messages: list[FakeMessage] | None = None,
                    attributes: tuple[str, ...] = ()) -> None:
        self.mailboxes[name] = list(messages or [])
        self.attributes[name] = attributes

    def script(self, command: str, status: str = "OK", text: str = "done",
               untagged: list[bytes] | None = None) -> None:
        """Answer the next `command` with a canned response."""
        self._scripted.setdefault(command.upper(), []).append((untagged or [], status, text))

    def silence(self, command: str) -> None:
        """Never answer `command`."""
        self._silent.add(command.upper())

    def push(self, data: bytes) -> None:
        """Send unsolicited data."""
        self.send(data)

    def hangup(self) -> None:
        self.closed = True
        self._ready.set()

    def send(self, data: bytes) -> None:
        self._outbound += data
        self._ready.set()

    # =========================================================================
    # Transport interface
    # =========================================================================

    async def write(self, data: bytes) -> None:
        if self.closed:
            raise ConnectionClosedError("fake server is closed")
        self.writes.append(bytes(data))
        self._inbound += data
        self._process()

    async def read_line(self) -> bytes:
        while True:
            eol = self._outbound.find(b"\n")
            if eol >= 0:
                line = bytes(self._outbound[:eol + 1])
                del self._outbound[:eol + 1]
                return line
            if self.closed:
                rest = bytes(self._outbound)
                self._outbound.clear()
                return rest
            self._ready.clear()
            await self._ready.wait()

    async def read_exactly(self, n: int) -> bytes:
        while len(self._outbound) < n:
            if self.closed:
                raise ConnectionClosedError("fake server closed mid-literal")
            self._ready.clear()
            await self._ready.wait()
        data = bytes(self._outbound[:n])
        del self._outbound[:n]
        return data

    async def close(self) -> None:
        self.closed = True
        self._ready.set()

    # =========================================================================
    # Command processing
    # =========================================================================

    def _process(self) -> None:
        while True:
            if self._literal_needed:
                if len(self._inbound) < self._literal_needed:
                    return
                self._pending += self._inbound[:self._literal_needed]
                del self._inbound[:self._literal_needed]
                self._literal_needed = 0
                continue
            eol = self._inbound.find(b"\n")
            if eol < 0:
                return
            line = bytes(self._inbound[:eol + 1])
            del self._inbound[:eol + 1]
            self._pending += line
            marker = _LITERAL_MARKER.search(line)
            if marker:
                self._literal_needed = int(marker.group(1))
                if not marker.group(2):
                    self.send(b"+ Ready for literal data\r\n")
                continue
            raw = bytes(self._pending)
            self._pending.clear()
            self._handle(raw)

    def _handle(self, raw: bytes) -> None:
        self.received.append(raw)
        tokens, _ = parse_values(raw.rstrip(b"\r\n"))
        tag = str(tokens[0])
        name = str(tokens[1]).upper()
        args = list(tokens[2:])
        if name == "UID":
            name = f"UID {str(args[0]).upper()}"
            args = args[1:]
        self.commands.append(name)

        if name in self._silent:
            return
        if self._scripted.get(name):
            untagged, status, text = self._scripted[name].pop(0)
            for line in untagged:
                self.send(line)
            self.send(f"{tag} {status} {text}\r\n".encode())
            return

        handler = getattr(self, "_cmd_" + name.replace(" ", "_").lower(), None)
        if handler is None:
            self.send(f"{tag} BAD Unknown command {name}\r\n".encode())
            return
        status, text = handler(args)
        self.send(f"{tag} {status} {text}\r\n".encode())
        if name == "LOGOUT":
            self.hangup()

    @property
    def messages(self) -> list[FakeMessage]:
        return self.mailboxes[self.selected] if self.selected else []

    # ---- any state ----

    def _cmd_capability(self, args):
        self.send(f"* CAPABILITY {' '.join(self.capabilities)}\r\n".encode())
        return "OK", "CAPABILITY completed"

    def _cmd_noop(self, args):
        return "OK", "NOOP completed"

    def _cmd_logout(self, args):
        self.send(b"* BYE Fake IMAP logging out\r\n")
        return "OK", "LOGOUT completed"

    def _cmd_login(self, args):
        user, password = (a.decode() if isinstance(a, bytes) else str(a) for a in args)
        if self.users.get(user) != password:
            return "NO", "[AUTHENTICATIONFAILED] Invalid credentials"
        return "OK", f"[CAPABILITY {' '.join(self.capabilities)}] Logged in"

    # ---- mailboxes ----

    def _cmd_select(self, args, read_only=False):
        name = str(args[0])
        if name not in self.mailboxes:
            self.selected = None
            return "NO", "[NONEXISTENT] Mailbox does not exist"
        self.selected = name
        self.selected_read_only = read_only or name in self.read_only_mailboxes
        messages = self.mailboxes[name]
        next_uid = max((m.uid for m in messages), default=0) + 1
        self.send(b"* FLAGS (\\Answered \\Flagged \\Deleted \\Seen \\Draft)\r\n")
        self.send(f"* {len(messages)} EXISTS\r\n".encode())
        self.send(f"* {self.recent.get(name, 0)} RECENT\r\n".encode())
        self.send(b"* OK [UIDVALIDITY 42] UIDs valid\r\n")
        self.send(f"* OK [UIDNEXT {next_uid}] Predicted next UID\r\n".encode())
        mode = "READ-ONLY" if self.selected_read_only else "READ-WRITE"
        return "OK", f"[{mode}] Select completed"

    def _cmd_examine(self, args):
        return self._cmd_select(args, read_only=True)

    def _cmd_list(self, args):
        pattern = str(args[1])
        for name in self.mailboxes:
            if pattern != "*" and pattern != name:
                continue
            attrs = " ".join(self.attributes.get(name, ()))
            self.send(f'* LIST ({attrs}) "/" {_q(name)}\r\n'.encode())
        return "OK", "LIST completed"

    def _cmd_rename(self, args):
        old, new = str(args[0]), str(args[1])
        if old not in self.mailboxes:
            return "NO", "[NONEXISTENT] No such mailbox"
        self.mailboxes[new] = self.mailboxes.pop(old)
        self.attributes[new] = self.attributes.pop(old, ())
        return "OK", "RENAME completed"

    def _cmd_delete(self, args):
        name = str(args[0])
        if name not in self.mailboxes:
            return "NO", "[NONEXISTENT] No such mailbox"
        del self.mailboxes[name]
        return "OK", "DELETE completed"

    def _cmd_close(self, args):
        if not self.selected_read_only:
            self.mailboxes[self.selected] = [m for m in self.messages if "\\Deleted" not in m.flags]
        self.selected = None
        return "OK", "CLOSE completed"

    def _cmd_unselect(self, args):
        if "UNSELECT" not in self.capabilities:
            return "BAD", "Unknown command UNSELECT"
        self.selected = None
        return "OK", "UNSELECT completed"

    # ---- search and sort ----

    def _cmd_search(self, args, uid=False):
        if args and str(args[0]).upper() == "CHARSET":
            args = args[2:]
        hits = []
        for seq, message in enumerate(self.messages, 1):
            if self._matches_all(args, message, seq):
                hits.append(message.uid if uid else seq)
        self.send(("* SEARCH" + "".join(f" {n}" for n in hits) + "\r\n").encode())
        return "OK", "SEARCH completed"

    def _cmd_uid_search(self, args):
        return self._cmd_search(args, uid=True)

    def _cmd_sort(self, args, uid=False):
        program, criteria = args[0], args[2:]
        hits = [
            (seq, m) for seq, m in enumerate(self.messages, 1)
            if self._matches_all(criteria, m, seq)
        ]
        keys = []
        reverse = False
        for token in program:
            token = str(token).upper()
            if token == "REVERSE":
                reverse = True
                continue
            keys.append((token, reverse))
            reverse = False
        for key, rev in reversed(keys):
            hits.sort(key=lambda pair, k=key: self._sort_value(k, *pair), reverse=rev)
        numbers = [m.uid if uid else seq for seq, m in hits]
        self.send(("* SORT" + "".join(f" {n}" for n in numbers) + "\r\n").encode())
        return "OK", "SORT completed"

    def _cmd_uid_sort(self, args):
        return self._cmd_sort(args, uid=True)

    @staticmethod
    def _sort_value(key, seq, message):
        return {
            "ARRIVAL": seq,
            "DATE": message.date,
            "SUBJECT": message.subject.lower(),
            "FROM": message.sender,
            "TO": message.to,
            "CC": "",
            "SIZE": len(message.raw),
        }[key]

    def _matches_all(self, tokens, message, seq) -> bool:
        pos = 0
        while pos < len(tokens):
            ok, pos = self._match(tokens, pos, message, seq)
            if not ok:
                return False
        return True

    def _match(self, tokens, pos, message, seq):
        token = tokens[pos]
        if isinstance(token, tuple):
            return self._matches_all(token, message, seq), pos + 1
        key = str(token).upper()
        flags = message.flags
        simple = {
            "ALL": True,
            "SEEN": "\\Seen" in flags,
            "UNSEEN": "\\Seen" not in flags,
            "DELETED": "\\Deleted" in flags,
            "UNDELETED": "\\Deleted" not in flags,
            "FLAGGED": "\\Flagged" in flags,
            "UNFLAGGED": "\\Flagged" not in flags,
            "ANSWERED": "\\Answered" in flags,
        }
        if key in simple:
            return simple[key], pos + 1
        if key == "OR":
            left, pos = self._match(tokens, pos + 1, message, seq)
            right, pos = self._match(tokens, pos, message, seq)
            return left or right, pos
        if key == "NOT":
            inner, pos = self._match(tokens, pos + 1, message, seq)
            return not inner, pos
        value = tokens[pos + 1]
        if isinstance(value, bytes):
            value = value.decode()
        text = str(value)
        if key == "SUBJECT":
            return text.lower() in message.subject.lower(), pos + 2
        if key == "FROM":
            return text.lower() in message.sender.lower(), pos + 2
        if key == "TO":
            return text.lower() in message.to.lower(), pos + 2
        if key in ("BODY", "TEXT"):
            return text.lower().encode() in message.raw.lower(), pos + 2
        if key == "SINCE":
            return message.date.date() >= parse_search_date(text), pos + 2
        if key == "BEFORE":
            return message.date.date() < parse_search_date(text), pos + 2
        if key == "LARGER":
            return len(message.raw) > int(text), pos + 2
        if key == "UID":
            return message.uid in parse_sequence_set(text), pos + 2
        if key == "KEYWORD":
            return text in flags, pos + 2
        raise ValueError(f"fake server cannot search {key}")

    # ---- fetch and store ----

    def _select_messages(self, token, uid):
        numbers = set(parse_sequence_set(str(token)))
        for seq, message in enumerate(self.messages, 1):
            if (message.uid if uid else seq) in numbers:
                yield seq, message

    def _cmd_fetch(self, args, uid=False):
        items = args[1] if isinstance(args[1], tuple) else (args[1],)
        for seq, message in self._select_messages(args[0], uid):
            parts = []
            for item in items:
                item = str(item).upper()
                if item in self.omit_items:
                    continue
                parts.append(self._fetch_item(item, message))
            self.send(f"* {seq} FETCH (".encode() + b" ".join(parts) + b")\r\n")
        return "OK", "FETCH completed"

    def _cmd_uid_fetch(self, args):
        return self._cmd_fetch(args, uid=True)

    def _fetch_item(self, item: str, message: FakeMessage) -> bytes:
        if item == "UID":
            return f"UID {message.uid}".encode()
        if item == "FLAGS":
            return f"FLAGS ({' '.join(sorted(message.flags))})".encode()
        if item == "INTERNALDATE":
            return f'INTERNALDATE "{message.internal_date}"'.encode()
        if item == "RFC822.SIZE":
            return f"RFC822.SIZE {len(message.raw)}".encode()
        if item == "ENVELOPE":
            date = message.header_block.split(b"Date: ")[1].split(b"\r\n")[0].decode()
            envelope = (
                f"ENVELOPE ({_q(date)} {_q(message.subject)} {_address(message.sender)} "
                f"{_address(message.sender)} {_address(message.sender)} {_address(message.to)} "
                f"NIL NIL NIL {_q(f'<{message.uid}@example.com>')})"
            )
            return envelope.encode()
        if item == "BODYSTRUCTURE":
            size = len(message.body)
            return f'BODYSTRUCTURE ("TEXT" "PLAIN" ("CHARSET" "UTF-8") NIL NIL "7BIT" {size} 1)'.encode()
        if item == "BODY[]":
            message.flags.add("\\Seen")
            return self._literal("BODY[]", message.raw)
        if item == "BODY.PEEK[]":
            return self._literal("BODY[]", message.raw)
        if item == "BODY.PEEK[HEADER]":
            return self._literal("BODY[HEADER]", message.header_block)
        if item.startswith("BODY.PEEK[HEADER.FIELDS"):
            names = item[item.index("(") + 1:item.index(")")].split()
            lines = [
                line for line in message.header_block.split(b"\r\n")
                if line and line.split(b":")[0].decode().upper() in names
            ]
            data = b"".join(line + b"\r\n" for line in lines) + b"\r\n"
            section = item.replace("BODY.PEEK", "BODY")
            return self._literal(section, data)
        raise ValueError(f"fake server cannot fetch {item}")

    @staticmethod
    def _literal(name: str, data: bytes) -> bytes:
        return f"{name} {{{len(data)}}}\r\n".encode() + data

    def _cmd_store(self, args, uid=False):
        item = str(args[1]).upper()
        flags = {str(f) for f in args[2]}
        for seq, message in self._select_messages(args[0], uid):
            if item.startswith("+"):
                message.flags |= flags
            elif item.startswith("-"):
                message.flags -= flags
            else:
                message.flags = set(flags)
            if not item.endswith(".SILENT"):
                self.send(f"* {seq} FETCH (FLAGS ({' '.join(sorted(message.flags))}))\r\n".encode())
        return "OK", "STORE completed"

    def _cmd_uid_store(self, args):
        return self._cmd_store(args, uid=True)

    def _cmd_expunge(self, args):
        kept = []
        seq = 1
        for message in self.messages:
            if "\\Deleted" in message.flags:
                self.send(f"* {seq} EXPUNGE\r\n".encode())
            else:
                kept.append(message)
                seq += 1
        self.mailboxes[self.selected] = kept
        return "OK", "EXPUNGE completed"


# =============================================================================
# Fixtures
# =============================================================================

def inbox_messages() -> list[FakeMessage]:
    """Five messages, three of which mention an invoice."""
    def at(month, day):
        return datetime(2024, month, day, 9, 30, tzinfo=timezone.utc)

    return [
        FakeMessage(uid=101, subject="Invoice 2024-001", sender="billing@acme.test", date=at(1, 5)),
        FakeMessage(uid=102, subject="Lunch on Friday?", date=at(1, 20), flags={"\\Seen"}),
        FakeMessage(uid=103, subject="Your invoice is ready", sender="billing@acme.test", date=at(2, 3)),
        FakeMessage(uid=104, subject="Meeting notes", date=at(2, 14), flags={"\\Flagged"}),
        FakeMessage(uid=105, subject="Re: Invoice question", sender="carol@example.com", date=at(3, 1)),
    ]


@pytest.fixture
def server() -> FakeServer:
    """A fake server with INBOX, Archive and a folder-only Projects."""
    server = FakeServer()
    server.add_mailbox("INBOX", inbox_messages(), attributes=("\\HasNoChildren",))
    server.add_mailbox("Archive", [
        FakeMessage(uid=1, subject="Old news"),
    ])
    server.add_mailbox("Projects", [], attributes=("\\Noselect", "\\HasChildren"))
    return server


@pytest.fixture
def config() -> Config:
    """Default configuration with a short command timeout."""
    config = Config()
    config.connection.command_timeout = 2.0
    config.connection.greeting_timeout = 2.0
    return config


@pytest_asyncio.fixture
async def connection(server, config):
    """An authenticated connection to the fake server."""
    conn = await Connection.open(server, config)
    await conn.login("user", "secret")
    yield conn
    await conn.close()


@pytest_asyncio.fixture
async def inbox(connection):
    """INBOX selected read-write."""
    return await connection.select("INBOX")
