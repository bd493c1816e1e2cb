# =============================================================================
# IMAP Wire Codec
# =============================================================================
# Turns commands into bytes and bytes into responses (RFC 3501 section 4
# and 7). Nothing in here knows about tags, queues or connection state.
#
# Key responsibilities:
#   - Encode command arguments as atoms, quoted strings or literals
#   - Frame server responses, including literals ({n} + n raw bytes)
#   - Tokenize response payloads into Python values
#   - Modified UTF-7 mailbox names and sequence sets
#
# Design notes:
#   - Literal framing is byte-exact: when a line ends with {n}, the reader
#     switches to reading exactly n bytes before going back to lines.
#   - Token values: NIL -> None, numbers -> int, atoms and quoted
#     strings -> str, literals -> bytes, parenthesized lists -> tuple.
# =============================================================================

import base64
import re
from collections.abc import Iterable, Iterator
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any

from kestrel.errors import ConnectionClosedError, ProtocolError

if TYPE_CHECKING:
    from kestrel.imap.transport import Transport


CRLF = b"\r\n"

# Default framing limits (overridable through CodecConfig)
DEFAULT_MAX_LINE_LENGTH = 64 * 1024
DEFAULT_MAX_LITERAL_SIZE = 64 * 1024 * 1024

# Completion/condition responses: these carry an optional [CODE] and text
STATUS_KINDS = frozenset({"OK", "NO", "BAD", "PREAUTH", "BYE"})

# Untagged data responses whose payload is tokenized strictly
DATA_KINDS = frozenset({
    "CAPABILITY", "FLAGS", "LIST", "LSUB", "SEARCH", "SORT", "STATUS",
    "EXISTS", "RECENT", "EXPUNGE", "FETCH", "ENABLED",
})

_LITERAL_AT_END = re.compile(rb"\{([^{}]*)\}\r?\n\Z")
_LITERAL_START = re.compile(rb"\{(\d+)\+?\}\r?\n")

# Lines whose remainder is resp-text, which never carries a literal
_TEXT_LINE = re.compile(rb"(?:\+|\S+ (?:OK|NO|BAD|BYE|PREAUTH))(?:[ \r\n]|\Z)", re.IGNORECASE)

_SP = 0x20
_DQUOTE = 0x22
_BACKSLASH = 0x5C
_ATOM_SPECIALS = frozenset(b'(){ %*"\\]')


class Atom(str):
    """A command token sent verbatim (keywords, sequence sets, item lists)."""
    __slots__ = ()


@dataclass(frozen=True)
class Literal:
    """Opaque bytes sent as an IMAP literal, never quoted."""
    data: bytes


# =============================================================================
# Command Encoding
# =============================================================================

def quoted(value: str) -> str:
    """Return value as an RFC 3501 quoted string."""
    value = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{value}"'


def _is_quotable(value: str) -> bool:
    """Quoted strings may only hold 7-bit text without CR, LF or NUL."""
    return all(0 < ord(ch) < 0x80 and ch not in "\r\n" for ch in value)


class Command:
    """
    A single IMAP command, minus its tag.

    Arguments are encoded by type:
        Atom            -> sent verbatim
        str             -> quoted string, or a literal if not 7-bit safe
        bytes, Literal  -> literal
        int             -> number
        None            -> NIL
        list, tuple     -> parenthesized list

    Example:
        >>> Command("SELECT", "INBOX").encode("A1")
        [b'A1 SELECT "INBOX"\\r\\n']
    """

    def __init__(self, name: str, *args: Any, sensitive: bool = False) -> None:
        self.name = name.upper()
        self.args = args
        # Sensitive commands (LOGIN) never have their arguments logged
        self.sensitive = sensitive

    def encode(self, tag: str, *, literal_plus: bool = False) -> list[bytes]:
        """
        Encode the command into wire segments.

        With synchronizing literals the command is split after every
        literal marker; the client has to wait for a "+" continuation
        before writing the next segment. With LITERAL+ there is always a
        single segment.

        Args:
            tag: The command tag.
            literal_plus: Use non-synchronizing literals ({n+}).

        Returns:
            List of byte segments to write in order.
        """
        segments: list[bytes] = []
        buf = bytearray(f"{tag} {self.name}".encode("ascii"))
        for arg in self.args:
            buf += b" "
            _encode_value(arg, buf, segments, literal_plus)
        buf += CRLF
        segments.append(bytes(buf))
        return segments

    def describe(self) -> str:
        """Short printable form for logs and error messages."""
        if self.sensitive:
            return f"{self.name} <redacted>"
        text = b"".join(self.encode("", literal_plus=True)).decode("ascii", "replace").strip()
        if len(text) > 200:
            text = text[:197] + "..."
        return text

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Command):
            return NotImplemented
        return self.name == other.name and self.args == other.args

    def __repr__(self) -> str:
        return f"Command({self.describe()!r})"


def _encode_value(value: Any, buf: bytearray, segments: list[bytes], literal_plus: bool) -> None:
    """Append one argument to buf, splitting into segments at literals."""
    if isinstance(value, Atom):
        buf += value.encode("ascii")
    elif value is None:
        buf += b"NIL"
    elif isinstance(value, bool):
        raise TypeError("booleans are not IMAP values")
    elif isinstance(value, int):
        buf += str(value).encode("ascii")
    elif isinstance(value, Literal):
        _encode_literal(value.data, buf, segments, literal_plus)
    elif isinstance(value, (bytes, bytearray)):
        _encode_literal(bytes(value), buf, segments, literal_plus)
    elif isinstance(value, str):
        if _is_quotable(value):
            buf += quoted(value).encode("ascii")
        else:
            _encode_literal(value.encode("utf-8"), buf, segments, literal_plus)
    elif isinstance(value, (list, tuple)):
        buf += b"("
        for i, item in enumerate(value):
            if i:
                buf += b" "
            _encode_value(item, buf, segments, literal_plus)
        buf += b")"
    else:
        raise TypeError(f"cannot encode {type(value).__name__} as an IMAP argument")


def _encode_literal(data: bytes, buf: bytearray, segments: list[bytes], literal_plus: bool) -> None:
    if literal_plus:
        buf += b"{%d+}\r\n" % len(data)
        buf += data
        return
    buf += b"{%d}\r\n" % len(data)
    segments.append(bytes(buf))
    buf.clear()
    buf += data


# =============================================================================
# Responses
# =============================================================================

@dataclass(frozen=True)
class Response:
    """
    One decoded server response.

    Attributes:
        tag: Command tag for completions, None for untagged ("*")
             responses, "+" for continuation requests.
        kind: Upper-cased response name: OK/NO/BAD/BYE/PREAUTH for status
              responses, EXISTS/FETCH/SEARCH/... for data, CONTINUE for "+".
        number: Leading number of message data ("* 3 EXISTS").
        payload: Tokenized values following the kind (data responses).
        code: Response code name from "[...]" (status responses).
        code_args: Tokenized values following the response code name.
        text: Human-readable text (status and continuation responses).
        raw: The exact bytes the response was decoded from.
    """
    tag: str | None
    kind: str
    number: int | None = None
    payload: tuple = ()
    code: str | None = None
    code_args: tuple = ()
    text: str = ""
    raw: bytes = b""

    @property
    def is_untagged(self) -> bool:
        return self.tag is None

    @property
    def is_continuation(self) -> bool:
        return self.tag == "+"

    @property
    def is_status(self) -> bool:
        return self.kind in STATUS_KINDS


def literal_size(
    line: bytes,
    max_literal_size: int = DEFAULT_MAX_LITERAL_SIZE,
    *,
    first: bool = False,
) -> int | None:
    """
    Return the size of the literal announced at the end of a line.

    Args:
        line: One line of a response, CRLF included.
        max_literal_size: Largest literal accepted.
        first: The line starts a response. Status and continuation lines
               end in free text, so a trailing "{n}" there is not a literal.

    Returns:
        The literal's byte count, or None if the line has no literal marker.

    Raises:
        ProtocolError: If the marker is malformed or exceeds the limit.
    """
    if first and _TEXT_LINE.match(line):
        return None
    match = _LITERAL_AT_END.search(line)
    if not match:
        return None
    body = match.group(1)
    if not body.isdigit():
        raise ProtocolError(f"bad literal length: {body!r}")
    size = int(body)
    if size > max_literal_size:
        raise ProtocolError(f"literal of {size} bytes exceeds limit of {max_literal_size}")
    return size


def split_responses(
    data: bytes,
    *,
    max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    max_literal_size: int = DEFAULT_MAX_LITERAL_SIZE,
) -> Iterator[bytes]:
    """
    Frame a complete byte buffer into raw responses.

    Raises:
        ProtocolError: If the buffer ends mid-response or framing is bad.
    """
    pos = 0
    end = len(data)
    while pos < end:
        start = pos
        while True:
            eol = data.find(b"\n", pos)
            if eol < 0:
                raise ProtocolError("truncated response line")
            line = data[pos:eol + 1]
            if len(line) > max_line_length:
                raise ProtocolError(f"response line exceeds {max_line_length} bytes")
            first = pos == start
            pos = eol + 1
            size = literal_size(line, max_literal_size, first=first)
            if size is None:
                break
            if pos + size > end:
                raise ProtocolError("truncated literal")
            pos += size
        yield data[start:pos]


def decode(
    data: bytes,
    *,
    max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
    max_literal_size: int = DEFAULT_MAX_LITERAL_SIZE,
) -> list[Response]:
    """Decode every response contained in data."""
    return [
        parse_response(raw)
        for raw in split_responses(
            data, max_line_length=max_line_length, max_literal_size=max_literal_size
        )
    ]


class ResponseReader:
    """
    Reads framed responses from a transport.

    Lines are read one at a time; when a line announces a literal the
    reader takes exactly that many bytes before reading the next line.

    Usage:
        >>> reader = ResponseReader(transport)
        >>> response = await reader.read_response()
    """

    def __init__(
        self,
        transport: "Transport",
        *,
        max_line_length: int = DEFAULT_MAX_LINE_LENGTH,
        max_literal_size: int = DEFAULT_MAX_LITERAL_SIZE,
    ) -> None:
        self._transport = transport
        self.max_line_length = max_line_length
        self.max_literal_size = max_literal_size

    async def read_raw(self) -> bytes:
        """
        Read the bytes of one complete response.

        Raises:
            ConnectionClosedError: If the stream ends mid-response.
            ProtocolError: If framing limits are violated.
        """
        parts: list[bytes] = []
        while True:
            line = await self._transport.read_line()
            if not line:
                raise ConnectionClosedError("server closed the connection")
            if len(line) > self.max_line_length:
                raise ProtocolError(f"response line exceeds {self.max_line_length} bytes")
            if not line.endswith(b"\n"):
                raise ConnectionClosedError("connection closed in the middle of a response")
            size = literal_size(line, self.max_literal_size, first=not parts)
            parts.append(line)
            if size is None:
                return b"".join(parts)
            parts.append(await self._transport.read_exactly(size))

    async def read_response(self) -> Response:
        """Read and parse one response."""
        return parse_response(await self.read_raw())


# =============================================================================
# Response Parsing
# =============================================================================

def parse_response(raw: bytes) -> Response:
    """
    Parse one framed response.

    Args:
        raw: Bytes of a single response, including literals and the final CRLF.

    Raises:
        ProtocolError: If the response is malformed.
    """
    body = raw
    if body.endswith(b"\r\n"):
        body = body[:-2]
    elif body.endswith(b"\n"):
        body = body[:-1]

    if body.startswith(b"+"):
        return Response(tag="+", kind="CONTINUE", text=_text(body[1:].lstrip()), raw=raw)

    tag_bytes, sep, rest = body.partition(b" ")
    if not sep or not tag_bytes:
        raise ProtocolError(f"malformed response: {body[:80]!r}")

    if tag_bytes == b"*":
        return _parse_untagged(rest, raw)

    kind_bytes, _, text = rest.partition(b" ")
    kind = kind_bytes.decode("ascii", "replace").upper()
    if kind not in ("OK", "NO", "BAD"):
        raise ProtocolError(f"unexpected tagged response kind: {kind!r}")
    return _parse_status(tag_bytes.decode("ascii", "replace"), kind, text, raw)


def _parse_untagged(rest: bytes, raw: bytes) -> Response:
    first, _, after = rest.partition(b" ")
    if not first:
        raise ProtocolError(f"malformed untagged response: {raw[:80]!r}")

    if first.isdigit():
        # Message data: "* 12 EXISTS", "* 3 FETCH (...)"
        kind_bytes, _, data = after.partition(b" ")
        if not kind_bytes:
            raise ProtocolError(f"missing response name: {raw[:80]!r}")
        kind = kind_bytes.decode("ascii", "replace").upper()
        payload, _ = parse_values(data)
        return Response(tag=None, kind=kind, number=int(first), payload=payload, raw=raw)

    kind = first.decode("ascii", "replace").upper()
    if kind in STATUS_KINDS:
        return _parse_status(None, kind, after, raw)
    if kind in DATA_KINDS:
        payload, _ = parse_values(after)
        return Response(tag=None, kind=kind, payload=payload, raw=raw)
    # Unknown extension data is kept as text
    return Response(tag=None, kind=kind, text=_text(after), raw=raw)


def _parse_status(tag: str | None, kind: str, data: bytes, raw: bytes) -> Response:
    code = None
    code_args: tuple = ()
    if data.startswith(b"["):
        close = data.find(b"]")
        if close > 0:
            inner = data[1:close]
            name, _, args = inner.partition(b" ")
            code = name.decode("ascii", "replace").upper()
            try:
                code_args, _ = parse_values(args)
            except ProtocolError:
                code_args = (_text(args),)
            data = data[close + 1:].lstrip()
    return Response(tag=tag, kind=kind, code=code, code_args=code_args, text=_text(data), raw=raw)


def _text(data: bytes) -> str:
    return data.decode("utf-8", "replace")


def parse_values(data: bytes, pos: int = 0) -> tuple[tuple, int]:
    """
    Tokenize a sequence of IMAP values.

    Returns:
        Tuple of (values, position after the last value).

    Raises:
        ProtocolError: On unterminated strings, bad literals or unbalanced
            parentheses.
    """
    return _parse_values(data, pos, nested=False)


def _parse_values(data: bytes, pos: int, *, nested: bool) -> tuple[tuple, int]:
    values: list[Any] = []
    end = len(data)
    while True:
        while pos < end and data[pos] == _SP:
            pos += 1
        if pos >= end:
            if nested:
                raise ProtocolError("unbalanced parenthesis")
            return tuple(values), pos

        ch = data[pos]
        if ch == 0x29:  # ")"
            if not nested:
                raise ProtocolError("unexpected ')'")
            return tuple(values), pos + 1
        if ch == 0x28:  # "("
            inner, pos = _parse_values(data, pos + 1, nested=True)
            values.append(inner)
        elif ch == _DQUOTE:
            value, pos = _parse_quoted(data, pos)
            values.append(value)
        elif ch == 0x7B:  # "{"
            value, pos = _parse_literal(data, pos)
            values.append(value)
        elif ch in (0x0D, 0x0A):
            raise ProtocolError("unexpected line break outside a literal")
        else:
            token, pos = _parse_atom(data, pos)
            values.append(_atom_value(token))


def _parse_quoted(data: bytes, pos: int) -> tuple[str, int]:
    out = bytearray()
    pos += 1
    end = len(data)
    while pos < end:
        ch = data[pos]
        if ch == _BACKSLASH and pos + 1 < end:
            out.append(data[pos + 1])
            pos += 2
        elif ch == _DQUOTE:
            return out.decode("utf-8", "replace"), pos + 1
        elif ch in (0x0D, 0x0A):
            break
        else:
            out.append(ch)
            pos += 1
    raise ProtocolError("unterminated quoted string")


def _parse_literal(data: bytes, pos: int) -> tuple[bytes, int]:
    match = _LITERAL_START.match(data, pos)
    if not match:
        raise ProtocolError(f"bad literal length at offset {pos}")
    size = int(match.group(1))
    start = match.end()
    if start + size > len(data):
        raise ProtocolError("truncated literal")
    return data[start:start + size], start + size


def _parse_atom(data: bytes, pos: int) -> tuple[bytes, int]:
    # Section specs such as BODY[HEADER.FIELDS (SUBJECT FROM)] belong to
    # the atom even though they contain spaces and parentheses.
    start = pos
    depth = 0
    end = len(data)
    while pos < end:
        ch = data[pos]
        if ch == 0x5B:  # "["
            depth += 1
        elif ch == 0x5D and depth:  # "]"
            depth -= 1
        elif depth == 0 and ch in (_SP, 0x28, 0x29, 0x0D, 0x0A):
            break
        pos += 1
    if depth:
        raise ProtocolError("unterminated section specification")
    return data[start:pos], pos


def _atom_value(token: bytes) -> Any:
    if token.upper() == b"NIL":
        return None
    if token.isdigit():
        return int(token)
    return token.decode("utf-8", "replace")


# =============================================================================
# Mailbox Names (modified UTF-7, RFC 3501 section 5.1.3)
# =============================================================================

def encode_mailbox_name(name: str) -> str:
    """
    Encode a mailbox name into modified UTF-7.

    Example:
        >>> encode_mailbox_name("Entwürfe")
        'Entw&APw-rfe'
    """
    out: list[str] = []
    pending: list[str] = []

    def flush() -> None:
        if pending:
            raw = "".join(pending).encode("utf-16-be")
            chunk = base64.b64encode(raw).rstrip(b"=").replace(b"/", b",")
            out.append("&" + chunk.decode("ascii") + "-")
            pending.clear()

    for ch in name:
        if 0x20 <= ord(ch) <= 0x7E:
            flush()
            out.append("&-" if ch == "&" else ch)
        else:
            pending.append(ch)
    flush()
    return "".join(out)


def decode_mailbox_name(name: str) -> str:
    """
    Decode a modified UTF-7 mailbox name.

    Raises:
        ProtocolError: If a shifted sequence is unterminated or invalid.
    """
    out: list[str] = []
    pos = 0
    while pos < len(name):
        ch = name[pos]
        if ch != "&":
            out.append(ch)
            pos += 1
            continue
        end = name.find("-", pos)
        if end < 0:
            raise ProtocolError(f"unterminated modified UTF-7 sequence in {name!r}")
        if end == pos + 1:
            out.append("&")
        else:
            chunk = name[pos + 1:end].replace(",", "/")
            chunk += "=" * (-len(chunk) % 4)
            try:
                out.append(base64.b64decode(chunk).decode("utf-16-be"))
            except (ValueError, UnicodeDecodeError) as e:
                raise ProtocolError(f"invalid modified UTF-7 in {name!r}") from e
        pos = end + 1
    return "".join(out)


# =============================================================================
# Sequence Sets
# =============================================================================

def format_sequence_set(numbers: Iterable[int]) -> str:
    """
    Compress message numbers into an IMAP sequence set.

    Example:
        >>> format_sequence_set([5, 1, 2, 3, 7, 8])
        '1:3,5,7:8'
    """
    ordered = sorted(set(numbers))
    if not ordered:
        raise ValueError("cannot format an empty sequence set")
    if ordered[0] < 1:
        raise ValueError("message numbers start at 1")

    ranges: list[str] = []
    start = prev = ordered[0]
    for n in ordered[1:]:
        if n == prev + 1:
            prev = n
            continue
        ranges.append(str(start) if start == prev else f"{start}:{prev}")
        start = prev = n
    ranges.append(str(start) if start == prev else f"{start}:{prev}")
    return ",".join(ranges)


def parse_sequence_set(text: str) -> list[int]:
    """
    Expand a sequence set without "*" into sorted message numbers.

    Raises:
        ValueError: If the set is malformed or uses "*".
    """
    numbers: set[int] = set()
    for part in text.split(","):
        low, sep, high = part.partition(":")
        if not low.isdigit() or (sep and not high.isdigit()):
            raise ValueError(f"invalid sequence set: {text!r}")
        a = int(low)
        b = int(high) if sep else a
        numbers.update(range(min(a, b), max(a, b) + 1))
    return sorted(numbers)


# =============================================================================
# Dates
# =============================================================================
# Month names are spelled out here instead of using strftime("%b"), which
# depends on the process locale.

MONTHS = ("Jan", "Feb", "Mar", "Apr", "May", "Jun",
          "Jul", "Aug", "Sep", "Oct", "Nov", "Dec")


def format_search_date(value: date) -> str:
    """
    Format a date for SEARCH (RFC 3501 "date").

    Example:
        >>> format_search_date(date(2024, 3, 7))
        '7-Mar-2024'
    """
    return f"{value.day}-{MONTHS[value.month - 1]}-{value.year}"


def parse_search_date(value: str) -> date:
    """Parse a SEARCH date such as "7-Mar-2024"."""
    try:
        day, month, year = value.strip('"').split("-")
        return date(int(year), MONTHS.index(month.title()) + 1, int(day))
    except ValueError as e:
        raise ValueError(f"invalid IMAP date: {value!r}") from e


def parse_internal_date(value: str) -> datetime:
    """
    Parse an INTERNALDATE value such as "17-Jul-1996 02:44:25 -0700".

    Raises:
        ValueError: If the value is not a valid date-time.
    """
    try:
        day_part, time_part, zone = value.strip().split()
        day = parse_search_date(day_part)
        hours, minutes, seconds = (int(x) for x in time_part.split(":"))
        sign = -1 if zone.startswith("-") else 1
        offset = timedelta(hours=int(zone[1:3]), minutes=int(zone[3:5])) * sign
    except (ValueError, IndexError) as e:
        raise ValueError(f"invalid INTERNALDATE: {value!r}") from e
    return datetime(day.year, day.month, day.day, hours, minutes, seconds,
                    tzinfo=timezone(offset))
