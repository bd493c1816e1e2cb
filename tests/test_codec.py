"""Tests for the IMAP wire codec."""

from datetime import date, timedelta

import pytest

from kestrel.errors import ConnectionClosedError, ProtocolError
from kestrel.imap.codec import (
    Atom,
    Command,
    Literal,
    ResponseReader,
    decode,
    decode_mailbox_name,
    encode_mailbox_name,
    format_search_date,
    format_sequence_set,
    parse_internal_date,
    parse_response,
    parse_search_date,
    parse_sequence_set,
    parse_values,
)


class BufferTransport:
    """Serves a fixed byte string through the Transport interface."""

    def __init__(self, data: bytes) -> None:
        self.data = data

    async def read_line(self) -> bytes:
        eol = self.data.find(b"\n")
        end = len(self.data) if eol < 0 else eol + 1
        line, self.data = self.data[:end], self.data[end:]
        return line

    async def read_exactly(self, n: int) -> bytes:
        if len(self.data) < n:
            raise ConnectionClosedError("short literal")
        chunk, self.data = self.data[:n], self.data[n:]
        return chunk

    async def write(self, data: bytes) -> None:
        pass

    async def close(self) -> None:
        pass


class TestCommandEncoding:
    """Encoding commands into wire segments."""

    def test_quoted_string(self):
        assert Command("SELECT", "INBOX").encode("A1") == [b'A1 SELECT "INBOX"\r\n']

    def test_escapes_quotes_and_backslashes(self):
        wire = Command("SELECT", 'a "b" \\c').encode("A1")
        assert wire == [b'A1 SELECT "a \\"b\\" \\\\c"\r\n']

    def test_atoms_numbers_nil_and_lists(self):
        command = Command("FETCH", Atom("1:3"), [Atom("UID"), Atom("FLAGS")], None, 7)
        assert command.encode("A2") == [b"A2 FETCH 1:3 (UID FLAGS) NIL 7\r\n"]

    def test_non_ascii_string_becomes_synchronizing_literal(self):
        segments = Command("LOGIN", "user", "pässword").encode("A1")
        assert segments == [b'A1 LOGIN "user" {9}\r\n', "pässword".encode() + b"\r\n"]

    def test_literal_plus_keeps_one_segment(self):
        segments = Command("LOGIN", "user", "pässword").encode("A1", literal_plus=True)
        assert segments == [b'A1 LOGIN "user" {9+}\r\n' + "pässword".encode() + b"\r\n"]

    def test_bytes_and_literal_values(self):
        segments = Command("APPEND", Atom("INBOX"), Literal(b"a\r\nb")).encode("A3")
        assert segments == [b"A3 APPEND INBOX {4}\r\n", b"a\r\nb\r\n"]

    def test_line_breaks_force_literal(self):
        segments = Command("SEARCH", Atom("TEXT"), "two\nlines").encode("A1", literal_plus=True)
        assert segments == [b"A1 SEARCH TEXT {9+}\r\ntwo\nlines\r\n"]

    def test_booleans_are_rejected(self):
        with pytest.raises(TypeError):
            Command("NOOP", True).encode("A1")

    def test_describe_redacts_sensitive_commands(self):
        command = Command("LOGIN", "user", "secret", sensitive=True)
        assert command.describe() == "LOGIN <redacted>"
        assert "secret" not in repr(command)

    def test_describe_shows_arguments(self):
        assert Command("SELECT", "INBOX").describe() == 'SELECT "INBOX"'


class TestResponseParsing:
    """Decoding server responses."""

    def test_tagged_completion_with_code(self):
        response = parse_response(b"A1 NO [NONEXISTENT] No such mailbox\r\n")
        assert response.tag == "A1"
        assert response.kind == "NO"
        assert response.code == "NONEXISTENT"
        assert response.text == "No such mailbox"
        assert response.is_status

    def test_untagged_status_with_code_arguments(self):
        response = parse_response(b"* OK [UIDVALIDITY 3857529045] UIDs valid\r\n")
        assert response.is_untagged
        assert response.code == "UIDVALIDITY"
        assert response.code_args == (3857529045,)

    def test_permanentflags_code(self):
        response = parse_response(b"* OK [PERMANENTFLAGS (\\Deleted \\Seen \\*)] Limited\r\n")
        assert response.code_args == (("\\Deleted", "\\Seen", "\\*"),)

    def test_message_data(self):
        response = parse_response(b"* 23 EXISTS\r\n")
        assert response.kind == "EXISTS"
        assert response.number == 23

    def test_search_payload(self):
        response = parse_response(b"* SEARCH 2 84 882\r\n")
        assert response.kind == "SEARCH"
        assert response.payload == (2, 84, 882)

    def test_continuation(self):
        response = parse_response(b"+ Ready for literal data\r\n")
        assert response.is_continuation
        assert response.text == "Ready for literal data"

    def test_unknown_tagged_kind_is_a_protocol_error(self):
        with pytest.raises(ProtocolError):
            parse_response(b"A1 MAYBE whatever\r\n")

    def test_fetch_with_literal(self):
        [response] = decode(b"* 1 FETCH (UID 7 BODY[] {5}\r\nhe\r\no)\r\n")
        assert response.number == 1
        assert response.payload == (("UID", 7, "BODY[]", b"he\r\no"),)

    def test_section_spec_stays_one_atom(self):
        [response] = decode(b"* 2 FETCH (BODY[HEADER.FIELDS (SUBJECT FROM)] {5}\r\nx\r\n\r\n)\r\n")
        assert response.payload[0][0] == "BODY[HEADER.FIELDS (SUBJECT FROM)]"
        assert response.payload[0][1] == b"x\r\n\r\n"

    def test_status_text_ending_in_braces(self):
        """Free text that ends like a literal marker is still just text."""
        tagged, exists, untagged = decode(
            b"A5 OK done {5}\r\n* 2 EXISTS\r\n* OK text {x}\r\n"
        )
        assert tagged.text == "done {5}"
        assert exists.number == 2
        assert untagged.text == "text {x}"

    def test_several_responses_in_one_buffer(self):
        responses = decode(b"* 3 EXISTS\r\n* 0 RECENT\r\nA4 OK done\r\n")
        assert [r.kind for r in responses] == ["EXISTS", "RECENT", "OK"]

    def test_parse_values(self):
        values, _ = parse_values(b'(\\Seen $Label) NIL 12 "a \\"q\\"" BODY[HEADER.FIELDS (SUBJECT)]')
        assert values == (("\\Seen", "$Label"), None, 12, 'a "q"', "BODY[HEADER.FIELDS (SUBJECT)]")


class TestFramingErrors:
    """Malformed framing raises ProtocolError."""

    def test_bad_literal_length(self):
        with pytest.raises(ProtocolError):
            decode(b"* 1 FETCH (BODY[] {abc}\r\n")

    def test_literal_over_limit(self):
        data = b"* 1 FETCH (BODY[] {100}\r\n" + b"x" * 100 + b")\r\n"
        with pytest.raises(ProtocolError):
            decode(data, max_literal_size=10)

    def test_truncated_literal(self):
        with pytest.raises(ProtocolError):
            decode(b"* 1 FETCH (BODY[] {10}\r\nshort")

    def test_unterminated_quoted_string(self):
        with pytest.raises(ProtocolError):
            decode(b'* LIST () "/" "INBOX\r\n')

    def test_unbalanced_parenthesis(self):
        with pytest.raises(ProtocolError):
            decode(b"* FLAGS (\\Seen \\Deleted\r\n")

    def test_line_over_limit(self):
        with pytest.raises(ProtocolError):
            decode(b"* OK " + b"x" * 100 + b"\r\n", max_line_length=50)

    def test_missing_line_end(self):
        with pytest.raises(ProtocolError):
            decode(b"* OK partial")


class TestResponseReader:
    """Reading responses from a transport."""

    @pytest.mark.asyncio
    async def test_reads_literal_by_byte_count(self):
        # The literal contains a line break that must not end the response
        reader = ResponseReader(BufferTransport(b"* 1 FETCH (BODY[] {4}\r\na\r\nb)\r\nA1 OK done\r\n"))
        first = await reader.read_response()
        second = await reader.read_response()
        assert first.payload == (("BODY[]", b"a\r\nb"),)
        assert second.tag == "A1"

    @pytest.mark.asyncio
    async def test_bye_text_is_not_a_literal(self):
        reader = ResponseReader(BufferTransport(b"* BYE going away {3}\r\nA1 OK done\r\n"))
        bye = await reader.read_response()
        done = await reader.read_response()
        assert (bye.kind, bye.text) == ("BYE", "going away {3}")
        assert done.tag == "A1"

    @pytest.mark.asyncio
    async def test_end_of_stream(self):
        reader = ResponseReader(BufferTransport(b""))
        with pytest.raises(ConnectionClosedError):
            await reader.read_response()

    @pytest.mark.asyncio
    async def test_stream_ends_mid_line(self):
        reader = ResponseReader(BufferTransport(b"* OK no newline"))
        with pytest.raises(ConnectionClosedError):
            await reader.read_response()

    @pytest.mark.asyncio
    async def test_line_limit(self):
        reader = ResponseReader(BufferTransport(b"* OK " + b"x" * 64 + b"\r\n"), max_line_length=32)
        with pytest.raises(ProtocolError):
            await reader.read_response()


class TestMailboxNames:
    """Modified UTF-7 mailbox names."""

    def test_encode(self):
        assert encode_mailbox_name("Entwürfe") == "Entw&APw-rfe"
        assert encode_mailbox_name("台北") == "&U,BTFw-"
        assert encode_mailbox_name("Tom & Jerry") == "Tom &- Jerry"

    def test_decode(self):
        assert decode_mailbox_name("~peter/mail/&U,BTFw-/&ZeVnLIqe-") == "~peter/mail/台北/日本語"
        assert decode_mailbox_name("Tom &- Jerry") == "Tom & Jerry"

    def test_ascii_is_unchanged(self):
        assert encode_mailbox_name("INBOX/Sent Items") == "INBOX/Sent Items"

    def test_unterminated_shift(self):
        with pytest.raises(ProtocolError):
            decode_mailbox_name("&U,BTFw")


class TestSequenceSets:
    """Sequence set compression and expansion."""

    def test_format(self):
        assert format_sequence_set([5, 1, 2, 3, 7, 8]) == "1:3,5,7:8"
        assert format_sequence_set([4]) == "4"

    def test_format_rejects_empty_and_zero(self):
        with pytest.raises(ValueError):
            format_sequence_set([])
        with pytest.raises(ValueError):
            format_sequence_set([0, 1])

    def test_parse(self):
        assert parse_sequence_set("1:3,5,9:7") == [1, 2, 3, 5, 7, 8, 9]

    def test_parse_rejects_star(self):
        with pytest.raises(ValueError):
            parse_sequence_set("1:*")


class TestDates:
    """Search dates and INTERNALDATE values."""

    def test_search_date(self):
        assert format_search_date(date(2024, 3, 7)) == "7-Mar-2024"
        assert parse_search_date("7-Mar-2024") == date(2024, 3, 7)

    def test_internal_date(self):
        value = parse_internal_date("17-Jul-1996 02:44:25 -0700")
        assert (value.year, value.month, value.day, value.hour) == (1996, 7, 17, 2)
        assert value.utcoffset() == -timedelta(hours=7)

    def test_internal_date_with_space_padded_day(self):
        assert parse_internal_date(" 7-Jul-1996 02:44:25 +0000").day == 7

    def test_bad_internal_date(self):
        with pytest.raises(ValueError):
            parse_internal_date("yesterday")
