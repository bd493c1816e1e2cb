# =============================================================================
# Search and Sort Compiler
# =============================================================================
# Builds immutable predicate trees and sort specs and compiles them into
# SEARCH / SORT commands (RFC 3501 section 6.4.4, RFC 5256).
#
# Compilation rules:
#   - Leaf terms map directly to search keys ("SUBJECT", "SINCE", ...)
#   - AND is juxtaposition; parenthesized when it sits under OR or NOT
#   - OR is binary in IMAP, so n alternatives become nested ORs:
#       OR a OR b c
#   - Empty AND/OR nodes are pruned; a tree with nothing left is an error
#     (use SearchBuilder().all() to match every message)
#
# parse_criteria() reads compiled criteria back into a tree, and
# normalize() defines when two trees are the same search.
# =============================================================================

from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Union

from kestrel.errors import EmptyPredicateError
from kestrel.imap.codec import (
    Atom,
    Command,
    format_search_date,
    format_sequence_set,
    parse_search_date,
    parse_values,
)


# =============================================================================
# Predicate Tree
# =============================================================================

@dataclass(frozen=True)
class Term:
    """
    A single search key with its arguments.

    Example:
        >>> Term("SUBJECT", ("invoice",))
        >>> Term("UNSEEN")
    """
    key: str
    args: tuple = ()


@dataclass(frozen=True)
class AllOf:
    """Matches when every term matches (AND)."""
    terms: tuple["Predicate", ...] = ()


@dataclass(frozen=True)
class AnyOf:
    """Matches when at least one term matches (OR)."""
    terms: tuple["Predicate", ...] = ()


@dataclass(frozen=True)
class Not:
    """Matches when the wrapped term does not."""
    term: "Predicate"


Predicate = Union[Term, AllOf, AnyOf, Not]


# Search keys grouped by the arguments they take
FLAG_KEYS = frozenset({
    "ALL", "ANSWERED", "DELETED", "DRAFT", "FLAGGED", "NEW", "OLD", "RECENT",
    "SEEN", "UNANSWERED", "UNDELETED", "UNDRAFT", "UNFLAGGED", "UNSEEN",
})
STRING_KEYS = frozenset({"BCC", "BODY", "CC", "FROM", "SUBJECT", "TEXT", "TO"})
DATE_KEYS = frozenset({"BEFORE", "ON", "SINCE", "SENTBEFORE", "SENTON", "SENTSINCE"})
NUMBER_KEYS = frozenset({"LARGER", "SMALLER"})
KEYWORD_KEYS = frozenset({"KEYWORD", "UNKEYWORD"})


def normalize(predicate: Predicate) -> Predicate | None:
    """
    Reduce a tree to its canonical shape.

    Nested AND inside AND (and OR inside OR) is flattened, empty
    combinators are dropped and single-child combinators are unwrapped.

    Returns:
        The normalized tree, or None if no leaf terms remain.
    """
    if isinstance(predicate, Term):
        return predicate
    if isinstance(predicate, Not):
        inner = normalize(predicate.term)
        return Not(inner) if inner is not None else None

    kind = type(predicate)
    terms: list[Predicate] = []
    for child in predicate.terms:
        child = normalize(child)
        if child is None:
            continue
        if type(child) is kind:
            terms.extend(child.terms)
        else:
            terms.append(child)

    if not terms:
        return None
    if len(terms) == 1:
        return terms[0]
    return kind(tuple(terms))


def leaf_count(predicate: Predicate) -> int:
    """Number of leaf terms in a tree."""
    if isinstance(predicate, Term):
        return 1
    if isinstance(predicate, Not):
        return leaf_count(predicate.term)
    return sum(leaf_count(t) for t in predicate.terms)


# =============================================================================
# Sort Spec
# =============================================================================

class SortKey(Enum):
    """RFC 5256 sort keys."""
    ARRIVAL = "ARRIVAL"
    CC = "CC"
    DATE = "DATE"
    FROM = "FROM"
    SIZE = "SIZE"
    SUBJECT = "SUBJECT"
    TO = "TO"


@dataclass(frozen=True)
class SortCriterion:
    key: SortKey
    reverse: bool = False


SortSpec = tuple[SortCriterion, ...]


class SortBuilder:
    """
    Fluent builder for sort specs. Earlier criteria take precedence.

    Usage:
        >>> spec = SortBuilder().date(reverse=True).subject().build()
    """

    def __init__(self) -> None:
        self._criteria: list[SortCriterion] = []

    def by(self, key: SortKey | str, *, reverse: bool = False) -> "SortBuilder":
        if isinstance(key, str):
            key = SortKey(key.upper())
        self._criteria.append(SortCriterion(key, reverse))
        return self

    def arrival(self, *, reverse: bool = False) -> "SortBuilder":
        return self.by(SortKey.ARRIVAL, reverse=reverse)

    def cc(self, *, reverse: bool = False) -> "SortBuilder":
        return self.by(SortKey.CC, reverse=reverse)

    def date(self, *, reverse: bool = False) -> "SortBuilder":
        return self.by(SortKey.DATE, reverse=reverse)

    def from_(self, *, reverse: bool = False) -> "SortBuilder":
        return self.by(SortKey.FROM, reverse=reverse)

    def size(self, *, reverse: bool = False) -> "SortBuilder":
        return self.by(SortKey.SIZE, reverse=reverse)

    def subject(self, *, reverse: bool = False) -> "SortBuilder":
        return self.by(SortKey.SUBJECT, reverse=reverse)

    def to(self, *, reverse: bool = False) -> "SortBuilder":
        return self.by(SortKey.TO, reverse=reverse)

    def build(self) -> SortSpec:
        return tuple(self._criteria)


# =============================================================================
# Search Builder
# =============================================================================

@dataclass(frozen=True)
class Query:
    """A compiled-once search: predicate plus optional sort spec."""
    predicate: Predicate
    sort: SortSpec = ()


def _as_date(value: date | datetime | str) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(value)


class SearchBuilder:
    """
    Fluent builder for search predicates. Terms added one after another
    must all match (AND).

    Usage:
        >>> query = (
        ...     SearchBuilder()
        ...     .subject("invoice")
        ...     .since("2024-01-01")
        ...     .any_of(SearchBuilder().from_("billing@"), SearchBuilder().flagged())
        ...     .sorted_by(SortKey.DATE, reverse=True)
        ...     .build()
        ... )
    """

    def __init__(self) -> None:
        self._terms: list[Predicate] = []
        self._sort = SortBuilder()

    def _add(self, key: str, *args: Any) -> "SearchBuilder":
        self._terms.append(Term(key, args))
        return self

    # ---- flags ----

    def all(self) -> "SearchBuilder":
        return self._add("ALL")

    def seen(self) -> "SearchBuilder":
        return self._add("SEEN")

    def unseen(self) -> "SearchBuilder":
        return self._add("UNSEEN")

    def answered(self) -> "SearchBuilder":
        return self._add("ANSWERED")

    def unanswered(self) -> "SearchBuilder":
        return self._add("UNANSWERED")

    def flagged(self) -> "SearchBuilder":
        return self._add("FLAGGED")

    def unflagged(self) -> "SearchBuilder":
        return self._add("UNFLAGGED")

    def deleted(self) -> "SearchBuilder":
        return self._add("DELETED")

    def undeleted(self) -> "SearchBuilder":
        return self._add("UNDELETED")

    def draft(self) -> "SearchBuilder":
        return self._add("DRAFT")

    def undraft(self) -> "SearchBuilder":
        return self._add("UNDRAFT")

    def recent(self) -> "SearchBuilder":
        return self._add("RECENT")

    def new(self) -> "SearchBuilder":
        return self._add("NEW")

    def old(self) -> "SearchBuilder":
        return self._add("OLD")

    def keyword(self, flag: str) -> "SearchBuilder":
        return self._add("KEYWORD", flag)

    def unkeyword(self, flag: str) -> "SearchBuilder":
        return self._add("UNKEYWORD", flag)

    # ---- text ----

    def subject(self, text: str) -> "SearchBuilder":
        return self._add("SUBJECT", text)

    def from_(self, text: str) -> "SearchBuilder":
        return self._add("FROM", text)

    def to(self, text: str) -> "SearchBuilder":
        return self._add("TO", text)

    def cc(self, text: str) -> "SearchBuilder":
        return self._add("CC", text)

    def bcc(self, text: str) -> "SearchBuilder":
        return self._add("BCC", text)

    def body(self, text: str) -> "SearchBuilder":
        return self._add("BODY", text)

    def text(self, text: str) -> "SearchBuilder":
        """Match anywhere in the header or body."""
        return self._add("TEXT", text)

    def header(self, name: str, value: str) -> "SearchBuilder":
        return self._add("HEADER", name, value)

    # ---- dates (internal date, or the Date header for sent_*) ----

    def since(self, day: date | datetime | str) -> "SearchBuilder":
        return self._add("SINCE", _as_date(day))

    def before(self, day: date | datetime | str) -> "SearchBuilder":
        return self._add("BEFORE", _as_date(day))

    def on(self, day: date | datetime | str) -> "SearchBuilder":
        return self._add("ON", _as_date(day))

    def sent_since(self, day: date | datetime | str) -> "SearchBuilder":
        return self._add("SENTSINCE", _as_date(day))

    def sent_before(self, day: date | datetime | str) -> "SearchBuilder":
        return self._add("SENTBEFORE", _as_date(day))

    def sent_on(self, day: date | datetime | str) -> "SearchBuilder":
        return self._add("SENTON", _as_date(day))

    # ---- size and identity ----

    def larger(self, size: int) -> "SearchBuilder":
        return self._add("LARGER", size)

    def smaller(self, size: int) -> "SearchBuilder":
        return self._add("SMALLER", size)

    def uid(self, uids: Iterable[int] | str) -> "SearchBuilder":
        """Restrict to UIDs, given as numbers or a sequence-set string."""
        if not isinstance(uids, str):
            uids = format_sequence_set(uids)
        return self._add("UID", uids)

    # ---- combinators ----

    def any_of(self, *alternatives: "SearchBuilder | Predicate") -> "SearchBuilder":
        """At least one alternative must match (OR)."""
        self._terms.append(AnyOf(tuple(_predicate(a) for a in alternatives)))
        return self

    def all_of(self, *terms: "SearchBuilder | Predicate") -> "SearchBuilder":
        self._terms.append(AllOf(tuple(_predicate(t) for t in terms)))
        return self

    def not_(self, term: "SearchBuilder | Predicate") -> "SearchBuilder":
        self._terms.append(Not(_predicate(term)))
        return self

    def match(self, predicate: Predicate) -> "SearchBuilder":
        """Add a prebuilt predicate."""
        self._terms.append(predicate)
        return self

    def sorted_by(self, key: SortKey | str, *, reverse: bool = False) -> "SearchBuilder":
        """Ask for server-side sorting; may be called more than once."""
        self._sort.by(key, reverse=reverse)
        return self

    def build_predicate(self) -> Predicate:
        return AllOf(tuple(self._terms))

    def build(self) -> Query:
        return Query(self.build_predicate(), self._sort.build())


def _predicate(value: "SearchBuilder | Predicate") -> Predicate:
    if isinstance(value, SearchBuilder):
        return value.build_predicate()
    return value


# =============================================================================
# Compilation
# =============================================================================

def compile_criteria(predicate: Predicate) -> list[Any]:
    """
    Compile a tree into search-key arguments for a Command.

    Raises:
        EmptyPredicateError: If the tree has no leaf terms.
    """
    normalized = normalize(predicate)
    if normalized is None:
        raise EmptyPredicateError(
            "search predicate has no terms; use SearchBuilder().all() to match every message"
        )
    out: list[Any] = []
    _compile(normalized, out, nested=False)
    return out


def _compile(predicate: Predicate, out: list[Any], *, nested: bool) -> None:
    if isinstance(predicate, Term):
        out.append(Atom(predicate.key))
        out.extend(_term_args(predicate))
    elif isinstance(predicate, Not):
        out.append(Atom("NOT"))
        _compile(predicate.term, out, nested=True)
    elif isinstance(predicate, AllOf):
        if nested:
            group: list[Any] = []
            for term in predicate.terms:
                _compile(term, group, nested=False)
            out.append(group)
        else:
            for term in predicate.terms:
                _compile(term, out, nested=False)
    else:
        _compile_or(predicate.terms, out)


def _compile_or(terms: Sequence[Predicate], out: list[Any]) -> None:
    if len(terms) == 1:
        _compile(terms[0], out, nested=True)
        return
    out.append(Atom("OR"))
    _compile(terms[0], out, nested=True)
    _compile_or(terms[1:], out)


def _term_args(term: Term) -> list[Any]:
    key = term.key
    if key in DATE_KEYS:
        return [Atom(format_search_date(_as_date(term.args[0])))]
    if key in NUMBER_KEYS:
        return [int(term.args[0])]
    if key in KEYWORD_KEYS or key == "UID":
        return [Atom(str(term.args[0]))]
    return [str(arg) for arg in term.args]


def _has_non_ascii(args: Iterable[Any]) -> bool:
    for arg in args:
        if isinstance(arg, list):
            if _has_non_ascii(arg):
                return True
        elif isinstance(arg, str) and not isinstance(arg, Atom) and not arg.isascii():
            return True
    return False


def compile_query(
    query: Query | Predicate,
    sort: SortSpec | None = None,
    *,
    uid: bool = False,
    charset: str = "UTF-8",
) -> Command:
    """
    Compile a query into a single SEARCH or SORT command.

    Args:
        query: A Query, or a bare predicate.
        sort: Sort spec; overrides the query's own when given.
        uid: Emit UID SEARCH / UID SORT.
        charset: Charset for SORT, and for SEARCH with non-ASCII strings.

    Raises:
        EmptyPredicateError: If the predicate has no leaf terms.

    Example:
        >>> compile_query(SearchBuilder().subject("x").unseen().build()).describe()
        'SEARCH SUBJECT "x" UNSEEN'
    """
    if isinstance(query, Query):
        predicate = query.predicate
        sort = sort or query.sort
    else:
        predicate = query

    criteria = compile_criteria(predicate)
    prefix = "UID " if uid else ""

    if sort:
        program: list[Atom] = []
        for criterion in sort:
            if criterion.reverse:
                program.append(Atom("REVERSE"))
            program.append(Atom(criterion.key.value))
        return Command(f"{prefix}SORT", program, Atom(charset), *criteria)

    if _has_non_ascii(criteria):
        return Command(f"{prefix}SEARCH", Atom("CHARSET"), Atom(charset), *criteria)
    return Command(f"{prefix}SEARCH", *criteria)


# =============================================================================
# Parsing
# =============================================================================

def parse_criteria(data: str | bytes) -> Predicate:
    """
    Parse search criteria (as sent after SEARCH) back into a tree.

    A leading "CHARSET <name>" is skipped.

    Raises:
        ValueError: On unknown keys or missing arguments.
    """
    if isinstance(data, str):
        data = data.encode("utf-8")
    tokens, _ = parse_values(data)
    tokens = list(tokens)
    if tokens and isinstance(tokens[0], str) and tokens[0].upper() == "CHARSET":
        tokens = tokens[2:]
    terms = _parse_sequence(tokens)
    return terms[0] if len(terms) == 1 else AllOf(tuple(terms))


def _parse_sequence(tokens: Sequence[Any]) -> list[Predicate]:
    terms: list[Predicate] = []
    pos = 0
    while pos < len(tokens):
        term, pos = _parse_key(tokens, pos)
        terms.append(term)
    return terms


def _parse_key(tokens: Sequence[Any], pos: int) -> tuple[Predicate, int]:
    if pos >= len(tokens):
        raise ValueError("search criteria end in the middle of a key")
    token = tokens[pos]
    if isinstance(token, tuple):
        return AllOf(tuple(_parse_sequence(token))), pos + 1
    if isinstance(token, int):
        raise ValueError(f"bare sequence sets are not supported: {token}")

    key = _text(token).upper()
    if key == "OR":
        left, pos = _parse_key(tokens, pos + 1)
        right, pos = _parse_key(tokens, pos)
        return AnyOf((left, right)), pos
    if key == "NOT":
        inner, pos = _parse_key(tokens, pos + 1)
        return Not(inner), pos
    if key in FLAG_KEYS:
        return Term(key), pos + 1
    if key == "HEADER":
        return Term(key, (_arg(tokens, pos, 1), _arg(tokens, pos, 2))), pos + 3

    value = _arg(tokens, pos, 1)
    if key in STRING_KEYS or key in KEYWORD_KEYS or key == "UID":
        return Term(key, (value,)), pos + 2
    if key in DATE_KEYS:
        return Term(key, (parse_search_date(value),)), pos + 2
    if key in NUMBER_KEYS:
        return Term(key, (int(value),)), pos + 2
    raise ValueError(f"unknown search key: {key!r}")


def _arg(tokens: Sequence[Any], pos: int, offset: int) -> str:
    try:
        return _text(tokens[pos + offset])
    except IndexError:
        raise ValueError(f"missing argument for {tokens[pos]!r}") from None


def _text(value: Any) -> str:
    if isinstance(value, bytes):
        return value.decode("utf-8")
    if isinstance(value, tuple):
        raise ValueError("expected a value, found a parenthesized list")
    return str(value)
