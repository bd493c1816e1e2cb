# =============================================================================
# IMAP Module
# =============================================================================
# The protocol engine, leaves first:
#   - codec:      commands to bytes, bytes to responses
#   - transport:  the byte stream (asyncio streams adapter)
#   - state:      NotAuthenticated / Authenticated / Selected / Logout
#   - dispatcher: tags, FIFO single-flight execution, response routing
#   - search:     predicate trees and sort specs compiled to SEARCH/SORT
#   - fetch:      pre-fetch profiles planned into FETCH, responses into records
#   - folder:     operations on one selected mailbox
#   - connection: greeting, login, mailbox operations
# =============================================================================

from kestrel.imap.connection import Connection, MailboxEvent
from kestrel.imap.dispatcher import CommandDispatcher, CommandResult
from kestrel.imap.fetch import FetchBatch, FetchPlanner
from kestrel.imap.folder import FlagAction, FolderSession
from kestrel.imap.search import (
    AllOf,
    AnyOf,
    Not,
    Query,
    SearchBuilder,
    SortBuilder,
    SortCriterion,
    SortKey,
    Term,
    compile_query,
)
from kestrel.imap.state import ConnectionState, Phase, StateMachine
from kestrel.imap.transport import StreamTransport, Transport

__all__ = [
    # Connection
    "Connection",
    "MailboxEvent",
    "StreamTransport",
    "Transport",
    # Engine internals
    "CommandDispatcher",
    "CommandResult",
    "ConnectionState",
    "Phase",
    "StateMachine",
    # Folder sessions
    "FlagAction",
    "FolderSession",
    "FetchBatch",
    "FetchPlanner",
    # Search
    "AllOf",
    "AnyOf",
    "Not",
    "Query",
    "SearchBuilder",
    "SortBuilder",
    "SortCriterion",
    "SortKey",
    "Term",
    "compile_query",
]
