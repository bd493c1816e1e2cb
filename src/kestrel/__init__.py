# =============================================================================
# Kestrel: An asyncio IMAP4rev1 Client Engine
# =============================================================================
#
# Kestrel speaks IMAP over a transport you hand it and gives you typed,
# immutable message records back.
#
# Features:
#   - Single-flight command pipeline, safe with many concurrent tasks
#   - Compound search predicates and server-side SORT (RFC 5256)
#   - Selective pre-fetching of message attributes
#   - Expunge-safe message numbering (stale sequence numbers are rejected)
#   - LITERAL+, UNSELECT and modified UTF-7 mailbox names
#   - XDG Base Directory compliant configuration, passwords in the keyring
#
# =============================================================================

__version__ = "0.1.0"
__app_name__ = "kestrel"

from kestrel.config import Config, ConfigError
from kestrel.core import (
    Account,
    FetchItem,
    FetchProfile,
    FolderMode,
    FolderType,
    MailboxCounts,
    MessageFlags,
    MessageRecord,
)
from kestrel.errors import ImapError
from kestrel.imap import (
    Connection,
    FlagAction,
    FolderSession,
    MailboxEvent,
    SearchBuilder,
    SortBuilder,
    SortKey,
    StreamTransport,
)

__all__ = [
    "__version__",
    "__app_name__",
    # Configuration
    "Config",
    "ConfigError",
    # Models
    "Account",
    "FetchItem",
    "FetchProfile",
    "FolderMode",
    "FolderType",
    "MailboxCounts",
    "MessageFlags",
    "MessageRecord",
    # Engine
    "Connection",
    "FlagAction",
    "FolderSession",
    "ImapError",
    "MailboxEvent",
    "SearchBuilder",
    "SortBuilder",
    "SortKey",
    "StreamTransport",
]
