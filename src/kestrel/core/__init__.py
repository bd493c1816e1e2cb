# =============================================================================
# Kestrel Core Module
# =============================================================================
# Plain data models shared by the protocol engine and its callers. These
# are dataclasses and enums with no I/O, so they can be imported anywhere
# without causing circular dependency issues.
#
#   - Account: A login identity (password lives in the keyring)
#   - FetchItem / FetchProfile: What to pre-fetch for each message
#   - MessageRecord: An immutable snapshot of one fetched message
#   - FolderMode / FolderType / MailboxInfo / MailboxCounts: Mailbox values
# =============================================================================

from kestrel.core.account import Account
from kestrel.core.folder import FolderMode, FolderType, MailboxCounts, MailboxInfo, SelectStatus
from kestrel.core.message import Address, BodyStructure, Envelope, MessageFlags, MessageRecord
from kestrel.core.profile import FetchItem, FetchProfile

__all__ = [
    "Account",
    "Address",
    "BodyStructure",
    "Envelope",
    "FetchItem",
    "FetchProfile",
    "FolderMode",
    "FolderType",
    "MailboxCounts",
    "MailboxInfo",
    "MessageFlags",
    "MessageRecord",
    "SelectStatus",
]
