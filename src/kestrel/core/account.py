# =============================================================================
# Account Model
# =============================================================================
# The login identity for one IMAP account.
#
# IMPORTANT: Passwords are NOT stored here. They are retrieved from the system
# keyring at runtime using the 'keyring' library (see
# Connection.login_account). This keeps credentials out of config files.
# =============================================================================

from dataclasses import dataclass


@dataclass
class Account:
    """
    An IMAP login identity.

    Attributes:
        name: A unique identifier for this account (e.g., "personal", "work").
              Used as the key in config files and for keyring lookups.
        username: The IMAP login name (usually the email address).
        service: Keyring service name override. Defaults to "kestrel:<name>".

    Example:
        >>> account = Account(name="personal", username="user@example.com")
        >>> account.keyring_service
        'kestrel:personal'
    """

    name: str                           # Unique account identifier
    username: str                       # IMAP login name
    service: str = ""                   # Keyring service override

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

        We use a consistent naming scheme so passwords can be easily
        managed via the keyring CLI if needed:
            keyring set kestrel:personal user@example.com
        """
        return self.service or f"kestrel:{self.name}"

    def __str__(self) -> str:
        return f"{self.name} <{self.username}>"
