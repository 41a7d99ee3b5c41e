# =============================================================================
# Account Model
# =============================================================================
# Represents one mail account the engine keeps in sync, plus the short-lived
# Credentials object handed to a connection attempt.
#
# IMPORTANT: Passwords are NOT stored on Account. A CredentialProvider builds
# a Credentials value right before each connection attempt and the protocol
# client drops it once login has completed.
# =============================================================================

from dataclasses import dataclass


@dataclass
class Account:
    """
    An IMAP account configuration.

    Attributes:
        name: Unique identifier for this account (e.g., "personal"). This is
              the account id used throughout the engine and the cache.
        email: The email address associated with this account.
        username: Login name. Defaults to the email address.
        display_name: Friendly name, defaults to the email address.

        imap_host: Hostname of the IMAP server (e.g., "imap.gmail.com").
        imap_port: Port for IMAP connection. Standard ports:
                   - 993 for IMAP over SSL/TLS (recommended)
                   - 143 for IMAP with STARTTLS
        imap_security: "ssl", "starttls", or "plain".
        mailbox: Mailbox that is synced and watched.

        enabled: Disabled accounts are never connected.

    Example:
        >>> account = Account(
        ...     name="personal",
        ...     email="user@example.com",
        ...     imap_host="imap.example.com",
        ... )
        >>> account.keyring_service
        'mailsync:personal'
    """

    # Account identification
    name: str                           # Unique account identifier
    email: str                          # Email address
    username: str = ""                  # IMAP login (defaults to email)
    display_name: str = ""

    # IMAP configuration
    imap_host: str = ""
    imap_port: int = 993                # Default to SSL port
    imap_security: str = "ssl"          # "ssl", "starttls" or "plain"
    mailbox: str = "INBOX"

    enabled: bool = True

    def __post_init__(self) -> None:
        if not self.username:
            self.username = self.email
        if not self.display_name:
            self.display_name = self.email

    @property
    def account_id(self) -> str:
        """The id used to key sessions and cache rows."""
        return self.name

    @property
    def keyring_service(self) -> str:
        """
        Returns the service name used for keyring password storage.

        Passwords can be managed with the keyring CLI:
            keyring set mailsync:personal user@example.com
        """
        return f"mailsync:{self.name}"

    def credentials(self, password: str) -> "Credentials":
        """Build connection credentials for this account."""
        return Credentials(
            host=self.imap_host,
            port=self.imap_port,
            security=self.imap_security,
            username=self.username,
            password=password,
        )

    def __str__(self) -> str:
        return f"{self.name} <{self.email}>"


@dataclass(frozen=True)
class Credentials:
    """
    Everything needed for one IMAP connection attempt.

    Never cached by the engine beyond the lifetime of that attempt.
    """
    host: str
    port: int
    security: str                       # "ssl", "starttls" or "plain"
    username: str
    password: str

    def __repr__(self) -> str:
        # Keep the password out of logs and tracebacks
        return (
            f"Credentials(host={self.host!r}, port={self.port}, "
            f"security={self.security!r}, username={self.username!r})"
        )
