# =============================================================================
# Credential Providers
# =============================================================================
# Supply host/port/security/username/password for each connection attempt.
#
# IMPORTANT: The engine asks for credentials right before every connect
# (including every IDLE reconnect) and never stores them on long-lived
# objects. Passwords live in the system keyring:
#
#   keyring set mailsync:<account name> <username>
# =============================================================================

import logging
from typing import Protocol

import keyring

from mailsync.core import Account, Credentials
from mailsync.errors import AuthError

logger = logging.getLogger(__name__)


class CredentialProvider(Protocol):
    """Anything that can produce Credentials for an account."""

    def get_credentials(self, account: Account) -> Credentials:
        ...


class KeyringCredentialProvider:
    """Read passwords from the system keyring."""

    def get_credentials(self, account: Account) -> Credentials:
        """
        Build credentials from the keyring password.

        Raises:
            AuthError: If no password is stored for the account.
        """
        password = keyring.get_password(account.keyring_service, account.username)

        if not password:
            raise AuthError(
                f"No password found in keyring for {account.username}. "
                f"Set it with: keyring set {account.keyring_service} {account.username}"
            )

        logger.debug(f"Loaded keyring password for {account.name}")
        return account.credentials(password)


class StaticCredentialProvider:
    """
    Passwords supplied up front, keyed by account name.

    Meant for tests and for embedding the engine in a host application that
    keeps its own secrets.
    """

    def __init__(self, passwords: dict[str, str]) -> None:
        self._passwords = dict(passwords)

    def get_credentials(self, account: Account) -> Credentials:
        password = self._passwords.get(account.name)
        if password is None:
            raise AuthError(f"No password configured for account '{account.name}'")
        return account.credentials(password)
