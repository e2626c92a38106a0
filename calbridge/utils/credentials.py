"""CalDAV account passwords in the system keyring."""

import logging
from urllib.parse import urlparse

import keyring
from keyring.errors import PasswordDeleteError

logger = logging.getLogger(__name__)

SERVICE_NAME = "calbridge"


def account_key(server_url: str | None, username: str) -> str:
    """
    Keyring entry name for one CalDAV account.

    Entries are scoped by server host, so the same login on two servers keeps
    two passwords. Without a server URL the bare username is used.
    """
    host = urlparse(server_url).hostname if server_url else None
    return f"{host}:{username}" if host else username


class CredentialStore:
    """Stores and looks up CalDAV account passwords under ``SERVICE_NAME``."""

    def __init__(self, service_name: str = SERVICE_NAME):
        self.service_name = service_name

    def set_password(self, server_url: str | None, username: str, password: str) -> None:
        """
        Raises:
            keyring.errors.PasswordSetError: The backend refused the write
        """
        key = account_key(server_url, username)
        keyring.set_password(self.service_name, key, password)
        logger.info(f"Stored CalDAV password for {key}")

    def get_password(self, server_url: str | None, username: str) -> str | None:
        key = account_key(server_url, username)
        password = keyring.get_password(self.service_name, key)
        if password is None:
            logger.debug(f"No CalDAV password in keyring for {key}")
        return password

    def delete_password(self, server_url: str | None, username: str) -> bool:
        """Returns False when there was nothing stored for the account."""
        key = account_key(server_url, username)
        try:
            keyring.delete_password(self.service_name, key)
        except PasswordDeleteError:
            logger.warning(f"No CalDAV password to delete for {key}")
            return False
        logger.info(f"Deleted CalDAV password for {key}")
        return True
