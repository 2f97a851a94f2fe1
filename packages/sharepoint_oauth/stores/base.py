"""Abstract base classes for OAuth stores."""

import typing as t
from abc import ABC, abstractmethod

if t.TYPE_CHECKING:
    from sharepoint_oauth.models import AuthSession, Credential


class StateStore(ABC):
    """Abstract store for pending sessions during the authorization flow.

    A pending session is short-lived (typically 10 minutes) and holds the
    PKCE verifier, state and nonce needed to complete the OAuth callback.
    """

    @abstractmethod
    async def save_state(self, session: 'AuthSession') -> None:
        """Save a pending session.

        Args:
            session: Pending session, keyed by its ``state``.
        """

    @abstractmethod
    async def get_state(self, state_key: str) -> t.Optional['AuthSession']:
        """Retrieve a pending session by state.

        Args:
            state_key: State identifier.

        Returns:
            Pending session if found, None otherwise.
        """

    @abstractmethod
    async def delete_state(self, state_key: str) -> None:
        """Delete a pending session by state.

        Args:
            state_key: State identifier.
        """


class CredentialStore(ABC):
    """Abstract process-wide store of access tokens keyed by service URL.

    Writes replace the whole entry and reads return a snapshot, so readers
    in other windows never observe a partially written credential.
    """

    @abstractmethod
    async def save_credential(self, credential: 'Credential') -> None:
        """Save a credential, overwriting any entry for its service URL.

        Args:
            credential: Credential to store.
        """

    @abstractmethod
    async def load_credential(self, service_url: str) -> t.Optional['Credential']:
        """Load the credential stored for a service URL.

        Args:
            service_url: Service the credential was issued for.

        Returns:
            Stored credential if found, None otherwise.
        """

    @abstractmethod
    async def delete_credential(self, service_url: str) -> bool:
        """Delete the credential stored for a service URL.

        Returns:
            True if an entry was removed.
        """

    async def is_authenticated(self, service_url: str) -> bool:
        """Check whether a usable credential is stored for a service URL.

        A credential is usable when its access token is non-empty and, if
        the issuer reported an expiry, that expiry has not passed.
        """
        credential = await self.load_credential(service_url)
        return credential is not None and credential.is_usable
