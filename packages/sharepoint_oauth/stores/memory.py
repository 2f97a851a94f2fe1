"""In-memory OAuth stores for development."""

import typing as t
from datetime import datetime, timedelta, timezone

from sharepoint_oauth.models import AuthSession, Credential
from sharepoint_oauth.stores.base import CredentialStore, StateStore


class MemoryStateStore(StateStore):
    """In-memory pending session store.

    Warning:
        Pending sessions hold the PKCE verifier and never leave the process
        that created them. Use one store per coordinator.
    """

    def __init__(self, state_ttl_seconds: int = 600) -> None:
        """Initialize memory state store.

        Args:
            state_ttl_seconds: Time-to-live for pending sessions in seconds.
        """
        self._states: t.Dict[str, AuthSession] = {}
        self._state_ttl = timedelta(seconds=state_ttl_seconds)

    async def save_state(self, session: AuthSession) -> None:
        """Save a pending session."""
        self._cleanup_expired_states()
        self._states[session.state] = session

    async def get_state(self, state_key: str) -> t.Optional[AuthSession]:
        """Retrieve a pending session by state."""
        self._cleanup_expired_states()
        return self._states.get(state_key)

    async def delete_state(self, state_key: str) -> None:
        """Delete a pending session by state."""
        self._states.pop(state_key, None)

    def _cleanup_expired_states(self) -> None:
        """Remove expired pending sessions."""
        now = datetime.now(timezone.utc)
        expired = [key for key, session in self._states.items() if (now - session.created_at) > self._state_ttl]
        for key in expired:
            del self._states[key]


class MemoryCredentialStore(CredentialStore):
    """In-memory credential store.

    Warning:
        Only windows living in the same process see each other's writes.
        Use FileCredentialStore when windows run in separate processes.
    """

    def __init__(self) -> None:
        self._credentials: t.Dict[str, Credential] = {}

    async def save_credential(self, credential: Credential) -> None:
        self._credentials[credential.service_url] = credential

    async def load_credential(self, service_url: str) -> t.Optional[Credential]:
        return self._credentials.get(service_url)

    async def delete_credential(self, service_url: str) -> bool:
        return self._credentials.pop(service_url, None) is not None
