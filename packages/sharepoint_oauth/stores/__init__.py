"""OAuth state and credential stores."""

from sharepoint_oauth.stores.base import CredentialStore, StateStore
from sharepoint_oauth.stores.file import FileCredentialStore
from sharepoint_oauth.stores.memory import MemoryCredentialStore, MemoryStateStore

__all__ = [
    'CredentialStore',
    'FileCredentialStore',
    'MemoryCredentialStore',
    'MemoryStateStore',
    'StateStore',
]
