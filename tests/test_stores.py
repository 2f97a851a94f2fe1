"""Tests for pending-state and credential stores."""

import asyncio
import json
import os
import stat
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from sharepoint_oauth.models import AuthSession, Credential
from sharepoint_oauth.stores import FileCredentialStore, MemoryCredentialStore, MemoryStateStore

SITE_URL = 'https://contoso.sharepoint.com/sites/Transport'


def _make_session(state: str = 'state-1') -> AuthSession:
    return AuthSession(
        state=state,
        nonce='nonce-1',
        code_verifier='verifier',
        code_challenge='challenge',
        tenant_id='t1',
        client_id='c1',
        redirect_uri='http://localhost:1420',
        scope='scope',
    )


class TestMemoryStateStore:
    @pytest.mark.asyncio
    async def test_save_get_delete(self) -> None:
        store = MemoryStateStore()
        session = _make_session()

        await store.save_state(session)
        assert await store.get_state('state-1') is session

        await store.delete_state('state-1')
        assert await store.get_state('state-1') is None

    @pytest.mark.asyncio
    async def test_expired_state_is_dropped(self) -> None:
        store = MemoryStateStore(state_ttl_seconds=60)
        session = _make_session()
        session.created_at = datetime.now(timezone.utc) - timedelta(seconds=61)

        await store.save_state(session)

        assert await store.get_state('state-1') is None

    @pytest.mark.asyncio
    async def test_delete_unknown_state_is_noop(self) -> None:
        await MemoryStateStore().delete_state('missing')


class TestSessionClaim:
    def test_only_first_claim_succeeds(self) -> None:
        from sharepoint_oauth.models import Channel

        session = _make_session()

        assert session.claim(Channel.POLLING) is True
        assert session.claim(Channel.DIRECT) is False
        assert session.claimed_by is Channel.POLLING
        assert session.is_claimed


class TestMemoryCredentialStore:
    @pytest.mark.asyncio
    async def test_save_overwrites_wholesale(self) -> None:
        store = MemoryCredentialStore()

        await store.save_credential(Credential(service_url=SITE_URL, access_token='one', refresh_token='r1'))
        await store.save_credential(Credential(service_url=SITE_URL, access_token='two'))

        credential = await store.load_credential(SITE_URL)
        assert credential.access_token == 'two'
        assert credential.refresh_token is None

    @pytest.mark.asyncio
    async def test_is_authenticated(self) -> None:
        store = MemoryCredentialStore()
        assert not await store.is_authenticated(SITE_URL)

        await store.save_credential(Credential(service_url=SITE_URL, access_token='token'))
        assert await store.is_authenticated(SITE_URL)
        assert not await store.is_authenticated('https://other.sharepoint.com')

    @pytest.mark.asyncio
    async def test_empty_or_expired_token_is_not_authenticated(self) -> None:
        store = MemoryCredentialStore()

        await store.save_credential(Credential(service_url=SITE_URL, access_token=''))
        assert not await store.is_authenticated(SITE_URL)

        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        await store.save_credential(Credential(service_url=SITE_URL, access_token='token', expires_at=past))
        assert not await store.is_authenticated(SITE_URL)

    @pytest.mark.asyncio
    async def test_delete(self) -> None:
        store = MemoryCredentialStore()
        await store.save_credential(Credential(service_url=SITE_URL, access_token='token'))

        assert await store.delete_credential(SITE_URL) is True
        assert await store.delete_credential(SITE_URL) is False
        assert await store.load_credential(SITE_URL) is None


class TestFileCredentialStore:
    @pytest.mark.asyncio
    async def test_round_trip_through_file(self, tmp_path: Path) -> None:
        path = tmp_path / 'nested' / 'credentials.json'
        expires_at = datetime(2030, 1, 1, tzinfo=timezone.utc)

        await FileCredentialStore(path).save_credential(
            Credential(service_url=SITE_URL, access_token='token', refresh_token='refresh', expires_at=expires_at)
        )
        credential = await FileCredentialStore(path).load_credential(SITE_URL)

        assert credential.access_token == 'token'
        assert credential.refresh_token == 'refresh'
        assert credential.expires_at == expires_at
        assert json.loads(path.read_text())[SITE_URL]['expires_at'] == '2030-01-01T00:00:00+00:00'

    @pytest.mark.asyncio
    async def test_writes_from_another_instance_are_visible(self, tmp_path: Path) -> None:
        """Two windows with their own store instance share the file."""
        path = tmp_path / 'credentials.json'
        main_window, auth_window = FileCredentialStore(path), FileCredentialStore(path)

        assert not await main_window.is_authenticated(SITE_URL)
        await auth_window.save_credential(Credential(service_url=SITE_URL, access_token='token'))

        assert await main_window.is_authenticated(SITE_URL)

    @pytest.mark.asyncio
    @pytest.mark.skipif(sys.platform == 'win32', reason='POSIX permissions')
    async def test_file_is_private(self, tmp_path: Path) -> None:
        path = tmp_path / 'credentials.json'

        await FileCredentialStore(path).save_credential(Credential(service_url=SITE_URL, access_token='token'))

        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600
        assert [p.name for p in tmp_path.iterdir()] == ['credentials.json']

    @pytest.mark.asyncio
    async def test_corrupt_file_reads_as_empty(self, tmp_path: Path) -> None:
        path = tmp_path / 'credentials.json'
        path.write_text('{not json')

        store = FileCredentialStore(path)

        assert await store.load_credential(SITE_URL) is None
        assert not await store.is_authenticated(SITE_URL)

    @pytest.mark.asyncio
    async def test_corrupt_entry_is_ignored(self, tmp_path: Path) -> None:
        path = tmp_path / 'credentials.json'
        path.write_text(json.dumps({SITE_URL: {'service_url': SITE_URL, 'expires_at': 'yesterday'}}))

        assert await FileCredentialStore(path).load_credential(SITE_URL) is None

    @pytest.mark.asyncio
    async def test_delete_keeps_other_sites(self, tmp_path: Path) -> None:
        path = tmp_path / 'credentials.json'
        store = FileCredentialStore(path)
        other = 'https://contoso.sharepoint.com/sites/Other'
        await store.save_credential(Credential(service_url=SITE_URL, access_token='a'))
        await store.save_credential(Credential(service_url=other, access_token='b'))

        assert await store.delete_credential(SITE_URL)

        assert await store.load_credential(SITE_URL) is None
        assert (await store.load_credential(other)).access_token == 'b'

    @pytest.mark.asyncio
    async def test_concurrent_saves_keep_every_site(self, tmp_path: Path) -> None:
        """Saves for different sites through separate instances never drop each other."""
        path = tmp_path / 'credentials.json'
        stores = [FileCredentialStore(path), FileCredentialStore(path)]
        sites = [f'https://contoso.sharepoint.com/sites/Site{i}' for i in range(20)]

        await asyncio.gather(
            *(
                stores[i % 2].save_credential(Credential(service_url=site, access_token=f'token-{i}'))
                for i, site in enumerate(sites)
            )
        )

        assert sorted(json.loads(path.read_text())) == sorted(sites)
