"""
Tests for the stream registry client and the local stream store behind it.
"""

import json
import sqlite3
from unittest.mock import MagicMock

import httpx
import pytest

from streamvault.database import StreamDatabase
from streamvault.errors import ExternalServiceError
from streamvault.registry import PLACEHOLDER_CHARM_ID, MintParams, RegistryClient
from streamvault.remote import RemoteService
from streamvault.streams import ClaimRecord


@pytest.fixture
def mock_plugin():
    plugin = MagicMock()
    plugin.log = MagicMock()
    return plugin


@pytest.fixture
def database(mock_plugin, tmp_path):
    db = StreamDatabase(str(tmp_path / "test_registry.db"), mock_plugin)
    db.initialize()
    return db


def _params(**overrides):
    params = dict(
        vault_id="vault_1",
        total_amount_sats=100_000,
        rate_sats_per_sec=100,
        start_unix=1000,
        cliff_unix=1100,
        beneficiary="bene",
        revocation_pubkey="02" + "ab" * 32,
    )
    params.update(overrides)
    return MintParams(**params)


def _client(database, handler=None, allow_fallback=True):
    if handler is None:
        service = RemoteService("registry")
    else:
        service = RemoteService("registry", "https://charms.test",
                                transport=httpx.MockTransport(handler))
    return RegistryClient(database, service, MagicMock(), allow_fallback=allow_fallback)


class TestMint:

    def test_fallback_mint_persists_stream(self, database):
        client = _client(database)
        metadata = client.mint(_params())

        assert metadata.stream_id.startswith("stream_")
        assert metadata.charm_id.startswith("charm_")
        assert metadata.streamed_commitment_sats == 0
        assert metadata.status == "active"

        stream = database.get_stream(metadata.stream_id)
        assert stream is not None
        assert stream.charm_id == metadata.charm_id
        assert stream.vault_id == "vault_1"
        assert stream.revocation_pubkey == "02" + "ab" * 32

    def test_remote_mint_attaches_charm_id(self, database):
        seen = {}

        def handler(request):
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"charm_id": "charm-remote-7"})

        client = _client(database, handler)
        metadata = client.mint(_params())

        assert seen["path"] == "/stream-charm/mint"
        assert seen["body"]["stream_id"] == metadata.stream_id
        assert seen["body"]["revocation_pubkey"] == "02" + "ab" * 32
        assert metadata.charm_id == "charm-remote-7"
        assert database.get_stream(metadata.stream_id).charm_id == "charm-remote-7"

    def test_remote_mint_without_charm_id_uses_placeholder(self, database):
        client = _client(database, lambda request: httpx.Response(200, json={}))
        metadata = client.mint(_params())
        assert metadata.charm_id == PLACEHOLDER_CHARM_ID
        assert database.get_stream(metadata.stream_id).charm_id is None


class TestUpdate:

    def test_fallback_update_persists(self, database):
        client = _client(database)
        metadata = client.mint(_params())
        client.update(metadata.stream_id, 20_000)

        stream = database.get_stream(metadata.stream_id)
        assert stream.streamed_commitment_sats == 20_000
        assert stream.status == "active"

    def test_update_with_status(self, database):
        client = _client(database)
        metadata = client.mint(_params())
        client.update(metadata.stream_id, 100_000, "completed")
        assert database.get_stream(metadata.stream_id).status == "completed"

    def test_remote_update_then_local(self, database):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={"charm_id": "c1"})

        client = _client(database, handler)
        metadata = client.mint(_params())
        client.update(metadata.stream_id, 5000)

        assert paths[-1] == f"/stream-charm/{metadata.stream_id}/update"
        assert database.get_stream(metadata.stream_id).streamed_commitment_sats == 5000

    def test_no_fallback_failure_leaves_store_untouched(self, database):
        def handler(request):
            if request.url.path.endswith("/update"):
                return httpx.Response(502, text="bad gateway")
            return httpx.Response(200, json={"charm_id": "c1"})

        client = _client(database, handler, allow_fallback=False)
        metadata = client.mint(_params())

        with pytest.raises(ExternalServiceError):
            client.update(metadata.stream_id, 20_000)

        stream = database.get_stream(metadata.stream_id)
        assert stream.streamed_commitment_sats == 0
        assert stream.status == "active"

    def test_invalid_status_rejected(self, database):
        client = _client(database)
        metadata = client.mint(_params())
        with pytest.raises(ValueError):
            client.update(metadata.stream_id, 10, "paused")

    def test_publish_does_not_touch_store(self, database):
        paths = []

        def handler(request):
            paths.append(request.url.path)
            return httpx.Response(200, json={})

        client = _client(database, handler)
        metadata = client.mint(_params())
        client.publish(metadata.stream_id, 7000)

        assert paths[-1] == f"/stream-charm/{metadata.stream_id}/update"
        assert database.get_stream(metadata.stream_id).streamed_commitment_sats == 0


class TestQuery:

    def test_fallback_query_reads_local(self, database):
        client = _client(database)
        metadata = client.mint(_params())
        result = client.query(metadata.stream_id)
        assert result.stream_id == metadata.stream_id
        assert result.total_amount_sats == 100_000

    def test_fallback_query_unknown_stream(self, database):
        assert _client(database).query("stream_missing") is None

    def test_remote_query_overlays_local(self, database):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={"streamed_commitment_sats": 42,
                                                 "charm_id": "c9"})
            return httpx.Response(200, json={})

        client = _client(database, handler)
        metadata = client.mint(_params())
        result = client.query(metadata.stream_id)
        assert result.streamed_commitment_sats == 42
        assert result.charm_id == "c9"
        assert result.rate_sats_per_sec == 100

    def test_remote_failure_falls_back_to_placeholder(self, database):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(404, text="no such charm")
            return httpx.Response(200, json={})

        client = _client(database, handler)
        metadata = client.mint(_params())
        result = client.query(metadata.stream_id)
        assert result.charm_id == PLACEHOLDER_CHARM_ID

    def test_remote_query_unknown_locally(self, database):
        def handler(request):
            return httpx.Response(200, json={"stream_id": "stream_far", "charm_id": "c2",
                                             "total_amount_sats": "5000"})

        result = _client(database, handler).query("stream_far")
        assert result.charm_id == "c2"
        assert result.total_amount_sats == 5000
        assert result.status == "active"

    def test_malformed_remote_values_fall_back(self, database):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={"total_amount_sats": "lots",
                                                 "charm_id": "c9"})
            return httpx.Response(200, json={})

        client = _client(database, handler)
        metadata = client.mint(_params())
        result = client.query(metadata.stream_id)
        assert result.total_amount_sats == 100_000
        assert result.charm_id == PLACEHOLDER_CHARM_ID

    def test_malformed_remote_types_fall_back(self, database):
        def handler(request):
            return httpx.Response(200, json={"cliff_unix": [1100], "status": 7})

        assert _client(database, handler).query("stream_missing") is None

    def test_malformed_remote_without_fallback_is_service_error(self, database):
        def handler(request):
            if request.method == "GET":
                return httpx.Response(200, json={"start_unix": 1.5})
            return httpx.Response(200, json={})

        client = _client(database, handler, allow_fallback=False)
        metadata = client.mint(_params())
        with pytest.raises(ExternalServiceError) as exc:
            client.query(metadata.stream_id)
        assert exc.value.service == "registry"
        assert "malformed registry response" in exc.value.upstream_message


class TestStreamStore:

    def test_claims_listed_newest_first(self, database):
        client = _client(database)
        metadata = client.mint(_params())
        for i, amount in enumerate((100, 200, 300)):
            database.append_claim(ClaimRecord(
                id=f"claim_{i}", stream_id=metadata.stream_id, amount_sats=amount,
                proof="{}", created_at="2026-01-01T00:00:00+00:00",
            ))
        claims = database.list_claims(metadata.stream_id)
        assert [c.amount_sats for c in claims] == [300, 200, 100]
        assert all(c.verified for c in claims)

    def test_ping(self, database):
        assert database.ping() is True

    def test_same_stream_same_lock(self, database):
        assert database.stream_lock("a") is database.stream_lock("a")
        assert database.stream_lock("a") is not database.stream_lock("b")

    def test_commit_claim_writes_both(self, database):
        metadata = _client(database).mint(_params())
        claim = ClaimRecord(id="claim_1", stream_id=metadata.stream_id,
                            amount_sats=5000, proof="{}")

        assert database.commit_claim(metadata.stream_id, 5000, "active", claim) is True

        assert database.get_stream(metadata.stream_id).streamed_commitment_sats == 5000
        assert [c.id for c in database.list_claims(metadata.stream_id)] == ["claim_1"]

    def test_commit_claim_rolls_back_commitment_when_insert_fails(self, database):
        metadata = _client(database).mint(_params())
        database.append_claim(ClaimRecord(id="claim_1", stream_id=metadata.stream_id,
                                          amount_sats=5000, proof="{}"))
        database.update_commitment(metadata.stream_id, 5000)

        # Duplicate claim id violates the primary key after the UPDATE ran
        duplicate = ClaimRecord(id="claim_1", stream_id=metadata.stream_id,
                                amount_sats=1000, proof="{}")
        with pytest.raises(sqlite3.IntegrityError):
            database.commit_claim(metadata.stream_id, 6000, "active", duplicate)

        assert database.get_stream(metadata.stream_id).streamed_commitment_sats == 5000
        assert len(database.list_claims(metadata.stream_id)) == 1

    def test_commit_claim_unknown_stream(self, database):
        claim = ClaimRecord(id="claim_x", stream_id="stream_missing",
                            amount_sats=1, proof="{}")
        assert database.commit_claim("stream_missing", 1, "active", claim) is False
        assert database.list_claims("stream_missing") == []

    def test_commit_claim_invalid_status(self, database):
        metadata = _client(database).mint(_params())
        claim = ClaimRecord(id="claim_1", stream_id=metadata.stream_id,
                            amount_sats=1, proof="{}")
        with pytest.raises(ValueError):
            database.commit_claim(metadata.stream_id, 1, "paused", claim)
        assert database.list_claims(metadata.stream_id) == []
