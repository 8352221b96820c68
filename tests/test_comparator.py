"""Tests for the comparator delegation adapter."""

import pytest_asyncio

from hubstore.comparator.service import ComparatorService
from hubstore.zcap.capability import decompress_capability
from hubstore.zcap.models import QUERY_TARGET_TYPE, DocAttrPathCaveat, ExpiryCaveat


@pytest_asyncio.fixture
async def tokens(hub_service, upstream):
    """Storage and key service capabilities the data owner granted the hub."""
    edv, kms = await upstream.authorize(hub_service.identity.did)
    return {"edv": edv, "kms": kms}


def _scope(doc_id, path, tokens, caveats=None):
    return {
        "vaultID": "vault-1",
        "docID": doc_id,
        "docAttrPath": path,
        "authTokens": tokens,
        "caveats": caveats if caveats is not None else [{"type": "expiry", "duration": 600}],
    }


async def _authorize(client, doc_id, path, tokens, caveats=None, party="did:example:rp"):
    resp = await client.post(
        "/authorizations",
        json={"requestingParty": party, "scope": _scope(doc_id, path, tokens, caveats)},
    )
    assert resp.status_code == 200
    return resp.json()["authToken"]


class TestConfig:
    async def test_config(self, comparator_client, comparator_service, db):
        resp = await comparator_client.get("/config")
        assert resp.status_code == 200
        data = resp.json()
        assert data["did"].startswith("did:key:")
        profile = await db.get_profile(data["profileID"])
        assert profile.controller == data["did"]

    async def test_restart_reuses_profile(self, comparator_service, db):
        again = ComparatorService(
            comparator_service.settings, comparator_service.db, hub=comparator_service.hub
        )
        await again.start()
        assert again.get_config() == comparator_service.get_config()
        assert await db.count("profile") == 1


class TestAuthorizations:
    async def test_delegated_token(self, comparator_client, comparator_service, upstream, tokens):
        upstream.store("d1", {"name": "Hello World"})
        token = await _authorize(comparator_client, "d1", "$.name", tokens)
        capability = decompress_capability(token)
        config = comparator_service.get_config()

        assert capability.invoker == "did:example:rp"
        assert capability.allowed_action == ("reference",)
        assert capability.invocation_target.type == QUERY_TARGET_TYPE
        assert f"/profiles/{config.profile_id}/queries/" in capability.invocation_target.id
        assert capability.caveats == (ExpiryCaveat(duration=600), DocAttrPathCaveat(path="$.name"))
        assert capability.proof.verification_method.startswith(config.did)

    async def test_invalid_request(self, comparator_client, tokens):
        resp = await comparator_client.post("/authorizations", json={"scope": {}})
        assert resp.status_code == 400

    async def test_upstream_tokens_are_checked_by_hub(self, comparator_client, tokens):
        bad = {"edv": "not-a-capability", "kms": tokens["kms"]}
        resp = await comparator_client.post(
            "/authorizations",
            json={"requestingParty": "did:example:rp", "scope": _scope("d1", "$.name", bad)},
        )
        assert resp.status_code == 400


class TestCompare:
    async def test_authorized_query_against_doc_query(self, comparator_client, upstream, tokens):
        upstream.store("d1", {"name": "Hello World"})
        upstream.store("d2", {"name": "Hello World"})
        token = await _authorize(comparator_client, "d1", "$.name", tokens)

        resp = await comparator_client.post(
            "/compare",
            json={
                "op": {
                    "type": "EqOp",
                    "args": [
                        {"type": "AuthorizedQuery", "authToken": token},
                        {
                            "type": "DocQuery",
                            "vaultID": "vault-1",
                            "docID": "d2",
                            "docAttrPath": "$.name",
                            "authTokens": tokens,
                        },
                    ],
                }
            },
        )
        assert resp.status_code == 200
        assert resp.json() == {"result": True}

    async def test_two_authorized_queries_differ(self, comparator_client, upstream, tokens):
        upstream.store("d1", {"name": "Hello World"})
        upstream.store("d2", {"name": "Goodbye"})
        first = await _authorize(comparator_client, "d1", "$.name", tokens)
        second = await _authorize(comparator_client, "d2", "$.name", tokens)

        resp = await comparator_client.post(
            "/compare",
            json={
                "op": {
                    "type": "EqOp",
                    "args": [
                        {"type": "AuthorizedQuery", "authToken": first},
                        {"type": "AuthorizedQuery", "authToken": second},
                    ],
                }
            },
        )
        assert resp.json() == {"result": False}

    async def test_expired_token(self, comparator_client, upstream, tokens):
        upstream.store("d1", {"name": "Hello World"})
        token = await _authorize(
            comparator_client, "d1", "$.name", tokens, caveats=[{"type": "expiry", "duration": 0}]
        )
        query = {"type": "AuthorizedQuery", "authToken": token}
        resp = await comparator_client.post(
            "/compare", json={"op": {"type": "EqOp", "args": [query, query]}}
        )
        assert resp.status_code == 403
        assert resp.json()["message"] == "not authorized"

    async def test_unsupported_operator(self, comparator_client):
        resp = await comparator_client.post("/compare", json={"op": {"type": "GtOp"}})
        assert resp.status_code == 501


class TestExtract:
    async def test_extract(self, comparator_client, upstream, tokens):
        upstream.store("d1", {"name": "Hello World", "age": 42})
        token = await _authorize(comparator_client, "d1", "$.age", tokens)

        resp = await comparator_client.post(
            "/extract",
            json=[
                {"type": "AuthorizedQuery", "authToken": token},
                {
                    "type": "DocQuery",
                    "vaultID": "vault-1",
                    "docID": "d1",
                    "docAttrPath": "$.name",
                    "authTokens": tokens,
                },
            ],
        )
        assert resp.status_code == 200
        assert resp.json() == [{"document": 42}, {"document": "Hello World"}]

    async def test_unknown_query_type(self, comparator_client):
        resp = await comparator_client.post("/extract", json=[{"type": "RefQuery", "ref": "x"}])
        assert resp.status_code == 501
