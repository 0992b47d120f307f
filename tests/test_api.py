"""
zk-census API tests
End-to-end flows over HTTP
"""

import pytest
from httpx import ASGITransport, AsyncClient

from zkcensus.main import app
from zkcensus.services.auth_service import get_auth_service
from zkcensus.services.census_service import get_census_service


# ============================================================================
# Fixtures
# ============================================================================

@pytest.fixture
async def client(db_session, census_service):
    """Provide async HTTP client bound to the test census service"""
    app.dependency_overrides[get_census_service] = lambda: census_service
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()


@pytest.fixture
def creator_headers(creator):
    token = get_auth_service().create_access_token(creator)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def intruder_headers():
    token = get_auth_service().create_access_token("intruder")
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
async def open_census(client, creator_headers, verification_key):
    response = await client.post(
        "/api/v1/censuses",
        json={
            "census_id": "c1",
            "name": "API census",
            "description": "Census over HTTP",
            "enable_location": True,
            "min_age": 0,
            "verification_key": verification_key,
        },
        headers=creator_headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


def _payload(submission):
    return {
        "nullifier": submission["nullifier"].hex(),
        "age_bracket": submission["age_bracket"],
        "continent": submission["continent"],
        "proof": "0x" + submission["proof"].hex(),
        "timestamp": submission["timestamp"],
    }


# ============================================================================
# Census lifecycle
# ============================================================================

@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["database"] == "connected"
    assert data["crypto_library"] == "py_ecc.optimized_bn128"


@pytest.mark.asyncio
async def test_create_census(open_census, creator):
    assert open_census["census_id"] == "c1"
    assert open_census["creator"] == creator
    assert open_census["active"] is True
    assert open_census["total_members"] == 0
    assert open_census["merkle_root"] == "00" * 32


@pytest.mark.asyncio
async def test_create_requires_credentials(client):
    response = await client.post("/api/v1/censuses", json={"census_id": "c1", "name": "x"})
    assert response.status_code == 401
    assert response.json()["success"] is False


@pytest.mark.asyncio
async def test_create_rejects_bad_token(client):
    response = await client.post(
        "/api/v1/censuses",
        json={"census_id": "c1", "name": "x"},
        headers={"Authorization": "Bearer not-a-token"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_create_validation_codes(client, creator_headers, open_census):
    response = await client.post(
        "/api/v1/censuses",
        json={"census_id": "x" * 33, "name": "x"},
        headers=creator_headers,
    )
    assert response.status_code == 400
    assert response.json()["code"] == "CENSUS_ID_TOO_LONG"

    response = await client.post(
        "/api/v1/censuses",
        json={"census_id": "c1", "name": "again"},
        headers=creator_headers,
    )
    assert response.status_code == 409
    assert response.json()["code"] == "CENSUS_ALREADY_EXISTS"


@pytest.mark.asyncio
async def test_get_and_list(client, open_census):
    response = await client.get("/api/v1/censuses/c1")
    assert response.status_code == 200
    assert response.json()["name"] == "API census"

    response = await client.get("/api/v1/censuses", params={"active_only": True})
    assert response.json()["count"] == 1

    response = await client.get("/api/v1/censuses/missing")
    assert response.status_code == 404
    assert response.json()["code"] == "CENSUS_NOT_FOUND"


# ============================================================================
# Registration
# ============================================================================

@pytest.mark.asyncio
async def test_submit_proof_flow(client, open_census, make_submission):
    """Register, replay, then read the aggregates back"""
    submission = make_submission("c1", b"n1-secret", age_bracket=1, continent=2)

    response = await client.post("/api/v1/censuses/c1/proofs", json=_payload(submission))
    assert response.status_code == 201, response.text
    data = response.json()
    assert data["success"] is True
    assert data["index"] == 0
    assert data["stats"]["total_members"] == 1
    assert data["stats"]["age_distribution"] == [0, 1, 0, 0, 0, 0, 0]
    assert data["stats"]["continent_distribution"] == [0, 0, 1, 0, 0, 0, 0]

    response = await client.post("/api/v1/censuses/c1/proofs", json=_payload(submission))
    assert response.status_code == 409
    assert response.json() == {
        "success": False,
        "error": "Duplicate nullifier - already registered",
        "code": "DUPLICATE_NULLIFIER",
    }

    response = await client.get("/api/v1/censuses/c1/stats")
    assert response.status_code == 200
    assert response.json()["total_members"] == 1

    response = await client.get("/api/v1/stats")
    assert response.json() == {
        "total_censuses": 1,
        "active_censuses": 1,
        "total_registrations": 1,
    }


@pytest.mark.asyncio
async def test_submit_malformed_hex(client, open_census, make_submission):
    payload = _payload(make_submission("c1", b"x"))

    response = await client.post("/api/v1/censuses/c1/proofs", json=dict(payload, nullifier="zz"))
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_NULLIFIER"

    response = await client.post("/api/v1/censuses/c1/proofs", json=dict(payload, proof="abc"))
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_PROOF"


@pytest.mark.asyncio
async def test_submit_short_proof(client, open_census, make_submission):
    payload = _payload(make_submission("c1", b"x"))
    response = await client.post(
        "/api/v1/censuses/c1/proofs", json=dict(payload, proof="01" * 128)
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_PROOF"


@pytest.mark.asyncio
async def test_submit_stale_timestamp(client, open_census, make_submission, now):
    payload = _payload(make_submission("c1", b"x", timestamp=now - 301))
    response = await client.post("/api/v1/censuses/c1/proofs", json=payload)
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_TIMESTAMP"


@pytest.mark.asyncio
async def test_submit_boolean_bracket(client, open_census, make_submission):
    payload = _payload(make_submission("c1", b"x"))
    response = await client.post("/api/v1/censuses/c1/proofs", json=dict(payload, age_bracket=True))
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_verify_without_registering(client, open_census, make_submission):
    """The verify route answers for a proof but leaves the nullifier free"""
    submission = make_submission("c1", b"dry-run", age_bracket=1, continent=2)
    nullifier_url = f"/api/v1/censuses/c1/nullifiers/{submission['nullifier'].hex()}"

    response = await client.post("/api/v1/censuses/c1/proofs/verify", json=_payload(submission))
    assert response.status_code == 200, response.text
    assert response.json() == {"success": True, "valid": True}

    forged = dict(_payload(submission), age_bracket=4)
    response = await client.post("/api/v1/censuses/c1/proofs/verify", json=forged)
    assert response.status_code == 200
    assert response.json()["valid"] is False

    response = await client.get(nullifier_url)
    assert response.status_code == 200
    assert response.json()["exists"] is False
    response = await client.get("/api/v1/censuses/c1/stats")
    assert response.json()["total_members"] == 0

    response = await client.post("/api/v1/censuses/c1/proofs", json=_payload(submission))
    assert response.status_code == 201

    response = await client.get(nullifier_url)
    assert response.json() == {
        "census_id": "c1",
        "nullifier": submission["nullifier"].hex(),
        "exists": True,
    }


@pytest.mark.asyncio
async def test_verify_structural_errors(client, open_census, make_submission, now):
    payload = _payload(make_submission("c1", b"x", timestamp=now - 301))
    response = await client.post("/api/v1/censuses/c1/proofs/verify", json=payload)
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_TIMESTAMP"

    response = await client.post("/api/v1/censuses/missing/proofs/verify", json=payload)
    assert response.status_code == 404


@pytest.mark.asyncio
async def test_nullifier_lookup_errors(client, open_census, make_submission):
    response = await client.get("/api/v1/censuses/c1/nullifiers/zz")
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_NULLIFIER"

    response = await client.get("/api/v1/censuses/c1/nullifiers/" + "ab" * 31)
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_NULLIFIER"

    response = await client.get("/api/v1/censuses/missing/nullifiers/" + "ab" * 32)
    assert response.status_code == 404
    assert response.json()["code"] == "CENSUS_NOT_FOUND"


@pytest.mark.asyncio
async def test_named_distributions(client, open_census, make_submission):
    for secret, age_bracket, continent in [(b"a", 1, 2), (b"b", 3, 2), (b"c", 1, 0)]:
        submission = make_submission("c1", secret, age_bracket=age_bracket, continent=continent)
        response = await client.post("/api/v1/censuses/c1/proofs", json=_payload(submission))
        assert response.status_code == 201, response.text

    response = await client.get("/api/v1/censuses/c1/stats/age")
    assert response.status_code == 200
    data = response.json()
    assert data["total"] == 3
    assert data["distribution"]["AGE_18_24"] == 2
    assert data["distribution"]["AGE_35_44"] == 1
    assert data["distribution"]["UNDER_18"] == 0

    response = await client.get("/api/v1/censuses/c1/stats/location")
    data = response.json()
    assert data["total"] == 3
    assert data["distribution"]["EUROPE"] == 2
    assert data["distribution"]["AFRICA"] == 1
    assert len(data["distribution"]) == 7

    response = await client.get("/api/v1/censuses/missing/stats/age")
    assert response.status_code == 404


# ============================================================================
# Administration
# ============================================================================

@pytest.mark.asyncio
async def test_update_merkle_root(client, open_census, creator_headers, intruder_headers):
    body = {"new_root": "ab" * 32, "ipfs_hash": "QmRoot"}

    response = await client.put("/api/v1/censuses/c1/merkle-root", json=body, headers=intruder_headers)
    assert response.status_code == 403
    assert response.json()["code"] == "UNAUTHORIZED"

    response = await client.put("/api/v1/censuses/c1/merkle-root", json=body, headers=creator_headers)
    assert response.status_code == 200
    assert response.json()["merkle_root"] == "ab" * 32
    assert response.json()["ipfs_hash"] == "QmRoot"

    response = await client.put(
        "/api/v1/censuses/c1/merkle-root",
        json={"new_root": "ab" * 31},
        headers=creator_headers,
    )
    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_MERKLE_ROOT"


@pytest.mark.asyncio
async def test_close_census(client, open_census, creator_headers, intruder_headers, make_submission):
    response = await client.post("/api/v1/censuses/c1/close", headers=intruder_headers)
    assert response.status_code == 403

    for _ in range(2):
        response = await client.post("/api/v1/censuses/c1/close", headers=creator_headers)
        assert response.status_code == 200
        assert response.json()["success"] is True

    response = await client.post(
        "/api/v1/censuses/c1/proofs", json=_payload(make_submission("c1", b"late"))
    )
    assert response.status_code == 409
    assert response.json()["code"] == "CENSUS_INACTIVE"
