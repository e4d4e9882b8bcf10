"""
Tests for contract upload, listing, management and chat endpoints
"""
import pytest

from config.settings import settings
from database_models import UserSubscription
from tests.conftest import auth_headers

TEXT = b"Mutual Non-Disclosure Agreement between Alpha Inc and Beta Ltd."


async def _upload(client, filename="nda.txt", content=TEXT, user_id="user-1", **form):
    return await client.post(
        "/api/contracts/upload",
        files={"file": (filename, content, "application/octet-stream")},
        data=form,
        headers=auth_headers(user_id),
    )


@pytest.mark.asyncio
async def test_upload_requires_authentication(client):
    response = await client.post("/api/contracts/upload", files={"file": ("nda.txt", TEXT, "text/plain")})

    assert response.status_code == 401
    assert response.json()["code"] == "AUTH_REQUIRED"


@pytest.mark.asyncio
async def test_upload_stores_file_and_extracted_text(client, blob_store):
    response = await _upload(client, title="Alpha NDA", contract_type="nda", description="Pilot project")

    assert response.status_code == 201
    body = response.json()
    contract = body["contract"]
    assert contract["title"] == "Alpha NDA"
    assert contract["contract_type"] == "nda"
    assert contract["status"] == "uploaded"
    assert contract["file_type"] == "text/plain"
    assert contract["file_size"] == len(TEXT)
    assert body["remaining_trials"] == settings.trial_analyses_limit - 1

    keys = await blob_store.list(f"contracts/user-1/{contract['id']}")
    assert len(keys) == 1
    assert keys[0].endswith("-nda.txt")
    assert await blob_store.get(keys[0]) == TEXT


@pytest.mark.asyncio
async def test_upload_defaults_title_to_filename(client):
    response = await _upload(client, filename="lease 2024.txt")

    assert response.json()["contract"]["title"] == "lease 2024.txt"
    assert response.json()["contract"]["contract_type"] == "other"


@pytest.mark.asyncio
async def test_upload_rejects_disallowed_extension(client):
    response = await _upload(client, filename="payload.exe", content=b"MZ\x90\x00")

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_FILE_TYPE"


@pytest.mark.asyncio
async def test_upload_rejects_content_not_matching_extension(client):
    response = await _upload(client, filename="contract.pdf", content=TEXT)

    assert response.status_code == 400
    assert response.json()["code"] == "INVALID_FILE_TYPE"


@pytest.mark.asyncio
async def test_upload_rejects_empty_file(client):
    response = await _upload(client, content=b"")

    assert response.status_code == 400
    assert response.json()["code"] == "EMPTY_FILE"


@pytest.mark.asyncio
async def test_upload_rejects_unknown_contract_type(client):
    response = await _upload(client, contract_type="merger")

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


@pytest.mark.asyncio
async def test_rejected_upload_does_not_spend_trial(client, TestAsyncSessionLocal):
    await _upload(client, filename="payload.exe", content=b"MZ")
    response = await _upload(client)

    assert response.json()["remaining_trials"] == settings.trial_analyses_limit - 1


@pytest.mark.asyncio
async def test_upload_over_trial_limit_is_forbidden(client, blob_store, TestAsyncSessionLocal):
    async with TestAsyncSessionLocal() as session:
        session.add(UserSubscription(user_id="user-1", trial_analyses_used=settings.trial_analyses_limit))
        await session.commit()

    response = await _upload(client)

    assert response.status_code == 403
    body = response.json()
    assert body["code"] == "SUBSCRIPTION_LIMIT_EXCEEDED"
    assert "free analyses" in body["error"]
    assert await blob_store.list() == []


@pytest.mark.asyncio
async def test_upload_over_plan_file_size(client, TestAsyncSessionLocal):
    # Trial uploads are capped at 5MB
    response = await _upload(client, content=b"a" * (5 * 1024 * 1024 + 1))

    assert response.status_code == 400
    assert response.json()["code"] == "FILE_TOO_LARGE"


@pytest.mark.asyncio
async def test_list_contracts_paginates_and_filters(client, TestAsyncSessionLocal):
    async with TestAsyncSessionLocal() as session:
        session.add(UserSubscription(user_id="user-1", subscription_type="basic"))
        await session.commit()
    for i in range(5):
        await _upload(client, title=f"Lease {i}", contract_type="lease")
    await _upload(client, title="Consulting", contract_type="service")
    await _upload(client, user_id="someone-else", title="Not mine")

    first_page = (await client.get("/api/contracts?page=1&limit=4", headers=auth_headers())).json()
    assert first_page["pagination"] == {"page": 1, "limit": 4, "total": 6, "total_pages": 2}
    assert len(first_page["contracts"]) == 4

    second_page = (await client.get("/api/contracts?page=2&limit=4", headers=auth_headers())).json()
    assert len(second_page["contracts"]) == 2
    ids = {c["id"] for c in first_page["contracts"]} | {c["id"] for c in second_page["contracts"]}
    assert len(ids) == 6

    leases = (await client.get("/api/contracts?contract_type=lease", headers=auth_headers())).json()
    assert leases["pagination"]["total"] == 5

    search = (await client.get("/api/contracts?search=consult", headers=auth_headers())).json()
    assert [c["title"] for c in search["contracts"]] == ["Consulting"]


@pytest.mark.asyncio
async def test_list_contracts_clamps_page_size(client):
    response = await client.get("/api/contracts?limit=500", headers=auth_headers())

    assert response.status_code == 200
    assert response.json()["pagination"]["limit"] == 50


@pytest.mark.asyncio
async def test_get_update_and_delete_contract(client, blob_store):
    contract_id = (await _upload(client, title="Draft")).json()["contract"]["id"]

    fetched = await client.get(f"/api/contracts/{contract_id}", headers=auth_headers())
    assert fetched.status_code == 200
    assert fetched.json()["contract"]["analysis"] is None

    patched = await client.patch(
        f"/api/contracts/{contract_id}",
        json={"title": "Final", "contract_type": "employment"},
        headers=auth_headers(),
    )
    assert patched.status_code == 200
    assert patched.json()["contract"]["title"] == "Final"
    assert patched.json()["contract"]["contract_type"] == "employment"

    deleted = await client.delete(f"/api/contracts/{contract_id}", headers=auth_headers())
    assert deleted.status_code == 200
    assert await blob_store.list() == []

    missing = await client.get(f"/api/contracts/{contract_id}", headers=auth_headers())
    assert missing.status_code == 404
    assert missing.json()["code"] == "CONTRACT_NOT_FOUND"


@pytest.mark.asyncio
async def test_update_rejects_unknown_fields(client):
    contract_id = (await _upload(client)).json()["contract"]["id"]

    response = await client.patch(f"/api/contracts/{contract_id}", json={"status": "completed"}, headers=auth_headers())

    assert response.status_code == 400


@pytest.mark.asyncio
async def test_other_users_cannot_see_contract(client):
    contract_id = (await _upload(client, user_id="owner")).json()["contract"]["id"]

    for method in ("get", "delete"):
        response = await getattr(client, method)(f"/api/contracts/{contract_id}", headers=auth_headers("intruder"))
        assert response.status_code == 404


@pytest.mark.asyncio
async def test_delete_contract_removes_analysis_and_chat(client):
    contract_id = (await _upload(client)).json()["contract"]["id"]
    await client.post("/api/analysis/analyze", json={"contractId": contract_id}, headers=auth_headers())
    await client.post(f"/api/contracts/{contract_id}/chat", json={"message": "Can I terminate?"}, headers=auth_headers())

    response = await client.delete(f"/api/contracts/{contract_id}", headers=auth_headers())

    assert response.status_code == 200
    analysis = await client.get(f"/api/contracts/{contract_id}/analysis", headers=auth_headers())
    assert analysis.status_code == 404


@pytest.mark.asyncio
async def test_chat_round_trip(client, fake_analyzer):
    contract_id = (await _upload(client)).json()["contract"]["id"]

    empty = await client.get(f"/api/contracts/{contract_id}/chat", headers=auth_headers())
    assert empty.status_code == 200
    assert empty.json()["messages"] == []

    sent = await client.post(
        f"/api/contracts/{contract_id}/chat",
        json={"message": "  Who can terminate?  "},
        headers=auth_headers(),
    )
    assert sent.status_code == 200
    body = sent.json()
    assert body["user_message"]["content"] == "Who can terminate?"
    assert body["assistant_message"]["role"] == "assistant"
    assert body["assistant_message"]["content"] == "Answer to: Who can terminate?"
    assert body["assistant_message"]["referenced_clauses"] == ["Section 1"]
    assert body["assistant_message"]["metadata"]["model"] == "fake-model"

    history = (await client.get(f"/api/contracts/{contract_id}/chat", headers=auth_headers())).json()
    assert history["chat"]["id"] == body["chat_id"]
    assert [m["role"] for m in history["messages"]] == ["user", "assistant"]


@pytest.mark.asyncio
async def test_chat_rejects_blank_message(client):
    contract_id = (await _upload(client)).json()["contract"]["id"]

    response = await client.post(f"/api/contracts/{contract_id}/chat", json={"message": "   "}, headers=auth_headers())

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"
