"""Integration tests for the deal governance API endpoints.

Uses InMemoryGovernanceRepository and httpx AsyncClient. Most tests run
against a minimal app with auth and tenant dependencies overridden; the
full-stack tests go through create_app() with signed bearer tokens so the
tenant middleware and error rendering are exercised end to end.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient
from jose import jwt

from src.app.api.deps import get_caller, get_tenant
from src.app.api.v1.governance import router
from src.app.config import get_settings
from src.app.core.tenant import TenantContext
from src.app.governance.schemas import CallerIdentity, DealStage, StakeholderRole
from src.app.main import create_app, init_governance, install_exception_handlers
from tests.conftest import TENANT_ID, InMemoryGovernanceRepository

CALLER = CallerIdentity(id="user-42", display_name="Morgan Lee")


def _make_mock_app() -> FastAPI:
    """Create a minimal FastAPI app with the governance router and error handlers."""
    app = FastAPI()
    install_exception_handlers(app)
    app.include_router(router)
    return app


def _mock_get_caller() -> CallerIdentity:
    return CALLER


def _mock_get_tenant() -> TenantContext:
    return TenantContext(tenant_id=TENANT_ID, tenant_slug="acme", schema_name="tenant_acme")


@pytest_asyncio.fixture
async def client_and_repo():
    """Create test client with InMemoryGovernanceRepository and mocked auth."""
    app = _make_mock_app()
    repo = InMemoryGovernanceRepository()

    app.dependency_overrides[get_caller] = _mock_get_caller
    app.dependency_overrides[get_tenant] = _mock_get_tenant

    init_governance(app, repo, get_settings())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, repo


# ── Evidence ─────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_read_evidence_lists_every_category(client_and_repo):
    """GET /api/v1/deals/{id}/evidence -> 8 entries, MISSING by default."""
    client, repo = client_and_repo
    deal = repo.add_deal()

    response = await client.get(f"/api/v1/deals/{deal.id}/evidence")

    assert response.status_code == 200
    data = response.json()
    assert len(data) == 8
    assert {entry["status"] for entry in data} == {"MISSING"}


@pytest.mark.asyncio
async def test_upsert_evidence_records_editor(client_and_repo):
    """PUT /api/v1/deals/{id}/evidence -> stored record with caller as editor."""
    client, repo = client_and_repo
    deal = repo.add_deal()

    response = await client.put(
        f"/api/v1/deals/{deal.id}/evidence",
        json={"category": "CHAMPION", "status": "EVIDENCED", "evidence_refs": ["call-3"]},
    )

    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "EVIDENCED"
    assert data["evidence_refs"] == ["call-3"]
    assert data["last_updated_by_id"] == "user-42"


@pytest.mark.asyncio
async def test_upsert_evidence_unknown_category_is_422(client_and_repo):
    client, repo = client_and_repo
    deal = repo.add_deal()

    response = await client.put(
        f"/api/v1/deals/{deal.id}/evidence",
        json={"category": "BUDGET", "status": "EVIDENCED"},
    )

    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"
    assert "BUDGET" in response.json()["message"]


@pytest.mark.asyncio
async def test_unknown_deal_is_404(client_and_repo):
    client, _ = client_and_repo

    response = await client.get("/api/v1/deals/no-such-deal/evidence")

    assert response.status_code == 404
    assert response.json() == {
        "kind": "not_found",
        "message": "Deal not found: no-such-deal",
    }


# ── Close Plans ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_close_plan_generate_and_update_item(client_and_repo):
    client, repo = client_and_repo
    deal = repo.add_deal(stage=DealStage.LEGAL)

    empty = await client.get(f"/api/v1/deals/{deal.id}/close-plan")
    assert empty.status_code == 200
    assert empty.json() is None

    response = await client.post(f"/api/v1/deals/{deal.id}/close-plan", json={})
    assert response.status_code == 200
    plan = response.json()
    titles = [item["title"] for item in plan["items"]]
    assert titles[-1] == "Identify economic buyer"
    assert plan["version"] == 1

    item_id = plan["items"][0]["id"]
    patched = await client.patch(
        f"/api/v1/deals/{deal.id}/close-plan/items/{item_id}",
        json={"status": "COMPLETE"},
    )
    assert patched.status_code == 200
    assert patched.json()["status"] == "COMPLETE"
    assert patched.json()["completed_at"] is not None


@pytest.mark.asyncio
async def test_close_plan_resubmitted_items_keep_status(client_and_repo):
    """POSTing the stored items back keeps completed work."""
    client, repo = client_and_repo
    deal = repo.add_deal()
    plan = (await client.post(f"/api/v1/deals/{deal.id}/close-plan", json={})).json()
    await client.patch(
        f"/api/v1/deals/{deal.id}/close-plan/items/{plan['items'][1]['id']}",
        json={"status": "COMPLETE"},
    )
    current = (await client.get(f"/api/v1/deals/{deal.id}/close-plan")).json()

    response = await client.post(
        f"/api/v1/deals/{deal.id}/close-plan",
        json={"items": current["items"], "expected_version": current["version"]},
    )

    assert response.status_code == 200
    items = response.json()["items"]
    assert [i["status"] for i in items[:3]] == ["PENDING", "COMPLETE", "PENDING"]
    assert items[1]["completed_at"] == current["items"][1]["completed_at"]
    assert response.json()["version"] == 2


@pytest.mark.asyncio
async def test_close_plan_stale_version_is_409(client_and_repo):
    client, repo = client_and_repo
    deal = repo.add_deal()
    await client.post(f"/api/v1/deals/{deal.id}/close-plan", json={})

    response = await client.post(
        f"/api/v1/deals/{deal.id}/close-plan", json={"expected_version": 0}
    )

    assert response.status_code == 409
    assert response.json()["kind"] == "conflict"


@pytest.mark.asyncio
async def test_close_plan_blank_item_title_is_422(client_and_repo):
    client, repo = client_and_repo
    deal = repo.add_deal()

    response = await client.post(
        f"/api/v1/deals/{deal.id}/close-plan", json={"items": [{"title": ""}]}
    )

    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"


# ── Risk ─────────────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_risk_score_history(client_and_repo):
    client, repo = client_and_repo
    deal = repo.add_deal()
    repo.add_stakeholder(deal, StakeholderRole.CHAMPION)

    missing = await client.get(f"/api/v1/deals/{deal.id}/risk-scores/latest")
    assert missing.status_code == 404
    assert missing.json()["kind"] == "not_found"

    created = await client.post(f"/api/v1/deals/{deal.id}/risk-scores")
    assert created.status_code == 201
    assert created.json()["state"] == "RED"
    assert created.json()["factors"]["stakeholder_coverage"] == 0.0

    latest = await client.get(f"/api/v1/deals/{deal.id}/risk-scores/latest")
    assert latest.json()["id"] == created.json()["id"]

    history = await client.get(f"/api/v1/deals/{deal.id}/risk-scores")
    assert len(history.json()) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize("path", ["risk-scores", "risk-scores/latest"])
async def test_risk_reads_on_unknown_deal_are_404(client_and_repo, path):
    client, _ = client_and_repo

    response = await client.get(f"/api/v1/deals/no-such-deal/{path}")

    assert response.status_code == 404
    assert response.json() == {
        "kind": "not_found",
        "message": "Deal not found: no-such-deal",
    }


# ── Enforcement ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_freeze_blocks_patch_until_cleared(client_and_repo):
    client, repo = client_and_repo
    deal = repo.add_deal()

    frozen = await client.put(
        f"/api/v1/deals/{deal.id}/enforcement",
        json={"state": "FROZEN", "reason_code": "POLICY_VIOLATION_HARD"},
    )
    assert frozen.status_code == 200
    assert frozen.json()["deal"]["enforcement_state"] == "FROZEN"
    assert frozen.json()["event"]["actor_id"] == "user-42"

    blocked = await client.patch(f"/api/v1/deals/{deal.id}", json={"stage": "PROPOSAL"})
    assert blocked.status_code == 423
    assert blocked.json()["kind"] == "enforcement_blocked"
    assert blocked.json()["reason_code"] == "POLICY_VIOLATION_HARD"
    assert blocked.json()["capability"] == "STAGE_CHANGE"

    status_response = await client.get(f"/api/v1/deals/{deal.id}/enforcement")
    body = status_response.json()
    assert body["integrity"]["consistent"] is True
    assert body["integrity"]["effective_state"] == "FROZEN"
    assert [e["event_type"] for e in body["events"]] == ["MUTATION_BLOCKED", "FREEZE"]

    cleared = await client.put(
        f"/api/v1/deals/{deal.id}/enforcement", json={"state": "ACTIVE"}
    )
    assert cleared.json()["event"]["reason_code"] == "MANUAL_CLEAR"

    allowed = await client.patch(f"/api/v1/deals/{deal.id}", json={"stage": "PROPOSAL"})
    assert allowed.status_code == 200
    assert allowed.json()["stage"] == "PROPOSAL"


@pytest.mark.asyncio
async def test_repeated_state_request_returns_null_event(client_and_repo):
    client, repo = client_and_repo
    deal = repo.add_deal()

    response = await client.put(
        f"/api/v1/deals/{deal.id}/enforcement", json={"state": "ACTIVE"}
    )

    assert response.status_code == 200
    assert response.json()["event"] is None


@pytest.mark.asyncio
async def test_patch_amount_travels_as_string(client_and_repo):
    client, repo = client_and_repo
    deal = repo.add_deal()

    response = await client.patch(
        f"/api/v1/deals/{deal.id}",
        json={"amount_micros": "9007199254740993000", "forecast": "BEST_CASE"},
    )

    assert response.status_code == 200
    assert response.json()["amount_micros"] == "9007199254740993000"
    assert response.json()["forecast"] == "BEST_CASE"
    assert response.json()["version"] == deal.version + 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "body",
    [
        {},
        {"amount_micros": "12.5"},
        {"amount_micros": "-3"},
        {"amount_micros": "\u00b2"},
        {"amount_micros": "\u0661\u0662"},
        {"stage": "WON"},
    ],
)
async def test_patch_invalid_body_is_422(client_and_repo, body):
    client, repo = client_and_repo
    deal = repo.add_deal()

    response = await client.patch(f"/api/v1/deals/{deal.id}", json=body)

    assert response.status_code == 422
    assert response.json()["kind"] == "validation_error"


# ── Proof Packs ──────────────────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_generate_and_list_proof_packs(client_and_repo):
    client, repo = client_and_repo
    deal = repo.add_deal(amount_micros=250_000_000_000)

    created = await client.post(f"/api/v1/deals/{deal.id}/proof-packs", json={})
    assert created.status_code == 201
    pack = created.json()
    assert pack["deal_value_micros"] == "250000000000"
    assert pack["generated_by_id"] == "user-42"
    assert pack["generated_by_name"] == "Morgan Lee"
    assert pack["win_probability"] == 0

    listed = await client.get(f"/api/v1/deals/{deal.id}/proof-packs")
    assert [p["id"] for p in listed.json()] == [pack["id"]]


# ── 503 When Not Initialized ─────────────────────────────────────────────────


@pytest.mark.asyncio
async def test_governance_api_503_when_not_initialized():
    """Services missing from app.state -> 503."""
    app = _make_mock_app()
    app.dependency_overrides[get_caller] = _mock_get_caller
    app.dependency_overrides[get_tenant] = _mock_get_tenant

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/v1/deals/some-deal/evidence")

    assert response.status_code == 503
    assert response.json() == {
        "kind": "unavailable",
        "message": "Deal governance not initialized",
    }


# ── Full Stack (middleware + auth) ───────────────────────────────────────────


def _token(**claims) -> str:
    settings = get_settings()
    payload = {
        "sub": "user-42",
        "name": "Morgan Lee",
        "tenant_id": TENANT_ID,
        "tenant_slug": "acme",
        "exp": datetime.now(timezone.utc) + timedelta(minutes=5),
    }
    payload.update(claims)
    return jwt.encode(payload, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


@pytest_asyncio.fixture
async def full_client_and_repo():
    app = create_app()
    repo = InMemoryGovernanceRepository()
    init_governance(app, repo, get_settings())

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client, repo


@pytest.mark.asyncio
async def test_bearer_token_resolves_tenant_and_caller(full_client_and_repo):
    client, repo = full_client_and_repo
    deal = repo.add_deal()

    response = await client.put(
        f"/api/v1/deals/{deal.id}/evidence",
        json={"category": "METRICS", "status": "CLAIMED"},
        headers={"Authorization": f"Bearer {_token()}"},
    )

    assert response.status_code == 200
    assert response.json()["last_updated_by_id"] == "user-42"
    assert "X-Request-ID" in response.headers


@pytest.mark.asyncio
async def test_missing_tenant_context_is_400(full_client_and_repo):
    client, repo = full_client_and_repo
    deal = repo.add_deal()

    response = await client.get(f"/api/v1/deals/{deal.id}/evidence")

    assert response.status_code == 400
    assert response.json()["kind"] == "validation_error"


@pytest.mark.asyncio
async def test_tenant_headers_without_token_is_401(full_client_and_repo):
    client, repo = full_client_and_repo
    deal = repo.add_deal()

    response = await client.get(
        f"/api/v1/deals/{deal.id}/evidence",
        headers={"X-Tenant-ID": TENANT_ID, "X-Tenant-Slug": "acme"},
    )

    assert response.status_code == 401
    assert response.json()["kind"] == "unauthorized"


@pytest.mark.asyncio
async def test_token_for_other_tenant_is_403(full_client_and_repo):
    client, repo = full_client_and_repo
    deal = repo.add_deal()
    # No tenant slug in the token, so the headers set the tenant and the claim mismatches
    token = _token(tenant_id="a93e6d10-58f2-4b7a-8c3d-2e41f6a0b975", tenant_slug=None)

    response = await client.get(
        f"/api/v1/deals/{deal.id}/evidence",
        headers={
            "Authorization": f"Bearer {token}",
            "X-Tenant-ID": TENANT_ID,
            "X-Tenant-Slug": "acme",
        },
    )

    assert response.status_code == 403
    assert response.json()["kind"] == "forbidden"
