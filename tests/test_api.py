import pytest

from auth_tokens import issue_token


def _admin_headers(role="admin", token_type="access"):
    token = issue_token("operator-1", role=role, ttl_seconds=300, token_type=token_type)
    return {"Authorization": f"Bearer {token}"}


@pytest.mark.asyncio
async def test_health(api):
    r = await api.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


@pytest.mark.asyncio
async def test_create_lead_returns_201_with_identity(api):
    r = await api.post("/leads", json={"email1": "a@x.com", "quizId": "quiz-1"})

    assert r.status_code == 201
    body = r.json()
    assert body["email1"] == "a@x.com"
    assert body["quizId"] == "quiz-1"
    assert body["identityUserId"] == "user_1"
    assert body["signInToken"] == "sit_user_1"

    r = await api.get(f"/leads/{body['id']}")
    assert r.status_code == 200
    assert r.json()["email1"] == "a@x.com"


@pytest.mark.asyncio
async def test_create_lead_still_succeeds_when_identity_is_down(api, identity):
    identity.fail = True
    r = await api.post("/leads", json={"email1": "a@x.com"})

    assert r.status_code == 201
    assert r.json()["identityUserId"] is None
    assert r.json()["signInToken"] is None


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "payload",
    [{}, {"email1": "not-an-email"}, {"email1": "a @x.com"}, {"email1": "x@y..z"}, {"email1": "a@b"}],
)
async def test_create_lead_validation(api, payload):
    r = await api.post("/leads", json=payload)
    assert r.status_code == 400
    assert r.json()["detail"] == "Invalid request"


@pytest.mark.asyncio
async def test_update_lead_rejects_malformed_email2(api):
    lead_id = (await api.post("/leads", json={"email1": "a@x.com"})).json()["id"]

    r = await api.patch(f"/leads/{lead_id}", json={"email2": "b@x..com", "paid": False})

    assert r.status_code == 400


@pytest.mark.asyncio
async def test_update_lead_flow(api, grants):
    lead_id = (await api.post("/leads", json={"email1": "a@x.com"})).json()["id"]

    r = await api.patch(
        f"/leads/{lead_id}",
        json={"email2": "a@x.com", "planType": "1_month", "paid": True, "deviceType": "ios"},
    )

    assert r.status_code == 200
    assert r.json() == {
        "id": lead_id,
        "email1": "a@x.com",
        "email2": "a@x.com",
        "planType": "1_month",
        "paid": True,
    }
    lead = (await api.get(f"/leads/{lead_id}")).json()
    assert lead["amountInCents"] == 1299
    assert lead["paidAt"] is not None
    assert len(grants.calls) == 1


@pytest.mark.asyncio
async def test_update_unknown_lead_is_404(api):
    r = await api.patch("/leads/missing", json={"email2": "a@x.com", "paid": False})
    assert r.status_code == 404


@pytest.mark.asyncio
async def test_update_requires_paid_flag(api):
    lead_id = (await api.post("/leads", json={"email1": "a@x.com"})).json()["id"]
    r = await api.patch(f"/leads/{lead_id}", json={"email2": "a@x.com"})
    assert r.status_code == 400


@pytest.mark.asyncio
async def test_get_unknown_lead_is_404(api):
    assert (await api.get("/leads/missing")).status_code == 404
    assert (await api.get("/leads/session/cs_missing")).status_code == 404
    assert (await api.get("/leads/missing/subscription")).status_code == 404


@pytest.mark.asyncio
async def test_subscription_for_new_lead(api):
    lead_id = (await api.post("/leads", json={"email1": "a@x.com"})).json()["id"]

    r = await api.get(f"/leads/{lead_id}/subscription")

    assert r.status_code == 200
    assert r.json() == {"isPremium": False, "status": None, "expiresAt": None}


@pytest.mark.asyncio
async def test_checkout_and_lookup_by_session(api):
    lead_id = (await api.post("/leads", json={"email1": "a@x.com"})).json()["id"]

    r = await api.post("/checkout", json={"leadId": lead_id, "planType": "1_month"})

    assert r.status_code == 200
    assert r.json() == {"sessionId": "cs_test_1", "url": "https://checkout.stripe.com/c/pay/cs_test_1"}

    r = await api.get("/leads/session/cs_test_1")
    assert r.status_code == 200
    assert r.json()["id"] == lead_id


@pytest.mark.asyncio
async def test_checkout_errors(api, payments):
    lead_id = (await api.post("/leads", json={"email1": "a@x.com"})).json()["id"]

    assert (await api.post("/checkout", json={"leadId": lead_id, "planType": "forever"})).status_code == 400
    assert (await api.post("/checkout", json={"leadId": "missing", "planType": "1_month"})).status_code == 400

    payments.fail = True
    r = await api.post("/checkout", json={"leadId": lead_id, "planType": "1_month"})
    assert r.status_code == 502


@pytest.mark.asyncio
async def test_admin_requires_operator_token(api):
    assert (await api.get("/admin/leads")).status_code == 401
    assert (await api.get("/admin/leads", headers={"Authorization": "Bearer garbage"})).status_code == 401
    assert (await api.get("/admin/leads", headers=_admin_headers(token_type="refresh"))).status_code == 401
    assert (await api.get("/admin/leads", headers=_admin_headers(role="viewer"))).status_code == 403


@pytest.mark.asyncio
async def test_admin_accepts_cookie_token(api):
    token = issue_token("operator-1", ttl_seconds=300)
    r = await api.get("/admin/leads", headers={"Cookie": f"access_token={token}"})
    assert r.status_code == 200
    assert r.json() == []


@pytest.mark.asyncio
async def test_admin_lists(api):
    a = (await api.post("/leads", json={"email1": "a@x.com", "quizId": "q1"})).json()["id"]
    b = (await api.post("/leads", json={"email1": "b@x.com", "quizId": "q2"})).json()["id"]
    await api.patch(f"/leads/{b}", json={"email2": "b@x.com", "planType": "1_year", "paid": True})

    r = await api.get("/admin/leads", headers=_admin_headers())
    assert r.status_code == 200
    assert {lead["id"] for lead in r.json()} == {a, b}

    r = await api.get("/admin/leads/quiz/q1", headers=_admin_headers())
    assert [lead["id"] for lead in r.json()] == [a]

    r = await api.get("/admin/leads/paid", headers=_admin_headers())
    paid = r.json()
    assert [lead["id"] for lead in paid] == [b]
    assert paid[0]["subscriberId"] == "user_2"


@pytest.mark.asyncio
async def test_admin_entitlement_and_revoke(api, grants):
    lead_id = (await api.post("/leads", json={"email1": "a@x.com"})).json()["id"]

    r = await api.get(f"/admin/leads/{lead_id}/entitlement", headers=_admin_headers())
    assert r.json() == {"subscriberId": "user_1", "active": True}

    r = await api.post(f"/admin/leads/{lead_id}/revoke-entitlement", headers=_admin_headers())
    assert r.status_code == 200
    assert grants.revoked == ["user_1"]
