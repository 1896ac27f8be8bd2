"""Tests for the Encompass client and the LOS push orchestrator."""

import asyncio
import json

import httpx
import pytest

from loancall.errors import ApplicationNotFound, PushFailed
from loancall.los import EncompassClient, LOSPushOrchestrator, build_encompass_payload
from loancall.models import ApplicationStatus, LoanApplication


def _application(**overrides) -> LoanApplication:
    fields = dict(
        id="app-1",
        client_name="Jane Q Borrower",
        client_email="jane@example.com",
        client_phone="(201) 555-0123",
        loan_amount=450000,
        loan_type="Conventional",
        property_type="Single Family",
        interest_rate=6.25,
        term=30,
        status=ApplicationStatus.READY_FOR_LOS,
    )
    fields.update(overrides)
    return LoanApplication(**fields)


class FailingLOS:
    def __init__(self, error=None, delay=0.0):
        self.error = error or PushFailed("Encompass rejected the loan (HTTP 422)")
        self.delay = delay
        self.calls = 0

    async def create_loan(self, payload, idempotency_key):
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        raise self.error


def test_payload_shape():
    payload = build_encompass_payload(_application())
    assert payload["borrower"] == {
        "firstName": "Jane",
        "lastName": "Q Borrower",
        "email": "jane@example.com",
        "phone": "+12015550123",
    }
    assert payload["loan"] == {
        "loanAmount": 450000,
        "loanType": "Conventional",
        "propertyType": "Single Family",
        "interestRate": 6.25,
        "term": 30,
    }


@pytest.mark.asyncio
async def test_simulated_push_is_idempotent(settings, db):
    await db.create_application(_application())
    pusher = LOSPushOrchestrator(db, EncompassClient(settings))

    first = await pusher.push("app-1")
    second = await pusher.push("app-1")

    assert first.encompass_id.startswith("EN-")
    assert first.already_pushed is False
    assert second.already_pushed is True
    assert second.encompass_id == first.encompass_id
    stored = await db.get_application("app-1")
    assert stored.status is ApplicationStatus.PUSHED
    assert stored.encompass_id == first.encompass_id


@pytest.mark.asyncio
async def test_concurrent_pushes_agree_on_one_id(settings, db):
    await db.create_application(_application())
    pusher = LOSPushOrchestrator(db, EncompassClient(settings))

    results = await asyncio.gather(*(pusher.push("app-1") for _ in range(5)))

    stored = await db.get_application("app-1")
    assert {r.encompass_id for r in results} == {stored.encompass_id}


@pytest.mark.asyncio
async def test_failed_push_leaves_application_unmodified(db):
    before = await db.create_application(_application())
    los = FailingLOS()

    with pytest.raises(PushFailed, match="422"):
        await LOSPushOrchestrator(db, los).push("app-1")

    assert await db.get_application("app-1") == before
    assert los.calls == 1


@pytest.mark.asyncio
async def test_push_timeout_is_push_failed(db):
    await db.create_application(_application())

    with pytest.raises(PushFailed, match="timed out"):
        await LOSPushOrchestrator(db, FailingLOS(delay=5), timeout=0.05).push("app-1")

    assert (await db.get_application("app-1")).status is ApplicationStatus.READY_FOR_LOS


@pytest.mark.asyncio
async def test_incomplete_application_not_sent(db):
    await db.create_application(
        _application(loan_amount=None, term=None, status=ApplicationStatus.REVIEW_NEEDED)
    )
    los = FailingLOS()

    with pytest.raises(PushFailed, match="loan_amount, term"):
        await LOSPushOrchestrator(db, los).push("app-1")
    assert los.calls == 0


@pytest.mark.asyncio
async def test_unknown_application(db, settings):
    with pytest.raises(ApplicationNotFound):
        await LOSPushOrchestrator(db, EncompassClient(settings)).push("nope")


class TestEncompassClient:
    def _client(self, settings, handler):
        live = settings.model_copy(
            update={"encompass_api_url": "https://encompass.test/v3", "encompass_api_key": "k"}
        )
        client = EncompassClient(live)
        client._http = httpx.AsyncClient(
            base_url=client.base_url,
            headers=client.headers,
            transport=httpx.MockTransport(handler),
        )
        return client

    @pytest.mark.asyncio
    async def test_create_loan_sends_idempotency_key(self, settings):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["key"] = request.headers.get("Idempotency-Key")
            seen["auth"] = request.headers.get("Authorization")
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={"loanId": "ENC-42"})

        client = self._client(settings, handler)
        loan_id = await client.create_loan({"loan": {"loanAmount": 1}}, idempotency_key="app-1")
        await client.close()

        assert loan_id == "ENC-42"
        assert seen["url"] == "https://encompass.test/v3/loans"
        assert seen["key"] == "app-1"
        assert seen["auth"] == "Bearer k"
        assert seen["body"] == {"loan": {"loanAmount": 1}}

    @pytest.mark.asyncio
    async def test_http_error_is_push_failed(self, settings):
        client = self._client(settings, lambda r: httpx.Response(401, text="bad token"))
        with pytest.raises(PushFailed, match="HTTP 401"):
            await client.create_loan({}, idempotency_key="app-1")
        await client.close()

    @pytest.mark.asyncio
    async def test_missing_loan_id_is_push_failed(self, settings):
        client = self._client(settings, lambda r: httpx.Response(200, json={"status": "ok"}))
        with pytest.raises(PushFailed, match="loanId"):
            await client.create_loan({}, idempotency_key="app-1")
        await client.close()
