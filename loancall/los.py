"""
Encompass LOS integration and the push orchestrator.

A push is one-way: once an application carries an Encompass loan ID it is
never pushed again, and a repeated push returns the stored ID.
"""

from __future__ import annotations

import asyncio
import random
from typing import Optional

import httpx
import structlog
from pydantic import BaseModel

from loancall.config import Settings
from loancall.contacts import normalise_phone, split_name
from loancall.database import Database
from loancall.errors import ApplicationNotFound, PushFailed
from loancall.models import ApplicationStatus, LoanApplication

log = structlog.get_logger(__name__)


def build_encompass_payload(application: LoanApplication) -> dict:
    """Map a loan application onto the Encompass loan-creation body."""
    first_name, last_name = split_name(application.client_name)
    phone = application.client_phone
    if phone:
        e164, valid = normalise_phone(phone)
        phone = e164 if valid else phone
    return {
        "borrower": {
            "firstName": first_name,
            "lastName": last_name,
            "email": application.client_email,
            "phone": phone,
        },
        "loan": {
            "loanAmount": application.loan_amount,
            "loanType": application.loan_type,
            "propertyType": application.property_type,
            "interestRate": application.interest_rate,
            "term": application.term,
        },
    }


class EncompassClient:
    """Async client for the Encompass loans API; simulates pushes when no URL is configured."""

    def __init__(self, settings: Settings):
        self.base_url = settings.encompass_api_url.rstrip("/")
        self.timeout = settings.los_timeout
        self.headers = {
            "Authorization": f"Bearer {settings.encompass_api_key}",
            "Content-Type": "application/json",
        }
        self._http: Optional[httpx.AsyncClient] = None

    @property
    def simulated(self) -> bool:
        return not self.base_url

    async def _client(self) -> httpx.AsyncClient:
        if self._http is None or self._http.is_closed:
            self._http = httpx.AsyncClient(
                base_url=self.base_url,
                headers=self.headers,
                timeout=self.timeout,
            )
        return self._http

    async def close(self) -> None:
        if self._http and not self._http.is_closed:
            await self._http.aclose()

    async def create_loan(self, payload: dict, idempotency_key: str) -> str:
        """Create the loan in Encompass and return its loan ID."""
        if self.simulated:
            loan_id = f"EN-{random.randint(0, 999999):06d}"
            log.info("encompass_push_simulated", loan_id=loan_id, idempotency_key=idempotency_key)
            return loan_id

        client = await self._client()
        try:
            resp = await client.post(
                "/loans",
                json=payload,
                headers={"Idempotency-Key": idempotency_key},
            )
            resp.raise_for_status()
        except httpx.TimeoutException as e:
            raise PushFailed("Encompass request timed out") from e
        except httpx.HTTPStatusError as e:
            raise PushFailed(
                f"Encompass rejected the loan (HTTP {e.response.status_code}): {e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise PushFailed(f"Encompass request failed: {e}") from e

        try:
            loan_id = resp.json()["loanId"]
        except (ValueError, KeyError, TypeError) as e:
            raise PushFailed("Encompass response did not include a loanId") from e
        log.info("encompass_loan_created", loan_id=loan_id, idempotency_key=idempotency_key)
        return str(loan_id)


class PushResult(BaseModel):
    application: LoanApplication
    already_pushed: bool = False

    @property
    def encompass_id(self) -> str:
        return self.application.encompass_id or ""


class LOSPushOrchestrator:
    """Pushes one loan application to the LOS and records the external ID."""

    def __init__(self, db: Database, los: EncompassClient, timeout: float = 30.0):
        self.db = db
        self.los = los
        self.timeout = timeout

    async def push(self, application_id: str) -> PushResult:
        application = await self.db.get_application(application_id)
        if application is None:
            raise ApplicationNotFound(f"Application {application_id} not found")

        if application.status is ApplicationStatus.PUSHED:
            log.info(
                "application_already_pushed",
                application_id=application_id,
                encompass_id=application.encompass_id,
            )
            return PushResult(application=application, already_pushed=True)

        missing = application.missing_loan_fields()
        if missing:
            raise PushFailed(f"Application is missing required loan fields: {', '.join(missing)}")

        payload = build_encompass_payload(application)
        try:
            encompass_id = await asyncio.wait_for(
                self.los.create_loan(payload, idempotency_key=application_id),
                self.timeout,
            )
        except asyncio.TimeoutError:
            log.warning("application_push_timed_out", application_id=application_id)
            raise PushFailed(f"LOS push timed out after {self.timeout:g}s") from None
        except PushFailed as e:
            log.warning("application_push_failed", application_id=application_id, error=e.message)
            raise

        if not await self.db.mark_application_pushed(application_id, encompass_id):
            current = await self.db.get_application(application_id)
            if current is None:
                raise ApplicationNotFound(f"Application {application_id} not found")
            # A concurrent push committed first; its ID is the one of record.
            log.warning(
                "application_push_race_lost",
                application_id=application_id,
                discarded_id=encompass_id,
                encompass_id=current.encompass_id,
            )
            return PushResult(application=current, already_pushed=True)

        pushed = await self.db.get_application(application_id)
        log.info("application_pushed", application_id=application_id, encompass_id=encompass_id)
        return PushResult(application=pushed)
