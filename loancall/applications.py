"""
Loan application creation and editing rules.
"""

from __future__ import annotations

import uuid

import structlog
from pydantic import ValidationError

from loancall.contacts import normalise_phone
from loancall.database import Database
from loancall.errors import ApplicationNotFound, InvalidRequest, InvalidTransition
from loancall.models import (
    ApplicationCreate,
    ApplicationFields,
    ApplicationStatus,
    CallJob,
    CallStatus,
    LoanApplication,
)

log = structlog.get_logger(__name__)


def _clean_phone(raw):
    if not raw:
        return raw
    e164, valid = normalise_phone(raw)
    return e164 if valid else raw


def application_from_call(call: CallJob) -> LoanApplication:
    """
    Derive an application from a completed call's extracted loan info.

    Fields the call gave no evidence for stay empty and the application is
    flagged for review instead of being filled with placeholder values.
    """
    if call.status is not CallStatus.COMPLETED:
        raise InvalidTransition(f"Call {call.id} is {call.status.value}; only completed calls can become applications")

    info = call.loan_info
    try:
        application = LoanApplication(
            id=uuid.uuid4().hex,
            client_name=call.client_name,
            loan_amount=info.loan_amount if info else None,
            loan_type=info.loan_type if info else None,
            property_type=info.property_type if info else None,
            interest_rate=info.rate if info else None,
            term=info.term if info else None,
            call_id=call.id,
            user_id=call.user_id,
        )
    except ValidationError as e:
        raise InvalidRequest(f"Call {call.id} has unusable loan details: {e.error_count()} error(s)") from e
    if not application.missing_loan_fields():
        application.status = ApplicationStatus.READY_FOR_LOS
    return application


def new_application(data: ApplicationCreate) -> LoanApplication:
    fields = data.model_dump(exclude_none=True)
    fields["client_phone"] = _clean_phone(fields.get("client_phone"))
    return LoanApplication(id=uuid.uuid4().hex, **fields)


async def edit_application(db: Database, application_id: str, edits: ApplicationFields) -> LoanApplication:
    """Apply officer edits; pushed applications cannot be changed."""
    current = await db.get_application(application_id)
    if current is None:
        raise ApplicationNotFound(f"Application {application_id} not found")
    if current.status is ApplicationStatus.PUSHED:
        raise InvalidTransition("Application has already been pushed to Encompass")

    fields = edits.model_dump(exclude_unset=True)
    if "client_phone" in fields:
        fields["client_phone"] = _clean_phone(fields["client_phone"])
    # Validate the merged record before it reaches the store.
    try:
        LoanApplication.model_validate({**current.model_dump(), **fields})
    except ValidationError as e:
        raise InvalidRequest(f"Invalid application fields: {e.error_count()} error(s)") from e

    if not await db.update_application(application_id, fields):
        raise InvalidTransition("Application has already been pushed to Encompass")
    log.info("application_updated", application_id=application_id, fields=sorted(fields))
    return await db.get_application(application_id)
