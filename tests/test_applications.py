"""Tests for deriving loan applications from processed calls."""

import json

import pytest

from loancall.applications import application_from_call
from loancall.errors import InvalidRequest, InvalidTransition
from loancall.extraction import parse_analysis
from loancall.models import ApplicationStatus, CallJob, CallStatus, LoanInfo


def _completed_call(loan_info) -> CallJob:
    return CallJob(
        id="call-1",
        title="Discovery call",
        client_name="Jane Borrower",
        audio_url="http://testserver/audio/calls/test.wav",
        status=CallStatus.COMPLETED,
        transcript="...",
        summary="s",
        loan_info=loan_info,
        user_id="user-1",
    )


def test_complete_loan_info_is_ready_for_los():
    info = LoanInfo(loan_type="FHA", loan_amount=300000, property_type="Condo", rate=6.5, term=30)
    application = application_from_call(_completed_call(info))
    assert application.status is ApplicationStatus.READY_FOR_LOS
    assert application.interest_rate == 6.5
    assert application.call_id == "call-1"
    assert application.user_id == "user-1"


def test_zero_figures_from_the_model_become_review_needed():
    reply = json.dumps({"summary": "s", "loan_info": {"loan_amount": 0, "term": 0, "rate": -1}})
    call = _completed_call(parse_analysis(reply).loan_info)

    application = application_from_call(call)

    assert application.loan_amount is None
    assert application.term is None
    assert application.interest_rate is None
    assert application.status is ApplicationStatus.REVIEW_NEEDED


def test_unusable_stored_figures_are_a_request_error():
    # Bypasses validation, as an older row written before cleaning would.
    info = LoanInfo.model_construct(loan_amount=-5.0, loan_type=None, property_type=None, rate=None, term=None)
    call = _completed_call(None).model_copy(update={"loan_info": info})

    with pytest.raises(InvalidRequest, match="unusable loan details"):
        application_from_call(call)


def test_call_still_processing_is_rejected():
    call = _completed_call(None).model_copy(update={"status": CallStatus.PROCESSING})
    with pytest.raises(InvalidTransition):
        application_from_call(call)
