"""
HTTP surface for the loan-call service.

Routes:
  Triggers: /process-call, /encompass-push, /stripe-webhook
  Calls:    /api/calls (upload, list), /api/calls/:id, /api/calls/:id/application
  Apps:     /api/applications (create, list), /api/applications/:id (read, edit)
  Billing:  /api/subscriptions/:user_id, /api/subscriptions, /api/subscriptions/cancel
  Audio:    /audio/* (artifact store)

Usage:
    uvicorn loancall.server:build_app --factory --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

import asyncio
import time
import uuid
from contextlib import asynccontextmanager
from pathlib import PurePosixPath
from typing import Optional

import structlog
from fastapi import FastAPI, File, Form, Header, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from fastapi.staticfiles import StaticFiles
from pydantic import BaseModel, ConfigDict, Field

from loancall.applications import application_from_call, edit_application, new_application
from loancall.billing import PLANS
from loancall.config import Settings, get_settings
from loancall.errors import InvalidRequest, LoanCallError
from loancall.models import ApplicationCreate, ApplicationFields, CallJob, CallStatus
from loancall.services import Services
from loancall.transcription import sniff_audio_filename

log = structlog.get_logger(__name__)

CORS_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "POST, OPTIONS",
    "Access-Control-Allow-Headers": "Content-Type, Authorization, Stripe-Signature",
}


class PlanSelection(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)
    plan_id: str = Field(alias="planId")


class CancelRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    user_id: str = Field(alias="userId", min_length=1)


def _error(message: str, status_code: int) -> JSONResponse:
    return JSONResponse({"error": message}, status_code=status_code)


async def _json_body(request: Request) -> dict:
    try:
        body = await request.json()
    except ValueError:
        raise InvalidRequest("Request body must be valid JSON")
    if not isinstance(body, dict):
        raise InvalidRequest("Request body must be a JSON object")
    return body


def _analysis_of(job: CallJob) -> Optional[dict]:
    if not job.analysis_available:
        return None
    return {
        "summary": job.summary,
        "key_points": job.key_points or [],
        "action_items": job.action_items or [],
        "loan_info": job.loan_info.to_json_dict() if job.loan_info else {},
    }


def _audio_path(filename: Optional[str], data: bytes) -> str:
    ext = PurePosixPath(filename or "").suffix.lstrip(".").lower()
    if not ext:
        sniffed = sniff_audio_filename(data)
        ext = sniffed.rsplit(".", 1)[1] if sniffed else "bin"
    return f"calls/{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}.{ext}"


def create_app(services: Services, manage_lifecycle: bool = False) -> FastAPI:
    """
    Create the FastAPI app around already-built services.

    With ``manage_lifecycle`` the app opens and closes the services itself;
    otherwise the caller owns them (tests pass a connected database).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if manage_lifecycle:
            await services.start()
        log.info("server_started")
        yield
        tasks = list(app.state.processing_tasks)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        if manage_lifecycle:
            await services.stop()
        log.info("server_stopped")

    settings = services.settings
    db = services.db

    app = FastAPI(title="Loan Call Processing", version="1.0.0", lifespan=lifespan)
    app.state.services = services
    app.state.processing_tasks = set()

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_methods=["*"],
        allow_headers=["Content-Type", "Authorization", "Stripe-Signature"],
    )
    app.mount(
        "/audio",
        StaticFiles(directory=str(settings.storage_dir), check_dir=False),
        name="audio",
    )

    @app.exception_handler(LoanCallError)
    async def loancall_error(request: Request, exc: LoanCallError):
        log.warning("request_failed", path=request.url.path, code=exc.code, error=exc.message)
        return _error(exc.message, exc.status_code)

    def _spawn_processing(call_id: str) -> None:
        async def _run():
            try:
                await services.processor.process(call_id)
            except LoanCallError as e:
                log.error("background_processing_failed", call_id=call_id, error=e.message)

        task = asyncio.create_task(_run())
        app.state.processing_tasks.add(task)
        task.add_done_callback(app.state.processing_tasks.discard)

    # ═══════════════════════════════════════════════════════════
    #  Health check
    # ═══════════════════════════════════════════════════════════
    @app.get("/health")
    async def health():
        return {"status": "ok"}

    # ═══════════════════════════════════════════════════════════
    #  Processing triggers
    # ═══════════════════════════════════════════════════════════
    @app.options("/process-call")
    @app.options("/encompass-push")
    @app.options("/stripe-webhook")
    async def preflight():
        return Response(status_code=200, headers=CORS_HEADERS)

    @app.post("/process-call")
    async def process_call(request: Request):
        body = await _json_body(request)
        call_id = body.get("callId")
        if not call_id:
            return _error("Call ID is required", 400)

        try:
            result = await services.processor.process(str(call_id))
        except LoanCallError as e:
            return _error(f"Error processing call: {e.message}", 500)

        job = result.job
        if job.status is CallStatus.PROCESSING:
            return JSONResponse(
                {
                    "success": True,
                    "message": "Call is already being processed",
                    "status": job.status.value,
                },
                status_code=202,
            )
        if job.status is CallStatus.ERROR:
            return JSONResponse(
                {
                    "error": f"Error processing call: {job.error_message}",
                    "status": job.status.value,
                    "transcript": job.transcript,
                },
                status_code=500,
            )
        return {
            "success": True,
            "message": "Call processed successfully" if result.committed else "Call already processed",
            "transcript": job.transcript,
            "analysis": result.analysis.to_json_dict() if result.analysis else _analysis_of(job),
        }

    @app.post("/encompass-push")
    async def encompass_push(request: Request):
        body = await _json_body(request)
        application_id = body.get("applicationId")
        if not application_id:
            return _error("Application ID is required", 400)

        try:
            result = await services.pusher.push(str(application_id))
        except LoanCallError as e:
            return _error(f"Error pushing to Encompass: {e.message}", 500)

        return {
            "success": True,
            "message": (
                "Application was already pushed to Encompass"
                if result.already_pushed
                else "Application successfully pushed to Encompass"
            ),
            "encompassId": result.encompass_id,
        }

    @app.post("/stripe-webhook")
    async def stripe_webhook(
        request: Request,
        stripe_signature: Optional[str] = Header(None, alias="stripe-signature"),
    ):
        if not stripe_signature:
            return _error("Missing Stripe signature", 400)

        body = await request.body()
        event = services.billing.verify(body, stripe_signature)
        await services.billing.handle(event)
        return {"received": True}

    # ═══════════════════════════════════════════════════════════
    #  Calls
    # ═══════════════════════════════════════════════════════════
    @app.post("/api/calls", status_code=201)
    async def upload_call(
        title: str = Form(..., min_length=1),
        client_name: str = Form(..., min_length=1),
        duration: int = Form(0, ge=0),
        user_id: Optional[str] = Form(None),
        file: UploadFile = File(...),
    ):
        data = await file.read()
        if not data:
            raise InvalidRequest("Uploaded audio file is empty")

        audio_url = await services.store.put(_audio_path(file.filename, data), data)
        job = await db.create_call(
            title=title,
            client_name=client_name,
            audio_url=audio_url,
            duration=duration,
            user_id=user_id,
        )
        log.info("call_uploaded", call_id=job.id, size=len(data), user_id=user_id)
        _spawn_processing(job.id)
        return {"call": job.model_dump(mode="json")}

    @app.get("/api/calls")
    async def list_calls(
        user_id: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=500),
    ):
        calls = await db.list_calls(user_id=user_id, limit=limit)
        return {"calls": [c.model_dump(mode="json") for c in calls]}

    @app.get("/api/calls/{call_id}")
    async def get_call(call_id: str):
        job = await db.get_call(call_id)
        if job is None:
            return _error("Call not found", 404)
        return {"call": job.model_dump(mode="json")}

    @app.post("/api/calls/{call_id}/application", status_code=201)
    async def create_application_from_call(call_id: str):
        job = await db.get_call(call_id)
        if job is None:
            return _error("Call not found", 404)
        application = await db.create_application(application_from_call(job))
        log.info("application_created_from_call", call_id=call_id, application_id=application.id)
        return {"application": application.model_dump(mode="json")}

    # ═══════════════════════════════════════════════════════════
    #  Loan applications
    # ═══════════════════════════════════════════════════════════
    @app.post("/api/applications", status_code=201)
    async def create_application(data: ApplicationCreate):
        if data.call_id and await db.get_call(data.call_id) is None:
            return _error("Call not found", 404)
        application = await db.create_application(new_application(data))
        log.info("application_created", application_id=application.id)
        return {"application": application.model_dump(mode="json")}

    @app.get("/api/applications")
    async def list_applications(
        user_id: Optional[str] = Query(None),
        limit: int = Query(100, ge=1, le=500),
    ):
        applications = await db.list_applications(user_id=user_id, limit=limit)
        return {"applications": [a.model_dump(mode="json") for a in applications]}

    @app.get("/api/applications/{application_id}")
    async def get_application(application_id: str):
        application = await db.get_application(application_id)
        if application is None:
            return _error("Application not found", 404)
        return {"application": application.model_dump(mode="json")}

    @app.patch("/api/applications/{application_id}")
    async def update_application(application_id: str, edits: ApplicationFields):
        if await db.get_application(application_id) is None:
            return _error("Application not found", 404)
        application = await edit_application(db, application_id, edits)
        return {"application": application.model_dump(mode="json")}

    # ═══════════════════════════════════════════════════════════
    #  Subscriptions (self-service)
    # ═══════════════════════════════════════════════════════════
    @app.get("/api/subscriptions/{user_id}")
    async def get_subscription(user_id: str):
        subscription = await db.get_user_subscription(user_id)
        if subscription is None:
            return _error("No subscription found", 404)
        return {
            "subscription": subscription.model_dump(mode="json"),
            "plan": PLANS.get(subscription.plan_id),
        }

    @app.post("/api/subscriptions")
    async def select_plan(selection: PlanSelection):
        if selection.plan_id not in PLANS:
            raise InvalidRequest(f"Unknown plan: {selection.plan_id}")
        subscription = await db.activate_user_plan(selection.user_id, selection.plan_id)
        log.info("plan_selected", user_id=selection.user_id, plan_id=selection.plan_id)
        return {"subscription": subscription.model_dump(mode="json")}

    @app.post("/api/subscriptions/cancel")
    async def cancel_plan(request: CancelRequest):
        canceled = await db.cancel_user_subscriptions(request.user_id)
        log.info("plan_canceled", user_id=request.user_id, records=canceled)
        return {"canceled": canceled}

    return app


def build_app(settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()
    return create_app(Services.build(settings), manage_lifecycle=True)


if __name__ == "__main__":
    import uvicorn

    _settings = get_settings()
    uvicorn.run(
        "loancall.server:build_app", factory=True, host=_settings.host, port=_settings.port, reload=False
    )
