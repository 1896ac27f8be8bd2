"""
SQLite-backed persistence layer using aiosqlite.
Holds call jobs, loan applications and subscriptions, and provides the
conditional (compare-and-set) updates the orchestrators rely on.
"""

from __future__ import annotations

import functools
import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

import aiosqlite
import structlog

from loancall.errors import StoreUnavailable
from loancall.models import (
    ApplicationStatus,
    CallAnalysis,
    CallJob,
    CallStatus,
    LoanApplication,
    LoanInfo,
    Subscription,
    SUBSCRIPTION_ACTIVE,
    SUBSCRIPTION_CANCELED,
    utcnow,
)

log = structlog.get_logger(__name__)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS calls (
    id                TEXT PRIMARY KEY,
    title             TEXT NOT NULL,
    client_name       TEXT NOT NULL,
    audio_url         TEXT NOT NULL,
    duration          INTEGER NOT NULL DEFAULT 0 CHECK (duration >= 0),
    status            TEXT NOT NULL DEFAULT 'processing'
                      CHECK (status IN ('processing', 'completed', 'error')),
    transcript        TEXT,
    summary           TEXT,
    key_points        TEXT,
    action_items      TEXT,
    loan_info         TEXT,
    error_message     TEXT,
    claim_token       TEXT,
    claim_expires_at  TEXT,
    user_id           TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS loan_applications (
    id              TEXT PRIMARY KEY,
    client_name     TEXT NOT NULL,
    client_email    TEXT,
    client_phone    TEXT,
    loan_amount     REAL CHECK (loan_amount IS NULL OR loan_amount > 0),
    loan_type       TEXT,
    property_type   TEXT,
    interest_rate   REAL CHECK (interest_rate IS NULL OR interest_rate >= 0),
    term            INTEGER CHECK (term IS NULL OR term > 0),
    call_id         TEXT REFERENCES calls(id),
    status          TEXT NOT NULL DEFAULT 'Review needed'
                    CHECK (status IN ('Review needed', 'Ready for LOS', 'Pushed to Encompass')),
    encompass_id    TEXT,
    user_id         TEXT,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    CHECK ((status = 'Pushed to Encompass') = (encompass_id IS NOT NULL))
);

CREATE TABLE IF NOT EXISTS subscriptions (
    id                      TEXT PRIMARY KEY,
    user_id                 TEXT NOT NULL,
    plan_id                 TEXT NOT NULL,
    status                  TEXT NOT NULL,
    stripe_subscription_id  TEXT UNIQUE,
    stripe_customer_id      TEXT,
    created_at              TEXT NOT NULL,
    updated_at              TEXT
);

CREATE INDEX IF NOT EXISTS idx_calls_user ON calls(user_id);
CREATE INDEX IF NOT EXISTS idx_calls_status ON calls(status);
CREATE INDEX IF NOT EXISTS idx_applications_user ON loan_applications(user_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_user ON subscriptions(user_id);
CREATE INDEX IF NOT EXISTS idx_subscriptions_customer ON subscriptions(stripe_customer_id);
"""

_APPLICATION_COLUMNS = (
    "client_name",
    "client_email",
    "client_phone",
    "loan_amount",
    "loan_type",
    "property_type",
    "interest_rate",
    "term",
    "status",
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _iso(dt: datetime) -> str:
    return dt.isoformat(timespec="microseconds")


def _store_op(fn):
    """Surface driver failures as StoreUnavailable."""

    @functools.wraps(fn)
    async def wrapper(self, *args, **kwargs):
        try:
            return await fn(self, *args, **kwargs)
        except aiosqlite.Error as e:
            log.error("store_operation_failed", operation=fn.__name__, error=str(e))
            raise StoreUnavailable(f"{fn.__name__} failed: {e}") from e

    return wrapper


class Database:
    """Async SQLite wrapper for call jobs, loan applications and subscriptions."""

    def __init__(self, db_path: Path):
        self._path = db_path
        self._db: Optional[aiosqlite.Connection] = None

    async def connect(self) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        self._db = await aiosqlite.connect(str(self._path))
        self._db.row_factory = aiosqlite.Row
        await self._db.execute("PRAGMA foreign_keys = ON")
        await self._db.executescript(_SCHEMA)
        await self._db.commit()

    async def close(self) -> None:
        if self._db:
            await self._db.close()
            self._db = None

    # ── Call jobs ───────────────────────────────────────────────

    @_store_op
    async def create_call(
        self,
        title: str,
        client_name: str,
        audio_url: str,
        duration: int = 0,
        user_id: Optional[str] = None,
    ) -> CallJob:
        """Insert a new job in the ``processing`` state."""
        job = CallJob(
            id=_new_id(),
            title=title,
            client_name=client_name,
            audio_url=audio_url,
            duration=duration,
            user_id=user_id,
        )
        await self._db.execute(
            """
            INSERT INTO calls
                (id, title, client_name, audio_url, duration, status, user_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                job.id,
                job.title,
                job.client_name,
                job.audio_url,
                job.duration,
                job.status.value,
                job.user_id,
                _iso(job.created_at),
                _iso(job.updated_at),
            ),
        )
        await self._db.commit()
        return job

    @_store_op
    async def get_call(self, call_id: str) -> Optional[CallJob]:
        cursor = await self._db.execute("SELECT * FROM calls WHERE id = ?", (call_id,))
        row = await cursor.fetchone()
        return self._row_to_call(row) if row else None

    @_store_op
    async def list_calls(self, user_id: Optional[str] = None, limit: int = 100) -> list[CallJob]:
        if user_id is None:
            cursor = await self._db.execute(
                "SELECT * FROM calls ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM calls WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            )
        return [self._row_to_call(r) for r in await cursor.fetchall()]

    @_store_op
    async def claim_call(self, call_id: str, token: str, lease_seconds: int) -> bool:
        """
        Take the processing lease on a job.

        Succeeds only while the job is still ``processing`` and nobody holds
        a live lease. Returns False when another run owns the job or it has
        already reached a terminal state.
        """
        now = utcnow()
        cursor = await self._db.execute(
            """
            UPDATE calls
            SET status = 'processing',
                claim_token = ?,
                claim_expires_at = ?,
                updated_at = ?
            WHERE id = ?
              AND status = 'processing'
              AND (claim_token IS NULL OR claim_expires_at < ?)
            """,
            (
                token,
                _iso(now + timedelta(seconds=lease_seconds)),
                _iso(now),
                call_id,
                _iso(now),
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    @_store_op
    async def finish_call(
        self,
        call_id: str,
        token: str,
        status: CallStatus,
        transcript: Optional[str] = None,
        analysis: Optional[CallAnalysis] = None,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Terminal commit: status and every derived field in one statement,
        applied only while ``token`` still holds the lease.
        """
        if not status.is_terminal:
            raise ValueError("finish_call requires a terminal status")
        cursor = await self._db.execute(
            """
            UPDATE calls
            SET status = ?,
                transcript = ?,
                summary = ?,
                key_points = ?,
                action_items = ?,
                loan_info = ?,
                error_message = ?,
                claim_token = NULL,
                claim_expires_at = NULL,
                updated_at = ?
            WHERE id = ? AND status = 'processing' AND claim_token = ?
            """,
            (
                status.value,
                transcript,
                analysis.summary if analysis else None,
                json.dumps(analysis.key_points) if analysis else None,
                json.dumps(analysis.action_items) if analysis else None,
                json.dumps(analysis.loan_info.to_json_dict()) if analysis else None,
                error_message,
                _iso(utcnow()),
                call_id,
                token,
            ),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    @_store_op
    async def get_stale_calls(self, limit: int = 50) -> list[CallJob]:
        """Processing jobs nobody holds a live lease on."""
        cursor = await self._db.execute(
            """
            SELECT * FROM calls
            WHERE status = 'processing'
              AND (claim_token IS NULL OR claim_expires_at < ?)
            ORDER BY created_at ASC
            LIMIT ?
            """,
            (_iso(utcnow()), limit),
        )
        return [self._row_to_call(r) for r in await cursor.fetchall()]

    @_store_op
    async def count_calls_by_status(self) -> dict[str, int]:
        cursor = await self._db.execute(
            "SELECT status, COUNT(*) AS cnt FROM calls GROUP BY status"
        )
        return {row["status"]: row["cnt"] for row in await cursor.fetchall()}

    # ── Loan applications ───────────────────────────────────────

    @_store_op
    async def create_application(self, application: LoanApplication) -> LoanApplication:
        await self._db.execute(
            """
            INSERT INTO loan_applications
                (id, client_name, client_email, client_phone, loan_amount, loan_type,
                 property_type, interest_rate, term, call_id, status, encompass_id,
                 user_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                application.id,
                application.client_name,
                application.client_email,
                application.client_phone,
                application.loan_amount,
                application.loan_type,
                application.property_type,
                application.interest_rate,
                application.term,
                application.call_id,
                application.status.value,
                application.encompass_id,
                application.user_id,
                _iso(application.created_at),
                _iso(application.updated_at),
            ),
        )
        await self._db.commit()
        return application

    @_store_op
    async def get_application(self, application_id: str) -> Optional[LoanApplication]:
        cursor = await self._db.execute(
            "SELECT * FROM loan_applications WHERE id = ?", (application_id,)
        )
        row = await cursor.fetchone()
        return self._row_to_application(row) if row else None

    @_store_op
    async def list_applications(
        self, user_id: Optional[str] = None, limit: int = 100
    ) -> list[LoanApplication]:
        if user_id is None:
            cursor = await self._db.execute(
                "SELECT * FROM loan_applications ORDER BY created_at DESC LIMIT ?", (limit,)
            )
        else:
            cursor = await self._db.execute(
                "SELECT * FROM loan_applications WHERE user_id = ? ORDER BY created_at DESC LIMIT ?",
                (user_id, limit),
            )
        return [self._row_to_application(r) for r in await cursor.fetchall()]

    @_store_op
    async def update_application(self, application_id: str, fields: dict) -> bool:
        """
        Apply officer edits. Pushed applications are frozen; returns False if
        the row is missing or already pushed.
        """
        unknown = set(fields) - set(_APPLICATION_COLUMNS)
        if unknown:
            raise ValueError(f"not editable: {sorted(unknown)}")
        if not fields:
            return True
        values = [
            v.value if isinstance(v, ApplicationStatus) else v for v in fields.values()
        ]
        assignments = ", ".join(f"{col} = ?" for col in fields)
        cursor = await self._db.execute(
            f"""
            UPDATE loan_applications
            SET {assignments}, updated_at = ?
            WHERE id = ? AND status != 'Pushed to Encompass'
            """,
            (*values, _iso(utcnow()), application_id),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    @_store_op
    async def mark_application_pushed(self, application_id: str, encompass_id: str) -> bool:
        """Set pushed status and external id together, once."""
        cursor = await self._db.execute(
            """
            UPDATE loan_applications
            SET status = 'Pushed to Encompass',
                encompass_id = ?,
                updated_at = ?
            WHERE id = ? AND status != 'Pushed to Encompass'
            """,
            (encompass_id, _iso(utcnow()), application_id),
        )
        await self._db.commit()
        return cursor.rowcount == 1

    # ── Subscriptions ───────────────────────────────────────────

    @_store_op
    async def upsert_subscription(
        self,
        user_id: str,
        plan_id: str,
        status: str,
        stripe_subscription_id: str,
        stripe_customer_id: Optional[str] = None,
    ) -> None:
        """Insert or update keyed on the external subscription ID (idempotent)."""
        now = _iso(utcnow())
        await self._db.execute(
            """
            INSERT INTO subscriptions
                (id, user_id, plan_id, status, stripe_subscription_id,
                 stripe_customer_id, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            ON CONFLICT(stripe_subscription_id) DO UPDATE SET
                user_id = excluded.user_id,
                plan_id = excluded.plan_id,
                status = excluded.status,
                stripe_customer_id = excluded.stripe_customer_id,
                updated_at = excluded.updated_at
            """,
            (_new_id(), user_id, plan_id, status, stripe_subscription_id, stripe_customer_id, now, now),
        )
        await self._db.commit()

    @_store_op
    async def cancel_subscription(self, stripe_subscription_id: str) -> bool:
        cursor = await self._db.execute(
            """
            UPDATE subscriptions
            SET status = ?, updated_at = ?
            WHERE stripe_subscription_id = ?
            """,
            (SUBSCRIPTION_CANCELED, _iso(utcnow()), stripe_subscription_id),
        )
        await self._db.commit()
        return cursor.rowcount > 0

    @_store_op
    async def get_subscription_by_external_id(
        self, stripe_subscription_id: str
    ) -> Optional[Subscription]:
        cursor = await self._db.execute(
            "SELECT * FROM subscriptions WHERE stripe_subscription_id = ?",
            (stripe_subscription_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_subscription(row) if row else None

    @_store_op
    async def get_user_subscription(self, user_id: str) -> Optional[Subscription]:
        """Most recently touched subscription for a user."""
        cursor = await self._db.execute(
            """
            SELECT * FROM subscriptions WHERE user_id = ?
            ORDER BY COALESCE(updated_at, created_at) DESC
            LIMIT 1
            """,
            (user_id,),
        )
        row = await cursor.fetchone()
        return self._row_to_subscription(row) if row else None

    @_store_op
    async def find_user_by_customer(self, stripe_customer_id: str) -> Optional[str]:
        cursor = await self._db.execute(
            "SELECT user_id FROM subscriptions WHERE stripe_customer_id = ? LIMIT 1",
            (stripe_customer_id,),
        )
        row = await cursor.fetchone()
        return row["user_id"] if row else None

    @_store_op
    async def activate_user_plan(self, user_id: str, plan_id: str) -> Subscription:
        """Self-service plan selection: update the user's record or create one."""
        now = _iso(utcnow())
        cursor = await self._db.execute(
            """
            UPDATE subscriptions
            SET plan_id = ?, status = ?, updated_at = ?
            WHERE id = (
                SELECT id FROM subscriptions WHERE user_id = ?
                ORDER BY COALESCE(updated_at, created_at) DESC LIMIT 1
            )
            """,
            (plan_id, SUBSCRIPTION_ACTIVE, now, user_id),
        )
        if cursor.rowcount == 0:
            await self._db.execute(
                """
                INSERT INTO subscriptions (id, user_id, plan_id, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (_new_id(), user_id, plan_id, SUBSCRIPTION_ACTIVE, now, now),
            )
        await self._db.commit()
        return await self.get_user_subscription(user_id)

    @_store_op
    async def cancel_user_subscriptions(self, user_id: str) -> int:
        cursor = await self._db.execute(
            """
            UPDATE subscriptions
            SET status = ?, updated_at = ?
            WHERE user_id = ? AND status != ?
            """,
            (SUBSCRIPTION_CANCELED, _iso(utcnow()), user_id, SUBSCRIPTION_CANCELED),
        )
        await self._db.commit()
        return cursor.rowcount

    # ── Helpers ─────────────────────────────────────────────────

    @staticmethod
    def _json_or_none(raw: Optional[str]):
        return json.loads(raw) if raw is not None else None

    @classmethod
    def _row_to_call(cls, row) -> CallJob:
        loan_info = cls._json_or_none(row["loan_info"])
        return CallJob(
            id=row["id"],
            title=row["title"],
            client_name=row["client_name"],
            audio_url=row["audio_url"],
            duration=row["duration"],
            status=CallStatus(row["status"]),
            transcript=row["transcript"],
            summary=row["summary"],
            key_points=cls._json_or_none(row["key_points"]),
            action_items=cls._json_or_none(row["action_items"]),
            loan_info=LoanInfo(**loan_info) if loan_info is not None else None,
            error_message=row["error_message"],
            user_id=row["user_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_application(row) -> LoanApplication:
        return LoanApplication(
            id=row["id"],
            client_name=row["client_name"],
            client_email=row["client_email"],
            client_phone=row["client_phone"],
            loan_amount=row["loan_amount"],
            loan_type=row["loan_type"],
            property_type=row["property_type"],
            interest_rate=row["interest_rate"],
            term=row["term"],
            call_id=row["call_id"],
            status=ApplicationStatus(row["status"]),
            encompass_id=row["encompass_id"],
            user_id=row["user_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
        )

    @staticmethod
    def _row_to_subscription(row) -> Subscription:
        return Subscription(
            id=row["id"],
            user_id=row["user_id"],
            plan_id=row["plan_id"],
            status=row["status"],
            stripe_subscription_id=row["stripe_subscription_id"],
            stripe_customer_id=row["stripe_customer_id"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]) if row["updated_at"] else None,
        )
