"""Shared fixtures and fake AI adapters for the loan-call tests."""

import asyncio
import hashlib
import hmac
import json
import time

import pytest
import pytest_asyncio

from loancall.config import Settings
from loancall.database import Database
from loancall.extraction import parse_analysis
from loancall.processor import CallProcessor
from loancall.storage import ArtifactStore

# Minimal RIFF/WAVE header, enough for format sniffing.
WAV_BYTES = b"RIFF\x24\x00\x00\x00WAVEfmt " + b"\x00" * 32

LOAN_CALL_TRANSCRIPT = (
    "Client wants a $450,000 conventional 30-year fixed loan on a single-family home"
)

LOAN_CALL_ANALYSIS = json.dumps(
    {
        "summary": "Client is looking for a conventional purchase loan.",
        "key_points": ["$450,000 loan amount", "30-year fixed", "Single-family home"],
        "action_items": ["Send pre-approval checklist"],
        "loan_info": {
            "loan_type": "Conventional",
            "loan_amount": 450000,
            "property_type": "Single Family Home",
            "term": 30,
        },
    }
)


class FakeTranscriber:
    def __init__(self, text="hello world", error=None, delay=0.0):
        self.text = text
        self.error = error
        self.delay = delay
        self.calls = 0

    async def transcribe(self, audio: bytes) -> str:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return self.text


class FakeExtractor:
    """Returns whatever ``parse_analysis`` makes of a canned model reply."""

    def __init__(self, reply=LOAN_CALL_ANALYSIS, error=None, delay=0.0):
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls = 0
        self.transcripts = []

    async def extract(self, transcript: str):
        self.calls += 1
        self.transcripts.append(transcript)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return parse_analysis(self.reply)


def stripe_signature(payload: bytes, secret: str, timestamp=None) -> str:
    """Build a ``Stripe-Signature`` header the way Stripe signs deliveries."""
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.".encode() + payload
    digest = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


@pytest.fixture
def settings(tmp_path):
    return Settings(
        _env_file=None,
        database_path=tmp_path / "test.db",
        storage_dir=tmp_path / "audio",
        log_dir=tmp_path / "logs",
        public_base_url="http://testserver",
        artifact_fetch_timeout=1.0,
        transcription_timeout=0.2,
        extraction_timeout=0.2,
        los_timeout=0.2,
        claim_lease_seconds=60,
        stripe_webhook_secret="whsec_test",
    )


@pytest_asyncio.fixture
async def db(settings):
    database = Database(settings.database_path)
    await database.connect()
    yield database
    await database.close()


@pytest_asyncio.fixture
async def store(settings):
    artifact_store = ArtifactStore(settings.storage_dir, settings.public_base_url)
    yield artifact_store
    await artifact_store.close()


@pytest.fixture
def transcriber():
    return FakeTranscriber()


@pytest.fixture
def extractor():
    return FakeExtractor()


@pytest.fixture
def processor(settings, db, store, transcriber, extractor):
    return CallProcessor(settings, db, store, transcriber, extractor)


@pytest_asyncio.fixture
async def new_call(db, store):
    """Factory: store audio and create a processing job for it."""

    async def _make(audio: bytes = WAV_BYTES, path: str = "calls/test.wav", **kwargs):
        url = await store.put(path, audio)
        return await db.create_call(
            title=kwargs.get("title", "Discovery call"),
            client_name=kwargs.get("client_name", "Jane Borrower"),
            audio_url=url,
            duration=kwargs.get("duration", 95),
            user_id=kwargs.get("user_id", "user-1"),
        )

    return _make
