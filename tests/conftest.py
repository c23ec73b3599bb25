from __future__ import annotations

import os

# Settings are read at import time; keep tests off any real database or model
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("GEMINI_API_KEY", "test-key")
os.environ.setdefault("JWT_SECRET_KEY", "konvo-test-secret")

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
from fastapi.testclient import TestClient
from jose import jwt
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from konvo.attempts import AttemptStore
from konvo.db import Base
from konvo.facade import AssessmentFacade, get_facade
from konvo.llm_client import StreamDelta, ToolCallFragment
from konvo.main import app
from konvo.settings import settings


class FakeLLMClient:
    """Scripted stand-in for LLMClient."""

    def __init__(self) -> None:
        self.stream_script: List[Any] = []
        self.judge_output: Optional[str] = None
        self.judge_error: Optional[Exception] = None
        self.stream_calls: List[Dict[str, Any]] = []
        self.judge_calls: List[Dict[str, Any]] = []
        self.closed = 0
        self.lifecycle: List[str] = []

    async def complete_json(self, messages, *, schema_name, schema, model=None):
        self.judge_calls.append({"messages": messages, "schema_name": schema_name, "schema": schema})
        if self.judge_error is not None:
            raise self.judge_error
        return self.judge_output

    async def stream_chat(self, messages, *, tools=None, model=None):
        self.stream_calls.append({"messages": messages, "tools": tools})
        try:
            for item in self.stream_script:
                if isinstance(item, Exception):
                    raise item
                yield item
        finally:
            self.lifecycle.append("stream closed")

    async def aclose(self) -> None:
        self.closed += 1
        self.lifecycle.append("client closed")


def create_access_token(claims: Dict[str, Any], expires_in: timedelta = timedelta(minutes=30)) -> str:
    """Mint a token the way the external identity service does."""
    payload = {**claims, "exp": datetime.now(timezone.utc) + expires_in}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def text(chunk: str) -> StreamDelta:
    return StreamDelta(text=chunk)


def tool(arguments: str, *, name: Optional[str] = None, call_id: Optional[str] = None, index: int = 0) -> StreamDelta:
    return StreamDelta(tool_calls=[ToolCallFragment(index=index, id=call_id, name=name, arguments=arguments)])


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    Base.metadata.create_all(bind=eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, future=True)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def store(db):
    return AttemptStore(db)


@pytest.fixture
def fake_llm():
    return FakeLLMClient()


@pytest.fixture
def client(session_factory, fake_llm):
    def _facade():
        session = session_factory()
        try:
            yield AssessmentFacade(session, client_factory=lambda: fake_llm, session_factory=session_factory)
        finally:
            session.close()

    app.dependency_overrides[get_facade] = _facade
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def student_headers():
    return {"Authorization": f"Bearer {create_access_token({'sub': 'student-1'})}"}


@pytest.fixture
def teacher_headers():
    token = create_access_token({"sub": "teacher-1", "role": "teacher"})
    return {"Authorization": f"Bearer {token}"}
