from __future__ import annotations

import sys
from pathlib import Path
from types import SimpleNamespace

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

APP_DIR = Path(__file__).resolve().parents[1] / "app"
if str(APP_DIR) not in sys.path:
    sys.path.insert(0, str(APP_DIR))

import database as db  # noqa: E402
from database import Base, CrewBase, PolicyBase  # noqa: E402


def memory_engine():
    return create_engine(
        "sqlite://",
        future=True,
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )


@pytest.fixture()
def memory_db(monkeypatch):
    """Point every database engine/sessionmaker at its own in-memory SQLite."""
    crew_engine = memory_engine()
    schedule_engine = memory_engine()
    policy_engine = memory_engine()
    CrewBase.metadata.create_all(crew_engine)
    Base.metadata.create_all(schedule_engine)
    PolicyBase.metadata.create_all(policy_engine)
    session_factory = sessionmaker(bind=schedule_engine, expire_on_commit=False, future=True)
    crew_session_factory = sessionmaker(bind=crew_engine, expire_on_commit=False, future=True)
    policy_session_factory = sessionmaker(bind=policy_engine, expire_on_commit=False, future=True)
    monkeypatch.setattr(db, "crew_engine", crew_engine)
    monkeypatch.setattr(db, "schedule_engine", schedule_engine)
    monkeypatch.setattr(db, "policy_engine", policy_engine)
    monkeypatch.setattr(db, "SessionLocal", session_factory)
    monkeypatch.setattr(db, "CrewSessionLocal", crew_session_factory)
    monkeypatch.setattr(db, "PolicySessionLocal", policy_session_factory)
    yield SimpleNamespace(
        session_factory=session_factory,
        crew_session_factory=crew_session_factory,
        policy_session_factory=policy_session_factory,
    )
    crew_engine.dispose()
    schedule_engine.dispose()
    policy_engine.dispose()
