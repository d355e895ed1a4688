"""Pytest configuration and shared fixtures."""
from __future__ import annotations

import os

# Application modules build their engine from settings at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")

from contextlib import contextmanager
from typing import Callable, Generator, Iterator

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from linkhooks.models.base import Base
from linkhooks.models.webhook import WebhookEvent, WebhookSubscription
from linkhooks.models.webhook_delivery import WebhookDelivery
from linkhooks.schemas.webhook import SubscriptionCreate
from linkhooks.services.subscription_repository import SubscriptionRepository

# In-memory SQLite by default; point at PostgreSQL to match production
TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite://")

TEST_SECRET = "s3cr3t-minimum-16ch"


@pytest.fixture
def db_engine():
    """Create a fresh database with all tables for each test."""
    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            TEST_DATABASE_URL,
            future=True,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
        )
    else:
        engine = create_engine(TEST_DATABASE_URL, future=True, pool_pre_ping=True)

    Base.metadata.create_all(engine)

    yield engine

    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_maker(db_engine) -> sessionmaker:
    return sessionmaker(bind=db_engine, autoflush=False, autocommit=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_maker) -> Generator[Session, None, None]:
    """Provide a database session for direct repository tests."""
    session = session_maker()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def session_factory(session_maker) -> Callable[[], Iterator[Session]]:
    """Transactional scope bound to the test database, like ``session_scope``."""

    @contextmanager
    def scope() -> Generator[Session, None, None]:
        session = session_maker()
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    return scope


@pytest.fixture
def make_subscription(session_factory):
    """Factory creating a subscription and returning the stored row."""

    def _make(
        owner_id: str = "U1",
        events: list[WebhookEvent] | None = None,
        url: str = "https://receiver.example.com/hook",
        secret: str = TEST_SECRET,
        is_active: bool = True,
    ) -> WebhookSubscription:
        with session_factory() as session:
            return SubscriptionRepository(session).create(
                owner_id,
                SubscriptionCreate(
                    url=url,
                    events=events or [WebhookEvent.PROFILE_VIEW],
                    secret=secret,
                    is_active=is_active,
                ),
            )

    return _make


@pytest.fixture
def load_delivery(session_factory):
    """Read a delivery through a fresh session so no stale state is returned."""

    def _load(delivery_id: str) -> WebhookDelivery | None:
        with session_factory() as session:
            return session.get(WebhookDelivery, delivery_id)

    return _load


@pytest.fixture
def load_subscription(session_factory):
    def _load(subscription_id: str) -> WebhookSubscription | None:
        with session_factory() as session:
            return session.get(WebhookSubscription, subscription_id)

    return _load
