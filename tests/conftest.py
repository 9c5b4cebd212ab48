from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

import models  # noqa: F401
from config import Config
from db import Base, DocumentStore, make_engine
from services.credentials import CredentialRegistry
from services.employees import EmployeeStore
from services.onboarding import OnboardingService


class FakeClock:
    def __init__(self, start: datetime | None = None):
        self.now = start or datetime(2024, 3, 1, 9, 0, 0, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture()
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture()
def cfg(monkeypatch) -> Config:
    for name in (
        "SETUP_CODE_PREFIX",
        "SETUP_CODE_TTL_HOURS",
        "MAGIC_LINK_TTL_MINUTES",
        "REFRESH_TOKEN_TTL_DAYS",
        "API_KEY_TTL_DAYS",
    ):
        monkeypatch.delenv(name, raising=False)
    return Config()


@pytest.fixture()
def engine(tmp_path):
    bound = make_engine(f"sqlite:///{tmp_path / 'test.db'}")
    Base.metadata.create_all(bind=bound)
    yield bound
    bound.dispose()


@pytest.fixture()
def store(engine) -> DocumentStore:
    return DocumentStore.from_engine(engine)


@pytest.fixture()
def registry(store, cfg, clock) -> CredentialRegistry:
    return CredentialRegistry(store, cfg, clock=clock)


@pytest.fixture()
def employees(store, clock) -> EmployeeStore:
    return EmployeeStore(store, clock=clock)


@pytest.fixture()
def onboarding(employees) -> OnboardingService:
    return OnboardingService(employees)
