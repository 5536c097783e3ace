"""Pytest configuration.

Every test gets its own SQLite file and a fresh set of fake providers.
"""
import os
import tempfile
from pathlib import Path
from types import SimpleNamespace

# must be set before db.database builds its module-level engine
os.environ.setdefault("DATABASE_URL", f"sqlite:///{Path(tempfile.mkdtemp()) / 'import.sqlite3'}")

import pytest
from jose import jwt

from api import credit_service
from api.config import JWT_ALG, JWT_SECRET
from db import database
from db.init_db import main as init_db
from sdk.providers import GEO_GRID, LLM_VISIBILITY, REVIEWS, SEARCH_RANK, ProviderError, registry


class _FakeProvider:
    """Records calls. Fails with `fail_with` if set, after `transient_left` retryable errors."""

    def __init__(self) -> None:
        self.calls = []
        self.fail_with = None
        self.transient_left = 0

    def _maybe_fail(self) -> None:
        if self.transient_left > 0:
            self.transient_left -= 1
            raise ProviderError("rate limited (429)", retryable=True)
        if self.fail_with is not None:
            raise self.fail_with


class FakeRankProvider(_FakeProvider):
    def check_rank(self, term, location_code, target_domain, device):
        self.calls.append((term, device))
        self._maybe_fail()
        return {"position": 4, "url": f"https://{target_domain}/", "found": True, "cost_usd": 0.002}


class FakeLLMProvider(_FakeProvider):
    def check_citation(self, question, provider, target_domain):
        self.calls.append((question, provider))
        self._maybe_fail()
        return {"cited": True, "position": 1, "url": f"https://{target_domain}/", "total_citations": 5, "cost_usd": 0.01}


class FakeGeoProvider(_FakeProvider):
    def check_point(self, term, lat, lng, target_place_id):
        self.calls.append((term, lat, lng))
        self._maybe_fail()
        return {"position": 2, "cost_usd": 0.001}


class FakeReviewSource(_FakeProvider):
    def __init__(self) -> None:
        super().__init__()
        self.reviews = []

    def fetch_reviews(self, tenant_id):
        self.calls.append(tenant_id)
        self._maybe_fail()
        return list(self.reviews)


@pytest.fixture(autouse=True)
def ledger_db(tmp_path):
    database.configure(f"sqlite:///{tmp_path / 'ledger.sqlite3'}")
    init_db()
    yield
    database.get_engine().dispose()


@pytest.fixture(autouse=True)
def fakes():
    f = SimpleNamespace(
        rank=FakeRankProvider(),
        llm=FakeLLMProvider(),
        geo=FakeGeoProvider(),
        reviews=FakeReviewSource(),
    )
    registry.set_provider(SEARCH_RANK, f.rank)
    registry.set_provider(LLM_VISIBILITY, f.llm)
    registry.set_provider(GEO_GRID, f.geo)
    registry.set_provider(REVIEWS, f.reviews)
    yield f
    registry.clear()


@pytest.fixture
def fund():
    counter = {"n": 0}

    def _fund(tenant_id: str, included: int = 0, purchased: int = 0):
        for credit_type, amount in (("included", included), ("purchased", purchased)):
            if amount:
                counter["n"] += 1
                credit_service.grant(tenant_id, amount, credit_type=credit_type, idempotency_key=f"fund-{counter['n']}")
        return credit_service.get_balance(tenant_id)

    return _fund


def make_token(tenant_id: str, role: str = "tenant", sub: str = "user-1") -> str:
    return jwt.encode({"type": "access", "tenant_id": tenant_id, "sub": sub, "role": role}, JWT_SECRET, algorithm=JWT_ALG)


@pytest.fixture
def client():
    from fastapi.testclient import TestClient
    from api.app import create_app

    return TestClient(create_app())


@pytest.fixture
def auth():
    def _auth(tenant_id: str, role: str = "tenant") -> dict:
        return {"Authorization": f"Bearer {make_token(tenant_id, role)}"}

    return _auth


KEYWORD_ITEM = {
    "reference_id": "kw-plumber",
    "phrase": "plumber austin",
    "target_domain": "example.com",
    "questions": ["Who is the best plumber in Austin?"],
    "target_place_id": "place-123",
    "center": {"lat": 30.2672, "lng": -97.7431},
    "grid_size": 3,
    "spacing_km": 1.0,
    "aliases": ["pipe fitter"],
}


@pytest.fixture
def keyword_item():
    def _item(**overrides):
        return {**KEYWORD_ITEM, **overrides}

    return _item
