# backend/tests/conftest.py
import os
from datetime import datetime, timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from atelier.main import app
from atelier.api import deps as app_deps
from atelier.core.security import create_access_token
from atelier.engine import proposals as proposal_engine
from atelier.engine.policy import EnginePolicy
from atelier.engine.snapshot import Selection
from atelier.models import Base, Listing, User

# -----------------------------
# Test DB: separate SQLite file
# -----------------------------
TEST_DB_PATH = os.path.abspath(os.path.join(os.path.dirname(__file__), "test_atelier.db"))
TEST_DB_URL = f"sqlite:///{TEST_DB_PATH}"

engine = create_engine(TEST_DB_URL, connect_args={"check_same_thread": False})
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

T0 = datetime(2026, 3, 2, 9, 0, 0)


class Clock:
    """Controllable `now` shared by the API override and engine-level tests."""

    def __init__(self):
        self.now = T0

    def advance(self, **delta) -> datetime:
        self.now += timedelta(**delta)
        return self.now


clock = Clock()


# -----------------------------
# Dependency overrides
# -----------------------------
def override_get_db():
    db = TestingSessionLocal()
    try:
        yield db
    finally:
        db.close()


app.dependency_overrides[app_deps.get_db] = override_get_db
app.dependency_overrides[app_deps.get_now] = lambda: clock.now


# -----------------------------
# Snapshot / selection builders
# -----------------------------
def make_snapshot(**overrides) -> dict:
    snap = {
        "base_price": 100000,
        "currency": "IDR",
        "flow": "standard",
        "general_options": {
            "option_groups": [
                {
                    "id": "style",
                    "title": "Style",
                    "selections": [
                        {"id": "flat", "label": "Flat colour", "price": 0},
                        {"id": "painted", "label": "Painted", "price": 30000},
                    ],
                }
            ],
            "addons": [
                {"id": "bg", "label": "Background", "price": 20000},
                {"id": "commercial", "label": "Commercial use", "price": 50000},
            ],
            "questions": [{"id": "pose", "text": "Any pose in mind?"}],
        },
        "subjects": [
            {
                "id": "character",
                "title": "Character",
                "limit": 3,
                "discount_percent": 10,
                "option_groups": [
                    {
                        "id": "body",
                        "title": "Body",
                        "selections": [
                            {"id": "half", "label": "Half body", "price": 50000},
                            {"id": "full", "label": "Full body", "price": 80000},
                        ],
                    }
                ],
                "addons": [{"id": "prop", "label": "Prop", "price": 5000}],
                "questions": [],
            }
        ],
        "revisions": {
            "type": "standard",
            "policy": {"limit": True, "free": 1, "extra_allowed": True, "fee": 10000},
        },
        "deadline": {"mode": "standard", "min_days": 7, "max_days": 30},
        "cancellation_fee": {"kind": "percentage", "amount": 10},
        "late_penalty_percent": 10,
        "grace_days": 7,
        "allow_contract_change": True,
        "changeable": ["deadline", "description", "generalOptions", "subjectOptions", "referenceImages"],
        "milestones": [],
    }
    snap.update(overrides)
    return snap


def milestone_snapshot(**overrides) -> dict:
    params = dict(
        flow="milestone",
        revisions={
            "type": "milestone",
            "policy": {"limit": True, "free": 1, "extra_allowed": False, "fee": 0},
        },
        milestones=[
            {"title": "Sketch", "percent": 30},
            {"title": "Lineart", "percent": 30},
            {"title": "Colour", "percent": 40},
        ],
    )
    params.update(overrides)
    return make_snapshot(**params)


# base 100,000 + background 20,000, delivered in 14 days
DEFAULT_SELECTION = {
    "general": [{"kind": "addon", "addon_id": "bg"}],
    "subjects": [],
    "deadline_days": 14,
}


# -----------------------------
# Marketplace fixture
# -----------------------------
class Market:
    """Seeded users plus shortcuts that drive the engine to a known state."""

    def __init__(self, db):
        self.db = db
        self.policy = EnginePolicy()
        self.clock = clock
        self.client = self._user("client@example.com")
        self.artist = self._user("artist@example.com")
        self.admin = self._user("admin@example.com", "admin")
        self.outsider = self._user("outsider@example.com")

    @property
    def now(self) -> datetime:
        return self.clock.now

    def _user(self, email: str, role_name: str = "user") -> app_deps.CurrentUser:
        user = User(email=email, display_name=email.split("@")[0], role_name=role_name)
        self.db.add(user)
        self.db.commit()
        return app_deps.CurrentUser(id=user.id, email=user.email, role_name=user.role_name)

    def headers(self, user: app_deps.CurrentUser) -> dict:
        return {"Authorization": f"Bearer {create_access_token(str(user.id), user.role_name)}"}

    def listing(self, snapshot: dict = None, is_active: bool = True) -> Listing:
        listing = Listing(
            artist_id=self.artist.id,
            title="Character commission",
            is_active=is_active,
            snapshot=snapshot or make_snapshot(),
        )
        self.db.add(listing)
        self.db.commit()
        return listing

    def proposal(self, listing: Listing = None, selection: dict = None, description: str = "Red-haired knight"):
        listing = listing or self.listing()
        return proposal_engine.create_proposal(
            self.db, self.client, listing.id, Selection.model_validate(selection or DEFAULT_SELECTION),
            description, [], self.now, self.policy,
        )

    def accepted_proposal(self, listing: Listing = None, selection: dict = None, surcharge: int = 0):
        p = self.proposal(listing, selection)
        proposal_engine.respond(
            self.db, self.artist, p.id,
            proposal_engine.ProposalResponse(role="artist", accept=True, surcharge=surcharge or None),
            self.now, self.policy,
        )
        proposal_engine.respond(
            self.db, self.client, p.id,
            proposal_engine.ProposalResponse(role="client", accept=True),
            self.now, self.policy,
        )
        return p

    def contract(self, snapshot: dict = None, selection: dict = None, surcharge: int = 0):
        listing = self.listing(snapshot)
        p = self.accepted_proposal(listing, selection, surcharge)
        return proposal_engine.pay(self.db, self.client, p.id, self.now, self.policy)


# -----------------------------
# Pytest fixtures
# -----------------------------
@pytest.fixture(scope="session", autouse=True)
def _setup_test_db():
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)
    yield
    engine.dispose()
    if os.path.exists(TEST_DB_PATH):
        os.remove(TEST_DB_PATH)


@pytest.fixture(autouse=True)
def _fresh_schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    clock.now = T0
    yield


@pytest.fixture
def db():
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    return TestClient(app)


@pytest.fixture
def market(db):
    return Market(db)
