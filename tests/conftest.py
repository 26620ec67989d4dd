import json
import sys
from pathlib import Path
import pytest

ROOT_DIR = Path(__file__).resolve().parents[1]
if str(ROOT_DIR) not in sys.path:
    sys.path.insert(0, str(ROOT_DIR))

from main import create_app, db  # noqa: E402
from caradvisor.exceptions import InvalidCredentialError  # noqa: E402
from caradvisor.identity import UserIdentity  # noqa: E402


VALID_MODEL_OUTPUT = json.dumps(
    [
        {"model": "Toyota Corolla", "why": "Ekonomik ve dayanıklı.", "segment": "C-Sedan"},
        {"model": "Renault Clio", "why": "Şehir içi için pratik.", "segment": "B-Hatchback"},
    ],
    ensure_ascii=False,
)

TEST_CONFIG = {
    "DATABASE_URL": "sqlite:///:memory:",
    "LEDGER_BACKEND": "sql",
    "INITIAL_CREDITS": 7,
    "RATE_LIMIT_MAX_REQUESTS": 20,
    "RATE_LIMIT_WINDOW_SEC": 60,
    "REFUND_ON_UPSTREAM_FAILURE": True,
    "PRODUCT_CATALOG": "",
    "GEMINI_API_KEY": "",
    "SKIP_CREATE_ALL": False,
}


class FakeVerifier:
    """Token -> identity table standing in for the JWKS verifier."""

    configured = True

    def __init__(self):
        self.tokens = {
            "token-alice": UserIdentity(uid="alice", email="alice@example.com"),
            "token-bob": UserIdentity(uid="bob", email="bob@example.com"),
        }

    def verify(self, credential):
        identity = self.tokens.get(credential)
        if identity is None:
            raise InvalidCredentialError()
        return identity


class FakeGenerator:
    def __init__(self, response=VALID_MODEL_OUTPUT):
        self.response = response
        self.error = None
        self.prompts = []

    def generate(self, prompt):
        self.prompts.append(prompt)
        if self.error is not None:
            raise self.error
        return self.response


def auth_headers(token="token-alice"):
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture
def verifier():
    return FakeVerifier()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def app(verifier, generator):
    app = create_app(dict(TEST_CONFIG), verifier=verifier, generator=generator)
    app.config.update(TESTING=True)
    yield app
    with app.app_context():
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def ledger(app):
    return app.extensions["credit_ledger"]
