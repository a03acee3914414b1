import os

os.environ.setdefault("ENCODE_KEY", "test-encode-key")
os.environ.setdefault("ADMIN_PASSWORD", "admin-secret")
os.environ.setdefault("DOC_PASSWORD", "doc-secret")
os.environ["DATABASE_URL"] = "sqlite://"

import pytest
from eth_account import Account
from eth_account.messages import encode_defunct
from fastapi.testclient import TestClient
from pycardano import Address, Network, PaymentSigningKey, PaymentVerificationKey
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator

from main import app
from app.core.dependencies import get_activity_log
from app.db.base import Base
from app.db.session import get_db, init_db
from app.services.activity_log import ActivityLog
from app.services.auth_service import AuthService


# Create in-memory SQLite database for testing
SQLALCHEMY_DATABASE_URL = "sqlite:///:memory:"
engine = create_engine(
    SQLALCHEMY_DATABASE_URL,
    connect_args={"check_same_thread": False},
    poolclass=StaticPool,
)
TestingSessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

ADMIN_AUTH = ("admin", "admin-secret")


def override_get_db() -> Generator:
    """Override database dependency for testing"""
    try:
        db = TestingSessionLocal()
        yield db
    finally:
        db.close()


class FakeClock:
    """Epoch-seconds clock the tests move by hand"""

    def __init__(self, now: int = 1_763_461_800):
        self.now = now

    def __call__(self) -> int:
        return self.now

    def advance(self, seconds: int) -> None:
        self.now += seconds


@pytest.fixture(autouse=True)
def tables() -> Generator:
    """Fresh auth and activity tables for every test"""
    init_db(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db() -> Generator[Session, None, None]:
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def activity_log() -> ActivityLog:
    return ActivityLog(
        session_factory=TestingSessionLocal,
        buffer_size=100,
        retry_base_seconds=0.01,
        retry_max_seconds=0.05,
        flush_interval_seconds=0.01,
    )


@pytest.fixture
def auth_service(db: Session, activity_log: ActivityLog, clock: FakeClock) -> AuthService:
    return AuthService(db, activity_log, clock=clock)


@pytest.fixture
def client(activity_log: ActivityLog) -> TestClient:
    """Create a test client for the FastAPI application"""
    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_activity_log] = lambda: activity_log
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def evm_account():
    return Account.create()


@pytest.fixture
def other_evm_account():
    return Account.create()


@pytest.fixture
def sign_evm():
    """Sign a message the way a browser wallet's personal_sign does"""

    def sign(account, message: str) -> str:
        signed = Account.sign_message(encode_defunct(text=message), private_key=account.key)
        return "0x" + bytes(signed.signature).hex()

    return sign


class CardanoWallet:
    def __init__(self):
        self.signing_key = PaymentSigningKey.generate()
        self.verification_key = PaymentVerificationKey.from_signing_key(self.signing_key)
        self.address = Address(
            payment_part=self.verification_key.hash(), network=Network.TESTNET
        ).encode()
        self.public_key = self.verification_key.payload.hex()

    def sign(self, message: str) -> str:
        return self.signing_key.sign(message.encode()).hex()


@pytest.fixture
def cardano_wallet() -> CardanoWallet:
    return CardanoWallet()


@pytest.fixture
def admin_auth():
    return ADMIN_AUTH


@pytest.fixture
def other_cardano_wallet() -> CardanoWallet:
    return CardanoWallet()


@pytest.fixture
def session_factory():
    return TestingSessionLocal
