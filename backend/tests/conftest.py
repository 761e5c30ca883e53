"""
Pytest configuration and fixtures for backend tests.

Provides:
- In-memory SQLite engine and sessions (aiosqlite)
- A minimal internal invoice document
- Self-signed RSA certificate material for signing tests
- An httpx.MockTransport-backed MyInvois client factory
"""
import copy
from datetime import datetime, timedelta, timezone
from typing import AsyncGenerator

import httpx
import pytest
import pytest_asyncio
from cryptography import x509
from cryptography.hazmat.backends import default_backend
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.x509.oid import NameOID
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.pool import StaticPool

from einvoice.core.database import Base
from einvoice.core.rate_limit import RateLimiterRegistry
from einvoice.integrations.myinvois.client import MyInvoisClient
import einvoice.models  # noqa: F401


# Single shared connection so every session sees the same in-memory tables
TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"


@pytest_asyncio.fixture(scope="function")
async def test_engine():
    """Create a test database engine."""
    engine = create_async_engine(
        TEST_DATABASE_URL,
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
        echo=False,
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)

    await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def session_factory(test_engine) -> async_sessionmaker:
    return async_sessionmaker(
        test_engine,
        class_=AsyncSession,
        expire_on_commit=False,
    )


@pytest_asyncio.fixture(scope="function")
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    """Create a database session for tests."""
    async with session_factory() as session:
        yield session


MINIMAL_DOCUMENT = {
    "header": {
        "invoiceNo": "INV001",
        "invoiceType": "01",
        "documentCurrencyCode": "MYR",
        "taxCurrencyCode": "MYR",
        "issueDate": "2026-10-15",
        "issueTime": "10:00:00Z",
    },
    "supplier": {
        "name": "Syarikat Contoh Sdn Bhd",
        "identifications": [
            {"schemeId": "TIN", "id": "C12345678901"},
            {"schemeId": "BRN", "id": "201901234567"},
            {"schemeId": "SST", "id": "NA"},
            {"schemeId": "TTX", "id": "NA"},
        ],
        "address": {
            "line": "No. 12, Jalan Ampang",
            "city": "Kuala Lumpur",
            "postcode": "50450",
            "state": "Wilayah Persekutuan Kuala Lumpur",
            "country": "MYS",
        },
        "contact": {"phone": "+60123456789", "email": "billing@contoh.my"},
        "industryClassificationCode": "46510",
        "industryName": "Wholesale of computer hardware",
    },
    "buyer": {
        "name": "Pembeli Berhad",
        "identifications": [
            {"schemeId": "TIN", "id": "C98765432109"},
            {"schemeId": "BRN", "id": "200801012345"},
        ],
        "address": {
            "line": "Lot 5 Persiaran Teknologi",
            "city": "Shah Alam",
            "postcode": "40000",
            "state": "Selangor",
            "country": "MYS",
        },
        "contact": {"phone": "+60387654321", "email": "ap@pembeli.my"},
    },
    "items": [
        {
            "lineId": "1",
            "quantity": 1,
            "unitCode": "C62",
            "lineExtensionAmount": 100.00,
            "taxTotal": {
                "taxAmount": 0,
                "taxSubtotal": [{
                    "taxableAmount": 100.00,
                    "taxAmount": 0,
                    "taxCategory": {"id": "06", "percent": 0},
                }],
            },
            "item": {
                "description": "Laptop stand",
                "classification": {"code": "022", "type": "CLASS"},
                "originCountry": "MYS",
            },
            "price": {"amount": 100.00, "extension": 100.00},
        }
    ],
    "summary": {
        "taxTotal": {
            "taxAmount": 0,
            "taxSubtotal": [{
                "taxableAmount": 100.00,
                "taxAmount": 0,
                "taxCategory": {"id": "06"},
            }],
        },
        "amounts": {
            "lineExtensionAmount": 100.00,
            "taxExclusiveAmount": 100.00,
            "taxInclusiveAmount": 100.00,
            "payableAmount": 100.00,
        },
    },
}


@pytest.fixture
def minimal_document() -> dict:
    """A one-line invoice, INV001, payable 100.00 MYR."""
    return copy.deepcopy(MINIMAL_DOCUMENT)


def make_document(invoice_no: str, **buyer_identifications) -> dict:
    """Copy of the minimal document with another number and buyer ids."""
    document = copy.deepcopy(MINIMAL_DOCUMENT)
    document["header"]["invoiceNo"] = invoice_no
    if buyer_identifications:
        document["buyer"]["identifications"] = [
            {"schemeId": scheme, "id": value} for scheme, value in buyer_identifications.items()
        ]
    return document


def generate_test_certificate(common_name: str = "Test Signer"):
    """Generate a self-signed RSA certificate and key for testing."""
    private_key = rsa.generate_private_key(
        public_exponent=65537,
        key_size=2048,
        backend=default_backend(),
    )

    subject = issuer = x509.Name([
        x509.NameAttribute(NameOID.COMMON_NAME, common_name),
        x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org Sdn Bhd"),
        x509.NameAttribute(NameOID.COUNTRY_NAME, "MY"),
    ])

    now = datetime.now(timezone.utc)
    cert = x509.CertificateBuilder().subject_name(
        subject
    ).issuer_name(
        issuer
    ).public_key(
        private_key.public_key()
    ).serial_number(
        x509.random_serial_number()
    ).not_valid_before(
        now - timedelta(days=1)
    ).not_valid_after(
        now + timedelta(days=365)
    ).add_extension(
        x509.KeyUsage(
            digital_signature=True,
            content_commitment=True,
            key_encipherment=False,
            data_encipherment=False,
            key_agreement=False,
            key_cert_sign=False,
            crl_sign=False,
            encipher_only=False,
            decipher_only=False,
        ),
        critical=True,
    ).sign(private_key, hashes.SHA256(), backend=default_backend())

    return cert, private_key


class SleepRecorder:
    """Stands in for asyncio.sleep and records requested delays."""

    def __init__(self):
        self.calls = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class AuthorityStub:
    """
    Routes MockTransport requests to per-path handlers and records calls.

    Handlers receive the httpx.Request and return an httpx.Response. The
    token endpoint answers with a fixed token unless overridden.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.handlers = {}

    def on(self, method: str, path: str, handler):
        self.handlers[(method, path)] = handler
        return self

    def calls_to(self, path_prefix: str) -> list[httpx.Request]:
        return [r for r in self.requests if r.url.path.startswith(path_prefix)]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get((request.method, request.url.path))
        if handler is not None:
            return handler(request)
        if request.url.path == "/connect/token":
            return httpx.Response(200, json={"access_token": "test-token", "expires_in": 3600})
        return httpx.Response(404, json={"error": {"code": "NotFound", "message": "no stub"}})


@pytest.fixture
def authority() -> AuthorityStub:
    return AuthorityStub()


@pytest.fixture
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest_asyncio.fixture
async def myinvois_client(authority, sleep_recorder) -> AsyncGenerator[MyInvoisClient, None]:
    """MyInvois client wired to the authority stub; backoff waits land in sleep_recorder."""
    client = MyInvoisClient(
        base_url="https://authority.test",
        client_id="client-id",
        client_secret="client-secret",
        tin="C12345678901",
        limiters=RateLimiterRegistry(sleep=SleepRecorder()),
        sleep=sleep_recorder,
        transport=httpx.MockTransport(authority),
    )
    yield client
    await client.close()
