"""Pytest configuration.

authgate lee los settings de env al importarse, así que los valores de test
(SQLite, costos de hash bajos, clave Fernet efímera) se fijan acá antes de
importar cualquier módulo del paquete.
"""

import os

from cryptography.fernet import Fernet

os.environ["DATABASE_URL"] = "sqlite+aiosqlite://"
os.environ.setdefault("TOTP_ENCRYPTION_KEYS", Fernet.generate_key().decode())
os.environ["PASSWORD_ARGON2_TIME_COST"] = "1"
os.environ["PASSWORD_ARGON2_MEMORY_COST"] = "1024"
os.environ["PASSWORD_ARGON2_PARALLELISM"] = "1"
os.environ["RECOVERY_CODE_HASH_ROUNDS"] = "1000"
os.environ["WEBAUTHN_RP_ID"] = "localhost"
os.environ["WEBAUTHN_ORIGIN"] = "http://localhost:5173"
os.environ["MFA_MAX_ATTEMPTS"] = "3"
os.environ["MAINTENANCE_INTERVAL_SECONDS"] = "0"

import json
import struct
from typing import AsyncGenerator

import pytest
import pytest_asyncio
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import ec
from fido2 import cbor
from fido2.cose import ES256
from fido2.utils import sha256, websafe_encode
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from authgate.core.config import settings
from authgate.core.db import Base, get_db
from authgate.core.events import HIGH, RequestContext
from authgate.core.security import hash_password
from authgate.main import app
from authgate.models.user import User
from authgate.services.auth_flow import AuthFlow


class RecordingSink:
    """Event sink que guarda lo emitido para poder inspeccionarlo."""

    def __init__(self):
        self.events: list[dict] = []

    def emit(self, event, **fields):
        self.events.append({"event": event, **fields})

    def names(self) -> list[str]:
        return [e["event"] for e in self.events]

    def high(self) -> list[str]:
        return [e["event"] for e in self.events if e["severity"] == HIGH]


class DenyingRateLimiter:
    def __init__(self, deny_prefix: str):
        self.deny_prefix = deny_prefix

    async def check_and_consume(self, key: str) -> bool:
        return not key.startswith(self.deny_prefix)


class Clock:
    """Reloj manual para TOTP (segundos epoch)."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeAuthenticator:
    """
    Autenticador WebAuthn en software: clave EC P-256, attestation "none" y
    firmas ECDSA/SHA-256 como las de una llave real.
    """

    def __init__(self, rp_id: str | None = None, origin: str | None = None):
        self.private_key = ec.generate_private_key(ec.SECP256R1())
        self.credential_id = os.urandom(32)
        self.rp_id = rp_id or settings.WEBAUTHN_RP_ID
        self.origin = origin or settings.WEBAUTHN_ORIGIN
        self.sign_count = 0

    @property
    def id(self) -> str:
        return websafe_encode(self.credential_id)

    def _auth_data(self, flags: int, counter: int, attested: bytes = b"", rp_id: str | None = None) -> bytes:
        return sha256((rp_id or self.rp_id).encode()) + bytes([flags]) + struct.pack(">I", counter) + attested

    def _client_data(self, kind: str, challenge: str, origin: str | None) -> bytes:
        return json.dumps(
            {"type": kind, "challenge": challenge, "origin": origin or self.origin, "crossOrigin": False}
        ).encode()

    def register(self, options: dict, *, origin: str | None = None, fmt: str = "none", rp_id: str | None = None) -> dict:
        cose = ES256.from_cryptography_key(self.private_key.public_key())
        attested = bytes(16) + struct.pack(">H", len(self.credential_id)) + self.credential_id + cbor.encode(dict(cose))
        auth_data = self._auth_data(0x41, self.sign_count, attested, rp_id)   # UP + AT
        client = self._client_data("webauthn.create", options["challenge"], origin)
        att_obj = cbor.encode({"fmt": fmt, "attStmt": {}, "authData": auth_data})
        return {
            "id": self.id,
            "rawId": self.id,
            "type": "public-key",
            "response": {
                "clientDataJSON": websafe_encode(client),
                "attestationObject": websafe_encode(att_obj),
                "transports": ["usb"],
            },
        }

    def assertion(self, options: dict, *, counter: int | None = None, origin: str | None = None,
                  tamper: bool = False) -> dict:
        if counter is None:
            self.sign_count += 1
            counter = self.sign_count
        auth_data = self._auth_data(0x01, counter)
        client = self._client_data("webauthn.get", options["challenge"], origin)
        signature = self.private_key.sign(auth_data + sha256(client), ec.ECDSA(hashes.SHA256()))
        if tamper:
            auth_data = self._auth_data(0x01, counter + 1000)
        return {
            "id": self.id,
            "rawId": self.id,
            "type": "public-key",
            "response": {
                "clientDataJSON": websafe_encode(client),
                "authenticatorData": websafe_encode(auth_data),
                "signature": websafe_encode(signature),
            },
        }


@pytest_asyncio.fixture(scope="function")
async def test_engine(tmp_path):
    """SQLite en archivo por test (varias conexiones ven los mismos datos)."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'authgate.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(test_engine):
    return async_sessionmaker(test_engine, class_=AsyncSession, expire_on_commit=False)


@pytest_asyncio.fixture
async def db_session(session_factory) -> AsyncGenerator[AsyncSession, None]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def clock() -> Clock:
    return Clock()


@pytest.fixture
def make_flow(sink, clock):
    def _make(db: AsyncSession, **kwargs) -> AuthFlow:
        kwargs.setdefault("events", sink)
        kwargs.setdefault("clock", clock)
        kwargs.setdefault("context", RequestContext(ip="127.0.0.1", user_agent_class="cli"))
        return AuthFlow(db, **kwargs)
    return _make


@pytest.fixture
def flow(db_session, make_flow) -> AuthFlow:
    return make_flow(db_session)


@pytest_asyncio.fixture
async def user(db_session) -> User:
    u = User(email="alice@example.com", password_hash=hash_password("Sup3rSecret!"))
    db_session.add(u)
    await db_session.commit()
    return u


@pytest_asyncio.fixture
async def admin(db_session) -> User:
    u = User(email="root@example.com", password_hash=hash_password("Adm1nSecret!"), is_admin=True)
    db_session.add(u)
    await db_session.commit()
    return u


@pytest_asyncio.fixture
async def client(session_factory, sink) -> AsyncGenerator[AsyncClient, None]:
    async def override_get_db():
        async with session_factory() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    previous_sink = app.state.event_sink
    app.state.event_sink = sink
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
    app.state.event_sink = previous_sink
