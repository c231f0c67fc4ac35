"""Fixtures compartidos: SQLite temporal, datos sembrados y un ledger falso"""
import os

# Antes de importar la app: el limiter y el cache leen settings al importarse
os.environ.setdefault("RATE_LIMIT_STORAGE_URI", "memory://")
os.environ.setdefault("ORACLE_CACHE_SECONDS", "0")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("JWT_SECRET_KEY", "test-secret")

from datetime import timedelta
from typing import Dict, Optional

import pytest

from shared.database import connection
from shared.database.models import Event, EventState, Ticket, TicketStatus
from shared.utils.timeutils import utcnow, unix_now
from shared.auth.jwt_handler import create_access_token
from services.ticket_validation.errors import AssetNotFound, OracleUnavailable
from services.ticket_validation.services import payload_codec
from services.ticket_validation.services.anti_fraud import AntiFraudGuard
from services.ticket_validation.services.asset_oracle import AssetSnapshot
from services.ticket_validation.services.verification_service import GateVerificationService

ASSET_ID = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
HOLDER = "HoLder1111111111111111111111111111111111111"


class FakeOracle:
    """Ledger en memoria; `fail_with` simula caídas o assets inexistentes"""

    def __init__(self):
        self.assets: Dict[str, AssetSnapshot] = {}
        self.fail_with: Optional[Exception] = None
        self.calls = 0

    def add(self, asset_id: str, owner: str = HOLDER, frozen: bool = True, **attributes):
        self.assets[asset_id] = AssetSnapshot(
            asset_id=asset_id,
            owner=owner,
            is_frozen=frozen,
            attributes={k: str(v) for k, v in attributes.items()},
        )

    async def fetch_asset(self, asset_id: str) -> AssetSnapshot:
        self.calls += 1
        if self.fail_with is not None:
            raise self.fail_with
        if asset_id not in self.assets:
            raise AssetNotFound(f"Asset {asset_id} no existe en el ledger")
        return self.assets[asset_id]


@pytest.fixture
async def session_maker(tmp_path):
    await connection.init_db(f"sqlite:///{tmp_path / 'gate.db'}")
    await connection.create_all()
    yield connection.get_session_maker()
    await connection.close_db()


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def oracle():
    fake = FakeOracle()
    fake.add(ASSET_ID)
    return fake


@pytest.fixture
def guard():
    return AntiFraudGuard(hard_mode=False)


@pytest.fixture
def service(session_maker, oracle, guard):
    return GateVerificationService(
        session_maker=session_maker,
        oracle=oracle,
        guard=guard,
        max_storage_retries=2,
    )


@pytest.fixture
def seed(session_maker):
    """Crear evento + ticket minteado; devuelve (ticket, qr_string)"""

    async def _seed(
        event_id: str = "evt_abc",
        ticket_number: int = 7,
        asset_id: Optional[str] = ASSET_ID,
        status: TicketStatus = TicketStatus.ACTIVE,
        issued_at: Optional[int] = None,
        holder: str = HOLDER,
    ):
        issued_at = issued_at or unix_now()
        async with session_maker() as session:
            if await session.get(Event, event_id) is None:
                session.add(Event(
                    event_id=event_id,
                    organizer_identity="organizer-1",
                    name="Parchi Fest",
                    starts_at=utcnow(),
                    ends_at=utcnow() + timedelta(hours=6),
                    capacity=1000,
                    state=EventState.PUBLISHED.value,
                ))
            qr_string = None
            if asset_id:
                qr_string = payload_codec.encode(event_id, ticket_number, asset_id, issued_at)
            ticket = Ticket(
                event_id=event_id,
                ticket_number=ticket_number,
                holder_identity=holder,
                asset_id=asset_id,
                purchase_price=25000,
                status=status.value,
                qr_data=qr_string,
            )
            session.add(ticket)
            await session.commit()
            return ticket, qr_string

    return _seed


def make_token(user_id: str = "scanner-1", role: str = "scanner") -> str:
    return create_access_token({"sub": user_id, "role": role})


@pytest.fixture
def scanner_headers():
    return {"Authorization": f"Bearer {make_token()}"}


@pytest.fixture
def unavailable_oracle(oracle):
    oracle.fail_with = OracleUnavailable("Timeout consultando el ledger")
    return oracle
