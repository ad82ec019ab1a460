"""Test configuration."""
import json
import os
from collections.abc import AsyncIterator, Callable, Iterator
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping
from uuid import uuid4

from alembic import command
from alembic.config import Config
import pytest
from httpx import ASGITransport, AsyncClient
from sqlalchemy.orm import Session

# --- Default env for the test run
os.environ.setdefault("DATABASE_URL", "sqlite:///./stablepay_test.db")
os.environ.setdefault("STABLEPAY_ENV", "test")
os.environ.setdefault("CHAIN_WEBHOOK_SECRET", "test-chain-secret")
# Payout watches only poll when a test asks for it explicitly.
os.environ.setdefault("CONFIRMATION_WATCH_TIMEOUT_SECONDS", "0")
os.environ.setdefault("CONFIRMATION_POLL_INTERVAL_SECONDS", "0")

from stablepay import db  # noqa: E402
from stablepay.db import get_db  # noqa: E402
from stablepay.main import app  # noqa: E402
from stablepay.models import (  # noqa: E402
    Base,
    Merchant,
    MerchantStatus,
    Network,
    Payment,
    PaymentStatus,
    SettlementSchedule,
)
from stablepay.schemas.payment import PaymentCreate  # noqa: E402
from stablepay.services import payments as ledger  # noqa: E402
from stablepay.services.chain import InMemoryChainClient, set_chain_client  # noqa: E402
from stablepay.services.webhooks import set_webhook_transport  # noqa: E402

DB_PATH = Path("./stablepay_test.db")


def _run_migrations() -> None:
    cfg = Config(str(Path(__file__).resolve().parents[1] / "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", os.environ["DATABASE_URL"])
    command.upgrade(cfg, "head")


# --- (1) Fresh database file for the session
if DB_PATH.exists():
    DB_PATH.unlink()

# --- (2) Schema comes from Alembic only
_run_migrations()
db.init_engine(os.environ["DATABASE_URL"])


def _wipe_tables() -> None:
    with db.get_engine().begin() as conn:
        for table in reversed(Base.metadata.sorted_tables):
            conn.execute(table.delete())


class RecordingTransport:
    """Webhook transport that records requests instead of sending them."""

    def __init__(self) -> None:
        self.calls: list[dict[str, Any]] = []
        self.status_code = 200
        self.error: Exception | None = None

    def post(self, url: str, body: bytes, headers: Mapping[str, str], timeout: float) -> int:
        self.calls.append({"url": url, "body": body, "headers": dict(headers), "timeout": timeout})
        if self.error is not None:
            raise self.error
        return self.status_code

    @property
    def events(self) -> list[str]:
        return [json.loads(call["body"])["event"] for call in self.calls]


@pytest.fixture
def db_session() -> Iterator[Session]:
    session = db.get_sessionmaker()()
    try:
        yield session
    finally:
        session.close()
        _wipe_tables()


@pytest.fixture(autouse=True)
def override_db_dependency(db_session: Session) -> Iterator[None]:
    def _get_db() -> Iterator[Session]:
        yield db_session

    app.dependency_overrides[get_db] = _get_db
    yield
    app.dependency_overrides.pop(get_db, None)


@pytest.fixture(autouse=True)
def chain() -> Iterator[InMemoryChainClient]:
    client = InMemoryChainClient(
        balances={Network.POLYGON: Decimal("100000"), Network.ETHEREUM: Decimal("100000")}
    )
    set_chain_client(client)
    yield client
    set_chain_client(None)


@pytest.fixture(autouse=True)
def webhook_transport() -> Iterator[RecordingTransport]:
    transport = RecordingTransport()
    set_webhook_transport(transport)
    yield transport
    set_webhook_transport(None)


@pytest.fixture
async def client() -> AsyncIterator[AsyncClient]:
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as async_client:
        yield async_client


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
def make_merchant(db_session: Session) -> Callable[..., Merchant]:
    """Factory for active merchants able to receive payouts."""

    def _factory(**overrides: Any) -> Merchant:
        suffix = uuid4().hex[:8]
        values: dict[str, Any] = {
            "name": f"merchant-{suffix}",
            "email": f"merchant-{suffix}@example.com",
            "status": MerchantStatus.ACTIVE,
            "fee_rate": None,
            "settlement_address": "0x" + uuid4().hex + "abcdef01",
            "settlement_schedule": SettlementSchedule.DAILY,
            "webhook_url": "https://merchant.example/webhooks",
            "webhook_secret": "whsec_test",
        }
        values.update(overrides)
        merchant = Merchant(**values)
        db_session.add(merchant)
        db_session.commit()
        db_session.refresh(merchant)
        return merchant

    return _factory


@pytest.fixture
def make_payment(db_session: Session, chain: InMemoryChainClient) -> Callable[..., Payment]:
    def _factory(merchant: Merchant, amount: str | Decimal = "50.00", **fields: Any) -> Payment:
        request = PaymentCreate(amount=Decimal(str(amount)), **fields)
        return ledger.create_payment(db_session, merchant.id, request, chain=chain)

    return _factory


@pytest.fixture
def complete_payment(db_session: Session) -> Callable[[Payment], Payment]:
    """Drive a payment through processing to completed, as the matcher does."""

    def _complete(payment: Payment) -> Payment:
        ledger.transition(db_session, payment.public_id, PaymentStatus.PROCESSING, actor="test")
        return ledger.transition(db_session, payment.public_id, PaymentStatus.COMPLETED, actor="test")

    return _complete


@pytest.fixture
def deposit(chain: InMemoryChainClient) -> Callable[..., str]:
    """Put a transfer to a payment's deposit address on the in-memory chain."""

    def _deposit(
        payment: Payment,
        *,
        amount: str | Decimal | None = None,
        confirmations: int | None = 0,
        reverted: bool = False,
    ) -> str:
        return chain.add_transfer(
            "0x" + uuid4().hex + uuid4().hex,
            network=payment.network,
            to_address=payment.deposit_address,
            amount=payment.amount if amount is None else amount,
            confirmations=confirmations,
            reverted=reverted,
        )

    return _deposit
