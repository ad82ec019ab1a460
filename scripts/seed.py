"""Seed demo merchants for local development."""
from __future__ import annotations

from decimal import Decimal

from dotenv import load_dotenv

load_dotenv()

from sqlalchemy import select  # noqa: E402

from stablepay import db  # noqa: E402
from stablepay import models  # noqa: E402
from stablepay.config import get_settings  # noqa: E402

DEMO_MERCHANTS = [
    {
        "name": "Daily Coffee",
        "email": "ops@dailycoffee.example",
        "fee_rate": None,
        "settlement_schedule": models.SettlementSchedule.DAILY,
        "settlement_address": "0x" + "a1" * 20,
    },
    {
        "name": "Weekly Books",
        "email": "finance@weeklybooks.example",
        "fee_rate": Decimal("0.0100"),
        "settlement_schedule": models.SettlementSchedule.WEEKLY,
        "settlement_address": "0x" + "b2" * 20,
    },
    {
        "name": "Pending Shop",
        "email": "hello@pendingshop.example",
        "fee_rate": None,
        "settlement_schedule": models.SettlementSchedule.MONTHLY,
        "settlement_address": None,
        "status": models.MerchantStatus.PENDING_VERIFICATION,
    },
]


def main() -> None:
    settings = get_settings()
    print(f"Using database: {settings.database_url}")

    db.init_engine()
    db.create_all()
    session = db.get_sessionmaker()()
    try:
        for demo in DEMO_MERCHANTS:
            if session.scalars(select(models.Merchant).where(models.Merchant.email == demo["email"])).first():
                continue
            session.add(
                models.Merchant(
                    status=demo.get("status", models.MerchantStatus.ACTIVE),
                    webhook_url="http://localhost:8001/webhooks",
                    webhook_secret="whsec_dev",
                    **{key: value for key, value in demo.items() if key != "status"},
                )
            )
        session.commit()
        for merchant in session.scalars(select(models.Merchant).order_by(models.Merchant.id)):
            print(f"merchant {merchant.id}: {merchant.name} [{merchant.status.value}]")
    finally:
        session.close()
        db.close_engine()


if __name__ == "__main__":
    main()
