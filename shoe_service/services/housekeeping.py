"""
Periodic housekeeping: expire unpaid transactions, report abandoned claims.

Claims never expire on their own; stale ones are only logged so an admin can
``revoke_claim`` them.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional

from shoe_service.config import settings
from shoe_service.db.session import SessionLocal
from shoe_service.infra.logging_utils import setup_logging
from shoe_service.services.claims import TaskClaimManager
from shoe_service.services.payment_gate import PaymentGate
from shoe_service.services.time_service import now_utc

logger = logging.getLogger("housekeeping")


@dataclass(slots=True)
class HousekeepingReport:
    expired_transactions: list[int] = field(default_factory=list)
    stale_claims: list[int] = field(default_factory=list)


async def run_housekeeping(
    session_factory=SessionLocal,
    *,
    now: Optional[datetime] = None,
    stale_after: Optional[timedelta] = None,
) -> HousekeepingReport:
    now = now or now_utc()
    stale_after = stale_after or timedelta(hours=settings.stale_claim_hours)
    report = HousekeepingReport()

    async with session_factory() as session:
        report.expired_transactions = await PaymentGate(session).expire_stale(now)
        await session.commit()

        for claim in await TaskClaimManager(session).stale_claims(stale_after, now=now):
            report.stale_claims.append(claim.id)
            logger.warning(
                "stale claim: claim=%s order=%s stage=%s holder=%s since=%s",
                claim.id,
                claim.order_id,
                claim.stage.value,
                claim.holder_id,
                claim.acquired_at,
            )

    return report


async def housekeeping_scheduler(
    session_factory=SessionLocal,
    *,
    interval_seconds: Optional[int] = None,
    iterations: Optional[int] = None,
) -> None:
    sleep_for = max(30, interval_seconds or settings.housekeeping_interval_seconds)
    loops_done = 0

    logger.info("Housekeeping scheduler started, interval=%ss", sleep_for)

    while True:
        try:
            report = await run_housekeeping(session_factory)
            if report.expired_transactions or report.stale_claims:
                logger.info(
                    "Housekeeping: expired=%s stale_claims=%s",
                    len(report.expired_transactions),
                    len(report.stale_claims),
                )
        except Exception:
            logger.exception("Housekeeping pass failed")

        loops_done += 1
        if iterations is not None and loops_done >= iterations:
            break

        await asyncio.sleep(sleep_for)


def main() -> None:
    setup_logging()
    asyncio.run(housekeeping_scheduler())


if __name__ == "__main__":
    main()
