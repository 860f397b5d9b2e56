"""Tests for the profit distribution saga: atomic completion, single-shot, ledger failures."""

import asyncio
import threading
import time
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from tests.conftest import ADMIN_ID, BUYER_A, BUYER_B, OTHER_ADMIN_ID, FakeLedger, make_project
from tokenshare.core.config import settings
from tokenshare.core.errors import (
    AlreadyDistributed,
    ContentionError,
    InvalidAmount,
    LedgerRejected,
    LedgerUnavailable,
    NotProjectOwner,
    NotReady,
    ProjectNotFound,
)
from tokenshare.models.distributions import ProfitDistribution, UserProfitCredit
from tokenshare.models.enums import DistributionStatus, ProjectStatus
from tokenshare.models.projects import Project
from tokenshare.modules.distributions import service
from tokenshare.modules.distributions.service import (
    distribute,
    find_consistency_violations,
    get_distribution_history,
    get_user_credits,
)
from tokenshare.modules.projects.service import cancel_project
from tokenshare.modules.token_sale.service import purchase
from tokenshare.services.ledger import Web3LedgerAdapter

pytestmark = pytest.mark.anyio


async def _state(session_factory: async_sessionmaker[AsyncSession], project_id: uuid.UUID):
    """Project status, distributions and credit count as committed."""
    async with session_factory() as db:
        project = (await db.execute(select(Project).where(Project.id == project_id))).scalar_one()
        distributions = (
            await db.execute(select(ProfitDistribution).where(ProfitDistribution.project_id == project_id))
        ).scalars().all()
        credits = (
            await db.execute(
                select(func.count(UserProfitCredit.id)).where(UserProfitCredit.project_id == project_id)
            )
        ).scalar_one()
    return project.status, list(distributions), credits


# ── Happy path ───────────────────────────────────────────────────────────────


async def test_distribute_sold_out_project(
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
    sold_out_project: Project,
):
    result = await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)

    assert result.total_profit == Decimal("50000")
    assert result.admin_share == Decimal("15000")
    assert result.user_share == Decimal("35000")
    assert result.profit_per_token == Decimal("350")
    assert result.initial_capital == Decimal("10000")
    assert result.total_user_tokens == 100
    assert result.holder_count == 2
    assert result.project_status == ProjectStatus.COMPLETED
    assert {c.user_id: c.profit_amount for c in result.credits} == {
        BUYER_A: Decimal("21000"),
        BUYER_B: Decimal("14000"),
    }

    record = ledger.dividends[str(result.distribution_id)]
    assert record["tx_hash"] == result.ledger_tx_hash
    assert record["admin_share"] == Decimal("15000")
    assert record["user_share"] == Decimal("35000")

    status, distributions, credit_count = await _state(session_factory, sold_out_project.id)
    assert status == ProjectStatus.COMPLETED
    assert credit_count == 2
    [distribution] = distributions
    assert distribution.status == DistributionStatus.COMPLETED
    assert distribution.ledger_tx_hash == result.ledger_tx_hash
    assert distribution.lease_expires_at is None
    assert distribution.completed_at is not None
    assert distribution.attempts == 1


async def test_user_credits_and_history(
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
    sold_out_project: Project,
):
    result = await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)

    async with session_factory() as fresh:
        credits = await get_user_credits(fresh, BUYER_A)
        history = await get_distribution_history(fresh, sold_out_project.id)
        other_project_credits = await get_user_credits(fresh, BUYER_A, uuid.uuid4())

    assert len(credits) == 1
    assert credits[0].distribution_id == result.distribution_id
    assert credits[0].token_amount == 60
    assert credits[0].profit_amount == Decimal("21000")
    assert other_project_credits == []
    assert [d.id for d in history] == [result.distribution_id]


# ── Preconditions ────────────────────────────────────────────────────────────


async def test_distribute_twice_fails(db: AsyncSession, ledger: FakeLedger, sold_out_project: Project):
    await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)

    with pytest.raises(AlreadyDistributed):
        await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)
    assert ledger.dividend_calls == 1


async def test_partially_sold_project_not_ready(
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
    project: Project,
):
    project_id = project.id
    await purchase(db, ledger, project_id, BUYER_A, 60)

    with pytest.raises(NotReady) as exc_info:
        await distribute(db, ledger, project_id, Decimal("50000"), ADMIN_ID)
    assert "Currently 60/100 tokens sold" in exc_info.value.reason
    assert exc_info.value.detail["available_tokens"] == 40

    status, distributions, credit_count = await _state(session_factory, project_id)
    assert status == ProjectStatus.ACTIVE
    assert distributions == []
    assert credit_count == 0
    assert ledger.dividend_calls == 0


async def test_cancelled_project_not_ready(
    db: AsyncSession, ledger: FakeLedger, sold_out_project: Project
):
    await cancel_project(db, sold_out_project.id, ADMIN_ID)
    await db.commit()

    with pytest.raises(NotReady) as exc_info:
        await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)
    assert exc_info.value.detail["reason_code"] == "cancelled"


async def test_unknown_project(db: AsyncSession, ledger: FakeLedger):
    with pytest.raises(ProjectNotFound):
        await distribute(db, ledger, uuid.uuid4(), Decimal("100"), ADMIN_ID)


async def test_only_the_project_admin_may_distribute(
    db: AsyncSession, ledger: FakeLedger, sold_out_project: Project
):
    with pytest.raises(NotProjectOwner):
        await distribute(db, ledger, sold_out_project.id, Decimal("50000"), OTHER_ADMIN_ID)
    assert ledger.dividend_calls == 0


@pytest.mark.parametrize("profit", ["0", "-1", "12.345", "1E+30", "1000000000000000"])
async def test_invalid_profit(db: AsyncSession, ledger: FakeLedger, sold_out_project: Project, profit: str):
    with pytest.raises(InvalidAmount):
        await distribute(db, ledger, sold_out_project.id, Decimal(profit), ADMIN_ID)
    assert ledger.dividend_calls == 0


# ── Concurrency ──────────────────────────────────────────────────────────────


async def test_concurrent_distributions_complete_once(
    session_factory: async_sessionmaker[AsyncSession], ledger: FakeLedger
):
    async with session_factory() as db:
        project = await make_project(db)
        await purchase(db, ledger, project.id, BUYER_A, 60)
        await purchase(db, ledger, project.id, BUYER_B, 40)
    ledger.delay = 0.05

    async def _distribute() -> str:
        async with session_factory() as session:
            try:
                await distribute(session, ledger, project.id, Decimal("50000"), ADMIN_ID)
            except AlreadyDistributed:
                return "already_distributed"
            return "completed"

    outcomes = await asyncio.gather(*(_distribute() for _ in range(5)))
    assert outcomes.count("completed") == 1
    assert outcomes.count("already_distributed") == 4

    status, distributions, credit_count = await _state(session_factory, project.id)
    assert status == ProjectStatus.COMPLETED
    assert len(distributions) == 1
    assert credit_count == 2
    assert len(ledger.dividends) == 1


async def test_in_flight_distribution_blocks_a_second_call(
    session_factory: async_sessionmaker[AsyncSession], ledger: FakeLedger
):
    async with session_factory() as db:
        project = await make_project(db)
        await purchase(db, ledger, project.id, BUYER_A, 100)
    ledger.gate = asyncio.Event()

    async def _first():
        async with session_factory() as session:
            return await distribute(session, ledger, project.id, Decimal("1000"), ADMIN_ID)

    first = asyncio.create_task(_first())
    await ledger.entered.wait()

    async with session_factory() as session:
        with pytest.raises(AlreadyDistributed):
            await distribute(session, ledger, project.id, Decimal("1000"), ADMIN_ID)
    async with session_factory() as session:
        with pytest.raises(ContentionError):
            await cancel_project(session, project.id, ADMIN_ID)

    ledger.gate.set()
    result = await first
    assert result.project_status == ProjectStatus.COMPLETED
    assert ledger.dividend_calls == 1


# ── Ledger failures ──────────────────────────────────────────────────────────


async def test_ledger_unavailable_leaves_project_active(
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
    sold_out_project: Project,
):
    ledger.fail_dividend_with = LedgerUnavailable("RPC endpoint unreachable")

    with pytest.raises(LedgerUnavailable) as exc_info:
        await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)
    assert exc_info.value.retryable

    status, distributions, credit_count = await _state(session_factory, sold_out_project.id)
    assert status == ProjectStatus.ACTIVE
    assert credit_count == 0
    [pending] = distributions
    assert pending.status == DistributionStatus.PENDING
    assert pending.lease_expires_at is None
    assert pending.last_error == "RPC endpoint unreachable"
    assert exc_info.value.detail["distribution_id"] == str(pending.id)

    # The same call succeeds once the ledger is back, reusing the pending record
    ledger.fail_dividend_with = None
    result = await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)
    assert result.distribution_id == pending.id

    status, distributions, credit_count = await _state(session_factory, sold_out_project.id)
    assert status == ProjectStatus.COMPLETED
    assert credit_count == 2
    [completed] = distributions
    assert completed.attempts == 2
    assert completed.last_error is None


async def test_ledger_timeout_is_transient(
    monkeypatch: pytest.MonkeyPatch,
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
    sold_out_project: Project,
):
    project_id = sold_out_project.id
    monkeypatch.setattr(settings, "LEDGER_TIMEOUT_SECONDS", 0.05)
    ledger.delay = 1.0

    with pytest.raises(LedgerUnavailable) as exc_info:
        await distribute(db, ledger, project_id, Decimal("50000"), ADMIN_ID)
    assert exc_info.value.retryable

    status, [pending], credit_count = await _state(session_factory, project_id)
    assert status == ProjectStatus.ACTIVE
    assert pending.status == DistributionStatus.PENDING
    assert pending.last_error.startswith("Ledger did not confirm")
    assert credit_count == 0
    # The submission may still land, so the lease is held until it expires
    assert pending.lease_expires_at is not None

    with pytest.raises(AlreadyDistributed):
        await distribute(db, ledger, project_id, Decimal("50000"), ADMIN_ID)
    assert ledger.dividend_calls == 1


async def test_timed_out_dividend_is_sent_once(
    monkeypatch: pytest.MonkeyPatch,
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    sold_out_project: Project,
):
    project_id = sold_out_project.id
    monkeypatch.setattr(settings, "LEDGER_TIMEOUT_SECONDS", 0.1)

    adapter = Web3LedgerAdapter.__new__(Web3LedgerAdapter)
    adapter._contract = MagicMock()
    adapter._decimals = 8
    read_back = adapter._contract.functions.getDividenProfitByProjectId.return_value.call
    read_back.return_value = ("", 0, 0, 0, 0)
    adapter._find_dividend_event = MagicMock(return_value="0xmined")
    mined = threading.Event()

    def _slow_send(fn):
        time.sleep(0.4)
        # Mined after the caller gave up: the contract now holds the record
        read_back.return_value = adapter._contract.functions.addDividenProfit.call_args.args
        mined.set()
        return "0xmined"

    adapter._send = MagicMock(side_effect=_slow_send)

    with pytest.raises(LedgerUnavailable):
        await distribute(db, adapter, project_id, Decimal("50000"), ADMIN_ID)
    with pytest.raises(AlreadyDistributed):
        await distribute(db, adapter, project_id, Decimal("50000"), ADMIN_ID)

    assert await asyncio.to_thread(mined.wait, 5)
    async with session_factory() as session:
        await session.execute(
            update(ProfitDistribution)
            .where(ProfitDistribution.project_id == project_id)
            .values(lease_expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        await session.commit()

    result = await distribute(db, adapter, project_id, Decimal("50000"), ADMIN_ID)
    assert result.ledger_tx_hash == "0xmined"
    assert result.project_status == ProjectStatus.COMPLETED
    assert adapter._send.call_count == 1


async def test_unexpected_ledger_error_is_transient(
    db: AsyncSession, ledger: FakeLedger, sold_out_project: Project
):
    ledger.fail_dividend_with = RuntimeError("connection reset by peer")

    with pytest.raises(LedgerUnavailable) as exc_info:
        await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)
    assert "connection reset" in exc_info.value.message


async def test_ledger_rejection_is_permanent(
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
    sold_out_project: Project,
):
    ledger.fail_dividend_with = LedgerRejected("execution reverted")

    with pytest.raises(LedgerRejected) as exc_info:
        await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)
    assert not exc_info.value.retryable

    status, [pending], credit_count = await _state(session_factory, sold_out_project.id)
    assert status == ProjectStatus.ACTIVE
    assert pending.status == DistributionStatus.PENDING
    assert pending.last_error == "execution reverted"
    assert credit_count == 0


async def test_retry_with_different_profit_supersedes_pending(
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
    sold_out_project: Project,
):
    ledger.fail_dividend_with = LedgerUnavailable("RPC endpoint unreachable")
    with pytest.raises(LedgerUnavailable):
        await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)

    ledger.fail_dividend_with = None
    result = await distribute(db, ledger, sold_out_project.id, Decimal("60000"), ADMIN_ID)
    assert result.admin_share == Decimal("18000")

    status, distributions, credit_count = await _state(session_factory, sold_out_project.id)
    by_status = {d.status: d for d in distributions}
    assert set(by_status) == {DistributionStatus.SUPERSEDED, DistributionStatus.COMPLETED}
    assert by_status[DistributionStatus.COMPLETED].id == result.distribution_id
    assert by_status[DistributionStatus.SUPERSEDED].total_profit == Decimal("50000")
    assert status == ProjectStatus.COMPLETED
    assert credit_count == 2


async def test_abandoned_claim_is_recovered_after_lease_expiry(
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
    sold_out_project: Project,
):
    project_id = sold_out_project.id
    # A crash between claim and completion leaves a pending record holding a lease
    distribution_id, _, _, _ = await service._claim(
        db, project_id, Decimal("50000"), ADMIN_ID, service.default_engine()
    )

    with pytest.raises(AlreadyDistributed):
        await distribute(db, ledger, project_id, Decimal("50000"), ADMIN_ID)

    async with session_factory() as session:
        await session.execute(
            update(ProfitDistribution)
            .where(ProfitDistribution.id == distribution_id)
            .values(lease_expires_at=datetime.now(timezone.utc) - timedelta(seconds=1))
        )
        await session.commit()

    result = await distribute(db, ledger, project_id, Decimal("50000"), ADMIN_ID)
    assert result.distribution_id == distribution_id


async def test_lost_claim_does_not_complete(
    session_factory: async_sessionmaker[AsyncSession], ledger: FakeLedger
):
    async with session_factory() as db:
        project = await make_project(db)
        await purchase(db, ledger, project.id, BUYER_A, 100)
    ledger.gate = asyncio.Event()

    async def _first():
        async with session_factory() as session:
            return await distribute(session, ledger, project.id, Decimal("1000"), ADMIN_ID)

    first = asyncio.create_task(_first())
    await ledger.entered.wait()

    # Another attempt took the record over while the ledger call was in flight
    async with session_factory() as session:
        await session.execute(
            update(ProfitDistribution)
            .where(ProfitDistribution.project_id == project.id)
            .values(attempt_token=uuid.uuid4())
        )
        await session.commit()

    ledger.gate.set()
    with pytest.raises(ContentionError) as exc_info:
        await first
    assert exc_info.value.detail["ledger_tx_hash"]

    status, [pending], credit_count = await _state(session_factory, project.id)
    assert status == ProjectStatus.ACTIVE
    assert pending.status == DistributionStatus.PENDING
    assert credit_count == 0


# ── Atomic completion ────────────────────────────────────────────────────────


async def test_failure_while_writing_credits_rolls_back_everything(
    monkeypatch: pytest.MonkeyPatch,
    db: AsyncSession,
    session_factory: async_sessionmaker[AsyncSession],
    ledger: FakeLedger,
    sold_out_project: Project,
):
    project_id = sold_out_project.id

    async def _fail(*args, **kwargs):
        raise RuntimeError("disk full")

    monkeypatch.setattr(service, "_write_credits", _fail)

    with pytest.raises(RuntimeError):
        await distribute(db, ledger, project_id, Decimal("50000"), ADMIN_ID)

    status, [pending], credit_count = await _state(session_factory, project_id)
    assert status == ProjectStatus.ACTIVE
    assert pending.status == DistributionStatus.PENDING
    assert pending.ledger_tx_hash is None
    assert pending.lease_expires_at is None
    assert "disk full" in pending.last_error
    assert credit_count == 0

    # Retrying re-submits under the same key; the ledger keeps a single record
    monkeypatch.undo()
    result = await distribute(db, ledger, project_id, Decimal("50000"), ADMIN_ID)
    assert result.distribution_id == pending.id
    assert ledger.dividend_calls == 2
    assert len(ledger.dividends) == 1
    assert result.ledger_tx_hash == ledger.dividends[str(pending.id)]["tx_hash"]

    status, _, credit_count = await _state(session_factory, project_id)
    assert status == ProjectStatus.COMPLETED
    assert credit_count == 2


# ── Integrity audit ──────────────────────────────────────────────────────────


async def test_consistency_scan_clean(
    db: AsyncSession, ledger: FakeLedger, sold_out_project: Project
):
    await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)
    assert await find_consistency_violations(db) == []


async def test_consistency_scan_finds_broken_state(
    db: AsyncSession, ledger: FakeLedger, sold_out_project: Project
):
    result = await distribute(db, ledger, sold_out_project.id, Decimal("50000"), ADMIN_ID)

    # Lose one credit and hand-edit the supply of another project
    await db.execute(
        UserProfitCredit.__table__.delete().where(
            UserProfitCredit.distribution_id == result.distribution_id,
            UserProfitCredit.user_id == BUYER_B,
        )
    )
    other = await make_project(db, name="Hydro Plant Gamma")
    await db.execute(update(Project).where(Project.id == other.id).values(available_tokens=90))
    await db.commit()

    issues = await find_consistency_violations(db)
    kinds = {(issue.kind, issue.project_id) for issue in issues}
    assert ("credits_missing", sold_out_project.id) in kinds
    assert ("supply_mismatch", other.id) in kinds
    assert len(issues) == 2
