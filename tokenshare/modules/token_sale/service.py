"""Token sale ledger — sells a project's fixed token supply without overselling.

The supply invariant ``available_tokens = total_tokens - sum(active holdings)``
is kept by doing the check and the decrement in one guarded UPDATE while the
project row is locked. Confirmation on the external ledger happens after the
sale commits: a ledger failure leaves the holding ``failed`` for the retry
task, it never undoes the sale.
"""

import uuid
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import or_, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from tokenshare.core.config import settings
from tokenshare.core.errors import (
    InsufficientSupply,
    InvalidAmount,
    ProjectNotActive,
    ProjectNotFound,
)
from tokenshare.models.enums import (
    HoldingStatus,
    LedgerSyncStatus,
    ProjectStatus,
    TransactionStatus,
    TransactionType,
)
from tokenshare.models.base import MONEY_LIMIT, TOKEN_AMOUNT_MAX
from tokenshare.models.projects import Project
from tokenshare.models.tokens import Holding, TokenTransaction
from tokenshare.modules.projects.service import lock_project
from tokenshare.modules.token_sale.schemas import LedgerRetrySummary, PurchaseResult
from tokenshare.services.ledger import LedgerAdapter

logger = structlog.get_logger()


async def purchase(
    db: AsyncSession,
    ledger: LedgerAdapter,
    project_id: uuid.UUID,
    buyer_id: uuid.UUID,
    amount: int,
) -> PurchaseResult:
    """Sell ``amount`` tokens of a project to ``buyer_id``.

    Raises InvalidAmount, ProjectNotFound, ProjectNotActive or
    InsufficientSupply; none of them leave partial state behind.
    """
    if amount <= 0:
        raise InvalidAmount("Token amount must be greater than 0", amount=amount)
    if amount > TOKEN_AMOUNT_MAX:
        raise InvalidAmount(f"Token amount must be at most {TOKEN_AMOUNT_MAX:,}", amount=amount)

    try:
        project = await lock_project(db, project_id)
        if project is None:
            raise ProjectNotFound("Project not found", project_id=str(project_id))
        if project.status != ProjectStatus.ACTIVE:
            raise ProjectNotActive(
                f"Project is {project.status.value} and no longer sells tokens",
                status=project.status.value,
            )
        if project.token_price * amount >= MONEY_LIMIT:
            raise InvalidAmount(
                f"Purchase value must be less than {MONEY_LIMIT:,}",
                amount=amount,
                token_price=str(project.token_price),
            )

        # Check and decrement in one statement; safe even where FOR UPDATE is a no-op
        decremented = await db.execute(
            update(Project)
            .where(
                Project.id == project_id,
                Project.status == ProjectStatus.ACTIVE,
                Project.available_tokens >= amount,
            )
            .values(available_tokens=Project.available_tokens - amount)
            .execution_options(synchronize_session=False)
        )
        if decremented.rowcount != 1:
            raise InsufficientSupply(
                f"Insufficient tokens available. Only {project.available_tokens} tokens left.",
                available_tokens=project.available_tokens,
                requested=amount,
            )
        await db.refresh(project, ["available_tokens", "updated_at"])

        total_value = project.token_price * amount
        holding = Holding(
            project_id=project_id,
            user_id=buyer_id,
            amount=amount,
            price_per_token=project.token_price,
            total_value=total_value,
            status=HoldingStatus.ACTIVE,
            ledger_status=LedgerSyncStatus.PENDING,
            ledger_attempts=0,
        )
        db.add(holding)
        await db.flush()

        txn = TokenTransaction(
            project_id=project_id,
            holding_id=holding.id,
            from_user_id=project.admin_id,
            to_user_id=buyer_id,
            token_amount=amount,
            total_value=total_value,
            transaction_type=TransactionType.PURCHASE,
            status=TransactionStatus.COMPLETED,
        )
        db.add(txn)
        await db.commit()
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "token_sale.purchased",
        project_id=str(project_id),
        buyer_id=str(buyer_id),
        amount=amount,
        total_value=str(total_value),
    )

    await _confirm_on_ledger(db, ledger, holding)

    return PurchaseResult(
        token_id=holding.id,
        transaction_id=txn.id,
        project_id=project_id,
        amount=amount,
        price_per_token=holding.price_per_token,
        total_value=holding.total_value,
        ledger_status=holding.ledger_status,
        ledger_tx_hash=holding.ledger_tx_hash,
        ledger_error=holding.ledger_last_error,
    )


async def _confirm_on_ledger(db: AsyncSession, ledger: LedgerAdapter, holding: Holding) -> None:
    """Best-effort token-creation notice; records the outcome on the holding."""
    holding.ledger_attempts += 1
    try:
        tx_hash = await ledger.submit_token_creation(
            str(holding.id), str(holding.project_id), holding.amount
        )
    except Exception as exc:  # noqa: BLE001 — the sale is committed regardless
        holding.ledger_status = LedgerSyncStatus.FAILED
        holding.ledger_last_error = str(exc)[:1000]
        logger.warning(
            "token_sale.ledger_unconfirmed",
            holding_id=str(holding.id),
            attempts=holding.ledger_attempts,
            error=str(exc),
        )
    else:
        holding.ledger_status = LedgerSyncStatus.CONFIRMED
        holding.ledger_tx_hash = tx_hash
        holding.ledger_last_error = None
    await db.commit()


async def retry_ledger_sync(
    db: AsyncSession,
    ledger: LedgerAdapter,
    limit: int | None = None,
    max_attempts: int | None = None,
) -> LedgerRetrySummary:
    """Re-submit token creations whose ledger confirmation never succeeded.

    Pending holdings are only picked up once they are older than two ledger
    timeouts, so a purchase still waiting on its own confirmation is left alone.
    Each holding is claimed by bumping ``ledger_attempts`` conditionally, which
    keeps two concurrent retry runs from submitting the same holding.
    """
    limit = limit or settings.TOKEN_LEDGER_RETRY_BATCH
    max_attempts = max_attempts or settings.TOKEN_LEDGER_MAX_ATTEMPTS
    stale_before = datetime.now(timezone.utc) - timedelta(seconds=2 * settings.LEDGER_TIMEOUT_SECONDS)

    candidates = (
        await db.execute(
            select(Holding)
            .where(
                Holding.ledger_attempts < max_attempts,
                or_(
                    Holding.ledger_status == LedgerSyncStatus.FAILED,
                    (Holding.ledger_status == LedgerSyncStatus.PENDING) & (Holding.updated_at < stale_before),
                ),
            )
            .order_by(Holding.created_at)
            .limit(limit)
        )
    ).scalars().all()
    await db.commit()

    summary = LedgerRetrySummary(attempted=0, confirmed=0, failed=0)
    for holding in candidates:
        claimed = await db.execute(
            update(Holding)
            .where(
                Holding.id == holding.id,
                Holding.ledger_attempts == holding.ledger_attempts,
                Holding.ledger_status != LedgerSyncStatus.CONFIRMED,
            )
            .values(ledger_attempts=Holding.ledger_attempts + 1)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if claimed.rowcount != 1:
            continue

        summary.attempted += 1
        try:
            tx_hash = await ledger.submit_token_creation(
                str(holding.id), str(holding.project_id), holding.amount
            )
        except Exception as exc:  # noqa: BLE001
            summary.failed += 1
            values = {"ledger_status": LedgerSyncStatus.FAILED, "ledger_last_error": str(exc)[:1000]}
            logger.warning("token_sale.ledger_retry_failed", holding_id=str(holding.id), error=str(exc))
        else:
            summary.confirmed += 1
            values = {
                "ledger_status": LedgerSyncStatus.CONFIRMED,
                "ledger_tx_hash": tx_hash,
                "ledger_last_error": None,
            }
        await db.execute(
            update(Holding)
            .where(Holding.id == holding.id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()

    logger.info("token_sale.ledger_retry_complete", **summary.model_dump())
    return summary


async def list_user_holdings(db: AsyncSession, user_id: uuid.UUID) -> list[Holding]:
    stmt = (
        select(Holding)
        .where(Holding.user_id == user_id, Holding.status == HoldingStatus.ACTIVE)
        .order_by(Holding.created_at.desc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def list_project_holdings(db: AsyncSession, project_id: uuid.UUID) -> list[Holding]:
    stmt = (
        select(Holding)
        .where(Holding.project_id == project_id, Holding.status == HoldingStatus.ACTIVE)
        .order_by(Holding.created_at.desc())
    )
    return list((await db.execute(stmt)).scalars().all())
