"""Profit distribution service — a three-step saga across the database and the ledger.

  1. claim    (one transaction, project row locked): re-run the readiness gate,
              compute the split, write or reuse the ``pending`` distribution and
              take its lease with a fresh attempt token.
  2. submit   (no transaction open): send the dividend to the external ledger,
              keyed by the distribution id so a retried submission is not
              recorded twice. On failure the lease is released and the record
              stays pending for the next call. A timeout keeps the lease until
              it expires, since the adapter may still be sending.
  3. complete (one transaction, project row locked): check the attempt token
              still owns the record, then mark it completed with the ledger
              handle, write every holder credit and flip the project to
              completed, all in the same commit.

A live lease is the fence between steps: a competing call that finds one fails
with AlreadyDistributed instead of duplicating the record. A lease abandoned by
a crash expires after DISTRIBUTION_LEASE_SECONDS.
"""

import asyncio
import uuid
from datetime import datetime, timedelta, timezone
from decimal import Decimal

import structlog
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from tokenshare.core.config import settings
from tokenshare.core.errors import (
    AlreadyDistributed,
    ConsistencyViolation,
    ContentionError,
    LedgerError,
    LedgerUnavailable,
    NotProjectOwner,
    NotReady,
    ProjectNotFound,
)
from tokenshare.core.sentry import report_consistency_violation
from tokenshare.models.distributions import ProfitDistribution, UserProfitCredit
from tokenshare.models.enums import DistributionStatus, HoldingStatus, ProjectStatus
from tokenshare.models.projects import Project
from tokenshare.models.tokens import Holding
from tokenshare.modules.distributions.engine import ProfitSplitEngine
from tokenshare.modules.distributions.readiness import count_active_holders, evaluate_readiness
from tokenshare.modules.distributions.schemas import (
    ConsistencyIssue,
    DistributionPlan,
    DistributionResult,
    HolderPosition,
)
from tokenshare.modules.projects.service import lock_project
from tokenshare.services.ledger import LedgerAdapter

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored in UTC
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


def default_engine() -> ProfitSplitEngine:
    return ProfitSplitEngine(settings.ADMIN_SHARE_RATIO, settings.CURRENCY_DECIMALS)


async def load_holder_positions(db: AsyncSession, project_id: uuid.UUID) -> list[HolderPosition]:
    """Active tokens per holder, summed across each holder's holdings."""
    stmt = (
        select(Holding.user_id, func.sum(Holding.amount))
        .where(Holding.project_id == project_id, Holding.status == HoldingStatus.ACTIVE)
        .group_by(Holding.user_id)
        .order_by(Holding.user_id)
    )
    rows = (await db.execute(stmt)).all()
    return [HolderPosition(user_id=user_id, tokens=int(tokens)) for user_id, tokens in rows]


async def distribute(
    db: AsyncSession,
    ledger: LedgerAdapter,
    project_id: uuid.UUID,
    new_profit: Decimal,
    admin_id: uuid.UUID,
    engine: ProfitSplitEngine | None = None,
) -> DistributionResult:
    """Distribute ``new_profit`` of a sold-out project to its token holders.

    Raises InvalidAmount, ProjectNotFound, NotProjectOwner, NotReady,
    AlreadyDistributed, ContentionError, LedgerUnavailable or LedgerRejected.
    Any failure leaves the project active and a later call may retry.
    """
    engine = engine or default_engine()
    engine.validate_profit(new_profit)

    distribution_id, attempt_token, plan, initial_capital = await _claim(
        db, project_id, new_profit, admin_id, engine
    )
    ledger_tx_hash = await _submit(db, ledger, project_id, distribution_id, attempt_token, plan)
    return await _complete(
        db, project_id, distribution_id, attempt_token, plan, ledger_tx_hash, initial_capital
    )


# ── Step 1: claim ────────────────────────────────────────────────────────────


def _raise_unready(project_id: uuid.UUID, readiness) -> None:
    if readiness.reason_code == "not_found":
        raise ProjectNotFound(readiness.reason, project_id=str(project_id))
    if readiness.reason_code == "completed":
        raise AlreadyDistributed(readiness.reason, project_id=str(project_id))
    raise NotReady(
        readiness.reason,
        reason_code=readiness.reason_code,
        tokens_sold=readiness.tokens_sold,
        total_tokens=readiness.total_tokens,
        available_tokens=readiness.available_tokens,
    )


async def _claim(
    db: AsyncSession,
    project_id: uuid.UUID,
    new_profit: Decimal,
    admin_id: uuid.UUID,
    engine: ProfitSplitEngine,
) -> tuple[uuid.UUID, uuid.UUID, DistributionPlan, Decimal]:
    try:
        project = await lock_project(db, project_id)
        if project is not None and project.admin_id != admin_id:
            raise NotProjectOwner("Only the project's admin can distribute its profit")
        holder_count = await count_active_holders(db, project_id) if project is not None else 0
        readiness = evaluate_readiness(project, holder_count)
        if not readiness.ready:
            _raise_unready(project_id, readiness)

        plan = engine.compute_split(new_profit, await load_holder_positions(db, project_id))
        now = _utcnow()

        live = (
            await db.execute(
                select(ProfitDistribution)
                .where(
                    ProfitDistribution.project_id == project_id,
                    ProfitDistribution.status != DistributionStatus.SUPERSEDED,
                )
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one_or_none()

        if live is not None:
            if live.status == DistributionStatus.COMPLETED:
                # Completion flips the project in the same commit; an active
                # project next to a completed record means history is broken.
                report_consistency_violation(
                    "completed_on_active_project",
                    "Completed distribution found for a project that is still active",
                    project_id=str(project_id),
                    distribution_id=str(live.id),
                )
                raise ConsistencyViolation(
                    "Completed distribution found for a project that is still active",
                    distribution_id=str(live.id),
                )
            if live.lease_expires_at is not None and _as_utc(live.lease_expires_at) > now:
                raise AlreadyDistributed(
                    "A profit distribution for this project is already in progress",
                    distribution_id=str(live.id),
                )
            if live.total_profit != plan.total_profit or live.total_user_tokens != plan.total_user_tokens:
                logger.info(
                    "distribution.superseded",
                    distribution_id=str(live.id),
                    previous_profit=str(live.total_profit),
                    new_profit=str(plan.total_profit),
                )
                live.status = DistributionStatus.SUPERSEDED
                live.lease_expires_at = None
                await db.flush()
                live = None

        if live is None:
            live = ProfitDistribution(
                project_id=project_id,
                total_profit=plan.total_profit,
                admin_share=plan.admin_share,
                user_share=plan.user_share,
                profit_per_token=plan.profit_per_token,
                total_user_tokens=plan.total_user_tokens,
                holder_count=plan.holder_count,
                status=DistributionStatus.PENDING,
                initiated_by=admin_id,
                attempts=0,
            )
            db.add(live)

        attempt_token = uuid.uuid4()
        live.attempt_token = attempt_token
        live.lease_expires_at = now + timedelta(seconds=settings.DISTRIBUTION_LEASE_SECONDS)
        live.attempts += 1
        live.initiated_by = admin_id
        await db.flush()
        distribution_id = live.id
        attempts = live.attempts
        initial_capital = project.initial_capital
        await db.commit()
    except IntegrityError as exc:
        # The live-distribution unique index: a concurrent call inserted first
        await db.rollback()
        raise AlreadyDistributed(
            "A profit distribution for this project is already in progress",
            project_id=str(project_id),
        ) from exc
    except Exception:
        await db.rollback()
        raise

    logger.info(
        "distribution.claimed",
        project_id=str(project_id),
        distribution_id=str(distribution_id),
        attempt=attempts,
        total_profit=str(plan.total_profit),
        holders=plan.holder_count,
    )
    return distribution_id, attempt_token, plan, initial_capital


# ── Step 2: submit ───────────────────────────────────────────────────────────


async def _submit(
    db: AsyncSession,
    ledger: LedgerAdapter,
    project_id: uuid.UUID,
    distribution_id: uuid.UUID,
    attempt_token: uuid.UUID,
    plan: DistributionPlan,
) -> str:
    in_flight = False
    try:
        return await asyncio.wait_for(
            ledger.submit_dividend(
                str(distribution_id),
                str(project_id),
                plan.total_profit,
                plan.admin_share,
                plan.user_share,
                plan.profit_per_token,
            ),
            timeout=settings.LEDGER_TIMEOUT_SECONDS,
        )
    except LedgerError as exc:
        error: LedgerError = exc
    except TimeoutError:
        # The adapter may still be sending from its worker thread: the lease
        # stays until it runs out so no retry submits a second time.
        in_flight = True
        error = LedgerUnavailable(
            f"Ledger did not confirm within {settings.LEDGER_TIMEOUT_SECONDS:g}s"
        )
    except Exception as exc:  # noqa: BLE001
        error = LedgerUnavailable(f"Ledger submission failed: {exc}")

    logger.warning(
        "distribution.ledger_failed",
        project_id=str(project_id),
        distribution_id=str(distribution_id),
        error=error.message,
        retryable=error.retryable,
        in_flight=in_flight,
    )
    await _release_claim(db, distribution_id, attempt_token, error.message, keep_lease=in_flight)
    error.detail = {**(error.detail or {}), "distribution_id": str(distribution_id)}
    raise error


async def _release_claim(
    db: AsyncSession,
    distribution_id: uuid.UUID,
    attempt_token: uuid.UUID,
    error: str,
    *,
    keep_lease: bool = False,
) -> None:
    """Record the failed attempt and, unless ``keep_lease``, give up the lease
    so the next distribute call can reuse the pending record."""
    values: dict = {"last_error": error[:1000]}
    if not keep_lease:
        values["lease_expires_at"] = None
    try:
        await db.execute(
            update(ProfitDistribution)
            .where(
                ProfitDistribution.id == distribution_id,
                ProfitDistribution.attempt_token == attempt_token,
                ProfitDistribution.status == DistributionStatus.PENDING,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
    except Exception as exc:  # noqa: BLE001
        await db.rollback()
        logger.error(
            "distribution.release_failed",
            distribution_id=str(distribution_id),
            error=str(exc),
        )


# ── Step 3: complete ─────────────────────────────────────────────────────────


async def _write_credits(
    db: AsyncSession,
    distribution: ProfitDistribution,
    plan: DistributionPlan,
) -> None:
    for credit in plan.credits:
        db.add(
            UserProfitCredit(
                distribution_id=distribution.id,
                project_id=distribution.project_id,
                user_id=credit.user_id,
                token_amount=credit.token_amount,
                profit_amount=credit.profit_amount,
            )
        )
    await db.flush()


async def _complete(
    db: AsyncSession,
    project_id: uuid.UUID,
    distribution_id: uuid.UUID,
    attempt_token: uuid.UUID,
    plan: DistributionPlan,
    ledger_tx_hash: str,
    initial_capital: Decimal,
) -> DistributionResult:
    try:
        project = await lock_project(db, project_id)
        distribution = (
            await db.execute(
                select(ProfitDistribution)
                .where(ProfitDistribution.id == distribution_id)
                .with_for_update()
                .execution_options(populate_existing=True)
            )
        ).scalar_one()

        if distribution.status != DistributionStatus.PENDING or distribution.attempt_token != attempt_token:
            logger.error(
                "distribution.claim_lost",
                distribution_id=str(distribution_id),
                status=distribution.status.value,
                ledger_tx_hash=ledger_tx_hash,
            )
            raise ContentionError(
                "Distribution claim expired before the ledger confirmation was recorded",
                distribution_id=str(distribution_id),
                ledger_tx_hash=ledger_tx_hash,
            )
        if project is None or project.status != ProjectStatus.ACTIVE:
            report_consistency_violation(
                "confirmed_on_inactive_project",
                "Ledger confirmed a dividend for a project that is no longer active",
                project_id=str(project_id),
                distribution_id=str(distribution_id),
                ledger_tx_hash=ledger_tx_hash,
            )
            raise ConsistencyViolation(
                "Ledger confirmed a dividend for a project that is no longer active",
                distribution_id=str(distribution_id),
                ledger_tx_hash=ledger_tx_hash,
            )

        now = _utcnow()
        distribution.status = DistributionStatus.COMPLETED
        distribution.ledger_tx_hash = ledger_tx_hash
        distribution.completed_at = now
        distribution.lease_expires_at = None
        distribution.last_error = None
        await db.flush()

        await _write_credits(db, distribution, plan)

        project.status = ProjectStatus.COMPLETED
        await db.commit()
    except Exception as exc:
        await db.rollback()
        if not isinstance(exc, (ContentionError, ConsistencyViolation)):
            await _release_claim(db, distribution_id, attempt_token, f"completion failed: {exc}")
        raise

    logger.info(
        "distribution.completed",
        project_id=str(project_id),
        distribution_id=str(distribution_id),
        ledger_tx_hash=ledger_tx_hash,
        admin_share=str(plan.admin_share),
        user_share=str(plan.user_share),
        holders=plan.holder_count,
    )
    return DistributionResult(
        distribution_id=distribution_id,
        project_id=project_id,
        initial_capital=initial_capital,
        total_profit=plan.total_profit,
        admin_share=plan.admin_share,
        user_share=plan.user_share,
        profit_per_token=plan.profit_per_token,
        total_user_tokens=plan.total_user_tokens,
        holder_count=plan.holder_count,
        credits=plan.credits,
        ledger_tx_hash=ledger_tx_hash,
        project_status=ProjectStatus.COMPLETED,
        distributed_at=now,
    )


# ── History ──────────────────────────────────────────────────────────────────


async def get_distribution_history(db: AsyncSession, project_id: uuid.UUID) -> list[ProfitDistribution]:
    stmt = (
        select(ProfitDistribution)
        .where(ProfitDistribution.project_id == project_id)
        .order_by(ProfitDistribution.created_at.desc())
    )
    return list((await db.execute(stmt)).scalars().all())


async def get_user_credits(
    db: AsyncSession,
    user_id: uuid.UUID,
    project_id: uuid.UUID | None = None,
) -> list[UserProfitCredit]:
    stmt = select(UserProfitCredit).where(UserProfitCredit.user_id == user_id)
    if project_id is not None:
        stmt = stmt.where(UserProfitCredit.project_id == project_id)
    stmt = stmt.order_by(UserProfitCredit.created_at.desc())
    return list((await db.execute(stmt)).scalars().all())


# ── Integrity audit ──────────────────────────────────────────────────────────


async def find_consistency_violations(db: AsyncSession) -> list[ConsistencyIssue]:
    """Scan committed state for broken distribution and supply invariants.

    Findings are logged and reported; history is never rewritten here.
    """
    quantum = Decimal(1).scaleb(-settings.CURRENCY_DECIMALS)
    issues: list[ConsistencyIssue] = []

    credit_totals = (
        await db.execute(
            select(
                ProfitDistribution.id,
                ProfitDistribution.project_id,
                ProfitDistribution.user_share,
                ProfitDistribution.holder_count,
                func.count(UserProfitCredit.id),
                func.coalesce(func.sum(UserProfitCredit.profit_amount), 0),
            )
            .outerjoin(UserProfitCredit, UserProfitCredit.distribution_id == ProfitDistribution.id)
            .where(ProfitDistribution.status == DistributionStatus.COMPLETED)
            .group_by(
                ProfitDistribution.id,
                ProfitDistribution.project_id,
                ProfitDistribution.user_share,
                ProfitDistribution.holder_count,
            )
        )
    ).all()
    for dist_id, project_id, user_share, holder_count, credit_count, credit_sum in credit_totals:
        if credit_count != holder_count:
            issues.append(ConsistencyIssue(
                kind="credits_missing",
                project_id=project_id,
                distribution_id=dist_id,
                detail=f"{credit_count} credits written for {holder_count} holders",
            ))
        elif Decimal(str(credit_sum)).quantize(quantum) != Decimal(str(user_share)).quantize(quantum):
            issues.append(ConsistencyIssue(
                kind="credits_mismatch",
                project_id=project_id,
                distribution_id=dist_id,
                detail=f"credits sum to {credit_sum}, user share is {user_share}",
            ))

    orphan_credits = (
        await db.execute(
            select(ProfitDistribution.id, ProfitDistribution.project_id, func.count(UserProfitCredit.id))
            .join(UserProfitCredit, UserProfitCredit.distribution_id == ProfitDistribution.id)
            .where(ProfitDistribution.status != DistributionStatus.COMPLETED)
            .group_by(ProfitDistribution.id, ProfitDistribution.project_id)
        )
    ).all()
    for dist_id, project_id, credit_count in orphan_credits:
        issues.append(ConsistencyIssue(
            kind="orphan_credits",
            project_id=project_id,
            distribution_id=dist_id,
            detail=f"{credit_count} credits attached to a distribution that is not completed",
        ))

    completed_without_distribution = (
        await db.execute(
            select(Project.id).where(
                Project.status == ProjectStatus.COMPLETED,
                ~select(ProfitDistribution.id)
                .where(
                    ProfitDistribution.project_id == Project.id,
                    ProfitDistribution.status == DistributionStatus.COMPLETED,
                )
                .exists(),
            )
        )
    ).scalars().all()
    for project_id in completed_without_distribution:
        issues.append(ConsistencyIssue(
            kind="project_without_distribution",
            project_id=project_id,
            detail="project is completed but has no completed distribution",
        ))

    sold = (
        select(Holding.project_id, func.sum(Holding.amount).label("sold"))
        .where(Holding.status == HoldingStatus.ACTIVE)
        .group_by(Holding.project_id)
        .subquery()
    )
    supply_rows = (
        await db.execute(
            select(Project.id, Project.total_tokens, Project.available_tokens, func.coalesce(sold.c.sold, 0))
            .outerjoin(sold, sold.c.project_id == Project.id)
        )
    ).all()
    for project_id, total_tokens, available_tokens, tokens_held in supply_rows:
        if total_tokens - available_tokens != tokens_held:
            issues.append(ConsistencyIssue(
                kind="supply_mismatch",
                project_id=project_id,
                detail=(
                    f"{total_tokens - available_tokens} tokens sold but "
                    f"{tokens_held} held in active holdings"
                ),
            ))

    for issue in issues:
        report_consistency_violation(
            issue.kind,
            issue.detail,
            project_id=str(issue.project_id),
            distribution_id=str(issue.distribution_id) if issue.distribution_id else "",
        )
    return issues
