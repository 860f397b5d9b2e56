"""Shared test fixtures for the TokenShare API test suite."""

import asyncio
import os
import tempfile
import uuid
from collections.abc import AsyncGenerator
from decimal import Decimal
from pathlib import Path

# The app module builds its engine from settings at import time
os.environ.setdefault(
    "DATABASE_URL",
    f"sqlite+aiosqlite:///{Path(tempfile.gettempdir()) / 'tokenshare-app.db'}",
)

import pytest
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.pool import NullPool

import tokenshare.models  # noqa: F401 — register all models so Base.metadata is populated
from tokenshare.core.database import Base, build_engine
from tokenshare.core.errors import LedgerError
from tokenshare.models.projects import Project
from tokenshare.modules.projects.schemas import ProjectCreate
from tokenshare.modules.projects.service import create_project
from tokenshare.modules.token_sale.service import purchase

# ── Test identities ──────────────────────────────────────────────────────────

ADMIN_ID = uuid.UUID("00000000-0000-0000-0000-00000000000a")
OTHER_ADMIN_ID = uuid.UUID("00000000-0000-0000-0000-00000000000b")
BUYER_A = uuid.UUID("00000000-0000-0000-0000-000000000001")
BUYER_B = uuid.UUID("00000000-0000-0000-0000-000000000002")
BUYER_C = uuid.UUID("00000000-0000-0000-0000-000000000003")


class FakeLedger:
    """In-memory ledger with failure injection.

    Dividends are keyed by idempotency key, so re-submitting a record returns
    the original handle instead of writing a second one.
    """

    def __init__(self) -> None:
        self.tokens: dict[str, dict] = {}
        self.dividends: dict[str, dict] = {}
        self.dividend_calls = 0
        self.token_calls = 0
        self.fail_dividend_with: Exception | None = None
        self.fail_token_with: Exception | None = None
        self.delay = 0.0
        # When set, submit_dividend waits for it (and flags `entered` first)
        self.gate: asyncio.Event | None = None
        self.entered = asyncio.Event()

    @staticmethod
    def _tx_hash() -> str:
        return "0x" + uuid.uuid4().hex + uuid.uuid4().hex

    async def submit_token_creation(self, token_id: str, project_id: str, amount: int) -> str:
        self.token_calls += 1
        if self.fail_token_with is not None:
            raise self.fail_token_with
        record = self.tokens.setdefault(
            token_id, {"project_id": project_id, "amount": amount, "tx_hash": self._tx_hash()}
        )
        return record["tx_hash"]

    async def submit_dividend(
        self,
        idempotency_key: str,
        project_id: str,
        total_profit: Decimal,
        admin_share: Decimal,
        user_share: Decimal,
        profit_per_token: Decimal,
    ) -> str:
        self.dividend_calls += 1
        self.entered.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_dividend_with is not None:
            raise self.fail_dividend_with
        record = self.dividends.setdefault(
            idempotency_key,
            {
                "project_id": project_id,
                "total_profit": total_profit,
                "admin_share": admin_share,
                "user_share": user_share,
                "profit_per_token": profit_per_token,
                "tx_hash": self._tx_hash(),
            },
        )
        return record["tx_hash"]

    async def ping(self) -> bool:
        return not isinstance(self.fail_dividend_with, LedgerError)


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"


@pytest.fixture
async def engine(tmp_path: Path) -> AsyncGenerator[AsyncEngine]:
    """A fresh file-backed SQLite database per test; separate sessions get separate connections."""
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'tokenshare.db'}", poolclass=NullPool)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_factory: async_sessionmaker[AsyncSession]) -> AsyncGenerator[AsyncSession]:
    async with session_factory() as session:
        yield session


@pytest.fixture
def ledger() -> FakeLedger:
    return FakeLedger()


# ── Sample data ──────────────────────────────────────────────────────────────


async def make_project(
    db: AsyncSession,
    *,
    total_tokens: int = 100,
    token_price: Decimal = Decimal("100"),
    initial_capital: Decimal = Decimal("10000"),
    admin_id: uuid.UUID = ADMIN_ID,
    name: str = "Solar Farm Alpha",
) -> Project:
    project = await create_project(
        db,
        admin_id,
        ProjectCreate(
            name=name,
            total_tokens=total_tokens,
            token_price=token_price,
            initial_capital=initial_capital,
        ),
    )
    await db.commit()
    return project


@pytest.fixture
async def project(db: AsyncSession) -> Project:
    """Active project: 100 tokens at 100.00, none sold."""
    return await make_project(db)


@pytest.fixture
async def sold_out_project(db: AsyncSession, ledger: FakeLedger) -> Project:
    """Project whose 100 tokens are held 60 by BUYER_A and 40 by BUYER_B."""
    project = await make_project(db)
    await purchase(db, ledger, project.id, BUYER_A, 60)
    await purchase(db, ledger, project.id, BUYER_B, 40)
    return project
