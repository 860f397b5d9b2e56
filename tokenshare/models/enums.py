"""Status enums shared by the token sale and distribution models."""

import enum


# ── Projects & tokens ────────────────────────────────────────────────────────


class ProjectStatus(str, enum.Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class HoldingStatus(str, enum.Enum):
    ACTIVE = "active"
    SOLD = "sold"
    TRANSFERRED = "transferred"


class LedgerSyncStatus(str, enum.Enum):
    PENDING = "pending"
    CONFIRMED = "confirmed"
    FAILED = "failed"


class TransactionType(str, enum.Enum):
    PURCHASE = "purchase"


class TransactionStatus(str, enum.Enum):
    COMPLETED = "completed"


# ── Profit distribution ──────────────────────────────────────────────────────


class DistributionStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    # Left behind when a retry with different figures replaces an aborted attempt
    SUPERSEDED = "superseded"


# ── Auth ─────────────────────────────────────────────────────────────────────


class UserRole(str, enum.Enum):
    ADMIN = "admin"
    INVESTOR = "investor"
