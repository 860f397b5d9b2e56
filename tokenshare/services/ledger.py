"""External ledger adapter — token and dividend records on an EVM contract.

The relational store stays the source of truth for balances; the contract is
the append-only audit trail. Every call is slow and fallible, so failures are
classified for the caller:

  LedgerUnavailable — transient (RPC down, timeout, not configured); retry the
                      whole operation later.
  LedgerRejected    — permanent (revert, invalid input, conflicting record);
                      surface to the admin, never retry automatically.
"""

from __future__ import annotations

import asyncio
import threading
from decimal import ROUND_DOWN, Decimal
from functools import lru_cache
from typing import Any, Protocol

import structlog

from tokenshare.core.config import settings
from tokenshare.core.errors import LedgerRejected, LedgerUnavailable

logger = structlog.get_logger()

_DIVIDEND_EVENT_SIGNATURE = "DividenProfitAdded(string,int256,int256,int256,int256)"

CONTRACT_ABI: list[dict[str, Any]] = [
    {
        "type": "function",
        "name": "createToken",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "tokenId", "type": "string"},
            {"name": "projectId", "type": "string"},
            {"name": "amount", "type": "int256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "addDividenProfit",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "projectId", "type": "string"},
            {"name": "totalProfit", "type": "int256"},
            {"name": "adminShare", "type": "int256"},
            {"name": "userShare", "type": "int256"},
            {"name": "profitPerToken", "type": "int256"},
        ],
        "outputs": [],
    },
    {
        "type": "function",
        "name": "getDividenProfitByProjectId",
        "stateMutability": "view",
        "inputs": [{"name": "projectId", "type": "string"}],
        "outputs": [
            {
                "name": "",
                "type": "tuple",
                "components": [
                    {"name": "projectId", "type": "string"},
                    {"name": "totalProfit", "type": "int256"},
                    {"name": "adminShare", "type": "int256"},
                    {"name": "userShare", "type": "int256"},
                    {"name": "profitPerToken", "type": "int256"},
                ],
            }
        ],
    },
    {
        "type": "event",
        "name": "DividenProfitAdded",
        "anonymous": False,
        "inputs": [
            {"name": "projectId", "type": "string", "indexed": False},
            {"name": "totalProfit", "type": "int256", "indexed": False},
            {"name": "adminShare", "type": "int256", "indexed": False},
            {"name": "userShare", "type": "int256", "indexed": False},
            {"name": "profitPerToken", "type": "int256", "indexed": False},
        ],
    },
]


class LedgerAdapter(Protocol):
    """What the token sale and distribution flows need from the external ledger."""

    async def submit_token_creation(self, token_id: str, project_id: str, amount: int) -> str:
        ...

    async def submit_dividend(
        self,
        idempotency_key: str,
        project_id: str,
        total_profit: Decimal,
        admin_share: Decimal,
        user_share: Decimal,
        profit_per_token: Decimal,
    ) -> str:
        ...

    async def ping(self) -> bool:
        ...


def to_chain_int(value: Decimal, decimals: int) -> int:
    """Scale a monetary Decimal to the contract's int256 representation (floored)."""
    return int((value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_DOWN))


class NullLedgerAdapter:
    """Stand-in when no ledger credentials are configured.

    Every submission fails as unavailable so nothing is ever marked confirmed
    without a real ledger handle.
    """

    async def submit_token_creation(self, token_id: str, project_id: str, amount: int) -> str:
        logger.warning("ledger.not_configured", operation="token_creation", token_id=token_id)
        raise LedgerUnavailable("External ledger is not configured")

    async def submit_dividend(
        self,
        idempotency_key: str,
        project_id: str,
        total_profit: Decimal,
        admin_share: Decimal,
        user_share: Decimal,
        profit_per_token: Decimal,
    ) -> str:
        logger.warning("ledger.not_configured", operation="dividend", project_id=project_id)
        raise LedgerUnavailable("External ledger is not configured")

    async def ping(self) -> bool:
        return False


class Web3LedgerAdapter:
    """Submits records to the audit contract through a JSON-RPC endpoint.

    web3's HTTP provider is blocking, so each call runs in a worker thread.
    Sends are serialized per process to keep account nonces in order.
    """

    def __init__(
        self,
        rpc_url: str,
        private_key: str,
        contract_address: str,
        *,
        chain_id: int | None = None,
        start_block: int = 0,
        timeout: float = 120.0,
        amount_decimals: int = 8,
    ) -> None:
        from web3 import Web3

        self._w3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": timeout}))
        self._account = self._w3.eth.account.from_key(private_key)
        self._contract = self._w3.eth.contract(
            address=Web3.to_checksum_address(contract_address), abi=CONTRACT_ABI
        )
        self._chain_id = chain_id
        self._start_block = start_block
        self._timeout = timeout
        self._decimals = amount_decimals
        self._send_lock = threading.Lock()

    # ── Contract calls (blocking, run via asyncio.to_thread) ─────────────────

    def _send(self, fn: Any) -> str:
        from web3 import Web3

        with self._send_lock:
            tx_params: dict[str, Any] = {
                "from": self._account.address,
                "nonce": self._w3.eth.get_transaction_count(self._account.address, "pending"),
            }
            if self._chain_id is not None:
                tx_params["chainId"] = self._chain_id
            tx = fn.build_transaction(tx_params)
            signed = self._account.sign_transaction(tx)
            tx_hash = self._w3.eth.send_raw_transaction(signed.raw_transaction)

        receipt = self._w3.eth.wait_for_transaction_receipt(tx_hash, timeout=self._timeout)
        if receipt["status"] != 1:
            raise LedgerRejected(
                "Ledger transaction reverted", tx_hash=Web3.to_hex(tx_hash)
            )
        return Web3.to_hex(receipt["transactionHash"])

    def _find_dividend_event(self, project_id: str, figures: tuple[int, int, int, int]) -> str | None:
        from web3 import Web3

        event = self._contract.events.DividenProfitAdded()
        logs = self._w3.eth.get_logs({
            "address": self._contract.address,
            "fromBlock": self._start_block,
            "toBlock": "latest",
            "topics": [Web3.to_hex(Web3.keccak(text=_DIVIDEND_EVENT_SIGNATURE))],
        })
        for log in logs:
            args = event.process_log(log)["args"]
            recorded = (args["totalProfit"], args["adminShare"], args["userShare"], args["profitPerToken"])
            if args["projectId"] == project_id and recorded == figures:
                return Web3.to_hex(log["transactionHash"])
        return None

    def _submit_dividend_sync(self, idempotency_key: str, project_id: str, figures: tuple[int, int, int, int]) -> str:
        # The contract keeps one dividend record per project: a record already
        # on chain means an earlier attempt landed and must not be resent.
        existing = self._contract.functions.getDividenProfitByProjectId(project_id).call()
        existing_figures = tuple(existing[1:5])
        if any(existing_figures):
            if existing_figures != figures:
                raise LedgerRejected(
                    "Ledger already holds a different dividend record for this project",
                    project_id=project_id,
                )
            tx_hash = self._find_dividend_event(project_id, figures)
            if tx_hash is None:
                raise LedgerUnavailable(
                    "Dividend record exists on ledger but its event was not found yet",
                    project_id=project_id,
                )
            logger.info("ledger.dividend_already_recorded", idempotency_key=idempotency_key, tx_hash=tx_hash)
            return tx_hash

        return self._send(self._contract.functions.addDividenProfit(project_id, *figures))

    async def _run(self, operation: str, fn: Any, *args: Any) -> Any:
        from web3.exceptions import (
            ContractLogicError,
            TimeExhausted,
            Web3Exception,
            Web3ValidationError,
        )

        try:
            return await asyncio.to_thread(fn, *args)
        except (LedgerRejected, LedgerUnavailable):
            raise
        except (ContractLogicError, Web3ValidationError) as exc:
            logger.error("ledger.rejected", operation=operation, error=str(exc))
            raise LedgerRejected(f"Ledger rejected {operation}: {exc}") from exc
        except (TimeExhausted, OSError, Web3Exception) as exc:
            logger.warning("ledger.unavailable", operation=operation, error=str(exc))
            raise LedgerUnavailable(f"Ledger unavailable during {operation}: {exc}") from exc

    # ── LedgerAdapter ────────────────────────────────────────────────────────

    async def submit_token_creation(self, token_id: str, project_id: str, amount: int) -> str:
        tx_hash = await self._run(
            "token_creation",
            lambda: self._send(self._contract.functions.createToken(token_id, project_id, amount)),
        )
        logger.info("ledger.token_created", token_id=token_id, project_id=project_id, tx_hash=tx_hash)
        return tx_hash

    async def submit_dividend(
        self,
        idempotency_key: str,
        project_id: str,
        total_profit: Decimal,
        admin_share: Decimal,
        user_share: Decimal,
        profit_per_token: Decimal,
    ) -> str:
        figures = (
            to_chain_int(total_profit, self._decimals),
            to_chain_int(admin_share, self._decimals),
            to_chain_int(user_share, self._decimals),
            to_chain_int(profit_per_token, self._decimals),
        )
        tx_hash = await self._run(
            "dividend", self._submit_dividend_sync, idempotency_key, project_id, figures
        )
        logger.info(
            "ledger.dividend_recorded",
            idempotency_key=idempotency_key,
            project_id=project_id,
            tx_hash=tx_hash,
        )
        return tx_hash

    async def ping(self) -> bool:
        try:
            await asyncio.to_thread(lambda: self._w3.eth.block_number)
            return True
        except Exception as exc:  # noqa: BLE001
            logger.warning("ledger.ping_failed", error=str(exc))
            return False


@lru_cache
def get_ledger() -> LedgerAdapter:
    """Process-wide ledger adapter; FastAPI dependency, override in tests."""
    if settings.LEDGER_RPC_URL and settings.LEDGER_PRIVATE_KEY and settings.LEDGER_CONTRACT_ADDRESS:
        return Web3LedgerAdapter(
            settings.LEDGER_RPC_URL,
            settings.LEDGER_PRIVATE_KEY,
            settings.LEDGER_CONTRACT_ADDRESS,
            chain_id=settings.LEDGER_CHAIN_ID,
            start_block=settings.LEDGER_START_BLOCK,
            timeout=settings.LEDGER_TIMEOUT_SECONDS,
            amount_decimals=settings.LEDGER_AMOUNT_DECIMALS,
        )
    logger.warning("ledger.no_credentials", msg="Ledger submissions will fail as unavailable")
    return NullLedgerAdapter()
