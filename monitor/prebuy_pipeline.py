"""Pre-buy risk checks run against a freshly listed token before any buy is dispatched."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Awaitable, Callable

from web3 import Web3

import config
from monitor.chain_connection import ContractCallReverted
from utils.addressing import is_zero_address, normalize_address

logger = logging.getLogger(__name__)


ERC20_ABI: list[dict[str, Any]] = [
    {
        "name": "symbol",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "string"}],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
    {
        "name": "totalSupply",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "owner",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "transfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "to", "type": "address"}, {"name": "value", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
]


ROUTER_ABI: list[dict[str, Any]] = [
    {
        "name": "WETH",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "address"}],
    },
    {
        "name": "getAmountsOut",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "amountIn", "type": "uint256"}, {"name": "path", "type": "address[]"}],
        "outputs": [{"name": "amounts", "type": "uint256[]"}],
    },
]

REASON_NO_CODE = "no contract code at target address"
REASON_MISSING_METADATA = "token missing symbol/decimals"
REASON_SIMULATION_UNAVAILABLE = "transfer simulation unavailable"


@dataclass
class CheckResult:
    passed: bool
    reasons: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


Check = Callable[[str, str, dict[str, Any]], Awaitable["str | None"]]


class PreBuyPipeline:
    """Five independent read-only checks; every one runs even after an earlier failure.

    A check answers ``None`` when it is satisfied or a human-readable reason
    when it is not. Exceptions raised inside a check are turned into reasons,
    so ``run`` always returns a complete CheckResult.
    """

    def __init__(
        self,
        chain: Any,
        *,
        router_address: str | None = None,
        base_asset_address: str | None = None,
        quote_amount_native: str | None = None,
    ) -> None:
        self.chain = chain
        self.router_address = normalize_address(
            router_address if router_address is not None else config.ROUTER_ADDRESS
        )
        self.base_asset_address = normalize_address(
            base_asset_address if base_asset_address is not None else config.BASE_ASSET_ADDRESS
        )
        self.quote_amount_native = str(
            quote_amount_native if quote_amount_native is not None else config.PREBUY_QUOTE_AMOUNT_NATIVE
        )
        self._router_base_asset = ""
        self._runs = 0
        self._passed = 0
        self._failed = 0
        self._reason_counts: dict[str, int] = {}

    def _checks(self) -> list[tuple[str, Check]]:
        return [
            ("contract", self._check_contract_exists),
            ("metadata", self._check_metadata),
            ("ownership", self._check_ownership),
            ("simulation", self._check_transfer_simulation),
            ("liquidity", self._check_liquidity_path),
        ]

    def runtime_stats(self, reset: bool = False) -> dict[str, Any]:
        top_reason = "none"
        top_count = 0
        if self._reason_counts:
            top_reason, top_count = max(self._reason_counts.items(), key=lambda kv: int(kv[1]))
        out = {
            "runs": int(self._runs),
            "passed": int(self._passed),
            "failed": int(self._failed),
            "fail_reason_top": top_reason,
            "fail_reason_top_count": int(top_count),
            "fail_reason_counts": dict(self._reason_counts),
        }
        if reset:
            self._runs = 0
            self._passed = 0
            self._failed = 0
            self._reason_counts = {}
        return out

    async def run(self, token_address: str, *, holder_address: str | None = None) -> CheckResult:
        """Check ``token_address``.

        ``holder_address`` is the account the transfer simulation sends from,
        normally the pair contract that just received liquidity. Defaults to
        the token contract itself.
        """
        token = normalize_address(token_address)
        holder = normalize_address(holder_address) or token
        self._runs += 1
        reasons: list[str] = []
        metadata: dict[str, Any] = {"token_address": token, "holder_address": holder}

        for name, check in self._checks():
            try:
                reason = await check(token, holder, metadata)
            except Exception as exc:
                reason = f"{name} check error: {exc.__class__.__name__}: {exc}"
            if reason:
                reasons.append(reason)

        passed = not reasons
        if passed:
            self._passed += 1
            logger.info("PREBUY_PASS token=%s symbol=%s", token, metadata.get("symbol", ""))
        else:
            self._failed += 1
            for reason in reasons:
                key = reason.split(":", 1)[0].strip().lower() or "unknown"
                self._reason_counts[key] = int(self._reason_counts.get(key, 0)) + 1
            logger.info("PREBUY_FAIL token=%s reasons=%s", token, "; ".join(reasons))
        return CheckResult(passed=passed, reasons=reasons, metadata=metadata)

    async def _check_contract_exists(self, token: str, holder: str, metadata: dict[str, Any]) -> str | None:
        code = await self.chain.get_code(token)
        size = len(bytes(code or b""))
        metadata["code_size"] = size
        if size == 0:
            return REASON_NO_CODE
        return None

    async def _read_optional(self, token: str, fn_name: str, *args: Any) -> Any:
        """Read call where a revert means "not implemented". Transport errors propagate."""
        try:
            return await self.chain.call_function(token, ERC20_ABI, fn_name, *args)
        except ContractCallReverted as exc:
            logger.debug("PREBUY_READ_MISS token=%s fn=%s error=%s", token, fn_name, exc)
            return None

    async def _check_metadata(self, token: str, holder: str, metadata: dict[str, Any]) -> str | None:
        symbol = await self._read_optional(token, "symbol")
        decimals = await self._read_optional(token, "decimals")
        total_supply = await self._read_optional(token, "totalSupply")
        if total_supply is not None:
            metadata["total_supply"] = int(total_supply)
        if symbol:
            metadata["symbol"] = str(symbol)
        if decimals is not None:
            metadata["decimals"] = int(decimals)
        if not symbol or decimals is None:
            return REASON_MISSING_METADATA
        return None

    async def _check_ownership(self, token: str, holder: str, metadata: dict[str, Any]) -> str | None:
        owner = await self._read_optional(token, "owner")
        if owner is None:
            return None
        owner_key = normalize_address(owner)
        metadata["owner"] = owner_key
        if is_zero_address(owner_key):
            return None
        return f"owner not renounced: {owner_key}"

    async def _check_transfer_simulation(self, token: str, holder: str, metadata: dict[str, Any]) -> str | None:
        simulate = getattr(self.chain, "simulate_transfer", None)
        if simulate is None:
            return REASON_SIMULATION_UNAVAILABLE
        balance = await self._read_optional(token, "balanceOf", Web3.to_checksum_address(holder))
        amount = 1 if balance is None else min(1, int(balance))
        try:
            ok = await simulate(token, ERC20_ABI, holder, holder, amount)
        except Exception as exc:
            return f"transfer simulation failed: {exc}"
        metadata["simulated_amount"] = amount
        if not ok:
            return "transfer simulation returned false"
        return None

    async def _resolve_base_asset(self) -> str:
        # Without a configured base asset, quote against the router's wrapped native token.
        if self.base_asset_address:
            return self.base_asset_address
        if not self._router_base_asset:
            weth = normalize_address(await self.chain.call_function(self.router_address, ROUTER_ABI, "WETH"))
            if weth and not is_zero_address(weth):
                self._router_base_asset = weth
                logger.info("PREBUY_BASE_ASSET source=router address=%s", weth)
        return self._router_base_asset

    async def _check_liquidity_path(self, token: str, holder: str, metadata: dict[str, Any]) -> str | None:
        if not self.router_address:
            return "liquidity path unavailable: router not configured"
        base_asset = await self._resolve_base_asset()
        if not base_asset:
            return "liquidity path unavailable: router has no wrapped native asset"
        metadata["base_asset"] = base_asset
        if base_asset == token:
            return "liquidity path unavailable: target is the base asset"
        try:
            amount_in = int(Web3.to_wei(Decimal(self.quote_amount_native), "ether"))
        except (InvalidOperation, ValueError) as exc:
            return f"liquidity path unavailable: bad quote amount {self.quote_amount_native!r} ({exc})"
        path = [Web3.to_checksum_address(base_asset), Web3.to_checksum_address(token)]
        amounts = await self.chain.call_function(self.router_address, ROUTER_ABI, "getAmountsOut", max(1, amount_in), path)
        if not isinstance(amounts, (list, tuple)) or len(amounts) < 2:
            return "no liquidity path: empty quote"
        quote_out = int(amounts[-1])
        metadata["quote_out"] = quote_out
        if quote_out <= 0:
            return "no liquidity path: zero quote"
        return None
