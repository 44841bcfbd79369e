from __future__ import annotations

import asyncio
import logging
from typing import Any

import aiohttp
from web3 import AsyncWeb3
from web3.exceptions import Web3Exception

from rebalancer.common import log_event

from .errors import DataUnavailable
from .types import Asset

ERC20_BALANCE_ABI: list[dict[str, Any]] = [
    {
        "constant": True,
        "inputs": [{"name": "owner", "type": "address"}],
        "name": "balanceOf",
        "outputs": [{"name": "", "type": "uint256"}],
        "stateMutability": "view",
        "type": "function",
    }
]


class Erc20BalanceReader:
    def __init__(self, *, logger: logging.Logger, web3: AsyncWeb3) -> None:
        self._logger = logger
        self._web3 = web3

    async def get_balance(self, *, owner: str, asset: Asset) -> int:
        contract = self._web3.eth.contract(
            address=AsyncWeb3.to_checksum_address(asset.address),
            abi=ERC20_BALANCE_ABI,
        )
        try:
            raw = await contract.functions.balanceOf(AsyncWeb3.to_checksum_address(owner)).call()
        except asyncio.CancelledError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, Web3Exception, ValueError) as error:
            raise DataUnavailable(
                f"balanceOf({asset.symbol}) failed: {error}",
                details={"asset": asset.symbol},
            ) from error

        try:
            amount = int(raw)
        except (TypeError, ValueError) as error:
            raise DataUnavailable(f"balanceOf({asset.symbol}) returned {raw!r}") from error

        log_event(
            self._logger,
            level="info",
            event="balance_read",
            message="Token balance read",
            asset=asset.symbol,
            amount=amount,
            units=str(asset.units(amount)),
        )
        return amount
