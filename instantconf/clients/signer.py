"""
InstantConf — Probe Transaction Signer

Builds and signs the probe transaction: a small value transfer to the burn
address. Key material stays in-process; only the signed payload leaves.
The transaction hash is known before submission, so push events that race
the synchronous return can still be correlated.
"""

from __future__ import annotations

import asyncio
from decimal import Decimal
from typing import TYPE_CHECKING

import structlog
from eth_account import Account
from eth_utils import to_checksum_address, to_hex, to_wei

from instantconf.errors import ConfigurationError
from instantconf.primitives.common import ICBaseModel, normalize_hash

if TYPE_CHECKING:
    from eth_account.signers.local import LocalAccount

    from instantconf.clients.rpc import RpcClient
    from instantconf.config import SignerConfig

logger = structlog.get_logger("instantconf.clients.signer")


class SignedPayload(ICBaseModel):
    hash: str
    raw: str  # 0x-hex
    nonce: int
    sender: str


class TransferSigner:
    """
    Signs consecutive-nonce transfers for one account.

    Chain id, gas price and gas limit are fetched once on first use; the
    nonce is read from the pending state once and then incremented locally.
    """

    def __init__(self, config: SignerConfig, rpc: RpcClient) -> None:
        try:
            self._account: LocalAccount = Account.from_key(config.private_key)
        except (ValueError, TypeError) as exc:
            raise ConfigurationError(f"invalid signing key: {exc}") from exc
        self._config = config
        self._rpc = rpc
        self._recipient = to_checksum_address(config.recipient)
        self._value_wei = to_wei(Decimal(config.value_ether), "ether")
        self._lock = asyncio.Lock()
        self._next_nonce: int | None = None
        self._chain_id: int | None = None
        self._gas_price: int | None = None
        self._gas_limit: int | None = config.gas_limit
        self._logger = logger.bind(component="signer", sender=self._account.address)

    @property
    def address(self) -> str:
        return self._account.address

    async def _prepare(self) -> None:
        if self._chain_id is None:
            self._chain_id = await self._rpc.chain_id()
        if self._gas_price is None:
            self._gas_price = await self._rpc.gas_price()
        if self._gas_limit is None:
            self._gas_limit = await self._rpc.estimate_gas(
                {
                    "from": self.address,
                    "to": self._recipient,
                    "value": hex(self._value_wei),
                }
            )
            self._logger.info("gas_estimated", gas=self._gas_limit)
        if self._next_nonce is None:
            self._next_nonce = await self._rpc.nonce(self.address)

    async def sign_next(self) -> SignedPayload:
        """Sign the next transfer in nonce order."""
        async with self._lock:
            await self._prepare()
            nonce = self._next_nonce
            tx = {
                "to": self._recipient,
                "value": self._value_wei,
                "gas": self._gas_limit,
                "gasPrice": self._gas_price,
                "nonce": nonce,
                "chainId": self._chain_id,
                "data": b"",
            }
            signed = self._account.sign_transaction(tx)
            self._next_nonce = nonce + 1

        payload = SignedPayload(
            hash=normalize_hash(to_hex(signed.hash)),
            raw=to_hex(signed.raw_transaction),
            nonce=nonce,
            sender=self.address,
        )
        self._logger.debug("transaction_signed", tx_hash=payload.hash, nonce=nonce)
        return payload
