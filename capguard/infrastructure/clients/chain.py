"""ERC-20 transfer client for the operator wallet"""

import asyncio
import logging
from contextlib import contextmanager
from typing import Iterator, Optional, Protocol

import aiohttp
from eth_account import Account
from web3 import AsyncWeb3
from web3.exceptions import ContractLogicError, TimeExhausted, TransactionNotFound, Web3Exception

from capguard.config import settings
from capguard.domain.exceptions import (
    ChainRPCError,
    ConfirmationTimeoutError,
    InsufficientFundsError,
    SignerNotReadyError,
    StaleNonceError,
    TransactionRevertedError,
)
from capguard.domain.models import Receipt

logger = logging.getLogger(__name__)

ZERO_ADDRESS = "0x0000000000000000000000000000000000000000"

ERC20_ABI = [
    {
        "name": "transfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [{"name": "to", "type": "address"}, {"name": "amount", "type": "uint256"}],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "account", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
]


class ChainClient(Protocol):
    """Balance/transfer boundary used by the disbursement engine"""

    @property
    def is_ready(self) -> bool: ...

    @property
    def signer_address(self) -> Optional[str]: ...

    async def get_balance(self, token: str, address: str) -> int: ...

    async def gas_price(self) -> int: ...

    async def estimate_transfer_gas(self, token: str, to: str, amount: int) -> int: ...

    async def get_nonce(self) -> int: ...

    async def send_transfer(self, token: str, to: str, amount: int, gas: int, gas_price: int, nonce: int) -> str: ...

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt: ...

    async def is_broadcast(self, tx_hash: str) -> bool: ...

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]: ...


@contextmanager
def translate_chain_errors(tx_hash: str | None = None) -> Iterator[None]:
    """
    Map web3/RPC failures onto the transfer error taxonomy.

    Node error text is only inspected here; callers classify by type.
    """
    try:
        yield
    except ContractLogicError as e:
        raise TransactionRevertedError(f"Transfer would revert: {e}", tx_hash=tx_hash) from e
    except TimeExhausted as e:
        raise ConfirmationTimeoutError(f"No receipt for {tx_hash}: {e}", tx_hash=tx_hash) from e
    except (Web3Exception, ValueError, aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
        message = str(e).lower()
        if "insufficient funds" in message:
            raise InsufficientFundsError(str(e), tx_hash=tx_hash) from e
        if "nonce too low" in message or "nonce has already been used" in message:
            raise StaleNonceError(str(e), tx_hash=tx_hash) from e
        raise ChainRPCError(f"RPC error: {e}", tx_hash=tx_hash) from e


class Web3ChainClient:
    """Signs and submits ERC-20 transfers from the configured operator key"""

    def __init__(
        self,
        rpc_url: str | None = None,
        private_key: str | None = None,
        chain_id: int | None = None,
        timeout: float | None = None,
    ):
        self.chain_id = chain_id or settings.chain_id
        request_timeout = aiohttp.ClientTimeout(total=timeout or settings.rpc_timeout_seconds)
        self.w3 = AsyncWeb3(
            AsyncWeb3.AsyncHTTPProvider(rpc_url or settings.rpc_url, request_kwargs={"timeout": request_timeout})
        )

        if private_key is None and settings.signer_private_key is not None:
            private_key = settings.signer_private_key.get_secret_value()

        self._account = None
        if private_key:
            key = private_key if private_key.startswith("0x") else f"0x{private_key}"
            self._account = Account.from_key(key)
            logger.info("Signer initialized", extra={"signer": self._account.address})
        else:
            logger.info("No signer key configured - transfers disabled")

    @property
    def is_ready(self) -> bool:
        return self._account is not None

    @property
    def signer_address(self) -> Optional[str]:
        return self._account.address if self._account else None

    def _require_signer(self):
        if self._account is None:
            raise SignerNotReadyError("Signer not initialized")
        return self._account

    def _token(self, token: str):
        return self.w3.eth.contract(address=AsyncWeb3.to_checksum_address(token), abi=ERC20_ABI)

    async def get_balance(self, token: str, address: str) -> int:
        with translate_chain_errors():
            return await self._token(token).functions.balanceOf(AsyncWeb3.to_checksum_address(address)).call()

    async def gas_price(self) -> int:
        with translate_chain_errors():
            return await self.w3.eth.gas_price

    async def estimate_transfer_gas(self, token: str, to: str, amount: int) -> int:
        account = self._require_signer()
        data = self._token(token).encode_abi("transfer", args=[AsyncWeb3.to_checksum_address(to), amount])
        with translate_chain_errors():
            return await self.w3.eth.estimate_gas(
                {"from": account.address, "to": AsyncWeb3.to_checksum_address(token), "data": data}
            )

    async def get_nonce(self) -> int:
        # "pending" so in-flight transfers from this signer are counted
        account = self._require_signer()
        with translate_chain_errors():
            return await self.w3.eth.get_transaction_count(account.address, "pending")

    async def send_transfer(self, token: str, to: str, amount: int, gas: int, gas_price: int, nonce: int) -> str:
        account = self._require_signer()
        data = self._token(token).encode_abi("transfer", args=[AsyncWeb3.to_checksum_address(to), amount])
        tx = {
            "chainId": self.chain_id,
            "from": account.address,
            "to": AsyncWeb3.to_checksum_address(token),
            "data": data,
            "value": 0,
            "gas": gas,
            "gasPrice": gas_price,
            "nonce": nonce,
        }
        signed = account.sign_transaction(tx)
        # Known before sending so a failed send can still be traced on-chain
        tx_hash = AsyncWeb3.to_hex(signed.hash)
        with translate_chain_errors(tx_hash):
            await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        return tx_hash

    async def wait_for_receipt(self, tx_hash: str, timeout: float) -> Receipt:
        with translate_chain_errors(tx_hash):
            receipt = await self.w3.eth.wait_for_transaction_receipt(tx_hash, timeout=timeout)
        return self._to_receipt(tx_hash, receipt)

    async def is_broadcast(self, tx_hash: str) -> bool:
        """Whether the node knows the transaction, mined or still in the mempool"""
        with translate_chain_errors(tx_hash):
            try:
                await self.w3.eth.get_transaction(tx_hash)
            except TransactionNotFound:
                return False
        return True

    async def get_receipt(self, tx_hash: str) -> Optional[Receipt]:
        with translate_chain_errors(tx_hash):
            try:
                receipt = await self.w3.eth.get_transaction_receipt(tx_hash)
            except TransactionNotFound:
                return None
        return self._to_receipt(tx_hash, receipt)

    @staticmethod
    def _to_receipt(tx_hash: str, receipt) -> Receipt:
        return Receipt(
            tx_hash=tx_hash,
            success=receipt["status"] == 1,
            gas_used=int(receipt["gasUsed"]),
            block_number=receipt.get("blockNumber"),
        )
