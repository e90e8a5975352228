"""
EVM Wallet

On-chain Wallet holding ERC-20 collateral on an EVM chain. Transactions
are signed locally with eth_account and broadcast over JSON-RPC with
web3. ``transfer`` returns a PendingTransaction; retry_with_backoff awaits
its receipt and treats a reverted transaction as a failed attempt.

Configuration:

    wallet:
      type: evm
      credentials: WALLET       # WALLET_PRIVATE_KEY / WALLET_RPC_URL
      chain_id: 10
      tokens:
        USDT: "0x94b008aA00579c1307B0EF2c499aD98a8ce58e58"
"""

import logging
from decimal import Decimal
from typing import Any, Callable, Dict, Optional, Tuple

from eth_account import Account
from web3 import AsyncWeb3

logger = logging.getLogger("perp_arb.venues.evm")

DEFAULT_RECEIPT_TIMEOUT = 600.0

ERC20_ABI = [
    {
        "name": "transfer",
        "type": "function",
        "stateMutability": "nonpayable",
        "inputs": [
            {"name": "to", "type": "address"},
            {"name": "value", "type": "uint256"},
        ],
        "outputs": [{"name": "", "type": "bool"}],
    },
    {
        "name": "balanceOf",
        "type": "function",
        "stateMutability": "view",
        "inputs": [{"name": "owner", "type": "address"}],
        "outputs": [{"name": "", "type": "uint256"}],
    },
    {
        "name": "decimals",
        "type": "function",
        "stateMutability": "view",
        "inputs": [],
        "outputs": [{"name": "", "type": "uint8"}],
    },
]


class PendingTransaction:
    """A broadcast transaction whose receipt has not been seen yet."""

    def __init__(
        self,
        w3: Any,
        tx_hash: bytes,
        timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        on_mined: Optional[Callable[["PendingTransaction"], None]] = None,
    ):
        self.w3 = w3
        self.tx_hash = tx_hash
        self.timeout = timeout
        self._on_mined = on_mined

    async def wait(self) -> Any:
        """Wait for the receipt. Raises web3's TimeExhausted if it never arrives."""
        receipt = await self.w3.eth.wait_for_transaction_receipt(self.tx_hash, timeout=self.timeout)
        logger.info(
            "Transaction %s mined in block %s (status=%s)",
            AsyncWeb3.to_hex(self.tx_hash),
            receipt.get("blockNumber"),
            receipt.get("status"),
        )
        if self._on_mined is not None:
            self._on_mined(self)
        return receipt


class EvmWallet:
    """
    ERC-20 wallet controlled by a single private key.

    Tokens are addressed either by a configured symbol or by contract
    address. A transfer that was broadcast but whose receipt timed out is
    handed back on the next identical call instead of being sent again.
    """

    def __init__(
        self,
        private_key: str,
        rpc_url: Optional[str] = None,
        tokens: Optional[Dict[str, str]] = None,
        chain_id: Optional[int] = None,
        receipt_timeout: float = DEFAULT_RECEIPT_TIMEOUT,
        w3: Optional[Any] = None,
    ):
        """
        Initialize the wallet.

        Args:
            private_key: Hex private key of the sending account
            rpc_url: JSON-RPC endpoint (ignored when ``w3`` is given)
            tokens: Token symbol -> ERC-20 contract address
            chain_id: Chain id added to transactions (None = let the node fill it)
            receipt_timeout: Seconds to wait for a receipt
            w3: Pre-built AsyncWeb3 instance (tests)
        """
        if w3 is None:
            if not rpc_url:
                raise ValueError("EvmWallet needs an rpc_url")
            w3 = AsyncWeb3(AsyncWeb3.AsyncHTTPProvider(rpc_url))

        self.account = Account.from_key(private_key)
        self.w3 = w3
        self.tokens = {
            symbol: AsyncWeb3.to_checksum_address(address)
            for symbol, address in (tokens or {}).items()
        }
        self.chain_id = chain_id
        self.receipt_timeout = receipt_timeout
        self._decimals: Dict[str, int] = {}
        self._inflight: Dict[Tuple[str, str, float], PendingTransaction] = {}

        logger.info("EvmWallet %s initialized (tokens=%s)", self.address, ", ".join(self.tokens) or "-")

    @property
    def address(self) -> str:
        return self.account.address

    def token_address(self, token: str) -> str:
        """Contract address for a configured symbol or a raw address."""
        if token in self.tokens:
            return self.tokens[token]
        if AsyncWeb3.is_address(token):
            return AsyncWeb3.to_checksum_address(token)
        raise ValueError(f"Unknown token '{token}' (configured: {sorted(self.tokens)})")

    def _contract(self, token: str) -> Any:
        return self.w3.eth.contract(address=self.token_address(token), abi=ERC20_ABI)

    async def decimals(self, token: str) -> int:
        address = self.token_address(token)
        if address not in self._decimals:
            self._decimals[address] = int(await self._contract(token).functions.decimals().call())
        return self._decimals[address]

    async def balance_of(self, token: str, address: str) -> float:
        raw = await self._contract(token).functions.balanceOf(
            AsyncWeb3.to_checksum_address(address)
        ).call()
        return float(Decimal(raw) / (Decimal(10) ** await self.decimals(token)))

    async def transfer(self, token: str, to_address: str, amount: float) -> PendingTransaction:
        """
        Sign and broadcast an ERC-20 transfer.

        Returns:
            PendingTransaction to await for the receipt.
        """
        recipient = AsyncWeb3.to_checksum_address(to_address)
        key = (self.token_address(token), recipient, amount)

        pending = self._inflight.get(key)
        if pending is not None:
            logger.warning(
                "Transfer of %.6f %s to %s still unconfirmed, waiting on %s",
                amount,
                token,
                recipient,
                AsyncWeb3.to_hex(pending.tx_hash),
            )
            return pending

        decimals = await self.decimals(token)
        raw_amount = int(Decimal(str(amount)) * (Decimal(10) ** decimals))

        nonce = await self.w3.eth.get_transaction_count(self.address, "pending")
        tx_params: Dict[str, Any] = {"from": self.address, "nonce": nonce}
        if self.chain_id is not None:
            tx_params["chainId"] = self.chain_id

        tx = await self._contract(token).functions.transfer(recipient, raw_amount).build_transaction(
            tx_params
        )
        signed = self.account.sign_transaction(tx)
        tx_hash = await self.w3.eth.send_raw_transaction(signed.raw_transaction)
        logger.info(
            "Sent %.6f %s to %s (nonce %d): %s",
            amount,
            token,
            recipient,
            nonce,
            AsyncWeb3.to_hex(tx_hash),
        )

        pending = PendingTransaction(
            self.w3,
            tx_hash,
            timeout=self.receipt_timeout,
            on_mined=lambda _: self._inflight.pop(key, None),
        )
        self._inflight[key] = pending
        return pending
