"""
Venue Factory

Builds the venue adapters, wallet and converter described by the
``venues`` and ``wallet`` configuration sections.

Paper venues run on the paper wallet; ccxt venues need the evm wallet.

Dry run:

    venues:
      - name: alpha
        type: paper
        price: 2000
        funding_rate_per_second: -1.0e-8
        balance: 5000
      - name: beta
        type: paper
        funding_rate_per_second: 5.0e-9
        balance: 5000
    wallet:
      type: paper
      address: "paper:wallet"
      balances: {USDT: 0}
      converter:
        fee_rate: 0.0005
        rates:
          - {src: USDT, dst: sUSD, rate: 1.0}

Live:

    venues:
      - name: bybit
        type: ccxt
        exchange: bybit
        credentials: BYBIT        # BYBIT_API_KEY / BYBIT_API_SECRET
        network: OP
      - name: okx
        type: ccxt
        exchange: okx
        credentials: OKX
        network: OP
    wallet:
      type: evm
      credentials: WALLET       # WALLET_PRIVATE_KEY / WALLET_RPC_URL
      chain_id: 10
      tokens: {USDT: "0x94b008aA00579c1307B0EF2c499aD98a8ce58e58"}
"""

import logging
from typing import Any, Dict, Optional, Tuple

import common

from ..config import ArbConfig
from ..venue import Converter, PerpVenue, Wallet
from .ccxt_venue import CcxtVenue
from .evm_wallet import DEFAULT_RECEIPT_TIMEOUT, EvmWallet
from .paper import PaperConverter, PaperLedger, PaperVenue, PaperWallet

logger = logging.getLogger("perp_arb.venues.factory")

VENUE_TYPES = ("paper", "ccxt")
WALLET_TYPES = ("paper", "evm")


def _build_paper_venue(venue_cfg: Dict[str, Any], ledger: PaperLedger, config: ArbConfig) -> PaperVenue:
    venue = PaperVenue(
        venue_name=venue_cfg["name"],
        ledger=ledger,
        deposit_token=venue_cfg.get("deposit_token", "USDT"),
        price=float(venue_cfg.get("price", 2000.0)),
        funding_rate_per_second=float(venue_cfg.get("funding_rate_per_second", 0.0)),
        fee_rate=float(venue_cfg.get("fee_rate", 0.0006)),
        slippage=float(venue_cfg.get("slippage", 0.0005)),
        retry=config.retry,
        poll=config.poll,
    )
    balance = float(venue_cfg.get("balance", 0.0))
    if balance:
        ledger.adjust(venue.deposit_token, venue.account, balance)
    return venue


def _build_ccxt_venue(venue_cfg: Dict[str, Any], wallet: Wallet, config: ArbConfig) -> CcxtVenue:
    prefix = venue_cfg.get("credentials")
    api_key = common.get_credential(f"{prefix}_API_KEY") if prefix else None
    api_secret = common.get_credential(f"{prefix}_API_SECRET") if prefix else None
    if prefix and not (api_key and api_secret):
        logger.warning("Credentials %s_API_KEY/%s_API_SECRET not set", prefix, prefix)

    return CcxtVenue(
        venue_name=venue_cfg["name"],
        wallet=wallet,
        exchange_id=venue_cfg.get("exchange", "bybit"),
        deposit_token=venue_cfg.get("deposit_token", venue_cfg.get("settle", "USDT")),
        settle=venue_cfg.get("settle", "USDT"),
        network=venue_cfg.get("network"),
        api_key=api_key,
        api_secret=api_secret,
        sandbox=bool(venue_cfg.get("sandbox", False)),
        taker_fee=float(venue_cfg.get("taker_fee", 0.001)),
        funding_interval_hours=float(venue_cfg.get("funding_interval_hours", 8.0)),
        size_tolerance=float(venue_cfg.get("size_tolerance", 0.01)),
        trading_account=venue_cfg.get("trading_account"),
        funding_account=venue_cfg.get("funding_account"),
        arrival_tolerance=float(venue_cfg.get("arrival_tolerance", 0.01)),
        retry=config.retry,
        poll=config.poll,
    )


def _build_evm_wallet(wallet_cfg: Dict[str, Any]) -> EvmWallet:
    prefix = wallet_cfg.get("credentials", "WALLET")
    private_key = common.get_credential(f"{prefix}_PRIVATE_KEY")
    if not private_key:
        raise ValueError(f"{prefix}_PRIVATE_KEY is not set")
    rpc_url = wallet_cfg.get("rpc_url") or common.get_credential(f"{prefix}_RPC_URL")
    if not rpc_url:
        raise ValueError(f"No rpc_url configured and {prefix}_RPC_URL is not set")

    chain_id = wallet_cfg.get("chain_id")
    return EvmWallet(
        private_key,
        rpc_url=rpc_url,
        tokens=wallet_cfg.get("tokens", {}) or {},
        chain_id=int(chain_id) if chain_id is not None else None,
        receipt_timeout=float(wallet_cfg.get("receipt_timeout", DEFAULT_RECEIPT_TIMEOUT)),
    )


def _build_converter(converter_cfg: Dict[str, Any], ledger: PaperLedger) -> PaperConverter:
    rates = {
        (entry["src"], entry["dst"]): float(entry.get("rate", 1.0))
        for entry in converter_cfg.get("rates", []) or []
    }
    return PaperConverter(ledger, fee_rate=float(converter_cfg.get("fee_rate", 0.0005)), rates=rates)


def build_venues(
    config: ArbConfig,
    wallet: Optional[Wallet] = None,
    converter: Optional[Converter] = None,
) -> Tuple[Dict[str, PerpVenue], Wallet, Optional[Converter]]:
    """
    Build venues, wallet and converter from configuration.

    Args:
        config: Parsed configuration
        wallet: Wallet implementation to use instead of the configured one
        converter: Converter to use instead of the configured one

    Returns:
        (venues by name, wallet, converter)

    Raises:
        ValueError: Unknown venue or wallet type, duplicate names, missing
            wallet credentials, or paper and on-chain parts mixed.
    """
    ledger = wallet.ledger if isinstance(wallet, PaperWallet) else PaperLedger()
    wallet_cfg = config.wallet or {}

    if wallet is None:
        wallet_type = wallet_cfg.get("type", "paper")
        if wallet_type not in WALLET_TYPES:
            raise ValueError(f"Unknown wallet type '{wallet_type}' (expected one of {WALLET_TYPES})")
        if wallet_type == "evm":
            wallet = _build_evm_wallet(wallet_cfg)
        else:
            wallet = PaperWallet(ledger, address=wallet_cfg.get("address", "paper:wallet"))
            for token, amount in (wallet_cfg.get("balances", {}) or {}).items():
                ledger.adjust(token, wallet.address, float(amount))
        logger.info("Configured %s wallet %s", wallet_type, wallet.address)

    if converter is None and wallet_cfg.get("converter") is not None:
        if not isinstance(wallet, PaperWallet):
            raise ValueError("The paper converter only works with the paper wallet")
        converter = _build_converter(wallet_cfg["converter"], ledger)

    venues: Dict[str, PerpVenue] = {}
    for venue_cfg in config.venues:
        name = venue_cfg.get("name")
        venue_type = venue_cfg.get("type", "paper")
        if not name:
            raise ValueError(f"Venue entry without a name: {venue_cfg}")
        if name in venues:
            raise ValueError(f"Duplicate venue name '{name}'")
        if venue_type not in VENUE_TYPES:
            raise ValueError(f"Unknown venue type '{venue_type}' for {name} (expected one of {VENUE_TYPES})")

        if venue_type == "paper":
            if not isinstance(wallet, PaperWallet):
                raise ValueError(f"Paper venue {name} cannot be funded from an on-chain wallet")
            venues[name] = _build_paper_venue(venue_cfg, ledger, config)
        else:
            if isinstance(wallet, PaperWallet):
                raise ValueError(
                    f"Venue {name} moves real funds and cannot use the paper wallet"
                )
            venues[name] = _build_ccxt_venue(venue_cfg, wallet, config)

        logger.info("Configured %s venue %s", venue_type, name)

    return venues, wallet, converter
