"""Test/live classification of incoming orders.

The result is only used for filtering later on; it never blocks intake.
"""

import enum
import logging

from ordercore.schemas.checkout import PaymentDescriptor

logger = logging.getLogger(__name__)


class OrderMode(str, enum.Enum):
    live = "live"
    test = "test"


_LIVE_OVERRIDES = {"live", "production", "prod"}
_TEST_OVERRIDES = {"test", "dev", "development", "sandbox"}

_SANDBOX_MARKERS = ("sandbox", "test")

# Matched exactly after normalisation; anything else counts as a test network.
_CRYPTO_MAINNETS = {
    "mainnet",
    "bitcoin",
    "bitcoin-mainnet",
    "btc",
    "ethereum",
    "ethereum-mainnet",
    "eth",
    "polygon",
    "polygon-mainnet",
    "solana",
    "solana-mainnet",
    "litecoin",
}
_CRYPTO_TESTNET_MARKERS = ("testnet", "devnet", "sepolia", "goerli", "holesky", "rinkeby", "kovan", "ropsten", "mumbai", "amoy")


def parse_override(raw: str | None) -> OrderMode | None:
    value = (raw or "").strip().lower()
    if not value:
        return None
    if value in _LIVE_OVERRIDES:
        return OrderMode.live
    if value in _TEST_OVERRIDES:
        return OrderMode.test
    logger.warning("order_mode_override_ignored", extra={"mode": value})
    return None


def _is_live_env(env: str | None) -> bool:
    return (env or "").strip().lower() in _LIVE_OVERRIDES


def _classify_crypto(payment: PaymentDescriptor) -> OrderMode:
    network = (payment.network or "").strip().lower().replace("_", "-").replace(" ", "-")
    if network in _CRYPTO_MAINNETS:
        return OrderMode.live
    if not any(marker in network for marker in _CRYPTO_TESTNET_MARKERS):
        logger.warning("order_mode_unknown_crypto_network", extra={"network": payment.network or ""})
    return OrderMode.test


def classify_order_mode(
    payment: PaymentDescriptor,
    *,
    override: str | None = None,
    stripe_env: str | None = "sandbox",
    paypal_env: str | None = "sandbox",
) -> OrderMode:
    """Decide whether an order is a test order.

    An explicit override wins. Otherwise the payment's own markers decide:
    Stripe's ``livemode`` flag, PayPal sandbox identifiers, the crypto network
    name. When a card provider gives no marker, the configured provider
    environment is used.
    """
    explicit = parse_override(override)
    if explicit is not None:
        return explicit

    method = (payment.payment_method or "").strip().lower()
    reference = (payment.reference or "").lower()
    if method in {"stripe", "card"}:
        if payment.livemode is not None:
            return OrderMode.live if payment.livemode else OrderMode.test
        if "_test_" in reference:
            return OrderMode.test
        return OrderMode.live if _is_live_env(stripe_env) else OrderMode.test
    if method == "paypal":
        if any(marker in reference for marker in _SANDBOX_MARKERS):
            return OrderMode.test
        return OrderMode.live if _is_live_env(paypal_env) else OrderMode.test
    if method == "crypto":
        return _classify_crypto(payment)
    return OrderMode.test
