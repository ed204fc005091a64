import pytest

from ordercore.schemas.checkout import PaymentDescriptor
from ordercore.services.order_mode import OrderMode, classify_order_mode, parse_override


def _payment(**fields) -> PaymentDescriptor:
    return PaymentDescriptor.model_validate(fields)


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        ("live", OrderMode.live),
        (" Production ", OrderMode.live),
        ("prod", OrderMode.live),
        ("test", OrderMode.test),
        ("sandbox", OrderMode.test),
        ("dev", OrderMode.test),
        ("banana", None),
        ("", None),
        (None, None),
    ],
)
def test_parse_override(raw, expected) -> None:
    assert parse_override(raw) == expected


def test_override_wins_over_payment_markers() -> None:
    payment = _payment(paymentMethod="stripe", paymentIntentId="pi_test_1", livemode=False)
    assert classify_order_mode(payment, override="live") == OrderMode.live
    assert classify_order_mode(payment, override="nonsense") == OrderMode.test


def test_stripe_livemode_flag_then_reference_then_environment() -> None:
    assert classify_order_mode(_payment(paymentMethod="stripe", paymentIntentId="pi_1", livemode=True)) == OrderMode.live
    assert classify_order_mode(_payment(paymentMethod="card", paymentIntentId="pi_1", livemode=False)) == OrderMode.test
    assert classify_order_mode(_payment(paymentMethod="stripe", paymentIntentId="pi_test_1"), stripe_env="live") == OrderMode.test
    assert classify_order_mode(_payment(paymentMethod="stripe", paymentIntentId="pi_3"), stripe_env="live") == OrderMode.live
    assert classify_order_mode(_payment(paymentMethod="stripe", paymentIntentId="pi_3"), stripe_env="sandbox") == OrderMode.test


def test_paypal_sandbox_markers() -> None:
    assert classify_order_mode(_payment(paymentMethod="paypal", captureID="SANDBOX-123"), paypal_env="live") == OrderMode.test
    assert classify_order_mode(_payment(paymentMethod="paypal", captureID="8AB12345CD"), paypal_env="live") == OrderMode.live
    assert classify_order_mode(_payment(paymentMethod="paypal", captureID="8AB12345CD"), paypal_env="sandbox") == OrderMode.test


@pytest.mark.parametrize(
    ("network", "expected"),
    [
        ("ethereum", OrderMode.live),
        ("Bitcoin Mainnet", OrderMode.live),
        ("polygon_mainnet", OrderMode.live),
        ("sepolia", OrderMode.test),
        ("bitcoin-testnet", OrderMode.test),
        ("ethereum-sepolia", OrderMode.test),
        ("mystery-chain", OrderMode.test),
        (None, OrderMode.test),
    ],
)
def test_crypto_networks(network, expected) -> None:
    payment = _payment(paymentMethod="crypto", transactionId="0xabc", network=network)
    assert classify_order_mode(payment) == expected


def test_unknown_methods_default_to_test() -> None:
    assert classify_order_mode(_payment(paymentMethod="cheque")) == OrderMode.test
