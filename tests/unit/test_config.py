import pytest

from evently.infrastructure.config import Settings


@pytest.fixture
def clean_env(monkeypatch):
    for name in ("PAYMENT_GATEWAY_MODE", "RAZORPAY_KEY_ID", "RAZORPAY_KEY_SECRET", "JWT_SECRET"):
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


def test_live_gateway_requires_key_secret(clean_env):
    clean_env.setenv("PAYMENT_GATEWAY_MODE", "live")
    clean_env.setenv("RAZORPAY_KEY_ID", "rzp_live_key")

    with pytest.raises(ValueError, match="RAZORPAY_KEY_SECRET"):
        Settings.from_env()


def test_live_gateway_requires_key_id(clean_env):
    clean_env.setenv("PAYMENT_GATEWAY_MODE", "LIVE")
    clean_env.setenv("RAZORPAY_KEY_SECRET", "live-secret")

    with pytest.raises(ValueError):
        Settings.from_env()


def test_live_gateway_uses_configured_keys(clean_env):
    clean_env.setenv("PAYMENT_GATEWAY_MODE", "live")
    clean_env.setenv("RAZORPAY_KEY_ID", "rzp_live_key")
    clean_env.setenv("RAZORPAY_KEY_SECRET", "live-secret")

    settings = Settings.from_env()

    assert settings.payment_gateway_mode == "live"
    assert settings.razorpay_key_id == "rzp_live_key"
    assert settings.razorpay_key_secret == "live-secret"


def test_mock_gateway_falls_back_to_generated_secret(clean_env):
    first = Settings.from_env()
    second = Settings.from_env()

    assert first.payment_gateway_mode == "mock"
    assert first.razorpay_key_id == "rzp_test_key"
    assert first.razorpay_key_secret
    assert first.razorpay_key_secret != second.razorpay_key_secret
