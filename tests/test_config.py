from decimal import Decimal

from building_ledger.config import BillingConfig, Settings, get_billing_config


def test_settings_read_billing_values_from_environment(monkeypatch):
    monkeypatch.setenv("CURRENCY_CODE", "USD")
    monkeypatch.setenv("CURRENCY_SYMBOL", "$")
    monkeypatch.setenv("DEFAULT_MONTHLY_FEE", "125.50")
    monkeypatch.setenv("SUBSCRIPTION_DUE_POSITION", "first")

    settings = Settings(_env_file=None)

    assert settings.currency_code == "USD"
    assert settings.default_monthly_fee == Decimal("125.50")
    assert settings.subscription_due_position == "first"
    assert settings.email_backend == "local"


def test_billing_config_formats_amounts_with_symbol():
    config = BillingConfig(currency_symbol="$")

    assert config.format_amount(Decimal("12.5")) == "$12.50"
    assert config.format_amount(Decimal("-3")) == "$-3.00"


def test_billing_config_snapshots_current_settings():
    config = get_billing_config()

    assert isinstance(config, BillingConfig)
    assert config.currency_code
    assert config.subscription_due_position in {"first", "last"}
