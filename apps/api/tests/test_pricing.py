import pytest

from errors import ValidationError
from services.pricing import (
    DEFAULT_PRICING,
    PricingResolver,
    default_pricing_table,
    ensure_pricing_setting,
    get_pricing_resolver,
    load_pricing_table,
    save_pricing_table,
)
from validators.business_rules import ClinicRules


@pytest.fixture
def resolver():
    return PricingResolver(DEFAULT_PRICING)


def test_treatment_price_wins(resolver):
    assert resolver.resolve("Back Pain", "regular") == 600
    assert resolver.resolve("Sports Injury", "emergency") == 700


def test_unknown_pain_type_falls_back_to_consultation_type(resolver):
    assert resolver.resolve("UnknownType", "emergency") == 800
    assert resolver.resolve(None, "followUp") == 350


def test_nothing_known_uses_regular_price(resolver):
    assert resolver.resolve(None, None) == 500
    assert resolver.resolve("UnknownType", "unknown") == 500


def test_empty_table_never_fails():
    assert PricingResolver({}).resolve("Back Pain", "regular") == 0


def test_gst_added_when_prices_exclude_tax():
    table = {"consultation": {"regular": 100}, "tax": {"gst": 18, "includeInPrice": False}}
    assert PricingResolver(table).resolve(None, None) == 118


def test_development_mode_prices_everything_at_one():
    table = default_pricing_table(ClinicRules(pricing_mode="development"))
    resolver = PricingResolver(table)
    assert resolver.resolve("Back Pain", "regular") == 1
    assert resolver.resolve(None, "emergency") == 1
    # The shared default table is untouched
    assert DEFAULT_PRICING["treatments"]["Back Pain"] == 600


def test_load_pricing_table_uses_saved_settings(session):
    rules = ClinicRules()
    assert load_pricing_table(session, rules) == DEFAULT_PRICING

    saved = {"consultation": {"regular": 450}, "treatments": {}, "currency": "INR"}
    save_pricing_table(session, saved, updated_by=None)
    assert load_pricing_table(session, rules)["consultation"]["regular"] == 450


def test_ensure_pricing_setting_seeds_once(session):
    rules = ClinicRules()
    first = ensure_pricing_setting(session, rules)
    second = ensure_pricing_setting(session, rules)
    assert first.id == second.id
    assert first.data["consultation"]["regular"] == 500


@pytest.mark.parametrize("table", [
    {},
    {"consultation": {"regular": -1}},
    {"treatments": {"Back Pain": "cheap"}},
    {"consultation": [500]},
    {"tax": {"gst": "18", "includeInPrice": False}},
    {"tax": {"gst": -5}},
    {"tax": {"gst": 18, "includeInPrice": "no"}},
    {"tax": 18},
    {"consultation": {"regular": 500}, "currency": ""},
])
def test_invalid_pricing_tables_are_rejected(session, table):
    with pytest.raises(ValidationError):
        save_pricing_table(session, table)


def test_rejected_tax_keeps_resolver_working(session):
    rules = ClinicRules()
    ensure_pricing_setting(session, rules)
    with pytest.raises(ValidationError):
        save_pricing_table(session, {**DEFAULT_PRICING, "tax": {"gst": "18", "includeInPrice": False}})

    assert get_pricing_resolver(session, rules).resolve("Back Pain", "regular") == 600
