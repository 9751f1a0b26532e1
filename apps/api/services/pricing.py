"""Consultation fee lookup"""
import copy
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from sqlmodel import Session, select

from errors import ValidationError
from models import ClinicSetting, ConsultationType, SettingType
from validators.business_rules import ClinicRules

logger = logging.getLogger(__name__)

DEFAULT_PRICING: Dict[str, Any] = {
    "consultation": {
        "regular": 500,
        "followUp": 350,
        "emergency": 800,
    },
    "treatments": {
        "Back Pain": 600,
        "Neck Pain": 550,
        "Knee Pain": 600,
        "Shoulder Pain": 600,
        "Sports Injury": 700,
        "Other": 500,
    },
    "packages": {
        "package5": {"sessions": 5, "price": 2250, "discount": 10},
        "package10": {"sessions": 10, "price": 4250, "discount": 15},
        "package20": {"sessions": 20, "price": 8000, "discount": 20},
    },
    "tax": {
        "gst": 18,
        "includeInPrice": True,
    },
    "currency": "INR",
    "symbol": "₹",
}


def development_pricing() -> Dict[str, Any]:
    """Every fee set to 1 so end-to-end payment tests cost nothing"""
    table = copy.deepcopy(DEFAULT_PRICING)
    table["consultation"] = {key: 1 for key in table["consultation"]}
    table["treatments"] = {key: 1 for key in table["treatments"]}
    return table


def default_pricing_table(rules: ClinicRules) -> Dict[str, Any]:
    if rules.pricing_mode == "development":
        return development_pricing()
    return copy.deepcopy(DEFAULT_PRICING)


class PricingResolver:
    """Maps (pain type, consultation type) to a fee.

    A treatment price for the pain type wins over the consultation-type
    price; when neither matches, the regular consultation price applies.
    """

    DEFAULT_CONSULTATION_TYPE = ConsultationType.REGULAR.value
    FALLBACK_FEE = 0

    def __init__(self, table: Dict[str, Any]):
        self.table = table
        self.consultation = dict(table.get("consultation") or {})
        self.treatments = dict(table.get("treatments") or {})
        tax = table.get("tax") or {}
        self.gst_percent = tax.get("gst", 0)
        self.tax_included = tax.get("includeInPrice", True)
        self.currency = table.get("currency", "INR")

    def resolve(self, pain_type: Optional[str], consultation_type: Optional[str]) -> int:
        base = None
        if pain_type and pain_type in self.treatments:
            base = self.treatments[pain_type]
        elif consultation_type and consultation_type in self.consultation:
            base = self.consultation[consultation_type]
        else:
            base = self.consultation.get(self.DEFAULT_CONSULTATION_TYPE, self.FALLBACK_FEE)
        return self.with_tax(base)

    def with_tax(self, base_amount) -> int:
        if self.tax_included or not self.gst_percent:
            return int(round(base_amount))
        return int(round(base_amount + base_amount * self.gst_percent / 100))


def load_pricing_table(session: Session, rules: ClinicRules) -> Dict[str, Any]:
    """Admin-saved pricing table, or the configured default when none is saved"""
    setting = _pricing_setting(session)
    if setting and setting.data:
        return setting.data
    return default_pricing_table(rules)


def get_pricing_resolver(session: Session, rules: ClinicRules) -> PricingResolver:
    return PricingResolver(load_pricing_table(session, rules))


def _pricing_setting(session: Session) -> Optional[ClinicSetting]:
    return session.exec(
        select(ClinicSetting).where(ClinicSetting.type == SettingType.PRICING.value)
    ).first()


def validate_pricing_table(table: Dict[str, Any]) -> None:
    """Fee sections map names to non-negative numbers; tax and currency are well-formed"""
    if not isinstance(table, dict) or not table:
        raise ValidationError("Pricing data is required")
    for section in ("consultation", "treatments"):
        fees = table.get(section)
        if fees is None:
            continue
        if not isinstance(fees, dict):
            raise ValidationError(f"Pricing '{section}' must be an object")
        for name, fee in fees.items():
            if isinstance(fee, bool) or not isinstance(fee, (int, float)) or fee < 0:
                raise ValidationError(f"Invalid {section} price for {name}")

    tax = table.get("tax")
    if tax is not None:
        if not isinstance(tax, dict):
            raise ValidationError("Pricing 'tax' must be an object")
        gst = tax.get("gst", 0)
        if isinstance(gst, bool) or not isinstance(gst, (int, float)) or gst < 0:
            raise ValidationError("Invalid GST percentage")
        if not isinstance(tax.get("includeInPrice", True), bool):
            raise ValidationError("Tax 'includeInPrice' must be true or false")

    currency = table.get("currency")
    if currency is not None and (not isinstance(currency, str) or not currency.strip()):
        raise ValidationError("Invalid currency")


def ensure_pricing_setting(session: Session, rules: ClinicRules) -> ClinicSetting:
    """Stored pricing row, seeded from the configured default on first access"""
    setting = _pricing_setting(session)
    if setting is None:
        setting = ClinicSetting(type=SettingType.PRICING.value, data=default_pricing_table(rules))
        session.add(setting)
        session.commit()
        session.refresh(setting)
        logger.info("Seeded pricing settings from configuration")
    return setting


def save_pricing_table(session: Session, table: Dict[str, Any], updated_by: Optional[int] = None) -> ClinicSetting:
    validate_pricing_table(table)
    setting = _pricing_setting(session)
    if setting is None:
        setting = ClinicSetting(type=SettingType.PRICING.value, data=table)
    else:
        setting.data = table
    setting.updated_by = updated_by
    setting.updated_at = datetime.utcnow()
    session.add(setting)
    session.commit()
    session.refresh(setting)
    logger.info(f"Pricing updated by user {updated_by}")
    return setting
