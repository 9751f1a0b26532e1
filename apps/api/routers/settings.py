"""Clinic settings endpoints (admin)"""
from fastapi import APIRouter, Depends
from sqlmodel import Session

from database import get_session
from models import User
from dependencies import get_rules, require_admin
from schemas import PricingUpdate
from services.pricing import ensure_pricing_setting, save_pricing_table
from validators.business_rules import ClinicRules

router = APIRouter(prefix="/api/settings", tags=["settings"])


@router.get("/pricing")
def get_pricing_settings(
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
    rules: ClinicRules = Depends(get_rules),
):
    setting = ensure_pricing_setting(session, rules)
    return {"success": True, "pricing": setting.data}


@router.put("/pricing")
def update_pricing_settings(
    payload: PricingUpdate,
    admin: User = Depends(require_admin),
    session: Session = Depends(get_session),
):
    setting = save_pricing_table(session, payload.pricing, updated_by=admin.id)
    return {
        "success": True,
        "message": "Pricing updated successfully",
        "pricing": setting.data,
    }
