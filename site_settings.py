"""Site-wide settings record and payment-link resolution."""
import logging
from typing import Any, Dict, Optional

from pydantic import ValidationError as SchemaError
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import get_settings
from database import SETTINGS, now, upstream
from errors import UpstreamError, ValidationError
from schemas import SiteSettings

logger = logging.getLogger(__name__)

SETTINGS_KEY = "admin_config"


def get_site_settings(db: Database) -> Dict[str, Any]:
    try:
        doc = db[SETTINGS].find_one({"id": SETTINGS_KEY}, {"_id": 0})
    except PyMongoError as exc:
        raise upstream("settings read", exc)
    return doc or {}


def save_site_settings(db: Database, data: Dict[str, Any]) -> Dict[str, Any]:
    data = {k: v for k, v in data.items() if k not in ("_id", "id")}
    try:
        data = SiteSettings.model_validate(data).model_dump(exclude_unset=True)
    except SchemaError as exc:
        raise ValidationError("Invalid settings payload", errors=exc.errors(include_url=False, include_context=False))
    data["lastUpdated"] = now()
    try:
        db[SETTINGS].update_one({"id": SETTINGS_KEY}, {"$set": data}, upsert=True)
    except PyMongoError as exc:
        raise upstream("settings write", exc)
    return get_site_settings(db)


def resolve_payment_link(db: Database, invoice: Optional[Dict[str, Any]] = None) -> str:
    """Site settings first, then the invoice's own override, then the environment default."""
    try:
        site = get_site_settings(db).get("paymentLink")
    except UpstreamError as exc:
        logger.warning("Settings unavailable for payment link: %s", exc)
        site = None
    if site:
        return site
    if invoice and invoice.get("paymentLink"):
        return invoice["paymentLink"]
    return get_settings().PAYMENT_LINK


def default_admin_email(db: Database) -> Optional[str]:
    configured = get_site_settings(db).get("adminEmail") or get_settings().ADMIN_EMAIL
    return configured.strip().lower() if configured else None


def default_currency(db: Database) -> str:
    return get_site_settings(db).get("currency") or get_settings().DEFAULT_CURRENCY
