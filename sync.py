"""
Synchronization of invoice summaries into user documents.

Admins carry ``myCreatedInvoices`` and clients carry ``invoicesReceived``:
denormalized copies of a few invoice fields, keyed by the invoice's native
``_id``. The invoices collection stays authoritative. Summaries are a cache
that ``rebuild_summaries`` can regenerate from the ledger at any time.
"""
import logging
import time
from typing import Any, Callable, Dict, List

from bson import ObjectId
from pymongo.database import Database
from pymongo.errors import PyMongoError

from config import get_settings
from database import INVOICES, USERS, upstream
from errors import ConflictError, UpstreamError
from schemas import InvoiceSummary

logger = logging.getLogger(__name__)

ADMIN_LIST = "myCreatedInvoices"
CLIENT_LIST = "invoicesReceived"
SYNCED_FIELDS = ("status", "grandTotal", "projectTitle", "clientName")


def summary_from_invoice(invoice: Dict[str, Any]) -> Dict[str, Any]:
    summary = InvoiceSummary(
        id=invoice["_id"],
        invoiceId=invoice.get("invoiceId"),
        projectTitle=invoice.get("projectTitle") or "",
        clientName=invoice.get("clientName") or "",
        grandTotal=invoice.get("grandTotal") or 0,
        status=invoice.get("status", "Unpaid"),
        date=invoice.get("createdAt"),
    )
    return summary.model_dump(by_alias=True)


def _owners(invoice: Dict[str, Any]):
    return ((invoice.get("adminEmail"), ADMIN_LIST), (invoice.get("clientEmail"), CLIENT_LIST))


def _retrying(action: str, fn: Callable[[], Any]) -> Any:
    """Run an idempotent store write, retrying timeouts with exponential backoff."""
    attempts = get_settings().SUMMARY_RETRIES
    delay = 0.05
    for attempt in range(attempts):
        try:
            return fn()
        except PyMongoError as exc:
            if not exc.timeout or attempt == attempts - 1:
                raise upstream(action, exc)
            wait_time = delay * (2 ** attempt)
            logger.warning("%s timed out (attempt %d/%d), retrying in %.2fs", action, attempt + 1, attempts, wait_time)
            time.sleep(wait_time)


# ----------------------------------------------------------------------------
# Primitives
# ----------------------------------------------------------------------------

def push_summary(db: Database, owner_email: str, list_name: str, summary: Dict[str, Any]) -> bool:
    """Append a summary. Not idempotent, so a timeout is surfaced, not retried."""
    try:
        result = db[USERS].update_one({"email": owner_email}, {"$push": {list_name: summary}})
    except PyMongoError as exc:
        raise upstream("summary push", exc)
    return result.matched_count > 0


def patch_summary(db: Database, owner_email: str, list_name: str, invoice_id: ObjectId,
                  fields: Dict[str, Any]) -> bool:
    """Update the element keyed by ``invoice_id``; silently a no-op when there is none."""
    if not fields:
        return True
    update = {f"{list_name}.$.{k}": v for k, v in fields.items()}
    result = _retrying(
        "summary patch",
        lambda: db[USERS].update_one({"email": owner_email, f"{list_name}._id": invoice_id}, {"$set": update}),
    )
    return result.matched_count > 0


def pull_summary(db: Database, owner_email: str, list_name: str, invoice_id: ObjectId) -> bool:
    result = _retrying(
        "summary pull",
        lambda: db[USERS].update_one({"email": owner_email}, {"$pull": {list_name: {"_id": invoice_id}}}),
    )
    return result.modified_count > 0


# ----------------------------------------------------------------------------
# Fan-out: primary writes are already committed when these run, so drift is
# reported back as warnings and never raised.
# ----------------------------------------------------------------------------

def _attempt(warnings: List[str], step: str, fn: Callable[[], bool], drift_message: str) -> None:
    try:
        if not fn():
            raise ConflictError(drift_message, step=step)
    except (ConflictError, UpstreamError) as exc:
        logger.warning("Summary sync step %s incomplete: %s", step, exc)
        warnings.append(f"{step}: {exc}")


def publish(db: Database, invoice: Dict[str, Any]) -> List[str]:
    warnings: List[str] = []
    summary = summary_from_invoice(invoice)
    for owner, list_name in _owners(invoice):
        if not owner:
            continue
        _attempt(
            warnings,
            f"push {list_name}",
            lambda o=owner, ln=list_name: push_summary(db, o, ln, dict(summary)),
            f"no user {owner} to hold summary",
        )
    return warnings


def refresh(db: Database, invoice: Dict[str, Any]) -> List[str]:
    warnings: List[str] = []
    fields = {k: invoice.get(k) for k in SYNCED_FIELDS}
    for owner, list_name in _owners(invoice):
        if not owner:
            continue
        _attempt(
            warnings,
            f"patch {list_name}",
            lambda o=owner, ln=list_name: patch_summary(db, o, ln, invoice["_id"], fields),
            f"no summary of {invoice.get('invoiceId')} held by {owner}",
        )
    return warnings


def retract(db: Database, invoice: Dict[str, Any]) -> List[str]:
    warnings: List[str] = []
    for owner, list_name in _owners(invoice):
        if not owner:
            continue
        try:
            pull_summary(db, owner, list_name, invoice["_id"])
        except UpstreamError as exc:
            logger.warning("Summary pull from %s failed: %s", list_name, exc)
            warnings.append(f"pull {list_name}: {exc}")
    return warnings


# ----------------------------------------------------------------------------
# Reconciliation
# ----------------------------------------------------------------------------

def rebuild_summaries(db: Database, email: str) -> Dict[str, int]:
    """Replace a user's summary list(s) with a projection of the ledger."""
    email = email.strip().lower()
    counts: Dict[str, int] = {}
    try:
        user = db[USERS].find_one({"email": email})
        if not user:
            return counts
        lists = {ADMIN_LIST: "adminEmail"} if user.get("role") == "admin" else {CLIENT_LIST: "clientEmail"}
        update: Dict[str, Any] = {}
        for list_name, owner_field in lists.items():
            invoices = db[INVOICES].find({owner_field: email}).sort("createdAt", 1)
            update[list_name] = [summary_from_invoice(inv) for inv in invoices]
            counts[list_name] = len(update[list_name])
        db[USERS].update_one({"_id": user["_id"]}, {"$set": update})
    except PyMongoError as exc:
        raise upstream("summary rebuild", exc)
    logger.info("Rebuilt summaries for %s: %s", email, counts)
    return counts
