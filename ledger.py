"""
Invoice ledger: the authoritative record of every invoice.

Every mutation writes the invoice document first and then fans the change out
to the admin and client summary lists through ``sync``. Summary failures come
back as warnings on the returned ``Outcome``; the invoice write stands.
"""
import logging
import re
import time
from typing import Any, Dict, Iterable, List, NamedTuple, Optional

from pydantic import ValidationError as SchemaError
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError, PyMongoError

import sync
from database import CLIENTS, INVOICES, get_documents, identifier_filter, now, upstream
from errors import AutomationIncompleteError, BillingError, ConflictError, NotFoundError, ValidationError
from schemas import Invoice, LineItem
from site_settings import default_currency

logger = logging.getLogger(__name__)

IMMUTABLE_FIELDS = ("_id", "id", "createdAt")
PAID = "Paid"


class Outcome(NamedTuple):
    document: Dict[str, Any]
    warnings: List[str]


def _normalize_email(value: Optional[str]) -> Optional[str]:
    return value.strip().lower() if isinstance(value, str) and value.strip() else None


def compute_totals(items: Iterable[Dict[str, Any]], received: float = 0) -> Dict[str, float]:
    grand_total = sum(float(i.get("qty") or 0) * float(i.get("price") or 0) for i in items)
    grand_total = round(grand_total, 2)
    return {"grandTotal": grand_total, "remainingDue": round(grand_total - float(received or 0), 2)}


def generate_invoice_number(db: Database) -> str:
    """``INV-`` plus the last six digits of a millisecond timestamp, bumped past any taken value."""
    stamp = time.time_ns() // 1_000_000
    for offset in range(1000):
        candidate = f"INV-{str(stamp + offset)[-6:]}"
        if db[INVOICES].find_one({"invoiceId": candidate}, {"_id": 1}) is None:
            return candidate
    raise ConflictError("Could not allocate a free invoice number")


# ----------------------------------------------------------------------------
# Reads
# ----------------------------------------------------------------------------

def find_invoice(db: Database, identifier: Any) -> Dict[str, Any]:
    """Resolve by native id when the identifier parses as one, else by ``invoiceId``."""
    query = identifier_filter(identifier, "invoiceId")
    try:
        doc = db[INVOICES].find_one(query)
        if doc is None and "_id" in query and isinstance(identifier, str):
            doc = db[INVOICES].find_one({"invoiceId": identifier})
    except PyMongoError as exc:
        raise upstream("invoice lookup", exc)
    if doc is None:
        raise NotFoundError("Invoice", identifier)
    return doc


def list_invoices(db: Database, email: str, role: str = "client", search: Optional[str] = None,
                  status: Optional[str] = None) -> List[Dict[str, Any]]:
    if not email:
        raise ValidationError("Authentication email is required to fetch data")
    email = email.strip().lower()
    query: Dict[str, Any] = {"adminEmail": email} if role == "admin" else {"clientEmail": email}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"invoiceId": pattern}, {"clientName": pattern}, {"projectTitle": pattern}]
    if status and status != "All":
        query["status"] = status
    try:
        return list(db[INVOICES].find(query).sort("createdAt", -1))
    except PyMongoError as exc:
        raise upstream("invoice listing", exc)


# ----------------------------------------------------------------------------
# Writes
# ----------------------------------------------------------------------------

def _milestone_invoiced(db: Database, invoice: Dict[str, Any]) -> bool:
    try:
        return db[INVOICES].find_one(
            {"projectId": invoice.get("projectId"), "milestoneId": invoice["milestoneId"]}, {"_id": 1}
        ) is not None
    except PyMongoError as exc:
        raise upstream("milestone invoice lookup", exc)


def create_invoice(db: Database, data: Dict[str, Any]) -> Outcome:
    admin_email = _normalize_email(data.get("adminEmail"))
    client_email = _normalize_email(data.get("clientEmail"))
    if not admin_email or not client_email:
        raise ValidationError("Admin and Client emails are required")

    payload = {k: v for k, v in data.items() if k not in IMMUTABLE_FIELDS}
    payload.update(adminEmail=admin_email, clientEmail=client_email)
    try:
        invoice = Invoice.model_validate(payload).model_dump(exclude_none=True)
    except SchemaError as exc:
        raise ValidationError("Invalid invoice payload", errors=exc.errors(include_url=False, include_context=False))

    if invoice["items"]:
        invoice.update(compute_totals(invoice["items"], invoice["receivedAmount"]))
    else:
        grand_total = float(invoice.get("grandTotal") or 0)
        invoice["grandTotal"] = grand_total
        invoice["remainingDue"] = round(grand_total - invoice["receivedAmount"], 2)
    if not invoice.get("currency"):
        invoice["currency"] = default_currency(db)

    if invoice.get("projectId") and invoice.get("milestoneId") and _milestone_invoiced(db, invoice):
        raise ConflictError("An invoice already exists for this milestone",
                            projectId=invoice["projectId"], milestoneId=invoice["milestoneId"])

    stamp = now()
    invoice["createdAt"] = invoice["updatedAt"] = stamp
    generated = not invoice.get("invoiceId")

    for _ in range(3):
        if generated:
            invoice["invoiceId"] = generate_invoice_number(db)
        try:
            result = db[INVOICES].insert_one(invoice)
            break
        except DuplicateKeyError:
            if invoice.get("milestoneId") and _milestone_invoiced(db, invoice):
                raise ConflictError("An invoice already exists for this milestone",
                                    projectId=invoice.get("projectId"), milestoneId=invoice["milestoneId"])
            if not generated:
                raise ValidationError("Invoice number already in use", invoiceId=invoice["invoiceId"])
            invoice.pop("_id", None)
            logger.info("Invoice number %s collided, regenerating", invoice["invoiceId"])
        except PyMongoError as exc:
            raise upstream("invoice insert", exc)
    else:
        raise ConflictError("Could not allocate a free invoice number")

    invoice["_id"] = result.inserted_id
    logger.info("Invoice %s created for %s", invoice["invoiceId"], client_email)
    return Outcome(invoice, sync.publish(db, invoice))


def patch_invoice(db: Database, identifier: Any, fields: Dict[str, Any]) -> Outcome:
    current = find_invoice(db, identifier)
    changes = {k: v for k, v in fields.items() if k not in IMMUTABLE_FIELDS}
    for key in ("adminEmail", "clientEmail"):
        if key in changes:
            changes[key] = _normalize_email(changes[key])
            if not changes[key]:
                raise ValidationError(f"{key} cannot be blank")

    try:
        if "items" in changes:
            changes["items"] = [LineItem.model_validate(i).model_dump() for i in changes["items"] or []]
        if "receivedAmount" in changes:
            changes["receivedAmount"] = float(changes["receivedAmount"] or 0)
    except SchemaError as exc:
        raise ValidationError("Invalid invoice patch", errors=exc.errors(include_url=False, include_context=False))
    except (TypeError, ValueError):
        raise ValidationError("receivedAmount must be a number", receivedAmount=str(fields.get("receivedAmount")))

    if "items" in changes:
        received = changes.get("receivedAmount", current.get("receivedAmount", 0))
        changes.update(compute_totals(changes["items"], received))
    elif "receivedAmount" in changes and "remainingDue" not in changes:
        grand_total = changes.get("grandTotal", current.get("grandTotal", 0))
        changes["remainingDue"] = round(float(grand_total or 0) - float(changes["receivedAmount"] or 0), 2)
    changes["updatedAt"] = now()

    try:
        result = db[INVOICES].update_one({"_id": current["_id"]}, {"$set": changes})
        if result.matched_count == 0:
            raise NotFoundError("Invoice", identifier)
        updated = db[INVOICES].find_one({"_id": current["_id"]})
    except PyMongoError as exc:
        raise upstream("invoice patch", exc)
    if updated is None:
        raise NotFoundError("Invoice", identifier)

    if any(current.get(k) != updated.get(k) for k in ("adminEmail", "clientEmail")):
        warnings = sync.retract(db, current) + sync.publish(db, updated)
    else:
        warnings = sync.refresh(db, updated)
    return Outcome(updated, warnings)


def mark_sent(db: Database, identifier: Any) -> Outcome:
    invoice = find_invoice(db, identifier)
    if invoice.get("status") != "Unpaid":
        return Outcome(invoice, [])
    return patch_invoice(db, invoice["_id"], {"status": "Sent"})


class TransitionOutcome(NamedTuple):
    invoice: Dict[str, Any]
    warnings: List[str]
    automation: Optional[Dict[str, Any]]


def transition_to_paid(db: Database, identifier: Any, notifier=None) -> TransitionOutcome:
    """Mark an invoice Paid, sync its summaries, then run milestone automation.

    Raises ``AutomationIncompleteError`` when the Paid write committed but the
    follow-up did not finish; calling again resumes the automation.
    """
    import automation

    invoice = find_invoice(db, identifier)
    warnings: List[str] = []
    if invoice.get("status") != PAID:
        try:
            result = db[INVOICES].update_one(
                {"_id": invoice["_id"], "status": {"$ne": PAID}},
                {"$set": {
                    "status": PAID,
                    "receivedAmount": invoice.get("grandTotal", 0),
                    "remainingDue": 0,
                    "paidAt": now(),
                    "updatedAt": now(),
                }},
            )
            invoice = db[INVOICES].find_one({"_id": invoice["_id"]})
        except PyMongoError as exc:
            raise upstream("invoice paid transition", exc)
        if invoice is None:
            raise NotFoundError("Invoice", identifier)
        if result.matched_count == 0:
            # A concurrent confirmation won the write and runs the automation.
            logger.info("Invoice %s was already marked Paid", invoice.get("invoiceId"))
            return TransitionOutcome(invoice, warnings, None)
        warnings.extend(sync.refresh(db, invoice))
        logger.info("Invoice %s marked Paid", invoice.get("invoiceId"))

    if not invoice.get("projectId") or invoice.get("automationDone"):
        return TransitionOutcome(invoice, warnings, None)

    try:
        result = automation.advance_project(db, invoice, notifier=notifier)
    except NotFoundError as exc:
        logger.warning("Invoice %s references no live project: %s", invoice.get("invoiceId"), exc)
        warnings.append(str(exc))
        return TransitionOutcome(invoice, warnings, None)
    except (BillingError, PyMongoError) as exc:
        logger.error("Automation for paid invoice %s incomplete: %s", invoice.get("invoiceId"), exc)
        raise AutomationIncompleteError(invoice["_id"], exc)
    warnings.extend(result.pop("warnings", []))
    return TransitionOutcome(invoice, warnings, result)


def delete_invoice(db: Database, identifier: Any) -> Outcome:
    invoice = find_invoice(db, identifier)
    warnings = sync.retract(db, invoice)
    try:
        db[INVOICES].delete_one({"_id": invoice["_id"]})
    except PyMongoError as exc:
        raise upstream("invoice delete", exc)
    logger.info("Invoice %s deleted", invoice.get("invoiceId"))
    return Outcome(invoice, warnings)


def bulk_delete(db: Database, ids: Iterable[Any]) -> Dict[str, Any]:
    """Delete each invoice with its summaries. No rollback: earlier deletions stand if a later one fails."""
    report: Dict[str, Any] = {"deleted": [], "failed": [], "warnings": []}
    for identifier in ids:
        try:
            outcome = delete_invoice(db, identifier)
        except BillingError as exc:
            report["failed"].append({"id": str(identifier), "error": exc.message, "code": exc.code})
            continue
        report["deleted"].append(str(identifier))
        report["warnings"].extend(outcome.warnings)
    return report


def dashboard_stats(db: Database) -> Dict[str, Any]:
    try:
        invoices = get_documents(db, INVOICES, sort=[("createdAt", -1)])
        total_clients = db[CLIENTS].count_documents({})
        total_projects = sum(len(c.get("projects") or []) for c in db[CLIENTS].find({}, {"projects": 1}))
    except PyMongoError as exc:
        raise upstream("dashboard stats", exc)
    return {
        "totalClients": total_clients,
        "totalProjects": total_projects,
        "totalRevenue": round(sum(float(i.get("receivedAmount") or 0) for i in invoices), 2),
        "pendingAmount": round(sum(float(i.get("remainingDue") or 0) for i in invoices), 2),
        "recentInvoices": invoices[:5],
    }
