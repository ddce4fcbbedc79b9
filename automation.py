"""
Milestone automation, run after an invoice has been marked Paid.

The paid invoice's milestone is recorded as Paid on the project, then the
project either moves on to its next milestone (which gets a fresh invoice) or
is marked Completed. Each step is safe to repeat: an invoice already raised
for the next milestone is reused, and the step pointer only moves forward
through a write guarded on the value that was read.
"""
import logging
from typing import Any, Dict, List, Optional

from pymongo.database import Database
from pymongo.errors import PyMongoError

import ledger
import registry
from database import CLIENTS, INVOICES, now, upstream
from errors import ConflictError
from notifier import invoice_email
from schemas import FULL_PAYMENT
from site_settings import resolve_payment_link

logger = logging.getLogger(__name__)


def _record_milestone_payment(db: Database, client: Dict[str, Any], project: Dict[str, Any],
                              invoice: Dict[str, Any]) -> Optional[int]:
    """Mark the invoice's milestone Paid; return its index, or None when the invoice has none."""
    milestone_id = invoice.get("milestoneId")
    amount = float(invoice.get("grandTotal") or 0)
    if milestone_id:
        _, _, index, milestone = registry.locate(client, project["id"], milestone_id)
        if index is not None:
            if not registry.is_paid(milestone):
                paid_at = invoice.get("paidAt") or now()
                recorded = registry.update_milestone_payment_status(
                    db, client["_id"], project["id"], milestone_id, amount=amount,
                    method=invoice.get("paymentMethod") or "Invoice",
                    paid_date=paid_at.isoformat() if hasattr(paid_at, "isoformat") else str(paid_at),
                )
                if not recorded:
                    raise ConflictError("Milestone moved while recording payment",
                                        projectId=project["id"], milestoneId=milestone_id)
            return index
    # The paymentRecorded claim makes the increment at-most-once per invoice.
    try:
        claimed = db[INVOICES].update_one(
            {"_id": invoice["_id"], "paymentRecorded": {"$ne": True}},
            {"$set": {"paymentRecorded": True}},
        )
        if claimed.matched_count:
            db[CLIENTS].update_one({"_id": client["_id"]}, {"$inc": {"totalPaid": amount}})
        else:
            logger.info("Payment of invoice %s already counted", invoice.get("invoiceId"))
    except PyMongoError as exc:
        raise upstream("client totalPaid", exc)
    return None


def _next_invoice(db: Database, client: Dict[str, Any], project: Dict[str, Any], milestone: Dict[str, Any],
                  paid_invoice: Dict[str, Any], notifier) -> Dict[str, Any]:
    try:
        existing = db[INVOICES].find_one({"projectId": project["id"], "milestoneId": milestone["id"]})
    except PyMongoError as exc:
        raise upstream("next invoice lookup", exc)
    if existing is not None:
        logger.info("Reusing invoice %s for milestone %s", existing.get("invoiceId"), milestone["id"])
        return {"invoice": existing, "warnings": []}

    amount = float(milestone.get("amount") or 0)
    try:
        outcome = ledger.create_invoice(db, {
            "projectId": project["id"],
            "milestoneId": milestone["id"],
            "projectTitle": project.get("name", ""),
            "adminEmail": paid_invoice.get("adminEmail"),
            "currency": paid_invoice.get("currency"),
            "clientEmail": client.get("portalEmail") or client.get("email"),
            "clientName": client.get("name", ""),
            "items": [{"name": milestone.get("name") or "Milestone", "qty": 1, "price": amount}],
            "status": "Unpaid",
        })
    except ConflictError:
        # A concurrent confirmation raised it first.
        existing = db[INVOICES].find_one({"projectId": project["id"], "milestoneId": milestone["id"]})
        if existing is None:
            raise
        return {"invoice": existing, "warnings": []}
    if notifier is not None:
        subject, body = invoice_email(outcome.document, resolve_payment_link(db, outcome.document))
        notifier.queue(client.get("email") or client.get("portalEmail"), subject, body)
    return {"invoice": outcome.document, "warnings": outcome.warnings}


def _set_project_fields(db: Database, client: Dict[str, Any], index: int, project: Dict[str, Any],
                        expected: Dict[str, Any], fields: Dict[str, Any]) -> None:
    prefix = f"projects.{index}"
    query = {"_id": client["_id"], f"{prefix}.id": project["id"]}
    query.update({f"{prefix}.{k}": v for k, v in expected.items()})
    try:
        result = db[CLIENTS].update_one(query, {"$set": {f"{prefix}.{k}": v for k, v in fields.items()}})
    except PyMongoError as exc:
        raise upstream("project progress", exc)
    if result.matched_count == 0:
        raise ConflictError("Project changed while advancing", projectId=project["id"], expected=expected)


def advance_project(db: Database, invoice: Dict[str, Any], notifier=None) -> Dict[str, Any]:
    client, index, project = registry.find_project(db, invoice["projectId"])
    warnings: List[str] = []
    milestones = project.get("milestones") or []
    current_step = int(project.get("currentStep") or 1)

    paid_index = _record_milestone_payment(db, client, project, invoice)
    paid_step = paid_index + 1 if paid_index is not None else current_step
    next_step = paid_step + 1

    result: Dict[str, Any] = {"projectId": project["id"], "currentStep": current_step}
    if project.get("paymentType") != FULL_PAYMENT and next_step <= len(milestones):
        created = _next_invoice(db, client, project, milestones[next_step - 1], invoice, notifier)
        warnings.extend(created["warnings"])
        if next_step > current_step:
            _set_project_fields(db, client, index, project, {"currentStep": current_step}, {"currentStep": next_step})
            result["currentStep"] = next_step
        result.update(action="advanced", nextInvoice=created["invoice"])
        logger.info("Project %s advanced to step %d", project["id"], result["currentStep"])
    else:
        if project.get("status") != "Completed":
            _set_project_fields(db, client, index, project, {}, {"status": "Completed"})
        result.update(action="completed", status="Completed")
        logger.info("Project %s completed", project["id"])

    try:
        db[INVOICES].update_one({"_id": invoice["_id"]}, {"$set": {"automationDone": True}})
    except PyMongoError as exc:
        raise upstream("automation bookkeeping", exc)
    result["warnings"] = warnings
    return result


def rerun(db: Database, identifier: Any, notifier=None) -> Dict[str, Any]:
    """Resume automation for an invoice that is Paid but whose follow-up did not finish."""
    outcome = ledger.transition_to_paid(db, identifier, notifier=notifier)
    return {"invoice": outcome.invoice, "warnings": outcome.warnings, "automation": outcome.automation}
