"""
Client / project registry.

A client document embeds its projects, and each project embeds its
milestones. Projects and milestones are addressed by generated string ids;
array positions are only ever used as guarded write targets after the ids
have been resolved against a fresh read.
"""
import logging
import re
import secrets
from datetime import date, datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from pydantic import ValidationError as SchemaError
from pymongo.database import Database
from pymongo.errors import PyMongoError

import ledger
from auth import hash_password
from config import get_settings
from database import CLIENTS, USERS, new_id, now, object_id_or_none, upstream
from errors import NotFoundError, ValidationError
from notifier import credentials_email, payment_receipt_email, project_started_email
from schemas import FULL_PAYMENT, Client, DeployProjectRequest, Milestone, Project
from site_settings import default_admin_email, default_currency, resolve_payment_link

logger = logging.getLogger(__name__)

PROTECTED_FIELDS = ("_id", "id", "createdAt", "password", "totalPaid")


def _login_email(data: Dict[str, Any]) -> Optional[str]:
    raw = data.get("portalEmail") or data.get("email")
    if not isinstance(raw, str) or not raw.strip():
        return None
    return raw.strip().lower()


def normalize_milestones(milestones: Optional[List[Any]]) -> List[Dict[str, Any]]:
    out = []
    for m in milestones or []:
        doc = Milestone.model_validate(m).model_dump(exclude_none=True)
        doc["id"] = doc.get("id") or new_id()
        out.append(doc)
    return out


def normalize_projects(projects: Optional[List[Any]]) -> List[Dict[str, Any]]:
    out = []
    for p in projects or []:
        doc = Project.model_validate(p).model_dump(exclude_none=True)
        doc["id"] = doc.get("id") or new_id()
        doc["milestones"] = normalize_milestones(doc.get("milestones"))
        out.append(doc)
    return out


def _client_filter(client_id: Any) -> Dict[str, Any]:
    oid = object_id_or_none(client_id)
    if oid is None:
        raise NotFoundError("Client", client_id)
    return {"_id": oid}


# ----------------------------------------------------------------------------
# Clients
# ----------------------------------------------------------------------------

def create_client(db: Database, data: Dict[str, Any], notifier=None) -> Dict[str, Any]:
    login_email = _login_email(data)
    if not login_email:
        raise ValidationError("A login email (portalEmail or email) is required")

    payload = {k: v for k, v in data.items() if k not in ("_id", "id", "createdAt", "totalPaid")}
    payload["portalEmail"] = login_email
    try:
        client = Client.model_validate(payload)
        projects = normalize_projects(client.projects)
    except SchemaError as exc:
        raise ValidationError("Invalid client payload", errors=exc.errors(include_url=False, include_context=False))

    password = (client.password or "").strip() or secrets.token_urlsafe(9)
    doc = client.model_dump(exclude_none=True, exclude={"password", "sendAutomationEmail", "projects"})
    doc.update(projects=projects, totalPaid=0, createdAt=now())

    try:
        if db[USERS].find_one({"email": login_email}, {"_id": 1}):
            raise ValidationError("An account already exists for this login email", email=login_email)
        result = db[CLIENTS].insert_one(doc)
        db[USERS].insert_one({
            "name": client.name,
            "email": login_email,
            "password": hash_password(password),
            "role": "client",
            "clientId": result.inserted_id,
            "invoicesReceived": [],
            "createdAt": now(),
        })
    except PyMongoError as exc:
        raise upstream("client create", exc)
    doc["_id"] = result.inserted_id
    logger.info("Client %s created with %d project(s)", login_email, len(projects))

    if client.sendAutomationEmail and notifier is not None:
        subject, body = credentials_email(client.name, login_email, password, get_settings().FRONTEND_URL)
        notifier.queue(doc.get("email") or login_email, subject, body)
    return doc


def get_client(db: Database, client_id: Any) -> Dict[str, Any]:
    try:
        doc = db[CLIENTS].find_one(_client_filter(client_id))
    except PyMongoError as exc:
        raise upstream("client lookup", exc)
    if doc is None:
        raise NotFoundError("Client", client_id)
    return doc


def find_client_by_email(db: Database, email: str) -> Dict[str, Any]:
    normalized = (email or "").strip().lower()
    try:
        doc = db[CLIENTS].find_one({"$or": [{"email": email}, {"email": normalized}, {"portalEmail": normalized}]})
    except PyMongoError as exc:
        raise upstream("client lookup", exc)
    if doc is None:
        raise NotFoundError("Client", email)
    return doc


def list_clients(db: Database, search: Optional[str] = None, status: Optional[str] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if search:
        pattern = {"$regex": re.escape(search), "$options": "i"}
        query["$or"] = [{"name": pattern}, {"email": pattern}, {"companyName": pattern}]
    if status and status != "All":
        query["status"] = status
    try:
        return list(db[CLIENTS].find(query).sort("createdAt", -1))
    except PyMongoError as exc:
        raise upstream("client listing", exc)


def update_client(db: Database, client_id: Any, patch: Dict[str, Any]) -> Dict[str, Any]:
    """Merge top-level fields. A ``projects`` key replaces the whole project list."""
    changes = {k: v for k, v in patch.items() if k not in PROTECTED_FIELDS}
    if "projects" in changes:
        try:
            changes["projects"] = normalize_projects(changes["projects"])
        except SchemaError as exc:
            raise ValidationError("Invalid project list", errors=exc.errors(include_url=False, include_context=False))
    if "portalEmail" in changes:
        changes["portalEmail"] = _login_email({"portalEmail": changes["portalEmail"]})
        if not changes["portalEmail"]:
            raise ValidationError("portalEmail cannot be blank")
    changes["updatedAt"] = now()

    query = _client_filter(client_id)
    try:
        before = db[CLIENTS].find_one(query, {"portalEmail": 1})
        if before is None:
            raise NotFoundError("Client", client_id)
        db[CLIENTS].update_one(query, {"$set": changes})
        if changes.get("portalEmail") and changes["portalEmail"] != before.get("portalEmail"):
            db[USERS].update_one({"clientId": before["_id"]}, {"$set": {"email": changes["portalEmail"]}})
        return db[CLIENTS].find_one(query)
    except PyMongoError as exc:
        raise upstream("client update", exc)


def delete_client(db: Database, client_id: Any) -> None:
    query = _client_filter(client_id)
    try:
        result = db[CLIENTS].delete_one(query)
        if result.deleted_count == 0:
            raise NotFoundError("Client", client_id)
        db[USERS].delete_one({"clientId": query["_id"]})
    except PyMongoError as exc:
        raise upstream("client delete", exc)
    logger.info("Client %s and its portal user deleted", client_id)


# ----------------------------------------------------------------------------
# Projects
# ----------------------------------------------------------------------------

def locate(client: Dict[str, Any], project_id: str, milestone_id: Optional[str] = None
           ) -> Tuple[Optional[int], Optional[Dict[str, Any]], Optional[int], Optional[Dict[str, Any]]]:
    """Resolve project/milestone ids to (index, record) pairs within a client document."""
    for pi, project in enumerate(client.get("projects") or []):
        if str(project.get("id")) != str(project_id):
            continue
        if milestone_id is None:
            return pi, project, None, None
        for mi, milestone in enumerate(project.get("milestones") or []):
            if str(milestone.get("id")) == str(milestone_id):
                return pi, project, mi, milestone
        return pi, project, None, None
    return None, None, None, None


def find_project(db: Database, project_id: str) -> Tuple[Dict[str, Any], int, Dict[str, Any]]:
    try:
        client = db[CLIENTS].find_one({"projects.id": project_id})
    except PyMongoError as exc:
        raise upstream("project lookup", exc)
    if client is None:
        raise NotFoundError("Project", project_id)
    index, project, _, _ = locate(client, project_id)
    return client, index, project


def set_project_status(db: Database, client_id: Any, project_id: str, status: str) -> bool:
    try:
        result = db[CLIENTS].update_one(
            {**_client_filter(client_id), "projects.id": project_id},
            {"$set": {"projects.$.status": status}},
        )
    except PyMongoError as exc:
        raise upstream("project status update", exc)
    return result.matched_count > 0


def deploy_project(db: Database, client_id: Any, data: Dict[str, Any], notifier=None) -> Dict[str, Any]:
    """Append a project to a client and raise its first invoice."""
    try:
        request = DeployProjectRequest.model_validate({**data, "clientId": str(client_id)})
    except SchemaError as exc:
        raise ValidationError("Invalid project payload", errors=exc.errors(include_url=False, include_context=False))
    admin_email = (request.adminEmail or "").strip().lower() or default_admin_email(db)
    if not admin_email:
        raise ValidationError("No admin email configured to own the project's invoices")

    milestones = normalize_milestones(request.milestones)
    project = {
        "id": new_id(),
        "name": request.title,
        "budget": float(request.totalBudget or 0),
        "description": request.description,
        "type": request.type,
        "paymentType": request.paymentType,
        "status": "Active",
        "currentStep": 1,
        "milestones": milestones,
        "createdAt": now(),
    }
    query = _client_filter(client_id)
    try:
        result = db[CLIENTS].update_one(query, {"$push": {"projects": project}})
        if result.matched_count == 0:
            raise NotFoundError("Client", client_id)
        client = db[CLIENTS].find_one(query)
    except PyMongoError as exc:
        raise upstream("project deploy", exc)

    first = milestones[0] if milestones and request.paymentType != FULL_PAYMENT else None
    amount = float(first["amount"]) if first else project["budget"]
    invoice_data = {
        "projectId": project["id"],
        "projectTitle": request.title,
        "clientName": client.get("name", ""),
        "clientEmail": client.get("portalEmail") or client.get("email"),
        "adminEmail": admin_email,
        "currency": request.currency or default_currency(db),
        "items": [{"name": first["name"] if first else request.title, "qty": 1, "price": amount}],
    }
    if first:
        invoice_data["milestoneId"] = first["id"]
    outcome = ledger.create_invoice(db, invoice_data)
    logger.info("Project %s deployed for client %s", project["id"], client_id)

    if notifier is not None:
        subject, body = project_started_email(
            client.get("name", ""), request.title, outcome.document,
            get_settings().FRONTEND_URL, resolve_payment_link(db, outcome.document),
        )
        notifier.queue(client.get("email") or client.get("portalEmail"), subject, body)
    return {"projectId": project["id"], "invoice": outcome.document, "warnings": outcome.warnings}


def update_milestone_payment_status(db: Database, client_id: Any, project_id: str, milestone_id: str,
                                    amount: float = 0, method: Optional[str] = None,
                                    paid_date: Optional[str] = None) -> bool:
    """Mark one milestone Paid and bump the client's ``totalPaid`` in a single write.

    Returns False, writing nothing, when the client/project/milestone path does
    not resolve or changed between the read and the write.
    """
    oid = object_id_or_none(client_id)
    if oid is None:
        return False
    try:
        client = db[CLIENTS].find_one({"_id": oid})
        if client is None:
            return False
        pi, _, mi, _ = locate(client, project_id, milestone_id)
        if pi is None or mi is None:
            return False
        path = f"projects.{pi}.milestones.{mi}"
        result = db[CLIENTS].update_one(
            {"_id": oid, f"projects.{pi}.id": project_id, f"{path}.id": milestone_id},
            {
                "$set": {
                    f"{path}.status": "Paid",
                    f"{path}.paidDate": paid_date or now().isoformat(),
                    f"{path}.paymentMethod": method,
                },
                "$inc": {"totalPaid": float(amount or 0)},
            },
        )
    except PyMongoError as exc:
        raise upstream("milestone payment", exc)
    return result.matched_count > 0


def queue_payment_receipt(notifier, to_address: Optional[str], client_name: str, project_name: str,
                          milestone_name: str, amount: float, method: Optional[str]) -> None:
    if notifier is None or not to_address:
        return
    subject, body = payment_receipt_email(client_name, project_name, milestone_name, amount, method,
                                          get_settings().FRONTEND_URL)
    notifier.queue(to_address, subject, body)


# ----------------------------------------------------------------------------
# Read models
# ----------------------------------------------------------------------------

def _as_date(value: Any) -> Optional[date]:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00")[:32]).date()


def is_paid(milestone: Dict[str, Any]) -> bool:
    return milestone.get("isCompleted") in (True, "true") or str(milestone.get("status", "")).lower() == "paid"


def milestone_flags(milestone: Dict[str, Any], today: date) -> Dict[str, bool]:
    paid = is_paid(milestone)
    due = milestone.get("dueDate")
    if not due:
        reached = True
    else:
        try:
            reached = today >= _as_date(due)
        except ValueError:
            logger.warning("Unparseable dueDate %r on milestone %s", due, milestone.get("id"))
            reached = False
    return {"isPayable": not paid and reached, "isLocked": not paid and not reached}


def list_projects_for_client(db: Database, email: str, today: Optional[date] = None) -> List[Dict[str, Any]]:
    today = today or date.today()
    try:
        client = find_client_by_email(db, email)
    except NotFoundError:
        return []
    projects = []
    for project in client.get("projects") or []:
        milestones = [{**m, **milestone_flags(m, today)} for m in project.get("milestones") or []]
        projects.append({
            "id": project.get("id"),
            "title": project.get("name"),
            "projectName": project.get("name"),
            "description": project.get("description"),
            "budget": project.get("budget"),
            "paidAmount": round(sum(float(m.get("amount") or 0) for m in milestones if is_paid(m)), 2),
            "status": project.get("status", "Active"),
            "currentStep": project.get("currentStep", 1),
            "milestones": milestones,
            "clientName": client.get("name"),
            "clientId": client["_id"],
        })
    projects.reverse()
    return projects


def get_project_details(db: Database, project_id: str) -> Dict[str, Any]:
    client, _, project = find_project(db, project_id)
    milestones = project.get("milestones") or []
    if milestones:
        progress = round(sum(1 for m in milestones if is_paid(m)) / len(milestones) * 100)
    else:
        progress = project.get("progress", 0)
    return {**project, "progress": progress, "clientName": client.get("name"), "clientEmail": client.get("email")}


def client_profile(db: Database, email: str, today: Optional[date] = None) -> Dict[str, Any]:
    """The client document plus a statement of milestones paid in the last 30 days."""
    if not email:
        raise ValidationError("Email is required")
    client = find_client_by_email(db, email)
    since = (today or date.today()) - timedelta(days=30)
    statement = []
    for project in client.get("projects") or []:
        for m in project.get("milestones") or []:
            if not (is_paid(m) and m.get("paidDate")):
                continue
            try:
                paid_on = _as_date(m["paidDate"])
            except ValueError:
                continue
            if paid_on >= since:
                statement.append({
                    "date": m["paidDate"],
                    "project": project.get("name"),
                    "description": m.get("name"),
                    "amount": m.get("amount"),
                    "method": m.get("paymentMethod") or "N/A",
                    "status": "Settled",
                })
    statement.sort(key=lambda row: str(row["date"]), reverse=True)
    return {**client, "recentStatement": statement}
