import logging
import os
from typing import Optional, Dict, Any

from fastapi import FastAPI, HTTPException, Depends, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pymongo.database import Database

import automation
import ledger
import registry
import site_settings
import sync
from auth import authenticate, get_current_user, get_profile, hash_password, require_role, update_profile
from config import get_settings
from database import USERS, create_document, get_db, serialize
from errors import BillingError, ConflictError, ValidationError
from notifier import Notifier, get_notifier, invoice_email
from renderer import render
from schemas import (
    AdminCreateRequest,
    BulkDeleteRequest,
    LoginRequest,
    MilestonePaymentRequest,
    ProfileUpdateRequest,
    ProjectStatusRequest,
    RebuildSummariesRequest,
    User as UserSchema,
)

logging.basicConfig(
    level=get_settings().LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("vault")

# ----------------------------------------------------------------------------
# App setup
# ----------------------------------------------------------------------------
app = FastAPI(title="Vault Billing API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(BillingError)
def billing_error_handler(request: Request, exc: BillingError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def _with_warnings(payload: Dict[str, Any], warnings) -> Dict[str, Any]:
    if warnings:
        payload["warnings"] = list(warnings)
    return payload


def _client_may_see(current: dict, invoice: dict):
    if current.get("role") == "client" and invoice.get("clientEmail") != current.get("email"):
        raise HTTPException(status_code=403, detail="Forbidden")


# ----------------------------------------------------------------------------
# Basic routes
# ----------------------------------------------------------------------------
@app.get("/")
def root():
    return {"name": "Vault Billing API", "status": "ok"}


@app.get("/test")
def test_database(db: Database = Depends(get_db)):
    response = {"backend": "✅ Running", "database": "❌ Not Available", "collections": []}
    try:
        response["collections"] = db.list_collection_names()
        response["database"] = "✅ Connected"
    except Exception as e:
        response["database"] = f"⚠️ Connected but Error: {str(e)[:80]}"
    response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
    return response


# ----------------------------------------------------------------------------
# Auth routes
# ----------------------------------------------------------------------------
@app.post("/auth/login")
def login(payload: LoginRequest, db: Database = Depends(get_db)):
    session = authenticate(db, payload.email, payload.password, payload.role)
    if not session:
        raise HTTPException(status_code=401, detail="Invalid credentials")
    return session


@app.post("/manage-admins", status_code=201)
def create_admin(payload: AdminCreateRequest, db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    email = payload.email.strip().lower()
    if db[USERS].find_one({"email": email}):
        raise HTTPException(status_code=400, detail="Admin already exists!")
    password = payload.password.strip()
    if not password:
        raise ValidationError("Password cannot be blank")
    user = UserSchema(name=payload.name, email=email, password=hash_password(password), role=payload.role)
    new_id = create_document(db, USERS, user)
    return {"id": str(new_id), "message": "New Admin Created Successfully!"}


@app.get("/users/{user_id}")
def get_user_profile(user_id: str, db: Database = Depends(get_db), current=Depends(get_current_user)):
    if current.get("role") != "admin" and current["id"] != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return serialize(get_profile(db, user_id))


@app.put("/users/{user_id}")
def update_user_profile(user_id: str, payload: ProfileUpdateRequest, db: Database = Depends(get_db),
                        current=Depends(get_current_user)):
    if current.get("role") != "admin" and current["id"] != user_id:
        raise HTTPException(status_code=403, detail="Forbidden")
    return serialize(update_profile(db, user_id, payload.model_dump(exclude_unset=True)))


# ----------------------------------------------------------------------------
# Client routes
# ----------------------------------------------------------------------------
@app.get("/clients")
def list_clients(search: Optional[str] = None, status: Optional[str] = None,
                 db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    return serialize(registry.list_clients(db, search, status))


@app.post("/clients", status_code=201)
def create_client(payload: Dict[str, Any], db: Database = Depends(get_db),
                  notifier: Notifier = Depends(get_notifier), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    client = registry.create_client(db, payload, notifier=notifier)
    return {"message": "✅ Client & User created successfully", "client": serialize(client)}


@app.get("/clients/email/{email}")
def client_by_email(email: str, db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    return serialize(registry.find_client_by_email(db, email))


@app.get("/clients/profile/me")
def client_profile(email: Optional[str] = None, db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["client", "admin"])
    if current.get("role") == "client":
        email = current.get("email")
    return serialize(registry.client_profile(db, email or ""))


@app.post("/clients/deploy-project", status_code=201)
def deploy_project(payload: Dict[str, Any], db: Database = Depends(get_db),
                   notifier: Notifier = Depends(get_notifier), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    client_id = payload.get("clientId")
    if not client_id:
        raise ValidationError("clientId is required")
    data = dict(payload)
    data.setdefault("adminEmail", current.get("email"))
    result = registry.deploy_project(db, client_id, data, notifier=notifier)
    return _with_warnings(
        {"success": True, "message": "🚀 Deployed & Invoice Sent!", "projectId": result["projectId"],
         "invoice": serialize(result["invoice"])},
        result["warnings"],
    )


@app.get("/clients/{client_id}")
def get_client(client_id: str, db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    return serialize(registry.get_client(db, client_id))


@app.put("/clients/{client_id}")
def update_client(client_id: str, payload: Dict[str, Any], db: Database = Depends(get_db),
                  current=Depends(get_current_user)):
    require_role(current, ["admin"])
    client = registry.update_client(db, client_id, payload)
    return {"message": "✅ Client updated", "client": serialize(client)}


@app.delete("/clients/{client_id}")
def delete_client(client_id: str, db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    registry.delete_client(db, client_id)
    return {"message": "🗑️ Client and User deleted"}


@app.put("/clients/{client_id}/projects/{project_id}")
def update_project_status(client_id: str, project_id: str, payload: ProjectStatusRequest,
                          db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    if not registry.set_project_status(db, client_id, project_id, payload.status):
        raise ConflictError("Project not found on client", clientId=client_id, projectId=project_id)
    return {"message": "✅ Project status updated", "status": payload.status}


@app.put("/clients/{client_id}/payment")
def milestone_payment(client_id: str, payload: MilestonePaymentRequest, db: Database = Depends(get_db),
                      notifier: Notifier = Depends(get_notifier), current=Depends(get_current_user)):
    require_role(current, ["admin", "client"])
    client = registry.get_client(db, client_id)
    if current.get("role") == "client" and client.get("portalEmail") != current.get("email"):
        raise HTTPException(status_code=403, detail="Forbidden")
    matched = registry.update_milestone_payment_status(
        db, client_id, payload.projectId, payload.invoiceId,
        amount=payload.amount, method=payload.method, paid_date=payload.date,
    )
    if not matched:
        raise ConflictError("Sync failed. Project or milestone not found on client.",
                            projectId=payload.projectId, milestoneId=payload.invoiceId)
    registry.queue_payment_receipt(
        notifier, payload.clientEmail, payload.clientName or client.get("name", ""),
        payload.projectName or "", payload.milestoneName or "", payload.amount, payload.method,
    )
    return {"success": True, "message": "✅ Payment synced successfully!"}


# ----------------------------------------------------------------------------
# Project routes
# ----------------------------------------------------------------------------
@app.get("/projects")
def client_projects(email: Optional[str] = None, db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["client", "admin"])
    if current.get("role") == "client":
        email = current.get("email")
    if not email:
        raise ValidationError("Email is required")
    return serialize(registry.list_projects_for_client(db, email))


@app.get("/project-details/{project_id}")
def project_details(project_id: str, db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["client", "admin"])
    return serialize(registry.get_project_details(db, project_id))


# ----------------------------------------------------------------------------
# Invoice routes
# ----------------------------------------------------------------------------
@app.get("/invoices")
def list_invoices(search: Optional[str] = None, status: Optional[str] = None, email: Optional[str] = None,
                  db: Database = Depends(get_db), current=Depends(get_current_user)):
    role = current.get("role")
    if role == "client" or not email:
        email = current.get("email")
    return serialize(ledger.list_invoices(db, email, role, search, status))


@app.post("/invoices", status_code=201)
def create_invoice(payload: Dict[str, Any], db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    data = dict(payload)
    data.setdefault("adminEmail", current.get("email"))
    outcome = ledger.create_invoice(db, data)
    return _with_warnings(
        {"message": "✅ Invoice created & synced globally", "id": str(outcome.document["_id"]),
         "invoiceId": outcome.document["invoiceId"]},
        outcome.warnings,
    )


@app.post("/invoices/bulk-delete")
def bulk_delete(payload: BulkDeleteRequest, db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    return ledger.bulk_delete(db, payload.ids)


@app.get("/invoices/{invoice_id}")
def get_invoice(invoice_id: str, db: Database = Depends(get_db), current=Depends(get_current_user)):
    invoice = ledger.find_invoice(db, invoice_id)
    _client_may_see(current, invoice)
    return serialize(invoice)


@app.patch("/invoices/{invoice_id}")
def patch_invoice(invoice_id: str, payload: Dict[str, Any], db: Database = Depends(get_db),
                  current=Depends(get_current_user)):
    require_role(current, ["admin"])
    if payload.get("status") == ledger.PAID:
        raise ValidationError("Use the paid transition to mark an invoice Paid")
    outcome = ledger.patch_invoice(db, invoice_id, payload)
    return _with_warnings({"message": "✅ Global update successful", "invoice": serialize(outcome.document)},
                          outcome.warnings)


@app.delete("/invoices/{invoice_id}")
def delete_invoice(invoice_id: str, db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    outcome = ledger.delete_invoice(db, invoice_id)
    return _with_warnings({"message": "🗑️ Deleted from all records"}, outcome.warnings)


@app.post("/invoices/{invoice_id}/paid")
def mark_paid(invoice_id: str, db: Database = Depends(get_db), notifier: Notifier = Depends(get_notifier),
              current=Depends(get_current_user)):
    require_role(current, ["admin", "client"])
    _client_may_see(current, ledger.find_invoice(db, invoice_id))
    outcome = ledger.transition_to_paid(db, invoice_id, notifier=notifier)
    return _with_warnings(
        {"invoice": serialize(outcome.invoice), "automation": serialize(outcome.automation)},
        outcome.warnings,
    )


@app.post("/invoices/{invoice_id}/automation")
def rerun_automation(invoice_id: str, db: Database = Depends(get_db), notifier: Notifier = Depends(get_notifier),
                     current=Depends(get_current_user)):
    require_role(current, ["admin"])
    result = automation.rerun(db, invoice_id, notifier=notifier)
    return _with_warnings(
        {"invoice": serialize(result["invoice"]), "automation": serialize(result["automation"])},
        result["warnings"],
    )


@app.get("/invoices/{invoice_id}/download")
def download_invoice(invoice_id: str, db: Database = Depends(get_db), current=Depends(get_current_user)):
    invoice = ledger.find_invoice(db, invoice_id)
    _client_may_see(current, invoice)
    return Response(
        content=render(invoice),
        media_type="application/pdf",
        headers={"Content-Disposition": f"attachment; filename=Invoice-{invoice.get('invoiceId')}.pdf"},
    )


@app.post("/invoices/{invoice_id}/send-email")
def send_invoice_email(invoice_id: str, db: Database = Depends(get_db), notifier: Notifier = Depends(get_notifier),
                       current=Depends(get_current_user)):
    require_role(current, ["admin"])
    invoice = ledger.find_invoice(db, invoice_id)
    if not invoice.get("clientEmail"):
        raise ValidationError("Client email missing")
    subject, body = invoice_email(invoice, site_settings.resolve_payment_link(db, invoice))
    notifier.queue(invoice["clientEmail"], subject, body,
                   attachments=[(f"Invoice-{invoice.get('invoiceId')}.pdf", render(invoice))])
    outcome = ledger.mark_sent(db, invoice["_id"])
    return _with_warnings({"message": "✅ Email queued", "status": outcome.document.get("status")}, outcome.warnings)


# ----------------------------------------------------------------------------
# Summaries, settings & dashboard
# ----------------------------------------------------------------------------
@app.post("/summaries/rebuild")
def rebuild_summaries(payload: RebuildSummariesRequest, db: Database = Depends(get_db),
                      current=Depends(get_current_user)):
    require_role(current, ["admin"])
    return {"email": payload.email.strip().lower(), "rebuilt": sync.rebuild_summaries(db, payload.email)}


@app.get("/settings")
def get_settings_record(db: Database = Depends(get_db), current=Depends(get_current_user)):
    return site_settings.get_site_settings(db)


@app.post("/settings")
def save_settings_record(payload: Dict[str, Any], db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    saved = site_settings.save_site_settings(db, payload)
    return {"success": True, "message": "System Synced Globally!", "settings": serialize(saved)}


@app.get("/dashboard-stats")
def dashboard_stats(db: Database = Depends(get_db), current=Depends(get_current_user)):
    require_role(current, ["admin"])
    return serialize(ledger.dashboard_stats(db))


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
