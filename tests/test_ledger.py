import re

import pytest

import ledger
import sync
from database import INVOICES, USERS
from errors import NotFoundError, ValidationError


def test_create_requires_both_emails(db, invoice_payload):
    with pytest.raises(ValidationError):
        ledger.create_invoice(db, invoice_payload(adminEmail=None))
    with pytest.raises(ValidationError):
        ledger.create_invoice(db, invoice_payload(clientEmail="  "))
    assert db[INVOICES].count_documents({}) == 0


def test_create_normalizes_and_totals(db, admin_user, client_user, invoice_payload):
    invoice = ledger.create_invoice(
        db, invoice_payload(adminEmail="Admin@Vault.IO", clientEmail=" Cathy@Client.io", grandTotal=1)
    ).document

    assert invoice["adminEmail"] == "admin@vault.io"
    assert invoice["clientEmail"] == "cathy@client.io"
    assert invoice["status"] == "Unpaid"
    assert invoice["grandTotal"] == 525
    assert invoice["remainingDue"] == 525
    assert re.fullmatch(r"INV-\d{6}", invoice["invoiceId"])
    assert invoice["createdAt"] == invoice["updatedAt"]


def test_generated_invoice_numbers_are_unique(db, admin_user, client_user, invoice_payload):
    numbers = {ledger.create_invoice(db, invoice_payload()).document["invoiceId"] for _ in range(5)}
    assert len(numbers) == 5


def test_find_by_native_id_or_invoice_number(db, admin_user, client_user, invoice_payload):
    invoice = ledger.create_invoice(db, invoice_payload()).document

    assert ledger.find_invoice(db, str(invoice["_id"]))["_id"] == invoice["_id"]
    assert ledger.find_invoice(db, invoice["invoiceId"])["_id"] == invoice["_id"]
    with pytest.raises(NotFoundError):
        ledger.find_invoice(db, "INV-000000")


def test_patch_ignores_immutable_fields_and_recomputes_totals(db, admin_user, client_user, invoice_payload):
    created = ledger.create_invoice(db, invoice_payload(receivedAmount=100)).document
    invoice = ledger.find_invoice(db, created["_id"])

    outcome = ledger.patch_invoice(db, invoice["invoiceId"], {
        "_id": "ignored",
        "createdAt": "1999-01-01",
        "items": [{"name": "Hours", "qty": 4, "price": 50}],
        "status": "Sent",
    })

    updated = outcome.document
    assert updated["_id"] == invoice["_id"]
    assert updated["createdAt"] == invoice["createdAt"]
    assert updated["grandTotal"] == 200
    assert updated["remainingDue"] == 100
    admin = db[USERS].find_one({"email": "admin@vault.io"})
    assert admin[sync.ADMIN_LIST][0]["grandTotal"] == 200
    assert admin[sync.ADMIN_LIST][0]["status"] == "Sent"


def test_patch_unknown_invoice(db):
    with pytest.raises(NotFoundError):
        ledger.patch_invoice(db, "INV-404404", {"status": "Sent"})


def test_patch_moving_client_moves_summary(db, admin_user, client_user, invoice_payload):
    other = {"name": "Dan", "email": "dan@client.io", "password": "x", "role": "client", "invoicesReceived": []}
    db[USERS].insert_one(other)
    invoice = ledger.create_invoice(db, invoice_payload()).document

    ledger.patch_invoice(db, invoice["_id"], {"clientEmail": "Dan@Client.io"})

    assert db[USERS].find_one({"email": "cathy@client.io"})[sync.CLIENT_LIST] == []
    assert [s["_id"] for s in db[USERS].find_one({"email": "dan@client.io"})[sync.CLIENT_LIST]] == [invoice["_id"]]


def test_mark_sent_only_moves_unpaid(db, admin_user, client_user, invoice_payload):
    invoice = ledger.create_invoice(db, invoice_payload()).document
    assert ledger.mark_sent(db, invoice["_id"]).document["status"] == "Sent"
    assert ledger.mark_sent(db, invoice["_id"]).document["status"] == "Sent"


def test_transition_without_project_skips_automation(db, admin_user, client_user, invoice_payload):
    invoice = ledger.create_invoice(db, invoice_payload()).document

    outcome = ledger.transition_to_paid(db, invoice["invoiceId"])

    assert outcome.automation is None
    assert outcome.invoice["status"] == "Paid"
    assert outcome.invoice["receivedAmount"] == 525
    assert outcome.invoice["remainingDue"] == 0
    client = db[USERS].find_one({"email": "cathy@client.io"})
    assert client[sync.CLIENT_LIST][0]["status"] == "Paid"


def test_transition_with_dangling_project_warns(db, admin_user, client_user, invoice_payload):
    invoice = ledger.create_invoice(db, invoice_payload(projectId="missing")).document

    outcome = ledger.transition_to_paid(db, invoice["_id"])

    assert outcome.invoice["status"] == "Paid"
    assert outcome.automation is None
    assert outcome.warnings


def test_delete_then_find_fails_and_summaries_are_gone(db, admin_user, client_user, invoice_payload):
    invoice = ledger.create_invoice(db, invoice_payload()).document

    ledger.delete_invoice(db, str(invoice["_id"]))

    with pytest.raises(NotFoundError):
        ledger.find_invoice(db, str(invoice["_id"]))
    admin = db[USERS].find_one({"email": "admin@vault.io"})
    client = db[USERS].find_one({"email": "cathy@client.io"})
    assert all(s["_id"] != invoice["_id"] for s in admin[sync.ADMIN_LIST])
    assert all(s["_id"] != invoice["_id"] for s in client[sync.CLIENT_LIST])


def test_bulk_delete_continues_past_failures(db, admin_user, client_user, invoice_payload):
    first = ledger.create_invoice(db, invoice_payload()).document
    second = ledger.create_invoice(db, invoice_payload()).document

    report = ledger.bulk_delete(db, [str(first["_id"]), "INV-999999", second["invoiceId"]])

    assert report["deleted"] == [str(first["_id"]), second["invoiceId"]]
    assert [f["id"] for f in report["failed"]] == ["INV-999999"]
    assert report["failed"][0]["code"] == "NOT_FOUND"
    assert db[INVOICES].count_documents({}) == 0


def test_list_invoices_by_role(db, admin_user, client_user, invoice_payload):
    ledger.create_invoice(db, invoice_payload(projectTitle="Alpha"))
    ledger.create_invoice(db, invoice_payload(projectTitle="Beta", clientEmail="other@client.io"))

    assert len(ledger.list_invoices(db, "admin@vault.io", "admin")) == 2
    assert [i["projectTitle"] for i in ledger.list_invoices(db, "Cathy@Client.io", "client")] == ["Alpha"]
    assert [i["projectTitle"] for i in ledger.list_invoices(db, "admin@vault.io", "admin", search="bet")] == ["Beta"]
    with pytest.raises(ValidationError):
        ledger.list_invoices(db, "", "client")


def test_dashboard_stats(db, admin_user, client_user, invoice_payload):
    paid = ledger.create_invoice(db, invoice_payload()).document
    ledger.create_invoice(db, invoice_payload(items=[{"name": "Fee", "qty": 1, "price": 75}]))
    ledger.transition_to_paid(db, paid["_id"])

    stats = ledger.dashboard_stats(db)

    assert stats["totalRevenue"] == 525
    assert stats["pendingAmount"] == 75
    assert len(stats["recentInvoices"]) == 2


def test_patch_rejects_malformed_items(db, admin_user, client_user, invoice_payload):
    invoice = ledger.create_invoice(db, invoice_payload()).document

    with pytest.raises(ValidationError):
        ledger.patch_invoice(db, invoice["_id"], {"items": [{"name": "x", "qty": "two", "price": 5}]})
    with pytest.raises(ValidationError):
        ledger.patch_invoice(db, invoice["_id"], {"receivedAmount": "lots"})

    stored = ledger.find_invoice(db, invoice["_id"])
    assert stored["grandTotal"] == 525
    assert stored["receivedAmount"] == 0


def test_stale_paid_confirmation_leaves_automation_to_the_winner(db, admin_user, client_user, invoice_payload,
                                                               monkeypatch):
    import automation

    invoice = ledger.create_invoice(db, invoice_payload(projectId="p-1")).document
    stale = ledger.find_invoice(db, invoice["_id"])
    db[INVOICES].update_one({"_id": invoice["_id"]}, {"$set": {"status": "Paid"}})

    def not_expected(*args, **kwargs):
        raise AssertionError("automation should not run for a lost confirmation")

    monkeypatch.setattr(ledger, "find_invoice", lambda database, identifier: stale)
    monkeypatch.setattr(automation, "advance_project", not_expected)

    outcome = ledger.transition_to_paid(db, invoice["_id"])

    assert outcome.automation is None
    assert outcome.invoice["status"] == "Paid"
