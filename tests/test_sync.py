from bson import ObjectId

import ledger
import sync
from database import USERS


def _lists(db, admin_email="admin@vault.io", client_email="cathy@client.io"):
    admin = db[USERS].find_one({"email": admin_email})
    client = db[USERS].find_one({"email": client_email})
    return admin.get(sync.ADMIN_LIST, []), client.get(sync.CLIENT_LIST, [])


def test_create_publishes_summary_to_both_owners(db, admin_user, client_user, invoice_payload):
    outcome = ledger.create_invoice(db, invoice_payload())

    admin_list, client_list = _lists(db)
    assert outcome.warnings == []
    assert [s["_id"] for s in admin_list] == [outcome.document["_id"]]
    assert [s["_id"] for s in client_list] == [outcome.document["_id"]]
    assert admin_list[0]["grandTotal"] == 525
    assert client_list[0]["status"] == "Unpaid"


def test_patch_summary_without_matching_entry_is_a_silent_no_op(db, admin_user, client_user, invoice_payload):
    ledger.create_invoice(db, invoice_payload())
    before = _lists(db)

    matched = sync.patch_summary(db, "admin@vault.io", sync.ADMIN_LIST, ObjectId(), {"status": "Paid"})

    assert matched is False
    assert _lists(db) == before


def test_refresh_copies_synced_fields(db, admin_user, client_user, invoice_payload):
    invoice = ledger.create_invoice(db, invoice_payload()).document
    invoice.update(status="Sent", grandTotal=999, projectTitle="Renamed")

    assert sync.refresh(db, invoice) == []

    admin_list, client_list = _lists(db)
    for summary in (admin_list[0], client_list[0]):
        assert summary["status"] == "Sent"
        assert summary["grandTotal"] == 999
        assert summary["projectTitle"] == "Renamed"


def test_refresh_reports_drift_as_warning(db, admin_user, client_user, invoice_payload):
    invoice = ledger.create_invoice(db, invoice_payload()).document
    db[USERS].update_one({"email": "cathy@client.io"}, {"$set": {sync.CLIENT_LIST: []}})

    warnings = sync.refresh(db, invoice)

    assert len(warnings) == 1
    assert warnings[0].startswith(f"patch {sync.CLIENT_LIST}")


def test_publish_without_owner_user_warns_but_keeps_invoice(db, admin_user, invoice_payload):
    outcome = ledger.create_invoice(db, invoice_payload(clientEmail="nobody@client.io"))

    assert len(outcome.warnings) == 1
    assert ledger.find_invoice(db, outcome.document["_id"])["clientEmail"] == "nobody@client.io"


def test_retract_removes_both_entries(db, admin_user, client_user, invoice_payload):
    keep = ledger.create_invoice(db, invoice_payload()).document
    drop = ledger.create_invoice(db, invoice_payload()).document

    assert sync.retract(db, drop) == []

    admin_list, client_list = _lists(db)
    assert [s["_id"] for s in admin_list] == [keep["_id"]]
    assert [s["_id"] for s in client_list] == [keep["_id"]]


def test_rebuild_summaries_restores_lost_entries(db, admin_user, client_user, invoice_payload):
    first = ledger.create_invoice(db, invoice_payload()).document
    second = ledger.create_invoice(db, invoice_payload(projectTitle="Audit")).document
    db[USERS].update_many({}, {"$set": {sync.ADMIN_LIST: [], sync.CLIENT_LIST: []}})

    assert sync.rebuild_summaries(db, "Admin@Vault.io") == {sync.ADMIN_LIST: 2}
    assert sync.rebuild_summaries(db, "cathy@client.io") == {sync.CLIENT_LIST: 2}

    admin_list, client_list = _lists(db)
    assert {s["_id"] for s in admin_list} == {first["_id"], second["_id"]}
    assert {s["invoiceId"] for s in client_list} == {first["invoiceId"], second["invoiceId"]}


def test_rebuild_for_unknown_user_is_empty(db):
    assert sync.rebuild_summaries(db, "ghost@vault.io") == {}
