import pytest


@pytest.fixture
def portal_client(api, admin_headers):
    response = api.post("/clients", headers=admin_headers, json={
        "name": "Acme",
        "email": "billing@acme.com",
        "portalEmail": "Ops@Acme.com",
        "password": "portal-pass",
    })
    assert response.status_code == 201, response.text
    return response.json()["client"]


@pytest.fixture
def client_headers(api, portal_client):
    response = api.post("/auth/login", json={"email": "ops@acme.com", "password": "portal-pass", "role": "client"})
    assert response.status_code == 200, response.text
    return {"Authorization": f"Bearer {response.json()['token']}"}


def test_root(api):
    assert api.get("/").json()["status"] == "ok"


def test_login_rejects_wrong_password(api):
    response = api.post("/auth/login", json={"email": "admin@vault.io", "password": "nope", "role": "admin"})
    assert response.status_code == 401


def test_client_login_returns_session(api, portal_client):
    response = api.post("/auth/login", json={"email": " OPS@acme.com", "password": "portal-pass", "role": "client"})

    assert response.status_code == 200
    body = response.json()
    assert body["role"] == "client"
    assert body["email"] == "ops@acme.com"
    assert body["token"]


def test_routes_require_token(api):
    assert api.get("/invoices").status_code in (401, 403)


def test_client_cannot_use_admin_routes(api, client_headers):
    assert api.get("/clients", headers=client_headers).status_code == 403


def test_unknown_invoice_maps_to_not_found(api, admin_headers):
    response = api.get("/invoices/INV-000000", headers=admin_headers)

    assert response.status_code == 404
    assert response.json()["code"] == "NOT_FOUND"


def test_missing_emails_map_to_validation_error(api, admin_headers):
    response = api.post("/invoices", headers=admin_headers, json={"clientName": "x", "items": []})

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_deploy_pay_and_advance(api, admin_headers, client_headers, portal_client, notifier):
    deployed = api.post("/clients/deploy-project", headers=admin_headers, json={
        "clientId": portal_client["id"],
        "title": "Website",
        "totalBudget": 2000,
        "milestones": [{"name": "Design", "amount": 500}, {"name": "Build", "amount": 1500}],
    })
    assert deployed.status_code == 201, deployed.text
    invoice = deployed.json()["invoice"]
    assert invoice["grandTotal"] == 500
    assert invoice["adminEmail"] == "admin@vault.io"

    mine = api.get("/invoices", headers=client_headers).json()
    assert [i["invoiceId"] for i in mine] == [invoice["invoiceId"]]

    paid = api.post(f"/invoices/{invoice['id']}/paid", headers=client_headers)
    assert paid.status_code == 200, paid.text
    body = paid.json()
    assert body["invoice"]["status"] == "Paid"
    assert body["automation"]["currentStep"] == 2
    assert body["automation"]["nextInvoice"]["grandTotal"] == 1500

    projects = api.get("/projects", headers=client_headers).json()
    assert projects[0]["currentStep"] == 2
    assert projects[0]["paidAmount"] == 500

    stats = api.get("/dashboard-stats", headers=admin_headers).json()
    assert stats["totalRevenue"] == 500
    assert stats["pendingAmount"] == 1500


def test_client_cannot_read_another_clients_invoice(api, admin_headers, client_headers, invoice_payload):
    created = api.post("/invoices", headers=admin_headers, json=invoice_payload(clientEmail="someone@else.com"))
    assert created.status_code == 201

    response = api.get(f"/invoices/{created.json()['invoiceId']}", headers=client_headers)

    assert response.status_code == 403


def test_patch_cannot_mark_paid(api, admin_headers, invoice_payload):
    created = api.post("/invoices", headers=admin_headers, json=invoice_payload()).json()

    response = api.patch(f"/invoices/{created['id']}", headers=admin_headers, json={"status": "Paid"})

    assert response.status_code == 400


def test_download_returns_pdf(api, admin_headers, invoice_payload):
    created = api.post("/invoices", headers=admin_headers, json=invoice_payload()).json()

    response = api.get(f"/invoices/{created['invoiceId']}/download", headers=admin_headers)

    assert response.status_code == 200
    assert response.headers["content-type"] == "application/pdf"
    assert response.content.startswith(b"%PDF")


def test_send_email_attaches_pdf_and_marks_sent(api, admin_headers, notifier, invoice_payload):
    created = api.post("/invoices", headers=admin_headers, json=invoice_payload()).json()

    response = api.post(f"/invoices/{created['id']}/send-email", headers=admin_headers)

    assert response.status_code == 200
    assert response.json()["status"] == "Sent"
    message = notifier.sent[-1]
    assert message["to"] == "cathy@client.io"
    filename, payload = message["attachments"][0]
    assert filename == f"Invoice-{created['invoiceId']}.pdf"
    assert payload.startswith(b"%PDF")


def test_bulk_delete_reports_failures(api, admin_headers, invoice_payload):
    created = api.post("/invoices", headers=admin_headers, json=invoice_payload()).json()

    response = api.post("/invoices/bulk-delete", headers=admin_headers,
                        json={"ids": [created["id"], "INV-999999"]})

    body = response.json()
    assert body["deleted"] == [created["id"]]
    assert body["failed"][0]["id"] == "INV-999999"
    assert api.get(f"/invoices/{created['id']}", headers=admin_headers).status_code == 404


def test_settings_payment_link_round_trip(api, admin_headers):
    saved = api.post("/settings", headers=admin_headers, json={"paymentLink": "https://pay.vault.io/x"})
    assert saved.status_code == 200

    assert api.get("/settings", headers=admin_headers).json()["paymentLink"] == "https://pay.vault.io/x"


def test_rebuild_summaries_route(api, admin_headers, invoice_payload):
    api.post("/invoices", headers=admin_headers, json=invoice_payload())

    response = api.post("/summaries/rebuild", headers=admin_headers, json={"email": "Admin@Vault.io"})

    assert response.json() == {"email": "admin@vault.io", "rebuilt": {"myCreatedInvoices": 1}}


def test_patch_with_malformed_items_is_a_validation_error(api, admin_headers, invoice_payload):
    created = api.post("/invoices", headers=admin_headers, json=invoice_payload()).json()

    response = api.patch(f"/invoices/{created['id']}", headers=admin_headers,
                         json={"items": [{"name": "x", "qty": "two", "price": 5}]})

    assert response.status_code == 400
    assert response.json()["code"] == "VALIDATION_ERROR"


def test_new_admin_password_is_trimmed_like_login(api, admin_headers):
    created = api.post("/manage-admins", headers=admin_headers, json={
        "name": "Bo", "email": "bo@vault.io", "password": "  padded-pass  ",
    })
    assert created.status_code == 201, created.text

    response = api.post("/auth/login", json={"email": "bo@vault.io", "password": "padded-pass", "role": "admin"})

    assert response.status_code == 200


def test_user_reads_and_updates_own_profile(api, portal_client):
    session = api.post("/auth/login", json={"email": "ops@acme.com", "password": "portal-pass", "role": "client"}).json()
    headers = {"Authorization": f"Bearer {session['token']}"}

    updated = api.put(f"/users/{session['id']}", headers=headers, json={"name": "Olga Ops", "about": "Pays on time"})

    assert updated.status_code == 200, updated.text
    profile = api.get(f"/users/{session['id']}", headers=headers).json()
    assert profile["name"] == "Olga Ops"
    assert profile["about"] == "Pays on time"
    assert profile["email"] == "ops@acme.com"
    assert "password" not in profile


def test_profile_access_is_limited_to_self_or_admin(api, admin_headers, client_headers, admin_user):
    admin_id = str(admin_user["_id"])

    assert api.get(f"/users/{admin_id}", headers=client_headers).status_code == 403
    assert api.put(f"/users/{admin_id}", headers=client_headers, json={"name": "x"}).status_code == 403
    assert api.get(f"/users/{admin_id}", headers=admin_headers).json()["name"] == "Ada Admin"
    assert api.get("/users/64b7f0000000000000000000", headers=admin_headers).status_code == 404
