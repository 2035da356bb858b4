from conftest import API, dues_payload, transaction_payload


def _record(client, admin, **overrides):
    resp = client.post(f"{API}/transactions", headers=admin.headers, json=transaction_payload(**overrides))
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def _group(client, admin, **overrides):
    payload = {"name": "Savings Circle", "description": "Rotating savings", "monthly_amount": 10}
    payload.update(overrides)
    resp = client.post(f"{API}/groups", headers=admin.headers, json=payload)
    assert resp.status_code == 201, resp.text
    return resp.json()["data"]


def test_admin_records_transaction(client, admin, member):
    transaction = _record(client, admin, member_id=member.id, attachment="receipts/42.pdf")
    assert transaction["status"] == "Completed"
    assert transaction["created_by"] == admin.id
    assert transaction["member"] == member.id
    assert transaction["cotisation"] is None
    assert transaction["attachment"] == "receipts/42.pdf"
    assert transaction["date"]


def test_recording_requires_admin(client, member):
    resp = client.post(f"{API}/transactions", headers=member.headers, json=transaction_payload())
    assert resp.status_code == 403


def test_recording_checks_references(client, admin):
    for field in ("member_id", "group_id", "cotisation_id"):
        resp = client.post(f"{API}/transactions", headers=admin.headers, json=transaction_payload(**{field: 777}))
        assert resp.status_code == 404, field


def test_dues_accept_a_single_transaction(client, admin, member):
    dues = client.post(f"{API}/cotisations", headers=member.headers, json=dues_payload()).json()["data"]
    resp = client.post(
        f"{API}/transactions",
        headers=admin.headers,
        json=transaction_payload(type="Inflow", category="Dues", cotisation_id=dues["id"]),
    )
    assert resp.status_code == 400

    [companion] = client.get(f"{API}/transactions", headers=admin.headers, params={"cotisation": dues["id"]}).json()["data"]
    assert client.delete(f"{API}/transactions/{companion['id']}", headers=admin.headers).status_code == 200
    client.patch(f"{API}/cotisations/{dues['id']}/status", headers=admin.headers, json={"status": "Rejected"})

    relinked = _record(client, admin, type="Inflow", category="Dues", cotisation_id=dues["id"])
    assert relinked["status"] == "Cancelled"


def test_get_transaction_permissions(client, admin, member, make_user):
    transaction = _record(client, admin, member_id=member.id)
    stranger = make_user()

    resp = client.get(f"{API}/transactions/{transaction['id']}", headers=member.headers)
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["member"]["email"] == member.email
    assert data["created_by"]["email"] == admin.email

    assert client.get(f"{API}/transactions/{transaction['id']}", headers=stranger.headers).status_code == 403
    assert client.get(f"{API}/transactions/9999", headers=admin.headers).status_code == 404


def test_member_transactions_newest_first(client, admin, member, make_user):
    group = _group(client, admin)
    _record(client, admin, member_id=member.id, date="2025-01-10T00:00:00Z", description="January")
    _record(client, admin, member_id=member.id, date="2025-03-10T00:00:00Z", description="March", group_id=group["id"])
    _record(client, admin, description="Unrelated")

    resp = client.get(f"{API}/transactions/member/{member.id}", headers=member.headers)
    assert resp.status_code == 200
    body = resp.json()
    assert [t["description"] for t in body["data"]] == ["March", "January"]
    assert body["data"][0]["group"] == {"id": group["id"], "name": "Savings Circle", "description": "Rotating savings"}
    assert body["data"][1]["group"] is None

    stranger = make_user()
    assert client.get(f"{API}/transactions/member/{member.id}", headers=stranger.headers).status_code == 403


def test_group_transactions_visible_to_members_only(client, admin, member, make_user):
    group = _group(client, admin, member_ids=[member.id])
    _record(client, admin, group_id=group["id"], member_id=member.id)
    _record(client, admin, description="Elsewhere")

    resp = client.get(f"{API}/transactions/group/{group['id']}", headers=member.headers)
    assert resp.status_code == 200
    body = resp.json()
    assert body["count"] == 1
    assert body["data"][0]["member"]["email"] == member.email
    assert body["data"][0]["created_by"]["email"] == admin.email

    outsider = make_user()
    assert client.get(f"{API}/transactions/group/{group['id']}", headers=outsider.headers).status_code == 403
    assert client.get(f"{API}/transactions/group/4040", headers=admin.headers).status_code == 404


def test_financial_report(client, admin, member):
    _record(client, admin, type="Inflow", amount=100, category="Donation", date="2025-01-15T09:00:00Z")
    _record(client, admin, type="Outflow", amount=30, category="Administrative Expense", date="2025-02-01T18:30:00Z")
    _record(client, admin, type="Inflow", amount=50, category="Event", date="2025-03-01T12:00:00Z")

    resp = client.post(f"{API}/transactions/report", headers=admin.headers)
    assert resp.status_code == 200
    stats = resp.json()["data"]["stats"]
    assert stats["total_transactions"] == 3
    assert stats["total_inflow"] == 150
    assert stats["total_outflow"] == 30
    assert stats["balance"] == 120
    assert stats["by_category"] == {
        "Donation": {"count": 1, "total_amount": 100},
        "Administrative Expense": {"count": 1, "total_amount": 30},
        "Event": {"count": 1, "total_amount": 50},
    }

    resp = client.post(
        f"{API}/transactions/report",
        headers=admin.headers,
        json={"start_date": "2025-01-01", "end_date": "2025-02-01"},
    )
    data = resp.json()["data"]
    assert data["stats"]["total_transactions"] == 2
    assert data["stats"]["balance"] == 70
    assert [t["category"] for t in data["transactions"]] == ["Donation", "Administrative Expense"]

    resp = client.post(f"{API}/transactions/report", headers=admin.headers, json={"type": "Inflow"})
    assert resp.json()["data"]["stats"]["total_outflow"] == 0

    assert client.post(f"{API}/transactions/report", headers=member.headers).status_code == 403


def test_update_and_delete(client, admin, member):
    transaction = _record(client, admin)
    resp = client.put(
        f"{API}/transactions/{transaction['id']}",
        headers=admin.headers,
        json=transaction_payload(amount=45, description="Printer ink", member_id=member.id),
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert (data["amount"], data["description"], data["member"]) == (45, "Printer ink", member.id)

    assert client.put(
        f"{API}/transactions/{transaction['id']}", headers=member.headers, json=transaction_payload()
    ).status_code == 403

    assert client.delete(f"{API}/transactions/{transaction['id']}", headers=admin.headers).status_code == 200
    assert client.get(f"{API}/transactions/{transaction['id']}", headers=admin.headers).status_code == 404


def test_report_end_date_covers_the_whole_day(client, admin):
    _record(client, admin, amount=5, date="2025-02-01T00:00:00Z")
    _record(client, admin, amount=7, date="2025-02-01T23:15:00Z")
    _record(client, admin, amount=11, date="2025-02-02T00:00:00Z")

    resp = client.post(
        f"{API}/transactions/report",
        headers=admin.headers,
        json={"start_date": "2025-02-01", "end_date": "2025-02-01"},
    )
    stats = resp.json()["data"]["stats"]
    assert stats["total_transactions"] == 2
    assert stats["total_outflow"] == 12
