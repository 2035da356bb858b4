import pytest

from conftest import API, transaction_payload
from errors import ValidationError
from models import CotisationModel, GroupModel, TransactionModel, UserModel
from query import (
    Condition,
    ListQuery,
    Populate,
    parse_filters,
    parse_select,
    parse_sort,
    public_fields,
    serialize,
)
from schemas import CotisationStatus, Month


# ----------------------------------------------------------------------------
# Parsing
# ----------------------------------------------------------------------------
def test_bracketed_operators_become_conditions():
    conditions = parse_filters(CotisationModel, [("amount[gte]", "100"), ("year[lt]", "2026"), ("page", "2")])
    assert conditions == [Condition("amount", "gte", 100.0), Condition("year", "lt", 2026)]


def test_values_are_coerced_to_column_types():
    conditions = parse_filters(CotisationModel, [("status", "Confirmed"), ("month[in]", "March, April")])
    assert conditions == [
        Condition("status", "eq", CotisationStatus.CONFIRMED),
        Condition("month", "in", (Month.MARCH, Month.APRIL)),
    ]


def test_operator_words_inside_values_are_literal():
    [condition] = parse_filters(TransactionModel, [("description", "gte lt in gt")])
    assert condition == Condition("description", "eq", "gte lt in gt")


def test_repeated_equality_becomes_membership():
    [condition] = parse_filters(CotisationModel, [("year", "2024"), ("year", "2025")])
    assert condition == Condition("year", "in", (2024, 2025))


def test_references_filter_on_their_foreign_key():
    [condition] = parse_filters(CotisationModel, [("member", "7")])
    assert condition == Condition("member", "eq", 7)


@pytest.mark.parametrize(
    "params",
    [
        [("amount[regex]", "1")],
        [("nonexistent", "1")],
        [("password_hash", "x")],
        [("amount", "lots")],
        [("status", "Paid")],
        [("members[gt]", "1")],
        [("amount[gte]", "1"), ("amount[gte]", "2")],
    ],
)
def test_bad_filters_rejected(params):
    model = GroupModel if params[0][0].startswith("members") else CotisationModel
    if params[0][0] == "password_hash":
        model = UserModel
    with pytest.raises(ValidationError):
        parse_filters(model, params)


def test_select_and_sort():
    assert parse_select(CotisationModel, "amount, month") == ("amount", "month")
    assert parse_select(CotisationModel, None) is None
    with pytest.raises(ValidationError):
        parse_select(UserModel, "email,password_hash")

    assert parse_sort(CotisationModel, None) == [("created_at", True)]
    assert parse_sort(CotisationModel, "-year,month") == [("year", True), ("month", False)]
    with pytest.raises(ValidationError):
        parse_sort(CotisationModel, "-nope")


def test_paging_defaults_and_pagination_links():
    query = ListQuery.from_params(TransactionModel, [("page", "0"), ("limit", "abc")])
    assert (query.page, query.limit, query.skip) == (1, 10, 0)

    query = ListQuery.from_params(TransactionModel, [("page", "3"), ("limit", "5")])
    assert query.skip == 10
    assert query.pagination(12) == {"prev": {"page": 2, "limit": 5}}

    query = ListQuery.from_params(TransactionModel, [("page", "2"), ("limit", "5")])
    assert query.pagination(12) == {"next": {"page": 3, "limit": 5}, "prev": {"page": 1, "limit": 5}}


def test_public_fields_hide_credentials_and_name_references():
    assert "password_hash" not in public_fields(UserModel)
    assert "reset_password_token" not in public_fields(UserModel)
    fields = public_fields(TransactionModel)
    assert {"cotisation", "member", "group", "created_by"} <= set(fields)
    assert "member_id" not in fields
    assert public_fields(GroupModel)[-1] == "members"


def test_serialize_expands_requested_references():
    member = UserModel(id=3, name="Jane", surname="Doe", email="jane@example.com", phone="0612345678", address="x")
    dues = CotisationModel(id=9, member_id=3, amount=50.0, month=Month.MARCH, year=2025, status=CotisationStatus.PENDING)
    dues.member = member

    out = serialize(dues, fields=("amount", "member"))
    assert out == {"id": 9, "amount": 50.0, "member": 3}

    out = serialize(dues, populate=[Populate("member", ("name", "email"))])
    assert out["member"] == {"id": 3, "name": "Jane", "email": "jane@example.com"}
    assert out["month"] == "March"


# ----------------------------------------------------------------------------
# Through the API
# ----------------------------------------------------------------------------
def test_pagination_over_http(client, admin):
    for i in range(12):
        resp = client.post(f"{API}/transactions", headers=admin.headers, json=transaction_payload(amount=i + 1))
        assert resp.status_code == 201

    resp = client.get(f"{API}/transactions", headers=admin.headers, params={"limit": 5, "page": 3})
    body = resp.json()
    assert body["count"] == 2
    assert body["pagination"] == {"prev": {"page": 2, "limit": 5}}

    resp = client.get(f"{API}/transactions", headers=admin.headers, params={"limit": 5})
    body = resp.json()
    assert body["count"] == 5
    assert body["pagination"] == {"next": {"page": 2, "limit": 5}}
    # Newest first by default
    assert [t["amount"] for t in body["data"]] == [12, 11, 10, 9, 8]


def test_filter_select_and_sort_over_http(client, admin):
    for amount in (5, 50, 150):
        client.post(f"{API}/transactions", headers=admin.headers, json=transaction_payload(amount=amount))
    client.post(f"{API}/transactions", headers=admin.headers, json=transaction_payload(description="gte budget"))

    resp = client.get(
        f"{API}/transactions",
        headers=admin.headers,
        params={"amount[gte]": "50", "select": "amount,type", "sort": "amount"},
    )
    assert resp.status_code == 200
    assert resp.json()["data"] == [
        {"id": 2, "amount": 50, "type": "Outflow"},
        {"id": 3, "amount": 150, "type": "Outflow"},
    ]

    resp = client.get(f"{API}/transactions", headers=admin.headers, params={"description": "gte budget"})
    assert [t["description"] for t in resp.json()["data"]] == ["gte budget"]

    resp = client.get(f"{API}/transactions", headers=admin.headers, params={"amount[between]": "1,2"})
    assert resp.status_code == 400
    assert resp.json()["success"] is False
