from datetime import timedelta

from db import get_lifecycle
from errors import StoreError
from lifecycle import LifecycleEngine
from main import app
from models import utcnow
from store import SqlStore


def _register(client, email, role, name="Test User", password="s3cret-pass"):
    resp = client.post(
        "/register",
        json={"email": email, "name": name, "password": password, "role": role},
    )
    assert resp.status_code == 200, resp.text
    return resp.json()


def _listing_payload(**overrides):
    payload = {
        "title": "Corporate lunch surplus",
        "description": "Wraps and salads",
        "quantity": 10,
        "unit": "portions",
        "event_type": "corporate",
        "location": "Tower B lobby",
        "expiry_time": (utcnow() + timedelta(hours=1)).isoformat(),
    }
    payload.update(overrides)
    return payload


# --------------------------------------------------
# Identity
# --------------------------------------------------


def test_register_login_me_logout(client):
    _register(client, "donna@caterers.com", "donor", name="Donna")

    me = client.get("/me")
    assert me.status_code == 200
    assert me.json()["role"] == "donor"
    assert me.json()["name"] == "Donna"

    client.post("/logout")
    client.cookies.clear()
    assert client.get("/me").status_code == 401

    resp = client.post("/login", json={"email": "donna@caterers.com", "password": "s3cret-pass"})
    assert resp.status_code == 200
    assert resp.json()["role"] == "donor"
    assert client.get("/me").status_code == 200


def test_login_with_wrong_password(client):
    _register(client, "donna@caterers.com", "donor")
    client.cookies.clear()

    resp = client.post("/login", json={"email": "donna@caterers.com", "password": "nope"})

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Invalid email or password"


def test_register_from_form_sets_cookie(client):
    resp = client.post(
        "/register",
        data={"email": "rosa@shelter.org", "name": "Rosa", "password": "pw", "role": "recipient"},
        follow_redirects=False,
    )

    assert resp.status_code == 303
    assert "session" in resp.cookies


def test_duplicate_email_rejected(client):
    _register(client, "donna@caterers.com", "donor")

    resp = client.post(
        "/register",
        json={"email": "donna@caterers.com", "name": "Again", "password": "x", "role": "recipient"},
    )

    assert resp.status_code == 400


def test_register_rejects_unknown_role(client):
    resp = client.post(
        "/register",
        json={"email": "admin@caterers.com", "name": "Admin", "password": "x", "role": "admin"},
    )

    assert resp.status_code == 400


def test_register_rejects_json_array(client):
    resp = client.post("/register", json=["donna@caterers.com", "Donna", "pw", "donor"])

    assert resp.status_code == 400
    assert resp.json()["detail"] == "Request body must be a JSON object"


def test_tampered_cookie_is_unauthenticated(client):
    client.cookies.set("session", "not-a-real-token")

    assert client.get("/me").status_code == 401


# --------------------------------------------------
# Listings
# --------------------------------------------------


def test_donor_creates_listing(client):
    _register(client, "donna@caterers.com", "donor")

    resp = client.post("/listings/", json=_listing_payload())

    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["status"] == "available"
    assert body["quantity"] == 10


def test_listing_from_form_data(client):
    _register(client, "donna@caterers.com", "donor")

    resp = client.post("/listings/", data=_listing_payload(quantity="4", event_type="party"))

    assert resp.status_code == 201, resp.text
    assert resp.json()["event_type"] == "party"


def test_recipient_cannot_create_listing(client):
    _register(client, "rosa@shelter.org", "recipient")

    resp = client.post("/listings/", json=_listing_payload())

    assert resp.status_code == 403
    assert resp.json()["kind"] == "authorization"


def test_negative_quantity_is_validation_error(client):
    _register(client, "donna@caterers.com", "donor")

    resp = client.post("/listings/", json=_listing_payload(quantity="-5"))

    assert resp.status_code == 400
    assert resp.json()["kind"] == "validation"
    assert client.get("/listings/").json() == []


def test_past_expiry_is_validation_error(client):
    _register(client, "donna@caterers.com", "donor")

    resp = client.post(
        "/listings/",
        json=_listing_payload(expiry_time=(utcnow() - timedelta(hours=1)).isoformat()),
    )

    assert resp.status_code == 400
    assert resp.json()["kind"] == "validation"


def test_malformed_listing_body_is_validation_error(client):
    _register(client, "donna@caterers.com", "donor")

    broken = client.post(
        "/listings/",
        content=b'{"title": "Wraps",',
        headers={"content-type": "application/json"},
    )
    not_an_object = client.post("/listings/", json=["Wraps", 10])

    assert broken.status_code == 400
    assert broken.json()["kind"] == "validation"
    assert not_an_object.status_code == 400
    assert not_an_object.json()["kind"] == "validation"
    assert client.get("/listings/").json() == []


def test_get_missing_listing(client):
    resp = client.get("/listings/999")

    assert resp.status_code == 404
    assert resp.json() == {"kind": "not_found", "detail": "Listing not found."}


def test_browse_mine_and_locations(make_client):
    donor = make_client()
    recipient = make_client()
    _register(donor, "donna@caterers.com", "donor")
    _register(recipient, "rosa@shelter.org", "recipient")

    first = donor.post("/listings/", json=_listing_payload(title="Wraps", location="Tower B")).json()
    donor.post(
        "/listings/",
        json=_listing_payload(title="Cake", description="Chocolate sponge", quantity=30, location="Annex"),
    )
    recipient.post("/requests/", json={"listing_id": first["id"], "requested_quantity": 2})

    browse = recipient.get("/listings/browse", params={"sort": "quantity_high"})
    assert browse.status_code == 200
    assert [l["title"] for l in browse.json()] == ["Cake", "Wraps"]
    assert browse.json()[1]["request_count"] == 1
    assert browse.json()[1]["remaining_quantity"] == 10

    found = recipient.get("/listings/browse", params={"search": "wrap"}).json()
    assert [l["id"] for l in found] == [first["id"]]
    assert recipient.get("/listings/browse", params={"sort": "oldest"}).status_code == 400
    assert recipient.get("/listings/locations").json() == ["Annex", "Tower B"]

    mine = donor.get("/listings/mine").json()
    assert {l["title"] for l in mine} == {"Wraps", "Cake"}

    refused = recipient.get("/listings/mine")
    assert refused.status_code == 403
    assert refused.json()["kind"] == "authorization"


# --------------------------------------------------
# Requests and the full workflow
# --------------------------------------------------


def test_donor_cannot_request_food(client):
    _register(client, "donna@caterers.com", "donor")
    listing = client.post("/listings/", json=_listing_payload()).json()

    resp = client.post("/requests/", json={"listing_id": listing["id"], "requested_quantity": 1})

    assert resp.status_code == 403
    assert resp.json()["detail"] == "Donors cannot request food."


def test_anonymous_request_is_refused(make_client):
    donor = make_client()
    _register(donor, "donna@caterers.com", "donor")
    listing = donor.post("/listings/", json=_listing_payload()).json()

    resp = make_client().post("/requests/", json={"listing_id": listing["id"], "requested_quantity": 1})

    assert resp.status_code == 403


def test_zero_quantity_request_is_refused(make_client):
    donor = make_client()
    recipient = make_client()
    _register(donor, "donna@caterers.com", "donor")
    _register(recipient, "rosa@shelter.org", "recipient")
    listing = donor.post("/listings/", json=_listing_payload()).json()

    resp = recipient.post("/requests/", json={"listing_id": listing["id"], "requested_quantity": 0})

    assert resp.status_code == 400
    assert resp.json()["kind"] == "validation"


def test_non_integer_request_quantity_is_refused(make_client):
    donor = make_client()
    recipient = make_client()
    _register(donor, "donna@caterers.com", "donor")
    _register(recipient, "rosa@shelter.org", "recipient")
    listing = donor.post("/listings/", json=_listing_payload()).json()

    for quantity in (True, 2.5):
        resp = recipient.post("/requests/", json={"listing_id": listing["id"], "requested_quantity": quantity})
        assert resp.status_code == 400, quantity
        assert resp.json()["kind"] == "validation"

    assert donor.get("/requests/", params={"listing_id": listing["id"]}).json() == []


def test_request_workflow(make_client):
    donor = make_client()
    r1 = make_client()
    r2 = make_client()
    _register(donor, "donna@caterers.com", "donor")
    _register(r1, "rosa@shelter.org", "recipient")
    _register(r2, "raj@pantry.org", "recipient")

    listing = donor.post("/listings/", json=_listing_payload(quantity=10)).json()
    req1 = r1.post("/requests/", json={"listing_id": listing["id"], "requested_quantity": 4})
    req2 = r2.post("/requests/", json={"listing_id": listing["id"], "requested_quantity": "8"})
    assert req1.status_code == 201
    assert req2.status_code == 201
    req1, req2 = req1.json(), req2.json()
    assert req1["status"] == req2["status"] == "pending"

    incoming = donor.get("/requests/incoming").json()
    assert {r["id"] for r in incoming} == {req1["id"], req2["id"]}
    assert r1.get("/requests/incoming").status_code == 403

    # Recipients cannot decide on requests.
    assert r2.patch(f"/requests/{req2['id']}", json={"status": "accepted"}).status_code == 403

    accepted = donor.patch(f"/requests/{req1['id']}", json={"status": "accepted"})
    assert accepted.status_code == 200
    assert accepted.json()["status"] == "accepted"
    assert donor.patch(f"/requests/{req1['id']}", json={"status": "accepted"}).status_code == 200

    assert donor.get(f"/requests/{req2['id']}").json()["status"] == "pending"
    assert donor.get(f"/listings/{listing['id']}").json()["status"] == "reserved"

    blocked = donor.delete(f"/listings/{listing['id']}")
    assert blocked.status_code == 409
    assert blocked.json()["kind"] == "conflict"

    r1_id = r1.get("/me").json()["id"]
    mine = r1.get("/requests/", params={"recipient_id": r1_id})
    assert [r["id"] for r in mine.json()] == [req1["id"]]

    completed = donor.post(f"/listings/{listing['id']}/complete")
    assert completed.status_code == 200
    assert completed.json()["status"] == "completed"


def test_reject_then_accept_conflicts(make_client):
    donor = make_client()
    recipient = make_client()
    _register(donor, "donna@caterers.com", "donor")
    _register(recipient, "rosa@shelter.org", "recipient")
    listing = donor.post("/listings/", json=_listing_payload()).json()
    req = recipient.post("/requests/", json={"listing_id": listing["id"], "requested_quantity": 2}).json()

    assert donor.patch(f"/requests/{req['id']}", json={"status": "rejected"}).json()["status"] == "rejected"
    resp = donor.patch(f"/requests/{req['id']}", json={"status": "accepted"})

    assert resp.status_code == 409


def test_invalid_status_value(make_client):
    donor = make_client()
    _register(donor, "donna@caterers.com", "donor")

    resp = donor.patch("/requests/1", json={"status": "pending"})

    assert resp.status_code == 422


def test_delete_cascades_open_requests(make_client):
    donor = make_client()
    recipient = make_client()
    _register(donor, "donna@caterers.com", "donor")
    _register(recipient, "rosa@shelter.org", "recipient")
    listing = donor.post("/listings/", json=_listing_payload()).json()
    recipient.post("/requests/", json={"listing_id": listing["id"], "requested_quantity": 2})

    resp = donor.delete(f"/listings/{listing['id']}")

    assert resp.status_code == 204
    assert donor.get(f"/listings/{listing['id']}").status_code == 404
    assert donor.get("/requests/", params={"listing_id": listing["id"]}).json() == []


def test_delete_requires_login(client):
    assert client.delete("/listings/1").status_code == 401


class _ListingDeleteFails(SqlStore):
    def delete_listing(self, listing):
        raise StoreError("Database error during delete listing", step="delete_listing")


def test_delete_reports_partial_failure(make_client, session):
    donor = make_client()
    recipient = make_client()
    _register(donor, "donna@caterers.com", "donor")
    _register(recipient, "rosa@shelter.org", "recipient")
    listing = donor.post("/listings/", json=_listing_payload()).json()
    recipient.post("/requests/", json={"listing_id": listing["id"], "requested_quantity": 2})

    app.dependency_overrides[get_lifecycle] = lambda: LifecycleEngine(_ListingDeleteFails(session))
    resp = donor.delete(f"/listings/{listing['id']}")

    assert resp.status_code == 500
    body = resp.json()
    assert body["kind"] == "partial_failure"
    assert body["step"] == "delete_listing"
    assert body["requests_deleted"] == 1
    assert donor.get(f"/listings/{listing['id']}").status_code == 200
    assert donor.get("/requests/", params={"listing_id": listing["id"]}).json() == []
