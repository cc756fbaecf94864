from __future__ import annotations

import json

from conftest import place, line


def _staff(rid):
    return {"X-Restaurant-ID": str(rid)}


def _order_body(menu, table_no, lines):
    return {
        "restaurant_id": menu["rid"],
        "table_no": table_no,
        "items": [ln.model_dump() for ln in lines],
        "total": sum(ln.price * ln.quantity for ln in lines),
    }


def test_health_and_request_id(client):
    r = client.get("/health", headers={"X-Request-ID": "abc-123"})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["service"] == "Tableside Orders API"
    assert body["checks"] == {"db": "ok"}
    assert r.headers["X-Request-ID"] == "abc-123"

    r2 = client.get("/health")
    assert r2.headers.get("X-Request-ID")


def test_full_table_flow_over_http(client, menu, notifier):
    rid = menu["rid"]
    r = client.post("/orders", json=_order_body(menu, 5, [line(menu["tea"], 2)]))
    assert r.status_code == 201, r.text
    a = r.json()
    assert a["status"] == "live"
    assert a["items"][0]["category"] == "Beverages"

    r = client.post("/orders", json=_order_body(menu, 5, [line(menu["tea"]), line(menu["samosa"])]))
    assert r.status_code == 201, r.text
    b = r.json()

    live = client.get("/orders", params={"status": "live"}, headers=_staff(rid)).json()
    assert {o["id"] for o in live} == {a["id"], b["id"]}

    for oid in (a["id"], b["id"]):
        r = client.post(f"/orders/{oid}/recurring", headers=_staff(rid))
        assert r.status_code == 200, r.text
        assert r.json()["status"] == "recurring"

    bill = {"discount_percent": 10, "service_charge": 10, "gst_rate": 5, "gst_type": "exclusive", "message": "Visit again"}
    pv = client.post("/tables/5/preview", json=bill, headers=_staff(rid))
    assert pv.status_code == 200, pv.text
    assert pv.json()["display"]["total"] == "80.88"
    assert [g["quantity"] for g in pv.json()["grouped_items"]] == [3, 1]

    st = client.post("/tables/5/settle", json=bill, headers=_staff(rid))
    assert st.status_code == 200, st.text
    settled = st.json()
    assert settled["display"] == pv.json()["display"]
    assert settled["display"]["gst_amount"] == "3.38"
    assert settled["table_no"] == 5

    rp = client.get(f"/orders/{b['id']}/receipt", headers=_staff(rid))
    assert rp.status_code == 200
    assert rp.json()["receipt"] == settled["receipt"]
    assert rp.json()["display"]["total"] == "80.88"

    txt = client.get(f"/orders/{a['id']}/receipt.txt", headers=_staff(rid))
    assert txt.status_code == 200
    assert "Chai Point" in txt.text
    assert "Table 5" in txt.text
    assert "Grand Total" in txt.text and "80.88" in txt.text
    assert "Discount (10%)" in txt.text
    assert "Visit again" in txt.text

    rows = client.get("/orders/export", headers=_staff(rid)).json()["rows"]
    assert [r["item"] for r in rows] == ["Tea", "Samosa"]

    past = client.get("/orders", params={"status": "past"}, headers=_staff(rid)).json()
    assert len(past) == 2
    assert all(o["receipt"]["settlement_id"] == settled["receipt"]["settlement_id"] for o in past)

    assert notifier.names() == ["newOrder", "newOrder", "orderUpdated", "orderUpdated", "ordersCompleted"]


def test_staff_routes_need_a_restaurant_session(client, menu):
    assert client.get("/orders").status_code == 401
    assert client.post("/submit-gate/toggle").status_code == 401
    assert client.get("/orders", headers={"X-Restaurant-ID": "0"}).status_code == 401


def test_closed_gate_rejects_new_orders(client, menu):
    rid = menu["rid"]
    r = client.post("/submit-gate/toggle", headers=_staff(rid))
    assert r.json() == {"restaurant_id": rid, "submit_disabled": True}
    assert client.get(f"/restaurants/{rid}/submit-gate").json()["submit_disabled"] is True

    r = client.post("/orders", json=_order_body(menu, 1, [line(menu["tea"])]))
    assert r.status_code == 409
    assert r.json()["detail"] == "order submission is currently disabled"

    client.post("/submit-gate/toggle", headers=_staff(rid))
    assert client.post("/orders", json=_order_body(menu, 1, [line(menu["tea"])])).status_code == 201


def test_price_mismatch_is_a_400_with_field_errors(client, menu):
    body = _order_body(menu, 2, [line(menu["tea"], 1, price=12.0)])
    r = client.post("/orders", json=body)
    assert r.status_code == 400
    detail = r.json()["detail"]
    assert detail["errors"][0]["field"] == "items[0].price"


def test_foreign_order_is_forbidden(client, session, menu, notifier):
    o = place(session, menu["rid"], 2, [line(menu["tea"])], notifier)
    r = client.post(f"/orders/{o.id}/recurring", headers=_staff(menu["other_rid"]))
    assert r.status_code == 403
    assert r.json() == {"detail": "forbidden"}


def test_invalid_transition_and_missing_receipt(client, session, menu, notifier):
    o = place(session, menu["rid"], 2, [line(menu["tea"])], notifier)
    assert client.post(f"/orders/{o.id}/reopen", headers=_staff(menu["rid"])).status_code == 409
    assert client.get(f"/orders/{o.id}/receipt", headers=_staff(menu["rid"])).status_code == 404
    assert client.post("/tables/2/settle", json={}, headers=_staff(menu["rid"])).status_code == 409


def test_bill_inputs_are_bounded(client, menu):
    r = client.post("/tables/5/preview", json={"discount_percent": 150}, headers=_staff(menu["rid"]))
    assert r.status_code == 422
    r = client.post("/tables/5/preview", json={"gst_type": "weird"}, headers=_staff(menu["rid"]))
    assert r.status_code == 422


def test_delete_over_http(client, session, menu, notifier):
    o = place(session, menu["rid"], 2, [line(menu["tea"])], notifier)
    oid = o.id
    r = client.delete(f"/orders/{oid}", headers=_staff(menu["rid"]))
    assert r.json() == {"id": oid, "deleted": True}
    assert client.delete(f"/orders/{oid}", headers=_staff(menu["rid"])).status_code == 404


def test_menu_management(client, menu):
    rid = menu["rid"]
    r = client.post(
        "/menu",
        json={"category": "Mains", "name": "Dal", "is_veg": True, "price": 120, "has_half": True, "half_price": 70},
        headers=_staff(rid),
    )
    assert r.status_code == 200, r.text
    item = r.json()

    names = [m["name"] for m in client.get(f"/restaurants/{rid}/menu").json()]
    assert "Dal" in names and "Pakora" not in names

    r = client.post(f"/menu/{item['id']}/enabled", json={"enabled": False}, headers=_staff(rid))
    assert r.json()["is_enabled"] is False
    assert "Dal" not in [m["name"] for m in client.get(f"/restaurants/{rid}/menu").json()]

    r = client.post(f"/menu/{item['id']}/enabled", json={"enabled": True}, headers=_staff(menu["other_rid"]))
    assert r.status_code == 403


def test_create_restaurant(client):
    r = client.post("/restaurants", json={"name": "  Dosa Corner ", "gst_number": "33AAAAA0000A1Z5"})
    assert r.status_code == 200
    assert r.json()["name"] == "Dosa Corner"
    assert r.json()["submit_disabled"] is False
    assert client.post("/restaurants", json={"name": " "}).status_code == 400


def test_nan_price_is_rejected_before_reaching_the_menu_check(client, menu):
    body = _order_body(menu, 2, [line(menu["tea"])])
    body["items"][0]["price"] = float("nan")
    raw = json.dumps(body)
    assert "NaN" in raw

    r = client.post("/orders", content=raw, headers={"Content-Type": "application/json"})

    assert r.status_code == 422
    assert r.json()["detail"][0]["loc"][-1] == "price"
    assert "input" not in r.json()["detail"][0]


def test_staff_order_route_ignores_the_gate(client, menu, notifier):
    rid = menu["rid"]
    client.post("/submit-gate/toggle", headers=_staff(rid))
    body = _order_body(menu, 8, [line(menu["samosa"], 2)])
    del body["restaurant_id"]

    assert client.post("/staff/orders", json=body).status_code == 401
    r = client.post("/staff/orders", json=body, headers=_staff(rid))

    assert r.status_code == 201, r.text
    assert r.json()["restaurant_id"] == rid
    assert r.json()["table_no"] == 8
    assert notifier.names()[-1] == "newOrder"


def test_menu_update_and_delete_routes(client, menu):
    rid, curry_id = menu["rid"], menu["curry"].id
    payload = {"category": "Mains", "name": "Butter Chicken", "is_veg": False, "price": 340, "has_half": True, "half_price": 190}

    r = client.put(f"/menu/{curry_id}", json=payload, headers=_staff(rid))
    assert r.status_code == 200, r.text
    assert r.json()["price"] == 340

    r = client.put(f"/menu/{curry_id}", json={**payload, "half_price": None}, headers=_staff(rid))
    assert r.status_code == 400

    assert client.delete(f"/menu/{curry_id}", headers=_staff(menu["other_rid"])).status_code == 403
    assert client.delete(f"/menu/{curry_id}", headers=_staff(rid)).json() == {"id": curry_id, "deleted": True}
    assert client.delete(f"/menu/{curry_id}", headers=_staff(rid)).status_code == 404


def test_export_period_parameters(client, menu):
    rid = menu["rid"]
    r = client.get("/orders/export", params={"year": 2025, "months": "3,4"}, headers=_staff(rid))
    assert r.status_code == 200
    assert r.json() == {"rows": []}

    r = client.get("/orders/export", params={"year": 2025, "months": "march"}, headers=_staff(rid))
    assert r.status_code == 400
    assert r.json()["detail"]["errors"][0]["field"] == "months"

    assert client.get("/orders/export", params={"months": "3"}, headers=_staff(rid)).status_code == 400
