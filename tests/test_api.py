from datetime import timedelta
from io import BytesIO
from openpyxl import load_workbook


def _iso(dt):
    return dt.isoformat()


def _tool(client, name="Drill", units=3, condition="GOOD"):
    r = client.post("/tools", json={"name": name, "total_quantity": units, "condition": condition})
    assert r.status_code == 201
    return r.json()


def _material(client, name="Cement", current=100, threshold=20):
    r = client.post(
        "/materials",
        json={"name": name, "current_quantity": current, "threshold_quantity": threshold, "unit": "kg"},
    )
    assert r.status_code == 201
    return r.json()


def _borrow(client, clock, items, days=7):
    return client.post(
        "/borrowings",
        json={
            "borrower_name": "alice",
            "due_date": _iso(clock.now() + timedelta(days=days)),
            "purpose": "site work",
            "items": items,
        },
    )


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"ok": True}


def test_create_tool_and_list(client):
    tool = _tool(client, units=2)
    assert tool["display_id"] == "TL-001"
    assert tool["available_quantity"] == 2
    assert tool["condition"] == "GOOD"
    assert [u["unit_number"] for u in tool["units"]] == [1, 2]

    r = client.get("/tools?limit=50&offset=0&sort=name_asc")
    assert r.status_code == 200
    data = r.json()
    assert data["total"] == 1
    assert data["items"][0]["name"] == "Drill"

    r = client.get("/tools?sort=bogus")
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "BAD_REQUEST"


def test_scenario_a_over_http(client, clock):
    tool = _tool(client, units=3)
    u1, u2, _ = (u["id"] for u in tool["units"])

    r = _borrow(client, clock, [{"tool_id": tool["id"], "unit_ids": [u1, u2]}])
    assert r.status_code == 201
    assert r.json()["total_units"] == 2
    assert client.get(f"/tools/{tool['id']}").json()["available_quantity"] == 1

    r = _borrow(client, clock, [{"tool_id": tool["id"], "unit_ids": [u2]}])
    assert r.status_code == 400
    detail = r.json()["detail"]
    assert detail["code"] == "INSUFFICIENT_AVAILABILITY"
    assert "Available: 0, Requested: 1" in detail["message"]


def test_borrow_request_validation(client, clock):
    tool = _tool(client)
    r = _borrow(client, clock, [{"tool_id": tool["id"], "unit_ids": [1], "quantity": 1}])
    assert r.status_code == 422
    assert r.json()["code"] == "VALIDATION_ERROR"

    r = _borrow(client, clock, [])
    assert r.status_code == 422


def test_return_flow_and_unit_history(client, clock):
    tool = _tool(client, units=2)
    r = _borrow(client, clock, [{"tool_id": tool["id"], "quantity": 2}])
    borrowing = r.json()
    item = borrowing["items"][0]
    first, second = item["units"]

    r = client.post(
        f"/borrowings/{borrowing['id']}/return",
        json={"units": [{"borrowing_item_unit_id": first["id"], "return_condition": "POOR", "notes": "bent"}]},
    )
    assert r.status_code == 200
    body = r.json()
    assert body["all_returned"] is False
    assert body["borrowing"]["status"] == "ACTIVE"
    assert body["borrowing"]["units_returned"] == 1

    r = client.post(
        f"/borrowings/{borrowing['id']}/return",
        json={"items": [{"borrowing_item_id": item["id"], "return_condition": "GOOD"}], "notes": "done"},
    )
    body = r.json()
    assert body["all_returned"] is True
    assert body["borrowing"]["status"] == "COMPLETED"
    assert [u["unit_number"] for u in body["returned_units"]] == [second["unit_number"]]

    t = client.get(f"/tools/{tool['id']}").json()
    assert t["available_quantity"] == 2
    assert t["condition"] == "POOR"

    history = client.get(f"/tools/units/{first['tool_unit_id']}/history").json()
    assert len(history) == 1
    assert history[0]["return_condition"] == "POOR"
    assert history[0]["borrower_name"] == "alice"

    r = client.delete(f"/borrowings/{borrowing['id']}")
    assert r.status_code == 409
    assert r.json()["detail"]["code"] == "INVALID_STATE_TRANSITION"
    assert r.json()["detail"]["current"] == "COMPLETED"


def test_unit_patch_improves_condition(client):
    tool = _tool(client, units=1, condition="POOR")
    unit_id = tool["units"][0]["id"]

    r = client.patch(f"/tools/units/{unit_id}", json={"condition": "EXCELLENT", "actor_name": "ops"})
    assert r.status_code == 200
    assert r.json()["condition"] == "EXCELLENT"
    assert client.get(f"/tools/{tool['id']}").json()["condition"] == "EXCELLENT"


def test_scenario_c_over_http(client, clock):
    tool = _tool(client, units=1)
    r = _borrow(client, clock, [{"tool_id": tool["id"], "quantity": 1}], days=1)
    borrowing = r.json()

    clock.advance(days=2)
    r = client.get("/borrowings?status=OVERDUE")
    data = r.json()
    assert data["total"] == 1
    assert data["items"][0]["is_overdue"] is True
    assert data["items"][0]["days_overdue"] == 1

    r = client.post(
        f"/borrowings/{borrowing['id']}/extend",
        json={"new_due_date": _iso(clock.now() + timedelta(days=31)), "reason": "too long"},
    )
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "EXTENSION_TOO_LONG"

    r = client.post(
        f"/borrowings/{borrowing['id']}/extend",
        json={"new_due_date": _iso(clock.now() + timedelta(days=10)), "reason": "project delay"},
    )
    assert r.status_code == 200
    assert r.json()["status"] == "ACTIVE"
    assert r.json()["is_overdue"] is False


def test_cancel_over_http(client, clock):
    tool = _tool(client, units=2)
    borrowing = _borrow(client, clock, [{"tool_id": tool["id"], "quantity": 2}]).json()

    r = client.delete(f"/borrowings/{borrowing['id']}?reason=not needed")
    assert r.status_code == 200
    assert r.json()["status"] == "CANCELLED"
    assert r.json()["can_extend"] is False
    assert client.get(f"/tools/{tool['id']}").json()["available_quantity"] == 2


def test_scenario_b_and_d_over_http(client, clock):
    cement = _material(client)

    r = client.post(
        "/consumptions",
        json={"consumer_name": "carol", "purpose": "slab",
              "items": [{"material_id": cement["id"], "quantity": 90, "unit_price": 2}]},
    )
    assert r.status_code == 201
    consumed = r.json()
    assert consumed["total_value"] == 180.0

    m = client.get(f"/materials/{cement['id']}").json()
    assert m["current_quantity"] == 10.0
    assert m["stock_status"] == "low"

    r = client.post(
        "/consumptions",
        json={"consumer_name": "carol", "purpose": "slab",
              "items": [{"material_id": cement["id"], "quantity": 20}]},
    )
    assert r.status_code == 400
    assert "Available: 10, Requested: 20" in r.json()["detail"]["message"]

    clock.advance(hours=25)
    r = client.delete(f"/consumptions/{consumed['id']}")
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "REVERSAL_WINDOW_EXPIRED"
    assert client.get(f"/materials/{cement['id']}").json()["current_quantity"] == 10.0


def test_material_stock_movements(client):
    m = _material(client, current=10, threshold=5)

    r = client.patch(f"/materials/{m['id']}/stock", json={"action": "OUT", "quantity": 2.5})
    assert r.status_code == 200
    assert r.json()["current_quantity"] == 7.5

    r = client.patch(f"/materials/{m['id']}/stock", json={"action": "ADJUST", "quantity": 0})
    assert r.json()["stock_status"] == "out"

    r = client.patch(f"/materials/{m['id']}/stock", json={"action": "OUT", "quantity": 1})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "INSUFFICIENT_STOCK"

    r = client.patch(f"/materials/{m['id']}/stock", json={"action": "ADJUST", "quantity": 0})
    assert r.status_code == 400
    assert r.json()["detail"]["code"] == "NO_CHANGE"


def test_export_materials_xlsx(client):
    _material(client, name="Cement")
    _material(client, name="Sand", current=3)

    r = client.get("/materials/export.xlsx")
    assert r.status_code == 200
    assert "attachment" in r.headers["content-disposition"]

    ws = load_workbook(BytesIO(r.content)).active
    assert ws["A1"].value == "ID"
    assert ws["B2"].value == "Cement"
    assert ws["F3"].value == "low"


def test_activities_endpoint(client):
    tool = _tool(client)
    _material(client)

    r = client.get("/activities?entity_type=TOOL")
    data = r.json()
    assert data["total"] == 1
    assert data["items"][0]["entity_id"] == str(tool["id"])
    assert data["items"][0]["action"] == "CREATE"

    r = client.get("/activities?start=2024-03-01&end=2024-03-01")
    assert r.json()["total"] == 2

    r = client.get("/activities?start=2024-03-02")
    assert r.json()["total"] == 0

    r = client.get("/activities?tz=Not/AZone")
    assert r.status_code == 400


def test_not_found_body(client):
    r = client.get("/borrowings/999")
    assert r.status_code == 404
    assert r.json()["detail"]["code"] == "NOT_FOUND"


def test_categories(client):
    r = client.post("/categories", json={"name": "Power", "type": "TOOL"})
    assert r.status_code == 201
    r = client.post("/categories", json={"name": "Power", "type": "TOOL"})
    assert r.status_code == 409
    assert client.get("/categories?type=TOOL").json()[0]["name"] == "Power"


def test_unit_history_shows_overdue_status(client, clock):
    tool = _tool(client, units=1)
    borrowing = _borrow(client, clock, [{"tool_id": tool["id"], "quantity": 1}], days=1).json()
    unit_id = borrowing["items"][0]["units"][0]["tool_unit_id"]

    clock.advance(days=3)
    history = client.get(f"/tools/units/{unit_id}/history").json()
    assert [h["status"] for h in history] == ["OVERDUE"]
    assert history[0]["borrowing_id"] == borrowing["id"]
