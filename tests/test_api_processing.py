"""
Processing API tests.

Covers every route of /api/v1/processing:
    - methods: define, list, stages (incl. validation + duplicate code)
    - batches: create, list w/ filters + pagination, detail
    - progresses: list (all / per stage), advance
    - evaluations: record, list, summary
    - derived views: state, reconcile
    - error mapping: 404 not found, 409 conflicts w/ refresh_required, 422 validation
    - request guards: 415 on non-JSON bodies, JSON 404/405
"""

BASE = "/api/v1/processing"


def _define_method(client, code="WET", stages=("Drying", "Hulling", "Grading")):
    res = client.post(f"{BASE}/methods", json={
        "method_code": code, "name": "Washed", "stages": list(stages),
    })
    assert res.status_code == 201
    return res.get_json()


def _create_batch(client, method_id, **fields):
    body = {"method_id": method_id, "input_quantity": 100, "farmer_id": "farmer-1"}
    body.update(fields)
    res = client.post(f"{BASE}/batches", json=body)
    assert res.status_code == 201
    return res.get_json()


def _snapshot(client, batch_id):
    return client.get(f"{BASE}/batches/{batch_id}").get_json()["snapshot"]


def _advance(client, batch_id, day, snapshot=None, **fields):
    snap = snapshot or _snapshot(client, batch_id)
    body = {
        "expected_step_index": snap["step_index"],
        "expected_sequence": snap["sequence_no"],
        "progress_date": f"2024-01-{day:02d}T08:00:00Z",
        "output_quantity": 90,
    }
    body.update(fields)
    return client.post(f"{BASE}/batches/{batch_id}/advance", json=body)


def _evaluate(client, batch_id, **body):
    return client.post(f"{BASE}/batches/{batch_id}/evaluations", json=body)


def _seed(client):
    method = _define_method(client)
    batch = _create_batch(client, method["id"])
    return method, batch


def _seed_awaiting(client):
    method, batch = _seed(client)
    for day in (2, 4, 6):
        assert _advance(client, batch["id"], day).status_code == 201
    return method, batch


# ═════════════════════════════════════════════════════════════════════════════
# Methods
# ═════════════════════════════════════════════════════════════════════════════


class TestMethods:
    def test_define_returns_stages_in_order(self, client):
        data = _define_method(client)
        assert data["stage_count"] == 3
        assert [(s["order_index"], s["name"]) for s in data["stages"]] == [
            (1, "Drying"), (2, "Hulling"), (3, "Grading"),
        ]

    def test_define_with_stage_objects(self, client):
        res = client.post(f"{BASE}/methods", json={
            "method_code": "HON", "name": "Honey",
            "stages": [{"name": "Pulping", "stage_code": "PLP"}, "Drying"],
        })
        assert res.status_code == 201
        assert res.get_json()["stages"][0]["stage_code"] == "PLP"

    def test_list_methods(self, client):
        _define_method(client)
        _define_method(client, code="NAT", stages=["Sun drying"])
        res = client.get(f"{BASE}/methods")
        assert res.status_code == 200
        assert [m["method_code"] for m in res.get_json()] == ["WET", "NAT"]

    def test_list_stages(self, client):
        method = _define_method(client)
        res = client.get(f"{BASE}/methods/{method['id']}/stages")
        assert [s["name"] for s in res.get_json()] == ["Drying", "Hulling", "Grading"]

    def test_stages_of_unknown_method(self, client):
        res = client.get(f"{BASE}/methods/999/stages")
        assert res.status_code == 404
        assert res.get_json()["code"] == "ERR_NOT_FOUND"

    def test_duplicate_code(self, client):
        _define_method(client)
        res = client.post(f"{BASE}/methods", json={
            "method_code": "WET", "name": "Again", "stages": ["Drying"],
        })
        assert res.status_code == 422
        assert res.get_json()["details"] == {"method_code": "duplicate"}

    def test_duplicate_stage_names(self, client):
        res = client.post(f"{BASE}/methods", json={
            "method_code": "X", "name": "X", "stages": ["Drying", "drying"],
        })
        assert res.status_code == 422

    def test_missing_fields(self, client):
        res = client.post(f"{BASE}/methods", json={})
        assert res.status_code == 422
        assert set(res.get_json()["details"]) == {"method_code", "name", "stages"}


# ═════════════════════════════════════════════════════════════════════════════
# Batches
# ═════════════════════════════════════════════════════════════════════════════


class TestBatches:
    def test_create_generates_code(self, client):
        _, batch = _seed(client)
        assert batch["batch_code"] == "PB-0001"
        assert batch["status"] == "NotStarted"
        assert batch["method_name"] == "Washed"

    def test_create_invalid(self, client):
        method = _define_method(client)
        res = client.post(f"{BASE}/batches", json={
            "method_id": method["id"], "input_quantity": -1, "input_unit": "lb",
        })
        assert res.status_code == 422
        assert set(res.get_json()["details"]) == {"input_quantity", "input_unit"}

    def test_create_unknown_method(self, client):
        res = client.post(f"{BASE}/batches", json={"method_id": 42, "input_quantity": 5})
        assert res.status_code == 422
        assert res.get_json()["details"]["method_id"] == "unknown processing method"

    def test_duplicate_batch_code(self, client):
        method = _define_method(client)
        _create_batch(client, method["id"], batch_code="LOT-7")
        res = client.post(f"{BASE}/batches", json={
            "method_id": method["id"], "input_quantity": 5, "batch_code": "LOT-7",
        })
        assert res.status_code == 422

    def test_list_filters_and_paginates(self, client):
        method = _define_method(client)
        for farmer in ("a", "a", "b"):
            _create_batch(client, method["id"], farmer_id=farmer)

        data = client.get(f"{BASE}/batches?farmer_id=a").get_json()
        assert data["total"] == 2

        data = client.get(f"{BASE}/batches?limit=1&offset=1").get_json()
        assert data["total"] == 3
        assert len(data["items"]) == 1
        assert data["items"][0]["batch_code"] == "PB-0002"

        data = client.get(f"{BASE}/batches?status=NotStarted").get_json()
        assert data["total"] == 3

    def test_list_unknown_status(self, client):
        res = client.get(f"{BASE}/batches?status=Roasting")
        assert res.status_code == 422

    def test_detail_of_new_batch(self, client):
        _, batch = _seed(client)
        data = client.get(f"{BASE}/batches/{batch['id']}").get_json()
        assert data["snapshot"] == {"step_index": 0, "sequence_no": 0}
        assert data["final_step_index"] == 3
        assert data["next_stage"]["name"] == "Drying"
        assert data["latest_output_quantity"] is None
        assert data["retry"]["applicable"] is False

    def test_detail_not_found(self, client):
        res = client.get(f"{BASE}/batches/999")
        assert res.status_code == 404


# ═════════════════════════════════════════════════════════════════════════════
# Progress log
# ═════════════════════════════════════════════════════════════════════════════


class TestProgress:
    def test_advance_returns_progress_status_snapshot(self, client):
        _, batch = _seed(client)
        res = _advance(client, batch["id"], 2, parameters=[
            {"parameter_name": "moisture", "parameter_value": "12", "unit": "%"},
        ])
        assert res.status_code == 201
        data = res.get_json()
        assert data["progress"]["stage_name"] == "Drying"
        assert data["progress"]["parameters"][0]["parameter_name"] == "moisture"
        assert data["status"] == "InProgress"
        assert data["snapshot"] == {"step_index": 1, "sequence_no": 1}

    def test_list_progresses(self, client):
        method, batch = _seed_awaiting(client)
        data = client.get(f"{BASE}/batches/{batch['id']}/progresses").get_json()
        assert [p["step_index"] for p in data["items"]] == [1, 2, 3]
        assert data["snapshot"] == {"step_index": 3, "sequence_no": 3}

    def test_list_progresses_for_stage(self, client):
        method, batch = _seed_awaiting(client)
        hulling_id = client.get(f"{BASE}/methods/{method['id']}/stages").get_json()[1]["id"]
        data = client.get(f"{BASE}/batches/{batch['id']}/progresses?stage_id={hulling_id}").get_json()
        assert [p["stage_name"] for p in data["items"]] == ["Hulling"]

    def test_stale_snapshot_is_409_with_current(self, client):
        _, batch = _seed(client)
        old = _snapshot(client, batch["id"])
        assert _advance(client, batch["id"], 2, snapshot=old).status_code == 201

        res = _advance(client, batch["id"], 3, snapshot=old)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STALE_STEP"
        assert body["details"]["refresh_required"] is True
        assert body["details"]["current"] == {"step_index": 1, "sequence_no": 1}

    def test_awaiting_evaluation_is_409(self, client):
        _, batch = _seed_awaiting(client)
        res = _advance(client, batch["id"], 8)
        assert res.status_code == 409
        body = res.get_json()
        assert body["code"] == "ERR_CONFLICT_STATE"
        assert body["details"]["status"] == "AwaitingEvaluation"

    def test_invalid_payload_is_422(self, client):
        _, batch = _seed(client)
        res = _advance(client, batch["id"], 2, output_quantity=0)
        assert res.status_code == 422
        assert "output_quantity" in res.get_json()["details"]

    def test_missing_snapshot_is_422(self, client):
        _, batch = _seed(client)
        res = client.post(f"{BASE}/batches/{batch['id']}/advance", json={"output_quantity": 5})
        assert res.status_code == 422

    def test_advance_unknown_batch(self, client):
        res = client.post(f"{BASE}/batches/999/advance", json={
            "expected_step_index": 0, "expected_sequence": 0,
            "progress_date": "2024-01-02", "output_quantity": 5,
        })
        assert res.status_code == 404

    def test_non_json_body_is_415(self, client):
        _, batch = _seed(client)
        res = client.post(
            f"{BASE}/batches/{batch['id']}/advance",
            data="step=1", content_type="text/plain",
        )
        assert res.status_code == 415


# ═════════════════════════════════════════════════════════════════════════════
# Evaluations and derived views
# ═════════════════════════════════════════════════════════════════════════════


class TestEvaluations:
    def test_fail_then_resubmit_then_pass(self, client):
        _, batch = _seed_awaiting(client)
        bid = batch["id"]

        res = _evaluate(client, bid, result="Fail", evaluated_at="2024-01-10T08:00:00Z",
                        failure_detail={"order_index": 2, "details": "moisture too high"})
        assert res.status_code == 201
        assert res.get_json()["status"] == "Failed"
        assert res.get_json()["evaluation"]["failure_detail"]["stage_name"] == "Hulling"

        detail = client.get(f"{BASE}/batches/{bid}").get_json()
        assert detail["next_stage"]["name"] == "Hulling"
        assert detail["retry"]["applicable"] is True
        assert detail["retry"]["retried"] is False

        res = _advance(client, bid, 12)
        assert res.status_code == 201
        assert res.get_json()["progress"]["is_resubmission"] is True
        assert res.get_json()["status"] == "InProgress"

        recon = client.get(f"{BASE}/batches/{bid}/reconcile").get_json()
        assert recon["retried"] is True
        assert recon["match"] == "stage_id"
        assert recon["latest_entry"]["sequence_no"] == 4

        assert _advance(client, bid, 14).get_json()["status"] == "AwaitingEvaluation"
        res = _evaluate(client, bid, result="Pass")
        assert res.get_json()["status"] == "Completed"

        state = client.get(f"{BASE}/batches/{bid}/state").get_json()
        assert state == {"batch_id": bid, "status": "Completed"}

    def test_verdict_before_final_stage_is_409(self, client):
        _, batch = _seed(client)
        res = _evaluate(client, batch["id"], result="Pass")
        assert res.status_code == 409
        assert res.get_json()["details"]["refresh_required"] is True

    def test_fail_without_detail_is_422(self, client):
        _, batch = _seed_awaiting(client)
        res = _evaluate(client, batch["id"], result="Fail", comments="bad")
        assert res.status_code == 422

    def test_list_and_summary(self, client):
        _, batch = _seed_awaiting(client)
        _evaluate(client, batch["id"], result="Temporary", comments="looks ok so far")
        _evaluate(client, batch["id"], result="Pass")

        items = client.get(f"{BASE}/batches/{batch['id']}/evaluations").get_json()
        assert [e["evaluation_code"] for e in items] == ["EV-001", "EV-002"]

        summary = client.get(f"{BASE}/batches/{batch['id']}/evaluations/summary").get_json()
        assert summary["total"] == 2
        assert summary["counts"]["Pass"] == 1
        assert summary["status"] == "Completed"
        assert summary["open_failure"] is None

    def test_completed_rejects_advance(self, client):
        _, batch = _seed_awaiting(client)
        _evaluate(client, batch["id"], result="Pass")
        res = _advance(client, batch["id"], 12)
        assert res.status_code == 409
        assert res.get_json()["details"]["status"] == "Completed"

    def test_derived_views_not_found(self, client):
        assert client.get(f"{BASE}/batches/999/state").status_code == 404
        assert client.get(f"{BASE}/batches/999/reconcile").status_code == 404
        assert client.get(f"{BASE}/batches/999/evaluations").status_code == 404
        assert client.get(f"{BASE}/batches/999/progresses").status_code == 404


class TestAppErrors:
    def test_unknown_route_is_json_404(self, client):
        res = client.get("/api/v1/nope")
        assert res.status_code == 404
        assert res.get_json()["path"] == "/api/v1/nope"

    def test_wrong_method_is_json_405(self, client):
        res = client.delete(f"{BASE}/methods")
        assert res.status_code == 405
        assert res.get_json()["error"] == "Method not allowed"

    def test_request_id_header(self, client):
        res = client.get(f"{BASE}/methods", headers={"X-Request-ID": "abc123"})
        assert res.headers["X-Request-ID"] == "abc123"
