import time

import anyio
import httpx
import pytest

import database
import main


def upload(client, xml, file_name="output.xml"):
    return client.post("/api/upload", files={"file": (file_name, xml.encode("utf-8"), "application/xml")})


def test_root(client):
    assert client.get("/").status_code == 200


def test_upload_multipart(client, store, rf7_xml):
    response = upload(client, rf7_xml)
    assert response.status_code == 200
    body = response.json()
    assert body == {
        "id": body["id"],
        "name": "Acceptance",
        "total": 3,
        "passed": 1,
        "failed": 1,
        "skipped": 1,
        "status": "COMPLETED",
        "suitesCount": 2,
    }

    (doc,) = store.docs
    assert str(doc["_id"]) == body["id"]
    assert doc["source"] == "output.xml"
    assert doc["host"] == "ci-runner-01"
    assert [s["name"] for s in doc["suites"]] == ["Login", "Cart"]


def test_upload_raw_body(client, store, rf6_xml):
    response = client.post(
        "/api/upload?name=nightly.xml",
        content=rf6_xml.encode("utf-8"),
        headers={"Content-Type": "application/xml", "X-Uploaded-By": "qa@example.com"},
    )
    assert response.status_code == 200
    assert response.json()["suitesCount"] == 1

    (doc,) = store.docs
    assert doc["source"] == "nightly.xml"
    assert doc["uploaded_by"] == "qa@example.com"


def test_upload_rejects_non_robot_file(client, store):
    response = upload(client, '<testsuite name="pytest" tests="1"/>', "junit.xml")
    assert response.status_code == 400
    assert "Robot Framework" in response.json()["detail"]
    assert store.docs == []


def test_upload_rejects_malformed_xml(client, store):
    response = upload(client, '<robot generator="Robot 7.0"><suite name="S">')
    assert response.status_code == 400
    assert store.docs == []


def test_upload_without_file_field(client):
    response = client.post("/api/upload", data={"other": "x"}, files={"attachment": ("a.txt", b"x")})
    assert response.status_code == 400


def test_upload_storage_failure_is_server_error(client, monkeypatch, rf7_xml):
    def broken_insert(doc):
        raise RuntimeError("write conflict")

    monkeypatch.setattr(main, "insert_run", broken_insert)
    response = upload(client, rf7_xml)
    assert response.status_code == 500
    assert response.json()["detail"] == "write conflict"


def test_upload_without_database(client, monkeypatch, rf7_xml):
    monkeypatch.setattr(main, "insert_run", database.insert_run)
    monkeypatch.setattr(database, "db", None)
    response = upload(client, rf7_xml)
    assert response.status_code == 503


def test_list_and_detail(client, rf6_xml, rf7_xml):
    rf6_id = upload(client, rf6_xml).json()["id"]
    rf7_id = upload(client, rf7_xml).json()["id"]

    runs = client.get("/api/runs").json()
    assert [r["id"] for r in runs] == [rf7_id, rf6_id]
    assert "suites" not in runs[0]
    assert runs[0]["startedAt"].startswith("2024-03-05T10:00:00")

    detail = client.get(f"/api/runs/{rf7_id}").json()
    assert detail["host"] == "ci-runner-01"
    assert detail["endedAt"].startswith("2024-03-05T10:00:05")
    test = detail["suites"][0]["tests"][0]
    assert test["tags"] == ["smoke", "login"]
    assert test["metadata"] == {}


def test_detail_errors(client):
    assert client.get("/api/runs/not-an-id").status_code == 400
    assert client.get("/api/runs/65f0c0ffee0000000000beef").status_code == 404


def test_trends(client, rf6_xml, rf7_xml):
    upload(client, rf6_xml)
    upload(client, rf7_xml)

    body = client.get("/api/dashboard/trends?days=30").json()
    assert body["trend"] == [{
        "date": "2024-03-05",
        "passRate": 33.3,
        "total": 3,
        "passed": 1,
        "failed": 1,
        "skipped": 1,
        "runCount": 1,
    }]
    assert body["summary"] == {"total": 3, "passed": 1, "failed": 1, "skipped": 1, "runs": 1, "passRate": 33.3}


def test_trends_empty_window(client):
    body = client.get("/api/dashboard/trends").json()
    assert body["trend"] == []
    assert body["summary"]["passRate"] == 0


def test_suites_all_time_and_windowed(client, rf6_xml, rf7_xml):
    upload(client, rf6_xml)
    upload(client, rf7_xml)

    suites = client.get("/api/dashboard/suites").json()["suites"]
    assert [s["name"] for s in suites] == ["Regression", "Login", "Cart"]
    login = suites[1]
    assert login["runCount"] == 1
    assert login["totalTests"] == 2
    assert login["passRate"] == 50.0
    assert login["avgDuration"] == 2100

    windowed = client.get("/api/dashboard/suites?days=30").json()["suites"]
    assert [s["name"] for s in windowed] == ["Login", "Cart"]


def test_hosts(client, rf6_xml, rf7_xml):
    upload(client, rf6_xml)
    upload(client, rf7_xml)

    body = client.get("/api/dashboard/hosts?days=30").json()
    assert body["dates"][0] == "2024-02-19"
    assert body["dates"][-1] == "2024-03-20"
    assert len(body["dates"]) == 31

    (row,) = body["heatmap"]
    assert row["id"] == "ci-runner-01"
    cells = {c["x"]: c["y"] for c in row["data"]}
    assert cells["2024-03-05"] == 33
    assert cells["2024-03-04"] == -1

    (summary,) = body["summaries"]
    assert summary["host"] == "ci-runner-01"
    assert summary["totalRuns"] == 1
    assert summary["passRate"] == 33.3
    assert summary["lastRun"].startswith("2024-03-05T10:00:00")


def test_dashboard(client, rf6_xml, rf7_xml):
    upload(client, rf6_xml)
    upload(client, rf7_xml)

    body = client.get("/api/dashboard").json()
    assert body["totalRuns"] == 2
    assert body["totalTests"] == 6
    assert body["totalPassed"] == 2
    assert body["avgPassRate"] == 33.3
    assert [r["name"] for r in body["recentRuns"]] == ["Acceptance", "Regression"]
    assert body["dailyTrend"] == [{"date": "2024-03-05", "passRate": 33.3, "total": 3}]
    assert {s["name"] for s in body["suiteBreakdown"]} == {"Regression", "Login", "Cart"}


def test_negative_days_rejected(client):
    assert client.get("/api/dashboard/hosts?days=-1").status_code == 422


@pytest.mark.parametrize("path", [
    "/api/dashboard",
    "/api/dashboard/trends",
    "/api/dashboard/suites",
    "/api/dashboard/hosts",
])
def test_oversized_days_rejected(client, path):
    assert client.get(f"{path}?days=1000000").status_code == 422
    assert client.get(f"{path}?days={main.MAX_DAYS}").status_code == 200


def test_database_check_without_database(client, monkeypatch):
    monkeypatch.setattr(main, "db", None)
    body = client.get("/test").json()
    assert body["backend"] == "✅ Running"
    assert body["database"] == "⚠️  Available but not initialized"
    assert body["connection_status"] == "Not Connected"
    assert body["collections"] == []


def test_upload_does_not_block_other_requests(store, monkeypatch, rf7_xml):
    def slow_insert(doc):
        time.sleep(1.0)
        return store.insert_run(doc)

    monkeypatch.setattr(main, "insert_run", slow_insert)
    results = {}

    async def exercise():
        transport = httpx.ASGITransport(app=main.app)
        async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as ac:
            async def do_upload():
                results["upload"] = await ac.post(
                    "/api/upload", files={"file": ("output.xml", rf7_xml.encode("utf-8"), "application/xml")}
                )

            async def do_root():
                await anyio.sleep(0.2)
                started = time.perf_counter()
                results["root"] = await ac.get("/")
                results["waited"] = time.perf_counter() - started

            async with anyio.create_task_group() as tg:
                tg.start_soon(do_upload)
                tg.start_soon(do_root)

    anyio.run(exercise)

    assert results["upload"].status_code == 200
    assert results["root"].status_code == 200
    assert results["waited"] < 0.5
