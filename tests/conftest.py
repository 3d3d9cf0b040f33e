from datetime import datetime, timezone
from pathlib import Path

import pytest
from bson import ObjectId
from fastapi.testclient import TestClient

import main

DATA_DIR = Path(__file__).parent / "data"


@pytest.fixture
def rf7_xml() -> str:
    return (DATA_DIR / "output_rf7.xml").read_text(encoding="utf-8")


@pytest.fixture
def rf6_xml() -> str:
    return (DATA_DIR / "output_rf6.xml").read_text(encoding="utf-8")


class InMemoryRuns:
    """Stand-in for the MongoDB run helpers used by the API."""

    def __init__(self):
        self.docs = []

    def insert_run(self, run_doc):
        doc = dict(run_doc)
        doc["_id"] = ObjectId()
        self.docs.append(doc)
        return str(doc["_id"])

    def find_runs(self, since=None, newest_first=False, with_suites=True, with_tests=False):
        docs = [d for d in self.docs if since is None or d["started_at"] >= since]
        docs.sort(key=lambda d: d["started_at"], reverse=newest_first)
        result = []
        for d in docs:
            d = dict(d)
            if not with_suites:
                d.pop("suites", None)
            elif not with_tests:
                d["suites"] = [{k: v for k, v in s.items() if k != "tests"} for s in d["suites"]]
            result.append(d)
        return result

    def find_run(self, run_id):
        for d in self.docs:
            if str(d["_id"]) == run_id:
                return dict(d)
        return None


@pytest.fixture
def now() -> datetime:
    return datetime(2024, 3, 20, 15, 30, tzinfo=timezone.utc)


@pytest.fixture
def store(monkeypatch, now) -> InMemoryRuns:
    runs = InMemoryRuns()
    monkeypatch.setattr(main, "insert_run", runs.insert_run)
    monkeypatch.setattr(main, "find_runs", runs.find_runs)
    monkeypatch.setattr(main, "find_run", runs.find_run)
    monkeypatch.setattr(main, "utcnow", lambda: now)
    return runs


@pytest.fixture
def client(store) -> TestClient:
    return TestClient(main.app)
