import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.concurrency import run_in_threadpool

import rollups
from database import (
    DatabaseUnavailable,
    db,
    find_run,
    find_runs,
    insert_run,
    is_valid_id,
)
from schemas import (
    DashboardOverview,
    HostsResponse,
    SuitesResponse,
    TestRunRecord,
    TestRunSummary,
    TrendResponse,
    UploadResult,
)
from xml_parser import OutputXmlError, parse_output_xml

logger = logging.getLogger(__name__)

DEFAULT_DAYS = int(os.getenv("DASHBOARD_DEFAULT_DAYS", rollups.DEFAULT_WINDOW_DAYS))
MAX_DAYS = 3650

app = FastAPI(title="Robot Framework Test Report API")

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(DatabaseUnavailable)
def database_unavailable(request: Request, exc: DatabaseUnavailable):
    return JSONResponse(status_code=503, content={"detail": str(exc)})


# Utilities
def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def serialize_doc(doc: Dict[str, Any]) -> Dict[str, Any]:
    if not doc:
        return doc
    doc = dict(doc)
    if "_id" in doc:
        doc["id"] = str(doc.pop("_id"))
    return doc


def load_records(since: Optional[datetime] = None, **kwargs) -> List[TestRunRecord]:
    return [TestRunRecord.model_validate(serialize_doc(d)) for d in find_runs(since=since, **kwargs)]


@app.get("/")
def read_root():
    return {"message": "Robot Framework Test Report Backend Running"}


@app.get("/test")
def test_database():
    response = {
        "backend": "✅ Running",
        "database": "❌ Not Available",
        "database_url": None,
        "database_name": None,
        "connection_status": "Not Connected",
        "collections": [],
    }
    try:
        if db is not None:
            response["database"] = "✅ Available"
            response["database_url"] = "✅ Set" if os.getenv("DATABASE_URL") else "❌ Not Set"
            response["database_name"] = db.name
            response["connection_status"] = "Connected"
            response["collections"] = db.list_collection_names()
        else:
            response["database"] = "⚠️  Available but not initialized"
    except Exception as e:
        response["database"] = f"❌ Error: {str(e)[:120]}"
    return response


# Upload
def store_upload(xml_content: str, file_name: str, uploaded_by: Optional[str]):
    now = utcnow()
    parsed = parse_output_xml(xml_content, now=now)
    run_id = insert_run(parsed.to_document(file_name, uploaded_by, now))
    return parsed, run_id


@app.post("/api/upload", response_model=UploadResult)
async def upload_output_xml(
    request: Request,
    name: Optional[str] = None,
    x_uploaded_by: Optional[str] = Header(None),
):
    """Accept an output.xml as multipart field "file" or as the raw body."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("multipart/form-data"):
        form = await request.form()
        upload = form.get("file")
        if upload is None:
            raise HTTPException(status_code=400, detail="No file uploaded")
        if isinstance(upload, str):
            raw: Any = upload
            file_name = name or "output.xml"
        else:
            raw = await upload.read()
            file_name = upload.filename or "output.xml"
    else:
        raw = await request.body()
        file_name = name or "output.xml"

    xml_content = raw.decode("utf-8-sig", errors="replace") if isinstance(raw, bytes) else raw

    try:
        parsed, run_id = await run_in_threadpool(store_upload, xml_content, file_name, x_uploaded_by)
    except OutputXmlError as e:
        logger.warning(f"Rejected upload {file_name!r}: {e}")
        raise HTTPException(status_code=400, detail=str(e))
    except DatabaseUnavailable:
        raise
    except Exception as e:
        logger.exception(f"Upload of {file_name!r} failed")
        raise HTTPException(status_code=500, detail=str(e) or "Upload failed")

    logger.info(f"Stored run {run_id} from {file_name!r}: {parsed.total} tests in {len(parsed.suites)} suites")
    return UploadResult(
        id=run_id,
        name=parsed.name,
        total=parsed.total,
        passed=parsed.passed,
        failed=parsed.failed,
        skipped=parsed.skipped,
        status="COMPLETED",
        suites_count=len(parsed.suites),
    )


# Runs
@app.get("/api/runs", response_model=List[TestRunSummary])
def list_runs():
    docs = find_runs(newest_first=True, with_suites=False)
    return [TestRunSummary.model_validate(serialize_doc(d)) for d in docs]


@app.get("/api/runs/{run_id}", response_model=TestRunRecord)
def get_run_detail(run_id: str):
    if not is_valid_id(run_id):
        raise HTTPException(status_code=400, detail="Invalid id")
    run = find_run(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return TestRunRecord.model_validate(serialize_doc(run))


# Dashboard
@app.get("/api/dashboard", response_model=DashboardOverview)
def get_dashboard(days: int = Query(DEFAULT_DAYS, ge=0, le=MAX_DAYS)):
    since = rollups.window_start(days, utcnow())
    return rollups.dashboard_overview(load_records(), since)


@app.get("/api/dashboard/trends", response_model=TrendResponse)
def get_trends(days: int = Query(DEFAULT_DAYS, ge=0, le=MAX_DAYS)):
    since = rollups.window_start(days, utcnow())
    return rollups.trends(load_records(since, with_suites=False))


@app.get("/api/dashboard/suites", response_model=SuitesResponse)
def get_suites(days: Optional[int] = Query(None, ge=0, le=MAX_DAYS)):
    since = rollups.window_start(days, utcnow()) if days is not None else None
    return SuitesResponse(suites=rollups.suite_breakdown(load_records(since), order_by="total"))


@app.get("/api/dashboard/hosts", response_model=HostsResponse)
def get_hosts(days: int = Query(DEFAULT_DAYS, ge=0, le=MAX_DAYS)):
    now = utcnow()
    since = rollups.window_start(days, now)
    return rollups.hosts(load_records(since, with_suites=False), since, now)


if __name__ == "__main__":
    import uvicorn

    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
