"""
Schemas for Robot Framework test reporting

The Parsed* models are what the output.xml parser produces. The *Record models
mirror a document of the "testrun" collection read back from MongoDB, with
suites and tests embedded. The remaining models are the dashboard responses.

Attributes are snake_case in Python and camelCase on the wire.
"""
from typing import Any, Dict, List, Literal, Optional
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from datetime import datetime

TestStatus = Literal["PASS", "FAIL", "SKIP"]


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class FrozenModel(ApiModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# Parser output

class CanonicalStatus(FrozenModel):
    status: TestStatus = "SKIP"
    started_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    message: Optional[str] = None


class ParsedTestCase(FrozenModel):
    name: str
    status: TestStatus
    duration: Optional[int] = Field(None, description="Duration in ms")
    message: Optional[str] = Field(None, description="Failure or skip reason")
    tags: List[str] = Field(default_factory=list)


class ParsedTestSuite(FrozenModel):
    name: str
    source: Optional[str] = None
    duration: Optional[int] = None
    tests: List[ParsedTestCase] = Field(..., min_length=1)

    def count(self, status: str) -> int:
        return sum(1 for t in self.tests if t.status == status)

    @property
    def total(self) -> int:
        return len(self.tests)

    @property
    def passed(self) -> int:
        return self.count("PASS")

    @property
    def failed(self) -> int:
        return self.count("FAIL")

    @property
    def skipped(self) -> int:
        return self.count("SKIP")


class ParsedTestRun(FrozenModel):
    name: str
    generator: str
    host: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration: Optional[int] = None
    suites: List[ParsedTestSuite] = Field(default_factory=list)
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0

    def to_document(self, source: str, uploaded_by: Optional[str], now: datetime) -> Dict[str, Any]:
        """Build the single nested document stored for this run."""
        return {
            "name": self.name,
            "generator": self.generator,
            "source": source,
            "host": self.host,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "duration": self.duration,
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "skipped": self.skipped,
            "status": "COMPLETED",
            "uploaded_by": uploaded_by,
            "created_at": now,
            "suites": [
                {
                    "name": s.name,
                    "source": s.source,
                    "duration": s.duration,
                    "total": s.total,
                    "passed": s.passed,
                    "failed": s.failed,
                    "skipped": s.skipped,
                    "tests": [
                        {
                            "name": t.name,
                            "status": t.status,
                            "duration": t.duration,
                            "message": t.message,
                            "tags": list(t.tags),
                            "metadata": {},
                        }
                        for t in s.tests
                    ],
                }
                for s in self.suites
            ],
        }


# Persisted records

class TestCaseRecord(ApiModel):
    name: str
    status: str
    duration: Optional[int] = None
    message: Optional[str] = None
    tags: List[str] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


class TestSuiteRecord(ApiModel):
    name: str
    source: Optional[str] = None
    duration: Optional[int] = None
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    tests: List[TestCaseRecord] = Field(default_factory=list)


class TestRunSummary(ApiModel):
    id: Optional[str] = None
    name: str
    generator: Optional[str] = None
    source: Optional[str] = None
    host: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration: Optional[int] = None
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    status: str = "COMPLETED"
    uploaded_by: Optional[str] = None
    created_at: Optional[datetime] = None


class TestRunRecord(TestRunSummary):
    suites: List[TestSuiteRecord] = Field(default_factory=list)


# Dashboard responses

class DailyTrendPoint(ApiModel):
    date: str
    pass_rate: float
    total: int
    passed: int
    failed: int
    skipped: int
    run_count: int


class TrendSummary(ApiModel):
    total: int = 0
    passed: int = 0
    failed: int = 0
    skipped: int = 0
    runs: int = 0
    pass_rate: float = 0


class TrendResponse(ApiModel):
    trend: List[DailyTrendPoint]
    summary: TrendSummary


class SuiteAnalysis(ApiModel):
    name: str
    run_count: int
    total_tests: int
    passed: int
    failed: int
    skipped: int
    pass_rate: float
    avg_duration: Optional[int] = None


class SuitesResponse(ApiModel):
    suites: List[SuiteAnalysis]


class SuiteBreakdown(ApiModel):
    name: str
    passed: int
    failed: int
    skipped: int


class HostHeatmapCell(ApiModel):
    x: str = Field(..., description="Date, YYYY-MM-DD")
    y: int = Field(..., ge=-1, le=100, description="Pass rate percent, -1 for no data")


class HostHeatmapRow(ApiModel):
    id: str = Field(..., description="Host name")
    data: List[HostHeatmapCell]


class HostSummary(ApiModel):
    host: str
    total_runs: int
    total_tests: int
    passed: int
    failed: int
    pass_rate: float
    last_run: datetime


class HostsResponse(ApiModel):
    heatmap: List[HostHeatmapRow]
    summaries: List[HostSummary]
    dates: List[str]


class TrendPoint(ApiModel):
    date: str
    pass_rate: float
    total: int


class RecentRun(ApiModel):
    id: Optional[str] = None
    name: str
    started_at: datetime
    passed: int
    failed: int
    total: int


class DashboardOverview(ApiModel):
    total_runs: int
    total_tests: int
    total_passed: int
    total_failed: int
    total_skipped: int
    avg_pass_rate: float
    recent_runs: List[RecentRun]
    daily_trend: List[TrendPoint]
    suite_breakdown: List[SuiteBreakdown]


class UploadResult(ApiModel):
    id: str
    name: str
    total: int
    passed: int
    failed: int
    skipped: int
    status: str
    suites_count: int
