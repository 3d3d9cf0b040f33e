"""
Robot Framework output.xml parser

Turns the text of an output.xml into a ParsedTestRun. Both the RF 6.x layout
(starttime/endtime/message attributes, <tags> wrapper) and the RF 7.x layout
(start/elapsed attributes, message as text, <tag> directly under <test>) are
accepted. Container suites are flattened away: only suites that directly own
tests are returned.
"""
import logging
import math
import re
import xml.etree.ElementTree as ET
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Union

from schemas import CanonicalStatus, ParsedTestCase, ParsedTestRun, ParsedTestSuite

logger = logging.getLogger(__name__)

ROBOT_SIGNATURE = "<robot"

# Tags that are always exposed as a list, however many times they occur
ARRAY_TAGS = frozenset({"suite", "test", "tag", "meta"})

RF6_TIMESTAMP = re.compile(r"(\d{4})(\d{2})(\d{2})\s+(\d{2}):(\d{2}):(\d{2})\.(\d{3})")


class OutputXmlError(ValueError):
    """The uploaded document cannot be used as a Robot Framework result."""


class InvalidFormat(OutputXmlError):
    pass


class ParseError(OutputXmlError):
    pass


class RawXmlNode:
    """Generic element: attributes by name, children by tag.

    ``children`` maps a tag to a single node, or to a list of nodes when the
    tag repeats or is one of the forced array tags.
    """

    def __init__(self, tag: str, attrib: Optional[Dict[str, str]] = None,
                 children: Optional[Dict[str, Any]] = None, text: Optional[str] = None):
        self.tag = tag
        self.attrib = dict(attrib or {})
        self.children = dict(children or {})
        self.text = text

    def __repr__(self):
        return f"RawXmlNode({self.tag!r}, {self.attrib!r})"

    def attr(self, name: str) -> Optional[str]:
        return self.attrib.get(name)

    def child(self, tag: str) -> Union["RawXmlNode", List["RawXmlNode"], None]:
        return self.children.get(tag)

    def child_list(self, tag: str) -> List["RawXmlNode"]:
        return as_list(self.children.get(tag))


def as_list(value) -> list:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# XML Tree Loader

def _build_node(element: ET.Element, force_list: Iterable[str]) -> RawXmlNode:
    children: Dict[str, Any] = {}
    for sub in element:
        node = _build_node(sub, force_list)
        if sub.tag in children:
            existing = children[sub.tag]
            if isinstance(existing, list):
                existing.append(node)
            else:
                children[sub.tag] = [existing, node]
        elif sub.tag in force_list:
            children[sub.tag] = [node]
        else:
            children[sub.tag] = node
    text = (element.text or "").strip() or None
    return RawXmlNode(element.tag, element.attrib, children, text)


def load_xml_tree(xml_content: str, force_list: Iterable[str] = ARRAY_TAGS) -> RawXmlNode:
    """Parse XML text into a RawXmlNode tree rooted at the document element."""
    try:
        root = ET.fromstring(xml_content)
    except ET.ParseError as e:
        raise ParseError(f"Malformed XML: {e}") from e
    return _build_node(root, frozenset(force_list))


# Schema Normalizer

def parse_rf6_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse the RF 6.x "YYYYMMDD HH:MM:SS.mmm" format as UTC."""
    if not value or value == "N/A":
        return None
    match = RF6_TIMESTAMP.search(value)
    if not match:
        return None
    y, mo, d, h, mi, s, ms = (int(part) for part in match.groups())
    try:
        return datetime(y, mo, d, h, mi, s, ms * 1000, tzinfo=timezone.utc)
    except ValueError:
        return None


def parse_iso_timestamp(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def normalize_status_value(value: Optional[str]) -> str:
    upper = (value or "").upper()
    if upper in ("PASS", "FAIL"):
        return upper
    return "SKIP"


def resolve_duration_ms(status: RawXmlNode) -> Optional[int]:
    # RF 7.x: elapsed seconds
    elapsed = status.attr("elapsed")
    if elapsed:
        try:
            seconds = float(elapsed)
        except ValueError:
            seconds = None
        if seconds is not None and math.isfinite(seconds):
            return round_half_up(seconds * 1000)
    # RF 6.x: endtime - starttime
    start = parse_rf6_timestamp(status.attr("starttime"))
    end = parse_rf6_timestamp(status.attr("endtime"))
    if start and end:
        return (end - start) // timedelta(milliseconds=1)
    return None


def resolve_started_at(status: RawXmlNode) -> Optional[datetime]:
    started = parse_iso_timestamp(status.attr("start"))
    if started is not None:
        return started
    return parse_rf6_timestamp(status.attr("starttime"))


def resolve_message(status: RawXmlNode) -> Optional[str]:
    if status.text:
        return status.text
    return status.attr("message") or None


def normalize_status(status: Optional[RawXmlNode]) -> CanonicalStatus:
    """Collapse an RF 6.x or RF 7.x <status> node into one canonical record."""
    if status is None:
        return CanonicalStatus()
    return CanonicalStatus(
        status=normalize_status_value(status.attr("status")),
        started_at=resolve_started_at(status),
        duration_ms=resolve_duration_ms(status),
        message=resolve_message(status),
    )


def extract_tags(test: RawXmlNode) -> List[str]:
    direct = test.child_list("tag")
    if direct:
        return [t.text or "" for t in direct]
    tags: List[str] = []
    for wrapper in as_list(test.child("tags")):
        tags.extend(t.text or "" for t in wrapper.child_list("tag"))
    return tags


def _status_node(node: RawXmlNode) -> Optional[RawXmlNode]:
    # keyword-level <status> elements live under <kw>, so the node's own is the only direct one
    status = node.child("status")
    if isinstance(status, list):
        return status[-1]
    return status


# Suite Flattener

def parse_test(test: RawXmlNode) -> ParsedTestCase:
    status = normalize_status(_status_node(test))
    return ParsedTestCase(
        name=test.attr("name") or "",
        status=status.status,
        duration=status.duration_ms,
        message=status.message,
        tags=extract_tags(test),
    )


def flatten_suites(suite: RawXmlNode) -> List[ParsedTestSuite]:
    """Pre-order list of the suites under ``suite`` that directly own tests."""
    results: List[ParsedTestSuite] = []

    tests = suite.child_list("test")
    if tests:
        results.append(ParsedTestSuite(
            name=suite.attr("name") or "",
            source=suite.attr("source"),
            duration=normalize_status(_status_node(suite)).duration_ms,
            tests=[parse_test(t) for t in tests],
        ))

    for sub in suite.child_list("suite"):
        results.extend(flatten_suites(sub))

    return results


# Run Aggregator

def extract_host(root_suite: RawXmlNode) -> Optional[str]:
    for meta in root_suite.child_list("meta"):
        if (meta.attr("name") or "").lower() == "host":
            return meta.text or None
    return None


def aggregate_run(robot: RawXmlNode, root_suite: RawXmlNode, suites: List[ParsedTestSuite],
                  now: Optional[datetime] = None) -> ParsedTestRun:
    total = passed = failed = skipped = 0
    for suite in suites:
        for test in suite.tests:
            total += 1
            if test.status == "PASS":
                passed += 1
            elif test.status == "FAIL":
                failed += 1
            else:
                skipped += 1

    root_status = normalize_status(_status_node(root_suite))
    started_at = root_status.started_at or now or datetime.now(timezone.utc)
    duration = root_status.duration_ms
    ended_at = started_at + timedelta(milliseconds=duration) if duration is not None else None

    return ParsedTestRun(
        name=root_suite.attr("name") or "",
        generator=robot.attr("generator") or "",
        host=extract_host(root_suite),
        started_at=started_at,
        ended_at=ended_at,
        duration=duration,
        suites=suites,
        total=total,
        passed=passed,
        failed=failed,
        skipped=skipped,
    )


def parse_output_xml(xml_content: str, now: Optional[datetime] = None) -> ParsedTestRun:
    """Parse a Robot Framework output.xml document.

    ``now`` is the start time used when the root suite's status carries no
    usable timestamp; it defaults to the current UTC time.

    Raises InvalidFormat when the text is not a Robot Framework result and
    ParseError when it is not well-formed XML.
    """
    if not xml_content or ROBOT_SIGNATURE not in xml_content:
        raise InvalidFormat("Invalid file: must be a Robot Framework output.xml")

    robot = load_xml_tree(xml_content)
    if robot.tag != "robot":
        raise InvalidFormat("Invalid Robot Framework output.xml: missing <robot> root element")

    root_suites = robot.child_list("suite")
    if not root_suites:
        raise InvalidFormat("Invalid Robot Framework output.xml: missing root <suite> element")
    root_suite = root_suites[0]

    suites = flatten_suites(root_suite)
    run = aggregate_run(robot, root_suite, suites, now=now)
    logger.debug(
        f"Parsed run {run.name!r}: {len(run.suites)} suites, {run.total} tests "
        f"({run.passed} passed, {run.failed} failed, {run.skipped} skipped)"
    )
    return run
