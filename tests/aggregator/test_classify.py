"""Tests for worker payload classification."""

import pytest

from vigil.aggregator.classify import classify, fingerprint, normalize_severity
from vigil.types import Severity


def test_blacklisted_process_is_critical():
    payload = {
        "blacklisted_found": True,
        "matches": [{"pid": 42, "name": "chrome", "path": "/Applications/Chrome.app"}],
        "max_threat_level": "HIGH",
    }
    [violation] = classify("process-watch", payload, 100.0)

    assert violation.severity is Severity.CRITICAL
    assert violation.violation_type == "blacklisted-process"
    assert violation.worker == "process-watch"
    assert violation.timestamp == 100.0
    assert "chrome (pid 42)" in violation.evidence


def test_clean_payloads_produce_nothing():
    assert classify("process-watch", {"blacklisted_found": False, "matches": []}) == []
    assert classify("vm-detect", {"isInsideVM": False}) == []
    assert classify("screen-watch", {"isScreenCaptured": False, "total_sessions": 0}) == []
    assert classify("focus-idle-watch", {"eventType": "focus-gained"}) == []
    assert classify("bt-watch", {"enabled": True}) == []
    assert classify("vm-detect", "not a dict") == []


def test_threat_level_alone_is_not_a_process_violation():
    payload = {"blacklisted_found": False, "matches": [], "max_threat_level": "HIGH"}
    assert classify("process-watch", payload) == []


def test_classification_is_pure():
    payload = {"isInsideVM": True, "detectedVM": "VMware"}
    first = classify("vm-detect", payload, 1.0)
    second = classify("vm-detect", payload, 2.0)

    assert [v.id for v in first] == [v.id for v in second]
    assert payload == {"isInsideVM": True, "detectedVM": "VMware"}


def test_ids_change_with_evidence():
    vmware = classify("vm-detect", {"isInsideVM": True, "detectedVM": "VMware"})
    parallels = classify("vm-detect", {"isInsideVM": True, "detectedVM": "Parallels"})
    assert vmware[0].id != parallels[0].id
    assert vmware[0].id.startswith("vm-detect-virtual-environment-")


@pytest.mark.parametrize("payload", [
    {"isScreenCaptured": True},
    {"isRecording": True},
    {"total_sessions": 2},
])
def test_screen_capture(payload):
    [violation] = classify("screen-watch", payload)
    assert violation.violation_type == "screen-sharing"
    assert violation.severity is Severity.CRITICAL


def test_worker_specific_rules():
    [clip] = classify("clipboard-worker", {"eventType": "clipboard-changed", "sourceApp": "Notes"})
    assert clip.severity is Severity.MEDIUM
    assert clip.evidence == "Source: Notes"

    [focus] = classify("focus-idle-watch", {"eventType": "idle-start", "details": {"activeApp": "Terminal"}})
    assert focus.severity is Severity.HIGH
    assert focus.evidence == "Event: idle-start, App: Terminal"

    [blocker] = classify("notification-blocker", {"eventType": "violation", "severity": "high"})
    assert blocker.severity is Severity.HIGH
    assert blocker.violation_type == "notification-violation"


def test_embedded_violations():
    payload = {
        "violations": [
            {"deviceName": "AirPods", "threatLevel": 3, "reason": "Audio device connected"},
            {"name": "USB Drive", "severity": "critical", "violationType": "storage-device"},
            "junk",
        ],
    }
    high, critical = classify("device-watch", payload, 5.0)

    assert (high.subject, high.severity, high.violation_type) == ("AirPods", Severity.HIGH, "violation")
    assert (critical.subject, critical.severity) == ("USB Drive", Severity.CRITICAL)
    assert critical.violation_type == "storage-device"


def test_timestamp_from_payload():
    [violation] = classify("vm-detect", {"isInsideVM": True, "timestamp": 1718000000})
    assert violation.timestamp == 1718000000.0


@pytest.mark.parametrize("value,expected", [
    (4, Severity.CRITICAL),
    (3, Severity.HIGH),
    (2, Severity.MEDIUM),
    (1, Severity.LOW),
    (0, Severity.LOW),
    ("high", Severity.HIGH),
    (" Critical ", Severity.CRITICAL),
    ("bogus", Severity.MEDIUM),
    (None, Severity.MEDIUM),
    (True, Severity.MEDIUM),
])
def test_normalize_severity(value, expected):
    assert normalize_severity(value) is expected


def test_fingerprint_is_stable():
    assert fingerprint("a", None) == fingerprint("a", "")
    assert fingerprint("ab", "c") != fingerprint("a", "bc")
    assert len(fingerprint("x")) == 12
