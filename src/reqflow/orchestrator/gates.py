"""Gate verdict files: pending sentinel, parsing, and finding normalization."""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from reqflow.orchestrator.invoker import InvocationResult

logger = logging.getLogger(__name__)

PENDING_SUMMARY = "pending"
SEVERITIES = ("P0", "P1", "P2", "P3")
HIGH_SEVERITIES = frozenset({"P0", "P1"})

BUNDLE_GATE_FILE = "bundle-gate.json"
UAT_BUNDLE_GATE_FILE = "uat-bundle-gate.json"
UX_FINAL_GATE_FILE = "ux-final-gate.json"
SEC_FINAL_GATE_FILE = "sec-final-gate.json"
QA_POST_BUNDLE_GATE_FILE = "post-bundle-final-gate.json"
E2E_FULL_GATE_FILE = "e2e-full-gate.json"
UAT_FULL_GATE_FILE = "uat-full-regression-gate.json"

_SEVERITY_PREFIX_RE = re.compile(r"^\s*\[?(P[0-3])\]?\s*[:\-]?\s*", re.IGNORECASE)
_SEVERITY_DIGIT_RE = re.compile(r"[0-3]")
_WHITESPACE_RE = re.compile(r"\s+")


@dataclass(slots=True)
class Finding:
    """One normalized gate finding."""

    severity: str
    title: str
    details: str = ""

    @property
    def is_high(self) -> bool:
        return self.severity in HIGH_SEVERITIES

    def dedup_key(self) -> str:
        return f"{self.severity}|{self.title.lower()}|{self.details.lower()}"

    def render(self) -> str:
        if self.details and self.details != self.title:
            return f"{self.severity}: {self.title} - {self.details}"
        return f"{self.severity}: {self.title}"


@dataclass(slots=True)
class Gate:
    """Normalized verdict; status is ``pass`` or ``fail``."""

    status: str
    summary: str
    findings: list[Finding] = field(default_factory=list)
    blocking_findings: list[Finding] = field(default_factory=list)
    manual_uat: list[dict[str, object]] = field(default_factory=list)

    @property
    def passed(self) -> bool:
        return self.status == "pass"

    def all_findings(self) -> list[Finding]:
        """Deduplicated findings; a fail verdict always yields at least one P1."""

        combined = dedupe_findings([*self.blocking_findings, *self.findings])
        if not combined and not self.passed:
            combined = [Finding(severity="P1", title=self.summary or "Gate failed")]
        return combined

    def split_findings(self) -> tuple[list[Finding], list[Finding]]:
        high: list[Finding] = []
        lower: list[Finding] = []
        for finding in self.all_findings():
            (high if finding.is_high else lower).append(finding)
        return high, lower

    def to_payload(self) -> dict[str, object]:
        return {
            "status": self.status,
            "summary": self.summary,
            "findings": [finding.render() for finding in self.findings],
            "blocking_findings": [finding.render() for finding in self.blocking_findings],
            "manual_uat": self.manual_uat,
        }


def pending_gate_payload() -> dict[str, object]:
    return {
        "status": "fail",
        "summary": PENDING_SUMMARY,
        "findings": [],
        "blocking_findings": [],
        "manual_uat": [],
    }


def is_pending(payload: object) -> bool:
    if not isinstance(payload, dict):
        return False
    return (
        str(payload.get("status", "")).strip().lower() == "fail"
        and str(payload.get("summary", "")).strip().lower() == PENDING_SUMMARY
        and not payload.get("findings")
        and not payload.get("blocking_findings")
    )


def write_pending_gate(path: Path) -> None:
    _write_json(path, pending_gate_payload())


def write_gate(path: Path, gate: Gate) -> None:
    _write_json(path, gate.to_payload())


def normalize_severity(raw: object, fallback: str) -> str:
    text = str(raw or "").strip().upper()
    if text in SEVERITIES:
        return text
    match = _SEVERITY_DIGIT_RE.search(text)
    if match is not None:
        return f"P{match.group(0)}"
    return fallback


def normalize_finding(raw: object, *, fallback_severity: str) -> Finding | None:
    """Accept ``"P1: title"`` strings or objects with severity/title/details aliases."""

    if isinstance(raw, str):
        text = raw.strip()
        if not text:
            return None
        match = _SEVERITY_PREFIX_RE.match(text)
        if match is None:
            return Finding(severity=fallback_severity, title=text)
        return Finding(severity=match.group(1).upper(), title=text[match.end():].strip() or text)

    if not isinstance(raw, dict):
        return None
    severity = normalize_severity(raw.get("severity") or raw.get("priority"), fallback_severity)
    details = str(raw.get("details") or raw.get("description") or raw.get("reason") or "").strip()
    title = str(raw.get("title") or raw.get("summary") or raw.get("name") or "").strip()
    return Finding(severity=severity, title=title or details or "Unnamed finding", details=details)


def normalize_findings(raw: object, *, fallback_severity: str) -> list[Finding]:
    if not isinstance(raw, list):
        return []
    normalized = (normalize_finding(item, fallback_severity=fallback_severity) for item in raw)
    return [finding for finding in normalized if finding is not None]


def dedupe_findings(findings: list[Finding]) -> list[Finding]:
    seen: set[str] = set()
    unique: list[Finding] = []
    for finding in findings:
        key = finding.dedup_key()
        if key in seen:
            continue
        seen.add(key)
        unique.append(finding)
    return unique


def gate_from_payload(payload: dict[str, object]) -> Gate:
    status = "pass" if str(payload.get("status", "")).strip().lower() == "pass" else "fail"
    manual_uat = [item for item in payload.get("manual_uat") or [] if isinstance(item, dict)]
    return Gate(
        status=status,
        summary=str(payload.get("summary") or "").strip() or f"gate {status}",
        findings=normalize_findings(payload.get("findings"), fallback_severity="P2"),
        blocking_findings=normalize_findings(
            payload.get("blocking_findings"),
            fallback_severity="P1",
        ),
        manual_uat=manual_uat,
    )


def load_gate_payload(path: Path) -> dict[str, object] | None:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, ValueError):
        return None
    return payload if isinstance(payload, dict) else None


def read_gate(path: Path) -> Gate:
    payload = load_gate_payload(path)
    if payload is None:
        return Gate(
            status="fail",
            summary="invalid gate file",
            blocking_findings=[
                Finding(
                    severity="P1",
                    title="Invalid gate file",
                    details=f"Could not parse gate JSON at {path}",
                ),
            ],
        )
    return gate_from_payload(payload)


def execution_failure_gate(  # noqa: PLR0913
    label: str,
    *,
    severity: str = "P1",
    command: str = "",
    exit_code: int | None = None,
    stderr: str = "",
    timed_out: bool = False,
    fallback_details: str = "",
) -> Gate:
    """Synthesize a fail gate describing why no trustworthy verdict exists."""

    parts: list[str] = []
    if command:
        parts.append(f"command: {command}")
    if exit_code is not None:
        parts.append(f"exit code: {exit_code}")
    if timed_out:
        parts.append("timed out")
    compact_stderr = compact_text(stderr, 500)
    if compact_stderr:
        parts.append(f"stderr: {compact_stderr}")
    elif fallback_details:
        parts.append(compact_text(fallback_details, 300))
    details = " | ".join(parts) or "no diagnostics captured"
    return Gate(
        status="fail",
        summary=f"{label} execution failed: {compact_text(details, 240)}",
        blocking_findings=[
            Finding(severity=severity, title=f"{label} execution failed", details=details),
        ],
    )


def gate_from_invocation(
    label: str,
    path: Path,
    invocation: InvocationResult,
    *,
    severity: str = "P1",
) -> Gate:
    """Read the verdict an agent wrote, replacing failures and leftovers with a fail gate.

    The synthesized gate is written back so the file never stays pending
    after the agent has exited.
    """

    if not invocation.ok:
        gate = execution_failure_gate(
            label,
            severity=severity,
            command=invocation.command,
            exit_code=invocation.exit_code,
            stderr=invocation.stderr,
            timed_out=invocation.timed_out,
            fallback_details=invocation.failure_reason(),
        )
        write_gate(path, gate)
        return gate

    payload = load_gate_payload(path)
    if payload is None or is_pending(payload):
        gate = execution_failure_gate(
            label,
            severity=severity,
            command=invocation.command,
            exit_code=invocation.exit_code,
            fallback_details=f"{label} completed without writing a definitive gate result.",
        )
        write_gate(path, gate)
        logger.warning("%s left no definitive verdict in %s", label, path)
        return gate
    return gate_from_payload(payload)


def compact_text(text: str, limit: int) -> str:
    compact = _WHITESPACE_RE.sub(" ", text or "").strip()
    if len(compact) <= limit:
        return compact
    return compact[: max(0, limit - 3)].rstrip() + "..."


def stable_hash(*parts: str) -> str:
    digest = hashlib.sha1()  # noqa: S324
    for part in parts:
        digest.update(part.encode("utf-8"))
        digest.update(b"\x00")
    return digest.hexdigest()[:16]


def _write_json(path: Path, payload: dict[str, object]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
