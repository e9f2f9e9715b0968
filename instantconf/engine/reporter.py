"""
InstantConf — Reporter

Renders a RunReport for humans (text) or machines (JSON via orjson).
Not part of the verification logic; everything shown here is already in
the report.
"""

from __future__ import annotations

from typing import Any

import orjson

from instantconf.engine.types import (
    Observation,
    RunReport,
    TransactionRecord,
    Verdict,
    VerdictOutcome,
)

_MARKS = {
    VerdictOutcome.PASS: "✓",
    VerdictOutcome.WARN: "⚠",
    VerdictOutcome.FAIL: "✗",
    VerdictOutcome.SKIPPED: "-",
}


def render_json(report: RunReport) -> bytes:
    return orjson.dumps(
        report.model_dump(mode="json"),
        option=orjson.OPT_INDENT_2,
    )


def _ts(observation: Observation | None) -> str:
    return observation.observed_at.isoformat() if observation is not None else "—"


def _observation_lines(record: TransactionRecord) -> list[str]:
    lines: list[str] = []
    if record.submission is not None:
        lines.append(f"    submitted        {_ts(record.submission)}  mode={record.mode.value}")
    if record.inclusion is not None:
        announced = f"  announced={record.inclusion.announced_at}" if record.inclusion.announced_at else ""
        lines.append(f"    included         {_ts(record.inclusion)}{announced}")
    if record.preconfirmation is not None:
        pre = record.preconfirmation
        latency = f"  latency={pre.latency_ms:.0f}ms" if pre.latency_ms is not None else ""
        lines.append(
            f"    preconfirmed     {_ts(pre)}  via={pre.source.value}"
            f"  status={pre.receipt.status}  blockHash={pre.receipt.block_hash}{latency}"
        )
    if record.final is not None:
        fin = record.final
        latency = f"  latency={fin.latency_ms:.0f}ms" if fin.latency_ms is not None else ""
        lines.append(
            f"    final            {_ts(fin)}  via={fin.source.value}"
            f"  status={fin.status}  block={fin.block_number}  blockHash={fin.block_hash}"
            f"  gasUsed={fin.gas_used}{latency}"
        )
    return lines


def render_verdict(verdict: Verdict) -> str:
    lines = [f"{_MARKS[verdict.outcome]} {verdict.outcome.value.upper():<8} {verdict.hash}"]
    for finding in verdict.reasons:
        lines.append(f"    [{finding.severity.value}] {finding.kind.value}: {finding.message}")
    lines.extend(_observation_lines(verdict.record))
    return "\n".join(lines)


def summarize(report: RunReport) -> dict[str, Any]:
    summary: dict[str, Any] = {o.value: report.count(o) for o in VerdictOutcome}
    summary["transactions"] = len(report.verdicts)
    if report.subscriber is not None:
        summary["inclusion_events"] = report.subscriber.inclusion_events
        summary["preconfirmation_events"] = report.subscriber.preconfirmation_events
        summary["malformed_frames"] = report.subscriber.malformed_frames
    summary["unmatched_hashes"] = report.store.foreign
    return summary


def render_text(report: RunReport) -> str:
    lines = [
        f"Run {report.run_id}  mode={report.mode.value}  rpc={report.rpc_url}",
    ]
    if report.sender:
        lines.append(f"Account {report.sender}  balance={report.balance_wei} wei")
    if report.subscription_enabled:
        if report.subscription_error:
            lines.append(f"Push channel unavailable, RPC-only verification: {report.subscription_error}")
        elif report.subscriber is not None and report.subscriber.closed_early:
            lines.append("Push channel closed mid-run: observation coverage reduced")
    if report.deadline_expired:
        lines.append("Run deadline expired before every transaction was verified")
    lines.append("")
    for verdict in report.verdicts:
        lines.append(render_verdict(verdict))
        lines.append("")

    summary = summarize(report)
    lines.append(
        "Summary: "
        + "  ".join(f"{key}={value}" for key, value in summary.items())
    )
    return "\n".join(lines)
