# rules_engine/aggregation.py
"""
Roll-ups over rule execution results.

- aggregate_resource: one resource's score, findings and overall severity.
  Skipped (inapplicable) results are left out, so the score only reflects
  rules actually evaluated against the resource.
- calculate_stats: batch-wide counts, timings and failure breakdowns.
"""

import uuid
from collections import Counter
from typing import Dict, List, Optional, Sequence

from config import DEFAULT_FRAMEWORK, SEVERITY_ORDER
from models import (
    BatchStats,
    Finding,
    Resource,
    ResourceAggregation,
    RuleExecutionResult,
    utc_timestamp,
)


def severity_rank(severity: Optional[str]) -> int:
    if severity not in SEVERITY_ORDER:
        return -1
    return SEVERITY_ORDER.index(severity)


def overall_severity(results: Sequence[RuleExecutionResult]) -> str:
    """Highest severity among failed results; "info" when nothing failed."""
    worst = "info"
    for result in results:
        if not result.passed and severity_rank(result.severity) > severity_rank(worst):
            worst = result.severity
    return worst


def compliance_score(passed: int, total: int) -> float:
    return (passed / total) * 100 if total else 100.0


def extract_frameworks(results: Sequence[RuleExecutionResult], registry) -> List[str]:
    frameworks: List[str] = []
    for result in results:
        if result.rule_id not in registry:
            continue
        for framework in registry.get(result.rule_id).rule.frameworks:
            if framework not in frameworks:
                frameworks.append(framework)
    return frameworks


def finding_from_result(resource: Resource, result: RuleExecutionResult,
                        registry, tenant_id: str = "") -> Finding:
    entry = registry.get(result.rule_id) if result.rule_id in registry else None
    framework = entry.rule.frameworks[0] if entry and entry.rule.frameworks else DEFAULT_FRAMEWORK
    control_title = result.metadata.get("rule_name") or (entry.rule.name if entry else "")
    service = result.metadata.get("service") or resource.tags.get("service") or "unknown"
    recommendation = "; ".join(result.recommendations)
    now = utc_timestamp()
    return Finding(
        id=f"finding-{uuid.uuid4().hex[:12]}",
        tenant_id=tenant_id,
        finding_id=result.rule_id,
        resource_arn=resource.arn,
        resource_type=resource.type,
        service=service,
        region=resource.region,
        account_id=resource.account_id,
        framework=framework,
        control_id=result.rule_id,
        control_title=control_title,
        severity=result.severity or "medium",
        title=result.message,
        description=result.message,
        risk=result.recommendations[0] if result.recommendations else "Risk assessment needed",
        recommendation=recommendation,
        evidence=list(result.evidence),
        remediation={
            "type": "manual_guidance",
            "description": recommendation,
            "steps": [],
            "estimated_effort": "medium",
            "requires_approval": True,
            "automated": False,
        },
        first_seen=now,
        last_seen=now,
        hash=f"{result.rule_id}-{resource.arn}",
    )


def aggregate_resource(resource: Resource, results: Sequence[RuleExecutionResult],
                       registry, tenant_id: str = "") -> ResourceAggregation:
    evaluated = [r for r in results if not r.skipped]
    passed = sum(1 for r in evaluated if r.passed)
    failed = len(evaluated) - passed
    score = compliance_score(passed, len(evaluated))
    return ResourceAggregation(
        resource_arn=resource.arn,
        total_rules=len(evaluated),
        passed_rules=passed,
        failed_rules=failed,
        findings=[finding_from_result(resource, r, registry, tenant_id) for r in evaluated if not r.passed],
        compliance_score=score,
        frameworks=extract_frameworks(evaluated, registry),
        overall_severity=overall_severity(evaluated),
        summary=f"{passed}/{len(evaluated)} rules passed ({score:.1f}% compliance)",
    )


def calculate_stats(results: Sequence[RuleExecutionResult], total_execution_time: float) -> BatchStats:
    total = len(results)
    skipped = sum(1 for r in results if r.skipped)
    passed = sum(1 for r in results if r.passed and not r.skipped)
    failed = sum(1 for r in results if not r.passed)
    failures = [r for r in results if not r.passed]
    by_severity: Dict[str, int] = dict(Counter(r.severity for r in failures if r.severity))
    by_service: Dict[str, int] = dict(Counter(r.metadata["service"] for r in failures if r.metadata.get("service")))
    return BatchStats(
        total_rules=total,
        executed_rules=total - skipped,
        passed_rules=passed,
        failed_rules=failed,
        skipped_rules=skipped,
        total_execution_time=total_execution_time,
        average_execution_time=(sum(r.execution_time for r in results) / total) if total else 0.0,
        findings_by_severity=by_severity,
        findings_by_service=by_service,
    )
