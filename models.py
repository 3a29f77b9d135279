# models.py
"""
Data models used by the rules engine.

- Keep simple, serializable dataclasses for every entity the engine passes around.
- Resources and execution contexts are immutable inputs; results, aggregations
  and statistics are produced fresh on every run.
- Field names are snake_case; `from_dict` helpers also accept the camelCase keys
  emitted by the inventory and scheduling services.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from config import (
    DEFAULT_MAX_CONCURRENCY,
    DEFAULT_PARALLEL,
    DEFAULT_RETRY_COUNT,
    DEFAULT_TIMEOUT_SECONDS,
)


def utc_timestamp() -> str:
    """Return the current UTC time as an ISO-8601 string with a trailing Z."""
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


def _snake(key: str) -> str:
    out = []
    for ch in key:
        if ch.isupper():
            out.append("_" + ch.lower())
        else:
            out.append(ch)
    return "".join(out).lstrip("_")


# --- Inputs ---------------------------------------------------------------

@dataclass(frozen=True)
class Resource:
    """
    An externally discovered cloud object.

    Fields:
    - arn: unique identifier (e.g., "arn:aws:s3:::my-bucket")
    - type: namespaced type tag (e.g., "AWS::S3::Bucket" or "S3::Bucket")
    - region / account_id: where the resource lives
    - name: optional display name
    - tags: key/value tag set
    """
    arn: str
    type: str
    region: str = ""
    account_id: str = ""
    name: str = ""
    tags: Dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Resource":
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _snake(key)
            if name in known:
                kwargs[name] = value
        if "arn" not in kwargs or "type" not in kwargs:
            raise ValueError(f"Resource entry requires 'arn' and 'type': {data}")
        kwargs["tags"] = dict(kwargs.get("tags") or {})
        return cls(**kwargs)


@dataclass(frozen=True)
class ExecutionContext:
    """Per-run identity passed unchanged to every rule invocation."""
    tenant_id: str
    account_id: str
    region: str
    user_id: Optional[str] = None
    scan_id: Optional[str] = None
    timestamp: str = field(default_factory=utc_timestamp)


_CONFIG_ALIASES = {
    "timeout": "timeout_seconds",
    "retries": "retry_count",
}


@dataclass
class EngineConfig:
    """
    Options recognized for one engine invocation.

    timeout_seconds and retry_count are applied to every AWS client a rule builds.
    """
    parallel: bool = DEFAULT_PARALLEL
    max_concurrency: int = DEFAULT_MAX_CONCURRENCY
    timeout_seconds: int = DEFAULT_TIMEOUT_SECONDS
    retry_count: int = DEFAULT_RETRY_COUNT
    include_evidence: bool = True
    include_recommendations: bool = True
    dry_run: bool = False

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EngineConfig":
        known = {f.name for f in fields(cls)}
        kwargs = {}
        for key, value in data.items():
            name = _snake(key)
            name = _CONFIG_ALIASES.get(name, name)
            if name not in known:
                raise ValueError(f"Unknown engine configuration option: {key}")
            kwargs[name] = value
        return cls(**kwargs)


@dataclass
class ConfigValidation:
    valid: bool
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


# --- Rule description -----------------------------------------------------

@dataclass
class RuleMetadata:
    """Identity and classification of one rule."""
    rule_id: str
    name: str
    frameworks: List[str]
    severity: str
    resource_types: List[str]
    service: str
    description: str = ""
    controls: List[str] = field(default_factory=list)
    category: str = ""
    enabled: bool = True
    version: str = "1.0.0"
    created_by: str = "system"
    last_updated: str = field(default_factory=utc_timestamp)


@dataclass
class RemediationStep:
    """One advisory step; never executed by the engine."""
    order: int
    action: str
    description: str
    risk_level: str
    command: Optional[str] = None
    terraform: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RulePerformanceMetrics:
    rule_id: str
    execution_count: int = 0
    failure_count: int = 0
    total_execution_time: float = 0.0
    slowest_execution: float = 0.0
    fastest_execution: Optional[float] = None
    last_execution: Optional[str] = None

    @property
    def average_execution_time(self) -> float:
        if not self.execution_count:
            return 0.0
        return self.total_execution_time / self.execution_count

    @property
    def success_rate(self) -> float:
        if not self.execution_count:
            return 0.0
        return (self.execution_count - self.failure_count) / self.execution_count * 100


@dataclass
class RegistryEntry:
    """
    One registered rule: its executor, metadata and mutable usage statistics.

    executor is any object implementing the rule executor contract
    (see rules_engine.base.BaseRule).
    """
    rule_id: str
    rule: RuleMetadata
    executor: Any
    dependencies: List[str] = field(default_factory=list)
    usage_count: int = 0
    last_used: Optional[str] = None
    metrics: Optional[RulePerformanceMetrics] = None


# --- Results --------------------------------------------------------------

@dataclass
class Evidence:
    """One piece of supporting data for a check outcome."""
    type: str  # configuration | api_response | log | metric | policy
    description: str
    data: Dict[str, Any]
    source: str
    timestamp: str = field(default_factory=utc_timestamp)


@dataclass
class CheckOutcome:
    """Typed outcome returned by every rule's check hook."""
    passed: bool
    message: str
    severity: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class RuleExecutionResult:
    """The outcome of one rule against one resource."""
    rule_id: str
    resource_arn: str
    passed: bool
    message: str
    severity: Optional[str] = None
    evidence: List[Evidence] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    execution_time: float = 0.0  # milliseconds

    @property
    def skipped(self) -> bool:
        return bool(self.metadata.get("skipped"))


@dataclass
class RuleDependency:
    rule_id: str
    depends_on: List[str] = field(default_factory=list)
    optional: bool = False
    execution_order: int = 0


@dataclass
class ExecutionPlan:
    """Applicable rules, their order, and the concurrency grouping for one batch."""
    rules: List[str]
    execution_order: List[RuleDependency]
    estimated_duration: int  # milliseconds
    parallel_groups: List[List[str]]
    dependencies: Dict[str, List[str]] = field(default_factory=dict)


@dataclass
class Finding:
    """
    The reportable unit derived from one failed rule execution.

    Fields:
    - resource_arn / resource_type / service / region / account_id: resource identity
    - framework / control_id / control_title: the violated control
    - severity: critical | high | medium | low | info
    - title / description / risk / recommendation: human-readable text
    - evidence: evidence gathered by the triggering execution
    - remediation: remediation metadata (manual guidance by default)
    """
    id: str
    tenant_id: str
    finding_id: str
    resource_arn: str
    resource_type: str
    service: str
    region: str
    account_id: str
    framework: str
    control_id: str
    control_title: str
    severity: str
    title: str
    description: str
    risk: str
    recommendation: str
    evidence: List[Evidence] = field(default_factory=list)
    remediation: Dict[str, Any] = field(default_factory=dict)
    references: List[str] = field(default_factory=list)
    status: str = "active"
    first_seen: str = field(default_factory=utc_timestamp)
    last_seen: str = field(default_factory=utc_timestamp)
    hash: str = ""


@dataclass
class ResourceAggregation:
    resource_arn: str
    total_rules: int
    passed_rules: int
    failed_rules: int
    findings: List[Finding]
    compliance_score: float
    frameworks: List[str]
    overall_severity: str
    summary: str


@dataclass
class BatchStats:
    total_rules: int = 0
    executed_rules: int = 0
    passed_rules: int = 0
    failed_rules: int = 0
    skipped_rules: int = 0
    total_execution_time: float = 0.0
    average_execution_time: float = 0.0
    findings_by_severity: Dict[str, int] = field(default_factory=dict)
    findings_by_service: Dict[str, int] = field(default_factory=dict)


@dataclass
class EngineRun:
    """Return value of RulesEngine.execute_rules."""
    results: List[ResourceAggregation]
    stats: BatchStats
