# tests/test_engine.py
"""
Engine, registry and planner tests.

- Built-in rules run against moto.
- StaticRule exercises planning, ordering and concurrency without AWS.
"""

import threading
import time
from unittest.mock import MagicMock

import pytest

from conftest import bucket_resource, client_error, create_plain_bucket, mock_session, security_group_resource
from models import CheckOutcome, EngineConfig, Resource
from rules_engine import (
    BaseRule,
    DependencyCycleError,
    InvalidConfigError,
    RuleNotFoundError,
    RuleRegistry,
    RulesEngine,
    validate_engine_config,
)
from rules_engine.base import resource_type_matches, service_of
from rules_engine.planner import execution_order, parallel_groups

WIDGET = Resource(arn="arn:custom:widget/1", type="Custom::Widget", region="us-east-1")


class StaticRule(BaseRule):
    """Fixed-outcome rule for engine tests."""

    resource_types = ["Custom::Widget"]
    service = "Custom"
    frameworks = ["SOC2"]

    def __init__(self, rule_id, passed=True, severity="low", delay=0.0, dependencies=(), error=None):
        super().__init__(session=MagicMock())
        self.rule_id = rule_id
        self.name = f"Static {rule_id}"
        self.passed = passed
        self.severity = severity
        self.delay = delay
        self.dependencies = list(dependencies)
        self.error = error

    def check(self, resource, context, config):
        if self.delay:
            time.sleep(self.delay)
        if self.error:
            raise self.error
        return CheckOutcome(self.passed, f"{self.rule_id} on {resource.arn}", None if self.passed else self.severity)


def static_engine(*rules):
    engine = RulesEngine(session=MagicMock(), register_defaults=False)
    for rule in rules:
        engine.register_rule(rule)
    return engine


# --- registry ---

def test_builtin_rules_are_registered_in_order(engine):
    ids = [entry.rule_id for entry in engine.get_all_rules()]
    assert ids == [
        "S3-001", "S3-002", "S3-003",
        "IAM-001", "IAM-002", "IAM-003",
        "SG-001", "SG-002",
        "CT-001", "CT-002", "CT-003",
    ]


def test_registry_filters(engine):
    assert [e.rule_id for e in engine.get_rules_for_service("S3")] == ["S3-001", "S3-002", "S3-003"]
    assert len(engine.get_rules_for_framework("SOC2")) == 11
    assert engine.get_rules_for_framework("HIPAA") == []
    assert engine.supported_services() == ["S3", "IAM", "EC2", "CloudTrail"]
    assert "AWS::IAM::AccountPasswordPolicy" in engine.supported_resource_types()


def test_register_rule_overwrites_existing_id(engine):
    replacement = StaticRule("S3-001")
    engine.register_rule(replacement)
    assert len(engine.get_all_rules()) == 11
    assert engine.registry.get("S3-001").executor is replacement


def test_unsupported_framework_is_logged(caplog):
    rule = StaticRule("ODD")
    rule.frameworks = ["SOC2", "MADEUP"]
    with caplog.at_level("WARNING", logger="rules_engine.registry"):
        entry = static_engine(rule).registry.get("ODD")
    assert entry.rule.frameworks == ["SOC2", "MADEUP"]
    assert "Rule ODD declares unsupported frameworks: MADEUP" in caplog.text


def test_metadata_description_defaults_to_docstring(engine):
    rule = engine.registry.get("S3-003").rule
    assert rule.description == "S3 buckets should have versioning enabled."
    assert rule.controls == ["A1.2"]
    assert rule.enabled


def test_unknown_rule_raises(engine, context):
    with pytest.raises(RuleNotFoundError, match="not found in registry"):
        engine.execute_rule("NOPE", bucket_resource("b"), context)
    with pytest.raises(RuleNotFoundError):
        engine.get_remediation_steps("NOPE", bucket_resource("b"), context)
    with pytest.raises(RuleNotFoundError):
        engine.get_rule_metrics("NOPE")


# --- resource type matching ---

@pytest.mark.parametrize("pattern,resource_type,expected", [
    ("AWS::S3::Bucket", "AWS::S3::Bucket", True),
    ("AWS::S3::Bucket", "S3::Bucket", True),
    ("S3::Bucket", "AWS::S3::Bucket", True),
    ("AWS::S3::Bucket", "AWS::S3::AccessPoint", False),
])
def test_resource_type_matches(pattern, resource_type, expected):
    assert resource_type_matches(pattern, resource_type) is expected


def test_service_of():
    assert service_of("AWS::EC2::SecurityGroup") == "EC2"
    assert service_of("S3::Bucket") == "S3"


# --- planning ---

def test_plan_keeps_only_applicable_rules(engine, context):
    plan = engine.create_execution_plan([bucket_resource("b")], context, EngineConfig(parallel=False))
    assert plan.rules == ["S3-001", "S3-002", "S3-003"]
    assert plan.parallel_groups == [["S3-001"], ["S3-002"], ["S3-003"]]
    assert plan.estimated_duration == 3000
    assert [d.execution_order for d in plan.execution_order] == [0, 1, 2]


def test_plan_groups_by_max_concurrency(engine, context):
    resources = [bucket_resource("b"), security_group_resource("sg-1")]
    plan = engine.create_execution_plan(resources, context, EngineConfig(parallel=True, max_concurrency=2))
    assert plan.parallel_groups == [["S3-001", "S3-002"], ["S3-003", "SG-001"], ["SG-002"]]


def test_plan_can_be_restricted_to_rule_ids(engine, context):
    plan = engine.create_execution_plan([bucket_resource("b")], context, rule_ids=["S3-002"])
    assert plan.rules == ["S3-002"]
    with pytest.raises(RuleNotFoundError):
        engine.create_execution_plan([bucket_resource("b")], context, rule_ids=["S3-999"])


def test_disabled_rules_are_not_planned(engine, context):
    engine.registry.get("S3-002").rule.enabled = False
    plan = engine.create_execution_plan([bucket_resource("b")], context)
    assert plan.rules == ["S3-001", "S3-003"]


def test_dependencies_reorder_and_split_groups():
    registry = RuleRegistry()
    for rule in (StaticRule("A", dependencies=["C"]), StaticRule("B"), StaticRule("C")):
        registry.register_rule(rule)
    order = execution_order(registry.get_all_rules())
    assert [d.rule_id for d in order] == ["B", "C", "A"]
    groups = parallel_groups(order, EngineConfig(parallel=True, max_concurrency=5))
    assert groups == [["B", "C"], ["A"]]


def test_dependency_cycle_is_rejected(context):
    engine = static_engine(StaticRule("A", dependencies=["B"]), StaticRule("B", dependencies=["A"]))
    with pytest.raises(DependencyCycleError):
        engine.execute_rules([WIDGET], context)


# --- configuration ---

def test_validate_engine_config():
    assert validate_engine_config(EngineConfig()).valid
    result = validate_engine_config(EngineConfig(max_concurrency=0, timeout_seconds=0, retry_count=-1))
    assert not result.valid
    assert len(result.errors) == 3
    assert validate_engine_config(EngineConfig(parallel=True, max_concurrency=1)).warnings


def test_invalid_config_is_rejected_before_running(context):
    engine = static_engine(StaticRule("A"))
    with pytest.raises(InvalidConfigError):
        engine.execute_rules([WIDGET], context, EngineConfig(max_concurrency=0))
    assert engine.registry.get("A").usage_count == 0


def test_engine_config_from_dict_accepts_camel_case():
    config = EngineConfig.from_dict({"maxConcurrency": 3, "timeout": 10, "retries": 1, "includeEvidence": False})
    assert config.max_concurrency == 3
    assert config.timeout_seconds == 10
    assert config.retry_count == 1
    assert config.include_evidence is False
    with pytest.raises(ValueError):
        EngineConfig.from_dict({"unknownOption": True})


def test_clients_carry_timeout_and_retry_bounds(aws, context):
    rule = RulesEngine(aws).registry.get("S3-001").executor
    client = rule.client(bucket_resource("b"), context, EngineConfig(timeout_seconds=7, retry_count=2))
    assert client.meta.config.connect_timeout == 7
    assert client.meta.config.read_timeout == 7
    assert client.meta.config.retries["total_max_attempts"] == 3


# --- execution ---

def test_parallel_and_sequential_runs_agree(context):
    rules = [StaticRule(f"R{i}", passed=i % 2 == 0, delay=0.02 * (5 - i)) for i in range(5)]
    engine = static_engine(*rules)
    resources = [WIDGET, Resource(arn="arn:custom:widget/2", type="Custom::Widget")]

    sequential = engine.execute_rules(resources, context, EngineConfig(parallel=False))
    parallel = engine.execute_rules(resources, context, EngineConfig(parallel=True, max_concurrency=3))

    def content(run):
        return [
            (a.resource_arn, a.total_rules, a.passed_rules, a.compliance_score,
             a.overall_severity, [f.control_id for f in a.findings])
            for a in run.results
        ]

    assert content(sequential) == content(parallel)
    assert [f.control_id for f in parallel.results[0].findings] == ["R1", "R3"]


class TimedRule(StaticRule):
    """Records start/end times and the number of rules in flight."""

    def __init__(self, rule_id, tracker, delay=0.05):
        super().__init__(rule_id, delay=delay)
        self.tracker = tracker

    def check(self, resource, context, config):
        tracker = self.tracker
        with tracker["lock"]:
            tracker["in_flight"] += 1
            tracker["peak"] = max(tracker["peak"], tracker["in_flight"])
        start = time.perf_counter()
        try:
            return super().check(resource, context, config)
        finally:
            end = time.perf_counter()
            with tracker["lock"]:
                tracker["in_flight"] -= 1
                tracker["spans"][self.rule_id] = (start, end)


def test_parallel_groups_run_behind_a_barrier(context):
    tracker = {"lock": threading.Lock(), "in_flight": 0, "peak": 0, "spans": {}}
    engine = static_engine(*[TimedRule(f"T{i}", tracker) for i in range(5)])
    config = EngineConfig(parallel=True, max_concurrency=2)

    groups = engine.create_execution_plan([WIDGET], context, config).parallel_groups
    run = engine.execute_rules([WIDGET], context, config)

    assert run.results[0].total_rules == 5
    assert groups == [["T0", "T1"], ["T2", "T3"], ["T4"]]
    assert tracker["peak"] <= 2
    spans = tracker["spans"]
    for current, following in zip(groups, groups[1:]):
        last_end = max(spans[rule_id][1] for rule_id in current)
        first_start = min(spans[rule_id][0] for rule_id in following)
        assert last_end <= first_start


def test_failing_rule_does_not_stop_the_batch(context):
    engine = static_engine(StaticRule("OK"), StaticRule("BOOM", error=RuntimeError("boom")), StaticRule("LAST"))
    run = engine.execute_rules([WIDGET], context, EngineConfig(parallel=True, max_concurrency=2))

    agg = run.results[0]
    assert agg.total_rules == 3
    assert agg.failed_rules == 1
    finding = agg.findings[0]
    assert finding.control_id == "BOOM"
    assert finding.title == "Rule execution failed: boom"
    assert finding.severity == "high"


def test_inapplicable_rule_yields_skipped_result(engine, context):
    result = engine.execute_rule("SG-001", bucket_resource("b"), context)
    assert result.passed
    assert result.severity == "info"
    assert result.metadata["skipped"] is True
    assert result.metadata["reason"] == "Rule SG-001 is not applicable to resource type AWS::S3::Bucket"
    assert result.message == "Skipped: Rule SG-001 is not applicable to resource type AWS::S3::Bucket"
    assert engine.registry.get("SG-001").usage_count == 0


def test_direct_execute_and_engine_skip_alike(engine, context):
    direct = engine.registry.get("SG-001").executor.execute(bucket_resource("b"), context, EngineConfig())
    via_engine = engine.execute_rule("SG-001", bucket_resource("b"), context)
    assert direct.message == via_engine.message
    assert direct.metadata["reason"] == via_engine.metadata["reason"]
    assert direct.execution_time == via_engine.execution_time == 0.0


def test_access_denied_bucket_fails_instead_of_skipping(context):
    s3 = MagicMock()
    s3.head_bucket.side_effect = client_error("403", "HeadBucket")
    s3.get_bucket_encryption.side_effect = client_error("AccessDenied", "GetBucketEncryption")
    s3.get_public_access_block.side_effect = client_error("AccessDenied", "GetPublicAccessBlock")
    s3.get_bucket_policy.side_effect = client_error("AccessDenied", "GetBucketPolicy")
    s3.get_bucket_versioning.side_effect = client_error("AccessDenied", "GetBucketVersioning")
    engine = RulesEngine(session=mock_session(s3))

    run = engine.execute_rules([bucket_resource("locked")], context, EngineConfig(parallel=False))

    agg = run.results[0]
    assert run.stats.skipped_rules == 0
    assert agg.failed_rules == 3
    assert agg.compliance_score < 100.0
    assert all(f.severity == "high" for f in agg.findings)
    assert all("AccessDenied" in f.title for f in agg.findings)

    result = engine.execute_rule("S3-001", bucket_resource("locked"), context, EngineConfig(parallel=False))
    assert not result.passed
    assert result.severity == "high"
    assert "AccessDenied" in result.metadata["error"]


def test_missing_bucket_is_skipped_with_reason(engine, context, config):
    result = engine.execute_rule("S3-001", bucket_resource("does-not-exist"), context, config)
    assert result.passed
    assert result.metadata["skipped"] is True
    assert result.metadata["reason"] == "Resource arn:aws:s3:::does-not-exist not found"


def test_mixed_batch_statistics(engine, aws, context, config):
    create_plain_bucket(aws.client("s3"), "mixed")
    resources = [bucket_resource("mixed"), security_group_resource("sg-0000000000000dead")]

    run = engine.execute_rules(resources, context, config)
    stats = run.stats

    # 5 planned rules x 2 resources: the bucket runs 3 and skips the SG pair,
    # the missing group skips everything
    assert stats.total_rules == 10
    assert stats.skipped_rules == 7
    assert stats.executed_rules == stats.total_rules - stats.skipped_rules
    assert stats.passed_rules + stats.failed_rules + stats.skipped_rules == stats.total_rules
    assert stats.failed_rules == 3
    assert stats.findings_by_severity == {"high": 1, "critical": 1, "medium": 1}
    assert stats.findings_by_service == {"S3": 3}
    assert stats.total_execution_time > 0

    for agg in run.results:
        assert agg.passed_rules + agg.failed_rules == agg.total_rules


def test_usage_and_metrics_are_recorded(engine, aws, context, config):
    create_plain_bucket(aws.client("s3"), "metered")
    engine.execute_rules([bucket_resource("metered")], context, config)
    engine.execute_rule("S3-001", bucket_resource("metered"), context, config)

    entry = engine.registry.get("S3-001")
    assert entry.usage_count == 2
    assert entry.last_used is not None
    metrics = engine.get_rule_metrics("S3-001")
    assert metrics.execution_count == 2
    assert metrics.failure_count == 2
    assert metrics.success_rate == 0.0
    assert metrics.fastest_execution <= metrics.slowest_execution


def test_repeated_runs_are_idempotent(engine, aws, context, config):
    create_plain_bucket(aws.client("s3"), "stable")
    first = engine.execute_rule("S3-002", bucket_resource("stable"), context, config)
    second = engine.execute_rule("S3-002", bucket_resource("stable"), context, config)
    assert (first.passed, first.severity, first.message) == (second.passed, second.severity, second.message)


def test_remediation_steps_are_exposed(engine, context):
    steps = engine.get_remediation_steps("S3-001", bucket_resource("my-bucket"), context)
    assert steps[0].action == "Enable default encryption"
    assert "--bucket my-bucket" in steps[0].command
