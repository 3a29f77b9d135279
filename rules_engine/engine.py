# rules_engine/engine.py
"""
Rules engine: the public entry point.

- Builds one execution plan per batch and runs it against every resource in
  input order.
- Parallel mode submits each plan group to a thread pool and waits for the
  whole group before starting the next one; results keep plan order.
- Usage counters are recorded on the calling thread after each group returns.
- Per-rule failures come back as failed results; only an unknown rule id or an
  invalid configuration raises.
"""

import logging
import time
from concurrent.futures import ThreadPoolExecutor
from typing import Iterable, List, Optional, Sequence, Tuple

import boto3

from models import (
    BatchStats,
    ConfigValidation,
    EngineConfig,
    EngineRun,
    ExecutionContext,
    ExecutionPlan,
    RegistryEntry,
    RemediationStep,
    Resource,
    RuleExecutionResult,
    RulePerformanceMetrics,
)

from .aggregation import aggregate_resource, calculate_stats
from .aws_cloudtrail import CLOUDTRAIL_RULES
from .aws_ec2 import EC2_RULES
from .aws_iam import IAM_RULES
from .aws_s3 import S3_RULES
from .base import skipped_result
from .errors import InvalidConfigError
from .planner import create_execution_plan
from .registry import RuleRegistry

logger = logging.getLogger(__name__)

BUILTIN_RULES = S3_RULES + IAM_RULES + EC2_RULES + CLOUDTRAIL_RULES


def validate_engine_config(config: EngineConfig) -> ConfigValidation:
    errors: List[str] = []
    warnings: List[str] = []
    if config.max_concurrency < 1:
        errors.append(f"max_concurrency must be at least 1 (got {config.max_concurrency})")
    if config.timeout_seconds <= 0:
        errors.append(f"timeout_seconds must be positive (got {config.timeout_seconds})")
    if config.retry_count < 0:
        errors.append(f"retry_count must not be negative (got {config.retry_count})")
    if config.parallel and config.max_concurrency == 1:
        warnings.append("parallel is enabled but max_concurrency is 1; rules will run sequentially")
    return ConfigValidation(valid=not errors, errors=errors, warnings=warnings)


class RulesEngine:
    """Registers rules, plans and runs them, and aggregates the outcome."""

    def __init__(self, session: Optional[boto3.Session] = None,
                 registry: Optional[RuleRegistry] = None, register_defaults: bool = True):
        self.session = session or boto3.Session()
        self.registry = registry if registry is not None else RuleRegistry()
        if register_defaults:
            for rule_cls in BUILTIN_RULES:
                self.registry.register_rule(rule_cls(self.session))

    @staticmethod
    def default_config() -> EngineConfig:
        return EngineConfig()

    # --- registry surface ---

    def register_rule(self, executor) -> RegistryEntry:
        return self.registry.register_rule(executor)

    def get_all_rules(self) -> List[RegistryEntry]:
        return self.registry.get_all_rules()

    def get_rules_for_service(self, service: str) -> List[RegistryEntry]:
        return self.registry.get_rules_for_service(service)

    def get_rules_for_framework(self, framework: str) -> List[RegistryEntry]:
        return self.registry.get_rules_for_framework(framework)

    def get_rule_metrics(self, rule_id: str) -> RulePerformanceMetrics:
        return self.registry.get(rule_id).metrics

    def supported_services(self) -> List[str]:
        return self.registry.supported_services()

    def supported_resource_types(self) -> List[str]:
        return self.registry.supported_resource_types()

    def get_remediation_steps(self, rule_id: str, resource: Resource,
                              context: ExecutionContext) -> List[RemediationStep]:
        return self.registry.get(rule_id).executor.get_remediation_steps(resource, context)

    # --- planning ---

    def create_execution_plan(self, resources: Sequence[Resource], context: ExecutionContext,
                              config: Optional[EngineConfig] = None,
                              rule_ids: Optional[Iterable[str]] = None) -> ExecutionPlan:
        config = config or self.default_config()
        entries = self.registry.get_enabled_rules()
        if rule_ids is not None:
            wanted = [self.registry.get(rid).rule_id for rid in rule_ids]
            entries = [e for e in entries if e.rule_id in wanted]
        return create_execution_plan(entries, resources, context, config)

    # --- execution ---

    def execute_rules(self, resources: Sequence[Resource], context: ExecutionContext,
                      config: Optional[EngineConfig] = None,
                      rule_ids: Optional[Iterable[str]] = None) -> EngineRun:
        config = config or self.default_config()
        validation = validate_engine_config(config)
        if not validation.valid:
            raise InvalidConfigError(validation.errors)
        for warning in validation.warnings:
            logger.warning(warning)

        start = time.perf_counter()
        plan = self.create_execution_plan(resources, context, config, rule_ids)
        aggregations = []
        all_results: List[RuleExecutionResult] = []

        pool = ThreadPoolExecutor(max_workers=config.max_concurrency) if config.parallel else None
        try:
            for resource in resources:
                results = self._execute_for_resource(resource, context, config, plan, pool)
                all_results.extend(results)
                aggregation = aggregate_resource(resource, results, self.registry, context.tenant_id)
                aggregations.append(aggregation)
                logger.debug("%s: %s", resource.arn, aggregation.summary)
        finally:
            if pool is not None:
                pool.shutdown(wait=True)

        elapsed = round((time.perf_counter() - start) * 1000, 3)
        stats = calculate_stats(all_results, elapsed)
        _log_stats(stats, len(resources))
        return EngineRun(results=aggregations, stats=stats)

    def execute_rule(self, rule_id: str, resource: Resource, context: ExecutionContext,
                     config: Optional[EngineConfig] = None) -> RuleExecutionResult:
        """
        Run one rule against one resource.

        Raises RuleNotFoundError for an unknown id. An inapplicable or missing
        resource yields a passing result flagged as skipped; an access error
        yields a failed result.
        """
        entry = self.registry.get(rule_id)
        result, executed = self._run(entry, resource, context, config or self.default_config())
        if executed:
            self.registry.record_usage(rule_id, result)
        return result

    def _execute_for_resource(self, resource: Resource, context: ExecutionContext, config: EngineConfig,
                              plan: ExecutionPlan, pool: Optional[ThreadPoolExecutor]) -> List[RuleExecutionResult]:
        results: List[RuleExecutionResult] = []
        for group in plan.parallel_groups:
            entries = [self.registry.get(rule_id) for rule_id in group]
            if pool is None or len(entries) == 1:
                outcomes = [self._run(e, resource, context, config) for e in entries]
            else:
                futures = [pool.submit(self._run, e, resource, context, config) for e in entries]
                # barrier: the next group starts only after all of these finish
                outcomes = [f.result() for f in futures]
            for entry, (result, executed) in zip(entries, outcomes):
                if executed:
                    self.registry.record_usage(entry.rule_id, result)
                results.append(result)
        return results

    def _run(self, entry: RegistryEntry, resource: Resource, context: ExecutionContext,
             config: EngineConfig) -> Tuple[RuleExecutionResult, bool]:
        executor = entry.executor
        try:
            reason = executor.skip_reason(resource, context, config)
        except Exception as exc:
            # access denied or unreachable: execute() reports it as a failed result
            logger.warning("Access check of %s on %s failed: %s", entry.rule_id, resource.arn, exc)
            reason = None
        if reason is not None:
            logger.debug("Skipping %s on %s: %s", entry.rule_id, resource.arn, reason)
            return skipped_result(entry.rule_id, resource.arn, reason), False
        return executor.execute(resource, context, config), True


def _log_stats(stats: BatchStats, resource_count: int) -> None:
    logger.info(
        "Evaluated %d resources: %d rule results (%d passed, %d failed, %d skipped) in %.1f ms",
        resource_count, stats.total_rules, stats.passed_rules, stats.failed_rules,
        stats.skipped_rules, stats.total_execution_time,
    )
