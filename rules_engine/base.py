# rules_engine/base.py
"""
Rule executor contract.

Every built-in rule subclasses BaseRule and fills in the hooks:
  * check: issue read-only AWS calls and return a CheckOutcome
  * collect_evidence: package the same state as Evidence items
  * recommendations: fixed guidance strings for pass/fail
  * remediation_steps: advisory RemediationStep list
  * can_access: existence test used by validate (False only for "not found")

execute() is the shared template: it never raises, converting any failure
into a failed "high" result with the error text in metadata["error"].
"""

import logging
import threading
import time
from typing import Any, Dict, List, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from config import ERROR_SEVERITY, RESOURCE_TYPE_NAMESPACE
from models import (
    CheckOutcome,
    EngineConfig,
    Evidence,
    ExecutionContext,
    RemediationStep,
    Resource,
    RuleExecutionResult,
    RuleMetadata,
    utc_timestamp,
)

logger = logging.getLogger(__name__)

# boto3.Session.client() is not thread-safe
_CLIENT_LOCK = threading.Lock()

AWS_ERRORS = (ClientError, BotoCoreError)

# Error codes meaning the resource definitely does not exist
NOT_FOUND_CODES = {
    "404",
    "NotFound",
    "NoSuchBucket",
    "NoSuchEntity",
    "InvalidGroup.NotFound",
    "InvalidGroupId.Malformed",
    "TrailNotFoundException",
}


# --- Resource type helpers ------------------------------------------------

def normalize_resource_type(resource_type: str) -> str:
    """Strip the optional "AWS::" namespace prefix."""
    if resource_type.startswith(RESOURCE_TYPE_NAMESPACE):
        return resource_type[len(RESOURCE_TYPE_NAMESPACE):]
    return resource_type


def resource_type_matches(pattern: str, resource_type: str) -> bool:
    """
    Return True if resource_type equals the pattern (with or without the
    namespace prefix) or ends with it.
    """
    if normalize_resource_type(pattern) == normalize_resource_type(resource_type):
        return True
    return resource_type.endswith(pattern)


def service_of(resource_type: str) -> str:
    """Return the service segment of a type tag ("AWS::S3::Bucket" -> "S3")."""
    return normalize_resource_type(resource_type).split("::")[0]


def error_code(exc: BaseException) -> Optional[str]:
    """Return the AWS error code carried by a botocore ClientError, if any."""
    if isinstance(exc, ClientError):
        return exc.response.get("Error", {}).get("Code")
    return None


def is_not_found(exc: BaseException) -> bool:
    return error_code(exc) in NOT_FOUND_CODES


def skipped_result(rule_id: str, resource_arn: str, reason: str) -> RuleExecutionResult:
    """Passing, zero-duration result for a rule that did not run against the resource."""
    return RuleExecutionResult(
        rule_id=rule_id,
        resource_arn=resource_arn,
        passed=True,
        severity="info",
        message=f"Skipped: {reason}",
        metadata={"skipped": True, "reason": reason, "timestamp": utc_timestamp()},
        execution_time=0.0,
    )


# --- Base rule ------------------------------------------------------------

class BaseRule:
    """Template for a single compliance check bound to one AWS service."""

    rule_id = "UNSET"
    name = ""
    description = ""
    frameworks: List[str] = []
    controls: List[str] = []
    category = ""
    severity = "medium"
    resource_types: List[str] = []
    service = ""
    client_name = ""
    dependencies: List[str] = []

    def __init__(self, session: Optional[boto3.Session] = None):
        self.session = session or boto3.Session()
        self._clients: Dict[Any, Any] = {}

    # -- public contract --

    def execute(self, resource: Resource, context: ExecutionContext,
                config: EngineConfig) -> RuleExecutionResult:
        start = time.perf_counter()
        try:
            if not self.supports(resource.type):
                return self.skipped_result(resource.arn, self.unsupported_reason(resource))

            outcome = self.check(resource, context, config)
            evidence = self.collect_evidence(resource, context, config) if config.include_evidence else []
            recommendations = (
                self.recommendations(resource, context, outcome)
                if config.include_recommendations else []
            )
            elapsed = _elapsed_ms(start)
            return RuleExecutionResult(
                rule_id=self.rule_id,
                resource_arn=resource.arn,
                passed=outcome.passed,
                severity=None if outcome.passed else (outcome.severity or self.severity),
                message=outcome.message,
                evidence=evidence,
                recommendations=recommendations,
                metadata={
                    **outcome.metadata,
                    "rule_name": self.name,
                    "frameworks": list(self.frameworks),
                    "service": self.service,
                    "dry_run": config.dry_run,
                    "execution_time": elapsed,
                    "timestamp": utc_timestamp(),
                },
                execution_time=elapsed,
            )
        except Exception as exc:
            elapsed = _elapsed_ms(start)
            logger.warning("Rule %s failed on %s: %s", self.rule_id, resource.arn, exc)
            return RuleExecutionResult(
                rule_id=self.rule_id,
                resource_arn=resource.arn,
                passed=False,
                severity=ERROR_SEVERITY,
                message=f"Rule execution failed: {exc}",
                evidence=[],
                recommendations=["Review rule configuration and resource permissions"],
                metadata={
                    "error": str(exc),
                    "rule_name": self.name,
                    "service": self.service,
                    "execution_time": elapsed,
                    "timestamp": utc_timestamp(),
                },
                execution_time=elapsed,
            )

    def skip_reason(self, resource: Resource, context: ExecutionContext,
                    config: Optional[EngineConfig] = None) -> Optional[str]:
        """
        Return why this rule should not run against the resource, or None.

        Only an unsupported type, a service mismatch or a definite "not found"
        answer yields a reason. Any other AWS error from can_access propagates,
        so the caller can run the rule and report the error as a failure.
        """
        if not self.supports(resource.type):
            return self.unsupported_reason(resource)
        resource_service = service_of(resource.type)
        if resource_service != self.service:
            return f"Rule {self.rule_id} covers {self.service}, not {resource_service}"
        if not self.can_access(resource, context, config or EngineConfig()):
            return f"Resource {resource.arn} not found"
        return None

    def validate(self, resource: Resource, context: ExecutionContext,
                 config: Optional[EngineConfig] = None) -> bool:
        """
        True if the rule should run: the type is supported, the service matches
        and the resource exists. An access or transport error counts as True so
        that execute() reports it.
        """
        try:
            return self.skip_reason(resource, context, config) is None
        except AWS_ERRORS as exc:
            logger.warning("Access check of %s on %s failed: %s", self.rule_id, resource.arn, exc)
            return True

    def unsupported_reason(self, resource: Resource) -> str:
        return f"Rule {self.rule_id} is not applicable to resource type {resource.type}"

    def get_remediation_steps(self, resource: Resource,
                              context: ExecutionContext) -> List[RemediationStep]:
        return self.remediation_steps(resource, context)

    def get_metadata(self) -> RuleMetadata:
        return RuleMetadata(
            rule_id=self.rule_id,
            name=self.name,
            frameworks=list(self.frameworks),
            severity=self.severity,
            resource_types=list(self.resource_types),
            service=self.service,
            description=self.description or (self.__doc__ or "").strip(),
            controls=list(self.controls),
            category=self.category,
        )

    def supports(self, resource_type: str) -> bool:
        return any(resource_type_matches(t, resource_type) for t in self.resource_types)

    # -- hooks --

    def check(self, resource: Resource, context: ExecutionContext,
              config: EngineConfig) -> CheckOutcome:
        raise NotImplementedError

    def collect_evidence(self, resource: Resource, context: ExecutionContext,
                         config: EngineConfig) -> List[Evidence]:
        return []

    def recommendations(self, resource: Resource, context: ExecutionContext,
                        outcome: CheckOutcome) -> List[str]:
        return []

    def remediation_steps(self, resource: Resource,
                          context: ExecutionContext) -> List[RemediationStep]:
        return []

    def can_access(self, resource: Resource, context: ExecutionContext,
                   config: EngineConfig) -> bool:
        """
        False only when AWS says the resource does not exist.

        Other AWS errors must propagate.
        """
        return True

    # -- helpers for subclasses --

    def client(self, resource: Resource, context: ExecutionContext, config: EngineConfig):
        """
        Return a cached boto3 client for this rule's service.

        Timeout and retry bounds come from the engine configuration.
        """
        region = resource.region or context.region or None
        key = (region, config.timeout_seconds, config.retry_count)
        cached = self._clients.get(key)
        if cached is not None:
            return cached
        botocore_config = Config(
            connect_timeout=config.timeout_seconds,
            read_timeout=config.timeout_seconds,
            retries={"total_max_attempts": config.retry_count + 1, "mode": "standard"},
        )
        with _CLIENT_LOCK:
            cached = self._clients.get(key)
            if cached is None:
                cached = self.session.client(self.client_name, region_name=region, config=botocore_config)
                self._clients[key] = cached
        return cached

    def skipped_result(self, resource_arn: str, reason: str) -> RuleExecutionResult:
        return skipped_result(self.rule_id, resource_arn, reason)

    def evidence(self, description: str, data: Dict[str, Any],
                 evidence_type: str = "configuration") -> Evidence:
        return Evidence(
            type=evidence_type,
            description=description,
            data=data,
            source=f"AWS {self.service} API",
        )

    def error_evidence(self, description: str, exc: BaseException,
                       evidence_type: str = "configuration", **data: Any) -> Evidence:
        data.update({"error": str(exc), "code": error_code(exc)})
        return self.evidence(description, data, evidence_type)


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 3)
