# rules_engine/aws_cloudtrail.py
"""
CloudTrail rules. All three evaluate the account's trail list as a whole.

- CT-001 at least one active multi-region trail
- CT-002 trail log buckets are immutable (placeholder, always passes)
- CT-003 log file validation on every trail
"""

from typing import Any, Dict, List

from models import CheckOutcome, Evidence, RemediationStep

from .base import AWS_ERRORS, BaseRule

# --- Live AWS helpers -----------------------------------------------------

def describe_trails_live(cloudtrail) -> List[Dict[str, Any]]:
    return cloudtrail.describe_trails().get("trailList", [])


def trail_is_logging_live(cloudtrail, trail: Dict[str, Any]) -> bool:
    """A trail is active when it delivers to a bucket and logging is started."""
    if not trail.get("Name") or not trail.get("S3BucketName"):
        return False
    return bool(cloudtrail.get_trail_status(Name=trail["Name"]).get("IsLogging"))


def check_bucket_immutability(bucket_name: str) -> bool:
    """
    Placeholder: always True.

    The intended checks (versioning, lifecycle retention, MFA delete, no public
    access) are pending product clarification.
    """
    return True

# --- Rules ----------------------------------------------------------------

class CloudTrailRule(BaseRule):
    frameworks = ["SOC2"]
    resource_types = ["AWS::CloudTrail::Trail"]
    service = "CloudTrail"
    client_name = "cloudtrail"
    category = "logging"

    def trails(self, resource, context, config) -> List[Dict[str, Any]]:
        return describe_trails_live(self.client(resource, context, config))

    def can_access(self, resource, context, config) -> bool:
        # trails are evaluated account-wide, so only access errors matter here
        self.trails(resource, context, config)
        return True


class CloudTrailMultiRegionRule(CloudTrailRule):
    """CloudTrail must be enabled and configured for multi-region."""

    rule_id = "CT-001"
    name = "CloudTrail Multi-Region"
    severity = "critical"
    controls = ["CC7.2"]

    def check(self, resource, context, config) -> CheckOutcome:
        cloudtrail = self.client(resource, context, config)
        active = [
            t for t in describe_trails_live(cloudtrail)
            if t.get("IsMultiRegionTrail") is True and trail_is_logging_live(cloudtrail, t)
        ]
        if active:
            return CheckOutcome(True, f"Found {len(active)} active multi-region CloudTrail(s)")
        return CheckOutcome(False, "No active multi-region CloudTrail found", "critical")

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        cloudtrail = self.client(resource, context, config)
        try:
            trails = describe_trails_live(cloudtrail)
        except AWS_ERRORS as e:
            return [self.error_evidence("Error retrieving CloudTrail configuration", e)]

        evidence = [self.evidence(
            "CloudTrail trails configuration",
            {
                "totalTrails": len(trails),
                "multiRegionTrails": [t.get("Name") for t in trails if t.get("IsMultiRegionTrail") is True],
                "singleRegionTrails": [t.get("Name") for t in trails if t.get("IsMultiRegionTrail") is not True],
                "trails": [
                    {
                        "name": t.get("Name"),
                        "isMultiRegion": t.get("IsMultiRegionTrail"),
                        "s3BucketName": t.get("S3BucketName"),
                        "homeRegion": t.get("HomeRegion"),
                        "logFileValidationEnabled": t.get("LogFileValidationEnabled"),
                    }
                    for t in trails
                ],
            },
        )]
        for trail in trails:
            if not trail.get("Name"):
                continue
            try:
                status = cloudtrail.get_trail_status(Name=trail["Name"])
                evidence.append(self.evidence(
                    f"CloudTrail {trail['Name']} status",
                    {
                        "trailName": trail["Name"],
                        "isLogging": status.get("IsLogging"),
                        "latestDeliveryTime": status.get("LatestDeliveryTime"),
                        "startLoggingTime": status.get("StartLoggingTime"),
                        "stopLoggingTime": status.get("StopLoggingTime"),
                    },
                ))
            except AWS_ERRORS as e:
                evidence.append(self.error_evidence(
                    f"Error getting CloudTrail {trail['Name']} status", e, trailName=trail["Name"],
                ))
        return evidence

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["Multi-region CloudTrail is properly configured"]
        return [
            "Enable multi-region CloudTrail logging",
            "Configure CloudTrail to log to an S3 bucket",
            "Enable log file validation for integrity",
            "Set up CloudWatch Logs integration",
            "Ensure CloudTrail is enabled in all regions",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        return [
            RemediationStep(
                order=1,
                action="Create S3 bucket for CloudTrail logs",
                description="Create an S3 bucket to store CloudTrail logs",
                risk_level="low",
                command="aws s3api create-bucket --bucket cloudtrail-logs-$(date +%s) --region us-east-1",
            ),
            RemediationStep(
                order=2,
                action="Create multi-region CloudTrail",
                description="Create a multi-region CloudTrail trail",
                risk_level="low",
                command=(
                    "aws cloudtrail create-trail --name multi-region-trail "
                    "--s3-bucket-name cloudtrail-logs-bucket --is-multi-region-trail "
                    "--enable-log-file-validation"
                ),
                terraform=(
                    'resource "aws_cloudtrail" "multi_region" {\n'
                    '  name                          = "multi-region-trail"\n'
                    "  s3_bucket_name                = aws_s3_bucket.cloudtrail_logs.id\n"
                    "  include_global_service_events = true\n"
                    "  is_multi_region_trail         = true\n"
                    "  enable_log_file_validation    = true\n"
                    "}"
                ),
            ),
            RemediationStep(
                order=3,
                action="Start CloudTrail logging",
                description="Start logging for the CloudTrail trail",
                risk_level="low",
                command="aws cloudtrail start-logging --name multi-region-trail",
            ),
        ]


class CloudTrailImmutableLogsRule(CloudTrailRule):
    """CloudTrail logs should be stored in an immutable S3 bucket."""

    rule_id = "CT-002"
    name = "CloudTrail Immutable Logs"
    severity = "high"
    controls = ["CC7.2"]

    def check(self, resource, context, config) -> CheckOutcome:
        for trail in self.trails(resource, context, config):
            bucket = trail.get("S3BucketName")
            if bucket and not check_bucket_immutability(bucket):
                return CheckOutcome(
                    False,
                    f"CloudTrail S3 bucket {bucket} is not properly configured for immutability",
                    "high",
                    metadata={"placeholder": True},
                )
        return CheckOutcome(
            True,
            "All CloudTrail S3 buckets are properly configured for immutability",
            metadata={"placeholder": True},
        )

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        try:
            trails = self.trails(resource, context, config)
        except AWS_ERRORS as e:
            return [self.error_evidence("Error retrieving CloudTrail configuration", e)]
        return [
            self.evidence(
                f"CloudTrail {t.get('Name')} S3 bucket configuration",
                {
                    "trailName": t.get("Name"),
                    "s3BucketName": t.get("S3BucketName"),
                    "logFileValidationEnabled": t.get("LogFileValidationEnabled"),
                    "kmsKeyId": t.get("KmsKeyId"),
                },
            )
            for t in trails if t.get("S3BucketName")
        ]

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["CloudTrail logs are stored in immutable S3 buckets"]
        return [
            "Enable S3 bucket versioning for CloudTrail logs",
            "Configure S3 bucket lifecycle policies to prevent deletion",
            "Enable S3 bucket MFA delete protection",
            "Use S3 bucket policies to prevent public access",
            "Enable S3 bucket encryption for CloudTrail logs",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        return [
            RemediationStep(
                order=1,
                action="Enable S3 bucket versioning",
                description="Enable versioning on the CloudTrail S3 bucket",
                risk_level="low",
                command=(
                    "aws s3api put-bucket-versioning --bucket CLOUDTRAIL-BUCKET "
                    "--versioning-configuration Status=Enabled"
                ),
            ),
            RemediationStep(
                order=2,
                action="Configure S3 bucket lifecycle policy",
                description="Configure lifecycle policy to prevent deletion of CloudTrail logs",
                risk_level="low",
                command=(
                    "aws s3api put-bucket-lifecycle-configuration --bucket CLOUDTRAIL-BUCKET "
                    "--lifecycle-configuration file://lifecycle.json"
                ),
            ),
        ]


class CloudTrailLogValidationRule(CloudTrailRule):
    """Every CloudTrail trail should have log file validation enabled."""

    rule_id = "CT-003"
    name = "CloudTrail Log File Validation"
    severity = "high"
    controls = ["CC7.2"]

    def check(self, resource, context, config) -> CheckOutcome:
        trails = self.trails(resource, context, config)
        unvalidated = [t for t in trails if t.get("LogFileValidationEnabled") is not True]
        # an account without trails has nothing validating its logs
        if trails and not unvalidated:
            return CheckOutcome(True, "All CloudTrail trails have log file validation enabled")
        names = ", ".join(t.get("Name", "") for t in unvalidated)
        return CheckOutcome(False, f"CloudTrail trails without log file validation: {names}", "high")

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        try:
            trails = self.trails(resource, context, config)
        except AWS_ERRORS as e:
            return [self.error_evidence("Error retrieving CloudTrail configuration", e)]
        return [self.evidence(
            "CloudTrail log file validation status",
            {
                "totalTrails": len(trails),
                "trailsWithValidation": [t.get("Name") for t in trails if t.get("LogFileValidationEnabled") is True],
                "trailsWithoutValidation": [
                    t.get("Name") for t in trails if t.get("LogFileValidationEnabled") is not True
                ],
            },
        )]

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["CloudTrail log file validation is properly enabled"]
        return [
            "Enable log file validation for all CloudTrail trails",
            "Log file validation helps detect tampering with CloudTrail log files",
            "Consider implementing automated monitoring for log file integrity",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        return [
            RemediationStep(
                order=1,
                action="Enable log file validation",
                description="Enable log file validation for CloudTrail trails",
                risk_level="low",
                command="aws cloudtrail update-trail --name TRAIL-NAME --enable-log-file-validation",
                terraform=(
                    'resource "aws_cloudtrail" "this" {\n'
                    '  name                       = "example-trail"\n'
                    "  s3_bucket_name             = aws_s3_bucket.cloudtrail_logs.id\n"
                    "  enable_log_file_validation = true\n"
                    "}"
                ),
            ),
        ]


CLOUDTRAIL_RULES = [CloudTrailMultiRegionRule, CloudTrailImmutableLogsRule, CloudTrailLogValidationRule]
