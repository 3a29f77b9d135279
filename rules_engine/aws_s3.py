# rules_engine/aws_s3.py
"""
S3 compliance rules.

- Pure helpers accept plain dicts or API responses.
- Live helpers wrap one S3 call each; "configuration absent" error codes are
  returned as None, every other ClientError propagates to the rule template.
- Rules:
  * S3-001 default encryption
  * S3-002 complete public access block
  * S3-003 versioning enabled
"""

import json
from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from models import CheckOutcome, Evidence, RemediationStep

from .base import AWS_ERRORS, BaseRule, error_code, is_not_found

PUBLIC_ACCESS_BLOCK_FLAGS = (
    "BlockPublicAcls",
    "IgnorePublicAcls",
    "BlockPublicPolicy",
    "RestrictPublicBuckets",
)

# --- Pure rule helpers -----------------------------------------------------

def bucket_name_from_arn(arn: str) -> str:
    """arn:aws:s3:::bucket-name -> bucket-name"""
    parts = arn.split(":::", 1)
    return parts[1] if len(parts) == 2 else ""


def encryption_enabled(encryption: Optional[Dict[str, Any]]) -> bool:
    """
    Return True if any server-side encryption rule declares a default algorithm.
    """
    if not encryption:
        return False
    rules = encryption.get("ServerSideEncryptionConfiguration", {}).get("Rules", [])
    for rule in rules:
        if rule.get("ApplyServerSideEncryptionByDefault", {}).get("SSEAlgorithm"):
            return True
    return False


def public_access_fully_blocked(pab: Optional[Dict[str, Any]]) -> bool:
    """All four PublicAccessBlock settings must be True."""
    if not pab:
        return False
    return all(pab.get(flag) is True for flag in PUBLIC_ACCESS_BLOCK_FLAGS)


def bucket_policy_is_public(policy_text: str) -> bool:
    """
    Conservative check for public bucket policy patterns.

    - Flags statements with Effect Allow and Principal "*" or AWS "*".
    - This is intentionally simple; complex policies may require more analysis.
    """
    try:
        policy = json.loads(policy_text)
    except ValueError:
        return False
    for stmt in policy.get("Statement", []):
        if stmt.get("Effect") != "Allow":
            continue
        principal = stmt.get("Principal")
        if principal == "*" or principal == {"AWS": "*"}:
            return True
        if isinstance(principal, dict):
            aws_pr = principal.get("AWS")
            if aws_pr == "*" or aws_pr == ["*"]:
                return True
    return False

# --- Live AWS helpers -----------------------------------------------------

def get_bucket_encryption_live(s3, bucket_name: str) -> Optional[Dict[str, Any]]:
    """
    Return bucket encryption configuration or None if not set.
    """
    try:
        return s3.get_bucket_encryption(Bucket=bucket_name)
    except ClientError as e:
        if error_code(e) == "ServerSideEncryptionConfigurationNotFoundError":
            return None
        raise


def get_public_access_block_live(s3, bucket_name: str) -> Optional[Dict[str, Any]]:
    """
    Return PublicAccessBlock configuration or None if not set.
    """
    try:
        resp = s3.get_public_access_block(Bucket=bucket_name)
        return resp.get("PublicAccessBlockConfiguration", {})
    except ClientError as e:
        if error_code(e) == "NoSuchPublicAccessBlockConfiguration":
            return None
        raise


def get_bucket_policy_live(s3, bucket_name: str) -> Optional[str]:
    """
    Return the bucket policy JSON text or None if no policy is attached.
    """
    try:
        resp = s3.get_bucket_policy(Bucket=bucket_name)
        return resp.get("Policy", "")
    except ClientError as e:
        if error_code(e) == "NoSuchBucketPolicy":
            return None
        raise


def get_bucket_versioning_live(s3, bucket_name: str) -> Dict[str, Any]:
    return s3.get_bucket_versioning(Bucket=bucket_name)


def get_bucket_location_live(s3, bucket_name: str) -> str:
    resp = s3.get_bucket_location(Bucket=bucket_name)
    # us-east-1 buckets report a null constraint
    return resp.get("LocationConstraint") or "us-east-1"

# --- Rules ----------------------------------------------------------------

class S3Rule(BaseRule):
    """Shared plumbing for bucket-level checks."""

    frameworks = ["SOC2"]
    resource_types = ["AWS::S3::Bucket"]
    service = "S3"
    client_name = "s3"
    category = "storage"

    def can_access(self, resource, context, config) -> bool:
        bucket = bucket_name_from_arn(resource.arn)
        if not bucket:
            return False
        try:
            self.client(resource, context, config).head_bucket(Bucket=bucket)
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise


class S3DefaultEncryptionRule(S3Rule):
    """S3 buckets must have default encryption enabled."""

    rule_id = "S3-001"
    name = "S3 Bucket Default Encryption"
    severity = "high"
    controls = ["CC6.1"]

    def check(self, resource, context, config) -> CheckOutcome:
        s3 = self.client(resource, context, config)
        encryption = get_bucket_encryption_live(s3, bucket_name_from_arn(resource.arn))
        if encryption is None:
            return CheckOutcome(False, "S3 bucket does not have default encryption configured", "high")
        if encryption_enabled(encryption):
            return CheckOutcome(True, "S3 bucket has default encryption enabled")
        return CheckOutcome(False, "S3 bucket does not have default encryption enabled", "high")

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        s3 = self.client(resource, context, config)
        bucket = bucket_name_from_arn(resource.arn)
        evidence: List[Evidence] = []
        try:
            encryption = get_bucket_encryption_live(s3, bucket)
            if encryption is None:
                evidence.append(self.evidence(
                    "No default encryption configuration",
                    {"bucketName": bucket, "encryptionRules": None},
                ))
            else:
                evidence.append(self.evidence(
                    "S3 bucket encryption configuration",
                    {
                        "bucketName": bucket,
                        "encryptionRules": encryption.get("ServerSideEncryptionConfiguration", {}).get("Rules"),
                    },
                ))
            evidence.append(self.evidence(
                "S3 bucket location",
                {"bucketName": bucket, "location": get_bucket_location_live(s3, bucket)},
            ))
        except AWS_ERRORS as e:
            evidence.append(self.error_evidence(
                "Error retrieving encryption configuration", e, bucketName=bucket,
            ))
        return evidence

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["Encryption is properly configured"]
        return [
            "Enable default encryption using AES-256 (server-side encryption)",
            "Consider using AWS KMS for additional key management features",
            "Apply encryption to existing objects using S3 batch operations",
            "Update bucket policy to enforce encryption for new uploads",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        bucket = bucket_name_from_arn(resource.arn)
        return [
            RemediationStep(
                order=1,
                action="Enable default encryption",
                description="Enable AES-256 default encryption for the S3 bucket",
                risk_level="low",
                command=(
                    f"aws s3api put-bucket-encryption --bucket {bucket} "
                    "--server-side-encryption-configuration "
                    "'{\"Rules\": [{\"ApplyServerSideEncryptionByDefault\": {\"SSEAlgorithm\": \"AES256\"}}]}'"
                ),
                terraform=(
                    'resource "aws_s3_bucket_server_side_encryption_configuration" "this" {\n'
                    f'  bucket = "{bucket}"\n'
                    "  rule {\n"
                    "    apply_server_side_encryption_by_default {\n"
                    '      sse_algorithm = "AES256"\n'
                    "    }\n"
                    "  }\n"
                    "}"
                ),
            ),
        ]


class S3PublicAccessBlockRule(S3Rule):
    """S3 buckets must have all four public access block settings enabled."""

    rule_id = "S3-002"
    name = "S3 Bucket Public Access Block"
    severity = "critical"
    controls = ["CC6.6"]

    def check(self, resource, context, config) -> CheckOutcome:
        s3 = self.client(resource, context, config)
        pab = get_public_access_block_live(s3, bucket_name_from_arn(resource.arn))
        if pab is None:
            return CheckOutcome(False, "S3 bucket does not have public access block configuration", "critical")
        if public_access_fully_blocked(pab):
            return CheckOutcome(True, "S3 bucket has public access blocked")
        return CheckOutcome(
            False, "S3 bucket does not have complete public access blocking enabled", "critical",
        )

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        s3 = self.client(resource, context, config)
        bucket = bucket_name_from_arn(resource.arn)
        evidence: List[Evidence] = []
        try:
            pab = get_public_access_block_live(s3, bucket)
            evidence.append(self.evidence(
                "S3 bucket public access block configuration",
                {
                    "bucketName": bucket,
                    "configuration": pab,
                    "missingSettings": [f for f in PUBLIC_ACCESS_BLOCK_FLAGS if not (pab or {}).get(f)],
                },
            ))
        except AWS_ERRORS as e:
            evidence.append(self.error_evidence(
                "Error retrieving public access block configuration", e, bucketName=bucket,
            ))

        try:
            policy_text = get_bucket_policy_live(s3, bucket)
            if policy_text is not None:
                try:
                    policy = json.loads(policy_text or "{}")
                except ValueError:
                    policy = policy_text
                evidence.append(self.evidence(
                    "S3 bucket policy",
                    {"bucketName": bucket, "policy": policy, "public": bucket_policy_is_public(policy_text)},
                    evidence_type="policy",
                ))
        except AWS_ERRORS as e:
            evidence.append(self.error_evidence(
                "Error retrieving bucket policy", e, evidence_type="policy", bucketName=bucket,
            ))
        return evidence

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["Public access is properly blocked"]
        return [
            "Enable all public access block settings",
            "Block public ACLs and policies",
            "Ignore public ACLs",
            "Restrict public buckets",
            "Review and remove any public bucket policies",
            "Audit existing public objects and remove if necessary",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        bucket = bucket_name_from_arn(resource.arn)
        return [
            RemediationStep(
                order=1,
                action="Enable public access block",
                description="Enable all public access block settings for the S3 bucket",
                risk_level="low",
                command=(
                    f"aws s3api put-public-access-block --bucket {bucket} "
                    "--public-access-block-configuration "
                    "BlockPublicAcls=true,IgnorePublicAcls=true,BlockPublicPolicy=true,RestrictPublicBuckets=true"
                ),
                terraform=(
                    'resource "aws_s3_bucket_public_access_block" "this" {\n'
                    f'  bucket                  = "{bucket}"\n'
                    "  block_public_acls       = true\n"
                    "  block_public_policy     = true\n"
                    "  ignore_public_acls      = true\n"
                    "  restrict_public_buckets = true\n"
                    "}"
                ),
            ),
        ]


class S3VersioningRule(S3Rule):
    """S3 buckets should have versioning enabled."""

    rule_id = "S3-003"
    name = "S3 Bucket Versioning"
    severity = "medium"
    category = "resilience"
    controls = ["A1.2"]

    def check(self, resource, context, config) -> CheckOutcome:
        s3 = self.client(resource, context, config)
        status = get_bucket_versioning_live(s3, bucket_name_from_arn(resource.arn)).get("Status")
        if status == "Enabled":
            return CheckOutcome(True, "S3 bucket has versioning enabled")
        return CheckOutcome(False, f"S3 bucket versioning is {status or 'not enabled'}", "medium")

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        s3 = self.client(resource, context, config)
        bucket = bucket_name_from_arn(resource.arn)
        try:
            versioning = get_bucket_versioning_live(s3, bucket)
        except AWS_ERRORS as e:
            return [self.error_evidence("Error retrieving versioning configuration", e, bucketName=bucket)]
        return [self.evidence(
            "S3 bucket versioning configuration",
            {"bucketName": bucket, "status": versioning.get("Status"), "mfaDelete": versioning.get("MFADelete")},
        )]

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["Versioning is properly enabled"]
        return [
            "Enable versioning on the S3 bucket",
            "Consider enabling MFA delete for additional protection",
            "Implement lifecycle policies to manage old versions",
            "Monitor storage costs from versioning",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        bucket = bucket_name_from_arn(resource.arn)
        return [
            RemediationStep(
                order=1,
                action="Enable versioning",
                description="Enable versioning on the S3 bucket",
                risk_level="low",
                command=f"aws s3api put-bucket-versioning --bucket {bucket} --versioning-configuration Status=Enabled",
                terraform=(
                    'resource "aws_s3_bucket_versioning" "this" {\n'
                    f'  bucket = "{bucket}"\n'
                    "  versioning_configuration {\n"
                    '    status = "Enabled"\n'
                    "  }\n"
                    "}"
                ),
            ),
        ]


S3_RULES = [S3DefaultEncryptionRule, S3PublicAccessBlockRule, S3VersioningRule]
