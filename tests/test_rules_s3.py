# tests/test_rules_s3.py
"""
S3 rule tests.

- Pure helpers are tested with plain dicts.
- Live checks run against moto's mocked S3.
"""

import json
from unittest.mock import MagicMock

from conftest import bucket_resource, client_error, create_plain_bucket, mock_session
from models import EngineConfig
from rules_engine.aws_s3 import (
    S3DefaultEncryptionRule,
    S3PublicAccessBlockRule,
    S3VersioningRule,
    bucket_name_from_arn,
    bucket_policy_is_public,
    encryption_enabled,
    public_access_fully_blocked,
)

FULL_BLOCK = {
    "BlockPublicAcls": True,
    "IgnorePublicAcls": True,
    "BlockPublicPolicy": True,
    "RestrictPublicBuckets": True,
}


def test_bucket_name_from_arn():
    assert bucket_name_from_arn("arn:aws:s3:::my-bucket") == "my-bucket"
    assert bucket_name_from_arn("not-an-arn") == ""


def test_encryption_enabled_requires_an_algorithm():
    assert not encryption_enabled(None)
    assert not encryption_enabled({"ServerSideEncryptionConfiguration": {"Rules": []}})
    assert encryption_enabled({
        "ServerSideEncryptionConfiguration": {
            "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "aws:kms"}}]
        }
    })


def test_public_access_fully_blocked_needs_all_four_flags():
    assert public_access_fully_blocked(FULL_BLOCK)
    assert not public_access_fully_blocked(dict(FULL_BLOCK, RestrictPublicBuckets=False))
    assert not public_access_fully_blocked(None)


def test_bucket_policy_is_public():
    public = {"Statement": [{"Effect": "Allow", "Principal": "*", "Action": "s3:GetObject"}]}
    private = {"Statement": [{"Effect": "Allow", "Principal": {"AWS": "arn:aws:iam::1:root"}, "Action": "s3:*"}]}
    assert bucket_policy_is_public(json.dumps(public))
    assert not bucket_policy_is_public(json.dumps(private))
    assert not bucket_policy_is_public("not json")


def test_unencrypted_unblocked_versioned_bucket_scores_one_third(engine, aws, context, config):
    s3 = aws.client("s3")
    create_plain_bucket(s3, "scenario-bucket", versioning=True)

    run = engine.execute_rules([bucket_resource("scenario-bucket")], context, config)
    agg = run.results[0]

    assert agg.total_rules == 3
    assert agg.passed_rules == 1
    assert agg.failed_rules == 2
    assert round(agg.compliance_score, 1) == 33.3
    assert agg.overall_severity == "critical"
    severities = {f.control_id: f.severity for f in agg.findings}
    assert severities == {"S3-001": "high", "S3-002": "critical"}


def test_encrypted_blocked_bucket_passes(aws, context, config):
    s3 = aws.client("s3")
    s3.create_bucket(Bucket="good-bucket")
    s3.put_bucket_encryption(
        Bucket="good-bucket",
        ServerSideEncryptionConfiguration={
            "Rules": [{"ApplyServerSideEncryptionByDefault": {"SSEAlgorithm": "AES256"}}]
        },
    )
    s3.put_public_access_block(Bucket="good-bucket", PublicAccessBlockConfiguration=FULL_BLOCK)

    resource = bucket_resource("good-bucket")
    encryption = S3DefaultEncryptionRule(aws).execute(resource, context, config)
    pab = S3PublicAccessBlockRule(aws).execute(resource, context, config)

    assert encryption.passed and encryption.severity is None
    assert encryption.message == "S3 bucket has default encryption enabled"
    assert pab.passed
    assert pab.recommendations == ["Public access is properly blocked"]


def test_partial_public_access_block_fails(aws, context, config):
    s3 = aws.client("s3")
    s3.create_bucket(Bucket="partial")
    s3.put_public_access_block(
        Bucket="partial", PublicAccessBlockConfiguration=dict(FULL_BLOCK, BlockPublicPolicy=False),
    )
    result = S3PublicAccessBlockRule(aws).execute(bucket_resource("partial"), context, config)
    assert not result.passed
    assert result.severity == "critical"
    assert result.message == "S3 bucket does not have complete public access blocking enabled"
    evidence = result.evidence[0]
    assert evidence.source == "AWS S3 API"
    assert evidence.data["missingSettings"] == ["BlockPublicPolicy"]


def test_unversioned_bucket_message(aws, context, config):
    create_plain_bucket(aws.client("s3"), "plain")
    result = S3VersioningRule(aws).execute(bucket_resource("plain"), context, config)
    assert not result.passed
    assert result.severity == "medium"
    assert result.message == "S3 bucket versioning is not enabled"


def test_validate_skips_missing_bucket(aws, context):
    rule = S3DefaultEncryptionRule(aws)
    assert not rule.validate(bucket_resource("does-not-exist"), context)
    assert rule.skip_reason(bucket_resource("does-not-exist"), context) == (
        "Resource arn:aws:s3:::does-not-exist not found"
    )


def test_validate_runs_rule_when_head_bucket_is_denied(context):
    s3 = MagicMock()
    s3.head_bucket.side_effect = client_error("403", "HeadBucket")
    rule = S3DefaultEncryptionRule(mock_session(s3))
    assert rule.validate(bucket_resource("locked"), context)


def test_unexpected_client_error_becomes_failed_result(context, config):
    s3 = MagicMock()
    s3.get_bucket_encryption.side_effect = client_error("AccessDenied", "GetBucketEncryption")
    rule = S3DefaultEncryptionRule(mock_session(s3))

    result = rule.execute(bucket_resource("locked"), context, config)

    assert not result.passed
    assert result.severity == "high"
    assert result.message.startswith("Rule execution failed:")
    assert "AccessDenied" in result.metadata["error"]
    assert result.recommendations == ["Review rule configuration and resource permissions"]


def test_evidence_and_recommendations_can_be_disabled(aws, context):
    create_plain_bucket(aws.client("s3"), "quiet")
    config = EngineConfig(parallel=False, include_evidence=False, include_recommendations=False)
    result = S3DefaultEncryptionRule(aws).execute(bucket_resource("quiet"), context, config)
    assert not result.passed
    assert result.evidence == []
    assert result.recommendations == []
