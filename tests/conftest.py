# tests/conftest.py
"""
Shared fixtures.

- Fake credentials so boto3 never reaches a real account.
- `aws` starts moto's mock_aws for the duration of a test.
- `engine` builds a RulesEngine on a mocked session.
"""

from unittest.mock import MagicMock

import boto3
import pytest
from botocore.exceptions import ClientError
from moto import mock_aws

from models import EngineConfig, ExecutionContext, Resource
from rules_engine import RulesEngine

REGION = "us-east-1"
ACCOUNT_ID = "123456789012"  # moto's default account


@pytest.fixture(autouse=True)
def aws_credentials(monkeypatch):
    monkeypatch.setenv("AWS_ACCESS_KEY_ID", "testing")
    monkeypatch.setenv("AWS_SECRET_ACCESS_KEY", "testing")
    monkeypatch.setenv("AWS_SECURITY_TOKEN", "testing")
    monkeypatch.setenv("AWS_SESSION_TOKEN", "testing")
    monkeypatch.setenv("AWS_DEFAULT_REGION", REGION)


@pytest.fixture
def aws():
    with mock_aws():
        yield boto3.Session(region_name=REGION)


@pytest.fixture
def engine(aws):
    return RulesEngine(aws)


@pytest.fixture
def context():
    return ExecutionContext(tenant_id="tenant-1", account_id=ACCOUNT_ID, region=REGION, scan_id="scan-test")


@pytest.fixture
def config():
    return EngineConfig(parallel=False, retry_count=0)


def bucket_resource(name: str) -> Resource:
    return Resource(arn=f"arn:aws:s3:::{name}", type="AWS::S3::Bucket", region=REGION, account_id=ACCOUNT_ID)


def security_group_resource(group_id: str) -> Resource:
    return Resource(
        arn=f"arn:aws:ec2:{REGION}:{ACCOUNT_ID}:security-group/{group_id}",
        type="AWS::EC2::SecurityGroup",
        region=REGION,
        account_id=ACCOUNT_ID,
    )


def trail_resource(name: str = "main") -> Resource:
    return Resource(
        arn=f"arn:aws:cloudtrail:{REGION}:{ACCOUNT_ID}:trail/{name}",
        type="AWS::CloudTrail::Trail",
        region=REGION,
        account_id=ACCOUNT_ID,
    )


def client_error(code: str, operation: str = "Operation") -> ClientError:
    return ClientError({"Error": {"Code": code, "Message": code}}, operation)


def mock_session(client) -> MagicMock:
    """A boto3-like session whose client() always returns the given mock client."""
    session = MagicMock()
    session.client.return_value = client
    return session


def create_plain_bucket(s3, name: str, versioning: bool = False) -> None:
    """Create a bucket with no default encryption and no public access block."""
    s3.create_bucket(Bucket=name)
    s3.delete_bucket_encryption(Bucket=name)
    s3.delete_public_access_block(Bucket=name)
    if versioning:
        s3.put_bucket_versioning(Bucket=name, VersioningConfiguration={"Status": "Enabled"})
