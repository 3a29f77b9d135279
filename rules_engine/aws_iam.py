# rules_engine/aws_iam.py
"""
IAM compliance rules.

- IAM-001 root account MFA (account summary)
- IAM-002 account password policy thresholds
- IAM-003 no wildcard actions/resources in user, role or managed policies
"""

import json
from typing import Any, Dict, List, Tuple
from urllib.parse import unquote

from botocore.exceptions import ClientError

from models import CheckOutcome, Evidence, RemediationStep

from .base import AWS_ERRORS, BaseRule, error_code, is_not_found, normalize_resource_type

# Every entry must hold for the password policy to pass
PASSWORD_POLICY_REQUIREMENTS = {
    "minLength": lambda p: (p.get("MinimumPasswordLength") or 0) >= 14,
    "requireSymbols": lambda p: p.get("RequireSymbols") is True,
    "requireNumbers": lambda p: p.get("RequireNumbers") is True,
    "requireUppercase": lambda p: p.get("RequireUppercaseCharacters") is True,
    "requireLowercase": lambda p: p.get("RequireLowercaseCharacters") is True,
    "maxAge": lambda p: 0 < (p.get("MaxPasswordAge") or 0) <= 90,
    "preventReuse": lambda p: (p.get("PasswordReusePrevention") or 0) >= 5,
}

WILDCARD_RESOURCES = ("*",)

# --- Pure rule helpers -----------------------------------------------------

def name_from_arn(arn: str) -> str:
    """arn:aws:iam::123456789012:user/path/alice -> alice"""
    return arn.rsplit("/", 1)[-1] if "/" in arn else ""


def failed_password_requirements(policy: Dict[str, Any]) -> List[str]:
    return [name for name, test in PASSWORD_POLICY_REQUIREMENTS.items() if not test(policy)]


def load_policy_document(document: Any) -> Dict[str, Any]:
    """IAM returns documents URL-encoded; boto3 usually decodes them already."""
    if isinstance(document, dict):
        return document
    if not document:
        return {}
    return json.loads(unquote(document))


def _as_list(value: Any) -> List[Any]:
    if value is None:
        return []
    if isinstance(value, list):
        return value
    return [value]


def is_wildcard_action(action: str) -> bool:
    return action == "*" or action.endswith(":*")


def has_wildcard_permissions(document: Dict[str, Any]) -> bool:
    """
    Return True if any Allow statement grants a wildcard action or resource.
    """
    for stmt in _as_list(document.get("Statement")):
        if stmt.get("Effect", "Allow") != "Allow":
            continue
        if any(is_wildcard_action(a) for a in _as_list(stmt.get("Action"))):
            return True
        if any(r in WILDCARD_RESOURCES for r in _as_list(stmt.get("Resource"))):
            return True
    return False

# --- Live AWS helpers -----------------------------------------------------

def get_account_summary_live(iam) -> Dict[str, Any]:
    return iam.get_account_summary().get("SummaryMap", {})


def get_password_policy_live(iam):
    """
    Return the account password policy or None if none is configured.
    """
    try:
        return iam.get_account_password_policy().get("PasswordPolicy", {})
    except ClientError as e:
        if error_code(e) == "NoSuchEntity":
            return None
        raise


def get_managed_policy_document_live(iam, policy_arn: str) -> Dict[str, Any]:
    policy = iam.get_policy(PolicyArn=policy_arn)["Policy"]
    version = iam.get_policy_version(PolicyArn=policy_arn, VersionId=policy["DefaultVersionId"])
    return load_policy_document(version["PolicyVersion"].get("Document"))


def _paginate(iam, operation: str, result_key: str, **kwargs) -> List[Any]:
    items: List[Any] = []
    for page in iam.get_paginator(operation).paginate(**kwargs):
        items.extend(page.get(result_key, []))
    return items


def collect_entity_policies_live(iam, resource_type: str, arn: str) -> List[Tuple[str, Dict[str, Any]]]:
    """
    Return (policy name, document) pairs for every policy governing the entity.

    Users and roles contribute attached managed policies plus inline policies;
    a managed policy resource contributes its default version.
    """
    kind = normalize_resource_type(resource_type)
    name = name_from_arn(arn)
    policies: List[Tuple[str, Dict[str, Any]]] = []

    if kind == "IAM::Policy":
        policy = iam.get_policy(PolicyArn=arn)["Policy"]
        policies.append((policy.get("PolicyName", name), get_managed_policy_document_live(iam, arn)))
        return policies

    if kind == "IAM::User":
        attached = _paginate(iam, "list_attached_user_policies", "AttachedPolicies", UserName=name)
        inline = _paginate(iam, "list_user_policies", "PolicyNames", UserName=name)
        get_inline = lambda p: iam.get_user_policy(UserName=name, PolicyName=p)["PolicyDocument"]  # noqa: E731
    elif kind == "IAM::Role":
        attached = _paginate(iam, "list_attached_role_policies", "AttachedPolicies", RoleName=name)
        inline = _paginate(iam, "list_role_policies", "PolicyNames", RoleName=name)
        get_inline = lambda p: iam.get_role_policy(RoleName=name, PolicyName=p)["PolicyDocument"]  # noqa: E731
    else:
        return policies

    for policy in attached:
        policies.append((policy.get("PolicyName", ""), get_managed_policy_document_live(iam, policy["PolicyArn"])))
    for policy_name in inline:
        policies.append((policy_name, load_policy_document(get_inline(policy_name))))
    return policies

# --- Rules ----------------------------------------------------------------

class IAMRule(BaseRule):
    frameworks = ["SOC2"]
    service = "IAM"
    client_name = "iam"
    category = "identity"

    def can_access(self, resource, context, config) -> bool:
        # account-level checks: the account always exists, access errors propagate
        self.client(resource, context, config).get_account_summary()
        return True


class IAMRootMfaRule(IAMRule):
    """Root account must have MFA enabled."""

    rule_id = "IAM-001"
    name = "Root Account MFA"
    severity = "critical"
    resource_types = ["AWS::IAM::User"]
    controls = ["CC6.1"]

    def check(self, resource, context, config) -> CheckOutcome:
        summary = get_account_summary_live(self.client(resource, context, config))
        if summary.get("AccountMFAEnabled") == 1:
            return CheckOutcome(True, "Root account has MFA enabled")
        return CheckOutcome(False, "Root account does not have MFA enabled", "critical")

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        iam = self.client(resource, context, config)
        evidence: List[Evidence] = []
        try:
            summary = get_account_summary_live(iam)
        except AWS_ERRORS as e:
            return [self.error_evidence("Error retrieving account summary", e)]
        evidence.append(self.evidence(
            "AWS account summary",
            {
                "accountMfaEnabled": summary.get("AccountMFAEnabled"),
                "totalUsers": summary.get("Users"),
                "totalGroups": summary.get("Groups"),
                "totalRoles": summary.get("Roles"),
                "accountAccessKeysPresent": summary.get("AccountAccessKeysPresent"),
            },
        ))
        try:
            devices = _paginate(iam, "list_virtual_mfa_devices", "VirtualMFADevices")
            root_devices = [d for d in devices if d.get("User", {}).get("Arn", "").endswith(":root")]
            evidence.append(self.evidence(
                "Root user MFA devices",
                {"rootMfaDevices": len(root_devices), "devices": [d.get("SerialNumber") for d in root_devices]},
            ))
        except AWS_ERRORS as e:
            evidence.append(self.error_evidence("Error retrieving MFA devices", e))
        return evidence

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["Root account MFA is properly configured"]
        return [
            "Enable MFA for the root account immediately",
            "Use a hardware MFA device for maximum security",
            "Store MFA backup codes in a secure location",
            "Consider using IAM users instead of root account for daily operations",
            "Regularly review and rotate MFA devices",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        serial = f"arn:aws:iam::{resource.account_id or context.account_id}:mfa/root-mfa"
        return [
            RemediationStep(
                order=1,
                action="Create virtual MFA device",
                description="Create a virtual MFA device for the root account",
                risk_level="medium",
                command=(
                    "aws iam create-virtual-mfa-device --virtual-mfa-device-name root-mfa "
                    "--outfile QRCode.png --bootstrap-method QRCodePNG"
                ),
                parameters={"deviceName": "root-mfa", "bootstrapMethod": "QRCodePNG"},
            ),
            RemediationStep(
                order=2,
                action="Enable MFA for root account",
                description="Enable MFA for the root account using the virtual MFA device",
                risk_level="medium",
                command=(
                    f"aws iam enable-mfa-device --user-name root --serial-number {serial} "
                    "--authentication-code1 CODE1 --authentication-code2 CODE2"
                ),
                parameters={"userName": "root", "serialNumber": serial},
            ),
        ]


class IAMPasswordPolicyRule(IAMRule):
    """The account password policy must meet the hardening thresholds."""

    rule_id = "IAM-002"
    name = "IAM Password Policy"
    severity = "high"
    resource_types = ["AWS::IAM::AccountPasswordPolicy"]
    controls = ["CC6.1"]

    def check(self, resource, context, config) -> CheckOutcome:
        policy = get_password_policy_live(self.client(resource, context, config))
        if policy is None:
            return CheckOutcome(False, "No IAM password policy is configured", "high")
        failed = failed_password_requirements(policy)
        if not failed:
            return CheckOutcome(True, "IAM password policy meets all requirements")
        return CheckOutcome(
            False, f"IAM password policy does not meet requirements: {', '.join(failed)}", "high",
        )

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        try:
            policy = get_password_policy_live(self.client(resource, context, config))
        except AWS_ERRORS as e:
            return [self.error_evidence("Error retrieving password policy", e)]
        if policy is None:
            return [self.evidence(
                "No password policy configured",
                {"error": "NoSuchEntity", "message": "No IAM password policy is configured"},
            )]
        return [self.evidence(
            "IAM account password policy",
            {
                "policy": policy,
                "requirements": {name: test(policy) for name, test in PASSWORD_POLICY_REQUIREMENTS.items()},
            },
        )]

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["Password policy meets all requirements"]
        return [
            "Set minimum password length to at least 14 characters",
            "Require symbols, numbers, uppercase, and lowercase characters",
            "Set maximum password age to 90 days or less",
            "Prevent password reuse for at least 5 previous passwords",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        return [
            RemediationStep(
                order=1,
                action="Update password policy",
                description="Update IAM password policy to meet security requirements",
                risk_level="low",
                command=(
                    "aws iam update-account-password-policy --minimum-password-length 14 "
                    "--require-symbols --require-numbers --require-uppercase-characters "
                    "--require-lowercase-characters --max-password-age 90 --password-reuse-prevention 5"
                ),
                terraform=(
                    'resource "aws_iam_account_password_policy" "strict" {\n'
                    "  minimum_password_length        = 14\n"
                    "  require_symbols                = true\n"
                    "  require_numbers                = true\n"
                    "  require_uppercase_characters   = true\n"
                    "  require_lowercase_characters   = true\n"
                    "  max_password_age               = 90\n"
                    "  password_reuse_prevention      = 5\n"
                    "  allow_users_to_change_password = true\n"
                    "}"
                ),
            ),
        ]


class IAMWildcardPermissionsRule(IAMRule):
    """IAM users, roles and policies should not grant wildcard permissions."""

    rule_id = "IAM-003"
    name = "IAM Wildcard Permissions"
    severity = "high"
    resource_types = ["AWS::IAM::User", "AWS::IAM::Role", "AWS::IAM::Policy"]
    controls = ["CC6.3"]

    def check(self, resource, context, config) -> CheckOutcome:
        iam = self.client(resource, context, config)
        offending = [
            name for name, document in collect_entity_policies_live(iam, resource.type, resource.arn)
            if has_wildcard_permissions(document)
        ]
        if offending:
            return CheckOutcome(
                False, f"IAM entity has wildcard permissions in policies: {', '.join(offending)}", "high",
            )
        return CheckOutcome(True, "IAM entity does not have wildcard permissions")

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        iam = self.client(resource, context, config)
        try:
            policies = collect_entity_policies_live(iam, resource.type, resource.arn)
        except AWS_ERRORS as e:
            return [self.error_evidence("Error retrieving IAM policies", e, evidence_type="policy")]
        return [self.evidence(
            f"IAM policies for {name_from_arn(resource.arn)}",
            {
                "entity": resource.arn,
                "policies": [
                    {"name": name, "wildcard": has_wildcard_permissions(doc), "document": doc}
                    for name, doc in policies
                ],
            },
            evidence_type="policy",
        )]

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["No wildcard permissions found"]
        return [
            "Replace wildcard permissions with specific actions",
            "Use least privilege principle",
            "Review and remove unnecessary permissions",
            "Consider using AWS managed policies with specific permissions",
            "Implement regular permission audits",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        return [
            RemediationStep(
                order=1,
                action="Review permissions",
                description="Review all attached and inline policies for wildcard permissions",
                risk_level="high",
                parameters={"action": "manual_review"},
            ),
            RemediationStep(
                order=2,
                action="Update policies",
                description="Update policies to use specific actions instead of wildcards",
                risk_level="medium",
                parameters={"action": "policy_update"},
            ),
        ]

    def can_access(self, resource, context, config) -> bool:
        iam = self.client(resource, context, config)
        kind = normalize_resource_type(resource.type)
        name = name_from_arn(resource.arn)
        # the root user has no name and no IAM policies of its own
        if not name:
            return False
        try:
            if kind == "IAM::User":
                iam.get_user(UserName=name)
            elif kind == "IAM::Role":
                iam.get_role(RoleName=name)
            elif kind == "IAM::Policy":
                iam.get_policy(PolicyArn=resource.arn)
            else:
                return False
            return True
        except ClientError as e:
            if is_not_found(e):
                return False
            raise


IAM_RULES = [IAMRootMfaRule, IAMPasswordPolicyRule, IAMWildcardPermissionsRule]
