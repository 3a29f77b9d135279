# rules_engine/aws_ec2.py
"""
EC2 security group rules.

- SG-001 flags 0.0.0.0/0 or ::/0 ingress that reaches SSH/RDP or opens every port
- SG-002 flags any 0.0.0.0/0 or ::/0 ingress at all
"""

from typing import Any, Dict, List, Optional

from botocore.exceptions import ClientError

from models import CheckOutcome, Evidence, RemediationStep

from .base import AWS_ERRORS, BaseRule, is_not_found

SENSITIVE_PORTS = (22, 3389)  # SSH and RDP
UNRESTRICTED_CIDRS = ("0.0.0.0/0", "::/0")

# --- Pure rule helpers -----------------------------------------------------

def security_group_id_from_arn(arn: str) -> str:
    """arn:aws:ec2:region:account:security-group/sg-12345678 -> sg-12345678"""
    return arn.rsplit("/", 1)[-1]


def _open_ranges(permission: Dict[str, Any]) -> List[str]:
    cidrs = [r.get("CidrIp", "") for r in permission.get("IpRanges", [])]
    cidrs += [r.get("CidrIpv6", "") for r in permission.get("Ipv6Ranges", [])]
    return [c for c in cidrs if c in UNRESTRICTED_CIDRS]


def find_public_access_rules(ip_permissions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Every ingress permission open to the whole internet, one entry per CIDR."""
    rules: List[Dict[str, Any]] = []
    for permission in ip_permissions:
        for cidr in _open_ranges(permission):
            rules.append({
                "protocol": permission.get("IpProtocol") or "tcp",
                "fromPort": permission.get("FromPort"),
                "toPort": permission.get("ToPort"),
                "cidrIp": cidr,
            })
    return rules


def find_dangerous_rules(ip_permissions: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """
    Internet-open ingress that covers a sensitive port or every port.

    A permission without ports (protocol -1) covers the full 0-65535 range.
    """
    rules: List[Dict[str, Any]] = []
    for rule in find_public_access_rules(ip_permissions):
        from_port = rule["fromPort"] if rule["fromPort"] is not None else 0
        to_port = rule["toPort"] if rule["toPort"] is not None else 65535
        if any(from_port <= port <= to_port for port in SENSITIVE_PORTS):
            risk = "Unrestricted access to sensitive port"
        elif from_port in (-1, 0) and to_port in (-1, 65535):
            risk = "Unrestricted access to all ports"
        else:
            continue
        rules.append(dict(rule, fromPort=from_port, toPort=to_port, risk=risk))
    return rules


def describe_rules(rules: List[Dict[str, Any]]) -> str:
    return ", ".join(
        f"{r['protocol']}:{_port(r['fromPort'])}-{_port(r['toPort'])} from {r['cidrIp']}" for r in rules
    )


def _port(value: Optional[int]) -> str:
    return "all" if value is None else str(value)

# --- Live AWS helpers -----------------------------------------------------

def describe_security_group_live(ec2, group_id: str) -> Optional[Dict[str, Any]]:
    resp = ec2.describe_security_groups(GroupIds=[group_id])
    groups = resp.get("SecurityGroups", [])
    return groups[0] if groups else None

# --- Rules ----------------------------------------------------------------

class SecurityGroupRule(BaseRule):
    frameworks = ["SOC2"]
    resource_types = ["AWS::EC2::SecurityGroup"]
    service = "EC2"
    client_name = "ec2"
    category = "network"
    severity = "critical"

    def security_group(self, resource, context, config):
        ec2 = self.client(resource, context, config)
        return describe_security_group_live(ec2, security_group_id_from_arn(resource.arn))

    def can_access(self, resource, context, config) -> bool:
        try:
            return self.security_group(resource, context, config) is not None
        except ClientError as e:
            if is_not_found(e):
                return False
            raise


class SecurityGroupRestrictiveRule(SecurityGroupRule):
    """Security groups must not expose SSH/RDP or every port to the internet."""

    rule_id = "SG-001"
    name = "Security Group Restrictive Rules"
    controls = ["CC6.6"]

    def check(self, resource, context, config) -> CheckOutcome:
        group = self.security_group(resource, context, config)
        if group is None:
            return CheckOutcome(False, "Security group not found", "high")
        dangerous = find_dangerous_rules(group.get("IpPermissions", []))
        if not dangerous:
            return CheckOutcome(True, "Security group has restrictive rules")
        return CheckOutcome(False, f"Security group has dangerous rules: {describe_rules(dangerous)}", "critical")

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        try:
            group = self.security_group(resource, context, config)
        except AWS_ERRORS as e:
            return [self.error_evidence(
                "Error retrieving security group configuration", e,
                securityGroupId=security_group_id_from_arn(resource.arn),
            )]
        if group is None:
            return []
        evidence = [self.evidence(
            "Security group configuration",
            {
                "groupId": group.get("GroupId"),
                "groupName": group.get("GroupName"),
                "description": group.get("Description"),
                "vpcId": group.get("VpcId"),
                "ipPermissions": group.get("IpPermissions", []),
                "ipPermissionsEgress": group.get("IpPermissionsEgress", []),
                "tags": group.get("Tags", []),
            },
        )]
        dangerous = find_dangerous_rules(group.get("IpPermissions", []))
        if dangerous:
            evidence.append(self.evidence(
                "Dangerous security group rules",
                {"groupId": group.get("GroupId"), "dangerousRules": dangerous, "riskLevel": "critical"},
            ))
        return evidence

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["Security group rules are properly restrictive"]
        return [
            "Remove rules that allow access from 0.0.0.0/0",
            "Restrict SSH (port 22) access to specific IP ranges",
            "Restrict RDP (port 3389) access to specific IP ranges",
            "Use security groups as source instead of IP ranges where possible",
            "Implement least privilege access principles",
            "Regularly audit and review security group rules",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        group_id = security_group_id_from_arn(resource.arn)
        return [
            RemediationStep(
                order=1,
                action="Review security group rules",
                description="Review all ingress and egress rules for the security group",
                risk_level="high",
                command=f"aws ec2 describe-security-groups --group-ids {group_id}",
                parameters={"action": "manual_review"},
            ),
            RemediationStep(
                order=2,
                action="Remove dangerous rules",
                description="Remove rules that allow unrestricted access from 0.0.0.0/0",
                risk_level="medium",
                command=(
                    f"aws ec2 revoke-security-group-ingress --group-id {group_id} "
                    "--protocol tcp --port 22 --cidr 0.0.0.0/0"
                ),
                terraform=(
                    'resource "aws_security_group_rule" "ssh" {\n'
                    '  type              = "ingress"\n'
                    "  from_port         = 22\n"
                    "  to_port           = 22\n"
                    '  protocol          = "tcp"\n'
                    '  cidr_blocks       = ["10.0.0.0/8"]\n'
                    f'  security_group_id = "{group_id}"\n'
                    "}"
                ),
            ),
        ]


class SecurityGroupNoPublicAccessRule(SecurityGroupRule):
    """Security groups should not allow 0.0.0.0/0 or ::/0 on any port."""

    rule_id = "SG-002"
    name = "Security Group No Public Access"
    controls = ["CC6.6"]

    def check(self, resource, context, config) -> CheckOutcome:
        group = self.security_group(resource, context, config)
        if group is None:
            return CheckOutcome(False, "Security group not found", "high")
        public = find_public_access_rules(group.get("IpPermissions", []))
        if not public:
            return CheckOutcome(True, "Security group does not allow public access")
        return CheckOutcome(False, f"Security group allows public access: {describe_rules(public)}", "critical")

    def collect_evidence(self, resource, context, config) -> List[Evidence]:
        try:
            group = self.security_group(resource, context, config)
        except AWS_ERRORS as e:
            return [self.error_evidence(
                "Error retrieving security group configuration", e,
                securityGroupId=security_group_id_from_arn(resource.arn),
            )]
        if group is None:
            return []
        return [self.evidence(
            "Security group public access analysis",
            {
                "groupId": group.get("GroupId"),
                "groupName": group.get("GroupName"),
                "publicAccessRules": find_public_access_rules(group.get("IpPermissions", [])),
                "totalRules": len(group.get("IpPermissions", [])),
            },
        )]

    def recommendations(self, resource, context, outcome) -> List[str]:
        if outcome.passed:
            return ["Security group does not allow public access"]
        return [
            "Remove all rules allowing access from 0.0.0.0/0",
            "Use specific IP ranges or security groups as sources",
            "Implement network segmentation",
            "Use VPC endpoints for private communication",
            "Consider using AWS WAF for additional protection",
        ]

    def remediation_steps(self, resource, context) -> List[RemediationStep]:
        group_id = security_group_id_from_arn(resource.arn)
        return [
            RemediationStep(
                order=1,
                action="Remove public access rules",
                description="Remove all ingress rules that allow access from 0.0.0.0/0",
                risk_level="high",
                command=(
                    f"aws ec2 revoke-security-group-ingress --group-id {group_id} "
                    "--protocol all --cidr 0.0.0.0/0"
                ),
                terraform=(
                    'resource "aws_security_group_rule" "private_access" {\n'
                    '  type              = "ingress"\n'
                    "  from_port         = 443\n"
                    "  to_port           = 443\n"
                    '  protocol          = "tcp"\n'
                    '  cidr_blocks       = ["10.0.0.0/8"]\n'
                    f'  security_group_id = "{group_id}"\n'
                    "}"
                ),
            ),
        ]


EC2_RULES = [SecurityGroupRestrictiveRule, SecurityGroupNoPublicAccessRule]
