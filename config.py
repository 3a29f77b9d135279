"""
Central configuration and tunable constants.

- Engine defaults can be overridden per invocation (EngineConfig) or by CLI args.
- The default AWS region can be overridden by CLI args or the AWS_REGION environment variable.
- Severity ordering and the numeric display scale are centralized for easy tuning.
"""

# Engine defaults (parallel fan-out of at most 5 in-flight rule checks)
DEFAULT_PARALLEL = True
DEFAULT_MAX_CONCURRENCY = 5
DEFAULT_TIMEOUT_SECONDS = 300
DEFAULT_RETRY_COUNT = 3

# Planner estimate per rule, in milliseconds (not calibrated from history)
ESTIMATED_RULE_DURATION_MS = 1000

# Severity order, lowest first
SEVERITY_ORDER = ["info", "low", "medium", "high", "critical"]

# Severity scale: 0 (info) to 10 (critical), used for console colouring
SEVERITY_SCORES = {
    "info": 0,
    "low": 3,
    "medium": 5,
    "high": 7,
    "critical": 9,
}

# Severity reported when a rule's check raises
ERROR_SEVERITY = "high"

# Framework attached to findings when the rule declares none
DEFAULT_FRAMEWORK = "SOC2"

# Framework names a rule may declare; anything else is logged at registration
SUPPORTED_FRAMEWORKS = ["SOC2", "HIPAA", "GDPR", "PCI_DSS", "ISO27001"]

# Resource types are matched with or without this namespace prefix
RESOURCE_TYPE_NAMESPACE = "AWS::"

# AWS Vault model:
# - Credentials come from the environment (AWS Vault injects them)
# - We DO need a default region for boto3.Session(region_name=...)
DEFAULT_AWS_REGION = "eu-west-1"
