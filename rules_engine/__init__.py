"""
Compliance rules engine for AWS resources.

Typical use:

    engine = RulesEngine(boto3.Session(region_name="eu-west-1"))
    run = engine.execute_rules(resources, context)
"""

from .base import BaseRule
from .engine import BUILTIN_RULES, RulesEngine, validate_engine_config
from .errors import DependencyCycleError, InvalidConfigError, RuleNotFoundError
from .registry import RuleRegistry

__all__ = [
    "BUILTIN_RULES",
    "BaseRule",
    "DependencyCycleError",
    "InvalidConfigError",
    "RuleNotFoundError",
    "RuleRegistry",
    "RulesEngine",
    "validate_engine_config",
]
