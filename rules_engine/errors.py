# rules_engine/errors.py
"""Exceptions raised to callers of the engine. Rule check failures are never raised."""


class RuleNotFoundError(LookupError):
    """Raised when a rule id is absent from the registry."""

    def __init__(self, rule_id: str):
        super().__init__(f"Rule {rule_id} not found in registry")
        self.rule_id = rule_id


class InvalidConfigError(ValueError):
    """Raised when an engine configuration fails validation."""

    def __init__(self, errors):
        super().__init__("Invalid engine configuration: " + "; ".join(errors))
        self.errors = list(errors)


class DependencyCycleError(ValueError):
    """Raised when rule dependencies form a cycle."""

    def __init__(self, rule_ids):
        super().__init__("Rule dependency cycle detected among: " + ", ".join(sorted(rule_ids)))
        self.rule_ids = sorted(rule_ids)
