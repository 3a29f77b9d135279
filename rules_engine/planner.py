# rules_engine/planner.py
"""
Execution planning for one batch of resources.

1. Collect the distinct resource types present.
2. Keep enabled rules whose resource-type patterns match any of them.
3. Order rules by declared dependencies (stable; registration order breaks ties).
4. Partition the order into groups for bounded-concurrency execution.
5. Estimate duration as a constant per rule.
"""

import logging
from typing import Dict, List, Sequence

from config import ESTIMATED_RULE_DURATION_MS
from models import EngineConfig, ExecutionContext, ExecutionPlan, RegistryEntry, Resource, RuleDependency

from .base import resource_type_matches
from .errors import DependencyCycleError

logger = logging.getLogger(__name__)


def applicable_rules(entries: Sequence[RegistryEntry], resources: Sequence[Resource]) -> List[RegistryEntry]:
    resource_types = {r.type for r in resources}
    return [
        entry for entry in entries
        if any(resource_type_matches(pattern, rtype)
               for pattern in entry.rule.resource_types
               for rtype in resource_types)
    ]


def execution_order(entries: Sequence[RegistryEntry]) -> List[RuleDependency]:
    """
    Topologically sort entries by their dependencies (Kahn's algorithm).

    Dependencies on rules outside the given set are treated as satisfied.
    Raises DependencyCycleError if the remaining graph has a cycle.
    """
    position = {e.rule_id: i for i, e in enumerate(entries)}
    pending: Dict[str, List[str]] = {
        e.rule_id: [d for d in e.dependencies if d in position and d != e.rule_id] for e in entries
    }
    ordered: List[RuleDependency] = []
    while pending:
        ready = [rid for rid, deps in pending.items() if not deps]
        if not ready:
            raise DependencyCycleError(pending.keys())
        ready.sort(key=position.__getitem__)
        rule_id = ready[0]
        ordered.append(RuleDependency(
            rule_id=rule_id,
            depends_on=list(entries[position[rule_id]].dependencies),
            execution_order=len(ordered),
        ))
        del pending[rule_id]
        for deps in pending.values():
            if rule_id in deps:
                deps.remove(rule_id)
    return ordered


def parallel_groups(order: Sequence[RuleDependency], config: EngineConfig) -> List[List[str]]:
    """
    Sequential mode yields singleton groups. Parallel mode yields contiguous
    groups of at most max_concurrency rules; a rule never shares a group
    with one of its dependencies.
    """
    if not config.parallel:
        return [[dep.rule_id] for dep in order]

    size = max(1, config.max_concurrency)
    groups: List[List[str]] = []
    current: List[str] = []
    for dep in order:
        if len(current) >= size or any(d in current for d in dep.depends_on):
            groups.append(current)
            current = []
        current.append(dep.rule_id)
    if current:
        groups.append(current)
    return groups


def estimate_duration(entries: Sequence[RegistryEntry]) -> int:
    return len(entries) * ESTIMATED_RULE_DURATION_MS


def create_execution_plan(entries: Sequence[RegistryEntry], resources: Sequence[Resource],
                          context: ExecutionContext, config: EngineConfig) -> ExecutionPlan:
    rules = applicable_rules(entries, resources)
    order = execution_order(rules)
    groups = parallel_groups(order, config)
    plan = ExecutionPlan(
        rules=[dep.rule_id for dep in order],
        execution_order=order,
        estimated_duration=estimate_duration(rules),
        parallel_groups=groups,
        dependencies={dep.rule_id: list(dep.depends_on) for dep in order},
    )
    logger.info(
        "Execution plan for scan %s: %d rules in %d groups (estimated %d ms)",
        context.scan_id or "-", len(plan.rules), len(groups), plan.estimated_duration,
    )
    return plan
