# rules_engine/registry.py
"""
In-memory rule catalog.

- Maps rule id -> RegistryEntry (metadata, executor, usage counters, metrics).
- Append-only: register_rule inserts or overwrites, nothing is ever removed.
- Insertion order is preserved and drives plan ordering.
"""

import logging
from typing import Dict, Iterator, List

from config import SUPPORTED_FRAMEWORKS
from models import RegistryEntry, RuleExecutionResult, RulePerformanceMetrics, utc_timestamp

from .errors import RuleNotFoundError

logger = logging.getLogger(__name__)


class RuleRegistry:
    def __init__(self):
        self._entries: Dict[str, RegistryEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, rule_id: str) -> bool:
        return rule_id in self._entries

    def __iter__(self) -> Iterator[RegistryEntry]:
        return iter(list(self._entries.values()))

    def register_rule(self, executor) -> RegistryEntry:
        """Derive metadata from the executor and insert (or overwrite) its entry."""
        metadata = executor.get_metadata()
        entry = RegistryEntry(
            rule_id=metadata.rule_id,
            rule=metadata,
            executor=executor,
            dependencies=list(getattr(executor, "dependencies", []) or []),
            metrics=RulePerformanceMetrics(rule_id=metadata.rule_id),
        )
        unknown = [f for f in metadata.frameworks if f not in SUPPORTED_FRAMEWORKS]
        if unknown:
            logger.warning("Rule %s declares unsupported frameworks: %s", metadata.rule_id, ", ".join(unknown))
        if metadata.rule_id in self._entries:
            logger.debug("Overwriting rule %s", metadata.rule_id)
        else:
            logger.debug("Registered rule %s (%s)", metadata.rule_id, metadata.name)
        self._entries[metadata.rule_id] = entry
        return entry

    def get(self, rule_id: str) -> RegistryEntry:
        entry = self._entries.get(rule_id)
        if entry is None:
            raise RuleNotFoundError(rule_id)
        return entry

    def get_all_rules(self) -> List[RegistryEntry]:
        return list(self._entries.values())

    def get_enabled_rules(self) -> List[RegistryEntry]:
        return [e for e in self._entries.values() if e.rule.enabled]

    def get_rules_for_service(self, service: str) -> List[RegistryEntry]:
        return [e for e in self._entries.values() if e.rule.service == service]

    def get_rules_for_framework(self, framework: str) -> List[RegistryEntry]:
        return [e for e in self._entries.values() if framework in e.rule.frameworks]

    def supported_services(self) -> List[str]:
        services: List[str] = []
        for entry in self._entries.values():
            if entry.rule.service not in services:
                services.append(entry.rule.service)
        return services

    def supported_resource_types(self) -> List[str]:
        types: List[str] = []
        for entry in self._entries.values():
            for resource_type in entry.rule.resource_types:
                if resource_type not in types:
                    types.append(resource_type)
        return types

    def record_usage(self, rule_id: str, result: RuleExecutionResult) -> None:
        """
        Bump usage counters and performance metrics after one execute() call.

        Callers must invoke this from the orchestrating thread only.
        """
        entry = self.get(rule_id)
        now = utc_timestamp()
        entry.usage_count += 1
        entry.last_used = now

        metrics = entry.metrics
        metrics.execution_count += 1
        if not result.passed:
            metrics.failure_count += 1
        metrics.total_execution_time += result.execution_time
        metrics.slowest_execution = max(metrics.slowest_execution, result.execution_time)
        if metrics.fastest_execution is None or result.execution_time < metrics.fastest_execution:
            metrics.fastest_execution = result.execution_time
        metrics.last_execution = now

