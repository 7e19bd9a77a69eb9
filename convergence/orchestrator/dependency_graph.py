"""Dependency graph (DAG) over agent descriptors, validated at launch."""

import logging
from typing import Optional

from convergence.app.models.agent import AgentDescriptor
from convergence.errors import ConfigurationError

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Directed Acyclic Graph (DAG) of agents and the handoffs they wait on."""

    def __init__(self, descriptors: Optional[list[AgentDescriptor]] = None):
        """
        Initialize graph.

        Args:
            descriptors: Agents to add immediately
        """
        self.nodes: dict[str, AgentDescriptor] = {}
        self.edges: dict[str, list[str]] = {}  # agent -> agents that depend on it
        for descriptor in descriptors or []:
            self.add_node(descriptor)

    def add_node(self, descriptor: AgentDescriptor) -> None:
        """
        Add agent to graph.

        Args:
            descriptor: Agent descriptor to add

        Raises:
            ConfigurationError: If an agent with the same name exists
        """
        if descriptor.name in self.nodes:
            raise ConfigurationError(f"Duplicate agent name: {descriptor.name}")

        self.nodes[descriptor.name] = descriptor
        self.edges.setdefault(descriptor.name, [])

        for dep in descriptor.dependencies:
            self.edges.setdefault(dep, []).append(descriptor.name)

    def get_dependent_agents(self, name: str) -> list[AgentDescriptor]:
        """
        Get all agents that wait on the given agent's handoff.

        Args:
            name: Upstream agent name

        Returns:
            List of dependent descriptors
        """
        return [self.nodes[d] for d in self.edges.get(name, []) if d in self.nodes]

    def unknown_dependencies(self) -> dict[str, list[str]]:
        """Map of agent -> dependencies that name no known agent."""
        unknown = {}
        for name, node in self.nodes.items():
            missing = [dep for dep in node.dependencies if dep not in self.nodes]
            if missing:
                unknown[name] = missing
        return unknown

    def validate_acyclic(self) -> tuple[bool, Optional[list[str]]]:
        """
        Validate that graph is acyclic (no circular dependencies).

        Returns:
            Tuple of (is_valid, cycle_path if invalid)
        """
        visited = set()
        rec_stack = set()

        def has_cycle(name: str, path: list[str]) -> Optional[list[str]]:
            visited.add(name)
            rec_stack.add(name)
            path.append(name)

            for dependent in self.edges.get(name, []):
                if dependent not in visited:
                    cycle = has_cycle(dependent, path.copy())
                    if cycle:
                        return cycle
                elif dependent in rec_stack:
                    return path + [dependent]

            rec_stack.remove(name)
            return None

        for name in self.nodes:
            if name not in visited:
                cycle = has_cycle(name, [])
                if cycle:
                    return False, cycle

        return True, None

    def validate(self) -> None:
        """
        Check the graph is launchable.

        Raises:
            ConfigurationError: On unknown dependencies or a dependency cycle
        """
        unknown = self.unknown_dependencies()
        if unknown:
            details = "; ".join(
                f"{name} -> {', '.join(deps)}" for name, deps in sorted(unknown.items())
            )
            raise ConfigurationError(f"Unknown dependencies: {details}")

        is_valid, cycle = self.validate_acyclic()
        if not is_valid:
            raise ConfigurationError(
                f"Circular dependency: {' -> '.join(cycle)}"
            )

    def get_execution_order(self) -> list[list[str]]:
        """
        Get topological levels of agents.

        Returns:
            List of levels, where each level holds agents that can run in
            parallel once the previous levels have published handoffs

        Raises:
            ConfigurationError: If the graph is not launchable
        """
        self.validate()

        in_degree = {name: len(node.dependencies) for name, node in self.nodes.items()}
        levels = []
        remaining = set(self.nodes.keys())

        while remaining:
            current_level = sorted(
                name for name in remaining if in_degree[name] == 0
            )
            if not current_level:
                raise ConfigurationError("No agent without pending dependencies")

            levels.append(current_level)

            for name in current_level:
                remaining.remove(name)
                for dependent in self.edges.get(name, []):
                    if dependent in in_degree:
                        in_degree[dependent] -= 1

        return levels

    def get_critical_path(self) -> tuple[list[str], int]:
        """
        Longest dependency chain weighted by cycle budget.

        Returns:
            Tuple of (agent names along the chain, total max_cycles)
        """
        if not self.nodes:
            return [], 0

        order = [name for level in self.get_execution_order() for name in level]
        earliest_start: dict[str, int] = {}

        for name in order:
            node = self.nodes[name]
            if not node.dependencies:
                earliest_start[name] = 0
            else:
                earliest_start[name] = max(
                    earliest_start[dep] + self.nodes[dep].max_cycles
                    for dep in node.dependencies
                )

        current = max(
            self.nodes,
            key=lambda n: earliest_start[n] + self.nodes[n].max_cycles
        )
        path = []
        total = 0

        while current:
            path.insert(0, current)
            total += self.nodes[current].max_cycles
            predecessors = [
                dep for dep in self.nodes[current].dependencies
                if earliest_start[dep] + self.nodes[dep].max_cycles
                == earliest_start[current]
            ]
            current = predecessors[0] if predecessors else None

        return path, total
