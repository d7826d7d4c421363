# Copyright 2024 Michael Maillet, Damien Davison, Sacha Davison
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#     http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.

"""
Dependency graph over service definitions, used to validate wait-for edges and
to determine startup order.
"""
import heapq
from collections import deque
from typing import Dict, Iterator, List, Optional, Set

from ..MODELS.service_definition import DependencyEdge, DependencyKind
from ..errors import CycleError, UnknownServiceError


class DependencyGraph:
    """
    Directed graph of services. Wait-for edges constrain startup order and must
    be acyclic; reference edges only record data dependencies.
    """
    def __init__(self):
        self._order: Dict[str, int] = {}
        self._wait_for: Dict[str, List[str]] = {}
        self._references: Dict[str, List[str]] = {}
        self._dependents: Dict[str, List[str]] = {}

    def __contains__(self, name: str) -> bool:
        return name in self._order

    def __len__(self) -> int:
        return len(self._order)

    @property
    def services(self) -> List[str]:
        """Service names in declaration order."""
        return list(self._order)

    def add_service(self, name: str):
        """
        Declares a node. Declaration order breaks ties in the startup order.
        """
        if name not in self._order:
            self._order[name] = len(self._order)
            self._wait_for[name] = []
            self._references[name] = []
            self._dependents[name] = []

    def add_edge(self, source: str, target: str, kind: DependencyKind):
        """
        Adds an edge from a dependent service to its dependency.

        :param source: The dependent service.
        :param target: The service depended upon.
        :param kind: Reference or wait-for.
        :raises UnknownServiceError: If either service is not in the graph.
        """
        if source not in self._order:
            raise UnknownServiceError(source)
        if target not in self._order:
            raise UnknownServiceError(target, referenced_by=source)

        edges = self._wait_for if kind == DependencyKind.WAIT_FOR else self._references
        if target not in edges[source]:
            edges[source].append(target)
        if source not in self._dependents[target]:
            self._dependents[target].append(source)

    def edges(self) -> List[DependencyEdge]:
        """
        Returns all edges, grouped by source in declaration order.
        """
        result = []
        for source in self._order:
            for target in self._wait_for[source]:
                result.append(DependencyEdge(source=source, target=target, kind=DependencyKind.WAIT_FOR))
            for target in self._references[source]:
                result.append(DependencyEdge(source=source, target=target, kind=DependencyKind.REFERENCE))
        return result

    def wait_for_targets(self, name: str) -> List[str]:
        return list(self._wait_for[name])

    def reference_targets(self, name: str) -> List[str]:
        return list(self._references[name])

    def dependents(self, name: str) -> List[str]:
        """Services with a direct edge of either kind to ``name``."""
        return list(self._dependents[name])

    def transitive_dependents(self, name: str) -> List[str]:
        """
        Every service that directly or indirectly depends on ``name``,
        in declaration order.
        """
        seen: Set[str] = set()
        queue = deque(self._dependents[name])
        while queue:
            current = queue.popleft()
            if current in seen or current == name:
                continue
            seen.add(current)
            queue.extend(self._dependents[current])
        return sorted(seen, key=self._order.__getitem__)

    def validate(self):
        """
        Checks that the wait-for subgraph is acyclic.

        :raises CycleError: With the shortest cycle found.
        """
        cycle = self.find_cycle()
        if cycle is not None:
            raise CycleError(cycle)

    def find_cycle(self) -> Optional[List[str]]:
        """
        Finds a minimal wait-for cycle, or None if the subgraph is a DAG.

        Runs a breadth-first search from every service; the shortest path back
        to the start is the smallest cycle through it. Among equally short
        cycles the one starting at the earliest declared service wins.
        """
        best: Optional[List[str]] = None
        for start in self._order:
            cycle = self._shortest_cycle_through(start)
            if cycle is not None and (best is None or len(cycle) < len(best)):
                best = cycle
                if len(best) == 1:
                    break
        return best

    def _shortest_cycle_through(self, start: str) -> Optional[List[str]]:
        parents: Dict[str, str] = {}
        queue = deque([start])
        visited = {start}
        while queue:
            current = queue.popleft()
            for target in self._wait_for[current]:
                if target == start:
                    path = [current]
                    while path[-1] != start:
                        path.append(parents[path[-1]])
                    return list(reversed(path))
                if target not in visited:
                    visited.add(target)
                    parents[target] = current
                    queue.append(target)
        return None

    def topological_order(self) -> Iterator[str]:
        """
        Yields services so that every wait-for dependency precedes its dependents.
        Services without an ordering constraint come out in declaration order.

        The sequence is lazy and can be consumed once. Call ``validate`` first;
        services on a cycle are never yielded.
        """
        remaining = {name: len(targets) for name, targets in self._wait_for.items()}
        waiting_on_me: Dict[str, List[str]] = {name: [] for name in self._order}
        for source, targets in self._wait_for.items():
            for target in targets:
                waiting_on_me[target].append(source)

        ready = [(self._order[name], name) for name, count in remaining.items() if count == 0]
        heapq.heapify(ready)
        while ready:
            _, name = heapq.heappop(ready)
            yield name
            for dependent in waiting_on_me[name]:
                remaining[dependent] -= 1
                if remaining[dependent] == 0:
                    heapq.heappush(ready, (self._order[dependent], dependent))
