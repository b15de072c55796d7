# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Transaction Planner

Single responsibility: Linearize a ResolutionGraph into an ordered list of
atomic steps.

Removals run first, dependents before their dependencies. Installs and
updates follow, dependencies before dependents. Ties are broken by package
name so the same graph always yields the same plan.
"""

import heapq
import logging
from typing import Dict, List, Optional, Set

from pkgmgr.core.errors import ConflictError, CyclicDependencyError
from pkgmgr.models.package_models import (
    InstalledRecord,
    NodeAction,
    Package,
    ResolutionGraph,
    ResolvedNode,
    Step,
    StepKind,
)

logger = logging.getLogger(__name__)


class TransactionPlanner:
    """Turns resolution graphs into step lists"""

    def plan(self, graph: ResolutionGraph) -> List[Step]:
        """
        Build the step list for a graph.

        Args:
            graph: Acyclic resolution graph

        Returns:
            Steps with sequential indexes starting at 0

        Raises:
            ConflictError: If two packages of the target state ship the same path
            CyclicDependencyError: If the graph has a cycle
        """
        removed = {i for i, node in enumerate(graph.nodes) if node.removed}
        kept = set(range(len(graph.nodes))) - removed

        _check_file_ownership(graph, kept)

        steps: List[Step] = []

        for i in self._topological(graph, removed, dependents_first=True):
            steps.extend(self._removal_steps(graph.nodes[i]))

        for i in self._topological(graph, kept, dependents_first=False):
            steps.extend(self._install_steps(graph.nodes[i]))

        for index, step in enumerate(steps):
            step.index = index

        logger.info(f"Planned {len(steps)} step(s) for {len(graph.changes())} change(s)")
        return steps

    def _topological(self, graph: ResolutionGraph, subset: Set[int], dependents_first: bool) -> List[int]:
        """
        Kahn's algorithm over the nodes in `subset`.

        An edge i -> j means i depends on j. With dependents_first the order is
        reversed: a node is ready once every dependent in the subset is done.
        """
        blockers: Dict[int, int] = {i: 0 for i in subset}
        unblocks: Dict[int, List[int]] = {i: [] for i in subset}

        for i in subset:
            for j in graph.edges[i]:
                if j not in subset:
                    continue
                if dependents_first:
                    blockers[j] += 1
                    unblocks[i].append(j)
                else:
                    blockers[i] += 1
                    unblocks[j].append(i)

        ready = [(graph.nodes[i].name, i) for i, count in blockers.items() if count == 0]
        heapq.heapify(ready)

        order: List[int] = []
        while ready:
            _, i = heapq.heappop(ready)
            order.append(i)
            for k in unblocks[i]:
                blockers[k] -= 1
                if blockers[k] == 0:
                    heapq.heappush(ready, (graph.nodes[k].name, k))

        if len(order) != len(subset):
            stuck = sorted(graph.nodes[i].name for i in subset if i not in order)
            raise CyclicDependencyError(stuck)

        return order

    def _removal_steps(self, node: ResolvedNode) -> List[Step]:
        record = node.record
        paths = [f.path for f in record.files] if record else []
        return [
            _step(StepKind.REMOVE_FILES, node, previous=record, paths=paths),
            _step(StepKind.RECORD_REMOVAL, node, previous=record),
        ]

    def _install_steps(self, node: ResolvedNode) -> List[Step]:
        if node.action == NodeAction.KEEP:
            # Only an explicit-flag promotion touches a kept package
            if node.record is not None and node.explicit and not node.record.explicit:
                return [_step(StepKind.RECORD_INSTALL, node, package=node.package, previous=node.record)]
            return []

        package = node.package
        record = node.record
        steps = [
            _step(StepKind.FETCH, node, package=package),
            _step(StepKind.UNPACK, node, package=package),
            _step(StepKind.LINK_FILES, node, package=package, previous=record),
        ]

        obsolete = _obsolete_paths(record, package)
        if obsolete:
            steps.append(_step(StepKind.REMOVE_FILES, node, package=package, previous=record, paths=obsolete))

        steps.append(_step(StepKind.RECORD_INSTALL, node, package=package, previous=record))
        return steps


def _step(
    kind: StepKind,
    node: ResolvedNode,
    package: Optional[Package] = None,
    previous: Optional[InstalledRecord] = None,
    paths: Optional[List[str]] = None
) -> Step:
    return Step(
        index=0,
        kind=kind,
        name=node.name,
        version=node.version,
        package=package,
        previous=previous,
        explicit=node.explicit,
        paths=list(paths or []),
    )


def _check_file_ownership(graph: ResolutionGraph, kept: Set[int]):
    """Each path of the target state belongs to one package."""
    owners: Dict[str, ResolvedNode] = {}
    for i in sorted(kept):
        node = graph.nodes[i]
        if node.action == NodeAction.KEEP and node.record is not None:
            files = node.record.files
        else:
            files = node.package.files

        for f in files:
            owner = owners.setdefault(f.path, node)
            if owner is node:
                continue
            # Overlap between untouched packages predates this transaction
            if owner.action == NodeAction.KEEP and node.action == NodeAction.KEEP:
                continue
            raise ConflictError(
                f"{f.path} is provided by both {owner.key} and {node.key}",
                chain=[f"{owner.key} provides {f.path}", f"{node.key} provides {f.path}"],
                details={"path": f.path, "packages": [owner.key, node.key]}
            )


def _obsolete_paths(record: Optional[InstalledRecord], package: Package) -> List[str]:
    """Files of the old version that the new version no longer ships."""
    if record is None:
        return []
    new_paths = {f.path for f in package.files}
    return sorted(f.path for f in record.files if f.path not in new_paths)
