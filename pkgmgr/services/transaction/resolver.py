# Copyright (c) 2025 adcl.io
# All Rights Reserved.
#
# This software is proprietary and confidential. Unauthorized copying,
# distribution, or use of this software is strictly prohibited.

"""
Dependency Resolver

Single responsibility: Turn requested changes plus the installed state into a
consistent ResolutionGraph, or explain why none exists.

Search is chronological backtracking over an explicit stack of
(name, candidates, cursor) frames. Each frame keeps the solver state it was
opened on, so moving to the next candidate restores that state instead of
undoing changes one by one.
"""

import logging
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, NamedTuple, Optional, Sequence, Set, Tuple, Union

from pkgmgr.core.config import Config
from pkgmgr.core.errors import (
    ConflictError,
    CyclicDependencyError,
    DependentsExistError,
    PackageNotInstalledError,
    TransactionCancelledError,
    UnsatisfiableError,
)
from pkgmgr.models.package_models import (
    DependencyConstraint,
    InstalledRecord,
    NodeAction,
    Package,
    Request,
    RequestKind,
    ResolutionGraph,
    ResolvedNode,
)

from .index import PackageIndex
from .state import InstalledState
from .versions import compare_versions, parse_predicate, parse_version, satisfies

logger = logging.getLogger(__name__)

_WHITE, _GREY, _BLACK = 0, 1, 2


class _Active(NamedTuple):
    """A constraint currently in force and who imposed it."""
    constraint: DependencyConstraint
    origin_name: Optional[str]  # None for user requests
    origin_label: str


@dataclass
class _Failure:
    message: str
    chain: List[str]
    conflict: bool = False


@dataclass
class _SolverState:
    selected: Dict[str, Package] = field(default_factory=dict)
    constraints: Dict[str, List[_Active]] = field(default_factory=dict)
    queue: List[str] = field(default_factory=list)
    reasons: Dict[str, Tuple[Optional[str], str]] = field(default_factory=dict)
    skipped: Set[str] = field(default_factory=set)

    def copy(self) -> "_SolverState":
        return _SolverState(
            selected=dict(self.selected),
            constraints={name: list(active) for name, active in self.constraints.items()},
            queue=list(self.queue),
            reasons=dict(self.reasons),
            skipped=set(self.skipped),
        )

    def next_undecided(self) -> Optional[str]:
        for name in self.queue:
            if name not in self.selected and name not in self.skipped:
                return name
        return None

    def enqueue(self, name: str, parent: Optional[str], label: str):
        if name not in self.queue:
            self.queue.append(name)
        self.reasons.setdefault(name, (parent, label))


@dataclass
class _Frame:
    name: str
    candidates: List[Package]
    base: _SolverState
    cursor: int = 0


class DependencyResolver:
    """Resolves requested package changes against the index and installed state"""

    def __init__(self, index: PackageIndex, config: Optional[Config] = None):
        """
        Initialize dependency resolver.

        Args:
            index: Immutable package index (already ordered by the tie-break policy)
            config: Package manager configuration
        """
        self.index = index
        self.config = config or Config()

    def resolve(
        self,
        installed: Union[InstalledState, Mapping[str, InstalledRecord]],
        requests: Sequence[Request],
        should_cancel: Optional[Callable[[], bool]] = None
    ) -> ResolutionGraph:
        """
        Compute the target state for a set of requests.

        Args:
            installed: Current installed state
            requests: Install/Remove/UpdateOne/UpdateAll requests
            should_cancel: Polled once per search step

        Returns:
            Resolution graph (nodes sorted by name)

        Raises:
            UnsatisfiableError: No consistent graph exists (ConflictError and
                DependentsExistError are subclasses)
            PackageNotInstalledError: Remove/UpdateOne of a package that is not installed
            CyclicDependencyError: The resolved dependency relation is cyclic
        """
        records = installed.snapshot() if isinstance(installed, InstalledState) else dict(installed)

        installs: Dict[str, Optional[str]] = {}
        removes: Dict[str, bool] = {}
        updates: List[str] = []
        update_all = False

        for request in requests:
            if request.kind == RequestKind.INSTALL:
                if request.constraint:
                    parse_predicate(request.constraint)
                installs[request.name] = request.constraint
            elif request.kind == RequestKind.REMOVE:
                removes[request.name] = removes.get(request.name, False) or request.cascade
            elif request.kind == RequestKind.UPDATE_ONE:
                if request.name not in records:
                    raise PackageNotInstalledError(request.name)
                if request.name not in updates:
                    updates.append(request.name)
            elif request.kind == RequestKind.UPDATE_ALL:
                update_all = True

        if update_all:
            updates = sorted(records)

        both = sorted(set(installs) & set(removes))
        if both:
            raise UnsatisfiableError(
                f"Package requested for both install and removal: {', '.join(both)}",
                chain=[f"install {name}" for name in both] + [f"remove {name}" for name in both],
            )

        removed = self._removal_set(records, removes)
        state = self._initial_state(records, installs, updates, removed)
        selected, skipped = self._search(state, records, installs, updates, removed, should_cancel)

        graph = self._build_graph(selected, records, installs, removed)
        graph.skipped_optional = sorted(skipped)

        self._check_acyclic(graph)

        if update_all:
            graph.proposed_orphans = self._find_orphans(graph)

        logger.info(
            f"Resolved {len(requests)} request(s): "
            f"{len(graph.changes())} change(s), {len(graph.proposed_orphans)} orphan(s) proposed"
        )
        return graph

    # =========================================================================
    # REMOVALS
    # =========================================================================

    def _removal_set(self, records: Dict[str, InstalledRecord], removes: Dict[str, bool]) -> Set[str]:
        """Names to remove, with cascading dependents added where requested."""
        removed: Set[str] = set()
        for name in removes:
            if name not in records:
                raise PackageNotInstalledError(name)

        for name, cascade in removes.items():
            removed.add(name)
            if not cascade:
                continue
            # Transitive dependents, explicit work list
            work = [name]
            while work:
                target = work.pop()
                for dependent in self._dependents(records, target, exclude=removed):
                    removed.add(dependent)
                    work.append(dependent)

        for name in sorted(removes):
            blockers = self._dependents(records, name, exclude=removed)
            if blockers:
                raise DependentsExistError(name, blockers)

        return removed

    @staticmethod
    def _dependents(records: Dict[str, InstalledRecord], name: str, exclude: Set[str]) -> List[str]:
        """Installed packages (outside `exclude`) that require `name`."""
        dependents = []
        for other_name in sorted(records):
            if other_name == name or other_name in exclude:
                continue
            for dep in records[other_name].dependencies:
                if dep.name == name and not dep.optional:
                    dependents.append(other_name)
                    break
        return dependents

    # =========================================================================
    # SEARCH
    # =========================================================================

    def _initial_state(
        self,
        records: Dict[str, InstalledRecord],
        installs: Dict[str, Optional[str]],
        updates: List[str],
        removed: Set[str]
    ) -> _SolverState:
        state = _SolverState()

        for name, constraint in installs.items():
            state.enqueue(name, None, "requested")
            if constraint:
                state.constraints.setdefault(name, []).append(
                    _Active(DependencyConstraint(name=name, version=constraint), None, "requested")
                )
        for name in updates:
            if name not in removed:
                state.enqueue(name, None, "update")

        targets = set(installs) | set(updates)
        for name in sorted(records):
            if name in removed:
                continue
            state.enqueue(name, None, "installed")
            if name in targets:
                continue
            # Baseline: installed dependents constrain until they are re-selected
            record = records[name]
            for dep in record.dependencies:
                state.constraints.setdefault(dep.name, []).append(_Active(dep, name, record.key))

        return state

    def _search(
        self,
        state: _SolverState,
        records: Dict[str, InstalledRecord],
        installs: Dict[str, Optional[str]],
        updates: List[str],
        removed: Set[str],
        should_cancel: Optional[Callable[[], bool]]
    ) -> Tuple[Dict[str, Package], Set[str]]:
        self._failure: Optional[_Failure] = None
        # Explicitly named packages prefer their newest acceptable version
        updating = set(updates) | set(installs)
        stack: List[_Frame] = []

        while True:
            if should_cancel is not None and should_cancel():
                raise TransactionCancelledError("Resolution cancelled")

            name = state.next_undecided()
            if name is None:
                return state.selected, state.skipped
            name = _origin_first(name, state)

            candidates, failure = self._candidates(name, state, records, updating, removed)
            if not candidates:
                if self._skippable(name, state, records, installs, updates):
                    logger.debug(f"Skipping unsatisfiable optional dependency {name}")
                    state.skipped.add(name)
                    continue
                self._record(failure)
                state = self._backtrack(stack, removed)
                continue

            frame = _Frame(name=name, candidates=candidates, base=state)
            stack.append(frame)
            next_state = self._advance(frame, removed)
            state = next_state if next_state is not None else self._backtrack(stack, removed)

    def _advance(self, frame: _Frame, removed: Set[str]) -> Optional[_SolverState]:
        """Try the frame's remaining candidates; return the first consistent state."""
        while frame.cursor < len(frame.candidates):
            package = frame.candidates[frame.cursor]
            frame.cursor += 1
            state = frame.base.copy()
            if self._select(state, frame.name, package, removed):
                return state
        return None

    def _backtrack(self, stack: List[_Frame], removed: Set[str]) -> _SolverState:
        while stack:
            state = self._advance(stack[-1], removed)
            if state is not None:
                return state
            stack.pop()
        raise self._error()

    def _candidates(
        self,
        name: str,
        state: _SolverState,
        records: Dict[str, InstalledRecord],
        updating: Set[str],
        removed: Set[str]
    ) -> Tuple[List[Package], Optional[_Failure]]:
        """Ordered candidates for a name that satisfy every active constraint."""
        active = state.constraints.get(name, [])

        if name in removed:
            return [], _Failure(
                f"{name} is required but scheduled for removal",
                self._chain_for(state, active) + [f"remove {name}"],
            )

        record = records.get(name)
        available = list(self.index.candidates(name))
        if record is None:
            ordered = available
        else:
            installed_pkg = record.as_package()
            others = [p for p in available if p.version != record.version]
            if name in updating:
                # Highest first; sort is stable so repository order survives
                ordered = sorted(others + [installed_pkg], key=lambda p: parse_version(p.version), reverse=True)
            else:
                ordered = [installed_pkg] + others

        matching = [
            p for p in ordered
            if all(satisfies(p.version, a.constraint.version) for a in active)
        ]
        if matching:
            return matching, None

        versions = ", ".join(p.key for p in ordered) or "none"
        if ordered:
            message = f"Cannot satisfy {_describe(active)}; available: {versions}"
        else:
            message = f"No package named {name} in any repository"
        return [], _Failure(message, self._chain_for(state, active) + [f"available: {versions}"])

    def _skippable(
        self,
        name: str,
        state: _SolverState,
        records: Dict[str, InstalledRecord],
        installs: Dict[str, Optional[str]],
        updates: List[str]
    ) -> bool:
        """Only names pulled in purely by optional dependencies may be dropped."""
        if name in records or name in installs or name in updates:
            return False
        active = state.constraints.get(name, [])
        return bool(active) and all(a.constraint.optional for a in active)

    def _select(self, state: _SolverState, name: str, package: Package, removed: Set[str]) -> bool:
        """Commit a candidate into state; False if it contradicts what is already chosen."""
        for other_name, other in state.selected.items():
            clash = _declares_conflict(package, other) or _declares_conflict(other, package)
            if clash:
                self._record(_Failure(
                    f"{clash}; {package.key} and {other.key} cannot both be installed",
                    self._ancestry(state, other_name) + [clash],
                    conflict=True,
                ))
                return False

        # The package's own constraints replace those of its installed version
        for target, active in list(state.constraints.items()):
            kept = [a for a in active if a.origin_name != name]
            if len(kept) != len(active):
                state.constraints[target] = kept

        state.selected[name] = package

        for dep in package.dependencies:
            if dep.name in removed:
                if dep.optional:
                    continue
                self._record(_Failure(
                    f"{package.key} requires {dep} which is scheduled for removal",
                    self._ancestry(state, name) + [f"{package.key} requires {dep}", f"remove {dep.name}"],
                ))
                return False

            state.constraints.setdefault(dep.name, []).append(_Active(dep, name, package.key))

            chosen = state.selected.get(dep.name)
            if chosen is not None:
                if not satisfies(chosen.version, dep.version):
                    self._record(_Failure(
                        f"{package.key} requires {dep} but {chosen.key} is selected",
                        self._ancestry(state, name) + [f"{package.key} requires {dep}", f"selected: {chosen.key}"],
                    ))
                    return False
                continue

            if dep.name in state.skipped:
                if dep.optional:
                    continue
                state.skipped.discard(dep.name)

            if dep.optional and dep.name not in self.index and dep.name not in state.queue:
                state.skipped.add(dep.name)
                continue

            state.enqueue(dep.name, name, f"{package.key} requires {dep}")

        return True

    # =========================================================================
    # DIAGNOSTICS
    # =========================================================================

    def _record(self, failure: Optional[_Failure]):
        """Keep the first failure seen; it is what gets reported on exhaustion."""
        if failure is not None and self._failure is None:
            self._failure = failure
            logger.debug(f"Resolution dead end: {failure.message}")

    def _error(self) -> UnsatisfiableError:
        failure = self._failure or _Failure("No consistent set of packages found", [])
        if failure.conflict:
            return ConflictError(failure.message, chain=failure.chain)
        return UnsatisfiableError(failure.message, chain=failure.chain)

    def _ancestry(self, state: _SolverState, name: Optional[str]) -> List[str]:
        """Why a name is in the graph, from the root request down."""
        lines: List[str] = []
        seen: Set[str] = set()
        while name is not None and name not in seen:
            seen.add(name)
            parent, label = state.reasons.get(name, (None, "installed"))
            chosen = state.selected.get(name)
            if parent is None:
                lines.append(f"{chosen.key if chosen else name} ({label})")
            else:
                lines.append(label)
            name = parent
        return list(reversed(lines))

    def _chain_for(self, state: _SolverState, active: List[_Active]) -> List[str]:
        chain: List[str] = []
        for a in active:
            if a.origin_name is None:
                chain.append(f"requested {a.constraint}")
                continue
            for line in self._ancestry(state, a.origin_name):
                if line not in chain:
                    chain.append(line)
            chain.append(f"{a.origin_label} requires {a.constraint}")
        return chain

    # =========================================================================
    # GRAPH
    # =========================================================================

    def _build_graph(
        self,
        selected: Dict[str, Package],
        records: Dict[str, InstalledRecord],
        installs: Dict[str, Optional[str]],
        removed: Set[str]
    ) -> ResolutionGraph:
        nodes: List[ResolvedNode] = []

        for name in sorted(set(selected) | removed):
            record = records.get(name)
            if name in removed:
                nodes.append(ResolvedNode(
                    name=name,
                    version=record.version,
                    action=NodeAction.REMOVE,
                    explicit=record.explicit,
                    previous_version=record.version,
                    record=record,
                ))
                continue

            package = selected[name]
            if record is None:
                action = NodeAction.INSTALL
            else:
                order = compare_versions(package.version, record.version)
                if package.version == record.version or order == 0:
                    action = NodeAction.KEEP
                elif order > 0:
                    action = NodeAction.UPGRADE
                else:
                    action = NodeAction.DOWNGRADE

            nodes.append(ResolvedNode(
                name=name,
                version=package.version,
                action=action,
                explicit=name in installs or (record.explicit if record else False),
                previous_version=record.version if record else None,
                package=package,
                record=record,
            ))

        position = {node.name: i for i, node in enumerate(nodes)}
        edges: List[List[int]] = []
        for node in nodes:
            deps = node.package.dependencies if node.package else node.record.dependencies
            targets = {
                position[dep.name] for dep in deps
                if dep.name in position and (node.removed or not nodes[position[dep.name]].removed)
            }
            edges.append(sorted(targets))

        return ResolutionGraph(nodes=nodes, edges=edges)

    def _check_acyclic(self, graph: ResolutionGraph):
        """White/grey/black DFS over the arena with an explicit stack."""
        color = [_WHITE] * len(graph.nodes)

        for root in range(len(graph.nodes)):
            if color[root] != _WHITE:
                continue
            path: List[int] = [root]
            iters = [iter(graph.edges[root])]
            color[root] = _GREY
            while path:
                nxt = next(iters[-1], None)
                if nxt is None:
                    color[path.pop()] = _BLACK
                    iters.pop()
                    continue
                if color[nxt] == _GREY:
                    start = path.index(nxt)
                    cycle = [graph.nodes[i].name for i in path[start:]] + [graph.nodes[nxt].name]
                    raise CyclicDependencyError(cycle)
                if color[nxt] == _WHITE:
                    color[nxt] = _GREY
                    path.append(nxt)
                    iters.append(iter(graph.edges[nxt]))

    def _find_orphans(self, graph: ResolutionGraph) -> List[str]:
        """Non-explicit packages nothing remaining depends on (to a fixpoint)."""
        alive = {i for i, node in enumerate(graph.nodes) if not node.removed}
        orphans: List[str] = []
        changed = True
        while changed:
            changed = False
            for i in sorted(alive):
                node = graph.nodes[i]
                if node.explicit:
                    continue
                if any(i in graph.edges[j] for j in alive if j != i):
                    continue
                alive.discard(i)
                orphans.append(node.name)
                changed = True
        return sorted(orphans)


def _declares_conflict(package: Package, other: Package) -> Optional[str]:
    for conflict in package.conflicts:
        if conflict.name == other.name and satisfies(other.version, conflict.version):
            return f"{package.key} conflicts with {conflict}"
    return None


def _origin_first(name: str, state: _SolverState) -> str:
    """
    Pick the installed package whose constraint on `name` is still undecided.

    A baseline constraint from an installed dependent only gets a frame to
    backtrack into once that dependent is decided, so dependents go first.
    """
    seen = {name}
    while True:
        pending = [
            a.origin_name for a in state.constraints.get(name, [])
            if a.origin_name is not None
            and a.origin_name not in seen
            and a.origin_name not in state.selected
            and a.origin_name not in state.skipped
        ]
        if not pending:
            return name
        name = pending[0]
        seen.add(name)


def _describe(active: List[_Active]) -> str:
    parts = []
    for a in active:
        origin = "request" if a.origin_name is None else a.origin_label
        parts.append(f"{a.constraint} (required by {origin})")
    return ", ".join(parts)
