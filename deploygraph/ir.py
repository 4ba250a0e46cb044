"""
This module defines the Intermediate Representation of a deployment.
It contains:
- Futures - placeholders for values produced by on-chain actions
- Nodes - declared actions that consume and produce futures
- Graph - how nodes depend on each other
"""
from __future__ import annotations
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterator, List, Optional, Set, Tuple

from .errors import CyclicDependencyError, DeclarationError

# node kinds
CONTRACT = "contract"
CONTRACT_AT = "contract_at"
CALL = "call"
READ = "read"
PARAMETER = "parameter"

CONTRACT_KINDS = (CONTRACT, CONTRACT_AT)


@dataclass(frozen=True)
class Future:
    id: str
    kind: str
    module: str
    contract: Optional[str] = None

    def __repr__(self) -> str:
        return f"Future({self.id!r})"


@dataclass
class NodeIR:
    id: str
    kind: str
    module: str
    deps: List[str] = field(default_factory=list)
    params: Dict[str, Any] = field(default_factory=dict)  # contract, method, args, target, address, value...
    fingerprint: str = ""


@dataclass
class GraphIR:
    name: str
    nodes: Dict[str, NodeIR]
    exports: Dict[str, Future] = field(default_factory=dict)

    def edges(self) -> Set[Tuple[str, str]]:
        """(dependency, dependent) pairs."""
        return {(dep, nid) for nid, n in self.nodes.items() for dep in n.deps}

    def dependents(self, node_id: str) -> List[str]:
        return [nid for nid, n in self.nodes.items() if node_id in n.deps]

    def topological_order(self) -> List[str]:
        return toposort({nid: n.deps for nid, n in self.nodes.items()})

    def validate(self) -> None:
        for nid, n in self.nodes.items():
            for dep in n.deps:
                if dep not in self.nodes:
                    raise DeclarationError(
                        f"Node '{nid}' depends on '{dep}', which is not part of deployment '{self.name}'"
                    )
        self.topological_order()


def toposort(nodes: Dict[str, List[str]]) -> List[str]:
    """
    Order ``nodes`` so every id comes after its dependencies.

    Ids that are ready at the same time keep their insertion order, which
    makes the result deterministic for a deterministic input.
    """
    remaining = list(nodes.keys())
    done: Set[str] = set()
    order: List[str] = []

    while remaining:
        progressed = False
        for nid in list(remaining):
            if all(dep in done for dep in nodes[nid]):
                order.append(nid)
                done.add(nid)
                remaining.remove(nid)
                progressed = True
        if not progressed:
            raise CyclicDependencyError(
                f"Cycle/unresolved dependencies between: {', '.join(remaining)}",
                node_ids=remaining,
            )
    return order


def iter_futures(value: Any) -> Iterator[Future]:
    """Yield every Future found in an argument, descending into lists, tuples, sets and dicts."""
    if isinstance(value, Future):
        yield value
    elif isinstance(value, (list, tuple)):
        for item in value:
            yield from iter_futures(item)
    elif isinstance(value, (set, frozenset)):
        # sets have no stable order, futures inside them are yielded by id
        yield from sorted((f for item in value for f in iter_futures(item)), key=lambda f: f.id)
    elif isinstance(value, dict):
        for item in value.values():
            yield from iter_futures(item)


def substitute(value: Any, resolve: Callable[[Future], Any]) -> Any:
    """Return a copy of ``value`` with every Future replaced by ``resolve(future)``."""
    if isinstance(value, Future):
        return resolve(value)
    if isinstance(value, list):
        return [substitute(item, resolve) for item in value]
    if isinstance(value, tuple):
        return tuple(substitute(item, resolve) for item in value)
    if isinstance(value, (set, frozenset)):
        return type(value)(substitute(item, resolve) for item in value)
    if isinstance(value, dict):
        return {k: substitute(v, resolve) for k, v in value.items()}
    return value
