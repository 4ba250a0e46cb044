"""
Declarative module API.

A module is a named builder function. Running it against a ModuleBuilder
records one node per declaration and hands back Futures; nothing touches
the chain. Dependencies between nodes are inferred from the Futures passed
into later declarations.

    >>> Token = build_module("Token", lambda m: {"Token": m.contract("Token")})
    >>> graph = Token.build()
    >>> list(graph.nodes)
    ['Token#Token']
"""
from __future__ import annotations

import hashlib
import json
import logging
import re
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from .errors import CyclicDependencyError, DeclarationError
from .ir import (
    CALL,
    CONTRACT,
    CONTRACT_AT,
    CONTRACT_KINDS,
    PARAMETER,
    READ,
    Future,
    GraphIR,
    NodeIR,
    iter_futures,
)

__all__ = ["Module", "ModuleBuilder", "build_module", "GLOBAL_PARAMETERS"]

logger = logging.getLogger(__name__)

GLOBAL_PARAMETERS = "$global"

_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
_CONTRACT_RE = re.compile(r"^[A-Za-z_$][A-Za-z0-9_$./:-]*$")
_MISSING = object()

Parameters = Mapping[str, Mapping[str, Any]]
BuilderFunction = Callable[["ModuleBuilder"], Optional[Mapping[str, Future]]]


class Module:
    """A named, composable unit of declared deployment actions."""

    def __init__(self, name: str, fn: BuilderFunction):
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise DeclarationError(f"Invalid module name: {name!r}")
        if not callable(fn):
            raise DeclarationError(f"Module '{name}' needs a callable builder function")
        self.name = name
        self.fn = fn

    def build(self, parameters: Optional[Parameters] = None) -> GraphIR:
        """
        Run the builder function once and return the resulting graph.

        ``parameters`` maps module names (or ``"$global"``) to parameter values.
        Raises DeclarationError or CyclicDependencyError; no partial graph is
        ever returned.
        """
        ctx = _BuildContext(parameters or {})
        exports = ctx.build(self)
        graph = GraphIR(name=self.name, nodes=ctx.nodes, exports=dict(exports))
        graph.validate()
        logger.debug(f"Built module {self.name}: {len(graph.nodes)} nodes")
        return graph

    def __repr__(self) -> str:
        return f"Module({self.name!r})"


def build_module(name: str, fn: BuilderFunction) -> Module:
    return Module(name, fn)


class _BuildContext:
    """State shared by every ModuleBuilder during a single build."""

    def __init__(self, parameters: Parameters):
        self.parameters = parameters
        self.nodes: Dict[str, NodeIR] = {}
        self._built: Dict[str, tuple] = {}  # module name -> (module, exports)
        self._stack: List[str] = []

    def build(self, module: Module) -> Dict[str, Future]:
        if module.name in self._stack:
            chain = self._stack[self._stack.index(module.name):] + [module.name]
            raise CyclicDependencyError(
                f"Module composition cycle: {' -> '.join(chain)}", node_ids=chain
            )
        if module.name in self._built:
            built, exports = self._built[module.name]
            if built is not module:
                raise DeclarationError(f"Two different modules are named '{module.name}'")
            return exports

        self._stack.append(module.name)
        try:
            result = module.fn(ModuleBuilder(module.name, self))
        finally:
            self._stack.pop()

        exports = self._check_exports(module.name, result)
        self._built[module.name] = (module, exports)
        return exports

    def _check_exports(self, module_name: str, result: Any) -> Dict[str, Future]:
        if result is None:
            return {}
        if not isinstance(result, Mapping):
            raise DeclarationError(
                f"Module '{module_name}' must return a mapping of export name to future, got {type(result).__name__}"
            )
        exports = {}
        for name, future in result.items():
            if not isinstance(name, str) or not _NAME_RE.match(name):
                raise DeclarationError(f"Invalid export name {name!r} in module '{module_name}'")
            if not isinstance(future, Future):
                raise DeclarationError(f"Export '{name}' of module '{module_name}' is not a future")
            self.check_in_scope(future, f"export '{name}' of module '{module_name}'")
            exports[name] = future
        return exports

    def check_in_scope(self, future: Future, where: str) -> None:
        node = self.nodes.get(future.id)
        if node is None or node.kind != future.kind:
            raise DeclarationError(
                f"{where} references future '{future.id}', which is not declared in this deployment"
            )

    def parameter_value(self, module_name: str, name: str, default: Any) -> Any:
        for scope in (module_name, GLOBAL_PARAMETERS):
            values = self.parameters.get(scope) or {}
            if name in values:
                return values[name]
        if default is _MISSING:
            raise DeclarationError(
                f"Parameter '{name}' of module '{module_name}' has no default and no value was supplied"
            )
        return default


class ModuleBuilder:
    """
    The ``m`` handed to a module's builder function.

    Every method records one node and returns its Future at once; an
    optional ``id`` overrides the derived local id and ``after`` adds
    dependencies that are not passed as arguments.
    """

    def __init__(self, module_name: str, ctx: _BuildContext):
        self.module_name = module_name
        self._ctx = ctx

    def contract(
        self,
        name: str,
        args: Iterable[Any] = (),
        id: Optional[str] = None,
        after: Iterable[Future] = (),
    ) -> Future:
        """Declare the deployment of contract ``name`` with constructor ``args``."""
        self._check_contract_name(name)
        return self._add(CONTRACT, id or name, {"contract": name, "args": list(args)}, after, contract=name)

    def contract_at(
        self,
        name: str,
        address: Any,
        id: Optional[str] = None,
        after: Iterable[Future] = (),
    ) -> Future:
        """Bind an already deployed contract so later calls can target it."""
        self._check_contract_name(name)
        return self._add(CONTRACT_AT, id or name, {"contract": name, "address": address}, after, contract=name)

    def call(
        self,
        target: Future,
        method: str,
        args: Iterable[Any] = (),
        id: Optional[str] = None,
        after: Iterable[Future] = (),
    ) -> Future:
        self._check_target(target, method)
        params = {"target": target, "method": method, "args": list(args)}
        return self._add(CALL, id or f"{target.contract}.{method}", params, after)

    def read(
        self,
        target: Future,
        method: str,
        id: Optional[str] = None,
        after: Iterable[Future] = (),
    ) -> Future:
        self._check_target(target, method)
        params = {"target": target, "method": method}
        return self._add(READ, id or f"{target.contract}.{method}", params, after)

    def parameter(self, name: str, default: Any = _MISSING) -> Future:
        """Declare a module parameter; its value is fixed when the module is built."""
        if not isinstance(name, str) or not _NAME_RE.match(name):
            raise DeclarationError(f"Invalid parameter name {name!r} in module '{self.module_name}'")
        value = self._ctx.parameter_value(self.module_name, name, default)
        return self._add(PARAMETER, f"param:{name}", {"name": name, "value": value}, ())

    def include_module(self, module: Module) -> Dict[str, Future]:
        """Include ``module`` and return its exported futures."""
        if not isinstance(module, Module):
            raise DeclarationError(f"Module '{self.module_name}' can only include Module objects, got {module!r}")
        return dict(self._ctx.build(module))

    def _check_contract_name(self, name: str) -> None:
        if not isinstance(name, str) or not _CONTRACT_RE.match(name):
            raise DeclarationError(f"Invalid contract name {name!r} in module '{self.module_name}'")

    def _check_target(self, target: Any, method: str) -> None:
        if not isinstance(target, Future) or target.kind not in CONTRACT_KINDS:
            raise DeclarationError(
                f"'{method}' in module '{self.module_name}' must target a contract future, got {target!r}"
            )
        if not isinstance(method, str) or not method:
            raise DeclarationError(f"Invalid method name {method!r} in module '{self.module_name}'")

    def _add(
        self,
        kind: str,
        local_id: str,
        params: Dict[str, Any],
        after: Iterable[Future],
        contract: Optional[str] = None,
    ) -> Future:
        node_id = f"{self.module_name}#{local_id}"
        if node_id in self._ctx.nodes:
            raise DeclarationError(
                f"Duplicate id '{node_id}': pass a unique id= to tell the two declarations apart"
            )

        after = list(after)
        for dep in after:
            if not isinstance(dep, Future):
                raise DeclarationError(f"'after' of '{node_id}' must only contain futures, got {dep!r}")
        if after:
            params["after"] = after

        deps: List[str] = []
        for future in iter_futures(params):
            self._ctx.check_in_scope(future, f"Declaration '{node_id}'")
            if future.id not in deps:
                deps.append(future.id)

        self._ctx.nodes[node_id] = NodeIR(
            id=node_id,
            kind=kind,
            module=self.module_name,
            deps=deps,
            params=params,
            fingerprint=self._fingerprint(node_id, kind, params),
        )
        return Future(id=node_id, kind=kind, module=self.module_name, contract=contract)

    def _fingerprint(self, node_id: str, kind: str, params: Dict[str, Any]) -> str:
        nodes = self._ctx.nodes

        def resolve(future: Future) -> Any:
            # parameter values are known now, other futures are identified by id
            if future.kind == PARAMETER:
                return {"parameter": _canonical(nodes[future.id].params["value"], resolve, node_id)}
            return {"future": future.id}

        payload = json.dumps({"kind": kind, "params": _canonical(params, resolve, node_id)}, sort_keys=True)
        return hashlib.sha256(payload.encode("utf-8")).hexdigest()


_SCALARS = (str, int, float, bool, type(None))


def _canonical(value: Any, resolve: Callable[[Future], Any], node_id: str) -> Any:
    """
    JSON form of a declaration argument that is identical in every process:
    sets are sorted and bytes hex encoded. Anything else that json cannot
    represent is a DeclarationError.
    """
    if isinstance(value, Future):
        return resolve(value)
    if isinstance(value, _SCALARS):
        return value
    if isinstance(value, (bytes, bytearray)):
        return {"bytes": bytes(value).hex()}
    if isinstance(value, (list, tuple)):
        return [_canonical(item, resolve, node_id) for item in value]
    if isinstance(value, (set, frozenset)):
        items = [_canonical(item, resolve, node_id) for item in value]
        return {"set": sorted(items, key=lambda item: json.dumps(item, sort_keys=True))}
    if isinstance(value, dict):
        out = {}
        for k, v in value.items():
            if not isinstance(k, _SCALARS):
                raise DeclarationError(f"Argument of '{node_id}' has an unsupported key {k!r}")
            out[str(k)] = _canonical(v, resolve, node_id)
        return out
    raise DeclarationError(
        f"Argument of '{node_id}' has unsupported type {type(value).__name__}; "
        "use str, numbers, bytes, lists, tuples, sets, dicts or futures"
    )
