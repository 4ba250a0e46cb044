"""
Configuration the user creates: modules described as plain data, and the
parameter values a build is run with.

A module config looks like::

    {"module": {
        "name": "Market",
        "actions": {
            "token": {"kind": "contract", "contract": "Token", "args": [{"parameter": "supply"}]},
            "market": {"kind": "contract", "contract": "Market", "args": [{"future": "token"}]},
            "open": {"kind": "call", "target": "market", "method": "open", "after": ["token"]},
        },
        "parameters": {"supply": 1000},
        "required": ["owner"],
        "exports": {"Market": "market"},
    }}
"""
from __future__ import annotations
import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .builder import GLOBAL_PARAMETERS, Module, ModuleBuilder
from .errors import DeclarationError
from .ir import Future, toposort

ENV_PREFIX = "DEPLOYGRAPH_PARAM_"

# fields each action kind must set
_REQUIRED_FIELDS = {
    "contract": ("contract",),
    "contract_at": ("contract", "address"),
    "call": ("target", "method"),
    "read": ("target", "method"),
}


@dataclass
class ActionConfig:
    kind: str
    contract: Optional[str] = None
    target: Optional[str] = None
    method: Optional[str] = None
    address: Any = None
    args: List[Any] = field(default_factory=list)
    after: List[str] = field(default_factory=list)
    id: Optional[str] = None

@dataclass
class ModuleConfig:
    name: str
    actions: Dict[str, ActionConfig]
    parameters: Dict[str, Any] = field(default_factory=dict)  # name -> default
    required: List[str] = field(default_factory=list)  # parameters without a default
    exports: Dict[str, str] = field(default_factory=dict)  # export name -> action key

def load_module_config(d: Dict[str, Any]) -> ModuleConfig:
    mod = d["module"]
    actions = {}
    for key, a in mod.get("actions", {}).items():
        actions[key] = _check_action(key, ActionConfig(
            kind=a.get("kind"),
            contract=a.get("contract"),
            target=a.get("target"),
            method=a.get("method"),
            address=a.get("address"),
            args=a.get("args", []),
            after=a.get("after", []),
            id=a.get("id"),
        ))
    if "name" not in mod:
        raise DeclarationError("Module config needs a name")
    return ModuleConfig(
        name=mod["name"],
        actions=actions,
        parameters=dict(mod.get("parameters", {})),
        required=list(mod.get("required", [])),
        exports=dict(mod.get("exports", {})),
    )

def _check_action(key: str, a: ActionConfig) -> ActionConfig:
    if a.kind not in _REQUIRED_FIELDS:
        raise DeclarationError(f"Action '{key}' has unknown kind {a.kind!r}")
    missing = [name for name in _REQUIRED_FIELDS[a.kind] if getattr(a, name) is None]
    if missing:
        raise DeclarationError(f"{a.kind} action '{key}' is missing {', '.join(missing)}")
    return a

def _references(value: Any) -> List[str]:
    if isinstance(value, dict):
        if set(value) == {"future"}:
            return [value["future"]]
        return [ref for v in value.values() for ref in _references(v)]
    if isinstance(value, list):
        return [ref for v in value for ref in _references(v)]
    return []

def _action_deps(a: ActionConfig) -> List[str]:
    deps = _references(a.args) + _references(a.address) + list(a.after)
    if a.target is not None:
        deps.append(a.target)
    return deps

def to_module(cfg: ModuleConfig) -> Module:
    """
    Turn a ModuleConfig into a Module.

    Actions may reference each other in any order; they are declared in
    dependency order, so a cycle raises CyclicDependencyError at build time.
    """
    for key, a in cfg.actions.items():
        _check_action(key, a)
    both = set(cfg.required) & set(cfg.parameters)
    if both:
        raise DeclarationError(
            f"Parameters of module '{cfg.name}' are both required and defaulted: {', '.join(sorted(both))}"
        )
    deps_map = {key: _action_deps(a) for key, a in cfg.actions.items()}
    for key, deps in deps_map.items():
        for dep in deps:
            if dep not in cfg.actions:
                raise DeclarationError(f"Action '{key}' of module '{cfg.name}' references unknown action '{dep}'")
    for name, key in cfg.exports.items():
        if key not in cfg.actions:
            raise DeclarationError(f"Export '{name}' of module '{cfg.name}' references unknown action '{key}'")

    def builder(m: ModuleBuilder) -> Dict[str, Future]:
        params = {name: m.parameter(name, default) for name, default in cfg.parameters.items()}
        params.update({name: m.parameter(name) for name in cfg.required})
        futures: Dict[str, Future] = {}

        def convert(value: Any) -> Any:
            if isinstance(value, dict):
                if set(value) == {"future"}:
                    return futures[value["future"]]
                if set(value) == {"parameter"}:
                    if value["parameter"] not in params:
                        raise DeclarationError(
                            f"Module '{cfg.name}' uses undeclared parameter '{value['parameter']}'"
                        )
                    return params[value["parameter"]]
                return {k: convert(v) for k, v in value.items()}
            if isinstance(value, list):
                return [convert(v) for v in value]
            return value

        for key in toposort(deps_map):
            a = cfg.actions[key]
            after = [futures[k] for k in a.after]
            if a.kind == "contract":
                futures[key] = m.contract(a.contract, convert(a.args), id=a.id, after=after)
            elif a.kind == "contract_at":
                futures[key] = m.contract_at(a.contract, convert(a.address), id=a.id, after=after)
            elif a.kind == "call":
                futures[key] = m.call(futures[a.target], a.method, convert(a.args), id=a.id, after=after)
            else:
                futures[key] = m.read(futures[a.target], a.method, id=a.id, after=after)
        return {name: futures[key] for name, key in cfg.exports.items()}

    return Module(cfg.name, builder)

def load_parameters(path: str | Path) -> Dict[str, Dict[str, Any]]:
    """Read ``{"<Module>": {...}, "$global": {...}}`` from a JSON file."""
    with Path(path).open() as f:
        data = json.load(f)
    if not isinstance(data, dict) or not all(isinstance(v, dict) for v in data.values()):
        raise DeclarationError(f"Parameters file {path} must map module names to objects")
    return data

def parameters_from_env(
    environ: Optional[Mapping[str, str]] = None, prefix: str = ENV_PREFIX
) -> Dict[str, Dict[str, Any]]:
    """
    Collect ``<prefix><Module>__<name>=<json>`` variables; ``<prefix>__<name>``
    sets a global parameter. Values that are not valid JSON are kept as strings.
    """
    environ = os.environ if environ is None else environ
    out: Dict[str, Dict[str, Any]] = {}
    for var, raw in environ.items():
        if not var.startswith(prefix):
            continue
        module_name, sep, name = var[len(prefix):].partition("__")
        if not sep or not name:
            continue
        try:
            value = json.loads(raw)
        except json.JSONDecodeError:
            value = raw
        out.setdefault(module_name or GLOBAL_PARAMETERS, {})[name] = value
    return out

def merge_parameters(*sources: Mapping[str, Mapping[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """Later sources override earlier ones, parameter by parameter."""
    merged: Dict[str, Dict[str, Any]] = {}
    for source in sources:
        for module_name, values in (source or {}).items():
            merged.setdefault(module_name, {}).update(values)
    return merged
