"""
Maps a node "kind" to the Python function that knows how to execute it.
"""
from __future__ import annotations
from typing import Any, Callable, Dict, Protocol, Set
from .adapter import ChainAdapter
from .ir import NodeIR

class ActionContext(Protocol):
    adapter: ChainAdapter

    def resolve(self, value: Any) -> Any: ...

ActionHandler = Callable[[NodeIR, ActionContext], Any]

_REGISTRY: Dict[str, ActionHandler] = {}
_LOCAL: Set[str] = set()  # kinds that never reach the chain and are not journaled

def register(kind: str, local: bool = False):
    def deco(fn: ActionHandler):
        _REGISTRY[kind] = fn
        if local:
            _LOCAL.add(kind)
        else:
            _LOCAL.discard(kind)
        return fn
    return deco

def get_handler(kind: str) -> ActionHandler:
    if kind not in _REGISTRY:
        raise KeyError(f"No handler registered for node kind '{kind}'")
    return _REGISTRY[kind]

def is_local(kind: str) -> bool:
    return kind in _LOCAL
