"""Declarative, resumable smart-contract deployments.

Modules declare contracts, calls, reads and parameters against a
ModuleBuilder; nothing runs until the resulting graph is handed to an
executor, which journals every step so an interrupted deployment can be
resumed without re-sending what already succeeded.

    >>> from deploygraph import InMemoryChainAdapter, MemoryJournalStore, build_module, deploy
    >>> Token = build_module("Token", lambda m: {"Token": m.contract("Token")})
    >>> result = deploy(Token, InMemoryChainAdapter(), MemoryJournalStore(), "local")
    >>> result.ok
    True
"""
from __future__ import annotations

from typing import Optional, Union

from .adapter import ChainAdapter, InMemoryChainAdapter
from .backends.local import LocalBackend, run
from .builder import Module, ModuleBuilder, build_module
from .config import load_module_config, load_parameters, merge_parameters, parameters_from_env, to_module
from .errors import (
    ConcurrentDeploymentError,
    CyclicDependencyError,
    DeclarationError,
    DeployGraphError,
    JournalError,
    ReconciliationError,
    TransactionError,
)
from .ir import Future, GraphIR, NodeIR
from .journal import FileJournalStore, JournalStore, MemoryJournalStore
from .result import DeploymentResult, DeploymentStatus, NodeState
from .util import load_module


def deploy(
    module: Union[Module, str],
    adapter: ChainAdapter,
    store: JournalStore,
    instance_id: Optional[str] = None,
    parameters=None,
    max_workers: int = 1,
) -> DeploymentResult:
    """Build ``module`` (a Module or a ``"pkg.mod:Module"`` path) and run it.

    The graph is built completely before the journal is opened, so
    declaration errors never leave a trace in the journal.
    """
    if isinstance(module, str):
        module = load_module(module)
    graph = module.build(parameters)
    return run(graph, adapter, store, instance_id, max_workers)
