import logging

import pytest

from deploygraph import InMemoryChainAdapter, MemoryJournalStore, TransactionError


class ScriptedAdapter(InMemoryChainAdapter):
    """In-memory chain whose deployments of the contracts in ``fail`` revert."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.fail = set()
        self.deployments = []

    def deploy_contract(self, name, args):
        self.deployments.append((name, list(args)))
        if name in self.fail:
            raise TransactionError(f"{name} reverted")
        return super().deploy_contract(name, args)


@pytest.fixture
def adapter() -> ScriptedAdapter:
    return ScriptedAdapter()


@pytest.fixture
def store() -> MemoryJournalStore:
    return MemoryJournalStore()


@pytest.fixture(autouse=True)
def _log_level(caplog):
    caplog.set_level(logging.INFO, logger="deploygraph")
