import threading

import pytest

from deploygraph import (
    ConcurrentDeploymentError,
    CyclicDependencyError,
    DeploymentStatus,
    FileJournalStore,
    GraphIR,
    LocalBackend,
    NodeIR,
    NodeState,
    ReconciliationError,
    build_module,
    deploy,
)
from deploygraph.ir import CONTRACT
from deploygraph.journal import JournalStatus, NodeStatus

from example_modules import PairModule, TitanSentaraModule


def test_single_contract_deployment(adapter, store):
    result = deploy(TitanSentaraModule, adapter, store, "local")

    assert result.status is DeploymentStatus.SUCCESS
    assert result.ok
    address = result.exports["TitanSentara"]
    assert adapter.contracts[address] == ("TitanSentara", [])
    assert [(e.node_id, e.status) for e in store.entries("local")] == [
        ("TitanSentaraModule#TitanSentara", JournalStatus.STARTED),
        ("TitanSentaraModule#TitanSentara", JournalStatus.SUCCEEDED),
    ]


def test_instance_id_defaults_to_module_name(adapter, store):
    deploy(TitanSentaraModule, adapter, store)

    assert len(store.entries("TitanSentaraModule")) == 2


def test_resume_after_partial_failure(adapter, store):
    adapter.fail.add("ContractB")

    first = deploy(PairModule, adapter, store, "testnet")

    assert first.status is DeploymentStatus.PARTIAL_FAILURE
    address_a = first.values["PairModule#ContractA"]
    assert first.failed == {"PairModule#ContractB": "ContractB reverted"}
    assert first.node_states["PairModule#ContractB"] is NodeState.FAILED
    assert first.exports == {"ContractA": address_a}
    assert first.unresolved == ["PairModule#ContractB"]

    adapter.fail.clear()
    adapter.deployments.clear()

    second = deploy(PairModule, adapter, store, "testnet")

    assert second.status is DeploymentStatus.SUCCESS
    assert adapter.deployments == [("ContractB", [address_a])]
    assert second.skipped == ["PairModule#ContractA"]
    assert second.retried == ["PairModule#ContractB"]
    assert second.exports["ContractA"] == address_a
    assert adapter.contracts[second.exports["ContractB"]] == ("ContractB", [address_a])


def test_succeeded_nodes_are_never_resubmitted(adapter, store):
    deploy(PairModule, adapter, store, "local")
    adapter.deployments.clear()

    result = deploy(PairModule, adapter, store, "local")

    assert result.ok
    assert adapter.deployments == []
    assert result.skipped == ["PairModule#ContractA", "PairModule#ContractB"]


def test_failure_blocks_dependents_but_not_siblings(adapter, store):
    def build(m):
        a = m.contract("A")
        b = m.contract("B", [a])
        m.call(b, "init")
        c = m.contract("C")
        return {"B": b, "C": c}

    adapter.fail.add("A")
    result = deploy(build_module("Branches", build), adapter, store, "local")

    assert result.status is DeploymentStatus.PARTIAL_FAILURE
    assert result.node_states == {
        "Branches#A": NodeState.FAILED,
        "Branches#B": NodeState.BLOCKED,
        "Branches#B.init": NodeState.BLOCKED,
        "Branches#C": NodeState.SUCCEEDED,
    }
    assert [name for name, _ in adapter.deployments] == ["A", "C"]
    assert adapter.calls == []
    assert result.exports == {"C": result.values["Branches#C"]}
    assert set(result.blocked) == {"Branches#B", "Branches#B.init"}


def test_cycle_fails_before_any_adapter_call(adapter, store):
    graph = GraphIR(
        name="Loop",
        nodes={
            "Loop#A": NodeIR(id="Loop#A", kind=CONTRACT, module="Loop", deps=["Loop#B"],
                             params={"contract": "A", "args": []}),
            "Loop#B": NodeIR(id="Loop#B", kind=CONTRACT, module="Loop", deps=["Loop#A"],
                             params={"contract": "B", "args": []}),
        },
    )

    with pytest.raises(CyclicDependencyError):
        LocalBackend(adapter, store).run(graph, "local")
    assert adapter.deployments == []
    assert store.entries("local") == []


def test_concurrent_attempt_fails_fast(adapter, store):
    held = store.open("local")
    held.record("PairModule#ContractA", JournalStatus.STARTED)
    try:
        with pytest.raises(ConcurrentDeploymentError):
            deploy(PairModule, adapter, store, "local")
        assert adapter.deployments == []
        assert [e.status for e in store.entries("local")] == [JournalStatus.STARTED]
    finally:
        held.close()


def test_concurrent_attempt_on_file_store(adapter, tmp_path):
    store = FileJournalStore(tmp_path)
    with store.open("local"):
        with pytest.raises(ConcurrentDeploymentError):
            deploy(PairModule, adapter, store, "local")
    assert adapter.deployments == []

    assert deploy(PairModule, adapter, store, "local").ok


def test_interrupted_node_is_retried(adapter, store):
    with store.open("local") as journal:
        journal.record("TitanSentaraModule#TitanSentara", JournalStatus.STARTED)

    result = deploy(TitanSentaraModule, adapter, store, "local")

    assert result.ok
    assert result.retried == ["TitanSentaraModule#TitanSentara"]
    assert len(adapter.deployments) == 1


def test_changed_declaration_of_succeeded_node_is_rejected(adapter, store):
    def build(m):
        return {"Token": m.contract("Token", [m.parameter("supply", 100)])}

    module = build_module("Token", build)
    deploy(module, adapter, store, "local")
    adapter.deployments.clear()

    with pytest.raises(ReconciliationError, match="Token#Token") as exc_info:
        deploy(module, adapter, store, "local", parameters={"Token": {"supply": 200}})
    assert exc_info.value.node_ids == ("Token#Token",)
    assert adapter.deployments == []


def test_parameters_are_not_journaled(adapter, store):
    def build(m):
        return {"Token": m.contract("Token", [m.parameter("supply", 100)])}

    result = deploy(build_module("Token", build), adapter, store, "local")

    assert adapter.deployments == [("Token", [100])]
    assert result.values["Token#param:supply"] == 100
    assert {e.node_id for e in store.entries("local")} == {"Token#Token"}


def test_calls_and_reads_receive_resolved_values(adapter, store):
    adapter.views[("Token", "symbol")] = "TKN"
    adapter.views[("Token", "owner")] = lambda args: args[0]

    def build(m):
        token = m.contract("Token", ["0xowner"])
        registry = m.contract("Registry")
        m.call(registry, "register", [token, m.read(token, "symbol")])
        return {"Token": token, "owner": m.read(token, "owner")}

    result = deploy(build_module("Reads", build), adapter, store, "local")

    token = result.exports["Token"]
    registry = result.values["Reads#Registry"]
    assert result.ok
    assert result.values["Reads#Token.symbol"] == "TKN"
    assert result.exports["owner"] == "0xowner"
    assert adapter.calls == [(registry, "register", [token, "TKN"])]


def test_set_arguments_resolve_to_addresses(adapter, store):
    def build(m):
        a = m.contract("A")
        b = m.contract("B")
        return {"Multisig": m.contract("Multisig", [frozenset([a, b]), 2])}

    result = deploy(build_module("Signers", build), adapter, store, "local")

    assert result.ok
    signers = frozenset([result.values["Signers#A"], result.values["Signers#B"]])
    assert adapter.deployments[-1] == ("Multisig", [signers, 2])


def test_contract_at_targets_an_existing_contract(adapter, store):
    adapter.at("0x" + "e" * 40, "Oracle")
    adapter.views[("Oracle", "price")] = 42

    def build(m):
        oracle = m.contract_at("Oracle", m.parameter("oracle"))
        return {"price": m.read(oracle, "price")}

    module = build_module("Existing", build)
    result = deploy(module, adapter, store, "local", parameters={"Existing": {"oracle": "0x" + "e" * 40}})

    assert result.exports == {"price": 42}
    assert adapter.deployments == []


def test_failed_read_is_a_node_failure(adapter, store):
    def build(m):
        token = m.contract("Token")
        return {"missing": m.read(token, "missing")}

    result = deploy(build_module("BadRead", build), adapter, store, "local")

    assert result.status is DeploymentStatus.PARTIAL_FAILURE
    assert "has no view 'missing'" in result.failed["BadRead#Token.missing"]
    with store.open("local") as journal:
        assert journal.status_of("BadRead#Token") is NodeStatus.SUCCEEDED
        assert journal.status_of("BadRead#Token.missing") is NodeStatus.FAILED


def test_unexpected_errors_propagate_and_release_the_journal(adapter, store):
    def explode(name, args):
        raise RuntimeError("adapter bug")

    adapter.deploy_contract = explode

    with pytest.raises(RuntimeError, match="adapter bug"):
        deploy(TitanSentaraModule, adapter, store, "local")

    with store.open("local") as journal:
        assert journal.status_of("TitanSentaraModule#TitanSentara") is NodeStatus.FAILED


def test_parallel_execution_respects_dependencies(adapter, store):
    lock = threading.Lock()
    in_flight = {"now": 0, "max": 0}
    original = adapter.deploy_contract
    barrier = threading.Barrier(4, timeout=5)

    def tracking_deploy(name, args):
        with lock:
            in_flight["now"] += 1
            in_flight["max"] = max(in_flight["max"], in_flight["now"])
        try:
            if name.startswith("Leaf"):
                barrier.wait()
            return original(name, args)
        finally:
            with lock:
                in_flight["now"] -= 1

    adapter.deploy_contract = tracking_deploy

    def build(m):
        leaves = [m.contract(f"Leaf{i}") for i in range(4)]
        root = m.contract("Root", leaves)
        return {"Root": root}

    result = LocalBackend(adapter, store, max_workers=4).run(build_module("Fan", build).build(), "local")

    assert result.ok
    assert in_flight["max"] == 4
    root_name, root_args = adapter.contracts[result.exports["Root"]]
    assert root_args == [result.values[f"Fan#Leaf{i}"] for i in range(4)]


def test_deploy_accepts_an_import_path(adapter, store):
    result = deploy("example_modules:TitanSentaraModule", adapter, store, "local")

    assert result.ok
    assert list(result.exports) == ["TitanSentara"]


def test_max_workers_must_be_positive(adapter, store):
    with pytest.raises(ValueError):
        LocalBackend(adapter, store, max_workers=0)
