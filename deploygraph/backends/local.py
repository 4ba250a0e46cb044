"""
Executes the deployment DAG locally, in dependency order, against a chain adapter.
- opens the instance's journal (one attempt per instance id at a time)
- refuses to resume when a succeeded node's declaration changed
- resolves nodes already succeeded in the journal without re-executing them
- runs every other ready node through the handler registered for its kind,
  journaling started/succeeded/failed around the adapter call
- keeps going on independent branches when a node fails
"""
from __future__ import annotations
import logging
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

from ..adapter import ChainAdapter
from ..errors import ReconciliationError, TransactionError
from ..ir import GraphIR, NodeIR, substitute
from ..journal import Journal, JournalStatus, JournalStore, NodeStatus
from ..registry import get_handler, is_local
from ..result import DeploymentResult, DeploymentStatus, NodeState
from .. import actions  # noqa: F401  registers the node handlers

logger = logging.getLogger(__name__)


@dataclass
class LocalContext:
    adapter: ChainAdapter
    values: Dict[str, Any]

    def resolve(self, value: Any) -> Any:
        return substitute(value, lambda future: self.values[future.id])


class LocalBackend:
    def __init__(self, adapter: ChainAdapter, store: JournalStore, max_workers: int = 1):
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self._adapter = adapter
        self._store = store
        self._max_workers = max_workers

    def run(self, graph: GraphIR, instance_id: str) -> DeploymentResult:
        """
        Drive ``graph`` to completion against the journal of ``instance_id``.

        Raises CyclicDependencyError, ReconciliationError and
        ConcurrentDeploymentError before any adapter call. Adapter failures
        do not raise; they are reported in the returned result.
        """
        order = graph.topological_order()
        journal = self._store.open(instance_id)
        try:
            self._reconcile(graph, journal)
            return self._execute(graph, order, journal)
        finally:
            journal.close()

    def _reconcile(self, graph: GraphIR, journal: Journal) -> None:
        changed = []
        for nid in journal.succeeded_nodes():
            node = graph.nodes.get(nid)
            if node is None:
                logger.warning(f"{nid} succeeded in '{journal.instance_id}' but is no longer declared")
                continue
            recorded = journal.succeeded_entry(nid).fingerprint
            if recorded and recorded != node.fingerprint:
                changed.append(nid)
        if changed:
            raise ReconciliationError(
                f"Declarations changed since they succeeded in '{journal.instance_id}': {', '.join(changed)}",
                node_ids=changed,
            )

    def _execute(self, graph: GraphIR, order: List[str], journal: Journal) -> DeploymentResult:
        ctx = LocalContext(adapter=self._adapter, values={})
        states = {nid: NodeState.BLOCKED for nid in order}
        pending = list(order)
        failed: Dict[str, str] = {}
        skipped: List[str] = []
        retried: List[str] = []
        running = {}

        def finish(nid: str, outcome: Tuple[bool, Any]) -> None:
            ok, value = outcome
            if ok:
                ctx.values[nid] = value
                states[nid] = NodeState.SUCCEEDED
            else:
                failed[nid] = value
                states[nid] = NodeState.FAILED

        pool = ThreadPoolExecutor(max_workers=self._max_workers) if self._max_workers > 1 else None
        try:
            while True:
                ready = [
                    nid for nid in pending
                    if all(states[dep] is NodeState.SUCCEEDED for dep in graph.nodes[nid].deps)
                ]
                if ready:
                    for nid in ready:
                        pending.remove(nid)
                        states[nid] = NodeState.READY
                        node = graph.nodes[nid]

                        if not is_local(node.kind):
                            status = journal.status_of(nid)
                            if status is NodeStatus.SUCCEEDED:
                                logger.info(f"==> NODE {nid}  skipped, already succeeded")
                                skipped.append(nid)
                                finish(nid, (True, journal.result_of(nid)))
                                continue
                            if journal.was_attempted(nid):
                                previous = "failed" if status is NodeStatus.FAILED else "interrupted"
                                logger.info(f"==> NODE {nid}  retrying, previous attempt {previous}")
                                retried.append(nid)

                        states[nid] = NodeState.RUNNING
                        if pool is None:
                            finish(nid, self._run_node(node, ctx, journal))
                        else:
                            running[pool.submit(self._run_node, node, ctx, journal)] = nid
                    continue

                if not running:
                    break
                done, _ = wait(running, return_when=FIRST_COMPLETED)
                for fut in done:
                    finish(running.pop(fut), fut.result())
        finally:
            if pool is not None:
                pool.shutdown(wait=True, cancel_futures=True)

        status = (
            DeploymentStatus.SUCCESS
            if all(s is NodeState.SUCCEEDED for s in states.values())
            else DeploymentStatus.PARTIAL_FAILURE
        )
        exports = {
            name: ctx.values[future.id]
            for name, future in graph.exports.items()
            if future.id in ctx.values
        }
        if failed:
            blocked = [nid for nid, s in states.items() if s is NodeState.BLOCKED]
            logger.warning(
                f"Deployment '{journal.instance_id}' partially failed: failed={sorted(failed)} blocked={blocked}"
            )
        result = DeploymentResult(
            instance_id=journal.instance_id,
            status=status,
            node_states=states,
            values=dict(ctx.values),
            failed=failed,
            skipped=skipped,
            retried=retried,
            exports=exports,
        )
        logger.info(f"Deployment summary: {result.get_summary()}")
        return result

    def _run_node(self, node: NodeIR, ctx: LocalContext, journal: Journal) -> Tuple[bool, Any]:
        handler = get_handler(node.kind)
        if is_local(node.kind):
            return True, handler(node, ctx)

        t0 = time.time()
        logger.info(f"==> NODE {node.id}  kind={node.kind}")
        if node.deps:
            logger.info(f"    depends_on: {node.deps}")

        journal.record(node.id, JournalStatus.STARTED, fingerprint=node.fingerprint)
        try:
            value = handler(node, ctx)
        except TransactionError as e:
            journal.record(node.id, JournalStatus.FAILED, error=str(e), fingerprint=node.fingerprint)
            logger.error(f"    {node.id} failed: {e}")
            return False, str(e)
        except Exception as e:
            journal.record(
                node.id, JournalStatus.FAILED, error=f"{type(e).__name__}: {e}", fingerprint=node.fingerprint
            )
            raise

        journal.record(node.id, JournalStatus.SUCCEEDED, result=value, fingerprint=node.fingerprint)
        dt = time.time() - t0
        logger.info(f"    {node.id} done in {dt:.2f}s")
        return True, value


def run(
    graph: GraphIR,
    adapter: ChainAdapter,
    store: JournalStore,
    instance_id: Optional[str] = None,
    max_workers: int = 1,
) -> DeploymentResult:
    """Run ``graph`` with a LocalBackend; the instance id defaults to the graph name."""
    return LocalBackend(adapter, store, max_workers).run(graph, instance_id or graph.name)
