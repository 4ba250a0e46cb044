"""
Boundary to the chain. The core only decides when an action runs; an
adapter decides how it is signed, broadcast and confirmed.
"""
from __future__ import annotations

import hashlib
import logging
import threading
from typing import Any, Dict, List, Optional, Protocol, Sequence, Tuple

from .errors import TransactionError

__all__ = ["ChainAdapter", "InMemoryChainAdapter"]

logger = logging.getLogger(__name__)


class ChainAdapter(Protocol):
    """
    Actions the executor needs from a chain client.

    Each method blocks until the action has a definitive outcome and raises
    TransactionError when it fails. Adapters shared by concurrent workers
    must serialize nonce allocation for a signer themselves.
    """

    def deploy_contract(self, name: str, args: Sequence[Any]) -> str:
        """Deploy contract ``name`` and return its address."""

    def call(self, address: str, method: str, args: Sequence[Any]) -> Any:
        """Send a transaction calling ``method`` and return its result."""

    def read(self, address: str, method: str) -> Any:
        """Return the value of a read-only ``method``."""


class InMemoryChainAdapter:
    """
    Deterministic stand-in for a chain.

    Addresses derive from the deployer and a nonce, calls are remembered and
    reads are answered from ``views`` (``(contract, method) -> value`` or a
    callable taking the contract's constructor args).
    """

    def __init__(
        self,
        deployer: str = "0x0000000000000000000000000000000000000001",
        views: Optional[Dict[Tuple[str, str], Any]] = None,
    ):
        self.deployer = deployer
        self.views = dict(views or {})
        self.contracts: Dict[str, Tuple[str, List[Any]]] = {}  # address -> (name, args)
        self.calls: List[Tuple[str, str, List[Any]]] = []
        self._nonce = 0
        self._lock = threading.Lock()

    def _next_nonce(self) -> int:
        with self._lock:
            nonce = self._nonce
            self._nonce += 1
            return nonce

    def deploy_contract(self, name: str, args: Sequence[Any]) -> str:
        nonce = self._next_nonce()
        digest = hashlib.sha256(f"{self.deployer}:{nonce}".encode()).hexdigest()
        address = "0x" + digest[:40]
        with self._lock:
            self.contracts[address] = (name, list(args))
        logger.debug(f"Deployed {name} at {address} (nonce {nonce})")
        return address

    def at(self, address: str, name: str, args: Sequence[Any] = ()) -> None:
        """Pretend ``name`` was deployed at ``address`` before this deployment."""
        with self._lock:
            self.contracts[address] = (name, list(args))

    def call(self, address: str, method: str, args: Sequence[Any]) -> Any:
        self._contract(address)
        self._next_nonce()
        with self._lock:
            self.calls.append((address, method, list(args)))
        return None

    def read(self, address: str, method: str) -> Any:
        name, args = self._contract(address)
        if (name, method) not in self.views:
            raise TransactionError(f"{name} at {address} has no view '{method}'")
        view = self.views[(name, method)]
        return view(args) if callable(view) else view

    def _contract(self, address: str) -> Tuple[str, List[Any]]:
        with self._lock:
            if address not in self.contracts:
                raise TransactionError(f"No contract deployed at {address}")
            return self.contracts[address]
