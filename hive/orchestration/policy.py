"""
Capability Policy — Who May Do What.

A capability is a named permission ("read_repo", "run_shell") that grants a set
of side-effecting operations ("fs.read", "fs.list", "shell.exec"). The
registry is loaded once at process start; the policy evaluates it at dispatch
time, immediately before a worker performs a gated operation.

Workers never self-police. Every gated call goes through
``WorkerContext.invoke`` / ``WorkerContext.require``, which consult the policy
and raise ``CapabilityDenied`` on refusal. The executor records that as a
Failed result with a distinct error kind, so callers can tell "the work failed"
from "the work was not permitted".
"""

from __future__ import annotations

import json
import time
from collections import Counter
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Mapping, Optional

import structlog

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class WorkerIdentity:
    """The identity a policy decision is made for."""
    task_id: str
    batch_id: str
    capabilities: frozenset[str] = frozenset()
    agent: str = ""


@dataclass
class PolicyDecision:
    """Result of a policy check."""
    allowed: bool
    reason: str = ""
    capability: Optional[str] = None   # capability that granted the operation


class CapabilityRegistry:
    """Static mapping of capability name -> allowed operation names."""

    def __init__(self, grants: Optional[Mapping[str, Iterable[str]]] = None):
        self._grants: dict[str, frozenset[str]] = {}
        for name, operations in (grants or {}).items():
            self.register(name, operations)

    @classmethod
    def from_file(cls, path: Path) -> "CapabilityRegistry":
        """Load ``{"capability": ["op", ...]}`` from a JSON file."""
        data = json.loads(Path(path).read_text(encoding="utf-8"))
        if not isinstance(data, dict):
            raise ValueError(f"Capability file {path} must contain a JSON object")
        for name, operations in data.items():
            if not isinstance(operations, list):
                raise ValueError(
                    f"Capability '{name}' in {path} must map to a list of operations"
                )
        registry = cls(data)
        logger.info(
            "capability_registry.loaded",
            path=str(path),
            capabilities=len(registry),
        )
        return registry

    def register(self, name: str, operations: Iterable[str]) -> None:
        name = name.strip()
        if not name:
            raise ValueError("Capability name must be non-empty")
        if name in self._grants:
            raise ValueError(f"Capability '{name}' is already registered")
        self._grants[name] = frozenset(op.strip() for op in operations if op.strip())

    def is_known(self, name: str) -> bool:
        return name in self._grants

    def operations_for(self, name: str) -> frozenset[str]:
        return self._grants.get(name, frozenset())

    def names(self) -> list[str]:
        return sorted(self._grants)

    def __contains__(self, name: object) -> bool:
        return name in self._grants

    def __len__(self) -> int:
        return len(self._grants)


@dataclass
class _DenialRecord:
    task_id: str
    batch_id: str
    reason: str
    operation: Optional[str] = None
    capability: Optional[str] = None
    timestamp: float = field(default_factory=time.time)


class CapabilityPolicy:
    """Evaluates operations against a worker's declared capability set."""

    def __init__(self, registry: CapabilityRegistry, max_denial_log: int = 200):
        self._registry = registry
        self._denials: list[_DenialRecord] = []
        self._denial_counts: Counter[str] = Counter()
        self._max_denial_log = max_denial_log

    @property
    def registry(self) -> CapabilityRegistry:
        return self._registry

    def authorize(self, identity: WorkerIdentity, operation: str) -> PolicyDecision:
        """Allow ``operation`` only if one of the declared capabilities grants it."""
        for capability in sorted(identity.capabilities):
            if operation in self._registry.operations_for(capability):
                return PolicyDecision(allowed=True, capability=capability)

        granting = sorted(
            name for name in self._registry.names()
            if operation in self._registry.operations_for(name)
        )
        if granting:
            reason = (
                f"Operation '{operation}' requires one of {granting}, "
                f"not declared by task '{identity.task_id}'"
            )
        else:
            reason = f"Operation '{operation}' is not granted by any capability"
        self._record_denial(identity, reason, operation=operation)
        return PolicyDecision(allowed=False, reason=reason)

    def require(self, identity: WorkerIdentity, capability: str) -> PolicyDecision:
        """Deny use of a capability outside the worker's declared set."""
        if capability in identity.capabilities:
            return PolicyDecision(allowed=True, capability=capability)
        reason = f"Capability '{capability}' is not declared by task '{identity.task_id}'"
        self._record_denial(identity, reason, capability=capability)
        return PolicyDecision(allowed=False, reason=reason)

    def denial_counts(self) -> dict[str, int]:
        """Denials per task id, for the most recently denied task ids."""
        return dict(self._denial_counts)

    def recent_denials(self) -> list[dict[str, Any]]:
        return [
            {
                "task_id": d.task_id,
                "batch_id": d.batch_id,
                "operation": d.operation,
                "capability": d.capability,
                "reason": d.reason,
                "timestamp": d.timestamp,
            }
            for d in self._denials
        ]

    def _record_denial(
        self,
        identity: WorkerIdentity,
        reason: str,
        *,
        operation: Optional[str] = None,
        capability: Optional[str] = None,
    ) -> None:
        self._denials.append(_DenialRecord(
            task_id=identity.task_id,
            batch_id=identity.batch_id,
            reason=reason,
            operation=operation,
            capability=capability,
        ))
        if len(self._denials) > self._max_denial_log:
            del self._denials[0]
        self._denial_counts[identity.task_id] += 1
        if len(self._denial_counts) > self._max_denial_log:
            # Oldest task id first; Counter keeps insertion order.
            del self._denial_counts[next(iter(self._denial_counts))]
        logger.warning(
            "policy.denied",
            task_id=identity.task_id,
            batch_id=identity.batch_id,
            operation=operation,
            capability=capability,
        )
