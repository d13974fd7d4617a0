from __future__ import annotations

from dataclasses import dataclass

from planpay.orchestrator import PaymentOrchestrator


@dataclass
class PaymentDependencies:
    orchestrator: PaymentOrchestrator


def get_deps() -> PaymentDependencies:
    raise NotImplementedError("Dependency override required")
