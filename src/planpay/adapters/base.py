"""Common capability set of the payment provider adapters."""
from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Dict, Mapping, Optional, Union

from planpay.errors import ErrorKind, Failure
from planpay.models import (
    PaymentDraft,
    PaymentMethod,
    PaymentUrls,
    ProviderArtifact,
    RefundRequested,
    RejectedSignature,
    SettlementEvent,
)

CreateResult = Union[ProviderArtifact, Failure]
InboundResult = Union[SettlementEvent, RejectedSignature, Failure]
RemoteStatusResult = Union[SettlementEvent, Failure]
RefundResult = Union[RefundRequested, Failure]


def lower_headers(headers: Mapping[str, str]) -> Dict[str, str]:
    return {k.lower(): v for k, v in headers.items()}


class ProviderAdapter(ABC):
    """
    One implementation per payment method.

    Adapters translate between the provider's vocabulary and planpay's.
    They never touch the database; the orchestrator owns every state change.
    """

    method: PaymentMethod

    @abstractmethod
    async def create_payment_intent(self, draft: PaymentDraft, urls: PaymentUrls) -> CreateResult:
        """Ask the provider to expect the payment and return what the buyer needs."""
        pass

    @abstractmethod
    async def normalize_inbound(self, raw_body: bytes, headers: Mapping[str, str]) -> InboundResult:
        """Verify an inbound notification against the raw bytes and normalize it."""
        pass

    @abstractmethod
    async def query_remote_status(
        self,
        payment_number: str,
        external_ids: Mapping[str, str],
    ) -> RemoteStatusResult:
        """Poll the provider for the current state of a payment."""
        pass

    async def request_refund(
        self,
        order_id: str,
        payment_number: str,
        external_ids: Mapping[str, str],
        amount: int,
        currency: str,
        reason: Optional[str] = None,
    ) -> RefundResult:
        """Ask the provider to return a settled payment in full.

        Completion arrives later as a REFUND_SUCCESS notification.
        """
        return Failure(
            ErrorKind.VALIDATION,
            f"Refunds are not supported for {self.method.value} payments",
            {"method": self.method.value},
        )

    async def close(self) -> None:
        pass
