"""Direct on-chain transfer adapter.

Nothing is sent to a provider on create: the buyer gets a recipient
address and an exact token amount, valid until the quote's price_ttl.
Settlement happens through verification, not webhooks.
"""
from __future__ import annotations

from typing import Mapping

from planpay.chain.networks import get_network
from planpay.config import OnchainSettings
from planpay.errors import ErrorKind, Failure
from planpay.models import PaymentDraft, PaymentMethod, PaymentUrls, ProviderArtifact
from planpay.pricing import PriceOracle

from .base import CreateResult, InboundResult, ProviderAdapter, RemoteStatusResult


class OnchainAdapter(ProviderAdapter):
    method = PaymentMethod.ONCHAIN

    def __init__(self, settings: OnchainSettings, oracle: PriceOracle):
        self._settings = settings
        self._oracle = oracle

    def recipient_for(self, chain_id: int):
        network = get_network(chain_id)
        if network is None:
            return None
        return self._settings.recipient_for(network.key)

    async def create_payment_intent(self, draft: PaymentDraft, urls: PaymentUrls) -> CreateResult:
        if draft.chain_id is None:
            return Failure.validation("chain_id is required for on-chain payments")
        network = get_network(draft.chain_id)
        recipient = self.recipient_for(draft.chain_id)
        if network is None or recipient is None:
            return Failure(
                ErrorKind.UNSUPPORTED_CHAIN,
                f"Chain {draft.chain_id} is not supported",
                {"chain_id": draft.chain_id},
            )

        quote = await self._oracle.quote(
            draft.token or network.native_symbol,
            draft.amount,
            draft.chain_id,
            fiat_currency=draft.currency,
            now=draft.created_at,
        )
        if isinstance(quote, Failure):
            return quote

        details = quote.to_dict()
        details.update(
            recipient_address=recipient,
            chain_id=network.chain_id,
            network=network.name,
            explorer_url=network.explorer_url,
            required_confirmations=self._settings.confirmations_for(network.chain_id),
        )
        return ProviderArtifact(
            kind="onchain_transfer",
            details=details,
            expires_at=draft.expires_at,
        )

    async def normalize_inbound(self, raw_body: bytes, headers: Mapping[str, str]) -> InboundResult:
        return Failure.validation("On-chain payments are settled through verification")

    async def query_remote_status(
        self,
        payment_number: str,
        external_ids: Mapping[str, str],
    ) -> RemoteStatusResult:
        return Failure.validation("On-chain payments are settled through verification")
