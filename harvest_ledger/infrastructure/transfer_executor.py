"""
Infrastructure layer: Transfer executors for payouts.

A transfer moves a payout amount to a beneficiary address on the external
ledger. Submissions are never retried automatically since the outcome of a
failed submission is unknown; read-only lookups are retried with backoff.
"""
from typing import Any, Dict, Optional
import hashlib
import logging
import uuid

from pydantic import BaseModel, Field, ValidationError
import httpx
from tenacity import (
    retry,
    stop_after_attempt,
    wait_exponential,
    retry_if_exception_type,
)

from harvest_ledger.config import settings
from harvest_ledger.domain.errors import TransferGatewayError
from harvest_ledger.infrastructure.api_constants import (
    APIConstants,
    GatewayTransferStatus,
    LedgerGatewayEndpoints,
)

logger = logging.getLogger(__name__)


class TransferOutcome(BaseModel):
    """Definitive result of a transfer."""
    success: bool
    reference: Optional[str] = Field(
        default=None, description="Transaction id on the external ledger"
    )
    reason: Optional[str] = None


class GatewayTransfer(BaseModel):
    """Transfer resource as returned by the gateway."""
    idempotency_key: str
    status: str
    transaction_id: Optional[str] = None
    reason: Optional[str] = None

    def to_outcome(self) -> Optional[TransferOutcome]:
        if self.status == GatewayTransferStatus.CONFIRMED:
            return TransferOutcome(success=True, reference=self.transaction_id)
        if self.status == GatewayTransferStatus.REJECTED:
            return TransferOutcome(success=False, reason=self.reason or "rejected by gateway")
        return None


def build_explorer_url(reference: str, network: Optional[str] = None) -> str:
    """Block explorer link for a transaction reference."""
    return (f"{APIConstants.EXPLORER_BASE_URL}/{network or settings.explorer_network}"
            f"/transaction/{reference}")


class LedgerGatewayExecutor:
    """
    Executor submitting transfers to the external ledger gateway.
    """

    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        """Initialize the gateway client with configuration."""
        self.base_url = base_url or settings.ledger_gateway_base_url
        self.api_key = api_key if api_key is not None else settings.ledger_gateway_api_key
        self.client = httpx.AsyncClient(
            base_url=self.base_url,
            headers={
                "Authorization": f"Bearer {self.api_key}",
                "accept": APIConstants.CONTENT_TYPE_JSON,
            },
            timeout=settings.transfer_timeout_seconds,
        )

    async def close(self):
        """Close the HTTP client."""
        await self.client.aclose()

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()

    async def transfer(
        self,
        address: str,
        amount: int,
        memo: str,
        idempotency_key: str,
    ) -> TransferOutcome:
        """
        Submit a transfer once.

        Args:
            address: Destination account
            amount: Amount in minor units
            memo: Human-readable memo attached to the transfer
            idempotency_key: Payout request id

        Returns:
            TransferOutcome for a definitive gateway answer

        Raises:
            TransferGatewayError: If the gateway failed without a definitive
                answer (5xx or transport failure); the outcome is unknown
        """
        try:
            response = await self.client.post(
                LedgerGatewayEndpoints.TRANSFERS,
                json={
                    "to": address,
                    "amount": amount,
                    "memo": memo,
                    "idempotency_key": idempotency_key,
                },
                headers={APIConstants.IDEMPOTENCY_HEADER: idempotency_key},
            )
        except httpx.RequestError as e:
            raise TransferGatewayError(f"Gateway request error on transfer {idempotency_key}: {str(e)}")

        if response.status_code >= 500:
            raise TransferGatewayError(
                f"Gateway error on transfer {idempotency_key}: "
                f"{response.status_code} - {response.text}",
                upstream_status=response.status_code,
            )
        if response.status_code >= 400:
            # Rejected before execution; nothing moved
            logger.warning(f"Gateway rejected transfer {idempotency_key}: "
                           f"{response.status_code} - {response.text}")
            return TransferOutcome(
                success=False,
                reason=f"gateway rejected request ({response.status_code})",
            )

        try:
            transfer = GatewayTransfer.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise TransferGatewayError(
                f"Malformed gateway response for transfer {idempotency_key}: {str(e)}",
                upstream_status=response.status_code,
            )
        outcome = transfer.to_outcome()
        if outcome is None:
            raise TransferGatewayError(
                f"Transfer {idempotency_key} accepted but not yet final ({transfer.status})"
            )
        return outcome

    @retry(
        stop=stop_after_attempt(settings.max_retry_attempts),
        wait=wait_exponential(
            multiplier=settings.retry_backoff_multiplier,
            min=settings.retry_min_wait,
            max=settings.retry_max_wait,
        ),
        retry=retry_if_exception_type((httpx.HTTPStatusError, httpx.RequestError)),
        reraise=True,
    )
    async def _get(self, endpoint: str) -> Optional[Dict[str, Any]]:
        """
        GET with retry logic. Returns None on 404.

        Raises:
            TransferGatewayError: On a non-retryable client error
        """
        response = await self.client.get(endpoint)
        if response.status_code == 404:
            return None
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            if e.response.status_code >= 500:
                raise
            raise TransferGatewayError(
                f"Gateway lookup failed: {e.response.status_code} - {e.response.text}",
                upstream_status=e.response.status_code,
            )
        return response.json()

    async def lookup(self, idempotency_key: str) -> Optional[TransferOutcome]:
        """
        Ask the gateway what happened to a transfer.

        Returns:
            TransferOutcome if the gateway knows a final result, None if the
            transfer is unknown or still pending

        Raises:
            TransferGatewayError: If the gateway stays unavailable after retries
        """
        try:
            data = await self._get(LedgerGatewayEndpoints.get_transfer(idempotency_key))
        except httpx.HTTPStatusError as e:
            raise TransferGatewayError(
                f"Gateway unavailable: {e.response.status_code}",
                upstream_status=e.response.status_code,
            )
        except httpx.RequestError as e:
            raise TransferGatewayError(f"Gateway request error: {str(e)}")
        except ValueError as e:
            raise TransferGatewayError(f"Malformed gateway response for {idempotency_key}: {str(e)}")

        if data is None:
            return None
        try:
            return GatewayTransfer.model_validate(data).to_outcome()
        except (ValueError, ValidationError) as e:
            raise TransferGatewayError(f"Malformed gateway response for {idempotency_key}: {str(e)}")


class SimulatedTransferExecutor:
    """
    Development executor that confirms every transfer with a mock hash.

    Submissions are remembered by idempotency key so a repeated submission
    and ``lookup`` return the same reference.
    """

    def __init__(self):
        self._transfers: dict[str, TransferOutcome] = {}

    async def close(self):
        self._transfers.clear()

    async def transfer(
        self,
        address: str,
        amount: int,
        memo: str,
        idempotency_key: str,
    ) -> TransferOutcome:
        existing = self._transfers.get(idempotency_key)
        if existing is not None:
            return existing

        digest = hashlib.sha256(
            f"{idempotency_key}:{address}:{amount}:{uuid.uuid4()}".encode()
        ).hexdigest()
        outcome = TransferOutcome(success=True, reference=f"0x{digest}")
        self._transfers[idempotency_key] = outcome
        logger.info(f"Simulated transfer of {amount} to {address} ({memo}): {outcome.reference}")
        return outcome

    async def lookup(self, idempotency_key: str) -> Optional[TransferOutcome]:
        return self._transfers.get(idempotency_key)


# Singleton instance
_executor = None


def get_transfer_executor():
    """
    Get or create the singleton transfer executor for ``settings.transfer_mode``.

    Returns:
        LedgerGatewayExecutor or SimulatedTransferExecutor instance
    """
    global _executor
    if _executor is None:
        if settings.transfer_mode == "gateway":
            _executor = LedgerGatewayExecutor()
        else:
            logger.warning("Using simulated transfer executor; no funds will move")
            _executor = SimulatedTransferExecutor()
    return _executor


async def close_transfer_executor() -> None:
    global _executor
    if _executor is not None:
        await _executor.close()
        _executor = None
