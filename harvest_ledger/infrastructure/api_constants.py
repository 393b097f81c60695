"""
Ledger gateway endpoint constants.

Centralizes the transfer gateway paths so the executor never builds URLs
inline.
"""


class LedgerGatewayEndpoints:
    """Ledger gateway endpoint paths."""

    TRANSFERS_BASE = "/v1/transfers"

    TRANSFERS = f"{TRANSFERS_BASE}/"
    TRANSFER_BY_KEY = f"{TRANSFERS_BASE}/{{idempotency_key}}"

    @classmethod
    def get_transfer(cls, idempotency_key: str) -> str:
        """
        Get the lookup endpoint for a transfer.

        Args:
            idempotency_key: Key the transfer was submitted with

        Returns:
            Formatted endpoint path
        """
        return cls.TRANSFER_BY_KEY.format(idempotency_key=idempotency_key)


class GatewayTransferStatus:
    """Transfer statuses reported by the gateway."""

    CONFIRMED = "confirmed"
    REJECTED = "rejected"
    PENDING = "pending"


class APIConstants:
    """General API configuration constants."""

    CONTENT_TYPE_JSON = "application/json"
    IDEMPOTENCY_HEADER = "Idempotency-Key"

    EXPLORER_BASE_URL = "https://hashscan.io"
