from __future__ import annotations

from decimal import Decimal

from swapmarket.errors import GatewayUnavailable, PaymentDeclined
from swapmarket.gateways.base import EscrowResult, PaymentTransaction
from swapmarket.gateways.http_client import GatewayHttpClient, HttpResult


def _raise_for_result(res: HttpResult, *, operation: str) -> None:
    if res.ok:
        return
    if res.status_code in (402, 422):
        raise PaymentDeclined(
            res.error_message or "Payment was declined",
            operation=operation,
            error_code=res.error_code,
            status_code=res.status_code,
        )
    err = GatewayUnavailable(
        f"Payment gateway unavailable during {operation}",
        operation=operation,
        error_code=res.error_code,
        status_code=res.status_code,
    )
    # other 4xx (auth, bad request) are final
    err.transient = res.retryable or res.status_code is None
    raise err


class HttpPaymentGateway:
    def __init__(self, *, client: GatewayHttpClient, base_url: str, api_key: str):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"}

    async def create_escrow(
        self,
        *,
        settlement_id: str,
        amount: Decimal,
        currency: str,
        payer_id: str,
        recipient_id: str,
        listing_ref: str,
        payment_method_id: str | None = None,
    ) -> EscrowResult:
        res = await self._client.post_json(
            url=f"{self._base_url}/escrows",
            headers=self._headers,
            json_body={
                "amount": str(amount),
                "currency": currency,
                "payer_id": payer_id,
                "recipient_id": recipient_id,
                "listing_ref": listing_ref,
                "settlement_ref": settlement_id,
                "payment_method_id": payment_method_id,
            },
            request_id=f"escrow-{settlement_id}",
        )
        _raise_for_result(res, operation="create_escrow")
        return EscrowResult(escrow_id=str(res.detail["escrow_id"]), status=str(res.detail.get("status", "held")))

    async def release_escrow(
        self,
        *,
        escrow_id: str,
        recipient_id: str,
        amount: Decimal | None = None,
    ) -> PaymentTransaction:
        body = {"recipient_id": recipient_id}
        if amount is not None:
            body["amount"] = str(amount)
        res = await self._client.post_json(
            url=f"{self._base_url}/escrows/{escrow_id}/release",
            headers=self._headers,
            json_body=body,
            request_id=f"release-{escrow_id}",
        )
        _raise_for_result(res, operation="release_escrow")
        return _transaction_from(res)

    async def refund_escrow(self, *, escrow_id: str, reason: str) -> PaymentTransaction:
        res = await self._client.post_json(
            url=f"{self._base_url}/escrows/{escrow_id}/refund",
            headers=self._headers,
            json_body={"reason": reason},
            request_id=f"refund-{escrow_id}",
        )
        _raise_for_result(res, operation="refund_escrow")
        return _transaction_from(res)


def _transaction_from(res: HttpResult) -> PaymentTransaction:
    amount = res.detail.get("amount")
    return PaymentTransaction(
        transaction_id=str(res.detail["transaction_id"]),
        status=str(res.detail.get("status", "completed")),
        amount=Decimal(str(amount)) if amount is not None else None,
        detail=res.detail,
    )
