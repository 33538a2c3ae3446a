from __future__ import annotations

from swapmarket.errors import InsufficientBalance, NetworkError
from swapmarket.gateways.base import SettlementDetails
from swapmarket.gateways.http_client import GatewayHttpClient


class HttpBlockchainGateway:
    """
    Talks to the ledger relay service; the relay owns the chain client.
    """

    def __init__(self, *, client: GatewayHttpClient, base_url: str, api_key: str):
        self._client = client
        self._base_url = base_url.rstrip("/")
        self._headers = {"Authorization": f"Bearer {api_key}"}

    async def record_settlement(self, details: SettlementDetails) -> str:
        res = await self._client.post_json(
            url=f"{self._base_url}/transactions/settlements",
            headers=self._headers,
            json_body=details.as_payload(),
            request_id=details.settlement_id,
        )
        if res.ok:
            return str(res.detail["transaction_id"])

        if res.error_code == "INSUFFICIENT_BALANCE" or res.status_code == 402:
            raise InsufficientBalance(error_code=res.error_code, status_code=res.status_code)

        err = NetworkError(
            res.error_message or "Blockchain network error",
            error_code=res.error_code,
            status_code=res.status_code,
        )
        # 4xx other than the above are not worth another attempt
        err.transient = res.retryable or res.status_code is None
        raise err
