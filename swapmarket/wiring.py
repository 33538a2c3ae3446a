from __future__ import annotations

from dataclasses import dataclass

from swapmarket.core.config import settings
from swapmarket.core.telemetry import MetricsSink, NullMetricsSink, OtelMetricsSink
from swapmarket.gateways.base import BlockchainGateway, NotificationGateway, PaymentGateway
from swapmarket.gateways.blockchain import HttpBlockchainGateway
from swapmarket.gateways.http_client import GatewayHttpClient
from swapmarket.gateways.notifications import HttpNotificationGateway
from swapmarket.gateways.payment import HttpPaymentGateway
from swapmarket.services.acceptance import ProposalAcceptanceEngine
from swapmarket.services.auctions import AuctionManager
from swapmarket.services.settlement import SettlementCoordinator, SettlementTimeouts
from swapmarket.services.targeting import TargetingService


@dataclass
class Services:
    targeting: TargetingService
    acceptance: ProposalAcceptanceEngine
    auctions: AuctionManager
    settlement: SettlementCoordinator
    http_client: GatewayHttpClient | None = None

    async def aclose(self) -> None:
        if self.http_client is not None:
            await self.http_client.aclose()


def build_services(
    *,
    payments: PaymentGateway,
    blockchain: BlockchainGateway,
    notifications: NotificationGateway,
    metrics: MetricsSink | None = None,
    timeouts: SettlementTimeouts | None = None,
    sleep=None,
    http_client: GatewayHttpClient | None = None,
) -> Services:
    metrics = metrics or NullMetricsSink()
    coordinator_kwargs = {"sleep": sleep} if sleep is not None else {}
    settlement = SettlementCoordinator(
        payments=payments,
        blockchain=blockchain,
        notifications=notifications,
        metrics=metrics,
        timeouts=timeouts,
        **coordinator_kwargs,
    )
    auctions = AuctionManager(settlement=settlement, notifications=notifications, metrics=metrics)
    return Services(
        targeting=TargetingService(notifications=notifications),
        acceptance=ProposalAcceptanceEngine(
            settlement=settlement,
            auctions=auctions,
            notifications=notifications,
            metrics=metrics,
        ),
        auctions=auctions,
        settlement=settlement,
        http_client=http_client,
    )


def build_default_services() -> Services:
    """HTTP gateways from settings; one pooled client shared by all three."""
    client = GatewayHttpClient(timeout_seconds=settings.gateway_timeout_seconds)
    return build_services(
        payments=HttpPaymentGateway(
            client=client,
            base_url=settings.payment_gateway_url,
            api_key=settings.payment_gateway_api_key.get_secret_value(),
        ),
        blockchain=HttpBlockchainGateway(
            client=client,
            base_url=settings.blockchain_gateway_url,
            api_key=settings.blockchain_gateway_api_key.get_secret_value(),
        ),
        notifications=HttpNotificationGateway(client=client, base_url=settings.notification_gateway_url),
        metrics=OtelMetricsSink() if settings.telemetry_enabled else NullMetricsSink(),
        http_client=client,
    )
