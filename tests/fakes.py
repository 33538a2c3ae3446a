import asyncio
from collections import Counter
from decimal import Decimal
from typing import Any

from swapmarket.gateways.base import EscrowResult, PaymentTransaction, SettlementDetails


class FakePaymentGateway:
    """In-memory escrow provider. Set fail_on[<method>] to make a call raise."""

    def __init__(self):
        self.calls: list[tuple[str, dict]] = []
        self.fail_on: dict[str, Exception] = {}
        self.delay: dict[str, float] = {}
        self._seq = 0

    async def _step(self, name: str, kwargs: dict) -> None:
        self.calls.append((name, kwargs))
        if name in self.delay:
            await asyncio.sleep(self.delay[name])
        if name in self.fail_on:
            raise self.fail_on[name]

    def _next(self, prefix: str) -> str:
        self._seq += 1
        return f"{prefix}_{self._seq}"

    def called(self, name: str) -> int:
        return sum(1 for n, _ in self.calls if n == name)

    async def create_escrow(self, *, settlement_id: str, amount: Decimal, currency: str, payer_id: str, recipient_id: str, listing_ref: str, payment_method_id: str | None = None) -> EscrowResult:
        await self._step("create_escrow", {"settlement_id": settlement_id, "amount": amount, "currency": currency, "payer_id": payer_id, "recipient_id": recipient_id})
        return EscrowResult(escrow_id=self._next("esc"), status="held")

    async def release_escrow(self, *, escrow_id: str, recipient_id: str, amount: Decimal | None = None) -> PaymentTransaction:
        await self._step("release_escrow", {"escrow_id": escrow_id, "recipient_id": recipient_id})
        return PaymentTransaction(transaction_id=self._next("pay"), status="released", amount=amount)

    async def refund_escrow(self, *, escrow_id: str, reason: str) -> PaymentTransaction:
        await self._step("refund_escrow", {"escrow_id": escrow_id, "reason": reason})
        return PaymentTransaction(transaction_id=self._next("ref"), status="refunded")


class FakeBlockchainGateway:
    """Pops one queued error per call; records on success."""

    def __init__(self):
        self.errors: list[Exception] = []
        self.delay: float = 0
        self.attempts = 0
        self.recorded: list[SettlementDetails] = []
        # awaited before each attempt, e.g. to change the database mid-settlement
        self.before_record = None

    async def record_settlement(self, details: SettlementDetails) -> str:
        self.attempts += 1
        if self.before_record is not None:
            await self.before_record(details)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.errors:
            raise self.errors.pop(0)
        self.recorded.append(details)
        return f"0xtx{len(self.recorded)}"


class FakeNotificationGateway:
    def __init__(self):
        self.events: list[tuple[str, str, dict[str, Any]]] = []
        self.fail: Exception | None = None

    async def emit(self, event_type: str, user_id: str, payload: dict[str, Any]) -> None:
        if self.fail is not None:
            raise self.fail
        self.events.append((event_type, user_id, payload))

    def of_type(self, event_type: str) -> list[tuple[str, dict[str, Any]]]:
        return [(user, payload) for kind, user, payload in self.events if kind == event_type]


class RecordingMetrics:
    def __init__(self):
        self.counts: Counter = Counter()

    def increment(self, name: str, value: int = 1, **attributes: Any) -> None:
        self.counts[name] += value


class RecordingSleep:
    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
