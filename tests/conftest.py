"""共通フィクスチャ: インメモリストアと偽の Redis。"""

import pytest

from order_service.commands import OrderCommands
from order_service.memory_store import (
    InMemoryOrderRepository,
    InMemoryOwnerDirectory,
    InMemoryProductLedger,
    InMemorySequenceGenerator,
)
from order_service.notifications import OrderNotifier
from order_service.placement import OrderPlacementService
from order_service.queries import OrderQueries


class FakeRedis:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.published: list[tuple[str, str]] = []

    async def publish(self, channel: str, message: str) -> int:
        if self.fail:
            raise ConnectionError("redis unavailable")
        self.published.append((channel, message))
        return 1


@pytest.fixture
def sequence():
    return InMemorySequenceGenerator()


@pytest.fixture
def ledger(sequence):
    return InMemoryProductLedger(sequence)


@pytest.fixture
def orders():
    return InMemoryOrderRepository()


@pytest.fixture
def owners():
    return InMemoryOwnerDirectory({1: "Alice", 2: "Bob"})


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def notifier(fake_redis):
    return OrderNotifier(fake_redis)


@pytest.fixture
def placement(owners, ledger, sequence, orders, notifier):
    return OrderPlacementService(owners, ledger, sequence, orders, notifier)


@pytest.fixture
def commands(orders, ledger, sequence, notifier):
    return OrderCommands(orders, ledger, sequence, notifier)


@pytest.fixture
def queries(orders):
    return OrderQueries(orders)
