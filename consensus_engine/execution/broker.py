"""Broker adapter interface."""

from typing import Protocol

from consensus_engine.models.order import Account, BrokerPosition, OrderRequest, OrderResult


class BrokerAdapter(Protocol):
    """Protocol for broker interactions.

    ``place_order`` must be idempotent on ``order.client_order_id``: a retry
    after an ambiguous failure returns the existing order instead of
    creating a second one.
    """

    async def initialize(self) -> bool:
        """Connect (or reconnect); True on success."""
        ...

    async def place_order(self, order: OrderRequest) -> OrderResult:
        """Submit an order.

        Raises:
            ConnectivityError: Broker unreachable; outcome unknown
        """
        ...

    async def cancel_order(self, client_order_id: str) -> OrderResult:
        """Cancel an open order."""
        ...

    async def get_order(self, client_order_id: str) -> OrderResult | None:
        """Look up an order by client id; None if the broker never saw it."""
        ...

    async def get_positions(self) -> list[BrokerPosition]:
        """Fetch open positions."""
        ...

    async def get_account(self) -> Account:
        """Fetch account balances."""
        ...

    async def test_connection(self) -> bool:
        """Cheap liveness check."""
        ...

    async def close(self) -> None:
        """Release network resources."""
        ...
