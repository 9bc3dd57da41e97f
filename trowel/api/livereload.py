"""Live-reload client registry and broadcast."""

from __future__ import annotations

import asyncio
import json
from typing import Protocol

from trowel.core.models import BuildEvent, ReloadMessage
from trowel.utils.logging import get_logger

logger = get_logger(__name__)

SEND_TIMEOUT_SECONDS = 5.0


class ReloadClient(Protocol):
    """Anything that can receive a text frame; Starlette's ``WebSocket`` fits."""

    async def send_text(self, data: str) -> None: ...


class ReloadHub:
    """Registry of connected live-reload clients.

    Typical lifecycle::

        hub = ReloadHub()
        orchestrator.add_listener(hub.on_build_event)
        hub.register(websocket)
        ...
        hub.unregister(websocket)

    Delivery is best effort: a client whose send fails or takes longer
    than *send_timeout* seconds is pruned during that broadcast and never
    retried; the remaining clients are unaffected.
    """

    def __init__(self, send_timeout: float = SEND_TIMEOUT_SECONDS) -> None:
        self._clients: set[ReloadClient] = set()
        self.send_timeout = send_timeout

    def register(self, client: ReloadClient) -> None:
        self._clients.add(client)
        logger.debug("reload_client_registered", clients=len(self._clients))

    def unregister(self, client: ReloadClient) -> None:
        self._clients.discard(client)
        logger.debug("reload_client_unregistered", clients=len(self._clients))

    def __len__(self) -> int:
        return len(self._clients)

    def __contains__(self, client: ReloadClient) -> bool:
        return client in self._clients

    async def broadcast(self, message: ReloadMessage) -> int:
        """Send *message* to every registered client.

        Returns the number of clients that received it.
        """
        clients = list(self._clients)
        if not clients:
            return 0

        payload = json.dumps(message.to_wire())
        outcomes = await asyncio.gather(
            *(asyncio.wait_for(client.send_text(payload), self.send_timeout) for client in clients),
            return_exceptions=True,
        )

        delivered = 0
        for client, outcome in zip(clients, outcomes):
            if isinstance(outcome, BaseException):
                self._clients.discard(client)
                logger.info("reload_client_pruned", error=repr(outcome))
            else:
                delivered += 1

        logger.info(
            "reload_broadcast",
            generation=message.generation,
            status=message.status,
            delivered=delivered,
            pruned=len(clients) - delivered,
        )
        return delivered

    async def on_build_event(self, event: BuildEvent) -> None:
        """Orchestrator listener: reload on publish, error notice on failure."""
        if event.kind == "published":
            await self.broadcast(ReloadMessage(generation=event.generation, status="ok"))
        elif event.kind == "failed":
            message = "\n".join(str(d) for d in event.diagnostics) or (event.error or "")
            await self.broadcast(
                ReloadMessage(generation=event.generation, status="error", message=message)
            )
