"""
Completion event subscriber for Chain Archive.

The EventSubscriber keeps a live subscription to the ledger's completion
events and hands every event to the ArchivePipeline.

State machine:
    DISCONNECTED -> SUBSCRIBING -> CONNECTED -> DISCONNECTED

Invariants:
    - Events are processed one at a time, in arrival order
    - A failure for one event is logged with its uid and never stops the loop
    - A transport failure moves to DISCONNECTED and is raised as SubscriptionError
    - No subscriber-side dedup; redelivered events rely on pipeline idempotency

How to change safely:
    - Reconnection belongs to whoever owns the ledger connection, not here
    - Keep per-event handling inside _handle_event so isolation stays in one place
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from enum import Enum
from typing import Any

from ..ledger.base import CompletionEvent, LedgerClient, LedgerError, LedgerSubscription
from .errors import SubscriptionError
from .pipeline import ArchivePipeline
from .records import ARCHIVED_BY_SUBSCRIBER

logger = logging.getLogger(__name__)


class SubscriberState(Enum):
    """Connectivity state of the completion subscription."""

    DISCONNECTED = "disconnected"
    SUBSCRIBING = "subscribing"
    CONNECTED = "connected"


StatusCallback = Callable[[SubscriberState, dict[str, Any]], None]


class EventSubscriber:
    """Consumes completion events and archives each product.

    Thread safety:
        Designed to run as a single task per ledger connection.

    Example:
        >>> subscriber = EventSubscriber(ledger, pipeline)
        >>> task = asyncio.create_task(subscriber.start())
        >>> ...
        >>> await subscriber.stop()
    """

    def __init__(
        self,
        ledger: LedgerClient,
        pipeline: ArchivePipeline,
        on_status: StatusCallback | None = None,
    ) -> None:
        """Initialize the subscriber.

        Args:
            ledger: Ledger client providing the completion stream
            pipeline: Pipeline every event is handed to
            on_status: Optional observer called on every state change
        """
        self.ledger = ledger
        self.pipeline = pipeline
        self.on_status = on_status

        self._state = SubscriberState.DISCONNECTED
        self._subscription: LedgerSubscription | None = None
        self._running = False
        self._processed_count = 0
        self._error_count = 0
        self._last_error: str | None = None

    @property
    def state(self) -> SubscriberState:
        return self._state

    @property
    def subscription_id(self) -> str | None:
        return self._subscription.subscription_id if self._subscription else None

    def _transition(self, state: SubscriberState, **details: Any) -> None:
        self._state = state
        if self.on_status is not None:
            try:
                self.on_status(state, details)
            except Exception as e:
                logger.warning(f"Subscriber status callback failed: {e}")

    async def start(self) -> None:
        """Subscribe and process events until stopped.

        Raises:
            SubscriptionError: If the subscription cannot be opened or the
                transport fails while connected
        """
        if self._running:
            logger.warning("Event subscriber already running")
            return

        self._running = True
        self._transition(SubscriberState.SUBSCRIBING)
        logger.info("Starting event subscriber, listening for completion events")

        try:
            self._subscription = await self.ledger.subscribe_completions()
            self._transition(
                SubscriberState.CONNECTED,
                subscription_id=self._subscription.subscription_id,
            )
            logger.info(
                f"Event subscriber connected (ID: {self._subscription.subscription_id})",
                extra={"subscription_id": self._subscription.subscription_id},
            )

            async for event in self._subscription:
                if not self._running:
                    break
                await self._handle_event(event)

        except asyncio.CancelledError:
            logger.info("Event subscriber cancelled")
            raise
        except LedgerError as e:
            subscription_id = self.subscription_id
            self._last_error = str(e)
            logger.error(
                f"Event subscriber error: {e}",
                extra={"subscription_id": subscription_id},
            )
            self._transition(SubscriberState.DISCONNECTED, error=str(e))
            raise SubscriptionError(str(e), subscription_id=subscription_id) from e
        finally:
            self._running = False
            if self._state != SubscriberState.DISCONNECTED:
                self._transition(SubscriberState.DISCONNECTED)
            await self._close_subscription()

    async def stop(self) -> None:
        """Stop the subscriber loop."""
        self._running = False
        logger.info("Stopping event subscriber")
        await self._close_subscription()

    async def _close_subscription(self) -> None:
        subscription, self._subscription = self._subscription, None
        if subscription is not None:
            try:
                await subscription.close()
            except Exception as e:
                logger.warning(f"Error closing subscription: {e}")

    async def _handle_event(self, event: CompletionEvent) -> None:
        """Archive one completed product; failures stay contained."""
        logger.info(
            f"Delivery completed for product {event.uid}, archiving",
            extra={
                "uid": event.uid,
                "block_number": event.block_number,
                "transaction_hash": event.transaction_hash,
            },
        )
        try:
            await self.pipeline.archive(
                event.uid,
                event.transaction_hash,
                event.block_number,
                self.ledger.contract_address,
                archived_by=ARCHIVED_BY_SUBSCRIBER,
            )
            self._processed_count += 1
        except Exception as e:
            self._error_count += 1
            self._last_error = str(e)
            logger.error(
                f"Failed to archive product {event.uid}: {e}",
                extra={"uid": event.uid, "error": str(e)},
            )

    @property
    def stats(self) -> dict[str, Any]:
        """Get subscriber statistics."""
        return {
            "state": self._state.value,
            "subscription_id": self.subscription_id,
            "processed_count": self._processed_count,
            "error_count": self._error_count,
            "last_error": self._last_error,
        }
