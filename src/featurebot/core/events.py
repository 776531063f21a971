"""
Event bus for feature communication.

This module provides the publish/subscribe hub that decouples features from
each other and from the messaging transport. Every emit runs PRE middleware,
fans the payload out to all subscribed handlers as independent tasks, waits
for them to settle, runs POST middleware on the pre-handler payload and
records per-event metrics. A failing handler or middleware is logged and
counted; it never stops delivery to other handlers and never propagates to
the caller of ``emit``.
"""

import asyncio
import concurrent.futures
import contextvars
import copy
import inspect
import threading
import time
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from featurebot.core.interfaces import IMetrics
from featurebot.monitoring.metrics import EventMetrics
from featurebot.utils.errors import HandlerFailure, InvalidEventNameError, MiddlewareFailure
from featurebot.utils.logging import setup_logging

logger = setup_logging(__name__)

# Set while a handler runs; tasks spawned by a nested emit inherit it
_handler_depth: contextvars.ContextVar[int] = contextvars.ContextVar("featurebot_handler_depth", default=0)


class MiddlewarePhase(str, Enum):
    """When a middleware transform runs relative to handler fan-out."""
    PRE = "pre"
    POST = "post"


@dataclass
class EventSubscription:
    """Represents one handler of one feature for one event name."""
    subscription_id: str
    feature_name: str
    event_name: str
    handler: Callable[[Any], Any]
    created_at: float = field(default_factory=time.time)

    async def handle_event(self, payload: Any) -> None:
        """Invoke the handler.

        Coroutine handlers are awaited on the loop; plain callables run in
        the default executor so they cannot block other handlers.
        """
        if inspect.iscoroutinefunction(self.handler):
            await self.handler(payload)
            return

        loop = asyncio.get_running_loop()
        result = await loop.run_in_executor(None, self.handler, payload)
        if inspect.isawaitable(result):
            await result


@dataclass
class MiddlewareEntry:
    """A transform applied to an event payload before or after fan-out."""
    event_name: str
    phase: MiddlewarePhase
    transform: Callable[[Any, str], Any]
    created_at: float = field(default_factory=time.time)


class EventBus:
    """Central event bus for publishing events to feature handlers."""

    def __init__(
        self,
        metrics: IMetrics | None = None,
        max_concurrent_handlers: int = 100
    ):
        """Initialize the event bus.

        Args:
            metrics: Optional metrics collector (defaults to EventMetrics)
            max_concurrent_handlers: Maximum concurrently running handlers
        """
        self.metrics = metrics or EventMetrics()
        self.max_concurrent_handlers = max_concurrent_handlers

        self._subscriptions: dict[str, EventSubscription] = {}
        self._subscriptions_by_event: dict[str, list[str]] = {}
        self._subscriptions_by_feature: dict[str, set[str]] = {}
        self._middleware: dict[tuple[str, MiddlewarePhase], list[MiddlewareEntry]] = {}
        self._lock = threading.RLock()

        self._semaphore: asyncio.Semaphore | None = None
        self._semaphore_loop: asyncio.AbstractEventLoop | None = None

        logger.info("Event bus initialized")

    # Subscriptions

    def subscribe(self, feature_name: str, event_name: str, handler: Callable[[Any], Any]) -> str:
        """Subscribe a feature's handler to an event.

        Args:
            feature_name: Owning feature, used for bulk unsubscription
            event_name: Event to receive
            handler: Coroutine function or plain callable taking the payload

        Returns:
            Subscription ID
        """
        self._validate_event_name(event_name)
        if not feature_name:
            raise ValueError("feature_name is required")
        if not callable(handler):
            raise TypeError(f"Handler for {event_name} must be callable")

        subscription = EventSubscription(
            subscription_id=str(uuid.uuid4()),
            feature_name=feature_name,
            event_name=event_name,
            handler=handler
        )

        with self._lock:
            self._subscriptions[subscription.subscription_id] = subscription
            self._subscriptions_by_event.setdefault(event_name, []).append(subscription.subscription_id)
            self._subscriptions_by_feature.setdefault(feature_name, set()).add(subscription.subscription_id)

        logger.debug(f"Subscribed {feature_name} to {event_name} ({subscription.subscription_id})")
        return subscription.subscription_id

    def unsubscribe(self, subscription_id: str) -> bool:
        """Remove a single subscription.

        Returns:
            True if the subscription existed
        """
        with self._lock:
            subscription = self._subscriptions.pop(subscription_id, None)
            if subscription is None:
                return False
            self._drop_from_indexes(subscription)

        logger.debug(f"Removed subscription {subscription_id}")
        return True

    def unsubscribe_all(self, feature_name: str) -> int:
        """Remove every subscription owned by a feature. Idempotent.

        Returns:
            Number of subscriptions removed
        """
        with self._lock:
            subscription_ids = self._subscriptions_by_feature.pop(feature_name, set())
            for subscription_id in subscription_ids:
                subscription = self._subscriptions.pop(subscription_id, None)
                if subscription:
                    self._drop_from_indexes(subscription)

        if subscription_ids:
            logger.debug(f"Unsubscribed feature {feature_name} from {len(subscription_ids)} handlers")
        return len(subscription_ids)

    def get_subscriptions(
        self,
        feature_name: str | None = None,
        event_name: str | None = None
    ) -> list[EventSubscription]:
        """Get a snapshot of subscriptions, optionally filtered."""
        with self._lock:
            subscriptions = list(self._subscriptions.values())

        if feature_name is not None:
            subscriptions = [s for s in subscriptions if s.feature_name == feature_name]
        if event_name is not None:
            subscriptions = [s for s in subscriptions if s.event_name == event_name]
        return subscriptions

    def subscription_count(self, feature_name: str | None = None) -> int:
        with self._lock:
            if feature_name is None:
                return len(self._subscriptions)
            return len(self._subscriptions_by_feature.get(feature_name, ()))

    # Middleware

    def register_middleware(
        self,
        event_name: str,
        phase: MiddlewarePhase | str,
        transform: Callable[[Any, str], Any]
    ) -> None:
        """Register a transform for an event.

        Transforms run in registration order and receive ``(payload,
        event_name)``. They may be coroutine functions. Returning None leaves
        the payload unchanged.
        """
        self._validate_event_name(event_name)
        if not callable(transform):
            raise TypeError("Middleware transform must be callable")
        phase = self._coerce_phase(phase)

        with self._lock:
            self._middleware.setdefault((event_name, phase), []).append(
                MiddlewareEntry(event_name=event_name, phase=phase, transform=transform)
            )

        logger.debug(f"Registered {phase.value}-middleware for event: {event_name}")

    def unregister_middleware(
        self,
        event_name: str,
        phase: MiddlewarePhase | str,
        transform: Callable[[Any, str], Any]
    ) -> bool:
        """Remove the first registration of a transform.

        Returns:
            True if a matching entry was removed
        """
        phase = self._coerce_phase(phase)
        key = (event_name, phase)

        with self._lock:
            entries = self._middleware.get(key, [])
            for index, entry in enumerate(entries):
                if entry.transform == transform:
                    del entries[index]
                    if not entries:
                        del self._middleware[key]
                    logger.debug(f"Unregistered {phase.value}-middleware for event: {event_name}")
                    return True

        return False

    # Publishing

    async def emit(self, event_name: str, payload: Any = None) -> Any:
        """Emit an event and wait for the full fan-out to settle.

        Args:
            event_name: Event to emit
            payload: Event payload

        Returns:
            The payload after POST middleware

        Raises:
            InvalidEventNameError: If event_name is empty or not a string
        """
        self._validate_event_name(event_name)
        start_time = time.perf_counter()
        logger.debug(f"Emitting event: {event_name}")

        processed, pre_errors = await self._run_middleware(event_name, MiddlewarePhase.PRE, payload)

        # POST middleware must never see a handler's mutation
        post_input = self._snapshot_payload(event_name, processed)

        handler_errors = 0
        subscriptions = self._matching_subscriptions(event_name)
        if subscriptions:
            tasks = [
                asyncio.create_task(
                    self._execute_handler(subscription, processed),
                    name=f"{event_name}:{subscription.feature_name}"
                )
                for subscription in subscriptions
            ]
            results = await asyncio.gather(*tasks, return_exceptions=True)
            handler_errors = sum(1 for result in results if result is not True)

        result, post_errors = await self._run_middleware(event_name, MiddlewarePhase.POST, post_input)

        self.metrics.record_event(
            event_name,
            duration=time.perf_counter() - start_time,
            handler_errors=handler_errors,
            middleware_errors=pre_errors + post_errors
        )
        return result

    def emit_threadsafe(
        self,
        event_name: str,
        payload: Any,
        loop: asyncio.AbstractEventLoop
    ) -> concurrent.futures.Future:
        """Schedule an emit on ``loop`` from another thread.

        Transport libraries often deliver callbacks on their own threads; this
        hands the event to the loop that owns the features.
        """
        self._validate_event_name(event_name)
        return asyncio.run_coroutine_threadsafe(self.emit(event_name, payload), loop)

    # Introspection

    def get_metrics(self, event_name: str | None = None) -> dict[str, Any]:
        """Get per-event counters, or aggregate counters for all events."""
        return self.metrics.get_metrics(event_name)

    def get_stats(self) -> dict[str, Any]:
        """Get event bus statistics."""
        with self._lock:
            return {
                "total_subscriptions": len(self._subscriptions),
                "subscriptions_by_event": {
                    event_name: len(ids) for event_name, ids in self._subscriptions_by_event.items()
                },
                "subscriptions_by_feature": {
                    feature_name: len(ids) for feature_name, ids in self._subscriptions_by_feature.items()
                },
                "middleware": {
                    f"{event_name}:{phase.value}": len(entries)
                    for (event_name, phase), entries in self._middleware.items()
                },
                "max_concurrent_handlers": self.max_concurrent_handlers
            }

    def get_event_names(self) -> list[str]:
        """List event names that currently have at least one subscriber."""
        with self._lock:
            return list(self._subscriptions_by_event.keys())

    def clear(self) -> None:
        """Remove all subscriptions and middleware and reset metrics."""
        with self._lock:
            self._subscriptions.clear()
            self._subscriptions_by_event.clear()
            self._subscriptions_by_feature.clear()
            self._middleware.clear()
        self.metrics.reset_metrics()
        logger.info("Event bus cleared")

    # Internals

    def _matching_subscriptions(self, event_name: str) -> list[EventSubscription]:
        with self._lock:
            return [
                self._subscriptions[subscription_id]
                for subscription_id in self._subscriptions_by_event.get(event_name, [])
                if subscription_id in self._subscriptions
            ]

    def _drop_from_indexes(self, subscription: EventSubscription) -> None:
        by_event = self._subscriptions_by_event.get(subscription.event_name)
        if by_event is not None:
            try:
                by_event.remove(subscription.subscription_id)
            except ValueError:
                pass
            if not by_event:
                del self._subscriptions_by_event[subscription.event_name]

        by_feature = self._subscriptions_by_feature.get(subscription.feature_name)
        if by_feature is not None:
            by_feature.discard(subscription.subscription_id)
            if not by_feature:
                del self._subscriptions_by_feature[subscription.feature_name]

    async def _run_middleware(
        self,
        event_name: str,
        phase: MiddlewarePhase,
        payload: Any
    ) -> tuple[Any, int]:
        with self._lock:
            entries = list(self._middleware.get((event_name, phase), []))

        errors = 0
        for entry in entries:
            try:
                result = entry.transform(payload, event_name)
                if inspect.isawaitable(result):
                    result = await result
            except Exception as e:
                errors += 1
                failure = MiddlewareFailure(event_name, phase.value, e)
                logger.error(str(failure), exc_info=e)
                continue

            if result is not None:
                payload = result

        return payload, errors

    async def _execute_handler(self, subscription: EventSubscription, payload: Any) -> bool:
        """Run one handler with concurrency control. Never raises Exception.

        Only top-level dispatch takes a slot of the concurrency limit. Handlers
        of an emit awaited inside another handler run under the outer slot.
        """
        if _handler_depth.get():
            return await self._invoke_handler(subscription, payload)
        async with self._get_semaphore():
            return await self._invoke_handler(subscription, payload)

    async def _invoke_handler(self, subscription: EventSubscription, payload: Any) -> bool:
        token = _handler_depth.set(_handler_depth.get() + 1)
        try:
            await subscription.handle_event(payload)
            return True
        except Exception as e:
            failure = HandlerFailure(subscription.feature_name, subscription.event_name, e)
            logger.error(str(failure), exc_info=e)
            return False
        finally:
            _handler_depth.reset(token)

    def _get_semaphore(self) -> asyncio.Semaphore:
        loop = asyncio.get_running_loop()
        if self._semaphore is None or self._semaphore_loop is not loop:
            self._semaphore = asyncio.Semaphore(self.max_concurrent_handlers)
            self._semaphore_loop = loop
        return self._semaphore

    @staticmethod
    def _snapshot_payload(event_name: str, payload: Any) -> Any:
        try:
            return copy.deepcopy(payload)
        except (copy.Error, TypeError) as e:
            logger.debug(f"Payload of {event_name} cannot be copied, POST middleware shares it: {e}")
            return payload

    @staticmethod
    def _coerce_phase(phase: MiddlewarePhase | str) -> MiddlewarePhase:
        if isinstance(phase, MiddlewarePhase):
            return phase
        try:
            return MiddlewarePhase(str(phase).lower())
        except ValueError:
            raise ValueError(f"Unknown middleware phase: {phase!r}") from None

    @staticmethod
    def _validate_event_name(event_name: Any) -> None:
        if not isinstance(event_name, str) or not event_name.strip():
            raise InvalidEventNameError(f"Invalid event name: {event_name!r}")
