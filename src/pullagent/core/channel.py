"""Command/event channel abstractions.

This module provides:
- Subscription: cancellable handler registration with a dedicated worker thread
- CommandChannel: initiator side (send commands, subscribe to events)
- AgentChannel: agent side (subscribe to commands, broadcast events)
- InMemoryChannel: both sides in one process, for tests and embedding

Delivery is at-least-once: handlers must tolerate duplicates.
"""

from __future__ import annotations

import logging
import queue
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from typing import Generic, TypeVar

from pullagent.core.messages import CompleteEvent, FailedEvent, UploadCommand

logger = logging.getLogger(__name__)

T = TypeVar("T")

EventHandler = Callable[[CompleteEvent | FailedEvent], None]
CommandHandler = Callable[[UploadCommand], None]


class ChannelError(Exception):
    """Raised when a message cannot be handed to the transport."""


class Subscription(Generic[T]):
    """A registered handler with its own delivery thread.

    Messages are queued by the transport and handed to the handler one at
    a time, in arrival order, on the subscription's worker thread. A
    handler that raises is logged and the worker keeps going.

    Usage:
        sub = Subscription(handler, name="events")
        sub.deliver(message)
        ...
        sub.cancel()
    """

    def __init__(
        self,
        handler: Callable[[T], None],
        name: str = "subscription",
        on_cancel: Callable[[Subscription[T]], None] | None = None,
    ) -> None:
        """Start the worker thread.

        Args:
            handler: Called with each delivered message.
            name: Thread name, used in logs.
            on_cancel: Called once when the subscription is cancelled, so
                the transport can forget it.
        """
        self._handler = handler
        self._name = name
        self._on_cancel = on_cancel
        self._queue: queue.Queue[tuple[T] | None] = queue.Queue()
        self._active = True
        self._lock = threading.Lock()
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    @property
    def active(self) -> bool:
        """Check if the subscription still accepts messages."""
        return self._active

    @property
    def name(self) -> str:
        """Get the subscription name."""
        return self._name

    def deliver(self, message: T) -> bool:
        """Queue a message for the handler.

        Returns:
            False if the subscription was already cancelled.
        """
        with self._lock:
            if not self._active:
                return False
            self._queue.put((message,))
            return True

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until every queued message has been handled.

        Args:
            timeout: Maximum seconds to wait, None to wait forever.

        Returns:
            True if the queue drained within the timeout.
        """
        done = threading.Event()

        def _join() -> None:
            self._queue.join()
            done.set()

        threading.Thread(target=_join, daemon=True).start()
        return done.wait(timeout)

    def cancel(self, timeout: float = 5.0) -> None:
        """Stop delivery. Messages already queued are still handled."""
        with self._lock:
            if not self._active:
                return
            self._active = False
            self._queue.put(None)

        if self._on_cancel:
            self._on_cancel(self)

        if threading.current_thread() is not self._thread:
            self._thread.join(timeout=timeout)

    def _run(self) -> None:
        """Worker loop: hand queued messages to the handler."""
        while True:
            item = self._queue.get()
            try:
                if item is None:
                    return
                try:
                    self._handler(item[0])
                except Exception:
                    logger.exception("%s: handler failed", self._name)
            finally:
                self._queue.task_done()


class CommandChannel(ABC):
    """Initiator side of the channel."""

    @abstractmethod
    def send(self, agent_id: str, command: UploadCommand) -> None:
        """Send a command addressed to one agent.

        Raises:
            ChannelError: If the command could not be handed off.
        """

    @abstractmethod
    def subscribe_events(self, handler: EventHandler) -> Subscription[CompleteEvent | FailedEvent]:
        """Register a handler for events from all agents."""


class AgentChannel(ABC):
    """Agent side of the channel."""

    @abstractmethod
    def subscribe(self, agent_id: str, handler: CommandHandler) -> Subscription[UploadCommand]:
        """Register a handler for commands addressed to agent_id."""

    @abstractmethod
    def broadcast_event(self, event: CompleteEvent | FailedEvent) -> None:
        """Publish an event to the initiator.

        Raises:
            ChannelError: If the event could not be handed off.
        """


class InMemoryChannel(CommandChannel, AgentChannel):
    """In-process channel connecting an orchestrator and its agents.

    Sending to an agent with no live subscription raises ChannelError, so
    an offline agent is visible to the caller.
    """

    def __init__(self) -> None:
        """Initialize an empty channel."""
        self._lock = threading.Lock()
        self._command_subs: dict[str, list[Subscription[UploadCommand]]] = {}
        self._event_subs: list[Subscription[CompleteEvent | FailedEvent]] = []

    def send(self, agent_id: str, command: UploadCommand) -> None:
        """Deliver a command to every subscription for agent_id."""
        with self._lock:
            subs = list(self._command_subs.get(agent_id, []))

        delivered = sum(1 for sub in subs if sub.deliver(command))
        if delivered == 0:
            raise ChannelError(f"No subscriber for agent {agent_id}")
        logger.debug("Sent command %s to agent %s", command.transfer_id, agent_id)

    def subscribe_events(self, handler: EventHandler) -> Subscription[CompleteEvent | FailedEvent]:
        """Register an event handler."""
        sub: Subscription[CompleteEvent | FailedEvent] = Subscription(
            handler, name="events", on_cancel=self._forget_event_sub
        )
        with self._lock:
            self._event_subs.append(sub)
        return sub

    def subscribe(self, agent_id: str, handler: CommandHandler) -> Subscription[UploadCommand]:
        """Register a command handler for agent_id."""
        sub: Subscription[UploadCommand] = Subscription(
            handler,
            name=f"commands:{agent_id}",
            on_cancel=lambda s: self._forget_command_sub(agent_id, s),
        )
        with self._lock:
            self._command_subs.setdefault(agent_id, []).append(sub)
        return sub

    def broadcast_event(self, event: CompleteEvent | FailedEvent) -> None:
        """Deliver an event to every event subscription."""
        with self._lock:
            subs = list(self._event_subs)

        delivered = sum(1 for sub in subs if sub.deliver(event))
        if delivered == 0:
            raise ChannelError("No event subscriber")
        logger.debug("Broadcast %s event for %s", event.kind, event.transfer_id)

    def wait_idle(self, timeout: float = 5.0) -> bool:
        """Wait until all subscriptions have drained their queues."""
        with self._lock:
            subs = [s for group in self._command_subs.values() for s in group]
            subs.extend(self._event_subs)
        return all(sub.wait_idle(timeout) for sub in subs)

    def _forget_event_sub(self, sub: Subscription[CompleteEvent | FailedEvent]) -> None:
        with self._lock:
            if sub in self._event_subs:
                self._event_subs.remove(sub)

    def _forget_command_sub(self, agent_id: str, sub: Subscription[UploadCommand]) -> None:
        with self._lock:
            subs = self._command_subs.get(agent_id, [])
            if sub in subs:
                subs.remove(sub)
            if not subs:
                self._command_subs.pop(agent_id, None)
