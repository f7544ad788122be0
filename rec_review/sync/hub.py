"""
Subscription hub for real-time protocol updates.

Keeps every subscribed observer's copy of a protocol consistent with
the store without polling:

- one upstream document watch per protocol, shared by all observers in
  the process and fanned out locally
- each confirmed version is delivered once per observer, as a complete
  hydrated Protocol snapshot, in store write order
- a missing protocol is a NOT_FOUND notification; a transport failure is
  an ERROR notification and the watch stays open
- a subscription with no first confirmation inside the timeout receives
  a TransportError instead of loading forever
- unsubscribing is idempotent, and the upstream watch is torn down
  exactly once, when the last observer leaves
"""
import asyncio
import inspect
import itertools
import logging
from typing import Awaitable, Callable, Dict, List, Optional, Union

from ..config import ReviewConfig
from ..errors import NotFoundError, ReviewEngineError, TransportError
from ..lifecycle.models import Protocol
from ..storage import mappers
from ..storage.data_access import DataAccessLayer
from ..storage.document_store import ChangeEvent, DocumentWatch
from .notifications import NotificationKind, SyncNotification


logger = logging.getLogger(__name__)

OnChange = Callable[[Protocol], Union[None, Awaitable[None]]]
OnError = Callable[[SyncNotification], Union[None, Awaitable[None]]]

DEFAULT_CONFIRMATION_TIMEOUT = 10.0


class _Observer:
    def __init__(self, observer_id: int, on_change: OnChange, on_error: Optional[OnError]):
        self.observer_id = observer_id
        self.on_change = on_change
        self.on_error = on_error
        self.last_version = 0
        self.active = True


class Subscription:
    """
    Cancellation handle for one observer.

    Calling it, or ``unsubscribe()``, any number of times detaches the
    observer once; no callback fires afterwards.
    """

    def __init__(self, channel: "_ProtocolChannel", observer: _Observer):
        self._channel = channel
        self._observer = observer

    @property
    def protocol_id(self) -> str:
        return self._channel.protocol_id

    @property
    def active(self) -> bool:
        return self._observer.active

    def unsubscribe(self) -> None:
        if not self._observer.active:
            return
        self._observer.active = False
        self._channel.remove(self._observer)

    def __call__(self) -> None:
        self.unsubscribe()


class _ProtocolChannel:
    """One upstream watch for one protocol, fanned out to local observers."""

    def __init__(self, hub: "SyncHub", protocol_id: str):
        self.hub = hub
        self.protocol_id = protocol_id
        self.observers: List[_Observer] = []
        self.last: Optional[SyncNotification] = None
        self.confirmed = asyncio.Event()
        self.closed = False
        self.teardowns = 0
        self._watch: Optional[DocumentWatch] = None
        self._pump_task: Optional[asyncio.Task] = None
        self._timer_task: Optional[asyncio.Task] = None

    async def start(self) -> None:
        self._watch = await self.hub.dal.watch_protocol(self.protocol_id)
        self._pump_task = asyncio.create_task(self._pump())
        self._timer_task = asyncio.create_task(self._confirmation_timer())
        logger.debug(f"Opened upstream watch for protocol {self.protocol_id}")

    def add(self, observer: _Observer) -> None:
        self.observers.append(observer)

    def remove(self, observer: _Observer) -> None:
        if observer in self.observers:
            self.observers.remove(observer)
        if not self.observers:
            self.close()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.teardowns += 1
        if self._watch is not None:
            self._watch.close()
        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in (self._pump_task, self._timer_task):
            if task is not None and task is not current and not task.done():
                task.cancel()
        self.hub._forget(self)
        logger.debug(f"Closed upstream watch for protocol {self.protocol_id}")

    async def _confirmation_timer(self) -> None:
        try:
            await asyncio.wait_for(self.confirmed.wait(), timeout=self.hub.confirmation_timeout)
        except asyncio.TimeoutError:
            error = TransportError(
                f"No confirmation for protocol {self.protocol_id} "
                f"within {self.hub.confirmation_timeout}s"
            )
            logger.warning(error.message)
            await self._broadcast(self._error_notification(error))

    async def _pump(self) -> None:
        async for item in self._watch:
            if isinstance(item, TransportError):
                await self._broadcast(self._error_notification(item))
                continue
            notification = await self._resolve(item)
            self.confirmed.set()
            if notification.kind is not NotificationKind.ERROR:
                self.last = notification
            await self._broadcast(notification)

    async def _resolve(self, event: ChangeEvent) -> SyncNotification:
        if not event.exists:
            return self._not_found_notification()
        # the snapshot is the event's own document, never a re-read
        try:
            decisions = await self.hub.dal.protocol_decisions(self.protocol_id)
            protocol = mappers.protocol_to_domain(event.data, decisions, event.version)
        except ReviewEngineError as exc:
            return self._error_notification(TransportError(exc.message))
        except Exception as exc:
            logger.error(f"Failed to load protocol {self.protocol_id}: {exc}", exc_info=True)
            return self._error_notification(TransportError(f"Failed to load protocol: {exc}"))
        return SyncNotification(
            kind=NotificationKind.SNAPSHOT,
            protocol_id=self.protocol_id,
            protocol=protocol,
            version=event.version,
        )

    def _not_found_notification(self) -> SyncNotification:
        return SyncNotification(
            kind=NotificationKind.NOT_FOUND,
            protocol_id=self.protocol_id,
            error=NotFoundError("protocol", self.protocol_id),
        )

    def _error_notification(self, error: ReviewEngineError) -> SyncNotification:
        return SyncNotification(
            kind=NotificationKind.ERROR,
            protocol_id=self.protocol_id,
            error=error,
        )

    async def _broadcast(self, notification: SyncNotification) -> None:
        for observer in list(self.observers):
            await self.deliver(observer, notification)

    async def deliver(self, observer: _Observer, notification: SyncNotification) -> None:
        if not observer.active:
            return

        if notification.kind is NotificationKind.SNAPSHOT:
            if notification.version <= observer.last_version:
                return
            observer.last_version = notification.version
            callback, argument = observer.on_change, notification.protocol
        else:
            if notification.kind is NotificationKind.NOT_FOUND:
                # a re-created protocol starts its versions again
                observer.last_version = 0
            if observer.on_error is None:
                return
            callback, argument = observer.on_error, notification

        try:
            result = callback(argument)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.error(
                f"Observer {observer.observer_id} of protocol {self.protocol_id} failed: {exc}",
                exc_info=True,
            )


class SyncHub:
    """
    Process-wide fan-out of protocol changes to local observers.

    Usage:
        hub = SyncHub(dal)
        subscription = await hub.subscribe("P1", on_change, on_error)
        ...
        subscription.unsubscribe()
    """

    def __init__(self, dal: DataAccessLayer, confirmation_timeout: float = DEFAULT_CONFIRMATION_TIMEOUT):
        """
        Initialize the hub.

        Args:
            dal: Data access layer used to watch and hydrate protocols
            confirmation_timeout: Seconds to wait for the first
                confirmation before surfacing a TransportError
        """
        self.dal = dal
        self.confirmation_timeout = confirmation_timeout
        self._channels: Dict[str, _ProtocolChannel] = {}
        self._ids = itertools.count(1)

    @classmethod
    def from_config(cls, dal: DataAccessLayer, config: ReviewConfig) -> "SyncHub":
        return cls(dal, confirmation_timeout=config.confirmation_timeout_seconds)

    async def subscribe(
        self,
        protocol_id: str,
        on_change: OnChange,
        on_error: Optional[OnError] = None,
    ) -> Subscription:
        """
        Observe a protocol.

        Args:
            protocol_id: Protocol to observe
            on_change: Called with the complete Protocol once per
                confirmed version
            on_error: Called with NOT_FOUND and ERROR notifications

        Returns:
            Subscription handle; call it to unsubscribe
        """
        channel = self._channels.get(protocol_id)
        if channel is None:
            channel = _ProtocolChannel(self, protocol_id)
            self._channels[protocol_id] = channel
            await channel.start()

        observer = _Observer(next(self._ids), on_change, on_error)
        channel.add(observer)
        if channel.last is not None:
            await channel.deliver(observer, channel.last)
        return Subscription(channel, observer)

    def channel_count(self) -> int:
        return len(self._channels)

    def observer_count(self, protocol_id: str) -> int:
        channel = self._channels.get(protocol_id)
        return len(channel.observers) if channel else 0

    def close(self) -> None:
        for channel in list(self._channels.values()):
            for observer in list(channel.observers):
                observer.active = False
            channel.close()

    def _forget(self, channel: _ProtocolChannel) -> None:
        if self._channels.get(channel.protocol_id) is channel:
            del self._channels[channel.protocol_id]


class ProtocolView:
    """
    Local observer state for one protocol: the latest snapshot, whether
    it is still loading, and the last error.

    Every change replaces the whole protocol; the view never patches
    stale local state.
    """

    def __init__(self, protocol_id: str):
        self.protocol_id = protocol_id
        self.protocol: Optional[Protocol] = None
        self.loading = True
        self.error: Optional[ReviewEngineError] = None
        self.snapshots: List[Protocol] = []
        self.notifications: List[SyncNotification] = []
        self.subscription: Optional[Subscription] = None

    @classmethod
    async def open(cls, hub: SyncHub, protocol_id: str) -> "ProtocolView":
        view = cls(protocol_id)
        view.subscription = await hub.subscribe(protocol_id, view._on_change, view._on_error)
        return view

    def _on_change(self, protocol: Protocol) -> None:
        self.protocol = protocol
        self.snapshots.append(protocol)
        self.error = None
        self.loading = False

    def _on_error(self, notification: SyncNotification) -> None:
        self.notifications.append(notification)
        if notification.kind is NotificationKind.NOT_FOUND:
            self.protocol = None
        self.error = notification.error
        self.loading = notification.loading

    def close(self) -> None:
        if self.subscription is not None:
            self.subscription.unsubscribe()
