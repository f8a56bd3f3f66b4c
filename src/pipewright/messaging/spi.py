"""
Transport service provider interface.

A transport is a ``TransportFactory`` registered under a name (``sqs``,
``redis``, ``memory``, ...). Endpoint configuration names the transport for
each side of an endpoint; ``create_sender`` and ``create_receiver`` resolve the
factory and the broker section at startup and fail fast when either is
missing.

``MessageReceiver`` implements the receive loop once for all transports.
Adapters only provide fetch, ack, nack and reject for their broker:

- fetched deliveries go through a bounded hand-off queue to ``concurrency``
  consumer tasks, so at most that many handler calls run at once
- malformed bodies are rejected (dead-lettered where the broker supports it)
- handler exceptions release the delivery for redelivery
- ``HandlerResult.STOP`` or ``stop()`` ends fetching, releases deliveries that
  were not started yet and waits for in-flight handlers before closing
"""

import asyncio
import contextlib
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from typing import Any

from ..config.settings import Settings, TransportConfig
from ..core.errors import (
    EndpointConfigurationError,
    MessageDecodeError,
    TransportError,
    UnknownTransportError,
)
from ..core.runtime_patterns import RetryPolicy, is_retryable_error, retry_with_policy
from ..observability.logging import clear_message_context, get_logger, set_message_context
from ..observability.metrics import get_metrics_collector
from ..observability.probe import probe
from .endpoints import Endpoint
from .model import Message, decode_message, encode_message

logger = get_logger(__name__)


class HandlerResult(str, Enum):
    CONTINUE = "continue"
    STOP = "stop"


MessageHandler = Callable[[Message], Awaitable[HandlerResult]]


@dataclass
class Delivery:
    """A message fetched from a broker but not yet settled."""

    body: str | bytes
    # Adapter specific receipt (SQS receipt handle, Redis stream entry ID, ...)
    handle: Any = None
    delivery_count: int = 1


class MessageSender(ABC):
    """Publishes messages to one endpoint."""

    transport_name = "abstract"

    def __init__(self, endpoint: Endpoint, config: TransportConfig, retry_policy: RetryPolicy):
        self.endpoint = endpoint
        self.config = config
        self.retry_policy = retry_policy

    async def send(self, message: Message) -> None:
        """
        Publish a message.

        Brief broker outages are retried with jittered backoff. Once the retry
        budget is used up a ``TransportError`` is raised; the message may or may
        not have been delivered.
        """
        if not self.endpoint.accepts_payload(message.payload):
            raise TransportError(
                f"Endpoint {self.endpoint.name} does not accept {message.payload_type}",
                transport=self.transport_name,
                retryable=False,
            )
        body = encode_message(message)

        with probe(
            "sender.send",
            endpoint=self.endpoint.name,
            transport=self.transport_name,
            type=message.payload_type,
        ):
            try:
                await retry_with_policy(
                    lambda: self._send(body, message),
                    self.retry_policy,
                    is_retryable=self.is_retryable,
                    op_name=f"{self.transport_name}.send",
                )
            except TransportError:
                raise
            except Exception as e:
                raise TransportError(
                    f"Sending {message.payload_type} to {self.config.queue_name} failed: {e}",
                    transport=self.transport_name,
                    retryable=self.is_retryable(e),
                ) from e

    @abstractmethod
    async def _send(self, body: str, message: Message) -> None:
        """Publish an encoded message once."""

    async def cancel(self, run_id: int) -> None:
        """Best-effort cancellation of pending work for a run. No-op by default."""
        return None

    async def close(self) -> None:
        return None

    def is_retryable(self, error: Exception) -> bool:
        return is_retryable_error(error)


class MessageReceiver(ABC):
    """Receive loop for one endpoint."""

    transport_name = "abstract"

    def __init__(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        handler: MessageHandler,
        retry_policy: RetryPolicy,
    ):
        self.endpoint = endpoint
        self.config = config
        self.handler = handler
        self.retry_policy = retry_policy
        self.concurrency = config.concurrency
        self.metrics = get_metrics_collector()
        self._stop = asyncio.Event()

    # Adapter hooks

    async def _open(self) -> None:
        return None

    @abstractmethod
    async def _fetch(self, max_messages: int) -> list[Delivery]:
        """Fetch up to ``max_messages``, blocking at most one poll interval."""

    @abstractmethod
    async def _ack(self, delivery: Delivery) -> None:
        """Remove a handled delivery from the broker."""

    @abstractmethod
    async def _nack(self, delivery: Delivery) -> None:
        """Make a delivery available for redelivery."""

    @abstractmethod
    async def _reject(self, delivery: Delivery, reason: str) -> None:
        """Drop a delivery that can never be handled, dead-lettering it if possible."""

    async def _close(self) -> None:
        return None

    def is_retryable(self, error: Exception) -> bool:
        return is_retryable_error(error)

    # Loop

    def stop(self) -> None:
        """Request the loop to stop after in-flight handlers are done."""
        self._stop.set()

    @property
    def stopped(self) -> bool:
        return self._stop.is_set()

    async def run(self) -> None:
        """Run the receive loop until stopped."""
        await self._open()
        queue: asyncio.Queue[Delivery | None] = asyncio.Queue(maxsize=self.concurrency)
        consumers = [
            asyncio.create_task(self._consume(queue), name=f"{self.endpoint.name}-consumer-{i}")
            for i in range(self.concurrency)
        ]
        logger.info(
            "Receiver started",
            endpoint=self.endpoint.name,
            transport=self.transport_name,
            queue=self.config.queue_name,
            concurrency=self.concurrency,
        )

        try:
            await self._fetch_loop(queue)
        finally:
            # Deliveries not handed to a consumer yet go back to the broker
            while not queue.empty():
                delivery = queue.get_nowait()
                if delivery is not None:
                    await self._settle(self._nack, delivery)
            for _ in consumers:
                queue.put_nowait(None)
            await asyncio.gather(*consumers, return_exceptions=True)
            await self._close()
            logger.info("Receiver stopped", endpoint=self.endpoint.name)

    async def _fetch_loop(self, queue: asyncio.Queue) -> None:
        failures = 0
        while not self._stop.is_set():
            free = max(1, queue.maxsize - queue.qsize())
            try:
                deliveries = await self._fetch_until_stopped(free)
            except Exception as e:
                backoff = self.retry_policy.backoff(min(failures, 10))
                failures += 1
                self.metrics.increment(
                    "receive_errors_total", endpoint=self.endpoint.name, kind="fetch"
                )
                logger.error(
                    f"Fetching from {self.config.queue_name} failed, retrying in {backoff:.2f}s",
                    endpoint=self.endpoint.name,
                    error=str(e),
                )
                with contextlib.suppress(TimeoutError):
                    await asyncio.wait_for(self._stop.wait(), timeout=backoff)
                continue

            failures = 0
            for delivery in deliveries:
                if self._stop.is_set():
                    await self._settle(self._nack, delivery)
                else:
                    await queue.put(delivery)

    async def _fetch_until_stopped(self, max_messages: int) -> list[Delivery]:
        fetch = asyncio.ensure_future(self._fetch(max_messages))
        stop = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({fetch, stop}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop.cancel()
            if not fetch.done():
                fetch.cancel()
                await asyncio.wait({fetch})

        if fetch.cancelled():
            return []
        return fetch.result()

    async def _consume(self, queue: asyncio.Queue) -> None:
        while True:
            delivery = await queue.get()
            if delivery is None:
                return
            await self._process(delivery)

    async def _process(self, delivery: Delivery) -> None:
        try:
            message = decode_message(delivery.body)
            if not self.endpoint.accepts_payload(message.payload):
                raise MessageDecodeError(
                    f"Endpoint {self.endpoint.name} does not accept {message.payload_type}"
                )
        except MessageDecodeError as e:
            logger.warning("Rejecting malformed message", endpoint=self.endpoint.name, error=str(e))
            self.metrics.increment(
                "receive_errors_total", endpoint=self.endpoint.name, kind="malformed"
            )
            await self._settle(self._reject, delivery, str(e))
            return

        set_message_context(message.trace_id, message.run_id)
        try:
            with probe(
                "receiver.handle", endpoint=self.endpoint.name, type=message.payload_type
            ):
                result = await self.handler(message)
        except Exception:
            logger.exception(
                "Handler failed, releasing message for redelivery",
                endpoint=self.endpoint.name,
                type=message.payload_type,
            )
            self.metrics.increment(
                "receive_errors_total", endpoint=self.endpoint.name, kind="handler"
            )
            await self._settle(self._nack, delivery)
            return
        finally:
            clear_message_context()

        await self._settle(self._ack, delivery)
        if result is HandlerResult.STOP:
            logger.info("Handler requested stop", endpoint=self.endpoint.name)
            self.stop()

    async def _settle(self, action, delivery: Delivery, *args) -> None:
        try:
            await action(delivery, *args)
        except Exception:
            logger.exception(
                f"Failed to {action.__name__.lstrip('_')} delivery", endpoint=self.endpoint.name
            )


class TransportFactory(ABC):
    """Creates senders and receivers of one broker technology."""

    name: str

    @abstractmethod
    def create_sender(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        broker: dict[str, Any],
        retry_policy: RetryPolicy,
    ) -> MessageSender:
        """Create a sender for ``endpoint``."""

    @abstractmethod
    def create_receiver(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        broker: dict[str, Any],
        retry_policy: RetryPolicy,
        handler: MessageHandler,
    ) -> MessageReceiver:
        """Create a receiver for ``endpoint`` invoking ``handler``."""


_factories: dict[str, TransportFactory] = {}


def register_transport(factory: TransportFactory) -> None:
    """Register a transport factory under its name, replacing any previous one."""
    _factories[factory.name] = factory


def registered_transports() -> list[str]:
    _load_builtin_transports()
    return sorted(_factories)


def get_transport_factory(name: str) -> TransportFactory:
    if name not in _factories:
        _load_builtin_transports()
    try:
        return _factories[name]
    except KeyError:
        raise UnknownTransportError(
            f"No transport registered under '{name}' (known: {', '.join(sorted(_factories))})"
        ) from None


def _load_builtin_transports() -> None:
    # Importing the package registers the built-in factories
    from . import transports  # noqa: F401


def _resolve(endpoint: Endpoint, settings: Settings, side: str):
    section = settings.endpoints.get(endpoint.config_prefix)
    config: TransportConfig | None = getattr(section, side, None) if section else None
    if config is None:
        raise EndpointConfigurationError(
            f"Missing configuration endpoints.{endpoint.config_prefix}.{side}"
        )

    factory = get_transport_factory(config.type)
    broker = settings.brokers.get(config.type)
    if broker is None:
        raise EndpointConfigurationError(
            f"Endpoint {endpoint.name} uses transport '{config.type}' "
            f"but there is no brokers.{config.type} section"
        )
    return factory, config, broker


def create_sender(endpoint: Endpoint, settings: Settings) -> MessageSender:
    """Resolve the configured transport and create a sender for ``endpoint``."""
    factory, config, broker = _resolve(endpoint, settings, "sender")
    logger.debug(
        "Creating sender", endpoint=endpoint.name, transport=config.type, queue=config.queue_name
    )
    return factory.create_sender(endpoint, config, broker, settings.transport_retry.policy())


def create_receiver(
    endpoint: Endpoint, settings: Settings, handler: MessageHandler
) -> MessageReceiver:
    """Resolve the configured transport and create a receiver for ``endpoint``."""
    factory, config, broker = _resolve(endpoint, settings, "receiver")
    logger.debug(
        "Creating receiver", endpoint=endpoint.name, transport=config.type, queue=config.queue_name
    )
    return factory.create_receiver(
        endpoint, config, broker, settings.transport_retry.policy(), handler
    )
