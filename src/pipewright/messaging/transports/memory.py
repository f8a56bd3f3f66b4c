"""
In-process transport.

All endpoints of one process share a module level broker of named queues.
Used by the test suite and by single-process deployments that run the
orchestrator and workers side by side. Messages still go through the JSON
codec so the wire format is exercised.

Broker options (``brokers.memory``):
    poll_interval: seconds a fetch blocks on an empty queue (default 0.05)
    max_deliveries: deliveries before a message is dead-lettered (default 5)
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, Field

from ...config.settings import TransportConfig
from ...core.runtime_patterns import RetryPolicy
from ...observability.logging import get_logger
from ..endpoints import Endpoint
from ..model import Message, decode_message
from ..spi import (
    Delivery,
    MessageHandler,
    MessageReceiver,
    MessageSender,
    TransportFactory,
    register_transport,
)

logger = get_logger(__name__)


class MemoryBrokerConfig(BaseModel):
    poll_interval: float = Field(0.05, gt=0)
    max_deliveries: int = Field(5, ge=1)


@dataclass
class _Envelope:
    body: str
    run_id: int
    deliveries: int = 0


@dataclass
class MemoryBroker:
    """Named in-memory queues plus a record of what happened to them."""

    queues: dict[str, asyncio.Queue] = field(default_factory=dict)
    dead_letters: dict[str, list[str]] = field(default_factory=dict)
    acked: dict[str, int] = field(default_factory=dict)
    cancelled: list[tuple[str, int]] = field(default_factory=list)

    def queue(self, name: str) -> asyncio.Queue:
        if name not in self.queues:
            self.queues[name] = asyncio.Queue()
        return self.queues[name]

    def publish(self, queue_name: str, body: str, run_id: int = 0) -> None:
        self.queue(queue_name).put_nowait(_Envelope(body=body, run_id=run_id))

    def pending(self, queue_name: str) -> int:
        return self.queue(queue_name).qsize()

    def peek(self, queue_name: str) -> list[Message]:
        """Decode all pending messages of a queue without consuming them."""
        q = self.queue(queue_name)
        return [decode_message(env.body) for env in list(q._queue)]  # noqa: SLF001

    def drain(self, queue_name: str) -> list[Message]:
        """Remove and decode all pending messages of a queue."""
        q = self.queue(queue_name)
        messages = []
        while not q.empty():
            messages.append(decode_message(q.get_nowait().body))
        return messages

    def discard_run(self, queue_name: str, run_id: int) -> int:
        """Drop pending messages of a run. Returns the number dropped."""
        q = self.queue(queue_name)
        kept, dropped = [], 0
        while not q.empty():
            env = q.get_nowait()
            if env.run_id == run_id:
                dropped += 1
            else:
                kept.append(env)
        for env in kept:
            q.put_nowait(env)
        return dropped


_broker = MemoryBroker()


def get_broker() -> MemoryBroker:
    return _broker


def reset() -> None:
    """Drop all queues. Tests call this between cases."""
    global _broker
    _broker = MemoryBroker()


class MemorySender(MessageSender):
    transport_name = "memory"

    async def _send(self, body: str, message: Message) -> None:
        get_broker().publish(self.config.queue_name, body, message.run_id)

    async def cancel(self, run_id: int) -> None:
        broker = get_broker()
        dropped = broker.discard_run(self.config.queue_name, run_id)
        broker.cancelled.append((self.config.queue_name, run_id))
        logger.info(
            "Discarded pending requests of cancelled run",
            queue=self.config.queue_name,
            dropped=dropped,
        )


class MemoryReceiver(MessageReceiver):
    transport_name = "memory"

    def __init__(self, *args, broker_config: MemoryBrokerConfig, **kwargs):
        super().__init__(*args, **kwargs)
        self.broker_config = broker_config

    async def _fetch(self, max_messages: int) -> list[Delivery]:
        q = get_broker().queue(self.config.queue_name)
        try:
            first = await asyncio.wait_for(q.get(), timeout=self.broker_config.poll_interval)
        except TimeoutError:
            return []

        envelopes = [first]
        while len(envelopes) < max_messages and not q.empty():
            envelopes.append(q.get_nowait())

        deliveries = []
        for env in envelopes:
            env.deliveries += 1
            deliveries.append(Delivery(body=env.body, handle=env, delivery_count=env.deliveries))
        return deliveries

    async def _ack(self, delivery: Delivery) -> None:
        acked = get_broker().acked
        acked[self.config.queue_name] = acked.get(self.config.queue_name, 0) + 1

    async def _nack(self, delivery: Delivery) -> None:
        env: _Envelope = delivery.handle
        if env.deliveries >= self.broker_config.max_deliveries:
            await self._reject(delivery, "delivery limit reached")
            return
        get_broker().queue(self.config.queue_name).put_nowait(env)

    async def _reject(self, delivery: Delivery, reason: str) -> None:
        body = delivery.body if isinstance(delivery.body, str) else delivery.body.decode()
        get_broker().dead_letters.setdefault(self.config.queue_name, []).append(body)
        logger.warning("Dead-lettered message", queue=self.config.queue_name, reason=reason)


class MemoryTransportFactory(TransportFactory):
    name = "memory"

    def create_sender(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        broker: dict[str, Any],
        retry_policy: RetryPolicy,
    ) -> MessageSender:
        return MemorySender(endpoint, config, retry_policy)

    def create_receiver(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        broker: dict[str, Any],
        retry_policy: RetryPolicy,
        handler: MessageHandler,
    ) -> MessageReceiver:
        return MemoryReceiver(
            endpoint,
            config,
            handler,
            retry_policy,
            broker_config=MemoryBrokerConfig.model_validate(broker),
        )


register_transport(MemoryTransportFactory())
