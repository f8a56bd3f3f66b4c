"""
Redis Streams transport (redis-py asyncio).

Each queue is a stream ``<namespace>:<queue_name>`` consumed through one
consumer group, so several receiver processes share the work of an endpoint.

- ack: ``XACK``
- nack: the entry stays pending and is reclaimed with ``XAUTOCLAIM`` once it
  has been idle for ``claim_idle_ms``; its delivery count comes from ``XPENDING``
- reject: the body is copied to ``<stream>:dead`` and acknowledged

Broker options (``brokers.redis``):
    url, password, namespace, group, consumer_name
    block_ms: how long a read blocks on an empty stream (default 1000)
    claim_idle_ms: idle time before a pending entry is redelivered (default 60000)
    max_deliveries: deliveries before an entry is dead-lettered (default 5)
    max_length: approximate stream length cap for ``XADD`` (default unbounded)
"""

import os
import socket
from typing import Any

import redis.asyncio as aioredis
from pydantic import BaseModel, Field, SecretStr
from redis.exceptions import BusyLoadingError, ResponseError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import TimeoutError as RedisTimeoutError

from ...config.settings import TransportConfig
from ...core.runtime_patterns import RetryPolicy, is_retryable_error, retry_with_policy
from ...observability.logging import get_logger
from ..endpoints import Endpoint
from ..model import Message
from ..spi import (
    Delivery,
    MessageHandler,
    MessageReceiver,
    MessageSender,
    TransportFactory,
    register_transport,
)

logger = get_logger(__name__)


def _default_consumer_name() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


class RedisBrokerConfig(BaseModel):
    url: str = "redis://localhost:6379/0"
    password: SecretStr | None = None
    namespace: str = "pipewright"
    group: str = "pipewright"
    consumer_name: str = Field(default_factory=_default_consumer_name)
    block_ms: int = Field(1000, ge=0)
    claim_idle_ms: int = Field(60000, gt=0)
    max_deliveries: int = Field(5, ge=1)
    max_length: int | None = Field(None, gt=0)

    def create_client(self) -> aioredis.Redis:
        password = self.password.get_secret_value() if self.password else None
        return aioredis.Redis.from_url(self.url, password=password, decode_responses=True)

    def stream(self, queue_name: str) -> str:
        return f"{self.namespace}:{queue_name}"


def is_retryable_redis_error(error: Exception) -> bool:
    if isinstance(error, (RedisConnectionError, RedisTimeoutError, BusyLoadingError)):
        return True
    return is_retryable_error(error)


class RedisSender(MessageSender):
    transport_name = "redis"

    def __init__(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        retry_policy: RetryPolicy,
        broker_config: RedisBrokerConfig,
        client: aioredis.Redis | None = None,
    ):
        super().__init__(endpoint, config, retry_policy)
        self.broker_config = broker_config
        self.client = client or broker_config.create_client()
        self.stream = broker_config.stream(config.queue_name)

    async def _send(self, body: str, message: Message) -> None:
        fields = {
            "body": body,
            "traceId": message.trace_id,
            "runId": str(message.run_id),
            "type": message.payload_type,
        }
        kwargs: dict[str, Any] = {}
        if self.broker_config.max_length:
            kwargs = {"maxlen": self.broker_config.max_length, "approximate": True}
        entry_id = await self.client.xadd(self.stream, fields, **kwargs)
        logger.debug("Sent message", stream=self.stream, type=message.payload_type, id=entry_id)

    async def close(self) -> None:
        await self.client.aclose()

    def is_retryable(self, error: Exception) -> bool:
        return is_retryable_redis_error(error)


class RedisReceiver(MessageReceiver):
    transport_name = "redis"

    def __init__(
        self,
        *args,
        broker_config: RedisBrokerConfig,
        client: aioredis.Redis | None = None,
        **kwargs,
    ):
        super().__init__(*args, **kwargs)
        self.broker_config = broker_config
        self.client = client or broker_config.create_client()
        self.stream = broker_config.stream(self.config.queue_name)
        self.dead_letter_stream = f"{self.stream}:dead"

    async def _with_retry(self, op, op_name: str):
        return await retry_with_policy(
            op, self.retry_policy, is_retryable=self.is_retryable, op_name=f"redis.{op_name}"
        )

    async def _open(self) -> None:
        try:
            await self._with_retry(
                lambda: self.client.xgroup_create(
                    self.stream, self.broker_config.group, id="0", mkstream=True
                ),
                "xgroup_create",
            )
            logger.info(
                "Created consumer group", stream=self.stream, group=self.broker_config.group
            )
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _fetch(self, max_messages: int) -> list[Delivery]:
        group = self.broker_config.group
        consumer = self.broker_config.consumer_name

        claimed = await self._with_retry(
            lambda: self.client.xautoclaim(
                self.stream,
                group,
                consumer,
                min_idle_time=self.broker_config.claim_idle_ms,
                start_id="0-0",
                count=max_messages,
            ),
            "xautoclaim",
        )
        entries = [e for e in (claimed[1] if claimed else []) if e and e[1]]
        if entries:
            return [
                Delivery(
                    body=fields.get("body", ""),
                    handle=entry_id,
                    delivery_count=await self._times_delivered(entry_id),
                )
                for entry_id, fields in entries
            ]

        response = await self._with_retry(
            lambda: self.client.xreadgroup(
                group,
                consumer,
                {self.stream: ">"},
                count=max_messages,
                block=self.broker_config.block_ms,
            ),
            "xreadgroup",
        )
        # Entries read with ">" are delivered for the first time
        return [
            Delivery(body=fields.get("body", ""), handle=entry_id, delivery_count=1)
            for _stream, stream_entries in response or []
            for entry_id, fields in stream_entries
        ]

    async def _times_delivered(self, entry_id: str) -> int:
        """Delivery counter the group keeps in its pending entries list."""
        pending = await self._with_retry(
            lambda: self.client.xpending_range(
                self.stream, self.broker_config.group, min=entry_id, max=entry_id, count=1
            ),
            "xpending_range",
        )
        return pending[0]["times_delivered"] if pending else 1

    async def _ack(self, delivery: Delivery) -> None:
        await self._with_retry(
            lambda: self.client.xack(self.stream, self.broker_config.group, delivery.handle),
            "xack",
        )

    async def _nack(self, delivery: Delivery) -> None:
        if delivery.delivery_count >= self.broker_config.max_deliveries:
            await self._reject(delivery, "delivery limit reached")

    async def _reject(self, delivery: Delivery, reason: str) -> None:
        fields = {"body": delivery.body, "reason": reason, "source": self.stream}
        await self._with_retry(
            lambda: self.client.xadd(self.dead_letter_stream, fields), "xadd_dead_letter"
        )
        await self._ack(delivery)
        logger.warning(
            "Dead-lettered message",
            stream=self.stream,
            dead_letter_stream=self.dead_letter_stream,
            reason=reason,
        )

    async def _close(self) -> None:
        await self.client.aclose()

    def is_retryable(self, error: Exception) -> bool:
        return is_retryable_redis_error(error)


class RedisTransportFactory(TransportFactory):
    name = "redis"

    def create_sender(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        broker: dict[str, Any],
        retry_policy: RetryPolicy,
    ) -> MessageSender:
        return RedisSender(endpoint, config, retry_policy, RedisBrokerConfig.model_validate(broker))

    def create_receiver(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        broker: dict[str, Any],
        retry_policy: RetryPolicy,
        handler: MessageHandler,
    ) -> MessageReceiver:
        return RedisReceiver(
            endpoint,
            config,
            handler,
            retry_policy,
            broker_config=RedisBrokerConfig.model_validate(broker),
        )


register_transport(RedisTransportFactory())
