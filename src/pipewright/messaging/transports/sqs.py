"""
Amazon SQS transport (boto3).

boto3 clients are synchronous, so every call runs in a worker thread. Each
sender and receiver builds its own client from an explicit ``boto3.Session``
holding the configured credentials; nothing is read from or written to
process-wide AWS state beyond what the session itself resolves.

Broker options (``brokers.sqs``):
    region_name, endpoint_url
    aws_access_key_id, aws_secret_access_key, aws_session_token
    wait_time_seconds: long polling wait (0-20, default 20)
    visibility_timeout: override of the queue's visibility timeout
    dead_letter_queue: queue that receives rejected (malformed) messages

FIFO queues (names ending in ``.fifo``) group messages by run ID, so the
messages of one run are delivered in order.
"""

import asyncio
import uuid
from typing import Any

import boto3
from botocore.exceptions import (
    ClientError,
    ConnectionClosedError,
    EndpointConnectionError,
    ReadTimeoutError,
)
from pydantic import BaseModel, Field, SecretStr

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

RETRYABLE_ERROR_CODES = frozenset(
    {
        "Throttling",
        "ThrottlingException",
        "RequestThrottled",
        "RequestTimeout",
        "ServiceUnavailable",
        "InternalError",
        "InternalFailure",
        "KmsThrottled",
    }
)

# SQS returns at most 10 messages per receive call
MAX_BATCH = 10


class SqsBrokerConfig(BaseModel):
    region_name: str | None = None
    endpoint_url: str | None = None
    aws_access_key_id: SecretStr | None = None
    aws_secret_access_key: SecretStr | None = None
    aws_session_token: SecretStr | None = None
    wait_time_seconds: int = Field(20, ge=0, le=20)
    visibility_timeout: int | None = Field(None, ge=0)
    dead_letter_queue: str | None = None

    def create_client(self):
        """Create an SQS client bound to these credentials."""
        session = boto3.Session(
            aws_access_key_id=_secret(self.aws_access_key_id),
            aws_secret_access_key=_secret(self.aws_secret_access_key),
            aws_session_token=_secret(self.aws_session_token),
            region_name=self.region_name,
        )
        return session.client("sqs", endpoint_url=self.endpoint_url)


def _secret(value: SecretStr | None) -> str | None:
    return value.get_secret_value() if value is not None else None


def is_retryable_sqs_error(error: Exception) -> bool:
    """Throttling, server side errors and connection problems are retryable."""
    if isinstance(error, ClientError):
        code = error.response.get("Error", {}).get("Code", "")
        status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
        return code in RETRYABLE_ERROR_CODES or status >= 500
    if isinstance(error, (EndpointConnectionError, ConnectionClosedError, ReadTimeoutError)):
        return True
    return is_retryable_error(error)


class _SqsQueue:
    """Lazily resolved queue URL plus thread offloading for one client."""

    def __init__(self, client, queue_name: str):
        self.client = client
        self.queue_name = queue_name
        self._url: str | None = None

    async def call(self, method: str, **kwargs) -> dict[str, Any]:
        return await asyncio.to_thread(getattr(self.client, method), **kwargs)

    async def url(self) -> str:
        if self._url is None:
            response = await self.call("get_queue_url", QueueName=self.queue_name)
            self._url = response["QueueUrl"]
        return self._url

    @property
    def is_fifo(self) -> bool:
        return self.queue_name.endswith(".fifo")


class SqsSender(MessageSender):
    transport_name = "sqs"

    def __init__(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        retry_policy: RetryPolicy,
        broker_config: SqsBrokerConfig,
        client=None,
    ):
        super().__init__(endpoint, config, retry_policy)
        self.broker_config = broker_config
        self.queue = _SqsQueue(client or broker_config.create_client(), config.queue_name)

    async def _send(self, body: str, message: Message) -> None:
        params: dict[str, Any] = {
            "QueueUrl": await self.queue.url(),
            "MessageBody": body,
            "MessageAttributes": {
                "traceId": {"DataType": "String", "StringValue": message.trace_id},
                "runId": {"DataType": "Number", "StringValue": str(message.run_id)},
                "type": {"DataType": "String", "StringValue": message.payload_type},
            },
        }
        if self.queue.is_fifo:
            params["MessageGroupId"] = str(message.run_id)
            params["MessageDeduplicationId"] = uuid.uuid4().hex

        response = await self.queue.call("send_message", **params)
        logger.debug(
            "Sent message",
            queue=self.config.queue_name,
            type=message.payload_type,
            message_id=response.get("MessageId"),
        )

    def is_retryable(self, error: Exception) -> bool:
        return is_retryable_sqs_error(error)


class SqsReceiver(MessageReceiver):
    transport_name = "sqs"

    def __init__(self, *args, broker_config: SqsBrokerConfig, client=None, **kwargs):
        super().__init__(*args, **kwargs)
        self.broker_config = broker_config
        self.queue = _SqsQueue(client or broker_config.create_client(), self.config.queue_name)
        self._dead_letter: _SqsQueue | None = None
        if broker_config.dead_letter_queue:
            self._dead_letter = _SqsQueue(self.queue.client, broker_config.dead_letter_queue)

    async def _with_retry(self, op, op_name: str):
        return await retry_with_policy(
            op, self.retry_policy, is_retryable=self.is_retryable, op_name=f"sqs.{op_name}"
        )

    async def _fetch(self, max_messages: int) -> list[Delivery]:
        params: dict[str, Any] = {
            "QueueUrl": await self._with_retry(self.queue.url, "get_queue_url"),
            "MaxNumberOfMessages": min(MAX_BATCH, max_messages),
            "WaitTimeSeconds": self.broker_config.wait_time_seconds,
            "AttributeNames": ["ApproximateReceiveCount"],
            "MessageAttributeNames": ["All"],
        }
        if self.broker_config.visibility_timeout is not None:
            params["VisibilityTimeout"] = self.broker_config.visibility_timeout

        response = await self._with_retry(
            lambda: self.queue.call("receive_message", **params), "receive_message"
        )
        return [
            Delivery(
                body=m["Body"],
                handle=m["ReceiptHandle"],
                delivery_count=int(m.get("Attributes", {}).get("ApproximateReceiveCount", 1)),
            )
            for m in response.get("Messages", [])
        ]

    async def _ack(self, delivery: Delivery) -> None:
        url = await self.queue.url()
        await self._with_retry(
            lambda: self.queue.call("delete_message", QueueUrl=url, ReceiptHandle=delivery.handle),
            "delete_message",
        )

    async def _nack(self, delivery: Delivery) -> None:
        url = await self.queue.url()
        await self._with_retry(
            lambda: self.queue.call(
                "change_message_visibility",
                QueueUrl=url,
                ReceiptHandle=delivery.handle,
                VisibilityTimeout=0,
            ),
            "change_message_visibility",
        )

    async def _reject(self, delivery: Delivery, reason: str) -> None:
        if self._dead_letter is None:
            # The queue's redrive policy moves the message once maxReceiveCount is reached
            logger.warning(
                "Leaving malformed message for the redrive policy",
                queue=self.config.queue_name,
                reason=reason,
            )
            return

        dlq_url = await self._with_retry(self._dead_letter.url, "get_queue_url")
        body = delivery.body if isinstance(delivery.body, str) else delivery.body.decode()
        params: dict[str, Any] = {
            "QueueUrl": dlq_url,
            "MessageBody": body,
            "MessageAttributes": {
                "rejectReason": {"DataType": "String", "StringValue": reason[:1024]},
                "sourceQueue": {"DataType": "String", "StringValue": self.config.queue_name},
            },
        }
        if self._dead_letter.is_fifo:
            params["MessageGroupId"] = "rejected"
            params["MessageDeduplicationId"] = uuid.uuid4().hex
        await self._with_retry(lambda: self._dead_letter.call("send_message", **params), "dlq")
        await self._ack(delivery)
        logger.warning(
            "Dead-lettered message",
            queue=self.config.queue_name,
            dead_letter_queue=self._dead_letter.queue_name,
            reason=reason,
        )

    def is_retryable(self, error: Exception) -> bool:
        return is_retryable_sqs_error(error)


class SqsTransportFactory(TransportFactory):
    name = "sqs"

    def create_sender(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        broker: dict[str, Any],
        retry_policy: RetryPolicy,
    ) -> MessageSender:
        return SqsSender(endpoint, config, retry_policy, SqsBrokerConfig.model_validate(broker))

    def create_receiver(
        self,
        endpoint: Endpoint,
        config: TransportConfig,
        broker: dict[str, Any],
        retry_policy: RetryPolicy,
        handler: MessageHandler,
    ) -> MessageReceiver:
        return SqsReceiver(
            endpoint,
            config,
            handler,
            retry_policy,
            broker_config=SqsBrokerConfig.model_validate(broker),
        )


register_transport(SqsTransportFactory())
