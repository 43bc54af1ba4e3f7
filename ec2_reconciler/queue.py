"""
SQS queue consumption.

SQSQueueListener long-polls one queue and hands each message body to an async
handler. A message is deleted only after its handler returns, so a raising
handler leaves the message for redelivery (and, once the queue's redrive
policy gives up, for the dead-letter queue).
"""

import asyncio
import logging
from collections.abc import Awaitable, Callable
from functools import partial
from typing import Any

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]
ErrorCallback = Callable[[BaseException, str], None]


async def get_queue_url(sqs: Any, queue_name: str) -> str:
    """Resolve a queue name to its URL."""
    loop = asyncio.get_running_loop()
    response = await loop.run_in_executor(None, partial(sqs.get_queue_url, QueueName=queue_name))
    return response["QueueUrl"]


class SQSQueueListener:
    """
    Single consumption loop over one SQS queue.

    Error types passed to ``on_error``: "receive", "handler", "delete".
    """

    def __init__(
        self,
        sqs: Any,
        queue_url: str,
        handler: MessageHandler,
        max_number_of_messages: int = 10,
        sequential: bool = False,
        visibility_timeout: int | None = None,
        wait_time_seconds: int = 20,
        on_error: ErrorCallback | None = None,
        error_backoff: float = 1.0,
    ):
        """
        Args:
            sqs: boto3 SQS client
            queue_url: URL of the queue to consume
            handler: Async callable receiving each message body
            max_number_of_messages: Batch width per receive call (1-10)
            sequential: Handle messages one at a time instead of concurrently
            visibility_timeout: Override the queue's visibility timeout (seconds)
            wait_time_seconds: Long-poll duration per receive call
            on_error: Called with (error, error_type) for every failure
            error_backoff: Seconds to wait after a failed receive
        """
        if not 1 <= max_number_of_messages <= 10:
            raise ValueError("max_number_of_messages must be between 1 and 10")

        self.sqs = sqs
        self.queue_url = queue_url
        self.handler = handler
        self.max_number_of_messages = max_number_of_messages
        self.sequential = sequential
        self.visibility_timeout = visibility_timeout
        self.wait_time_seconds = wait_time_seconds
        self.on_error = on_error
        self.error_backoff = error_backoff

        self._task: asyncio.Task[None] | None = None
        self._stopping = False
        self._handling = False

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        """Start the polling loop in a background task."""
        if self.running:
            raise RuntimeError(f"Listener for {self.queue_url} is already running")
        self._stopping = False
        self._task = asyncio.create_task(self._run())

    async def stop(self) -> None:
        """
        Stop pulling messages.

        An in-flight handler is allowed to finish; a pending long-poll is
        cancelled (anything it would have received becomes visible again).
        """
        self._stopping = True
        task = self._task
        if task is None:
            return

        if not self._handling:
            task.cancel()
        await asyncio.gather(task, return_exceptions=True)
        self._task = None

    async def _run(self) -> None:
        while not self._stopping:
            try:
                messages = await self._receive()
            except Exception as e:
                self._emit_error(e, "receive")
                await asyncio.sleep(self.error_backoff)
                continue

            if not messages:
                continue

            self._handling = True
            try:
                if self.sequential:
                    for message in messages:
                        await self._handle_one(message)
                        if self._stopping:
                            break
                else:
                    await asyncio.gather(*(self._handle_one(message) for message in messages))
            finally:
                self._handling = False

    async def _receive(self) -> list[dict[str, Any]]:
        params: dict[str, Any] = {
            "QueueUrl": self.queue_url,
            "MaxNumberOfMessages": self.max_number_of_messages,
            "WaitTimeSeconds": self.wait_time_seconds,
        }
        if self.visibility_timeout is not None:
            params["VisibilityTimeout"] = self.visibility_timeout

        loop = asyncio.get_running_loop()
        response = await loop.run_in_executor(None, partial(self.sqs.receive_message, **params))
        return response.get("Messages", [])

    async def _handle_one(self, message: dict[str, Any]) -> None:
        try:
            await self.handler(message["Body"])
        except Exception as e:
            self._emit_error(e, "handler")
            return

        loop = asyncio.get_running_loop()
        try:
            await loop.run_in_executor(
                None,
                partial(
                    self.sqs.delete_message,
                    QueueUrl=self.queue_url,
                    ReceiptHandle=message["ReceiptHandle"],
                ),
            )
        except Exception as e:
            self._emit_error(e, "delete")

    def _emit_error(self, error: BaseException, error_type: str) -> None:
        if self.on_error is None:
            logger.error(f"SQS {error_type} error on {self.queue_url}: {error}")
            return
        try:
            self.on_error(error, error_type)
        except Exception:
            logger.exception("SQS error callback failed")
