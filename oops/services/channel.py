from __future__ import annotations

import json
import logging
import queue
import threading
from typing import Callable, Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from google.api_core import exceptions as gcp_exceptions
from google.cloud import pubsub_v1

from oops.config import Settings
from oops.errors import ConfigurationError, TransportError

LOGGER = logging.getLogger("oops.channel")

MessageHandler = Callable[[bytes], bool]


class MessageChannel:
    """Publish/subscribe transport carrying command and report messages.

    ``subscribe`` blocks, calling ``handler`` once per inbound message until ``stop`` is set.
    Delivery is at-least-once; a message is acknowledged after the handler returns.
    """

    name = "abstract"

    def publish(self, subject: str, payload: bytes) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def subscribe(self, handler: MessageHandler, stop: threading.Event) -> None:  # pragma: no cover - interface stub
        raise NotImplementedError

    def close(self) -> None:
        return None


class InMemoryChannel(MessageChannel):
    """Single-process channel, used for local runs and tests."""

    name = "memory"

    def __init__(self, poll_interval: float = 0.2) -> None:
        self._queue: "queue.Queue[tuple[str, bytes]]" = queue.Queue()
        self._poll_interval = poll_interval
        self.published: list[tuple[str, bytes]] = []

    def publish(self, subject: str, payload: bytes) -> None:
        self.published.append((subject, payload))
        self._queue.put((subject, payload))

    def subscribe(self, handler: MessageHandler, stop: threading.Event) -> None:
        while not stop.is_set():
            try:
                _subject, payload = self._queue.get(timeout=self._poll_interval)
            except queue.Empty:
                continue
            try:
                handler(payload)
            finally:
                self._queue.task_done()

    def pending(self) -> int:
        return self._queue.qsize()


def _aws_session(settings: Settings) -> "boto3.session.Session":
    session = boto3.session.Session(
        aws_access_key_id=settings.aws_key,
        aws_secret_access_key=settings.aws_secret,
        region_name=settings.aws_region,
    )
    if not settings.role_arn:
        return session
    credentials = session.client("sts").assume_role(RoleArn=settings.role_arn, RoleSessionName="oops")["Credentials"]
    return boto3.session.Session(
        aws_access_key_id=credentials["AccessKeyId"],
        aws_secret_access_key=credentials["SecretAccessKey"],
        aws_session_token=credentials["SessionToken"],
        region_name=settings.aws_region,
    )


class SnsSqsChannel(MessageChannel):
    """SNS topic fanned out to an SQS queue of the same name."""

    name = "snssqs"

    def __init__(self, name: str, settings: Settings, wait_seconds: int = 20) -> None:
        self._name = name
        self._wait_seconds = wait_seconds
        try:
            session = _aws_session(settings)
            self._sns = session.client("sns")
            self._sqs = session.client("sqs")
            self._topic_arn = self._sns.create_topic(Name=name)["TopicArn"]
            self._queue_url: Optional[str] = None
        except (BotoCoreError, ClientError) as exc:
            raise ConfigurationError(f"cannot set up SNS topic {name}: {exc}") from exc

    def _ensure_queue(self) -> str:
        if self._queue_url:
            return self._queue_url
        queue_url = self._sqs.create_queue(QueueName=self._name)["QueueUrl"]
        queue_arn = self._sqs.get_queue_attributes(QueueUrl=queue_url, AttributeNames=["QueueArn"])["Attributes"]["QueueArn"]
        policy = {
            "Version": "2012-10-17",
            "Statement": [
                {
                    "Effect": "Allow",
                    "Principal": {"Service": "sns.amazonaws.com"},
                    "Action": "sqs:SendMessage",
                    "Resource": queue_arn,
                    "Condition": {"ArnEquals": {"aws:SourceArn": self._topic_arn}},
                }
            ],
        }
        self._sqs.set_queue_attributes(QueueUrl=queue_url, Attributes={"Policy": json.dumps(policy)})
        self._sns.subscribe(
            TopicArn=self._topic_arn,
            Protocol="sqs",
            Endpoint=queue_arn,
            Attributes={"RawMessageDelivery": "true"},
        )
        self._queue_url = queue_url
        LOGGER.info("%s subscribed to %s", self._name, self._name)
        return queue_url

    def publish(self, subject: str, payload: bytes) -> None:
        try:
            self._sns.publish(TopicArn=self._topic_arn, Subject=subject, Message=payload.decode("utf-8"))
        except (BotoCoreError, ClientError) as exc:
            raise TransportError(f"SNS publish to {self._name} failed: {exc}") from exc

    def subscribe(self, handler: MessageHandler, stop: threading.Event) -> None:
        try:
            queue_url = self._ensure_queue()
        except (BotoCoreError, ClientError) as exc:
            raise ConfigurationError(f"cannot subscribe SQS queue {self._name}: {exc}") from exc
        while not stop.is_set():
            try:
                response = self._sqs.receive_message(
                    QueueUrl=queue_url,
                    MaxNumberOfMessages=1,
                    WaitTimeSeconds=self._wait_seconds,
                )
            except (BotoCoreError, ClientError) as exc:
                LOGGER.warning("SQS receive from %s failed: %s", self._name, exc)
                stop.wait(1.0)
                continue
            for message in response.get("Messages", []):
                handler(message["Body"].encode("utf-8"))
                try:
                    self._sqs.delete_message(QueueUrl=queue_url, ReceiptHandle=message["ReceiptHandle"])
                except (BotoCoreError, ClientError) as exc:
                    LOGGER.warning("SQS delete on %s failed: %s", self._name, exc)


class PubSubChannel(MessageChannel):
    """Google Cloud Pub/Sub topic with a pull subscription of the same name."""

    name = "pubsub"

    def __init__(self, project_id: str, topic: str, ack_deadline_seconds: int = 60) -> None:
        self._publisher = pubsub_v1.PublisherClient()
        self._topic_path = self._publisher.topic_path(project_id, topic)
        self._project_id = project_id
        self._topic = topic
        self._ack_deadline = ack_deadline_seconds
        self._subscriber: Optional[pubsub_v1.SubscriberClient] = None
        try:
            self._publisher.create_topic(request={"name": self._topic_path})
        except gcp_exceptions.AlreadyExists:
            pass
        except gcp_exceptions.GoogleAPIError as exc:
            raise ConfigurationError(f"cannot set up Pub/Sub topic {topic}: {exc}") from exc

    def publish(self, subject: str, payload: bytes) -> None:
        try:
            self._publisher.publish(self._topic_path, payload, subject=subject).result()
        except gcp_exceptions.GoogleAPIError as exc:
            raise TransportError(f"Pub/Sub publish to {self._topic} failed: {exc}") from exc

    def _subscription_path(self) -> str:
        subscriber = self._subscriber = self._subscriber or pubsub_v1.SubscriberClient()
        path = subscriber.subscription_path(self._project_id, self._topic)
        try:
            subscriber.create_subscription(
                request={"name": path, "topic": self._topic_path, "ack_deadline_seconds": self._ack_deadline}
            )
        except gcp_exceptions.AlreadyExists:
            pass
        return path

    def subscribe(self, handler: MessageHandler, stop: threading.Event) -> None:
        try:
            path = self._subscription_path()
        except gcp_exceptions.GoogleAPIError as exc:
            raise ConfigurationError(f"cannot subscribe to {self._topic}: {exc}") from exc
        LOGGER.info("%s subscribed to %s", path, self._topic_path)
        while not stop.is_set():
            try:
                response = self._subscriber.pull(request={"subscription": path, "max_messages": 1}, timeout=30)
            except gcp_exceptions.DeadlineExceeded:
                continue
            except gcp_exceptions.GoogleAPIError as exc:
                LOGGER.warning("Pub/Sub pull from %s failed: %s", path, exc)
                stop.wait(1.0)
                continue
            for received in response.received_messages:
                handler(received.message.data)
                try:
                    self._subscriber.acknowledge(request={"subscription": path, "ack_ids": [received.ack_id]})
                except gcp_exceptions.GoogleAPIError as exc:
                    LOGGER.warning("Pub/Sub ack on %s failed: %s", path, exc)

    def close(self) -> None:
        if self._subscriber is not None:
            self._subscriber.close()


def create_command_channel(settings: Settings) -> MessageChannel:
    if settings.snssqs:
        return SnsSqsChannel(settings.snssqs, settings)
    if settings.pubsub:
        return PubSubChannel(settings.project_id or "", settings.pubsub)
    LOGGER.info("No distribution channel configured; using in-memory channel")
    return InMemoryChannel()


def create_report_channel(settings: Settings) -> Optional[MessageChannel]:
    if not settings.report_pubsub:
        return None
    return PubSubChannel(settings.project_id or "", settings.report_pubsub)
