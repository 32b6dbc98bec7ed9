"""
Queue broker for the ClubHub job core.

``QueueBroker`` wraps one Dramatiq broker instance (RabbitMQ, Redis or the
in-memory stub) and exposes the two operations producers and workers need:
``enqueue`` a typed job with an attempt budget and backoff policy, and
``register`` a handler for a job type on a queue.
"""

from __future__ import annotations

from collections.abc import Callable, Iterator
from contextlib import contextmanager
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple, Type
from urllib.parse import parse_qs, urlencode, urlparse, urlunparse

import dramatiq
import pika
from dramatiq.errors import DramatiqError
from dramatiq.middleware import AgeLimit, Callbacks, CurrentMessage, Retries, TimeLimit
from loguru import logger

from clubhub.exceptions import BrokerUnavailable, BusinessRejection
from clubhub.queue.callbacks import DeadLetterCallback, DeadLetterHook
from clubhub.queue.models import BackoffPolicy, JobMessage, JobType, create_job_message
from clubhub.settings.models import QueueModel

Handler = Callable[[Dict[str, Any]], Any]


@dataclass(frozen=True)
class JobContext:
    """Broker metadata for the job the current thread is processing."""
    job_id: Optional[str] = None
    job_type: Optional[JobType] = None
    attempt: int = 1
    max_attempts: Optional[int] = None

    @property
    def is_final_attempt(self) -> bool:
        return self.max_attempts is not None and self.attempt >= self.max_attempts


_current_job: ContextVar[JobContext] = ContextVar("clubhub_current_job", default=JobContext())


def current_job_context() -> JobContext:
    """Return the attempt metadata of the running job (defaults outside a worker)."""
    return _current_job.get()


def current_attempt() -> int:
    return _current_job.get().attempt


@contextmanager
def job_context(context: JobContext) -> Iterator[JobContext]:
    token = _current_job.set(context)
    try:
        yield context
    finally:
        _current_job.reset(token)


def _augment_amqp_url(url: str) -> str:
    """Add sane heartbeat/timeouts to AMQP URL if missing."""
    parsed = urlparse(url)
    query = parse_qs(parsed.query)
    query.setdefault("heartbeat", ["30"])  # seconds
    query.setdefault("blocked_connection_timeout", ["300"])  # seconds
    query.setdefault("socket_timeout", ["30"])  # seconds
    query.setdefault("connection_attempts", ["6"])
    query.setdefault("retry_delay", ["5"])  # seconds
    return urlunparse(parsed._replace(query=urlencode(query, doseq=True)))


def build_dramatiq_broker(settings: QueueModel) -> dramatiq.Broker:
    """
    Construct the Dramatiq broker named by ``settings.broker_url``.

    Supported schemes are ``amqp``/``amqps`` (RabbitMQ), ``redis``/``rediss``
    and ``stub`` (in-memory, tests and local development).
    """
    url = settings.broker_url
    scheme = urlparse(url).scheme.lower()

    if scheme in ("amqp", "amqps"):
        from dramatiq.brokers.rabbitmq import RabbitmqBroker

        broker: dramatiq.Broker = RabbitmqBroker(url=_augment_amqp_url(url), confirm_delivery=True)
    elif scheme in ("redis", "rediss"):
        from dramatiq.brokers.redis import RedisBroker

        # unacked messages of a silent worker are requeued once the heartbeat lapses
        broker = RedisBroker(url=url, heartbeat_timeout=settings.lease_timeout_ms)
    elif scheme == "stub":
        from dramatiq.brokers.stub import StubBroker

        broker = StubBroker()
    else:
        raise ValueError(f"Unsupported broker URL scheme: {scheme or url!r}")

    _install_middleware(broker)
    logger.log("QUEUE", f"Configured {type(broker).__name__} for {scheme}://")
    return broker


def _install_middleware(broker: dramatiq.Broker) -> None:
    """Attach middleware once to avoid duplicates if setup is called multiple times."""

    def _add_once(mw):
        if not any(m.__class__ is mw.__class__ for m in broker.middleware):
            broker.add_middleware(mw)

    _add_once(AgeLimit())
    _add_once(TimeLimit())
    _add_once(Retries(max_retries=0))
    _add_once(Callbacks())
    _add_once(CurrentMessage())
    _add_once(DeadLetterHook())


def test_broker_connection(broker: dramatiq.Broker, broker_url: str) -> bool:
    """Probe the broker connection without enqueuing anything."""
    scheme = urlparse(broker_url).scheme.lower()
    try:
        if scheme in ("amqp", "amqps"):
            connection = pika.BlockingConnection(pika.URLParameters(_augment_amqp_url(broker_url)))
            connection.close()
        elif scheme in ("redis", "rediss"):
            broker.client.ping()
        logger.info(f"Successfully connected to {type(broker).__name__}")
        return True
    except Exception as e:
        logger.error(f"Failed to connect to {type(broker).__name__}: {e}")
        return False


class QueueBroker:
    """Typed enqueue/register facade over a single Dramatiq broker."""

    def __init__(self, broker: dramatiq.Broker, settings: QueueModel):
        self.broker = broker
        self.settings = settings
        self.actors: Dict[Tuple[str, JobType], dramatiq.Actor] = {}
        _install_middleware(broker)

    @classmethod
    def from_settings(cls, settings: QueueModel) -> "QueueBroker":
        return cls(build_dramatiq_broker(settings), settings)

    @staticmethod
    def actor_name(queue: str, job_type: JobType) -> str:
        return f"{queue}__{job_type.value}"

    @property
    def dead_letters(self) -> DeadLetterHook:
        return next(m for m in self.broker.middleware if isinstance(m, DeadLetterHook))

    def default_backoff(self) -> BackoffPolicy:
        return BackoffPolicy("exponential", self.settings.backoff_delay_ms)

    def enqueue(
        self,
        queue: str,
        job_type: JobType,
        payload: Dict[str, Any],
        *,
        attempts: Optional[int] = None,
        backoff: Optional[BackoffPolicy] = None,
        delay_ms: Optional[int] = None,
    ) -> str:
        """
        Durably enqueue a job and return its id.

        Raises:
            BrokerUnavailable: the broker rejected or could not take the message.
        """
        job = create_job_message(
            job_type,
            payload,
            max_attempts=attempts if attempts is not None else self.settings.default_attempts,
            backoff=backoff or self.default_backoff(),
            delay_ms=delay_ms,
        )
        options: Dict[str, Any] = {"max_retries": job.max_attempts - 1}
        options.update(job.backoff.message_options(self.settings.max_backoff_ms))

        message = dramatiq.Message(
            queue_name=queue,
            actor_name=self.actor_name(queue, job_type),
            args=(job.to_dict(),),
            kwargs={},
            options=options,
            message_id=job.job_id,
        )
        try:
            if queue not in self.broker.get_declared_queues():
                self.broker.declare_queue(queue)
            self.broker.enqueue(message, delay=delay_ms or None)
        except (DramatiqError, OSError) as e:
            logger.error(f"Failed to enqueue {job.log_message} on {queue}: {e}")
            raise BrokerUnavailable(f"Could not enqueue {job_type.value} on {queue}: {e}") from e

        logger.log("QUEUE", f"Enqueued {job.log_message} on {queue}"
                   + (f" (delay {delay_ms}ms)" if delay_ms else ""))
        return job.job_id

    def register(
        self,
        queue: str,
        job_type: JobType,
        handler: Handler,
        *,
        throws: Tuple[Type[BaseException], ...] = (BusinessRejection,),
    ) -> dramatiq.Actor:
        """
        Bind ``handler(payload)`` to ``job_type`` jobs on ``queue``.

        A raised exception is a failed attempt that the broker retries with
        backoff; exceptions listed in ``throws`` fail the job without retry.
        """
        key = (queue, job_type)
        if key in self.actors:
            logger.debug(f"Replacing handler for {job_type.value} on {queue}")

        actor = self._make_actor(queue, job_type, handler, throws)
        self.actors[key] = actor
        logger.debug(f"Registered actor {actor.actor_name} on {queue}")
        return actor

    def _make_actor(self, queue: str, job_type: JobType, handler: Handler, throws) -> dramatiq.Actor:
        actor_name = self.actor_name(queue, job_type)

        def _fn(job_data: Dict[str, Any]) -> Any:
            job = JobMessage.from_dict(job_data)
            message = CurrentMessage.get_current_message()
            retries = int(message.options.get("retries", 0)) if message is not None else 0
            context = JobContext(job.job_id, job.job_type, retries + 1, job.max_attempts)

            logger.log("QUEUE", f"Processing {job.log_message} (attempt {context.attempt}/{job.max_attempts})")
            with job_context(context):
                try:
                    result = handler(job.payload)
                except throws as e:
                    logger.warning(f"{job.log_message} rejected: {e}")
                    raise
                except Exception as e:
                    logger.warning(
                        f"{job.log_message} failed on attempt {context.attempt}/{job.max_attempts}: {e}"
                    )
                    raise
            logger.log("QUEUE", f"Completed {job.log_message}")
            return result

        _fn.__name__ = actor_name  # ensure unique Dramatiq actor name
        return dramatiq.actor(
            _fn,
            actor_name=actor_name,
            queue_name=queue,
            broker=self.broker,
            max_retries=0,
            time_limit=self.settings.lease_timeout_ms,
            throws=tuple(throws),
        )

    def on_dead_letter(self, queue: str, callback: DeadLetterCallback) -> None:
        """Call ``callback(failure, error)`` when a job on ``queue`` fails for good."""
        self.dead_letters.subscribe(queue, callback)

    def ping(self) -> bool:
        return test_broker_connection(self.broker, self.settings.broker_url)

    def close(self) -> None:
        self.broker.close()
