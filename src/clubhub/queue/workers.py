"""
Worker entrypoint for the ``dramatiq`` CLI::

    dramatiq clubhub.queue.workers --threads 8

- Loads settings and wires the job core exactly once.
- Registers every handler so Dramatiq discovers the actors on the broker.
"""

from __future__ import annotations

import dramatiq
from dotenv import load_dotenv
from loguru import logger

from clubhub.bootstrap import container_from_environment, register_workers
from clubhub.queue.broker import QueueBroker
from clubhub.settings.manager import SettingsManager
from clubhub.utils.logging import setup_logger

load_dotenv()

settings = SettingsManager().settings
setup_logger(settings.log_level, settings.logging)

container = container_from_environment(settings)
queues = register_workers(container)

broker = container[QueueBroker].broker
dramatiq.set_broker(broker)
logger.info(f"Dramatiq broker configured in worker entrypoint for queues: {', '.join(queues)}")
