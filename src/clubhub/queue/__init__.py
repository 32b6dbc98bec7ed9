from clubhub.queue.broker import QueueBroker, current_attempt, current_job_context
from clubhub.queue.models import BackoffPolicy, JobMessage, JobType

__all__ = ["BackoffPolicy", "JobMessage", "JobType", "QueueBroker", "current_attempt", "current_job_context"]
