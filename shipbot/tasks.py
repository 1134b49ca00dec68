"""Задачи Celery и продюсеры очередей сборки и деплоя."""
from dataclasses import asdict
from typing import Optional

import structlog

from shipbot.builder import BuildExecutor
from shipbot.celery_app import celery_app
from shipbot.config import get_config
from shipbot.jobs import BUILD_QUEUE, BUILD_TASK, DEPLOY_QUEUE, DEPLOY_TASK, BuildJob, DeployJob, RetryPolicy

logger = structlog.get_logger()


class RetryBuild(Exception):
    """Сборка упала, но попытки еще остались."""

    def __init__(self, cause: Exception, countdown: float):
        self.cause = cause
        self.countdown = countdown
        super().__init__(str(cause))


class CeleryBuildQueue:
    """Продюсер очереди сборок."""

    def enqueue(self, job: BuildJob) -> str:
        result = build_image.apply_async(kwargs={"job": job.to_message()}, queue=BUILD_QUEUE)
        logger.debug("build_job_published", task_id=result.id, deployment_id=job.deployment_id)
        return result.id


class CeleryDeployQueue:
    """Продюсер очереди деплоя; потребитель - внешний контроллер."""

    def enqueue(self, job: DeployJob) -> str:
        result = celery_app.send_task(DEPLOY_TASK, args=[job.to_message()], queue=DEPLOY_QUEUE)
        logger.debug("deploy_job_published", task_id=result.id, deployment_id=job.deployment_id)
        return result.id


_executor: Optional[BuildExecutor] = None


def get_executor() -> BuildExecutor:
    global _executor
    if _executor is None:
        _executor = BuildExecutor.from_config(get_config(), CeleryDeployQueue())
    return _executor


def get_retry_policy() -> RetryPolicy:
    queue = get_config().queue
    return RetryPolicy(max_attempts=queue.max_attempts, backoff_delay=queue.backoff_delay)


def run_build_job(message: dict, attempt: int, policy: RetryPolicy, executor: Optional[BuildExecutor] = None) -> dict:
    """Выполнить одну доставку задания и решить судьбу ошибки.

    Пока попытки есть - RetryBuild с задержкой, после последней сборка
    окончательно помечается упавшей и ошибка пробрасывается.
    """
    job = BuildJob.from_message(message)
    executor = executor or get_executor()
    log = logger.bind(deployment_id=job.deployment_id, attempt=attempt, max_attempts=policy.max_attempts)

    try:
        result = executor.execute(job, attempt=attempt, max_attempts=policy.max_attempts)
    except Exception as e:
        if policy.should_retry(attempt):
            countdown = policy.countdown(attempt)
            log.warning("build_retry_scheduled", countdown=countdown, error=str(e))
            raise RetryBuild(e, countdown) from e
        executor.mark_exhausted(job.build_queue_id, str(e), attempt)
        raise

    return asdict(result)


@celery_app.task(bind=True, name=BUILD_TASK, acks_late=True, max_retries=None)
def build_image(self, job: dict):
    """Одна доставка задания на сборку."""
    attempt = self.request.retries + 1
    logger.info("build_task_received", task_id=self.request.id, attempt=attempt)
    try:
        return run_build_job(job, attempt, get_retry_policy())
    except RetryBuild as e:
        raise self.retry(exc=e.cause, countdown=e.countdown)
