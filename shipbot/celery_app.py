"""Конфигурация Celery приложения."""
from celery import Celery

from shipbot.config import get_config
from shipbot.jobs import BUILD_QUEUE, BUILD_TASK, DEPLOY_QUEUE, DEPLOY_TASK

config = get_config()

celery_app = Celery(
    "shipbot",
    broker=config.redis_url,
    include=["shipbot.tasks"],
)

celery_app.conf.update(
    # Очереди: сборки обрабатываем сами, деплой забирает внешний контроллер
    task_default_queue=BUILD_QUEUE,
    task_routes={
        BUILD_TASK: {"queue": BUILD_QUEUE},
        DEPLOY_TASK: {"queue": DEPLOY_QUEUE},
    },
    # At-least-once: подтверждение после выполнения, по одному заданию на слот
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    worker_concurrency=config.build.max_concurrent,
    # Сериализация
    task_serializer="json",
    accept_content=["json"],
    task_ignore_result=True,
    timezone="UTC",
    enable_utc=True,
    broker_connection_retry_on_startup=True,
)
