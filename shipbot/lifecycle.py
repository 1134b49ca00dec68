"""Жизненный цикл деплоя.

PENDING -> BUILDING -> DEPLOYING -> RUNNING. FAILED, CRASHED и STOPPED
достижимы из любого нетерминального состояния, RUNNING остается
"терминальным до остановки" и может перейти только в STOPPED или CRASHED.
Единственный путь назад - повтор FAILED -> PENDING.
"""
from typing import Dict, FrozenSet, Optional

import structlog
from sqlalchemy.orm import Session

from shipbot.models import BuildQueueItem, BuildStatus, Deployment, DeploymentStatus, utcnow

logger = structlog.get_logger()

_STOP_STATES = frozenset({DeploymentStatus.FAILED, DeploymentStatus.CRASHED, DeploymentStatus.STOPPED})

TRANSITIONS: Dict[DeploymentStatus, FrozenSet[DeploymentStatus]] = {
    DeploymentStatus.PENDING: frozenset({DeploymentStatus.BUILDING}) | _STOP_STATES,
    # Повторная доставка той же сборки снова переводит деплой в BUILDING
    DeploymentStatus.BUILDING: frozenset({DeploymentStatus.BUILDING, DeploymentStatus.DEPLOYING}) | _STOP_STATES,
    DeploymentStatus.DEPLOYING: frozenset({DeploymentStatus.RUNNING}) | _STOP_STATES,
    DeploymentStatus.RUNNING: frozenset({DeploymentStatus.STOPPED, DeploymentStatus.CRASHED}),
    DeploymentStatus.FAILED: frozenset({DeploymentStatus.PENDING}),
    DeploymentStatus.CRASHED: frozenset(),
    DeploymentStatus.STOPPED: frozenset(),
}

TERMINAL_STATES = frozenset({
    DeploymentStatus.RUNNING,
    DeploymentStatus.STOPPED,
    DeploymentStatus.FAILED,
    DeploymentStatus.CRASHED,
})


class InvalidTransition(Exception):
    """Недопустимый переход состояния деплоя."""

    def __init__(self, deployment_id: str, current: str, target: str):
        self.deployment_id = deployment_id
        self.current = current
        self.target = target
        super().__init__(f"Деплой {deployment_id}: переход {current} -> {target} недопустим")


def can_transition(current: str, target: str) -> bool:
    return DeploymentStatus(target) in TRANSITIONS[DeploymentStatus(current)]


def transition(deployment: Deployment, target: DeploymentStatus) -> Deployment:
    """Перевести деплой в новое состояние, проверив таблицу переходов.

    Изменение не коммитится: это делает вызывающий код.
    """
    current = deployment.status
    if not can_transition(current, target):
        raise InvalidTransition(deployment.id, current, DeploymentStatus(target).value)
    deployment.status = DeploymentStatus(target).value
    if target == DeploymentStatus.STOPPED:
        deployment.stopped_at = utcnow()
    elif target == DeploymentStatus.RUNNING:
        deployment.deployed_at = utcnow()
    return deployment


def is_terminal(status: str) -> bool:
    return DeploymentStatus(status) in TERMINAL_STATES


def reset_for_retry(deployment: Deployment) -> Deployment:
    """Сбросить упавший деплой в PENDING с текущими настройками сервиса.

    Повтор - это "попробовать снова с сегодняшней конфигурацией",
    поэтому ресурсы берутся из сервиса заново, а не из исходного запроса.
    """
    transition(deployment, DeploymentStatus.PENDING)
    service = deployment.service
    deployment.deployment_logs = None
    deployment.stopped_at = None
    deployment.port = service.default_port
    deployment.replicas = service.default_replicas
    deployment.cpu_limit = service.default_cpu_limit
    deployment.memory_limit = service.default_memory_limit
    deployment.cpu_request = service.default_cpu_request
    deployment.memory_request = service.default_memory_request
    deployment.health_check_path = service.default_health_check_path
    return deployment


def retry_deployment(db: Session, deployment: Deployment, build_queue, deploy_queue) -> Optional[BuildQueueItem]:
    """Административный повтор упавшего деплоя.

    Если образ уже опубликован, деплой повторно передается контроллеру.
    Иначе ставится новая попытка сборки. Возвращает созданную запись очереди
    сборок или None, если был отправлен только деплой.
    """
    from shipbot.jobs import build_job_for, deploy_job_for

    reset_for_retry(deployment)
    service = deployment.service

    if deployment.image_url:
        db.commit()
        logger.info("deployment_retry_redeploy", deployment_id=deployment.id)
        try:
            deploy_queue.enqueue(deploy_job_for(service, deployment))
        except Exception as e:
            logger.error("deployment_retry_enqueue_failed", deployment_id=deployment.id, error=str(e))
            transition(deployment, DeploymentStatus.FAILED)
            deployment.deployment_logs = f"Не удалось поставить деплой в очередь: {e}"
            db.commit()
            raise
        return None

    item = BuildQueueItem(
        service_id=service.id,
        deployment_id=deployment.id,
        status=BuildStatus.QUEUED.value,
    )
    db.add(item)
    db.commit()
    db.refresh(item)

    logger.info("deployment_retry_rebuild", deployment_id=deployment.id, build_queue_id=item.id)
    try:
        build_queue.enqueue(build_job_for(service, deployment, item))
    except Exception as e:
        # Повтор не должен оставлять деплой в PENDING без задания в брокере
        logger.error("deployment_retry_enqueue_failed", deployment_id=deployment.id, error=str(e))
        transition(deployment, DeploymentStatus.FAILED)
        deployment.build_logs = f"Не удалось поставить сборку в очередь: {e}"
        item.status = BuildStatus.FAILED.value
        item.error_message = str(e)
        db.commit()
        raise
    return item
