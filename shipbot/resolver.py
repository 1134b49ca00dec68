"""Поиск сервиса по URL репозитория."""
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from shipbot.models import Service


def normalize_repository_url(url: str) -> str:
    """Привести URL репозитория к каноническому виду.

    Провайдеры и пользователи по-разному записывают clone URL:
    с ".git" на конце, со слешем, с заглавными буквами в имени организации.
    """
    normalized = url.strip().lower().rstrip("/")
    if normalized.endswith(".git"):
        normalized = normalized[: -len(".git")].rstrip("/")
    return normalized


def repository_url_variants(url: str) -> set:
    normalized = normalize_repository_url(url)
    return {normalized, normalized + ".git"}


def find_service_by_repository(db: Session, repository_url: str) -> Optional[Service]:
    """Найти git-сервис по URL репозитория без учета регистра и суффикса .git.

    Отсутствие сервиса - не ошибка: общий приемник получает вебхуки
    и от репозиториев, не подключенных к платформе.
    """
    variants = repository_url_variants(repository_url)
    stored_url = func.rtrim(func.lower(Service.repository_url), "/")
    return (
        db.query(Service)
        .filter(Service.repository_url.isnot(None))
        .filter(stored_url.in_(variants))
        .order_by(Service.created_at)
        .first()
    )
