"""Загрузка и валидация конфигурации из YAML."""
import os
import yaml
from pathlib import Path
from typing import List, Optional
from pydantic import BaseModel, Field, model_validator


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.getenv(name)
    return value if value else default


def _private_key_from_env() -> Optional[str]:
    # В переменных окружения ключ обычно хранится с экранированными переводами строк
    key = _env("GITHUB_APP_PRIVATE_KEY")
    return key.replace("\\n", "\n") if key else None


class GithubConfig(BaseModel):
    """Настройки интеграции с GitHub."""
    webhook_secret: Optional[str] = Field(default_factory=lambda: _env("GITHUB_WEBHOOK_SECRET"))
    app_id: Optional[str] = Field(default_factory=lambda: _env("GITHUB_APP_ID"))
    private_key: Optional[str] = Field(default_factory=_private_key_from_env)
    api_url: str = "https://api.github.com"

    @property
    def app_configured(self) -> bool:
        return bool(self.app_id and self.private_key)


class GitlabConfig(BaseModel):
    """Настройки интеграции с GitLab."""
    webhook_secret: Optional[str] = Field(default_factory=lambda: _env("GITLAB_WEBHOOK_SECRET"))


class RegistryConfig(BaseModel):
    url: str = Field(default_factory=lambda: _env("REGISTRY_URL", "localhost:5000"))


class BuildConfig(BaseModel):
    """Параметры сборки образов."""
    workdir: str = Field(default_factory=lambda: _env("BUILD_WORKDIR", "/tmp/shipbot-builds"))
    max_concurrent: int = 3
    max_log_size: int = 100_000
    dockerfile: str = "Dockerfile"


class QueueConfig(BaseModel):
    """Политика повторов очереди сборок."""
    max_attempts: int = 3
    backoff_delay: float = 5.0


class PipelineConfig(BaseModel):
    dedupe_deliveries: bool = True


class ServiceConfig(BaseModel):
    """Конфигурация одного сервиса."""
    id: str
    name: str
    project_id: str
    workspace_id: str
    repository_url: Optional[str] = None
    branch: str = "main"
    image: Optional[str] = None
    auto_deploy: bool = True
    github_installation_id: Optional[int] = None
    github_repo_full_name: Optional[str] = None
    cpu_limit: Optional[str] = None
    memory_limit: Optional[str] = None
    cpu_request: Optional[str] = None
    memory_request: Optional[str] = None
    port: int = 8080
    health_check_path: Optional[str] = None
    replicas: int = 1

    @model_validator(mode="after")
    def _check_source(self):
        # Сервис собирается либо из git-репозитория, либо из готового образа
        if bool(self.repository_url) == bool(self.image):
            raise ValueError(
                f"Сервис {self.name}: нужно указать ровно один источник - repository_url или image"
            )
        return self


class AppConfig(BaseModel):
    """Конфигурация приложения."""
    database_url: str = Field(default_factory=lambda: _env("DATABASE_URL", "sqlite:///./shipbot.db"))
    redis_url: str = Field(default_factory=lambda: _env("REDIS_URL", "redis://localhost:6379/0"))
    log_level: str = "INFO"
    log_format: str = "console"
    github: GithubConfig = Field(default_factory=GithubConfig)
    gitlab: GitlabConfig = Field(default_factory=GitlabConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
    build: BuildConfig = Field(default_factory=BuildConfig)
    queue: QueueConfig = Field(default_factory=QueueConfig)
    pipeline: PipelineConfig = Field(default_factory=PipelineConfig)
    services: List[ServiceConfig] = Field(default_factory=list)


def load_config(config_path: Optional[str] = None) -> AppConfig:
    """Загрузить конфигурацию из YAML файла."""
    config_path = config_path or os.getenv("SHIPBOT_CONFIG", "config.yaml")
    config_file = Path(config_path)
    if not config_file.exists():
        raise FileNotFoundError(f"Конфигурационный файл {config_path} не найден")

    with open(config_file, "r", encoding="utf-8") as f:
        config_data = yaml.safe_load(f) or {}

    return AppConfig(**config_data)


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """Получить текущую конфигурацию (загружается один раз)."""
    global _config
    if _config is None:
        config_path = os.getenv("SHIPBOT_CONFIG", "config.yaml")
        # Без файла работаем на значениях по умолчанию и переменных окружения
        _config = load_config(config_path) if Path(config_path).exists() else AppConfig()
    return _config


def set_config(config: AppConfig) -> None:
    global _config
    _config = config


def reset_config() -> None:
    """Сбросить закэшированную конфигурацию (для тестов)."""
    global _config
    _config = None
