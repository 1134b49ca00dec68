"""Сборка и публикация контейнерных образов через Docker SDK."""
import re
from typing import Callable, Optional

import docker
import structlog
from docker.errors import DockerException, ImageNotFound

logger = structlog.get_logger()


class ImageBuildError(Exception):
    """Ошибка сборки или публикации образа."""


def normalize_image_name(project_id: str) -> str:
    """Имя репозитория образа: нижний регистр, только допустимые для docker символы."""
    name = re.sub(r"[^a-z0-9._-]+", "-", project_id.lower()).strip("._-")
    return name or "project"


def image_tag_for(commit_sha: str) -> str:
    """Тег образа - первые 7 символов коммита."""
    return commit_sha[:7].lower()


def _error_text(chunk: dict) -> Optional[str]:
    if "error" in chunk:
        return chunk["error"]
    detail = chunk.get("errorDetail")
    if isinstance(detail, dict):
        return detail.get("message")
    return None


class ImageRegistry:
    def __init__(self, registry_url: str, dockerfile: str = "Dockerfile", client=None):
        self.registry_url = registry_url.rstrip("/")
        self.dockerfile = dockerfile
        self._client = client

    @property
    def client(self):
        # Подключаемся к демону только при первой сборке
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def repository(self, image_name: str) -> str:
        return f"{self.registry_url}/{image_name}"

    def image_ref(self, image_name: str, image_tag: str) -> str:
        return f"{self.repository(image_name)}:{image_tag}"

    def build(self, context_path: str, image_name: str, image_tag: str, on_line: Optional[Callable[[str], None]] = None) -> str:
        """Собрать образ из каталога, передавая вывод построчно."""
        ref = self.image_ref(image_name, image_tag)
        logger.info("image_build_started", image=ref)
        try:
            stream = self.client.api.build(
                path=context_path,
                tag=ref,
                dockerfile=self.dockerfile,
                labels={"shipbot.managed": "true"},
                rm=True,
                decode=True,
            )
            for chunk in stream:
                error = _error_text(chunk)
                if error:
                    raise ImageBuildError(f"Сборка образа {ref} не удалась: {error.strip()}")
                text = chunk.get("stream")
                if text and on_line:
                    for line in text.splitlines(keepends=True):
                        on_line(line)
        except (DockerException, OSError) as e:
            raise ImageBuildError(f"Сборка образа {ref} не удалась: {e}") from e
        logger.info("image_build_done", image=ref)
        return ref

    def push(self, image_name: str, image_tag: str, on_line: Optional[Callable[[str], None]] = None) -> str:
        """Опубликовать образ в реестре. Ошибка в потоке статусов - ошибка публикации."""
        ref = self.image_ref(image_name, image_tag)
        logger.info("image_push_started", image=ref)
        try:
            stream = self.client.images.push(self.repository(image_name), tag=image_tag, stream=True, decode=True)
            for chunk in stream:
                error = _error_text(chunk)
                if error:
                    raise ImageBuildError(f"Публикация образа {ref} не удалась: {error}")
                # Строки прогресса загрузки слоев в лог не пишем
                if on_line and chunk.get("status") and not chunk.get("progress"):
                    layer = chunk.get("id")
                    on_line(f"{layer}: {chunk['status']}\n" if layer else f"{chunk['status']}\n")
        except (DockerException, OSError) as e:
            raise ImageBuildError(f"Публикация образа {ref} не удалась: {e}") from e
        logger.info("image_push_done", image=ref)
        return ref

    def inspect(self, image_name: str, image_tag: str) -> str:
        """Вернуть id локального образа."""
        ref = self.image_ref(image_name, image_tag)
        try:
            return self.client.images.get(ref).id
        except ImageNotFound as e:
            raise ImageBuildError(f"Образ {ref} не найден после сборки: {e}") from e
        except (DockerException, OSError) as e:
            raise ImageBuildError(f"Не удалось получить образ {ref}: {e}") from e
