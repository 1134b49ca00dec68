"""CLI точка входа для shipbot."""
import argparse
import os
import sys
from pathlib import Path
from typing import Optional

EXAMPLE_CONFIG = """database_url: "sqlite:///./shipbot.db"
redis_url: "redis://localhost:6379/0"
log_level: INFO
log_format: console

github:
  webhook_secret: "change-me"
  # app_id и private_key можно задать через GITHUB_APP_ID и GITHUB_APP_PRIVATE_KEY

gitlab:
  webhook_secret: "change-me"

registry:
  url: "localhost:5000"

build:
  workdir: "/tmp/shipbot-builds"
  max_concurrent: 3
  max_log_size: 100000

queue:
  max_attempts: 3
  backoff_delay: 5

services:
  - id: example-service
    name: example-service
    project_id: example-project
    workspace_id: example-workspace
    repository_url: "https://github.com/owner/repo.git"
    branch: main
    auto_deploy: true
    port: 8080
"""


def get_base_path() -> Path:
    """Получить базовый путь (для бинарника или исходников)."""
    if getattr(sys, "frozen", False):
        return Path(sys.executable).parent
    return Path.cwd()


def find_config(config_name: str = "config.yaml") -> Optional[Path]:
    """Найти конфигурационный файл."""
    config_path = Path(config_name)
    if config_path.is_absolute():
        return config_path if config_path.exists() else None
    config_path = get_base_path() / config_name
    if not config_path.exists():
        return None
    return config_path


def _use_config(config_name: str) -> Path:
    config_path = find_config(config_name)
    if not config_path:
        print(f"Error: Config file not found: {config_name}")
        print("Run 'shipbot init' to create a config file")
        sys.exit(1)
    # Модули читают путь к конфигу при первом обращении
    os.environ["SHIPBOT_CONFIG"] = str(config_path)
    return config_path


def cmd_init(args):
    """Команда init - создание файла config.yaml."""
    config_path = get_base_path() / "config.yaml"

    if config_path.exists() and not args.force:
        print(f"Error: Config file already exists: {config_path}")
        print("Use --force to overwrite")
        sys.exit(1)

    with open(config_path, "w", encoding="utf-8") as f:
        f.write(EXAMPLE_CONFIG)

    print(f"Config file created: {config_path}")


def cmd_serve(args):
    """Команда serve - запуск веб-сервера с приемником вебхуков."""
    _use_config(args.config)

    import uvicorn
    from shipbot.main import app

    uvicorn.run(
        app,
        host=args.host,
        port=args.port,
        log_level="info",
    )


def cmd_worker(args):
    """Команда worker - запуск воркера сборок."""
    _use_config(args.config)

    from shipbot.config import get_config
    from shipbot.database import configure_engine, init_db
    from shipbot.jobs import BUILD_QUEUE
    from shipbot.logs import configure_logging

    config = get_config()
    configure_logging(config.log_level, config.log_format)
    configure_engine(config.database_url)
    init_db()

    from shipbot.celery_app import celery_app

    concurrency = args.concurrency or config.build.max_concurrent
    celery_app.worker_main([
        "worker",
        "--queues", BUILD_QUEUE,
        "--concurrency", str(concurrency),
        "--loglevel", config.log_level,
    ])


def cmd_retry(args):
    """Команда retry - повтор упавшего деплоя."""
    _use_config(args.config)

    from shipbot.config import get_config
    from shipbot.database import configure_engine, init_db, session_scope
    from shipbot.lifecycle import InvalidTransition, retry_deployment
    from shipbot.logs import configure_logging
    from shipbot.models import Deployment
    from shipbot.tasks import CeleryBuildQueue, CeleryDeployQueue

    config = get_config()
    configure_logging(config.log_level, config.log_format)
    configure_engine(config.database_url)
    init_db()

    with session_scope() as db:
        deployment = db.get(Deployment, args.deployment_id)
        if not deployment:
            print(f"Error: Deployment '{args.deployment_id}' not found")
            sys.exit(1)
        try:
            item = retry_deployment(db, deployment, CeleryBuildQueue(), CeleryDeployQueue())
        except InvalidTransition as e:
            print(f"Error: {e}")
            sys.exit(1)
        except Exception as e:
            # Деплой уже помечен FAILED, повтор можно запустить снова
            print(f"Error: failed to enqueue retry: {e}")
            sys.exit(1)

        if item:
            print(f"Build queued: deployment={deployment.id}, build={item.id}")
        else:
            print(f"Deploy re-sent: deployment={deployment.id}, image={deployment.image_url}")


def main():
    """Главная функция CLI."""
    parser = argparse.ArgumentParser(
        description="ShipBot - сборка и выкладка сервисов по push-вебхукам",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Примеры использования:
  shipbot init                    Создать config.yaml
  shipbot serve                   Запустить веб-сервер
  shipbot serve --port 9000       Запустить на порту 9000
  shipbot worker                  Запустить воркер сборок
  shipbot retry <deployment_id>   Повторить упавший деплой
        """,
    )
    subparsers = parser.add_subparsers(dest="command", help="Доступные команды", metavar="COMMAND")

    # Команда init
    init_parser = subparsers.add_parser("init", help="Создать файл config.yaml")
    init_parser.add_argument(
        "--force",
        action="store_true",
        help="Перезаписать существующий config.yaml",
    )

    # Команда serve
    serve_parser = subparsers.add_parser("serve", help="Запустить веб-сервер")
    serve_parser.add_argument(
        "--host",
        default="0.0.0.0",
        help="Хост для веб-сервера (по умолчанию: 0.0.0.0)",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=8009,
        help="Порт для веб-сервера (по умолчанию: 8009)",
    )
    serve_parser.add_argument(
        "--config",
        default="config.yaml",
        help="Путь к конфигурационному файлу (по умолчанию: config.yaml)",
    )

    # Команда worker
    worker_parser = subparsers.add_parser("worker", help="Запустить воркер сборок")
    worker_parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Число параллельных сборок (по умолчанию: build.max_concurrent)",
    )
    worker_parser.add_argument(
        "--config",
        default="config.yaml",
        help="Путь к конфигурационному файлу (по умолчанию: config.yaml)",
    )

    # Команда retry
    retry_parser = subparsers.add_parser("retry", help="Повторить упавший деплой")
    retry_parser.add_argument(
        "deployment_id",
        help="ID деплоя в статусе FAILED",
    )
    retry_parser.add_argument(
        "--config",
        default="config.yaml",
        help="Путь к конфигурационному файлу (по умолчанию: config.yaml)",
    )

    args = parser.parse_args()

    if not args.command:
        parser.print_help()
        sys.exit(0)

    if args.command == "init":
        cmd_init(args)
    elif args.command == "serve":
        cmd_serve(args)
    elif args.command == "worker":
        cmd_worker(args)
    elif args.command == "retry":
        cmd_retry(args)
    else:
        parser.print_help()
        sys.exit(1)


if __name__ == "__main__":
    main()
