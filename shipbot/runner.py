"""Запуск внешних команд (git) с построчным сбором вывода."""
import os
import subprocess
from datetime import datetime
from typing import Callable, Iterable, List, Optional, Sequence

import structlog

logger = structlog.get_logger()

TRUNCATION_MARKER = "\n... [лог обрезан: превышен максимальный размер] ...\n"


class CommandError(Exception):
    """Команда завершилась с ненулевым кодом."""

    def __init__(self, args: Sequence[str], exit_code: int, output: str = ""):
        self.args_list = list(args)
        self.exit_code = exit_code
        self.output = output
        tail = output.strip().splitlines()[-1] if output.strip() else ""
        super().__init__(f"Команда {self.args_list[0]} завершилась с кодом {exit_code}: {tail}".rstrip(": "))


class BoundedLog:
    """Текстовый лог с жестким ограничением размера.

    Строки сверх лимита отбрасываются, в конец пишется маркер обрезки;
    итоговая длина никогда не превышает max_size.
    """

    def __init__(self, max_size: int, initial: str = ""):
        self.max_size = max_size
        self._parts: List[str] = []
        self._size = 0
        self.truncated = False
        if initial:
            self.append(initial)

    def __len__(self) -> int:
        return self._size

    def append(self, text: str) -> None:
        if self.truncated or not text:
            return
        room = self.max_size - self._size
        if len(text) <= room - len(TRUNCATION_MARKER):
            self._parts.append(text)
            self._size += len(text)
            return
        # Места не хватает: дописываем сколько можно и ставим маркер
        keep = max(room - len(TRUNCATION_MARKER), 0)
        tail = text[:keep] + TRUNCATION_MARKER
        tail = tail[:room]
        self._parts.append(tail)
        self._size += len(tail)
        self.truncated = True

    def line(self, message: str) -> None:
        """Добавить строку с временной меткой."""
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        self.append(f"[{timestamp}] {message.rstrip()}\n")

    def getvalue(self) -> str:
        return "".join(self._parts)


def redact(text: str, secrets: Iterable[Optional[str]]) -> str:
    for secret in secrets:
        if secret:
            text = text.replace(secret, "***")
    return text


class CommandRunner:
    """Запускает команду и отдает ее вывод построчно."""

    def __init__(self, secrets: Iterable[Optional[str]] = ()):
        # Значения, которые нельзя писать в логи (токены в clone URL)
        self.secrets = [s for s in secrets if s]

    def run(
        self,
        args: Sequence[str],
        cwd: Optional[str] = None,
        on_line: Optional[Callable[[str], None]] = None,
    ) -> str:
        """Выполнить команду; вернуть весь вывод или бросить CommandError."""
        safe_args = [redact(a, self.secrets) for a in args]
        logger.debug("command_started", command=" ".join(safe_args), cwd=cwd)

        env = os.environ.copy()
        # Не даем git спрашивать пароль в интерактиве
        env["GIT_TERMINAL_PROMPT"] = "0"

        output: List[str] = []
        process = subprocess.Popen(
            list(args),
            cwd=cwd,
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            text=True,
            bufsize=1,
            env=env,
        )
        try:
            for line in process.stdout:
                line = redact(line, self.secrets)
                output.append(line)
                if on_line:
                    on_line(line)
        finally:
            process.stdout.close()
            exit_code = process.wait()

        text = "".join(output)
        if exit_code != 0:
            logger.warning("command_failed", command=safe_args[0], exit_code=exit_code)
            raise CommandError(safe_args, exit_code, text)
        return text
