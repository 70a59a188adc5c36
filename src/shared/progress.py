import asyncio
import logging
import sys
import threading
import time
from typing import Protocol, TextIO, runtime_checkable

logger = logging.getLogger(__name__)


class SingleLineRenderer:
    """Потокобезопасный вывод строки прогресса поверх предыдущей."""

    def __init__(self, *, single_line: bool = True, stream: TextIO | None = None) -> None:
        self.single_line = single_line
        self.stream = stream
        self._width = 0
        self._lock = threading.Lock()

    @property
    def width(self) -> int:
        return self._width

    def _emit(self, text: str) -> None:
        out = self.stream or sys.stdout
        out.write(text)
        out.flush()

    def clear_line(self) -> None:
        with self._lock:
            if self.single_line and self._width:
                self._emit('\r' + ' ' * self._width + '\r')
            self._width = 0

    def write_line(self, msg: str) -> None:
        with self._lock:
            if self.single_line:
                self._emit('\r' + msg.ljust(self._width))
            else:
                self._emit(msg + '\n')
            self._width = len(msg)


DEFAULT_WRITER = SingleLineRenderer()


@runtime_checkable
class ProgressSink(Protocol):
    """Получатель событий прогресса (консоль, GUI, тесты)."""

    def on_progress(self, done: int, total: int, label: str) -> None: ...

    def on_warning(self, text: str) -> None: ...


@runtime_checkable
class CancelToken(Protocol):
    def is_cancelled(self) -> bool: ...


class EventCancelToken:
    """Токен отмены на threading.Event; взводится из любого потока."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()


class NullSink:
    """Прогресс игнорируется, предупреждения уходят в лог."""

    def on_progress(self, done: int, total: int, label: str) -> None:
        pass

    def on_warning(self, text: str) -> None:
        logger.warning(text)


def format_eta(seconds: float) -> str:
    if seconds == float('inf'):
        return '--:--'
    m, s = divmod(int(seconds), 60)
    h, m = divmod(m, 60)
    return f'{h:02d}:{m:02d}:{s:02d}' if h else f'{m:02d}:{s:02d}'


class ConsoleProgress:
    """Счётчик тайлов одного уровня пирамиды.

    Строка с полосой, скоростью и ETA выводится в консоль; то же событие
    (done, total, label) отправляется в sink, если он задан. Ошибка sink
    логируется и не прерывает рендер.
    """

    BAR_WIDTH = 24

    def __init__(
        self,
        total: int,
        label: str = 'tiles',
        writer: SingleLineRenderer | None = None,
        sink: ProgressSink | None = None,
    ) -> None:
        self.total = max(1, int(total))
        self.done = 0
        self.label = label
        self.started = time.monotonic()
        self._writer = writer or DEFAULT_WRITER
        self._sink = sink
        self._lock = asyncio.Lock()
        self._sink_broken = False
        self._render()

    def _render(self) -> None:
        elapsed = max(1e-6, time.monotonic() - self.started)
        rate = self.done / elapsed
        eta = (self.total - self.done) / rate if rate > 0 else float('inf')
        filled = self.BAR_WIDTH * self.done // self.total
        bar = '#' * filled + '.' * (self.BAR_WIDTH - filled)
        self._writer.write_line(
            f'{self.label}: [{bar}] {self.done}/{self.total} tiles, {rate:.1f}/s, ETA {format_eta(eta)}',
        )
        if self._sink is not None and not self._sink_broken:
            try:
                self._sink.on_progress(self.done, self.total, self.label)
            except Exception:
                # Отчёт в sink отключается до конца уровня
                self._sink_broken = True
                logger.exception('Progress sink failed for %s', self.label)

    def step_sync(self, n: int = 1) -> None:
        self.done = min(self.total, self.done + n)
        self._render()

    async def step(self, n: int = 1) -> None:
        async with self._lock:
            self.step_sync(n)

    def close(self) -> None:
        self._writer.clear_line()
