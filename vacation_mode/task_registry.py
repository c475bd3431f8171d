"""
Task Registry - Zentrales Tracking der asyncio Background-Tasks.

Poll-Loops, der taegliche History-Sweep und der Restart-Sync laufen als
benannte Tasks. Beim Untrack bzw. Shutdown werden sie hier gezielt
abgebrochen statt als Fire-and-Forget weiterzulaufen.
"""

import asyncio
import logging
from typing import Coroutine

logger = logging.getLogger(__name__)


class TaskRegistry:
    """Verwaltet die Background-Tasks des Vacation Mode."""

    def __init__(self):
        self._tasks: dict[str, asyncio.Task] = {}
        self._shutting_down = False

    def create_task(
        self,
        coro: Coroutine,
        *,
        name: str,
        replace: bool = False,
    ) -> asyncio.Task:
        """Erstellt und registriert einen Task mit Error-Logging.

        Args:
            coro: Die auszufuehrende Coroutine
            name: Eindeutiger Name (z.B. "poll:light.flur:onoff")
            replace: Bestehenden Task gleichen Namens abbrechen statt ueberspringen
        """
        if self._shutting_down:
            logger.warning("Task '%s' abgelehnt, Shutdown laeuft", name)
            coro.close()
            raise RuntimeError("TaskRegistry is shutting down")

        existing = self._tasks.get(name)
        if existing and not existing.done():
            if not replace:
                logger.debug("Task '%s' laeuft bereits, uebersprungen", name)
                coro.close()
                return existing
            existing.cancel()
            logger.debug("Task '%s' ersetzt", name)

        task = asyncio.create_task(coro, name=name)
        self._tasks[name] = task
        task.add_done_callback(lambda t: self._on_task_done(t, name))
        return task

    def _on_task_done(self, task: asyncio.Task, name: str) -> None:
        """Callback wenn ein Task endet, loggt Fehler, raeumt auf."""
        if self._tasks.get(name) is task:
            del self._tasks[name]

        if task.cancelled():
            logger.debug("Task '%s' wurde abgebrochen", name)
            return

        exc = task.exception()
        if exc:
            logger.error(
                "Background-Task '%s' fehlgeschlagen: %s",
                name, exc, exc_info=exc,
            )

    def cancel(self, name: str) -> bool:
        """Bricht einen einzelnen Task synchron ab."""
        task = self._tasks.pop(name, None)
        if task and not task.done():
            task.cancel()
            return True
        return False

    def is_running(self, name: str) -> bool:
        task = self._tasks.get(name)
        return task is not None and not task.done()

    @property
    def active_tasks(self) -> list[str]:
        return [name for name, task in self._tasks.items() if not task.done()]

    def status(self) -> dict:
        """Laufende Tasks, Poll-Loops nach Tracking-Key getrennt."""
        names = self.active_tasks
        return {
            "poll_loops": sorted(n.split(":", 1)[1] for n in names if n.startswith("poll:")),
            "background": sorted(n for n in names if not n.startswith("poll:")),
        }

    async def shutdown(self) -> None:
        """Bricht alle Tasks ab und wartet auf ihr Ende."""
        self._shutting_down = True
        active = [task for task in self._tasks.values() if not task.done()]

        if not active:
            logger.info("TaskRegistry: Keine aktiven Tasks zum Beenden")
            return

        logger.info("TaskRegistry: Beende %d aktive Tasks...", len(active))
        for task in active:
            task.cancel()

        results = await asyncio.gather(*active, return_exceptions=True)
        errors = sum(
            1 for r in results
            if isinstance(r, Exception) and not isinstance(r, asyncio.CancelledError)
        )
        logger.info("TaskRegistry: %d Tasks beendet (%d Fehler)", len(active), errors)
        self._tasks.clear()
