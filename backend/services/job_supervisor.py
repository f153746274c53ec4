"""Single-flight guard for periodic workers: one running instance per worker name."""
import asyncio
import logging
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional

logger = logging.getLogger(__name__)


class WorkerState(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class JobSupervisor:
    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._states: Dict[str, WorkerState] = {}
        self._last_run: Dict[str, Dict[str, Any]] = {}

    def _lock(self, name: str) -> asyncio.Lock:
        if name not in self._locks:
            self._locks[name] = asyncio.Lock()
            self._states[name] = WorkerState.IDLE
        return self._locks[name]

    def state(self, name: str) -> WorkerState:
        return self._states.get(name, WorkerState.IDLE)

    def states(self) -> Dict[str, str]:
        return {name: state.value for name, state in self._states.items()}

    def last_run(self, name: str) -> Optional[Dict[str, Any]]:
        return self._last_run.get(name)

    async def run_exclusive(self, name: str, fn: Callable[[], Awaitable[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
        """
        Run fn unless a previous run of the same worker is still in progress.

        Returns fn's result, or None when the run was skipped.
        """
        lock = self._lock(name)
        if lock.locked():
            logger.debug(f"{name} already in progress, skipping")
            return None

        async with lock:
            self._states[name] = WorkerState.RUNNING
            try:
                result = await fn()
                self._last_run[name] = result
                return result
            finally:
                self._states[name] = WorkerState.IDLE
