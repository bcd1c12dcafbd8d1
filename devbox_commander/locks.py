"""
Per-container single-flight for mutating operations.

The first caller for a key runs the operation; callers arriving while it is
in flight await the same future and get its outcome (result or exception).
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict

logger = logging.getLogger(__name__)


class OperationLocks:
    def __init__(self):
        self._inflight: Dict[str, asyncio.Future] = {}

    def is_locked(self, key: str) -> bool:
        return key in self._inflight

    async def run_exclusive(self, key: str, operation: Callable[[], Awaitable[Any]]) -> Any:
        existing = self._inflight.get(key)
        if existing is not None:
            logger.info(f"[Locks] {key} already in progress, waiting for it")
            return await asyncio.shield(existing)

        future = asyncio.get_running_loop().create_future()
        self._inflight[key] = future
        try:
            result = await operation()
        except asyncio.CancelledError:
            future.cancel()
            raise
        except Exception as e:
            future.set_exception(e)
            # Mark retrieved so a lone caller doesn't trigger "exception never retrieved"
            future.exception()
            raise
        else:
            future.set_result(result)
            return result
        finally:
            self._inflight.pop(key, None)
