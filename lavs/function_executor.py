"""Function handler registry and executor"""
import asyncio
import inspect
import logging
import threading
import time
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from lavs.types import ExecutionContext, FunctionHandler, LAVSError, LAVSErrorCode

logger = logging.getLogger(__name__)

# (input, context) -> result, sync or async
HandlerFunction = Callable[[Any, ExecutionContext], Any]


class FunctionRegistry:
    """Functions callable from manifests, registered ahead of time.

    Manifests name a ``module`` and ``function``; only pairs registered here
    can run, so the set of callable code is fixed by the application.
    """

    def __init__(self):
        self._functions: Dict[Tuple[str, str], HandlerFunction] = {}

    def register(self, module: str, name: Optional[str] = None):
        """Decorator registering a function under ``module``/``name``"""
        def decorator(fn: HandlerFunction) -> HandlerFunction:
            self.add(module, name or fn.__name__, fn)
            return fn
        return decorator

    def add(self, module: str, name: str, fn: HandlerFunction) -> None:
        if not callable(fn):
            raise TypeError(f"Handler {module}.{name} is not callable")
        self._functions[(module, name)] = fn
        logger.debug(f"Registered LAVS function {module}.{name}")

    def has_module(self, module: str) -> bool:
        return any(m == module for m, _ in self._functions)

    def get(self, module: str, name: str) -> Optional[HandlerFunction]:
        return self._functions.get((module, name))

    def names(self) -> List[str]:
        return sorted(f"{m}.{n}" for m, n in self._functions)


registry = FunctionRegistry()


class FunctionExecutor:
    """Runs registered function handlers under a hard wall-clock timeout.

    The timeout does not rely on the function cooperating: on expiry the
    caller gets a Timeout error and any later result is discarded. Sync
    functions each get their own daemon thread, so a call that never
    returns holds no capacity other calls need.
    """

    def __init__(self, function_registry: Optional[FunctionRegistry] = None):
        self.registry = function_registry or registry
        self._threads: Set[threading.Thread] = set()

    def resolve(self, handler: FunctionHandler) -> HandlerFunction:
        if not self.registry.has_module(handler.module):
            raise LAVSError(
                LAVSErrorCode.HandlerError,
                f"Failed to import module '{handler.module}': module is not registered"
            )
        fn = self.registry.get(handler.module, handler.function)
        if fn is None:
            raise LAVSError(
                LAVSErrorCode.HandlerError,
                f"Function '{handler.function}' not found or not a function in module '{handler.module}'"
            )
        return fn

    async def execute(self, handler: FunctionHandler, data: Any, context: ExecutionContext) -> Any:
        start = time.monotonic()
        fn = self.resolve(handler)
        timeout_ms = context.timeout
        logger.info(f"Executing function {handler.module}.{handler.function} for {context.endpoint_id}")

        task = asyncio.ensure_future(self._invoke(fn, data, context))
        try:
            done, _ = await asyncio.wait({task}, timeout=timeout_ms / 1000)
        except asyncio.CancelledError:
            task.cancel()
            raise

        if not done:
            task.cancel()
            task.add_done_callback(self._discard_late_result)
            raise LAVSError(LAVSErrorCode.Timeout, f"Function execution timeout after {timeout_ms}ms")

        try:
            result = task.result()
        except LAVSError:
            raise
        except Exception as e:
            raise LAVSError(
                LAVSErrorCode.HandlerError,
                f"Function execution failed: {e}",
                {"errorType": type(e).__name__}
            ) from e

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        logger.info(f"Function completed in {duration_ms}ms ({context.endpoint_id})")
        return result

    async def _invoke(self, fn: HandlerFunction, data: Any, context: ExecutionContext) -> Any:
        if inspect.iscoroutinefunction(fn):
            return await fn(data, context)

        result = await self._run_in_thread(fn, data, context)
        if inspect.isawaitable(result):
            result = await result
        return result

    @staticmethod
    def _discard_late_result(task: "asyncio.Future") -> None:
        if task.cancelled():
            return
        if task.exception() is not None:
            logger.debug(f"Late function failure ignored: {task.exception()}")

    def _run_in_thread(self, fn: HandlerFunction, data: Any, context: ExecutionContext) -> "asyncio.Future":
        loop = asyncio.get_running_loop()
        future = loop.create_future()

        def deliver(setter: Callable[[Any], None], value: Any) -> None:
            if not future.done():
                setter(value)

        def target() -> None:
            try:
                outcome = (future.set_result, fn(data, context))
            except Exception as e:
                outcome = (future.set_exception, e)
            finally:
                self._threads.discard(threading.current_thread())
            try:
                loop.call_soon_threadsafe(deliver, *outcome)
            except RuntimeError:
                logger.debug(f"Event loop closed before {context.endpoint_id} returned")

        thread = threading.Thread(target=target, name=f"lavs-fn-{context.endpoint_id}", daemon=True)
        self._threads.add(thread)
        thread.start()
        return future

    @property
    def running_threads(self) -> int:
        return len(self._threads)

    def shutdown(self) -> None:
        """Daemon threads are left to finish; their results are dropped"""
        if self._threads:
            logger.warning(f"{len(self._threads)} function handler thread(s) still running at shutdown")
