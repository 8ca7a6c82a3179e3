from __future__ import annotations

import inspect
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from erp_jobs.jobs.errors import ErrorKind, JobPermanentError, JobRetryableError, JobTimeoutError
from erp_jobs.jobs.model import DEFAULT_TIMEOUT_S

# (payload, context) -> result; coroutine functions run on the loop, plain functions on a thread.
JobHandler = Callable[[Any, Any], Any]
ErrorClassifier = Callable[[BaseException], "ErrorKind | None"]


@dataclass(frozen=True, slots=True)
class HandlerSpec:
    name: str
    fn: JobHandler
    timeout_seconds: int | None = None
    classify: ErrorClassifier | None = None

    @property
    def is_async(self) -> bool:
        return inspect.iscoroutinefunction(self.fn)


def classify_error(spec: HandlerSpec | None, exc: BaseException) -> ErrorKind:
    if isinstance(exc, JobPermanentError):
        return ErrorKind.NON_RETRYABLE
    if isinstance(exc, JobTimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, JobRetryableError):
        return ErrorKind.RETRYABLE
    if spec is not None and spec.classify is not None:
        kind = spec.classify(exc)
        if kind is not None:
            return ErrorKind(kind)
    return ErrorKind.RETRYABLE


@dataclass(slots=True)
class HandlerRegistry:
    handlers: dict[str, HandlerSpec] = field(default_factory=dict)
    frozen: bool = False

    def register(
        self,
        name: str,
        fn: JobHandler,
        *,
        timeout_seconds: int | None = None,
        classify: ErrorClassifier | None = None,
    ) -> HandlerSpec:
        if self.frozen:
            raise RuntimeError("handlers can only be registered before the worker starts")
        name = (name or "").strip()
        if not name:
            raise ValueError("handler name is required")
        if timeout_seconds is not None and int(timeout_seconds) <= 0:
            raise ValueError("timeout_seconds must be > 0")
        spec = HandlerSpec(name=name, fn=fn, timeout_seconds=timeout_seconds, classify=classify)
        self.handlers[name] = spec
        return spec

    def handler(
        self,
        name: str,
        *,
        timeout_seconds: int | None = None,
        classify: ErrorClassifier | None = None,
    ) -> Callable[[JobHandler], JobHandler]:
        def _wrap(fn: JobHandler) -> JobHandler:
            self.register(name, fn, timeout_seconds=timeout_seconds, classify=classify)
            return fn

        return _wrap

    def get(self, name: str) -> HandlerSpec | None:
        return self.handlers.get((name or "").strip())

    def timeout_for(self, name: str) -> int:
        """Timeout for jobs of ``name`` that do not carry their own."""
        spec = self.get(name)
        if spec is not None and spec.timeout_seconds is not None:
            return int(spec.timeout_seconds)
        return DEFAULT_TIMEOUT_S

    def names(self) -> list[str]:
        return sorted(self.handlers)

    def freeze(self) -> None:
        self.frozen = True
