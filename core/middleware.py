"""
Middleware pipeline — named extension points run over a shared context.

Each stage holds an ordered chain of functions `fn(ctx)`, sync or async.
A function proceeds by returning, mutates `ctx` in place, aborts the run
by raising, or halts the rest of the chain quietly by raising StopPipeline.
"""
from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

import structlog

from core.errors import MiddlewareError, StopPipeline

logger = structlog.get_logger()


STAGES: tuple[str, ...] = (
    "spawn",
    "ingest",
    "normalize",
    "categorize",
    "receive",
    "heard",
    "triggered",
    "capture",
    "format",
    "send",
    "conversation_start",
    "conversation_end",
)


@dataclass
class StageContext:
    """Mutable state threaded through one pipeline run."""
    bot: Any = None
    message: Any = None
    convo: Any = None
    source: Any = None
    platform_message: dict[str, Any] = field(default_factory=dict)


@dataclass
class PipelineResult:
    context: StageContext
    halted: bool = False
    error: Optional[BaseException] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def __bool__(self) -> bool:
        return self.ok

    def __repr__(self) -> str:
        if self.error:
            return f"PipelineResult(error={self.error!r})"
        return f"PipelineResult(ok, halted={self.halted})"


class MiddlewareStage:
    """An ordered chain of functions under one stage name."""

    def __init__(self, name: str):
        self.name = name
        self._chain: list[Callable] = []

    def use(self, fn: Callable) -> Callable:
        self._chain.append(fn)
        return fn

    def __len__(self) -> int:
        return len(self._chain)

    async def run(self, ctx: StageContext) -> PipelineResult:
        for fn in list(self._chain):
            try:
                out = fn(ctx)
                if inspect.isawaitable(out):
                    await out
            except StopPipeline:
                return PipelineResult(context=ctx, halted=True)
            except Exception as e:
                logger.debug("middleware_failed", stage=self.name, error=str(e))
                return PipelineResult(context=ctx, error=MiddlewareError(self.name, e))
        return PipelineResult(context=ctx)


class MiddlewarePipeline:
    """The full set of named stages owned by a controller."""

    def __init__(self, stages: tuple[str, ...] = STAGES):
        self._stages: dict[str, MiddlewareStage] = {s: MiddlewareStage(s) for s in stages}

    def __getattr__(self, name: str) -> MiddlewareStage:
        stages = self.__dict__.get("_stages", {})
        if name in stages:
            return stages[name]
        raise AttributeError(name)

    def stage(self, name: str) -> MiddlewareStage:
        if name not in self._stages:
            raise KeyError(f"unknown middleware stage: {name}")
        return self._stages[name]

    def register(self, stage: str, fn: Callable) -> Callable:
        return self.stage(stage).use(fn)

    async def run(self, stage: str, ctx: StageContext) -> PipelineResult:
        return await self.stage(stage).run(ctx)
