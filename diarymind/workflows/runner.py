"""Durable step runner: memoized, retried steps with a JSON step log per run."""

from __future__ import annotations

import asyncio
import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from diarymind.config.schema import StepPolicyConfig
from diarymind.logging import get_logger
from diarymind.memory.errors import WorkflowStepError
from diarymind.memory.io import MemoryIO
from diarymind.memory.types import format_ts, utcnow
from diarymind.utils.helpers import ensure_dir, safe_filename

logger = get_logger(__name__)

RUNNING = "running"
COMPLETED = "completed"
FAILED = "failed"

StepFn = Callable[["StepContext"], Any]


@dataclass(frozen=True)
class StepPolicy:
    retries: int = 2
    delay: float = 5.0
    backoff: float = 2.0
    timeout: float | None = None

    @classmethod
    def from_config(cls, cfg: StepPolicyConfig) -> StepPolicy:
        return cls(retries=max(0, cfg.retries), delay=max(0.0, cfg.delay), backoff=cfg.backoff, timeout=cfg.timeout)

    def delay_for(self, failures: int) -> float:
        """Wait before the next attempt after *failures* failed attempts."""
        return self.delay * (self.backoff ** max(0, failures - 1))


@dataclass
class WorkflowRun:
    workflow: str
    run_id: str
    params: dict[str, Any]
    status: str = RUNNING
    steps: dict[str, dict[str, Any]] = field(default_factory=dict)
    items: dict[str, list[str]] = field(default_factory=dict)
    output: Any = None
    error: str | None = None
    created_at: str | None = None
    updated_at: str | None = None

    _VERSION = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self._VERSION,
            "workflow": self.workflow,
            "run_id": self.run_id,
            "params": self.params,
            "status": self.status,
            "steps": self.steps,
            "items": self.items,
            "output": self.output,
            "error": self.error,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> WorkflowRun:
        return cls(
            workflow=str(data["workflow"]),
            run_id=str(data["run_id"]),
            params=dict(data.get("params") or {}),
            status=str(data.get("status") or RUNNING),
            steps=dict(data.get("steps") or {}),
            items={k: list(v) for k, v in (data.get("items") or {}).items()},
            output=data.get("output"),
            error=data.get("error"),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
        )

    def step_status(self, name: str) -> str | None:
        step = self.steps.get(name)
        return step.get("status") if step else None


class StepContext:
    """Handed to a step; exposes item checkpoints that survive step retries."""

    def __init__(self, runner: WorkflowRunner, run: WorkflowRun, step: str) -> None:
        self._runner = runner
        self.run = run
        self.step = step
        self.attempt = 0

    def is_done(self, key: str) -> bool:
        return key in self.run.items.get(self.step, [])

    def mark_done(self, key: str) -> None:
        done = self.run.items.setdefault(self.step, [])
        if key not in done:
            done.append(key)
            self._runner.save(self.run)


class WorkflowRunner:
    """
    Persists one step log per run under ``<runs_dir>/<workflow>/<run_id>.json``.

    A completed step is never re-executed: its stored result is returned. A
    failed run started again resumes after its last completed step. Errors
    whose ``retryable`` attribute is False fail the step immediately.
    """

    def __init__(
        self,
        runs_dir: Path,
        *,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.runs_dir = ensure_dir(runs_dir)
        self._sleep = sleep
        self._clock = clock
        self._io = MemoryIO()

    def _path(self, workflow: str, run_id: str) -> Path:
        return self.runs_dir / safe_filename(workflow) / f"{safe_filename(run_id)}.json"

    def save(self, run: WorkflowRun) -> None:
        run.updated_at = format_ts(self._clock())
        self._io.write_json(self._path(run.workflow, run.run_id), run.to_dict())

    def load_run(self, workflow: str, run_id: str) -> WorkflowRun | None:
        data = self._io.read_json(self._path(workflow, run_id))
        if not isinstance(data, dict):
            return None
        return WorkflowRun.from_dict(data)

    def list_runs(self, workflow: str | None = None) -> list[WorkflowRun]:
        """All persisted runs, newest first."""
        dirs = [self.runs_dir / safe_filename(workflow)] if workflow else sorted(self.runs_dir.iterdir())
        runs: list[WorkflowRun] = []
        for directory in dirs:
            if not directory.is_dir():
                continue
            for path in directory.glob("*.json"):
                try:
                    data = self._io.read_json(path)
                except ValueError:
                    logger.warning("Skipping unreadable run log", path=str(path))
                    continue
                if isinstance(data, dict):
                    runs.append(WorkflowRun.from_dict(data))
        runs.sort(key=lambda r: r.created_at or "", reverse=True)
        return runs

    def start(self, workflow: str, run_id: str, params: dict[str, Any]) -> WorkflowRun:
        """Create the run, or reopen an existing one for resume."""
        run = self.load_run(workflow, run_id)
        if run is None:
            now = format_ts(self._clock())
            run = WorkflowRun(workflow=workflow, run_id=run_id, params=params, created_at=now)
            self.save(run)
            logger.info("Workflow run started", workflow=workflow, run_id=run_id)
            return run
        if run.status == FAILED:
            run.status = RUNNING
            run.error = None
            self.save(run)
            done = [name for name, step in run.steps.items() if step.get("status") == COMPLETED]
            logger.info("Workflow run resumed", workflow=workflow, run_id=run_id, completed_steps=done)
        return run

    def complete(self, run: WorkflowRun, output: Any = None) -> None:
        run.status = COMPLETED
        run.output = output
        run.error = None
        self.save(run)
        logger.info("Workflow run completed", workflow=run.workflow, run_id=run.run_id)

    def fail(self, run: WorkflowRun, error: str) -> None:
        """Mark a run that stopped outside a step (cancellation, I/O) as failed."""
        run.status = FAILED
        run.error = error
        self.save(run)
        logger.warning("Workflow run aborted", workflow=run.workflow, run_id=run.run_id, error=error)

    async def step(self, run: WorkflowRun, name: str, fn: StepFn, policy: StepPolicy | None = None) -> Any:
        """Run *fn* as step *name* and return its JSON-serializable result."""
        policy = policy or StepPolicy()
        existing = run.steps.get(name)
        if existing and existing.get("status") == COMPLETED:
            logger.debug("Step already completed, reusing result", step=name)
            return existing.get("result")

        attempts = int(existing.get("attempts", 0)) if existing else 0
        ctx = StepContext(self, run, name)
        for attempt in range(policy.retries + 1):
            attempts += 1
            ctx.attempt = attempt + 1
            run.steps[name] = {"status": RUNNING, "result": None, "attempts": attempts, "finished_at": None}
            self.save(run)
            try:
                result = fn(ctx)
                if inspect.isawaitable(result):
                    if policy.timeout:
                        result = await asyncio.wait_for(result, timeout=policy.timeout)
                    else:
                        result = await result
            except Exception as e:
                error = str(e) or type(e).__name__
                run.steps[name] = {
                    "status": FAILED,
                    "result": None,
                    "attempts": attempts,
                    "finished_at": format_ts(self._clock()),
                    "error": error,
                }
                retryable = getattr(e, "retryable", True)
                if not retryable or attempt >= policy.retries:
                    run.status = FAILED
                    run.error = f"{name}: {error}"
                    self.save(run)
                    logger.error(
                        "Workflow step failed",
                        workflow=run.workflow,
                        run_id=run.run_id,
                        step=name,
                        attempts=attempts,
                        retryable=retryable,
                        error=error,
                    )
                    raise WorkflowStepError(run.workflow, run.run_id, name, e) from e
                self.save(run)
                wait = policy.delay_for(attempt + 1)
                logger.warning("Workflow step failed, retrying", step=name, attempt=attempt + 1, delay=wait, error=error)
                await self._sleep(wait)
                continue

            run.steps[name] = {
                "status": COMPLETED,
                "result": result,
                "attempts": attempts,
                "finished_at": format_ts(self._clock()),
            }
            self.save(run)
            return result
        raise AssertionError("unreachable")
