"""
Ordered multi-step writes across subscriptions, profiles and PayPal

There is no cross-table transaction. A transition is a list of idempotent
steps: a critical step failing aborts the transition and propagates, a
non-critical failure is logged and reported while later steps still run.
Convergence for the skipped work comes from the next webhook redelivery or
the sync pass.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List

from core.request_context import get_request_id

logger = logging.getLogger(__name__)

StepAction = Callable[[], Awaitable[Any]]


@dataclass
class SagaStep:
    name: str
    action: StepAction
    critical: bool = False


@dataclass
class SagaOutcome:
    completed: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    results: Dict[str, Any] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed


class TransitionSaga:
    def __init__(self, name: str):
        self.name = name
        self.steps: List[SagaStep] = []

    def add(self, name: str, action: StepAction, *, critical: bool = False) -> "TransitionSaga":
        self.steps.append(SagaStep(name=name, action=action, critical=critical))
        return self

    async def run(self) -> SagaOutcome:
        outcome = SagaOutcome()
        for step in self.steps:
            try:
                outcome.results[step.name] = await step.action()
            except Exception as exc:
                if step.critical:
                    logger.error(
                        "[SAGA] %s aborted at %s (request_id=%s): %s",
                        self.name,
                        step.name,
                        get_request_id(),
                        exc,
                    )
                    raise
                logger.error(
                    "[SAGA] %s step %s failed, continuing (request_id=%s): %s",
                    self.name,
                    step.name,
                    get_request_id(),
                    exc,
                )
                outcome.failed[step.name] = str(exc)
                continue
            outcome.completed.append(step.name)
        return outcome
