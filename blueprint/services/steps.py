"""Durable step execution for background jobs.

A handler is a sequence of named steps. Each finished step stores its JSON
output in ``job_steps``; when the handler is invoked again for the same run
(retry after a failure, or an explicit resume) finished steps return their
stored output instead of running again. Step bodies may still run more than
once if a failure lands between the body and its checkpoint, so side effects
inside a step have to be upserts.
"""
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict

from sqlmodel import Session, select

from blueprint import deps
from blueprint.config import settings
from blueprint.errors import NonRetriable
from blueprint.models import JobStep

logger = logging.getLogger(__name__)


class StepRunner:
    def __init__(self, db: Session, run_id: str):
        self.db = db
        self.run_id = run_id
        self.executed: list[str] = []

    def checkpoint(self, name: str) -> JobStep | None:
        return self.db.exec(
            select(JobStep).where(JobStep.run_id == self.run_id, JobStep.name == name)
        ).first()

    def run(self, name: str, fn: Callable[[], Any]) -> Any:
        done = self.checkpoint(name)
        if done is not None:
            logger.debug("run %s: step %s already done, skipping", self.run_id, name)
            return done.output
        output = fn()
        self.db.add(JobStep(run_id=self.run_id, name=name, output=output))
        self.db.commit()
        self.executed.append(name)
        logger.info("run %s: step %s done", self.run_id, name)
        return output


@dataclass(frozen=True)
class Registration:
    handler: Callable[..., Any]
    run_key: str
    on_failure: Callable[[Session, Dict[str, Any], str], None]


_registry: Dict[str, Registration] = {}


def register(event: str, run_key: str, on_failure: Callable[[Session, Dict[str, Any], str], None]):
    def wrap(fn):
        _registry[event] = Registration(fn, run_key, on_failure)
        return fn
    return wrap


def run_event(event: str, payload: Dict[str, Any], llm, kb, bind=None) -> Any:
    """Invoke the handler for ``event`` with at-least-once, resumable semantics.

    Retryable errors re-invoke the handler (up to STEP_MAX_ATTEMPTS); NonRetriable
    ones stop at once. After the last failure the run is marked failed through the
    registration's ``on_failure`` hook rather than raised, since no caller waits.
    """
    bind = bind or deps.engine
    reg = _registry[event]
    run_id = payload[reg.run_key]
    last_error: Exception | None = None
    for attempt in range(1, settings.STEP_MAX_ATTEMPTS + 1):
        with Session(bind) as db:
            try:
                return reg.handler(db, StepRunner(db, run_id), payload, llm, kb)
            except NonRetriable as e:
                db.rollback()
                logger.error("%s %s failed permanently: %s", event, run_id, e)
                last_error = e
                break
            except Exception as e:
                db.rollback()
                logger.exception("%s %s attempt %d/%d failed", event, run_id, attempt, settings.STEP_MAX_ATTEMPTS)
                last_error = e
    with Session(bind) as db:
        reg.on_failure(db, payload, str(last_error) or last_error.__class__.__name__)
    return None
