"""State machine constants and transition logic for template jobs.

A job is created ``queued``, moves to ``processing`` when a runner picks it
up and ends ``completed`` or ``failed``. Terminal states are final; a failed
job is resubmitted as a new job rather than resumed.
"""

from datetime import datetime
from typing import Dict, Iterable, Optional, Set

from templatepipe.config import settings
from templatepipe.db.models import TemplateJob
from templatepipe.errors import InvalidTransitionError

TRANSITIONS: Dict[str, Set[str]] = {
    "queued": {"processing", "failed"},
    "processing": {"completed", "failed"},
    "completed": set(),
    "failed": set(),
}

TERMINAL_STATES = {"completed", "failed"}
ACTIVE_STATES = {"queued", "processing"}

STEP_LABELS = {
    "video-generation": "Generating video",
    "text-overlay": "Adding text overlay",
    "bg-music": "Adding background music",
    "attach-video": "Attaching video",
}


def can_transition(current: str, new: str) -> bool:
    """Check if a job may move from ``current`` to ``new``."""
    return new in TRANSITIONS.get(current, set())


def ensure_transition(current: str, new: str) -> None:
    """Raise InvalidTransitionError unless ``current`` -> ``new`` is allowed."""
    if not can_transition(current, new):
        raise InvalidTransitionError(f"Cannot move job from {current} to {new}")


def step_label(step_type: str) -> str:
    return STEP_LABELS.get(step_type, step_type)


def step_description(step_type: str, index: int, total: int) -> str:
    """Human-readable activity text, e.g. 'Adding text overlay (2/3)'."""
    return f"{step_label(step_type)} ({index + 1}/{total})"


def poll_interval(statuses: Iterable[str]) -> float:
    """Seconds a polling client should wait before the next read.

    Short while any job is queued or processing, idle interval otherwise.
    """
    if any(status in ACTIVE_STATES for status in statuses):
        return settings.pipeline.active_poll_interval
    return settings.pipeline.idle_poll_interval


class JobStateMachine:
    """Applies lifecycle changes to a TemplateJob row.

    Only mutates the ORM object; the caller commits. One instance is owned
    by the runner for the duration of a run.
    """

    def __init__(self, job: TemplateJob):
        self.job = job

    @property
    def status(self) -> str:
        return self.job.status

    def start(self, total_steps: int) -> None:
        ensure_transition(self.job.status, "processing")
        self.job.status = "processing"
        self.job.total_steps = total_steps
        self.job.current_step = 0
        self.job.step = "Starting"
        self.job.error = None
        self.job.output_url = None
        self.job.started_at = datetime.utcnow()

    def begin_step(self, index: int, step_type: str) -> None:
        """Record that step ``index`` of the enabled steps is starting."""
        if self.job.status != "processing":
            raise InvalidTransitionError(
                f"Cannot begin a step while job is {self.job.status}"
            )
        if index < self.job.current_step:
            raise InvalidTransitionError(
                f"Step index cannot go backwards ({self.job.current_step} -> {index})"
            )
        if index >= self.job.total_steps:
            raise InvalidTransitionError(
                f"Step index {index} out of range for {self.job.total_steps} steps"
            )
        self.job.current_step = index
        self.job.step = step_description(step_type, index, self.job.total_steps)

    def set_activity(self, text: str) -> None:
        """Update the status text without changing progress."""
        self.job.step = text

    def complete(self, output_url: str) -> None:
        ensure_transition(self.job.status, "completed")
        self.job.status = "completed"
        self.job.output_url = output_url
        self.job.error = None
        self.job.step = "Completed"
        self.job.completed_at = datetime.utcnow()

    def fail(self, message: str, step_text: Optional[str] = None) -> None:
        ensure_transition(self.job.status, "failed")
        self.job.status = "failed"
        self.job.error = message
        self.job.output_url = None
        self.job.step = step_text or "Failed"
        self.job.completed_at = datetime.utcnow()
