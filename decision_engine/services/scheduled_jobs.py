"""
Decision Engine
Job functions picked up by the scheduler.

Importing this module is what registers them; the app factory does so once.
"""

from __future__ import annotations

import logging
from typing import Any

from decision_engine.services.scheduler_service import register_job
from decision_engine.services.transition_service import process_due_transitions

logger = logging.getLogger(__name__)

TRANSITIONS_JOB = "decision_transitions"


@register_job(TRANSITIONS_JOB)
def run_decision_transitions(app) -> dict[str, Any]:
    """Move published instances into every phase whose start date has passed."""
    summary = process_due_transitions()
    for failure in summary.errors:
        logger.warning(
            "Transition %s failed during scheduled run: %s", failure.transition_id, failure.error,
            extra={"job_name": TRANSITIONS_JOB, "transition_id": failure.transition_id},
        )
    return summary.to_dict()
