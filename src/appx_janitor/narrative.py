"""!
@brief Progress narrative and audit trail for one deletion.
@details Every line is kept in order for the final result, mirrored to the
human logger, and forwarded to an optional progress sink supplied by the
caller. Phase transitions and remediation attempts also produce machine log
events. A failing sink is logged and otherwise ignored.
"""
from __future__ import annotations

from typing import Callable, List, Optional

from . import logging_ext
from .models import AttemptOutcome, DeletionPhase

__all__ = ["Narrative", "ProgressSink"]

ProgressSink = Callable[[str], object]


class Narrative:
    """!
    @brief Ordered diagnostic narrative bound to a single package.
    """

    def __init__(self, package: str, sink: Optional[ProgressSink] = None) -> None:
        self.package = package
        self.lines: List[str] = []
        self.phases: List[DeletionPhase] = []
        self._sink = sink
        self._sink_failed = False

    def say(self, message: str) -> None:
        self.lines.append(message)
        logging_ext.get_human_logger().info("[%s] %s", self.package, message)
        if self._sink is None:
            return
        try:
            self._sink(message)
        except Exception as exc:  # noqa: BLE001 - caller-supplied callback
            if not self._sink_failed:
                logging_ext.get_human_logger().warning("Progress callback failed: %s", exc)
            self._sink_failed = True

    def phase(self, phase: DeletionPhase, detail: str = "") -> None:
        """!
        @brief Record a state machine transition.
        """

        previous = self.phases[-1].value if self.phases else None
        self.phases.append(phase)
        logging_ext.get_machine_logger().info(
            "phase_transition",
            extra=logging_ext.build_event_extra(
                "phase_transition",
                package=self.package,
                from_phase=previous,
                to_phase=phase.value,
                detail=detail,
            ),
        )
        label = phase.value.replace("_", " ")
        self.say(f"{label}: {detail}" if detail else label)

    def attempt(self, step: str, outcome: AttemptOutcome | bool, **context: object) -> None:
        """!
        @brief Record one remediation attempt and its result.
        """

        if isinstance(outcome, AttemptOutcome):
            succeeded, diagnostic = outcome.succeeded, outcome.diagnostic
        else:
            succeeded, diagnostic = bool(outcome), ""
        logging_ext.get_machine_logger().info(
            "remediation_attempt",
            extra=logging_ext.build_event_extra(
                "remediation_attempt",
                package=self.package,
                step=step,
                succeeded=succeeded,
                diagnostic=diagnostic,
                **context,
            ),
        )
        status = "succeeded" if succeeded else "failed"
        self.say(f"{step} {status}" + (f" ({diagnostic})" if diagnostic and not succeeded else ""))
