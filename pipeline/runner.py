"""Sequential driver for the post-processing stages."""

import logging
import threading
from collections.abc import Callable
from datetime import datetime
from typing import TYPE_CHECKING

from utils.tracking import Timer

from .errors import StageFailure, StageTimeout, ToolTimeout
from .progress import ProgressBus, RunFinished, StageFinished, StageProgress, StageStarted
from .run import PipelineRun, RunStatus, StageStatus
from .stages import Complete, Failed, PipelineContext, Skipped, Stage

if TYPE_CHECKING:
    from utils.logger import SessionLogger

_module_logger = logging.getLogger(__name__)

FinishedCallback = Callable[[PipelineRun], None]


class PostProcessingPipeline:
    """Runs stages one after another, halting only on a fatal failure.

    Each stage moves Pending -> Running -> Complete | Failed | Skipped and
    every transition is published on the bus. Stages after a fatal failure
    stay Pending.
    """

    def __init__(
        self,
        stages: list[Stage],
        bus: ProgressBus | None = None,
        on_finished: FinishedCallback | None = None,
        logger: "SessionLogger | None" = None,
    ):
        """Initialize the pipeline.

        Args:
            stages: Stages in execution order.
            bus: Where progress events go (default: a private bus).
            on_finished: Called with the finished run before waiters are released.
            logger: Optional SessionLogger for styled output.
        """
        self.stages = stages
        self.bus = bus or ProgressBus()
        self.on_finished = on_finished
        self.logger = logger
        self.run_state = PipelineRun.for_stages([stage.name for stage in stages])
        self._thread: threading.Thread | None = None

    def _log_step(self, message: str) -> None:
        if self.logger:
            self.logger.step(message)
        _module_logger.info(message)

    def _log_warning(self, message: str) -> None:
        if self.logger:
            self.logger.warning(message)
        _module_logger.warning(message)

    def _log_error(self, message: str) -> None:
        if self.logger:
            self.logger.error(message)
        _module_logger.error(message)

    def _progress_callback(self, index: int) -> Callable[[float], None]:
        record = self.run_state.stages[index]

        def on_progress(percent: float) -> None:
            # Backwards updates are dropped so progress stays monotonic
            if record.update_progress(percent):
                self.bus.publish(StageProgress(index, record.progress))

        return on_progress

    def _run_stage(self, index: int, stage: Stage, ctx: PipelineContext):
        """Run one stage, turning escaping exceptions into a Failed outcome."""
        try:
            return stage.run(ctx, self._progress_callback(index)), None
        except Exception as e:
            fatal = stage.is_fatal(ctx)
            failure_cls = StageTimeout if isinstance(e, ToolTimeout) else StageFailure
            failure = failure_cls(stage.name, fatal, e)
            return Failed(str(e), fatal), failure

    def run(self, ctx: PipelineContext) -> PipelineRun:
        """Run every stage in the calling thread and return the finished run."""
        run = self.run_state
        run.started_at = datetime.now()
        run.status = RunStatus.RUNNING
        status = RunStatus.COMPLETE
        error = None

        with Timer("Post-processing") as timer:
            for index, stage in enumerate(self.stages):
                record = run.advance_to(index)
                record.start()
                self.bus.publish(StageStarted(index, stage.name))
                self._log_step(f"{stage.name}...")

                outcome, failure = self._run_stage(index, stage, ctx)

                if isinstance(outcome, Complete):
                    ctx = outcome.context
                    record.finish(StageStatus.COMPLETE)
                    self.bus.publish(StageFinished(index, StageStatus.COMPLETE.value))
                elif isinstance(outcome, Skipped):
                    record.finish(StageStatus.SKIPPED, reason=outcome.reason)
                    self.bus.publish(StageFinished(index, StageStatus.SKIPPED.value, outcome.reason))
                    _module_logger.info(f"{stage.name} skipped: {outcome.reason}")
                else:
                    record.finish(StageStatus.FAILED, error=outcome.error)
                    self.bus.publish(StageFinished(index, StageStatus.FAILED.value, outcome.error))
                    if outcome.fatal:
                        self._log_error(f"{stage.name} failed: {outcome.error}")
                        run.failure = failure or StageFailure(stage.name, True, outcome.error)
                        status, error = RunStatus.FAILED, outcome.error
                        break
                    self._log_warning(f"{stage.name} failed, continuing: {outcome.error}")

        run.context = ctx
        run.finish(status, error)
        _module_logger.info(f"Post-processing {status.value} in {timer.elapsed_str}")

        if self.on_finished is not None:
            try:
                self.on_finished(run)
            except Exception:
                _module_logger.exception("Post-processing completion callback failed")

        run.mark_done()
        self.bus.publish(RunFinished(status.value, error))
        return run

    def start(self, ctx: PipelineContext) -> PipelineRun:
        """Run the stages on a background thread and return the live run."""
        self._thread = threading.Thread(
            target=self.run,
            args=(ctx,),
            name="post-processing",
        )
        self._thread.start()
        return self.run_state
