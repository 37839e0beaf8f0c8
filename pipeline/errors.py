"""Errors raised while post-processing a recording."""

from recorder.errors import ScreencasterError


class ToolError(ScreencasterError):
    """An external tool (ffmpeg, ffprobe) failed."""

    def __init__(self, tool: str, returncode: int | None, output: str = ""):
        self.tool = tool
        self.returncode = returncode
        self.output = output
        tail = output.strip().splitlines()[-1] if output.strip() else "no output"
        super().__init__(f"{tool} exited with code {returncode}: {tail}")


class ToolTimeout(ToolError):
    """An external tool ran past its time limit and was killed."""

    def __init__(self, tool: str, timeout: float):
        self.timeout = timeout
        super().__init__(tool, None, f"timed out after {timeout:.0f}s")


class StageFailure(ScreencasterError):
    """A pipeline stage could not produce its output."""

    def __init__(self, stage: str, fatal: bool, cause: BaseException | str):
        self.stage = stage
        self.fatal = fatal
        self.cause = cause
        super().__init__(f"{stage} failed: {cause}")


class StageTimeout(StageFailure):
    """A stage's external tool invocation exceeded its time limit."""
