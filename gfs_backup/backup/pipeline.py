"""
Chains external processes into a single stdout -> stdin pipeline.

A pipeline succeeds only if every stage starts, writes nothing to stderr and
exits with status 0. Errors from all stages are collected and reported
together.
"""

import logging
import subprocess
import threading
from typing import IO, List, Optional, Sequence, Dict


logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Raised when a stage of a process pipeline fails."""
    pass


class Stage:
    """
    One external process in a pipeline.

    Its standard error is drained on a background thread into errors, so a
    chatty process cannot block the pipeline.
    """

    def __init__(self, args: Sequence[str], cwd: Optional[str] = None, env: Optional[Dict[str, str]] = None):
        """
        Args:
            args: Command and arguments
            cwd: Working directory of the process
            env: Environment of the process (default: inherit)
        """
        self.args = list(args)
        self.cwd = cwd
        self.env = env
        self.process = None
        self.errors = []
        self._stderr_thread = None

    @property
    def name(self) -> str:
        return self.args[0]

    @property
    def stdout(self) -> Optional[IO[bytes]]:
        return self.process.stdout if self.process else None

    @property
    def returncode(self) -> Optional[int]:
        return self.process.returncode if self.process else None

    def start(self, stdin, stdout):
        """
        Spawn the process.

        Args:
            stdin: Input stream, or subprocess.DEVNULL
            stdout: Output stream, or subprocess.PIPE

        Raises:
            OSError: If the process cannot be spawned
        """
        self.process = subprocess.Popen(
            self.args,
            stdin=stdin,
            stdout=stdout,
            stderr=subprocess.PIPE,
            cwd=self.cwd,
            env=self.env,
        )
        self._stderr_thread = threading.Thread(target=self._drain_stderr, daemon=True)
        self._stderr_thread.start()

    def _drain_stderr(self):
        for line in iter(self.process.stderr.readline, b''):
            text = line.decode(errors='replace').rstrip()
            if text:
                self.errors.append(f"{self.name}: {text}")
        self.process.stderr.close()

    def wait(self) -> int:
        returncode = self.process.wait()
        self._stderr_thread.join()
        return returncode

    def kill(self):
        if self.process and self.process.poll() is None:
            self.process.kill()


def run_pipeline(stages: List[Stage], output: IO[bytes]):
    """
    Run stages as a pipeline writing into output.

    Each stage's stdout feeds the next stage's stdin; the last stage writes
    straight into output. Returns once every stage has exited.

    Args:
        stages: Stages, in pipeline order
        output: Binary file object receiving the last stage's output

    Raises:
        PipelineError: If there are no stages, a stage cannot be spawned,
            writes to stderr, or exits non-zero
    """
    if not stages:
        raise PipelineError('Must have at least one stage to pipe.')

    started = []
    last = len(stages) - 1

    try:
        for i, stage in enumerate(stages):
            stdin = started[-1].stdout if started else subprocess.DEVNULL
            stdout = output if i == last else subprocess.PIPE
            stage.start(stdin, stdout)

            # The next stage owns this pipe now
            if started:
                stdin.close()

            started.append(stage)
            logger.debug(f"Started pipeline stage: {' '.join(stage.args)}")

    except OSError as e:
        for stage in started:
            stage.kill()
        for stage in started:
            stage.wait()
        errors = [x for stage in started for x in stage.errors]
        errors.append(f"Failed to start {stages[len(started)].name}: {e}")
        raise PipelineError('\n'.join(errors)) from e

    for stage in started:
        stage.wait()

    output.flush()

    errors = [x for stage in started for x in stage.errors]
    if errors:
        raise PipelineError('\n'.join(errors))

    for stage in started:
        if stage.returncode:
            raise PipelineError(f"Process {stage.name} exited with code {stage.returncode}.")
