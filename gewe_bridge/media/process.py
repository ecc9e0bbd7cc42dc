"""External process execution with a hard timeout."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from dataclasses import dataclass

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class CommandResult:
    code: int | None
    stdout: str
    stderr: str
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        return self.code == 0 and not self.timed_out

    def describe_failure(self) -> str:
        if self.timed_out:
            return "timed out"
        return self.stderr.strip() or f"exit code {self.code if self.code is not None else '?'}"


async def run_command(
    argv: Sequence[str],
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> CommandResult:
    """Run argv, killing the process if it outlives ``timeout`` seconds.

    A missing binary or spawn error is reported as a failed result.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as e:
        return CommandResult(code=None, stdout="", stderr=str(e))

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("Command %s timed out after %ss", argv[0], timeout)
        return CommandResult(code=None, stdout="", stderr="", timed_out=True)

    return CommandResult(
        code=proc.returncode,
        stdout=stdout.decode(errors="replace"),
        stderr=stderr.decode(errors="replace"),
    )


def resolve_template_args(
    template: Sequence[str],
    input_path: str,
    output_path: str,
    sample_rate: int,
) -> list[str]:
    """Fill ``{input}``/``{output}``/``{sampleRate}`` placeholders.

    A template without ``{input}`` gets the input prepended; one without
    ``{output}`` gets the output appended.
    """
    args = [
        entry.replace("{input}", input_path)
        .replace("{output}", output_path)
        .replace("{sampleRate}", str(sample_rate))
        for entry in template
    ]
    if not any("{input}" in entry for entry in template):
        args.insert(0, input_path)
    if not any("{output}" in entry for entry in template):
        args.append(output_path)
    return args
