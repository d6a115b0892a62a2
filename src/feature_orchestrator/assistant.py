"""
Assistant Process - Runs the external assistant CLI in print mode.

Handles:
- Spawning the CLI with a prompt on stdin and a working directory
- Accumulating stdout while the process runs
- A bounded timeout that kills the process instead of hanging
- Reporting the outcome (success / non-zero exit / spawn error / timeout)

Retries are left to the caller.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class AssistantOutcome(str, Enum):
	"""How an assistant invocation ended."""
	SUCCESS = "success"
	EXIT_ERROR = "exit_error"
	SPAWN_ERROR = "spawn_error"
	TIMEOUT = "timeout"


@dataclass
class AssistantResult:
	"""Output and outcome of one assistant invocation."""
	outcome: AssistantOutcome
	output: str = ""
	exit_code: Optional[int] = None
	error: Optional[str] = None

	@property
	def success(self) -> bool:
		return self.outcome == AssistantOutcome.SUCCESS


class AssistantProcess:
	"""
	Invokes the assistant CLI.

	The command defaults to `claude --print --output-format text`; the prompt
	is written to stdin and stdout is returned as the output text.
	"""

	def __init__(self, command: str = "claude", args: Optional[list[str]] = None, timeout: float = 600.0):
		self.command = command
		self.args = args if args is not None else ["--print", "--output-format", "text"]
		self.timeout = timeout

	async def run(self, prompt: str, cwd: str, timeout: Optional[float] = None) -> AssistantResult:
		"""
		Run the assistant once.

		Args:
			prompt: Prompt text written to stdin
			cwd: Working directory (the project path)
			timeout: Seconds before the process is killed (defaults to self.timeout)

		Returns:
			AssistantResult; on timeout the output gathered so far is kept
		"""
		timeout = timeout if timeout is not None else self.timeout
		cwd = os.path.expanduser(cwd)

		try:
			process = await asyncio.create_subprocess_exec(
				self.command,
				*self.args,
				cwd=cwd,
				stdin=asyncio.subprocess.PIPE,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
			)
		except (FileNotFoundError, PermissionError, NotADirectoryError) as e:
			logger.error(f"Assistant CLI could not be started: {e}")
			return AssistantResult(outcome=AssistantOutcome.SPAWN_ERROR, error=str(e))

		stdout_chunks: list[bytes] = []
		stderr_chunks: list[bytes] = []

		async def _drain(stream: asyncio.StreamReader, sink: list[bytes]) -> None:
			while True:
				chunk = await stream.read(4096)
				if not chunk:
					break
				sink.append(chunk)

		async def _communicate() -> None:
			if process.stdin is not None:
				process.stdin.write(prompt.encode())
				await process.stdin.drain()
				process.stdin.close()
			await asyncio.gather(
				_drain(process.stdout, stdout_chunks),
				_drain(process.stderr, stderr_chunks),
			)
			await process.wait()

		try:
			await asyncio.wait_for(_communicate(), timeout=timeout)
		except asyncio.TimeoutError:
			logger.warning(f"Assistant timed out after {timeout}s in {cwd}")
			if process.returncode is None:
				process.kill()
				await process.wait()
			return AssistantResult(
				outcome=AssistantOutcome.TIMEOUT,
				output=b"".join(stdout_chunks).decode(errors="replace"),
				exit_code=process.returncode,
				error=f"Timed out after {timeout}s",
			)

		output = b"".join(stdout_chunks).decode(errors="replace")
		if process.returncode != 0:
			stderr = b"".join(stderr_chunks).decode(errors="replace").strip()
			logger.error(f"Assistant exited with code {process.returncode}: {stderr}")
			return AssistantResult(
				outcome=AssistantOutcome.EXIT_ERROR,
				output=output,
				exit_code=process.returncode,
				error=stderr or f"Exit code {process.returncode}",
			)

		logger.info(f"Assistant finished in {cwd} ({len(output)} chars)")
		return AssistantResult(outcome=AssistantOutcome.SUCCESS, output=output, exit_code=0)
