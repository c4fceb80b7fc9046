"""
ReflectHunt - Tool Runner
Executes external recon tools as async subprocesses with output written
straight to disk, so whatever a tool flushed survives a timeout.
"""

import asyncio
import itertools
import logging
import shlex
import shutil
import signal
import time
from typing import Optional, Dict, List, Sequence
from dataclasses import dataclass
from pathlib import Path

from reflecthunt.config import ToolDefinition, BUILTIN_TOOLS
from reflecthunt.errors import MissingCollaborator

log = logging.getLogger(__name__)


@dataclass
class RunningTool:
    """Represents a currently running tool process."""
    run_id: int
    tool_name: str
    command: List[str]
    process: asyncio.subprocess.Process
    started_at: float


@dataclass
class ToolResult:
    """Outcome of one tool invocation."""
    tool_name: str
    command: List[str]
    exit_code: Optional[int]
    duration_ms: float
    timed_out: bool = False
    output_path: Optional[Path] = None

    @property
    def ok(self) -> bool:
        return not self.timed_out and self.exit_code == 0

    def read_output(self) -> str:
        if self.output_path is None or not self.output_path.exists():
            return ""
        return self.output_path.read_text(encoding='utf-8', errors='replace')


class ToolRunner:
    """Manages execution of recon tools as subprocesses."""

    def __init__(self, tools: Optional[Dict[str, ToolDefinition]] = None):
        self._running: Dict[int, RunningTool] = {}
        self._ids = itertools.count(1)
        self._tool_definitions: Dict[str, ToolDefinition] = dict(tools or BUILTIN_TOOLS)

    def definition(self, tool_name: str) -> ToolDefinition:
        tool_def = self._tool_definitions.get(tool_name)
        if not tool_def:
            raise ValueError(f"Unknown tool: {tool_name}")
        return tool_def

    def require(self, tool_name: str) -> ToolDefinition:
        """Return the tool definition or raise MissingCollaborator."""
        tool_def = self.definition(tool_name)
        if shutil.which(tool_def.command) is None:
            raise MissingCollaborator(tool_name, f"{tool_def.command} not found in PATH")
        return tool_def

    def get_available_tools(self) -> Dict[str, Dict]:
        """Get all known tools and whether they're installed."""
        result = {}
        for name, tool_def in self._tool_definitions.items():
            result[name] = {
                "name": tool_def.name,
                "command": tool_def.command,
                "description": tool_def.description,
                "category": tool_def.category,
                "installed": shutil.which(tool_def.command) is not None,
            }
        return result

    def get_running_tools(self) -> Dict[int, Dict]:
        """Get all currently running tools."""
        return {
            run_id: {
                "run_id": rt.run_id,
                "tool_name": rt.tool_name,
                "command": shlex.join(rt.command),
                "started_at": rt.started_at,
                "pid": rt.process.pid,
            }
            for run_id, rt in self._running.items()
        }

    def build_command(self, tool_name: str, target: str = "",
                      wordlist: str = "", extra_args: Sequence[str] = ()) -> List[str]:
        """Build an argv list for a tool from its template."""
        tool_def = self.definition(tool_name)
        cmd = [tool_def.command]

        for arg in shlex.split(tool_def.args_template):
            if arg == "{target}":
                if not target:
                    raise ValueError(f"Tool {tool_name} requires a target")
                arg = target
            elif arg == "{wordlist}":
                if not wordlist:
                    raise ValueError(f"Tool {tool_name} requires a wordlist")
                arg = wordlist
            cmd.append(arg)

        cmd.extend(extra_args)
        return cmd

    async def run_tool(
        self,
        tool_name: str,
        command: List[str],
        stdout_path: Path,
        stdin_path: Optional[Path] = None,
        stdin_data: Optional[str] = None,
        stderr_path: Optional[Path] = None,
        timeout: Optional[float] = None,
        cwd: Optional[Path] = None,
    ) -> ToolResult:
        """
        Execute a tool command and wait for it.

        Args:
            tool_name: Name of the tool being run
            command: argv list to execute
            stdout_path: File receiving the tool's stdout
            stdin_path: File fed to stdin
            stdin_data: Text fed to stdin (ignored when stdin_path is given)
            stderr_path: File receiving stderr (discarded when None)
            timeout: Seconds before the process is killed
            cwd: Working directory for the command

        Returns:
            ToolResult; a timed-out run has ``timed_out`` set and no exit code.
        """
        run_id = next(self._ids)
        started_at = time.time()
        stdout_path.parent.mkdir(parents=True, exist_ok=True)

        stdin_f = open(stdin_path, 'rb') if stdin_path else None
        stdout_f = open(stdout_path, 'wb')
        stderr_f = open(stderr_path, 'wb') if stderr_path else None
        timed_out = False
        try:
            stdin_arg = stdin_f or (asyncio.subprocess.PIPE if stdin_data is not None else asyncio.subprocess.DEVNULL)
            process = await asyncio.create_subprocess_exec(
                *command,
                stdin=stdin_arg,
                stdout=stdout_f,
                stderr=stderr_f or asyncio.subprocess.DEVNULL,
                cwd=str(cwd) if cwd else None,
            )
            self._running[run_id] = RunningTool(
                run_id=run_id,
                tool_name=tool_name,
                command=command,
                process=process,
                started_at=started_at,
            )
            log.debug("[%s] started pid=%s: %s", tool_name, process.pid, shlex.join(command))

            try:
                if stdin_f is None and stdin_data is not None:
                    process.stdin.write(stdin_data.encode('utf-8'))
                    await process.stdin.drain()
                    process.stdin.close()
                await asyncio.wait_for(process.wait(), timeout=timeout)
            except asyncio.TimeoutError:
                timed_out = True
                log.debug("[%s] timed out after %ss, terminating pid=%s", tool_name, timeout, process.pid)
                await self._terminate(process)
            except (BrokenPipeError, ConnectionResetError):
                # Tool exited without reading all of stdin
                await process.wait()
            except asyncio.CancelledError:
                await self._terminate(process)
                raise
        finally:
            self._running.pop(run_id, None)
            for f in (stdin_f, stdout_f, stderr_f):
                if f:
                    f.close()

        duration_ms = (time.time() - started_at) * 1000
        return ToolResult(
            tool_name=tool_name,
            command=command,
            exit_code=None if timed_out else process.returncode,
            duration_ms=duration_ms,
            timed_out=timed_out,
            output_path=stdout_path,
        )

    async def _terminate(self, process: asyncio.subprocess.Process):
        """SIGTERM, then SIGKILL if the process lingers."""
        try:
            process.send_signal(signal.SIGTERM)
            # Give it 3 seconds to terminate gracefully
            try:
                await asyncio.wait_for(process.wait(), timeout=3.0)
            except asyncio.TimeoutError:
                process.kill()
                await process.wait()
        except ProcessLookupError:
            pass  # Already dead

    async def cancel_all(self):
        """Terminate all running tools."""
        for rt in list(self._running.values()):
            await self._terminate(rt.process)
