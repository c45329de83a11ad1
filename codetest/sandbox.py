"""
Sandbox for compiling and executing untrusted submissions with resource limits.

Every execution runs as a separate OS process in a fresh temporary directory
with a sanitized environment, its own process session and resource limits.
Unix: Uses the resource module for CPU time, address space, process count
and file size limits, and psutil to sample peak memory and kill process trees.
Windows: Uses the wall-clock deadline and psutil memory sampling only.
"""

import math
import os
import platform
import shutil
import signal
import subprocess
import tempfile
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

import psutil

from .config_loader import EngineConfig
from .errors import InternalExecutionError
from .languages import LanguageProfile, get_language
from .pool import CancelToken

POLL_INTERVAL_SEC = 0.01
COMPILE_OUTPUT_LIMIT_BYTES = 64 * 1024 * 1024

SUCCESS = "success"
TIMEOUT = "timeout"
RUNTIME_ERROR = "runtime_error"
MEMORY_ERROR = "memory_error"
CANCELLED = "cancelled"


@dataclass
class RunResult:
    """
    Raw result of one sandboxed execution.

    status: "success", "timeout", "runtime_error", "memory_error" or "cancelled"
    """
    status: str
    stdout: str
    stderr: str
    exit_code: Optional[int]
    runtime_ms: float
    memory_kb: int

    @property
    def ok(self) -> bool:
        return self.status == SUCCESS


@dataclass
class Build:
    """Source and compiled artifacts of one submission, reused for every test case."""
    language: LanguageProfile
    build_dir: Path
    ok: bool
    message: str = ""
    compile_ms: float = 0.0


def _sanitized_env(home: str) -> dict:
    env = {"PATH": os.environ.get("PATH", "/usr/bin:/bin"), "HOME": home, "TMPDIR": home}
    for key in ("LANG", "LC_ALL", "SystemRoot", "WINDIR"):
        value = os.environ.get(key)
        if value:
            env[key] = value
    return env


def _tree_rss_kb(process: Optional[psutil.Process]) -> int:
    """Resident memory of a process and all of its descendants, in KB."""
    if process is None:
        return 0
    try:
        members = [process] + process.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        return 0
    total = 0
    for member in members:
        try:
            total += member.memory_info().rss
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            continue
    return total // 1024


def _kill_tree(proc: subprocess.Popen, process: Optional[psutil.Process]):
    """Kill a sandboxed process and everything it spawned."""
    if process is not None:
        try:
            children = process.children(recursive=True)
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            children = []
        for child in children:
            try:
                child.kill()
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                continue
    if platform.system() != "Windows":
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            pass
    try:
        proc.kill()
    except ProcessLookupError:
        pass


def _read_capped(path: Path, limit: int) -> str:
    with open(path, 'rb') as f:
        data = f.read(limit)
    return data.decode('utf-8', errors='replace')


class Sandbox:
    """Compiles submissions once and executes them per test case in isolation."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = config or EngineConfig.default()

    # ===== PUBLIC API =====

    def compile(self, language: str, code: str) -> Build:
        """
        Write the source into a fresh build directory and compile it if needed.

        Returns:
            Build with ok=False and the compiler output as message when the
            compile step fails or times out

        Raises:
            UnsupportedLanguage: If the language is unknown
            InternalExecutionError: If the toolchain is missing or cannot start
        """
        profile = get_language(language)
        build_dir = Path(tempfile.mkdtemp(prefix="codetest-build-"))
        with open(build_dir / profile.source_file, 'w', encoding='utf-8') as f:
            f.write(code)

        if not profile.is_compiled:
            return Build(language=profile, build_dir=build_dir, ok=True)

        try:
            command = profile.compile_command()
            status, stdout, stderr, exit_code, elapsed_ms, _ = self._spawn(
                command,
                cwd=build_dir,
                stdin_data=b"",
                wall_limit_sec=self.config.compile_time_limit_ms / 1000.0,
                memory_limit_mb=None,
                output_limit=COMPILE_OUTPUT_LIMIT_BYTES,
                managed_runtime=True,
            )
        except InternalExecutionError:
            shutil.rmtree(build_dir, ignore_errors=True)
            raise

        if status == SUCCESS:
            return Build(language=profile, build_dir=build_dir, ok=True, compile_ms=elapsed_ms)

        if status == TIMEOUT:
            message = "Compilation timed out"
        else:
            message = (stderr or stdout).strip() or f"Compilation failed. Exit code: {exit_code}"
        return Build(language=profile, build_dir=build_dir, ok=False,
                     message=message, compile_ms=elapsed_ms)

    def execute(
        self,
        build: Build,
        stdin: str,
        time_limit_ms: int,
        memory_limit_mb: int,
        cancel: Optional[CancelToken] = None
    ) -> RunResult:
        """
        Run a successful build once with the given stdin in a fresh directory.

        Args:
            build: Result of compile() with ok=True
            stdin: Input fed to the program
            time_limit_ms: Wall/CPU time limit
            memory_limit_mb: Memory limit for the whole process tree
            cancel: Token checked while the program runs

        Returns:
            RunResult; never a partial success when a limit is exceeded

        Raises:
            InternalExecutionError: If the sandbox cannot be set up
        """
        if not build.ok:
            raise ValueError("Cannot execute a failed build")
        if cancel is not None and cancel.cancelled:
            return RunResult(CANCELLED, "", "Cancelled before start", None, 0.0, 0)

        profile = build.language
        with tempfile.TemporaryDirectory(prefix="codetest-run-") as work_dir:
            shutil.copytree(build.build_dir, work_dir, dirs_exist_ok=True)
            command = self._isolate(profile.run_command(memory_limit_mb))
            status, stdout, stderr, exit_code, elapsed_ms, peak_kb = self._spawn(
                command,
                cwd=Path(work_dir),
                stdin_data=(stdin or "").encode('utf-8'),
                wall_limit_sec=time_limit_ms / 1000.0,
                memory_limit_mb=memory_limit_mb,
                output_limit=self.config.max_output_bytes,
                managed_runtime=profile.managed_runtime,
                cancel=cancel,
            )
        return RunResult(status, stdout, stderr, exit_code, elapsed_ms, peak_kb)

    def cleanup(self, build: Build):
        """Remove a build directory."""
        shutil.rmtree(build.build_dir, ignore_errors=True)

    def run(
        self,
        language: str,
        code: str,
        stdin: str,
        time_limit_ms: int,
        memory_limit_mb: int,
        cancel: Optional[CancelToken] = None
    ) -> Tuple[Build, Optional[RunResult]]:
        """
        Compile and execute in one call.

        Returns:
            Tuple of (build, run_result); run_result is None when compilation failed
        """
        build = self.compile(language, code)
        try:
            if not build.ok:
                return build, None
            return build, self.execute(build, stdin, time_limit_ms, memory_limit_mb, cancel)
        finally:
            self.cleanup(build)

    # ===== PROCESS CONTROL =====

    def _isolate(self, command: List[str]) -> List[str]:
        if not self.config.isolate_network:
            return command
        unshare = shutil.which("unshare")
        if unshare is None:
            raise InternalExecutionError("Network isolation requested but 'unshare' is not available")
        return [unshare, "--net", "--map-root-user", "--"] + command

    def _spawn(
        self,
        command: List[str],
        cwd: Path,
        stdin_data: bytes,
        wall_limit_sec: float,
        memory_limit_mb: Optional[int],
        output_limit: int,
        managed_runtime: bool,
        cancel: Optional[CancelToken] = None
    ) -> Tuple[str, str, str, Optional[int], float, int]:
        """
        Start a process and supervise it until it exits or breaks a limit.

        Returns:
            Tuple of (status, stdout, stderr, exit_code, elapsed_ms, peak_memory_kb)
        """
        is_windows = platform.system() == "Windows"
        grace_sec = self.config.timeout_grace_ms / 1000.0
        cpu_limit = int(math.ceil(wall_limit_sec)) + 1

        def set_limits():
            import resource
            try:
                resource.setrlimit(resource.RLIMIT_CPU, (cpu_limit, cpu_limit + 1))
            except (ValueError, OSError):
                pass
            try:
                resource.setrlimit(resource.RLIMIT_FSIZE, (output_limit, output_limit))
            except (ValueError, OSError):
                pass
            if memory_limit_mb is not None and not managed_runtime:
                try:
                    memory_bytes = memory_limit_mb * 1024 * 1024
                    resource.setrlimit(resource.RLIMIT_AS, (memory_bytes, memory_bytes))
                except (ValueError, OSError):
                    pass
                try:
                    resource.setrlimit(resource.RLIMIT_NPROC, (64, 64))
                except (ValueError, OSError):
                    pass

        memory_limit_kb = memory_limit_mb * 1024 if memory_limit_mb else None
        peak_kb = 0
        status = None

        with tempfile.TemporaryDirectory(prefix="codetest-io-") as io_dir:
            in_path = Path(io_dir) / "stdin"
            out_path = Path(io_dir) / "stdout"
            err_path = Path(io_dir) / "stderr"
            in_path.write_bytes(stdin_data)

            with open(in_path, 'rb') as fin, open(out_path, 'wb') as fout, open(err_path, 'wb') as ferr:
                try:
                    proc = subprocess.Popen(
                        command,
                        stdin=fin,
                        stdout=fout,
                        stderr=ferr,
                        cwd=str(cwd),
                        env=_sanitized_env(str(cwd)),
                        preexec_fn=None if is_windows else set_limits,
                        start_new_session=not is_windows,
                    )
                except OSError as e:
                    raise InternalExecutionError(f"Failed to start sandbox process: {e}") from e

                start = time.monotonic()
                deadline = start + wall_limit_sec + grace_sec
                try:
                    process = psutil.Process(proc.pid)
                except psutil.NoSuchProcess:
                    process = None

                while True:
                    try:
                        proc.wait(timeout=POLL_INTERVAL_SEC)
                        break
                    except subprocess.TimeoutExpired:
                        pass

                    peak_kb = max(peak_kb, _tree_rss_kb(process))
                    if cancel is not None and cancel.cancelled:
                        status = CANCELLED
                    elif time.monotonic() >= deadline:
                        status = TIMEOUT
                    elif memory_limit_kb is not None and peak_kb > memory_limit_kb:
                        status = MEMORY_ERROR

                    if status is not None:
                        _kill_tree(proc, process)
                        proc.wait()
                        break

                elapsed_ms = (time.monotonic() - start) * 1000.0

            stdout = _read_capped(out_path, output_limit)
            stderr = _read_capped(err_path, output_limit)

        exit_code = proc.returncode
        if status is None:
            status = self._classify_exit(exit_code, stderr, elapsed_ms, wall_limit_sec)

        if status == TIMEOUT:
            stderr = stderr or "Process exceeded time limit"
        elif status == MEMORY_ERROR:
            stderr = stderr or "Memory limit exceeded"
        elif status == CANCELLED:
            stderr = "Execution cancelled"

        return status, stdout, stderr, exit_code, elapsed_ms, peak_kb

    @staticmethod
    def _classify_exit(exit_code: int, stderr: str, elapsed_ms: float, wall_limit_sec: float) -> str:
        if exit_code == 0:
            return SUCCESS
        if hasattr(signal, "SIGXCPU") and exit_code == -signal.SIGXCPU:
            return TIMEOUT
        if exit_code == -signal.SIGKILL and elapsed_ms >= wall_limit_sec * 1000.0:
            return TIMEOUT
        if 'MemoryError' in stderr or 'std::bad_alloc' in stderr or 'OutOfMemoryError' in stderr:
            return MEMORY_ERROR
        return RUNTIME_ERROR
