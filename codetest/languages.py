"""
Language profiles: how to build and run a submission for each language.

A profile names the source file written into the sandbox, the optional
compile command and the run command. Commands run with the sandbox directory
as the working directory.
"""

import shutil
import sys
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional, Tuple

from .errors import InternalExecutionError, UnsupportedLanguage


def get_python_executable():
    """Get the appropriate Python executable path."""
    if getattr(sys, 'frozen', False):
        python_path = shutil.which('python3') or shutil.which('python')
        if python_path:
            return python_path, ['-I', '-B']
        raise InternalExecutionError("Python executable not found on the execution host.")
    return sys.executable, ['-I', '-B']


def _java_vm_flags(memory_limit_mb: int) -> List[str]:
    limit_mb = max(64, int(memory_limit_mb))
    heap_mb = max(32, min(512, limit_mb // 2))
    code_cache_mb = max(16, min(64, limit_mb // 4))
    return [f"-Xmx{heap_mb}m", f"-XX:ReservedCodeCacheSize={code_cache_mb}m", "-XX:+UseSerialGC"]


def _node_vm_flags(memory_limit_mb: int) -> List[str]:
    limit_mb = max(64, int(memory_limit_mb))
    return [f"--max-old-space-size={max(32, int(limit_mb * 0.75))}"]


@dataclass(frozen=True)
class LanguageProfile:
    """
    Build and run recipe for one language.

    Attributes:
        name: Canonical language name
        source_file: File name the submitted code is written to
        run: Command that executes the program (stdin/stdout redirected)
        compile: Command that builds the program, None for interpreted languages
        managed_runtime: JVM or V8 runtime; these reserve large virtual ranges
            and spawn many threads, so RLIMIT_AS and RLIMIT_NPROC are skipped
            and memory is capped through runtime flags instead
        memory_flags: Produces runtime flags for a memory limit in MB
        aliases: Alternative names accepted in requests
    """
    name: str
    source_file: str
    run: Tuple[str, ...]
    compile: Optional[Tuple[str, ...]] = None
    managed_runtime: bool = False
    memory_flags: Optional[Callable[[int], List[str]]] = None
    aliases: Tuple[str, ...] = ()

    @property
    def is_compiled(self) -> bool:
        return self.compile is not None

    def compile_command(self) -> List[str]:
        return _resolve(list(self.compile))

    def run_command(self, memory_limit_mb: int) -> List[str]:
        command = list(self.run)
        if self.memory_flags is not None:
            command[1:1] = self.memory_flags(memory_limit_mb)
        return _resolve(command)


def _resolve(command: List[str]) -> List[str]:
    """Resolve the executable of a command, failing as an infrastructure error."""
    executable = command[0]
    if executable.startswith("./") or executable == sys.executable:
        return command
    resolved = shutil.which(executable)
    if resolved is None:
        raise InternalExecutionError(f"'{executable}' is not installed on the execution host")
    return [resolved] + command[1:]


PYTHON_EXE, ISOLATION_FLAGS = get_python_executable()

LANGUAGES: Dict[str, LanguageProfile] = {
    "python": LanguageProfile(
        name="python",
        source_file="solution.py",
        run=(PYTHON_EXE, *ISOLATION_FLAGS, "solution.py"),
        aliases=("py", "python3"),
    ),
    "javascript": LanguageProfile(
        name="javascript",
        source_file="solution.js",
        run=("node", "solution.js"),
        managed_runtime=True,
        memory_flags=_node_vm_flags,
        aliases=("js", "node"),
    ),
    "java": LanguageProfile(
        name="java",
        source_file="Solution.java",
        compile=("javac", "-J-Xmx256m", "Solution.java"),
        run=("java", "Solution"),
        managed_runtime=True,
        memory_flags=_java_vm_flags,
    ),
    "c": LanguageProfile(
        name="c",
        source_file="main.c",
        compile=("gcc", "main.c", "-O2", "-o", "main", "-lm"),
        run=("./main",),
    ),
    "cpp": LanguageProfile(
        name="cpp",
        source_file="main.cpp",
        compile=("g++", "main.cpp", "-O2", "-o", "main"),
        run=("./main",),
        aliases=("c++",),
    ),
}


def get_language(name: str) -> LanguageProfile:
    """
    Look up a language profile by name or alias (case-insensitive).

    Raises:
        UnsupportedLanguage: If no profile matches
    """
    key = (name or "").strip().lower()
    if key in LANGUAGES:
        return LANGUAGES[key]
    for profile in LANGUAGES.values():
        if key in profile.aliases:
            return profile
    raise UnsupportedLanguage(f"Unsupported language: {name}")


def register_language(profile: LanguageProfile):
    """Add or replace a language profile."""
    LANGUAGES[profile.name] = profile
