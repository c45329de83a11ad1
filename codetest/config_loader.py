"""
Configuration loader for engine parameters.

Handles loading and validating engine configuration files.
"""

import json
import os
import sys
from dataclasses import dataclass, asdict
from pathlib import Path
from typing import Optional


@dataclass
class EngineConfig:
    """
    Execution and grading parameters set by the operator.

    Attributes:
        pool_size: Maximum number of sandboxes running at once, system-wide
        default_time_limit_ms: Per-test-case wall time limit when the problem sets none
        default_memory_limit_mb: Per-test-case memory limit when the problem sets none
        compile_time_limit_ms: Wall time limit for the compile phase
        timeout_grace_ms: Extra wall time allowed before a timed-out process is killed
        max_code_length: Maximum source length accepted by execute requests
        max_test_cases: Maximum number of test cases accepted by execute requests
        max_output_bytes: Captured stdout/stderr is truncated to this size
        passing_percentage: Default pass threshold for attempts
        isolate_network: Run user code in an empty network namespace (needs unshare)
        event_log_path: File the event log is appended to, or None for memory only
    """
    pool_size: int
    default_time_limit_ms: int
    default_memory_limit_mb: int
    compile_time_limit_ms: int
    timeout_grace_ms: int
    max_code_length: int
    max_test_cases: int
    max_output_bytes: int
    passing_percentage: float
    isolate_network: bool
    event_log_path: Optional[str]

    @staticmethod
    def from_dict(data: dict) -> 'EngineConfig':
        """Create EngineConfig from dictionary."""
        return EngineConfig(
            pool_size=data.get('pool_size', os.cpu_count() or 2),
            default_time_limit_ms=data.get('default_time_limit_ms', 2000),
            default_memory_limit_mb=data.get('default_memory_limit_mb', 256),
            compile_time_limit_ms=data.get('compile_time_limit_ms', 15000),
            timeout_grace_ms=data.get('timeout_grace_ms', 200),
            max_code_length=data.get('max_code_length', 10000),
            max_test_cases=data.get('max_test_cases', 20),
            max_output_bytes=data.get('max_output_bytes', 1024 * 1024),
            passing_percentage=float(data.get('passing_percentage', 60.0)),
            isolate_network=data.get('isolate_network', False),
            event_log_path=data.get('event_log_path')
        )

    def validate(self) -> tuple[bool, str]:
        """
        Validate configuration consistency.

        Returns:
            Tuple of (is_valid, error_message)
        """
        if self.pool_size < 1:
            return False, "pool_size must be at least 1"

        if self.default_time_limit_ms < 1 or self.compile_time_limit_ms < 1:
            return False, "Time limits must be positive"

        if self.default_memory_limit_mb < 16:
            return False, "default_memory_limit_mb must be at least 16"

        if any(x < 0 for x in [self.timeout_grace_ms, self.max_code_length,
                                self.max_test_cases, self.max_output_bytes]):
            return False, "All limits must be non-negative"

        if not 0.0 <= self.passing_percentage <= 100.0:
            return False, "passing_percentage must be between 0 and 100"

        return True, ""

    @staticmethod
    def default() -> 'EngineConfig':
        """Return default configuration."""
        return EngineConfig.from_dict({})


def load_config(config_path: Optional[Path] = None) -> EngineConfig:
    """
    Load engine configuration from a JSON file.

    Args:
        config_path: Path to the configuration file. If None, looks for
                    'engine.json' in the project root.

    Returns:
        EngineConfig object with validated configuration

    Raises:
        ValueError: If config is invalid
    """
    if config_path is None:
        config_path = Path(__file__).parent.parent / "engine.json"

    if not config_path.exists():
        print(f"Warning: Config file '{config_path}' not found. Using default configuration.",
              file=sys.stderr)
        return EngineConfig.default()

    try:
        with open(config_path, 'r', encoding='utf-8') as f:
            data = json.load(f)
    except json.JSONDecodeError as e:
        raise ValueError(f"Invalid JSON in config file: {e}")
    except OSError as e:
        raise ValueError(f"Error reading config file: {e}")

    config = EngineConfig.from_dict(data)

    is_valid, error_message = config.validate()
    if not is_valid:
        raise ValueError(f"Invalid configuration: {error_message}")

    return config


def create_sample_config(output_path: Path):
    """
    Create a sample configuration file for operators.

    Args:
        output_path: Path where to save the sample config
    """
    sample_config = asdict(EngineConfig.default())
    sample_config["_comment"] = "Sample engine configuration. Adjust values as needed."
    sample_config["_instructions"] = {
        "pool_size": "Maximum number of sandboxes running at once",
        "default_time_limit_ms": "Time limit per test case when the problem sets none",
        "default_memory_limit_mb": "Memory limit per test case when the problem sets none",
        "compile_time_limit_ms": "Time limit for compiling a submission",
        "timeout_grace_ms": "Extra time before a timed-out process is killed",
        "max_code_length": "Maximum accepted source length in characters",
        "max_test_cases": "Maximum test cases per execute request",
        "max_output_bytes": "Captured output is truncated to this many bytes",
        "passing_percentage": "Percentage needed to pass an attempt",
        "isolate_network": "Run code without network access (requires unshare)",
        "event_log_path": "File to append engine events to (null keeps them in memory)"
    }

    with open(output_path, 'w', encoding='utf-8') as f:
        json.dump(sample_config, f, indent=2)

    print(f"Sample configuration created at: {output_path}")
