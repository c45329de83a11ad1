"""
Command line interface for the coding test engine.

Usage:
    codetest run --bank banks/bank.json --problem 1 --language python --code solution.py
    codetest build-bank --in bank.json --out banks/bank.enc --key-file BANK.key
    codetest keygen --out BANK.key
    codetest sample-config --out engine.json
"""

import argparse
import getpass
import hashlib
import sys
from pathlib import Path
from typing import List, Optional

from .bank import encrypt_bank, generate_key, load_bank
from .config_loader import create_sample_config, load_config
from .errors import CodeTestError
from .eventlog import EventLog
from .grader import Grader
from .models import SubmissionSpec
from .pool import ExecutionPool
from .sandbox import Sandbox


def _read_key_input(args) -> Optional[str]:
    if args.key_file:
        with open(args.key_file, 'r', encoding='utf-8') as f:
            return f.read().strip()
    if args.password:
        return getpass.getpass("Enter bank password: ")
    return None


# ===== COMMANDS =====

def cmd_run(args) -> int:
    """Grade a code file against the test cases of a bank problem."""
    config = load_config(Path(args.config) if args.config else None)
    bank = load_bank(args.bank, _read_key_input(args), config.passing_percentage)
    problem = bank.get_problem(args.problem)

    with open(args.code, 'r', encoding='utf-8') as f:
        code = f.read()

    event_log = EventLog(config.event_log_path)
    with ExecutionPool(config.pool_size) as pool:
        grader = Grader(config, Sandbox(config), pool, event_log)
        outcomes = grader.grade(SubmissionSpec(
            language=args.language,
            code=code,
            test_cases=problem.test_cases,
            time_limit_ms=problem.time_limit_ms,
            memory_limit_mb=problem.memory_limit_mb
        ))

    print(f"Problem {problem.id}: {problem.title}")
    print(grader.format_test_results(outcomes, show_details=args.details))
    return 0


def cmd_build_bank(args) -> int:
    """Encrypt a plaintext JSON bank with a key file or a password."""
    with open(args.in_file, 'rb') as f:
        plaintext = f.read()

    if args.password:
        password = getpass.getpass("Enter encryption password: ")
        password_confirm = getpass.getpass("Confirm password: ")
        if password != password_confirm:
            print("[ERROR] Passwords do not match", file=sys.stderr)
            return 1
        if len(password) < 8:
            print("[ERROR] Password must be at least 8 characters", file=sys.stderr)
            return 1
        encrypted = encrypt_bank(plaintext, password=password)
        print("[OK] Using password-based encryption")
    else:
        with open(args.key_file, 'rb') as f:
            key = f.read().strip()
        encrypted = encrypt_bank(plaintext, key=key)
        print("[OK] Using key file encryption")

    Path(args.out).parent.mkdir(parents=True, exist_ok=True)
    with open(args.out, 'wb') as f:
        f.write(encrypted)

    print(f"\n[OK] Success: Bank encrypted")
    print(f"  Input: {args.in_file} ({len(plaintext)} bytes)")
    print(f"  Output: {args.out} ({len(encrypted)} bytes)")
    print(f"  SHA256: {hashlib.sha256(encrypted).hexdigest()}")
    return 0


def cmd_keygen(args) -> int:
    """Generate a new Fernet key file."""
    key = generate_key()
    with open(args.out, 'wb') as f:
        f.write(key)

    print(f"[OK] Success: Encryption key generated")
    print(f"  Output: {args.out}")
    print(f"\n[!] SECURITY: Store this key securely. Never commit to version control.")
    return 0


def cmd_sample_config(args) -> int:
    create_sample_config(Path(args.out))
    return 0


# ===== PARSER =====

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="codetest",
        description="Execute and grade coding test submissions.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  codetest run --bank banks/bank.json --problem 1 --language python --code solution.py
  codetest run --bank banks/bank.enc --key-file BANK.key --problem 1 --language cpp --code main.cpp
  codetest build-bank --in bank.json --out banks/bank.enc --password
  codetest keygen --out BANK.key
        """
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run = subparsers.add_parser("run", help="Grade a code file against a bank problem")
    run.add_argument("--bank", required=True, help="Bank file (.json or encrypted)")
    run.add_argument("--problem", required=True, type=int, help="Problem id")
    run.add_argument("--language", required=True, help="Language (python, javascript, java, c, cpp)")
    run.add_argument("--code", required=True, help="Source file to grade")
    run.add_argument("--config", help="Engine configuration file (default: engine.json)")
    run.add_argument("--details", action="store_true", help="Show details for failed test cases")
    key_group = run.add_mutually_exclusive_group()
    key_group.add_argument("--key-file", help="Key file for an encrypted bank")
    key_group.add_argument("--password", action="store_true", help="Prompt for the bank password")
    run.set_defaults(func=cmd_run)

    build = subparsers.add_parser("build-bank", help="Encrypt a plaintext JSON bank")
    build.add_argument("--in", dest="in_file", required=True, help="Input plaintext JSON file")
    build.add_argument("--out", required=True, help="Output encrypted bank file (.enc)")
    method = build.add_mutually_exclusive_group(required=True)
    method.add_argument("--key-file", help="File containing the encryption key")
    method.add_argument("--password", action="store_true", help="Use password-based encryption")
    build.set_defaults(func=cmd_build_bank)

    keygen = subparsers.add_parser("keygen", help="Generate a Fernet key file")
    keygen.add_argument("--out", required=True, help="Output file path for the key")
    keygen.set_defaults(func=cmd_keygen)

    sample = subparsers.add_parser("sample-config", help="Write a sample engine configuration")
    sample.add_argument("--out", default="engine.json", help="Output path (default: engine.json)")
    sample.set_defaults(func=cmd_sample_config)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """Entry point for the codetest command."""
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except FileNotFoundError as e:
        print(f"[ERROR] File not found: {e}", file=sys.stderr)
    except (CodeTestError, ValueError) as e:
        print(f"[ERROR] {e}", file=sys.stderr)
    except KeyboardInterrupt:
        print("\n[ERROR] Interrupted", file=sys.stderr)
    return 1


if __name__ == "__main__":
    sys.exit(main())
