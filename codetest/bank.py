"""
Problem bank: read-only store of problems and coding tests.

Banks are plain JSON files or Fernet-encrypted files. Encrypted banks use
either a key file or a password; password-based banks carry a "SALT" prefix
followed by the 16-byte salt used for key derivation.
"""

import base64
import json
import os
from pathlib import Path
from typing import Dict, List, Optional, Union

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .errors import NotFound
from .models import CodingTest, Problem

SALT_PREFIX = b'SALT'
SALT_LENGTH = 16


def derive_key_from_password(password: str, salt: bytes) -> bytes:
    """Derive a Fernet key from a password using PBKDF2."""
    kdf = PBKDF2HMAC(
        algorithm=hashes.SHA256(),
        length=32,
        salt=salt,
        iterations=480000,  # OWASP recommendation for 2024
    )
    key_material = kdf.derive(password.encode('utf-8'))
    return base64.urlsafe_b64encode(key_material)


def generate_key() -> bytes:
    """Generate a new Fernet key."""
    return Fernet.generate_key()


def encrypt_bank(plaintext: bytes, key: Optional[bytes] = None, password: Optional[str] = None) -> bytes:
    """
    Encrypt a plaintext JSON bank.

    Args:
        plaintext: Bank JSON bytes (validated before encryption)
        key: Fernet key, for key-file encryption
        password: Password, for password-based encryption (salt is prepended)

    Raises:
        ValueError: If the input is not valid JSON or no single key source is given
    """
    if (key is None) == (password is None):
        raise ValueError("Specify exactly one of key or password")
    json.loads(plaintext)

    if password is not None:
        salt = os.urandom(SALT_LENGTH)
        return SALT_PREFIX + salt + Fernet(derive_key_from_password(password, salt)).encrypt(plaintext)
    return Fernet(key).encrypt(plaintext)


def decrypt_bank(data: bytes, key_input: Union[str, bytes]) -> dict:
    """
    Decrypt an encrypted bank.

    Args:
        data: Encrypted file contents
        key_input: Password for "SALT"-prefixed banks, Fernet key otherwise

    Raises:
        ValueError: If the key or password is wrong or the payload is not JSON
    """
    if isinstance(key_input, bytes):
        key_input = key_input.decode('utf-8')
    key_input = key_input.strip()

    if data.startswith(SALT_PREFIX):
        salt = data[len(SALT_PREFIX):len(SALT_PREFIX) + SALT_LENGTH]
        data = data[len(SALT_PREFIX) + SALT_LENGTH:]
        key = derive_key_from_password(key_input, salt)
    else:
        key = key_input.encode('utf-8')

    try:
        decrypted = Fernet(key).decrypt(data)
    except (InvalidToken, ValueError) as e:
        raise ValueError("Failed to decrypt bank: wrong key or password") from e
    return json.loads(decrypted)


class ProblemBank:
    """Problems and tests by id. Never modified after loading."""

    def __init__(self, problems: List[Problem], tests: List[CodingTest] = None, version: str = ""):
        self.version = version
        self._problems: Dict[int, Problem] = {}
        for problem in problems:
            if problem.id in self._problems:
                raise ValueError(f"Duplicate problem id {problem.id}")
            self._problems[problem.id] = problem

        self.tests: List[CodingTest] = list(tests or [])
        for test in self.tests:
            for question in test.questions:
                if question.problem_id not in self._problems:
                    raise ValueError(
                        f"Test {test.id} question {question.id} references unknown problem {question.problem_id}"
                    )

    @property
    def problems(self) -> List[Problem]:
        return list(self._problems.values())

    def get_problem(self, problem_id: int) -> Problem:
        try:
            return self._problems[problem_id]
        except KeyError:
            raise NotFound(f"Problem {problem_id} not found in bank") from None

    def get_test(self, test_id: int) -> CodingTest:
        for test in self.tests:
            if test.id == test_id:
                return test
        raise NotFound(f"Coding test {test_id} not found in bank")

    @staticmethod
    def from_dict(data: dict, default_passing_percentage: float = 60.0) -> 'ProblemBank':
        """Create a ProblemBank from a dictionary."""
        return ProblemBank(
            problems=[Problem.from_dict(p) for p in data.get('problems', [])],
            tests=[CodingTest.from_dict(t, default_passing_percentage) for t in data.get('tests', [])],
            version=str(data.get('version', ""))
        )


def load_bank(
    path: Union[str, Path],
    key_input: Optional[Union[str, bytes]] = None,
    default_passing_percentage: float = 60.0
) -> ProblemBank:
    """
    Load a bank file. Files ending in .json are read as plain JSON.

    Raises:
        FileNotFoundError: If the file does not exist
        ValueError: If the bank cannot be decrypted or is invalid
    """
    path = Path(path)
    if path.suffix.lower() == '.json':
        with open(path, 'r', encoding='utf-8') as f:
            return ProblemBank.from_dict(json.load(f), default_passing_percentage)

    if key_input is None:
        raise ValueError(f"A key or password is required to open {path.name}")
    with open(path, 'rb') as f:
        data = f.read()
    return ProblemBank.from_dict(decrypt_bank(data, key_input), default_passing_percentage)
