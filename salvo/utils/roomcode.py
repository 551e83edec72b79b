import random
import re
from typing import Optional

ALPHABET = "ABCDEFGHIJKLMNOPQRSTUVWXYZ0123456789"
CODE_LENGTH = 6
MAX_CODE_LENGTH = 8

_NON_ALNUM = re.compile(r"[^A-Za-z0-9]")
_VALID = re.compile(r"^[A-Z0-9]{6,8}$")


def generate_room_code(rng: Optional[random.Random] = None) -> str:
    rng = rng or random.SystemRandom()
    return "".join(rng.choice(ALPHABET) for _ in range(CODE_LENGTH))


def normalize_room_code(raw: str) -> str:
    """'abc-def ' -> 'ABCDEF'"""
    return _NON_ALNUM.sub("", raw or "").upper()[:MAX_CODE_LENGTH]


def is_valid_room_code(code: str) -> bool:
    return bool(_VALID.match(code or ""))


def format_room_code(code: str) -> str:
    code = normalize_room_code(code)
    if len(code) != CODE_LENGTH:
        return code
    return f"{code[:3]}-{code[3:]}"
