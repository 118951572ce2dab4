import re
import time
from typing import Callable

_WHITESPACE = re.compile(r"\s+")


def derive_patient_identifier(first_name: str, clock: Callable[[], int] = time.time_ns) -> str:
    """
    Build the shareable patient identifier, e.g. ``ann1718031234567890``.

    The lower-cased first name is followed by a microsecond timestamp taken
    from ``clock`` (nanoseconds since the epoch). Pass a fixed clock to make
    the result reproducible in tests.
    """
    name = _WHITESPACE.sub("", first_name or "").lower()
    if not name:
        raise ValueError("first name is required to derive a patient identifier")
    return f"{name}{clock() // 1000}"
