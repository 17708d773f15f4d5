import secrets
import time


def truncate(value: str, max_len: int) -> str:
    if len(value) <= max_len:
        return value
    return value[: max_len - 3] + "..."


def monotonic_ms() -> int:
    return time.monotonic_ns() // 1_000_000


def now_ms() -> int:
    """Wall-clock time in epoch milliseconds."""
    return time.time_ns() // 1_000_000


def new_id(prefix: str = "") -> str:
    stamp = format(now_ms(), "x")
    return f"{prefix}{stamp}-{secrets.token_hex(3)}"
