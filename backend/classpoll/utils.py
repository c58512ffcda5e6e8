import math
import time
import uuid


def now_ts() -> float:
    return time.time()


def new_id() -> str:
    return str(uuid.uuid4())


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def percent(count: int, total: int) -> int:
    if total <= 0:
        return 0
    return int(round_half_up(count * 100 / total))
