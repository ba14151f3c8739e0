"""Exponential backoff delays shared by the reconnect loop and HTTP retries."""


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """
    Delay before retry number ``attempt`` (1-based): base, 2*base, 4*base ... capped.
    """
    if attempt < 1:
        return 0.0
    # Bound the exponent so huge attempt counts cannot overflow
    return min(cap, base * (2 ** min(attempt - 1, 32)))
