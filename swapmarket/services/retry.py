import random

def compute_backoff_seconds(attempt: int, base: float = 1, cap: float = 8) -> float:
    # exponential backoff with up to a third of jitter on top
    exp = min(cap, base * (2 ** max(0, attempt - 1)))
    return exp + random.uniform(0, exp / 3)
