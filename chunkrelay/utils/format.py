"""Human readable sizes and durations"""

import math

SIZE_UNITS = ('B', 'KB', 'MB', 'GB', 'TB')


def format_size(num_bytes: float) -> str:
    """1000-based size, e.g. 30000000 -> '30 MB'"""
    if num_bytes <= 0:
        return "0 B"
    value = float(num_bytes)
    unit = 0
    while value >= 1000 and unit < len(SIZE_UNITS) - 1:
        value /= 1000
        unit += 1
    return f"{round(value, 2):g} {SIZE_UNITS[unit]}"


def format_time(seconds: float) -> str:
    if not seconds or seconds < 0 or not math.isfinite(seconds):
        return "--"
    seconds = int(round(seconds))
    if seconds < 60:
        return f"{seconds}s"
    minutes, seconds = divmod(seconds, 60)
    return f"{minutes}m {seconds}s"
