# tasks/__init__.py
from tasks.abandonment import (
    abandonment_loop,
    get_sweep_stats,
    run_sweep_cycle,
)

__all__ = [
    "abandonment_loop",
    "get_sweep_stats",
    "run_sweep_cycle",
]
