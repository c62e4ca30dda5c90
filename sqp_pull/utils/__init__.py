# SQP Pull Utilities
# This package contains the orchestration modules for SQP report pulls

from .engine import PullEngine
from .pipeline import PullPipeline, TupleResult
from .scheduler import run_cycle
from .stuck_jobs import check_pending, find_stuck_units, recover_stuck_units
from .gap_resolver import backfill_seller, compute_period_grid, resolve_window
