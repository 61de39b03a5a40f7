"""
testrepository — package root

File: src/testrepository/__init__.py
Last updated: 2026-10-19

Purpose
- Durable, append-only repository of test-run results with a parallel
  scheduler and a test-isolation bisection analyzer.

Import boundary rules
- No side effects at import time (no config loading, no logging init).
- Heavy submodules are imported by callers, not re-exported here.
"""

__version__ = "0.1.0"

__all__ = ["__version__"]
