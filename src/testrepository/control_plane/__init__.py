"""
testrepository — control plane

File: src/testrepository/control_plane/__init__.py
Last updated: 2026-10-19

Purpose
- Result aggregation, partitioning, worker execution, scheduling and
  isolation analysis.

Import boundary rules
- Submodules are imported directly; the repository store depends on the
  aggregator, so this package must not import the store at init time.
"""
