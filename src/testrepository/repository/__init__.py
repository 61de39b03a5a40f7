"""
testrepository — repository package

File: src/testrepository/repository/__init__.py
Last updated: 2026-10-19

Purpose
- On-disk run storage (``store``), the subunit v2 codec (``codec``) and the
  per-test timing database (``timing``).

Import boundary rules
- Submodules are imported directly by callers; nothing is re-exported here
  so the control plane can depend on the store without import cycles.
"""
