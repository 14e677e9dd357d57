"""
merge-coordinator: integration test package marker.

Purpose
- Scenario and subprocess tests that drive the coordinator end to end.
- Must not require network access; git and gh are local or stubbed.
"""
