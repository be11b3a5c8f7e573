"""Test helpers for specexec.
- ``models``: sample target systems and specification shorthands
- ``strategies``: Hypothesis strategies for values and storage writes
"""
