"""State/store layer.

This package is the single source of truth for how the SOS records are
persisted in the device store shared by every execution context, how
concurrent writers are arbitrated, and how changes are announced inside a
context.
"""
