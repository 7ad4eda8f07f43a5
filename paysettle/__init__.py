"""
PaySettle - Payroll Settlement Engine

Turns compensation profiles, approved monthly attendance and outstanding
credit obligations (advances, loans) into approved, immutable monthly payouts.
"""

__version__ = "1.0.0"
