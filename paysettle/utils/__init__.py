"""
PaySettle - Utilities
"""
