"""
Duty Scheduler: Fairness Distribution Engine

Balances recurring duties across a roster over time, either by automatic
assignment or through turn-ordered selection occasions, with reporting.
"""

__version__ = "1.0.0"
__author__ = "Duty Scheduler Team"
