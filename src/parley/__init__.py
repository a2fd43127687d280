"""
Parley - two-agent plan negotiation.

Two language-model agents take alternating turns proposing, critiquing and
agreeing on a plan, streaming their output to an observer until both agree
or the round cap is reached.
"""

__version__ = "0.1.0"
__author__ = "Parley Development Team"

__all__ = [
    "models",
    "services",
    "lib",
    "cli"
]
