"""
rangepilot: concentrated-liquidity range strategies with automated exit.
"""

__version__ = "0.1.0"
