"""
Event-bus plugins.
"""

from rangepilot.plugins.plugin_manager import Plugin, PluginManager
from rangepilot.plugins.profit_loss import ProfitLossPlugin

__all__ = [
    "Plugin",
    "PluginManager",
    "ProfitLossPlugin",
]
