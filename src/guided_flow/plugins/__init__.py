"""Plugin support: the plugin contract, a base class and the per-engine host."""

from guided_flow.plugins.base import BasePlugin, Cleanup, Plugin
from guided_flow.plugins.host import PluginHost

__all__ = ["BasePlugin", "Cleanup", "Plugin", "PluginHost"]
