"""Read-through object proxy that heals its primary store from a backup origin."""

__version__ = "0.1.0"
