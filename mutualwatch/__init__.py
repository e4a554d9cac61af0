"""Mutual watchdog: an application and a partner process that revive each other."""

__version__ = "0.1.0"
__all__ = ["watchdog", "wd_main"]