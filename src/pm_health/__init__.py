"""
pm-health - Monitoring and alerting for PM2 supervised processes.

Watches process lifecycle events, exceptions, custom messages, "alive"
signals and exported metrics, and turns them into Telegram alerts. Alert
rules are hot-reloaded from a remote configuration document.
"""

__version__ = "0.1.0"
