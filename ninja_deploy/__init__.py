"""
Single-host Invoice Ninja deployment: firewall, Docker, stack, nginx, certbot.
"""

__version__ = "0.1.0"
