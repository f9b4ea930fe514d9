"""
Utils package for the self-healing health monitor.

This package contains utility modules for configuration management,
logging and timestamp handling.
"""

__version__ = "1.0.0"
