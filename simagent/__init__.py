"""
simagent: deterministic UI automation for iOS simulators.
"""

__version__ = "0.1.0"
