"""
Remote QES signing broker.

One contract (authenticate, hold a session, sign, close) over several
remote qualified signature providers.
"""

__version__ = "1.0.0"
