"""
Core Exceptions
===============
Root of the exception hierarchy shared by all casework_core subsystems.
"""


class CaseworkCoreError(Exception):
    """Base class for every error raised by casework_core."""
    pass
