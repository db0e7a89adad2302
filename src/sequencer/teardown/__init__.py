"""Reverse-order destruction."""

from .coordinator import TeardownCoordinator, TeardownResult

__all__ = ['TeardownCoordinator', 'TeardownResult']
