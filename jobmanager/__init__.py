"""
Distributed Job Manager

Worker processes share a PostgreSQL backlog of jobs. Each job is leased to
exactly one worker through an atomic claim; abandoned leases go stale and
are reclaimed, and progress and status changes are pushed to observers.
"""

__version__ = "1.0.0"
