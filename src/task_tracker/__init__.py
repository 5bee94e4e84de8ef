"""
Task Tracker

Task-tracking backend with a filterable, sortable, paginated task listing,
optimistic-concurrency updates and user assignment checks.
"""

__version__ = "1.0.0"
