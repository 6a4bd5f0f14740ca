"""
Background jobs, recurring sync schedule and failure alerting.
"""
