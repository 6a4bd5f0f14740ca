"""
PMPulse - AppFolio ingestion and reconciliation engine.

Pulls property-management reports from the AppFolio API, keeps every payload
as a raw event, normalizes it into relational tables and reconciles derived
data (utility expenses, vendor duplicates, unit status).
"""

__version__ = '1.0.0'
