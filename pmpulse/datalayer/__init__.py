"""Ingestion, normalization and reconciliation of AppFolio data."""
