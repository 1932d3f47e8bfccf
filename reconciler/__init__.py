"""Entitlement reconciliation service."""
