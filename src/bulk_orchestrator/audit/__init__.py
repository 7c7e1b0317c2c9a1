"""Audit trail for per-target outcomes."""
