"""Persistence layer for the Member Entitlements service."""
