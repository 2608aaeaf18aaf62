"""Caching layer for the Member Entitlements service."""
