"""
Member Entitlements service.
"""
