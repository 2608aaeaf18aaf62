"""
Member Entitlements service application.
"""
