"""
Runner Pool - Provisioning API (NoCloud seed server)
"""
