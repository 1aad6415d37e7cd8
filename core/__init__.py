"""
Runner Pool - Core Package

Ambient concerns shared by the controller and the HTTP surface:
configuration, secrets, structured logging, error taxonomy, health checks.
"""
