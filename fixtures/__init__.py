"""
Runner Pool - In-memory fakes of the hypervisor and registration backends.
"""
