"""
CraftCtrl - Control panel backend

Authentication, sessions and resource-scoped permissions for
managing game servers and server groups.
"""

__version__ = "0.1.0"
