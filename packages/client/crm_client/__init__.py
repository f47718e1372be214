"""
CRM access-control client

Signs in against the access-control server, keeps the organization context
of the signed-in identity, and runs organization-scoped calls against it.
"""

__version__ = "0.1.0"
