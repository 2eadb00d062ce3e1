"""Multi-tenant authorization and audit-logging engine.

Decides, for every data access, whether a principal may read or modify
a tenant-scoped record, and records security- and compliance-relevant
events in a tamper-evident, append-only trail.
"""

__version__ = "1.0.0"
