"""idemco - Idempotent Operation Coordinator.

Guarantees at-most-once execution of side-effecting business operations when
callers retry the same logical request.
"""

__version__ = "0.1.0"
