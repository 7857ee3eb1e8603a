"""
Approval Kernel

A tenant-configurable, multi-step approval workflow engine with:
- Dynamic approver resolution against the org directory
- Rule snapshots pinned at instance creation
- Compare-and-swap step transitions (no double advancement)
- Timeout-driven auto-advancement
- Full before/after audit records for every terminal transition
"""

__version__ = "0.1.0"
