"""
Home Registry - Backup and Restore

Point-in-time snapshots of the Home Registry household-inventory dataset,
and atomic replacement of the live dataset from a snapshot.

Key Features:
    - Versioned JSON snapshots covering every entity collection
    - Dependency-ordered, all-or-nothing restore inside one transaction
    - Automatic safety snapshot before every restore
    - Path-traversal safe snapshot catalog with atomic file publication
    - Administrator-only access for every operation
    - Local CLI, HTTP API and a matching API client

Design Principles:
    - Fail closed: nothing is mutated until a snapshot has been validated
      and the current state has been saved
    - Generic: collections are opaque record lists described by one registry
    - Recoverable: a failed restore always leaves a known-good snapshot behind
"""

__version__ = "0.3.0"

from homeregistry.config.settings import Settings, load_config

__all__ = [
    "__version__",
    "Settings",
    "load_config",
]
