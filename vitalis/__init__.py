"""
Vitalis Health Sync

Multi-provider wearable data synchronization: OAuth credential handling,
provider connectors, normalization into canonical health records, and
idempotent persistence.
"""

__version__ = "1.0.0"
