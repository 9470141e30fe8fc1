"""Vidvault utility helpers.

Submodules:
- aws: boto3 S3 client with ranged, resumable reads
- transfer_maintenance: reconcile / auto-delete sweeps and their scheduler
"""

__all__: list[str] = []
