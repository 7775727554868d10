"""Identity — the pseudonymous identity lifecycle.

This package provides:
- Models: identity, privacy settings, progression state, remembered session
- Storage: the device-local identity store with all-or-nothing writes
- Directory: verification and registration of identities (local or HTTP)
"""
