"""Cadence core primitives.

Modules:
    errors    — error taxonomy used by every engine
    crypto    — AES-256-GCM envelope codec for persisted secrets and PHI
    timectx   — user-local calendar day resolution
    clock     — injectable wall clock (real and fake)
    scheduler — recurring job runner with single-flight, jitter, graceful stop
"""
