"""Wearable sync infrastructure for Cadence.

Modules:
    engine — Periodic pull/normalize/merge per due connection
    dedup  — Deduplication keys (connection + metric + timestamp + value)
"""
