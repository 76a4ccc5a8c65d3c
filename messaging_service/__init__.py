"""Unified SMS, MMS and email messaging with conversation threading."""
