"""Slot capacity allocation and entitlement engine for trainer accounts."""
