"""
Core modules for Meter Ledger.

This package contains validation, chronology lookups, backdate impact
analysis, cascading recalculation, duplicate-date handling and the ledger
service that ties them together.
"""
